# ==============================================================================
# FILE: core/telemetry.py
# PURPOSE: Owns all per-console state and wires the pipeline stages together.
# ==============================================================================
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import httpx

from ..config import Settings, normalize_api_base, normalize_refresh_interval, subscription_key
from .closed import ClosedConnectionTracker
from .coalescer import RenderCoalescer
from .data_models import (
    DASHBOARD_CACHE_WINDOW_MS, MAX_CLOSED_CONNECTIONS, TRAFFIC_WINDOW,
    ConnectionGroup, ConnectionSnapshot, StreamStatus, ViewMode, format_timestamp
)
from .errors import ActionError, MalformedPayload, TransportError
from .grouping import build_view, detail_key, domain_source_badge
from .normalizer import connection_stats, normalize
from .pruner import prune
from .rates import RateEstimator
from .sampler import TrafficSampler
from .transport import ConnectionsClient, StreamSubscription
from .view import ASC, DEFAULT_SORT_KEY, DESC, apply_view, filter_groups, prune_expanded, toggle_sort

log = logging.getLogger("connscope.telemetry")

PAGE_DASHBOARD = "dashboard"
PAGE_CONNECTIONS = "connections"
PAGES = (PAGE_DASHBOARD, PAGE_CONNECTIONS, "other")


def _wall_clock_ms() -> float:
    return time.time() * 1000


@dataclass
class Frame:
    """One accepted snapshot plus the rows derived from it, waiting to be rendered."""
    snapshot: ConnectionSnapshot
    groups: List[ConnectionGroup] = field(default_factory=list)
    accepted_at: float = 0
    page: str = PAGE_CONNECTIONS


class ConnectionTelemetry:
    """
    Aggregates everything the console shows for one stream.

    accept() runs on every pushed snapshot: closure diffing and rate
    estimation must see each one. flush() runs once per rendered frame with
    whatever accept() produced last. reset() is the single reset boundary
    for all accumulated state.
    """

    def __init__(self, clock: Callable[[], float] = _wall_clock_ms,
                 window_ms: float = DASHBOARD_CACHE_WINDOW_MS,
                 traffic_window: int = TRAFFIC_WINDOW,
                 closed_capacity: int = MAX_CLOSED_CONNECTIONS):
        self.clock = clock
        self.window_ms = window_ms
        self.group_rates = RateEstimator()
        self.detail_rates = RateEstimator()
        self.closed = ClosedConnectionTracker(closed_capacity)
        self.sampler = TrafficSampler(traffic_window, window_ms)

        self.page = PAGE_CONNECTIONS
        self.hidden = False
        self.view_mode = ViewMode.CURRENT
        self.expanded: Set[str] = set()
        self.sort_key = DEFAULT_SORT_KEY
        self.sort_dir = DESC
        self.search_query = ""
        self.status = StreamStatus.IDLE
        self.paused = False

        self.snapshot = ConnectionSnapshot()
        self.latest_snapshot = ConnectionSnapshot()
        self.display_groups: List[ConnectionGroup] = []
        self.accepted = 0
        self.frames = 0

    @property
    def dashboard_active(self) -> bool:
        return self.page == PAGE_DASHBOARD

    @property
    def connections_active(self) -> bool:
        return self.page == PAGE_CONNECTIONS

    @property
    def streaming_page(self) -> bool:
        """Only the dashboard and connections pages keep the stream open."""
        return self.dashboard_active or self.connections_active

    # --- per accepted snapshot ---

    def accept(self, raw: Any, now: Optional[float] = None) -> Optional[Frame]:
        """Normalizes one payload, diffs closures, estimates rates. Non-objects are ignored."""
        if not isinstance(raw, (dict, ConnectionSnapshot)):
            log.debug("ignoring non-object payload of type %s", type(raw).__name__)
            return None
        now = self.clock() if now is None else now
        snapshot = normalize(raw)
        self.latest_snapshot = snapshot
        self.accepted += 1

        vanished = self.closed.observe(snapshot, format_timestamp(now))
        if vanished:
            self.detail_rates.forget(vanished)

        groups: List[ConnectionGroup] = []
        if self.connections_active:
            groups = build_view(snapshot.groups, self.view_mode)
            self._estimate_rates(groups, now)
        if self.dashboard_active:
            snapshot = prune(snapshot, now, self.window_ms)
        return Frame(snapshot=snapshot, groups=groups, accepted_at=now, page=self.page)

    def _estimate_rates(self, groups: List[ConnectionGroup], now: float):
        self.group_rates.tick(((g.id, g.upload, g.download) for g in groups), now)
        detail_entries = []
        for group in groups:
            if group.id not in self.expanded:
                continue
            for i, detail in enumerate(group.details):
                detail_entries.append((detail_key(group.id, detail, i), detail.upload, detail.download))
        self.detail_rates.tick(detail_entries, now)

    # --- per rendered frame ---

    def flush(self, frame: Frame, now: Optional[float] = None) -> bool:
        """Applies a frame; frames built for another page are dropped, set_page already rebuilt the view."""
        if frame.page != self.page:
            log.debug("dropping frame built for page %s", frame.page)
            return False
        now = self.clock() if now is None else now
        self.snapshot = frame.snapshot
        self.display_groups = frame.groups
        self.frames += 1
        if self.dashboard_active:
            sessions = connection_stats(frame.snapshot)["totalSessions"]
            self.sampler.sample(frame.snapshot.upload_total, frame.snapshot.download_total, sessions, now)
        if self.search_query and self.expanded:
            self.expanded = prune_expanded(self.expanded, self.visible_groups())
        return True

    # --- console controls ---

    def set_page(self, page: str, now: Optional[float] = None) -> bool:
        if page not in PAGES or page == self.page:
            return False
        self.page = page
        self._reset_rates()
        self.display_groups = []
        # rebuild from the last unpruned snapshot, not from what the old page rendered
        if self.connections_active:
            self.snapshot = self.latest_snapshot
            self.display_groups = build_view(self.snapshot.groups, self.view_mode)
        elif self.dashboard_active:
            now = self.clock() if now is None else now
            self.snapshot = prune(self.latest_snapshot, now, self.window_ms)
        return True

    def set_view_mode(self, mode) -> bool:
        try:
            mode = ViewMode(mode)
        except ValueError:
            log.debug("ignoring unknown view mode %r", mode)
            return False
        if mode == self.view_mode:
            return False
        self.view_mode = mode
        self._reset_rates()
        self.expanded = set()
        if self.connections_active:
            self.display_groups = build_view(self.snapshot.groups, mode)
        return True

    def toggle_expanded(self, group_id: str) -> bool:
        """Returns True when the group is now expanded."""
        if group_id in self.expanded:
            self.expanded.discard(group_id)
            return False
        self.expanded.add(group_id)
        return True

    def toggle_sort(self, key: str):
        self.sort_key, self.sort_dir = toggle_sort(self.sort_key, self.sort_dir, key)

    def set_sort(self, key: str, direction: str):
        self.sort_key = key or DEFAULT_SORT_KEY
        self.sort_dir = ASC if direction == ASC else DESC

    def set_search(self, query: Optional[str]):
        self.search_query = (query or "").strip()

    # --- views ---

    def rate_lookup(self, group_id: str):
        return self.group_rates.rates.get(group_id)

    def visible_groups(self, sort_key: Optional[str] = None, sort_dir: Optional[str] = None,
                       query: Optional[str] = None) -> List[ConnectionGroup]:
        if not self.connections_active:
            return []
        return apply_view(
            self.display_groups,
            self.sort_key if sort_key is None else sort_key,
            self.sort_dir if sort_dir is None else sort_dir,
            self.search_query if query is None else query,
            self.rate_lookup,
        )

    def closed_view(self, query: Optional[str] = None):
        return filter_groups(self.closed.ledger, query)

    def find_group(self, group_id: str) -> Optional[ConnectionGroup]:
        for group in self.display_groups:
            if group.id == group_id:
                return group
        return None

    def state(self) -> Dict[str, Any]:
        stats = connection_stats(self.snapshot)
        visible = self.visible_groups()
        return {
            "type": "update",
            "status": self.status.value,
            "paused": self.paused,
            "page": self.page,
            "viewMode": self.view_mode.value,
            "sortKey": self.sort_key,
            "sortDir": self.sort_dir,
            "search": self.search_query,
            "expanded": sorted(self.expanded),
            "uploadTotal": self.snapshot.upload_total,
            "downloadTotal": self.snapshot.download_total,
            "totalSessions": stats["totalSessions"],
            "totalConnections": stats["totalConnections"],
            "connections": [g.to_dict() for g in visible],
            "domainSources": {g.id: domain_source_badge(g) for g in visible},
            "connRates": {k: v.to_dict() for k, v in self.group_rates.rates.items()},
            "detailRates": {k: v.to_dict() for k, v in self.detail_rates.rates.items()},
            "closedCount": len(self.closed),
            "traffic": self.sampler.to_list(),
        }

    def _reset_rates(self):
        self.group_rates.reset()
        self.detail_rates.reset()

    def reset(self):
        """Forgets every accumulated map; used when the stream source changes."""
        self._reset_rates()
        self.closed.reset()
        self.sampler.reset()
        self.snapshot = ConnectionSnapshot()
        self.latest_snapshot = ConnectionSnapshot()
        self.display_groups = []
        self.expanded = set()


class TelemetryService:
    """Binds a ConnectionTelemetry to a live subscription and a render coalescer."""

    def __init__(self, settings: Settings, telemetry: Optional[ConnectionTelemetry] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None, **subscription_options):
        self.settings = settings
        self.telemetry = telemetry or ConnectionTelemetry()
        self._transport = transport
        self._subscription_options = subscription_options
        self.client = ConnectionsClient(settings.api_base, settings.access_key, transport=transport)
        self.coalescer = RenderCoalescer(self._render)
        self.subscription: Optional[StreamSubscription] = None
        self._listeners: List[Callable[[ConnectionTelemetry], None]] = []
        # bumped on every teardown; fetches started under an older generation are discarded
        self.generation = 0
        self._idle_for_page = False
        self._refresh_task: Optional[asyncio.Task] = None

    def add_listener(self, callback: Callable[[ConnectionTelemetry], None]):
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[ConnectionTelemetry], None]):
        if callback in self._listeners:
            self._listeners.remove(callback)

    @property
    def running(self) -> bool:
        return self.subscription is not None

    def start(self):
        """(Re)creates the subscription for the current settings."""
        self._teardown()
        if self.telemetry.paused:
            self.telemetry.status = StreamStatus.PAUSED
            return
        if not self.telemetry.streaming_page:
            self._idle_for_page = True
            self.telemetry.status = StreamStatus.IDLE
            log.info("page %s does not stream, staying idle", self.telemetry.page)
            return
        self._idle_for_page = False
        self.subscription = StreamSubscription(
            self.client,
            self.settings.refresh_interval_ms,
            self._on_snapshot,
            self._on_status,
            **self._subscription_options,
        ).start()
        log.info("subscribed to %s every %d ms", self.client.api_base, self.settings.refresh_interval_ms)

    def stop(self):
        self._teardown()
        self.telemetry.status = StreamStatus.PAUSED if self.telemetry.paused else StreamStatus.IDLE

    def _teardown(self):
        self.generation += 1
        if self.subscription is not None:
            self.subscription.cancel()
            self.subscription = None
        self.coalescer.cancel()

    def _on_snapshot(self, payload: Dict[str, Any]):
        try:
            frame = self.telemetry.accept(payload)
        except Exception:
            log.exception("failed to accept snapshot")
            return
        if frame is not None:
            self.coalescer.push(frame)

    def _on_status(self, status: StreamStatus):
        self.telemetry.status = status

    def _render(self, frame: Frame):
        self.telemetry.flush(frame)
        for callback in list(self._listeners):
            try:
                callback(self.telemetry)
            except Exception:
                log.exception("render listener failed")

    def set_hidden(self, hidden: bool):
        """Switches flush pacing; coming back with nothing pending fetches a fresh snapshot."""
        hidden = bool(hidden)
        was_hidden = self.telemetry.hidden
        self.telemetry.hidden = hidden
        self.coalescer.set_hidden(hidden)
        if was_hidden and not hidden and self.running and self.coalescer.pending is None:
            self._refresh_task = asyncio.get_running_loop().create_task(self.refresh())

    def set_page(self, page: str) -> bool:
        """Changes page; leaving both streaming pages closes the stream, returning reopens it."""
        if not self.telemetry.set_page(page):
            return False
        if not self.telemetry.streaming_page:
            if self.running:
                self.stop()
                self._idle_for_page = True
        elif self._idle_for_page:
            self.start()
        return True

    def set_paused(self, paused: bool):
        paused = bool(paused)
        if paused == self.telemetry.paused:
            return
        self.telemetry.paused = paused
        if paused:
            self.stop()
        else:
            self.start()

    async def reconfigure(self, api_base: Optional[str] = None, access_key: Optional[str] = None,
                          refresh_interval: Optional[int] = None) -> bool:
        """Switches source or cadence; any change tears the stream down and starts over."""
        base = self.settings.api_base if api_base is None else normalize_api_base(api_base)
        key = self.settings.access_key if access_key is None else access_key.strip()
        refresh = (self.settings.refresh_interval if refresh_interval is None
                   else normalize_refresh_interval(refresh_interval))
        current = self.settings
        if subscription_key(base, key, refresh) == subscription_key(
                current.api_base, current.access_key, current.refresh_interval):
            return False
        source_changed = (base, key) != (self.settings.api_base, self.settings.access_key)
        self._teardown()
        self.settings.api_base, self.settings.access_key, self.settings.refresh_interval = base, key, refresh
        if source_changed:
            await self.client.aclose()
            self.client = ConnectionsClient(base, key, transport=self._transport)
            self.telemetry.reset()
        self.start()
        return True

    async def refresh(self) -> bool:
        """One-shot fetch pushed through the same path as a streamed snapshot."""
        generation = self.generation
        try:
            payload = await self.client.fetch_snapshot()
        except (TransportError, MalformedPayload) as exc:
            log.warning("snapshot refresh failed: %s", exc)
            return False
        if generation != self.generation or self.telemetry.paused:
            log.debug("discarding snapshot fetched before the stream was torn down")
            return False
        self._on_snapshot(payload)
        return True

    async def close_connections(self, ids: Iterable[Any]) -> List[int]:
        """Closes sessions on the core, then re-fetches. Raises ActionError on failure."""
        try:
            closed = await self.client.close_connections(ids)
        except ActionError as exc:
            log.warning("failed to close connections: %s", exc)
            raise
        if closed:
            await self.refresh()
        return closed

    async def aclose(self):
        self.stop()
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            self._refresh_task = None
        await self.client.aclose()
