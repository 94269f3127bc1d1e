# ==============================================================================
# FILE: core/transport.py
# PURPOSE: HTTP client and push subscription for the core's telemetry API.
# ==============================================================================
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

import httpx

from ..config import append_access_key_param, normalize_api_base
from .data_models import StreamStatus
from .errors import ActionError, MalformedPayload, TransportError
from .grouping import normalize_connection_ids
from .normalizer import decode_payload, parse_payload

log = logging.getLogger("connscope.transport")

DEFAULT_RETRY_MS = 3000
STREAM_STALE_MULTIPLIER = 4
STREAM_STALE_MIN_MS = 4000
REQUEST_TIMEOUT_S = 10.0


@dataclass
class SseEvent:
    data: str = ""
    event: str = "message"
    id: Optional[str] = None
    retry: Optional[int] = None


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[SseEvent]:
    """Parses text/event-stream lines into events; blank lines dispatch."""
    data: List[str] = []
    event = SseEvent()
    async for line in lines:
        line = line.rstrip("\r\n")
        if not line:
            if data or event.retry is not None:
                event.data = "\n".join(data)
                yield event
            data = []
            event = SseEvent()
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data.append(value)
        elif name == "event":
            event.event = value or "message"
        elif name == "id":
            event.id = value
        elif name == "retry" and value.isdigit():
            event.retry = int(value)
    if data:
        event.data = "\n".join(data)
        yield event


class ConnectionsClient:
    """One-shot REST calls against {base}/connections."""

    def __init__(self, api_base: str, access_key: str = "", transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_base = normalize_api_base(api_base)
        self.access_key = access_key or ""
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(transport=self._transport, timeout=REQUEST_TIMEOUT_S)
        return self._client

    def url(self, path: str) -> str:
        return append_access_key_param(f"{self.api_base}{path}", self.access_key)

    def stream_url(self, interval_ms: int) -> str:
        return self.url(f"/connections/stream?interval={int(interval_ms)}")

    async def fetch_snapshot(self) -> Dict[str, Any]:
        try:
            resp = await self.http.get(self.url("/connections"))
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise TransportError(f"GET /connections failed: {exc}") from exc
        if resp.status_code >= 400:
            raise TransportError(f"GET /connections answered {resp.status_code}")
        return decode_payload(resp.text)

    async def close_connections(self, ids: Iterable[Any]) -> List[int]:
        """Asks the core to close sessions; returns the ids actually sent."""
        normalized = normalize_connection_ids(ids)
        if not normalized:
            return []
        try:
            resp = await self.http.post(self.url("/connections/close"), json={"ids": normalized})
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise ActionError(f"close request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise ActionError(resp.text or resp.reason_phrase or f"HTTP {resp.status_code}")
        return normalized

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class StreamSubscription:
    """
    A cancelable push subscription to {base}/connections/stream.

    Reconnects forever with the server-advertised retry delay; transport
    failures only ever surface through on_status(RECONNECTING). Once
    cancel() has been called no callback fires again.
    """

    def __init__(self, client: ConnectionsClient, interval_ms: int,
                 on_snapshot: Callable[[Dict[str, Any]], None],
                 on_status: Optional[Callable[[StreamStatus], None]] = None,
                 retry_ms: int = DEFAULT_RETRY_MS, initial_fetch: bool = True):
        self.client = client
        self.interval_ms = int(interval_ms)
        self.retry_ms = retry_ms
        self.initial_fetch = initial_fetch
        self.status: Optional[StreamStatus] = None
        self.disposed = False
        self.last_snapshot_at = 0.0
        self._on_snapshot = on_snapshot
        self._on_status = on_status
        self._tasks: List[asyncio.Task] = []

    @property
    def stale_threshold_ms(self) -> int:
        return max(self.interval_ms * STREAM_STALE_MULTIPLIER, STREAM_STALE_MIN_MS)

    def start(self) -> "StreamSubscription":
        self._set_status(StreamStatus.CONNECTING)
        self._tasks.append(asyncio.create_task(self._run(), name="connscope-stream"))
        self._tasks.append(asyncio.create_task(self._watchdog(), name="connscope-watchdog"))
        return self

    def cancel(self):
        self.disposed = True
        for task in self._tasks:
            task.cancel()
        self._tasks = []

    def _set_status(self, status: StreamStatus):
        if self.disposed:
            return
        self.status = status
        if self._on_status:
            self._on_status(status)

    def _deliver(self, payload: Dict[str, Any]) -> bool:
        if self.disposed:
            return False
        self.last_snapshot_at = time.monotonic()
        self._on_snapshot(payload)
        return True

    def _handle_message(self, text: str):
        payload = parse_payload(text)
        if payload is None:
            return
        if self._deliver(payload):
            self._set_status(StreamStatus.LIVE)

    async def fetch_once(self) -> bool:
        """One-shot GET used on startup and when the stream goes quiet."""
        try:
            payload = await self.client.fetch_snapshot()
        except (TransportError, MalformedPayload) as exc:
            log.debug("snapshot fetch failed: %s", exc)
            return False
        return self._deliver(payload)

    async def _run(self):
        if self.initial_fetch:
            await self.fetch_once()
        url = self.client.stream_url(self.interval_ms)
        timeout = httpx.Timeout(REQUEST_TIMEOUT_S, read=None)
        while not self.disposed:
            try:
                async with self.client.http.stream(
                    "GET", url, headers={"Accept": "text/event-stream"}, timeout=timeout
                ) as resp:
                    if resp.status_code >= 400:
                        raise TransportError(f"stream answered {resp.status_code}")
                    self._set_status(StreamStatus.LIVE)
                    async for event in iter_sse(resp.aiter_lines()):
                        if event.retry is not None:
                            self.retry_ms = event.retry
                        if event.event == "message" and event.data:
                            self._handle_message(event.data)
                log.info("telemetry stream ended, reconnecting")
            except (httpx.HTTPError, httpx.InvalidURL, TransportError) as exc:
                log.warning("telemetry stream error: %s", exc)
            if self.disposed:
                break
            self._set_status(StreamStatus.RECONNECTING)
            await asyncio.sleep(self.retry_ms / 1000)

    async def _watchdog(self):
        threshold = self.stale_threshold_ms / 1000
        while not self.disposed:
            await asyncio.sleep(threshold)
            if self.disposed:
                break
            quiet = not self.last_snapshot_at or time.monotonic() - self.last_snapshot_at >= threshold
            if quiet:
                await self.fetch_once()


def subscribe(endpoint: str, interval_ms: int, on_snapshot: Callable[[Dict[str, Any]], None],
              on_status: Optional[Callable[[StreamStatus], None]] = None, access_key: str = "",
              transport: Optional[httpx.AsyncBaseTransport] = None, **options) -> StreamSubscription:
    """Opens a subscription on the running event loop."""
    client = ConnectionsClient(endpoint, access_key, transport=transport)
    return StreamSubscription(client, interval_ms, on_snapshot, on_status, **options).start()
