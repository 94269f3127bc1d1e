# ==============================================================================
# FILE: core/closed.py
# PURPOSE: Detects vanished sessions and keeps a bounded ledger of them.
# ==============================================================================
import collections
import dataclasses
import logging
from typing import Deque, Dict, List, Tuple

from .data_models import (
    MAX_CLOSED_CONNECTIONS, ClosedConnectionRecord, ConnectionDetail,
    ConnectionGroup, ConnectionSnapshot
)

log = logging.getLogger("connscope.closed")

DetailIndex = Dict[str, Tuple[ConnectionGroup, ConnectionDetail]]


def index_details(snapshot: ConnectionSnapshot) -> DetailIndex:
    """Maps every detail id in the snapshot to its (group, detail) pair."""
    index: DetailIndex = {}
    for group in snapshot.groups:
        for i, detail in enumerate(group.details):
            detail_id = str(detail.id) if detail.id else f"{group.id}-{i}"
            index[detail_id] = (group, detail)
    return index


def to_closed_record(group: ConnectionGroup, detail: ConnectionDetail, closed_at: str) -> ClosedConnectionRecord:
    closed_detail = dataclasses.replace(
        detail,
        metadata=dict(detail.metadata),
        chains=list(detail.chains),
        last_seen=closed_at,
        closed_at=closed_at,
    )
    metadata = dict(group.metadata)
    metadata.update(detail.metadata)
    record_id = f"{detail.id}@{closed_at}" if detail.id else f"{group.id or 'closed'}@{closed_at}"
    return ClosedConnectionRecord(
        id=record_id,
        closed_at=closed_at,
        detail=closed_detail,
        metadata=metadata,
        upload=detail.upload,
        download=detail.download,
        start=detail.start or group.start or "",
        rule=detail.rule or group.rule or "",
        rule_payload=detail.rule_payload or group.rule_payload or "",
        chains=list(detail.chains or group.chains),
    )


class ClosedConnectionTracker:
    """
    Diffs the detail ids of consecutive snapshots. Every id present in the
    previous snapshot but missing from the new one becomes a record at the
    head of the ledger. The ledger is capped; the oldest records fall off.
    """

    def __init__(self, capacity: int = MAX_CLOSED_CONNECTIONS):
        self.capacity = capacity
        self._ledger: Deque[ClosedConnectionRecord] = collections.deque(maxlen=capacity)
        self._previous: DetailIndex = {}

    @property
    def ledger(self) -> List[ClosedConnectionRecord]:
        """Newest first."""
        return list(self._ledger)

    def __len__(self) -> int:
        return len(self._ledger)

    def observe(self, snapshot: ConnectionSnapshot, closed_at: str) -> List[str]:
        """Processes one accepted snapshot and returns the ids that vanished."""
        current = index_details(snapshot)
        vanished = [detail_id for detail_id in self._previous if detail_id not in current]
        if vanished:
            batch = [to_closed_record(*self._previous[detail_id], closed_at) for detail_id in vanished]
            # extendleft reverses, so feed the batch backwards to keep its order at the head
            self._ledger.extendleft(reversed(batch))
            log.debug("%d session(s) closed, ledger at %d", len(batch), len(self._ledger))
        self._previous = current
        return vanished

    def reset(self):
        self._ledger.clear()
        self._previous = {}
