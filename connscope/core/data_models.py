# ==============================================================================
# FILE: core/data_models.py
# PURPOSE: Defines shared data structures and constants.
# ==============================================================================
import enum
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

MAX_CLOSED_CONNECTIONS = 500
DASHBOARD_CACHE_WINDOW_MS = 30 * 1000
TRAFFIC_WINDOW = max(2, round(DASHBOARD_CACHE_WINDOW_MS / 1000))

Timestamp = Union[str, int, float, None]

# Go emits nanosecond fractions; datetime only takes microseconds.
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


class StreamStatus(str, enum.Enum):
    CONNECTING = "connecting"
    LIVE = "live"
    RECONNECTING = "reconnecting"
    PAUSED = "paused"
    IDLE = "idle"


class ViewMode(str, enum.Enum):
    CURRENT = "current"
    SOURCE = "source"
    DESTINATION = "destination"


def parse_timestamp(value: Timestamp) -> float:
    """Returns epoch milliseconds, or 0 when the value carries no usable time."""
    if value is None or value == "" or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else 0
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(r"\1", text)
    try:
        return datetime.fromisoformat(text).timestamp() * 1000
    except ValueError:
        return 0


def format_timestamp(ms: float) -> str:
    """Epoch milliseconds as an ISO-8601 UTC string, e.g. 2024-05-01T10:00:00.000Z."""
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


@dataclass
class ConnectionDetail:
    id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    upload: int = 0
    download: int = 0
    start: Timestamp = ""
    last_seen: Timestamp = ""
    rule: str = ""
    rule_payload: str = ""
    chains: List[str] = field(default_factory=list)
    closed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "id": self.id,
            "metadata": dict(self.metadata),
            "upload": self.upload,
            "download": self.download,
            "start": self.start,
            "lastSeen": self.last_seen,
            "rule": self.rule,
            "rulePayload": self.rule_payload,
            "chains": list(self.chains),
        }
        if self.closed_at is not None:
            out["closedAt"] = self.closed_at
        return out


@dataclass
class ConnectionGroup:
    id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    upload: int = 0
    download: int = 0
    connection_count: int = 1
    start: Timestamp = ""
    last_seen: Timestamp = ""
    details: List[ConnectionDetail] = field(default_factory=list)
    rule: str = ""
    rule_payload: str = ""
    chains: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "metadata": dict(self.metadata),
            "upload": self.upload,
            "download": self.download,
            "connectionCount": self.connection_count,
            "start": self.start,
            "lastSeen": self.last_seen,
            "rule": self.rule,
            "rulePayload": self.rule_payload,
            "chains": list(self.chains),
            "details": [d.to_dict() for d in self.details],
        }


@dataclass
class ConnectionSnapshot:
    upload_total: int = 0
    download_total: int = 0
    groups: List[ConnectionGroup] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uploadTotal": self.upload_total,
            "downloadTotal": self.download_total,
            "connections": [g.to_dict() for g in self.groups],
        }


@dataclass
class RateSample:
    upload: float = 0.0
    download: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {"upload": self.upload, "download": self.download}


@dataclass
class ClosedConnectionRecord:
    """A group-shaped row holding one vanished session."""
    id: str
    closed_at: str
    detail: ConnectionDetail
    metadata: Dict[str, Any] = field(default_factory=dict)
    upload: int = 0
    download: int = 0
    start: Timestamp = ""
    rule: str = ""
    rule_payload: str = ""
    chains: List[str] = field(default_factory=list)
    connection_count: int = 1

    @property
    def last_seen(self) -> str:
        return self.closed_at

    @property
    def details(self) -> List[ConnectionDetail]:
        return [self.detail]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "closedAt": self.closed_at,
            "metadata": dict(self.metadata),
            "upload": self.upload,
            "download": self.download,
            "start": self.start,
            "lastSeen": self.closed_at,
            "connectionCount": self.connection_count,
            "rule": self.rule,
            "rulePayload": self.rule_payload,
            "chains": list(self.chains),
            "details": [self.detail.to_dict()],
        }


@dataclass
class TrafficSample:
    time: float
    up: int
    down: int
    total_up: int
    total_down: int
    sessions: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "time": self.time,
            "up": self.up,
            "down": self.down,
            "totalUp": self.total_up,
            "totalDown": self.total_down,
            "sessions": self.sessions,
        }
