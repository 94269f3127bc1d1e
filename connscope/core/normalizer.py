# ==============================================================================
# FILE: core/normalizer.py
# PURPOSE: Turns raw telemetry payloads into ConnectionSnapshot objects.
# ==============================================================================
import json
import logging
import math
from typing import Any, Dict, List, Optional

from .data_models import ConnectionDetail, ConnectionGroup, ConnectionSnapshot
from .errors import MalformedPayload

log = logging.getLogger("connscope.normalizer")


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        num = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(num):
        return 0
    return int(num)


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _to_meta(value: Any) -> Dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def _to_chains(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


def _pick(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return ""


def decode_payload(text: Any) -> Dict[str, Any]:
    """Decodes one message body; raises MalformedPayload on anything but a JSON object."""
    if isinstance(text, (bytes, bytearray)):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedPayload("payload is not utf-8") from exc
    if not isinstance(text, str) or not text.strip():
        raise MalformedPayload("empty payload")
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise MalformedPayload(f"invalid json: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedPayload(f"expected object, got {type(data).__name__}")
    return data


def parse_payload(text: Any) -> Optional[Dict[str, Any]]:
    """Like decode_payload() but returns None for malformed input."""
    try:
        return decode_payload(text)
    except MalformedPayload as exc:
        log.debug("dropping malformed payload: %s", exc)
        return None


def normalize_detail(raw: Dict[str, Any], group_id: str, index: int) -> ConnectionDetail:
    detail_id = _to_text(raw.get("id"))
    return ConnectionDetail(
        id=detail_id or f"{group_id}-{index}",
        metadata=_to_meta(raw.get("metadata")),
        upload=_to_int(raw.get("upload")),
        download=_to_int(raw.get("download")),
        start=_pick(raw, "start"),
        last_seen=_pick(raw, "lastSeen", "last_seen", "LastSeen"),
        rule=_to_text(raw.get("rule")),
        rule_payload=_to_text(raw.get("rulePayload")),
        chains=_to_chains(raw.get("chains")),
    )


def normalize_group(raw: Dict[str, Any], index: int) -> ConnectionGroup:
    group_id = _to_text(raw.get("id")) or f"group-{index}"
    raw_details = raw.get("details")
    details = []
    if isinstance(raw_details, list):
        for i, item in enumerate(raw_details):
            if isinstance(item, dict):
                details.append(normalize_detail(item, group_id, i))
    count = _to_int(raw.get("connectionCount"))
    return ConnectionGroup(
        id=group_id,
        metadata=_to_meta(raw.get("metadata")),
        upload=_to_int(raw.get("upload")),
        download=_to_int(raw.get("download")),
        connection_count=count if count > 0 else 1,
        start=_pick(raw, "start"),
        last_seen=_pick(raw, "lastSeen", "last_seen", "LastSeen"),
        details=details,
        rule=_to_text(raw.get("rule")),
        rule_payload=_to_text(raw.get("rulePayload")),
        chains=_to_chains(raw.get("chains")),
    )


def normalize(raw: Any) -> ConnectionSnapshot:
    """Builds a snapshot from a decoded payload. Never raises."""
    if isinstance(raw, ConnectionSnapshot):
        return raw
    if not isinstance(raw, dict):
        return ConnectionSnapshot()
    raw_groups = raw.get("connections")
    groups = []
    if isinstance(raw_groups, list):
        for i, item in enumerate(raw_groups):
            if isinstance(item, dict):
                groups.append(normalize_group(item, i))
    return ConnectionSnapshot(
        upload_total=_to_int(raw.get("uploadTotal")),
        download_total=_to_int(raw.get("downloadTotal")),
        groups=groups,
    )


def connection_stats(snapshot: ConnectionSnapshot) -> Dict[str, int]:
    total_sessions = sum(g.connection_count if g.connection_count > 0 else 1 for g in snapshot.groups)
    return {
        "totalSessions": total_sessions,
        "totalConnections": len(snapshot.groups),
    }
