# ==============================================================================
# FILE: core/grouping.py
# PURPOSE: Re-buckets live sessions by source or destination.
# ==============================================================================
import math
from typing import Any, Dict, Iterable, List, Union

from .data_models import ConnectionDetail, ConnectionGroup, ViewMode, parse_timestamp

UNKNOWN = "unknown"
MIXED = "mixed"
DEFAULT_SOURCE = "0.0.0.0"

_DOMAIN_SOURCES = {"dns": "dns", "sni": "sni", "sniff": "sniff", "sniffer": "sniff", "mixed": "mixed"}


def destination_label(meta: Dict[str, Any], fallback: str = UNKNOWN) -> str:
    meta = meta or {}
    return meta.get("host") or meta.get("destinationIP") or fallback


def source_label(meta: Dict[str, Any], fallback: str = DEFAULT_SOURCE) -> str:
    meta = meta or {}
    return meta.get("sourceIP") or fallback


def merge_label(current: str, incoming: str) -> str:
    """unknown+X=X, X+X=X, X+Y=mixed."""
    if not current or current == UNKNOWN:
        return incoming or UNKNOWN
    if not incoming or incoming == UNKNOWN:
        return current
    if current == incoming:
        return current
    return MIXED


def normalize_domain_source(value: Any) -> str:
    return _DOMAIN_SOURCES.get(str(value or "").strip().lower(), "")


def merge_domain_source(current: Any, incoming: Any) -> str:
    current = normalize_domain_source(current)
    incoming = normalize_domain_source(incoming)
    if not current:
        return incoming
    if not incoming or current == incoming:
        return current
    return MIXED


def domain_source_badge(group) -> str:
    merged = normalize_domain_source(group.metadata.get("domainSource"))
    for detail in group.details:
        merged = merge_domain_source(merged, detail.metadata.get("domainSource"))
    return merged.upper()


def connection_rule(group) -> str:
    direct = (group.rule_payload or group.rule or "").strip()
    if direct:
        return direct
    merged = ""
    for detail in group.details:
        value = (detail.rule_payload or detail.rule or "").strip()
        if not value:
            continue
        if not merged:
            merged = value
        elif merged != value:
            return MIXED
    return merged or "-"


def detail_key(group_id: str, detail: ConnectionDetail, index: int) -> str:
    return str(detail.id) if detail.id else f"{group_id}-{index}"


def normalize_connection_ids(ids: Iterable[Union[str, int, float]]) -> List[int]:
    """Numeric, positive, de-duplicated ids in first-seen order."""
    seen = set()
    out = []
    for value in ids or []:
        if isinstance(value, bool):
            continue
        try:
            num = float(value)
        except (TypeError, ValueError):
            continue
        if not math.isfinite(num):
            continue
        normalized = int(num)
        if normalized <= 0 or normalized in seen:
            continue
        seen.add(normalized)
        out.append(normalized)
    return out


def group_close_ids(group: ConnectionGroup) -> List[int]:
    ids = [d.id for d in group.details]
    if not ids:
        ids = [group.id]
    return normalize_connection_ids(ids)


def _newest_first(items):
    return sorted(items, key=lambda item: parse_timestamp(item.last_seen), reverse=True)


def build_view(groups: List[ConnectionGroup], mode: Union[ViewMode, str]) -> List[ConnectionGroup]:
    """
    Returns the table rows for a view mode.

    `current` hands back the input list untouched. `source` and `destination`
    pool every detail and synthesize one row per source IP or destination,
    merging the labels of the other axis.
    """
    mode = ViewMode(mode)
    if mode == ViewMode.CURRENT:
        return groups

    buckets: Dict[str, ConnectionGroup] = {}
    labels: Dict[str, List[str]] = {}

    for conn in groups:
        for detail in conn.details:
            source = source_label(detail.metadata)
            dest = destination_label(detail.metadata)
            key = source if mode == ViewMode.SOURCE else dest
            bucket_id = f"{mode.value}:{key}"

            bucket = buckets.get(bucket_id)
            if bucket is None:
                bucket = ConnectionGroup(
                    id=bucket_id,
                    metadata={"sourceIP": source, "host": dest},
                    connection_count=0,
                    start=detail.start or conn.start or "",
                    last_seen=detail.last_seen or "",
                )
                buckets[bucket_id] = bucket
                labels[bucket_id] = [source, dest]

            bucket.metadata["domainSource"] = merge_domain_source(
                bucket.metadata.get("domainSource"), detail.metadata.get("domainSource")
            )
            bucket.upload += detail.upload
            bucket.download += detail.download
            bucket.connection_count += 1
            bucket.details.append(detail)

            detail_start = detail.start or conn.start or ""
            start_ts = parse_timestamp(detail_start)
            if start_ts and (not parse_timestamp(bucket.start) or start_ts < parse_timestamp(bucket.start)):
                bucket.start = detail_start
            last_ts = parse_timestamp(detail.last_seen)
            if last_ts and last_ts > parse_timestamp(bucket.last_seen):
                bucket.last_seen = detail.last_seen

            pair = labels[bucket_id]
            pair[0] = merge_label(pair[0], source)
            pair[1] = merge_label(pair[1], dest)

    result = []
    for bucket_id, bucket in buckets.items():
        merged_source, merged_dest = labels[bucket_id]
        bucket.metadata["sourceIP"] = merged_source or bucket.metadata["sourceIP"]
        bucket.metadata["host"] = merged_dest or bucket.metadata["host"]
        bucket.details = _newest_first(bucket.details)
        result.append(bucket)

    return _newest_first(result)
