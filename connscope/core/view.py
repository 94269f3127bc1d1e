# ==============================================================================
# FILE: core/view.py
# PURPOSE: Sorting, filtering and free-text search over table rows.
# ==============================================================================
import re
import unicodedata
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from .data_models import RateSample
from .grouping import connection_rule, destination_label, source_label

ASC = "asc"
DESC = "desc"
DEFAULT_SORT_KEY = "default"

RateLookup = Callable[[str], Optional[RateSample]]

# key -> (type, value getter)
SORT_FIELDS: Dict[str, Tuple[str, Callable[[Any], Any]]] = {
    "destination": ("string", lambda g: destination_label(g.metadata)),
    "source": ("string", lambda g: source_label(g.metadata)),
    "rule": ("string", connection_rule),
    "sessions": ("number", lambda g: g.connection_count or 1),
    "upload": ("number", lambda g: g.upload or 0),
    "download": ("number", lambda g: g.download or 0),
}

_DIGITS_RE = re.compile(r"(\d+)")


def natural_key(value: Any) -> Tuple:
    """Case and accent-insensitive key where digit runs compare numerically."""
    text = unicodedata.normalize("NFKD", str(value))
    text = "".join(ch for ch in text if not unicodedata.combining(ch)).casefold()
    return tuple((0, int(part), "") if part.isdigit() else (1, 0, part)
                 for part in _DIGITS_RE.split(text) if part)


def toggle_sort(current_key: str, current_dir: str, key: str) -> Tuple[str, str]:
    """Same key flips direction; a new key starts ascending for text, descending for numbers."""
    if not key or key == DEFAULT_SORT_KEY:
        return current_key, current_dir
    if key == current_key:
        return key, ASC if current_dir == DESC else DESC
    field = SORT_FIELDS.get(key)
    if field is None:
        return current_key, current_dir
    return key, ASC if field[0] == "string" else DESC


def sort_groups(groups: List[Any], sort_key: str, sort_dir: str, rate_lookup: Optional[RateLookup] = None) -> List[Any]:
    field = SORT_FIELDS.get(sort_key)
    if sort_key == DEFAULT_SORT_KEY or field is None:
        return list(groups)
    kind, getter = field
    reverse = sort_dir != ASC

    if kind == "string":
        return sorted(groups, key=lambda g: natural_key(getter(g)), reverse=reverse)

    def numeric(group):
        if sort_key in ("upload", "download"):
            rate = rate_lookup(group.id) if rate_lookup else None
            if rate is None:
                return 0
            return getattr(rate, sort_key) or 0
        return getter(group) or 0

    return sorted(groups, key=numeric, reverse=reverse)


def _collect_tokens(value: Any, out: List[str], seen: Set[int]):
    if value is None:
        return
    if isinstance(value, (str, int, float, bool)):
        out.append(str(value).lower() if isinstance(value, bool) else str(value))
        return
    if id(value) in seen:
        return
    seen.add(id(value))
    if isinstance(value, dict):
        for item in value.values():
            _collect_tokens(item, out, seen)
    elif isinstance(value, (list, tuple, set)):
        for item in value:
            _collect_tokens(item, out, seen)
    elif hasattr(value, "to_dict"):
        _collect_tokens(value.to_dict(), out, seen)


def to_search_text(value: Any) -> str:
    """Flattens every scalar in the object tree into one space-joined string."""
    tokens: List[str] = []
    _collect_tokens(value, tokens, set())
    return " ".join(tokens)


def normalize_query(query: Optional[str]) -> str:
    return (query or "").strip().lower()


def filter_groups(groups: Iterable[Any], query: Optional[str]) -> List[Any]:
    needle = normalize_query(query)
    if not needle:
        return list(groups)
    return [g for g in groups if needle in to_search_text(g).lower()]


def apply_view(groups: List[Any], sort_key: str, sort_dir: str, search_query: Optional[str],
               rate_lookup: Optional[RateLookup] = None) -> List[Any]:
    return filter_groups(sort_groups(groups, sort_key, sort_dir, rate_lookup), search_query)


def highlight(text: Any, query: Optional[str]) -> List[Tuple[str, bool]]:
    """Splits text into (segment, is_hit) pairs around case-insensitive matches."""
    text = "" if text is None else str(text)
    needle = normalize_query(query)
    if not text or not needle:
        return [(text, False)] if text else []
    # match on the original text; lower() can change its length
    parts = []
    cursor = 0
    for match in re.finditer(re.escape(needle), text, re.IGNORECASE):
        start, end = match.span()
        if start > cursor:
            parts.append((text[cursor:start], False))
        parts.append((text[start:end], True))
        cursor = end
    if cursor < len(text):
        parts.append((text[cursor:], False))
    return parts


def prune_expanded(expanded: Set[str], visible: Iterable[Any]) -> Set[str]:
    """Drops expanded row ids that are no longer visible."""
    if not expanded:
        return expanded
    visible_ids = {g.id for g in visible}
    kept = {row_id for row_id in expanded if row_id in visible_ids}
    return expanded if kept == expanded else kept
