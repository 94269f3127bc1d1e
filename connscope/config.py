# ==============================================================================
# FILE: config.py
# PURPOSE: Runtime settings and the helpers that normalize them.
# ==============================================================================
import os
import re
from dataclasses import dataclass
from urllib.parse import quote

CONNECTION_REFRESH_OPTIONS = (1, 2, 5, 10)
DEFAULT_CONNECTION_REFRESH = 1
ACCESS_KEY_QUERY = "access_key"

_ACCESS_KEY_PARAM_RE = re.compile(r"(?:^|[?&])access_key=")


def normalize_api_base(raw) -> str:
    value = str(raw or "").strip()
    if not value:
        return ""
    return value.rstrip("/")


def normalize_refresh_interval(value) -> int:
    """Refresh interval in seconds, restricted to the offered options."""
    try:
        num = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_CONNECTION_REFRESH
    if num in CONNECTION_REFRESH_OPTIONS:
        return num
    return DEFAULT_CONNECTION_REFRESH


def append_access_key_param(url: str, key: str) -> str:
    if not key:
        return url
    if _ACCESS_KEY_PARAM_RE.search(url):
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{ACCESS_KEY_QUERY}={quote(key, safe='')}"


def subscription_key(base: str, key: str, refresh) -> str:
    normalized_base = normalize_api_base(base)
    if not normalized_base:
        return ""
    return f"{normalized_base}||{(key or '').strip()}||{normalize_refresh_interval(refresh)}"


API_BASE = normalize_api_base(os.getenv("CONNSCOPE_API_BASE", "http://127.0.0.1:9090"))
ACCESS_KEY = os.getenv("CONNSCOPE_ACCESS_KEY", "").strip()
REFRESH_INTERVAL = normalize_refresh_interval(os.getenv("CONNSCOPE_REFRESH", DEFAULT_CONNECTION_REFRESH))
HOST = os.getenv("CONNSCOPE_HOST", "127.0.0.1")
PORT = int(os.getenv("CONNSCOPE_PORT", "8000"))
LOG_LEVEL = os.getenv("CONNSCOPE_LOG_LEVEL", "INFO")


@dataclass
class Settings:
    api_base: str = API_BASE
    access_key: str = ACCESS_KEY
    refresh_interval: int = REFRESH_INTERVAL
    host: str = HOST
    port: int = PORT
    log_level: str = LOG_LEVEL

    def __post_init__(self):
        self.api_base = normalize_api_base(self.api_base)
        self.access_key = (self.access_key or "").strip()
        self.refresh_interval = normalize_refresh_interval(self.refresh_interval)

    @property
    def refresh_interval_ms(self) -> int:
        return self.refresh_interval * 1000
