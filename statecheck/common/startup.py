"""Startup-time helpers for safe config logging."""

from urllib.parse import urlsplit, urlunsplit

from statecheck.common.config import HarnessSettings
from statecheck.common.logging import logger

_SECRET_MARKERS = ("key", "secret", "password", "token")


def _safe_value(name: str, value):
    """Redact secret-like settings and credentials embedded in URLs."""

    if any(marker in name for marker in _SECRET_MARKERS):
        return "<redacted>"
    if isinstance(value, str) and "@" in value and "://" in value:
        parts = urlsplit(value)
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
        return urlunsplit((parts.scheme, f"<redacted>@{host}", parts.path, parts.query, parts.fragment))
    return value


def log_startup_config(config: HarnessSettings, graph: str) -> dict:
    """Log the effective settings for one run and return what was logged."""

    snapshot = {"graph": graph}
    for name, value in config.model_dump().items():
        snapshot[name] = _safe_value(name, value)
    logger.info("startup_config=%s", snapshot)
    return snapshot
