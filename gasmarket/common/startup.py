"""Redacted configuration snapshot logged when a process boots."""

from urllib.parse import urlsplit, urlunsplit

from gasmarket.common.config import CommonSettings
from gasmarket.common.logging import logger

SECRET_MARKERS = ("key", "secret", "password", "token")


def _redact(field: str, value):
    if value is None:
        return "<unset>"
    if any(marker in field for marker in SECRET_MARKERS):
        return "<redacted>"
    if isinstance(value, str) and "://" in value:
        parts = urlsplit(value)
        if parts.username or parts.password:
            host = parts.hostname or ""
            if parts.port:
                host = f"{host}:{parts.port}"
            return urlunsplit((parts.scheme, f"<redacted>@{host}", parts.path, parts.query, parts.fragment))
    return value


def config_snapshot(settings: CommonSettings, fields: list[str]) -> dict:
    """Selected settings with credentials removed."""

    values = settings.model_dump()
    return {field: _redact(field, values.get(field)) for field in fields}


def log_startup_config(settings: CommonSettings, fields: list[str]) -> None:
    logger.info("startup_config service=%s config=%s", settings.service_name, config_snapshot(settings, fields))
