"""Startup-time helpers for safe config logging."""

from pydantic_settings import BaseSettings

from bgpay.common.logging import logger

_SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def redacted_settings(config: BaseSettings) -> dict[str, object]:
    """Settings as a flat dict with secret-looking fields masked."""

    safe = {}
    for name, value in config.model_dump().items():
        if any(marker in name for marker in _SECRET_MARKERS):
            safe[name] = "<redacted>" if value else "<unset>"
        else:
            safe[name] = value
    return safe


def log_startup_config(config: BaseSettings) -> None:
    logger.info("startup_config=%s", redacted_settings(config))
