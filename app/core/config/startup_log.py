from __future__ import annotations

import logging
from typing import Final

from app.core.config.settings import BASE_DIR, Settings, get_settings

logger = logging.getLogger(__name__)

_REDACT_VALUE: Final[str] = "***"
_REDACTED_SETTINGS: Final[tuple[str, ...]] = ("DATABASE_URL",)


def log_startup_config() -> None:
    settings = get_settings()
    if not settings.startup_log_config:
        return

    env_files = (BASE_DIR / ".env", BASE_DIR / ".env.local")
    env_file_status = ", ".join(f"{path.name}={'present' if path.exists() else 'missing'}" for path in env_files)
    logger.info("Startup config: env_files=[%s]", env_file_status)
    _log_settings(settings)


def _log_settings(settings: Settings) -> None:
    data = settings.model_dump(mode="json")
    logger.info("Startup settings snapshot:")
    for key, value in sorted(data.items(), key=lambda kv: kv[0]):
        logger.info("  %s=%s", key, _redact_setting_value(key, value))


def _redact_setting_value(key: str, value: object) -> object:
    if key.upper() in _REDACTED_SETTINGS:
        return _REDACT_VALUE
    return value
