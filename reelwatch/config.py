import logging
import os
from dataclasses import dataclass
from typing import Optional

import structlog


def _float_from_env(var_name: str, default: float) -> float:
    raw = os.getenv(var_name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


@dataclass
class Settings:
    gemini_api_key: Optional[str] = os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY")
    gemini_base_url: str = os.getenv(
        "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
    ).rstrip("/")
    video_model: str = os.getenv("REELWATCH_VIDEO_MODEL", "veo-3.1-fast-generate-preview")
    video_resolution: str = os.getenv("REELWATCH_VIDEO_RESOLUTION", "720p")
    # Veo jobs take minutes; polling faster only burns quota
    poll_interval_seconds: float = _float_from_env("REELWATCH_POLL_INTERVAL", 10.0)
    api_key: Optional[str] = os.getenv("REELWATCH_API_KEY")
    app_env: str = os.getenv("REELWATCH_ENV", "development")
    log_level: str = os.getenv("REELWATCH_LOG_LEVEL", "INFO")

    def __post_init__(self) -> None:
        try:
            interval = float(self.poll_interval_seconds)
        except (TypeError, ValueError):
            interval = 10.0
        if interval != interval:
            interval = 10.0
        self.poll_interval_seconds = max(0.01, interval)
        self.gemini_base_url = self.gemini_base_url.rstrip("/")
        self.gemini_api_key = self.gemini_api_key or None


def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings) -> None:
    """Configure structlog: JSON lines in production, console output otherwise."""
    if settings.app_env == "production":
        renderer = structlog.processors.JSONRenderer()
        extra = [structlog.processors.StackInfoRenderer(), structlog.processors.format_exc_info]
    else:
        renderer = structlog.dev.ConsoleRenderer()
        extra = []

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            *extra,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_level_number(settings.log_level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _level_number(level_name: str) -> int:
    level = logging.getLevelName((level_name or "").upper())
    return level if isinstance(level, int) else logging.INFO
