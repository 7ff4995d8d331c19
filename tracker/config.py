"""Environment-driven settings and logging setup."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path

from loguru import logger


@dataclass(frozen=True)
class Settings:
    persist_path: Path | None = None
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        persist = os.getenv("TRACKER_PERSIST_PATH")
        return cls(
            persist_path=Path(persist) if persist else None,  # unset = memory only
            log_level=os.getenv("TRACKER_LOG_LEVEL", "INFO").upper(),
            host=os.getenv("TRACKER_HOST", "127.0.0.1"),
            port=int(os.getenv("TRACKER_PORT", "8000")),
        )


def configure_logging(settings: Settings) -> None:
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)
