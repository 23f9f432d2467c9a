"""
Runtime configuration for the Verax verdict core.

Thresholds live beside the code that uses them as module constants.
Only logging is configurable from the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


VALID_LOG_FORMATS = ("console", "json")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "console"  # "console" | "json"

    def __post_init__(self):
        if self.format not in VALID_LOG_FORMATS:
            raise ValueError(
                f"log format must be one of {VALID_LOG_FORMATS}, got '{self.format}'"
            )


def load_logging_config(environ: Optional[Mapping[str, str]] = None) -> LoggingConfig:
    """Read VERAX_LOG_LEVEL and VERAX_LOG_FORMAT, falling back to defaults."""
    if environ is None:
        environ = os.environ

    return LoggingConfig(
        level=environ.get("VERAX_LOG_LEVEL", "INFO").upper(),
        format=environ.get("VERAX_LOG_FORMAT", "console").lower(),
    )
