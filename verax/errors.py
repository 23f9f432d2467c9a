"""
Error taxonomy for the Verax verdict core.

Only shape violations and unreadable persisted runs are raised.
Evidence insufficiency, integrity violations and non-determinism are
returned as structured results instead.
"""

from __future__ import annotations

from typing import Optional


class VeraxError(Exception):
    """Base class so CLI layers can map core failures to stable exit codes."""
    pass


class SilenceRecordError(VeraxError):
    """Raised when a silence entry is missing scope, reason or description."""
    pass


class FindingContractError(VeraxError):
    """Raised when a Finding fails its shape contract at construction time."""
    pass


class DataError(VeraxError):
    """
    Raised when a persisted run cannot be read.

    Carries the missing or corrupt artifact name and the run directory
    so the caller can report exactly what is absent.
    """

    def __init__(
        self,
        message: str,
        artifact: Optional[str] = None,
        run_dir: Optional[str] = None,
    ):
        self.artifact = artifact
        self.run_dir = run_dir
        super().__init__(message)
