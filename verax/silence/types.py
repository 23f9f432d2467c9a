"""
Silence taxonomy — closed enums shared by the silence model, promise
association and impact accounting.

Every raw string that crosses the Observe boundary is parsed into one of
these enums exactly once. An unrecognized reason lands on a single,
flagged fallback member instead of a missed string comparison.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


# =============================================================================
# SCOPE
# =============================================================================

class SilenceScope(Enum):
    """Where the silence happened."""
    PAGE = "page"
    INTERACTION = "interaction"
    EXPECTATION = "expectation"
    SENSOR = "sensor"
    NAVIGATION = "navigation"
    SETTLE = "settle"

    @classmethod
    def parse(cls, value) -> Optional["SilenceScope"]:
        """Return the matching scope, or None when the value is not recognized."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


# =============================================================================
# REASON (raw cause emitted by Observe)
# =============================================================================

class SilenceReason(Enum):
    """
    Closed catalog of silence reasons.

    Values use the hyphenated spelling. parse() also accepts underscores
    and a few legacy aliases.
    """
    # Budget
    SCAN_TIME_EXCEEDED = "scan-time-exceeded"
    PAGE_LIMIT_EXCEEDED = "page-limit-exceeded"
    INTERACTION_LIMIT_EXCEEDED = "interaction-limit-exceeded"
    ROUTE_LIMIT_EXCEEDED = "route-limit-exceeded"

    # Timeouts
    NAVIGATION_TIMEOUT = "navigation-timeout"
    INTERACTION_TIMEOUT = "interaction-timeout"
    SETTLE_TIMEOUT = "settle-timeout"
    LOAD_TIMEOUT = "load-timeout"

    # Safety
    DESTRUCTIVE_TEXT = "destructive-text-blocked"
    EXTERNAL_NAVIGATION = "external-navigation"
    UNSAFE_PATTERN = "unsafe-pattern"

    # Incremental
    INCREMENTAL_UNCHANGED = "incremental-unchanged"

    # Discovery
    DISCOVERY_ERROR = "discovery-error"
    NO_MATCHING_SELECTOR = "no-matching-selector"

    # Expectation
    NO_EXPECTATION = "no-expectation"
    EXPECTATION_NOT_REACHABLE = "expectation-not-reachable"

    # Navigation
    EXTERNAL_BLOCKED = "external-blocked"
    ORIGIN_MISMATCH = "origin-mismatch"

    # Sensor
    SENSOR_UNAVAILABLE = "sensor-unavailable"
    SENSOR_FAILED = "sensor-failed"

    # Fallback for anything outside the catalog
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value) -> "SilenceReason":
        """
        Map a raw reason string onto the catalog.

        Never raises. Anything unrecognized becomes UNKNOWN; the caller is
        responsible for flagging it.
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return cls.UNKNOWN

        key = value.strip().lower().replace("_", "-")
        key = _REASON_ALIASES.get(key, key)
        try:
            reason = cls(key)
        except ValueError:
            return cls.UNKNOWN
        return reason


_REASON_ALIASES = {
    "destructive-text": "destructive-text-blocked",
    "destructive-text-block": "destructive-text-blocked",
    "sensor-failure": "sensor-failed",
    "selector-not-found": "no-matching-selector",
}


# =============================================================================
# SILENCE TYPE (technical classification, derived from reason)
# =============================================================================

class SilenceType(Enum):
    INTERACTION_NOT_EXECUTED = "interaction_not_executed"
    PROMISE_NOT_EVALUATED = "promise_not_evaluated"
    PROMISE_VERIFICATION_BLOCKED = "promise_verification_blocked"
    SENSOR_FAILURE = "sensor_failure"
    SELECTOR_NOT_FOUND = "selector_not_found"
    DISCOVERY_FAILURE = "discovery_failure"
    INTERACTION_TIMEOUT = "interaction_timeout"
    NAVIGATION_TIMEOUT = "navigation_timeout"
    SETTLE_TIMEOUT = "settle_timeout"
    BUDGET_LIMIT_EXCEEDED = "budget_limit_exceeded"
    SAFETY_POLICY_BLOCK = "safety_policy_block"
    INCREMENTAL_REUSE = "incremental_reuse"
    UNKNOWN_SILENCE = "unknown_silence"


class EvaluationStatus(Enum):
    """How an unobserved state should be interpreted."""
    BLOCKED = "blocked"          # Intentionally blocked (safety policy)
    AMBIGUOUS = "ambiguous"      # Cannot tell what would have happened
    SKIPPED = "skipped"          # Deferred by policy (budget, incremental reuse)
    TIMED_OUT = "timed_out"
    INCOMPLETE = "incomplete"

    @classmethod
    def parse(cls, value) -> Optional["EvaluationStatus"]:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class SilenceOutcome(Enum):
    """
    Canonical outcome tag for a silence.

    There is deliberately no success-like member: a silence is never a pass.
    """
    SILENT_FAILURE = "SILENT_FAILURE"
    COVERAGE_GAP = "COVERAGE_GAP"
    UNPROVEN_INTERACTION = "UNPROVEN_INTERACTION"
    SAFETY_BLOCK = "SAFETY_BLOCK"
    INFORMATIONAL = "INFORMATIONAL"

    @classmethod
    def parse(cls, value) -> Optional["SilenceOutcome"]:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


class PromiseType(Enum):
    NAVIGATION_PROMISE = "NAVIGATION_PROMISE"
    FEEDBACK_PROMISE = "FEEDBACK_PROMISE"
    NETWORK_PROMISE = "NETWORK_PROMISE"
    STATE_PROMISE = "STATE_PROMISE"
    SUBMISSION_PROMISE = "SUBMISSION_PROMISE"


class ImpactBand(Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# =============================================================================
# VALUE TYPES
# =============================================================================

@dataclass(frozen=True)
class ConfidenceImpact:
    """
    Confidence penalty of one or more silences, in percentage points.

    Every dimension is zero or negative.
    """
    coverage: int = 0
    promise_verification: int = 0
    overall: int = 0

    def __post_init__(self):
        for name in ("coverage", "promise_verification", "overall"):
            if getattr(self, name) > 0:
                raise ValueError(f"confidence impact '{name}' must be <= 0")

    def to_dict(self) -> dict:
        return {
            "coverage": self.coverage,
            "promise_verification": self.promise_verification,
            "overall": self.overall,
        }


@dataclass(frozen=True)
class PromiseAssociation:
    """
    Weak lookup link between a silence and the promise it blocked.

    Either `type` is set, or `reason_no_association` says why not.
    """
    type: Optional[PromiseType]
    expected_signal: Optional[str] = None
    reason_no_association: Optional[str] = None
    blocked_by_safety: bool = False

    def __post_init__(self):
        if self.type is None and not self.reason_no_association:
            raise ValueError("promise association without a type needs a reason")

    @property
    def is_associated(self) -> bool:
        return self.type is not None

    def to_dict(self) -> dict:
        data = {
            "type": self.type.value if self.type else None,
            "expected_signal": self.expected_signal,
            "reason_no_association": self.reason_no_association,
        }
        if self.blocked_by_safety:
            data["blocked_by_safety"] = True
        return data
