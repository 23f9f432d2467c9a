"""
Promise/Silence association and silence integrity.

Links a silence to the promise it prevented us from checking, and
enforces that a silence is never reported as a success.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .types import (
    EvaluationStatus,
    PromiseAssociation,
    PromiseType,
    SilenceScope,
    SilenceType,
)


# Outcomes that would claim something was verified
PROHIBITED_OUTCOMES = frozenset({"SUCCESS", "PASS", "VERIFIED", "CONFIRMED"})

NO_ASSOCIATION_INFRASTRUCTURE = "Observation infrastructure failure - no promise evaluatable"
NO_ASSOCIATION_NOT_EVALUATED = "Promise not yet evaluated"
NO_ASSOCIATION_UNRECOGNIZED = "Unrecognized silence reason - association withheld until classified"
NO_ASSOCIATION_SAFETY = "Blocked by safety policy without interaction context"
NO_ASSOCIATION_NOT_OBSERVED = "Interaction never completed - promise type unknown"

NAVIGATION_SIGNAL = "URL change or navigation settled"
FEEDBACK_SIGNAL = "User feedback or interaction acknowledgment"

_INTERACTION_PROMISES = {
    "submit": (PromiseType.SUBMISSION_PROMISE, "Submission acknowledged or network request sent"),
    "form": (PromiseType.SUBMISSION_PROMISE, "Submission acknowledged or network request sent"),
    "link": (PromiseType.NAVIGATION_PROMISE, NAVIGATION_SIGNAL),
    "navigation": (PromiseType.NAVIGATION_PROMISE, NAVIGATION_SIGNAL),
    "toggle": (PromiseType.STATE_PROMISE, "Visible state change"),
    "checkbox": (PromiseType.STATE_PROMISE, "Visible state change"),
    "select": (PromiseType.STATE_PROMISE, "Visible state change"),
    "network": (PromiseType.NETWORK_PROMISE, "Correlated network request"),
}


def infer_promise_from_interaction(interaction: Any) -> PromiseAssociation:
    """Infer a promise type from an interaction description (dict or type string)."""
    if isinstance(interaction, Mapping):
        kind = interaction.get("type")
    else:
        kind = interaction
    kind = str(kind or "").strip().lower()

    promise_type, signal = _INTERACTION_PROMISES.get(
        kind, (PromiseType.FEEDBACK_PROMISE, FEEDBACK_SIGNAL)
    )
    return PromiseAssociation(type=promise_type, expected_signal=signal)


def infer_promise_for_silence(silence) -> PromiseAssociation:
    """
    Map a silence to the promise it blocked.

    Always returns an association: either a promise type, or None with
    an explicit reason_no_association.
    """
    silence_type = silence.silence_type
    context = silence.context or {}
    interaction = context.get("interaction")

    if silence_type in (SilenceType.SENSOR_FAILURE, SilenceType.DISCOVERY_FAILURE):
        return PromiseAssociation(type=None, reason_no_association=NO_ASSOCIATION_INFRASTRUCTURE)

    if silence_type == SilenceType.UNKNOWN_SILENCE:
        return PromiseAssociation(type=None, reason_no_association=NO_ASSOCIATION_UNRECOGNIZED)

    if (
        silence_type in (SilenceType.NAVIGATION_TIMEOUT, SilenceType.PROMISE_VERIFICATION_BLOCKED)
        or silence.scope == SilenceScope.NAVIGATION
    ):
        return PromiseAssociation(
            type=PromiseType.NAVIGATION_PROMISE,
            expected_signal=NAVIGATION_SIGNAL,
        )

    if silence_type == SilenceType.INTERACTION_TIMEOUT:
        if interaction:
            return infer_promise_from_interaction(interaction)
        return PromiseAssociation(
            type=PromiseType.FEEDBACK_PROMISE,
            expected_signal=FEEDBACK_SIGNAL,
        )

    if silence_type == SilenceType.SAFETY_POLICY_BLOCK:
        if interaction:
            inferred = infer_promise_from_interaction(interaction)
            return PromiseAssociation(
                type=inferred.type,
                expected_signal=inferred.expected_signal,
                blocked_by_safety=True,
            )
        return PromiseAssociation(type=None, reason_no_association=NO_ASSOCIATION_SAFETY)

    if silence_type in (
        SilenceType.SETTLE_TIMEOUT,
        SilenceType.SELECTOR_NOT_FOUND,
        SilenceType.INTERACTION_NOT_EXECUTED,
    ):
        if interaction:
            return infer_promise_from_interaction(interaction)
        return PromiseAssociation(type=None, reason_no_association=NO_ASSOCIATION_NOT_OBSERVED)

    # Budget, incremental reuse, promise not evaluated
    return PromiseAssociation(type=None, reason_no_association=NO_ASSOCIATION_NOT_EVALUATED)


# =============================================================================
# INTEGRITY
# =============================================================================

@dataclass(frozen=True)
class IntegrityResult:
    valid: bool
    reason: Optional[str] = None


def _field(silence, name: str):
    if isinstance(silence, Mapping):
        return silence.get(name)
    return getattr(silence, name, None)


def _text(value) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "value", value)


def validate_silence_integrity(silence) -> IntegrityResult:
    """
    Check that a silence makes forensic sense.

    Accepts a SilenceRecord or a raw mapping read back from traces.
    Never raises.
    """
    if silence is None:
        return IntegrityResult(False, "Silence entry is missing")

    outcome = _text(_field(silence, "outcome"))
    if isinstance(outcome, str) and outcome.upper() in PROHIBITED_OUTCOMES:
        return IntegrityResult(
            False,
            f'Silence cannot have outcome "{outcome}" - silence is always a gap',
        )

    scope = _field(silence, "scope")
    if SilenceScope.parse(scope) is None:
        return IntegrityResult(False, f'Invalid scope: "{_text(scope)}"')

    status = _field(silence, "evaluation_status")
    if EvaluationStatus.parse(status) is None:
        valid = ", ".join(s.value for s in EvaluationStatus)
        return IntegrityResult(
            False,
            f'Invalid evaluation_status: "{_text(status)}". Must be one of: {valid}',
        )

    return IntegrityResult(True)
