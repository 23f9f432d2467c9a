"""
Silence Lifecycle Model.

A silence is an observation where nothing happened: no navigation, no
network call, no state change, no feedback. Silences are never success.

Every silence record carries an explicit lifecycle derived from its
reason by fixed lookup tables:
    silence_type       — technical classification
    trigger            — short machine tag
    evaluation_status  — how the unobserved state should be read
    confidence_impact  — penalty applied to confidence
    promise            — which promise the silence blocked, if any

The log is immutable. Recording returns a new log.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Union

import structlog

from ..errors import SilenceRecordError
from .association import infer_promise_for_silence
from .impact import aggregate_silence_impacts, impact_for
from .types import (
    ConfidenceImpact,
    EvaluationStatus,
    PromiseAssociation,
    PromiseType,
    SilenceOutcome,
    SilenceReason,
    SilenceScope,
    SilenceType,
)

logger = structlog.get_logger()


UNRECOGNIZED_REASON_FLAG = "unrecognized_reason"


# =============================================================================
# LOOKUP TABLES (reason -> lifecycle)
# =============================================================================

_R = SilenceReason

REASON_TO_TYPE: dict[SilenceReason, SilenceType] = {
    _R.NAVIGATION_TIMEOUT: SilenceType.NAVIGATION_TIMEOUT,
    _R.LOAD_TIMEOUT: SilenceType.NAVIGATION_TIMEOUT,
    _R.INTERACTION_TIMEOUT: SilenceType.INTERACTION_TIMEOUT,
    _R.SETTLE_TIMEOUT: SilenceType.SETTLE_TIMEOUT,
    _R.DESTRUCTIVE_TEXT: SilenceType.SAFETY_POLICY_BLOCK,
    _R.UNSAFE_PATTERN: SilenceType.SAFETY_POLICY_BLOCK,
    _R.EXTERNAL_NAVIGATION: SilenceType.PROMISE_VERIFICATION_BLOCKED,
    _R.EXTERNAL_BLOCKED: SilenceType.PROMISE_VERIFICATION_BLOCKED,
    _R.ORIGIN_MISMATCH: SilenceType.PROMISE_VERIFICATION_BLOCKED,
    _R.SCAN_TIME_EXCEEDED: SilenceType.BUDGET_LIMIT_EXCEEDED,
    _R.PAGE_LIMIT_EXCEEDED: SilenceType.BUDGET_LIMIT_EXCEEDED,
    _R.INTERACTION_LIMIT_EXCEEDED: SilenceType.BUDGET_LIMIT_EXCEEDED,
    _R.ROUTE_LIMIT_EXCEEDED: SilenceType.BUDGET_LIMIT_EXCEEDED,
    _R.DISCOVERY_ERROR: SilenceType.DISCOVERY_FAILURE,
    _R.NO_MATCHING_SELECTOR: SilenceType.SELECTOR_NOT_FOUND,
    _R.SENSOR_FAILED: SilenceType.SENSOR_FAILURE,
    _R.SENSOR_UNAVAILABLE: SilenceType.SENSOR_FAILURE,
    _R.INCREMENTAL_UNCHANGED: SilenceType.INCREMENTAL_REUSE,
    _R.NO_EXPECTATION: SilenceType.PROMISE_NOT_EVALUATED,
    _R.EXPECTATION_NOT_REACHABLE: SilenceType.INTERACTION_NOT_EXECUTED,
    _R.UNKNOWN: SilenceType.UNKNOWN_SILENCE,
}

REASON_TO_TRIGGER: dict[SilenceReason, str] = {
    _R.NAVIGATION_TIMEOUT: "navigation_timeout",
    _R.INTERACTION_TIMEOUT: "interaction_timeout",
    _R.SETTLE_TIMEOUT: "settle_timeout",
    _R.LOAD_TIMEOUT: "load_timeout",
    _R.DESTRUCTIVE_TEXT: "destructive_text_block",
    _R.EXTERNAL_NAVIGATION: "external_navigation",
    _R.EXTERNAL_BLOCKED: "external_origin_blocked",
    _R.ORIGIN_MISMATCH: "origin_mismatch",
    _R.UNSAFE_PATTERN: "unsafe_pattern_block",
    _R.SCAN_TIME_EXCEEDED: "scan_time_limit_exceeded",
    _R.PAGE_LIMIT_EXCEEDED: "page_limit_exceeded",
    _R.INTERACTION_LIMIT_EXCEEDED: "interaction_limit_exceeded",
    _R.ROUTE_LIMIT_EXCEEDED: "route_limit_exceeded",
    _R.DISCOVERY_ERROR: "discovery_failed",
    _R.NO_MATCHING_SELECTOR: "selector_not_found",
    _R.SENSOR_FAILED: "sensor_failure",
    _R.SENSOR_UNAVAILABLE: "sensor_unavailable",
    _R.INCREMENTAL_UNCHANGED: "incremental_data_reuse",
    _R.NO_EXPECTATION: "no_expectation_defined",
    _R.EXPECTATION_NOT_REACHABLE: "expectation_not_reachable",
    _R.UNKNOWN: UNRECOGNIZED_REASON_FLAG,
}

REASON_TO_STATUS: dict[SilenceReason, EvaluationStatus] = {
    _R.NAVIGATION_TIMEOUT: EvaluationStatus.TIMED_OUT,
    _R.INTERACTION_TIMEOUT: EvaluationStatus.TIMED_OUT,
    _R.SETTLE_TIMEOUT: EvaluationStatus.TIMED_OUT,
    _R.LOAD_TIMEOUT: EvaluationStatus.TIMED_OUT,
    _R.DESTRUCTIVE_TEXT: EvaluationStatus.BLOCKED,
    _R.UNSAFE_PATTERN: EvaluationStatus.BLOCKED,
    _R.EXTERNAL_NAVIGATION: EvaluationStatus.BLOCKED,
    _R.EXTERNAL_BLOCKED: EvaluationStatus.BLOCKED,
    _R.ORIGIN_MISMATCH: EvaluationStatus.BLOCKED,
    _R.NO_EXPECTATION: EvaluationStatus.AMBIGUOUS,
    _R.NO_MATCHING_SELECTOR: EvaluationStatus.AMBIGUOUS,
    _R.INCREMENTAL_UNCHANGED: EvaluationStatus.SKIPPED,
    _R.SCAN_TIME_EXCEEDED: EvaluationStatus.SKIPPED,
    _R.PAGE_LIMIT_EXCEEDED: EvaluationStatus.SKIPPED,
    _R.INTERACTION_LIMIT_EXCEEDED: EvaluationStatus.SKIPPED,
    _R.ROUTE_LIMIT_EXCEEDED: EvaluationStatus.SKIPPED,
}

REASON_TO_OUTCOME: dict[SilenceReason, SilenceOutcome] = {
    _R.NAVIGATION_TIMEOUT: SilenceOutcome.UNPROVEN_INTERACTION,
    _R.INTERACTION_TIMEOUT: SilenceOutcome.UNPROVEN_INTERACTION,
    _R.SETTLE_TIMEOUT: SilenceOutcome.UNPROVEN_INTERACTION,
    _R.LOAD_TIMEOUT: SilenceOutcome.UNPROVEN_INTERACTION,
    _R.NO_EXPECTATION: SilenceOutcome.UNPROVEN_INTERACTION,
    _R.DESTRUCTIVE_TEXT: SilenceOutcome.SAFETY_BLOCK,
    _R.UNSAFE_PATTERN: SilenceOutcome.SAFETY_BLOCK,
    _R.INCREMENTAL_UNCHANGED: SilenceOutcome.INFORMATIONAL,
}


# =============================================================================
# SILENCE RECORD
# =============================================================================

@dataclass(frozen=True)
class SilenceRecord:
    """
    One "nothing happened" event.

    Created by classify_silence() or SilenceLog.record(); never mutated.
    `outcome` holds a SilenceOutcome, or the raw string when a caller
    supplied something outside the catalog so integrity checks can see it.
    """
    scope: SilenceScope
    reason: SilenceReason
    description: str
    silence_type: SilenceType
    trigger: str
    evaluation_status: EvaluationStatus
    confidence_impact: ConfidenceImpact
    raw_reason: str
    context: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    impact: Optional[str] = None
    outcome: Optional[Union[SilenceOutcome, str]] = None
    classification_flag: Optional[str] = None
    promise_association: Optional[PromiseAssociation] = None

    def __post_init__(self):
        if not isinstance(self.scope, SilenceScope):
            raise SilenceRecordError(f"scope must be SilenceScope, got {self.scope!r}")
        if not isinstance(self.reason, SilenceReason):
            raise SilenceRecordError(f"reason must be SilenceReason, got {self.reason!r}")
        if not self.description or not isinstance(self.description, str):
            raise SilenceRecordError("description is required")

    @property
    def is_unrecognized(self) -> bool:
        return self.classification_flag == UNRECOGNIZED_REASON_FLAG

    def to_dict(self) -> dict:
        outcome = self.outcome.value if isinstance(self.outcome, SilenceOutcome) else self.outcome
        return {
            "scope": self.scope.value,
            "reason": self.reason.value,
            "raw_reason": self.raw_reason,
            "description": self.description,
            "silence_type": self.silence_type.value,
            "trigger": self.trigger,
            "evaluation_status": self.evaluation_status.value,
            "confidence_impact": self.confidence_impact.to_dict(),
            "context": dict(self.context),
            "impact": self.impact,
            "outcome": outcome,
            "classification_flag": self.classification_flag,
            "promise": (
                self.promise_association.to_dict() if self.promise_association else None
            ),
        }


def classify_silence(
    scope,
    reason,
    description: str,
    context: Optional[Mapping[str, Any]] = None,
    impact: Optional[str] = None,
    outcome=None,
) -> SilenceRecord:
    """
    Build a silence record from raw Observe input.

    Missing scope, reason or description raises SilenceRecordError.
    An unrecognized reason does not raise: it is classified as
    UNKNOWN_SILENCE, flagged, and logged.
    """
    if scope is None or scope == "":
        raise SilenceRecordError("scope is required")
    if reason is None or reason == "":
        raise SilenceRecordError("reason is required")
    if not description:
        raise SilenceRecordError("description is required")

    parsed_scope = SilenceScope.parse(scope)
    if parsed_scope is None:
        raise SilenceRecordError(f"unrecognized scope: {scope!r}")

    parsed_reason = SilenceReason.parse(reason)
    raw_reason = reason.value if isinstance(reason, SilenceReason) else str(reason)

    flag = None
    if parsed_reason == SilenceReason.UNKNOWN:
        flag = UNRECOGNIZED_REASON_FLAG
        logger.warning(
            "silence_reason_unrecognized",
            reason=raw_reason,
            scope=parsed_scope.value,
            fallback=SilenceType.UNKNOWN_SILENCE.value,
        )

    silence_type = REASON_TO_TYPE[parsed_reason]
    status = REASON_TO_STATUS.get(parsed_reason, EvaluationStatus.INCOMPLETE)

    if outcome is None:
        resolved_outcome = REASON_TO_OUTCOME.get(parsed_reason, SilenceOutcome.COVERAGE_GAP)
    else:
        resolved_outcome = SilenceOutcome.parse(outcome) or str(outcome)

    record = SilenceRecord(
        scope=parsed_scope,
        reason=parsed_reason,
        description=description,
        silence_type=silence_type,
        trigger=REASON_TO_TRIGGER[parsed_reason],
        evaluation_status=status,
        confidence_impact=impact_for(silence_type, status),
        raw_reason=raw_reason,
        context=MappingProxyType(dict(context or {})),
        impact=impact,
        outcome=resolved_outcome,
        classification_flag=flag,
    )
    return replace(record, promise_association=infer_promise_for_silence(record))


# =============================================================================
# SUMMARY
# =============================================================================

@dataclass
class SilenceSummary:
    """Pure fold over a silence log."""
    total_silences: int
    by_type: dict[str, int]
    by_evaluation_status: dict[str, int]
    by_scope: dict[str, int]
    by_reason: dict[str, int]
    by_outcome: dict[str, int]
    unrecognized_reasons: dict[str, int]
    with_promise_association: int
    confidence_impact: ConfidenceImpact

    def to_dict(self) -> dict:
        return {
            "total_silences": self.total_silences,
            "by_type": dict(self.by_type),
            "by_evaluation_status": dict(self.by_evaluation_status),
            "by_scope": dict(self.by_scope),
            "by_reason": dict(self.by_reason),
            "by_outcome": dict(self.by_outcome),
            "unrecognized_reasons": dict(self.unrecognized_reasons),
            "with_promise_association": self.with_promise_association,
            "confidence_impact": self.confidence_impact.to_dict(),
        }


def _sorted_counts(counter: Counter) -> dict[str, int]:
    return {key: counter[key] for key in sorted(counter)}


# =============================================================================
# SILENCE LOG
# =============================================================================

@dataclass(frozen=True)
class SilenceLog:
    """
    Immutable, ordered log of silence records.

    record() returns (new_log, record); the original log is unchanged.
    """
    entries: tuple[SilenceRecord, ...] = ()

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def record(
        self,
        scope,
        reason,
        description: str,
        context: Optional[Mapping[str, Any]] = None,
        impact: Optional[str] = None,
        outcome=None,
    ) -> tuple["SilenceLog", SilenceRecord]:
        silence = classify_silence(
            scope,
            reason,
            description,
            context=context,
            impact=impact,
            outcome=outcome,
        )
        return SilenceLog(self.entries + (silence,)), silence

    def record_batch(
        self,
        entries: Iterable[Mapping[str, Any]],
    ) -> tuple["SilenceLog", list[SilenceRecord]]:
        """Record several raw entries (dicts with scope/reason/description/...)."""
        log = self
        created: list[SilenceRecord] = []
        for entry in entries:
            log, silence = log.record(
                entry.get("scope"),
                entry.get("reason"),
                entry.get("description"),
                context=entry.get("context"),
                impact=entry.get("impact"),
                outcome=entry.get("outcome"),
            )
            created.append(silence)
        return log, created

    # -------------------------------------------------------------------------
    # Queries (insertion order preserved)
    # -------------------------------------------------------------------------

    def get_silences_by_type(self, silence_type: SilenceType) -> list[SilenceRecord]:
        return [s for s in self.entries if s.silence_type == silence_type]

    def get_silences_by_evaluation_status(
        self, status: EvaluationStatus
    ) -> list[SilenceRecord]:
        return [s for s in self.entries if s.evaluation_status == status]

    def get_silences_by_scope(self, scope: SilenceScope) -> list[SilenceRecord]:
        return [s for s in self.entries if s.scope == scope]

    def get_silences_by_promise(self, promise_type: PromiseType) -> list[SilenceRecord]:
        return [
            s for s in self.entries
            if s.promise_association and s.promise_association.type == promise_type
        ]

    def get_promise_verification_blockers(self) -> list[SilenceRecord]:
        """Silences that stopped a promise from being checked."""
        return [
            s for s in self.entries
            if s.evaluation_status in (EvaluationStatus.BLOCKED, EvaluationStatus.TIMED_OUT)
            or s.silence_type == SilenceType.PROMISE_VERIFICATION_BLOCKED
        ]

    def get_coverage_gaps(self) -> list[SilenceRecord]:
        """Silences that left part of the app unobserved."""
        return [
            s for s in self.entries
            if s.outcome == SilenceOutcome.COVERAGE_GAP
            or s.evaluation_status == EvaluationStatus.SKIPPED
            or s.silence_type == SilenceType.BUDGET_LIMIT_EXCEEDED
        ]

    # -------------------------------------------------------------------------
    # Summary / export
    # -------------------------------------------------------------------------

    def get_summary(self) -> SilenceSummary:
        by_type: Counter = Counter()
        by_status: Counter = Counter()
        by_scope: Counter = Counter()
        by_reason: Counter = Counter()
        by_outcome: Counter = Counter()
        unrecognized: Counter = Counter()
        associated = 0

        for s in self.entries:
            by_type[s.silence_type.value] += 1
            by_status[s.evaluation_status.value] += 1
            by_scope[s.scope.value] += 1
            by_reason[s.reason.value] += 1
            if s.outcome is not None:
                outcome = s.outcome.value if isinstance(s.outcome, SilenceOutcome) else s.outcome
                by_outcome[outcome] += 1
            if s.is_unrecognized:
                unrecognized[s.raw_reason] += 1
            if s.promise_association and s.promise_association.is_associated:
                associated += 1

        return SilenceSummary(
            total_silences=len(self.entries),
            by_type=_sorted_counts(by_type),
            by_evaluation_status=_sorted_counts(by_status),
            by_scope=_sorted_counts(by_scope),
            by_reason=_sorted_counts(by_reason),
            by_outcome=_sorted_counts(by_outcome),
            unrecognized_reasons=_sorted_counts(unrecognized),
            with_promise_association=associated,
            confidence_impact=aggregate_silence_impacts(self.entries),
        )

    def export(self) -> dict:
        """Deterministic serialization for traces, sorted by scope, reason, description."""
        ordered = sorted(
            self.entries,
            key=lambda s: (s.scope.value, s.reason.value, s.raw_reason, s.description),
        )
        return {
            "total": len(ordered),
            "entries": [s.to_dict() for s in ordered],
            "summary": self.get_summary().to_dict(),
        }
