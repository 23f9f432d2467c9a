"""
Tests for the Silence Lifecycle Model.

These tests verify:
1. Lifecycle fields are derived from the reason by fixed tables
2. The log is immutable (record returns a new log)
3. Unknown reasons fall back loudly (flagged, logged, counted)
4. Queries preserve insertion order
5. Summary and export are deterministic folds
"""

import pytest
from structlog.testing import capture_logs

from verax.errors import SilenceRecordError
from verax.silence.model import (
    SilenceLog,
    SilenceRecord,
    UNRECOGNIZED_REASON_FLAG,
    classify_silence,
)
from verax.silence.types import (
    EvaluationStatus,
    PromiseType,
    SilenceOutcome,
    SilenceReason,
    SilenceScope,
    SilenceType,
)


# =============================================================================
# TEST FIXTURES
# =============================================================================

def make_log(*entries) -> SilenceLog:
    """Helper to build a log from (scope, reason) pairs."""
    log = SilenceLog()
    for scope, reason in entries:
        log, _ = log.record(scope, reason, f"{scope} {reason}")
    return log


# =============================================================================
# CLASSIFICATION
# =============================================================================

class TestClassification:
    """Reason -> lifecycle derivation."""

    def test_sensor_failed_is_sensor_failure(self):
        """A failed sensor is a SENSOR_FAILURE that costs coverage."""
        silence = classify_silence("sensor", "sensor-failed", "network sensor crashed")

        assert silence.silence_type == SilenceType.SENSOR_FAILURE
        assert silence.confidence_impact.coverage < 0
        assert silence.classification_flag is None

    def test_underscore_spelling_accepted(self):
        """Observe emits underscores; both spellings classify the same."""
        hyphen = classify_silence("sensor", "sensor-failed", "x")
        underscore = classify_silence("sensor", "sensor_failed", "x")

        assert hyphen.reason == underscore.reason == SilenceReason.SENSOR_FAILED

    def test_destructive_text_is_safety_block(self):
        silence = classify_silence("interaction", "destructive_text", "Delete account button")

        assert silence.reason == SilenceReason.DESTRUCTIVE_TEXT
        assert silence.silence_type == SilenceType.SAFETY_POLICY_BLOCK
        assert silence.trigger == "destructive_text_block"
        assert silence.evaluation_status == EvaluationStatus.BLOCKED
        assert silence.outcome == SilenceOutcome.SAFETY_BLOCK

    def test_timeouts_are_timed_out(self):
        for reason in ("navigation-timeout", "interaction-timeout", "settle-timeout", "load-timeout"):
            silence = classify_silence("interaction", reason, "slow")
            assert silence.evaluation_status == EvaluationStatus.TIMED_OUT

    def test_budget_limits_are_skipped(self):
        silence = classify_silence("page", "page-limit-exceeded", "page cap reached")

        assert silence.silence_type == SilenceType.BUDGET_LIMIT_EXCEEDED
        assert silence.evaluation_status == EvaluationStatus.SKIPPED
        assert silence.outcome == SilenceOutcome.COVERAGE_GAP

    def test_classification_is_deterministic(self):
        """Same input, same record."""
        a = classify_silence("navigation", "navigation-timeout", "no settle", context={"url": "/a"})
        b = classify_silence("navigation", "navigation-timeout", "no settle", context={"url": "/a"})

        assert a.to_dict() == b.to_dict()

    def test_promise_association_attached(self):
        silence = classify_silence("navigation", "navigation-timeout", "no settle")

        assert silence.promise_association.type == PromiseType.NAVIGATION_PROMISE

    def test_context_is_read_only(self):
        silence = classify_silence("page", "discovery-error", "crawl failed", context={"page": "/"})

        with pytest.raises(TypeError):
            silence.context["page"] = "/other"


# =============================================================================
# UNKNOWN REASON FALLBACK
# =============================================================================

class TestUnknownReason:
    """Unrecognized reasons never crash and never hide."""

    def test_unknown_reason_falls_back(self):
        silence = classify_silence("interaction", "quantum-flux", "new Observe reason")

        assert silence.reason == SilenceReason.UNKNOWN
        assert silence.silence_type == SilenceType.UNKNOWN_SILENCE
        assert silence.evaluation_status == EvaluationStatus.INCOMPLETE
        assert silence.classification_flag == UNRECOGNIZED_REASON_FLAG
        assert silence.raw_reason == "quantum-flux"

    def test_unknown_reason_is_penalized(self):
        """The fallback never looks like a clean result."""
        silence = classify_silence("interaction", "quantum-flux", "x")

        assert silence.confidence_impact.overall < 0

    def test_unknown_reason_is_logged(self):
        with capture_logs() as logs:
            classify_silence("interaction", "quantum-flux", "x")

        events = [entry for entry in logs if entry["event"] == "silence_reason_unrecognized"]
        assert len(events) == 1
        assert events[0]["reason"] == "quantum-flux"
        assert events[0]["log_level"] == "warning"

    def test_unknown_reason_is_counted_in_summary(self):
        log = make_log(
            ("interaction", "quantum-flux"),
            ("interaction", "quantum-flux"),
            ("page", "sensor-failed"),
        )

        summary = log.get_summary()
        assert summary.unrecognized_reasons == {"quantum-flux": 2}
        assert summary.by_type[SilenceType.UNKNOWN_SILENCE.value] == 2


# =============================================================================
# SHAPE CHECKS
# =============================================================================

class TestShapeChecks:
    """Missing required fields are programming errors and raise."""

    def test_missing_scope_raises(self):
        with pytest.raises(SilenceRecordError, match="scope"):
            classify_silence(None, "sensor-failed", "x")

    def test_missing_reason_raises(self):
        with pytest.raises(SilenceRecordError, match="reason"):
            classify_silence("sensor", "", "x")

    def test_missing_description_raises(self):
        with pytest.raises(SilenceRecordError, match="description"):
            classify_silence("sensor", "sensor-failed", "")

    def test_unrecognized_scope_raises(self):
        with pytest.raises(SilenceRecordError, match="scope"):
            classify_silence("galaxy", "sensor-failed", "x")

    def test_record_is_frozen(self):
        silence = classify_silence("sensor", "sensor-failed", "x")

        with pytest.raises(AttributeError):
            silence.description = "changed"


# =============================================================================
# IMMUTABLE LOG
# =============================================================================

class TestSilenceLog:
    """Append returns a new log; queries preserve order."""

    def test_record_returns_new_log(self):
        empty = SilenceLog()
        log, silence = empty.record("sensor", "sensor-failed", "x")

        assert len(empty) == 0
        assert len(log) == 1
        assert log.entries[0] is silence
        assert isinstance(silence, SilenceRecord)

    def test_record_batch(self):
        log, created = SilenceLog().record_batch([
            {"scope": "page", "reason": "page-limit-exceeded", "description": "cap"},
            {"scope": "interaction", "reason": "interaction-timeout", "description": "slow",
             "context": {"interaction": {"type": "submit"}}},
        ])

        assert len(log) == 2
        assert [s.silence_type for s in created] == [
            SilenceType.BUDGET_LIMIT_EXCEEDED,
            SilenceType.INTERACTION_TIMEOUT,
        ]

    def test_get_silences_by_type_preserves_order(self):
        log = SilenceLog()
        log, first = log.record("sensor", "sensor-failed", "first")
        log, _ = log.record("page", "page-limit-exceeded", "middle")
        log, last = log.record("sensor", "sensor-unavailable", "last")

        assert log.get_silences_by_type(SilenceType.SENSOR_FAILURE) == [first, last]

    def test_get_silences_by_evaluation_status(self):
        log = make_log(("navigation", "navigation-timeout"), ("page", "incremental-unchanged"))

        timed_out = log.get_silences_by_evaluation_status(EvaluationStatus.TIMED_OUT)
        assert [s.reason for s in timed_out] == [SilenceReason.NAVIGATION_TIMEOUT]

    def test_get_silences_by_scope_and_promise(self):
        log = make_log(("navigation", "navigation-timeout"), ("sensor", "sensor-failed"))

        assert len(log.get_silences_by_scope(SilenceScope.SENSOR)) == 1
        assert len(log.get_silences_by_promise(PromiseType.NAVIGATION_PROMISE)) == 1

    def test_promise_verification_blockers(self):
        log = make_log(
            ("interaction", "destructive-text-blocked"),
            ("navigation", "navigation-timeout"),
            ("page", "page-limit-exceeded"),
        )

        blockers = log.get_promise_verification_blockers()
        assert [s.silence_type for s in blockers] == [
            SilenceType.SAFETY_POLICY_BLOCK,
            SilenceType.NAVIGATION_TIMEOUT,
        ]

    def test_coverage_gaps(self):
        log = make_log(
            ("page", "route-limit-exceeded"),
            ("interaction", "destructive-text-blocked"),
            ("page", "incremental-unchanged"),
        )

        gaps = log.get_coverage_gaps()
        assert [s.reason for s in gaps] == [
            SilenceReason.ROUTE_LIMIT_EXCEEDED,
            SilenceReason.INCREMENTAL_UNCHANGED,
        ]


# =============================================================================
# SUMMARY & EXPORT
# =============================================================================

class TestSummaryAndExport:

    def test_summary_counts(self):
        log = make_log(
            ("sensor", "sensor-failed"),
            ("sensor", "sensor-unavailable"),
            ("navigation", "navigation-timeout"),
        )

        summary = log.get_summary()
        assert summary.total_silences == 3
        assert summary.by_type == {"navigation_timeout": 1, "sensor_failure": 2}
        assert summary.by_evaluation_status == {"incomplete": 2, "timed_out": 1}
        assert summary.with_promise_association == 1
        assert summary.confidence_impact.overall == -18 - 18 - 15

    def test_empty_summary(self):
        summary = SilenceLog().get_summary()

        assert summary.total_silences == 0
        assert summary.confidence_impact.overall == 0

    def test_export_sorted(self):
        """Export order depends on content, not on insertion order."""
        forward = make_log(("sensor", "sensor-failed"), ("interaction", "interaction-timeout"))
        backward = make_log(("interaction", "interaction-timeout"), ("sensor", "sensor-failed"))

        assert forward.export() == backward.export()
        assert [e["scope"] for e in forward.export()["entries"]] == ["interaction", "sensor"]
