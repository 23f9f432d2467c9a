"""
Tests for the Finding contract and canonicalization.

These tests verify:
1. A Finding that breaks the contract cannot be constructed
2. Raw detector output is canonicalized deterministically
3. Enrichment is an allow-list
4. Findings are immutable
"""

import dataclasses

import pytest

from verax.errors import FindingContractError
from verax.findings.contract import (
    ANNOTATION_CODES,
    MAX_FINDING_BYTES,
    RESERVED_ENRICHMENT_BYTES,
    SILENCE_PENALTY_FLOOR,
    Finding,
    FindingEnrichment,
    FindingStatus,
    FindingType,
    Severity,
    canonicalize_finding,
    find_forbidden_names,
    find_forbidden_text,
    serialized_size,
)


# =============================================================================
# TEST FIXTURES
# =============================================================================

def make_finding(**overrides) -> Finding:
    """Helper to create a valid Finding."""
    defaults = dict(
        type=FindingType.SILENT_SUBMISSION,
        status=FindingStatus.CONFIRMED,
        severity=Severity.HIGH,
        confidence=0.8,
        promise={"kind": "submit", "value": "Form submission acknowledged"},
        observed={"result": "nothing changed"},
        evidence={"dom_diff_present": True},
        impact="Users think their form was sent",
    )
    defaults.update(overrides)
    return Finding(**defaults)


def make_raw(**overrides) -> dict:
    raw = {
        "type": "silent_submission",
        "status": "CONFIRMED",
        "severity": "HIGH",
        "confidence": 0.8,
        "promise": {"kind": "submit", "value": "Form submission acknowledged"},
        "observed": {"result": "nothing changed"},
        "evidence": {"navigationChanged": False},
        "impact": "Users think their form was sent",
        "interaction": {"type": "submit", "selector": "#signup", "label": "Sign up"},
    }
    raw.update(overrides)
    return raw


# =============================================================================
# CONTRACT
# =============================================================================

class TestContract:
    """Construction either yields a valid Finding or raises."""

    def test_valid_finding(self):
        finding = make_finding()

        assert finding.is_silent_failure
        assert finding.to_dict()["type"] == "silent_submission"

    def test_confidence_out_of_range(self):
        with pytest.raises(FindingContractError, match="confidence"):
            make_finding(confidence=1.5)

    def test_confidence_not_a_number(self):
        with pytest.raises(FindingContractError, match="confidence"):
            make_finding(confidence="high")

    def test_raw_string_type_rejected(self):
        with pytest.raises(FindingContractError, match="type"):
            make_finding(type="silent_submission")

    def test_promise_shape(self):
        with pytest.raises(FindingContractError, match="promise"):
            make_finding(promise={"kind": "submit"})

    def test_type_expectation_promise_accepted(self):
        finding = make_finding(promise={"type": "navigation", "expected": "/about"})

        assert finding.promise["expected"] == "/about"

    def test_impact_must_be_text(self):
        with pytest.raises(FindingContractError, match="impact"):
            make_finding(impact=None)

    def test_size_bound(self):
        with pytest.raises(FindingContractError, match="bytes"):
            make_finding(impact="x" * MAX_FINDING_BYTES)

    def test_serialized_size_under_bound(self):
        assert serialized_size(make_finding().to_dict()) < MAX_FINDING_BYTES

    def test_annotation_headroom_reserved(self):
        """A Finding that only fits without headroom is rejected at construction."""
        with pytest.raises(FindingContractError, match="reserved"):
            make_finding(impact="x" * (MAX_FINDING_BYTES - RESERVED_ENRICHMENT_BYTES))

    def test_largest_annotations_fit_headroom(self):
        enrichment = FindingEnrichment(
            ambiguity_reasons=tuple(sorted(ANNOTATION_CODES["ambiguity_reasons"])),
            evidence_categories=tuple(sorted(ANNOTATION_CODES["evidence_categories"])),
            evidence_law_downgrade_reasons=tuple(
                sorted(ANNOTATION_CODES["evidence_law_downgrade_reasons"])
            ),
            silence_penalty=SILENCE_PENALTY_FLOOR,
        )

        assert serialized_size(enrichment.to_dict()) < RESERVED_ENRICHMENT_BYTES

    def test_frozen(self):
        finding = make_finding()

        with pytest.raises(dataclasses.FrozenInstanceError):
            finding.status = FindingStatus.SUSPECTED
        with pytest.raises(TypeError):
            finding.evidence["dom_diff_present"] = False


# =============================================================================
# ENRICHMENT
# =============================================================================

class TestEnrichment:

    def test_unknown_keys_discarded(self):
        enrichment = FindingEnrichment.from_raw({
            "humanSummary": "Signup is silent",
            "selector": "#signup",
            "html": "<form>",
        })

        assert enrichment.to_dict() == {"humanSummary": "Signup is silent"}

    def test_snake_case_accepted(self):
        enrichment = FindingEnrichment.from_raw({"action_hint": "Show a toast"})

        assert enrichment.action_hint == "Show a toast"

    def test_empty_fields_not_serialized(self):
        assert FindingEnrichment().to_dict() == {}

    def test_forbidden_names(self):
        assert find_forbidden_names("has a SELECTOR and a dom_diff") == ["selector", "dom"]
        assert find_forbidden_names("missing_strong_evidence") == []

    def test_forbidden_text(self):
        text = "selector #pay <div class='x'> Screenshots attached"

        assert find_forbidden_text(text) == ["selector", "html", "screenshot"]
        assert find_forbidden_text("Users cannot share a random chart") == []

    def test_summary_with_locator_rejected(self):
        with pytest.raises(FindingContractError, match="human_summary"):
            FindingEnrichment(human_summary="selector #pay <div class='html'> screenshot /tmp/a.png")

    def test_raw_summary_with_locator_dropped(self):
        enrichment = FindingEnrichment.from_raw({
            "humanSummary": "Clicked selector #pay and nothing happened",
            "actionHint": "See <span>confirm</span>",
            "confidenceExplanation": "Nothing changed after submit",
        })

        assert enrichment.to_dict() == {"confidenceExplanation": "Nothing changed after submit"}

    def test_canonicalize_drops_leaky_text(self):
        finding = canonicalize_finding(make_raw(humanSummary="dom trace shows the button is dead"))

        assert "humanSummary" not in finding.enrichment.to_dict()

    def test_unknown_reason_code_rejected(self):
        with pytest.raises(FindingContractError, match="unknown codes"):
            FindingEnrichment(ambiguity_reasons=("selector_missing",))

    def test_raw_unknown_codes_dropped(self):
        enrichment = FindingEnrichment.from_raw({
            "ambiguityReasons": ["console_only", "selector_missing", "console_only"],
            "silencePenalty": -500,
        })

        assert enrichment.ambiguity_reasons == ("console_only",)
        assert enrichment.silence_penalty is None

    def test_reason_codes_never_carry_forbidden_names(self):
        for codes in ANNOTATION_CODES.values():
            for code in codes:
                assert find_forbidden_names(code) == []


# =============================================================================
# CANONICALIZATION
# =============================================================================

class TestCanonicalize:

    def test_basic(self):
        finding = canonicalize_finding(make_raw())

        assert finding.type == FindingType.SILENT_SUBMISSION
        assert finding.status == FindingStatus.CONFIRMED
        assert finding.id

    def test_unknown_type_becomes_silent_failure(self):
        finding = canonicalize_finding(make_raw(type="mystery_break"))

        assert finding.type == FindingType.SILENT_FAILURE

    def test_missing_type_raises(self):
        raw = make_raw()
        del raw["type"]

        with pytest.raises(FindingContractError, match="type"):
            canonicalize_finding(raw)

    def test_missing_observed_raises(self):
        raw = make_raw()
        del raw["observed"]

        with pytest.raises(FindingContractError, match="observed"):
            canonicalize_finding(raw)

    def test_percent_confidence_scaled(self):
        assert canonicalize_finding(make_raw(confidence=85)).confidence == pytest.approx(0.85)

    def test_confidence_level(self):
        finding = canonicalize_finding(make_raw(confidence={"level": "high"}))

        assert finding.confidence == pytest.approx(0.8)

    def test_outcome_sets_severity(self):
        finding = canonicalize_finding(make_raw(severity="LOW", outcome="SILENT_FAILURE"))

        assert finding.severity == Severity.HIGH

    def test_legacy_observed_field(self):
        raw = make_raw(what_was_observed="no toast")
        del raw["observed"]

        assert canonicalize_finding(raw).observed == {"result": "no toast"}

    def test_missing_promise_synthesized(self):
        raw = make_raw(what_was_expected="Toast shown")
        del raw["promise"]

        finding = canonicalize_finding(raw)
        assert finding.promise["value"] == "Toast shown"

    def test_identity_is_deterministic(self):
        a = canonicalize_finding(make_raw(confidence=0.8))
        b = canonicalize_finding(make_raw(confidence=0.3, detectedAt="2026-01-01T00:00:00Z"))

        assert a.id == b.id

    def test_explicit_id_kept(self):
        assert canonicalize_finding(make_raw(id="abc")).id == "abc"
