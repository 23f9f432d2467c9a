"""
Finding Contract — the canonical shape of every reported Finding.

CONTRACT:
    A Finding is validated once, at construction. A Finding that fails
    the contract never exists: construction raises FindingContractError.

Enforced at construction:
    1. type, status and severity come from closed taxonomies
    2. confidence is in [0.0, 1.0]
    3. promise names what was expected (kind/value or type/expected)
    4. observed and evidence are mappings; impact is text
    5. serialized size, less validation annotations, stays under
       MAX_FINDING_BYTES - RESERVED_ENRICHMENT_BYTES

Enrichment is an allow-list: only the fields declared on
FindingEnrichment can ever be serialized. Reason codes come from closed
taxonomies, and free text may not mention locators, markup or captures.
Validation annotations are bounded by those taxonomies, so a validated
Finding always stays under MAX_FINDING_BYTES.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, fields
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

import structlog

from ..determinism.identity import compute_finding_identity
from ..errors import FindingContractError

logger = structlog.get_logger()


# =============================================================================
# CONFIGURATION CONSTANTS
# =============================================================================

# Findings must stay human/CI-scannable
MAX_FINDING_BYTES = 4096

# Headroom kept free at construction for reason codes and silence penalty
RESERVED_ENRICHMENT_BYTES = 512

DEFAULT_CONFIDENCE = 0.5

# Heavyweight or PII-bearing names that must never appear in enrichment
FORBIDDEN_FIELD_NAMES = (
    "selector",
    "html",
    "dom",
    "screenshot",
    "trace",
    "har",
    "networklog",
)

# Aggregated silence penalties are clamped here
SILENCE_PENALTY_FLOOR = -100

CONFIDENCE_LEVELS = {"high": 0.8, "medium": 0.6, "low": 0.4, "unknown": 0.2}

OUTCOME_SEVERITY = {
    "SILENT_FAILURE": "HIGH",
    "FLOW_FAILURE": "HIGH",
    "DETERMINISM_BREAK": "MEDIUM",
    "VALIDATION_FAILURE": "MEDIUM",
}

_MARKUP_PATTERN = re.compile(r"<\s*/?\s*[a-zA-Z][^>]*>")
_WORD_PATTERN = re.compile(r"[a-z0-9]+")


# =============================================================================
# TAXONOMIES
# =============================================================================

class FindingType(Enum):
    SILENT_FAILURE = "silent_failure"
    NAVIGATION_SILENT_FAILURE = "navigation_silent_failure"
    FLOW_SILENT_FAILURE = "flow_silent_failure"
    OBSERVED_BREAK = "observed_break"
    VALIDATION_SILENT_FAILURE = "validation_silent_failure"
    MISSING_STATE_ACTION = "missing_state_action"
    DEAD_INTERACTION_SILENT_FAILURE = "dead_interaction_silent_failure"
    BROKEN_NAVIGATION_PROMISE = "broken_navigation_promise"
    SILENT_SUBMISSION = "silent_submission"
    INVISIBLE_STATE_FAILURE = "invisible_state_failure"
    STUCK_OR_PHANTOM_LOADING = "stuck_or_phantom_loading"
    SILENT_PERMISSION_WALL = "silent_permission_wall"
    RENDER_FAILURE = "render_failure"


# Types that claim "the user acted and nothing observable happened"
SILENT_FAILURE_TYPES = frozenset(
    t for t in FindingType
    if t not in (FindingType.OBSERVED_BREAK, FindingType.RENDER_FAILURE)
)


class FindingStatus(Enum):
    CONFIRMED = "CONFIRMED"
    SUSPECTED = "SUSPECTED"
    INFORMATIONAL = "INFORMATIONAL"


class Severity(Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class EvidenceCategory(Enum):
    # Strong
    MEANINGFUL_CHANGE = "meaningful_change"
    NAVIGATION = "navigation"
    NETWORK = "network"
    FEEDBACK = "feedback"
    # Weak
    CONSOLE = "console"
    BLOCKED_WRITE = "blocked_write"
    CAPTURED_EVIDENCE = "captured_evidence"


class DowngradeReason(Enum):
    MISSING_STRONG_EVIDENCE = "missing_strong_evidence"
    MISSING_EVIDENCE_OBJECT = "missing_evidence_object"
    WEAK_EVIDENCE_ONLY = "weak_evidence_only"


class Ambiguity(Enum):
    BLOCKED_WRITE_DETECTED = "blocked_write_detected"
    CONSOLE_ONLY = "console_only"
    NETWORK_ONLY = "network_only"


# Closed code set for each annotation field
ANNOTATION_CODES = MappingProxyType({
    "ambiguity_reasons": frozenset(a.value for a in Ambiguity),
    "evidence_categories": frozenset(c.value for c in EvidenceCategory),
    "evidence_law_downgrade_reasons": frozenset(r.value for r in DowngradeReason),
})

TEXT_FIELDS = (
    "human_summary",
    "action_hint",
    "confidence_explanation",
    "outcome",
    "scope_classification",
    "out_of_scope_explanation",
)


# =============================================================================
# HELPERS
# =============================================================================

def _plain(value: Any) -> Any:
    """Convert read-only mappings and tuples back to JSON-friendly types."""
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    return value


def serialized_size(data: Mapping[str, Any]) -> int:
    """Size in bytes of the compact, key-sorted JSON form."""
    text = json.dumps(_plain(data), sort_keys=True, separators=(",", ":"), default=str)
    return len(text.encode("utf-8"))


def find_forbidden_names(text: str) -> list[str]:
    """Forbidden names contained in text (case-insensitive substring match)."""
    lowered = text.lower()
    return [name for name in FORBIDDEN_FIELD_NAMES if name in lowered]


def find_forbidden_text(text: str) -> list[str]:
    """
    Forbidden names mentioned in prose.

    Matches whole words (and plurals) so that "share" or "random" pass,
    and reports any markup tag as html.
    """
    words = set(_WORD_PATTERN.findall(text.lower()))
    has_markup = _MARKUP_PATTERN.search(text) is not None
    return [
        name for name in FORBIDDEN_FIELD_NAMES
        if name in words or name + "s" in words or (name == "html" and has_markup)
    ]


def _is_valid_penalty(value: Any) -> bool:
    return (
        isinstance(value, int)
        and not isinstance(value, bool)
        and SILENCE_PENALTY_FLOOR <= value <= 0
    )


def _is_valid_promise_shape(promise: Mapping[str, Any]) -> bool:
    def text(key):
        value = promise.get(key)
        return isinstance(value, str) and len(value) > 0

    has_kind_value = text("kind") and text("value")
    has_type_expectation = text("type") and (
        text("expected") or text("actual") or text("expected_signal")
    )
    return bool(has_kind_value or has_type_expectation)


# =============================================================================
# ENRICHMENT (allow-list)
# =============================================================================

@dataclass(frozen=True)
class FindingEnrichment:
    """
    Derived annotations on a Finding.

    Only these fields exist. Anything else offered by a producer is
    discarded by from_raw(), so raw element locators or markup cannot
    ride along into findings.json.

    Reason codes must belong to their closed taxonomy and free text must
    pass find_forbidden_text(); otherwise construction raises.
    """
    human_summary: Optional[str] = None
    action_hint: Optional[str] = None
    confidence_explanation: Optional[str] = None
    outcome: Optional[str] = None
    scope_classification: Optional[str] = None
    out_of_scope_explanation: Optional[str] = None
    ambiguity_reasons: tuple[str, ...] = ()
    evidence_categories: tuple[str, ...] = ()
    evidence_law_downgrade_reasons: tuple[str, ...] = ()
    silence_penalty: Optional[int] = None

    # Serialized key for each field
    _KEYS = MappingProxyType({
        "human_summary": "humanSummary",
        "action_hint": "actionHint",
        "confidence_explanation": "confidenceExplanation",
        "outcome": "outcome",
        "scope_classification": "scopeClassification",
        "out_of_scope_explanation": "outOfScopeExplanation",
        "ambiguity_reasons": "ambiguityReasons",
        "evidence_categories": "evidenceCategories",
        "evidence_law_downgrade_reasons": "evidenceLawDowngradeReasons",
        "silence_penalty": "silencePenalty",
    })

    # Fields written by validation and reporting, not by producers
    ANNOTATION_FIELDS = (
        "ambiguity_reasons",
        "evidence_categories",
        "evidence_law_downgrade_reasons",
        "silence_penalty",
    )

    def __post_init__(self):
        for name in TEXT_FIELDS:
            value = getattr(self, name)
            if value is None:
                continue
            if not isinstance(value, str):
                raise FindingContractError(f"{name} must be a string, got {value!r}")
            forbidden = find_forbidden_text(value)
            if forbidden:
                raise FindingContractError(
                    f"{name} mentions forbidden content: {', '.join(forbidden)}"
                )

        for name, allowed in ANNOTATION_CODES.items():
            value = getattr(self, name)
            if not isinstance(value, (tuple, list)):
                raise FindingContractError(f"{name} must be a tuple of codes")
            unknown = [code for code in value if code not in allowed]
            if unknown:
                raise FindingContractError(f"{name} has unknown codes: {unknown!r}")
            object.__setattr__(self, name, tuple(dict.fromkeys(value)))

        forbidden = find_forbidden_names(" ".join(self.reason_codes))
        if forbidden:
            raise FindingContractError(
                f"enrichment reasons contain forbidden names: {', '.join(forbidden)}"
            )

        if self.silence_penalty is not None and not _is_valid_penalty(self.silence_penalty):
            raise FindingContractError(
                f"silence_penalty must be an int in [{SILENCE_PENALTY_FLOOR}, 0], "
                f"got {self.silence_penalty!r}"
            )

    @property
    def reason_codes(self) -> tuple[str, ...]:
        """All machine reason codes carried by this enrichment."""
        return (
            self.ambiguity_reasons
            + self.evidence_categories
            + self.evidence_law_downgrade_reasons
        )

    def to_dict(self, include_annotations: bool = True) -> dict:
        """Serialize only the fields that are set, in declaration order."""
        data = {}
        for f in fields(self):
            if not include_annotations and f.name in self.ANNOTATION_FIELDS:
                continue
            value = getattr(self, f.name)
            if value is None or value == ():
                continue
            data[self._KEYS[f.name]] = list(value) if isinstance(value, tuple) else value
        return data

    @classmethod
    def from_raw(cls, raw: Optional[Mapping[str, Any]]) -> "FindingEnrichment":
        """
        Pick allow-listed fields out of a raw enrichment mapping.

        Unknown reason codes, free text that mentions forbidden content and
        out-of-range penalties are dropped rather than rejected.
        """
        if not raw:
            return cls()

        values = {}
        for name, key in cls._KEYS.items():
            if key in raw:
                value = raw[key]
            elif name in raw:
                value = raw[name]
            else:
                continue

            if name in ANNOTATION_CODES:
                codes = value if isinstance(value, (list, tuple)) else ()
                value = tuple(str(v) for v in codes if str(v) in ANNOTATION_CODES[name])
            elif name == "silence_penalty":
                if value is None:
                    continue
                if not _is_valid_penalty(value):
                    logger.warning("enrichment_field_dropped", field=key, reason="invalid_penalty")
                    continue
            elif value is not None:
                if not isinstance(value, str):
                    value = str(value)
                forbidden = find_forbidden_text(value)
                if forbidden:
                    logger.warning("enrichment_field_dropped", field=key, forbidden=forbidden)
                    continue
            values[name] = value
        return cls(**values)


# =============================================================================
# FINDING
# =============================================================================

@dataclass(frozen=True)
class Finding:
    """
    The canonical unit of report.

    Created once, validated once. The only later change is the Evidence
    Law downgrade, which returns a new Finding via dataclasses.replace.
    """
    type: FindingType
    status: FindingStatus
    severity: Severity
    confidence: float
    promise: Mapping[str, Any]
    observed: Mapping[str, Any]
    evidence: Mapping[str, Any]
    impact: str
    enrichment: FindingEnrichment = field(default_factory=FindingEnrichment)
    interaction: Optional[Mapping[str, Any]] = None
    expectation: Optional[Mapping[str, Any]] = None
    id: Optional[str] = None

    def __post_init__(self):
        self._validate()
        # Freeze the top-level mappings
        for name in ("promise", "observed", "evidence", "interaction", "expectation"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, MappingProxyType):
                object.__setattr__(self, name, MappingProxyType(dict(value)))

    def _validate(self) -> None:
        if not isinstance(self.type, FindingType):
            raise FindingContractError(f"type must be FindingType, got {self.type!r}")
        if not isinstance(self.status, FindingStatus):
            raise FindingContractError(f"status must be FindingStatus, got {self.status!r}")
        if not isinstance(self.severity, Severity):
            raise FindingContractError(f"severity must be Severity, got {self.severity!r}")

        if isinstance(self.confidence, bool) or not isinstance(self.confidence, (int, float)):
            raise FindingContractError(f"confidence must be a number, got {self.confidence!r}")
        if not (0.0 <= self.confidence <= 1.0):
            raise FindingContractError(
                f"confidence must be in [0.0, 1.0], got {self.confidence}"
            )

        if not isinstance(self.promise, Mapping) or not _is_valid_promise_shape(self.promise):
            raise FindingContractError("promise must include kind/value or type expectation")
        if not isinstance(self.observed, Mapping):
            raise FindingContractError("observed must be a mapping")
        if not isinstance(self.evidence, Mapping):
            raise FindingContractError("evidence must be a mapping")
        if not isinstance(self.impact, str):
            raise FindingContractError("impact must be a string")
        if not isinstance(self.enrichment, FindingEnrichment):
            raise FindingContractError("enrichment must be FindingEnrichment")

        # Annotations are excluded so that validation can never push a
        # constructed Finding over MAX_FINDING_BYTES
        limit = MAX_FINDING_BYTES - RESERVED_ENRICHMENT_BYTES
        size = serialized_size(self.to_dict(include_annotations=False))
        if size > limit:
            raise FindingContractError(
                f"serialized finding is {size} bytes, limit is {limit} "
                f"({RESERVED_ENRICHMENT_BYTES} of {MAX_FINDING_BYTES} reserved for annotations)"
            )

    @property
    def is_silent_failure(self) -> bool:
        return self.type in SILENT_FAILURE_TYPES

    def to_dict(self, include_annotations: bool = True) -> dict:
        data = {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "severity": self.severity.value,
            "confidence": self.confidence,
            "promise": _plain(self.promise),
            "observed": _plain(self.observed),
            "evidence": _plain(self.evidence),
            "impact": self.impact,
            "enrichment": self.enrichment.to_dict(include_annotations),
        }
        if self.interaction is not None:
            data["interaction"] = _plain(self.interaction)
        if self.expectation is not None:
            data["expectation"] = _plain(self.expectation)
        return data


# =============================================================================
# CANONICALIZATION
# =============================================================================

def _normalize_confidence(raw_confidence: Any) -> float:
    confidence = DEFAULT_CONFIDENCE

    if isinstance(raw_confidence, (int, float)) and not isinstance(raw_confidence, bool):
        confidence = float(raw_confidence)
    elif isinstance(raw_confidence, Mapping):
        score = raw_confidence.get("score")
        level = raw_confidence.get("level")
        if isinstance(score, (int, float)) and not isinstance(score, bool):
            confidence = float(score)
        elif level is not None:
            confidence = CONFIDENCE_LEVELS.get(str(level).lower(), DEFAULT_CONFIDENCE)

    # Scores can arrive on a 0-100 scale
    if confidence > 1:
        confidence = confidence / 100

    return max(0.0, min(1.0, confidence))


def canonicalize_finding(raw: Mapping[str, Any]) -> Finding:
    """
    Build a contract-conforming Finding from a detector's raw dict.

    Unknown finding types are mapped to silent_failure. A missing type or
    missing observed block is a contract failure.
    """
    if not isinstance(raw, Mapping):
        raise FindingContractError("raw finding must be a mapping")

    raw_type = raw.get("type")
    if not raw_type:
        raise FindingContractError("Missing required field: type")
    try:
        finding_type = FindingType(raw_type)
    except ValueError:
        finding_type = FindingType.SILENT_FAILURE

    outcome = raw.get("outcome")
    status_value = raw.get("status") or "SUSPECTED"
    if str(outcome).upper() == "SILENT_FAILURE" and status_value != "CONFIRMED":
        status_value = "SUSPECTED"
    try:
        status = FindingStatus(str(status_value).upper())
    except ValueError:
        raise FindingContractError(f"unrecognized status: {status_value!r}")

    severity_value = raw.get("severity") or "MEDIUM"
    if outcome:
        severity_value = OUTCOME_SEVERITY.get(str(outcome).upper(), "MEDIUM")
    try:
        severity = Severity(str(severity_value).upper())
    except ValueError:
        raise FindingContractError(f"unrecognized severity: {severity_value!r}")

    promise = raw.get("promise") or {
        "kind": "unknown",
        "value": raw.get("what_was_expected") or "User-visible change",
        "type": raw_type,
    }

    observed = raw.get("observed")
    if not observed and raw.get("what_was_observed") is not None:
        observed = {"result": raw["what_was_observed"]}
    if observed is None:
        raise FindingContractError("Missing required field: observed")

    raw_enrichment = dict(raw.get("enrichment") or {})
    for key in ("humanSummary", "actionHint", "confidenceExplanation", "outcome"):
        if key in raw and key not in raw_enrichment:
            raw_enrichment[key] = raw[key]

    impact = raw.get("impact")
    if not isinstance(impact, str) or not impact:
        impact = "UNKNOWN"

    finding_id = raw.get("id") or compute_finding_identity(raw)

    return Finding(
        type=finding_type,
        status=status,
        severity=severity,
        confidence=_normalize_confidence(raw.get("confidence")),
        promise=promise,
        observed=observed,
        evidence=raw.get("evidence") or {},
        impact=impact,
        enrichment=FindingEnrichment.from_raw(raw_enrichment),
        interaction=raw.get("interaction"),
        expectation=raw.get("expectation"),
        id=finding_id,
    )
