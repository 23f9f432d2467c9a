"""
Evidence Law — Constitution Validator.

LAW:
    A CONFIRMED silent-failure Finding must be backed by at least one
    STRONG evidence category. Otherwise it is downgraded to SUSPECTED
    with recorded reasons. Findings are never dropped.

Strong categories (a recorded signal is a measurement, whatever its value):
    meaningful_change — a DOM diff was taken
    navigation        — URL change was checked
    network           — correlated network activity was checked
    feedback          — user feedback (aria-live, status message) was checked

Weak categories (insufficient alone):
    console, blocked_write, captured_evidence

Only strong categories are recorded in enrichment.evidenceCategories.
Weak ones still drive the downgrade reasons and ambiguities.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

import structlog

from .contract import (
    Ambiguity,
    DowngradeReason,
    EvidenceCategory,
    Finding,
    FindingStatus,
)

logger = structlog.get_logger()


# =============================================================================
# EVIDENCE CATEGORIES
# =============================================================================

STRONG_CATEGORIES = (
    EvidenceCategory.MEANINGFUL_CHANGE,
    EvidenceCategory.NAVIGATION,
    EvidenceCategory.NETWORK,
    EvidenceCategory.FEEDBACK,
)

# Presence of any key counts, regardless of value
CATEGORY_KEYS: dict[EvidenceCategory, tuple[str, ...]] = {
    EvidenceCategory.MEANINGFUL_CHANGE: (
        "dom_diff", "domDiff", "dom_diff_present",
        "meaningful_dom_change", "meaningfulDomChange",
        "dom_changed", "domChanged", "hasDomChange",
    ),
    EvidenceCategory.NAVIGATION: (
        "navigation_changed", "navigationChanged",
        "hasUrlChange", "beforeUrl", "afterUrl",
    ),
    EvidenceCategory.NETWORK: (
        "correlated_network_activity", "correlatedNetworkActivity",
        "network_activity", "networkActivity",
        "network_request", "networkRequest", "networkRequests",
    ),
    EvidenceCategory.FEEDBACK: (
        "feedback_seen", "feedbackSeen", "aria_live",
        "statusMessage", "success_message", "successMessage",
    ),
    EvidenceCategory.CONSOLE: (
        "console_errors", "consoleErrors", "console_error", "consoleError",
    ),
    EvidenceCategory.BLOCKED_WRITE: (
        "blocked_writes", "blockedWrites", "blocked_write", "blockedWrite",
    ),
    EvidenceCategory.CAPTURED_EVIDENCE: (
        "screenshots_only", "screenshots",
    ),
}

# Captured files only count when the list is non-empty
EVIDENCE_FILE_KEYS = ("evidence_files", "evidenceFiles")


class ValidationAction(Enum):
    KEEP = "KEEP"
    DOWNGRADE = "DOWNGRADE"


@dataclass(frozen=True)
class EvidenceCategories:
    strong: tuple[EvidenceCategory, ...] = ()
    weak: tuple[EvidenceCategory, ...] = ()

    @property
    def has_strong(self) -> bool:
        return len(self.strong) > 0

    def names(self) -> tuple[str, ...]:
        return tuple(c.value for c in self.strong + self.weak)


def classify_evidence_categories(evidence: Optional[Mapping[str, Any]]) -> EvidenceCategories:
    """Split the evidence keys into strong and weak categories."""
    if not isinstance(evidence, Mapping):
        return EvidenceCategories()

    present = []
    for category, keys in CATEGORY_KEYS.items():
        if any(key in evidence for key in keys):
            present.append(category)

    if EvidenceCategory.CAPTURED_EVIDENCE not in present:
        for key in EVIDENCE_FILE_KEYS:
            files = evidence.get(key)
            if isinstance(files, (list, tuple)) and len(files) > 0:
                present.append(EvidenceCategory.CAPTURED_EVIDENCE)
                break

    strong = tuple(c for c in present if c in STRONG_CATEGORIES)
    weak = tuple(c for c in present if c not in STRONG_CATEGORIES)
    return EvidenceCategories(strong=strong, weak=weak)


def detect_ambiguities(categories: EvidenceCategories) -> tuple[Ambiguity, ...]:
    """
    Evidence patterns that make a verdict uncertain.

    Recorded on the Finding, never a rejection.
    """
    found = []
    if EvidenceCategory.BLOCKED_WRITE in categories.weak:
        # Browser protection may mask real behaviour
        found.append(Ambiguity.BLOCKED_WRITE_DETECTED)
    if EvidenceCategory.CONSOLE in categories.weak and not categories.has_strong:
        found.append(Ambiguity.CONSOLE_ONLY)
    if categories.strong == (EvidenceCategory.NETWORK,):
        # Backend did something, UI stayed silent
        found.append(Ambiguity.NETWORK_ONLY)
    return tuple(found)


# =============================================================================
# VALIDATION
# =============================================================================

@dataclass(frozen=True)
class ConstitutionResult:
    valid: bool
    action: ValidationAction
    reasons: tuple[DowngradeReason, ...] = ()
    ambiguity_reasons: tuple[Ambiguity, ...] = ()
    evidence_categories: EvidenceCategories = field(default_factory=EvidenceCategories)


def validate_finding_constitution(finding: Finding) -> ConstitutionResult:
    """
    Decide whether a Finding's status is evidentially supportable.

    Pure. Never raises for evidence insufficiency.
    """
    categories = classify_evidence_categories(finding.evidence)
    ambiguities = detect_ambiguities(categories)

    needs_strong = (
        finding.is_silent_failure and finding.status == FindingStatus.CONFIRMED
    )
    if not needs_strong or categories.has_strong:
        return ConstitutionResult(
            valid=True,
            action=ValidationAction.KEEP,
            ambiguity_reasons=ambiguities,
            evidence_categories=categories,
        )

    reasons = [DowngradeReason.MISSING_STRONG_EVIDENCE]
    if not finding.evidence:
        reasons.append(DowngradeReason.MISSING_EVIDENCE_OBJECT)
    elif categories.weak:
        reasons.append(DowngradeReason.WEAK_EVIDENCE_ONLY)

    return ConstitutionResult(
        valid=False,
        action=ValidationAction.DOWNGRADE,
        reasons=tuple(reasons),
        ambiguity_reasons=ambiguities,
        evidence_categories=categories,
    )


def _merge(existing: tuple[str, ...], new: Iterable[str]) -> tuple[str, ...]:
    merged = list(existing)
    for item in new:
        if item not in merged:
            merged.append(item)
    return tuple(merged)


def apply_validation_result(finding: Finding, result: ConstitutionResult) -> Finding:
    """
    Apply a constitution result. Always returns a Finding.

    On DOWNGRADE the status becomes SUSPECTED and the reason codes are
    appended to enrichment.evidence_law_downgrade_reasons.
    """
    enrichment = finding.enrichment
    enrichment = replace(
        enrichment,
        ambiguity_reasons=_merge(
            enrichment.ambiguity_reasons, (a.value for a in result.ambiguity_reasons)
        ),
        evidence_categories=_merge(
            enrichment.evidence_categories,
            (c.value for c in result.evidence_categories.strong),
        ),
    )

    status = finding.status
    if result.action == ValidationAction.DOWNGRADE:
        status = FindingStatus.SUSPECTED
        enrichment = replace(
            enrichment,
            evidence_law_downgrade_reasons=_merge(
                enrichment.evidence_law_downgrade_reasons,
                (r.value for r in result.reasons),
            ),
        )
        logger.info(
            "finding_downgraded",
            finding_id=finding.id,
            finding_type=finding.type.value,
            reasons=[r.value for r in result.reasons],
        )

    # Codes are closed and sized within RESERVED_ENRICHMENT_BYTES, so the
    # re-run contract cannot reject the result
    return replace(finding, status=status, enrichment=enrichment)


def validate_finding(finding: Finding) -> Finding:
    """Validate and apply in one step."""
    return apply_validation_result(finding, validate_finding_constitution(finding))


# =============================================================================
# BATCH
# =============================================================================

@dataclass
class BatchValidationResult:
    valid: list[Finding]
    downgraded: int = 0


def batch_validate_findings(findings: Iterable[Finding]) -> BatchValidationResult:
    """Validate every Finding. Output count always equals input count."""
    validated: list[Finding] = []
    downgraded = 0

    for finding in findings:
        result = validate_finding_constitution(finding)
        if result.action == ValidationAction.DOWNGRADE:
            downgraded += 1
        validated.append(apply_validation_result(finding, result))

    return BatchValidationResult(valid=validated, downgraded=downgraded)
