"""
Findings report builder.

Ties the verdict core together:
    1. Canonicalize raw detector output into contract Findings
    2. Penalize confidence for silences that blocked the same promise
    3. Run every Finding through the Evidence Law
    4. Roll up counts and silence impact

The plain-text explanation is a VIEW of the report, not stored truth.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping, Optional, Union

from ..silence.impact import (
    ImpactSummary,
    aggregate_silence_impacts,
    apply_impact_to_confidence,
    create_impact_summary,
)
from ..silence.model import SilenceRecord
from ..silence.types import PromiseType
from .constitution import batch_validate_findings
from .contract import Finding, FindingStatus, FindingType, canonicalize_finding


# Promise each finding type claims was broken
FINDING_PROMISE_TYPES: dict[FindingType, PromiseType] = {
    FindingType.NAVIGATION_SILENT_FAILURE: PromiseType.NAVIGATION_PROMISE,
    FindingType.BROKEN_NAVIGATION_PROMISE: PromiseType.NAVIGATION_PROMISE,
    FindingType.SILENT_SUBMISSION: PromiseType.SUBMISSION_PROMISE,
    FindingType.VALIDATION_SILENT_FAILURE: PromiseType.FEEDBACK_PROMISE,
    FindingType.DEAD_INTERACTION_SILENT_FAILURE: PromiseType.FEEDBACK_PROMISE,
    FindingType.SILENT_FAILURE: PromiseType.FEEDBACK_PROMISE,
    FindingType.MISSING_STATE_ACTION: PromiseType.STATE_PROMISE,
    FindingType.INVISIBLE_STATE_FAILURE: PromiseType.STATE_PROMISE,
    FindingType.STUCK_OR_PHANTOM_LOADING: PromiseType.NETWORK_PROMISE,
}


# =============================================================================
# REPORT
# =============================================================================

@dataclass
class FindingsStats:
    total: int = 0
    confirmed: int = 0
    suspected: int = 0
    informational: int = 0
    downgraded: int = 0
    by_type: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "confirmed": self.confirmed,
            "suspected": self.suspected,
            "informational": self.informational,
            "downgraded": self.downgraded,
            "byType": dict(self.by_type),
        }


@dataclass
class FindingsReport:
    findings: list[Finding]
    stats: FindingsStats
    silence_impact: Optional[ImpactSummary] = None

    def to_dict(self) -> dict:
        """The findings.json shape."""
        data = {
            "findings": [f.to_dict() for f in self.findings],
            "stats": self.stats.to_dict(),
        }
        if self.silence_impact is not None:
            data["silenceImpact"] = self.silence_impact.to_dict()
        return data


# =============================================================================
# BUILDER
# =============================================================================

def apply_silence_penalty(
    finding: Finding,
    silences: list[SilenceRecord],
) -> Finding:
    """
    Lower a Finding's confidence by the silences that blocked its promise.

    Findings whose promise no silence is associated with are returned as is.
    """
    promise_type = FINDING_PROMISE_TYPES.get(finding.type)
    if promise_type is None:
        return finding

    related = [
        s for s in silences
        if s.promise_association is not None and s.promise_association.type == promise_type
    ]
    if not related:
        return finding

    impact = aggregate_silence_impacts(related)
    return replace(
        finding,
        confidence=apply_impact_to_confidence(finding.confidence, impact),
        enrichment=replace(finding.enrichment, silence_penalty=impact.promise_verification),
    )


def build_findings_report(
    raw_findings: Iterable[Union[Finding, Mapping[str, Any]]],
    silences: Optional[Iterable[SilenceRecord]] = None,
) -> FindingsReport:
    """
    Build the final, Evidence-Law-validated findings report.

    Every input finding appears in the output; none is dropped.
    """
    silence_list = list(silences) if silences is not None else []

    findings: list[Finding] = []
    for raw in raw_findings:
        finding = raw if isinstance(raw, Finding) else canonicalize_finding(raw)
        findings.append(apply_silence_penalty(finding, silence_list))

    batch = batch_validate_findings(findings)

    by_status = Counter(f.status for f in batch.valid)
    by_type = Counter(f.type.value for f in batch.valid)
    stats = FindingsStats(
        total=len(batch.valid),
        confirmed=by_status[FindingStatus.CONFIRMED],
        suspected=by_status[FindingStatus.SUSPECTED],
        informational=by_status[FindingStatus.INFORMATIONAL],
        downgraded=batch.downgraded,
        by_type={k: by_type[k] for k in sorted(by_type)},
    )

    return FindingsReport(
        findings=batch.valid,
        stats=stats,
        silence_impact=create_impact_summary(silence_list) if silence_list else None,
    )


# =============================================================================
# EXPLANATION GENERATION
# =============================================================================

def format_findings_report(report: FindingsReport) -> str:
    """
    Plain-text explanation of a findings report.

    Answers: "What broke silently, and how sure are we?"
    """
    stats = report.stats
    lines = [
        f"{stats.total} finding(s): {stats.confirmed} confirmed, "
        f"{stats.suspected} suspected, {stats.informational} informational.",
    ]

    if stats.downgraded:
        lines.append(
            f"{stats.downgraded} finding(s) were downgraded to SUSPECTED "
            f"for lack of strong evidence."
        )

    if report.findings:
        lines.append("")
        lines.append("Findings:")
        for finding in report.findings:
            lines.append(
                f"- [{finding.status.value}/{finding.severity.value}] "
                f"{finding.type.value} (confidence {finding.confidence:.2f}): {finding.impact}"
            )
            reasons = finding.enrichment.evidence_law_downgrade_reasons
            if reasons:
                lines.append(f"    downgraded: {', '.join(reasons)}")
            if finding.enrichment.silence_penalty:
                lines.append(
                    f"    silence penalty: {finding.enrichment.silence_penalty} points"
                )

    if report.silence_impact is not None:
        impact = report.silence_impact
        lines.append("")
        lines.append(f"Silences: {impact.total_silences}")
        lines.append(f"Confidence: {impact.confidence_interpretation}")
        if impact.most_impactful_types:
            top = impact.most_impactful_types[0]
            lines.append(
                f"Most impactful: {top['type']} x{top['count']} ({top['total_impact']} points)"
            )

    return "\n".join(lines)
