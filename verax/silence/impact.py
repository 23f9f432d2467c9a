"""
Confidence Impact Accounting.

Turns silence records into numeric confidence penalties.

Core principle:
    A silence never raises confidence. Every penalty is <= 0 and every
    penalty can be traced back to one fixed profile row.

Dimensions:
    coverage              — how much of the app we actually observed
    promise_verification  — how many promises we could actually check
    overall               — the rollup used for ranking and bands
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Optional

from .types import ConfidenceImpact, EvaluationStatus, ImpactBand, SilenceType

if TYPE_CHECKING:
    from .model import SilenceRecord


# =============================================================================
# CONFIGURATION CONSTANTS
# =============================================================================

# Aggregated impact cannot go below the bottom of the confidence scale
IMPACT_FLOOR = -100

MOST_IMPACTFUL_LIMIT = 5
AFFECTED_DIMENSION_LIMIT = 3

CONFIDENCE_PRECISION = 3


# =============================================================================
# IMPACT PROFILES
# =============================================================================

@dataclass(frozen=True)
class ImpactProfile:
    """One row of the impact table: fixed penalties for a silence type."""
    name: str
    band: ImpactBand
    coverage: int
    promise_verification: int
    overall: int
    reasoning: str


SILENCE_IMPACT_PROFILES: dict[SilenceType, ImpactProfile] = {
    SilenceType.SENSOR_FAILURE: ImpactProfile(
        name="Sensor failure",
        band=ImpactBand.CRITICAL,
        coverage=-20,
        promise_verification=-15,
        overall=-18,
        reasoning="Observation instrument failed; nothing it should have seen can be asserted",
    ),
    SilenceType.DISCOVERY_FAILURE: ImpactProfile(
        name="Discovery failure",
        band=ImpactBand.CRITICAL,
        coverage=-15,
        promise_verification=-10,
        overall=-16,
        reasoning="Pages or interactions were never found, so they were never tested",
    ),
    SilenceType.NAVIGATION_TIMEOUT: ImpactProfile(
        name="Navigation timeout",
        band=ImpactBand.HIGH,
        coverage=-10,
        promise_verification=-20,
        overall=-15,
        reasoning="Navigation promise could not be confirmed or refuted in time",
    ),
    SilenceType.SELECTOR_NOT_FOUND: ImpactProfile(
        name="Selector not found",
        band=ImpactBand.HIGH,
        coverage=-10,
        promise_verification=-5,
        overall=-14,
        reasoning="Target element was absent, so the interaction was never attempted",
    ),
    SilenceType.INTERACTION_TIMEOUT: ImpactProfile(
        name="Interaction timeout",
        band=ImpactBand.HIGH,
        coverage=-8,
        promise_verification=-18,
        overall=-13,
        reasoning="Interaction started but its outcome was never observed",
    ),
    SilenceType.SETTLE_TIMEOUT: ImpactProfile(
        name="Settle timeout",
        band=ImpactBand.HIGH,
        coverage=-6,
        promise_verification=-15,
        overall=-12,
        reasoning="Page never stabilised; late effects may have been missed",
    ),
    SilenceType.SAFETY_POLICY_BLOCK: ImpactProfile(
        name="Safety policy block",
        band=ImpactBand.MEDIUM,
        coverage=-3,
        promise_verification=-25,
        overall=-11,
        reasoning="Interaction deliberately not executed; its promise stays unverified",
    ),
    SilenceType.PROMISE_VERIFICATION_BLOCKED: ImpactProfile(
        name="Promise verification blocked",
        band=ImpactBand.MEDIUM,
        coverage=-2,
        promise_verification=-22,
        overall=-10,
        reasoning="Promise target lies outside the allowed origin",
    ),
    SilenceType.BUDGET_LIMIT_EXCEEDED: ImpactProfile(
        name="Budget limit exceeded",
        band=ImpactBand.MEDIUM,
        coverage=-12,
        promise_verification=-8,
        overall=-9,
        reasoning="Scan budget ran out before the remaining surface was covered",
    ),
    SilenceType.INTERACTION_NOT_EXECUTED: ImpactProfile(
        name="Interaction not executed",
        band=ImpactBand.MEDIUM,
        coverage=-5,
        promise_verification=-12,
        overall=-7,
        reasoning="Expected interaction was unreachable in this run",
    ),
    SilenceType.PROMISE_NOT_EVALUATED: ImpactProfile(
        name="Promise not evaluated",
        band=ImpactBand.LOW,
        coverage=0,
        promise_verification=-2,
        overall=-1,
        reasoning="Interaction carried no extracted promise to check",
    ),
    SilenceType.INCREMENTAL_REUSE: ImpactProfile(
        name="Incremental reuse",
        band=ImpactBand.LOW,
        coverage=0,
        promise_verification=0,
        overall=0,
        reasoning="Unchanged since the previous run; prior result reused",
    ),
    SilenceType.UNKNOWN_SILENCE: ImpactProfile(
        name="Unrecognized silence",
        band=ImpactBand.HIGH,
        coverage=-5,
        promise_verification=-5,
        overall=-5,
        reasoning="Reason not in the catalog; penalised conservatively and flagged",
    ),
}

# Most critical first. overall is strictly increasing along this tuple.
CRITICALITY_RANKING: tuple[SilenceType, ...] = (
    SilenceType.SENSOR_FAILURE,
    SilenceType.DISCOVERY_FAILURE,
    SilenceType.NAVIGATION_TIMEOUT,
    SilenceType.SELECTOR_NOT_FOUND,
    SilenceType.INTERACTION_TIMEOUT,
    SilenceType.SETTLE_TIMEOUT,
    SilenceType.SAFETY_POLICY_BLOCK,
    SilenceType.PROMISE_VERIFICATION_BLOCKED,
    SilenceType.BUDGET_LIMIT_EXCEEDED,
    SilenceType.INTERACTION_NOT_EXECUTED,
    SilenceType.PROMISE_NOT_EVALUATED,
    SilenceType.INCREMENTAL_REUSE,
)


# =============================================================================
# SINGLE SILENCE
# =============================================================================

def impact_for(
    silence_type: SilenceType,
    evaluation_status: Optional[EvaluationStatus] = None,
) -> ConfidenceImpact:
    """
    Penalty for one silence type under one evaluation status.

    The status only moves promise_verification, so the overall ordering
    between types is the same for every status.
    """
    profile = SILENCE_IMPACT_PROFILES.get(
        silence_type, SILENCE_IMPACT_PROFILES[SilenceType.UNKNOWN_SILENCE]
    )
    promise_verification = profile.promise_verification

    if evaluation_status == EvaluationStatus.BLOCKED:
        # Intentional block: slightly less severe, capped
        promise_verification = max(-20, promise_verification + 2)
    elif evaluation_status == EvaluationStatus.TIMED_OUT:
        promise_verification = min(-25, promise_verification - 2)
    elif evaluation_status == EvaluationStatus.AMBIGUOUS:
        promise_verification = max(-5, promise_verification + 3)

    return ConfidenceImpact(
        coverage=profile.coverage,
        promise_verification=min(0, promise_verification),
        overall=profile.overall,
    )


def compute_silence_impact(silence: "SilenceRecord") -> ConfidenceImpact:
    """Confidence penalty of a single silence record."""
    return impact_for(silence.silence_type, silence.evaluation_status)


def apply_impact_to_confidence(confidence: float, impact: ConfidenceImpact) -> float:
    """
    Scale a finding confidence by a promise-verification penalty.

    -20 points turns 0.9 into 0.72. The result stays in [0, 1].
    """
    factor = (100 + max(IMPACT_FLOOR, impact.promise_verification)) / 100
    scaled = max(0.0, min(1.0, confidence * factor))
    return round(scaled, CONFIDENCE_PRECISION)


# =============================================================================
# AGGREGATION
# =============================================================================

def aggregate_silence_impacts(silences: Iterable["SilenceRecord"]) -> ConfidenceImpact:
    """Sum impacts per dimension, each clamped at IMPACT_FLOOR."""
    coverage = 0
    promise_verification = 0
    overall = 0

    for silence in silences:
        impact = compute_silence_impact(silence)
        coverage += impact.coverage
        promise_verification += impact.promise_verification
        overall += impact.overall

    return ConfidenceImpact(
        coverage=max(IMPACT_FLOOR, coverage),
        promise_verification=max(IMPACT_FLOOR, promise_verification),
        overall=max(IMPACT_FLOOR, overall),
    )


def categorize_silences_by_impact_severity(
    silences: Iterable["SilenceRecord"],
) -> dict[str, list["SilenceRecord"]]:
    """
    Partition silences into critical/high/medium/low by profile band.

    Types without a profile go to high.
    """
    buckets: dict[str, list] = {band.value: [] for band in ImpactBand}

    for silence in silences:
        profile = SILENCE_IMPACT_PROFILES.get(silence.silence_type)
        band = profile.band if profile else ImpactBand.HIGH
        buckets[band.value].append(silence)

    return buckets


def interpret_confidence(aggregated: ConfidenceImpact) -> str:
    """Human-readable reading of an aggregated impact."""
    overall = aggregated.overall

    if overall == 0:
        return "No silence events - observation confidence is complete within evaluated scope"
    if overall <= -80:
        return "CRITICAL: Observation significantly incomplete - major silence events limit what we can assert"
    if overall <= -50:
        return "SIGNIFICANT: Multiple silence events reduce observation confidence - substantial unknowns remain"
    if overall <= -25:
        return "MODERATE: Some silence events reduce observation completeness - some unknowns remain"
    if overall <= -10:
        return "MINOR: Few silence events slightly reduce confidence - observation mostly complete"
    return "Very minor impact from silence events"


# =============================================================================
# SUMMARY
# =============================================================================

@dataclass
class ImpactSummary:
    """Report-ready rollup of silence impacts."""
    total_silences: int
    aggregated_impact: ConfidenceImpact
    confidence_interpretation: str
    by_severity: dict[str, int]
    most_impactful_types: list[dict] = field(default_factory=list)
    affected_dimensions: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "total_silences": self.total_silences,
            "aggregated_impact": self.aggregated_impact.to_dict(),
            "confidence_interpretation": self.confidence_interpretation,
            "by_severity": dict(self.by_severity),
            "most_impactful_types": [dict(entry) for entry in self.most_impactful_types],
            "affected_dimensions": {k: list(v) for k, v in self.affected_dimensions.items()},
        }


def create_impact_summary(silences: Iterable["SilenceRecord"]) -> ImpactSummary:
    """
    Build the impact rollup shown in reports.

    Ties are broken by type name so the output never depends on dict order.
    """
    silences = list(silences)
    aggregated = aggregate_silence_impacts(silences)
    buckets = categorize_silences_by_impact_severity(silences)

    # Per-type totals
    counts: dict[str, int] = defaultdict(int)
    totals: dict[str, int] = defaultdict(int)
    impacts = []
    for silence in silences:
        impact = compute_silence_impact(silence)
        impacts.append((silence.silence_type.value, impact))
        counts[silence.silence_type.value] += 1
        totals[silence.silence_type.value] += impact.overall

    most_impactful = sorted(
        (
            {
                "type": type_name,
                "count": counts[type_name],
                "average_impact": round(totals[type_name] / counts[type_name]),
                "total_impact": totals[type_name],
            }
            for type_name in counts
        ),
        key=lambda entry: (entry["total_impact"], entry["type"]),
    )[:MOST_IMPACTFUL_LIMIT]

    affected: dict[str, list[str]] = {}
    for dimension in ("coverage", "promise_verification", "overall"):
        hit = [
            (getattr(impact, dimension), type_name)
            for type_name, impact in impacts
            if getattr(impact, dimension) < 0
        ]
        hit.sort()
        affected[dimension] = [type_name for _, type_name in hit[:AFFECTED_DIMENSION_LIMIT]]

    return ImpactSummary(
        total_silences=len(silences),
        aggregated_impact=aggregated,
        confidence_interpretation=interpret_confidence(aggregated),
        by_severity={band: len(members) for band, members in buckets.items()},
        most_impactful_types=most_impactful,
        affected_dimensions=affected,
    )
