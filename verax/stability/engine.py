"""
Stability Engine — batch stability over persisted runs.

Reads runs already written under <project>/.verax/runs/<run_id>/ and
answers: does this tool produce the same findings over time?

Classification:
    STABLE    — every run has the same findings signature
    UNSTABLE  — at least one signature differs

Timing and observation metrics are informational; only the findings
signature decides the classification.
"""

from __future__ import annotations

import hashlib
import json
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Sequence, Union

import structlog

from ..determinism.identity import compute_finding_identity
from ..determinism.normalize import normalize_artifact
from ..errors import DataError

logger = structlog.get_logger()


# =============================================================================
# CONFIGURATION CONSTANTS
# =============================================================================

RUNS_DIR = (".verax", "runs")

SUMMARY_ARTIFACT = "summary.json"
FINDINGS_ARTIFACT = "findings.json"
TRACES_ARTIFACT = "traces.json"
OBSERVE_ARTIFACT = "observe.json"
EXPECTATIONS_ARTIFACT = "expectations.json"

SIGNATURE_LENGTH = 16

HIGH_CONFIDENCE = 0.85
MEDIUM_CONFIDENCE = 0.6

# Observation ratio drift tolerated between runs
OBSERVATION_RATIO_TOLERANCE = 0.05

TRACKED_SIGNALS = (
    "routeChanged",
    "outcomeAcknowledged",
    "meaningfulUIChange",
    "delayedAcknowledgment",
    "consoleErrors",
    "networkActivity",
)


class StabilityClassification(Enum):
    STABLE = "STABLE"
    UNSTABLE = "UNSTABLE"


# =============================================================================
# ARTIFACT LOADING
# =============================================================================

def _run_dir(project_root: Union[str, Path], run_id: str) -> Path:
    return Path(project_root).joinpath(*RUNS_DIR, run_id)


def _load_artifact(run_dir: Path, filename: str, required: bool = False) -> Any:
    path = run_dir / filename
    if not path.exists():
        if required:
            raise DataError(
                f"Incomplete run: {filename} not found in {run_dir}",
                artifact=filename,
                run_dir=str(run_dir),
            )
        return None

    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except (OSError, ValueError) as exc:
        raise DataError(
            f"Failed to parse {filename}: {exc}",
            artifact=filename,
            run_dir=str(run_dir),
        ) from exc


def _as_list(artifact: Any, *keys: str) -> list:
    if isinstance(artifact, list):
        return artifact
    if isinstance(artifact, dict):
        for key in keys:
            value = artifact.get(key)
            if isinstance(value, list):
                return value
    return []


# =============================================================================
# PER-RUN METRICS
# =============================================================================

@dataclass
class FindingsMetrics:
    count: int
    identities: list[str]
    signature_hash: str
    by_type: dict[str, int] = field(default_factory=dict)
    by_status: dict[str, int] = field(default_factory=dict)
    by_confidence: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "identities": list(self.identities),
            "signatureHash": self.signature_hash,
            "byType": dict(self.by_type),
            "byStatus": dict(self.by_status),
            "byConfidence": dict(self.by_confidence),
        }


def compute_signature_hash(identities: Sequence[str]) -> str:
    """Order-independent hash over a set of finding identities."""
    joined = "|".join(sorted(set(identities)))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:SIGNATURE_LENGTH]


def extract_findings_metrics(findings_artifact: Any) -> FindingsMetrics:
    normalized = normalize_artifact("findings", findings_artifact)
    findings = [f for f in _as_list(normalized, "findings") if isinstance(f, dict)]

    identities = sorted({compute_finding_identity(f) for f in findings})
    by_type: Counter = Counter()
    by_status: Counter = Counter()
    by_confidence = {"high": 0, "medium": 0, "low": 0}

    for finding in findings:
        by_type[str(finding.get("type"))] += 1
        by_status[str(finding.get("status"))] += 1
        confidence = finding.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            confidence = 0
        if confidence >= HIGH_CONFIDENCE:
            by_confidence["high"] += 1
        elif confidence >= MEDIUM_CONFIDENCE:
            by_confidence["medium"] += 1
        else:
            by_confidence["low"] += 1

    return FindingsMetrics(
        count=len(findings),
        identities=identities,
        signature_hash=compute_signature_hash(identities),
        by_type={k: by_type[k] for k in sorted(by_type)},
        by_status={k: by_status[k] for k in sorted(by_status)},
        by_confidence=by_confidence,
    )


@dataclass
class ObservationMetrics:
    expectations_executed: int
    observations_recorded: int
    observation_ratio: float
    signal_counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "expectationsExecuted": self.expectations_executed,
            "observationsRecorded": self.observations_recorded,
            "observationRatio": self.observation_ratio,
            "signalCounts": dict(self.signal_counts),
        }


def extract_observation_metrics(traces: Any, observe: Any = None) -> ObservationMetrics:
    entries = _as_list(traces, "traces", "observations", "entries")
    if not entries:
        entries = _as_list(observe, "observations", "traces", "entries")

    recorded = 0
    signal_counts = {name: 0 for name in TRACKED_SIGNALS}

    for entry in entries:
        if not isinstance(entry, dict):
            continue
        if entry.get("observed") is True:
            recorded += 1
        signals = entry.get("signals") or (entry.get("evidence") or {}).get("signals") or {}
        for name in TRACKED_SIGNALS:
            if signals.get(name) is True:
                signal_counts[name] += 1

    executed = len(entries)
    ratio = round(recorded / executed, 3) if executed else 0.0

    return ObservationMetrics(
        expectations_executed=executed,
        observations_recorded=recorded,
        observation_ratio=ratio,
        signal_counts=signal_counts,
    )


@dataclass
class TimingMetrics:
    """Informational only. Wall-clock numbers never affect classification."""
    total_ms: int = 0
    observe_ms: int = 0
    detect_ms: int = 0
    learn_ms: int = 0
    interaction_count: int = 0
    min_interaction_ms: int = 0
    max_interaction_ms: int = 0
    avg_interaction_ms: int = 0
    spread_cv: float = 0.0

    def to_dict(self) -> dict:
        return {
            "totalMs": self.total_ms,
            "observeMs": self.observe_ms,
            "detectMs": self.detect_ms,
            "learnMs": self.learn_ms,
            "perInteraction": {
                "count": self.interaction_count,
                "minMs": self.min_interaction_ms,
                "maxMs": self.max_interaction_ms,
                "avgMs": self.avg_interaction_ms,
                "spreadCv": self.spread_cv,
            },
        }


def _parse_time(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def extract_timing_metrics(summary: dict, traces: Any) -> TimingMetrics:
    timeouts = ((summary or {}).get("analysis") or {}).get("timeouts") or {}
    total_ms = int(timeouts.get("totalMs") or 0)
    observe_ms = int(timeouts.get("observeMs") or 0)
    detect_ms = int(timeouts.get("detectMs") or 0)

    durations: list[int] = []
    for entry in _as_list(traces, "traces", "observations", "entries"):
        if not isinstance(entry, dict):
            continue
        timing = (entry.get("evidence") or {}).get("timing") or entry.get("timing") or {}
        start = _parse_time(timing.get("startedAt"))
        end = _parse_time(timing.get("endedAt"))
        if start and end:
            duration = int((end - start).total_seconds() * 1000)
            if duration >= 0:
                durations.append(duration)

    metrics = TimingMetrics(
        total_ms=total_ms,
        observe_ms=observe_ms,
        detect_ms=detect_ms,
        learn_ms=max(0, total_ms - observe_ms - detect_ms),
        interaction_count=len(durations),
    )
    if durations:
        avg = round(sum(durations) / len(durations))
        metrics.min_interaction_ms = min(durations)
        metrics.max_interaction_ms = max(durations)
        metrics.avg_interaction_ms = avg
        if len(durations) > 1 and avg > 0:
            variance = sum((d - avg) ** 2 for d in durations) / len(durations)
            metrics.spread_cv = round(math.sqrt(variance) / avg, 3)
    return metrics


@dataclass
class ToolHealth:
    state: str
    timed_out: bool
    timeout_phase: Optional[str]
    is_incomplete: bool

    def to_dict(self) -> dict:
        return {
            "state": self.state,
            "timedOut": self.timed_out,
            "timeoutPhase": self.timeout_phase,
            "isIncomplete": self.is_incomplete,
        }


def extract_tool_health(summary: dict) -> ToolHealth:
    analysis = (summary or {}).get("analysis") or {}
    timeouts = analysis.get("timeouts") or {}
    state = str(analysis.get("state") or "UNKNOWN")
    timed_out = timeouts.get("timedOut") is True
    return ToolHealth(
        state=state,
        timed_out=timed_out,
        timeout_phase=timeouts.get("phase"),
        is_incomplete=state == "INCOMPLETE" or timed_out,
    )


# =============================================================================
# RUN STABILITY
# =============================================================================

@dataclass
class RunStability:
    run_id: str
    version: str
    findings: FindingsMetrics
    observations: ObservationMetrics
    timing: TimingMetrics
    tool_health: ToolHealth
    expectations_count: int = 0

    def to_dict(self) -> dict:
        return {
            "meta": {"runId": self.run_id, "veraxVersion": self.version},
            "findings": self.findings.to_dict(),
            "observations": self.observations.to_dict(),
            "expectationsCount": self.expectations_count,
            "timing": self.timing.to_dict(),
            "toolHealth": self.tool_health.to_dict(),
        }


def generate_run_stability(project_root: Union[str, Path], run_id: str) -> RunStability:
    """
    Compute stability metrics for one persisted run.

    Raises DataError when the run directory or summary.json is missing,
    or when any artifact is unreadable.
    """
    run_dir = _run_dir(project_root, run_id)
    if not run_dir.is_dir():
        raise DataError(
            f"Run directory not found: {run_dir}",
            artifact=None,
            run_dir=str(run_dir),
        )

    summary = _load_artifact(run_dir, SUMMARY_ARTIFACT, required=True)
    findings = _load_artifact(run_dir, FINDINGS_ARTIFACT)
    traces = _load_artifact(run_dir, TRACES_ARTIFACT)
    observe = _load_artifact(run_dir, OBSERVE_ARTIFACT)
    expectations = _load_artifact(run_dir, EXPECTATIONS_ARTIFACT)

    if not isinstance(summary, dict):
        raise DataError(
            f"Malformed {SUMMARY_ARTIFACT} in {run_dir}: expected an object",
            artifact=SUMMARY_ARTIFACT,
            run_dir=str(run_dir),
        )

    meta = summary.get("meta") or {}
    return RunStability(
        run_id=run_id,
        version=str(meta.get("version") or "unknown"),
        findings=extract_findings_metrics(findings),
        observations=extract_observation_metrics(traces, observe),
        timing=extract_timing_metrics(summary, traces),
        tool_health=extract_tool_health(summary),
        expectations_count=len(_as_list(expectations, "expectations")),
    )


# =============================================================================
# BATCH STABILITY
# =============================================================================

@dataclass
class RunFindingsDiff:
    run_id: str
    added: list[str]
    removed: list[str]

    def to_dict(self) -> dict:
        return {
            "run": self.run_id,
            "added": len(self.added),
            "removed": len(self.removed),
            "addedIds": list(self.added),
            "removedIds": list(self.removed),
        }


@dataclass
class BatchStability:
    run_ids: list[str]
    runs: list[RunStability]
    classification: StabilityClassification
    reference_signature: str
    findings_differ: bool
    findings_diffs: list[RunFindingsDiff] = field(default_factory=list)
    observations_stable: bool = True
    incomplete_runs: list[str] = field(default_factory=list)

    @property
    def is_stable(self) -> bool:
        return self.classification == StabilityClassification.STABLE

    def to_dict(self) -> dict:
        added = sorted({i for d in self.findings_diffs for i in d.added})
        removed = sorted({i for d in self.findings_diffs for i in d.removed})
        return {
            "meta": {"runCount": len(self.run_ids), "runIds": list(self.run_ids)},
            "classification": self.classification.value,
            "findings": {
                "signatureHash": self.reference_signature,
                "findingsDiffer": self.findings_differ,
                "addedCount": len(added),
                "removedCount": len(removed),
                "diffs": [d.to_dict() for d in self.findings_diffs],
            },
            "observations": {
                "stable": self.observations_stable,
                "ratios": [
                    {"run": r.run_id, "observationRatio": r.observations.observation_ratio}
                    for r in self.runs
                ],
            },
            "toolHealth": {
                "incompleteRuns": list(self.incomplete_runs),
                "failureRate": round(len(self.incomplete_runs) / len(self.runs), 3),
            },
        }


def _observations_stable(runs: list[RunStability]) -> bool:
    reference = runs[0].observations
    for run in runs[1:]:
        current = run.observations
        if current.expectations_executed != reference.expectations_executed:
            return False
        if current.observations_recorded != reference.observations_recorded:
            return False
        if abs(current.observation_ratio - reference.observation_ratio) > OBSERVATION_RATIO_TOLERANCE:
            return False
    return True


def generate_batch_stability(
    project_root: Union[str, Path],
    run_ids: Sequence[str],
) -> BatchStability:
    """
    Compare findings signatures across persisted runs.

    The first run is the reference. STABLE iff every signature matches it.
    """
    if not run_ids:
        raise DataError("No runs provided for batch stability analysis")

    runs = [generate_run_stability(project_root, run_id) for run_id in run_ids]
    reference = runs[0].findings
    reference_ids = set(reference.identities)

    diffs: list[RunFindingsDiff] = []
    for run in runs[1:]:
        if run.findings.signature_hash == reference.signature_hash:
            continue
        current_ids = set(run.findings.identities)
        diffs.append(RunFindingsDiff(
            run_id=run.run_id,
            added=sorted(current_ids - reference_ids),
            removed=sorted(reference_ids - current_ids),
        ))

    findings_differ = len(diffs) > 0
    classification = (
        StabilityClassification.UNSTABLE if findings_differ
        else StabilityClassification.STABLE
    )

    batch = BatchStability(
        run_ids=list(run_ids),
        runs=runs,
        classification=classification,
        reference_signature=reference.signature_hash,
        findings_differ=findings_differ,
        findings_diffs=diffs,
        observations_stable=_observations_stable(runs),
        incomplete_runs=[r.run_id for r in runs if r.tool_health.is_incomplete],
    )

    logger.info(
        "stability_batch_classified",
        classification=classification.value,
        run_count=len(runs),
        findings_differ=findings_differ,
    )
    return batch
