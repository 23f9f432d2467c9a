"""
Determinism Engine.

Runs the pipeline N times on identical input and certifies that every
run produced the same canonical output.

Verdicts:
    DETERMINISTIC      — zero diffs across all runs
    NON_DETERMINISTIC  — at least one diff; the full diff list is returned
    EXECUTION_FAILED   — a run raised; certification stops there

The checker adds no nondeterminism of its own: artifacts are compared
in sorted name order and no wall-clock value reaches the result.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from .diff import DiffCategory, DiffEntry, DiffReason, DiffSeverity, diff_artifacts
from .normalize import is_volatile_key, normalize_artifact

logger = structlog.get_logger()


# =============================================================================
# CONFIGURATION CONSTANTS
# =============================================================================

DEFAULT_RUNS = 2
SCORE_DIGITS = 3


class DeterminismVerdict(Enum):
    DETERMINISTIC = "DETERMINISTIC"
    NON_DETERMINISTIC = "NON_DETERMINISTIC"
    EXECUTION_FAILED = "EXECUTION_FAILED"


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class RunError:
    run_index: int
    error_type: str
    message: str

    def to_dict(self) -> dict:
        return {
            "runIndex": self.run_index,
            "errorType": self.error_type,
            "message": self.message,
        }


@dataclass
class DeterminismSummary:
    runs: int
    total_diffs: int
    stability_score: float
    by_category: dict[str, int] = field(default_factory=dict)
    by_reason: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "runs": self.runs,
            "totalDiffs": self.total_diffs,
            "stabilityScore": self.stability_score,
            "byCategory": dict(self.by_category),
            "byReason": dict(self.by_reason),
        }


@dataclass
class DeterminismResult:
    verdict: DeterminismVerdict
    summary: DeterminismSummary
    diffs: list[DiffEntry] = field(default_factory=list)
    run_errors: list[RunError] = field(default_factory=list)

    @property
    def is_deterministic(self) -> bool:
        return self.verdict == DeterminismVerdict.DETERMINISTIC

    def to_dict(self) -> dict:
        return {
            "verdict": self.verdict.value,
            "summary": self.summary.to_dict(),
            "diffs": [d.to_dict() for d in self.diffs],
            "runErrors": [e.to_dict() for e in self.run_errors],
        }


def compute_stability_score(total_diffs: int) -> float:
    """1.0 with no diffs, strictly decreasing as diffs grow."""
    if total_diffs <= 0:
        return 1.0
    return round(1.0 / (1 + total_diffs), SCORE_DIGITS)


# =============================================================================
# COMPARISON
# =============================================================================

def _artifacts_of(result: Any) -> dict:
    """
    Artifacts from a run result: result['artifacts'], or the result itself.

    Raises TypeError for anything else, so a malformed run is never read
    as "no artifacts".
    """
    if not isinstance(result, dict):
        raise TypeError(f"run result must be a dict, got {type(result).__name__}")
    artifacts = result.get("artifacts", result)
    if not isinstance(artifacts, dict):
        raise TypeError(f"run artifacts must be a dict, got {type(artifacts).__name__}")
    return {
        name: value for name, value in artifacts.items()
        if name != "runFingerprint" and not is_volatile_key(name)
    }


def _fingerprint_of(result: Any) -> Optional[str]:
    if isinstance(result, dict):
        return result.get("runFingerprint")
    return None


def compare_runs(results: list[Any]) -> list[DiffEntry]:
    """Diff every run against the first one."""
    if len(results) < 2:
        return []

    reference = _artifacts_of(results[0])
    reference_fingerprint = _fingerprint_of(results[0])
    diffs: list[DiffEntry] = []

    for result in results[1:]:
        artifacts = _artifacts_of(result)

        fingerprint = _fingerprint_of(result)
        if reference_fingerprint != fingerprint:
            diffs.append(DiffEntry(
                reason_code=DiffReason.RUN_FINGERPRINT_MISMATCH,
                category=DiffCategory.STATUS,
                severity=DiffSeverity.BLOCKER,
                message="Run fingerprint differs from the first run",
                artifact="runFingerprint",
                old_value=reference_fingerprint,
                new_value=fingerprint,
            ))

        for name in sorted(set(reference) | set(artifacts)):
            diffs.extend(diff_artifacts(
                normalize_artifact(name, reference.get(name)),
                normalize_artifact(name, artifacts.get(name)),
                name,
            ))

    return diffs


def _build_result(
    runs: int,
    results: list[Any],
    run_errors: list[RunError],
) -> DeterminismResult:
    if run_errors:
        return DeterminismResult(
            verdict=DeterminismVerdict.EXECUTION_FAILED,
            summary=DeterminismSummary(runs=runs, total_diffs=0, stability_score=0.0),
            run_errors=run_errors,
        )

    diffs = compare_runs(results)
    by_category = Counter(d.category.value for d in diffs)
    by_reason = Counter(d.reason_code.value for d in diffs)

    verdict = (
        DeterminismVerdict.DETERMINISTIC if not diffs
        else DeterminismVerdict.NON_DETERMINISTIC
    )
    result = DeterminismResult(
        verdict=verdict,
        summary=DeterminismSummary(
            runs=runs,
            total_diffs=len(diffs),
            stability_score=compute_stability_score(len(diffs)),
            by_category={k: by_category[k] for k in sorted(by_category)},
            by_reason={k: by_reason[k] for k in sorted(by_reason)},
        ),
        diffs=diffs,
    )

    logger.info(
        "determinism_check_complete",
        verdict=verdict.value,
        runs=runs,
        total_diffs=len(diffs),
    )
    return result


def _record_failure(index: int, exc: Exception) -> RunError:
    logger.error(
        "determinism_run_failed",
        run_index=index,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return RunError(run_index=index, error_type=type(exc).__name__, message=str(exc))


def _check_runs(runs: int) -> None:
    if runs < 1:
        raise ValueError(f"runs must be >= 1, got {runs}")


# =============================================================================
# ENTRY POINTS
# =============================================================================

async def _resolve(awaitable):
    return await awaitable


def run_determinism_check(
    run_fn: Callable[[], Any],
    runs: int = DEFAULT_RUNS,
) -> DeterminismResult:
    """
    Execute run_fn `runs` times sequentially and certify the outputs.

    run_fn may return its result directly or an awaitable. Do not call
    this from inside a running event loop; use
    run_determinism_check_async there.
    """
    _check_runs(runs)
    results: list[Any] = []
    run_errors: list[RunError] = []

    for index in range(runs):
        try:
            result = run_fn()
            if inspect.isawaitable(result):
                result = asyncio.run(_resolve(result))
            _artifacts_of(result)
        except Exception as exc:
            run_errors.append(_record_failure(index, exc))
            break
        results.append(result)

    return _build_result(runs, results, run_errors)


async def run_determinism_check_async(
    run_fn: Callable[[], Any],
    runs: int = DEFAULT_RUNS,
) -> DeterminismResult:
    """Same as run_determinism_check, awaiting run_fn results in the current loop."""
    _check_runs(runs)
    results: list[Any] = []
    run_errors: list[RunError] = []

    for index in range(runs):
        try:
            result = run_fn()
            if inspect.isawaitable(result):
                result = await result
            _artifacts_of(result)
        except Exception as exc:
            run_errors.append(_record_failure(index, exc))
            break
        results.append(result)

    return _build_result(runs, results, run_errors)
