"""
Tests for the Determinism Engine.

These tests verify:
1. Normalization is idempotent and strips run-specific noise
2. Finding identity ignores volatile fields
3. Every diff carries a closed reason code
4. Verdicts: DETERMINISTIC, NON_DETERMINISTIC, EXECUTION_FAILED
5. The checker itself is deterministic
"""

import asyncio
import itertools

import pytest

from verax.determinism.diff import DiffCategory, DiffEntry, DiffReason, diff_artifacts
from verax.determinism.engine import (
    DeterminismVerdict,
    compute_stability_score,
    run_determinism_check,
    run_determinism_check_async,
)
from verax.determinism.identity import compute_finding_identity
from verax.determinism.normalize import is_volatile_key, normalize_artifact
from verax.determinism.paths import normalize_path, normalize_url


# =============================================================================
# TEST FIXTURES
# =============================================================================

def make_raw_finding(**overrides) -> dict:
    finding = {
        "id": "finding-123",
        "type": "silent_submission",
        "status": "CONFIRMED",
        "severity": "HIGH",
        "confidence": 0.8,
        "interaction": {"type": "submit", "selector": "#signup", "label": "Sign up"},
        "expectation": {
            "type": "submission",
            "targetPath": "/welcome",
            "source": {"file": "/home/ci/app/src/Signup.jsx", "line": 42},
        },
        "evidence": {"before": "/home/ci/app/.verax/runs/run-1/before.png"},
    }
    finding.update(overrides)
    return finding


def make_run_fn(severities):
    """Helper: run_fn returning one finding whose severity cycles through `severities`."""
    counter = itertools.count()

    def run_fn():
        n = next(counter)
        return {
            "runId": f"run-{n}",
            "artifacts": {
                "findings": {
                    "findings": [make_raw_finding(severity=severities[n % len(severities)])],
                },
                "summary": {"status": "COMPLETE", "startedAt": f"2026-01-0{n + 1}"},
            },
        }

    return run_fn


# =============================================================================
# PATHS
# =============================================================================

class TestPaths:

    def test_run_dir_masked(self):
        assert normalize_path("/home/ci/app/.verax/runs/run-1/before.png") == ".verax/runs/<run>/before.png"

    def test_other_absolute_paths(self):
        assert normalize_path("/home/ci/app/src/Signup.jsx") == "<abs>/Signup.jsx"
        assert normalize_path("C:\\work\\app\\main.js") == "<abs>/main.js"

    def test_relative_untouched(self):
        assert normalize_path("src/Signup.jsx") == "src/Signup.jsx"

    def test_idempotent(self):
        for path in ("/a/b/.verax/runs/x/y.json", "/tmp/file.txt", "rel/path", "D:/z/q.js"):
            once = normalize_path(path)
            assert normalize_path(once) == once

    def test_url(self):
        assert normalize_url("https://app.test/about?x=1") == "/about"
        assert normalize_url("https://app.test") == "/"
        assert normalize_url("/about") == "/about"


# =============================================================================
# NORMALIZATION
# =============================================================================

class TestNormalize:

    def test_volatile_keys(self):
        for key in ("runId", "detectedAt", "created_at", "timestamp", "durationMs", "elapsed_ms"):
            assert is_volatile_key(key)
        assert not is_volatile_key("status")

    def test_noise_removed(self):
        artifact = {
            "runId": "abc",
            "startedAt": "2026-01-01T00:00:00Z",
            "durationMs": 1234,
            "url": "https://app.test/login",
            "projectDir": "/home/ci/app",
            "score": 0.123456,
        }

        assert normalize_artifact("summary", artifact) == {
            "url": "/login",
            "projectDir": "<abs>/app",
            "score": 0.123,
        }

    def test_input_not_modified(self):
        artifact = {"runId": "abc", "status": "COMPLETE"}
        normalize_artifact("summary", artifact)

        assert artifact == {"runId": "abc", "status": "COMPLETE"}

    def test_findings_sorted_and_ids_dropped(self):
        a = make_raw_finding(id="one", type="silent_submission")
        b = make_raw_finding(id="two", type="broken_navigation_promise")

        forward = normalize_artifact("findings", {"findings": [a, b]})
        backward = normalize_artifact("findings", {"findings": [b, a]})

        assert forward == backward
        assert [f["type"] for f in forward["findings"]] == ["broken_navigation_promise", "silent_submission"]
        assert "id" not in forward["findings"][0]

    def test_target_path_kept(self):
        normalized = normalize_artifact("expectations", {"expectations": [{"targetPath": "/about"}]})

        assert normalized["expectations"][0]["targetPath"] == "/about"

    def test_idempotent(self):
        artifact = {"findings": [make_raw_finding(), make_raw_finding(type="render_failure")]}

        once = normalize_artifact("findings", artifact)
        assert normalize_artifact("findings", once) == once

    def test_missing_stays_missing(self):
        assert normalize_artifact("findings", None) is None

    def test_non_mapping_interaction(self):
        artifact = {"findings": [
            make_raw_finding(interaction="button"),
            make_raw_finding(type="render_failure"),
        ]}

        normalized = normalize_artifact("findings", artifact)
        assert [f["type"] for f in normalized["findings"]] == ["render_failure", "silent_submission"]


# =============================================================================
# IDENTITY
# =============================================================================

class TestIdentity:

    def test_volatile_fields_ignored(self):
        a = make_raw_finding()
        b = make_raw_finding(id="other", confidence=0.1, runId="r2", detectedAt="later")

        assert compute_finding_identity(a) == compute_finding_identity(b)

    def test_machine_prefix_ignored(self):
        a = make_raw_finding()
        b = make_raw_finding()
        b["expectation"] = dict(b["expectation"], source={"file": "/builds/9/app/src/Signup.jsx", "line": 42})

        assert compute_finding_identity(a) == compute_finding_identity(b)

    def test_meaningful_fields_change_identity(self):
        a = make_raw_finding()

        assert compute_finding_identity(a) != compute_finding_identity(make_raw_finding(type="render_failure"))
        assert compute_finding_identity(a) != compute_finding_identity(
            make_raw_finding(interaction={"type": "submit", "selector": "#login", "label": "Log in"})
        )


# =============================================================================
# DIFF
# =============================================================================

class TestDiff:

    def test_identical_no_diffs(self):
        artifact = normalize_artifact("findings", {"findings": [make_raw_finding()]})

        assert diff_artifacts(artifact, artifact, "findings") == []

    def test_missing_artifact(self):
        diffs = diff_artifacts({"status": "OK"}, None, "summary")

        assert [d.reason_code for d in diffs] == [DiffReason.MISSING_ARTIFACT]
        assert diffs[0].category == DiffCategory.ARTIFACTS

    def test_finding_added(self):
        a = {"findings": [make_raw_finding()]}
        b = {"findings": [make_raw_finding(), make_raw_finding(type="render_failure")]}

        reasons = [d.reason_code for d in diff_artifacts(a, b, "findings")]
        assert reasons == [DiffReason.OBSERVATION_COUNT_CHANGED, DiffReason.FINDING_ADDED]

    def test_shared_identity_findings_each_compared(self):
        """Findings without interaction or expectation share one identity."""
        a = normalize_artifact("findings", {"findings": [
            {"type": "silent_submission", "status": "CONFIRMED"},
            {"type": "silent_submission", "status": "CONFIRMED"},
        ]})
        b = normalize_artifact("findings", {"findings": [
            {"type": "silent_submission", "status": "CONFIRMED"},
            {"type": "silent_submission", "status": "SUSPECTED"},
        ]})

        reasons = [d.reason_code for d in diff_artifacts(a, b, "findings")]
        assert reasons == [DiffReason.FINDING_STATUS_CHANGED]

    def test_shared_identity_surplus_removed(self):
        a = {"findings": [{"type": "silent_submission"}, {"type": "silent_submission"}]}
        b = {"findings": [{"type": "silent_submission"}]}

        reasons = [d.reason_code for d in diff_artifacts(a, b, "findings")]
        assert reasons == [DiffReason.OBSERVATION_COUNT_CHANGED, DiffReason.FINDING_REMOVED]

    def test_status_and_severity_reported_separately(self):
        a = {"findings": [make_raw_finding()]}
        b = {"findings": [make_raw_finding(status="SUSPECTED", severity="MEDIUM")]}

        reasons = [d.reason_code for d in diff_artifacts(a, b, "findings")]
        assert reasons == [DiffReason.FINDING_STATUS_CHANGED, DiffReason.FINDING_SEVERITY_CHANGED]

    def test_confidence_tolerance(self):
        a = {"findings": [make_raw_finding(confidence=0.8)]}

        assert diff_artifacts(a, {"findings": [make_raw_finding(confidence=0.8005)]}, "findings") == []
        diffs = diff_artifacts(a, {"findings": [make_raw_finding(confidence=0.6)]}, "findings")
        assert [d.reason_code for d in diffs] == [DiffReason.CONFIDENCE_CHANGED]

    def test_generic_field_change(self):
        diffs = diff_artifacts({"status": "COMPLETE"}, {"status": "INCOMPLETE"}, "summary")

        assert diffs[0].reason_code == DiffReason.FIELD_VALUE_CHANGED
        assert diffs[0].path == "status"
        assert diffs[0].category == DiffCategory.STATUS

    def test_observation_count(self):
        diffs = diff_artifacts({"traces": [1, 2]}, {"traces": [1]}, "traces")

        assert diffs[0].reason_code == DiffReason.OBSERVATION_COUNT_CHANGED
        assert diffs[0].category == DiffCategory.OBSERVATIONS

    def test_reason_code_must_be_enum(self):
        with pytest.raises(TypeError):
            DiffEntry(
                reason_code="DET_DIFF_SOMETHING",
                category=DiffCategory.FINDINGS,
                severity=None,
                message="x",
                artifact="findings",
            )


# =============================================================================
# ENGINE
# =============================================================================

class TestEngine:

    def test_pure_run_is_deterministic(self):
        result = run_determinism_check(make_run_fn(["HIGH"]), runs=3)

        assert result.verdict == DeterminismVerdict.DETERMINISTIC
        assert result.summary.total_diffs == 0
        assert result.summary.stability_score == 1.0

    def test_severity_flip_is_non_deterministic(self):
        result = run_determinism_check(make_run_fn(["HIGH", "MEDIUM"]), runs=2)

        assert result.verdict == DeterminismVerdict.NON_DETERMINISTIC
        assert result.summary.by_category["FINDINGS"] >= 1
        assert all(isinstance(d.reason_code, DiffReason) for d in result.diffs)
        assert result.summary.stability_score < 1.0

    def test_confirmed_vs_suspected_severity(self):
        """Raw artifacts may carry status words in the severity field."""
        result = run_determinism_check(make_run_fn(["CONFIRMED", "SUSPECTED"]))

        assert result.verdict == DeterminismVerdict.NON_DETERMINISTIC
        assert result.summary.total_diffs > 0
        assert "FINDINGS" in {d.category.value for d in result.diffs}

    def test_checker_is_self_consistent(self):
        first = run_determinism_check(make_run_fn(["HIGH", "MEDIUM"]))
        second = run_determinism_check(make_run_fn(["HIGH", "MEDIUM"]))

        assert first.to_dict() == second.to_dict()

    def test_failing_run(self):
        def run_fn():
            raise RuntimeError("browser crashed")

        result = run_determinism_check(run_fn)

        assert result.verdict == DeterminismVerdict.EXECUTION_FAILED
        assert result.run_errors[0].error_type == "RuntimeError"
        assert result.summary.stability_score == 0.0

    def test_shared_identity_flip_is_non_deterministic(self):
        counter = itertools.count()

        def run_fn():
            second = "CONFIRMED" if next(counter) == 0 else "SUSPECTED"
            findings = [
                {"type": "silent_submission", "status": "CONFIRMED"},
                {"type": "silent_submission", "status": second},
            ]
            return {"artifacts": {"findings": {"findings": findings}}}

        result = run_determinism_check(run_fn, runs=2)
        assert result.verdict == DeterminismVerdict.NON_DETERMINISTIC

    def test_non_dict_result_fails_run(self):
        counter = itertools.count()

        def run_fn():
            finding_type = "silent_submission" if next(counter) == 0 else "render_failure"
            return [{"type": finding_type}]

        result = run_determinism_check(run_fn)

        assert result.verdict == DeterminismVerdict.EXECUTION_FAILED
        assert result.run_errors[0].run_index == 0
        assert result.run_errors[0].error_type == "TypeError"

    def test_non_dict_artifacts_fail_async_run(self):
        async def run_fn():
            return {"artifacts": ["findings.json"]}

        result = asyncio.run(run_determinism_check_async(run_fn))
        assert result.verdict == DeterminismVerdict.EXECUTION_FAILED

    def test_fingerprint_mismatch(self):
        counter = itertools.count()

        def run_fn():
            return {"runFingerprint": f"fp-{next(counter)}", "artifacts": {}}

        result = run_determinism_check(run_fn)
        assert [d.reason_code for d in result.diffs] == [DiffReason.RUN_FINGERPRINT_MISMATCH]

    def test_awaitable_run_fn(self):
        async def run_fn():
            return {"artifacts": {"summary": {"status": "COMPLETE"}}}

        assert run_determinism_check(run_fn).verdict == DeterminismVerdict.DETERMINISTIC

    def test_async_entry_point(self):
        sync_fn = make_run_fn(["HIGH", "LOW"])

        result = asyncio.run(run_determinism_check_async(sync_fn))
        assert result.verdict == DeterminismVerdict.NON_DETERMINISTIC

    def test_runs_must_be_positive(self):
        with pytest.raises(ValueError):
            run_determinism_check(make_run_fn(["HIGH"]), runs=0)

    def test_score_decreases_with_diffs(self):
        assert compute_stability_score(0) > compute_stability_score(1) > compute_stability_score(5)
