"""
Artifact normalization.

Produces the canonical form of a persisted artifact. Two artifacts
normalize-equal iff they describe the same semantic outcome.

Removed:    runId, *At / *_at fields, anything named like a timestamp,
            durations (*Ms / *_ms)
Rewritten:  absolute paths (machine prefix dropped), absolute URLs (path only)
Rounded:    every float, to ROUND_DIGITS decimals
Sorted:     findings, expectations and routes, by deterministic keys

normalize_artifact(t, normalize_artifact(t, a)) == normalize_artifact(t, a)
"""

from __future__ import annotations

import copy
import json
from enum import Enum
from typing import Any, Union

from .identity import compute_finding_identity
from .paths import normalize_path, normalize_url


# =============================================================================
# CONFIGURATION CONSTANTS
# =============================================================================

ROUND_DIGITS = 3

VOLATILE_KEYS = frozenset({"runId", "run_id"})

# Per-finding keys that differ between runs of identical input
VOLATILE_FINDING_KEYS = frozenset({"id", "findingId"})

PATH_KEYS = frozenset({
    "cwd", "src", "file", "before", "after", "screenshot",
    "source", "projectRoot",
})

# Keys that end like path keys but hold URL paths
URL_PATH_KEYS = frozenset({"targetPath", "urlPath", "path"})


class ArtifactType(Enum):
    SUMMARY = "summary"
    FINDINGS = "findings"
    OBSERVE = "observe"
    TRACES = "traces"
    EXPECTATIONS = "expectations"
    LEARN = "learn"
    RUN_STATUS = "runStatus"
    GENERIC = "generic"

    @classmethod
    def parse(cls, value) -> "ArtifactType":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls.GENERIC


# =============================================================================
# KEY RULES
# =============================================================================

def is_volatile_key(key: str) -> bool:
    """True for run ids, timestamps and durations."""
    if key in VOLATILE_KEYS:
        return True
    if "timestamp" in key.lower():
        return True
    if key.endswith("At") or key.endswith("_at"):
        return True
    if key.endswith("Ms") or key.endswith("_ms"):
        return True
    return False


def is_path_key(key: str) -> bool:
    if key in URL_PATH_KEYS:
        return False
    if key in PATH_KEYS:
        return True
    return key.endswith(("Path", "Dir", "_path", "_dir"))


def is_url_key(key: str) -> bool:
    return key == "url" or key.endswith(("Url", "_url"))


# =============================================================================
# GENERIC NORMALIZATION
# =============================================================================

def _normalize_value(key: str, value: Any) -> Any:
    if isinstance(value, dict):
        return _normalize_mapping(value)
    if isinstance(value, list):
        return [_normalize_value(key, item) for item in value]
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return round(value, ROUND_DIGITS)
    if isinstance(value, str):
        if is_url_key(key):
            return normalize_url(value)
        if is_path_key(key):
            return normalize_path(value)
    return value


def _normalize_mapping(mapping: dict) -> dict:
    return {
        key: _normalize_value(key, value)
        for key, value in mapping.items()
        if not is_volatile_key(str(key))
    }


# =============================================================================
# ARTIFACT-SPECIFIC RULES
# =============================================================================

def _finding_sort_key(finding: Any) -> tuple:
    if not isinstance(finding, dict):
        return ("", "", "", "", str(finding))
    interaction = finding.get("interaction")
    if not isinstance(interaction, dict):
        interaction = {}
    return (
        str(finding.get("type") or ""),
        str(interaction.get("selector") or ""),
        str(interaction.get("type") or ""),
        compute_finding_identity(finding),
        json.dumps(finding, sort_keys=True, default=str),
    )


def _normalize_findings_list(findings: list) -> list:
    cleaned = []
    for finding in findings:
        if isinstance(finding, dict):
            finding = {k: v for k, v in finding.items() if k not in VOLATILE_FINDING_KEYS}
        cleaned.append(finding)
    return sorted(cleaned, key=_finding_sort_key)


def _expectation_sort_key(expectation: Any) -> tuple:
    if not isinstance(expectation, dict):
        return ("", "", str(expectation))
    source = expectation.get("source") or {}
    return (
        str(expectation.get("type") or ""),
        str(expectation.get("targetPath") or ""),
        str(source.get("file") or "") if isinstance(source, dict) else str(source),
        str(source.get("line") or "") if isinstance(source, dict) else "",
    )


def _route_sort_key(route: Any) -> str:
    if isinstance(route, dict):
        return str(route.get("path") or "")
    return str(route)


def normalize_artifact(
    artifact_type: Union[ArtifactType, str],
    artifact: Any,
) -> Any:
    """
    Canonical form of an artifact. The input is never modified.

    None is returned unchanged so a missing artifact stays missing.
    """
    if artifact is None:
        return None

    kind = ArtifactType.parse(artifact_type)
    normalized = _normalize_value("", copy.deepcopy(artifact))

    if kind == ArtifactType.FINDINGS:
        if isinstance(normalized, list):
            return _normalize_findings_list(normalized)
        if isinstance(normalized, dict) and isinstance(normalized.get("findings"), list):
            normalized["findings"] = _normalize_findings_list(normalized["findings"])

    elif kind in (ArtifactType.EXPECTATIONS, ArtifactType.LEARN):
        if isinstance(normalized, list):
            return sorted(normalized, key=_expectation_sort_key)
        if isinstance(normalized, dict):
            if isinstance(normalized.get("expectations"), list):
                normalized["expectations"] = sorted(
                    normalized["expectations"], key=_expectation_sort_key
                )
            if isinstance(normalized.get("routes"), list):
                normalized["routes"] = sorted(normalized["routes"], key=_route_sort_key)

    return normalized
