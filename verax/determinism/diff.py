"""
Artifact diffing with closed reason codes.

Every DiffEntry carries a DiffReason and a DiffCategory from the enums
below. Downstream tooling branches on them, never on message text.

Inputs are expected to be normalized already (see normalize.py).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from .identity import compute_finding_identity
from .normalize import ArtifactType


# =============================================================================
# CONFIGURATION CONSTANTS
# =============================================================================

# Confidence changes at or below this are float noise
CONFIDENCE_TOLERANCE = 0.001


# =============================================================================
# ENUMS
# =============================================================================

class DiffReason(Enum):
    MISSING_ARTIFACT = "DET_DIFF_MISSING_ARTIFACT"
    SCHEMA_MISMATCH = "DET_DIFF_SCHEMA_MISMATCH"
    FINDING_ADDED = "DET_DIFF_FINDING_ADDED"
    FINDING_REMOVED = "DET_DIFF_FINDING_REMOVED"
    FINDING_STATUS_CHANGED = "DET_DIFF_FINDING_STATUS_CHANGED"
    FINDING_SEVERITY_CHANGED = "DET_DIFF_FINDING_SEVERITY_CHANGED"
    CONFIDENCE_CHANGED = "DET_DIFF_CONFIDENCE_CHANGED"
    CONFIDENCE_REASONS_CHANGED = "DET_DIFF_CONFIDENCE_REASONS_CHANGED"
    GUARDRAILS_CHANGED = "DET_DIFF_GUARDRAILS_CHANGED"
    EVIDENCE_COMPLETENESS_CHANGED = "DET_DIFF_EVIDENCE_COMPLETENESS_CHANGED"
    EVIDENCE_MISSING = "DET_DIFF_EVIDENCE_MISSING"
    OBSERVATION_COUNT_CHANGED = "DET_DIFF_OBSERVATION_COUNT_CHANGED"
    FIELD_VALUE_CHANGED = "DET_DIFF_FIELD_VALUE_CHANGED"
    RUN_FINGERPRINT_MISMATCH = "DET_DIFF_RUN_FINGERPRINT_MISMATCH"


class DiffCategory(Enum):
    FINDINGS = "FINDINGS"
    EXPECTATIONS = "EXPECTATIONS"
    OBSERVATIONS = "OBSERVATIONS"
    EVIDENCE = "EVIDENCE"
    STATUS = "STATUS"
    ARTIFACTS = "ARTIFACTS"


class DiffSeverity(Enum):
    BLOCKER = "BLOCKER"
    WARN = "WARN"
    INFO = "INFO"


# Category used for structural diffs of each artifact kind
ARTIFACT_CATEGORIES = {
    ArtifactType.FINDINGS: DiffCategory.FINDINGS,
    ArtifactType.EXPECTATIONS: DiffCategory.EXPECTATIONS,
    ArtifactType.LEARN: DiffCategory.EXPECTATIONS,
    ArtifactType.OBSERVE: DiffCategory.OBSERVATIONS,
    ArtifactType.TRACES: DiffCategory.OBSERVATIONS,
    ArtifactType.SUMMARY: DiffCategory.STATUS,
    ArtifactType.RUN_STATUS: DiffCategory.STATUS,
}


@dataclass(frozen=True)
class DiffEntry:
    reason_code: DiffReason
    category: DiffCategory
    severity: DiffSeverity
    message: str
    artifact: str
    path: Optional[str] = None
    finding_identity: Optional[str] = None
    old_value: Any = None
    new_value: Any = None

    def __post_init__(self):
        if not isinstance(self.reason_code, DiffReason):
            raise TypeError(f"reason_code must be DiffReason, got {self.reason_code!r}")
        if not isinstance(self.category, DiffCategory):
            raise TypeError(f"category must be DiffCategory, got {self.category!r}")

    def to_dict(self) -> dict:
        data = {
            "reasonCode": self.reason_code.value,
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
            "artifact": self.artifact,
        }
        if self.path is not None:
            data["path"] = self.path
        if self.finding_identity is not None:
            data["findingIdentity"] = self.finding_identity
        if self.old_value is not None or self.new_value is not None:
            data["oldValue"] = self.old_value
            data["newValue"] = self.new_value
        return data


# =============================================================================
# ENTRY POINT
# =============================================================================

def diff_artifacts(
    a: Any,
    b: Any,
    artifact_type: Union[ArtifactType, str],
) -> list[DiffEntry]:
    """
    Compare two normalized artifacts of the same kind.

    `a` is the reference run. The returned order is deterministic.
    """
    kind = ArtifactType.parse(artifact_type)
    name = artifact_type.value if isinstance(artifact_type, ArtifactType) else str(artifact_type)

    if a is None and b is None:
        return []
    if a is None or b is None:
        which = "first" if a is None else "second"
        return [DiffEntry(
            reason_code=DiffReason.MISSING_ARTIFACT,
            category=DiffCategory.ARTIFACTS,
            severity=DiffSeverity.BLOCKER,
            message=f"Artifact {name} missing in {which} run",
            artifact=name,
        )]

    if kind == ArtifactType.FINDINGS:
        return _diff_findings(a, b, name)

    return _diff_structure(
        a, b,
        path="",
        artifact=name,
        category=ARTIFACT_CATEGORIES.get(kind, DiffCategory.ARTIFACTS),
        count_reason=(
            DiffReason.OBSERVATION_COUNT_CHANGED
            if kind in (ArtifactType.OBSERVE, ArtifactType.TRACES)
            else DiffReason.FIELD_VALUE_CHANGED
        ),
    )


# =============================================================================
# FINDINGS
# =============================================================================

def _findings_list(artifact: Any) -> Optional[list]:
    if isinstance(artifact, list):
        return artifact
    if isinstance(artifact, dict):
        findings = artifact.get("findings", [])
        return findings if isinstance(findings, list) else None
    return None


def _group_by_identity(findings: list) -> dict[str, list[dict]]:
    """Findings per identity, in list order. Findings sharing an identity stay separate."""
    groups: dict[str, list[dict]] = {}
    for finding in findings:
        if isinstance(finding, dict):
            groups.setdefault(compute_finding_identity(finding), []).append(finding)
    return groups


def _diff_findings(a: Any, b: Any, name: str) -> list[DiffEntry]:
    findings_a = _findings_list(a)
    findings_b = _findings_list(b)

    if findings_a is None or findings_b is None:
        return [DiffEntry(
            reason_code=DiffReason.SCHEMA_MISMATCH,
            category=DiffCategory.FINDINGS,
            severity=DiffSeverity.BLOCKER,
            message="Findings artifact has no findings list",
            artifact=name,
            path="findings",
        )]

    diffs: list[DiffEntry] = []

    if len(findings_a) != len(findings_b):
        diffs.append(DiffEntry(
            reason_code=DiffReason.OBSERVATION_COUNT_CHANGED,
            category=DiffCategory.FINDINGS,
            severity=DiffSeverity.BLOCKER,
            message=f"Finding count changed: {len(findings_a)} -> {len(findings_b)}",
            artifact=name,
            path="findings.length",
            old_value=len(findings_a),
            new_value=len(findings_b),
        ))

    groups_a = _group_by_identity(findings_a)
    groups_b = _group_by_identity(findings_b)
    identities = sorted(set(groups_a) | set(groups_b))

    # Same-identity findings are paired in order; the surplus is added/removed
    for identity in identities:
        paired = len(groups_a.get(identity, []))
        for finding in groups_b.get(identity, [])[paired:]:
            diffs.append(DiffEntry(
                reason_code=DiffReason.FINDING_ADDED,
                category=DiffCategory.FINDINGS,
                severity=DiffSeverity.BLOCKER,
                message=f"Finding added: {finding.get('type') or 'unknown'}",
                artifact=name,
                finding_identity=identity,
            ))

    for identity in identities:
        paired = len(groups_b.get(identity, []))
        for finding in groups_a.get(identity, [])[paired:]:
            diffs.append(DiffEntry(
                reason_code=DiffReason.FINDING_REMOVED,
                category=DiffCategory.FINDINGS,
                severity=DiffSeverity.BLOCKER,
                message=f"Finding removed: {finding.get('type') or 'unknown'}",
                artifact=name,
                finding_identity=identity,
            ))

    for identity in identities:
        for old, new in zip(groups_a.get(identity, []), groups_b.get(identity, [])):
            diffs.extend(_diff_finding(old, new, identity, name))

    # Findings stats block, if present
    if isinstance(a, dict) and isinstance(b, dict) and (a.get("stats") or b.get("stats")):
        diffs.extend(_diff_structure(
            a.get("stats"), b.get("stats"),
            path="stats",
            artifact=name,
            category=DiffCategory.FINDINGS,
            count_reason=DiffReason.FIELD_VALUE_CHANGED,
        ))

    return diffs


def _number(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


def _sorted_strings(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    return sorted(str(v) for v in values)


def _diff_finding(a: dict, b: dict, identity: str, name: str) -> list[DiffEntry]:
    diffs: list[DiffEntry] = []

    def entry(reason, category, severity, message, path, old=None, new=None):
        diffs.append(DiffEntry(
            reason_code=reason,
            category=category,
            severity=severity,
            message=message,
            artifact=name,
            path=path,
            finding_identity=identity,
            old_value=old,
            new_value=new,
        ))

    if a.get("status") != b.get("status"):
        entry(
            DiffReason.FINDING_STATUS_CHANGED, DiffCategory.FINDINGS, DiffSeverity.BLOCKER,
            f"Finding status changed: {a.get('status')} -> {b.get('status')}",
            "status", a.get("status"), b.get("status"),
        )

    if a.get("severity") != b.get("severity"):
        entry(
            DiffReason.FINDING_SEVERITY_CHANGED, DiffCategory.FINDINGS, DiffSeverity.BLOCKER,
            f"Finding severity changed: {a.get('severity')} -> {b.get('severity')}",
            "severity", a.get("severity"), b.get("severity"),
        )

    conf_a = _number(a.get("confidence"))
    conf_b = _number(b.get("confidence"))
    if abs(conf_a - conf_b) > CONFIDENCE_TOLERANCE:
        entry(
            DiffReason.CONFIDENCE_CHANGED, DiffCategory.FINDINGS, DiffSeverity.WARN,
            f"Finding confidence changed: {conf_a:.3f} -> {conf_b:.3f}",
            "confidence", conf_a, conf_b,
        )

    reasons_a = _sorted_strings(a.get("confidenceReasons"))
    reasons_b = _sorted_strings(b.get("confidenceReasons"))
    if reasons_a != reasons_b:
        entry(
            DiffReason.CONFIDENCE_REASONS_CHANGED, DiffCategory.FINDINGS, DiffSeverity.WARN,
            "Finding confidence reasons changed",
            "confidenceReasons", reasons_a, reasons_b,
        )

    guard_a = a.get("guardrails")
    guard_b = b.get("guardrails")
    if guard_a or guard_b:
        if not guard_a or not guard_b:
            entry(
                DiffReason.GUARDRAILS_CHANGED, DiffCategory.FINDINGS, DiffSeverity.WARN,
                "Finding guardrails presence changed", "guardrails",
            )
        elif guard_a.get("finalDecision") != guard_b.get("finalDecision"):
            entry(
                DiffReason.GUARDRAILS_CHANGED, DiffCategory.FINDINGS, DiffSeverity.WARN,
                "Finding guardrails decision changed",
                "guardrails.finalDecision",
                guard_a.get("finalDecision"), guard_b.get("finalDecision"),
            )

    complete_a = a.get("evidenceCompleteness")
    complete_b = b.get("evidenceCompleteness")
    if complete_a or complete_b:
        if not complete_a or not complete_b:
            entry(
                DiffReason.EVIDENCE_COMPLETENESS_CHANGED, DiffCategory.EVIDENCE, DiffSeverity.BLOCKER,
                "Finding evidence completeness presence changed", "evidenceCompleteness",
            )
        elif complete_a.get("isComplete") != complete_b.get("isComplete"):
            entry(
                DiffReason.EVIDENCE_COMPLETENESS_CHANGED, DiffCategory.EVIDENCE, DiffSeverity.BLOCKER,
                "Finding evidence completeness changed",
                "evidenceCompleteness.isComplete",
                complete_a.get("isComplete"), complete_b.get("isComplete"),
            )

    package_a = a.get("evidencePackage")
    package_b = b.get("evidencePackage")
    if bool(package_a) != bool(package_b):
        which = "first" if not package_a else "second"
        entry(
            DiffReason.EVIDENCE_MISSING, DiffCategory.EVIDENCE, DiffSeverity.BLOCKER,
            f"Finding evidence package missing in {which} run", "evidencePackage",
        )
    elif package_a and package_b:
        if package_a.get("isComplete") != package_b.get("isComplete"):
            entry(
                DiffReason.EVIDENCE_COMPLETENESS_CHANGED, DiffCategory.EVIDENCE, DiffSeverity.BLOCKER,
                "Evidence completeness changed",
                "evidencePackage.isComplete",
                package_a.get("isComplete"), package_b.get("isComplete"),
            )
        missing_a = _sorted_strings(package_a.get("missingEvidence"))
        missing_b = _sorted_strings(package_b.get("missingEvidence"))
        if missing_a != missing_b:
            entry(
                DiffReason.EVIDENCE_MISSING, DiffCategory.EVIDENCE, DiffSeverity.BLOCKER,
                "Missing evidence changed",
                "evidencePackage.missingEvidence",
                missing_a, missing_b,
            )

    return diffs


# =============================================================================
# STRUCTURAL (generic artifacts)
# =============================================================================

def _join(path: str, key: Any) -> str:
    if isinstance(key, int):
        return f"{path}[{key}]"
    return f"{path}.{key}" if path else str(key)


def _diff_structure(
    a: Any,
    b: Any,
    path: str,
    artifact: str,
    category: DiffCategory,
    count_reason: DiffReason,
) -> list[DiffEntry]:
    """Path-level diff of two JSON-like values."""
    if isinstance(a, dict) and isinstance(b, dict):
        diffs: list[DiffEntry] = []
        for key in sorted(set(a) | set(b), key=str):
            diffs.extend(_diff_structure(
                a.get(key), b.get(key), _join(path, key), artifact, category, count_reason,
            ))
        return diffs

    if isinstance(a, list) and isinstance(b, list):
        diffs = []
        if len(a) != len(b):
            diffs.append(DiffEntry(
                reason_code=count_reason,
                category=category,
                severity=DiffSeverity.WARN,
                message=f"Length of {path or artifact} changed: {len(a)} -> {len(b)}",
                artifact=artifact,
                path=f"{path}.length" if path else "length",
                old_value=len(a),
                new_value=len(b),
            ))
        for index in range(min(len(a), len(b))):
            diffs.extend(_diff_structure(
                a[index], b[index], _join(path, index), artifact, category, count_reason,
            ))
        return diffs

    if a == b and type(a) is type(b):
        return []

    containers = (dict, list)
    if (
        a is not None and b is not None
        and (isinstance(a, containers) or isinstance(b, containers))
    ):
        return [DiffEntry(
            reason_code=DiffReason.SCHEMA_MISMATCH,
            category=category,
            severity=DiffSeverity.BLOCKER,
            message=f"Shape of {path or artifact} changed",
            artifact=artifact,
            path=path or None,
        )]

    return [DiffEntry(
        reason_code=DiffReason.FIELD_VALUE_CHANGED,
        category=category,
        severity=DiffSeverity.WARN,
        message=f"Value of {path or artifact} changed",
        artifact=artifact,
        path=path or None,
        old_value=a,
        new_value=b,
    )]
