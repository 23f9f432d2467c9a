"""
Stable Finding identity.

Two Findings describing the same discrepancy get the same identity in
every run. Only logically meaningful fields feed the hash:
    type
    interaction.{type, selector, label}
    expectation.{type, targetPath, source.file, source.line, source.astSource}

Run ids, timestamps, ids and confidence never affect identity.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping

from .paths import normalize_path


IDENTITY_LENGTH = 16


def _get(mapping: Any, key: str) -> Any:
    if isinstance(mapping, Mapping):
        return mapping.get(key)
    return None


def identity_parts(finding: Mapping[str, Any]) -> dict:
    """The fields that define what a Finding is about."""
    interaction = _get(finding, "interaction")
    expectation = _get(finding, "expectation")
    source = _get(expectation, "source")

    return {
        "type": _get(finding, "type"),
        "interaction": {
            "type": _get(interaction, "type"),
            "selector": _get(interaction, "selector"),
            "label": _get(interaction, "label"),
        },
        "expectation": {
            "type": _get(expectation, "type"),
            "targetPath": _get(expectation, "targetPath"),
            "source": {
                "file": normalize_path(_get(source, "file")),
                "line": _get(source, "line"),
                "astSource": _get(source, "astSource"),
            },
        },
    }


def compute_finding_identity(finding) -> str:
    """
    Hex digest identifying a Finding across runs.

    Accepts a raw finding dict or any object with to_dict().
    """
    if hasattr(finding, "to_dict"):
        finding = finding.to_dict()

    canonical = json.dumps(
        identity_parts(finding),
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:IDENTITY_LENGTH]
