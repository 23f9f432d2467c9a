# Verax Verdict Core
# Silence accounting, Evidence Law and determinism certification

"""
Core invariant: No verdict may claim more certainty than its evidence
supports, and no verdict may change between runs on identical input.

This package turns raw observation evidence from the Observe phase into
trustworthy, reproducible Findings.
"""
