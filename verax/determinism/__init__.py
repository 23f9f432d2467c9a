# Determinism package for Verax
"""
Normalize, identify and diff pipeline artifacts so repeated runs on
identical input can be certified identical.
"""
