# Findings package for Verax
"""
Finding contract and Evidence Law.

A Finding may not claim more certainty than its evidence supports.
Unsupported CONFIRMED findings are downgraded, never dropped.
"""
