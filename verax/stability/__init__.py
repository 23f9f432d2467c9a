# Stability package for Verax
"""
Stability checks over runs already persisted under .verax/runs/.
"""
