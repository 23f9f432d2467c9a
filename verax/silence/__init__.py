# Silence package for Verax
"""
Silence accounting modules.

A silence is an observation where nothing happened. These modules
classify silences, link them to the promises they blocked, and turn
them into confidence penalties. A silence is never a success.
"""
