"""
Integration test package for loadstage.

Tests drive real load at a stub target served from a background thread and
demonstrate:
- Staged ramp, hold and ramp-down runs
- Early abort on a breached threshold
- Assessment tiers on condensed soak and spike plans
- Command-line exit codes
"""
