"""
Test suite for the loadstage load engine.

This package contains:
- unit/: Module-level tests with fake clocks and fake HTTP sessions
- integration/: Full runs against a local Flask stub target
"""
