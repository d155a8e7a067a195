"""
Test suite for the payment simulator load-test harness.

This package contains:
- unit/: fast tests of stages, metrics, checks, thresholds, the actor
  and scheduler loops, reports and configuration (no network)
- integration/: end-to-end runs and CLI exit codes against a live
  Flask stub of the payment simulator
- stub_target.py: the stub itself
"""
