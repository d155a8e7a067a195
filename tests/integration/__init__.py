"""
Integration tests for the load-test harness.

These tests start a real stub payment simulator on a free port and
demonstrate:
- Full setup → load → teardown → verdict runs over HTTP
- Failure injection through stub modes (500s, malformed bodies, slow replies)
- CI exit-code behaviour of the ``perf-harness`` command
"""
