"""Sync-Foundry Test Suite.

Unit tests live in tests/unit/, one module per library component:
- test_watermark.py: state backends, merge rules, import/export
- test_selector.py: strategy selection and execution, end-to-end scenarios
- test_pagination.py / test_delta.py / test_jobs.py: the three fetch paths
- test_runner.py: partition fan-out, error isolation, cancellation
- test_sources.py: connectors against httpx.MockTransport
"""
