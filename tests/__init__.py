"""
Test suite for groupwatch.

Tests cover:
- Normalization and dual hashing (determinism, sensitivity, exclusions)
- Hash map diffing and change descriptions
- State storage and report tables
- Sync pipelines (directory listing, settings checks, write-back)
- Google Workspace REST client (pagination, ETags, retry)

Run tests with:
    pytest tests/
    pytest tests/test_hash.py
    pytest tests/test_engine.py -v
"""
