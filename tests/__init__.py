"""
Invoicy Sync Test Suite.

This package contains:
- unit/: Unit tests (no I/O, no event loop tasks beyond the test)
- integration/: Integration tests (in-memory feed and data source,
  mocked HTTP transports, FastAPI TestClient)
"""
