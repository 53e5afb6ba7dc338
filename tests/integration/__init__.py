"""Integration tests for the idea ballot service.

This package contains:

- API endpoint tests run in-process against the memory backend
- Duplicate vote detection over HTTP
- Ledger scenarios on PostgreSQL and Redis (skipped when unreachable)
"""
