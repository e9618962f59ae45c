"""Data stores for persistence and locking.

Stores handle:
- PostgreSQL: DB session, transactional scopes, ORM operations
- Redis: run-level locks

No sync/business logic in stores - that belongs in services.
"""
