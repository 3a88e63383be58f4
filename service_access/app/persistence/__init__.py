"""
Persistence package for the Access Service.

Defines the collaborator interfaces consumed by the evaluator and the
audit logger, with an in-memory backend and an asyncpg-backed
PostgreSQL backend.
"""
