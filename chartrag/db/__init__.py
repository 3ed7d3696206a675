"""
ChartRAG Database Module

Async engine and session factory for the pgvector backend.
"""

from chartrag.db.postgres import (
    check_database_health,
    create_db_engine,
    create_session_factory,
    init_vector_table,
)

__all__ = [
    "check_database_health",
    "create_db_engine",
    "create_session_factory",
    "init_vector_table",
]
