"""
Database layer for the device platform.

This module provides:
- SQLAlchemy ORM models for the tenant structure (organizations, departments, users)
- Async database engine and session factory
"""

from .models import (
    Base,
    JSONB,
    Organization,
    Department,
    User,
)

from .async_engine import (
    create_engine,
    get_session_factory,
    get_async_engine,
    get_async_session_factory,
    get_async_session,
    check_database_connection,
    init_database,
    close_database,
)

__all__ = [
    # Models
    "Base",
    "JSONB",
    "Organization",
    "Department",
    "User",
    # Engine
    "create_engine",
    "get_session_factory",
    "get_async_engine",
    "get_async_session_factory",
    "get_async_session",
    "check_database_connection",
    "init_database",
    "close_database",
]
