"""
SQLAlchemy declarative base.

All batch, cache and idempotency tables inherit from this Base class so that
Alembic sees a single metadata object.
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass
