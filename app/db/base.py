"""
Database Base Model
===================

Provides the base class for all SQLAlchemy models.
"""

from datetime import datetime

from sqlalchemy import JSON, DateTime, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.utils.helpers import utc_now


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """
    Base class for all database models.
    
    Provides common columns and functionality.
    """

    # Type annotation for class attributes
    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


class TimestampMixin:
    """
    Mixin that adds created_at and updated_at timestamps.

    Values are set from Python so they keep microsecond precision on
    every backend; ``updated_at`` is managed explicitly by writers that
    need it to strictly increase.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )


def enum_values(enum_cls) -> list[str]:
    """Persist ``str`` enums by value rather than by member name."""
    return [member.value for member in enum_cls]
