"""Base model and mixins for all SQLAlchemy models.

Provides:
- Base: Declarative base class for all models
- TenantMixin: Adds tenant_id, string UUID primary key, and timestamps
- JSONType: JSONB on PostgreSQL, generic JSON elsewhere

Every connector table includes TenantMixin for multi-tenant isolation.
The tenant_id column is indexed for efficient per-tenant queries.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for all connector engine models."""
    pass


class TenantMixin:
    """Mixin providing multi-tenant isolation and standard audit columns.

    Adds:
    - id: UUID primary key stored as a 36-char string (portable across dialects)
    - tenant_id: Indexed string for tenant isolation
    - created_at: Timestamp set on insert
    - updated_at: Timestamp updated on every change
    """

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    tenant_id: Mapped[str] = mapped_column(
        String(64),
        index=True,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )
