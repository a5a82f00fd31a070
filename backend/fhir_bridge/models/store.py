"""SQLAlchemy models for the property store."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from fhir_bridge.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApiNamespace(Base):
    """Schema/container for one resource type.

    Rows are written at startup from the namespace definitions and are
    read-only afterwards.
    """

    __tablename__ = "api_namespaces"

    slug: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    version: Mapped[str] = mapped_column(String(20), nullable=False, default="1")

    # Property schema: field name -> {type, required, default, enum, description}
    properties: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    associations: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)

    def __repr__(self) -> str:
        return f"<ApiNamespace(slug={self.slug}, name={self.name})>"


class ApiResource(Base):
    """A schemaless document belonging to exactly one namespace.

    The resource itself is stored verbatim in ``properties``; the id and
    timestamps are owned by the store and never copied into the JSON.
    """

    __tablename__ = "api_resources"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    namespace_slug: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("api_namespaces.slug"),
        nullable=False,
    )
    properties: Mapped[dict] = mapped_column(JSONB, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    __table_args__ = (
        Index("idx_api_resources_namespace", "namespace_slug", "created_at"),
        Index("idx_api_resources_updated", "namespace_slug", "updated_at"),
        Index("idx_api_resources_properties_gin", "properties", postgresql_using="gin"),
    )

    def __repr__(self) -> str:
        return f"<ApiResource(id={self.id}, namespace={self.namespace_slug})>"
