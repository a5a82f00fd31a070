"""External API client configuration record.

Holds the OAuth credential for an ingestion source in ``client_metadata``
alongside the outcome of the most recent sync run.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from fhir_bridge.database import Base


class ClientStatus(str, enum.Enum):
    """Outcome of the last sync run."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class ExternalApiClient(Base):
    __tablename__ = "external_api_clients"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ClientStatus.PENDING.value,
    )

    # access_token, refresh_token, token_expires_at, patient_id
    client_metadata: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_metadata: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<ExternalApiClient(id={self.id}, name={self.name}, status={self.status})>"
