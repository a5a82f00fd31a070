"""Credential and run-status persistence for an external API client.

The sync pipeline only talks to ``IntegrationState``; the SQL-backed
implementation keeps everything on the ``ExternalApiClient`` row. It shares
the run's session with the property store, so a refreshed credential is
committed as soon as it is saved and a failure is written after any store
fault has been rolled back.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from fhir_bridge.models.integration import ClientStatus, ExternalApiClient

# Refresh when the token expires within this window
REFRESH_LOOKAHEAD = timedelta(hours=1)

# Maximum number of traceback lines kept with a failure
BACKTRACE_LIMIT = 10


def _parse_expiry(value: str) -> datetime:
    expires_at = datetime.fromisoformat(value)
    if expires_at.tzinfo is None:
        # Stored without an offset; tokens are always issued in UTC
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at


@dataclass(frozen=True)
class Credential:
    """OAuth access/refresh token pair with expiry."""

    access_token: str | None
    refresh_token: str | None
    expires_at: datetime | None = None

    def is_expiring(self, now: datetime, lookahead: timedelta = REFRESH_LOOKAHEAD) -> bool:
        """True when the expiry is unknown or falls before ``now + lookahead``."""
        return self.expires_at is None or self.expires_at < now + lookahead


class IntegrationState(ABC):
    """Credential store and status log for one external client."""

    @property
    @abstractmethod
    def patient_id(self) -> str:
        """Id of the Patient that derived observations belong to."""
        ...

    @abstractmethod
    async def load_credential(self) -> Credential:
        ...

    @abstractmethod
    async def save_credential(self, credential: Credential) -> None:
        ...

    @abstractmethod
    async def record_success(self) -> None:
        ...

    @abstractmethod
    async def record_failure(self, message: str, backtrace: list[str]) -> None:
        ...


class ExternalClientState(IntegrationState):
    """IntegrationState backed by an ``ExternalApiClient`` row.

    Tokens live in ``client_metadata`` under ``access_token``,
    ``refresh_token`` and ``token_expires_at`` (ISO-8601).
    """

    def __init__(self, session: AsyncSession, client: ExternalApiClient):
        self.session = session
        self.client = client

    @property
    def patient_id(self) -> str:
        patient_id = (self.client.client_metadata or {}).get("patient_id")
        if not patient_id:
            raise ValueError(f"External client {self.client.name} has no patient_id configured")
        return str(patient_id)

    async def load_credential(self) -> Credential:
        metadata = self.client.client_metadata or {}
        expires_at = metadata.get("token_expires_at")
        return Credential(
            access_token=metadata.get("access_token"),
            refresh_token=metadata.get("refresh_token"),
            expires_at=_parse_expiry(expires_at) if expires_at else None,
        )

    async def save_credential(self, credential: Credential) -> None:
        # Reassign so SQLAlchemy sees the JSONB change
        self.client.client_metadata = {
            **(self.client.client_metadata or {}),
            "access_token": credential.access_token,
            "refresh_token": credential.refresh_token,
            "token_expires_at": credential.expires_at.isoformat() if credential.expires_at else None,
        }
        # Rotated tokens must survive a later rollback
        await self.session.commit()

    async def record_success(self) -> None:
        self.client.status = ClientStatus.SUCCESS.value
        self.client.error_message = None
        self.client.error_metadata = None
        await self.session.flush()

    async def record_failure(self, message: str, backtrace: list[str]) -> None:
        if not self.session.is_active:
            # A failed flush leaves the transaction unusable until rolled back
            await self.session.rollback()
        self.client.status = ClientStatus.FAILED.value
        self.client.error_message = message
        self.client.error_metadata = {"backtrace": backtrace[:BACKTRACE_LIMIT]}
        await self.session.flush()
