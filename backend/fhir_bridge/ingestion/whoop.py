"""WHOOP wearable sync.

Pulls the trailing week of recovery, sleep, workout and cycle records from
the WHOOP API and stores them as FHIR Observations linked to the client's
Patient and to a single WHOOP Device. Observations are keyed on
(effectiveDateTime, code, subject) so re-running a sync never duplicates
them.

Runs for the same external client must be serialized by the caller: the
existence check and the insert are separate store calls.
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable

import httpx

from fhir_bridge.errors import AuthorizationError, SourceError, TokenRefreshError
from fhir_bridge.ingestion.state import BACKTRACE_LIMIT, Credential, IntegrationState
from fhir_bridge.namespaces import NamespaceRegistry
from fhir_bridge.search.predicates import PropertyEquals
from fhir_bridge.services.codec import to_document
from fhir_bridge.store.base import Document, PropertyStore
from fhir_bridge.utils.fhir_helpers import format_reference

logger = logging.getLogger(__name__)

WHOOP_CODE_SYSTEM = "http://whoop.com/fhir/CodeSystem"
LOINC_SYSTEM = "http://loinc.org"
OBSERVATION_CATEGORY_SYSTEM = "http://terminology.hl7.org/CodeSystem/observation-category"

# LOINC codes for common metrics
LOINC_HEART_RATE = "8867-4"
LOINC_HRV = "80404-7"
LOINC_RESPIRATORY_RATE = "9279-1"

DEVICE_MANUFACTURER = "WHOOP, Inc."

TOKEN_PATH = "/oauth/token"
SYNC_WINDOW = timedelta(days=7)

# A 401 triggers at most this many token refreshes per fetch
AUTH_RETRY_LIMIT = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DerivedObservation:
    """One Observation derived from a source record."""

    code: dict[str, str]
    value: Any
    unit: str
    effective_datetime: str
    category: str


def _derive(
    system: str,
    code: str,
    value: Any,
    unit: str,
    effective_datetime: str | None,
    category: str,
) -> DerivedObservation | None:
    if value is None or not effective_datetime:
        return None
    return DerivedObservation(
        code={"system": system, "code": code},
        value=value,
        unit=unit,
        effective_datetime=effective_datetime,
        category=category,
    )


def _present(*observations: DerivedObservation | None) -> list[DerivedObservation]:
    return [obs for obs in observations if obs is not None]


def recovery_observations(record: dict[str, Any]) -> list[DerivedObservation]:
    """Recovery score, HRV, resting heart rate and respiratory rate."""
    timestamp = record.get("created_at")
    score = record.get("score") or {}
    return _present(
        _derive(
            WHOOP_CODE_SYSTEM,
            "recovery-score",
            score.get("recovery_score"),
            "score",
            timestamp,
            "vital-signs",
        ),
        _derive(LOINC_SYSTEM, LOINC_HRV, score.get("hrv_rmssd_milli"), "ms", timestamp, "vital-signs"),
        _derive(
            LOINC_SYSTEM,
            LOINC_HEART_RATE,
            score.get("resting_heart_rate"),
            "bpm",
            timestamp,
            "vital-signs",
        ),
        _derive(
            LOINC_SYSTEM,
            LOINC_RESPIRATORY_RATE,
            score.get("respiratory_rate"),
            "/min",
            timestamp,
            "vital-signs",
        ),
    )


def sleep_observations(record: dict[str, Any]) -> list[DerivedObservation]:
    """Time in bed (minutes) and sleep performance."""
    timestamp = record.get("end")
    score = record.get("score") or {}
    in_bed_milli = score.get("total_in_bed_time_milli")
    return _present(
        _derive(
            WHOOP_CODE_SYSTEM,
            "sleep-duration",
            in_bed_milli / 1000.0 / 60.0 if in_bed_milli is not None else None,
            "min",
            timestamp,
            "activity",
        ),
        _derive(
            WHOOP_CODE_SYSTEM,
            "sleep-quality",
            score.get("sleep_performance_percentage"),
            "%",
            timestamp,
            "activity",
        ),
    )


def workout_observations(record: dict[str, Any]) -> list[DerivedObservation]:
    """Workout strain and average heart rate."""
    timestamp = record.get("end")
    score = record.get("score") or {}
    return _present(
        _derive(WHOOP_CODE_SYSTEM, "strain-score", score.get("strain"), "score", timestamp, "activity"),
        _derive(
            LOINC_SYSTEM,
            LOINC_HEART_RATE,
            score.get("average_heart_rate"),
            "bpm",
            timestamp,
            "vital-signs",
        ),
    )


def cycle_observations(record: dict[str, Any]) -> list[DerivedObservation]:
    """Day strain."""
    score = record.get("score") or {}
    return _present(
        _derive(
            WHOOP_CODE_SYSTEM,
            "day-strain",
            score.get("strain"),
            "score",
            record.get("end"),
            "activity",
        )
    )


def whoop_device_resource() -> dict[str, Any]:
    return {
        "resourceType": "Device",
        "identifier": [{"system": "http://whoop.com/devices", "value": "whoop-4.0"}],
        "status": "active",
        "manufacturer": DEVICE_MANUFACTURER,
        "deviceName": [{"name": "WHOOP 4.0", "type": "user-friendly-name"}],
        "modelNumber": "4.0",
        "type": {
            "coding": [
                {
                    "system": "http://snomed.info/sct",
                    "code": "706767009",
                    "display": "Wearable fitness tracker",
                }
            ]
        },
    }


class WhoopSync:
    """One sync run for one external client.

    Args:
        store: Property store receiving Observations and the Device.
        namespaces: Namespace registry (Observation and Device are used).
        state: Credential and status persistence for the client.
        http: Client whose base URL is the WHOOP API root.
        client_id: OAuth client id for the refresh-token grant.
        client_secret: OAuth client secret for the refresh-token grant.
        clock: Source of the current UTC time.
    """

    def __init__(
        self,
        store: PropertyStore,
        namespaces: NamespaceRegistry,
        state: IntegrationState,
        http: httpx.AsyncClient,
        *,
        client_id: str,
        client_secret: str,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.state = state
        self.http = http
        self.client_id = client_id
        self.client_secret = client_secret
        self.clock = clock
        self.observations = namespaces.get("Observation")
        self.devices = namespaces.get("Device")
        if self.observations is None or self.devices is None:
            raise ValueError("Observation and Device namespaces are required for WHOOP sync")

        self._credential: Credential | None = None
        self.created_count = 0
        self.skipped_count = 0

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Run all category syncs and record the outcome.

        Any failure aborts the remaining syncs, is recorded against the
        client with a backtrace excerpt, and is re-raised.
        """
        try:
            logger.info("Starting WHOOP sync for patient %s", self.state.patient_id)
            await self.refresh_if_expiring()

            await self.sync_recovery()
            await self.sync_sleep()
            await self.sync_workout()
            await self.sync_cycle()

            await self.state.record_success()
        except Exception as e:
            logger.exception("WHOOP sync failed: %s", e)
            await self.state.record_failure(
                str(e),
                traceback.format_tb(e.__traceback__)[-BACKTRACE_LIMIT:],
            )
            raise

        logger.info(
            "WHOOP sync completed: %d observations created, %d already present",
            self.created_count,
            self.skipped_count,
        )

    # -------------------------------------------------------------------------
    # Credentials
    # -------------------------------------------------------------------------

    async def _current_credential(self) -> Credential:
        if self._credential is None:
            self._credential = await self.state.load_credential()
        return self._credential

    async def refresh_if_expiring(self) -> None:
        """Refresh the access token when it expires within the next hour."""
        credential = await self._current_credential()
        if credential.is_expiring(self.clock()):
            await self.refresh()

    async def refresh(self) -> Credential:
        """Exchange the refresh token for a new token pair and persist it.

        Raises:
            TokenRefreshError: On transport failure, error status or a
                malformed response. Nothing is persisted in that case.
        """
        credential = await self._current_credential()
        try:
            response = await self.http.post(
                TOKEN_PATH,
                json={
                    "grant_type": "refresh_token",
                    "refresh_token": credential.refresh_token,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
            )
        except httpx.HTTPError as e:
            raise TokenRefreshError(f"Token refresh failed: {e}") from e

        if response.is_error:
            raise TokenRefreshError(f"Token refresh failed: {response.text}")

        try:
            data = response.json()
            refreshed = Credential(
                access_token=data["access_token"],
                refresh_token=data.get("refresh_token") or credential.refresh_token,
                expires_at=self.clock() + timedelta(seconds=int(data["expires_in"])),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise TokenRefreshError(f"Token refresh returned a malformed body: {e}") from e

        await self.state.save_credential(refreshed)
        self._credential = refreshed
        logger.info("Refreshed WHOOP access token (expires %s)", refreshed.expires_at.isoformat())
        return refreshed

    # -------------------------------------------------------------------------
    # Fetch
    # -------------------------------------------------------------------------

    def _window(self) -> dict[str, str]:
        end_date: date = self.clock().date()
        start_date = end_date - SYNC_WINDOW
        return {"start": start_date.isoformat(), "end": end_date.isoformat()}

    async def fetch(self, path: str, params: dict[str, str]) -> dict[str, Any]:
        """GET a WHOOP endpoint, refreshing the token once on a 401.

        Raises:
            AuthorizationError: If the source still answers 401 after the
                retry budget is spent.
            SourceError: For any other error status.
        """
        credential = await self._current_credential()
        for attempt in range(AUTH_RETRY_LIMIT + 1):
            response = await self.http.get(
                path,
                params=params,
                headers={"Authorization": f"Bearer {credential.access_token}"},
            )
            if response.status_code != httpx.codes.UNAUTHORIZED:
                break
            if attempt < AUTH_RETRY_LIMIT:
                logger.warning("WHOOP %s returned 401, refreshing token and retrying", path)
                credential = await self.refresh()
        else:
            raise AuthorizationError(
                f"WHOOP API rejected credentials for {path} after token refresh"
            )

        if response.is_error:
            raise SourceError(f"WHOOP API error: {response.status_code} - {response.text}")
        return response.json()

    async def _sync(
        self,
        path: str,
        derive: Callable[[dict[str, Any]], list[DerivedObservation]],
    ) -> None:
        payload = await self.fetch(path, self._window())
        records = payload.get("records") or []
        logger.info("WHOOP %s: %d records", path, len(records))
        for record in records:
            for observation in derive(record):
                await self.create_observation(
                    code=observation.code,
                    value=observation.value,
                    unit=observation.unit,
                    effective_datetime=observation.effective_datetime,
                    category=observation.category,
                )

    async def sync_recovery(self) -> None:
        await self._sync("/recovery", recovery_observations)

    async def sync_sleep(self) -> None:
        await self._sync("/sleep", sleep_observations)

    async def sync_workout(self) -> None:
        await self._sync("/workout", workout_observations)

    async def sync_cycle(self) -> None:
        await self._sync("/cycle", cycle_observations)

    # -------------------------------------------------------------------------
    # Store
    # -------------------------------------------------------------------------

    async def get_or_create_device(self) -> Document:
        """The WHOOP Device document; the oldest match wins."""
        device = await self.store.first_document(
            self.devices, [PropertyEquals(("manufacturer",), DEVICE_MANUFACTURER)]
        )
        if device is not None:
            return device

        logger.info("Creating WHOOP device resource")
        return await self.store.create_document(
            self.devices, to_document(whoop_device_resource(), "Device")
        )

    async def create_observation(
        self,
        code: dict[str, str],
        value: Any,
        unit: str,
        effective_datetime: str,
        category: str,
    ) -> Document | None:
        """Insert an Observation unless one with the same natural key exists.

        Returns:
            The created document, or None when it already existed.
        """
        subject = format_reference("Patient", self.state.patient_id)
        existing = await self.store.first_document(
            self.observations,
            [
                PropertyEquals(("effectiveDateTime",), effective_datetime),
                PropertyEquals(("code", "coding", 0, "code"), code["code"]),
                PropertyEquals(("subject", "reference"), subject),
            ],
        )
        if existing is not None:
            self.skipped_count += 1
            return None

        device = await self.get_or_create_device()
        observation = {
            "resourceType": "Observation",
            "status": "final",
            "category": [
                {"coding": [{"system": OBSERVATION_CATEGORY_SYSTEM, "code": category}]}
            ],
            "code": {"coding": [code]},
            "subject": {"reference": subject},
            "effectiveDateTime": effective_datetime,
            "issued": self.clock().isoformat(),
            "valueQuantity": {"value": value, "unit": unit},
            "device": {"reference": format_reference("Device", device.id)},
        }
        document = await self.store.create_document(
            self.observations, to_document(observation, "Observation")
        )
        self.created_count += 1
        return document
