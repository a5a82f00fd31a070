"""Run a WHOOP sync for one external API client.

Loads the client's credential from ``external_api_clients``, pulls the last
week of metrics and stores them as Observations. The client's status,
error message and backtrace are committed whatever the outcome.

Usage:
    fhir-bridge-sync <client-id>
    python -m fhir_bridge.scripts.run_sync <client-id>

Runs are idempotent; observations already stored are skipped.
"""

import argparse
import asyncio
import logging
import sys
import uuid
from collections import Counter

import httpx

from fhir_bridge.config import settings
from fhir_bridge.database import async_session_maker
from fhir_bridge.errors import IngestionError
from fhir_bridge.ingestion import ExternalClientState, WhoopSync
from fhir_bridge.models import ExternalApiClient
from fhir_bridge.namespaces import DEVICE, OBSERVATION, NamespaceRegistry
from fhir_bridge.store.sql import SqlPropertyStore

logger = logging.getLogger(__name__)

# Transport timeout for calls to the metric source, in seconds
HTTP_TIMEOUT = 30.0

# One in-flight run per client within this process. Entries are dropped
# once no run holds or waits on the lock.
_client_locks: dict[uuid.UUID, asyncio.Lock] = {}
_lock_users: Counter[uuid.UUID] = Counter()


async def run_sync(client_id: uuid.UUID) -> WhoopSync:
    """Sync one client and commit the results.

    Args:
        client_id: Id of the ``ExternalApiClient`` row.

    Returns:
        The finished sync, carrying created/skipped counts.

    Raises:
        LookupError: If the client does not exist.
        IngestionError: If the run failed (already recorded on the client).
    """
    lock = _client_locks.setdefault(client_id, asyncio.Lock())
    _lock_users[client_id] += 1
    try:
        async with lock:
            return await _sync_client(client_id)
    finally:
        _lock_users[client_id] -= 1
        if not _lock_users[client_id]:
            del _lock_users[client_id]
            del _client_locks[client_id]


async def _sync_client(client_id: uuid.UUID) -> WhoopSync:
    async with async_session_maker() as session:
        client = await session.get(ExternalApiClient, client_id)
        if client is None:
            raise LookupError(f"External API client {client_id} not found")

        store = SqlPropertyStore(session)
        await store.ensure_namespace(OBSERVATION)
        await store.ensure_namespace(DEVICE)

        async with httpx.AsyncClient(
            base_url=settings.whoop_api_base, timeout=HTTP_TIMEOUT
        ) as http:
            sync = WhoopSync(
                store,
                NamespaceRegistry(),
                ExternalClientState(session, client),
                http,
                client_id=settings.whoop_client_id,
                client_secret=settings.whoop_client_secret,
            )
            try:
                await sync.start()
            finally:
                await session.commit()

    logger.info(
        "Synced client %s: %s created, %s skipped",
        client_id,
        sync.created_count,
        sync.skipped_count,
    )
    return sync


def main() -> None:
    """Main entry point for the sync script."""
    parser = argparse.ArgumentParser(description="Sync WHOOP metrics into FHIR Observations")
    parser.add_argument("client_id", type=uuid.UUID, help="ExternalApiClient id")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        sync = asyncio.run(run_sync(args.client_id))
    except (LookupError, IngestionError) as e:
        print(f"Sync failed: {e}")
        sys.exit(1)

    print(f"  Observations created: {sync.created_count}")
    print(f"  Observations skipped: {sync.skipped_count}")
    print("\nSync complete!")


if __name__ == "__main__":
    main()
