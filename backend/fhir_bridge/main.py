"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware

from fhir_bridge import __version__
from fhir_bridge import models  # noqa: F401
from fhir_bridge.config import settings
from fhir_bridge.database import Base, async_session_maker, engine
from fhir_bridge.errors import FhirError
from fhir_bridge.namespaces import NamespaceRegistry
from fhir_bridge.routes import fhir
from fhir_bridge.services.validator import ResourceValidator
from fhir_bridge.store.memory import MemoryPropertyStore
from fhir_bridge.store.sql import SqlPropertyStore

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def setup_database(namespaces: NamespaceRegistry) -> None:
    """Create tables and register every namespace."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session_maker() as session:
        store = SqlPropertyStore(session, namespaces)
        for namespace in namespaces:
            await store.ensure_namespace(namespace)
        await session.commit()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events for startup/shutdown."""
    if settings.store_backend == "sql":
        try:
            await setup_database(app.state.namespaces)
            logger.info("Database tables and namespaces ensured")
        except (OSError, SQLAlchemyError) as e:
            logger.warning("Database not available - skipping schema setup: %s", e)
    else:
        logger.info("Using in-memory property store")

    yield  # Application runs here

    await engine.dispose()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


app = FastAPI(
    title="fhir-bridge",
    description="FHIR R4 REST facade over a schemaless property store",
    version=__version__,
    lifespan=lifespan,
)

app.state.namespaces = NamespaceRegistry()
app.state.validator = ResourceValidator(app.state.namespaces)
app.state.store = (
    MemoryPropertyStore(app.state.namespaces) if settings.store_backend == "memory" else None
)

app.add_middleware(SecurityHeadersMiddleware)
app.add_exception_handler(FhirError, fhir.fhir_error_handler)

app.include_router(fhir.router)


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": "fhir-bridge",
        "version": __version__,
        "fhir": "/fhir/metadata",
        "docs": "/docs",
    }
