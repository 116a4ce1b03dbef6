"""
FastAPI app assembly: logging, router wiring and the bulk operation lifecycle.

On startup, operations a previous process left PENDING or PROCESSING are
re-dispatched, and a periodic sweep takes over operations whose lease ran out
(their process died without a clean shutdown). On shutdown, background runs
are stopped and release their leases so the next start resumes them.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

# Configure logging
LOG_LEVEL_NAME = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_LEVEL = getattr(logging, LOG_LEVEL_NAME, logging.INFO)
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)
logger.setLevel(LOG_LEVEL)
logger.info("app_startup: log_level=%s", LOG_LEVEL_NAME)

from farmers_service.api.bulk_farmers import router as bulk_farmers_router  # noqa: E402
from farmers_service.db.database import session_scope  # noqa: E402
from farmers_service.services.bulk_farmer_service import build_bulk_farmer_service  # noqa: E402
from farmers_service.utils.bulk_settings import get_bulk_settings  # noqa: E402
from farmers_service.workers.async_bulk_operations import get_bulk_operations_manager  # noqa: E402

# Database schema is managed by Alembic migrations.


async def recover_bulk_operations():
    with session_scope() as db:
        recovered = await build_bulk_farmer_service(db).recover_interrupted_operations()
    if recovered:
        logger.info("Recovered %d interrupted bulk operation(s)", len(recovered))
    return recovered


@asynccontextmanager
async def lifespan(_app: FastAPI):
    manager = get_bulk_operations_manager()
    await recover_bulk_operations()
    manager.start_recovery_sweep(recover_bulk_operations, get_bulk_settings().lease_seconds)
    yield
    await manager.shutdown()


app = FastAPI(
    title="Farmers Service - Bulk Onboarding",
    description="Bulk farmer onboarding: upload, validate, process, track, cancel, retry and export.",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(bulk_farmers_router)


@app.get("/health")
def health_check():
    return {"status": "ok", "service": "farmers-service"}
