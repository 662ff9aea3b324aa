import time
from contextlib import asynccontextmanager
from functools import lru_cache

import structlog
from fastapi import Depends, FastAPI

from db_models import FinalResponse, HealthResponse, IdentifyRequest
from db_setup import SQLiteContactStore
from errors import register_exception_handlers
from log_config import configure_logging
from reconciliation import ReconciliationEngine
from settings import get_settings

configure_logging(get_settings())

logger = structlog.get_logger()


@lru_cache
def get_store() -> SQLiteContactStore:
    settings = get_settings()
    return SQLiteContactStore(settings.database_path, busy_timeout=settings.database_busy_timeout)


def get_engine(store: SQLiteContactStore = Depends(get_store)) -> ReconciliationEngine:
    return ReconciliationEngine(store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("Starting contact reconciliation service", database_path=settings.database_path)
    get_store().init_schema()
    yield
    logger.info("Shutting down contact reconciliation service")


app = FastAPI(
    title=get_settings().service_name,
    version=get_settings().service_version,
    lifespan=lifespan,
)
register_exception_handlers(app)


@app.get("/")
async def root():
    return {"message": f"{get_settings().service_name} is up"}


@app.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(
        status="UP",
        service=get_settings().service_name,
        timestamp=str(int(time.time() * 1000)),
    )


# plain def: runs in the threadpool, the store call blocks on the sqlite lock
@app.post("/identify", response_model=FinalResponse)
def identify(request: IdentifyRequest, engine: ReconciliationEngine = Depends(get_engine)):
    logger.info(
        "Received identify request",
        has_email=request.email is not None,
        has_phone=request.phoneNumber is not None,
    )
    contact = engine.reconcile(request)
    logger.info(
        "Resolved contact",
        primary_contact_id=contact.primaryContactId,
        secondary_count=len(contact.secondaryContactIds),
    )
    return FinalResponse(contact=contact)


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
