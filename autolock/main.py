import logging

import yaml
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from autolock.infrastructure.config import settings
from autolock.infrastructure.database import Base, engine, SessionLocal
from autolock.infrastructure.models import models  # noqa: F401  (registers the tables)
from autolock.presentation.routers import router
from autolock.services.autolock_service import build_payment_gateway, expire_stale_sessions_service

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="AutoLock")


# Use the contractual schema
def custom_openapi():
    with open(settings.openapi_path) as f:
        return yaml.safe_load(f)


@app.exception_handler(SQLAlchemyError)
async def _storage_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Storage failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.on_event("startup")
def _expire_stale_sessions_on_startup() -> None:
    """
    Reclaim lockers held by sessions that were abandoned while the service was down
    """
    db = SessionLocal()
    try:
        result = expire_stale_sessions_service(db, build_payment_gateway())
        logger.info("Startup sweep: %s stale session(s) expired", result["expired_sessions"])
    finally:
        db.close()


app.openapi = custom_openapi
Base.metadata.create_all(bind=engine)
app.include_router(router)
