"""
FastAPI application entrypoint.

Run locally:  uvicorn clinicflow.main:app --reload
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from clinicflow.api import consents, investigations, routes
from clinicflow.config import settings
from clinicflow.errors import ClinicflowError, OtpCooldownError
from clinicflow.models import clinical  # noqa: F401  (registers tables on Base)
from clinicflow.models.database import Base, SessionLocal, engine
from clinicflow.services.catalog import seed_reference_data

logging.basicConfig(level=settings.LOG_LEVEL, format="%(levelname)s | %(name)s | %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Clinicflow Encounter Workflow API",
    description=(
        "Clinical encounter workflow: encounters, triage, investigation "
        "requests and results, and OTP-gated patient consent."
    ),
    version="1.0.0",
)

app.include_router(routes.router, prefix="/api/v1")
app.include_router(investigations.router, prefix="/api/v1")
app.include_router(consents.router, prefix="/api/v1")


@app.exception_handler(ClinicflowError)
def handle_clinicflow_error(request: Request, exc: ClinicflowError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    headers = None
    if isinstance(exc, OtpCooldownError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.code},
        headers=headers,
    )


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_reference_data(db)
    finally:
        db.close()
