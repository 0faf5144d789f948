from contextlib import asynccontextmanager
from datetime import datetime
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlmodel import Session, text

from database import create_db, engine
import models  # noqa: F401  (registers tables before create_db)
from errors import MedflowError, ValidationFailed
from routers import billing, lab_orders, medical_records, patients
from routers.auth import router as auth_router

logger = logging.getLogger("medflow")


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db()
    yield


app = FastAPI(title="MedFlow", version="0.1.0", lifespan=lifespan)


@app.exception_handler(MedflowError)
async def medflow_error_handler(request: Request, exc: MedflowError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.detail)
    else:
        logger.warning("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    error = ValidationFailed("; ".join(messages) or "Invalid request")
    return JSONResponse(status_code=error.status_code, content=error.to_payload())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled server error for %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.middleware("http")
async def no_cache_api_responses(request: Request, call_next):
    response = await call_next(request)
    if request.url.path.startswith(
        (
            "/patients",
            "/lab",
            "/medical-records",
            "/pharmacy",
            "/billing",
            "/auth",
            "/api/v1/",
        )
    ):
        response.headers["Cache-Control"] = "no-store, max-age=0"
        response.headers["Pragma"] = "no-cache"
        response.headers["Expires"] = "0"
    return response


ROUTERS = [
    patients.router,
    lab_orders.router,
    medical_records.router,
    medical_records.pharmacy_router,
    billing.router,
    auth_router,
]

for router in ROUTERS:
    app.include_router(router)
for router in ROUTERS:
    app.include_router(router, prefix="/api/v1")


@app.get("/health")
def health():
    try:
        with Session(engine) as session:
            session.exec(text("SELECT 1"))
        return {
            "status": "ok",
            "database": "connected",
            "timestamp": datetime.utcnow().isoformat(),
        }
    except Exception:
        logger.exception("Health check failed")
        return JSONResponse(status_code=500, content={"status": "error"})

