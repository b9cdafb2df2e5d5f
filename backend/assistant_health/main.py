import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from assistant_health.config import settings
from assistant_health.database import init_db
from assistant_health.errors import (
    HealthSyncError,
    health_sync_error_handler,
    http_exception_handler,
    validation_exception_handler,
)
from assistant_health.routers import data, oauth, sync

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

app = FastAPI(title="Assistant Health Integrations", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.APP_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(HealthSyncError, health_sync_error_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)

app.include_router(oauth.router, prefix="/api")
app.include_router(sync.router, prefix="/api")
app.include_router(data.router, prefix="/api")


@app.on_event("startup")
def on_startup():
    init_db()


@app.get("/api/health")
def health_check():
    return {"status": "ok"}
