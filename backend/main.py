import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load env from backend/.env
backend_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(backend_dir, ".env"))

from backend.core.config import settings, validate_config
from backend.core.database import create_all_tables
from backend.core.logging import configure_logging
from backend.core.middleware.request_id import RequestIdMiddleware
from backend.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from backend.api import admin_billing, billing, entitlements, health

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("suite")
    logger.info("Starting entitlement service...")
    app.state.startup_time = time.time()
    if settings.ENV != "production":
        create_all_tables()
    try:
        yield
    finally:
        logging.getLogger("suite").info("Stopping entitlement service...")


app = FastAPI(title="Suite - Entitlements", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

# Exception handlers
app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(billing.router, prefix="/api", tags=["billing"])
app.include_router(entitlements.router, prefix="/api", tags=["entitlements"])
app.include_router(admin_billing.router, tags=["admin"])
app.include_router(health.router, tags=["health"])
app.include_router(health.root_router, tags=["health"])
