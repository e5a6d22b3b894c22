import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from dotenv import load_dotenv

# Load env from the working directory's .env (skipped under pytest)
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from billing_engine.core.config import settings, validate_config
from billing_engine.core.logging import configure_logging
from billing_engine.core.middleware.request_id import RequestIdMiddleware
from billing_engine.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from billing_engine.api import admin_billing, billing, health
from billing_engine.features.entitlements.evaluator import shutdown_write_backs

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

WRITE_BACK_DRAIN_SECONDS = 5.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("billing_engine")
    logger.info("Starting billing engine...")
    app.state.startup_time = time.time()
    try:
        yield
    finally:
        shutdown_write_backs(timeout=WRITE_BACK_DRAIN_SECONDS)
        logger.info("Stopping billing engine...")


app = FastAPI(title="Billing Engine", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(billing.router, prefix="/api", tags=["billing"])
app.include_router(admin_billing.router, tags=["admin-billing"])
app.include_router(health.router)
