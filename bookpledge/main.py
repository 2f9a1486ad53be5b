import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from bookpledge.api import health, lifeline, metrics, reaper, subscriptions
from bookpledge.core.config import settings, validate_config
from bookpledge.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from bookpledge.core.logging import configure_logging
from bookpledge.core.middleware.metrics import MetricsMiddleware
from bookpledge.core.middleware.request_id import RequestIdMiddleware
from bookpledge.core.observability import init_observability
from bookpledge.core.validation import validate_env

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))
init_observability()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("bookpledge")
    logger.info("Starting bookpledge backend...")
    app.state.startup_time = time.time()
    try:
        yield
    finally:
        logging.getLogger("bookpledge").info("Stopping bookpledge backend...")


app = FastAPI(title="bookpledge - commitment enforcement", lifespan=lifespan)

# Middlewares
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(health.router)
app.include_router(metrics.router)
app.include_router(reaper.router)
app.include_router(lifeline.router)
app.include_router(subscriptions.router)
