import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from cryptowatch.core.config import settings, validate_config
from cryptowatch.core.database import create_all_tables
from cryptowatch.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from cryptowatch.core.logging import LOGGER_NAME, configure_logging
from cryptowatch.core.middleware.request_id import RequestIdMiddleware
from cryptowatch.core.validation import validate_env
from cryptowatch.api import billing, health, webhooks

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger(LOGGER_NAME)
    logger.info("Starting CryptoWatch billing...")
    create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping CryptoWatch billing...")


app = FastAPI(title="CryptoWatch - Billing", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(billing.router)
app.include_router(webhooks.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("cryptowatch.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
