import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from estepage.api import billing, health, quota, subscriptions  # noqa: E402
from estepage.core.config import settings, validate_config  # noqa: E402
from estepage.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from estepage.core.logging import configure_logging  # noqa: E402
from estepage.core.middleware.request_id import RequestIdMiddleware  # noqa: E402


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("estepage")
    logger.info("Starting EstePage backend...")
    try:
        yield
    finally:
        logger.info("Stopping EstePage backend...")


def create_app() -> FastAPI:
    configure_logging(settings.ENV)
    validate_config(strict=settings.CONFIG_STRICT)

    app = FastAPI(title="EstePage API", lifespan=lifespan)
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router)
    app.include_router(billing.router)
    app.include_router(subscriptions.router)
    app.include_router(quota.router)
    return app


app = create_app()
