"""
FastAPI application for sequential phone + email verification.
"""

import asyncio
import contextlib
import logging
from collections.abc import Iterable
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.handlers import (
    auth_exception_handler,
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from api.phone_change import router as phone_change_router
from api.verification import router as verification_router
from auth.dependencies import close_components, get_auth_config, get_sweepables
from auth.exceptions import AuthException
from config import Config

logging.basicConfig(
    level=Config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# Validate configuration on startup
Config.validate()


async def sweep_once(sweepables: Iterable) -> int:
    """Evict expired records from every store; returns how many were removed."""
    removed = 0
    for store in sweepables:
        removed += await store.sweep()
    return removed


async def sweep_forever(interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await sweep_once(get_sweepables())
        except Exception:
            logger.exception("Sweep of expired auth state failed")
            continue
        if removed:
            logger.debug("Swept %d expired records", removed)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown."""
    logger.info("Starting up application...")
    interval = get_auth_config().SWEEP_INTERVAL_SECONDS
    sweeper = asyncio.create_task(sweep_forever(interval)) if interval > 0 else None

    yield

    logger.info("Shutting down application...")
    if sweeper is not None:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
    await close_components()


app = FastAPI(
    title="Verification API",
    description="Sequential phone and email OTP verification",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register global exception handlers (apply to all endpoints)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(AuthException, auth_exception_handler)
app.add_exception_handler(Exception, general_exception_handler)

app.include_router(verification_router, prefix="/api/v1/auth/verification", tags=["verification"])
app.include_router(phone_change_router, prefix="/api/v1/auth/phone-change", tags=["phone-change"])


@app.get("/health")
async def health():
    """Health check."""
    return {"status": "healthy"}
