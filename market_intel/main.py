import os
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[1]
# Endpoint TTLs and provider settings are read at import time.
load_dotenv(PROJECT_ROOT / ".env")

from market_intel.api.routes import get_data_service, router  # noqa: E402
from market_intel.api.schemas import ErrorResponse  # noqa: E402
from market_intel.services.errors import (  # noqa: E402
    MarketIntelError,
    UnknownError,
    ValidationError,
    sanitize_error_message,
)

logger = logging.getLogger(__name__)

_GENERIC_ERROR_MESSAGE = "An unexpected error occurred"


def _is_production() -> bool:
    return os.getenv("APP_ENV", "development").strip().lower() == "production"


def build_error_response(exc: Exception) -> JSONResponse:
    """Map any exception onto the `{success: false, error, code, timestamp}` envelope."""
    if not isinstance(exc, MarketIntelError):
        exc = UnknownError(str(exc))
    message = exc.message
    if exc.status_code >= 500:
        message = _GENERIC_ERROR_MESSAGE if _is_production() else sanitize_error_message(message)
    body = ErrorResponse(
        error=message,
        code=exc.code,
        timestamp=datetime.now(UTC),
        details=exc.errors if isinstance(exc, ValidationError) else None,
    )
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json", exclude_none=True))


async def market_intel_error_handler(request: Request, exc: MarketIntelError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return build_error_response(exc)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return build_error_response(exc)


@asynccontextmanager
async def lifespan(_: FastAPI):
    service = get_data_service()
    try:
        service.warmup()
    except Exception as exc:  # pragma: no cover - startup best effort
        logger.warning("DataService warmup skipped due to error: %s", exc)
    yield
    service.close()


app = FastAPI(
    title="DeFi Market Intelligence API",
    description="Dominance, concentration, trending and movers analytics over DefiLlama data.",
    version="0.1.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_exception_handler(MarketIntelError, market_intel_error_handler)
app.add_exception_handler(Exception, unhandled_error_handler)
app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8001"))
    uvicorn.run("market_intel.main:app", host="0.0.0.0", port=port, reload=True)
