import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.dependencies import get_crypto, get_rate_limiter
from api.routes import messages, pii, reports
from cloak.encryption import TenantCrypto
from cloak.errors import (
    ConfigurationError,
    DecryptionError,
    InvalidLinkError,
    PersistenceError,
    RateLimitExceededError,
    ReportNotFoundError,
)
from cloak.rate_limiter import RateLimiter, RedisCounterStore
from config import get_settings
from db.database import init_db
from schemas.api import HealthResponse

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

GENERIC_SUBMISSION_ERROR = "Submission failed, please try again"
RATE_LIMITED_ERROR = "Too many requests. Please try again later."


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Cloak API")

    # Safety checks: a missing secret disables encryption, not the process
    if not settings.encryption_salt:
        logger.critical(
            "ENCRYPTION_SALT is not set! Report submission and messaging will "
            "fail until it is configured. Generate one with: openssl rand -hex 32"
        )
    elif len(settings.encryption_salt) < 32:
        logger.warning(
            "ENCRYPTION_SALT looks too short (%d chars). "
            "Use a 64-char hex string (256 bits).",
            len(settings.encryption_salt),
        )
    if not settings.redis_url:
        logger.warning(
            "REDIS_URL is not set; rate limits are enforced per process only"
        )

    await init_db()
    yield
    await get_rate_limiter().close()
    logger.info("Shutting down Cloak API")


app = FastAPI(
    title="Cloak — Anonymous Reporting",
    description="Confidentiality and privacy protection for whistleblowing reports",
    version="0.1.0",
    lifespan=lifespan,
)

cors_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Requested-With"],
    expose_headers=[
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
)

app.include_router(reports.router, prefix="/api/reports", tags=["reports"])
app.include_router(messages.router, prefix="/api/reports", tags=["messages"])
app.include_router(pii.router, prefix="/api/pii", tags=["pii"])


# ---------------------------------------------------------------------------
# Error translation: anonymous callers only ever see generic messages
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceededError)
async def rate_limited_handler(request: Request, exc: RateLimitExceededError):
    result = exc.result
    return JSONResponse(
        status_code=429,
        content={
            "error": RATE_LIMITED_ERROR,
            "reset": int(result.reset_at),
            "retryAfter": result.retry_after_seconds(),
        },
        headers=result.headers(),
    )


@app.exception_handler(InvalidLinkError)
async def invalid_link_handler(request: Request, exc: InvalidLinkError):
    return JSONResponse(status_code=400, content={"detail": "Invalid request"})


@app.exception_handler(ReportNotFoundError)
async def report_not_found_handler(request: Request, exc: ReportNotFoundError):
    return JSONResponse(status_code=404, content={"detail": "Report not found"})


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.critical("Request refused, configuration error: %s", exc)
    return JSONResponse(status_code=500, content={"detail": GENERIC_SUBMISSION_ERROR})


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    return JSONResponse(status_code=500, content={"detail": GENERIC_SUBMISSION_ERROR})


@app.exception_handler(DecryptionError)
async def decryption_error_handler(request: Request, exc: DecryptionError):
    logger.error("Integrity failure while reading %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Unable to read messages"})


@app.get(
    "/api/health",
    response_model=HealthResponse,
    responses={503: {"model": HealthResponse, "description": "Encryption not configured"}},
)
async def health(
    crypto: TenantCrypto = Depends(get_crypto),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    store = "redis" if isinstance(limiter.store, RedisCounterStore) else "memory"
    body = HealthResponse(
        status="ok" if crypto.is_configured else "degraded",
        encryption_configured=crypto.is_configured,
        rate_limit_store=store,
    )
    return JSONResponse(
        status_code=200 if crypto.is_configured else 503,
        content=body.model_dump(),
    )
