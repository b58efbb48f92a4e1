from __future__ import annotations

from functools import lru_cache

from fastapi import Depends, Request, Response

from cloak.encryption import TenantCrypto
from cloak.errors import RateLimitExceededError
from cloak.external_detector import ExternalDetector
from cloak.pii_detector import LegacyPatternDetector, NameHeuristics
from cloak.rate_limiter import (
    GENERAL_API,
    InMemoryCounterStore,
    RateLimiter,
    RateLimitResult,
    RedisCounterStore,
    client_identifier,
)
from cloak.scanner import PIIScanner
from config import get_settings
from db import repositories
from db.database import async_session
from services.messaging_service import MessagingService
from services.submission_service import SubmissionOrchestrator

EXTERNAL_DETECTOR_FLAG = "use_external_pii_detector"


async def external_detector_enabled(organization_id: str | None) -> bool:
    """Feature flag lookup on its own short-lived DB session."""
    async with async_session() as db:
        return await repositories.is_feature_enabled(
            db, EXTERNAL_DETECTOR_FLAG, organization_id
        )


@lru_cache
def get_crypto() -> TenantCrypto:
    return TenantCrypto(get_settings().encryption_salt)


@lru_cache
def get_rate_limiter() -> RateLimiter:
    settings = get_settings()
    if settings.redis_url:
        store = RedisCounterStore.from_url(
            settings.redis_url, timeout=settings.rate_limit_timeout_seconds
        )
    else:
        store = InMemoryCounterStore()
    return RateLimiter(
        store,
        timeout=settings.rate_limit_timeout_seconds,
        key_prefix=settings.rate_limit_key_prefix,
    )


@lru_cache
def get_scanner() -> PIIScanner:
    settings = get_settings()
    legacy = LegacyPatternDetector(
        heuristics=NameHeuristics(context_window=settings.name_context_window)
    )
    external = None
    if settings.external_pii_api_url:
        external = ExternalDetector(
            settings.external_pii_api_url,
            api_key=settings.external_pii_api_key,
            timeout=settings.external_pii_timeout_seconds,
            enable_ai=settings.external_pii_enable_ai,
        )
    return PIIScanner(
        legacy=legacy,
        external=external,
        flag_lookup=external_detector_enabled,
        flag_timeout=settings.feature_flag_timeout_seconds,
    )


def get_submission_orchestrator() -> SubmissionOrchestrator:
    return SubmissionOrchestrator(get_rate_limiter(), get_scanner(), get_crypto())


def get_messaging_service() -> MessagingService:
    settings = get_settings()
    return MessagingService(
        get_crypto(),
        get_rate_limiter(),
        max_length=settings.message_max_length,
        history_limit=settings.message_history_limit,
    )


def get_client_id(request: Request) -> str:
    peer = request.client.host if request.client else None
    return client_identifier(request.headers, peer)


async def enforce_general_api_limit(
    response: Response,
    limiter: RateLimiter = Depends(get_rate_limiter),
    client_id: str = Depends(get_client_id),
) -> RateLimitResult:
    result = await limiter.check_limit(client_id, GENERAL_API)
    if not result.allowed:
        raise RateLimitExceededError(result)
    if not result.degraded:
        response.headers.update(result.headers())
    return result
