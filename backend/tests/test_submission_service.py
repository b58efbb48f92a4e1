"""Tests for services.submission_service: the anonymous submission pipeline."""

from __future__ import annotations

import asyncio
import re
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from cloak.encryption import TenantCrypto
from cloak.errors import InvalidLinkError
from cloak.pii_detector import LegacyPatternDetector
from cloak.rate_limiter import RateLimiter
from cloak.scanner import PIIScanner
from db.models import Report
from schemas.api import ReportSubmission
from services.submission_service import (
    SubmissionOrchestrator,
    SubmissionState,
    check_link,
    generate_tracking_id,
)


async def _fake_create_report(db, **kwargs) -> Report:
    return Report(id=uuid.uuid4(), created_at=datetime.now(timezone.utc), **kwargs)


@pytest.fixture
def submission(sample_report_fields) -> ReportSubmission:
    return ReportSubmission(link_token="tok_live_abc123", **sample_report_fields)


@pytest.fixture
def db() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def repos(link_row):
    """Patch the repository layer used by the orchestrator."""
    with patch("services.submission_service.repositories") as mock_repos:
        mock_repos.get_link_by_token = AsyncMock(return_value=link_row)
        mock_repos.tracking_id_exists = AsyncMock(return_value=False)
        mock_repos.create_report = AsyncMock(side_effect=_fake_create_report)
        mock_repos.increment_link_usage = AsyncMock(return_value=True)
        yield mock_repos


@pytest.fixture
def orchestrator(memory_limiter: RateLimiter, crypto: TenantCrypto) -> SubmissionOrchestrator:
    return SubmissionOrchestrator(memory_limiter, PIIScanner(), crypto)


# -----------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------


class TestTrackingId:
    def test_format(self):
        for _ in range(50):
            assert re.fullmatch(r"DIS-[A-Z0-9]{8}", generate_tracking_id())

    def test_randomness(self):
        assert len({generate_tracking_id() for _ in range(200)}) == 200


class TestCheckLink:
    """Links must exist, be active, unexpired and not exhausted."""

    def test_missing(self):
        with pytest.raises(InvalidLinkError) as exc_info:
            check_link(None)
        assert exc_info.value.reason == "not_found"

    def test_inactive(self, link_row):
        link_row.is_active = False
        with pytest.raises(InvalidLinkError) as exc_info:
            check_link(link_row)
        assert exc_info.value.reason == "inactive"

    def test_expired(self, link_row):
        link_row.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        with pytest.raises(InvalidLinkError) as exc_info:
            check_link(link_row)
        assert exc_info.value.reason == "expired"

    def test_exhausted(self, link_row):
        link_row.usage_limit = 3
        link_row.usage_count = 3
        with pytest.raises(InvalidLinkError) as exc_info:
            check_link(link_row)
        assert exc_info.value.reason == "exhausted"

    def test_usable(self, link_row):
        link_row.usage_limit = 3
        link_row.usage_count = 2
        link_row.expires_at = datetime.now(timezone.utc) + timedelta(days=1)
        check_link(link_row)


# -----------------------------------------------------------------------
# Happy path
# -----------------------------------------------------------------------


class TestSubmitHappyPath:
    """Email + phone report: two high detections, encrypted, persisted."""

    @pytest.mark.asyncio
    async def test_end_to_end(
        self, orchestrator, db, repos, submission, crypto, organization_id
    ):
        outcome = await orchestrator.submit(db, submission, "203.0.113.7")

        assert outcome.state is SubmissionState.PERSISTED
        assert outcome.history == [
            SubmissionState.RECEIVED,
            SubmissionState.RATE_LIMIT_CHECKED,
            SubmissionState.PAYLOAD_SCANNED,
            SubmissionState.PAYLOAD_ENCRYPTED,
            SubmissionState.PERSISTED,
        ]
        assert outcome.scan.high_count == 2
        assert re.fullmatch(r"DIS-[A-Z0-9]{8}", outcome.tracking_id)

        kwargs = repos.create_report.await_args.kwargs
        stored = crypto.decrypt_json(organization_id, kwargs["encrypted_content"])
        assert stored["description"] == submission.description
        assert kwargs["encryption_key_hash"] == crypto.key_fingerprint(organization_id)
        assert kwargs["pii_scan_metadata"]["high_count"] == 2
        db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_plaintext_reaches_storage(self, orchestrator, db, repos, submission):
        await orchestrator.submit(db, submission, "203.0.113.7")
        kwargs = repos.create_report.await_args.kwargs
        persisted = repr(kwargs)
        assert "jane@example.com" not in persisted
        assert "555-123-4567" not in persisted
        assert "jane@example.com" not in repr(kwargs["pii_scan_metadata"])

    @pytest.mark.asyncio
    async def test_link_usage_is_incremented(self, orchestrator, db, repos, submission, link_row):
        await orchestrator.submit(db, submission, "203.0.113.7")
        repos.increment_link_usage.assert_awaited_once_with(db, link_row.id)
        assert repos.create_report.await_args.kwargs["submitted_via_link_id"] == link_row.id

    @pytest.mark.asyncio
    async def test_scan_failure_does_not_block(self, memory_limiter, crypto, db, repos, submission):
        legacy = MagicMock(spec=LegacyPatternDetector)
        legacy.scan.side_effect = RuntimeError("boom")
        orchestrator = SubmissionOrchestrator(memory_limiter, PIIScanner(legacy=legacy), crypto)
        outcome = await orchestrator.submit(db, submission, "203.0.113.7")
        assert outcome.state is SubmissionState.PERSISTED
        assert not outcome.scan.has_pii


# -----------------------------------------------------------------------
# Early exits
# -----------------------------------------------------------------------


class TestSubmitEarlyExits:
    """Each failure stops the pipeline at the right state with nothing stored."""

    @pytest.mark.asyncio
    async def test_sixth_submission_is_rate_limited(self, orchestrator, db, repos, submission):
        for _ in range(5):
            outcome = await orchestrator.submit(db, submission, "203.0.113.7")
            assert outcome.succeeded
        outcome = await orchestrator.submit(db, submission, "203.0.113.7")
        assert outcome.state is SubmissionState.RATE_LIMITED
        assert outcome.rate_limit.remaining == 0
        assert repos.create_report.await_count == 5

    @pytest.mark.asyncio
    async def test_limiter_outage_still_accepts(self, crypto, db, repos, submission):
        class Broken:
            async def hit(self, *args):
                raise ConnectionError("down")

        orchestrator = SubmissionOrchestrator(RateLimiter(Broken()), PIIScanner(), crypto)
        outcome = await orchestrator.submit(db, submission, "203.0.113.7")
        assert outcome.state is SubmissionState.PERSISTED
        assert outcome.rate_limit.degraded

    @pytest.mark.asyncio
    async def test_invalid_link(self, orchestrator, db, repos, submission):
        repos.get_link_by_token.return_value = None
        outcome = await orchestrator.submit(db, submission, "203.0.113.7")
        assert outcome.state is SubmissionState.INVALID_LINK
        assert outcome.invalid_link_reason == "not_found"
        repos.create_report.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_secret_aborts_before_storage(
        self, memory_limiter, db, repos, submission
    ):
        orchestrator = SubmissionOrchestrator(memory_limiter, PIIScanner(), TenantCrypto(None))
        outcome = await orchestrator.submit(db, submission, "203.0.113.7")
        assert outcome.state is SubmissionState.ENCRYPTION_CONFIG_ERROR
        assert SubmissionState.PAYLOAD_SCANNED in outcome.history
        repos.create_report.assert_not_awaited()
        db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_persistence_failure_rolls_back(self, orchestrator, db, repos, submission):
        repos.create_report.side_effect = RuntimeError("connection reset")
        outcome = await orchestrator.submit(db, submission, "203.0.113.7")
        assert outcome.state is SubmissionState.PERSISTENCE_FAILED
        assert outcome.tracking_id is None
        db.rollback.assert_awaited_once()
        db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_link_exhausted_at_commit_rolls_back(self, orchestrator, db, repos, submission):
        repos.increment_link_usage.return_value = False
        outcome = await orchestrator.submit(db, submission, "203.0.113.7")
        assert outcome.state is SubmissionState.INVALID_LINK
        assert outcome.invalid_link_reason == "exhausted"
        db.rollback.assert_awaited_once()
        db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancellation_before_commit_persists_nothing(
        self, orchestrator, db, repos, submission
    ):
        repos.increment_link_usage.side_effect = asyncio.CancelledError()
        with pytest.raises(asyncio.CancelledError):
            await orchestrator.submit(db, submission, "203.0.113.7")
        db.rollback.assert_awaited_once()
        db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_finished_outcome_cannot_advance(self, orchestrator, db, repos, submission):
        outcome = await orchestrator.submit(db, submission, "203.0.113.7")
        with pytest.raises(RuntimeError):
            outcome.advance(SubmissionState.PAYLOAD_SCANNED)
