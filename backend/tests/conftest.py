from __future__ import annotations

import os
import uuid

import pytest

# Server secret for tenant key derivation in tests
os.environ.setdefault("ENCRYPTION_SALT", "test_salt_for_development_only_32chars00")

TEST_SECRET = "test_salt_for_development_only_32chars00"


class FakeClock:
    """Manually advanced clock for rate limiter tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def server_secret() -> str:
    return TEST_SECRET


@pytest.fixture
def crypto(server_secret: str):
    from cloak.encryption import TenantCrypto
    return TenantCrypto(server_secret)


@pytest.fixture
def organization_id() -> str:
    return "5b0c3d6e-8a51-4b7f-9f3e-0d2c1a7e4b10"


@pytest.fixture
def other_organization_id() -> str:
    return "9e7f1a22-3c44-4d55-8e66-7f8890a1b2c3"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_limiter(clock: FakeClock):
    from cloak.rate_limiter import InMemoryCounterStore, RateLimiter
    return RateLimiter(InMemoryCounterStore(), timeout=1.0, clock=clock)


@pytest.fixture
def sample_report_fields() -> dict:
    """A realistic report with one email address and one phone number."""
    return {
        "title": "Expense fraud in the regional office",
        "description": (
            "Contact me at jane@example.com or 555-123-4567 about the "
            "invoices that were approved without review."
        ),
        "report_type": "financial_misconduct",
    }


@pytest.fixture
def link_row(organization_id: str):
    """An active, unlimited submission link."""
    from db.models import OrganizationLink
    return OrganizationLink(
        id=uuid.uuid4(),
        organization_id=uuid.UUID(organization_id),
        link_token="tok_live_abc123",
        is_active=True,
        expires_at=None,
        usage_limit=None,
        usage_count=0,
    )
