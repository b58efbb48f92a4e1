from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field


# --- Report Submission Schemas ---

class ReportSubmission(BaseModel):
    link_token: str = Field(..., min_length=1, max_length=128)
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1, max_length=50_000)
    report_type: str = Field("other", max_length=50)
    priority: int = Field(3, ge=1, le=5)
    tags: list[str] = Field(default_factory=list, max_length=20)
    incident_details: str | None = Field(None, max_length=50_000)
    location: str | None = Field(None, max_length=1_000)
    witnesses: str | None = Field(None, max_length=5_000)
    evidence: str | None = Field(None, max_length=10_000)
    additional_details: str | None = Field(None, max_length=20_000)

    def confidential_payload(self) -> dict:
        """Everything that goes inside the encrypted envelope."""
        return self.model_dump(exclude={"link_token"}, exclude_none=True)


class PIIScanSummary(BaseModel):
    has_pii: bool
    high_count: int = 0
    medium_count: int = 0
    low_count: int = 0
    types: list[str] = []


class SubmissionResponse(BaseModel):
    tracking_id: str
    status: str
    created_at: datetime
    pii_summary: PIIScanSummary


# --- Anonymous Messaging Schemas ---

class MessagingRequest(BaseModel):
    action: Literal["load", "send"]
    tracking_id: str = Field(..., min_length=1, max_length=32)
    message: str | None = None


class MessageItem(BaseModel):
    id: UUID
    sender_type: str
    message: str
    is_read: bool = False
    created_at: datetime


class MessagingResponse(BaseModel):
    messages: list[MessageItem] = []
    sent: MessageItem | None = None


# --- PII Schemas ---

class PIIScanRequest(BaseModel):
    text: str = Field(..., max_length=100_000)
    organization_id: str | None = Field(None, max_length=64)


class PIIDetectionResponse(BaseModel):
    type: str
    severity: str
    start: int
    end: int
    description: str


class PIIScanResponse(BaseModel):
    summary: PIIScanSummary
    # Spans only; the matched text stays with the caller who sent it.
    detections: list[PIIDetectionResponse] = []


class RedactRequest(BaseModel):
    text: str = Field(..., max_length=100_000)
    organization_id: str | None = Field(None, max_length=64)
    include_names: bool = True
    include_addresses: bool = True


class RedactResponse(BaseModel):
    redacted_text: str
    placeholders: dict[str, str] = {}
    detection_stats: dict[str, int] = {}
    summary: PIIScanSummary


# --- Health ---

class HealthResponse(BaseModel):
    status: str
    encryption_configured: bool
    rate_limit_store: str
