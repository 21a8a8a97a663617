from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from newsletter_delivery.domain.error_taxonomy import ErrorCode


# Canonical delivery task states.
#
# IMPORTANT:
# - Keep this enum synchronized with newsletter_delivery/domain/lifecycle.py
#   (ALLOWED_TRANSITIONS).
# - Keep this enum synchronized with the DB status CHECK constraint in
#   db/migrations/000001_bootstrap.up.sql.
class DeliveryStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED_TERMINAL = "failed_terminal"


HeaderPair = tuple[str, str]


@dataclass(frozen=True)
class SavedResponse:
    status_code: int
    headers: tuple[HeaderPair, ...]
    body: bytes


@dataclass(frozen=True)
class NewIssue:
    issue_id: str
    title: str
    html_content: str
    text_content: str
    published_by: str


@dataclass(frozen=True)
class IssueSnapshot:
    issue_id: str
    title: str
    html_content: str
    text_content: str
    published_by: str
    created_at: datetime


@dataclass(frozen=True)
class IssueOutcome:
    response: SavedResponse
    replayed: bool


@dataclass(frozen=True)
class DeliveryTaskClaim:
    task_id: int
    issue_id: str
    subscriber_email: str
    attempt: int
    lease_expires_at: datetime | None = None


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    detail: str = ""
    error_code: ErrorCode | None = None
    retryable: bool = False


@dataclass(frozen=True)
class DeliveryTaskSnapshot:
    task_id: int
    issue_id: str
    subscriber_email: str
    status: DeliveryStatus
    attempt_count: int
    available_at: datetime
    claimed_by: str | None
    claimed_at: datetime | None
    lease_expires_at: datetime | None
    last_error_code: str | None
    last_error_message: str | None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class DeliveryReport:
    issue_id: str
    status_counts: dict[DeliveryStatus, int]
    terminal_failures: list[DeliveryTaskSnapshot] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(self.status_counts.values())
