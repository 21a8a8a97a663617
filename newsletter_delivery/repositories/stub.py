from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from newsletter_delivery.domain.contracts import ResponseBuilder
from newsletter_delivery.domain.errors import DomainInvariantError, DuplicateRequestError
from newsletter_delivery.domain.error_taxonomy import resolve_delivery_error
from newsletter_delivery.domain.lifecycle import is_allowed_transition
from newsletter_delivery.domain.models import (
    DeliveryReport,
    DeliveryStatus,
    DeliveryTaskClaim,
    DeliveryTaskSnapshot,
    IssueSnapshot,
    NewIssue,
    SavedResponse,
)
from newsletter_delivery.domain.subscribers import valid_subscriber_emails


@dataclass
class _IssueRow:
    id: int
    issue_id: str
    title: str
    html_content: str
    text_content: str
    published_by: str
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


@dataclass
class _TaskRow:
    id: int
    issue_pk: int
    subscriber_email: str
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempt_count: int = 0
    available_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    lease_expires_at: datetime | None = None
    last_error_code: str | None = None
    last_error_message: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


@dataclass
class _PendingTransaction:
    """Staged writes applied together on commit, mirroring one SQL transaction."""

    subscriber_emails: list[str] = field(default_factory=list)
    idempotency: dict[tuple[str, str], SavedResponse] = field(default_factory=dict)


@dataclass
class InMemoryNewsletterRepository:
    """Non-network repository with deterministic behavior for skeleton mode."""

    subscribers: dict[str, str] = field(default_factory=dict)
    issues: dict[int, _IssueRow] = field(default_factory=dict)
    tasks: dict[int, _TaskRow] = field(default_factory=dict)
    saved_responses: dict[tuple[str, str], SavedResponse] = field(default_factory=dict)
    transitions: list[tuple[int, str, str]] = field(default_factory=list)
    next_issue_pk: int = 1
    next_task_pk: int = 1

    def add_subscriber(self, email: str, *, status: str = "confirmed") -> None:
        self.subscribers[email] = status

    async def get_saved_response(self, *, owner_id: str, idempotency_key: str) -> SavedResponse | None:
        return self.saved_responses.get((owner_id, idempotency_key))

    async def save_response(
        self,
        tx: Any,
        *,
        owner_id: str,
        idempotency_key: str,
        response: SavedResponse,
    ) -> None:
        key = (owner_id, idempotency_key)
        if key in self.saved_responses or (isinstance(tx, _PendingTransaction) and key in tx.idempotency):
            raise DuplicateRequestError(f"idempotency key already recorded for owner {owner_id}")
        if isinstance(tx, _PendingTransaction):
            tx.idempotency[key] = response
        else:
            self.saved_responses[key] = response

    async def list_confirmed_subscribers(self) -> list[str]:
        return [email for email, status in self.subscribers.items() if status == "confirmed"]

    async def create_issue_with_deliveries(
        self,
        *,
        owner_id: str,
        idempotency_key: str,
        issue: NewIssue,
        build_response: ResponseBuilder,
    ) -> SavedResponse:
        tx = _PendingTransaction()
        tx.subscriber_emails = valid_subscriber_emails(await self.list_confirmed_subscribers())
        # Yield like a driver round-trip so concurrent issuances interleave.
        await asyncio.sleep(0)

        response = build_response(len(tx.subscriber_emails))
        await self.save_response(tx, owner_id=owner_id, idempotency_key=idempotency_key, response=response)

        # Commit: no awaits below, so the staged rows become visible atomically.
        if (owner_id, idempotency_key) in self.saved_responses:
            raise DuplicateRequestError(f"idempotency key already recorded for owner {owner_id}")
        issue_row = _IssueRow(
            id=self.next_issue_pk,
            issue_id=issue.issue_id,
            title=issue.title,
            html_content=issue.html_content,
            text_content=issue.text_content,
            published_by=issue.published_by,
        )
        self.issues[issue_row.id] = issue_row
        self.next_issue_pk += 1
        for email in tx.subscriber_emails:
            self.tasks[self.next_task_pk] = _TaskRow(
                id=self.next_task_pk,
                issue_pk=issue_row.id,
                subscriber_email=email,
            )
            self.next_task_pk += 1
        self.saved_responses.update(tx.idempotency)
        return response

    async def get_issue(self, *, issue_id: str) -> IssueSnapshot | None:
        row = self._issue_by_public_id(issue_id)
        if row is None:
            return None
        return IssueSnapshot(
            issue_id=row.issue_id,
            title=row.title,
            html_content=row.html_content,
            text_content=row.text_content,
            published_by=row.published_by,
            created_at=row.created_at,
        )

    async def claim_next(self, *, worker_id: str, lease_seconds: int = 30) -> DeliveryTaskClaim | None:
        now = datetime.now(tz=UTC)
        candidates = sorted(
            (
                row
                for row in self.tasks.values()
                if row.status == DeliveryStatus.PENDING and row.available_at <= now
            ),
            key=lambda row: (row.issue_pk, row.id),
        )
        if not candidates:
            return None

        row = candidates[0]
        self._transition(row, DeliveryStatus.IN_PROGRESS)
        row.claimed_by = worker_id
        row.claimed_at = now
        row.lease_expires_at = now + timedelta(seconds=lease_seconds)
        row.updated_at = now
        return DeliveryTaskClaim(
            task_id=row.id,
            issue_id=self.issues[row.issue_pk].issue_id,
            subscriber_email=row.subscriber_email,
            attempt=row.attempt_count + 1,
            lease_expires_at=row.lease_expires_at,
        )

    async def heartbeat_claim(self, *, task_id: int, worker_id: str, lease_seconds: int = 30) -> bool:
        row = self.tasks.get(task_id)
        if row is None:
            return False
        now = datetime.now(tz=UTC)
        if (
            row.status != DeliveryStatus.IN_PROGRESS
            or row.claimed_by != worker_id
            or row.lease_expires_at is None
            or row.lease_expires_at <= now
        ):
            return False
        row.lease_expires_at = now + timedelta(seconds=lease_seconds)
        row.updated_at = now
        return True

    async def reclaim_stale_claims(self) -> int:
        reclaimed = 0
        now = datetime.now(tz=UTC)
        for row in self.tasks.values():
            if (
                row.status != DeliveryStatus.IN_PROGRESS
                or row.lease_expires_at is None
                or row.lease_expires_at > now
            ):
                continue
            row.attempt_count += 1
            row.last_error_code = "lease_expired"
            row.last_error_message = "claim lease expired and was reclaimed"
            row.available_at = now
            self._release(row, DeliveryStatus.PENDING, now)
            reclaimed += 1
        return reclaimed

    async def finalize(
        self,
        *,
        task_id: int,
        worker_id: str,
        success: bool,
        retryable: bool = False,
        detail: str = "",
        error_code: str | None = None,
        max_attempts: int = 5,
        retry_delay_seconds: float = 0.0,
    ) -> DeliveryStatus:
        row = self.tasks.get(task_id)
        if row is None or row.status != DeliveryStatus.IN_PROGRESS or row.claimed_by != worker_id:
            raise DomainInvariantError("claim ownership is stale")

        now = datetime.now(tz=UTC)
        row.attempt_count += 1
        if success:
            row.last_error_code = None
            row.last_error_message = None
            self._release(row, DeliveryStatus.SUCCEEDED, now)
            return DeliveryStatus.SUCCEEDED

        row.last_error_code = resolve_delivery_error(error_code or "internal_error")
        row.last_error_message = detail
        # Mirror Postgres behavior: retryable below the ceiling -> pending, otherwise dead-letter.
        if retryable and row.attempt_count < max_attempts:
            row.available_at = now + timedelta(seconds=retry_delay_seconds)
            self._release(row, DeliveryStatus.PENDING, now)
            return DeliveryStatus.PENDING

        self._release(row, DeliveryStatus.FAILED_TERMINAL, now)
        return DeliveryStatus.FAILED_TERMINAL

    async def get_task(self, *, task_id: int) -> DeliveryTaskSnapshot | None:
        row = self.tasks.get(task_id)
        if row is None:
            return None
        return self._snapshot(row)

    async def list_tasks(
        self,
        *,
        issue_id: str,
        status: DeliveryStatus | None = None,
    ) -> list[DeliveryTaskSnapshot]:
        issue = self._issue_by_public_id(issue_id)
        if issue is None:
            return []
        return [
            self._snapshot(row)
            for row in sorted(self.tasks.values(), key=lambda row: row.id)
            if row.issue_pk == issue.id and (status is None or row.status == status)
        ]

    async def get_delivery_report(self, *, issue_id: str) -> DeliveryReport | None:
        if self._issue_by_public_id(issue_id) is None:
            return None
        tasks = await self.list_tasks(issue_id=issue_id)
        counts = {status: 0 for status in DeliveryStatus}
        for task in tasks:
            counts[task.status] += 1
        return DeliveryReport(
            issue_id=issue_id,
            status_counts=counts,
            terminal_failures=[task for task in tasks if task.status == DeliveryStatus.FAILED_TERMINAL],
        )

    def _issue_by_public_id(self, issue_id: str) -> _IssueRow | None:
        return next((row for row in self.issues.values() if row.issue_id == issue_id), None)

    def _transition(self, row: _TaskRow, next_status: DeliveryStatus) -> None:
        if not is_allowed_transition(row.status, next_status):
            raise DomainInvariantError(f"illegal delivery transition {row.status} -> {next_status}")
        self.transitions.append((row.id, row.status, next_status))
        row.status = next_status

    def _release(self, row: _TaskRow, next_status: DeliveryStatus, now: datetime) -> None:
        self._transition(row, next_status)
        row.claimed_by = None
        row.claimed_at = None
        row.lease_expires_at = None
        row.updated_at = now

    def _snapshot(self, row: _TaskRow) -> DeliveryTaskSnapshot:
        return DeliveryTaskSnapshot(
            task_id=row.id,
            issue_id=self.issues[row.issue_pk].issue_id,
            subscriber_email=row.subscriber_email,
            status=row.status,
            attempt_count=row.attempt_count,
            available_at=row.available_at,
            claimed_by=row.claimed_by,
            claimed_at=row.claimed_at,
            lease_expires_at=row.lease_expires_at,
            last_error_code=row.last_error_code,
            last_error_message=row.last_error_message,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
