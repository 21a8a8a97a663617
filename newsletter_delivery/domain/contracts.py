from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from newsletter_delivery.domain.models import (
    DeliveryReport,
    DeliveryStatus,
    DeliveryTaskClaim,
    DeliveryTaskSnapshot,
    IssueSnapshot,
    NewIssue,
    SavedResponse,
)

# Builds the response recorded for a fresh issuance from the number of
# delivery tasks that were enqueued in the same transaction.
ResponseBuilder = Callable[[int], SavedResponse]


@runtime_checkable
class IdempotencyStore(Protocol):
    """Store-and-replay contract for mutating requests.

    save_response must run inside the caller's transaction and raise
    DuplicateRequestError on the (owner_id, idempotency_key) unique constraint.
    """

    async def get_saved_response(self, *, owner_id: str, idempotency_key: str) -> SavedResponse | None: ...

    async def save_response(
        self,
        tx: Any,
        *,
        owner_id: str,
        idempotency_key: str,
        response: SavedResponse,
    ) -> None: ...


@runtime_checkable
class SubscriberDirectory(Protocol):
    async def list_confirmed_subscribers(self) -> list[str]: ...


@runtime_checkable
class NewsletterRepository(IdempotencyStore, SubscriberDirectory, Protocol):
    """Repository contract for issuance fan-out and the delivery queue.

    Claim semantics must remain compatible with Postgres row claims using
    SELECT ... FOR UPDATE SKIP LOCKED.
    """

    async def create_issue_with_deliveries(
        self,
        *,
        owner_id: str,
        idempotency_key: str,
        issue: NewIssue,
        build_response: ResponseBuilder,
    ) -> SavedResponse: ...

    async def get_issue(self, *, issue_id: str) -> IssueSnapshot | None: ...

    async def claim_next(self, *, worker_id: str, lease_seconds: int = 30) -> DeliveryTaskClaim | None: ...

    async def heartbeat_claim(self, *, task_id: int, worker_id: str, lease_seconds: int = 30) -> bool: ...

    async def reclaim_stale_claims(self) -> int: ...

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
    ) -> DeliveryStatus: ...

    async def get_task(self, *, task_id: int) -> DeliveryTaskSnapshot | None: ...

    async def list_tasks(
        self,
        *,
        issue_id: str,
        status: DeliveryStatus | None = None,
    ) -> list[DeliveryTaskSnapshot]: ...

    async def get_delivery_report(self, *, issue_id: str) -> DeliveryReport | None: ...


@runtime_checkable
class MailGateway(Protocol):
    """Outbound transport; raises TransientDeliveryError or PermanentDeliveryError."""

    async def send(self, *, to: str, subject: str, html: str, text: str) -> None: ...


@runtime_checkable
class OperatorAuthenticator(Protocol):
    def authenticate(self, token: str | None) -> str: ...
