from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
import json
from typing import Any

import asyncpg

from newsletter_delivery.domain.contracts import ResponseBuilder
from newsletter_delivery.domain.errors import DomainInvariantError, DuplicateRequestError, StoreUnavailableError
from newsletter_delivery.domain.error_taxonomy import resolve_delivery_error
from newsletter_delivery.domain.idempotency import decode_headers, encode_headers
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
from newsletter_delivery.repositories.sql_loader import load_sql

SQL_GET_SAVED_RESPONSE = load_sql("get_saved_response.sql")
SQL_SAVE_RESPONSE = load_sql("save_response.sql")
SQL_CREATE_ISSUE = load_sql("create_issue.sql")
SQL_GET_ISSUE = load_sql("get_issue.sql")
SQL_LIST_CONFIRMED_SUBSCRIBERS = load_sql("list_confirmed_subscribers.sql")
SQL_ENQUEUE_DELIVERY_TASKS = load_sql("enqueue_delivery_tasks.sql")
SQL_CLAIM_NEXT = load_sql("claim_next.sql")
SQL_HEARTBEAT_CLAIM = load_sql("heartbeat_claim.sql")
SQL_RECLAIM_STALE = load_sql("reclaim_stale_claims.sql")
SQL_FINALIZE_SUCCESS = load_sql("finalize_success.sql")
SQL_FINALIZE_FAILURE_RETRY = load_sql("finalize_failure_retry.sql")
SQL_FINALIZE_FAILURE_TERMINAL = load_sql("finalize_failure_terminal.sql")
SQL_GET_TASK = load_sql("get_task.sql")
SQL_LIST_TASKS = load_sql("list_tasks.sql")
SQL_COUNT_TASKS_BY_STATUS = load_sql("count_tasks_by_status.sql")

# Connection exceptions, admin shutdown, cannot connect now, too many connections.
_UNAVAILABLE_SQLSTATES = frozenset({"57P01", "57P02", "57P03", "53300"})


def _is_unique_violation(exc: Exception) -> bool:
    return getattr(exc, "sqlstate", None) == "23505"


def _is_store_unavailable(exc: BaseException) -> bool:
    if isinstance(exc, (OSError, TimeoutError)):
        return True
    sqlstate = getattr(exc, "sqlstate", None)
    if isinstance(sqlstate, str) and (sqlstate.startswith("08") or sqlstate in _UNAVAILABLE_SQLSTATES):
        return True
    if isinstance(exc, asyncpg.InterfaceError):
        return True
    return False


@dataclass
class AsyncpgPoolManager:
    dsn: str
    max_size: int = 5
    pool: Any | None = None

    async def startup(self) -> None:
        async def _init_connection(conn: Any) -> None:
            await conn.set_type_codec(
                "json",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )
            await conn.set_type_codec(
                "jsonb",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )

        self.pool = await asyncpg.create_pool(
            dsn=self.dsn,
            min_size=1,
            max_size=self.max_size,
            init=_init_connection,
        )

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None


@dataclass
class PostgresNewsletterRepository:
    pool_manager: AsyncpgPoolManager

    def _pool(self) -> Any:
        if self.pool_manager.pool is None:
            raise RuntimeError("postgres pool is not initialized")
        return self.pool_manager.pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        pool = self._pool()
        try:
            async with pool.acquire() as conn:
                yield conn
        except Exception as exc:
            if _is_store_unavailable(exc):
                raise StoreUnavailableError(f"postgres is unavailable: {exc}") from exc
            raise

    async def get_saved_response(self, *, owner_id: str, idempotency_key: str) -> SavedResponse | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_GET_SAVED_RESPONSE, owner_id, idempotency_key)
        if row is None:
            return None
        return SavedResponse(
            status_code=row["response_status_code"],
            headers=decode_headers(row["response_headers"]),
            body=bytes(row["response_body"]),
        )

    async def save_response(
        self,
        tx: Any,
        *,
        owner_id: str,
        idempotency_key: str,
        response: SavedResponse,
    ) -> None:
        try:
            await tx.execute(
                SQL_SAVE_RESPONSE,
                owner_id,
                idempotency_key,
                response.status_code,
                encode_headers(response.headers),
                response.body,
            )
        except Exception as exc:
            if _is_unique_violation(exc):
                raise DuplicateRequestError(
                    f"idempotency key already recorded for owner {owner_id}"
                ) from exc
            raise

    async def list_confirmed_subscribers(self) -> list[str]:
        async with self._connection() as conn:
            rows = await conn.fetch(SQL_LIST_CONFIRMED_SUBSCRIBERS)
        return [row["email"] for row in rows]

    async def create_issue_with_deliveries(
        self,
        *,
        owner_id: str,
        idempotency_key: str,
        issue: NewIssue,
        build_response: ResponseBuilder,
    ) -> SavedResponse:
        async with self._connection() as conn:
            async with conn.transaction():
                issue_pk = await conn.fetchval(
                    SQL_CREATE_ISSUE,
                    issue.issue_id,
                    issue.title,
                    issue.html_content,
                    issue.text_content,
                    issue.published_by,
                )
                if issue_pk is None:
                    raise DomainInvariantError("failed to create newsletter issue")

                # Subscriber snapshot is read on the transaction's connection so
                # the fan-out and the recorded response describe the same set.
                subscriber_rows = await conn.fetch(SQL_LIST_CONFIRMED_SUBSCRIBERS)
                emails = valid_subscriber_emails(row["email"] for row in subscriber_rows)
                enqueued = await conn.fetch(SQL_ENQUEUE_DELIVERY_TASKS, issue_pk, emails) if emails else []

                response = build_response(len(enqueued))
                await self.save_response(
                    conn,
                    owner_id=owner_id,
                    idempotency_key=idempotency_key,
                    response=response,
                )
        return response

    async def get_issue(self, *, issue_id: str) -> IssueSnapshot | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_GET_ISSUE, issue_id)
        if row is None:
            return None
        return IssueSnapshot(
            issue_id=row["public_id"],
            title=row["title"],
            html_content=row["html_content"],
            text_content=row["text_content"],
            published_by=row["published_by"],
            created_at=row["created_at"],
        )

    async def claim_next(self, *, worker_id: str, lease_seconds: int = 30) -> DeliveryTaskClaim | None:
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(SQL_CLAIM_NEXT, worker_id, float(lease_seconds))
        if row is None:
            return None
        return DeliveryTaskClaim(
            task_id=row["id"],
            issue_id=row["issue_public_id"],
            subscriber_email=row["subscriber_email"],
            attempt=row["attempt_count"] + 1,
            lease_expires_at=row["lease_expires_at"],
        )

    async def heartbeat_claim(self, *, task_id: int, worker_id: str, lease_seconds: int = 30) -> bool:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_HEARTBEAT_CLAIM, task_id, worker_id, float(lease_seconds))
        return row is not None

    async def reclaim_stale_claims(self) -> int:
        async with self._connection() as conn:
            rows = await conn.fetch(
                SQL_RECLAIM_STALE,
                "lease_expired",
                "claim lease expired and was reclaimed",
            )
        return len(rows)

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
        async with self._connection() as conn:
            async with conn.transaction():
                if success:
                    row = await conn.fetchrow(SQL_FINALIZE_SUCCESS, task_id, worker_id)
                    if row is None:
                        raise DomainInvariantError("claim ownership is stale")
                    return DeliveryStatus.SUCCEEDED

                resolved_error_code = resolve_delivery_error(error_code or "internal_error")
                if retryable:
                    row = await conn.fetchrow(
                        SQL_FINALIZE_FAILURE_RETRY,
                        task_id,
                        worker_id,
                        resolved_error_code,
                        detail,
                        float(retry_delay_seconds),
                        max_attempts,
                    )
                    if row is not None:
                        return DeliveryStatus.PENDING

                # Permanent failures and exhausted retry budgets both dead-letter.
                terminal_row = await conn.fetchrow(
                    SQL_FINALIZE_FAILURE_TERMINAL,
                    task_id,
                    worker_id,
                    resolved_error_code,
                    detail,
                )
                if terminal_row is None:
                    raise DomainInvariantError("claim ownership is stale")
                return DeliveryStatus.FAILED_TERMINAL

    async def get_task(self, *, task_id: int) -> DeliveryTaskSnapshot | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_GET_TASK, task_id)
        if row is None:
            return None
        return _task_snapshot(row)

    async def list_tasks(
        self,
        *,
        issue_id: str,
        status: DeliveryStatus | None = None,
    ) -> list[DeliveryTaskSnapshot]:
        async with self._connection() as conn:
            rows = await conn.fetch(SQL_LIST_TASKS, issue_id, str(status) if status is not None else None)
        return [_task_snapshot(row) for row in rows]

    async def get_delivery_report(self, *, issue_id: str) -> DeliveryReport | None:
        async with self._connection() as conn:
            issue_row = await conn.fetchrow(SQL_GET_ISSUE, issue_id)
            if issue_row is None:
                return None
            count_rows = await conn.fetch(SQL_COUNT_TASKS_BY_STATUS, issue_id)
            failed_rows = await conn.fetch(SQL_LIST_TASKS, issue_id, str(DeliveryStatus.FAILED_TERMINAL))

        counts = {status: 0 for status in DeliveryStatus}
        for row in count_rows:
            counts[DeliveryStatus(row["status"])] = row["task_count"]
        return DeliveryReport(
            issue_id=issue_id,
            status_counts=counts,
            terminal_failures=[_task_snapshot(row) for row in failed_rows],
        )


def _task_snapshot(row: Any) -> DeliveryTaskSnapshot:
    return DeliveryTaskSnapshot(
        task_id=row["id"],
        issue_id=row["issue_public_id"],
        subscriber_email=row["subscriber_email"],
        status=DeliveryStatus(row["status"]),
        attempt_count=row["attempt_count"],
        available_at=row["available_at"],
        claimed_by=row["claimed_by"],
        claimed_at=row["claimed_at"],
        lease_expires_at=row["lease_expires_at"],
        last_error_code=row["last_error_code"],
        last_error_message=row["last_error_message"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
