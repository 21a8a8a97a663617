from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta

import pytest

from newsletter_delivery.domain.contracts import NewsletterRepository
from newsletter_delivery.domain.dto import IssueNewsletterCommand
from newsletter_delivery.domain.errors import DomainInvariantError
from newsletter_delivery.domain.models import DeliveryStatus
from newsletter_delivery.domain.use_cases.issue_newsletter import issue_newsletter
from newsletter_delivery.repositories.stub import InMemoryNewsletterRepository


def _seeded_repository(*emails: str) -> tuple[InMemoryNewsletterRepository, str]:
    repository = InMemoryNewsletterRepository()
    for email in emails:
        repository.add_subscriber(email)
    outcome = asyncio.run(
        issue_newsletter(
            IssueNewsletterCommand(
                owner_id="ops",
                idempotency_key="queue-test",
                title="Digest",
                html_content="<p>hi</p>",
                text_content="hi",
            ),
            repository=repository,
        )
    )
    issue_id = json.loads(outcome.response.body)["issue_id"]
    return repository, issue_id


@pytest.mark.unit
def test_in_memory_repository_satisfies_contract() -> None:
    assert isinstance(InMemoryNewsletterRepository(), NewsletterRepository)


@pytest.mark.unit
def test_concurrent_claims_are_exclusive() -> None:
    repository, _ = _seeded_repository("a@example.com", "b@example.com", "c@example.com")

    async def _run() -> list[int]:
        claims = await asyncio.gather(
            *(repository.claim_next(worker_id=f"w-{idx}") for idx in range(5))
        )
        return [claim.task_id for claim in claims if claim is not None]

    claimed = asyncio.run(_run())

    assert len(claimed) == 3
    assert len(set(claimed)) == 3


@pytest.mark.unit
def test_claim_skips_tasks_not_yet_available() -> None:
    repository, _ = _seeded_repository("a@example.com")
    for row in repository.tasks.values():
        row.available_at = datetime.now(tz=UTC) + timedelta(minutes=5)

    assert asyncio.run(repository.claim_next(worker_id="w-1")) is None


@pytest.mark.unit
def test_finalize_success_records_attempt_and_clears_claim() -> None:
    repository, _ = _seeded_repository("a@example.com")

    async def _run() -> None:
        claim = await repository.claim_next(worker_id="w-1")
        assert claim is not None
        assert claim.attempt == 1
        status = await repository.finalize(task_id=claim.task_id, worker_id="w-1", success=True)
        assert status == DeliveryStatus.SUCCEEDED

        task = await repository.get_task(task_id=claim.task_id)
        assert task is not None
        assert task.status == DeliveryStatus.SUCCEEDED
        assert task.attempt_count == 1
        assert task.claimed_by is None
        assert task.lease_expires_at is None

    asyncio.run(_run())


@pytest.mark.unit
def test_retryable_failure_is_rescheduled_with_delay() -> None:
    repository, _ = _seeded_repository("a@example.com")

    async def _run() -> None:
        claim = await repository.claim_next(worker_id="w-1")
        assert claim is not None
        status = await repository.finalize(
            task_id=claim.task_id,
            worker_id="w-1",
            success=False,
            retryable=True,
            detail="timed out",
            error_code="gateway_timeout",
            max_attempts=5,
            retry_delay_seconds=60,
        )
        assert status == DeliveryStatus.PENDING

        task = await repository.get_task(task_id=claim.task_id)
        assert task is not None
        assert task.attempt_count == 1
        assert task.last_error_code == "gateway_timeout"
        assert task.available_at > datetime.now(tz=UTC) + timedelta(seconds=30)
        assert await repository.claim_next(worker_id="w-1") is None

    asyncio.run(_run())


@pytest.mark.unit
def test_retry_budget_exhaustion_dead_letters_task() -> None:
    repository, _ = _seeded_repository("a@example.com")

    async def _run() -> list[DeliveryStatus]:
        statuses: list[DeliveryStatus] = []
        while True:
            claim = await repository.claim_next(worker_id="w-1")
            if claim is None:
                return statuses
            statuses.append(
                await repository.finalize(
                    task_id=claim.task_id,
                    worker_id="w-1",
                    success=False,
                    retryable=True,
                    error_code="gateway_unavailable",
                    max_attempts=3,
                )
            )

    statuses = asyncio.run(_run())

    assert statuses == [DeliveryStatus.PENDING, DeliveryStatus.PENDING, DeliveryStatus.FAILED_TERMINAL]
    task = next(iter(repository.tasks.values()))
    assert task.attempt_count == 3


@pytest.mark.unit
def test_unknown_error_code_is_persisted_as_internal_error() -> None:
    repository, _ = _seeded_repository("a@example.com")

    async def _run() -> None:
        claim = await repository.claim_next(worker_id="w-1")
        assert claim is not None
        status = await repository.finalize(
            task_id=claim.task_id,
            worker_id="w-1",
            success=False,
            error_code="smtp_exploded",
        )
        assert status == DeliveryStatus.FAILED_TERMINAL
        task = await repository.get_task(task_id=claim.task_id)
        assert task is not None
        assert task.last_error_code == "internal_error"

    asyncio.run(_run())


@pytest.mark.unit
def test_finalize_by_non_owner_is_rejected() -> None:
    repository, _ = _seeded_repository("a@example.com")

    async def _run() -> None:
        claim = await repository.claim_next(worker_id="w-1")
        assert claim is not None
        with pytest.raises(DomainInvariantError, match="claim ownership is stale"):
            await repository.finalize(task_id=claim.task_id, worker_id="w-2", success=True)

    asyncio.run(_run())


@pytest.mark.unit
def test_stale_claim_is_reclaimed_and_old_owner_cannot_finalize() -> None:
    repository, _ = _seeded_repository("a@example.com")

    async def _run() -> None:
        claim = await repository.claim_next(worker_id="w-crashed", lease_seconds=0)
        assert claim is not None
        assert await repository.heartbeat_claim(task_id=claim.task_id, worker_id="w-crashed") is False

        assert await repository.reclaim_stale_claims() == 1
        task = await repository.get_task(task_id=claim.task_id)
        assert task is not None
        assert task.status == DeliveryStatus.PENDING
        assert task.attempt_count == 1
        assert task.last_error_code == "lease_expired"

        with pytest.raises(DomainInvariantError):
            await repository.finalize(task_id=claim.task_id, worker_id="w-crashed", success=True)

        reclaimed = await repository.claim_next(worker_id="w-healthy")
        assert reclaimed is not None
        assert reclaimed.task_id == claim.task_id
        assert reclaimed.attempt == 2

    asyncio.run(_run())


@pytest.mark.unit
def test_stale_claim_on_last_attempt_returns_to_pending() -> None:
    repository, _ = _seeded_repository("a@example.com")

    async def _run() -> None:
        first = await repository.claim_next(worker_id="w-1")
        assert first is not None
        await repository.finalize(
            task_id=first.task_id,
            worker_id="w-1",
            success=False,
            retryable=True,
            error_code="gateway_timeout",
            max_attempts=2,
        )
        crashed = await repository.claim_next(worker_id="w-crashed", lease_seconds=0)
        assert crashed is not None
        assert crashed.attempt == 2

        assert await repository.reclaim_stale_claims() == 1
        task = await repository.get_task(task_id=crashed.task_id)
        assert task is not None
        assert task.status == DeliveryStatus.PENDING
        assert task.last_error_code == "lease_expired"

        retried = await repository.claim_next(worker_id="w-healthy")
        assert retried is not None
        assert retried.task_id == crashed.task_id
        assert await repository.finalize(task_id=retried.task_id, worker_id="w-healthy", success=True) == (
            DeliveryStatus.SUCCEEDED
        )

    asyncio.run(_run())


@pytest.mark.unit
def test_live_claims_are_not_reclaimed_and_heartbeat_extends_lease() -> None:
    repository, _ = _seeded_repository("a@example.com")

    async def _run() -> None:
        claim = await repository.claim_next(worker_id="w-1", lease_seconds=30)
        assert claim is not None
        assert await repository.reclaim_stale_claims() == 0
        assert await repository.heartbeat_claim(task_id=claim.task_id, worker_id="w-1", lease_seconds=120) is True
        task = await repository.get_task(task_id=claim.task_id)
        assert task is not None
        assert task.lease_expires_at is not None
        assert task.lease_expires_at > datetime.now(tz=UTC) + timedelta(seconds=60)
        assert await repository.heartbeat_claim(task_id=claim.task_id, worker_id="w-other") is False

    asyncio.run(_run())


@pytest.mark.unit
def test_delivery_report_counts_statuses_and_lists_dead_letters() -> None:
    repository, issue_id = _seeded_repository("a@example.com", "b@example.com", "c@example.com")

    async def _run() -> None:
        first = await repository.claim_next(worker_id="w-1")
        second = await repository.claim_next(worker_id="w-1")
        assert first is not None and second is not None
        await repository.finalize(task_id=first.task_id, worker_id="w-1", success=True)
        await repository.finalize(
            task_id=second.task_id,
            worker_id="w-1",
            success=False,
            detail="mailbox unavailable",
            error_code="invalid_recipient",
        )

        report = await repository.get_delivery_report(issue_id=issue_id)
        assert report is not None
        assert report.total == 3
        assert report.status_counts[DeliveryStatus.SUCCEEDED] == 1
        assert report.status_counts[DeliveryStatus.FAILED_TERMINAL] == 1
        assert report.status_counts[DeliveryStatus.PENDING] == 1
        assert [task.subscriber_email for task in report.terminal_failures] == [second.subscriber_email]
        assert report.terminal_failures[0].last_error_message == "mailbox unavailable"

        assert await repository.get_delivery_report(issue_id="iss_missing") is None

    asyncio.run(_run())


@pytest.mark.unit
def test_state_transitions_follow_lifecycle() -> None:
    from newsletter_delivery.domain.lifecycle import is_allowed_transition

    repository, _ = _seeded_repository("a@example.com")

    async def _run() -> None:
        claim = await repository.claim_next(worker_id="w-1")
        assert claim is not None
        await repository.finalize(task_id=claim.task_id, worker_id="w-1", success=False, retryable=True)
        claim = await repository.claim_next(worker_id="w-1")
        assert claim is not None
        await repository.finalize(task_id=claim.task_id, worker_id="w-1", success=True)

    asyncio.run(_run())

    assert len(repository.transitions) == 4
    for _, from_status, to_status in repository.transitions:
        assert is_allowed_transition(DeliveryStatus(from_status), DeliveryStatus(to_status))
