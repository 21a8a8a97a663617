import asyncio
import json

import pytest

from newsletter_delivery.clients.stub import StubMailGateway
from newsletter_delivery.domain.dto import IssueNewsletterCommand
from newsletter_delivery.domain.errors import PermanentDeliveryError, TransientDeliveryError
from newsletter_delivery.domain.lifecycle import DeliveryPolicy
from newsletter_delivery.domain.models import DeliveryStatus
from newsletter_delivery.domain.use_cases.issue_newsletter import issue_newsletter
from newsletter_delivery.repositories.stub import InMemoryNewsletterRepository
from newsletter_delivery.workers.handlers.deps import WorkerDeps
from newsletter_delivery.workers.handlers.factory import build_process_handler
from newsletter_delivery.workers.loop import DeliveryWorkerLoop


def _command(key: str) -> IssueNewsletterCommand:
    return IssueNewsletterCommand(
        owner_id="ops",
        idempotency_key=key,
        title="Digest",
        html_content="<p>hi</p>",
        text_content="hi",
    )


def _loop(repository: InMemoryNewsletterRepository, gateway: StubMailGateway) -> DeliveryWorkerLoop:
    return DeliveryWorkerLoop(
        worker_id="worker-deliver-scenario",
        repository=repository,
        process=build_process_handler("worker-deliver", WorkerDeps(repository=repository, gateway=gateway)),
        policy=DeliveryPolicy(max_attempts=5, backoff_base_seconds=0, backoff_max_seconds=0),
    )


async def _drain(loop: DeliveryWorkerLoop) -> None:
    while await loop.run_once():
        pass


@pytest.mark.unit
def test_publish_then_replay_enqueues_tasks_once() -> None:
    repository = InMemoryNewsletterRepository()
    for email in ("a@example.com", "b@example.com", "c@example.com"):
        repository.add_subscriber(email)

    first = asyncio.run(issue_newsletter(_command("k1"), repository=repository))
    issue_id = json.loads(first.response.body)["issue_id"]
    tasks = asyncio.run(repository.list_tasks(issue_id=issue_id))
    assert [task.status for task in tasks] == [DeliveryStatus.PENDING] * 3
    assert len(repository.saved_responses) == 1

    replay = asyncio.run(issue_newsletter(_command("k1"), repository=repository))

    assert replay.response.body == first.response.body
    assert len(repository.tasks) == 3
    assert len(repository.saved_responses) == 1


@pytest.mark.unit
def test_two_retryable_failures_then_success_takes_three_attempts() -> None:
    repository = InMemoryNewsletterRepository()
    repository.add_subscriber("flaky@example.com")
    gateway = StubMailGateway()
    gateway.fail_next(
        "flaky@example.com",
        TransientDeliveryError("timeout", error_code="gateway_timeout"),
        TransientDeliveryError("503 busy", error_code="gateway_unavailable"),
    )
    outcome = asyncio.run(issue_newsletter(_command("k2"), repository=repository))
    issue_id = json.loads(outcome.response.body)["issue_id"]

    asyncio.run(_drain(_loop(repository, gateway)))

    task = asyncio.run(repository.list_tasks(issue_id=issue_id))[0]
    assert task.status == DeliveryStatus.SUCCEEDED
    assert task.attempt_count == 3
    assert len(gateway.sent_to("flaky@example.com")) == 1


@pytest.mark.unit
def test_permanent_failure_is_terminal_after_one_attempt_without_backoff() -> None:
    repository = InMemoryNewsletterRepository()
    repository.add_subscriber("gone@example.com")
    gateway = StubMailGateway()
    gateway.fail_next("gone@example.com", PermanentDeliveryError("550 unknown user", error_code="invalid_recipient"))
    outcome = asyncio.run(issue_newsletter(_command("k3"), repository=repository))
    issue_id = json.loads(outcome.response.body)["issue_id"]
    loop = _loop(repository, gateway)
    loop.policy = DeliveryPolicy(backoff_base_seconds=3600)

    asyncio.run(_drain(loop))

    task = asyncio.run(repository.list_tasks(issue_id=issue_id))[0]
    assert task.status == DeliveryStatus.FAILED_TERMINAL
    assert task.attempt_count == 1
    assert task.updated_at is not None
    assert task.available_at <= task.updated_at
