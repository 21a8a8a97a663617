import asyncio

import pytest

from newsletter_delivery.clients.stub import StubMailGateway
from newsletter_delivery.domain.errors import PermanentDeliveryError, TransientDeliveryError
from newsletter_delivery.domain.idempotency import build_accepted_response
from newsletter_delivery.domain.models import DeliveryTaskClaim, NewIssue
from newsletter_delivery.repositories.stub import InMemoryNewsletterRepository
from newsletter_delivery.workers.handlers.deliver import process_claim
from newsletter_delivery.workers.handlers.deps import WorkerDeps
from newsletter_delivery.workers.handlers.factory import build_process_handler

ISSUE_ID = "iss_01HZX0000000000000000000AA"


def _deps_with_claim(gateway: StubMailGateway) -> tuple[WorkerDeps, DeliveryTaskClaim]:
    repository = InMemoryNewsletterRepository()
    repository.add_subscriber("reader@example.com")
    asyncio.run(
        repository.create_issue_with_deliveries(
            owner_id="ops",
            idempotency_key="handler-test",
            issue=NewIssue(
                issue_id=ISSUE_ID,
                title="Release notes",
                html_content="<h1>Notes</h1>",
                text_content="Notes",
                published_by="ops",
            ),
            build_response=lambda count: build_accepted_response(issue_id=ISSUE_ID, deliveries_enqueued=count),
        )
    )
    claim = asyncio.run(repository.claim_next(worker_id="w-1"))
    assert claim is not None
    return WorkerDeps(repository=repository, gateway=gateway), claim


@pytest.mark.unit
def test_process_claim_sends_issue_content_to_subscriber() -> None:
    gateway = StubMailGateway()
    deps, claim = _deps_with_claim(gateway)

    result = asyncio.run(process_claim(deps, claim=claim))

    assert result.success is True
    assert len(gateway.sent) == 1
    message = gateway.sent[0]
    assert message.to == "reader@example.com"
    assert message.subject == "Release notes"
    assert message.html == "<h1>Notes</h1>"
    assert message.text == "Notes"


@pytest.mark.unit
def test_process_claim_reports_transient_gateway_failure_as_retryable() -> None:
    gateway = StubMailGateway()
    gateway.fail_next("reader@example.com", TransientDeliveryError("421 slow down", error_code="gateway_rate_limited"))
    deps, claim = _deps_with_claim(gateway)

    result = asyncio.run(process_claim(deps, claim=claim))

    assert result.success is False
    assert result.retryable is True
    assert result.error_code == "gateway_rate_limited"
    assert "slow down" in result.detail


@pytest.mark.unit
def test_process_claim_reports_permanent_gateway_failure_as_terminal() -> None:
    gateway = StubMailGateway()
    gateway.fail_next("reader@example.com", PermanentDeliveryError("550 no mailbox", error_code="invalid_recipient"))
    deps, claim = _deps_with_claim(gateway)

    result = asyncio.run(process_claim(deps, claim=claim))

    assert result.success is False
    assert result.retryable is False
    assert result.error_code == "invalid_recipient"


@pytest.mark.unit
def test_process_claim_normalizes_unknown_gateway_codes() -> None:
    gateway = StubMailGateway()
    gateway.fail_next("reader@example.com", TransientDeliveryError("odd", error_code="vendor_specific"))
    deps, claim = _deps_with_claim(gateway)

    result = asyncio.run(process_claim(deps, claim=claim))

    assert result.error_code == "internal_error"
    assert result.retryable is True


@pytest.mark.unit
def test_process_claim_for_missing_issue_is_terminal() -> None:
    gateway = StubMailGateway()
    deps = WorkerDeps(repository=InMemoryNewsletterRepository(), gateway=gateway)
    claim = DeliveryTaskClaim(task_id=1, issue_id="iss_missing", subscriber_email="reader@example.com", attempt=1)

    result = asyncio.run(process_claim(deps, claim=claim))

    assert result.success is False
    assert result.retryable is False
    assert result.error_code == "issue_missing"
    assert gateway.calls == {}


@pytest.mark.unit
def test_unknown_worker_role_has_no_handler() -> None:
    deps = WorkerDeps(repository=InMemoryNewsletterRepository(), gateway=StubMailGateway())

    with pytest.raises(ValueError, match="No worker handler"):
        build_process_handler("worker-unknown", deps)
