from __future__ import annotations

from newsletter_delivery.domain.error_taxonomy import classify_error, resolve_delivery_error
from newsletter_delivery.domain.errors import GatewayError
from newsletter_delivery.domain.models import DeliveryResult, DeliveryTaskClaim
from newsletter_delivery.domain.use_cases.deliver import build_outgoing_email
from newsletter_delivery.workers.handlers.deps import WorkerDeps

COMPONENT_ID = "worker.deliver.process_claim"


async def process_claim(deps: WorkerDeps, *, claim: DeliveryTaskClaim) -> DeliveryResult:
    """Send one issue to one subscriber and report the outcome for finalize."""
    issue = await deps.repository.get_issue(issue_id=claim.issue_id)
    if issue is None:
        return DeliveryResult(
            success=False,
            detail=f"newsletter issue not found for delivery: {claim.issue_id}",
            error_code="issue_missing",
            retryable=False,
        )

    email = build_outgoing_email(issue=issue, claim=claim)
    try:
        await deps.gateway.send(to=email.to, subject=email.subject, html=email.html, text=email.text)
    except GatewayError as exc:
        error_code = resolve_delivery_error(exc.error_code)
        return DeliveryResult(
            success=False,
            detail=str(exc),
            error_code=error_code,
            retryable=exc.retryable,
        )
    except Exception as exc:  # pragma: no cover - concrete gateway behavior
        return DeliveryResult(
            success=False,
            detail=str(exc),
            error_code="internal_error",
            retryable=classify_error("internal_error") == "recoverable",
        )

    return DeliveryResult(success=True, detail="newsletter delivered")
