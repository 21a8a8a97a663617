from __future__ import annotations

from newsletter_delivery.api.handlers.deps import ApiDeps
from newsletter_delivery.api.schemas import DeliveryReportResponse, DeliveryStatusCounts, FailedDelivery
from newsletter_delivery.domain.dto import IssueNewsletterCommand
from newsletter_delivery.domain.models import DeliveryStatus, IssueOutcome
from newsletter_delivery.domain.use_cases.issue_newsletter import issue_newsletter
from newsletter_delivery.domain.use_cases.status import get_delivery_report

COMPONENT_ID = "api.newsletters"


async def publish_newsletter_handler(
    *,
    owner_id: str,
    idempotency_key: str,
    title: str,
    html_content: str,
    text_content: str,
    api_deps: ApiDeps,
) -> IssueOutcome:
    return await issue_newsletter(
        IssueNewsletterCommand(
            owner_id=owner_id,
            idempotency_key=idempotency_key,
            title=title,
            html_content=html_content,
            text_content=text_content,
        ),
        repository=api_deps.repository,
    )


async def get_delivery_report_handler(*, issue_id: str, api_deps: ApiDeps) -> DeliveryReportResponse | None:
    report = await get_delivery_report(issue_id=issue_id, repository=api_deps.repository)
    if report is None:
        return None
    counts = report.status_counts
    return DeliveryReportResponse(
        issue_id=report.issue_id,
        total=report.total,
        counts=DeliveryStatusCounts(
            pending=counts.get(DeliveryStatus.PENDING, 0),
            in_progress=counts.get(DeliveryStatus.IN_PROGRESS, 0),
            succeeded=counts.get(DeliveryStatus.SUCCEEDED, 0),
            failed_terminal=counts.get(DeliveryStatus.FAILED_TERMINAL, 0),
        ),
        failed=[
            FailedDelivery(
                task_id=task.task_id,
                subscriber_email=task.subscriber_email,
                attempt_count=task.attempt_count,
                last_error_code=task.last_error_code,
                last_error_message=task.last_error_message,
            )
            for task in report.terminal_failures
        ],
    )
