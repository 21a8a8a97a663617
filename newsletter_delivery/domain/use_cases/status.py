from __future__ import annotations

from newsletter_delivery.domain.contracts import NewsletterRepository
from newsletter_delivery.domain.models import DeliveryReport

COMPONENT_ID = "domain.delivery.report"


async def get_delivery_report(*, issue_id: str, repository: NewsletterRepository) -> DeliveryReport | None:
    """Per-status task counts plus dead-lettered tasks for operator inspection."""
    return await repository.get_delivery_report(issue_id=issue_id)
