from __future__ import annotations

from newsletter_delivery.domain.dto import OutgoingEmail
from newsletter_delivery.domain.models import DeliveryTaskClaim, IssueSnapshot

COMPONENT_ID = "domain.delivery.build_email"


def build_outgoing_email(*, issue: IssueSnapshot, claim: DeliveryTaskClaim) -> OutgoingEmail:
    """Address the issue's stored content to the claimed subscriber."""
    return OutgoingEmail(
        to=claim.subscriber_email,
        subject=issue.title,
        html=issue.html_content,
        text=issue.text_content,
    )
