from __future__ import annotations

import logging

from newsletter_delivery.domain.contracts import NewsletterRepository
from newsletter_delivery.domain.dto import IssueNewsletterCommand
from newsletter_delivery.domain.errors import DomainValidationError, DuplicateRequestError, RequestInProgressError
from newsletter_delivery.domain.idempotency import build_accepted_response, parse_idempotency_key
from newsletter_delivery.domain.ids import new_issue_public_id
from newsletter_delivery.domain.models import IssueOutcome, NewIssue, SavedResponse

COMPONENT_ID = "domain.issuance.issue_newsletter"
logger = logging.getLogger("newsletter")


def validate_issue_command(cmd: IssueNewsletterCommand) -> None:
    parse_idempotency_key(cmd.idempotency_key)
    if not cmd.owner_id:
        raise DomainValidationError("owner id is required")
    if not cmd.title.strip():
        raise DomainValidationError("title cannot be empty")
    if not cmd.html_content.strip():
        raise DomainValidationError("html content cannot be empty")
    if not cmd.text_content.strip():
        raise DomainValidationError("text content cannot be empty")


async def issue_newsletter(cmd: IssueNewsletterCommand, *, repository: NewsletterRepository) -> IssueOutcome:
    """Fan a newsletter out into delivery tasks exactly once per idempotency key.

    A key that was already handled replays the stored response without
    creating anything. A fresh key inserts the issue, its delivery tasks and
    the idempotency record in one transaction; losing the race on the key
    falls back to replay.
    """
    validate_issue_command(cmd)

    saved = await repository.get_saved_response(owner_id=cmd.owner_id, idempotency_key=cmd.idempotency_key)
    if saved is not None:
        logger.info(
            "replaying saved issuance response",
            extra={"owner_id": cmd.owner_id, "idempotency_key": cmd.idempotency_key},
        )
        return IssueOutcome(response=saved, replayed=True)

    issue = NewIssue(
        issue_id=new_issue_public_id(),
        title=cmd.title,
        html_content=cmd.html_content,
        text_content=cmd.text_content,
        published_by=cmd.owner_id,
    )

    def _build_response(deliveries_enqueued: int) -> SavedResponse:
        return build_accepted_response(issue_id=issue.issue_id, deliveries_enqueued=deliveries_enqueued)

    try:
        response = await repository.create_issue_with_deliveries(
            owner_id=cmd.owner_id,
            idempotency_key=cmd.idempotency_key,
            issue=issue,
            build_response=_build_response,
        )
    except DuplicateRequestError:
        saved = await repository.get_saved_response(owner_id=cmd.owner_id, idempotency_key=cmd.idempotency_key)
        if saved is None:
            raise RequestInProgressError("a request with this idempotency key is being processed") from None
        logger.info(
            "concurrent issuance resolved by replay",
            extra={"owner_id": cmd.owner_id, "idempotency_key": cmd.idempotency_key},
        )
        return IssueOutcome(response=saved, replayed=True)

    logger.info(
        "newsletter issue published",
        extra={"owner_id": cmd.owner_id, "issue_id": issue.issue_id},
    )
    return IssueOutcome(response=response, replayed=False)
