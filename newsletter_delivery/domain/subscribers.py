from __future__ import annotations

from collections.abc import Iterable
import logging

from email_validator import EmailNotValidError, validate_email

from newsletter_delivery.domain.errors import DomainValidationError

logger = logging.getLogger("newsletter")


def parse_subscriber_email(raw: str) -> str:
    candidate = raw.strip()
    if not candidate:
        raise DomainValidationError("subscriber email is empty")
    try:
        validate_email(candidate, check_deliverability=False)
    except EmailNotValidError as exc:
        raise DomainValidationError(f"'{candidate}' is not a valid subscriber email: {exc}") from exc
    return candidate


def valid_subscriber_emails(raw_emails: Iterable[str]) -> list[str]:
    """Keep parseable addresses, in input order and without duplicates.

    Confirmed subscribers whose stored contact details are invalid are skipped
    with a warning instead of failing the whole fan-out.
    """
    accepted: list[str] = []
    seen: set[str] = set()
    for raw in raw_emails:
        try:
            email = parse_subscriber_email(raw)
        except DomainValidationError as exc:
            logger.warning(
                "skipping confirmed subscriber with invalid stored email",
                extra={"error_code": "invalid_recipient", "detail": str(exc)},
            )
            continue
        if email in seen:
            continue
        seen.add(email)
        accepted.append(email)
    return accepted
