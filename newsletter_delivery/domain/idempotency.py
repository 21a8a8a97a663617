from __future__ import annotations

import json

from newsletter_delivery.domain.errors import DomainValidationError
from newsletter_delivery.domain.models import SavedResponse

MAX_IDEMPOTENCY_KEY_LENGTH = 50
ACCEPTED_STATUS_CODE = 202


def parse_idempotency_key(raw: str) -> str:
    if not raw:
        raise DomainValidationError("idempotency key cannot be empty")
    if len(raw) >= MAX_IDEMPOTENCY_KEY_LENGTH:
        raise DomainValidationError(
            f"idempotency key must be shorter than {MAX_IDEMPOTENCY_KEY_LENGTH} characters"
        )
    return raw


def build_accepted_response(*, issue_id: str, deliveries_enqueued: int) -> SavedResponse:
    # Serialized once and stored as bytes so replays are byte-identical.
    body = json.dumps(
        {
            "issue_id": issue_id,
            "status": "accepted",
            "deliveries_enqueued": deliveries_enqueued,
        },
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")
    return SavedResponse(
        status_code=ACCEPTED_STATUS_CODE,
        headers=(("content-type", "application/json"),),
        body=body,
    )


def encode_headers(headers: tuple[tuple[str, str], ...]) -> list[dict[str, str]]:
    return [{"name": name, "value": value} for name, value in headers]


def decode_headers(value: object) -> tuple[tuple[str, str], ...]:
    if isinstance(value, str):
        value = json.loads(value)
    if not isinstance(value, list):
        return ()
    pairs: list[tuple[str, str]] = []
    for item in value:
        if isinstance(item, dict) and "name" in item and "value" in item:
            pairs.append((str(item["name"]), str(item["value"])))
    return tuple(pairs)
