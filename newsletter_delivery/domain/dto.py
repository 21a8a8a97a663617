from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class IssueNewsletterCommand:
    owner_id: str
    idempotency_key: str
    title: str
    html_content: str
    text_content: str


@dataclass(frozen=True)
class OutgoingEmail:
    to: str
    subject: str
    html: str
    text: str
