from __future__ import annotations

from dataclasses import dataclass

from newsletter_delivery.domain.contracts import MailGateway, NewsletterRepository


@dataclass(frozen=True)
class WorkerDeps:
    repository: NewsletterRepository
    gateway: MailGateway
