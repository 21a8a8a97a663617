from __future__ import annotations

from dataclasses import dataclass

from newsletter_delivery.domain.contracts import NewsletterRepository, OperatorAuthenticator


@dataclass(frozen=True)
class ApiDeps:
    repository: NewsletterRepository
    authenticator: OperatorAuthenticator
