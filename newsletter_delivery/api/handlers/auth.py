from __future__ import annotations

from dataclasses import dataclass, field
import hmac

from newsletter_delivery.domain.errors import UnauthorizedError

COMPONENT_ID = "api.authenticate_operator"
BEARER_PREFIX = "bearer "


def bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an `Authorization: Bearer <token>` header value."""
    if not authorization:
        return None
    if authorization[: len(BEARER_PREFIX)].lower() != BEARER_PREFIX:
        return None
    token = authorization[len(BEARER_PREFIX) :].strip()
    return token or None


@dataclass(frozen=True)
class StaticTokenAuthenticator:
    """Maps configured operator tokens to owner ids."""

    tokens: dict[str, str] = field(default_factory=dict)

    def authenticate(self, token: str | None) -> str:
        if not token:
            raise UnauthorizedError("missing bearer token")
        owner_id: str | None = None
        # Compare against every configured token so timing does not leak which one matched.
        for candidate, candidate_owner in self.tokens.items():
            if hmac.compare_digest(candidate.encode("utf-8"), token.encode("utf-8")):
                owner_id = candidate_owner
        if owner_id is None:
            raise UnauthorizedError("invalid bearer token")
        return owner_id
