from __future__ import annotations


class DomainError(Exception):
    pass


class DomainValidationError(DomainError):
    pass


class DomainInvariantError(DomainError):
    pass


class UnauthorizedError(DomainError):
    pass


class DuplicateRequestError(DomainError):
    """Idempotency key already recorded; resolved by replaying the saved response."""


class RequestInProgressError(DomainError):
    pass


class StoreUnavailableError(DomainError):
    pass


class GatewayError(DomainError):
    retryable: bool = False

    def __init__(self, message: str, *, error_code: str) -> None:
        super().__init__(message)
        self.error_code = error_code


class TransientDeliveryError(GatewayError):
    retryable = True


class PermanentDeliveryError(GatewayError):
    retryable = False
