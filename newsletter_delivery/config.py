from __future__ import annotations

import os

from newsletter_delivery.clients.smtp import SmtpSettings
from newsletter_delivery.domain.lifecycle import DeliveryPolicy

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = float(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default


def env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return default


def delivery_policy_from_env() -> DeliveryPolicy:
    return DeliveryPolicy(
        max_attempts=env_int("DELIVERY_MAX_ATTEMPTS", 5),
        backoff_base_seconds=env_float("DELIVERY_BACKOFF_BASE_SECONDS", 30.0),
        backoff_multiplier=env_float("DELIVERY_BACKOFF_MULTIPLIER", 2.0),
        backoff_max_seconds=env_float("DELIVERY_BACKOFF_MAX_SECONDS", 3600.0),
    )


def smtp_settings_from_env() -> SmtpSettings | None:
    """SMTP relay settings, or None when SMTP_HOST is unset (stub gateway mode)."""
    host = os.getenv("SMTP_HOST")
    if not host:
        return None
    return SmtpSettings(
        host=host,
        sender=os.getenv("SMTP_SENDER", "newsletter@localhost"),
        port=env_int("SMTP_PORT", 587),
        username=os.getenv("SMTP_USERNAME") or None,
        password=os.getenv("SMTP_PASSWORD") or None,
        use_tls=env_bool("SMTP_USE_TLS", True),
        timeout_seconds=env_float("SMTP_TIMEOUT_SECONDS", 30.0),
    )


def operator_tokens_from_env() -> dict[str, str]:
    """Parse OPERATOR_TOKENS="owner:token,..." into a token -> owner_id map.

    Malformed entries are ignored.
    """
    raw = os.getenv("OPERATOR_TOKENS", "")
    tokens: dict[str, str] = {}
    for entry in raw.split(","):
        owner_id, separator, token = entry.strip().partition(":")
        owner_id = owner_id.strip()
        token = token.strip()
        if not separator or not owner_id or not token:
            continue
        tokens[token] = owner_id
    return tokens
