import pytest

from newsletter_delivery.domain.lifecycle import ALLOWED_TRANSITIONS, DeliveryPolicy, is_allowed_transition
from newsletter_delivery.domain.models import DeliveryStatus


@pytest.mark.unit
def test_backoff_grows_exponentially_and_is_capped() -> None:
    policy = DeliveryPolicy(backoff_base_seconds=30, backoff_multiplier=2, backoff_max_seconds=100)

    assert policy.backoff_seconds(1) == 30
    assert policy.backoff_seconds(2) == 60
    assert policy.backoff_seconds(3) == 100
    assert policy.backoff_seconds(10) == 100


@pytest.mark.unit
def test_backoff_treats_non_positive_attempt_as_first() -> None:
    policy = DeliveryPolicy()
    assert policy.backoff_seconds(0) == policy.backoff_seconds(1) == 30


@pytest.mark.unit
def test_terminal_states_have_no_outgoing_transitions() -> None:
    assert ALLOWED_TRANSITIONS[DeliveryStatus.SUCCEEDED] == set()
    assert ALLOWED_TRANSITIONS[DeliveryStatus.FAILED_TERMINAL] == set()
    assert is_allowed_transition(DeliveryStatus.IN_PROGRESS, DeliveryStatus.PENDING) is True
    assert is_allowed_transition(DeliveryStatus.PENDING, DeliveryStatus.SUCCEEDED) is False
