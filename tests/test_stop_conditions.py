"""Tests for per-recipient stop rules."""

from comms_scheduler.models.recurring_campaign import RecurringCampaign, RecurringRecipient
from comms_scheduler.schemas.campaigns import StopCondition
from comms_scheduler.services.stop_conditions import evaluate_stop_conditions, should_stop


def _campaign(stop_conditions, max_messages=None):
    return RecurringCampaign(name="c", body="b", interval="weekly", stop_conditions=stop_conditions,
                             max_messages=max_messages)


def _recipient(messages_sent=0, payment_completed=False, response_received=False):
    return RecurringRecipient(messages_sent=messages_sent, payment_completed=payment_completed,
                              response_received=response_received, is_active=True)


def test_no_conditions_never_stops():
    recipient = _recipient(messages_sent=50, payment_completed=True, response_received=True)
    assert evaluate_stop_conditions(recipient, _campaign([], max_messages=3)) is None
    assert should_stop(recipient, _campaign([])) is False


def test_payment_completion():
    campaign = _campaign(["payment_completion"])
    assert evaluate_stop_conditions(_recipient(payment_completed=True), campaign) == StopCondition.PAYMENT_COMPLETION
    assert evaluate_stop_conditions(_recipient(), campaign) is None


def test_user_response():
    campaign = _campaign(["user_response"])
    assert evaluate_stop_conditions(_recipient(response_received=True), campaign) == StopCondition.USER_RESPONSE


def test_max_messages_reached():
    campaign = _campaign(["max_messages"], max_messages=3)
    assert evaluate_stop_conditions(_recipient(messages_sent=2), campaign) is None
    assert evaluate_stop_conditions(_recipient(messages_sent=3), campaign) == StopCondition.MAX_MESSAGES


def test_max_messages_without_limit_never_stops():
    assert evaluate_stop_conditions(_recipient(messages_sent=99), _campaign(["max_messages"])) is None


def test_max_messages_of_zero_stops_immediately():
    campaign = _campaign(["max_messages"], max_messages=0)
    assert evaluate_stop_conditions(_recipient(messages_sent=0), campaign) == StopCondition.MAX_MESSAGES


def test_unconfigured_condition_is_ignored():
    campaign = _campaign(["user_response"])
    assert evaluate_stop_conditions(_recipient(payment_completed=True), campaign) is None


def test_payment_takes_precedence():
    campaign = _campaign(["max_messages", "user_response", "payment_completion"], max_messages=1)
    recipient = _recipient(messages_sent=5, payment_completed=True, response_received=True)
    assert evaluate_stop_conditions(recipient, campaign) == StopCondition.PAYMENT_COMPLETION
