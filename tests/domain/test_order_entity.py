import pytest

from domain.common.exceptions import DomainValidationException
from domain.order.entity import FailureReason, Order, OrderStatus
from domain.order.events import PaymentEvent
from domain.order.service import (
    PricePoint,
    PriceTable,
    decode_user_reference,
    unmatched_reference_suffix,
)


def _order(**kwargs) -> Order:
    kwargs.setdefault("provider", "alipay")
    kwargs.setdefault("external_reference", "AL1760000000000ABC123")
    kwargs.setdefault("user_id", "user_1")
    kwargs.setdefault("amount_minor", 4990)
    kwargs.setdefault("credits_requested", 350)
    return Order.new_pending(**kwargs)


def test_pending_order_lifecycle():
    order = _order()
    order.mark_paid(provider_trade_id="T-1")
    assert order.status == OrderStatus.PAID
    assert order.client_status() == "paid-not-yet-credited"

    order.mark_credited()
    first_credited_at = order.credited_at
    assert order.status == OrderStatus.CREDITED
    assert order.is_terminal()

    with pytest.raises(DomainValidationException):
        order.mark_credited()
    assert order.credited_at == first_credited_at


def test_terminal_states_refuse_transitions():
    for mark in ("mark_expired", "mark_cancelled"):
        order = _order()
        getattr(order, mark)()
        with pytest.raises(DomainValidationException):
            order.mark_paid(provider_trade_id="T-2")


def test_failed_order_is_never_creditable():
    order = _order()
    order.mark_failed(FailureReason.AMOUNT_MISMATCH, paidAmountMinor=1990)
    assert not order.is_creditable()
    assert order.client_status() == "failed"
    with pytest.raises(DomainValidationException):
        order.mark_credited()


def test_pending_credits_counts_attempts():
    order = _order()
    order.mark_paid(provider_trade_id=None)
    order.mark_pending_credits("timeout")
    order.mark_pending_credits("timeout again")
    assert order.credit_attempts == 2
    assert order.metadata["lastCreditError"] == "timeout again"


@pytest.mark.parametrize("amount", [0, -100, 19.9, True])
def test_amount_must_be_positive_integer(amount):
    with pytest.raises(DomainValidationException):
        _order(amount_minor=amount)
    with pytest.raises(DomainValidationException):
        PaymentEvent(provider="alipay", paid_amount_minor=amount)


def test_price_table_lookup_with_epsilon():
    table = PriceTable({"Alipay": [PricePoint(1990, 120, "basic"), PricePoint(4990, 350, "pro")]})

    assert table.lookup("alipay", 4990).credits == 350
    assert table.lookup("alipay", 4989) is None
    assert table.lookup("alipay", 4989, epsilon_minor=1).credits == 350
    assert table.lookup("paddle", 4990) is None
    assert table.lookup_package("alipay", "basic").amount_minor == 1990


@pytest.mark.parametrize("raw, user_id, hint", [
    ("user_9|120|1760000000000|abcdefghijk", "user_9", 120),
    ("user_9", "user_9", None),
    ("  user-9  ", "user-9", None),
])
def test_decode_user_reference(raw, user_id, hint):
    decoded = decode_user_reference(raw)
    assert decoded.user_id == user_id
    assert decoded.credits_hint == hint


@pytest.mark.parametrize("raw", [None, "", "bad user", "a" * 65, "|120|1"])
def test_decode_user_reference_rejects_garbage(raw):
    assert decode_user_reference(raw) is None


def test_unmatched_suffix_is_deterministic():
    payload = {"b": 1, "a": 2}
    assert unmatched_reference_suffix("T-1", payload) == "T-1"
    assert unmatched_reference_suffix(None, payload) == unmatched_reference_suffix(None, {"a": 2, "b": 1})
