from datetime import datetime, timedelta, timezone

import pytest

from application.services.order_matcher import MatchOutcome, OrderMatcher
from domain.order.entity import FailureReason, MatchMethod, OrderStatus
from domain.order.events import PaymentEvent


@pytest.fixture
def matcher(uow_factory, payment_cfg):
    return OrderMatcher(uow_factory, payment_cfg.price_table(), epsilon_minor=1, fallback_window_minutes=30)


def _event(**kwargs) -> PaymentEvent:
    kwargs.setdefault("provider", "alipay")
    kwargs.setdefault("paid_amount_minor", 4990)
    kwargs.setdefault("raw_payload", {"note": "test"})
    return PaymentEvent(**kwargs)


@pytest.mark.asyncio
async def test_exact_reference_marks_order_paid(matcher, seed_order):
    order = await seed_order()
    result = await matcher.match(_event(external_reference=order.external_reference, provider_trade_id="T-1"))

    assert result.outcome == MatchOutcome.MATCHED
    assert result.match_method == MatchMethod.EXTERNAL_REFERENCE
    assert result.order.id == order.id
    assert result.order.status == OrderStatus.PAID
    assert result.order.provider_trade_id == "T-1"
    assert result.order.metadata["matchMethod"] == "external_reference"


@pytest.mark.asyncio
async def test_redelivery_is_already_processed(matcher, seed_order, load_order):
    order = await seed_order()
    event = _event(external_reference=order.external_reference, provider_trade_id="T-2")
    await matcher.match(event)

    again = await matcher.match(event)
    assert again.outcome == MatchOutcome.ALREADY_PROCESSED
    assert (await load_order(order.id)).status == OrderStatus.PAID


@pytest.mark.asyncio
async def test_amount_mismatch_fails_order(matcher, seed_order, load_order):
    order = await seed_order(amount_minor=4990)
    result = await matcher.match(_event(external_reference=order.external_reference, paid_amount_minor=1990))

    assert result.outcome == MatchOutcome.AMOUNT_MISMATCH
    stored = await load_order(order.id)
    assert stored.status == OrderStatus.FAILED
    assert stored.failure_reason == FailureReason.AMOUNT_MISMATCH.value
    assert stored.metadata["failure"]["paidAmountMinor"] == 1990
    assert stored.credited_at is None


@pytest.mark.asyncio
async def test_user_reference_synthesizes_paid_order(matcher, ensure_account):
    await ensure_account("user_2")
    result = await matcher.match(
        _event(provider="afdian", paid_amount_minor=1990, provider_trade_id="AFD-1",
               external_reference="user_2|120|1760000000000|abcdefghijk",
               user_reference="user_2|120|1760000000000|abcdefghijk")
    )

    assert result.outcome == MatchOutcome.MATCHED
    assert result.match_method == MatchMethod.USER_REFERENCE
    assert result.order.status == OrderStatus.PAID
    assert result.order.user_id == "user_2"
    assert result.order.credits_requested == 120
    assert result.order.metadata["synthesized"] is True
    assert result.order.metadata["creditsHint"] == 120


@pytest.mark.asyncio
async def test_synthesized_order_redelivered_by_trade_id(matcher, ensure_account):
    await ensure_account("user_2")
    event = _event(paid_amount_minor=1990, provider_trade_id="T-syn", user_reference="user_2")
    first = await matcher.match(event)
    assert first.order.external_reference == "T-syn"

    again = await matcher.match(event)
    assert again.outcome == MatchOutcome.ALREADY_PROCESSED
    assert again.order.id == first.order.id


@pytest.mark.asyncio
async def test_unknown_account_is_not_synthesized(matcher):
    result = await matcher.match(_event(external_reference="AL-missing", provider_trade_id="T-3", user_reference="ghost"))

    assert result.outcome == MatchOutcome.UNMATCHED
    assert result.order.external_reference == "UNMATCHED_T-3"
    assert result.order.status == OrderStatus.FAILED
    assert result.order.credits_requested == 0
    assert result.order.failure_reason == FailureReason.UNMATCHED.value


@pytest.mark.asyncio
async def test_off_table_amount_is_not_synthesized(matcher, ensure_account):
    await ensure_account("user_2")
    result = await matcher.match(_event(paid_amount_minor=1234, provider_trade_id="T-4", user_reference="user_2"))
    assert result.outcome == MatchOutcome.UNMATCHED


@pytest.mark.asyncio
async def test_single_recent_candidate_matches_by_fallback(matcher, seed_order):
    order = await seed_order()
    result = await matcher.match(_event(provider_trade_id="T-fb"))

    assert result.outcome == MatchOutcome.MATCHED
    assert result.order.id == order.id
    assert result.order.match_method == MatchMethod.AMOUNT_TIME_FALLBACK.value
    assert result.order.metadata["matchMethod"] == "amount_time_fallback"


@pytest.mark.asyncio
async def test_fallback_ignores_orders_outside_window(matcher, seed_order, load_order):
    order = await seed_order(created_at=datetime.now(timezone.utc) - timedelta(hours=2))
    result = await matcher.match(_event(provider_trade_id="T-old"))

    assert result.outcome == MatchOutcome.UNMATCHED
    assert (await load_order(order.id)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_ambiguous_fallback_is_rejected(matcher, seed_order, load_order):
    a = await seed_order(user_id="user_a")
    b = await seed_order(user_id="user_b")
    result = await matcher.match(_event(provider_trade_id="T-amb"))

    assert result.outcome == MatchOutcome.UNMATCHED
    assert result.order.failure_reason == FailureReason.AMBIGUOUS_MATCH.value
    assert sorted(result.order.metadata["candidateOrderIds"]) == sorted([a.id, b.id])
    assert (await load_order(a.id)).status == OrderStatus.PENDING
    assert (await load_order(b.id)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_stronger_match_wins_over_fallback(matcher, seed_order, load_order):
    target = await seed_order(user_id="user_a")
    other = await seed_order(user_id="user_b")
    result = await matcher.match(_event(external_reference=target.external_reference))

    assert result.order.id == target.id
    assert result.match_method == MatchMethod.EXTERNAL_REFERENCE
    assert (await load_order(other.id)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_cancelled_order_is_not_payable(matcher, seed_order, load_order):
    order = await seed_order(status=OrderStatus.CANCELLED)
    result = await matcher.match(_event(external_reference=order.external_reference, provider_trade_id="T-late"))

    assert result.outcome == MatchOutcome.UNMATCHED
    assert result.order.failure_reason == FailureReason.ORDER_NOT_PAYABLE.value
    assert result.order.metadata["referencedOrderId"] == order.id
    assert (await load_order(order.id)).status == OrderStatus.CANCELLED


@pytest.mark.asyncio
async def test_unmatched_record_is_written_once(matcher):
    event = _event(paid_amount_minor=777, raw_payload={"out_trade_no": "zzz"})
    first = await matcher.match(event)
    second = await matcher.match(event)

    assert first.outcome == MatchOutcome.UNMATCHED
    assert second.order.id == first.order.id


@pytest.mark.asyncio
async def test_second_payment_on_settled_order_is_recorded(matcher, seed_order, load_order):
    order = await seed_order()
    await matcher.match(_event(external_reference=order.external_reference, provider_trade_id="T-first"))

    result = await matcher.match(_event(external_reference=order.external_reference, provider_trade_id="T-second"))

    assert result.outcome == MatchOutcome.UNMATCHED
    assert result.order.id != order.id
    assert result.order.provider_trade_id == "T-second"
    assert result.order.failure_reason == FailureReason.ORDER_NOT_PAYABLE.value
    assert result.order.metadata["referencedOrderId"] == order.id
    stored = await load_order(order.id)
    assert stored.status == OrderStatus.PAID
    assert stored.provider_trade_id == "T-first"

    again = await matcher.match(_event(external_reference=order.external_reference, provider_trade_id="T-second"))
    assert again.order.id == result.order.id


@pytest.mark.asyncio
async def test_fallback_amount_difference_leaves_candidate_pending(matcher, seed_order, load_order):
    order = await seed_order(amount_minor=4990)
    stranger = await matcher.match(_event(paid_amount_minor=4991, provider_trade_id="T-stranger"))

    assert stranger.outcome == MatchOutcome.UNMATCHED
    assert stranger.order.failure_reason == FailureReason.AMOUNT_MISMATCH.value
    assert stranger.order.metadata["referencedOrderId"] == order.id
    untouched = await load_order(order.id)
    assert untouched.status == OrderStatus.PENDING
    assert untouched.provider_trade_id is None

    owner = await matcher.match(
        _event(external_reference=order.external_reference, paid_amount_minor=4990, provider_trade_id="T-owner")
    )
    assert owner.outcome == MatchOutcome.MATCHED
    assert (await load_order(order.id)).provider_trade_id == "T-owner"
