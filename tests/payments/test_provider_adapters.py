import json
from urllib.parse import urlencode

import pytest

from core.settings import AfdianSettings, PaymentSettings
from infrastructure.external.payments import get_payment_gateway
from infrastructure.external.payments.afdian_client import AfdianClient
from infrastructure.external.payments.alipay_client import AlipayClient
from infrastructure.external.payments.base import normalize_public_key
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentSignatureError,
    UnsupportedProviderError,
)
from infrastructure.external.payments.lemonsqueezy_client import LemonSqueezyClient
from infrastructure.external.payments.paddle_client import PaddleClient


NOW = 1_760_000_000


def _alipay_body(rsa_keys, **overrides) -> bytes:
    params = {
        "app_id": "2021000000000001",
        "notify_type": "trade_status_sync",
        "trade_status": "TRADE_SUCCESS",
        "out_trade_no": "AL1760000000000ABC123",
        "trade_no": "2025101722001400000000000001",
        "total_amount": "49.90",
        "passback_params": "user_1",
        "charset": "utf-8",
    }
    params.update(overrides)
    params["sign"] = rsa_keys.sign(AlipayClient.signing_content(params))
    params["sign_type"] = "RSA2"
    return urlencode(params).encode("utf-8")


def _afdian_order(**overrides) -> dict:
    order = {
        "out_trade_no": "202510171200001234567890",
        "user_id": "adf397fe8374811eaacee52540025c377",
        "plan_id": "a45353328af911eb973052540025c377",
        "total_amount": "19.90",
        "status": 2,
        "remark": "user_9|120|1760000000000|abcdefghijk",
    }
    order.update(overrides)
    return order


def _afdian_body(rsa_keys, order: dict, *, signed: bool = True) -> bytes:
    data = {"type": "order", "order": order}
    if signed:
        data["sign"] = rsa_keys.sign(AfdianClient.signing_content(order))
    return json.dumps({"ec": 200, "em": "ok", "data": data}).encode("utf-8")


def _paddle_body(**overrides) -> bytes:
    payload = {
        "event_id": "evt_01hv8wt8nffez4p1vwqx6hnk6j",
        "event_type": "transaction.completed",
        "data": {
            "id": "txn_01hv8wptq8987qeep44cyrewp9",
            "status": "completed",
            "custom_data": {"out_trade_no": "PD1760000000000XYZ789", "user_id": "user_1"},
            "items": [{"price": {"id": "pri_01kch00w9w72wzh6tht09np39x"}, "quantity": 1}],
            "details": {"totals": {"total": "4990", "currency_code": "USD"}},
        },
    }
    payload.update(overrides)
    return json.dumps(payload).encode("utf-8")


def _lemon_body(status: str = "paid", event_name: str = "order_created") -> bytes:
    payload = {
        "meta": {
            "event_name": event_name,
            "custom_data": {"out_trade_no": "LS1760000000000QWE456", "user_id": 42},
        },
        "data": {
            "type": "orders",
            "id": "1234567",
            "attributes": {
                "status": status,
                "total": 4990,
                "first_order_item": {"variant_id": 98765},
            },
        },
    }
    return json.dumps(payload).encode("utf-8")


# ----------------------------------------------------------------------
# Alipay
# ----------------------------------------------------------------------
def test_alipay_verified_notification_maps_to_event(payment_cfg, rsa_keys):
    event = AlipayClient(payment_cfg).parse_webhook({}, _alipay_body(rsa_keys))

    assert event.provider == "alipay"
    assert event.paid_amount_minor == 4990
    assert event.external_reference == "AL1760000000000ABC123"
    assert event.provider_trade_id == "2025101722001400000000000001"
    assert event.user_reference == "user_1"
    assert "sign" not in event.raw_payload


def test_alipay_tampered_amount_is_rejected(payment_cfg, rsa_keys):
    body = _alipay_body(rsa_keys).replace(b"total_amount=49.90", b"total_amount=0.01")
    with pytest.raises(PaymentSignatureError):
        AlipayClient(payment_cfg).parse_webhook({}, body)


def test_alipay_unpaid_status_is_ignored(payment_cfg, rsa_keys):
    body = _alipay_body(rsa_keys, trade_status="WAIT_BUYER_PAY")
    assert AlipayClient(payment_cfg).parse_webhook({}, body) is None


def test_alipay_foreign_app_id_is_rejected(payment_cfg, rsa_keys):
    body = _alipay_body(rsa_keys, app_id="2021999999999999")
    with pytest.raises(PaymentSignatureError):
        AlipayClient(payment_cfg).parse_webhook({}, body)


def test_alipay_sub_cent_amount_is_malformed(payment_cfg, rsa_keys):
    body = _alipay_body(rsa_keys, total_amount="49.901")
    with pytest.raises(PaymentProviderError):
        AlipayClient(payment_cfg).parse_webhook({}, body)


def test_alipay_without_public_key_fails_closed(rsa_keys):
    with pytest.raises(PaymentSignatureError):
        AlipayClient(PaymentSettings()).parse_webhook({}, _alipay_body(rsa_keys))


def test_alipay_acks_are_plain_text(payment_cfg):
    client = AlipayClient(payment_cfg)
    assert client.success_response().body == "success"
    assert client.success_response().media_type == "text/plain"
    assert client.failure_response(401, "bad").body == "fail"


# ----------------------------------------------------------------------
# Afdian
# ----------------------------------------------------------------------
def test_afdian_token_and_signature_verified(payment_cfg, rsa_keys):
    body = _afdian_body(rsa_keys, _afdian_order())
    event = AfdianClient(payment_cfg).parse_webhook({"authorization": "Bearer afd-token"}, body)

    assert event.paid_amount_minor == 1990
    assert event.external_reference == "user_9|120|1760000000000|abcdefghijk"
    assert event.user_reference == event.external_reference
    assert event.provider_trade_id == "202510171200001234567890"
    assert event.package_id == "a45353328af911eb973052540025c377"


def test_afdian_wrong_token_is_rejected(payment_cfg, rsa_keys):
    body = _afdian_body(rsa_keys, _afdian_order())
    with pytest.raises(PaymentSignatureError):
        AfdianClient(payment_cfg).parse_webhook({"Authorization": "Bearer nope"}, body)


def test_afdian_signature_over_other_amount_is_rejected(payment_cfg, rsa_keys):
    order = _afdian_order()
    signature = rsa_keys.sign(AfdianClient.signing_content(order))
    order["total_amount"] = "198.00"
    body = json.dumps({"ec": 200, "data": {"type": "order", "order": order, "sign": signature}}).encode()
    with pytest.raises(PaymentSignatureError):
        AfdianClient(payment_cfg).parse_webhook({"Authorization": "Bearer afd-token"}, body)


def test_afdian_token_only_configuration(rsa_keys):
    cfg = PaymentSettings(afdian=AfdianSettings(webhook_token="afd-token"))
    body = _afdian_body(rsa_keys, _afdian_order(), signed=False)
    event = AfdianClient(cfg).parse_webhook({"Authorization": "Bearer afd-token"}, body)
    assert event.paid_amount_minor == 1990


def test_afdian_without_any_verifier_fails_closed(rsa_keys):
    body = _afdian_body(rsa_keys, _afdian_order())
    with pytest.raises(PaymentSignatureError):
        AfdianClient(PaymentSettings()).parse_webhook({}, body)


def test_afdian_unpaid_order_is_ignored(payment_cfg, rsa_keys):
    body = _afdian_body(rsa_keys, _afdian_order(status=1))
    assert AfdianClient(payment_cfg).parse_webhook({"Authorization": "Bearer afd-token"}, body) is None


def test_afdian_acks_use_ec_envelope(payment_cfg):
    client = AfdianClient(payment_cfg)
    assert client.success_response().body == {"ec": 200, "em": "success"}
    assert client.failure_response(400, "bad").body == {"ec": 400, "em": "bad"}


# ----------------------------------------------------------------------
# Paddle
# ----------------------------------------------------------------------
def _paddle_header(hmac_hex, secret: str, body: bytes, ts: int = NOW) -> str:
    return f"ts={ts};h1={hmac_hex(secret, f'{ts}:'.encode() + body)}"


def test_paddle_verified_transaction(payment_cfg, hmac_hex):
    body = _paddle_body()
    headers = {"Paddle-Signature": _paddle_header(hmac_hex, "pdl_ntfset_secret", body)}
    event = PaddleClient(payment_cfg, clock=lambda: NOW).parse_webhook(headers, body)

    assert event.paid_amount_minor == 4990
    assert event.external_reference == "PD1760000000000XYZ789"
    assert event.provider_trade_id == "txn_01hv8wptq8987qeep44cyrewp9"
    assert event.user_reference == "user_1"
    assert event.package_id == "pri_01kch00w9w72wzh6tht09np39x"


def test_paddle_stale_timestamp_is_rejected(payment_cfg, hmac_hex):
    body = _paddle_body()
    headers = {"Paddle-Signature": _paddle_header(hmac_hex, "pdl_ntfset_secret", body, ts=NOW - 301)}
    with pytest.raises(PaymentSignatureError):
        PaddleClient(payment_cfg, clock=lambda: NOW).parse_webhook(headers, body)


def test_paddle_accepts_any_rotated_signature(payment_cfg, hmac_hex):
    body = _paddle_body()
    good = hmac_hex("pdl_ntfset_secret", f"{NOW}:".encode() + body)
    headers = {"paddle-signature": f"ts={NOW};h1={'0' * 64};h1={good}"}
    event = PaddleClient(payment_cfg, clock=lambda: NOW).parse_webhook(headers, body)
    assert event is not None


def test_paddle_wrong_secret_is_rejected(payment_cfg, hmac_hex):
    body = _paddle_body()
    headers = {"Paddle-Signature": _paddle_header(hmac_hex, "other", body)}
    with pytest.raises(PaymentSignatureError):
        PaddleClient(payment_cfg, clock=lambda: NOW).parse_webhook(headers, body)


def test_paddle_non_payment_event_is_ignored(payment_cfg, hmac_hex):
    body = _paddle_body(event_type="transaction.created")
    headers = {"Paddle-Signature": _paddle_header(hmac_hex, "pdl_ntfset_secret", body)}
    assert PaddleClient(payment_cfg, clock=lambda: NOW).parse_webhook(headers, body) is None


@pytest.mark.parametrize("field,value", [
    ("custom_data", "user_1"),
    ("details", ["4990"]),
    ("items", {"price": "pri_1"}),
])
def test_paddle_signed_but_misshapen_payload_is_malformed(payment_cfg, hmac_hex, field, value):
    data = json.loads(_paddle_body())["data"]
    data[field] = value
    body = _paddle_body(data=data)
    headers = {"Paddle-Signature": _paddle_header(hmac_hex, "pdl_ntfset_secret", body)}
    with pytest.raises(PaymentProviderError):
        PaddleClient(payment_cfg, clock=lambda: NOW).parse_webhook(headers, body)


# ----------------------------------------------------------------------
# Lemon Squeezy
# ----------------------------------------------------------------------
def test_lemonsqueezy_verified_order(payment_cfg, hmac_hex):
    body = _lemon_body()
    event = LemonSqueezyClient(payment_cfg).parse_webhook({"X-Signature": hmac_hex("lemon-secret", body)}, body)

    assert event.paid_amount_minor == 4990
    assert event.external_reference == "LS1760000000000QWE456"
    assert event.provider_trade_id == "1234567"
    assert event.user_reference == "42"
    assert event.package_id == "98765"


def test_lemonsqueezy_bad_signature_is_rejected(payment_cfg, hmac_hex):
    body = _lemon_body()
    with pytest.raises(PaymentSignatureError):
        LemonSqueezyClient(payment_cfg).parse_webhook({"X-Signature": hmac_hex("wrong", body)}, body)


def test_lemonsqueezy_unpaid_order_is_ignored(payment_cfg, hmac_hex):
    body = _lemon_body(status="pending")
    assert LemonSqueezyClient(payment_cfg).parse_webhook({"X-Signature": hmac_hex("lemon-secret", body)}, body) is None


def test_lemonsqueezy_without_secret_fails_closed(hmac_hex):
    body = _lemon_body()
    with pytest.raises(PaymentSignatureError):
        LemonSqueezyClient(PaymentSettings()).parse_webhook({"X-Signature": hmac_hex("lemon-secret", body)}, body)


@pytest.mark.parametrize("path,value", [
    (("meta", "custom_data"), "user_1"),
    (("data", "attributes", "first_order_item"), 98765),
    (("meta",), "order_created"),
])
def test_lemonsqueezy_signed_but_misshapen_payload_is_malformed(payment_cfg, hmac_hex, path, value):
    payload = json.loads(_lemon_body())
    target = payload
    for key in path[:-1]:
        target = target[key]
    target[path[-1]] = value
    body = json.dumps(payload).encode("utf-8")
    with pytest.raises(PaymentProviderError):
        LemonSqueezyClient(payment_cfg).parse_webhook({"X-Signature": hmac_hex("lemon-secret", body)}, body)


# ----------------------------------------------------------------------
# 公共工具
# ----------------------------------------------------------------------
def test_gateway_factory_resolves_aliases(payment_cfg):
    assert isinstance(get_payment_gateway("ali", payment_cfg), AlipayClient)
    assert isinstance(get_payment_gateway("LEMON", payment_cfg), LemonSqueezyClient)
    with pytest.raises(UnsupportedProviderError):
        get_payment_gateway("stripe", payment_cfg)


def test_normalize_public_key_accepts_bare_and_escaped_forms(rsa_keys):
    body = "".join(line for line in rsa_keys.public_pem.splitlines() if "-----" not in line)
    assert normalize_public_key(body).startswith(b"-----BEGIN PUBLIC KEY-----\n")
    escaped = rsa_keys.public_pem.replace("\n", "\\n")
    assert normalize_public_key(f'"{escaped}"') == rsa_keys.public_pem.strip().encode("ascii")


@pytest.mark.parametrize("raw, expected", [("19.90", 1990), ("198", 19800), ("0.01", 1)])
def test_major_units_convert_exactly(payment_cfg, raw, expected):
    assert AlipayClient(payment_cfg)._major_to_minor(raw, field="total_amount") == expected


@pytest.mark.parametrize("raw", ["0", "-1.00", "abc", "NaN", "1.005"])
def test_invalid_major_units_are_malformed(payment_cfg, raw):
    with pytest.raises(PaymentProviderError):
        AlipayClient(payment_cfg)._major_to_minor(raw, field="total_amount")
