"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider errors (600xx)
    PROVIDER_ERROR = 60000
    SIGNATURE_ERROR = 60002

    # Reconciliation outcomes (601xx)
    AMOUNT_MISMATCH = 60010
    UNMATCHED_EVENT = 60011
    ALREADY_PROCESSED = 60012
    TRANSIENT_STORE_FAILURE = 60013
    UNSUPPORTED_PROVIDER = 60014
    ORDER_ALREADY_EXISTS = 60015
    PRICE_POINT_UNKNOWN = 60016


# Provider notification status → whether money has actually moved.
PROVIDER_PAID_STATUSES = {
    "alipay": {"TRADE_SUCCESS", "TRADE_FINISHED"},
    "afdian": {"2"},
    "paddle": {"transaction.completed", "transaction.paid"},
    "lemonsqueezy": {"order_created"},
}
