"""
Exceptions for payment providers mapped to unified BusinessException variants.
"""
from __future__ import annotations

from typing import Optional
from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


class PaymentProviderError(BusinessException):
    """验签通过但报文不合法（缺字段、金额非正数等）"""
    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.PROVIDER_ERROR,
            message=message,
            error_type="PaymentProviderError",
            details=full_details,
        )


class PaymentSignatureError(BusinessException):
    """验签失败或凭据缺失：拒绝且不落库"""
    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        full_details = {"provider": provider}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="PaymentSignatureError",
            details=full_details,
        )


class UnsupportedProviderError(BusinessException):
    def __init__(self, provider: str):
        super().__init__(
            code=PaymentCode.UNSUPPORTED_PROVIDER,
            message=f"Unsupported payment provider: {provider}",
            error_type="UnsupportedProviderError",
            details={"provider": provider},
        )
