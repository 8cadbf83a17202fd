"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )


class OrderNotFoundException(BusinessException):
    def __init__(self, identifier: str):
        super().__init__(
            code=BusinessCode.ORDER_NOT_FOUND,
            message=f"Order not found: {identifier}",
            error_type="OrderNotFound",
            details={"identifier": identifier},
        )


class TransientStoreFailure(BusinessException):
    """持久化层的瞬时故障（连接中断、锁等待超时、序列化冲突等）。

    调用方不得吞掉该异常：Webhook 返回 5xx 让渠道重试，或交由恢复任务重试。
    """

    def __init__(self, operation: str, *, error: str | None = None, details: Optional[dict] = None):
        full_details = {"operation": operation}
        if error:
            full_details["error"] = error
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.TRANSIENT_STORE_FAILURE,
            message=f"Transient store failure during {operation}",
            error_type="TransientStoreFailure",
            details=full_details,
        )
