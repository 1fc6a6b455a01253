"""领域层业务异常定义，供领域与基础设施使用。

支付异常（domain.payment.exceptions）也派生自 BusinessException，
全局处理器据 code 映射 HTTP 状态码。
"""
from __future__ import annotations

from typing import Any, Optional

from shared.codes import BusinessCode


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

    def log_context(self) -> dict[str, Any]:
        """结构化日志字段（不含 details 中可能出现的网关原始报文）"""
        context: dict[str, Any] = {"code": int(self.code), "error_type": self.error_type, "error": self.message}
        if self.field:
            context["field"] = self.field
        provider = (self.details or {}).get("provider")
        if provider:
            context["provider"] = provider
        return context


class DomainValidationException(BusinessException):
    """实体或领域规则校验失败（如金额为负、会员ID为空）"""

    def __init__(self, message: str, *, field: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )
