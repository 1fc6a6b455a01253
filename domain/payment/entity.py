"""
支付领域实体 - 处理器类型、订单状态与客户映射
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException


class ProcessorKind(str, Enum):
    """支付处理器类型（同一时刻至多一个处于激活状态）"""
    CARD = "card"
    WALLET = "wallet"
    LINK_BASED = "linkbased"

    @property
    def settings_prefix(self) -> str:
        """配置键前缀，例如 payment_<prefix>_enabled"""
        return _SETTINGS_PREFIX[self]

    @property
    def label(self) -> str:
        return _LABELS[self]

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["ProcessorKind"]:
        """解析配置值；同时接受规范值与提供商别名（stripe/paypal/square）"""
        if not value:
            return None
        v = value.strip().lower()
        for kind in cls:
            if v in (kind.value, kind.settings_prefix):
                return kind
        return None


_SETTINGS_PREFIX = {
    ProcessorKind.CARD: "stripe",
    ProcessorKind.WALLET: "paypal",
    ProcessorKind.LINK_BASED: "square",
}

_LABELS = {
    ProcessorKind.CARD: "Stripe",
    ProcessorKind.WALLET: "PayPal",
    ProcessorKind.LINK_BASED: "Square",
}

# 固定的回退优先级：Card > Wallet > LinkBased
FALLBACK_PRIORITY: tuple[ProcessorKind, ...] = (
    ProcessorKind.CARD,
    ProcessorKind.WALLET,
    ProcessorKind.LINK_BASED,
)


class OrderStatus(str, Enum):
    """归一化的订单状态（Wallet/LinkBased 原生状态映射而来）"""
    CREATED = "created"
    APPROVED = "approved"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.CANCELED, OrderStatus.FAILED)


class CheckoutStatus(str, Enum):
    """面向调用方的结账状态"""
    PENDING = "pending"
    COMPLETE = "complete"
    EXPIRED = "expired"
    FAILED = "failed"


@dataclass(frozen=True)
class CustomerLink:
    """
    内部会员与网关客户ID的映射

    业务规则：
    1. (member_id, processor) 唯一
    2. 首次结账或添加支付方式时惰性创建，永不自动删除
    3. 默认支付方式必须属于该客户，删除该方式时一并清空
    """

    member_id: str
    processor: ProcessorKind
    external_customer_id: str
    # 未指定支付方式时扣款使用的默认方式
    default_payment_method_id: Optional[str] = None

    def __post_init__(self):
        if not self.member_id:
            raise DomainValidationException("member_id 不能为空", field="member_id")
        if not self.external_customer_id:
            raise DomainValidationException(
                "external_customer_id 不能为空", field="external_customer_id"
            )


@dataclass(frozen=True)
class CachedToken:
    """OAuth 访问令牌缓存项"""

    token: str
    expires_at_epoch_ms: int

    def is_fresh(self, now_ms: int, margin_ms: int) -> bool:
        """仅当过期时间晚于 now + margin 时可复用"""
        return self.expires_at_epoch_ms > now_ms + margin_ms
