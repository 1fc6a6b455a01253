"""
支付仓储接口 - 配置存储与客户映射的抽象接口
"""
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from .entity import CustomerLink, ProcessorKind


class SettingsRepository(ABC):
    """键值配置存储（ConfigStore），只读访问"""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """获取单个配置值，不存在返回 None"""
        pass

    @abstractmethod
    async def get_many(self, keys: Iterable[str]) -> dict[str, str]:
        """批量获取配置值，仅包含存在的键"""
        pass


class CustomerLinkRepository(ABC):
    """会员与网关客户映射仓储（CustomerLinkStore）"""

    @abstractmethod
    async def get(self, member_id: str, processor: ProcessorKind) -> Optional[CustomerLink]:
        """按 (member_id, processor) 获取映射"""
        pass

    @abstractmethod
    async def create_or_get(self, link: CustomerLink) -> CustomerLink:
        """插入映射；若唯一约束冲突则返回已存在的映射"""
        pass

    @abstractmethod
    async def set_default_payment_method(
        self, member_id: str, processor: ProcessorKind, method_id: Optional[str]
    ) -> None:
        """记录默认支付方式；None 表示清空"""
        pass
