"""
支付仓储实现 - 使用SQLAlchemy实现数据访问
"""
from typing import Iterable, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from domain.payment.entity import CustomerLink, ProcessorKind
from domain.payment.repository import CustomerLinkRepository, SettingsRepository
from infrastructure.models.payment import CustomerLinkModel, SettingModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemySettingsRepository(SettingsRepository):
    """配置仓储的SQLAlchemy实现（每次调用都直接查询，不做缓存）"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, key: str) -> Optional[str]:
        result = await self.session.execute(
            select(SettingModel.value).where(SettingModel.key == key)
        )
        return result.scalar_one_or_none()

    async def get_many(self, keys: Iterable[str]) -> dict[str, str]:
        keys = list(keys)
        if not keys:
            return {}
        result = await self.session.execute(
            select(SettingModel.key, SettingModel.value).where(SettingModel.key.in_(keys))
        )
        return {row.key: row.value for row in result}

    async def set(self, key: str, value: str) -> None:
        """写入配置（管理端使用），存在则覆盖"""
        result = await self.session.execute(
            select(SettingModel).where(SettingModel.key == key)
        )
        db_setting = result.scalar_one_or_none()
        if db_setting is None:
            self.session.add(SettingModel(key=key, value=value))
        else:
            db_setting.value = value
        await self.session.flush()


class SQLAlchemyCustomerLinkRepository(CustomerLinkRepository):
    """客户映射仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _to_entity(model: CustomerLinkModel) -> CustomerLink:
        return CustomerLink(
            member_id=model.member_id,
            processor=ProcessorKind(model.processor),
            external_customer_id=model.external_customer_id,
            default_payment_method_id=model.default_payment_method_id,
        )

    async def get(self, member_id: str, processor: ProcessorKind) -> Optional[CustomerLink]:
        """按 (member_id, processor) 获取映射"""
        result = await self.session.execute(
            select(CustomerLinkModel).where(
                CustomerLinkModel.member_id == member_id,
                CustomerLinkModel.processor == processor.value,
            )
        )
        db_link = result.scalar_one_or_none()
        return self._to_entity(db_link) if db_link else None

    async def create_or_get(self, link: CustomerLink) -> CustomerLink:
        """
        插入映射并立即提交

        唯一约束冲突说明另一个进程已抢先写入，回滚后返回已存在的映射
        """
        try:
            db_link = CustomerLinkModel(
                member_id=link.member_id,
                processor=link.processor.value,
                external_customer_id=link.external_customer_id,
                default_payment_method_id=link.default_payment_method_id,
            )
            self.session.add(db_link)
            await self.session.commit()
            logger.info(
                "customer_link_created",
                member_id=link.member_id,
                processor=link.processor.value,
            )
            return link
        except IntegrityError:
            await self.session.rollback()
            existing = await self.get(link.member_id, link.processor)
            if existing is None:
                raise
            logger.warning(
                "customer_link_conflict",
                member_id=link.member_id,
                processor=link.processor.value,
            )
            return existing

    async def set_default_payment_method(
        self, member_id: str, processor: ProcessorKind, method_id: Optional[str]
    ) -> None:
        """更新默认支付方式并提交"""
        await self.session.execute(
            update(CustomerLinkModel)
            .where(
                CustomerLinkModel.member_id == member_id,
                CustomerLinkModel.processor == processor.value,
            )
            .values(default_payment_method_id=method_id)
        )
        await self.session.commit()
