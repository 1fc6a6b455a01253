"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import Column, Integer, String, Text, DateTime, UniqueConstraint

from .base import Base, utc_now


class SettingModel(Base):
    """
    键值配置表

    存放处理器开关、网关凭证、币种与税率等管理员可修改的配置
    """
    __tablename__ = "settings"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(100), unique=True, index=True, nullable=False, comment="配置键")
    value = Column(Text, nullable=False, default="", comment="配置值")
    updated_at = Column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
        comment="更新时间"
    )

    def __repr__(self):
        return f"<SettingModel(key='{self.key}')>"


class CustomerLinkModel(Base):
    """
    会员与网关客户映射表

    (member_id, processor) 唯一约束保证并发创建时只保留一条映射
    """
    __tablename__ = "payment_customer_links"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(String(100), nullable=False, index=True, comment="内部会员ID")
    processor = Column(String(20), nullable=False, comment="处理器: card/wallet/linkbased")
    external_customer_id = Column(String(200), nullable=False, comment="网关客户ID")
    default_payment_method_id = Column(String(200), nullable=True, comment="默认支付方式ID")
    created_at = Column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
        comment="创建时间"
    )

    __table_args__ = (
        UniqueConstraint("member_id", "processor", name="uq_customer_link_member_processor"),
    )

    def __repr__(self):
        return (
            f"<CustomerLinkModel(member_id='{self.member_id}', processor='{self.processor}', "
            f"external_customer_id='{self.external_customer_id}')>"
        )
