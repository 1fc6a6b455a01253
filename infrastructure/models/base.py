"""
数据库模型基类（SQLAlchemy 2.0 风格）

约束命名固定下来，settings 与 payment_customer_links 表在各数据库上生成的
唯一约束名一致，并发插入冲突时可据此识别。
"""
from datetime import datetime, timezone

from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase


NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "pk": "pk_%(table_name)s",
}


def utc_now() -> datetime:
    """当前UTC时间，供列默认值使用"""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


metadata = Base.metadata
