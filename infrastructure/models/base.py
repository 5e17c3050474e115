"""
数据库模型基类（SQLAlchemy 2.0 风格）
"""
from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """时间列默认值：统一使用带时区的 UTC"""
    return datetime.now(timezone.utc)


# 元数据对象用于数据库迁移
metadata = Base.metadata
