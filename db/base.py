import datetime
from decimal import Decimal

from sqlalchemy import Column, DateTime, Numeric, String
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

# The declarative base that all models will inherit from.
Base = declarative_base()


class Timestamped(Base):
    """
    An abstract base class that provides self-updating
    `created_at` and `updated_at` columns.
    """
    __abstract__ = True
    created_at = Column(DateTime, default=datetime.datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)


class SmallestUnit(TypeDecorator):
    """
    Integer amount in an asset's smallest unit (wei, token base units).

    NUMERIC(78, 0) holds any uint256. SQLite has no exact wide numeric, so
    there the value is stored as text to keep it exact.
    """
    impl = Numeric(78, 0)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(78))
        return dialect.type_descriptor(Numeric(78, 0))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "sqlite":
            return str(int(value))
        return Decimal(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(Decimal(str(value)))
