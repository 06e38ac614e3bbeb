from __future__ import annotations

import datetime as dt

from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class KeyValueRecord(Base):
    __tablename__ = "kv_records"
    __table_args__ = (UniqueConstraint("namespace", "key", name="uq_kv_records_namespace_key"),)

    id = Column(Integer, primary_key=True)
    namespace = Column(String(100), nullable=False, index=True)
    key = Column(String(200), nullable=False)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
