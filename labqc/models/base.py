from sqlalchemy import Column, Integer, DateTime, String
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

class TimeStampedModel(Base):
    """Surrogate key plus creation/update times; created_at orders report history"""
    __abstract__ = True

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

class AuditMixin:
    """Who entered and who last changed the row (technician or reviewer)"""
    created_by = Column(String(100), nullable=True)
    updated_by = Column(String(100), nullable=True)
