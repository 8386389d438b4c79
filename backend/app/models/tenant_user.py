"""
Schema of a tenant's own database.

Kept on a separate declarative base: these tables never live in the control
plane store.
"""

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.orm import declarative_base

from app.core.billing_calendar import utcnow


TenantBase = declarative_base()


class TenantUser(TenantBase):
    __tablename__ = "tenant_users"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), nullable=False, unique=True, index=True)
    email = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
