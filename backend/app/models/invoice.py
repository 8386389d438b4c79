from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship

from app.models.tenant import Base, new_id
from app.core.billing_calendar import utcnow


class InvoiceStatus(str, Enum):
    pending = "PENDING"
    paid = "PAID"
    overdue = "OVERDUE"


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=new_id)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    invoice_number = Column(String(64), nullable=False, unique=True, index=True)

    # amount == user_amount + application_amount
    amount = Column(Numeric(10, 2), nullable=False, default=0)
    user_count = Column(Integer, nullable=False, default=0)
    user_amount = Column(Numeric(10, 2), nullable=False, default=0)
    application_count = Column(Integer, nullable=False, default=0)
    application_amount = Column(Numeric(10, 2), nullable=False, default=0)

    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    due_date = Column(DateTime, nullable=False, index=True)
    status = Column(String(20), nullable=False, default=InvoiceStatus.pending.value, index=True)
    paid_at = Column(DateTime, nullable=True)
    payment_method = Column(String(50), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    subscription = relationship("Subscription", back_populates="invoices")
    project = relationship("Project", back_populates="invoices")
