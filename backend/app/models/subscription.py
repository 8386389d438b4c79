from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Numeric, String, text
from sqlalchemy.orm import relationship

from app.models.tenant import Base, new_id
from app.core.billing_calendar import utcnow


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        # One active subscription per project; inactive rows are kept as history
        Index(
            "uq_subscriptions_active_project",
            "project_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(255), nullable=False)  # owner who created it
    user_price_per_month = Column(Numeric(10, 2), nullable=False, default=0)
    application_price_per_month = Column(Numeric(10, 2), nullable=False, default=0)
    last_billed = Column(DateTime, nullable=True)
    # Always the last calendar day of a month at the billing cutoff time
    next_billing = Column(DateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    project = relationship("Project", back_populates="subscriptions")
    invoices = relationship(
        "Invoice", back_populates="subscription", cascade="all, delete-orphan", order_by="Invoice.created_at.desc()"
    )
