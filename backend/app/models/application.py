from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from app.models.tenant import Base, new_id
from app.core.billing_calendar import utcnow


class Application(Base):
    """Global catalog entry a tenant may opt into."""

    __tablename__ = "applications"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)
    icon = Column(String(255), nullable=True)
    price_per_month = Column(Numeric(10, 2), nullable=False, default=0)
    listed = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class TenantApplication(Base):
    __tablename__ = "tenant_applications"
    __table_args__ = (
        UniqueConstraint("project_id", "application_id", name="uq_tenant_applications_project_app"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    application_id = Column(String(36), ForeignKey("applications.id", ondelete="CASCADE"), nullable=False, index=True)
    # Overrides the catalog price when set
    custom_price = Column(Numeric(10, 2), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    project = relationship("Project", back_populates="tenant_applications")
    application = relationship("Application")
