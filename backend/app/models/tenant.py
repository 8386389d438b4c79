import uuid

from sqlalchemy import Boolean, Column, DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship

from app.core.billing_calendar import utcnow


Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


class Project(Base):
    """A tenant organization with its own database and object storage."""

    __tablename__ = "projects"
    __table_args__ = (
        UniqueConstraint("slug", name="uq_projects_slug"),
        UniqueConstraint("domain", name="uq_projects_domain"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, index=True)
    # Stored normalized: lower-case, no scheme, no trailing slash
    domain = Column(String(255), nullable=True, index=True)

    # Encrypted with the credential vault
    db_connection_string = Column(Text, nullable=False)
    s3_access_key = Column(Text, nullable=False)
    s3_secret_key = Column(Text, nullable=False)
    llm_api_key = Column(Text, nullable=True)

    s3_bucket = Column(String(255), nullable=False)
    s3_endpoint = Column(String(512), nullable=False)
    llm_provider = Column(String(20), nullable=False, default="NEXUS")

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=utcnow)

    members = relationship("ProjectMember", back_populates="project", cascade="all, delete-orphan")
    subscriptions = relationship("Subscription", back_populates="project", cascade="all, delete-orphan")
    invoices = relationship("Invoice", back_populates="project", cascade="all, delete-orphan")
    tenant_applications = relationship("TenantApplication", back_populates="project", cascade="all, delete-orphan")
