from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import relationship

from app.models.tenant import Base, new_id
from app.core.billing_calendar import utcnow


class ProjectMember(Base):
    """Membership of an identity-layer user in a project."""

    __tablename__ = "project_members"
    __table_args__ = (
        UniqueConstraint("project_id", "user_id", name="uq_project_members_project_user"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(255), nullable=False, index=True)
    role = Column(String(20), nullable=False, default="member")  # admin | member | viewer
    created_at = Column(DateTime, nullable=False, default=utcnow)

    project = relationship("Project", back_populates="members")
