from .tenant import Base, Project
from .project_member import ProjectMember
from .subscription import Subscription
from .invoice import Invoice, InvoiceStatus
from .application import Application, TenantApplication
from .tenant_user import TenantBase, TenantUser

__all__ = [
    "Base",
    "Project",
    "ProjectMember",
    "Subscription",
    "Invoice",
    "InvoiceStatus",
    "Application",
    "TenantApplication",
    "TenantBase",
    "TenantUser",
]
