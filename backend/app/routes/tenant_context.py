from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.core.deps import require_tenant
from app.services.tenant_resolver import TenantContext

router = APIRouter()


class TenantContextOut(BaseModel):
    id: str
    name: str
    slug: str
    domain: Optional[str] = None
    is_active: bool
    s3_bucket: str
    s3_endpoint: str
    llm_provider: str

    class Config:
        from_attributes = True


@router.get("/tenant", response_model=TenantContextOut)
def current_tenant(tenant: TenantContext = Depends(require_tenant)):
    """Tenant resolved from the project header, falling back to the Host header."""
    return tenant
