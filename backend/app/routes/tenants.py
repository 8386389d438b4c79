from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.core.container import Container
from app.core.deps import Caller, get_caller, get_container, require_project_admin, require_project_member
from app.core.domains import get_root_domain, get_subdomain_suggestions, is_subdomain, is_valid_domain, normalize_domain
from app.core.errors import AccessDenied
from app.services.tenant_directory import ProjectInput

router = APIRouter()

MASK = "[ENCRYPTED]"


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1)
    slug: str = Field(min_length=1, pattern=r"^[a-z0-9-]+$")
    domain: Optional[str] = None
    db_connection_string: str = Field(min_length=1)
    s3_bucket: str = Field(min_length=1)
    s3_endpoint: str = Field(min_length=1)
    s3_access_key: str = Field(min_length=1)
    s3_secret_key: str = Field(min_length=1)
    llm_provider: str = "NEXUS"
    llm_api_key: Optional[str] = None
    user_price_per_month: Optional[Decimal] = Field(default=None, ge=0)
    application_price_per_month: Optional[Decimal] = Field(default=None, ge=0)


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    domain: Optional[str] = None
    db_connection_string: Optional[str] = Field(default=None, min_length=1)
    s3_bucket: Optional[str] = Field(default=None, min_length=1)
    s3_endpoint: Optional[str] = Field(default=None, min_length=1)
    s3_access_key: Optional[str] = Field(default=None, min_length=1)
    s3_secret_key: Optional[str] = Field(default=None, min_length=1)
    llm_provider: Optional[str] = None
    llm_api_key: Optional[str] = None
    is_active: Optional[bool] = None


class ProjectOut(BaseModel):
    id: str
    name: str
    slug: str
    domain: Optional[str] = None
    s3_bucket: str
    s3_endpoint: str
    llm_provider: str
    is_active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None
    db_connection_string: str = MASK
    s3_access_key: str = MASK
    s3_secret_key: str = MASK
    llm_api_key: Optional[str] = None


class ProjectPage(BaseModel):
    projects: List[ProjectOut]
    page: int
    limit: int
    total: int
    pages: int


class DomainCheck(BaseModel):
    domain: str
    valid: bool
    available: bool
    is_subdomain: bool
    root_domain: str
    suggestions: List[str]


class MemberCreate(BaseModel):
    user_id: str = Field(min_length=1)
    role: str = "member"


class MemberOut(BaseModel):
    user_id: str
    role: str
    created_at: datetime

    class Config:
        from_attributes = True


def project_out(project) -> ProjectOut:
    """Public view of a project; stored secrets are never echoed back."""
    return ProjectOut(
        id=project.id,
        name=project.name,
        slug=project.slug,
        domain=project.domain,
        s3_bucket=project.s3_bucket,
        s3_endpoint=project.s3_endpoint,
        llm_provider=project.llm_provider,
        is_active=project.is_active,
        created_at=project.created_at,
        updated_at=project.updated_at,
        llm_api_key=MASK if project.llm_api_key else None,
    )


@router.get("", response_model=ProjectPage)
def list_projects(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    caller: Caller = Depends(get_caller),
    container: Container = Depends(get_container),
):
    """Platform admins see every project, other callers only their own."""
    member_id = None if caller.is_platform_admin else caller.user_id
    projects, total = container.directory.list_projects(page=page, limit=limit, search=search, member_id=member_id)
    return ProjectPage(
        projects=[project_out(p) for p in projects],
        page=page,
        limit=limit,
        total=total,
        pages=(total + limit - 1) // limit,
    )


@router.post("", status_code=201)
def onboard_project(
    data: ProjectCreate,
    caller: Caller = Depends(get_caller),
    container: Container = Depends(get_container),
):
    project_input = ProjectInput(**data.model_dump(exclude={"user_price_per_month", "application_price_per_month"}))
    project, subscription = container.directory.onboard_project(
        project_input,
        caller.user_id,
        user_price=data.user_price_per_month,
        application_price=data.application_price_per_month,
    )
    return {
        "success": True,
        "project": project_out(project),
        "subscription_id": subscription.id,
        "next_billing": subscription.next_billing,
    }


@router.get("/domains/check", response_model=DomainCheck, dependencies=[Depends(get_caller)])
def check_domain(domain: str = Query(..., min_length=1), container: Container = Depends(get_container)):
    """Whether a custom domain can be claimed, and what else could be used under the same root."""
    normalized = normalize_domain(domain)
    valid = is_valid_domain(normalized)
    owner = container.directory.find_by_domain(normalized) if valid else None
    root = get_root_domain(normalized)
    return DomainCheck(
        domain=normalized,
        valid=valid,
        available=valid and owner is None,
        is_subdomain=is_subdomain(normalized),
        root_domain=root,
        suggestions=get_subdomain_suggestions(root) if valid else [],
    )


@router.get("/{project_id}", response_model=ProjectOut, dependencies=[Depends(require_project_member)])
def get_project(project_id: str, container: Container = Depends(get_container)):
    return project_out(container.directory.get_project(project_id))


@router.put("/{project_id}", response_model=ProjectOut)
def update_project(
    project_id: str,
    data: ProjectUpdate,
    caller: Caller = Depends(require_project_admin),
    container: Container = Depends(get_container),
):
    changes = data.model_dump(exclude_unset=True)
    # re-activation is billing's call, tenant admins cannot lift a lock-out
    if "is_active" in changes and not caller.is_platform_admin:
        raise AccessDenied("Only platform administrators can change project activation")
    project = container.directory.update_project(project_id, changes, caller.user_id)
    return project_out(project)


@router.delete("/{project_id}")
def delete_project(
    project_id: str,
    caller: Caller = Depends(require_project_admin),
    container: Container = Depends(get_container),
):
    container.directory.delete_project(project_id, caller.user_id)
    return {"success": True, "message": "Project deleted successfully"}


@router.post("/{project_id}/users", response_model=MemberOut, dependencies=[Depends(require_project_admin)])
def add_member(project_id: str, data: MemberCreate, container: Container = Depends(get_container)):
    return container.directory.add_member(project_id, data.user_id, data.role)


@router.get("/{project_id}/users", response_model=List[MemberOut], dependencies=[Depends(require_project_member)])
def list_members(project_id: str, container: Container = Depends(get_container)):
    return container.directory.list_members(project_id)
