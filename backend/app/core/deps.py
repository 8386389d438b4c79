from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.core.container import Container
from app.core.database import get_db
from app.core.errors import AccessDenied, TenantNotFound
from app.core.security import decode_token
from app.services.tenant_resolver import TenantContext


PLATFORM_ADMIN_ROLE = "platform_admin"


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: Optional[str] = None

    @property
    def is_platform_admin(self) -> bool:
        return self.role == PLATFORM_ADMIN_ROLE


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_caller(authorization: Optional[str] = Header(None)) -> Caller:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    token = authorization.split(" ", 1)[1]
    payload = decode_token(token)
    if not payload or payload.get("type") != "access" or not payload.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return Caller(user_id=str(payload["sub"]), role=payload.get("role"))


def require_platform_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_platform_admin:
        raise AccessDenied("Platform admin role required")
    return caller


def get_tenant_keys(request: Request) -> tuple:
    """Explicit project id header and Host header, as sent by the client."""
    container = get_container(request)
    explicit_id = request.headers.get(container.settings.tenant_header)
    host = request.headers.get("host")
    return explicit_id, host


def get_tenant_context(
    request: Request,
    db: Session = Depends(get_db),
) -> Optional[TenantContext]:
    """Tenant of the request, or None when it carries no key or the key is unknown.

    An inactive tenant still fails the request.
    """
    explicit_id, host = get_tenant_keys(request)
    try:
        return get_container(request).resolver.resolve(db, explicit_id=explicit_id, host=host)
    except TenantNotFound:
        return None


def require_tenant(
    request: Request,
    db: Session = Depends(get_db),
) -> TenantContext:
    explicit_id, host = get_tenant_keys(request)
    context = get_container(request).resolver.resolve(db, explicit_id=explicit_id, host=host)
    if context is None:
        raise TenantNotFound("Missing tenant header")
    return context


def require_project_member(project_id: str, request: Request, caller: Caller = Depends(get_caller)) -> Caller:
    """Platform admins pass; everybody else must be a member of the project."""
    if not caller.is_platform_admin:
        get_container(request).directory.require_member(project_id, caller.user_id)
    return caller


def require_project_admin(project_id: str, request: Request, caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_platform_admin:
        get_container(request).directory.require_member(project_id, caller.user_id, admin=True)
    return caller
