"""
Domain errors raised by the tenancy and billing services.

Services raise these, never HTTPException. Each carries a machine readable
``code`` and the HTTP status the API layer renders it with.
"""
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


class DomainError(Exception):
    code: str = "domain_error"
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "", *, code: Optional[str] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code is not None:
            self.code = code


class NotFound(DomainError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class TenantNotFound(NotFound):
    code = "tenant_not_found"


class TenantInactive(DomainError):
    """The tenant exists but billing has locked it out."""

    code = "account_inactive"
    status_code = status.HTTP_403_FORBIDDEN


class CryptoError(DomainError):
    """A stored credential could not be decrypted. Never retried."""

    code = "credential_corrupted"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class DependencyUnavailable(DomainError):
    """Control plane or tenant database unreachable; safe to retry later."""

    code = "dependency_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class AlreadyPaid(DomainError):
    code = "already_paid"
    status_code = status.HTTP_409_CONFLICT


class DuplicateSubscription(DomainError):
    code = "duplicate_subscription"
    status_code = status.HTTP_409_CONFLICT


class DuplicateProject(DomainError):
    code = "duplicate_project"
    status_code = status.HTTP_409_CONFLICT


class PaymentDeclined(DomainError):
    code = "payment_declined"
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class AccessDenied(DomainError):
    code = "access_denied"
    status_code = status.HTTP_403_FORBIDDEN


class InvalidDomain(DomainError):
    code = "invalid_domain"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class InvalidProject(DomainError):
    code = "invalid_project"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class BillingTimeout(DomainError):
    """The monthly run gave up on a tenant; nothing was committed for it."""

    code = "billing_timeout"
    status_code = status.HTTP_504_GATEWAY_TIMEOUT


def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "code": exc.code, "message": exc.message},
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, domain_error_handler)
