from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.core.container import Container
from app.core.deps import (
    Caller,
    get_caller,
    get_container,
    require_platform_admin,
    require_project_admin,
    require_project_member,
)

router = APIRouter()


class SubscriptionCreate(BaseModel):
    project_id: str
    user_price_per_month: Optional[Decimal] = Field(default=None, ge=0)
    application_price_per_month: Optional[Decimal] = Field(default=None, ge=0)


class SubscriptionOut(BaseModel):
    id: str
    project_id: str
    user_id: str
    user_price_per_month: Decimal
    application_price_per_month: Decimal
    last_billed: Optional[datetime] = None
    next_billing: datetime
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class InvoiceOut(BaseModel):
    id: str
    invoice_number: str
    project_id: str
    subscription_id: str
    amount: Decimal
    user_count: int
    user_amount: Decimal
    application_count: int
    application_amount: Decimal
    period_start: datetime
    period_end: datetime
    due_date: datetime
    status: str
    paid_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class BillingStatusOut(BaseModel):
    subscription: SubscriptionOut
    invoices: List[InvoiceOut]
    user_count: int
    application_count: int
    next_billing: datetime
    is_active: bool


class CalculationOut(BaseModel):
    user_count: int
    application_count: int
    user_amount: Decimal
    application_amount: Decimal
    total_amount: Decimal
    period_start: datetime
    period_end: datetime

    class Config:
        from_attributes = True


class ApplicationCreate(BaseModel):
    name: str = Field(min_length=1)
    slug: str = Field(min_length=1)
    price_per_month: Decimal = Field(default=Decimal("0.00"), ge=0)
    description: Optional[str] = None
    icon: Optional[str] = None
    listed: bool = True


class ApplicationOut(BaseModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    icon: Optional[str] = None
    price_per_month: Decimal
    listed: bool
    is_active: bool

    class Config:
        from_attributes = True


class TenantApplicationCreate(BaseModel):
    application_id: str
    custom_price: Optional[Decimal] = Field(default=None, ge=0)


class TenantApplicationOut(BaseModel):
    id: str
    project_id: str
    application_id: str
    custom_price: Optional[Decimal] = None
    is_active: bool
    application: ApplicationOut

    class Config:
        from_attributes = True


class PaymentCreate(BaseModel):
    invoice_id: str
    payment_method: str = "stripe"


@router.post("/subscriptions", response_model=SubscriptionOut, status_code=201)
def create_subscription(
    data: SubscriptionCreate,
    caller: Caller = Depends(get_caller),
    container: Container = Depends(get_container),
):
    if not caller.is_platform_admin:
        container.directory.require_member(data.project_id, caller.user_id, admin=True)
    settings = container.settings
    return container.billing.create_subscription(
        data.project_id,
        caller.user_id,
        data.user_price_per_month if data.user_price_per_month is not None else settings.default_user_price,
        data.application_price_per_month if data.application_price_per_month is not None else settings.default_application_price,
    )


@router.get("/subscriptions/{project_id}", response_model=BillingStatusOut, dependencies=[Depends(require_project_member)])
def billing_status(project_id: str, container: Container = Depends(get_container)):
    status = container.billing.get_billing_status(project_id)
    return BillingStatusOut(
        subscription=SubscriptionOut.model_validate(status.subscription),
        invoices=[InvoiceOut.model_validate(i) for i in status.invoices],
        user_count=status.user_count,
        application_count=status.application_count,
        next_billing=status.next_billing,
        is_active=status.is_active,
    )


@router.get("/calculate/{project_id}", response_model=CalculationOut, dependencies=[Depends(require_project_member)])
def calculate(project_id: str, container: Container = Depends(get_container)):
    return container.billing.calculate_billing(project_id)


@router.get("/applications", response_model=List[ApplicationOut], dependencies=[Depends(get_caller)])
def list_applications(container: Container = Depends(get_container)):
    return container.directory.list_available_applications()


@router.post("/applications", response_model=ApplicationOut, status_code=201, dependencies=[Depends(require_platform_admin)])
def create_application(data: ApplicationCreate, container: Container = Depends(get_container)):
    return container.directory.create_application(**data.model_dump())


@router.post(
    "/tenants/{project_id}/applications",
    response_model=TenantApplicationOut,
    status_code=201,
    dependencies=[Depends(require_project_admin)],
)
def add_application(project_id: str, data: TenantApplicationCreate, container: Container = Depends(get_container)):
    return container.directory.add_application(project_id, data.application_id, data.custom_price)


@router.delete("/tenants/{project_id}/applications/{application_id}", dependencies=[Depends(require_project_admin)])
def remove_application(project_id: str, application_id: str, container: Container = Depends(get_container)):
    container.directory.remove_application(project_id, application_id)
    return {"success": True, "message": "Application removed"}


@router.post("/payments/process", response_model=InvoiceOut)
def process_payment(
    data: PaymentCreate,
    caller: Caller = Depends(get_caller),
    container: Container = Depends(get_container),
):
    invoice = container.billing.get_invoice(data.invoice_id)
    if not caller.is_platform_admin:
        container.directory.require_member(invoice.project_id, caller.user_id)
    return container.billing.process_payment(data.invoice_id, data.payment_method)


@router.get("/invoices/{project_id}", response_model=List[InvoiceOut], dependencies=[Depends(require_project_member)])
def list_invoices(project_id: str, container: Container = Depends(get_container)):
    return container.billing.list_invoices(project_id)


@router.post("/automation/monthly", dependencies=[Depends(require_platform_admin)])
def trigger_monthly(container: Container = Depends(get_container)):
    result = container.scheduler.trigger_monthly_billing()
    if result is None:
        return {"success": False, "message": "Monthly billing already in progress"}
    return {
        "success": True,
        "processed_count": result.processed_count,
        "error_count": result.error_count,
        "overdue_count": result.overdue_count,
        "skipped_count": result.skipped_count,
        "failed_projects": result.failed_projects,
    }


@router.post("/automation/overdue", dependencies=[Depends(require_platform_admin)])
def trigger_overdue(container: Container = Depends(get_container)):
    count = container.scheduler.trigger_overdue_check()
    if count is None:
        return {"success": False, "message": "Overdue check already in progress"}
    return {"success": True, "overdue_count": count}


@router.get("/automation/status", dependencies=[Depends(require_platform_admin)])
def automation_status(container: Container = Depends(get_container)):
    return container.scheduler.get_status()


@router.get("/statistics", dependencies=[Depends(require_platform_admin)])
def statistics(container: Container = Depends(get_container)):
    return container.billing.get_billing_statistics()
