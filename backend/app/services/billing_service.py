"""
Billing lifecycle: subscriptions, monthly invoices, settlement and the
overdue lock-out.

Invoice states move PENDING -> PAID or PENDING -> OVERDUE, and an OVERDUE
invoice may still be paid late, which re-activates the project. There is no
grace period and no proration: a tenant is locked out the moment a pending
invoice passes its due date, and anything added mid-month is billed at the
full monthly price on the next run.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
import logging
import secrets
import string
import threading
import time
from typing import Callable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from app.core.billing_calendar import following_month_end, month_end, month_start, utcnow
from app.core.database import dependency_guard
from app.core.errors import (
    AlreadyPaid,
    BillingTimeout,
    DuplicateSubscription,
    NotFound,
    PaymentDeclined,
)
from app.core.events import (
    EventDispatcher,
    InvoiceGenerated,
    MonthlyBillingCompleted,
    PaymentProcessed,
    ProjectDeactivated,
    SubscriptionCreated,
)
from app.models.application import TenantApplication
from app.models.invoice import Invoice, InvoiceStatus
from app.models.subscription import Subscription
from app.models.tenant import Project
from app.services.payment_gateway import PaymentGateway
from app.services.tenant_resolver import TenantResolver


logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
_INVOICE_ALPHABET = string.ascii_uppercase + string.digits


def to_money(value) -> Decimal:
    return Decimal(str(value if value is not None else 0)).quantize(CENT)


def generate_invoice_number() -> str:
    timestamp = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_INVOICE_ALPHABET) for _ in range(6))
    return f"INV-{timestamp}-{suffix}"


@dataclass
class BillingCalculation:
    user_count: int
    application_count: int
    user_amount: Decimal
    application_amount: Decimal
    total_amount: Decimal
    period_start: datetime
    period_end: datetime


@dataclass
class MonthlyBillingResult:
    processed_count: int = 0
    error_count: int = 0
    overdue_count: int = 0
    skipped_count: int = 0
    failed_projects: List[str] = field(default_factory=list)


class CommitGate:
    """Decides, exactly once, whether a tenant's invoice commits or the run gives up on it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._outcome: Optional[str] = None

    def _settle(self, outcome: str) -> bool:
        with self._lock:
            if self._outcome is None:
                self._outcome = outcome
            return self._outcome == outcome

    def claim(self) -> bool:
        return self._settle("commit")

    def abandon(self) -> bool:
        return self._settle("abandon")


@dataclass
class BillingStatus:
    subscription: Subscription
    project: Project
    invoices: List[Invoice]
    user_count: int
    application_count: int
    next_billing: datetime
    is_active: bool


class BillingEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        resolver: TenantResolver,
        gateway: PaymentGateway,
        events: EventDispatcher,
        currency: str = "usd",
        workers: int = 4,
        tenant_timeout: float = 30.0,
        recent_invoice_limit: int = 5,
        clock: Callable[[], datetime] = utcnow,
        timezone: Optional[str] = None,
    ) -> None:
        self.session_factory = session_factory
        self.resolver = resolver
        self.gateway = gateway
        self.events = events
        self.currency = currency
        self.workers = max(1, workers)
        self.tenant_timeout = tenant_timeout
        self.recent_invoice_limit = recent_invoice_limit
        self.clock = clock
        # month boundaries and cutoffs are read on this zone's wall clock
        self.timezone = timezone

    # -- subscriptions -----------------------------------------------------

    def add_subscription(
        self,
        db: Session,
        project_id: str,
        owner_user_id: str,
        user_price: Decimal,
        application_price: Decimal,
    ) -> Subscription:
        """Stage a subscription in the caller's transaction. Does not commit."""
        existing = db.execute(
            select(Subscription.id).where(Subscription.project_id == project_id, Subscription.is_active.is_(True))
        ).first()
        if existing is not None:
            raise DuplicateSubscription("Active subscription already exists for this project")
        subscription = Subscription(
            project_id=project_id,
            user_id=owner_user_id,
            user_price_per_month=to_money(user_price),
            application_price_per_month=to_money(application_price),
            next_billing=month_end(self.clock(), tz=self.timezone),
            is_active=True,
        )
        db.add(subscription)
        try:
            db.flush()
        except IntegrityError as exc:
            # concurrent onboarding raced us past the check above
            raise DuplicateSubscription("Active subscription already exists for this project") from exc
        return subscription

    def create_subscription(
        self,
        project_id: str,
        owner_user_id: str,
        user_price: Decimal,
        application_price: Decimal,
    ) -> Subscription:
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            if db.get(Project, project_id) is None:
                raise NotFound("Project not found")
            subscription = self.add_subscription(db, project_id, owner_user_id, user_price, application_price)
            db.commit()

        logger.info("subscription created subscription_id=%s project_id=%s user_id=%s", subscription.id, project_id, owner_user_id)
        self.events.publish(SubscriptionCreated(subscription_id=subscription.id, project_id=project_id, user_id=owner_user_id))
        return subscription

    # -- calculation and invoicing ------------------------------------------

    def calculate_billing(self, project_id: str) -> BillingCalculation:
        now = self.clock()
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            project = db.get(Project, project_id)
            if project is None:
                raise NotFound("Project not found")
            subscription = self._active_subscription(db, project_id)
            tenant_apps = db.execute(
                select(TenantApplication)
                .options(selectinload(TenantApplication.application))
                .where(TenantApplication.project_id == project_id, TenantApplication.is_active.is_(True))
            ).scalars().all()
            tenant_db = self.resolver.database_for(project)
            period_start = subscription.last_billed or subscription.created_at
            user_price = to_money(subscription.user_price_per_month)

        user_count = tenant_db.count_active_users()
        user_amount = (Decimal(user_count) * user_price).quantize(CENT)

        application_amount = Decimal("0.00")
        for tenant_app in tenant_apps:
            price = tenant_app.custom_price if tenant_app.custom_price is not None else tenant_app.application.price_per_month
            application_amount += to_money(price)

        return BillingCalculation(
            user_count=user_count,
            application_count=len(tenant_apps),
            user_amount=user_amount,
            application_amount=application_amount,
            total_amount=user_amount + application_amount,
            period_start=period_start,
            period_end=now,
        )

    def generate_monthly_invoice(self, project_id: str, gate: Optional[CommitGate] = None) -> Invoice:
        """Invoice one project and advance its subscription.

        With a gate, the commit only happens if the gate is claimed first; a
        run that has already abandoned this tenant gets BillingTimeout and
        nothing is written.
        """
        calculation = self.calculate_billing(project_id)
        now = self.clock()
        due_date = following_month_end(now, tz=self.timezone)

        # invoice row and subscription advance commit together
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            subscription = self._active_subscription(db, project_id, for_update=True)
            invoice = Invoice(
                subscription_id=subscription.id,
                project_id=project_id,
                invoice_number=generate_invoice_number(),
                amount=calculation.total_amount,
                user_count=calculation.user_count,
                user_amount=calculation.user_amount,
                application_count=calculation.application_count,
                application_amount=calculation.application_amount,
                period_start=calculation.period_start,
                period_end=calculation.period_end,
                due_date=due_date,
                status=InvoiceStatus.pending.value,
            )
            db.add(invoice)
            subscription.last_billed = now
            subscription.next_billing = due_date
            if gate is not None and not gate.claim():
                raise BillingTimeout(f"Billing run gave up on project {project_id}")
            db.commit()

        logger.info(
            "invoice generated project_id=%s invoice=%s amount=%s due=%s",
            project_id, invoice.invoice_number, invoice.amount, due_date,
        )
        self.events.publish(
            InvoiceGenerated(invoice_id=invoice.id, project_id=project_id, amount=invoice.amount, due_date=due_date)
        )
        return invoice

    # -- settlement ----------------------------------------------------------

    def process_payment(self, invoice_id: str, method: str = "stripe") -> Invoice:
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            invoice = db.execute(
                select(Invoice).where(Invoice.id == invoice_id).with_for_update()
            ).scalar_one_or_none()
            if invoice is None:
                raise NotFound("Invoice not found")
            if invoice.status == InvoiceStatus.paid.value:
                raise AlreadyPaid("Invoice already paid")

            if not self.gateway.settle(invoice.id, method, to_money(invoice.amount), self.currency):
                logger.warning("payment declined invoice_id=%s method=%s", invoice.id, method)
                raise PaymentDeclined("Payment was not settled; invoice remains pending")

            invoice.status = InvoiceStatus.paid.value
            invoice.paid_at = self.clock()
            invoice.payment_method = method
            project = db.get(Project, invoice.project_id)
            if project is not None:
                project.is_active = True
            db.commit()

        logger.info("payment processed invoice_id=%s project_id=%s amount=%s", invoice.id, invoice.project_id, invoice.amount)
        self.events.publish(
            PaymentProcessed(invoice_id=invoice.id, project_id=invoice.project_id, amount=invoice.amount, method=method)
        )
        return invoice

    def check_overdue_invoices(self) -> int:
        """Mark past-due pending invoices OVERDUE and lock their projects out.

        All changes of one sweep commit together; a failure leaves nothing applied.
        """
        now = self.clock()
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            overdue = db.execute(
                select(Invoice)
                .where(Invoice.status == InvoiceStatus.pending.value, Invoice.due_date < now)
                .with_for_update()
            ).scalars().all()
            deactivated = []
            for invoice in overdue:
                invoice.status = InvoiceStatus.overdue.value
                project = db.get(Project, invoice.project_id)
                if project is not None:
                    project.is_active = False
                deactivated.append((invoice.id, invoice.project_id, invoice.due_date))
            db.commit()

        for invoice_id, project_id, due_date in deactivated:
            logger.warning("project deactivated for overdue invoice project_id=%s invoice_id=%s due=%s", project_id, invoice_id, due_date)
            self.events.publish(ProjectDeactivated(project_id=project_id, invoice_id=invoice_id, due_date=due_date))
        return len(deactivated)

    # -- monthly run ---------------------------------------------------------

    def process_monthly_billing(self) -> MonthlyBillingResult:
        """Invoice every active subscription that is due, then sweep overdue invoices.

        A subscription billed earlier in the current cycle is skipped, so a
        forced re-run does not bill twice. One tenant's failure or timeout is
        counted and never stops the others.
        """
        now = self.clock()
        result = MonthlyBillingResult()
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            rows = db.execute(
                select(Subscription.project_id, Subscription.last_billed, Subscription.next_billing)
                .where(Subscription.is_active.is_(True))
            ).all()

        due = []
        for project_id, last_billed, next_billing in rows:
            if last_billed is not None and next_billing > now:
                result.skipped_count += 1
            else:
                due.append(project_id)

        logger.info("monthly billing started due=%s skipped=%s", len(due), result.skipped_count)
        executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="billing")
        try:
            futures = []
            for project_id in due:
                gate = CommitGate()
                futures.append((project_id, gate, executor.submit(self.generate_monthly_invoice, project_id, gate)))
            for project_id, gate, future in futures:
                try:
                    try:
                        future.result(timeout=self.tenant_timeout)
                    except FutureTimeoutError:
                        if gate.abandon():
                            future.cancel()
                            raise BillingTimeout(f"Billing run gave up on project {project_id}")
                        # the tenant reached its commit first; that outcome stands
                        future.result()
                    result.processed_count += 1
                except BillingTimeout:
                    result.error_count += 1
                    result.failed_projects.append(project_id)
                    logger.error("monthly invoice timed out project_id=%s timeout=%ss", project_id, self.tenant_timeout)
                except Exception:
                    result.error_count += 1
                    result.failed_projects.append(project_id)
                    logger.exception("failed to generate monthly invoice project_id=%s", project_id)
        finally:
            # a timed-out tenant must not hold the run open
            executor.shutdown(wait=False, cancel_futures=True)

        try:
            result.overdue_count = self.check_overdue_invoices()
        except Exception:
            logger.exception("overdue sweep failed during monthly billing; retried on next sweep")

        logger.info(
            "monthly billing completed processed=%s errors=%s overdue=%s skipped=%s",
            result.processed_count, result.error_count, result.overdue_count, result.skipped_count,
        )
        self.events.publish(
            MonthlyBillingCompleted(
                processed_count=result.processed_count,
                error_count=result.error_count,
                overdue_count=result.overdue_count,
                skipped_count=result.skipped_count,
            )
        )
        return result

    # -- read side -------------------------------------------------------------

    def get_billing_status(self, project_id: str) -> BillingStatus:
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            project = db.get(Project, project_id)
            if project is None:
                raise NotFound("Project not found")
            subscription = self._active_subscription(db, project_id)
            invoices = db.execute(
                select(Invoice)
                .where(Invoice.subscription_id == subscription.id)
                .order_by(Invoice.created_at.desc())
                .limit(self.recent_invoice_limit)
            ).scalars().all()
            application_count = db.execute(
                select(func.count())
                .select_from(TenantApplication)
                .where(TenantApplication.project_id == project_id, TenantApplication.is_active.is_(True))
            ).scalar_one()
            tenant_db = self.resolver.database_for(project)

        return BillingStatus(
            subscription=subscription,
            project=project,
            invoices=list(invoices),
            user_count=tenant_db.count_active_users(),
            application_count=application_count,
            next_billing=subscription.next_billing,
            is_active=project.is_active,
        )

    def list_invoices(self, project_id: str) -> List[Invoice]:
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            return list(
                db.execute(
                    select(Invoice).where(Invoice.project_id == project_id).order_by(Invoice.created_at.desc())
                ).scalars().all()
            )

    def get_invoice(self, invoice_id: str) -> Invoice:
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            invoice = db.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFound("Invoice not found")
        return invoice

    def get_billing_statistics(self) -> dict:
        now = self.clock()
        start_of_month = month_start(now, self.timezone)
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            total_subscriptions = db.execute(select(func.count()).select_from(Subscription)).scalar_one()
            active_subscriptions = db.execute(
                select(func.count()).select_from(Subscription).where(Subscription.is_active.is_(True))
            ).scalar_one()
            invoice_counts = dict(
                db.execute(select(Invoice.status, func.count()).group_by(Invoice.status)).all()
            )
            total_revenue = db.execute(
                select(func.coalesce(func.sum(Invoice.amount), 0)).where(Invoice.status == InvoiceStatus.paid.value)
            ).scalar_one()
            monthly_revenue = db.execute(
                select(func.coalesce(func.sum(Invoice.amount), 0)).where(
                    Invoice.status == InvoiceStatus.paid.value,
                    Invoice.paid_at >= start_of_month,
                    Invoice.paid_at <= now,
                )
            ).scalar_one()

        paid = invoice_counts.get(InvoiceStatus.paid.value, 0)
        overdue = invoice_counts.get(InvoiceStatus.overdue.value, 0)
        pending = invoice_counts.get(InvoiceStatus.pending.value, 0)
        return {
            "subscriptions": {
                "total": total_subscriptions,
                "active": active_subscriptions,
                "inactive": total_subscriptions - active_subscriptions,
            },
            "invoices": {"total": paid + overdue + pending, "paid": paid, "overdue": overdue, "pending": pending},
            "revenue": {"total": to_money(total_revenue), "monthly": to_money(monthly_revenue)},
        }

    def _active_subscription(self, db: Session, project_id: str, for_update: bool = False) -> Subscription:
        stmt = select(Subscription).where(Subscription.project_id == project_id, Subscription.is_active.is_(True))
        if for_update:
            stmt = stmt.with_for_update()
        subscription = db.execute(stmt).scalar_one_or_none()
        if subscription is None:
            raise NotFound("No active subscription found")
        return subscription
