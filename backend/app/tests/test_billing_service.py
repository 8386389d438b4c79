from datetime import datetime
from decimal import Decimal
import time

import pytest

from app.core.billing_calendar import following_month_end, month_end
from app.core.errors import AlreadyPaid, DuplicateSubscription, NotFound, PaymentDeclined, TenantInactive
from app.core.events import InvoiceGenerated, ProjectDeactivated
from app.models import Invoice, InvoiceStatus, Project


def invoices_for(container, project_id):
    return container.billing.list_invoices(project_id)


def test_subscription_starts_at_current_month_end(container, onboard, clock):
    project = onboard("alpha")
    status = container.billing.get_billing_status(project.id)

    assert status.next_billing == month_end(clock.now)
    assert status.subscription.last_billed is None
    assert status.user_count == 3
    assert status.invoices == []


def test_second_active_subscription_is_rejected(container, onboard):
    project = onboard("alpha")
    with pytest.raises(DuplicateSubscription):
        container.billing.create_subscription(project.id, "owner-1", Decimal("10.00"), Decimal("0.00"))


def test_subscription_for_unknown_project(container):
    with pytest.raises(NotFound):
        container.billing.create_subscription("missing", "owner-1", Decimal("10.00"), Decimal("0.00"))


def test_monthly_invoice_for_three_users(container, onboard, clock):
    project = onboard("alpha", users=3, inactive=2)

    invoice = container.billing.generate_monthly_invoice(project.id)

    assert invoice.user_count == 3
    assert invoice.user_amount == Decimal("30.00")
    assert invoice.application_amount == Decimal("0.00")
    assert invoice.amount == Decimal("30.00")
    assert invoice.status == InvoiceStatus.pending.value
    assert invoice.invoice_number.startswith("INV-")
    assert invoice.due_date == following_month_end(clock.now)

    status = container.billing.get_billing_status(project.id)
    assert status.subscription.last_billed == clock.now
    assert status.next_billing == invoice.due_date


def test_zero_usage_still_produces_an_invoice(container, onboard):
    project = onboard("empty", users=0)
    invoice = container.billing.generate_monthly_invoice(project.id)
    assert invoice.amount == Decimal("0.00")
    assert invoice.user_count == 0


def test_application_pricing_prefers_custom_price(container, onboard):
    project = onboard("apps", users=1)
    crm = container.directory.create_application("CRM", "crm", Decimal("15.00"))
    chat = container.directory.create_application("Chat", "chat", Decimal("7.50"))
    container.directory.add_application(project.id, crm.id, custom_price=Decimal("0.00"))
    container.directory.add_application(project.id, chat.id)

    calculation = container.billing.calculate_billing(project.id)

    assert calculation.application_count == 2
    assert calculation.application_amount == Decimal("7.50")
    assert calculation.total_amount == calculation.user_amount + calculation.application_amount
    assert calculation.total_amount == Decimal("17.50")


def test_adding_an_application_does_not_invoice(container, onboard):
    project = onboard("midmonth")
    app = container.directory.create_application("CRM", "crm", Decimal("15.00"))
    container.directory.add_application(project.id, app.id)
    assert invoices_for(container, project.id) == []


def test_payment_marks_paid_and_rejects_second_attempt(container, onboard, gateway, clock):
    project = onboard("alpha")
    invoice = container.billing.generate_monthly_invoice(project.id)

    paid = container.billing.process_payment(invoice.id, "pm_card_visa")

    assert paid.status == InvoiceStatus.paid.value
    assert paid.payment_method == "pm_card_visa"
    assert paid.paid_at is not None
    assert gateway.calls == [(invoice.id, "pm_card_visa", Decimal("30.00"), "usd")]

    clock.advance(days=2)
    with pytest.raises(AlreadyPaid):
        container.billing.process_payment(invoice.id, "bank_transfer")
    assert len(gateway.calls) == 1

    stored = container.billing.get_invoice(invoice.id)
    assert stored.amount == paid.amount
    assert stored.paid_at == paid.paid_at
    assert stored.payment_method == "pm_card_visa"


def test_declined_payment_leaves_invoice_pending(container, onboard, gateway):
    project = onboard("alpha")
    invoice = container.billing.generate_monthly_invoice(project.id)
    gateway.approve = False

    with pytest.raises(PaymentDeclined):
        container.billing.process_payment(invoice.id, "pm_card_declined")

    assert container.billing.get_invoice(invoice.id).status == InvoiceStatus.pending.value


def test_payment_for_unknown_invoice(container):
    with pytest.raises(NotFound):
        container.billing.process_payment("missing")


def test_overdue_locks_out_and_late_payment_restores(container, onboard, clock):
    project = onboard("late")
    deactivated = []
    container.events.subscribe(ProjectDeactivated, deactivated.append)
    invoice = container.billing.generate_monthly_invoice(project.id)

    # not yet due: nothing changes
    assert container.billing.check_overdue_invoices() == 0

    clock.now = invoice.due_date
    assert container.billing.check_overdue_invoices() == 0

    clock.advance(minutes=1)
    assert container.billing.check_overdue_invoices() == 1
    assert container.billing.get_invoice(invoice.id).status == InvoiceStatus.overdue.value
    assert container.directory.get_project(project.id).is_active is False
    assert [e.project_id for e in deactivated] == [project.id]

    with container.session_factory() as db:
        with pytest.raises(TenantInactive):
            container.resolver.resolve(db, explicit_id=project.id)

    paid = container.billing.process_payment(invoice.id, "bank_transfer")
    assert paid.status == InvoiceStatus.paid.value
    assert container.directory.get_project(project.id).is_active is True
    with container.session_factory() as db:
        assert container.resolver.resolve(db, explicit_id=project.id).id == project.id

    # paid invoices are never swept again
    assert container.billing.check_overdue_invoices() == 0


def test_monthly_run_bills_everyone_once(container, onboard):
    alpha = onboard("alpha", users=2)
    beta = onboard("beta", users=5)
    generated = []
    container.events.subscribe(InvoiceGenerated, generated.append)

    first = container.billing.process_monthly_billing()
    assert (first.processed_count, first.error_count, first.skipped_count) == (2, 0, 0)
    assert {e.project_id for e in generated} == {alpha.id, beta.id}

    second = container.billing.process_monthly_billing()
    assert (second.processed_count, second.error_count, second.skipped_count) == (0, 0, 2)
    assert len(invoices_for(container, alpha.id)) == 1
    assert invoices_for(container, beta.id)[0].amount == Decimal("50.00")


def test_monthly_run_bills_again_next_cycle(container, onboard, clock):
    project = onboard("cycle")
    container.billing.process_monthly_billing()
    invoice = invoices_for(container, project.id)[0]
    container.billing.process_payment(invoice.id, "bank_transfer")

    clock.now = invoice.due_date
    result = container.billing.process_monthly_billing()

    assert result.processed_count == 1
    invoices = invoices_for(container, project.id)
    assert len(invoices) == 2
    assert invoices[0].period_start == invoice.period_end


def test_one_failing_tenant_does_not_stop_the_run(container, onboard, monkeypatch):
    good = onboard("good")
    bad = onboard("bad")
    calculate = container.billing.calculate_billing

    def flaky(project_id):
        if project_id == bad.id:
            raise RuntimeError("tenant database exploded")
        return calculate(project_id)

    monkeypatch.setattr(container.billing, "calculate_billing", flaky)
    result = container.billing.process_monthly_billing()

    assert result.processed_count == 1
    assert result.error_count == 1
    assert result.failed_projects == [bad.id]
    assert len(invoices_for(container, good.id)) == 1
    assert invoices_for(container, bad.id) == []


def test_slow_tenant_times_out_without_blocking_others(container, onboard, monkeypatch):
    fast = onboard("fast")
    slow = onboard("slow")
    container.billing.workers = 2
    container.billing.tenant_timeout = 0.3
    calculate = container.billing.calculate_billing

    def sluggish(project_id):
        if project_id == slow.id:
            time.sleep(1.0)
            raise RuntimeError("gave up")
        return calculate(project_id)

    monkeypatch.setattr(container.billing, "calculate_billing", sluggish)
    started = time.monotonic()
    result = container.billing.process_monthly_billing()

    assert time.monotonic() - started < 1.0
    assert result.processed_count == 1
    assert result.error_count == 1
    assert result.failed_projects == [slow.id]
    assert len(invoices_for(container, fast.id)) == 1


def test_timed_out_tenant_leaves_no_invoice_behind(container, onboard, monkeypatch):
    fast = onboard("fast")
    slow = onboard("slow")
    container.billing.workers = 2
    container.billing.tenant_timeout = 0.2
    before = container.billing.get_billing_status(slow.id).next_billing
    calculate = container.billing.calculate_billing

    def sluggish(project_id):
        calculation = calculate(project_id)
        if project_id == slow.id:
            time.sleep(0.5)
        return calculation

    monkeypatch.setattr(container.billing, "calculate_billing", sluggish)
    result = container.billing.process_monthly_billing()
    assert result.failed_projects == [slow.id]

    # give the abandoned worker time to reach its commit
    time.sleep(1.0)
    assert invoices_for(container, slow.id) == []
    status = container.billing.get_billing_status(slow.id)
    assert status.subscription.last_billed is None
    assert status.next_billing == before
    assert len(invoices_for(container, fast.id)) == 1


@pytest.mark.parametrize(
    "zone, first_fire, second_fire, second_due",
    [
        # 23:59 JST on the last day is 14:59 UTC the same day
        ("Asia/Tokyo", datetime(2026, 12, 31, 14, 59), datetime(2027, 1, 31, 14, 59), datetime(2027, 2, 28, 14, 59)),
        # 23:59 EST on the last day is 04:59 UTC on the first
        ("America/New_York", datetime(2027, 1, 1, 4, 59), datetime(2027, 2, 1, 4, 59), datetime(2027, 3, 1, 4, 59)),
    ],
)
def test_every_scheduled_fire_bills_in_a_non_utc_zone(container, onboard, clock, zone, first_fire, second_fire, second_due):
    container.billing.timezone = zone
    clock.now = first_fire
    project = onboard("zoned")

    first = container.billing.process_monthly_billing()
    assert first.processed_count == 1
    assert invoices_for(container, project.id)[0].due_date == second_fire

    clock.now = second_fire
    second = container.billing.process_monthly_billing()
    assert (second.processed_count, second.skipped_count) == (1, 0)
    assert invoices_for(container, project.id)[0].due_date == second_due

    # a forced re-run straight after is still a no-op
    clock.advance(seconds=30)
    assert container.billing.process_monthly_billing().skipped_count == 1


def test_monthly_run_sweeps_overdue_invoices(container, onboard, clock):
    project = onboard("sweep")
    invoice = container.billing.generate_monthly_invoice(project.id)

    clock.now = invoice.due_date
    clock.advance(minutes=1)
    result = container.billing.process_monthly_billing()

    # the stale invoice is swept and the new cycle is billed
    assert result.overdue_count == 1
    assert result.processed_count == 1
    assert container.directory.get_project(project.id).is_active is False


def test_billing_statistics(container, onboard):
    alpha = onboard("alpha", users=1)
    onboard("beta", users=2)
    container.billing.process_monthly_billing()
    invoice = invoices_for(container, alpha.id)[0]
    container.billing.process_payment(invoice.id, "bank_transfer")

    stats = container.billing.get_billing_statistics()

    assert stats["subscriptions"] == {"total": 2, "active": 2, "inactive": 0}
    assert stats["invoices"] == {"total": 2, "paid": 1, "overdue": 0, "pending": 1}
    assert stats["revenue"]["total"] == Decimal("10.00")
    assert stats["revenue"]["monthly"] == Decimal("10.00")


def test_status_lists_recent_invoices_newest_first(container, onboard, clock):
    project = onboard("history")
    first = container.billing.generate_monthly_invoice(project.id)
    clock.now = first.due_date
    time.sleep(0.01)
    second = container.billing.generate_monthly_invoice(project.id)

    status = container.billing.get_billing_status(project.id)
    assert [i.id for i in status.invoices] == [second.id, first.id]


def test_invoice_amount_matches_its_parts(container, onboard):
    project = onboard("parts", users=4, user_price=Decimal("12.35"))
    app = container.directory.create_application("CRM", "crm", Decimal("3.33"))
    container.directory.add_application(project.id, app.id)

    invoice = container.billing.generate_monthly_invoice(project.id)

    assert invoice.user_amount == Decimal("49.40")
    assert invoice.amount == invoice.user_amount + invoice.application_amount == Decimal("52.73")
    with container.session_factory() as db:
        stored = db.get(Invoice, invoice.id)
        assert stored.amount == Decimal("52.73")
        assert db.get(Project, project.id).is_active is True
