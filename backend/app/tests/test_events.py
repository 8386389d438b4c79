from decimal import Decimal

import pytest

from app.core.events import Event, EventDispatcher, PaymentProcessed, SubscriptionCreated


def test_handlers_run_in_subscription_order_and_match_base_types():
    dispatcher = EventDispatcher()
    seen = []
    dispatcher.subscribe(Event, lambda e: seen.append(("any", type(e).__name__)))
    dispatcher.subscribe(PaymentProcessed, lambda e: seen.append(("payment", e.invoice_id)))

    dispatcher.publish(PaymentProcessed(invoice_id="inv-1", project_id="p", amount=Decimal("5.00"), method="card"))
    dispatcher.publish(SubscriptionCreated(subscription_id="s", project_id="p", user_id="u"))

    assert seen == [("any", "PaymentProcessed"), ("payment", "inv-1"), ("any", "SubscriptionCreated")]


def test_handler_errors_reach_the_publisher():
    dispatcher = EventDispatcher()

    def boom(event):
        raise RuntimeError("handler failed")

    dispatcher.subscribe(SubscriptionCreated, boom)
    with pytest.raises(RuntimeError):
        dispatcher.publish(SubscriptionCreated(subscription_id="s", project_id="p", user_id="u"))
