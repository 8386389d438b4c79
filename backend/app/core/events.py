"""
Typed, synchronous notifications between billing/tenancy components.

publish() calls every handler subscribed to the event's type (or one of its
bases) before returning. Handler errors reach the publisher.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
import logging
import threading
from typing import Callable, DefaultDict, List, Type

from app.core.billing_calendar import utcnow


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    occurred_at: datetime = field(default_factory=utcnow, kw_only=True)


@dataclass(frozen=True)
class ProjectCreated(Event):
    project_id: str
    slug: str
    created_by: str


@dataclass(frozen=True)
class ProjectUpdated(Event):
    project_id: str
    updated_by: str
    credentials_rotated: bool


@dataclass(frozen=True)
class SubscriptionCreated(Event):
    subscription_id: str
    project_id: str
    user_id: str


@dataclass(frozen=True)
class InvoiceGenerated(Event):
    invoice_id: str
    project_id: str
    amount: Decimal
    due_date: datetime


@dataclass(frozen=True)
class PaymentProcessed(Event):
    invoice_id: str
    project_id: str
    amount: Decimal
    method: str


@dataclass(frozen=True)
class ProjectDeactivated(Event):
    project_id: str
    invoice_id: str
    due_date: datetime


@dataclass(frozen=True)
class MonthlyBillingCompleted(Event):
    processed_count: int
    error_count: int
    overdue_count: int
    skipped_count: int = 0


Handler = Callable[[Event], None]


class EventDispatcher:
    def __init__(self) -> None:
        self._handlers: DefaultDict[Type[Event], List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type[Event], handler: Handler) -> None:
        with self._lock:
            self._handlers[event_type].append(handler)

    def publish(self, event: Event) -> None:
        with self._lock:
            handlers = [
                handler
                for event_type, registered in self._handlers.items()
                if isinstance(event, event_type)
                for handler in registered
            ]
        for handler in handlers:
            handler(event)


def log_event(event: Event) -> None:
    """Audit trail of every published event."""
    logger.info("event %s %s", type(event).__name__, event)
