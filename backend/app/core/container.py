"""
Composition root: one Container per application instance.

Everything that used to be a module-level singleton (engine, registries,
vault, scheduler) is built here and handed to FastAPI through app.state,
so tests can assemble their own graph against SQLite.
"""
from dataclasses import dataclass
import logging
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from app.core.config import Settings, settings as default_settings
from app.core.database import build_engine, build_session_factory
from app.core.events import Event, EventDispatcher, log_event
from app.core.security import CredentialVault
from app.services.billing_scheduler import BillingScheduler
from app.services.billing_service import BillingEngine
from app.services.client_registry import (
    ClientRegistry,
    TenantDatabase,
    TenantStorage,
    build_database_registry,
    build_storage_registry,
)
from app.services.payment_gateway import PaymentGateway, build_gateway
from app.services.tenant_directory import TenantDirectory
from app.services.tenant_resolver import TenantResolver


logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    vault: CredentialVault
    databases: ClientRegistry[TenantDatabase]
    storages: ClientRegistry[TenantStorage]
    events: EventDispatcher
    gateway: PaymentGateway
    resolver: TenantResolver
    billing: BillingEngine
    directory: TenantDirectory
    scheduler: BillingScheduler

    def shutdown(self) -> None:
        self.scheduler.stop()
        self.databases.evict_all()
        self.storages.evict_all()
        self.engine.dispose()
        logger.info("container shut down")


def build_container(
    settings: Optional[Settings] = None,
    gateway: Optional[PaymentGateway] = None,
    engine: Optional[Engine] = None,
) -> Container:
    settings = settings or default_settings
    engine = engine or build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    vault = CredentialVault(settings.encryption_key, settings.encryption_salt)
    databases = build_database_registry()
    storages = build_storage_registry()

    events = EventDispatcher()
    events.subscribe(Event, log_event)

    gateway = gateway or build_gateway(settings)
    resolver = TenantResolver(vault, databases, storages, settings.s3_region)
    billing = BillingEngine(
        session_factory,
        resolver,
        gateway,
        events,
        currency=settings.payment_currency,
        workers=settings.billing_workers,
        tenant_timeout=settings.tenant_billing_timeout_seconds,
        recent_invoice_limit=settings.recent_invoice_limit,
        timezone=settings.billing_timezone,
    )
    directory = TenantDirectory(
        session_factory,
        vault,
        databases,
        storages,
        billing,
        events,
        default_user_price=settings.default_user_price,
        default_application_price=settings.default_application_price,
    )
    scheduler = BillingScheduler(
        billing,
        cutoff_hour=settings.billing_cutoff_hour,
        cutoff_minute=settings.billing_cutoff_minute,
        overdue_interval_seconds=settings.overdue_check_interval_seconds,
        timezone=settings.billing_timezone,
    )
    return Container(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        vault=vault,
        databases=databases,
        storages=storages,
        events=events,
        gateway=gateway,
        resolver=resolver,
        billing=billing,
        directory=directory,
        scheduler=scheduler,
    )
