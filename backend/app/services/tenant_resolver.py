"""
Maps an inbound request to its owning tenant.

An explicit project id always wins over the Host header, so service callers
keep working regardless of custom domains. The Host is only a fallback,
matched against the normalized `Project.domain`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.database import dependency_guard
from app.core.domains import extract_domain_from_host
from app.core.errors import CryptoError, TenantInactive, TenantNotFound
from app.core.security import CredentialVault
from app.models.tenant import Project
from app.services.client_registry import (
    ClientRegistry,
    StorageConfig,
    TenantDatabase,
    TenantStorage,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantCredentials:
    db_connection_string: str
    s3_access_key: str
    s3_secret_key: str
    llm_api_key: Optional[str] = None

    def __repr__(self) -> str:
        return "TenantCredentials(<redacted>)"


@dataclass(frozen=True)
class TenantContext:
    id: str
    name: str
    slug: str
    is_active: bool
    domain: Optional[str]
    s3_bucket: str
    s3_endpoint: str
    llm_provider: str
    credentials: TenantCredentials = field(repr=False)
    database: TenantDatabase = field(repr=False)
    storage: TenantStorage = field(repr=False)


class TenantResolver:
    def __init__(
        self,
        vault: CredentialVault,
        databases: ClientRegistry[TenantDatabase],
        storages: ClientRegistry[TenantStorage],
        region: str,
    ) -> None:
        self.vault = vault
        self.databases = databases
        self.storages = storages
        self.region = region

    def lookup(self, db: Session, explicit_id: Optional[str], host: Optional[str]) -> Optional[Project]:
        """
        Find the owning project without gating or hydration.

        Returns None when the request carries neither key. Raises TenantNotFound
        when a key was given but matches no project.
        """
        explicit_id = (explicit_id or "").strip()
        if explicit_id:
            with dependency_guard("Tenant directory"):
                project = db.get(Project, explicit_id)
            if project is None:
                raise TenantNotFound("Project not found")
            return project

        domain = extract_domain_from_host(host) if host else ""
        if not domain:
            return None
        with dependency_guard("Tenant directory"):
            project = db.execute(select(Project).where(Project.domain == domain)).scalar_one_or_none()
        if project is None:
            raise TenantNotFound(f"No project for domain {domain}")
        return project

    def resolve(self, db: Session, explicit_id: Optional[str] = None, host: Optional[str] = None) -> Optional[TenantContext]:
        project = self.lookup(db, explicit_id, host)
        if project is None:
            return None
        if not project.is_active:
            logger.warning("tenant inactive project_id=%s slug=%s", project.id, project.slug)
            raise TenantInactive("Project is inactive")
        context = self.hydrate(project)
        logger.info("tenant context loaded project_id=%s slug=%s", project.id, project.slug)
        return context

    def hydrate(self, project: Project) -> TenantContext:
        """Decrypt credentials and attach the shared registry handles."""
        credentials = self.decrypt_credentials(project)
        database = self.databases.get_client(credentials.db_connection_string)
        storage_config = StorageConfig(
            endpoint=project.s3_endpoint,
            access_key=credentials.s3_access_key,
            secret_key=credentials.s3_secret_key,
            bucket=project.s3_bucket,
        )
        storage = self.storages.get_client(
            storage_config.identity, lambda: TenantStorage(storage_config, self.region)
        )
        return TenantContext(
            id=project.id,
            name=project.name,
            slug=project.slug,
            is_active=project.is_active,
            domain=project.domain,
            s3_bucket=project.s3_bucket,
            s3_endpoint=project.s3_endpoint,
            llm_provider=project.llm_provider,
            credentials=credentials,
            database=database,
            storage=storage,
        )

    def decrypt_credentials(self, project: Project) -> TenantCredentials:
        try:
            return TenantCredentials(
                db_connection_string=self.vault.decrypt(project.db_connection_string),
                s3_access_key=self.vault.decrypt(project.s3_access_key),
                s3_secret_key=self.vault.decrypt(project.s3_secret_key),
                llm_api_key=self.vault.decrypt(project.llm_api_key) if project.llm_api_key else None,
            )
        except CryptoError:
            logger.error("failed to decrypt tenant credentials project_id=%s", project.id)
            raise

    def database_for(self, project: Project) -> TenantDatabase:
        """Tenant database handle without the active-status gate (billing reads)."""
        return self.databases.get_client(self.vault.decrypt(project.db_connection_string))
