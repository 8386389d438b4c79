"""
Control-plane bookkeeping for projects: creation and onboarding, credential
rotation, membership and the application catalog.

Secrets are encrypted before they reach the session and never leave this
module in clear text except through the resolver.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import logging
import re
from typing import List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.core.database import dependency_guard
from app.core.domains import is_valid_domain, normalize_domain
from app.core.errors import AccessDenied, CryptoError, DuplicateProject, InvalidDomain, InvalidProject, NotFound
from app.core.events import EventDispatcher, ProjectCreated, ProjectUpdated, SubscriptionCreated
from app.core.security import CredentialVault
from app.models.application import Application, TenantApplication
from app.models.project_member import ProjectMember
from app.models.subscription import Subscription
from app.models.tenant import Project
from app.services.billing_service import BillingEngine, to_money
from app.services.client_registry import ClientRegistry, StorageConfig, TenantDatabase, TenantStorage


logger = logging.getLogger(__name__)

SLUG_RE = re.compile(r"^[a-z0-9-]+$")
MEMBER_ROLES = ("admin", "member", "viewer")
LLM_PROVIDERS = ("NEXUS", "OPENAI", "ANTHROPIC", "CUSTOM")


@dataclass
class ProjectInput:
    name: str
    slug: str
    db_connection_string: str
    s3_bucket: str
    s3_endpoint: str
    s3_access_key: str
    s3_secret_key: str
    domain: Optional[str] = None
    llm_provider: str = "NEXUS"
    llm_api_key: Optional[str] = None


class TenantDirectory:
    def __init__(
        self,
        session_factory: sessionmaker,
        vault: CredentialVault,
        databases: ClientRegistry[TenantDatabase],
        storages: ClientRegistry[TenantStorage],
        billing: BillingEngine,
        events: EventDispatcher,
        default_user_price: Decimal = Decimal("10.00"),
        default_application_price: Decimal = Decimal("0.00"),
    ) -> None:
        self.session_factory = session_factory
        self.vault = vault
        self.databases = databases
        self.storages = storages
        self.billing = billing
        self.events = events
        self.default_user_price = default_user_price
        self.default_application_price = default_application_price

    # -- projects ------------------------------------------------------------

    def create_project(self, data: ProjectInput, created_by: str) -> Project:
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            project = self._stage_project(db, data, created_by)
            self._commit(db)
        self._announce_project(project, created_by)
        return project

    def onboard_project(
        self,
        data: ProjectInput,
        owner_user_id: str,
        user_price: Optional[Decimal] = None,
        application_price: Optional[Decimal] = None,
    ) -> Tuple[Project, Subscription]:
        """Create the project, its admin membership and its subscription atomically."""
        user_price = self.default_user_price if user_price is None else user_price
        application_price = self.default_application_price if application_price is None else application_price
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            project = self._stage_project(db, data, owner_user_id)
            subscription = self.billing.add_subscription(db, project.id, owner_user_id, user_price, application_price)
            self._commit(db)

        self._announce_project(project, owner_user_id)
        logger.info("subscription created subscription_id=%s project_id=%s", subscription.id, project.id)
        self.events.publish(
            SubscriptionCreated(subscription_id=subscription.id, project_id=project.id, user_id=owner_user_id)
        )
        return project, subscription

    def update_project(self, project_id: str, changes: dict, updated_by: str) -> Project:
        """
        Apply a partial update. Rotated credentials are re-encrypted and the
        registry handles built from the old credentials are evicted.
        """
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            project = self._get(db, project_id)
            old_db_key, old_storage_key = self._registry_keys(project)

            if "name" in changes and changes["name"] is not None:
                project.name = changes["name"].strip()
            if "domain" in changes:
                domain = self._clean_domain(changes["domain"])
                if domain and domain != project.domain:
                    self._ensure_unique(db, slug=None, domain=domain, exclude_id=project.id)
                project.domain = domain
            if changes.get("llm_provider"):
                project.llm_provider = self._clean_provider(changes["llm_provider"])
            if changes.get("s3_bucket"):
                project.s3_bucket = changes["s3_bucket"]
            if changes.get("s3_endpoint"):
                project.s3_endpoint = changes["s3_endpoint"]
            if changes.get("is_active") is not None:
                project.is_active = bool(changes["is_active"])

            rotated = False
            for field_name in ("db_connection_string", "s3_access_key", "s3_secret_key"):
                if changes.get(field_name):
                    setattr(project, field_name, self.vault.encrypt(changes[field_name]))
                    rotated = True
            if "llm_api_key" in changes:
                key = changes["llm_api_key"]
                project.llm_api_key = self.vault.encrypt(key) if key else None

            new_db_key, new_storage_key = self._registry_keys(project)
            self._commit(db)

        # only the handles whose identity actually changed go away
        self._evict(
            old_db_key if old_db_key != new_db_key else None,
            old_storage_key if old_storage_key != new_storage_key else None,
        )

        logger.info("project updated project_id=%s rotated=%s by=%s", project.id, rotated, updated_by)
        self.events.publish(ProjectUpdated(project_id=project.id, updated_by=updated_by, credentials_rotated=rotated))
        return project

    def delete_project(self, project_id: str, deleted_by: str) -> None:
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            project = self._get(db, project_id)
            db_key, storage_key = self._registry_keys(project)
            db.delete(project)
            db.commit()
        self._evict(db_key, storage_key)
        logger.info("project deleted project_id=%s by=%s", project_id, deleted_by)

    def get_project(self, project_id: str) -> Project:
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            return self._get(db, project_id)

    def find_by_domain(self, domain: str) -> Optional[Project]:
        normalized = normalize_domain(domain or "")
        if not normalized:
            return None
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            return db.query(Project).filter(Project.domain == normalized).first()

    def list_projects(
        self,
        page: int = 1,
        limit: int = 10,
        search: Optional[str] = None,
        member_id: Optional[str] = None,
    ) -> Tuple[List[Project], int]:
        page = max(1, page)
        limit = max(1, min(limit, 100))
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            query = db.query(Project)
            if member_id is not None:
                query = query.join(ProjectMember).filter(ProjectMember.user_id == member_id)
            if search:
                pattern = f"%{search.strip()}%"
                query = query.filter(
                    or_(Project.name.ilike(pattern), Project.slug.ilike(pattern), Project.domain.ilike(pattern))
                )
            total = query.count()
            projects = query.order_by(Project.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
        return projects, total

    # -- membership ----------------------------------------------------------

    def add_member(self, project_id: str, user_id: str, role: str = "member") -> ProjectMember:
        if role not in MEMBER_ROLES:
            raise InvalidProject(f"Role must be one of {', '.join(MEMBER_ROLES)}")
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            self._get(db, project_id)
            member = (
                db.query(ProjectMember)
                .filter(ProjectMember.project_id == project_id, ProjectMember.user_id == user_id)
                .first()
            )
            if member is None:
                member = ProjectMember(project_id=project_id, user_id=user_id, role=role)
                db.add(member)
            else:
                member.role = role
            db.commit()
        logger.info("project member set project_id=%s user_id=%s role=%s", project_id, user_id, role)
        return member

    def list_members(self, project_id: str) -> List[ProjectMember]:
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            return db.query(ProjectMember).filter(ProjectMember.project_id == project_id).order_by(ProjectMember.created_at).all()

    def require_member(self, project_id: str, user_id: str, admin: bool = False) -> ProjectMember:
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            self._get(db, project_id)
            member = (
                db.query(ProjectMember)
                .filter(ProjectMember.project_id == project_id, ProjectMember.user_id == user_id)
                .first()
            )
        if member is None or (admin and member.role != "admin"):
            raise AccessDenied("Admin access required" if admin else "Access denied to this project")
        return member

    # -- applications ----------------------------------------------------------

    def list_available_applications(self) -> List[Application]:
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            return (
                db.query(Application)
                .filter(Application.is_active.is_(True), Application.listed.is_(True))
                .order_by(Application.name)
                .all()
            )

    def create_application(
        self,
        name: str,
        slug: str,
        price_per_month: Decimal,
        description: Optional[str] = None,
        icon: Optional[str] = None,
        listed: bool = True,
    ) -> Application:
        if not SLUG_RE.match(slug or ""):
            raise InvalidProject("Slug must contain only lowercase letters, numbers, and hyphens")
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            if db.query(Application.id).filter(Application.slug == slug).first():
                raise DuplicateProject(f"Application slug {slug} already exists")
            application = Application(
                name=name,
                slug=slug,
                description=description,
                icon=icon,
                price_per_month=to_money(price_per_month),
                listed=listed,
            )
            db.add(application)
            db.commit()
        logger.info("application created application_id=%s slug=%s", application.id, slug)
        return application

    def add_application(
        self, project_id: str, application_id: str, custom_price: Optional[Decimal] = None
    ) -> TenantApplication:
        """Enable an application for a project. Billed on the next monthly run, not now."""
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            self._get(db, project_id)
            application = db.get(Application, application_id)
            if application is None or not application.is_active:
                raise NotFound("Application not found")
            tenant_app = (
                db.query(TenantApplication)
                .filter(TenantApplication.project_id == project_id, TenantApplication.application_id == application_id)
                .first()
            )
            if tenant_app is None:
                tenant_app = TenantApplication(project_id=project_id, application_id=application_id)
                db.add(tenant_app)
            tenant_app.custom_price = to_money(custom_price) if custom_price is not None else None
            tenant_app.is_active = True
            db.commit()
            tenant_app.application = application
        logger.info("application added project_id=%s application_id=%s", project_id, application_id)
        return tenant_app

    def remove_application(self, project_id: str, application_id: str) -> None:
        with dependency_guard("Tenant directory"), self.session_factory() as db:
            tenant_app = (
                db.query(TenantApplication)
                .filter(
                    TenantApplication.project_id == project_id,
                    TenantApplication.application_id == application_id,
                    TenantApplication.is_active.is_(True),
                )
                .first()
            )
            if tenant_app is None:
                raise NotFound("Application not enabled for this project")
            tenant_app.is_active = False
            db.commit()
        logger.info("application removed project_id=%s application_id=%s", project_id, application_id)

    # -- helpers ---------------------------------------------------------------

    def _stage_project(self, db: Session, data: ProjectInput, created_by: str) -> Project:
        slug = (data.slug or "").strip()
        if not SLUG_RE.match(slug):
            raise InvalidProject("Slug must contain only lowercase letters, numbers, and hyphens")
        if not data.name or not data.name.strip():
            raise InvalidProject("Project name is required")
        domain = self._clean_domain(data.domain)
        self._ensure_unique(db, slug=slug, domain=domain)

        project = Project(
            name=data.name.strip(),
            slug=slug,
            domain=domain,
            db_connection_string=self.vault.encrypt(data.db_connection_string),
            s3_bucket=data.s3_bucket,
            s3_endpoint=data.s3_endpoint,
            s3_access_key=self.vault.encrypt(data.s3_access_key),
            s3_secret_key=self.vault.encrypt(data.s3_secret_key),
            llm_provider=self._clean_provider(data.llm_provider),
            llm_api_key=self.vault.encrypt(data.llm_api_key) if data.llm_api_key else None,
            is_active=True,
        )
        db.add(project)
        try:
            db.flush()
        except IntegrityError as exc:
            raise DuplicateProject("Project with this slug or domain already exists") from exc
        db.add(ProjectMember(project_id=project.id, user_id=created_by, role="admin"))
        return project

    def _announce_project(self, project: Project, created_by: str) -> None:
        logger.info("project created project_id=%s slug=%s by=%s", project.id, project.slug, created_by)
        self.events.publish(ProjectCreated(project_id=project.id, slug=project.slug, created_by=created_by))

    def _ensure_unique(
        self, db: Session, slug: Optional[str], domain: Optional[str], exclude_id: Optional[str] = None
    ) -> None:
        conditions = []
        if slug:
            conditions.append(Project.slug == slug)
        if domain:
            conditions.append(Project.domain == domain)
        if not conditions:
            return
        query = db.query(Project).filter(or_(*conditions))
        if exclude_id:
            query = query.filter(Project.id != exclude_id)
        clash = query.first()
        if clash is not None:
            field_name = "slug" if slug and clash.slug == slug else "domain"
            raise DuplicateProject(f"Project with this {field_name} already exists")

    def _clean_domain(self, domain: Optional[str]) -> Optional[str]:
        if domain is None:
            return None
        normalized = normalize_domain(domain)
        if not normalized:
            return None
        if not is_valid_domain(normalized):
            raise InvalidDomain(f"Invalid domain format: {domain}")
        return normalized

    def _clean_provider(self, provider: Optional[str]) -> str:
        provider = (provider or "NEXUS").upper()
        if provider not in LLM_PROVIDERS:
            raise InvalidProject(f"LLM provider must be one of {', '.join(LLM_PROVIDERS)}")
        return provider

    def _registry_keys(self, project: Project) -> Tuple[Optional[str], Optional[str]]:
        """Registry identities derived from the project's current credentials.

        Undecryptable credentials can never have produced a handle, so they map to None.
        """
        try:
            db_key = self.vault.decrypt(project.db_connection_string)
            access_key = self.vault.decrypt(project.s3_access_key)
        except CryptoError:
            logger.warning("stored credentials unreadable project_id=%s", project.id)
            return None, None
        storage = StorageConfig(endpoint=project.s3_endpoint, access_key=access_key, secret_key="", bucket=project.s3_bucket)
        return db_key, storage.identity

    def _evict(self, db_key: Optional[str], storage_key: Optional[str]) -> None:
        if db_key:
            self.databases.evict(db_key)
        if storage_key:
            self.storages.evict(storage_key)

    def _get(self, db: Session, project_id: str) -> Project:
        project = db.get(Project, project_id)
        if project is None:
            raise NotFound("Project not found")
        return project

    @staticmethod
    def _commit(db: Session) -> None:
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise DuplicateProject("Project with this slug or domain already exists") from exc
