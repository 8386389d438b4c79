from decimal import Decimal

import pytest

from app.core.errors import AccessDenied, DuplicateProject, InvalidDomain, InvalidProject, NotFound
from app.models import Invoice, Subscription


def test_onboarding_creates_project_member_and_subscription(container, make_input):
    project, subscription = container.directory.onboard_project(make_input("acme"), "owner-1")

    assert project.is_active is True
    assert subscription.project_id == project.id
    assert subscription.user_price_per_month == Decimal("10.00")
    assert container.directory.require_member(project.id, "owner-1", admin=True).role == "admin"


def test_credentials_are_stored_encrypted(container, make_input):
    project = container.directory.create_project(make_input("acme"), "owner-1")

    assert "acme-secret" not in project.s3_secret_key
    assert container.vault.decrypt(project.s3_secret_key) == "acme-secret"
    assert container.vault.decrypt(project.db_connection_string).startswith("sqlite:///")


def test_slug_and_domain_validation(container, make_input):
    bad_slug = make_input("acme")
    bad_slug.slug = "Not Valid"
    with pytest.raises(InvalidProject):
        container.directory.create_project(bad_slug, "owner-1")

    with pytest.raises(InvalidDomain):
        container.directory.create_project(make_input("acme", domain="not a domain"), "owner-1")


def test_duplicate_slug_or_domain_is_rejected(container, make_input):
    container.directory.create_project(make_input("acme", domain="acme.example.com"), "owner-1")

    with pytest.raises(DuplicateProject):
        container.directory.create_project(make_input("acme"), "owner-2")

    other = make_input("other", domain="HTTPS://ACME.example.com/")
    with pytest.raises(DuplicateProject):
        container.directory.create_project(other, "owner-2")


def test_failed_onboarding_leaves_nothing_behind(container, make_input):
    container.directory.onboard_project(make_input("acme"), "owner-1")
    with pytest.raises(DuplicateProject):
        container.directory.onboard_project(make_input("acme"), "owner-1")

    projects, total = container.directory.list_projects()
    assert total == 1
    with container.session_factory() as db:
        assert db.query(Subscription).count() == 1


def test_credential_rotation_evicts_old_handles(container, make_input, tenant_db):
    project, _ = container.directory.onboard_project(make_input("acme"), "owner-1")
    old_url = container.vault.decrypt(project.db_connection_string)
    with container.session_factory() as db:
        before = container.resolver.resolve(db, explicit_id=project.id)
    assert old_url in container.databases

    new_url = tenant_db("acme-v2", active=7)
    container.directory.update_project(
        project.id, {"db_connection_string": new_url, "s3_access_key": "rotated"}, "owner-1"
    )

    assert old_url not in container.databases
    assert len(container.storages) == 0
    with container.session_factory() as db:
        after = container.resolver.resolve(db, explicit_id=project.id)
    assert after.database is not before.database
    assert after.database.count_active_users() == 7
    assert after.credentials.s3_access_key == "rotated"


def test_update_normalizes_domain(container, make_input):
    project = container.directory.create_project(make_input("acme"), "owner-1")
    updated = container.directory.update_project(project.id, {"domain": "http://Acme.Example.com/"}, "owner-1")
    assert updated.domain == "acme.example.com"
    assert container.directory.find_by_domain("ACME.example.com").id == project.id


def test_delete_cascades_and_evicts(container, make_input):
    project, _ = container.directory.onboard_project(make_input("acme"), "owner-1")
    container.billing.generate_monthly_invoice(project.id)
    with container.session_factory() as db:
        container.resolver.resolve(db, explicit_id=project.id)
    assert len(container.databases) == 1

    container.directory.delete_project(project.id, "owner-1")

    assert len(container.databases) == 0
    assert len(container.storages) == 0
    with pytest.raises(NotFound):
        container.directory.get_project(project.id)
    with container.session_factory() as db:
        assert db.query(Invoice).count() == 0
        assert db.query(Subscription).count() == 0


def test_list_projects_search_and_membership(container, make_input):
    container.directory.create_project(make_input("alpha"), "owner-1")
    container.directory.create_project(make_input("alpine"), "owner-2")
    container.directory.create_project(make_input("beta"), "owner-1")

    projects, total = container.directory.list_projects(search="alp")
    assert total == 2
    assert {p.slug for p in projects} == {"alpha", "alpine"}

    projects, total = container.directory.list_projects(member_id="owner-1", limit=1, page=2)
    assert total == 2
    assert len(projects) == 1


def test_membership_roles(container, make_input):
    project = container.directory.create_project(make_input("acme"), "owner-1")
    container.directory.add_member(project.id, "viewer-1", "viewer")

    assert container.directory.require_member(project.id, "viewer-1").role == "viewer"
    with pytest.raises(AccessDenied):
        container.directory.require_member(project.id, "viewer-1", admin=True)
    with pytest.raises(AccessDenied):
        container.directory.require_member(project.id, "stranger")
    with pytest.raises(InvalidProject):
        container.directory.add_member(project.id, "x", "superuser")
    assert [m.user_id for m in container.directory.list_members(project.id)] == ["owner-1", "viewer-1"]


def test_application_catalog_and_reactivation(container, make_input):
    project = container.directory.create_project(make_input("acme"), "owner-1")
    crm = container.directory.create_application("CRM", "crm", Decimal("15.00"))
    container.directory.create_application("Hidden", "hidden", Decimal("1.00"), listed=False)

    assert [a.slug for a in container.directory.list_available_applications()] == ["crm"]
    with pytest.raises(DuplicateProject):
        container.directory.create_application("CRM again", "crm", Decimal("1.00"))

    first = container.directory.add_application(project.id, crm.id)
    container.directory.remove_application(project.id, crm.id)
    with pytest.raises(NotFound):
        container.directory.remove_application(project.id, crm.id)

    again = container.directory.add_application(project.id, crm.id, custom_price=Decimal("9.99"))
    assert again.id == first.id
    assert again.is_active is True
    assert again.custom_price == Decimal("9.99")
