"""
Shared pytest fixtures.

Provides:
    - app: Flask application on a per-test SQLite file (post-processing inline)
    - db: a session bound to that database, closed after the test
    - seed: tenant, RBAC and users (ids only; re-load inside your own session)
    - docs / workflows / campaigns: services wired with test collaborators
    - notifier: recording notification sink
    - client: Flask test client
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import pytest
from werkzeug.security import generate_password_hash

from app.cdms import create_app
from app.cdms.audit import AuditSink
from app.cdms.constants import PERMISSIONS
from app.cdms.db import session_scope
from app.cdms.extraction import TextExtractor
from app.cdms.models import Base, Permission, Role, Tenant, User
from app.cdms.modules.acknowledgments.service import CampaignService
from app.cdms.modules.approvals.service import WorkflowService
from app.cdms.modules.document_control.service import DocumentService
from app.cdms.notifications import NotificationSink
from app.cdms.rbac import PermissionChecker
from app.cdms.scanning import NullScanEngine
from app.cdms.storage import LocalStorage

PASSWORD = "pw-test-123"


class RecordingNotifier(NotificationSink):
    def __init__(self) -> None:
        self.sent: list[tuple[int, int, dict]] = []

    def notify(self, user_id, document_id, context=None):
        self.sent.append((user_id, document_id, dict(context or {})))

    def user_ids(self, kind: str | None = None) -> list[int]:
        return [uid for uid, _doc, ctx in self.sent if kind is None or ctx.get("kind") == kind]


@dataclass
class Seed:
    tenant_id: int
    other_tenant_id: int
    users: dict[str, int] = field(default_factory=dict)


@pytest.fixture()
def app(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("POSTPROCESS_MODE", "inline")
    monkeypatch.setenv("AV_BACKEND", "none")
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.delenv("APPROVAL_STRICT_SEQUENTIAL", raising=False)

    application = create_app()
    application.config["TESTING"] = True
    Base.metadata.create_all(application.extensions["sqlalchemy_engine"])
    yield application
    application.extensions["sqlalchemy_engine"].dispose()


@pytest.fixture()
def seed(app) -> Seed:
    """
    Tenant "acme" with five active users (admin, author, alice, bob, dave) and one
    inactive user (eve); tenant "other" with a single user.
    """
    with session_scope(app) as s:
        tenant = Tenant(name="Acme", slug="acme")
        other = Tenant(name="Other", slug="other")
        s.add_all([tenant, other])
        s.flush()

        perms = {key: Permission(key=key, name=name) for key, name in PERMISSIONS.items()}
        s.add_all(perms.values())

        role_admin = Role(key="admin", name="Administrator", permissions=list(perms.values()))
        role_author = Role(
            key="author",
            name="Author",
            permissions=[perms[k] for k in ("docs.view", "docs.create", "docs.edit", "docs.submit", "docs.download")],
        )
        role_approver = Role(key="approver", name="Approver", permissions=[perms["docs.view"]])
        s.add_all([role_admin, role_author, role_approver])

        def mk(email: str, tenant_id: int, roles: list[Role], department: str | None, active: bool = True) -> User:
            u = User(
                tenant_id=tenant_id,
                email=email,
                full_name=email.split("@")[0].title(),
                department=department,
                password_hash=generate_password_hash(PASSWORD),
                is_active=active,
                roles=roles,
            )
            s.add(u)
            return u

        users = {
            "admin": mk("admin@acme.test", tenant.id, [role_admin], "QA"),
            "author": mk("author@acme.test", tenant.id, [role_author], "QA"),
            "alice": mk("alice@acme.test", tenant.id, [role_approver], "QA"),
            "bob": mk("bob@acme.test", tenant.id, [role_approver], "Operations"),
            "dave": mk("dave@acme.test", tenant.id, [], "Operations"),
            "eve": mk("eve@acme.test", tenant.id, [role_approver], "Operations", active=False),
            "outsider": mk("outsider@other.test", other.id, [role_admin], "QA"),
        }
        s.flush()
        return Seed(tenant_id=tenant.id, other_tenant_id=other.id, users={k: u.id for k, u in users.items()})


@pytest.fixture()
def db(app):
    s = app.extensions["sqlalchemy_sessionmaker"]()
    yield s
    s.rollback()
    s.close()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def storage(tmp_path: Path) -> LocalStorage:
    return LocalStorage(root=tmp_path / "blobs")


@pytest.fixture()
def docs(storage) -> DocumentService:
    return DocumentService(
        permissions=PermissionChecker(),
        audit=AuditSink(),
        storage=storage,
        extractor=TextExtractor(),
        scanner=NullScanEngine(),
    )


@pytest.fixture()
def workflows(notifier) -> WorkflowService:
    return WorkflowService(permissions=PermissionChecker(), audit=AuditSink(), notifier=notifier, strict_sequential=True)


@pytest.fixture()
def campaigns(notifier) -> CampaignService:
    return CampaignService(permissions=PermissionChecker(), audit=AuditSink(), notifier=notifier)


@pytest.fixture()
def client(app):
    return app.test_client()
