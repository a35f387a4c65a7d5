import sys
from pathlib import Path
import os

from werkzeug.security import generate_password_hash
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from contextlib import contextmanager

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.cdms.constants import PERMISSIONS
from app.cdms.models import Permission, Role, Tenant, User

# role key -> (display name, permission keys)
ROLES = {
    "admin": ("Administrator", tuple(PERMISSIONS)),
    "author": ("Document author", ("docs.view", "docs.create", "docs.edit", "docs.download", "docs.submit")),
    "approver": ("Approver", ("docs.view", "docs.download")),
    "reader": ("Reader", ("docs.view", "docs.download")),
}


@contextmanager
def _session_scope(database_url: str):
    engine = create_engine(database_url, future=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()


def seed(s: Session, *, tenant_slug: str, tenant_name: str, admin_email: str, admin_password: str) -> User:
    """
    Idempotent seed of tenant, permissions, roles and the admin user.
    Does NOT overwrite an existing admin user's password.
    """
    tenant = s.query(Tenant).filter(Tenant.slug == tenant_slug).one_or_none()
    if not tenant:
        tenant = Tenant(slug=tenant_slug, name=tenant_name)
        s.add(tenant)
        s.flush()

    perms: dict[str, Permission] = {}
    for key, name in PERMISSIONS.items():
        p = s.query(Permission).filter(Permission.key == key).one_or_none()
        if not p:
            p = Permission(key=key, name=name)
            s.add(p)
        perms[key] = p

    roles: dict[str, Role] = {}
    for key, (name, perm_keys) in ROLES.items():
        role = s.query(Role).filter(Role.key == key).one_or_none()
        if not role:
            role = Role(key=key, name=name)
            s.add(role)
        for pk in perm_keys:
            if perms[pk] not in role.permissions:
                role.permissions.append(perms[pk])
        roles[key] = role

    user = s.query(User).filter(User.email == admin_email).one_or_none()
    if not user:
        user = User(
            tenant_id=tenant.id,
            email=admin_email,
            full_name="Administrator",
            password_hash=generate_password_hash(admin_password),
            is_active=True,
        )
        s.add(user)
    if roles["admin"] not in user.roles:
        user.roles.append(roles["admin"])
    s.flush()
    return user


def seed_only(*, database_url: str | None = None) -> None:
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    tenant_slug = (os.environ.get("TENANT_SLUG") or "default").strip().lower()
    tenant_name = (os.environ.get("TENANT_NAME") or "Default").strip()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///cdms.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with _session_scope(db_url) as s:
        seed(s, tenant_slug=tenant_slug, tenant_name=tenant_name, admin_email=admin_email, admin_password=admin_password)

    print("Initialized database (seed_only).")
    print(f"Tenant: {tenant_slug}")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
