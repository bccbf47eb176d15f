"""Pytest configuration and fixtures."""

import os
import secrets
from datetime import datetime, timedelta
from uuid import uuid4

import pytest

# Unique secrets per test run; in-memory database so nothing touches Postgres
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", f"test-only-{secrets.token_urlsafe(32)}")
os.environ.setdefault("INTERNAL_API_KEY", f"test-internal-{secrets.token_urlsafe(16)}")
os.environ.pop("NOTIFICATION_WEBHOOK_URL", None)

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.database import Base, get_db  # noqa: E402
from app.models.db_models import (  # noqa: E402
    UserDB, InheritancePlanDB, InheritanceTriggerDB, HeirDB, HeirVaultAccessDB,
    VaultDB, VaultItemDB, AccessStatus, TriggerReason, TriggerStatus,
)


NOW = datetime(2026, 1, 15, 12, 0, 0)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def db():
    """Session on a fresh in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


class Seed:
    """Row builders for engine tests. Every builder commits."""

    def __init__(self, session):
        self.db = session

    def _save(self, row):
        self.db.add(row)
        self.db.commit()
        return row

    def user(self, trigger_method="inactivity", trigger_settings=None, last_activity=None,
             scheduled_date=None, role="user", email=None, **kwargs):
        return self._save(UserDB(
            id=str(uuid4()),
            email=email or f"{uuid4().hex[:10]}@example.com",
            full_name="Test User",
            role=role,
            trigger_method=trigger_method,
            trigger_settings=trigger_settings if trigger_settings is not None else {"inactivity_days": 30},
            last_activity=last_activity,
            scheduled_date=scheduled_date,
            emergency_contact_email=kwargs.pop("emergency_contact_email", "contact@example.com"),
            **kwargs,
        ))

    def plan(self, user, is_active=True, is_triggered=False, triggered_at=None, **kwargs):
        return self._save(InheritancePlanDB(
            id=str(uuid4()),
            user_id=user.id,
            plan_name=kwargs.pop("plan_name", "Family Plan"),
            instructions_encrypted=kwargs.pop("instructions_encrypted", "enc:instructions"),
            is_active=is_active,
            is_triggered=is_triggered,
            triggered_at=triggered_at,
            **kwargs,
        ))

    def heir(self, plan, notify_on_activation=True, notification_delay_days=0, is_active=True):
        return self._save(HeirDB(
            id=str(uuid4()),
            user_id=plan.user_id,
            inheritance_plan_id=plan.id,
            full_name_encrypted="enc:heir-name",
            email_encrypted="enc:heir@example.com",
            notify_on_activation=notify_on_activation,
            notification_delay_days=notification_delay_days,
            is_active=is_active,
        ))

    def vault(self, user, category, death_settings=None, is_shared=False, name=None):
        return self._save(VaultDB(
            id=str(uuid4()),
            user_id=user.id,
            name=name or category,
            category=category,
            is_shared=is_shared,
            death_settings=death_settings or {},
        ))

    def item(self, vault):
        return self._save(VaultItemDB(
            id=str(uuid4()),
            vault_id=vault.id,
            user_id=vault.user_id,
            title_encrypted="enc:title",
        ))

    def access(self, heir, vault=None, item=None, status=AccessStatus.PENDING):
        return self._save(HeirVaultAccessDB(
            id=str(uuid4()),
            heir_id=heir.id,
            vault_id=vault.id if vault is not None else None,
            vault_item_id=item.id if item is not None else None,
            access_status=status,
        ))

    def trigger(self, plan, reason=TriggerReason.INACTIVITY, status=TriggerStatus.PENDING,
                requires_verification=False, triggered_at=NOW - timedelta(days=1), **kwargs):
        return self._save(InheritanceTriggerDB(
            id=str(uuid4()),
            inheritance_plan_id=plan.id,
            user_id=plan.user_id,
            trigger_reason=reason,
            status=status,
            requires_verification=requires_verification,
            triggered_at=triggered_at,
            **kwargs,
        ))


@pytest.fixture
def seed(db):
    return Seed(db)


@pytest.fixture
def client(db):
    """Test client whose requests share the test session."""
    from app.main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Build bearer headers for a user row."""
    from app.auth import create_access_token

    def _headers(user):
        token = create_access_token(user.id, user.email, user.role or "user")
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def internal_headers():
    from app.routers.scheduler import INTERNAL_API_KEY

    return {"X-Internal-Key": INTERNAL_API_KEY}
