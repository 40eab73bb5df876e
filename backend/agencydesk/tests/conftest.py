"""
Root test configuration and fixtures.

Every test gets a fresh SQLite in-memory database (StaticPool, so all
sessions share one connection) wrapped in a Database handle, and an app
built with create_app(settings=..., database=...).

Factories:
- make_user / make_agency / add_member: committed rows
- login: session token headers for a user, optionally in an agency
- make_ctx: AgencyAuthContext resolved through AgencyContextResolver
"""

import os
from typing import Generator, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ.setdefault("ENV", "test")

from agencydesk.auth.agency_context import AgencyAuthContext, AgencyContextResolver
from agencydesk.auth.credentials import hash_pin
from agencydesk.auth.session_validator import SESSION_TOKEN_HEADER, SessionIdentity, create_session
from agencydesk.config import Settings
from agencydesk.constants.permissions import (
    AgencyRole,
    MemberStatus,
    SystemRole,
    generate_agency_slug,
    get_default_permissions,
)
from agencydesk.database.session import Database
from agencydesk.db_base import Base
from agencydesk.models import Agency, AgencyMember, User
from agencydesk.platform.field_encryption import FieldEncryptor
from agencydesk.platform.security_monitor import SecurityMonitor

CRON_SECRET = "cron-secret-for-tests-0123456789"
SERVICE_API_KEY = "service-key-for-tests-0123456789"
FIELD_ENCRYPTION_KEY = "a3f1c9e07b5d2468ac13e5f70b9d2c4e6a8f0b1d3c5e7f9a0b2c4d6e8f0a1b3c"
DEFAULT_PIN = "4829"


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def database(db_engine) -> Database:
    return Database(public_engine=db_engine)


@pytest.fixture
def db_session(database) -> Generator[Session, None, None]:
    session = database.service_session()
    yield session
    session.close()


# =============================================================================
# Application
# =============================================================================

@pytest.fixture
def settings() -> Settings:
    return Settings(
        env="test",
        multi_tenancy_enabled=True,
        cron_secret=CRON_SECRET,
        service_api_key=SERVICE_API_KEY,
        field_encryption_key=FIELD_ENCRYPTION_KEY,
        cookie_secure=False,
    )


@pytest.fixture
def monitor(database) -> SecurityMonitor:
    return SecurityMonitor(database)


@pytest.fixture
def encryptor() -> FieldEncryptor:
    return FieldEncryptor(FIELD_ENCRYPTION_KEY)


@pytest.fixture
def app(settings, database):
    from main import create_app
    return create_app(settings=settings, database=database)


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture
def make_user(db_session):
    def _make(
        name: str,
        pin: str = DEFAULT_PIN,
        global_role: Optional[str] = None,
        email: Optional[str] = None,
    ) -> User:
        user = User(
            name=name,
            credential_hash=hash_pin(pin),
            role=SystemRole.USER.value,
            global_role=global_role,
            email=email,
        )
        db_session.add(user)
        db_session.commit()
        return user
    return _make


@pytest.fixture
def make_agency(db_session):
    def _make(name: str, max_users: int = 50, is_active: bool = True) -> Agency:
        agency = Agency(
            name=name,
            slug=generate_agency_slug(name),
            max_users=max_users,
            is_active=is_active,
        )
        db_session.add(agency)
        db_session.commit()
        return agency
    return _make


@pytest.fixture
def add_member(db_session):
    def _add(
        user: User,
        agency: Agency,
        role: AgencyRole = AgencyRole.STAFF,
        status: MemberStatus = MemberStatus.ACTIVE,
        is_default: bool = False,
        permissions: Optional[dict] = None,
    ) -> AgencyMember:
        member = AgencyMember.create(
            user_id=user.id,
            agency_id=agency.id,
            role=role,
            is_default_agency=is_default,
        )
        member.status = MemberStatus(status).value
        if permissions is not None:
            member.permissions = {**get_default_permissions(role), **permissions}
        db_session.add(member)
        db_session.commit()
        return member
    return _add


@pytest.fixture
def login(db_session, settings):
    """Create a session for user (current agency set) and return request headers."""
    def _login(user: User, agency: Optional[Agency] = None) -> dict:
        token, _ = create_session(
            db_session,
            user,
            settings,
            agency_id=agency.id if agency is not None else None,
        )
        return {SESSION_TOKEN_HEADER: token}
    return _login


@pytest.fixture
def make_ctx(db_session, settings):
    def _make(user: User, agency: Optional[Agency] = None) -> AgencyAuthContext:
        identity = SessionIdentity(
            user_id=user.id,
            user_name=user.name,
            user_role=user.role,
            global_role=user.global_role,
            agency_id=agency.id if agency is not None else None,
        )
        return AgencyContextResolver(db_session, settings).resolve(identity)
    return _make


# =============================================================================
# A populated agency (owner, manager, staff) and a second, unrelated agency
# =============================================================================

@pytest.fixture
def agency(make_agency) -> Agency:
    return make_agency("Smith Insurance")


@pytest.fixture
def other_agency(make_agency) -> Agency:
    return make_agency("Jones Brokerage")


@pytest.fixture
def owner(make_user, add_member, agency) -> User:
    user = make_user("Olivia")
    add_member(user, agency, AgencyRole.OWNER, is_default=True)
    return user


@pytest.fixture
def manager(make_user, add_member, agency) -> User:
    user = make_user("Marcus")
    add_member(user, agency, AgencyRole.MANAGER, is_default=True)
    return user


@pytest.fixture
def staff(make_user, add_member, agency) -> User:
    user = make_user("Sam")
    add_member(user, agency, AgencyRole.STAFF, is_default=True)
    return user


@pytest.fixture
def other_owner(make_user, add_member, other_agency) -> User:
    user = make_user("Jordan")
    add_member(user, other_agency, AgencyRole.OWNER, is_default=True)
    return user


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
    config.addinivalue_line("markers", "slow: mark test as slow-running")
