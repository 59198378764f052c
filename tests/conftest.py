import os
import uuid
from datetime import timedelta

import pytest

os.environ["ENV"] = "test"
# The in-memory test database is a single shared connection; keep rule evaluation on one thread
os.environ["AUTOMATION_RULE_WORKERS"] = "1"

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.db import Base, get_db, get_session_factory
from app.models.activity import CoachingSession, MealLog, Message, TrainingLog, WearableSync
from app.models.automation import AutomationRule, RuleScope, UserAutomationState
from app.models.coach_client import CoachClient
from app.models.device_token import DeviceToken  # noqa: F401
from app.models.notification import Notification  # noqa: F401
from app.models.user import User, UserRole
from app.services.auth import get_current_user
from app.services.automation import run_automation_pass
from tests.helpers import DROPOFF_STAGES, NOW

# Use SQLite in-memory for test DB
TEST_DATABASE_URL = "sqlite+pysqlite:///:memory:"
# For in-memory SQLite we must use a StaticPool so multiple connections share the
# same in-memory database during the test run. Otherwise each connection gets
# an isolated empty in-memory DB which breaks tests that use separate sessions
# (e.g. the engine's per-rule sessions vs test DB setup).
engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Dependency override
def override_get_db():
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db
app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal


@pytest.fixture(autouse=True)
def setup_test_db():
    # recreate schema for each test to ensure isolation
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_auth_override():
    yield
    app.dependency_overrides.pop(get_current_user, None)


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def db_session():
    # use the testing session factory bound to the in-memory SQLite engine
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


@pytest.fixture
def make_user(db_session):
    def _make(role=UserRole.client, first_name="Sam", last_name="Rivera", created_days_ago=60, **kwargs):
        created = NOW - timedelta(days=created_days_ago)
        user = User(
            id=kwargs.pop("id", str(uuid.uuid4())),
            email=kwargs.pop("email", f"user+{uuid.uuid4().hex[:8]}@example.com"),
            role=UserRole(role),
            first_name=first_name,
            last_name=last_name,
            created_at=created,
            updated_at=kwargs.pop("updated_at", created),
            **kwargs,
        )
        db_session.add(user)
        db_session.commit()
        return user
    return _make


@pytest.fixture
def client_user(make_user):
    return make_user(UserRole.client, first_name="Jamie", last_name="Lee")


@pytest.fixture
def coach_user(make_user):
    return make_user(UserRole.coach, first_name=None, last_name=None, display_name="Coach Dana")


@pytest.fixture
def admin_user(make_user):
    return make_user(UserRole.admin, first_name="Ada", last_name="Admin")


@pytest.fixture
def link_client(db_session):
    def _link(coach, client, status="active"):
        link = CoachClient(coach_id=coach.id, client_id=client.id, status=status)
        db_session.add(link)
        db_session.commit()
        return link
    return _link


@pytest.fixture
def make_rule(db_session):
    def _make(**overrides):
        fields = {
            "name": "Client drop-off rescue",
            "scope": RuleScope.platform,
            "trigger_type": "client_dropoff",
            "trigger_config": {},
            "target_audience": "clients",
            "audience_filters": {},
            "signals_enabled": ["training_logs"],
            "stages": DROPOFF_STAGES,
            "channels": ["in_app"],
        }
        fields.update(overrides)
        rule = AutomationRule(**fields)
        db_session.add(rule)
        db_session.commit()
        return rule
    return _make


@pytest.fixture
def log_activity(db_session):
    """Record a qualifying signal event ``days_ago`` days before ``at`` (default NOW)."""
    def _log(user, days_ago, source="training_logs", at=NOW):
        when = at - timedelta(days=days_ago)
        if source == "training_logs":
            row = TrainingLog(user_id=user.id, logged_at=when)
        elif source == "meal_logs":
            row = MealLog(user_id=user.id, logged_at=when)
        elif source == "message_replies":
            row = Message(sender_id=user.id, receiver_id=user.id, content="hi", created_at=when)
        elif source == "wearable_activity":
            row = WearableSync(user_id=user.id, provider="garmin", synced_at=when)
        elif source == "completed_sessions":
            row = CoachingSession(client_id=user.id, coach_id=user.id, status="completed",
                                  start_time=when, created_at=when, updated_at=when)
        else:
            raise ValueError(source)
        db_session.add(row)
        db_session.commit()
        return row
    return _log


@pytest.fixture
def run_pass():
    def _run(at=NOW, **kwargs):
        kwargs.setdefault("max_workers", 1)
        return run_automation_pass(TestingSessionLocal, now=at, **kwargs)
    return _run


@pytest.fixture
def get_state(db_session):
    def _get(rule, user):
        db_session.expire_all()
        return db_session.query(UserAutomationState).filter_by(rule_id=rule.id, user_id=user.id).first()
    return _get


@pytest.fixture
def as_user():
    """Authenticate API requests as the given user."""
    def _as(user):
        app.dependency_overrides[get_current_user] = lambda: user
        return user
    return _as


@pytest.fixture
def session_factory():
    return TestingSessionLocal
