import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Generator, Iterable, Optional

import pytest

os.environ.setdefault("DATABASE_ALLOW_NON_POSTGRES", "1")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("DATABASE_URL", os.getenv("DATABASE_URL", os.environ["TEST_DATABASE_URL"]))
os.environ.setdefault("SHARE_ARGON_TIME_COST", "1")
os.environ.setdefault("SHARE_ARGON_MEMORY_COST", "8")
os.environ.setdefault("SHARE_PUBLIC_BASE_URL", "https://app.example.test")

from sqlalchemy import create_engine
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.engine import Engine
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import database as database_module
from database import Base

import models  # noqa: F401  (registers metadata)
from models.decision import Decision, DecisionOption
from services.share_access_gate import ShareAccessGate, ShareTokenOptions
from services.share_config import ShareSettings
from services.share_store import AccessLogStore, ShareTokenRecord, ShareTokenStore


# PostgreSQL-only column types render as TEXT on SQLite.
@compiles(JSONB, "sqlite")  # type: ignore[misc]
def _compile_jsonb_sqlite(_element, _compiler, **_kw):  # pragma: no cover - sqlite compat
    return "TEXT"


@compiles(UUID, "sqlite")  # type: ignore[misc]
def _compile_uuid_sqlite(_element, _compiler, **_kw):  # pragma: no cover - sqlite compat
    return "TEXT"


class FrozenClock:
    """Mutable clock so tests can move time across expiry boundaries."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    test_engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    original_session_local = database_module.SessionLocal
    database_module.SessionLocal = sessionmaker(bind=test_engine, autoflush=False, expire_on_commit=False)
    try:
        yield test_engine
    finally:
        database_module.SessionLocal = original_session_local
        Base.metadata.drop_all(bind=test_engine)
        test_engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Generator[Session, None, None]:
    session = database_module.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def share_settings() -> ShareSettings:
    return ShareSettings.load()


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture()
def gate(db_session: Session, share_settings: ShareSettings, clock: FrozenClock) -> ShareAccessGate:
    return ShareAccessGate(
        ShareTokenStore(db_session),
        AccessLogStore(db_session, ip_hash_salt="test-salt"),
        settings=share_settings,
        clock=clock,
    )


@pytest.fixture()
def owner_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def decision(db_session: Session, owner_id: uuid.UUID) -> Decision:
    record = Decision(id=uuid.uuid4(), title="Kitchen countertop", status="pending", created_by=owner_id)
    db_session.add(record)
    db_session.flush()
    for title in ("Quartz", "Granite"):
        db_session.add(DecisionOption(id=uuid.uuid4(), decision_id=record.id, title=title))
    db_session.commit()
    return record


@pytest.fixture()
def make_token(gate: ShareAccessGate, decision: Decision, owner_id: uuid.UUID) -> Callable[..., ShareTokenRecord]:
    def _make(
        *,
        passcode: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        allowed_actions: Optional[Iterable[str]] = None,
    ) -> ShareTokenRecord:
        return gate.issue_token(
            decision_id=decision.id,
            created_by=owner_id,
            options=ShareTokenOptions(passcode=passcode, expires_at=expires_at, allowed_actions=allowed_actions),
        )

    return _make
