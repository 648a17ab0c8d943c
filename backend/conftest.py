from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parent
sys.path.append(str(ROOT))

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["DATABASE_WRITE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ.pop("NOTIFICATIONS_PUSH_PROVIDER", None)
os.environ.pop("PUSH_PROVIDER", None)

from portaldb.database import Base, engine_kwargs  # noqa: E402
from portaldb.apps.accounts import models as account_models  # noqa: E402
from portaldb.apps.audit import models as audit_models  # noqa: E402
from portaldb.apps.breaklock import models as breaklock_models  # noqa: E402
from portaldb.apps.notifications import models as notification_models  # noqa: E402

TABLES = [
    account_models.Org.__table__,
    account_models.User.__table__,
    breaklock_models.CapacityConfig.__table__,
    breaklock_models.BreakRecord.__table__,
    audit_models.AuditEvent.__table__,
    notification_models.PushSubscription.__table__,
    notification_models.PushLog.__table__,
]


@pytest.fixture()
def db_session():
    engine = create_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=engine, tables=TABLES)
    TestingSession = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture()
def file_session_factory(tmp_path):
    """Sessionmaker over a file database, for tests that use several threads."""
    url = f"sqlite+pysqlite:///{tmp_path / 'portal.db'}"
    engine = create_engine(url, **engine_kwargs(url))
    Base.metadata.create_all(bind=engine, tables=TABLES)
    factory = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )
    try:
        yield factory
    finally:
        engine.dispose()
