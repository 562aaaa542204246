import os
import sqlite3
import tempfile
from datetime import datetime, timezone
from pathlib import Path

# Isolated ledger DB and no background scheduler; must run before followup is imported.
DB_PATH = Path(tempfile.gettempdir()) / "followup_test_api.db"
if DB_PATH.exists():
    DB_PATH.unlink()

os.environ.setdefault("DATABASE_URL", f"sqlite+pysqlite:///{DB_PATH}")
os.environ.setdefault("AUTO_CREATE_DB", "true")
os.environ.setdefault("AUTO_RUN_MIGRATIONS", "false")
os.environ.setdefault("ENABLE_FOLLOWUP_CRON", "false")
os.environ.setdefault("FOLLOWUP_AUTH_DISABLED", "true")
os.environ.setdefault("FOLLOWUP_JWT_SECRET", "test-jwt-secret-strong-value-123456")
os.environ.setdefault("FOLLOWUP_RULE_DELAY_SEC", "0")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from followup.models import Base
from followup.models.connection import DbConnection
from followup.models.followup_rule import FollowupRule
from followup.models.mapping import FieldMapping
from followup.services.connection_registry import ConnectionRegistry
from followup.services.delivery_ledger import SendOutcome
from followup.services.rule_runner import RuleRunner


NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

LEAD_FIELDS = {
    "pk": "id",
    "contact": "email",
    "status": "replyStatus",
    "date": "lastEmailSent",
    "name": "firstName",
}

NO_REPLY_CONDITION = {
    "all": [
        {"equals": {"field": "status", "value": "NoReply"}},
        {"olderThanDays": {"field": "date", "days": 3}},
    ]
}

EMAIL_ACTION = {
    "channel": "email",
    "subject": "Checking in, {firstName}",
    "messageTemplate": "Hi {{ firstName | fallback('there') }}, any update since {{ lastEmailSent | format_date }}?",
}

DEFAULT_LEADS = [
    (1, "ana@example.com", "NoReply", "2026-10-10T09:00:00Z", "Ana"),
    (2, "ben@example.com", "Replied", "2026-10-01T09:00:00Z", "Ben"),
    (3, "cho@example.com", "NoReply", "2026-10-17T09:00:00Z", "Cho"),
]


class RecordingSender:
    """Stands in for ChannelSender; records every call."""

    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.calls: list[dict] = []

    def send(self, channel, contact, subject, body, *, sender=None) -> SendOutcome:
        self.calls.append({"channel": channel, "contact": contact, "subject": subject, "body": body})
        if self.succeed:
            return SendOutcome(success=True, provider_message_id=f"msg-{len(self.calls)}")
        return SendOutcome(success=False, error="gateway timeout")


@pytest.fixture
def ledger_factory(tmp_path):
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)
    yield factory
    engine.dispose()


@pytest.fixture(autouse=True)
def sqlite_root(tmp_path, monkeypatch) -> Path:
    root = tmp_path / "tenant-files"
    root.mkdir()
    monkeypatch.setenv("TENANT_SQLITE_ROOT", str(root))
    return root


@pytest.fixture
def make_tenant_db(sqlite_root):
    def _make(rows=None, name: str = "tenant.db", tenant_id: str = "tenant-a") -> Path:
        path = sqlite_root / tenant_id / name
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(path)
        try:
            conn.execute(
                "CREATE TABLE leads (id INTEGER PRIMARY KEY, email TEXT, replyStatus TEXT, "
                "lastEmailSent TEXT, firstName TEXT)"
            )
            conn.executemany("INSERT INTO leads VALUES (?, ?, ?, ?, ?)", DEFAULT_LEADS if rows is None else rows)
            conn.commit()
        finally:
            conn.close()
        return path

    return _make


@pytest.fixture
def registry():
    reg = ConnectionRegistry(pool_size=2, connect_timeout=2, query_timeout=5)
    yield reg
    reg.dispose_all()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def make_rule(ledger_factory):
    def _make(
        database: str,
        *,
        tenant_id: str = "tenant-a",
        condition=None,
        action=None,
        fields=None,
        active: bool = True,
        name: str = "No reply after 3 days",
        resource: str = "leads",
    ) -> str:
        with ledger_factory() as db:
            connection = DbConnection(tenant_id=tenant_id, name="crm", type="SQLITE", database=str(database))
            db.add(connection)
            db.flush()
            mapping = FieldMapping(
                tenant_id=tenant_id,
                connection_id=connection.id,
                resource=resource,
                fields=dict(fields or LEAD_FIELDS),
                validated_at=NOW,
            )
            db.add(mapping)
            db.flush()
            rule = FollowupRule(
                tenant_id=tenant_id,
                mapping_id=mapping.id,
                name=name,
                active=active,
                condition=condition or NO_REPLY_CONDITION,
                action=action or EMAIL_ACTION,
            )
            db.add(rule)
            db.commit()
            return rule.id

    return _make


@pytest.fixture
def runner(ledger_factory, registry, sender):
    return RuleRunner(
        ledger_factory,
        registry,
        sender,
        rule_delay_sec=0,
        send_delay_sec=0,
        clock=lambda: NOW,
    )
