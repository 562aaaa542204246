from sqlalchemy import create_engine, inspect

from followup.models import Base
from followup.scripts import run_migrations


def _tables_and_indexes(url: str) -> tuple[set, set]:
    engine = create_engine(url)
    try:
        inspector = inspect(engine)
        tables = set(inspector.get_table_names())
        indexes = {ix["name"] for ix in inspector.get_indexes("followup_deliveries")}
    finally:
        engine.dispose()
    return tables, indexes


def test_upgrade_creates_schema(tmp_path, monkeypatch):
    url = f"sqlite+pysqlite:///{tmp_path / 'migrated.db'}"
    monkeypatch.setenv("DATABASE_URL", url)

    run_migrations.run_migrations_to_head()

    tables, indexes = _tables_and_indexes(url)
    assert {"followup_connections", "followup_mappings", "followup_rules", "followup_deliveries", "alembic_version"} <= tables
    assert "uq_followup_deliveries_dedupe_active" in indexes


def test_create_all_database_is_stamped(tmp_path, monkeypatch):
    url = f"sqlite+pysqlite:///{tmp_path / 'bootstrapped.db'}"
    engine = create_engine(url)
    Base.metadata.create_all(bind=engine)
    engine.dispose()
    monkeypatch.setenv("DATABASE_URL", url)

    run_migrations.run_migrations_to_head()

    tables, _ = _tables_and_indexes(url)
    assert "alembic_version" in tables
