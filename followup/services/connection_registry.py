"""
Read-only access to tenant-owned databases.

The registry keeps one small SQLAlchemy pool per tenant connection and
hands out ``ReadOnlyClient`` objects, which can only select rows. Each new
DBAPI connection is switched into read-only mode right after it opens;
if the server refuses the directive we log a warning and keep going.
Decrypted passwords live only inside the engine URL and are never logged.
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from sqlalchemy import column, create_engine, event, inspect, literal_column, select, table, text
from sqlalchemy.engine import Engine, URL
from sqlalchemy.exc import DBAPIError, NoSuchTableError, OperationalError, ProgrammingError, SQLAlchemyError
from sqlalchemy.pool import NullPool

from ..core.config import settings, env_int
from ..core.crypto import decrypt_secret
from ..core.errors import (
    ConfigurationError,
    ConnectionUnavailableError,
    MappingError,
    UnsupportedConnectionError,
)
from ..models.connection import DbConnection


logger = logging.getLogger("connection_registry")

SQL_TYPES = ("POSTGRESQL", "MYSQL", "SQLITE")
CONNECTION_TYPES = SQL_TYPES + ("MONGODB", "FIREBASE")

READ_ONLY_DIRECTIVES = {
    "POSTGRESQL": ("SET SESSION CHARACTERISTICS AS TRANSACTION READ ONLY",),
    "MYSQL": ("SET SESSION TRANSACTION READ ONLY",),
    "SQLITE": ("PRAGMA query_only = ON",),
}


@dataclass(frozen=True)
class ConnectionConfig:
    type: str
    database: str
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    tenant_id: Optional[str] = None

    @classmethod
    def from_model(cls, connection: DbConnection) -> "ConnectionConfig":
        password = decrypt_secret(connection.password_encrypted) if connection.password_encrypted else None
        return cls(
            type=(connection.type or "").upper(),
            database=connection.database,
            host=connection.host,
            port=connection.port,
            username=connection.username,
            password=password,
            tenant_id=connection.tenant_id,
        )


@dataclass
class ConnectionTestResult:
    success: bool
    error: Optional[str] = None

    def as_dict(self) -> dict:
        return {"success": self.success, "error": self.error}


def resolve_sqlite_path(database: str, tenant_id: Optional[str]) -> Path:
    """Resolve a tenant's SQLite file inside ``TENANT_SQLITE_ROOT/<tenant_id>``.

    Relative paths are taken from the tenant directory. Anything that
    resolves elsewhere (another tenant, the ledger, ``..`` tricks, symlinks)
    is rejected.
    """
    raw_root = os.getenv("TENANT_SQLITE_ROOT") or settings.tenant_sqlite_root
    if not raw_root:
        raise ConfigurationError(
            "SQLite connections are disabled (TENANT_SQLITE_ROOT is not set)",
            field="database",
            code="SQLITE_DISABLED",
        )
    if not tenant_id:
        raise ConfigurationError("SQLite connections need a tenant", field="tenant_id", code="TENANT_REQUIRED")
    root = Path(raw_root).expanduser().resolve()
    tenant_dir = (root / tenant_id).resolve()
    if tenant_dir.parent != root:
        raise ConfigurationError(
            "Tenant id cannot be used as a SQLite directory",
            field="tenant_id",
            code="SQLITE_PATH_FORBIDDEN",
        )
    candidate = Path(database or "").expanduser()
    if not candidate.is_absolute():
        candidate = tenant_dir / candidate
    candidate = candidate.resolve()
    if tenant_dir not in candidate.parents:
        raise ConfigurationError(
            "SQLite path must stay inside the tenant's data directory",
            field="database",
            code="SQLITE_PATH_FORBIDDEN",
        )
    return candidate


def build_url(config: ConnectionConfig) -> URL:
    db_type = config.type.upper()
    if db_type == "POSTGRESQL":
        return URL.create(
            "postgresql+psycopg2",
            username=config.username,
            password=config.password,
            host=config.host or "localhost",
            port=config.port or 5432,
            database=config.database,
        )
    if db_type == "MYSQL":
        return URL.create(
            "mysql+pymysql",
            username=config.username,
            password=config.password,
            host=config.host or "localhost",
            port=config.port or 3306,
            database=config.database,
        )
    if db_type == "SQLITE":
        path = resolve_sqlite_path(config.database, config.tenant_id)
        return URL.create(
            "sqlite+pysqlite",
            database=f"file:{path}",
            query={"mode": "ro", "uri": "true"},
        )
    if db_type in CONNECTION_TYPES:
        raise UnsupportedConnectionError(f"{db_type} connections are not supported for follow-up rules")
    raise ConfigurationError(f"Unknown connection type '{config.type}'", field="type")


def _connect_args(db_type: str, connect_timeout: int, query_timeout: int) -> dict:
    if db_type == "POSTGRESQL":
        return {
            "connect_timeout": connect_timeout,
            "options": f"-c statement_timeout={query_timeout * 1000}",
        }
    if db_type == "MYSQL":
        return {"connect_timeout": connect_timeout, "read_timeout": query_timeout}
    return {"timeout": connect_timeout, "check_same_thread": False}


def _install_read_only_guard(engine: Engine, db_type: str, label: str) -> None:
    statements = READ_ONLY_DIRECTIVES.get(db_type, ())

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        try:
            for statement in statements:
                cursor.execute(statement)
            if db_type == "POSTGRESQL":
                dbapi_conn.commit()
        except Exception as exc:
            logger.warning("Read-only directive failed connection=%s type=%s err=%s", label, db_type, exc)
        finally:
            cursor.close()


def _split_resource(resource: str) -> tuple[Optional[str], str]:
    parts = [part.strip() for part in resource.split(".") if part.strip()]
    if len(parts) == 2:
        return parts[0], parts[1]
    if len(parts) == 1:
        return None, parts[0]
    raise MappingError(f"Invalid resource name '{resource}'", field="resource")


class ReadOnlyClient:
    """Select-only view over one tenant database."""

    def __init__(self, engine: Engine, db_type: str, label: str) -> None:
        self._engine = engine
        self._db_type = db_type
        self._label = label

    def __enter__(self) -> "ReadOnlyClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        return None

    def _wrap_error(self, exc: SQLAlchemyError, action: str) -> Exception:
        detail = str(getattr(exc, "orig", exc))
        # SQLite reports unknown tables and columns as OperationalError.
        if isinstance(exc, ProgrammingError) or "no such table" in detail or "no such column" in detail:
            return MappingError(f"{action} failed on connection {self._label}: {detail}")
        if isinstance(exc, (OperationalError, DBAPIError)):
            return ConnectionUnavailableError(f"{action} failed on connection {self._label}: {getattr(exc, 'orig', exc)}")
        return ConnectionUnavailableError(f"{action} failed on connection {self._label}: {exc}")

    def fetch_rows(self, resource: str, columns: tuple[str, ...] | list[str], limit: Optional[int] = None) -> list[dict]:
        schema, name = _split_resource(resource)
        source = table(name, *[column(c) for c in columns], schema=schema)
        stmt = select(*source.c)
        if limit:
            stmt = stmt.limit(limit)
        try:
            with self._engine.connect() as conn:
                if self._db_type == "POSTGRESQL":
                    conn.execute(text("SET TRANSACTION READ ONLY"))
                rows = [dict(row._mapping) for row in conn.execute(stmt)]
                conn.rollback()
        except SQLAlchemyError as exc:
            raise self._wrap_error(exc, f"Fetch from {resource}") from exc
        return rows

    def fetch_record(self, resource: str, key_column: str, value: str) -> Optional[dict]:
        """Return the first row whose ``key_column`` equals ``value``, or None."""
        schema, name = _split_resource(resource)
        source = table(name, column(key_column), schema=schema)
        stmt = select(literal_column("*")).select_from(source).where(source.c[key_column] == value).limit(1)
        try:
            with self._engine.connect() as conn:
                if self._db_type == "POSTGRESQL":
                    conn.execute(text("SET TRANSACTION READ ONLY"))
                row = conn.execute(stmt).first()
                conn.rollback()
        except SQLAlchemyError as exc:
            raise self._wrap_error(exc, f"Lookup in {resource}") from exc
        return dict(row._mapping) if row is not None else None

    def list_tables(self) -> list[str]:
        try:
            with self._engine.connect() as conn:
                inspector = inspect(conn)
                names = inspector.get_table_names() + inspector.get_view_names()
                conn.rollback()
        except SQLAlchemyError as exc:
            raise self._wrap_error(exc, "List tables") from exc
        return sorted(set(names))

    def list_columns(self, resource: str) -> list[dict]:
        schema, name = _split_resource(resource)
        try:
            with self._engine.connect() as conn:
                columns = inspect(conn).get_columns(name, schema=schema)
                conn.rollback()
        except NoSuchTableError as exc:
            raise MappingError(f"Table {resource} not found on connection {self._label}", field="resource") from exc
        except SQLAlchemyError as exc:
            raise self._wrap_error(exc, f"List columns of {resource}") from exc
        return [
            {"name": col["name"], "type": str(col["type"]), "nullable": bool(col.get("nullable", True))}
            for col in columns
        ]

    def ping(self) -> None:
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
                conn.rollback()
        except SQLAlchemyError as exc:
            raise self._wrap_error(exc, "Ping") from exc


def _fingerprint(connection: DbConnection) -> str:
    raw = "|".join(
        str(part or "")
        for part in (
            connection.type,
            connection.host,
            connection.port,
            connection.database,
            connection.username,
            connection.password_encrypted,
            connection.tenant_id,
        )
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class ConnectionRegistry:
    def __init__(
        self,
        *,
        pool_size: Optional[int] = None,
        connect_timeout: Optional[int] = None,
        query_timeout: Optional[int] = None,
    ) -> None:
        self.pool_size = pool_size or env_int("TENANT_DB_POOL_SIZE", settings.tenant_db_pool_size)
        self.connect_timeout = connect_timeout or env_int(
            "TENANT_DB_CONNECT_TIMEOUT_SEC", settings.tenant_db_connect_timeout_sec
        )
        self.query_timeout = query_timeout or env_int("TENANT_DB_QUERY_TIMEOUT_SEC", settings.tenant_db_query_timeout_sec)
        self._lock = threading.Lock()
        self._engines: dict[str, tuple[str, Engine]] = {}

    def _create_engine(self, config: ConnectionConfig, label: str, *, pooled: bool = True) -> Engine:
        url = build_url(config)
        kwargs: dict = {
            "future": True,
            "connect_args": _connect_args(config.type, self.connect_timeout, self.query_timeout),
        }
        if pooled:
            kwargs.update(
                pool_size=self.pool_size,
                max_overflow=0,
                pool_timeout=self.connect_timeout,
                pool_pre_ping=True,
                pool_recycle=1800,
            )
        else:
            kwargs["poolclass"] = NullPool
        engine = create_engine(url, **kwargs)
        _install_read_only_guard(engine, config.type, label)
        logger.info("Tenant engine created connection=%s url=%s", label, url.render_as_string(hide_password=True))
        return engine

    def get_engine(self, connection: DbConnection) -> Engine:
        fingerprint = _fingerprint(connection)
        with self._lock:
            cached = self._engines.get(connection.id)
            if cached and cached[0] == fingerprint:
                return cached[1]
            if cached:
                cached[1].dispose()
            engine = self._create_engine(ConnectionConfig.from_model(connection), connection.id)
            self._engines[connection.id] = (fingerprint, engine)
            return engine

    def get_read_only_client(self, connection: DbConnection) -> ReadOnlyClient:
        engine = self.get_engine(connection)
        return ReadOnlyClient(engine, (connection.type or "").upper(), connection.id)

    def _test(self, config: ConnectionConfig, label: str) -> ConnectionTestResult:
        engine: Optional[Engine] = None
        try:
            engine = self._create_engine(config, label, pooled=False)
            ReadOnlyClient(engine, config.type, label).ping()
        except (ConfigurationError, ConnectionUnavailableError) as exc:
            return ConnectionTestResult(success=False, error=exc.message)
        except Exception as exc:
            logger.warning("Connection test failed connection=%s err=%s", label, exc)
            return ConnectionTestResult(success=False, error=str(exc))
        finally:
            if engine is not None:
                engine.dispose()
        return ConnectionTestResult(success=True)

    def test_connection(self, connection: DbConnection) -> ConnectionTestResult:
        try:
            config = ConnectionConfig.from_model(connection)
        except ConfigurationError as exc:
            return ConnectionTestResult(success=False, error=exc.message)
        return self._test(config, connection.id)

    def test_connection_plain(
        self,
        *,
        db_type: str,
        database: str,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> ConnectionTestResult:
        config = ConnectionConfig(
            type=(db_type or "").upper(),
            database=database,
            host=host,
            port=port,
            username=username,
            password=password,
            tenant_id=tenant_id,
        )
        return self._test(config, f"{config.type}:{host or database}")

    def dispose(self, connection_id: str) -> None:
        with self._lock:
            cached = self._engines.pop(connection_id, None)
        if cached:
            cached[1].dispose()

    def dispose_all(self) -> None:
        with self._lock:
            engines = list(self._engines.values())
            self._engines.clear()
        for _, engine in engines:
            engine.dispose()


_registry: Optional[ConnectionRegistry] = None
_registry_lock = threading.Lock()


def get_connection_registry() -> ConnectionRegistry:
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = ConnectionRegistry()
        return _registry
