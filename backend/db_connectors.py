"""
db_connectors.py - Unified database connection layer
Supports: MySQL (PyMySQL), PostgreSQL (psycopg2)

Architecture
------------
BaseConnector        connection lifecycle, query timing, table export/DDL
MySQLConnector       information_schema catalog queries, backtick quoting
PostgreSQLConnector  pg_catalog queries, ANSI double-quote quoting
get_connector()      factory keyed on DBType
fetch_databases_with_tables()
                     bounded per-database fan-out

Every connector is meant to live for a single request:

    with get_connector(config, database="shop") as conn:
        tables = conn.get_table_info(search="order")

The connection is closed when the block exits, whether or not it raised.
"""

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

import psycopg2
import psycopg2.extras
import pymysql
import pymysql.cursors

from app_logging import get_logger
from db_errors import DatabaseConnectionError


# ---------------------------------------------------------------------------
# Enums & config
# ---------------------------------------------------------------------------

class DBType(str, Enum):
    MYSQL       = "mysql"
    POSTGRESQL  = "postgresql"


@dataclass
class ConnectionConfig:
    db_type: DBType
    hostname: str
    username: str
    password: str = ""
    port: Optional[int] = None
    connect_timeout: int = 10


# ---------------------------------------------------------------------------
# Result records
# ---------------------------------------------------------------------------

@dataclass
class DatabaseInfo:
    name: str
    size: str
    tables: Optional[List[str]] = None


@dataclass
class TableInfo:
    name: str
    rows: int
    size: str
    created: str
    updated: str
    engine: str
    comment: str
    type: str


@dataclass
class ColumnInfo:
    name: str
    type: str
    nullable: bool


@dataclass
class RowsResult:
    """A statement that produced a result set."""
    columns: List[str]
    rows: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class AffectedResult:
    """A statement that only reports how many rows it touched."""
    affected_rows: int


StatementResult = Union[RowsResult, AffectedResult]


@dataclass
class QueryResult:
    columns: List[str]
    rows: List[Dict[str, Any]]
    row_count: int
    execution_time: float  # milliseconds

    @classmethod
    def from_outcome(cls, outcome: StatementResult, execution_time: float) -> "QueryResult":
        if isinstance(outcome, AffectedResult):
            columns = ["affectedRows"]
            rows = [{"affectedRows": outcome.affected_rows}]
        else:
            columns, rows = outcome.columns, outcome.rows
        return cls(columns=columns, rows=rows, row_count=len(rows), execution_time=execution_time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "columns":       self.columns,
            "rows":          self.rows,
            "rowCount":      self.row_count,
            "executionTime": self.execution_time,
        }


def _as_text(value: Any) -> str:
    """Render an optional catalog value (str, datetime, None) as a string."""
    if value is None:
        return ""
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def _cell(value: Any) -> Any:
    """Binary column values (BLOB, BINARY, bytea) as lowercase hex; anything else unchanged."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return value


def _row(record) -> Dict[str, Any]:
    return {k: _cell(v) for k, v in dict(record).items()}


# ---------------------------------------------------------------------------
# Base connector: lifecycle + engine-neutral operations
# ---------------------------------------------------------------------------

class BaseConnector:
    """
    Abstract base for both engine connectors.

    Subclasses open the driver connection in connect(), hand out cursors
    from _cursor(), and implement the catalog queries.  Anything that is
    plain SQL over a quoted identifier (export scan, rename, drop) lives
    here and only relies on _quote() and _RENAME_SQL.
    """

    default_port: int = 0
    _RENAME_SQL = "ALTER TABLE {old} RENAME TO {new}"

    def __init__(self, config: ConnectionConfig, database: Optional[str] = None):
        self.config = config
        self.database = database
        self._conn = None

    @property
    def port(self) -> int:
        return self.config.port or self.default_port

    # ── Connection lifecycle ────────────────────────────────────────────────

    def connect(self) -> "BaseConnector":
        raise NotImplementedError

    def disconnect(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.close()
        except Exception as exc:
            get_logger("db_connectors").warning(
                "error closing connection", host=self.config.hostname, error=str(exc)
            )
        finally:
            self._conn = None

    def __enter__(self) -> "BaseConnector":
        return self.connect()

    def __exit__(self, *exc: object) -> None:
        self.disconnect()

    def _cursor(self):
        raise NotImplementedError

    # ── Query execution ─────────────────────────────────────────────────────

    def execute(self, sql: str, params=None) -> List[Dict]:
        """Run SQL and return a list of row dicts (empty for statements without a result set)."""
        with self._cursor() as cur:
            cur.execute(sql, params)
            if cur.description is None:
                return []
            return [dict(r) for r in cur.fetchall()]

    def run_statement(self, sql: str) -> StatementResult:
        """Execute a free-text statement verbatim and return its outcome."""
        raise NotImplementedError

    def run_query(self, sql: str) -> QueryResult:
        """
        Execute `sql` and time it.  Only statement execution and result
        fetch are measured; connection setup has already happened.
        No statement timeout is applied.
        """
        log = get_logger("db_connectors")
        log.debug("executing query", engine=self.config.db_type.value, database=self.database)
        start = time.perf_counter()
        outcome = self.run_statement(sql)
        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
        result = QueryResult.from_outcome(outcome, elapsed_ms)
        log.debug("query complete", duration_ms=elapsed_ms, row_count=result.row_count)
        return result

    # ── Catalog, implemented by each subclass ───────────────────────────────

    def list_databases(self) -> List[DatabaseInfo]:
        raise NotImplementedError

    def list_tables(self) -> List[str]:
        """Table names of the database this connector is scoped to."""
        raise NotImplementedError

    def get_table_info(self, search: Optional[str] = None) -> List[TableInfo]:
        raise NotImplementedError

    def get_columns(self, table: str) -> List[ColumnInfo]:
        raise NotImplementedError

    # ── Identifier quoting, subclasses may override ─────────────────────────

    def _quote(self, name: str) -> str:
        """Wrap an identifier in double-quotes (ANSI SQL), doubling embedded quotes."""
        return '"' + name.replace('"', '""') + '"'

    # ── Whole-table operations ──────────────────────────────────────────────

    def fetch_table(self, table: str) -> Tuple[List[str], List[Dict]]:
        """Read every row of `table`.  No LIMIT: the result is fully materialised."""
        with self._cursor() as cur:
            cur.execute(f"SELECT * FROM {self._quote(table)}")
            columns = [d[0] for d in cur.description or []]
            return columns, [_row(r) for r in cur.fetchall()]

    def rename_table(self, old_name: str, new_name: str) -> None:
        self.execute(self._RENAME_SQL.format(old=self._quote(old_name), new=self._quote(new_name)))

    def drop_table(self, table: str) -> None:
        self.execute(f"DROP TABLE {self._quote(table)}")


# ---------------------------------------------------------------------------
# MySQL connector
# ---------------------------------------------------------------------------

class MySQLConnector(BaseConnector):
    """
    MySQL via PyMySQL.

    * Catalog data comes from information_schema; sizes and row counts are
      the server's own estimates (TABLE_ROWS, DATA_LENGTH), never COUNT(*).
    * Identifiers are quoted with backticks.
    * The connection runs in autocommit mode, so DML from the query
      runner is persisted immediately.
    """

    default_port = 3306
    _RENAME_SQL = "RENAME TABLE {old} TO {new}"
    _SYSTEM_SCHEMAS = ("information_schema", "mysql", "performance_schema", "sys")

    def connect(self) -> "MySQLConnector":
        try:
            self._conn = pymysql.connect(
                host=self.config.hostname,
                port=self.port,
                user=self.config.username,
                password=self.config.password or "",
                database=self.database,
                connect_timeout=self.config.connect_timeout,
                charset="utf8mb4",
                autocommit=True,
                cursorclass=pymysql.cursors.DictCursor,
            )
        except pymysql.err.MySQLError as exc:
            raise DatabaseConnectionError(str(exc)) from exc
        return self

    def _cursor(self):
        return self._conn.cursor()

    def _quote(self, name: str) -> str:
        return "`" + name.replace("`", "``") + "`"

    def run_statement(self, sql: str) -> StatementResult:
        with self._cursor() as cur:
            cur.execute(sql)
            if cur.description:
                columns = [d[0] for d in cur.description]
                return RowsResult(columns=columns, rows=[_row(r) for r in cur.fetchall()])
            # INSERT / UPDATE / DELETE / DDL
            return AffectedResult(affected_rows=cur.rowcount)

    def list_databases(self) -> List[DatabaseInfo]:
        rows = self.execute("""
            SELECT
                table_schema AS database_name,
                ROUND(SUM(data_length + index_length) / 1024 / 1024, 2) AS size_mb
            FROM information_schema.tables
            GROUP BY table_schema
        """)
        return [
            DatabaseInfo(
                name=r["database_name"],
                size=f"{r['size_mb']} MB" if r["size_mb"] else "0 MB",
            )
            for r in rows
            if r["database_name"] not in self._SYSTEM_SCHEMAS
        ]

    def list_tables(self) -> List[str]:
        rows = self.execute(
            "SELECT table_name AS table_name FROM information_schema.tables "
            "WHERE table_schema = %s AND table_type = 'BASE TABLE'",
            [self.database],
        )
        return [r["table_name"] for r in rows]

    def get_table_info(self, search: Optional[str] = None) -> List[TableInfo]:
        sql = """
            SELECT
                TABLE_NAME                                  AS name,
                TABLE_ROWS                                  AS `rows`,
                ROUND((DATA_LENGTH + INDEX_LENGTH) / 1024, 2) AS size_kb,
                CREATE_TIME                                 AS created,
                UPDATE_TIME                                 AS updated,
                ENGINE                                      AS engine,
                TABLE_COMMENT                               AS comment,
                TABLE_TYPE                                  AS type
            FROM information_schema.TABLES
            WHERE TABLE_SCHEMA = %s
        """
        params: List[str] = [self.database]
        if search and search.strip():
            sql += """
              AND (TABLE_NAME LIKE %s
                   OR TABLE_COMMENT LIKE %s
                   OR ENGINE LIKE %s
                   OR TABLE_TYPE LIKE %s)
            """
            params += [f"%{search.strip()}%"] * 4
        sql += " ORDER BY TABLE_NAME"

        return [
            TableInfo(
                name=r["name"],
                rows=int(r["rows"] or 0),
                size=f"{r['size_kb']} KiB" if r["size_kb"] else "0 KiB",
                created=_as_text(r["created"]),
                updated=_as_text(r["updated"]),
                engine=r["engine"] or "",
                comment=r["comment"] or "",
                type="Table" if r["type"] == "BASE TABLE" else (r["type"] or ""),
            )
            for r in self.execute(sql, params)
        ]

    def get_columns(self, table: str) -> List[ColumnInfo]:
        rows = self.execute(
            """
            SELECT COLUMN_NAME AS name,
                   DATA_TYPE   AS type,
                   IS_NULLABLE AS nullable
            FROM information_schema.COLUMNS
            WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s
            ORDER BY ORDINAL_POSITION
            """,
            [self.database, table],
        )
        return [ColumnInfo(name=r["name"], type=r["type"], nullable=r["nullable"] == "YES") for r in rows]


# ---------------------------------------------------------------------------
# PostgreSQL connector
# ---------------------------------------------------------------------------

class PostgreSQLConnector(BaseConnector):
    """
    PostgreSQL via psycopg2.

    Row counts in get_table_info() are pg_class.reltuples, the planner's
    estimate.  They can be stale, or zero for tables that were never
    analysed; callers should treat them as approximate.
    """

    default_port = 5432

    def connect(self) -> "PostgreSQLConnector":
        params = dict(
            host=self.config.hostname,
            port=self.port,
            user=self.config.username,
            password=self.config.password or "",
            connect_timeout=self.config.connect_timeout,
        )
        # Without a database libpq connects to the one named after the user.
        if self.database:
            params["dbname"] = self.database
        try:
            self._conn = psycopg2.connect(**params)
        except psycopg2.Error as exc:
            raise DatabaseConnectionError(str(exc)) from exc
        self._conn.autocommit = True
        return self

    def _cursor(self):
        return self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)

    def run_statement(self, sql: str) -> StatementResult:
        # psycopg2 reports every statement as a (possibly empty) result set.
        with self._cursor() as cur:
            cur.execute(sql)
            if cur.description is None:
                return RowsResult(columns=[], rows=[])
            columns = [d[0] for d in cur.description]
            return RowsResult(columns=columns, rows=[_row(r) for r in cur.fetchall()])

    def list_databases(self) -> List[DatabaseInfo]:
        rows = self.execute("""
            SELECT datname                                 AS database_name,
                   pg_size_pretty(pg_database_size(datname)) AS size
            FROM pg_database
            WHERE datistemplate = false AND datname != 'postgres'
            ORDER BY pg_database_size(datname) DESC
        """)
        return [DatabaseInfo(name=r["database_name"], size=r["size"]) for r in rows]

    def list_tables(self) -> List[str]:
        rows = self.execute("""
            SELECT tablename
            FROM pg_catalog.pg_tables
            WHERE schemaname NOT IN ('pg_catalog', 'information_schema')
        """)
        return [r["tablename"] for r in rows]

    def get_table_info(self, search: Optional[str] = None) -> List[TableInfo]:
        sql = """
            SELECT c.relname                                      AS name,
                   c.reltuples::bigint                            AS rows,
                   pg_size_pretty(pg_total_relation_size(c.oid))  AS size,
                   CASE WHEN c.relkind = 'r' THEN 'Table' ELSE 'View' END AS type,
                   obj_description(c.oid)                         AS comment
            FROM pg_class c
            LEFT JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE n.nspname NOT IN ('pg_catalog', 'information_schema')
              AND c.relkind IN ('r', 'v')
        """
        params: List[str] = []
        if search and search.strip():
            sql += """
              AND (c.relname ILIKE %s
                   OR obj_description(c.oid) ILIKE %s
                   OR CASE WHEN c.relkind = 'r' THEN 'Table' ELSE 'View' END ILIKE %s)
            """
            params += [f"%{search.strip()}%"] * 3
        sql += " ORDER BY c.relname"

        return [
            TableInfo(
                name=r["name"],
                rows=max(int(r["rows"] or 0), 0),
                size=r["size"] or "0 bytes",
                created="",
                updated="",
                engine="PostgreSQL",
                comment=r["comment"] or "",
                type=r["type"],
            )
            for r in self.execute(sql, params or None)
        ]

    def get_columns(self, table: str) -> List[ColumnInfo]:
        rows = self.execute(
            """
            SELECT column_name AS name,
                   data_type   AS type,
                   is_nullable AS nullable
            FROM information_schema.columns
            WHERE table_schema = 'public' AND table_name = %s
            ORDER BY ordinal_position
            """,
            [table],
        )
        return [ColumnInfo(name=r["name"], type=r["type"], nullable=r["nullable"] == "YES") for r in rows]


# ---------------------------------------------------------------------------
# Connector factory
# ---------------------------------------------------------------------------

def get_connector(config: ConnectionConfig, database: Optional[str] = None) -> BaseConnector:
    """Return the correct connector instance for config.db_type."""
    mapping = {
        DBType.MYSQL:       MySQLConnector,
        DBType.POSTGRESQL:  PostgreSQLConnector,
    }
    cls = mapping.get(config.db_type)
    if not cls:
        raise ValueError(
            f"Connector for '{config.db_type}' is not implemented. "
            f"Supported types: {', '.join(m.value for m in mapping)}"
        )
    return cls(config, database=database)


# ---------------------------------------------------------------------------
# Databases + tables listing
# ---------------------------------------------------------------------------

def fetch_databases_with_tables(config: ConnectionConfig, max_workers: int = 8) -> List[DatabaseInfo]:
    """
    List every non-system database together with its table names.

    Databases are listed over one connection; tables are then fetched
    over one connection per database, at most `max_workers` at a time.
    The database order from the catalog is kept.  A database whose
    tables cannot be listed gets an empty list instead of failing the
    whole call.
    """
    log = get_logger("db_connectors")

    with get_connector(config) as conn:
        databases = conn.list_databases()
    if not databases:
        return []

    def _tables_for(db: DatabaseInfo) -> List[str]:
        try:
            with get_connector(config, database=db.name) as scoped:
                return scoped.list_tables()
        except Exception as exc:
            log.warning("could not list tables", database=db.name, error=str(exc))
            return []

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(databases)))) as pool:
        for db, tables in zip(databases, pool.map(_tables_for, databases)):
            db.tables = tables

    log.info("listed databases", engine=config.db_type.value, count=len(databases))
    return databases


def as_dicts(records: List[Any]) -> List[Dict[str, Any]]:
    """Dataclass records → plain dicts for JSON responses."""
    return [asdict(r) for r in records]
