"""Pytest configuration, fake driver connections and fixtures."""

import pytest

import db_connectors
from app_logging import setup_logging
from db_connectors import ConnectionConfig, DBType


def pytest_configure(config):
    setup_logging("debug")
    config.addinivalue_line(
        "markers", "integration: needs a live database (deselect with '-m \"not integration\"')"
    )


class FakeCursor:
    """Stands in for a PyMySQL / psycopg2 cursor.

    `columns=None` means the statement produced no result set.
    """

    def __init__(self, columns=None, rows=None, rowcount=0, error=None):
        self.columns = columns
        self.rows = rows or []
        self.rowcount = rowcount
        self.error = error
        self.executed = []

    @property
    def description(self):
        if self.columns is None:
            return None
        return [(name, None, None, None, None, None, None) for name in self.columns]

    def execute(self, sql, params=None):
        self.executed.append((sql, params))
        if self.error is not None:
            raise self.error

    def fetchall(self):
        return [dict(r) for r in self.rows]

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeConnection:
    def __init__(self, cursor=None):
        self.cursor_obj = cursor or FakeCursor()
        self.close_calls = 0
        self.autocommit = False
        self.connect_kwargs = []

    def cursor(self, *args, **kwargs):
        return self.cursor_obj

    def close(self):
        self.close_calls += 1

    @property
    def executed(self):
        return self.cursor_obj.executed


@pytest.fixture
def mysql_conn(monkeypatch):
    """Every pymysql.connect() call returns this one fake connection."""
    conn = FakeConnection()

    def _connect(**kwargs):
        conn.connect_kwargs.append(kwargs)
        return conn

    monkeypatch.setattr(db_connectors.pymysql, "connect", _connect)
    return conn


@pytest.fixture
def pg_conn(monkeypatch):
    """Every psycopg2.connect() call returns this one fake connection."""
    conn = FakeConnection()

    def _connect(**kwargs):
        conn.connect_kwargs.append(kwargs)
        return conn

    monkeypatch.setattr(db_connectors.psycopg2, "connect", _connect)
    return conn


@pytest.fixture
def mysql_config():
    return ConnectionConfig(db_type=DBType.MYSQL, hostname="db.example.com",
                            username="root", password="secret", port=3306)


@pytest.fixture
def pg_config():
    return ConnectionConfig(db_type=DBType.POSTGRESQL, hostname="db.example.com",
                            username="postgres", password="secret", port=5432)
