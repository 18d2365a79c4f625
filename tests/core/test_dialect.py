"""Tests for dbsemaphore.core.dialect: store-side clock expressions."""

from __future__ import annotations

import time

import pytest
from sqlalchemy import text

from dbsemaphore.core.dialect import (
    Dialect,
    MySQLDialect,
    PostgreSQLDialect,
    SQLiteDialect,
    dialect_for_engine,
    get_dialect,
    register_dialect,
)


class TestRegistry:
    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("sqlite", "sqlite"),
            ("postgresql", "postgresql"),
            ("postgres", "postgresql"),
            ("mysql", "mysql"),
            ("mariadb", "mysql"),
            ("mssql", "mssql"),
            ("oracle", "oracle"),
            ("db2", "db2"),
            ("ibm_db_sa", "db2"),
            ("SQLite", "sqlite"),
        ],
    )
    def test_get_dialect(self, name, expected):
        assert get_dialect(name).name == expected

    def test_unknown_dialect_raises(self):
        with pytest.raises(ValueError, match="Unknown dialect"):
            get_dialect("informix")

    def test_register_custom_dialect(self):
        class FixedClock:
            name = "fixed"

            def now_millis(self) -> str:
                return "42"

        register_dialect("Fixed", FixedClock())
        assert get_dialect("fixed").now_millis() == "42"
        assert isinstance(get_dialect("fixed"), Dialect)

    def test_dialect_for_engine(self, engine):
        assert dialect_for_engine(engine).name == "sqlite"


class TestExpressions:
    def test_postgres_uses_clock_timestamp(self):
        assert "clock_timestamp()" in PostgreSQLDialect().now_millis()

    def test_mysql_has_millisecond_precision(self):
        assert "NOW(3)" in MySQLDialect().now_millis()

    def test_sqlite_expression_tracks_wall_clock(self, engine):
        with engine.connect() as conn:
            millis = conn.execute(text(f"SELECT {SQLiteDialect().now_millis()}")).scalar_one()
        assert abs(millis - time.time() * 1000) < 5_000
