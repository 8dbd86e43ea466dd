"""
Data Warehouse Schema Manager
==============================
Manages the retention star schema in DuckDB: staging tables, the
institution/term dimensions, the enrollment/retention facts, the
institution-year summary view and the read-only reporting layer.
"""

import logging
import os

import duckdb

logger = logging.getLogger(__name__)

SQL_DIR = os.path.join(os.path.dirname(__file__), "..", "sql")


def split_sql_statements(content: str) -> list[str]:
    """Split a SQL script into statements, dropping ``--`` comment lines."""
    lines = [
        line for line in content.split("\n")
        if not line.strip().startswith("--")
    ]
    statements = []
    for stmt in "\n".join(lines).split(";"):
        stmt = stmt.strip()
        if stmt:
            statements.append(stmt)
    return statements


def connect_readonly(db_path: str) -> duckdb.DuckDBPyConnection:
    """Open the warehouse for a downstream consumer (no writes possible)."""
    if not os.path.exists(db_path):
        raise FileNotFoundError(f"Warehouse not found: {db_path}")
    return duckdb.connect(db_path, read_only=True)


class WarehouseSchema:
    """Manages the data warehouse schema lifecycle."""

    def __init__(self, db_path: str = "data/warehouse/retention.duckdb"):
        self.db_path = db_path
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        self.conn = duckdb.connect(db_path)
        logger.info("Connected to DuckDB warehouse at %s", db_path)

    def initialize(self) -> None:
        """Create all schema objects. Safe to run against an existing warehouse."""
        ddl_path = os.path.join(SQL_DIR, "create_tables.sql")
        logger.info("Executing DDL from %s", ddl_path)

        with open(ddl_path, "r") as f:
            statements = split_sql_statements(f.read())

        for stmt in statements:
            self.conn.execute(stmt)

        logger.info("Schema initialized (%d statements).", len(statements))

    def get_table_stats(self) -> dict:
        """Return row counts for every base table, keyed by schema-qualified name."""
        tables = self.conn.execute(
            "SELECT table_schema, table_name FROM information_schema.tables "
            "WHERE table_schema IN ('staging', 'analytics', 'reporting') "
            "AND table_type = 'BASE TABLE' "
            "ORDER BY table_schema, table_name"
        ).fetchall()

        stats = {}
        for schema, table_name in tables:
            count = self.conn.execute(
                f"SELECT COUNT(*) FROM {schema}.{table_name}"
            ).fetchone()[0]
            stats[f"{schema}.{table_name}"] = count

        return stats

    def close(self) -> None:
        self.conn.close()
        logger.info("Warehouse connection closed.")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
