"""
Load Layer
===========
Loads staged, dimensional and summary data into the DuckDB warehouse.
Reloads are idempotent: facts replace their academic-year (or
institution-year) partition instead of accumulating.
"""

import json
import logging
from datetime import datetime
from typing import Literal

import duckdb
import pandas as pd

from retention_pipeline.models.records import LINEAGE_COLUMNS, RECORD_COLUMNS

logger = logging.getLogger(__name__)

STAGING_COLUMNS = LINEAGE_COLUMNS + RECORD_COLUMNS
INSTITUTION_COLUMNS = ["unitid", "institution_name", "is_placeholder"]
TERM_COLUMNS = ["academic_year", "term_label", "start_year", "end_year"]
SUMMARY_COLUMNS = ["unitid", "academic_year", "total_enrollment", "retention_rate"]
FACT_COLUMNS = {
    "analytics.fct_enrollment": [
        "unitid", "academic_year", "race_code", "sex_code", "enrollment", "batch_id",
    ],
    "analytics.fct_retention": [
        "unitid", "academic_year", "race_code", "sex_code", "retention_rate", "batch_id",
    ],
}


class Loader:
    """Loads data into the DuckDB warehouse."""

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def _count(self, table_name: str) -> int:
        return self.conn.execute(f"SELECT COUNT(*) FROM {table_name}").fetchone()[0]

    def _insert(self, df: pd.DataFrame, table_name: str, columns: list[str]) -> None:
        temp_name = f"__temp_{table_name.split('.')[-1]}"
        col_list = ", ".join(columns)
        self.conn.register(temp_name, df[columns])
        try:
            self.conn.execute(
                f"INSERT INTO {table_name} ({col_list}) SELECT {col_list} FROM {temp_name}"
            )
        finally:
            self.conn.unregister(temp_name)

    def load_staging(
        self,
        df: pd.DataFrame,
        table_name: Literal["staging.raw_records", "staging.clean_records"],
    ) -> int:
        """Replace the staged rows of every source file present in ``df``."""
        files = sorted(df["source_file"].unique())
        logger.info("Staging %d rows into %s for %s", len(df), table_name, files)
        for source_file in files:
            self.conn.execute(
                f"DELETE FROM {table_name} WHERE source_file = ?", [source_file]
            )
        if not df.empty:
            self._insert(df, table_name, STAGING_COLUMNS)
        return self._count(table_name)

    def load_dimension(
        self,
        df: pd.DataFrame,
        table_name: str,
        mode: Literal["replace", "append", "upsert"] = "upsert",
        key_column: str | None = None,
    ) -> int:
        """Load a dimension table.

        Args:
            df: DataFrame to load.
            table_name: Target table (e.g., 'analytics.dim_term').
            mode: 'replace' empties the table first, 'append' inserts,
                  'upsert' replaces existing rows by key.
            key_column: Key column for upsert mode.

        Returns:
            Number of rows in the table after loading.
        """
        logger.info(
            "Loading %d rows into %s (mode=%s)...", len(df), table_name, mode
        )
        columns = list(df.columns)

        if mode == "replace":
            self.conn.execute(f"DELETE FROM {table_name}")
        elif mode == "upsert":
            if key_column is None:
                raise ValueError("key_column required for upsert mode")
            keys = df[[key_column]].drop_duplicates()
            temp_name = f"__keys_{table_name.split('.')[-1]}"
            self.conn.register(temp_name, keys)
            try:
                self.conn.execute(
                    f"DELETE FROM {table_name} WHERE {key_column} IN "
                    f"(SELECT {key_column} FROM {temp_name})"
                )
            finally:
                self.conn.unregister(temp_name)
        elif mode != "append":
            raise ValueError(f"Unknown load mode: {mode}")

        if not df.empty:
            self._insert(df, table_name, columns)

        count = self._count(table_name)
        logger.info("Table %s now has %d rows", table_name, count)
        return count

    def load_institution_dimension(self, df: pd.DataFrame) -> int:
        """Upsert institutions; placeholder rows never replace named rows.

        A named institution replaces any existing row for its unitid
        (superseding an earlier placeholder). A placeholder is only inserted
        when the unitid is not present yet.
        """
        table_name = "analytics.dim_institution"
        named = df[~df["is_placeholder"].astype(bool)]
        placeholders = df[df["is_placeholder"].astype(bool)]

        self.load_dimension(
            named[INSTITUTION_COLUMNS], table_name, mode="upsert", key_column="unitid"
        )
        if not placeholders.empty:
            existing = {
                row[0] for row in self.conn.execute(
                    f"SELECT unitid FROM {table_name}"
                ).fetchall()
            }
            new = placeholders[~placeholders["unitid"].isin(existing)]
            if not new.empty:
                logger.info("Adding %d placeholder institution(s)", len(new))
                self._insert(new, table_name, INSTITUTION_COLUMNS)
        return self._count(table_name)

    def load_facts(
        self,
        df: pd.DataFrame,
        table_name: str,
        mode: Literal["academic_year", "institution_year"] = "academic_year",
        partitions: pd.DataFrame | None = None,
    ) -> int:
        """Load fact rows, replacing the partitions they belong to.

        Args:
            df: Fact DataFrame.
            table_name: 'analytics.fct_enrollment' or 'analytics.fct_retention'.
            mode: 'academic_year' replaces every year present in the batch (a
                  corrected release supersedes the whole year);
                  'institution_year' replaces only the institution-years
                  present in the batch.
            partitions: ``unitid``/``academic_year`` rows covered by the whole
                  batch. A partition listed here is cleared even when ``df``
                  holds no rows for it. Defaults to the keys of ``df``.

        Returns:
            Number of rows in the table after loading.
        """
        columns = FACT_COLUMNS[table_name]
        if partitions is None:
            partitions = df
        if mode == "academic_year":
            keys = partitions[["academic_year"]].drop_duplicates()
            predicate = "academic_year IN (SELECT academic_year FROM {temp})"
        elif mode == "institution_year":
            keys = partitions[["unitid", "academic_year"]].drop_duplicates().rename(
                columns={"unitid": "k_unitid", "academic_year": "k_academic_year"}
            )
            predicate = (
                "EXISTS (SELECT 1 FROM {temp} "
                "WHERE {temp}.k_unitid = unitid "
                "AND {temp}.k_academic_year = academic_year)"
            )
        else:
            raise ValueError(f"Unknown fact load mode: {mode}")

        logger.info(
            "Replacing %d %s partition(s) in %s", len(keys), mode, table_name,
        )
        temp_name = f"__partitions_{table_name.split('.')[-1]}"
        self.conn.register(temp_name, keys)
        try:
            deleted = self.conn.execute(
                f"DELETE FROM {table_name} WHERE " + predicate.format(temp=temp_name)
            ).fetchone()[0]
        finally:
            self.conn.unregister(temp_name)

        if not df.empty:
            self._insert(df, table_name, columns)

        count = self._count(table_name)
        logger.info(
            "Loaded %d rows into %s (%d superseded, total: %d)",
            len(df), table_name, deleted, count,
        )
        return count

    def promote_summary(self) -> int:
        """Publish the current summary view to the reporting layer."""
        table_name = "reporting.institution_year_summary"
        col_list = ", ".join(SUMMARY_COLUMNS)
        self.conn.execute(f"DELETE FROM {table_name}")
        self.conn.execute(
            f"INSERT INTO {table_name} ({col_list}) "
            f"SELECT {col_list} FROM analytics.v_institution_year_summary"
        )
        count = self._count(table_name)
        logger.info("Promoted %d summary rows to %s", count, table_name)
        return count

    def record_batch_start(self, batch_id: str, source_file: str) -> datetime:
        started_at = datetime.utcnow()
        self.conn.execute(
            "INSERT INTO analytics.load_batches "
            "(batch_id, source_file, started_at, status, promoted) "
            "VALUES (?, ?, ?, 'running', FALSE)",
            [batch_id, source_file, started_at],
        )
        return started_at

    def record_batch_end(
        self,
        batch_id: str,
        started_at: datetime,
        status: str,
        promoted: bool,
        report: dict | None = None,
    ) -> None:
        self.conn.execute(
            "UPDATE analytics.load_batches "
            "SET finished_at = ?, status = ?, promoted = ?, report_json = ? "
            "WHERE batch_id = ? AND started_at = ?",
            [
                datetime.utcnow(),
                status,
                promoted,
                json.dumps(report, default=str) if report is not None else None,
                batch_id,
                started_at,
            ],
        )

    def verify_load(self, table_name: str) -> dict:
        """Run basic verification on a loaded table."""
        count = self._count(table_name)

        # Sample preview
        sample = self.conn.execute(
            f"SELECT * FROM {table_name} LIMIT 5"
        ).fetchdf()

        return {
            "table": table_name,
            "row_count": count,
            "sample": sample,
        }
