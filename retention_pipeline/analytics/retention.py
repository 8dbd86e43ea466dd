"""
Retention Analytics
====================
Consumer-side retention analysis over the published reporting layer.

Implements:
  - 10-point retention brackets (dashboard bucketing as plain functions)
  - High-performer fraction reconstructed from bracket counts
  - Published summary with institution and term attributes
  - Top institutions and the per-year KPI trend
"""

import logging
import math

import duckdb
import pandas as pd

logger = logging.getLogger(__name__)

# (label, lower bound inclusive, upper bound exclusive); the last bracket includes 1.0
RETENTION_BRACKETS = [
    (f"{lo}-{lo + 10}%", lo / 100, (lo + 10) / 100) for lo in range(0, 100, 10)
]
BRACKET_LABELS = [label for label, _, _ in RETENTION_BRACKETS]


def retention_bracket(rate: float | None) -> str | None:
    """Bracket label for a retention fraction; ``None`` for missing rates."""
    if rate is None or (isinstance(rate, float) and math.isnan(rate)):
        return None
    if rate < 0.0 or rate > 1.0:
        raise ValueError(f"Retention rate {rate} outside [0, 1]")
    index = min(int(round(rate * 100, 9) // 10), len(RETENTION_BRACKETS) - 1)
    return RETENTION_BRACKETS[index][0]


def bracket_distribution(summary: pd.DataFrame) -> pd.DataFrame:
    """Count institution-years per retention bracket (every bracket listed)."""
    brackets = summary["retention_rate"].dropna().map(retention_bracket)
    counts = brackets.value_counts().reindex(BRACKET_LABELS, fill_value=0)
    result = counts.rename_axis("bracket").reset_index(name="institutions")
    total = int(result["institutions"].sum())
    result["share"] = result["institutions"] / total if total else 0.0
    return result


def high_performer_fraction_from_brackets(
    bracket_counts: dict[str, int],
    threshold: float = 0.70,
) -> float | None:
    """Fraction of rows in brackets whose lower bound is at or above ``threshold``.

    Brackets not listed count as zero; unknown labels raise ``KeyError``.
    """
    lower_bounds = {label: lo for label, lo, _ in RETENTION_BRACKETS}
    total = 0
    high = 0
    for label, count in bracket_counts.items():
        lo = lower_bounds[label]
        total += count
        if lo >= threshold - 1e-12:
            high += count
    if total == 0:
        return None
    return high / total


class RetentionAnalytics:
    """Read-only retention queries for the reporting layer."""

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def get_summary(self, academic_year: int | None = None) -> pd.DataFrame:
        """Published summary joined with institution and term attributes."""
        sql = """
            SELECT
                s.unitid,
                i.institution_name,
                s.academic_year,
                t.term_label,
                s.total_enrollment,
                s.retention_rate
            FROM reporting.institution_year_summary s
            JOIN reporting.dim_institution i ON s.unitid = i.unitid
            JOIN reporting.dim_term t ON s.academic_year = t.academic_year
        """
        params = []
        if academic_year is not None:
            sql += " WHERE s.academic_year = ?"
            params.append(academic_year)
        sql += " ORDER BY s.academic_year, s.unitid"
        return self.conn.execute(sql, params).fetchdf()

    def get_bracket_distribution(self, academic_year: int | None = None) -> pd.DataFrame:
        return bracket_distribution(self.get_summary(academic_year))

    def get_top_institutions(
        self,
        n: int = 10,
        academic_year: int | None = None,
        min_enrollment: int = 0,
    ) -> pd.DataFrame:
        """Highest-retention institutions, ties broken by enrollment."""
        summary = self.get_summary(academic_year)
        summary = summary[summary["total_enrollment"] >= min_enrollment]
        return (
            summary.sort_values(
                ["retention_rate", "total_enrollment"], ascending=[False, False]
            )
            .head(n)
            .reset_index(drop=True)
        )

    def get_yearly_trend(self, threshold: float = 0.70) -> pd.DataFrame:
        """Per-year simple and enrollment-weighted retention."""
        df = self.conn.execute(
            """
            SELECT
                s.academic_year,
                t.term_label,
                COUNT(DISTINCT s.unitid) AS institutions,
                SUM(s.total_enrollment) AS total_enrollment,
                AVG(s.retention_rate) AS simple_avg_retention,
                SUM(s.total_enrollment * s.retention_rate)
                    / NULLIF(SUM(s.total_enrollment), 0) AS weighted_retention,
                AVG(CASE WHEN s.retention_rate >= ? THEN 1 ELSE 0 END)
                    AS high_performer_fraction
            FROM reporting.institution_year_summary s
            JOIN reporting.dim_term t ON s.academic_year = t.academic_year
            GROUP BY s.academic_year, t.term_label
            ORDER BY s.academic_year
            """,
            [threshold],
        ).fetchdf()
        logger.info("Yearly trend computed for %d year(s)", len(df))
        return df
