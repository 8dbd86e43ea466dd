"""
Data Quality Framework
=======================
Data quality checks that gate promotion of the institution-year summary.

Implements checks for:
  - Completeness  : null rates, row counts
  - Uniqueness    : duplicate fact and dimension keys
  - Validity      : range checks, referential integrity
  - Consistency   : retention variance within a group, join coverage,
                    enrollment conservation, bulk vs. SQL summary, KPI
                    reconciliation and bounds

Any CRITICAL failure blocks promotion; WARNING failures are reported only.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum

import duckdb
import pandas as pd

from retention_pipeline.analytics.kpis import KPISet, kpi_bound_violations
from retention_pipeline.config import PipelineConfig

logger = logging.getLogger(__name__)

SUMMARY_VIEW = "analytics.v_institution_year_summary"


class CheckSeverity(Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class CheckStatus(Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class CheckResult:
    """Result of a single data quality check."""
    check_name: str
    table: str
    severity: CheckSeverity
    status: CheckStatus
    message: str
    details: dict = field(default_factory=dict)

    @property
    def blocking(self) -> bool:
        return self.status == CheckStatus.FAILED and self.severity == CheckSeverity.CRITICAL


class DataQualityChecker:
    """Run data quality checks against the retention warehouse."""

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn
        self.results: list[CheckResult] = []

    def _add_result(self, result: CheckResult) -> CheckResult:
        self.results.append(result)
        log_fn = logger.info if result.status == CheckStatus.PASSED else logger.warning
        log_fn("[%s] %s: %s — %s", result.severity.value, result.check_name,
               result.status.value, result.message)
        return result

    def _scalar(self, sql: str, params: list | None = None):
        return self.conn.execute(sql, params or []).fetchone()[0]

    # ------------------------------------------------------------------
    # Completeness Checks
    # ------------------------------------------------------------------

    def check_null_rate(
        self, table: str, column: str, threshold: float = 0.0,
        severity: CheckSeverity = CheckSeverity.CRITICAL,
    ) -> CheckResult:
        """Check that null rate for a column is at or below threshold."""
        total = self._scalar(f"SELECT COUNT(*) FROM {table}")
        if total == 0:
            return self._add_result(CheckResult(
                check_name=f"null_rate_{column}",
                table=table,
                severity=CheckSeverity.WARNING,
                status=CheckStatus.SKIPPED,
                message=f"Table {table} is empty",
            ))

        nulls = self._scalar(f"SELECT COUNT(*) FROM {table} WHERE {column} IS NULL")
        null_rate = nulls / total

        status = CheckStatus.PASSED if null_rate <= threshold else CheckStatus.FAILED
        return self._add_result(CheckResult(
            check_name=f"null_rate_{column}",
            table=table,
            severity=severity,
            status=status,
            message=f"Null rate: {null_rate:.4%} (threshold: {threshold:.2%})",
            details={"total": total, "nulls": nulls, "null_rate": null_rate},
        ))

    def check_row_count(
        self, table: str, min_rows: int = 1
    ) -> CheckResult:
        """Check that a table has at least min_rows."""
        count = self._scalar(f"SELECT COUNT(*) FROM {table}")
        status = CheckStatus.PASSED if count >= min_rows else CheckStatus.FAILED

        return self._add_result(CheckResult(
            check_name="row_count",
            table=table,
            severity=CheckSeverity.CRITICAL,
            status=status,
            message=f"Row count: {count:,} (minimum: {min_rows:,})",
            details={"count": count, "minimum": min_rows},
        ))

    # ------------------------------------------------------------------
    # Uniqueness Checks
    # ------------------------------------------------------------------

    def check_uniqueness(
        self, table: str, columns: list[str]
    ) -> CheckResult:
        """Check that a (possibly composite) key has no duplicate values."""
        col_list = ", ".join(columns)
        total = self._scalar(f"SELECT COUNT(*) FROM {table}")
        distinct = self._scalar(
            f"SELECT COUNT(*) FROM (SELECT DISTINCT {col_list} FROM {table})"
        )

        duplicates = total - distinct
        status = CheckStatus.PASSED if duplicates == 0 else CheckStatus.FAILED

        return self._add_result(CheckResult(
            check_name=f"uniqueness_{'_'.join(columns)}",
            table=table,
            severity=CheckSeverity.CRITICAL,
            status=status,
            message=f"Duplicates: {duplicates:,} out of {total:,} rows",
            details={"total": total, "distinct": distinct, "duplicates": duplicates},
        ))

    # ------------------------------------------------------------------
    # Referential Integrity Checks
    # ------------------------------------------------------------------

    def check_referential_integrity(
        self,
        fact_table: str,
        dim_table: str,
        keys: list[str],
        severity: CheckSeverity = CheckSeverity.WARNING,
    ) -> CheckResult:
        """Check that every fact key exists in the dimension."""
        join = " AND ".join(f"f.{k} = d.{k}" for k in keys)
        col_list = ", ".join(f"f.{k}" for k in keys)
        orphans = self._scalar(
            f"""
            SELECT COUNT(*) FROM (
                SELECT DISTINCT {col_list}
                FROM {fact_table} f
                LEFT JOIN {dim_table} d ON {join}
                WHERE d.{keys[0]} IS NULL
            )
            """
        )
        total = self._scalar(
            f"SELECT COUNT(*) FROM (SELECT DISTINCT {', '.join(keys)} FROM {fact_table})"
        )

        status = CheckStatus.PASSED if orphans == 0 else CheckStatus.FAILED
        return self._add_result(CheckResult(
            check_name=f"ref_integrity_{'_'.join(keys)}",
            table=fact_table,
            severity=severity,
            status=status,
            message=f"Orphaned keys: {orphans:,} out of {total:,} distinct keys",
            details={"orphaned": orphans, "total_distinct": total},
        ))

    # ------------------------------------------------------------------
    # Value Range Checks
    # ------------------------------------------------------------------

    def check_value_range(
        self, table: str, column: str,
        min_val: float | None = None,
        max_val: float | None = None,
        severity: CheckSeverity = CheckSeverity.WARNING,
    ) -> CheckResult:
        """Check that column values fall within expected range."""
        actual_min, actual_max = self.conn.execute(
            f"SELECT MIN({column}), MAX({column}) FROM {table}"
        ).fetchone()

        violations = []
        if min_val is not None and actual_min is not None and actual_min < min_val:
            violations.append(f"min={actual_min} < expected_min={min_val}")
        if max_val is not None and actual_max is not None and actual_max > max_val:
            violations.append(f"max={actual_max} > expected_max={max_val}")

        status = CheckStatus.PASSED if not violations else CheckStatus.FAILED

        return self._add_result(CheckResult(
            check_name=f"value_range_{column}",
            table=table,
            severity=severity,
            status=status,
            message=f"Range [{actual_min}, {actual_max}] — " + (
                "OK" if not violations else "; ".join(violations)
            ),
            details={"actual_min": actual_min, "actual_max": actual_max},
        ))

    # ------------------------------------------------------------------
    # Aggregation Consistency Checks
    # ------------------------------------------------------------------

    def check_retention_variance(self, tolerance: float = 1e-6) -> CheckResult:
        """Retention must repeat one value per institution-year.

        The summary averages breakdown rows; a group whose rates genuinely
        differ would be averaged into a meaningless figure.
        """
        groups = self.conn.execute(
            """
            SELECT unitid, academic_year, COUNT(*) AS rows,
                   STDDEV_POP(retention_rate) AS spread,
                   MIN(retention_rate) AS min_rate,
                   MAX(retention_rate) AS max_rate
            FROM analytics.fct_retention
            GROUP BY unitid, academic_year
            HAVING STDDEV_POP(retention_rate) > ?
            ORDER BY spread DESC, unitid, academic_year
            """,
            [tolerance],
        ).fetchdf()

        flagged = len(groups)
        status = CheckStatus.PASSED if flagged == 0 else CheckStatus.FAILED
        return self._add_result(CheckResult(
            check_name="retention_variance",
            table="analytics.fct_retention",
            severity=CheckSeverity.CRITICAL,
            status=status,
            message=f"{flagged:,} institution-year group(s) with retention spread > {tolerance}",
            details={
                "flagged_groups": flagged,
                "tolerance": tolerance,
                "examples": groups.head(10).to_dict(orient="records"),
            },
        ))

    def check_join_coverage(self) -> CheckResult:
        """Count institution-years excluded by the inner join."""
        enrollment_only, retention_only = self.conn.execute(
            """
            WITH e AS (SELECT DISTINCT unitid, academic_year FROM analytics.fct_enrollment),
                 r AS (SELECT DISTINCT unitid, academic_year FROM analytics.fct_retention)
            SELECT
                (SELECT COUNT(*) FROM e WHERE NOT EXISTS (
                    SELECT 1 FROM r WHERE r.unitid = e.unitid AND r.academic_year = e.academic_year)),
                (SELECT COUNT(*) FROM r WHERE NOT EXISTS (
                    SELECT 1 FROM e WHERE e.unitid = r.unitid AND e.academic_year = r.academic_year))
            """
        ).fetchone()

        excluded = enrollment_only + retention_only
        status = CheckStatus.PASSED if excluded == 0 else CheckStatus.FAILED
        return self._add_result(CheckResult(
            check_name="join_coverage",
            table=SUMMARY_VIEW,
            severity=CheckSeverity.WARNING,
            status=status,
            message=(
                f"Excluded by join: {enrollment_only:,} enrollment-only, "
                f"{retention_only:,} retention-only institution-years"
            ),
            details={"enrollment_only": enrollment_only, "retention_only": retention_only},
        ))

    def check_enrollment_conservation(self) -> CheckResult:
        """Summary enrollment equals fact enrollment over the joined keys."""
        summary_total, fact_total = self.conn.execute(
            f"""
            SELECT
                (SELECT COALESCE(SUM(total_enrollment), 0) FROM {SUMMARY_VIEW}),
                (SELECT COALESCE(SUM(f.enrollment), 0)
                 FROM analytics.fct_enrollment f
                 WHERE EXISTS (
                     SELECT 1 FROM analytics.fct_retention r
                     WHERE r.unitid = f.unitid AND r.academic_year = f.academic_year))
            """
        ).fetchone()

        status = CheckStatus.PASSED if summary_total == fact_total else CheckStatus.FAILED
        return self._add_result(CheckResult(
            check_name="enrollment_conservation",
            table=SUMMARY_VIEW,
            severity=CheckSeverity.CRITICAL,
            status=status,
            message=f"Summary enrollment {summary_total:,} vs. facts {fact_total:,}",
            details={"summary_total": int(summary_total), "fact_total": int(fact_total)},
        ))

    def check_summary_paths(
        self, bulk_summary: pd.DataFrame, tolerance: float = 1e-9
    ) -> CheckResult:
        """The pandas summary and the SQL view must hold the same rows."""
        view = self.conn.execute(
            f"SELECT unitid, academic_year, total_enrollment, retention_rate "
            f"FROM {SUMMARY_VIEW}"
        ).fetchdf()

        merged = bulk_summary.merge(
            view, on=["unitid", "academic_year"], how="outer",
            suffixes=("_bulk", "_view"), indicator=True,
        )
        one_sided = int((merged["_merge"] != "both").sum())
        both = merged[merged["_merge"] == "both"]
        enrollment_mismatch = int(
            (both["total_enrollment_bulk"] != both["total_enrollment_view"]).sum()
        )
        retention_mismatch = int(
            ((both["retention_rate_bulk"] - both["retention_rate_view"]).abs() > tolerance).sum()
        )

        mismatched = one_sided + enrollment_mismatch + retention_mismatch
        status = CheckStatus.PASSED if mismatched == 0 else CheckStatus.FAILED
        return self._add_result(CheckResult(
            check_name="summary_paths_agree",
            table=SUMMARY_VIEW,
            severity=CheckSeverity.CRITICAL,
            status=status,
            message=(
                f"{len(bulk_summary):,} bulk vs. {len(view):,} view rows; "
                f"{mismatched:,} mismatch(es)"
            ),
            details={
                "one_sided": one_sided,
                "enrollment_mismatch": enrollment_mismatch,
                "retention_mismatch": retention_mismatch,
            },
        ))

    def check_kpi_consistency(self, reconciliation: dict) -> CheckResult:
        """Both KPI derivations must agree."""
        disagreeing = [
            name for name, m in reconciliation["metrics"].items() if not m["agrees"]
        ]
        status = CheckStatus.PASSED if reconciliation["agreed"] else CheckStatus.FAILED
        return self._add_result(CheckResult(
            check_name="kpi_consistency",
            table=SUMMARY_VIEW,
            severity=CheckSeverity.CRITICAL,
            status=status,
            message=(
                "Bulk and re-derived KPIs agree" if not disagreeing
                else f"Disagreeing KPIs: {', '.join(disagreeing)}"
            ),
            details={"disagreeing": disagreeing, "tolerance": reconciliation["tolerance"]},
        ))

    def check_kpi_bounds(self, kpis: KPISet) -> CheckResult:
        """KPIs must be defined and lie in [0, 1]."""
        violations = kpi_bound_violations(kpis)
        status = CheckStatus.PASSED if not violations else CheckStatus.FAILED
        return self._add_result(CheckResult(
            check_name="kpi_bounds",
            table=SUMMARY_VIEW,
            severity=CheckSeverity.CRITICAL,
            status=status,
            message="All KPIs within [0, 1]" if not violations else "; ".join(violations),
            details={"violations": violations},
        ))

    # ------------------------------------------------------------------
    # Run All Checks
    # ------------------------------------------------------------------

    def run_all_checks(
        self,
        config: PipelineConfig | None = None,
        bulk_summary: pd.DataFrame | None = None,
        reconciliation: dict | None = None,
        kpis: KPISet | None = None,
    ) -> dict:
        """Execute the full data quality check suite."""
        config = config or PipelineConfig()
        logger.info("=" * 50)
        logger.info("RUNNING DATA QUALITY CHECKS")
        logger.info("=" * 50)

        self.results = []
        fact_key = ["unitid", "academic_year", "race_code", "sex_code"]

        # --- Fact table checks ---
        self.check_row_count("analytics.fct_enrollment", min_rows=1)
        self.check_row_count("analytics.fct_retention", min_rows=1)
        self.check_uniqueness("analytics.fct_enrollment", fact_key)
        self.check_uniqueness("analytics.fct_retention", fact_key)
        self.check_value_range(
            "analytics.fct_enrollment", "enrollment",
            min_val=0, severity=CheckSeverity.CRITICAL,
        )
        self.check_value_range(
            "analytics.fct_retention", "retention_rate",
            min_val=0.0, max_val=1.0, severity=CheckSeverity.CRITICAL,
        )
        self.check_null_rate(
            "analytics.fct_enrollment", "sex_code",
            threshold=1.0, severity=CheckSeverity.INFO,
        )
        self.check_null_rate(
            "analytics.fct_enrollment", "race_code",
            threshold=1.0, severity=CheckSeverity.INFO,
        )

        # Referential integrity
        strict = (
            CheckSeverity.CRITICAL if config.orphan_policy == "fail"
            else CheckSeverity.WARNING
        )
        for fact_table in ("analytics.fct_enrollment", "analytics.fct_retention"):
            self.check_referential_integrity(
                fact_table, "analytics.dim_institution", ["unitid"], severity=strict,
            )
            self.check_referential_integrity(
                fact_table, "analytics.dim_term", ["academic_year"], severity=strict,
            )

        # --- Dimension checks ---
        self.check_uniqueness("analytics.dim_institution", ["unitid"])
        self.check_uniqueness("analytics.dim_term", ["academic_year"])

        # --- Summary checks ---
        self.check_row_count(SUMMARY_VIEW, min_rows=config.min_summary_rows)
        self.check_uniqueness(SUMMARY_VIEW, ["unitid", "academic_year"])
        self.check_null_rate(SUMMARY_VIEW, "retention_rate")
        self.check_null_rate(SUMMARY_VIEW, "total_enrollment")
        self.check_retention_variance(config.retention_variance_tolerance)
        self.check_join_coverage()
        self.check_enrollment_conservation()

        if bulk_summary is not None:
            self.check_summary_paths(bulk_summary, tolerance=config.kpi_tolerance)
        if reconciliation is not None:
            self.check_kpi_consistency(reconciliation)
        if kpis is not None:
            self.check_kpi_bounds(kpis)

        return self.summarize()

    def summarize(self) -> dict:
        passed = sum(1 for r in self.results if r.status == CheckStatus.PASSED)
        failed = sum(1 for r in self.results if r.status == CheckStatus.FAILED)
        skipped = sum(1 for r in self.results if r.status == CheckStatus.SKIPPED)
        blocking = [r.check_name for r in self.results if r.blocking]
        total = len(self.results)

        summary = {
            "total_checks": total,
            "passed": passed,
            "failed": failed,
            "skipped": skipped,
            "blocking_failures": blocking,
            "ready": not blocking,
            "pass_rate": f"{passed / total * 100:.1f}%" if total > 0 else "N/A",
            "details": [
                {
                    "check": r.check_name,
                    "table": r.table,
                    "status": r.status.value,
                    "severity": r.severity.value,
                    "message": r.message,
                    "details": r.details,
                }
                for r in self.results
            ],
        }

        logger.info("DQ Summary: %d/%d passed (%.1f%%), %d blocking", passed, total,
                    passed / total * 100 if total > 0 else 0, len(blocking))
        return summary
