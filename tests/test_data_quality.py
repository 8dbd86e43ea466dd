"""
Tests for Data Quality Framework
==================================
"""

import pytest

from retention_pipeline.analytics.kpis import (
    KPISet,
    compute_kpis,
    reconcile_kpis,
    rederive_kpis_from_facts,
)
from retention_pipeline.config import PipelineConfig
from retention_pipeline.data_quality.checks import (
    CheckResult,
    CheckSeverity,
    CheckStatus,
    DataQualityChecker,
)
from retention_pipeline.etl.extract import Extractor
from retention_pipeline.etl.load import Loader
from retention_pipeline.etl.transform import Transformer
from retention_pipeline.models.schema import WarehouseSchema

from conftest import snapshot_rows


@pytest.fixture
def populated_warehouse(config, write_extract):
    """Create a warehouse holding the five-institution snapshot."""
    ws = WarehouseSchema(config.db_path)
    ws.initialize()

    staged = Extractor(config).extract(write_extract(snapshot_rows(2022)))
    cleaned = Transformer.clean_records(staged, config)
    model = Transformer.build_dimensional_model(cleaned, config)

    loader = Loader(ws.conn)
    loader.load_institution_dimension(model.institution_dim)
    loader.load_dimension(
        model.term_dim, "analytics.dim_term", mode="upsert", key_column="academic_year"
    )
    loader.load_facts(model.enrollment_facts, "analytics.fct_enrollment")
    loader.load_facts(model.retention_facts, "analytics.fct_retention")

    yield ws

    ws.close()


def _bulk_summary(conn):
    enrollment = conn.execute(
        "SELECT unitid, academic_year, enrollment FROM analytics.fct_enrollment"
    ).fetchdf()
    retention = conn.execute(
        "SELECT unitid, academic_year, retention_rate FROM analytics.fct_retention"
    ).fetchdf()
    summary, _ = Transformer.build_summary(enrollment, retention)
    return summary


def _run_all(conn, config):
    summary = _bulk_summary(conn)
    bulk = compute_kpis(summary, config.high_performer_threshold)
    rederived = rederive_kpis_from_facts(conn, config.high_performer_threshold)
    reconciliation = reconcile_kpis(bulk, rederived, config.kpi_tolerance)
    return DataQualityChecker(conn).run_all_checks(
        config, bulk_summary=summary, reconciliation=reconciliation, kpis=bulk,
    )


class TestDataQualityChecks:
    def test_null_rate_passes(self, populated_warehouse):
        checker = DataQualityChecker(populated_warehouse.conn)
        result = checker.check_null_rate("analytics.fct_enrollment", "unitid")
        assert result.status == CheckStatus.PASSED

    def test_null_rate_skipped_on_empty_table(self, populated_warehouse):
        checker = DataQualityChecker(populated_warehouse.conn)
        result = checker.check_null_rate("reporting.institution_year_summary", "unitid")
        assert result.status == CheckStatus.SKIPPED

    def test_uniqueness_passes(self, populated_warehouse):
        checker = DataQualityChecker(populated_warehouse.conn)
        result = checker.check_uniqueness(
            "analytics.fct_retention", ["unitid", "academic_year", "race_code", "sex_code"]
        )
        assert result.status == CheckStatus.PASSED

    def test_uniqueness_fails_on_duplicate_key(self, populated_warehouse):
        conn = populated_warehouse.conn
        conn.execute(
            "INSERT INTO analytics.fct_enrollment VALUES (100001, 2022, 6, 1, 5, 'x')"
        )
        result = DataQualityChecker(conn).check_uniqueness(
            "analytics.fct_enrollment", ["unitid", "academic_year", "race_code", "sex_code"]
        )
        assert result.status == CheckStatus.FAILED
        assert result.details["duplicates"] == 1

    def test_row_count_passes(self, populated_warehouse):
        checker = DataQualityChecker(populated_warehouse.conn)
        result = checker.check_row_count("analytics.fct_enrollment", min_rows=10)
        assert result.status == CheckStatus.PASSED

    def test_row_count_fails(self, populated_warehouse):
        checker = DataQualityChecker(populated_warehouse.conn)
        result = checker.check_row_count("analytics.fct_enrollment", min_rows=999999999)
        assert result.status == CheckStatus.FAILED
        assert result.blocking

    def test_referential_integrity(self, populated_warehouse):
        checker = DataQualityChecker(populated_warehouse.conn)
        result = checker.check_referential_integrity(
            "analytics.fct_enrollment", "analytics.dim_institution", ["unitid"],
        )
        assert result.status == CheckStatus.PASSED

    def test_referential_integrity_detects_orphans(self, populated_warehouse):
        conn = populated_warehouse.conn
        conn.execute("DELETE FROM analytics.dim_institution WHERE unitid = 100003")
        result = DataQualityChecker(conn).check_referential_integrity(
            "analytics.fct_retention", "analytics.dim_institution", ["unitid"],
            severity=CheckSeverity.CRITICAL,
        )
        assert result.status == CheckStatus.FAILED
        assert result.details["orphaned"] == 1
        assert result.blocking

    def test_value_range_passes(self, populated_warehouse):
        checker = DataQualityChecker(populated_warehouse.conn)
        result = checker.check_value_range(
            "analytics.fct_retention", "retention_rate", min_val=0.0, max_val=1.0,
        )
        assert result.status == CheckStatus.PASSED

    def test_value_range_fails(self, populated_warehouse):
        checker = DataQualityChecker(populated_warehouse.conn)
        result = checker.check_value_range(
            "analytics.fct_retention", "retention_rate", min_val=0.0, max_val=0.75,
        )
        assert result.status == CheckStatus.FAILED


class TestAggregationChecks:
    def test_retention_variance_passes(self, populated_warehouse):
        result = DataQualityChecker(populated_warehouse.conn).check_retention_variance()
        assert result.status == CheckStatus.PASSED

    def test_retention_variance_flags_group(self, populated_warehouse):
        conn = populated_warehouse.conn
        conn.execute(
            "INSERT INTO analytics.fct_retention VALUES (100001, 2022, 7, 1, 0.9, 'x')"
        )
        result = DataQualityChecker(conn).check_retention_variance(1e-6)
        assert result.status == CheckStatus.FAILED
        assert result.severity == CheckSeverity.CRITICAL
        assert result.details["flagged_groups"] == 1
        assert result.details["examples"][0]["unitid"] == 100001

    def test_join_coverage_reports_one_sided_keys(self, populated_warehouse):
        conn = populated_warehouse.conn
        conn.execute(
            "INSERT INTO analytics.fct_enrollment VALUES (100001, 2023, 6, 1, 50, 'x')"
        )
        result = DataQualityChecker(conn).check_join_coverage()
        assert result.status == CheckStatus.FAILED
        assert result.details == {"enrollment_only": 1, "retention_only": 0}
        assert not result.blocking

    def test_enrollment_conservation(self, populated_warehouse):
        result = DataQualityChecker(populated_warehouse.conn).check_enrollment_conservation()
        assert result.status == CheckStatus.PASSED
        assert result.details["summary_total"] == 9600

    def test_summary_paths_agree(self, populated_warehouse):
        conn = populated_warehouse.conn
        result = DataQualityChecker(conn).check_summary_paths(_bulk_summary(conn))
        assert result.status == CheckStatus.PASSED

    def test_summary_paths_detect_mismatch(self, populated_warehouse):
        conn = populated_warehouse.conn
        summary = _bulk_summary(conn)
        summary.loc[0, "retention_rate"] += 0.01
        summary = summary.iloc[:-1]
        result = DataQualityChecker(conn).check_summary_paths(summary)
        assert result.status == CheckStatus.FAILED
        assert result.details["retention_mismatch"] == 1
        assert result.details["one_sided"] == 1

    def test_kpi_consistency(self, populated_warehouse):
        conn = populated_warehouse.conn
        bulk = compute_kpis(_bulk_summary(conn))
        rederived = rederive_kpis_from_facts(conn)
        result = DataQualityChecker(conn).check_kpi_consistency(
            reconcile_kpis(bulk, rederived)
        )
        assert result.status == CheckStatus.PASSED

    def test_kpi_consistency_fails_on_disagreement(self, populated_warehouse):
        conn = populated_warehouse.conn
        bulk = compute_kpis(_bulk_summary(conn))
        skewed = KPISet(
            simple_avg_retention=bulk.simple_avg_retention + 0.001,
            weighted_retention=bulk.weighted_retention,
            high_performer_fraction=bulk.high_performer_fraction,
            distinct_institutions=bulk.distinct_institutions,
            rows=bulk.rows,
        )
        result = DataQualityChecker(conn).check_kpi_consistency(reconcile_kpis(bulk, skewed))
        assert result.status == CheckStatus.FAILED
        assert result.details["disagreeing"] == ["simple_avg_retention"]

    def test_undefined_weighted_retention_blocks(self, populated_warehouse):
        kpis = KPISet(
            simple_avg_retention=0.5,
            weighted_retention=None,
            high_performer_fraction=0.0,
            distinct_institutions=1,
            rows=1,
        )
        result = DataQualityChecker(populated_warehouse.conn).check_kpi_bounds(kpis)
        assert result.status == CheckStatus.FAILED
        assert result.blocking


class TestFullSuite:
    def test_run_all_checks(self, populated_warehouse, config):
        summary = _run_all(populated_warehouse.conn, config)
        assert summary["total_checks"] > 0
        assert summary["failed"] == 0
        assert summary["ready"] is True
        assert summary["pass_rate"] == "100.0%"

    def test_variance_blocks_readiness(self, populated_warehouse, config):
        populated_warehouse.conn.execute(
            "INSERT INTO analytics.fct_retention VALUES (100002, 2022, 7, 2, 0.1, 'x')"
        )
        summary = _run_all(populated_warehouse.conn, config)
        assert summary["ready"] is False
        assert "retention_variance" in summary["blocking_failures"]

    def test_orphans_block_only_under_fail_policy(self, populated_warehouse):
        conn = populated_warehouse.conn
        conn.execute("DELETE FROM analytics.dim_institution WHERE unitid = 100003")

        lenient = _run_all(conn, PipelineConfig(orphan_policy="placeholder"))
        assert lenient["ready"] is True
        assert lenient["failed"] > 0

        strict = _run_all(conn, PipelineConfig(orphan_policy="fail"))
        assert strict["ready"] is False
        assert "ref_integrity_unitid" in strict["blocking_failures"]

    def test_check_result_blocking(self):
        warning = CheckResult("c", "t", CheckSeverity.WARNING, CheckStatus.FAILED, "m")
        critical = CheckResult("c", "t", CheckSeverity.CRITICAL, CheckStatus.FAILED, "m")
        passed = CheckResult("c", "t", CheckSeverity.CRITICAL, CheckStatus.PASSED, "m")
        assert not warning.blocking
        assert critical.blocking
        assert not passed.blocking
