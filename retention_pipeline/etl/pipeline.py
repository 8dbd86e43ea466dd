"""
ETL Pipeline Orchestrator
==========================
End-to-end batch run: Extract → Clean → Model → Load → Validate → Promote.

The staging, dimension and fact loads of a batch commit together or not at
all. The summary is promoted to the reporting layer only when no CRITICAL
data quality check fails; a failed validation leaves the loaded facts in
place and the previously published summary untouched.
"""

import json
import logging
import os
import time
from datetime import datetime

import duckdb
import pandas as pd

from retention_pipeline.analytics.kpis import (
    compute_kpis,
    reconcile_kpis,
    rederive_kpis_from_facts,
)
from retention_pipeline.config import PipelineConfig
from retention_pipeline.data_quality.checks import DataQualityChecker
from retention_pipeline.etl.extract import Extractor
from retention_pipeline.etl.load import Loader
from retention_pipeline.etl.transform import DimensionalModel, Transformer
from retention_pipeline.models.records import KEY_COLUMNS, StagedDataset
from retention_pipeline.models.schema import WarehouseSchema

logger = logging.getLogger(__name__)

FACT_TABLES = ("analytics.fct_enrollment", "analytics.fct_retention")


class RetentionPipeline:
    """End-to-end ETL pipeline for institution retention data."""

    def __init__(self, config: PipelineConfig | None = None):
        self.config = config or PipelineConfig()
        self.extractor = Extractor(self.config)
        self.transformer = Transformer()

    def run(self, source_path: str, reference: pd.DataFrame | None = None) -> dict:
        """Process one source file.

        Steps:
            1. Extract raw records into staging form
            2. Clean and type records
            3. Build dimensions and facts, resolve orphaned institutions
            4. Load staging, dimensions and facts in one transaction
            5. Aggregate and compute KPIs two independent ways
            6. Run data quality checks; promote the summary if none block

        Args:
            source_path: CSV or Parquet extract.
            reference: Optional institution reference rows
                       (``unitid``, ``institution_name``).

        Returns:
            Validation report.
        """
        start_time = time.time()
        report = {
            "pipeline": "retention_batch",
            "source": source_path,
            "started_at": datetime.utcnow().isoformat(),
            "steps": {},
        }

        logger.info("=" * 60)
        logger.info("STARTING RETENTION PIPELINE: %s", source_path)
        logger.info("=" * 60)

        # -- Step 1: Extract --
        logger.info("[1/6] Extracting raw records...")
        staged = self.extractor.extract(source_path)
        report["batch_id"] = staged.batch_id

        with WarehouseSchema(self.config.db_path) as warehouse:
            warehouse.initialize()
            loader = Loader(warehouse.conn)
            before = warehouse.get_table_stats()
            started_at = loader.record_batch_start(staged.batch_id, staged.source_file)

            try:
                # -- Step 2: Clean --
                logger.info("[2/6] Cleaning records...")
                cleaned = self.transformer.clean_records(staged, self.config)

                # -- Step 3: Model --
                logger.info("[3/6] Building dimensional model...")
                known = self._known_institutions(warehouse.conn, cleaned, reference)
                model = self.transformer.build_dimensional_model(
                    cleaned, self.config, known
                )
                report["steps"]["stages"] = {**cleaned.stats, "modeled": model.stats}

                # -- Step 4: Load --
                logger.info("[4/6] Loading into warehouse...")
                self._load_batch(warehouse.conn, loader, staged, cleaned, model)
                report["steps"]["load"] = "success"
                report["steps"]["verification"] = {
                    table: loader.verify_load(table)["row_count"] for table in FACT_TABLES
                }

                # -- Steps 5 & 6: Aggregate, validate, promote --
                validation = self._validate_and_promote(warehouse.conn, loader)
                report["steps"].update(validation)
            except Exception as e:
                logger.error("Batch %s failed: %s", staged.batch_id, e)
                loader.record_batch_end(
                    staged.batch_id, started_at, "failed", False, {"error": str(e)}
                )
                raise

            after = warehouse.get_table_stats()
            report["table_stats"] = after
            report["net_new_rows"] = {
                table: after.get(table, 0) - before.get(table, 0) for table in FACT_TABLES
            }

            promoted = report["steps"]["promotion"]["promoted"]
            report["status"] = "success" if promoted else "validation_failed"
            report["elapsed_seconds"] = round(time.time() - start_time, 2)
            loader.record_batch_end(
                staged.batch_id, started_at, report["status"], promoted, report
            )

        self._write_report(report)

        logger.info("=" * 60)
        logger.info("PIPELINE %s in %.2f seconds",
                    report["status"].upper(), report["elapsed_seconds"])
        logger.info("=" * 60)
        return report

    def run_directory(self, raw_dir: str) -> list[dict]:
        """Process every source file in ``raw_dir`` in name order."""
        return [self.run(path) for path in self.extractor.list_source_files(raw_dir)]

    @staticmethod
    def _known_institutions(
        conn: duckdb.DuckDBPyConnection,
        cleaned: StagedDataset,
        reference: pd.DataFrame | None = None,
    ) -> pd.DataFrame:
        """Reference names for this batch: caller rows, then named warehouse rows.

        Only institutions the batch mentions are looked up, so an institution
        named by an earlier batch is never treated as an orphan.
        """
        unitids = pd.DataFrame({
            "unitid": cleaned.frame["unitid"].dropna().astype("int64").unique()
        })
        conn.register("__batch_unitids", unitids)
        try:
            stored = conn.execute(
                "SELECT d.unitid, d.institution_name "
                "FROM analytics.dim_institution d "
                "WHERE NOT d.is_placeholder AND EXISTS "
                "(SELECT 1 FROM __batch_unitids b WHERE b.unitid = d.unitid)"
            ).fetchdf()
        finally:
            conn.unregister("__batch_unitids")

        if reference is None or reference.empty:
            return stored
        given = reference[["unitid", "institution_name"]].dropna()
        stored = stored[~stored["unitid"].isin(given["unitid"])]
        return pd.concat([given, stored], ignore_index=True)

    def _load_batch(
        self,
        conn: duckdb.DuckDBPyConnection,
        loader: Loader,
        staged: StagedDataset,
        cleaned: StagedDataset,
        model: DimensionalModel,
    ) -> None:
        # Every institution-year the batch carries, whichever measures survived
        partitions = cleaned.frame[KEY_COLUMNS].drop_duplicates().astype("int64")

        conn.begin()
        try:
            loader.load_staging(staged.frame, "staging.raw_records")
            loader.load_staging(cleaned.frame, "staging.clean_records")
            loader.load_institution_dimension(model.institution_dim)
            loader.load_dimension(
                model.term_dim, "analytics.dim_term",
                mode="upsert", key_column="academic_year",
            )
            loader.load_facts(
                model.enrollment_facts, "analytics.fct_enrollment",
                mode=self.config.reload_mode, partitions=partitions,
            )
            loader.load_facts(
                model.retention_facts, "analytics.fct_retention",
                mode=self.config.reload_mode, partitions=partitions,
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def _validate_and_promote(
        self,
        conn: duckdb.DuckDBPyConnection,
        loader: Loader,
    ) -> dict:
        threshold = self.config.high_performer_threshold

        logger.info("[5/6] Aggregating and computing KPIs...")
        enrollment = conn.execute(
            "SELECT unitid, academic_year, enrollment FROM analytics.fct_enrollment"
        ).fetchdf()
        retention = conn.execute(
            "SELECT unitid, academic_year, retention_rate FROM analytics.fct_retention"
        ).fetchdf()
        summary, join_stats = self.transformer.build_summary(enrollment, retention)

        bulk = compute_kpis(summary, threshold)
        rederived = rederive_kpis_from_facts(conn, threshold)
        reconciliation = reconcile_kpis(bulk, rederived, self.config.kpi_tolerance)

        logger.info("[6/6] Running data quality checks...")
        dq = DataQualityChecker(conn).run_all_checks(
            self.config,
            bulk_summary=summary,
            reconciliation=reconciliation,
            kpis=bulk,
        )

        promoted = dq["ready"]
        published = None
        if promoted:
            conn.begin()
            try:
                published = loader.promote_summary()
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        else:
            logger.warning(
                "Summary NOT promoted; blocking checks: %s", dq["blocking_failures"]
            )

        return {
            "aggregation": {"summary_rows": len(summary), "join": join_stats},
            "kpis": {
                "bulk": bulk.as_dict(),
                "rederived": rederived.as_dict(),
                "reconciliation": reconciliation,
            },
            "data_quality": dq,
            "promotion": {"promoted": promoted, "published_rows": published},
        }

    def _write_report(self, report: dict) -> str | None:
        if not self.config.report_dir:
            return None
        os.makedirs(self.config.report_dir, exist_ok=True)
        stamp = datetime.utcnow().strftime("%Y%m%dT%H%M%S")
        path = os.path.join(
            self.config.report_dir, f"validation_{report['batch_id']}_{stamp}.json"
        )
        with open(path, "w") as f:
            json.dump(report, f, indent=2, default=str)
        report["report_path"] = path
        logger.info("Validation report written to %s", path)
        return path


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    import argparse

    parser = argparse.ArgumentParser(description="Run the Retention ETL Pipeline")
    parser.add_argument(
        "source", type=str,
        help="Source extract (CSV/Parquet) or a directory of extracts",
    )
    parser.add_argument(
        "--config", type=str, default=None,
        help="Pipeline configuration YAML",
    )
    parser.add_argument(
        "--db-path", type=str, default=None,
        help="Warehouse database path (overrides config)",
    )
    args = parser.parse_args()

    config = PipelineConfig.from_yaml(args.config) if args.config else PipelineConfig()
    if args.db_path:
        config.db_path = args.db_path

    pipeline = RetentionPipeline(config)
    if os.path.isdir(args.source):
        reports = pipeline.run_directory(args.source)
    else:
        reports = [pipeline.run(args.source)]

    print("\n📊 Pipeline Report:")
    print(json.dumps(reports, indent=2, default=str))
