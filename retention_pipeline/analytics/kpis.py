"""
Retention KPIs
===============
The four headline metrics of the retention dashboard, computed two
independent ways so each run can prove its numbers:

  - bulk path:        from the institution-year summary DataFrame
  - re-derivation:    one SQL statement straight over the raw fact tables

Metrics:
  - simple average retention (unweighted mean over institution-years)
  - enrollment-weighted retention  Σ(enrollment × rate) / Σ(enrollment)
  - high-performer fraction (rate ≥ threshold)
  - distinct institution count
"""

import logging
import math
from dataclasses import asdict, dataclass

import duckdb
import pandas as pd

from retention_pipeline.etl.transform import RATE_PRECISION

logger = logging.getLogger(__name__)

KPI_NAMES = (
    "simple_avg_retention",
    "weighted_retention",
    "high_performer_fraction",
    "distinct_institutions",
)


@dataclass(frozen=True)
class KPISet:
    simple_avg_retention: float | None
    weighted_retention: float | None
    high_performer_fraction: float | None
    distinct_institutions: int
    rows: int

    def as_dict(self) -> dict:
        return asdict(self)


def weighted_retention(
    enrollment: pd.Series,
    retention: pd.Series,
) -> float | None:
    """Enrollment-weighted retention; ``None`` when total enrollment is zero."""
    denominator = float(enrollment.sum())
    if denominator == 0:
        return None
    return float((enrollment.astype("float64") * retention).sum() / denominator)


def compute_kpis(summary: pd.DataFrame, threshold: float = 0.70) -> KPISet:
    """Bulk-path KPIs over a summary frame (unitid, total_enrollment, retention_rate)."""
    usable = summary.dropna(subset=["retention_rate", "total_enrollment"])
    rates = usable["retention_rate"].astype("float64")

    simple = float(rates.mean()) if len(usable) else None
    weighted = weighted_retention(usable["total_enrollment"], rates)

    rated = summary["retention_rate"].dropna()
    high = float((rated >= threshold).sum() / len(rated)) if len(rated) else None

    kpis = KPISet(
        simple_avg_retention=simple,
        weighted_retention=weighted,
        high_performer_fraction=high,
        distinct_institutions=int(summary["unitid"].nunique()),
        rows=len(summary),
    )
    logger.info("Bulk KPIs: %s", kpis)
    return kpis


def rederive_kpis_from_facts(
    conn: duckdb.DuckDBPyConnection,
    threshold: float = 0.70,
) -> KPISet:
    """Recompute the KPIs from the fact tables without using the summary view."""
    row = conn.execute(
        f"""
        WITH enrollment AS (
            SELECT unitid, academic_year, SUM(enrollment) AS total_enrollment
            FROM analytics.fct_enrollment
            GROUP BY unitid, academic_year
        ),
        retention AS (
            SELECT unitid, academic_year,
                   ROUND(AVG(retention_rate), {RATE_PRECISION}) AS retention_rate
            FROM analytics.fct_retention
            GROUP BY unitid, academic_year
        ),
        joined AS (
            SELECT e.unitid, e.total_enrollment, r.retention_rate
            FROM enrollment e
            JOIN retention r USING (unitid, academic_year)
        )
        SELECT
            AVG(retention_rate),
            SUM(total_enrollment * retention_rate) / NULLIF(SUM(total_enrollment), 0),
            CAST(SUM(CASE WHEN retention_rate >= ? THEN 1 ELSE 0 END) AS DOUBLE)
                / NULLIF(COUNT(retention_rate), 0),
            COUNT(DISTINCT unitid),
            COUNT(*)
        FROM joined
        """,
        [threshold],
    ).fetchone()

    kpis = KPISet(
        simple_avg_retention=None if row[0] is None else float(row[0]),
        weighted_retention=None if row[1] is None else float(row[1]),
        high_performer_fraction=None if row[2] is None else float(row[2]),
        distinct_institutions=int(row[3]),
        rows=int(row[4]),
    )
    logger.info("Re-derived KPIs: %s", kpis)
    return kpis


def _delta(a, b) -> float | None:
    if a is None and b is None:
        return 0.0
    if a is None or b is None:
        return None
    return abs(float(a) - float(b))


def reconcile_kpis(
    bulk: KPISet,
    rederived: KPISet,
    tolerance: float = 1e-9,
) -> dict:
    """Compare both KPI derivations metric by metric.

    A metric agrees when both sides are ``None`` or their absolute delta is
    within ``tolerance``. One-sided ``None`` never agrees.
    """
    metrics = {}
    for name in KPI_NAMES:
        a, b = getattr(bulk, name), getattr(rederived, name)
        delta = _delta(a, b)
        metrics[name] = {
            "bulk": a,
            "rederived": b,
            "delta": delta,
            "agrees": delta is not None and delta <= tolerance,
        }
    agreed = all(m["agrees"] for m in metrics.values())
    if not agreed:
        logger.warning(
            "KPI derivations disagree: %s",
            {k: v["delta"] for k, v in metrics.items() if not v["agrees"]},
        )
    return {"agreed": agreed, "tolerance": tolerance, "metrics": metrics}


def kpi_bound_violations(kpis: KPISet) -> list[str]:
    """Sanity bounds: rates must exist and lie in [0, 1]."""
    violations = []
    for name in ("simple_avg_retention", "weighted_retention", "high_performer_fraction"):
        value = getattr(kpis, name)
        if value is None:
            violations.append(f"{name} is undefined")
        elif not (math.isfinite(value) and 0.0 <= value <= 1.0 + 1e-12):
            violations.append(f"{name}={value} outside [0, 1]")
    return violations
