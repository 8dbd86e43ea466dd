"""
Transform Layer
================
Cleans staged records and builds the dimensional model. Implements:
  - Field typing (null on failure, never zero; no clamping)
  - Exact-duplicate removal
  - Institution / term dimensions
  - Enrollment and retention fact streams
  - Orphaned-institution resolution (placeholder, drop, fail)
  - Institution-year summary from mergeable partial aggregates
"""

import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from retention_pipeline.config import PipelineConfig
from retention_pipeline.exceptions import ReferentialIntegrityError
from retention_pipeline.models.records import (
    BREAKDOWN_COLUMNS,
    FACT_KEY_COLUMNS,
    KEY_COLUMNS,
    LINEAGE_COLUMNS,
    RECORD_COLUMNS,
    StagedDataset,
)

logger = logging.getLogger(__name__)

NULL_TOKENS = {"", "NA", "N/A", "NULL", "NAN"}

# Repeated per-breakdown rates must average back to the exact stored value
RATE_PRECISION = 12

MIN_ACADEMIC_YEAR = 1900
MAX_ACADEMIC_YEAR = 2100


def _normalize_text(series: pd.Series) -> pd.Series:
    text = series.astype("string").str.strip()
    text = text.mask(text.str.upper().isin(NULL_TOKENS))
    return text.astype(object).where(text.notna(), None)


def _to_integer(text: pd.Series) -> pd.Series:
    numeric = pd.to_numeric(text, errors="coerce").astype("float64")
    integral = numeric.notna() & np.isfinite(numeric) & (numeric % 1 == 0)
    return numeric.where(integral).astype("Int64")


@dataclass
class DimensionalModel:
    """Output of the dimensional split for one batch."""

    institution_dim: pd.DataFrame
    term_dim: pd.DataFrame
    enrollment_facts: pd.DataFrame
    retention_facts: pd.DataFrame
    stats: dict = field(default_factory=dict)


class Transformer:
    """Transforms staged records into warehouse-ready dimensional structures."""

    @staticmethod
    def clean_records(
        dataset: StagedDataset,
        config: PipelineConfig | None = None,
    ) -> StagedDataset:
        """Type and validate staged records.

        Steps:
            1. Normalize text; blank and NA tokens become null
            2. Coerce integer, rate and code fields (failures null the field only)
            3. Null out-of-range values (negative enrollment, rate outside bounds)
            4. Drop rows without an institution id or academic year
            5. Remove exact duplicates across all record fields
        """
        config = config or PipelineConfig()
        raw = dataset.frame
        initial_count = len(raw)
        logger.info("Cleaning %d staged records...", initial_count)

        text = {col: _normalize_text(raw[col]) for col in RECORD_COLUMNS}
        coercion_failures = {}
        out_of_range = {}

        def track(col: str, coerced: pd.Series, valid: pd.Series) -> pd.Series:
            coercion_failures[col] = int((text[col].notna() & coerced.isna()).sum())
            out_of_range[col] = int((coerced.notna() & ~valid).sum())
            return coerced.where(valid)

        cleaned = pd.DataFrame(index=raw.index)
        for col in LINEAGE_COLUMNS:
            cleaned[col] = raw[col]

        unitid = _to_integer(text["unitid"])
        cleaned["unitid"] = track("unitid", unitid, (unitid > 0).fillna(False))

        cleaned["institution_name"] = text["institution_name"]

        enrollment = _to_integer(text["enrollment"])
        cleaned["enrollment"] = track(
            "enrollment", enrollment, (enrollment >= 0).fillna(False)
        )

        rate = pd.to_numeric(text["retention_rate"], errors="coerce").astype("float64")
        upper = 100.0 if config.retention_scale == "percent" else 1.0
        rate = track("retention_rate", rate, (rate >= 0.0) & (rate <= upper))
        cleaned["retention_rate"] = rate / 100.0 if upper == 100.0 else rate

        race = _to_integer(text["race_code"])
        cleaned["race_code"] = track(
            "race_code", race, race.isin(config.valid_race_codes).fillna(False)
        )
        sex = _to_integer(text["sex_code"])
        cleaned["sex_code"] = track(
            "sex_code", sex, sex.isin(config.valid_sex_codes).fillna(False)
        )

        year = _to_integer(text["academic_year"])
        cleaned["academic_year"] = track(
            "academic_year",
            year,
            ((year >= MIN_ACADEMIC_YEAR) & (year <= MAX_ACADEMIC_YEAR)).fillna(False),
        )

        # Rows without a key cannot be placed in any fact
        keyed = cleaned.dropna(subset=KEY_COLUMNS)
        unkeyed = initial_count - len(keyed)
        if unkeyed > 0:
            logger.warning("Dropped %d records without unitid/academic_year", unkeyed)

        # Compare source text, so cells nulled by typing cannot make rows equal
        source_text = pd.DataFrame(text).loc[keyed.index]
        deduped = keyed[~source_text.duplicated(keep="first")]
        dupes_removed = len(keyed) - len(deduped)
        if dupes_removed > 0:
            logger.warning("Removed %d exact duplicate records", dupes_removed)

        deduped = deduped.reset_index(drop=True)
        null_counts = {col: int(deduped[col].isna().sum()) for col in RECORD_COLUMNS}
        for col, n in coercion_failures.items():
            if n > 0:
                logger.warning("Field %s: %d value(s) could not be converted", col, n)

        final_count = len(deduped)
        logger.info(
            "Cleaning complete: %d → %d records (%d removed)",
            initial_count, final_count, initial_count - final_count,
        )
        return dataset.derive(
            "cleaned",
            deduped,
            rows_in=initial_count,
            rows_out=final_count,
            unkeyed_dropped=unkeyed,
            duplicates_removed=dupes_removed,
            coercion_failures=coercion_failures,
            out_of_range=out_of_range,
            null_counts=null_counts,
        )

    # ------------------------------------------------------------------
    # Dimensions
    # ------------------------------------------------------------------

    @staticmethod
    def build_institution_dimension(
        clean_df: pd.DataFrame,
        reference: pd.DataFrame | None = None,
    ) -> pd.DataFrame:
        """Distinct institutions that carry a usable name.

        The name from the most recent academic year wins. Reference rows
        (``unitid``, ``institution_name``) fill in institutions the batch does
        not name.
        """
        named = clean_df.dropna(subset=["institution_name"])
        named = named.sort_values(["unitid", "academic_year", "source_row"])
        dim = (
            named.groupby("unitid", as_index=False)["institution_name"]
            .last()
        )
        if reference is not None and not reference.empty:
            ref = reference[["unitid", "institution_name"]].dropna()
            ref = ref[~ref["unitid"].isin(dim["unitid"])]
            dim = pd.concat([dim, ref], ignore_index=True)

        dim["unitid"] = dim["unitid"].astype("int64")
        dim["is_placeholder"] = False
        dim = dim.sort_values("unitid").reset_index(drop=True)
        logger.info("Institution dimension built: %d rows", len(dim))
        return dim[["unitid", "institution_name", "is_placeholder"]]

    @staticmethod
    def build_term_dimension(clean_df: pd.DataFrame) -> pd.DataFrame:
        """One row per academic year; the year is the fall start year."""
        years = sorted(int(y) for y in clean_df["academic_year"].dropna().unique())
        dim = pd.DataFrame({
            "academic_year": years,
            "term_label": [f"{y}-{(y + 1) % 100:02d}" for y in years],
            "start_year": years,
            "end_year": [y + 1 for y in years],
        })
        logger.info("Term dimension built: %d rows", len(dim))
        return dim

    # ------------------------------------------------------------------
    # Facts
    # ------------------------------------------------------------------

    @staticmethod
    def _fact_stream(clean_df: pd.DataFrame, measure: str) -> tuple[pd.DataFrame, dict]:
        """One fact row per (unitid, academic_year, race_code, sex_code).

        Fully coded rows sharing a key are conflicting restatements: the last
        one wins. Rows whose race or sex code was unusable are distinct source
        rows, so they are pooled per key instead (enrollment summed, rate
        averaged) and nothing they carry is lost.
        """
        columns = FACT_KEY_COLUMNS + [measure, "batch_id"]
        facts = clean_df.dropna(subset=[measure])
        uncoded_mask = facts[BREAKDOWN_COLUMNS].isna().any(axis=1)
        coded = facts[~uncoded_mask]
        uncoded = facts[uncoded_mask]

        collisions = int(coded.duplicated(subset=FACT_KEY_COLUMNS, keep="last").sum())
        if collisions > 0:
            logger.warning(
                "%d conflicting %s rows share a fact key; keeping the last",
                collisions, measure,
            )
            coded = coded.drop_duplicates(subset=FACT_KEY_COLUMNS, keep="last")

        pooled = uncoded[columns]
        if not uncoded.empty:
            how = "sum" if measure == "enrollment" else "mean"
            pooled = uncoded.groupby(FACT_KEY_COLUMNS, dropna=False, as_index=False).agg(
                **{measure: (measure, how), "batch_id": ("batch_id", "last")}
            )
            logger.warning(
                "%d %s row(s) with an unknown race/sex code pooled into %d fact(s)",
                len(uncoded), measure, len(pooled),
            )

        stats = {"key_collisions": collisions, "unknown_code_rows": len(uncoded)}
        facts = pd.concat([coded[columns], pooled[columns]], ignore_index=True)
        facts["unitid"] = facts["unitid"].astype("int64")
        facts["academic_year"] = facts["academic_year"].astype("int64")
        if measure == "enrollment":
            facts[measure] = facts[measure].astype("int64")
        else:
            facts[measure] = facts[measure].astype("float64")
        facts = facts.sort_values(FACT_KEY_COLUMNS, na_position="first")
        return facts.reset_index(drop=True), stats

    @staticmethod
    def build_enrollment_facts(clean_df: pd.DataFrame) -> pd.DataFrame:
        """Enrollment-bearing rows; rows without a count are excluded."""
        facts, _ = Transformer._fact_stream(clean_df, "enrollment")
        logger.info("Enrollment facts built: %d rows", len(facts))
        return facts

    @staticmethod
    def build_retention_facts(clean_df: pd.DataFrame) -> pd.DataFrame:
        """Retention-bearing rows; rows without a rate are excluded."""
        facts, _ = Transformer._fact_stream(clean_df, "retention_rate")
        logger.info("Retention facts built: %d rows", len(facts))
        return facts

    @staticmethod
    def resolve_references(
        enrollment_facts: pd.DataFrame,
        retention_facts: pd.DataFrame,
        institution_dim: pd.DataFrame,
        policy: str = "placeholder",
    ) -> tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame, dict]:
        """Make every fact unitid resolvable against the institution dimension.

        Policies:
            placeholder: add a flagged dimension row per orphaned unitid
            drop:        remove facts for orphaned unitids
            fail:        raise ReferentialIntegrityError

        Returns:
            (enrollment_facts, retention_facts, institution_dim, stats)
        """
        known = set(institution_dim["unitid"])
        fact_ids = set(enrollment_facts["unitid"]) | set(retention_facts["unitid"])
        orphans = sorted(int(i) for i in fact_ids - known)
        stats = {
            "policy": policy,
            "orphaned_institutions": len(orphans),
            "placeholders_added": 0,
            "facts_dropped": 0,
        }
        if not orphans:
            return enrollment_facts, retention_facts, institution_dim, stats

        logger.warning(
            "%d institution id(s) referenced by facts are missing from "
            "dim_institution (policy=%s)", len(orphans), policy,
        )

        if policy == "fail":
            raise ReferentialIntegrityError(orphans)

        if policy == "drop":
            before = len(enrollment_facts) + len(retention_facts)
            enrollment_facts = enrollment_facts[
                ~enrollment_facts["unitid"].isin(orphans)
            ].reset_index(drop=True)
            retention_facts = retention_facts[
                ~retention_facts["unitid"].isin(orphans)
            ].reset_index(drop=True)
            stats["facts_dropped"] = before - len(enrollment_facts) - len(retention_facts)
            return enrollment_facts, retention_facts, institution_dim, stats

        placeholders = pd.DataFrame({
            "unitid": pd.Series(orphans, dtype="int64"),
            "institution_name": [f"Unknown institution {i}" for i in orphans],
            "is_placeholder": True,
        })
        institution_dim = pd.concat([institution_dim, placeholders], ignore_index=True)
        institution_dim = institution_dim.sort_values("unitid").reset_index(drop=True)
        stats["placeholders_added"] = len(orphans)
        return enrollment_facts, retention_facts, institution_dim, stats

    @staticmethod
    def build_dimensional_model(
        cleaned: StagedDataset,
        config: PipelineConfig | None = None,
        reference: pd.DataFrame | None = None,
    ) -> DimensionalModel:
        """Split cleaned records into dimensions and fact streams."""
        config = config or PipelineConfig()
        clean_df = cleaned.frame

        institution_dim = Transformer.build_institution_dimension(clean_df, reference)
        term_dim = Transformer.build_term_dimension(clean_df)
        enrollment, enrollment_stats = Transformer._fact_stream(clean_df, "enrollment")
        retention, retention_stats = Transformer._fact_stream(clean_df, "retention_rate")

        enrollment, retention, institution_dim, ref_stats = Transformer.resolve_references(
            enrollment, retention, institution_dim, config.orphan_policy,
        )

        stats = {
            "institution_dim": len(institution_dim),
            "term_dim": len(term_dim),
            "fct_enrollment": len(enrollment),
            "fct_retention": len(retention),
            "enrollment_key_collisions": enrollment_stats["key_collisions"],
            "enrollment_unknown_code_rows": enrollment_stats["unknown_code_rows"],
            "retention_key_collisions": retention_stats["key_collisions"],
            "retention_unknown_code_rows": retention_stats["unknown_code_rows"],
            "references": ref_stats,
        }
        logger.info(
            "Dimensional model: %d institutions, %d terms, %d enrollment facts, "
            "%d retention facts",
            len(institution_dim), len(term_dim), len(enrollment), len(retention),
        )
        return DimensionalModel(
            institution_dim=institution_dim,
            term_dim=term_dim,
            enrollment_facts=enrollment,
            retention_facts=retention,
            stats=stats,
        )

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    @staticmethod
    def partial_aggregates(
        enrollment_facts: pd.DataFrame,
        retention_facts: pd.DataFrame,
    ) -> pd.DataFrame:
        """Per institution-year partial sums; mergeable across partitions."""
        enr = enrollment_facts.groupby(KEY_COLUMNS)["enrollment"].agg(
            enrollment_sum="sum", enrollment_rows="count",
        )
        ret = retention_facts.groupby(KEY_COLUMNS)["retention_rate"].agg(
            retention_sum="sum", retention_count="count",
        )
        partial = pd.concat([enr, ret], axis=1).fillna(0)
        partial = partial.reset_index()
        return Transformer._cast_partials(partial)

    @staticmethod
    def _cast_partials(partial: pd.DataFrame) -> pd.DataFrame:
        columns = KEY_COLUMNS + [
            "enrollment_sum", "enrollment_rows", "retention_sum", "retention_count",
        ]
        if partial.empty:
            return pd.DataFrame({
                "unitid": pd.Series(dtype="int64"),
                "academic_year": pd.Series(dtype="int64"),
                "enrollment_sum": pd.Series(dtype="int64"),
                "enrollment_rows": pd.Series(dtype="int64"),
                "retention_sum": pd.Series(dtype="float64"),
                "retention_count": pd.Series(dtype="int64"),
            })
        partial = partial[columns].copy()
        for col in ["unitid", "academic_year", "enrollment_sum",
                    "enrollment_rows", "retention_count"]:
            partial[col] = partial[col].astype("int64")
        partial["retention_sum"] = partial["retention_sum"].astype("float64")
        return partial.sort_values(KEY_COLUMNS).reset_index(drop=True)

    @staticmethod
    def combine_partials(partials: list[pd.DataFrame]) -> pd.DataFrame:
        """Merge partial aggregates computed on disjoint fact partitions."""
        non_empty = [p for p in partials if not p.empty]
        if not non_empty:
            return Transformer._cast_partials(pd.DataFrame())
        combined = (
            pd.concat(non_empty, ignore_index=True)
            .groupby(KEY_COLUMNS, as_index=False)
            .sum()
        )
        return Transformer._cast_partials(combined)

    @staticmethod
    def finalize_summary(partials: pd.DataFrame) -> tuple[pd.DataFrame, dict]:
        """Inner-join the enrollment and retention sides into the summary grain.

        Returns:
            (summary, join_stats) where join_stats counts the institution-years
            present on only one side.
        """
        has_enrollment = partials["enrollment_rows"] > 0
        has_retention = partials["retention_count"] > 0
        both = has_enrollment & has_retention

        join_stats = {
            "enrollment_keys": int(has_enrollment.sum()),
            "retention_keys": int(has_retention.sum()),
            "enrollment_only": int((has_enrollment & ~has_retention).sum()),
            "retention_only": int((has_retention & ~has_enrollment).sum()),
            "summary_rows": int(both.sum()),
        }
        if join_stats["enrollment_only"] or join_stats["retention_only"]:
            logger.warning(
                "Join excluded %d enrollment-only and %d retention-only institution-years",
                join_stats["enrollment_only"], join_stats["retention_only"],
            )

        matched = partials[both]
        summary = pd.DataFrame({
            "unitid": matched["unitid"].astype("int64"),
            "academic_year": matched["academic_year"].astype("int64"),
            "total_enrollment": matched["enrollment_sum"].astype("int64"),
            "retention_rate": np.round(
                matched["retention_sum"] / matched["retention_count"], RATE_PRECISION
            ).astype("float64"),
        })
        summary = summary.sort_values(KEY_COLUMNS).reset_index(drop=True)
        return summary, join_stats

    @staticmethod
    def build_summary(
        enrollment_facts: pd.DataFrame,
        retention_facts: pd.DataFrame,
    ) -> tuple[pd.DataFrame, dict]:
        """Collapse the demographic breakdown into one row per institution-year.

        total_enrollment sums the breakdown rows. retention_rate is their
        arithmetic mean, which assumes the source repeats one institution-level
        rate on every breakdown row (see ``retention_variance``).
        """
        logger.info("Computing institution-year summary...")
        partials = Transformer.partial_aggregates(enrollment_facts, retention_facts)
        summary, join_stats = Transformer.finalize_summary(partials)
        logger.info("Summary computed: %d institution-years", len(summary))
        return summary, join_stats

    @staticmethod
    def retention_variance(retention_facts: pd.DataFrame) -> pd.DataFrame:
        """Spread of retention rates inside each institution-year group."""
        if retention_facts.empty:
            return pd.DataFrame(columns=KEY_COLUMNS + ["rows", "std", "min", "max"])
        grouped = retention_facts.groupby(KEY_COLUMNS)["retention_rate"]
        spread = grouped.agg(
            rows="count",
            std=lambda s: float(np.std(s.to_numpy(), ddof=0)),
            min="min",
            max="max",
        )
        return spread.reset_index()
