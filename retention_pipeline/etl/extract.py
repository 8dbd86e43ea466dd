"""
Extract Layer
==============
Reads raw institution × demographic extracts (CSV or Parquet) into the
staging representation. Every source field is captured as text; typing
happens in the transform layer.
"""

import glob
import hashlib
import logging
import os

import pandas as pd

from retention_pipeline.config import PipelineConfig
from retention_pipeline.exceptions import SchemaValidationError
from retention_pipeline.models.records import RECORD_COLUMNS, StagedDataset

logger = logging.getLogger(__name__)


def compute_batch_id(path: str) -> str:
    """Content hash of the source file; identical files share a batch id."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()[:12]


class Extractor:
    """Extracts raw records from delimited or Parquet source files."""

    def __init__(self, config: PipelineConfig | None = None):
        self.config = config or PipelineConfig()

    def _read_raw(self, path: str) -> pd.DataFrame:
        if path.lower().endswith(".parquet"):
            df = pd.read_parquet(path)
            return df.apply(
                lambda col: col.map(lambda v: "" if pd.isna(v) else str(v))
            )
        return pd.read_csv(path, dtype=str, keep_default_na=False)

    def map_columns(self, df: pd.DataFrame, source: str) -> pd.DataFrame:
        """Rename source headers onto the canonical schema and validate it.

        Headers already in canonical form are kept; others are looked up in
        ``column_map`` case-insensitively. Unmapped columns are dropped.
        """
        lookup = {k.upper(): v for k, v in self.config.column_map.items()}
        renames = {}
        for col in df.columns:
            name = col.strip()
            if name in RECORD_COLUMNS:
                renames[col] = name
            elif name.upper() in lookup:
                renames[col] = lookup[name.upper()]

        mapped = df.rename(columns=renames)
        missing = [c for c in RECORD_COLUMNS if c not in mapped.columns]
        if missing:
            raise SchemaValidationError(missing, source)

        ignored = [c for c in df.columns if c not in renames]
        if ignored:
            logger.info("Ignoring %d unmapped column(s) in %s: %s",
                        len(ignored), source, ignored)
        return mapped[RECORD_COLUMNS]

    def extract(self, path: str) -> StagedDataset:
        """Extract one source file into a staged dataset.

        Args:
            path: CSV (any extension other than .parquet) or Parquet file.

        Returns:
            StagedDataset at stage ``staged`` with lineage columns attached.
        """
        if not os.path.exists(path):
            raise FileNotFoundError(f"Source file not found: {path}")

        source_file = os.path.basename(path)
        raw = self._read_raw(path)
        staged = self.map_columns(raw, source_file).reset_index(drop=True)

        batch_id = compute_batch_id(path)
        staged.insert(0, "source_row", range(1, len(staged) + 1))
        staged.insert(0, "source_file", source_file)
        staged.insert(0, "batch_id", batch_id)

        logger.info("Extracted %d raw records from %s (batch %s)",
                    len(staged), path, batch_id)
        dataset = StagedDataset(
            batch_id=batch_id,
            source_file=source_file,
            stage="raw",
            frame=staged,
        )
        return dataset.derive("staged", staged, rows=len(staged))

    def list_source_files(self, raw_dir: str) -> list[str]:
        """Return sorted CSV and Parquet files available in ``raw_dir``."""
        files = sorted(
            glob.glob(os.path.join(raw_dir, "*.csv"))
            + glob.glob(os.path.join(raw_dir, "*.parquet"))
        )
        logger.info("Found %d source file(s) in %s", len(files), raw_dir)
        return files
