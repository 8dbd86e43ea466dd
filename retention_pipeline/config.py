"""
Pipeline Configuration
=======================
Runtime settings for a batch run, loaded from YAML with sensible defaults.
"""

import logging
from dataclasses import dataclass, field, fields

import yaml

from retention_pipeline.exceptions import ConfigError

logger = logging.getLogger(__name__)

RETENTION_SCALES = ("percent", "fraction")
ORPHAN_POLICIES = ("placeholder", "drop", "fail")
RELOAD_MODES = ("academic_year", "institution_year")

# IPEDS-style source headers mapped onto the canonical record schema
DEFAULT_COLUMN_MAP = {
    "UNITID": "unitid",
    "INSTNM": "institution_name",
    "EFYTOTLT": "enrollment",
    "RET_PCF": "retention_rate",
    "RACE": "race_code",
    "SEX": "sex_code",
    "YEAR": "academic_year",
}


@dataclass
class PipelineConfig:
    """Settings for one pipeline run."""

    db_path: str = "data/warehouse/retention.duckdb"
    retention_scale: str = "percent"
    column_map: dict = field(default_factory=lambda: dict(DEFAULT_COLUMN_MAP))
    valid_race_codes: tuple = (1, 2, 3, 4, 5, 6, 7, 8, 9)
    valid_sex_codes: tuple = (1, 2, 99)
    orphan_policy: str = "placeholder"
    reload_mode: str = "academic_year"
    high_performer_threshold: float = 0.70
    retention_variance_tolerance: float = 1e-6
    kpi_tolerance: float = 1e-9
    min_summary_rows: int = 1
    report_dir: str | None = None

    def __post_init__(self):
        if self.retention_scale not in RETENTION_SCALES:
            raise ConfigError(
                f"retention_scale must be one of {RETENTION_SCALES}, got {self.retention_scale!r}"
            )
        if self.orphan_policy not in ORPHAN_POLICIES:
            raise ConfigError(
                f"orphan_policy must be one of {ORPHAN_POLICIES}, got {self.orphan_policy!r}"
            )
        if self.reload_mode not in RELOAD_MODES:
            raise ConfigError(
                f"reload_mode must be one of {RELOAD_MODES}, got {self.reload_mode!r}"
            )
        if not 0.0 <= self.high_performer_threshold <= 1.0:
            raise ConfigError("high_performer_threshold must be a fraction in [0, 1]")
        self.valid_race_codes = tuple(int(c) for c in self.valid_race_codes)
        self.valid_sex_codes = tuple(int(c) for c in self.valid_sex_codes)
        self.column_map = {str(k): str(v) for k, v in self.column_map.items()}

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown configuration key(s): {', '.join(sorted(unknown))}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: str) -> "PipelineConfig":
        """Load configuration from a YAML file; missing keys keep their defaults."""
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping at the top level")
        logger.info("Loaded pipeline configuration from %s", path)
        return cls.from_dict(data)
