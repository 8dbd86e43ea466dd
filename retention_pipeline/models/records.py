"""
Record Schema
==============
The typed record schema shared by every pipeline stage, and the immutable
dataset value that stages hand to one another.
"""

from dataclasses import dataclass, field, replace
from enum import Enum

import pandas as pd


class FieldKind(Enum):
    INTEGER = "integer"
    FLOAT = "float"
    TEXT = "text"
    CODE = "code"


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    kind: FieldKind
    key: bool = False


RECORD_SCHEMA = (
    ColumnSpec("unitid", FieldKind.INTEGER, key=True),
    ColumnSpec("institution_name", FieldKind.TEXT),
    ColumnSpec("enrollment", FieldKind.INTEGER),
    ColumnSpec("retention_rate", FieldKind.FLOAT),
    ColumnSpec("race_code", FieldKind.CODE),
    ColumnSpec("sex_code", FieldKind.CODE),
    ColumnSpec("academic_year", FieldKind.INTEGER, key=True),
)

RECORD_COLUMNS = [c.name for c in RECORD_SCHEMA]
KEY_COLUMNS = [c.name for c in RECORD_SCHEMA if c.key]
BREAKDOWN_COLUMNS = ["race_code", "sex_code"]
FACT_KEY_COLUMNS = ["unitid", "academic_year", *BREAKDOWN_COLUMNS]
LINEAGE_COLUMNS = ["batch_id", "source_file", "source_row"]


@dataclass(frozen=True)
class StagedDataset:
    """A versioned, stage-tagged snapshot of the batch.

    Stages never mutate a dataset in place: ``derive`` returns a new value
    carrying the same batch identity and the accumulated stage statistics.
    """

    batch_id: str
    source_file: str
    stage: str
    frame: pd.DataFrame
    stats: dict = field(default_factory=dict)

    def derive(self, stage: str, frame: pd.DataFrame, **stats) -> "StagedDataset":
        merged = {**self.stats, stage: stats}
        return replace(self, stage=stage, frame=frame, stats=merged)

    def __len__(self) -> int:
        return len(self.frame)
