"""
Shared fixtures: temporary directories, configuration and small
hand-written extracts in IPEDS header layout.
"""

import os
import shutil
import tempfile

import pandas as pd
import pytest

from retention_pipeline.config import PipelineConfig

SOURCE_HEADER = ["UNITID", "INSTNM", "EFYTOTLT", "RET_PCF", "RACE", "SEX", "YEAR"]

# Five institutions, one year. Retention 60/68/73/80/82 percent repeated on
# each sex row; enrollment totals 1000/2000/2000/2000/2600.
# simple average 0.726, enrollment-weighted 7152 / 9600 = 0.745
SNAPSHOT = [
    ("100001", "Alpha College", 1000, "60.0", [400, 600]),
    ("100002", "Beta University", 2000, "68.0", [1200, 800]),
    ("100003", "Gamma State University", 2000, "73.0", [1000, 1000]),
    ("100004", "Delta Community College", 2000, "80.0", [900, 1100]),
    ("100005", "Epsilon Institute", 2600, "82.0", [1300, 1300]),
]


def snapshot_rows(year: int = 2022) -> list[tuple]:
    rows = []
    for unitid, name, _, retention, counts in SNAPSHOT:
        for sex, count in zip(("1", "2"), counts):
            rows.append((unitid, name, str(count), retention, "6", sex, str(year)))
    return rows


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test data."""
    d = tempfile.mkdtemp()
    yield d
    shutil.rmtree(d)


@pytest.fixture
def config(temp_dir):
    """Default configuration pointing at a throwaway warehouse."""
    return PipelineConfig(db_path=os.path.join(temp_dir, "test.duckdb"))


@pytest.fixture
def write_extract(temp_dir):
    """Return a writer for small CSV extracts in the source header layout."""

    def _write(rows: list[tuple], name: str = "extract.csv") -> str:
        path = os.path.join(temp_dir, name)
        pd.DataFrame(rows, columns=SOURCE_HEADER).to_csv(path, index=False)
        return path

    return _write


@pytest.fixture
def snapshot_extract(write_extract):
    """The five-institution KPI snapshot as a CSV extract."""
    return write_extract(snapshot_rows(2022), name="snapshot_2022.csv")
