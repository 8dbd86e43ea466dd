"""
Institution Retention Data Generator
=====================================
Generates synthetic IPEDS-style extracts: one row per institution ×
race × sex breakdown per academic year, with the institution-level
retention rate (percent) repeated on every breakdown row.

Optional noise mirrors what public releases actually contain:
- blank and "N/A" cells
- negative enrollment counts and retention above 100
- padded identifiers
- exact duplicate rows
- institutions published without a name
- institution-years with enrollment but no retention figure
"""

import logging
import os

import numpy as np
import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

RACE_CODES = [1, 2, 3, 4, 5, 6, 7, 8, 9]
RACE_WEIGHTS = [0.01, 0.07, 0.13, 0.20, 0.01, 0.47, 0.04, 0.03, 0.04]

SEX_CODES = [1, 2, 99]

SOURCE_COLUMNS = ["UNITID", "INSTNM", "EFYTOTLT", "RET_PCF", "RACE", "SEX", "YEAR"]

NAME_PLACES = [
    "Riverside", "Lakeview", "Northern Plains", "Coastal", "Granite Valley",
    "Pinecrest", "Eastbrook", "Summit", "Red River", "Westfield",
    "Blue Ridge", "Harbor", "Prairie", "Silver Lake", "Oakmont",
]
NAME_KINDS = [
    "State University", "Community College", "College", "Technical Institute",
    "University", "College of Nursing", "Polytechnic",
]


# ---------------------------------------------------------------------------
# Institution generator
# ---------------------------------------------------------------------------

class InstitutionGenerator:
    """Generates the static institution profiles behind every release."""

    def __init__(self, num_institutions: int, seed: int = 42):
        self.num_institutions = num_institutions
        self.rng = np.random.default_rng(seed)

    def generate(self) -> pd.DataFrame:
        """Return unitid, institution_name, base_enrollment, base_retention_pct."""
        logger.info("Generating %d institution profiles...", self.num_institutions)
        n = self.num_institutions

        unitids = 100000 + np.arange(n) * 7 + self.rng.integers(0, 7, size=n)
        names = [
            f"{self.rng.choice(NAME_PLACES)} {self.rng.choice(NAME_KINDS)} {i + 1}"
            for i in range(n)
        ]
        enrollment = np.clip(
            self.rng.lognormal(mean=7.5, sigma=1.1, size=n), 40, 60000
        ).round().astype(int)

        # Larger institutions retain slightly better
        size_effect = (np.log(enrollment) - 7.5) * 3.0
        retention = np.clip(
            self.rng.normal(70.0, 11.0, size=n) + size_effect, 15.0, 98.0
        )

        df = pd.DataFrame({
            "unitid": unitids,
            "institution_name": names,
            "base_enrollment": enrollment,
            "base_retention_pct": retention.round(1),
        })
        logger.info("Institution profiles generated: %d rows", len(df))
        return df


# ---------------------------------------------------------------------------
# Record generator
# ---------------------------------------------------------------------------

class RecordGenerator:
    """Generates per-breakdown extract rows for one or more academic years."""

    def __init__(
        self,
        institutions_df: pd.DataFrame,
        seed: int = 42,
        noise: bool = True,
    ):
        self.institutions_df = institutions_df
        self.rng = np.random.default_rng(seed)
        self.noise = noise
        nameless_mask = self.rng.random(len(institutions_df)) < (0.04 if noise else 0.0)
        self.nameless = {int(u) for u in institutions_df["unitid"][nameless_mask]}

    def _rows_for_institution(self, inst: pd.Series, year: int) -> list[dict]:
        drift = self.rng.normal(1.0, 0.05)
        total = max(1, int(inst["base_enrollment"] * drift))
        retention = float(np.clip(
            inst["base_retention_pct"] + self.rng.normal(0.0, 2.0), 0.0, 100.0
        ))
        retention_text = f"{retention:.1f}"
        if self.noise and self.rng.random() < 0.03:
            retention_text = ""

        n_races = int(self.rng.integers(3, len(RACE_CODES) + 1))
        races = sorted(self.rng.choice(
            RACE_CODES, size=n_races, replace=False,
            p=np.array(RACE_WEIGHTS) / sum(RACE_WEIGHTS),
        ))
        sexes = SEX_CODES if self.rng.random() < 0.3 else SEX_CODES[:2]
        cells = [(r, s) for r in races for s in sexes]
        counts = self.rng.multinomial(total, self.rng.dirichlet(np.ones(len(cells))))

        unitid = int(inst["unitid"])
        name = "" if unitid in self.nameless else inst["institution_name"]
        rows = []
        for (race, sex), count in zip(cells, counts):
            rows.append({
                "UNITID": str(unitid),
                "INSTNM": name,
                "EFYTOTLT": str(int(count)),
                "RET_PCF": retention_text,
                "RACE": str(race),
                "SEX": str(sex),
                "YEAR": str(year),
            })
        return rows

    def _apply_noise(self, df: pd.DataFrame) -> pd.DataFrame:
        n = len(df)
        roll = self.rng.random(n)
        df.loc[roll < 0.01, "EFYTOTLT"] = "N/A"
        df.loc[(roll >= 0.01) & (roll < 0.015), "EFYTOTLT"] = "-12"
        df.loc[(roll >= 0.015) & (roll < 0.02), "RET_PCF"] = "105.0"
        padded = (roll >= 0.02) & (roll < 0.03)
        df.loc[padded, "UNITID"] = " " + df.loc[padded, "UNITID"] + " "

        dupes = df.sample(frac=0.01, random_state=int(self.rng.integers(0, 2**31)))
        return pd.concat([df, dupes], ignore_index=True)

    def generate_year(self, year: int) -> pd.DataFrame:
        """Return the raw extract (all text columns) for one academic year."""
        records = []
        for _, inst in self.institutions_df.iterrows():
            records.extend(self._rows_for_institution(inst, year))

        df = pd.DataFrame(records, columns=SOURCE_COLUMNS)
        if self.noise:
            df = self._apply_noise(df)
        logger.info("Generated %d extract rows for %d", len(df), year)
        return df

    def generate(
        self,
        years: list[int],
        output_dir: str = "data/raw",
        fmt: str = "csv",
    ) -> list[str]:
        """Write one extract per academic year; returns the file paths."""
        os.makedirs(output_dir, exist_ok=True)
        paths = []
        for year in years:
            df = self.generate_year(year)
            if fmt == "parquet":
                out_path = os.path.join(output_dir, f"retention_{year}.parquet")
                pq.write_table(pa.Table.from_pandas(df), out_path, compression="snappy")
            else:
                out_path = os.path.join(output_dir, f"retention_{year}.csv")
                df.to_csv(out_path, index=False)
            logger.info("  -> %d rows written to %s", len(df), out_path)
            paths.append(out_path)
        return paths


# ---------------------------------------------------------------------------
# Quick-run generation (smaller dataset for demo / CI)
# ---------------------------------------------------------------------------

def generate_demo_dataset(
    num_institutions: int = 500,
    years: list[int] | None = None,
    output_dir: str = "data/raw",
    seed: int = 42,
    noise: bool = True,
    fmt: str = "csv",
) -> tuple[pd.DataFrame, list[str]]:
    """Generate a small demo dataset suitable for local testing.

    Returns:
        (institutions_df, source_paths)
    """
    years = years or [2021, 2022, 2023]
    institutions_df = InstitutionGenerator(num_institutions, seed=seed).generate()
    record_gen = RecordGenerator(institutions_df, seed=seed, noise=noise)
    paths = record_gen.generate(years, output_dir=output_dir, fmt=fmt)
    return institutions_df, paths


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    import argparse

    parser = argparse.ArgumentParser(description="Generate synthetic retention extracts")
    parser.add_argument("--institutions", type=int, default=500, help="Number of institutions")
    parser.add_argument("--years", type=int, nargs="+", default=[2021, 2022, 2023],
                        help="Academic years (fall start year)")
    parser.add_argument("--output", type=str, default="data/raw", help="Output directory")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--clean", action="store_true", help="Do not inject noise")
    parser.add_argument("--format", choices=["csv", "parquet"], default="csv")
    args = parser.parse_args()

    generate_demo_dataset(
        num_institutions=args.institutions,
        years=args.years,
        output_dir=args.output,
        seed=args.seed,
        noise=not args.clean,
        fmt=args.format,
    )
    print("Data generation complete.")
