"""
Workbook loading for COVID-19 IFR studies.

Reads the two sheets of the IFR workbook (global benchmark studies and
US studies), maps their headers onto canonical column names and returns
one flat table with one row per (study, age group) observation.
"""

import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from loguru import logger

from .config import Config


NUMERIC_COLUMNS = ["median_age", "population", "deaths", "ir", "ir_lower", "ir_upper"]

_RANGE_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(?:-|–|to)\s*(\d+(?:\.\d+)?)$")
_OPEN_UPPER_RE = re.compile(
    r"^(?:(?:>=?|≥)\s*(\d+(?:\.\d+)?)|(\d+(?:\.\d+)?)\s*(?:\+|plus|and over|and older))$"
)
_OPEN_LOWER_RE = re.compile(r"^(?:<|under|below)\s*(\d+(?:\.\d+)?)$")
_SINGLE_RE = re.compile(r"^(\d+(?:\.\d+)?)$")


def normalize_column_name(name) -> str:
    """Lower-case snake-case version of a header, e.g. 'IR (95% lower)' -> 'ir_95_lower'."""
    text = str(name).strip().lower()
    text = re.sub(r"[^a-z0-9]+", "_", text)
    return text.strip("_")


def standardize_columns(df: pd.DataFrame) -> pd.DataFrame:
    """
    Rename workbook headers to canonical column names.

    Args:
        df: Raw sheet as read from the workbook

    Returns:
        DataFrame with canonical column names (unknown columns are kept)

    Raises:
        ValueError: If a required column cannot be found
    """
    normalized = {col: normalize_column_name(col) for col in df.columns}

    lookup = {}
    for canonical, aliases in Config.COLUMN_ALIASES.items():
        for alias in aliases:
            lookup.setdefault(alias, canonical)

    renames = {}
    taken = set()
    for original, norm in normalized.items():
        canonical = lookup.get(norm)
        if canonical is None or canonical in taken:
            continue
        renames[original] = canonical
        taken.add(canonical)

    out = df.rename(columns=renames)

    missing = [col for col in Config.REQUIRED_COLUMNS if col not in out.columns]
    if missing:
        raise ValueError(
            f"Missing required column(s): {missing}. "
            f"Found columns: {list(df.columns)}"
        )

    return out


def parse_age_group(label) -> Tuple[Optional[float], Optional[float]]:
    """
    Parse an age-group label into (lower, upper) bounds.

    Open-ended groups return None for the missing bound:
    '85+' -> (85, None), '<35' -> (None, 35), '45-54' -> (45, 54).

    Raises:
        ValueError: If the label cannot be parsed
    """
    text = str(label).strip().lower()
    text = re.sub(r"\b(years?|yrs?|y/o|yo)\b", "", text).strip()

    match = _RANGE_RE.match(text)
    if match:
        lower, upper = float(match.group(1)), float(match.group(2))
        if lower > upper:
            raise ValueError(f"Age group has lower > upper: {label!r}")
        return lower, upper

    match = _OPEN_UPPER_RE.match(text)
    if match:
        return float(match.group(1) or match.group(2)), None

    match = _OPEN_LOWER_RE.match(text)
    if match:
        return None, float(match.group(1))

    match = _SINGLE_RE.match(text)
    if match:
        value = float(match.group(1))
        return value, value

    raise ValueError(f"Cannot parse age group: {label!r}")


def age_group_midpoint(label) -> float:
    """Representative (median) age of an age-group label."""
    lower, upper = parse_age_group(label)

    if lower is not None and upper is not None:
        return (lower + upper) / 2

    if upper is None:
        return lower + Config.OPEN_AGE_GROUP_WIDTH / 2

    return upper / 2


def load_sheet(
    path: Union[str, Path],
    sheet_name: str,
    source: str
) -> pd.DataFrame:
    """
    Load one sheet of the IFR workbook.

    Args:
        path: Workbook path
        sheet_name: Name of the sheet to read
        source: Label stored in the 'source' column ('global' or 'us')

    Returns:
        DataFrame with canonical columns and a 'source' column
    """
    raw = pd.read_excel(path, sheet_name=sheet_name, engine="openpyxl")
    raw = raw.dropna(how="all")

    df = standardize_columns(raw)
    df["source"] = source

    logger.info(f"Loaded {len(df)} rows from sheet '{sheet_name}' ({source})")

    return df


def load_ifr_workbook(
    path: Optional[Union[str, Path]] = None,
    sheets: Optional[Dict[str, str]] = None
) -> pd.DataFrame:
    """
    Load global and US studies from the IFR workbook into one table.

    Args:
        path: Workbook path (defaults to Config.DEFAULT_WORKBOOK)
        sheets: Mapping of source label -> sheet name (defaults to Config.SHEETS)

    Returns:
        Cleaned DataFrame of per-study, per-age-group observations
    """
    path = Path(path or Config.DEFAULT_WORKBOOK)
    sheets = sheets or Config.SHEETS

    if not path.exists():
        raise FileNotFoundError(f"IFR workbook not found: {path}")

    frames = [
        load_sheet(path, sheet_name, source)
        for source, sheet_name in sheets.items()
    ]

    df = pd.concat(frames, ignore_index=True, sort=False)

    return clean_observations(df)


def clean_observations(df: pd.DataFrame) -> pd.DataFrame:
    """
    Coerce types, derive median ages and drop unusable rows.

    Raises:
        ValueError: If deaths or population are out of range
    """
    df = df.copy()

    for col in NUMERIC_COLUMNS:
        if col not in df.columns:
            df[col] = np.nan
        df[col] = pd.to_numeric(df[col], errors="coerce")

    if "source" not in df.columns:
        df["source"] = "global"

    # Blank cells stay missing instead of becoming the string 'nan'
    for col in ("study", "age_group"):
        df[col] = df[col].astype("string").str.strip().replace("", pd.NA)

    unusable = (
        df[["study", "population", "deaths", "ir"]].isna().any(axis=1)
        | (df["age_group"].isna() & df["median_age"].isna())
    )
    if unusable.any():
        logger.warning(
            f"Dropping {int(unusable.sum())} rows with missing study, age, "
            f"population, deaths or infection rate"
        )
        df = df.loc[~unusable].copy()

    unlabeled = df["age_group"].isna()
    df.loc[unlabeled, "age_group"] = df.loc[unlabeled, "median_age"].map(lambda age: f"{age:g}")
    df["study"] = df["study"].astype(str)
    df["age_group"] = df["age_group"].astype(str)

    # Fill median age from the age-group label where missing
    missing_age = df["median_age"].isna()
    if missing_age.any():
        df.loc[missing_age, "median_age"] = df.loc[missing_age, "age_group"].map(
            age_group_midpoint
        )

    df["population"] = df["population"].round().astype(int)
    df["deaths"] = df["deaths"].round().astype(int)

    if (df["deaths"] < 0).any():
        raise ValueError("Deaths must be non-negative")

    if (df["population"] <= 0).any():
        raise ValueError("Population must be positive")

    too_many = df["deaths"] > df["population"]
    if too_many.any():
        bad = df.loc[too_many, ["study", "age_group"]].values.tolist()
        raise ValueError(f"Deaths exceed population for: {bad}")

    columns = [
        "study", "source", "age_group", "median_age",
        "population", "deaths", "ir", "ir_lower", "ir_upper",
    ]

    return df[columns].reset_index(drop=True)


# ============================================================================
# Utility Functions
# ============================================================================

DEFAULT_AGE_GROUPS = [
    "0-34", "35-44", "45-54", "55-64", "65-74", "75-84", "85+",
]


def simulate_ifr_studies(
    n_global: int = 6,
    n_us: int = 4,
    age_groups: Optional[List[str]] = None,
    intercept: float = -5.0,
    age_slope: float = 1.1,
    study_sd: float = 0.4,
    seed: int = 42
) -> pd.DataFrame:
    """
    Simulate seroprevalence studies with a known IFR-by-age curve.

    logit(IFR) = intercept + age_slope * (age - REFERENCE_AGE) / 10 + study effect

    Args:
        n_global: Number of global benchmark studies
        n_us: Number of US studies
        age_groups: Age-group labels (defaults to DEFAULT_AGE_GROUPS)
        intercept: Logit IFR at the reference age
        age_slope: Logit IFR change per decade of age
        study_sd: SD of the study-level effects
        seed: Random seed

    Returns:
        DataFrame in the cleaned workbook layout
    """
    rng = np.random.default_rng(seed)
    age_groups = age_groups or DEFAULT_AGE_GROUPS

    studies = (
        [(f"Global Study {i + 1}", "global") for i in range(n_global)]
        + [(f"US Study {i + 1}", "us") for i in range(n_us)]
    )

    records = []

    for study, source in studies:
        study_effect = rng.normal(0, study_sd)
        study_prevalence = rng.beta(2, 18)  # ~10% infected

        for age_group in age_groups:
            median_age = age_group_midpoint(age_group)
            population = int(rng.lognormal(11, 0.5))

            logit_ifr = (
                intercept
                + age_slope * (median_age - Config.REFERENCE_AGE) / 10
                + study_effect
            )
            ifr = 1 / (1 + np.exp(-logit_ifr))

            prevalence = float(np.clip(
                study_prevalence * rng.lognormal(0, 0.1), 0.005, 0.6
            ))
            deaths = int(rng.binomial(population, prevalence * ifr))

            # Reported estimate with sampling noise on the logit scale
            logit_sd = 0.15
            logit_ir = np.log(prevalence / (1 - prevalence)) + rng.normal(0, logit_sd)
            ir = 1 / (1 + np.exp(-logit_ir))
            ir_lower = 1 / (1 + np.exp(-(logit_ir - 1.96 * logit_sd)))
            ir_upper = 1 / (1 + np.exp(-(logit_ir + 1.96 * logit_sd)))

            records.append({
                "study": study,
                "source": source,
                "age_group": age_group,
                "median_age": median_age,
                "population": population,
                "deaths": deaths,
                "ir": ir,
                "ir_lower": ir_lower,
                "ir_upper": ir_upper,
            })

    df = pd.DataFrame(records)

    logger.info(
        f"Simulated {len(df)} observations from {len(studies)} studies "
        f"({df['deaths'].sum()} deaths)"
    )

    return df


def write_ifr_workbook(
    df: pd.DataFrame,
    path: Union[str, Path],
    sheets: Optional[Dict[str, str]] = None
) -> Path:
    """
    Write observations to a two-sheet workbook in the expected layout.

    Args:
        df: Observations with a 'source' column
        path: Output workbook path
        sheets: Mapping of source label -> sheet name (defaults to Config.SHEETS)

    Returns:
        Path to the written workbook
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    sheets = sheets or Config.SHEETS

    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        for source, sheet_name in sheets.items():
            part = df.loc[df["source"] == source].drop(columns=["source"])
            part.to_excel(writer, sheet_name=sheet_name, index=False)

    logger.info(f"Wrote workbook to {path}")

    return path
