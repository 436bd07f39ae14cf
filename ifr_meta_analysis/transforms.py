"""
Prevalence transforms and model-data preparation.

Reported infection rates come with a 95% confidence interval. The model
treats each study's true prevalence as logit-normal, so the interval is
converted into a mean and standard deviation on the logit scale:

    mean = logit(point)
    sd   = (logit(upper) - logit(lower)) / (2 * z),   z = Phi^-1(0.975)
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy import special, stats
from loguru import logger

from .config import Config


PREVALENCE_COLUMNS = ["ir", "ir_lower", "ir_upper"]


def logit(p):
    """Log-odds of a probability."""
    return special.logit(p)


def inv_logit(x):
    """Inverse logit (expit)."""
    return special.expit(x)


def as_proportion(frame: pd.DataFrame, percent: Optional[bool] = None) -> pd.DataFrame:
    """
    Convert prevalence columns reported in percent to proportions.

    Args:
        frame: Rows from one sheet
        percent: True or False to force the scale; None treats the block
            as percent when any value exceeds 1

    Returns:
        Copy of the frame with prevalence on the proportion scale
    """
    frame = frame.copy()
    cols = [c for c in PREVALENCE_COLUMNS if c in frame.columns]

    if percent is None:
        percent = bool(cols) and frame[cols].max().max() > 1
        if percent:
            logger.info("Infection rates look like percentages; converting to proportions")

    if cols and percent:
        frame[cols] = frame[cols] / 100.0

    return frame


def interval_to_logit_normal(
    point,
    lower,
    upper,
    level: Optional[float] = None
) -> Tuple[Union[float, np.ndarray], Union[float, np.ndarray]]:
    """
    Convert a prevalence estimate with a confidence interval to logit-normal parameters.

    Args:
        point: Point estimate(s) of prevalence (proportion)
        lower: Lower interval bound(s), NaN if not reported
        upper: Upper interval bound(s), NaN if not reported
        level: Interval coverage (defaults to Config.INTERVAL_LEVEL)

    Returns:
        Tuple of (logit mean, logit sd), floats for scalar input

    Raises:
        ValueError: If a lower bound exceeds its upper bound
    """
    level = level or Config.INTERVAL_LEVEL
    scalar = np.ndim(point) == 0

    point = np.atleast_1d(np.asarray(point, dtype=float))
    lower = np.broadcast_to(np.asarray(lower, dtype=float), point.shape)
    upper = np.broadcast_to(np.asarray(upper, dtype=float), point.shape)

    floor = Config.PREVALENCE_FLOOR
    z = stats.norm.ppf(0.5 + level / 2)

    has_interval = ~(np.isnan(lower) | np.isnan(upper))

    if np.any(has_interval & (lower > upper)):
        raise ValueError("Interval lower bound exceeds upper bound")

    lo = logit(np.clip(lower, floor, 1 - floor))
    hi = logit(np.clip(upper, floor, 1 - floor))
    pt = logit(np.clip(point, floor, 1 - floor))

    sd = np.where(has_interval, (hi - lo) / (2 * z), np.nan)

    degenerate = has_interval & ~(sd > 0)
    if degenerate.any():
        logger.warning(f"{int(degenerate.sum())} intervals have zero width; using default SD")

    no_interval = ~has_interval
    if no_interval.any():
        logger.warning(
            f"{int(no_interval.sum())} estimates report no interval; "
            f"using logit SD {Config.DEFAULT_LOGIT_SD}"
        )

    sd = np.where(has_interval & (sd > 0), sd, Config.DEFAULT_LOGIT_SD)

    midpoint = (lo + hi) / 2
    outside = has_interval & ((point < lower) | (point > upper))
    if outside.any():
        logger.warning(
            f"{int(outside.sum())} point estimates fall outside their interval; "
            f"using the interval midpoint"
        )

    mean = np.where(np.isnan(point) | outside, midpoint, pt)

    if np.isnan(mean).any():
        raise ValueError("Prevalence needs a point estimate or both interval bounds")

    if scalar:
        return float(mean[0]), float(sd[0])

    return mean, sd


def add_prevalence_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Add logit_prev_mean and logit_prev_sd columns, sheet by sheet."""
    parts = []
    for source, part in df.groupby("source", sort=False):
        parts.append(as_proportion(part, percent=Config.PERCENT_SCALE.get(source)))

    out = pd.concat(parts).loc[df.index]

    mean, sd = interval_to_logit_normal(
        out["ir"].to_numpy(),
        out["ir_lower"].to_numpy(),
        out["ir_upper"].to_numpy(),
    )

    out["logit_prev_mean"] = mean
    out["logit_prev_sd"] = sd

    return out


def add_covariates(df: pd.DataFrame, reference_age: Optional[float] = None) -> pd.DataFrame:
    """Add centered age (in decades), the US indicator and crude IFR."""
    reference_age = Config.REFERENCE_AGE if reference_age is None else reference_age

    out = df.copy()
    out["age_decades"] = (out["median_age"] - reference_age) / 10.0
    out["is_us"] = (out["source"] == "us").astype(float)
    out["crude_ifr"] = out["deaths"] / (out["population"] * out["ir"])

    return out


def index_studies(df: pd.DataFrame) -> Tuple[pd.DataFrame, List[str]]:
    """Assign 0-based study indices in order of first appearance."""
    studies = list(pd.unique(df["study"]))
    mapping = {study: i for i, study in enumerate(studies)}

    out = df.copy()
    out["study_idx"] = out["study"].map(mapping).astype(int)

    return out, studies


@dataclass
class ModelData:
    """Prepared observations plus the arrays handed to the model."""

    table: pd.DataFrame
    studies: List[str]
    reference_age: float = field(default=Config.REFERENCE_AGE)

    @property
    def n_obs(self) -> int:
        return len(self.table)

    @property
    def n_studies(self) -> int:
        return len(self.studies)

    @property
    def study_idx(self) -> np.ndarray:
        return self.table["study_idx"].to_numpy()

    @property
    def population(self) -> np.ndarray:
        return self.table["population"].to_numpy()

    @property
    def deaths(self) -> np.ndarray:
        return self.table["deaths"].to_numpy()

    @property
    def logit_prev_mean(self) -> np.ndarray:
        return self.table["logit_prev_mean"].to_numpy()

    @property
    def logit_prev_sd(self) -> np.ndarray:
        return self.table["logit_prev_sd"].to_numpy()

    def design_matrix(self, covariates: List[str]) -> np.ndarray:
        """Covariate matrix of shape (n_obs, len(covariates))."""
        if not covariates:
            return np.zeros((self.n_obs, 0))
        return self.table[list(covariates)].to_numpy(dtype=float)

    def drop_study(self, study: str) -> "ModelData":
        """Copy of the data without one study, re-indexed."""
        if study not in self.studies:
            raise ValueError(f"Unknown study: {study}")

        remaining = self.table.loc[self.table["study"] != study]
        table, studies = index_studies(remaining.reset_index(drop=True))
        return ModelData(table=table, studies=studies, reference_age=self.reference_age)

    def subset_study(self, study: str) -> pd.DataFrame:
        """Rows for a single study."""
        return self.table.loc[self.table["study"] == study].copy()


def prepare_model_data(
    df: pd.DataFrame,
    reference_age: Optional[float] = None
) -> ModelData:
    """
    Turn cleaned workbook observations into model-ready data.

    Args:
        df: Output of load_ifr_workbook / clean_observations
        reference_age: Age at which location effects are read

    Returns:
        ModelData with derived prevalence and covariate columns
    """
    if df.empty:
        raise ValueError("No observations to model")

    reference_age = Config.REFERENCE_AGE if reference_age is None else reference_age

    table = add_prevalence_columns(df.reset_index(drop=True))
    table = add_covariates(table, reference_age)
    table, studies = index_studies(table)

    logger.info(
        f"Prepared {len(table)} observations from {len(studies)} studies "
        f"(reference age {reference_age:g})"
    )

    return ModelData(table=table, studies=studies, reference_age=reference_age)
