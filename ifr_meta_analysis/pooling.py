"""
Pooling, heterogeneity and cross-validation for the IFR meta-analysis.

Pooling factors follow the usual hierarchical-model definition: for study k
with standard error se_k and between-study SD tau,

    pooling_k = se_k^2 / (se_k^2 + tau^2)

0 means the study's own data dominate (no pooling), 1 means its estimate is
replaced by the population mean (full pooling). Heterogeneity is one minus
the total pooling computed with the mean se^2.

Reference:
- Gelman & Pardoe (2006). "Bayesian measures of explained variance and
  pooling in multilevel (hierarchical) models"
- Vehtari, Gelman & Gabry (2017). "Practical Bayesian model evaluation using
  leave-one-out cross-validation and WAIC"
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import arviz as az
from scipy import special, stats
from loguru import logger

from .config import Config
from .model import IFRMetaAnalysis
from .transforms import ModelData, inv_logit


def group_standard_errors(data: ModelData) -> pd.Series:
    """
    Approximate standard error of each study's logit IFR.

    Each age group contributes variance 1/deaths (binomial count, 0.5
    continuity correction) plus the logit-prevalence variance; age groups
    are combined by inverse-variance weighting.

    Returns:
        Series of standard errors indexed by study, in model order
    """
    table = data.table
    row_var = 1.0 / np.maximum(table["deaths"], 0.5) + table["logit_prev_sd"] ** 2

    precision = (1.0 / row_var).groupby(table["study"]).sum()
    se = np.sqrt(1.0 / precision)

    return se.reindex(data.studies).rename("se")


def _summarize(samples: np.ndarray, prob: float) -> Dict:
    tail = (1 - prob) / 2 * 100
    return {
        "mean": float(np.mean(samples)),
        "lower": float(np.percentile(samples, tail)),
        "upper": float(np.percentile(samples, 100 - tail)),
    }


def pooling_metrics(
    analysis: IFRMetaAnalysis,
    interval_prob: Optional[float] = None
) -> Dict:
    """
    Per-study and total pooling factors plus heterogeneity.

    Args:
        analysis: Fitted IFRMetaAnalysis
        interval_prob: Credible interval mass (default from config)

    Returns:
        Dictionary with 'groups' (DataFrame), 'total' and 'heterogeneity'
        (each a dict of mean/lower/upper)
    """
    prob = interval_prob or analysis.config.get("hdi_prob", 0.95)
    se = group_standard_errors(analysis.data)
    se2 = se.to_numpy() ** 2

    if analysis.pooling == "partial":
        tau2 = analysis.posterior_samples("tau") ** 2
        group_draws = se2[None, :] / (se2[None, :] + tau2[:, None])
        total_draws = se2.mean() / (se2.mean() + tau2)
    else:
        n_samples = len(analysis.posterior_samples("mu"))
        fill = 1.0 if analysis.pooling == "full" else 0.0
        group_draws = np.full((n_samples, len(se2)), fill)
        total_draws = np.full(n_samples, fill)

    groups = pd.DataFrame({
        "study": analysis.data.studies,
        "se": se.to_numpy(),
        "pooling_mean": group_draws.mean(axis=0),
        "pooling_lower": np.percentile(group_draws, (1 - prob) / 2 * 100, axis=0),
        "pooling_upper": np.percentile(group_draws, (1 + prob) / 2 * 100, axis=0),
    })

    metrics = {
        "pooling_type": analysis.pooling,
        "groups": groups,
        "total": _summarize(total_draws, prob),
        "heterogeneity": _summarize(1 - total_draws, prob),
    }

    logger.info(
        f"Total pooling {metrics['total']['mean']:.2f}, "
        f"heterogeneity {metrics['heterogeneity']['mean']:.2f} ({analysis.pooling})"
    )

    return metrics


def heterogeneity(analysis: IFRMetaAnalysis, interval_prob: Optional[float] = None) -> Dict:
    """Share of variation attributable to between-study differences."""
    return pooling_metrics(analysis, interval_prob)["heterogeneity"]


@dataclass
class PoolingComparison:
    """Fitted models for several pooling types and their comparison tables."""

    analyses: Dict[str, IFRMetaAnalysis]
    loo: Optional[pd.DataFrame] = None
    effects: pd.DataFrame = field(default_factory=pd.DataFrame)
    pooled: pd.DataFrame = field(default_factory=pd.DataFrame)


def compare_pooling(
    data: ModelData,
    pooling_types: Sequence[str] = Config.POOLING_TYPES,
    covariates: Optional[List[str]] = None,
    config: Optional[Dict] = None,
    **fit_kwargs
) -> PoolingComparison:
    """
    Fit the model under several pooling assumptions and compare them.

    Args:
        data: Prepared observations
        pooling_types: Pooling types to fit
        covariates: Covariate columns (default from config)
        config: Model configuration dict
        **fit_kwargs: Passed to IFRMetaAnalysis.fit()

    Returns:
        PoolingComparison with fitted analyses, PSIS-LOO comparison and a
        long table of location effects by pooling type
    """
    analyses = {}
    effects = []
    pooled = []

    for pooling in pooling_types:
        logger.info(f"Fitting {pooling}-pooling model for comparison")

        analysis = IFRMetaAnalysis(data, pooling=pooling, covariates=covariates, config=config)
        analysis.fit(**fit_kwargs)
        analyses[pooling] = analysis

        effect = analysis.location_effects()
        effect.insert(0, "pooling", pooling)
        effects.append(effect)

        curve = analysis.pooled_ifr()
        curve.insert(0, "pooling", pooling)
        pooled.append(curve)

    loo_table = None
    if len(analyses) > 1:
        try:
            loo_table = az.compare(
                {name: a.trace for name, a in analyses.items()},
                ic="loo"
            )
        except (ValueError, TypeError) as e:
            logger.warning(f"Could not compute LOO comparison: {e}")

    return PoolingComparison(
        analyses=analyses,
        loo=loo_table,
        effects=pd.concat(effects, ignore_index=True),
        pooled=pd.concat(pooled, ignore_index=True),
    )


def held_out_log_density(
    analysis: IFRMetaAnalysis,
    held_out: pd.DataFrame,
    seed: Optional[int] = None
) -> Dict:
    """
    Log predictive density of a study the model has not seen.

    The held-out study's location effect is drawn from the population
    distribution Normal(mu, tau) and its prevalence from the logit-normal
    implied by its reported intervals.

    Args:
        analysis: Fitted partial-pooling IFRMetaAnalysis
        held_out: Prepared rows of the held-out study

    Returns:
        Dictionary with elpd and the predicted vs observed death totals
    """
    if analysis.pooling != "partial":
        raise ValueError("Held-out prediction needs a partial-pooling model")

    rng = np.random.default_rng(seed)

    mu = analysis.posterior_samples("mu")
    tau = analysis.posterior_samples("tau")
    n_samples = len(mu)

    logit_ifr = (mu + tau * rng.standard_normal(n_samples))[:, None]
    logit_ifr = np.repeat(logit_ifr, len(held_out), axis=1)

    for name, beta in analysis.covariate_samples().items():
        logit_ifr = logit_ifr + np.outer(beta, held_out[name].to_numpy(dtype=float))

    logit_prev = (
        held_out["logit_prev_mean"].to_numpy()[None, :]
        + held_out["logit_prev_sd"].to_numpy()[None, :]
        * rng.standard_normal((n_samples, len(held_out)))
    )

    p = inv_logit(logit_prev) * inv_logit(logit_ifr)
    population = held_out["population"].to_numpy()
    deaths = held_out["deaths"].to_numpy()

    loglik = stats.binom.logpmf(deaths[None, :], population[None, :], p).sum(axis=1)
    elpd = float(special.logsumexp(loglik) - np.log(n_samples))

    expected = (p * population[None, :]).sum(axis=1)

    return {
        "elpd": elpd,
        "observed_deaths": int(deaths.sum()),
        "predicted_deaths_median": float(np.median(expected)),
        "predicted_deaths_lower": float(np.percentile(expected, 2.5)),
        "predicted_deaths_upper": float(np.percentile(expected, 97.5)),
    }


def leave_one_study_out(
    data: ModelData,
    covariates: Optional[List[str]] = None,
    config: Optional[Dict] = None,
    **fit_kwargs
) -> Dict:
    """
    Leave-one-study-out cross-validation of the partial-pooling model.

    Refits the model once per study with that study removed and scores the
    held-out deaths under the population distribution of location effects.

    Returns:
        Dictionary with 'studies' (DataFrame of per-study elpd), 'elpd' total
        and its standard error 'se'
    """
    if data.n_studies < 3:
        raise ValueError("Leave-one-study-out needs at least 3 studies")

    seed = (config or Config.MODEL_CONFIG).get("random_seed")
    rows = []

    for i, study in enumerate(data.studies):
        logger.info(f"[{i + 1}/{data.n_studies}] Leaving out {study}")

        analysis = IFRMetaAnalysis(
            data.drop_study(study),
            pooling="partial",
            covariates=covariates,
            config=config
        )
        analysis.fit(**fit_kwargs)

        result = held_out_log_density(analysis, data.subset_study(study), seed=seed)
        rows.append({"study": study, **result})

    studies = pd.DataFrame(rows)
    total = float(studies["elpd"].sum())
    se = float(np.sqrt(len(studies) * studies["elpd"].var(ddof=1)))

    logger.info(f"Leave-one-study-out elpd: {total:.1f} (SE {se:.1f})")

    return {"studies": studies, "elpd": total, "se": se}
