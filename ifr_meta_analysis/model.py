"""
Bayesian Hierarchical Meta-Analysis of COVID-19 Infection Fatality Rates.

Each observation is one age group of one study. Deaths are binomial in the
age group's population with probability prevalence * IFR, where prevalence
is uncertain (logit-normal from the reported interval) and IFR is
logit-linear in age with a location effect per study:

    logit_prev_i ~ Normal(logit_prev_mean_i, logit_prev_sd_i)
    logit_ifr_i  = alpha[study_i] + X_i . beta
    deaths_i     ~ Binomial(population_i, inv_logit(logit_prev_i) * inv_logit(logit_ifr_i))

The location effects alpha are partially pooled (alpha = mu + tau * z),
fully pooled (alpha = mu) or unpooled (independent priors).

Reference:
- Gelman et al. (2013). "Bayesian Data Analysis", ch. 5
- Levin et al. (2020). "Assessing the age specificity of infection fatality
  rates for COVID-19"
"""

import numpy as np
import pandas as pd
import pymc as pm
import pytensor.tensor as pt
import arviz as az
from typing import Dict, List, Optional, Sequence
from loguru import logger
import warnings

from .config import Config
from .transforms import ModelData, inv_logit

warnings.filterwarnings('ignore', category=FutureWarning)


class IFRMetaAnalysis:
    """
    Hierarchical binomial / logit-normal model for IFR by study and age.

    The model includes:
    - Latent prevalence per observation (logit-normal)
    - Location effects with partial, full or no pooling
    - Fixed covariate effects (age in decades, US indicator)
    - Binomial likelihood on observed deaths
    """

    def __init__(
        self,
        data: ModelData,
        pooling: Optional[str] = None,
        covariates: Optional[List[str]] = None,
        config: Optional[Dict] = None
    ):
        """
        Initialize the meta-analysis model.

        Args:
            data: Prepared observations (see transforms.prepare_model_data)
            pooling: 'partial', 'full' or 'none' (default from config)
            covariates: Covariate columns for fixed effects (default from config)
            config: Model configuration dict (defaults to Config.MODEL_CONFIG)
        """
        self.data = data
        self.config = config or Config.MODEL_CONFIG
        self.pooling = pooling or self.config["pooling"]

        if self.pooling not in Config.POOLING_TYPES:
            raise ValueError(
                f"pooling must be one of {Config.POOLING_TYPES}, got {self.pooling!r}"
            )

        requested = self.config["covariates"] if covariates is None else covariates
        self.covariates = self._usable_covariates(requested)

        # Model artifacts
        self.model = None
        self.trace = None

        if self.pooling == "partial" and data.n_studies < 2:
            logger.warning("Partial pooling with a single study; tau is prior-only")

        logger.info(
            f"Initialized {self.pooling}-pooling model with {data.n_obs} observations, "
            f"{data.n_studies} studies, covariates {self.covariates}"
        )

    def _usable_covariates(self, requested: Sequence[str]) -> List[str]:
        """Keep covariates that exist and vary in the data."""
        usable = []
        for col in requested:
            if col not in self.data.table.columns:
                raise ValueError(f"Unknown covariate column: {col}")

            if self.data.table[col].nunique() < 2:
                logger.warning(f"Dropping covariate '{col}': no variation in data")
                continue

            usable.append(col)

        return usable

    def build_model(self) -> pm.Model:
        """
        Build the hierarchical Bayesian model.

        Returns:
            PyMC model object
        """
        logger.info(f"Building {self.pooling}-pooling model...")

        data = self.data
        cfg = self.config

        coords = {
            "study": data.studies,
            "obs_id": np.arange(data.n_obs),
        }
        if self.covariates:
            coords["covariate"] = self.covariates

        study_idx = data.study_idx
        X = data.design_matrix(self.covariates)

        with pm.Model(coords=coords) as model:
            # ================================================================
            # Latent prevalence (logit-normal from reported interval)
            # ================================================================

            logit_prev = pm.Normal(
                "logit_prev",
                mu=data.logit_prev_mean,
                sigma=data.logit_prev_sd,
                dims="obs_id"
            )
            prevalence = pm.Deterministic(
                "prevalence",
                pm.math.invlogit(logit_prev),
                dims="obs_id"
            )

            # ================================================================
            # Location effects
            # ================================================================

            if self.pooling == "partial":
                mu = pm.Normal("mu", mu=cfg["mu_prior_mean"], sigma=cfg["mu_prior_sd"])
                tau = pm.HalfNormal("tau", sigma=cfg["tau_prior_sd"])

                # Non-centered parameterization
                z = pm.Normal("z", mu=0, sigma=1, dims="study")
                alpha = pm.Deterministic("alpha", mu + tau * z, dims="study")

            elif self.pooling == "full":
                mu = pm.Normal("mu", mu=cfg["mu_prior_mean"], sigma=cfg["mu_prior_sd"])
                alpha = pm.Deterministic(
                    "alpha",
                    mu + pt.zeros(data.n_studies),
                    dims="study"
                )

            else:
                alpha = pm.Normal(
                    "alpha",
                    mu=cfg["mu_prior_mean"],
                    sigma=cfg["mu_prior_sd"],
                    dims="study"
                )
                pm.Deterministic("mu", alpha.mean())

            # ================================================================
            # Fixed covariate effects
            # ================================================================

            logit_ifr = alpha[study_idx]

            if self.covariates:
                beta = pm.Normal(
                    "beta",
                    mu=0,
                    sigma=cfg["beta_prior_sd"],
                    dims="covariate"
                )
                logit_ifr = logit_ifr + pt.dot(X, beta)

            ifr = pm.Deterministic("ifr", pm.math.invlogit(logit_ifr), dims="obs_id")

            # ================================================================
            # Likelihood: observed deaths
            # ================================================================

            pm.Binomial(
                "deaths",
                n=data.population,
                p=prevalence * ifr,
                observed=data.deaths,
                dims="obs_id"
            )

        self.model = model
        logger.info("Model built successfully")

        return model

    def fit(
        self,
        draws: Optional[int] = None,
        tune: Optional[int] = None,
        chains: Optional[int] = None,
        **kwargs
    ) -> az.InferenceData:
        """
        Fit the model using NUTS.

        Args:
            draws: Number of MCMC samples (default from config)
            tune: Number of tuning steps (default from config)
            chains: Number of MCMC chains (default from config)
            **kwargs: Additional arguments passed to pm.sample()

        Returns:
            ArviZ InferenceData object with posterior and log-likelihood
        """
        if self.model is None:
            self.build_model()

        draws = draws or self.config["mcmc_draws"]
        tune = tune or self.config["mcmc_tune"]
        chains = chains or self.config["mcmc_chains"]

        kwargs.setdefault("cores", min(self.config.get("mcmc_cores", 4), chains))
        kwargs.setdefault("target_accept", self.config.get("target_accept", 0.95))
        kwargs.setdefault("random_seed", self.config.get("random_seed"))

        idata_kwargs = kwargs.pop("idata_kwargs", {}) or {}
        idata_kwargs.setdefault("log_likelihood", True)

        logger.info(f"Sampling posterior: {draws} draws, {tune} tune, {chains} chains")

        with self.model:
            self.trace = pm.sample(
                draws=draws,
                tune=tune,
                chains=chains,
                return_inferencedata=True,
                idata_kwargs=idata_kwargs,
                **kwargs
            )

        logger.info("Sampling complete")

        return self.trace

    # ========================================================================
    # Posterior summaries
    # ========================================================================

    def _require_fit(self):
        if self.trace is None:
            raise ValueError("Model has not been fit yet")

    def posterior_samples(self, var_name: str) -> np.ndarray:
        """
        Posterior draws of a variable with chains combined.

        Returns:
            Array of shape (n_samples, *variable shape)
        """
        self._require_fit()

        values = self.trace.posterior[var_name].values
        n_chains, n_draws = values.shape[:2]

        return values.reshape(n_chains * n_draws, *values.shape[2:])

    def covariate_samples(self) -> Dict[str, np.ndarray]:
        """Covariate name -> posterior draws of its coefficient."""
        if not self.covariates:
            return {}

        beta = self.posterior_samples("beta")
        return {name: beta[:, j] for j, name in enumerate(self.covariates)}

    @staticmethod
    def _interval(samples: np.ndarray, prob: float, axis: int = 0):
        tail = (1 - prob) / 2 * 100
        return (
            np.percentile(samples, tail, axis=axis),
            np.percentile(samples, 100 - tail, axis=axis),
        )

    def location_effects(self, interval_prob: Optional[float] = None) -> pd.DataFrame:
        """
        Location (study) effects on the logit scale and as IFR at the reference age.

        The IFR column includes each study's non-age covariates (e.g. the US
        indicator) so it reads as that study's IFR at the reference age.

        Args:
            interval_prob: Credible interval mass (default from config)

        Returns:
            DataFrame with one row per study
        """
        self._require_fit()
        prob = interval_prob or self.config.get("hdi_prob", 0.95)

        alpha = self.posterior_samples("alpha")
        betas = self.covariate_samples()
        table = self.data.table

        rows = []
        for k, study in enumerate(self.data.studies):
            study_rows = table.loc[table["study_idx"] == k]

            logit_ref = alpha[:, k].copy()
            for name, beta in betas.items():
                if name == "age_decades":
                    continue
                logit_ref += beta * study_rows[name].mean()

            ifr = inv_logit(logit_ref)
            lo, hi = self._interval(alpha[:, k], prob)
            ifr_lo, ifr_hi = self._interval(ifr, prob)

            rows.append({
                "study": study,
                "source": study_rows["source"].iloc[0],
                "n_age_groups": len(study_rows),
                "deaths": int(study_rows["deaths"].sum()),
                "logit_mean": float(alpha[:, k].mean()),
                "logit_sd": float(alpha[:, k].std()),
                "logit_ci_lower": float(lo),
                "logit_ci_upper": float(hi),
                "ifr_mean": float(ifr.mean()),
                "ifr_median": float(np.median(ifr)),
                "ifr_ci_lower": float(ifr_lo),
                "ifr_ci_upper": float(ifr_hi),
            })

        return pd.DataFrame(rows)

    def _age_term(
        self,
        ages: np.ndarray,
        betas: Dict[str, np.ndarray],
        n_samples: int
    ) -> np.ndarray:
        """Draws x ages matrix of the age contribution to logit IFR."""
        if "age_decades" not in betas:
            return np.zeros((n_samples, len(ages)))

        age_decades = (ages - self.data.reference_age) / 10.0
        return np.outer(betas["age_decades"], age_decades)

    def pooled_ifr(
        self,
        ages: Optional[Sequence[float]] = None,
        interval_prob: Optional[float] = None
    ) -> pd.DataFrame:
        """
        Population-mean IFR by age (location effect at mu, other covariates at 0).

        For partial pooling the table also carries a predictive interval for
        a new location, drawing its effect from Normal(mu, tau).

        Args:
            ages: Ages to evaluate (default Config.OUTPUT_CONFIG['age_grid'])
            interval_prob: Credible interval mass (default from config)

        Returns:
            DataFrame with one row per age
        """
        self._require_fit()
        prob = interval_prob or self.config.get("hdi_prob", 0.95)
        ages = np.asarray(ages if ages is not None else Config.OUTPUT_CONFIG["age_grid"], dtype=float)

        mu = self.posterior_samples("mu")
        betas = self.covariate_samples()

        age_term = self._age_term(ages, betas, len(mu))
        ifr = inv_logit(mu[:, None] + age_term)

        lo, hi = self._interval(ifr, prob)
        result = pd.DataFrame({
            "age": ages,
            "ifr_mean": ifr.mean(axis=0),
            "ifr_median": np.median(ifr, axis=0),
            "ci_lower": lo,
            "ci_upper": hi,
        })

        if self.pooling == "partial":
            rng = np.random.default_rng(self.config.get("random_seed"))
            tau = self.posterior_samples("tau")
            new_effect = mu + tau * rng.standard_normal(len(tau))
            predictive = inv_logit(new_effect[:, None] + age_term)

            pred_lo, pred_hi = self._interval(predictive, prob)
            result["pred_lower"] = pred_lo
            result["pred_upper"] = pred_hi

        return result

    def study_ifr_by_age(
        self,
        ages: Optional[Sequence[float]] = None,
        interval_prob: Optional[float] = None
    ) -> pd.DataFrame:
        """
        IFR-by-age curves for each study.

        Returns:
            Long DataFrame with columns study, age, ifr_median, ci_lower, ci_upper
        """
        self._require_fit()
        prob = interval_prob or self.config.get("hdi_prob", 0.95)
        ages = np.asarray(ages if ages is not None else Config.OUTPUT_CONFIG["age_grid"], dtype=float)

        alpha = self.posterior_samples("alpha")
        betas = self.covariate_samples()
        age_term = self._age_term(ages, betas, len(alpha))
        table = self.data.table

        frames = []
        for k, study in enumerate(self.data.studies):
            study_rows = table.loc[table["study_idx"] == k]

            offset = alpha[:, k].copy()
            for name, beta in betas.items():
                if name != "age_decades":
                    offset += beta * study_rows[name].mean()

            ifr = inv_logit(offset[:, None] + age_term)
            lo, hi = self._interval(ifr, prob)

            frames.append(pd.DataFrame({
                "study": study,
                "age": ages,
                "ifr_median": np.median(ifr, axis=0),
                "ci_lower": lo,
                "ci_upper": hi,
            }))

        return pd.concat(frames, ignore_index=True)

    def summary(self, interval_prob: Optional[float] = None) -> pd.DataFrame:
        """ArviZ summary of the population-level parameters."""
        self._require_fit()
        prob = interval_prob or self.config.get("hdi_prob", 0.95)

        var_names = ["mu"]
        if self.pooling == "partial":
            var_names.append("tau")
        if self.covariates:
            var_names.append("beta")

        return az.summary(self.trace, var_names=var_names, hdi_prob=prob)

    def posterior_predictive_check(self, interval_prob: Optional[float] = None) -> pd.DataFrame:
        """
        Compare observed deaths with posterior predictive draws.

        Returns:
            DataFrame with observed deaths, predictive median and interval,
            and whether the observation is covered
        """
        self._require_fit()
        prob = interval_prob or self.config.get("hdi_prob", 0.95)

        logger.info("Sampling posterior predictive deaths...")

        with self.model:
            ppc = pm.sample_posterior_predictive(
                self.trace,
                var_names=["deaths"],
                random_seed=self.config.get("random_seed"),
                progressbar=False,
            )

        values = ppc.posterior_predictive["deaths"].values
        samples = values.reshape(-1, values.shape[-1])
        lo, hi = self._interval(samples, prob)

        table = self.data.table
        comparison = pd.DataFrame({
            "study": table["study"].values,
            "age_group": table["age_group"].values,
            "observed": table["deaths"].values,
            "predicted_median": np.median(samples, axis=0),
            "predicted_lower": lo,
            "predicted_upper": hi,
        })

        comparison["covered"] = (
            (comparison["observed"] >= comparison["predicted_lower"]) &
            (comparison["observed"] <= comparison["predicted_upper"])
        )

        logger.info(
            f"Posterior predictive coverage: {comparison['covered'].mean():.1%} "
            f"of observations inside {prob:.0%} interval"
        )

        return comparison

    def diagnose(self) -> Dict:
        """
        Run MCMC diagnostics.

        Returns:
            Dictionary with diagnostic statistics
        """
        self._require_fit()

        logger.info("Running MCMC diagnostics...")

        thresholds = Config.VALIDATION_CONFIG
        var_names = [
            name for name in ("mu", "tau", "alpha", "beta", "logit_prev")
            if name in self.trace.posterior.data_vars
        ]

        diagnostics = {}

        # R-hat (convergence diagnostic)
        rhat = az.rhat(self.trace, var_names=var_names)
        diagnostics['rhat_max'] = float(np.nanmax(rhat.max().to_array().values))
        diagnostics['rhat_summary'] = {
            var: float(np.nanmax(rhat[var].values))
            for var in rhat.data_vars
        }

        # Effective sample size
        ess = az.ess(self.trace, var_names=var_names)
        diagnostics['ess_min'] = float(np.nanmin(ess.min().to_array().values))
        diagnostics['ess_summary'] = {
            var: float(np.nanmin(ess[var].values))
            for var in ess.data_vars
        }

        # Divergences
        divergences = self.trace.sample_stats["diverging"].values.sum()
        diagnostics['n_divergences'] = int(divergences)

        # Energy diagnostic
        try:
            energy = az.bfmi(self.trace)
            diagnostics['bfmi'] = float(np.min(energy))
        except Exception as e:
            logger.warning(f"Could not compute BFMI: {e}")
            diagnostics['bfmi'] = None

        warnings_list = []
        if diagnostics['rhat_max'] > thresholds["max_rhat"]:
            warnings_list.append(f"High R-hat detected: {diagnostics['rhat_max']:.3f}")
        if diagnostics['ess_min'] < thresholds["min_ess"]:
            warnings_list.append(f"Low ESS detected: {diagnostics['ess_min']:.0f}")
        if diagnostics['n_divergences'] > 0:
            warnings_list.append(f"{diagnostics['n_divergences']} divergences detected")
        if diagnostics['bfmi'] is not None and diagnostics['bfmi'] < thresholds["min_bfmi"]:
            warnings_list.append(f"Low BFMI detected: {diagnostics['bfmi']:.2f}")

        diagnostics['warnings'] = warnings_list

        if warnings_list:
            logger.warning("MCMC diagnostics found issues:")
            for warning in warnings_list:
                logger.warning(f"  - {warning}")
        else:
            logger.info("MCMC diagnostics passed all checks")

        return diagnostics
