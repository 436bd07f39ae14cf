"""
Configuration for the COVID-19 IFR Bayesian Meta-Analysis.

This module manages all configuration settings for workbook loading,
prevalence interval transforms, the hierarchical model and report output.
"""

import copy
import os
from pathlib import Path
from typing import Dict, Optional
from dotenv import load_dotenv
import yaml

# Load environment variables
load_dotenv()


class Config:
    """Central configuration for the IFR meta-analysis report."""

    # ========================================================================
    # PROJECT PATHS
    # ========================================================================
    PROJECT_ROOT = Path(__file__).parent
    DATA_DIR = Path(os.getenv("IFR_DATA_DIR", PROJECT_ROOT / "data"))
    OUTPUT_DIR = Path(os.getenv("IFR_OUTPUT_DIR", PROJECT_ROOT / "output"))

    DEFAULT_WORKBOOK = Path(
        os.getenv("IFR_WORKBOOK", DATA_DIR / "ifr_studies.xlsx")
    )

    # ========================================================================
    # WORKBOOK LAYOUT
    # ========================================================================

    # Source label -> sheet name
    SHEETS = {
        "global": "Benchmark",
        "us": "US",
    }

    # Canonical column -> accepted (normalized) header spellings
    COLUMN_ALIASES = {
        "study": ["study", "location", "study_name", "study_location"],
        "age_group": ["age_group", "age", "agegroup", "age_band", "ages"],
        "median_age": ["median_age", "age_median", "median"],
        "population": ["population", "pop", "population_size", "n_population"],
        "deaths": ["deaths", "death", "n_deaths", "observed_deaths"],
        "ir": [
            "ir", "infection_rate", "prevalence", "seroprevalence",
            "ir_mean", "ir_point",
        ],
        "ir_lower": [
            "ir_lower", "ir_lo", "ir_low", "ir_lb", "ir_95_lower",
            "infection_rate_lower", "prevalence_lower", "lower",
        ],
        "ir_upper": [
            "ir_upper", "ir_hi", "ir_high", "ir_ub", "ir_95_upper",
            "infection_rate_upper", "prevalence_upper", "upper",
        ],
    }

    REQUIRED_COLUMNS = ["study", "age_group", "population", "deaths", "ir"]

    # Width assumed for open-ended age groups such as "85+"
    OPEN_AGE_GROUP_WIDTH = 10

    # ========================================================================
    # PREVALENCE TRANSFORM
    # ========================================================================

    INTERVAL_LEVEL = 0.95  # Reported intervals are 95% CIs
    PREVALENCE_FLOOR = 1e-4  # Clip bounds away from 0 and 1 before logit
    DEFAULT_LOGIT_SD = 0.3  # Used when a row reports no interval

    # Source label -> True (percent), False (proportion) or None (detect)
    PERCENT_SCALE = {
        "global": None,
        "us": None,
    }

    # Location effects are read at this age
    REFERENCE_AGE = 60.0

    # ========================================================================
    # HIERARCHICAL MODEL
    # ========================================================================

    POOLING_TYPES = ("partial", "full", "none")

    MODEL_CONFIG = {
        "pooling": "partial",
        "covariates": ["age_decades", "is_us"],

        # Priors (logit IFR scale)
        "mu_prior_mean": -5.0,  # ~0.7% IFR at the reference age
        "mu_prior_sd": 2.0,
        "beta_prior_sd": 1.0,
        "tau_prior_sd": 1.0,

        # MCMC sampling parameters
        "mcmc_draws": 1000,
        "mcmc_tune": 1000,
        "mcmc_chains": 4,
        "mcmc_cores": 4,
        "target_accept": 0.95,
        "random_seed": 2020,

        "hdi_prob": 0.95,
    }

    # ========================================================================
    # VALIDATION
    # ========================================================================

    VALIDATION_CONFIG = {
        "max_rhat": 1.01,
        "min_ess": 400,
        "min_bfmi": 0.3,
    }

    # ========================================================================
    # OUTPUT AND REPORTING
    # ========================================================================

    OUTPUT_CONFIG = {
        "plot_format": "png",
        "plot_dpi": 200,
        "report_name": "ifr_report.md",
        "age_grid": [5, 15, 25, 35, 45, 55, 65, 75, 85],
    }

    # ========================================================================
    # LOGGING
    # ========================================================================

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"
    LOG_FILE = OUTPUT_DIR / "ifr_meta_analysis.log"

    @classmethod
    def ensure_directories(cls):
        """Create data and output directories if missing."""
        cls.DATA_DIR.mkdir(parents=True, exist_ok=True)
        cls.OUTPUT_DIR.mkdir(parents=True, exist_ok=True)

    @classmethod
    def load_from_yaml(cls, config_path: str) -> Dict:
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            Dictionary with configuration values
        """
        with open(config_path, 'r') as f:
            return yaml.safe_load(f) or {}

    @classmethod
    def model_config(cls, overrides: Optional[Dict] = None) -> Dict:
        """
        Return a copy of MODEL_CONFIG with overrides merged in.

        Unknown keys raise ValueError so typos in YAML files are caught.
        """
        merged = copy.deepcopy(cls.MODEL_CONFIG)
        for key, value in (overrides or {}).items():
            if key not in merged:
                raise ValueError(f"Unknown model setting: {key}")
            merged[key] = value
        return merged

    @classmethod
    def apply_overrides(cls, overrides: Dict):
        """Merge a dict of model settings into MODEL_CONFIG in place."""
        cls.MODEL_CONFIG = cls.model_config(overrides)
        cls.validate_config()

    @classmethod
    def validate_config(cls, model_config: Optional[Dict] = None) -> bool:
        """
        Validate configuration settings.

        Returns:
            True if configuration is valid

        Raises:
            ValueError: If configuration is invalid
        """
        mcmc_config = model_config or cls.MODEL_CONFIG

        if mcmc_config["pooling"] not in cls.POOLING_TYPES:
            raise ValueError(
                f"pooling must be one of {cls.POOLING_TYPES}, "
                f"got {mcmc_config['pooling']!r}"
            )

        if mcmc_config["mcmc_draws"] < 100:
            raise ValueError("MCMC draws should be >= 100")

        if mcmc_config["mcmc_chains"] < 1:
            raise ValueError("At least one MCMC chain is required")

        if not 0 < mcmc_config["target_accept"] < 1:
            raise ValueError("target_accept must be in (0, 1)")

        if not 0 < cls.INTERVAL_LEVEL < 1:
            raise ValueError("INTERVAL_LEVEL must be in (0, 1)")

        for key in ("mu_prior_sd", "beta_prior_sd", "tau_prior_sd"):
            if mcmc_config[key] <= 0:
                raise ValueError(f"{key} must be positive")

        return True

    @classmethod
    def get_model_params(cls, model_type: str) -> Dict:
        """
        Get parameters for a configuration section.

        Args:
            model_type: Section name ('model', 'output', 'validation')

        Returns:
            Dictionary with parameters
        """
        model_configs = {
            "model": cls.MODEL_CONFIG,
            "output": cls.OUTPUT_CONFIG,
            "validation": cls.VALIDATION_CONFIG,
        }

        if model_type not in model_configs:
            raise ValueError(f"Unknown model type: {model_type}")

        return model_configs[model_type]
