"""
COVID-19 Infection Fatality Rate Bayesian Meta-Analysis.

Loads seroprevalence studies reporting deaths and infection rates by age
group, fits a hierarchical binomial / logit-normal model and renders a
report of pooled IFR estimates by study and age:

1. Workbook loading (global benchmark + US studies)
2. Prevalence interval -> logit-normal transform
3. Hierarchical model with partial, full or no pooling
4. Pooling / heterogeneity metrics and cross-validation
"""

__version__ = "1.0.0"
__author__ = "GenZ COVID-19 Response Team"

from .config import Config
from .data_loading import load_ifr_workbook, simulate_ifr_studies
from .transforms import ModelData, interval_to_logit_normal, prepare_model_data
from .model import IFRMetaAnalysis
from .pooling import compare_pooling, leave_one_study_out, pooling_metrics

__all__ = [
    'Config',
    'load_ifr_workbook',
    'simulate_ifr_studies',
    'ModelData',
    'interval_to_logit_normal',
    'prepare_model_data',
    'IFRMetaAnalysis',
    'compare_pooling',
    'leave_one_study_out',
    'pooling_metrics',
]
