"""
Pytest configuration and fixtures for IFR meta-analysis tests
"""

import matplotlib

matplotlib.use("Agg")

import pytest

from ifr_meta_analysis.data_loading import simulate_ifr_studies, write_ifr_workbook
from ifr_meta_analysis.model import IFRMetaAnalysis
from ifr_meta_analysis.transforms import prepare_model_data


# Small sampler settings for tests that fit the model
FAST_FIT = {
    "draws": 150,
    "tune": 150,
    "chains": 1,
    "cores": 1,
    "random_seed": 11,
    "progressbar": False,
}


@pytest.fixture
def observations():
    """Cleaned observations from a small synthetic set of studies."""
    return simulate_ifr_studies(n_global=3, n_us=2, seed=7)


@pytest.fixture
def model_data(observations):
    """Prepared model data."""
    return prepare_model_data(observations)


@pytest.fixture
def workbook_path(tmp_path, observations):
    """Synthetic studies written to a two-sheet workbook."""
    return write_ifr_workbook(observations, tmp_path / "ifr_studies.xlsx")


@pytest.fixture(scope="session")
def fitted_analysis():
    """Partial-pooling model fitted once per test session."""
    data = prepare_model_data(simulate_ifr_studies(n_global=3, n_us=2, seed=7))
    analysis = IFRMetaAnalysis(data, pooling="partial")
    analysis.fit(**FAST_FIT)
    return analysis
