"""
Tests for pooling metrics, pooling comparison and cross-validation.
"""

import numpy as np
import pytest

from conftest import FAST_FIT
from ifr_meta_analysis.data_loading import simulate_ifr_studies
from ifr_meta_analysis.model import IFRMetaAnalysis
from ifr_meta_analysis.pooling import (
    compare_pooling,
    group_standard_errors,
    held_out_log_density,
    heterogeneity,
    leave_one_study_out,
    pooling_metrics,
)
from ifr_meta_analysis.transforms import ModelData, prepare_model_data


class TestStandardErrors:
    """Test the approximate study-level standard errors."""

    def test_one_per_study(self, model_data):
        se = group_standard_errors(model_data)

        assert list(se.index) == model_data.studies
        assert (se > 0).all()

    def test_more_deaths_means_smaller_se(self, model_data):
        table = model_data.table.copy()
        first = model_data.studies[0]
        table.loc[table["study"] == first, "deaths"] *= 100
        boosted = ModelData(table=table, studies=model_data.studies)

        before = group_standard_errors(model_data)[first]
        after = group_standard_errors(boosted)[first]

        assert after < before


@pytest.mark.slow
class TestPoolingMetrics:
    """Test pooling factors on a fitted partial-pooling model."""

    def test_pooling_bounds(self, fitted_analysis):
        metrics = pooling_metrics(fitted_analysis)
        groups = metrics["groups"]

        assert len(groups) == fitted_analysis.data.n_studies
        assert ((groups["pooling_mean"] >= 0) & (groups["pooling_mean"] <= 1)).all()
        assert (groups["pooling_lower"] <= groups["pooling_upper"]).all()

    def test_heterogeneity_complements_total_pooling(self, fitted_analysis):
        metrics = pooling_metrics(fitted_analysis)

        assert metrics["heterogeneity"]["mean"] == pytest.approx(1 - metrics["total"]["mean"])
        assert heterogeneity(fitted_analysis) == metrics["heterogeneity"]

    def test_held_out_log_density(self, fitted_analysis):
        held_out = fitted_analysis.data.subset_study(fitted_analysis.data.studies[0])

        result = held_out_log_density(fitted_analysis, held_out, seed=1)

        assert np.isfinite(result["elpd"])
        assert result["elpd"] < 0
        assert result["observed_deaths"] == int(held_out["deaths"].sum())
        assert result["predicted_deaths_lower"] <= result["predicted_deaths_upper"]


@pytest.mark.slow
class TestPoolingComparison:
    """Test fitting and comparing several pooling types."""

    @pytest.fixture(scope="class")
    def comparison(self):
        data = prepare_model_data(simulate_ifr_studies(n_global=2, n_us=2, seed=5))
        return compare_pooling(data, pooling_types=("partial", "full", "none"), **FAST_FIT)

    def test_analyses_fitted(self, comparison):
        assert set(comparison.analyses) == {"partial", "full", "none"}
        assert set(comparison.effects["pooling"]) == {"partial", "full", "none"}
        assert set(comparison.pooled["pooling"]) == {"partial", "full", "none"}

    def test_loo_table(self, comparison):
        assert comparison.loo is not None
        assert set(comparison.loo.index) == {"partial", "full", "none"}

    def test_full_pooling_metrics(self, comparison):
        metrics = pooling_metrics(comparison.analyses["full"])

        assert metrics["total"]["mean"] == 1.0
        assert metrics["heterogeneity"]["mean"] == 0.0

    def test_no_pooling_metrics(self, comparison):
        metrics = pooling_metrics(comparison.analyses["none"])

        assert metrics["total"]["mean"] == 0.0
        assert metrics["heterogeneity"]["mean"] == 1.0
        assert (metrics["groups"]["pooling_mean"] == 0.0).all()

    def test_no_pooling_mean_is_average_effect(self, comparison):
        analysis = comparison.analyses["none"]

        mu = analysis.posterior_samples("mu")
        alpha = analysis.posterior_samples("alpha")

        np.testing.assert_allclose(mu, alpha.mean(axis=1), rtol=1e-6)
        assert "pred_lower" not in analysis.pooled_ifr(ages=[60]).columns

    def test_full_pooling_effects_identical(self, comparison):
        full = comparison.effects.loc[comparison.effects["pooling"] == "full"]

        assert np.allclose(full["logit_mean"], full["logit_mean"].iloc[0])

    def test_held_out_needs_partial_pooling(self, comparison):
        full = comparison.analyses["full"]
        held_out = full.data.subset_study(full.data.studies[0])

        with pytest.raises(ValueError):
            held_out_log_density(full, held_out)


@pytest.mark.slow
class TestLeaveOneStudyOut:
    """Test leave-one-study-out cross-validation."""

    def test_leave_one_study_out(self):
        data = prepare_model_data(simulate_ifr_studies(n_global=2, n_us=1, seed=9))

        result = leave_one_study_out(data, covariates=["age_decades"], **FAST_FIT)

        assert list(result["studies"]["study"]) == data.studies
        assert np.isfinite(result["elpd"])
        assert result["elpd"] == pytest.approx(result["studies"]["elpd"].sum())

    def test_too_few_studies(self):
        data = prepare_model_data(simulate_ifr_studies(n_global=2, n_us=0, seed=9))

        with pytest.raises(ValueError):
            leave_one_study_out(data)


def test_unfitted_model_has_no_metrics(model_data):
    with pytest.raises(ValueError):
        pooling_metrics(IFRMetaAnalysis(model_data))
