"""
Tests for the hierarchical IFR model.
"""

import numpy as np
import pytest

from ifr_meta_analysis.model import IFRMetaAnalysis
from ifr_meta_analysis.transforms import prepare_model_data


class TestModelConstruction:
    """Test model setup without sampling."""

    def test_invalid_pooling(self, model_data):
        with pytest.raises(ValueError):
            IFRMetaAnalysis(model_data, pooling="some")

    def test_unknown_covariate(self, model_data):
        with pytest.raises(ValueError, match="Unknown covariate"):
            IFRMetaAnalysis(model_data, covariates=["income"])

    def test_constant_covariate_dropped(self, observations):
        global_only = observations.loc[observations["source"] == "global"]
        data = prepare_model_data(global_only)

        analysis = IFRMetaAnalysis(data, covariates=["age_decades", "is_us"])

        assert analysis.covariates == ["age_decades"]

    @pytest.mark.parametrize("pooling,has_tau", [
        ("partial", True),
        ("full", False),
        ("none", False),
    ])
    def test_build_model(self, model_data, pooling, has_tau):
        analysis = IFRMetaAnalysis(model_data, pooling=pooling)
        model = analysis.build_model()

        names = set(model.named_vars)
        assert {"alpha", "mu", "logit_prev", "deaths", "ifr"} <= names
        assert ("tau" in names) == has_tau
        assert len(model.coords["study"]) == model_data.n_studies

    def test_build_model_without_covariates(self, model_data):
        analysis = IFRMetaAnalysis(model_data, covariates=[])
        model = analysis.build_model()

        assert "beta" not in model.named_vars

    def test_summaries_require_fit(self, model_data):
        analysis = IFRMetaAnalysis(model_data)

        with pytest.raises(ValueError, match="not been fit"):
            analysis.location_effects()

        with pytest.raises(ValueError, match="not been fit"):
            analysis.diagnose()


@pytest.mark.slow
class TestFittedModel:
    """Test posterior summaries of a fitted model."""

    def test_trace_has_log_likelihood(self, fitted_analysis):
        assert "log_likelihood" in fitted_analysis.trace.groups()
        assert "deaths" in fitted_analysis.trace.log_likelihood

    def test_location_effects(self, fitted_analysis):
        effects = fitted_analysis.location_effects()

        assert effects["study"].tolist() == fitted_analysis.data.studies
        assert (effects["ifr_ci_lower"] <= effects["ifr_median"]).all()
        assert (effects["ifr_median"] <= effects["ifr_ci_upper"]).all()
        assert ((effects["ifr_mean"] > 0) & (effects["ifr_mean"] < 1)).all()

    def test_pooled_ifr_increases_with_age(self, fitted_analysis):
        pooled = fitted_analysis.pooled_ifr(ages=[20, 50, 80])

        assert list(pooled["age"]) == [20, 50, 80]
        assert np.all(np.diff(pooled["ifr_median"]) > 0)
        assert {"pred_lower", "pred_upper"} <= set(pooled.columns)

    def test_study_curves(self, fitted_analysis):
        curves = fitted_analysis.study_ifr_by_age(ages=[30, 70])

        assert len(curves) == 2 * fitted_analysis.data.n_studies
        assert set(curves.columns) >= {"study", "age", "ifr_median", "ci_lower", "ci_upper"}

    def test_summary(self, fitted_analysis):
        summary = fitted_analysis.summary()

        assert "mu" in summary.index
        assert "tau" in summary.index

    def test_posterior_predictive_check(self, fitted_analysis):
        ppc = fitted_analysis.posterior_predictive_check()

        assert len(ppc) == fitted_analysis.data.n_obs
        assert (ppc["predicted_lower"] <= ppc["predicted_upper"]).all()
        assert ppc["covered"].dtype == bool

    def test_diagnose(self, fitted_analysis):
        diagnostics = fitted_analysis.diagnose()

        for key in ["rhat_max", "ess_min", "n_divergences", "bfmi", "warnings"]:
            assert key in diagnostics
        assert diagnostics["n_divergences"] >= 0
