"""
Tests for report tables and figures.
"""

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest

from ifr_meta_analysis.reporting import (
    format_ifr,
    markdown_table,
    plot_forest,
    plot_ifr_by_age,
    plot_pooling_comparison,
    plot_posterior_predictive,
    summarize_dataset,
)


@pytest.fixture
def effects():
    return pd.DataFrame({
        "study": ["Study A", "Study B", "Study C"],
        "source": ["global", "us", "global"],
        "logit_mean": [-5.2, -4.8, -5.0],
        "ifr_median": [0.005, 0.008, 0.0065],
        "ifr_ci_lower": [0.003, 0.005, 0.004],
        "ifr_ci_upper": [0.008, 0.012, 0.009],
    })


@pytest.fixture
def pooled_curve():
    ages = np.array([20.0, 50.0, 80.0])
    median = np.array([0.0002, 0.002, 0.03])
    return pd.DataFrame({
        "age": ages,
        "ifr_mean": median,
        "ifr_median": median,
        "ci_lower": median * 0.7,
        "ci_upper": median * 1.4,
        "pred_lower": median * 0.4,
        "pred_upper": median * 2.5,
    })


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


class TestTables:
    """Test Markdown and summary tables."""

    @pytest.mark.parametrize("value,expected", [
        (0.0052, "0.520%"),
        (0.025, "2.50%"),
        (0.00005, "0.0050%"),
        (np.nan, "N/A"),
    ])
    def test_format_ifr(self, value, expected):
        assert format_ifr(value) == expected

    def test_markdown_table(self, effects):
        table = markdown_table(
            effects,
            {"study": "Study", "logit_mean": "Logit", "ifr_median": "IFR"},
            {"logit_mean": ".1f", "ifr_median": format_ifr},
        )
        lines = table.splitlines()

        assert lines[0] == "| Study | Logit | IFR |"
        assert lines[1].startswith("|--")
        assert lines[2] == "| Study A | -5.2 | 0.500% |"
        assert len(lines) == 2 + len(effects)

    def test_summarize_dataset(self, model_data):
        summary = summarize_dataset(model_data)

        assert list(summary["study"]) == model_data.studies
        assert summary["deaths"].sum() == model_data.deaths.sum()
        assert ((summary["prevalence"] > 0) & (summary["prevalence"] < 1)).all()
        assert (summary["crude_ifr"] >= 0).all()


class TestFigures:
    """Test figure rendering to files."""

    def test_forest_plot(self, effects, tmp_path):
        path = tmp_path / "forest.png"
        pooled = {"ifr_median": 0.0065, "ci_lower": 0.005, "ci_upper": 0.008}

        fig, ax = plot_forest(effects, pooled=pooled, save_path=path)

        assert path.exists()
        labels = [t.get_text() for t in ax.get_yticklabels()]
        assert "Pooled" in labels
        assert len(labels) == len(effects) + 1

    def test_forest_plot_without_pooled(self, effects):
        fig, ax = plot_forest(effects)

        assert len(ax.get_yticklabels()) == len(effects)

    def test_ifr_by_age_plot(self, pooled_curve, model_data, tmp_path):
        path = tmp_path / "ifr_by_age.png"

        plot_ifr_by_age(pooled_curve, model_data.table, save_path=path)

        assert path.exists()

    def test_pooling_comparison_plot(self, effects, tmp_path):
        long = pd.concat([
            effects.assign(pooling="partial"),
            effects.assign(pooling="none", ifr_median=effects["ifr_median"] * 1.1),
        ])
        path = tmp_path / "pooling.png"

        plot_pooling_comparison(long, save_path=path)

        assert path.exists()

    def test_posterior_predictive_plot(self, tmp_path):
        ppc = pd.DataFrame({
            "observed": [0, 5, 50],
            "predicted_median": [1.0, 6.0, 45.0],
            "predicted_lower": [0.0, 2.0, 30.0],
            "predicted_upper": [4.0, 11.0, 62.0],
            "covered": [True, True, True],
        })
        path = tmp_path / "ppc.png"

        plot_posterior_predictive(ppc, save_path=path)

        assert path.exists()
