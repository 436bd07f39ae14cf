"""
Integration tests for the IFR report pipeline.
"""

import pytest

from ifr_meta_analysis.data_loading import simulate_ifr_studies, write_ifr_workbook
from ifr_meta_analysis.main import IFRReportPipeline, build_parser, main
from ifr_meta_analysis.model import IFRMetaAnalysis


class TestCommandLine:
    """Test argument parsing."""

    def test_defaults(self):
        args = build_parser().parse_args([])

        assert not args.demo
        assert args.pooling is None
        assert not args.compare_pooling

    def test_invalid_pooling_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--pooling", "some"])

    def test_missing_workbook_exits(self, tmp_path):
        with pytest.raises(SystemExit) as excinfo:
            main(["--input", str(tmp_path / "missing.xlsx"), "--output", str(tmp_path)])

        assert excinfo.value.code == 1


def test_pipeline_rejects_invalid_config(tmp_path):
    with pytest.raises(ValueError):
        IFRReportPipeline(output_dir=tmp_path, config={"pooling": "some"})


class TestStageFailures:
    """Test that stage failures are recorded rather than raised."""

    def test_failed_fit_skips_later_stages(self, observations, tmp_path, monkeypatch):
        def broken_fit(self, *args, **kwargs):
            raise RuntimeError("sampler exploded")

        monkeypatch.setattr(IFRMetaAnalysis, "fit", broken_fit)
        pipeline = IFRReportPipeline(output_dir=tmp_path, save_outputs=False)

        results = pipeline.run(observations, compare_pooling_types=True)

        assert results['fit'] == {'error': "sampler exploded"}
        assert 'pooling' not in results
        assert 'comparison' not in results

        report = pipeline.generate_report()
        assert "**Status:** ✗ Failed - sampler exploded" in report
        assert "## 3. Pooling and Heterogeneity" not in report

    def test_failed_data_preparation_is_recorded(self, observations, tmp_path):
        inverted = observations.copy()
        inverted.loc[0, ["ir_lower", "ir_upper"]] = [0.5, 0.01]
        pipeline = IFRReportPipeline(output_dir=tmp_path, save_outputs=False)

        results = pipeline.run(inverted)

        assert "lower bound exceeds upper bound" in results['data']['error']
        assert 'fit' not in results
        assert "✗ Failed" in pipeline.generate_report()

    def test_cli_exits_on_unpreparable_workbook(self, observations, tmp_path):
        inverted = observations.copy()
        inverted.loc[0, ["ir_lower", "ir_upper"]] = [0.5, 0.01]
        workbook = write_ifr_workbook(inverted, tmp_path / "inverted.xlsx")

        with pytest.raises(SystemExit) as excinfo:
            main(["--input", str(workbook), "--output", str(tmp_path), "--no-save"])

        assert excinfo.value.code == 1
        assert (tmp_path / "ifr_report.md").exists()


@pytest.mark.slow
class TestPipeline:
    """Test the full pipeline on synthetic studies."""

    @pytest.fixture(scope="class")
    def pipeline(self, tmp_path_factory):
        output_dir = tmp_path_factory.mktemp("report")
        pipeline = IFRReportPipeline(
            output_dir=output_dir,
            draws=150,
            tune=150,
            chains=1,
        )
        pipeline.run(simulate_ifr_studies(n_global=3, n_us=2, seed=3))
        return pipeline

    def test_results_complete(self, pipeline):
        results = pipeline.results

        assert results['data']['n_studies'] == 5
        assert 'error' not in results['fit']
        assert 'error' not in results['pooling']
        assert 0 <= results['ppc']['coverage'] <= 1

    def test_outputs_saved(self, pipeline):
        for name in [
            "model_data.csv",
            "location_effects.csv",
            "pooled_ifr_by_age.csv",
            "posterior_summary.csv",
            "forest_plot.png",
            "ifr_by_age.png",
        ]:
            assert (pipeline.output_dir / name).exists(), name

    def test_generate_report(self, pipeline):
        report_path = pipeline.output_dir / "report.md"

        report = pipeline.generate_report(output_path=report_path)

        assert report_path.exists()
        assert "# COVID-19 Infection Fatality Rate Meta-Analysis" in report
        assert "## 1. Studies" in report
        assert "## 2. Hierarchical Model" in report
        assert "## 3. Pooling and Heterogeneity" in report
        assert "## 4. Model Comparison" not in report


@pytest.mark.slow
def test_main_demo(tmp_path):
    main([
        "--demo",
        "--output", str(tmp_path),
        "--draws", "150",
        "--tune", "150",
        "--chains", "1",
        "--no-save",
    ])

    report = (tmp_path / "ifr_report.md").read_text(encoding="utf-8")
    assert "## 2. Hierarchical Model" in report
    assert (tmp_path / "demo_ifr_studies.xlsx").exists()
