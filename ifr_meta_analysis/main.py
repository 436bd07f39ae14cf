"""
COVID-19 IFR Bayesian Meta-Analysis - Main Entry Point.

This module orchestrates the report:
1. Load global and US studies from the IFR workbook
2. Convert reported prevalence intervals to logit-normal parameters
3. Fit the hierarchical binomial model
4. Summarize pooling, heterogeneity and cross-validation
5. Render plots, tables and a Markdown report

Usage:
    python -m ifr_meta_analysis.main --input data/ifr_studies.xlsx --output output/
"""

import argparse
import sys
from pathlib import Path
from datetime import datetime
from typing import Dict, Optional

import pandas as pd
from loguru import logger

from .config import Config
from .data_loading import load_ifr_workbook, simulate_ifr_studies, write_ifr_workbook
from .model import IFRMetaAnalysis
from .pooling import compare_pooling, leave_one_study_out, pooling_metrics
from .reporting import (
    format_ifr,
    markdown_table,
    plot_forest,
    plot_ifr_by_age,
    plot_pooling_comparison,
    plot_posterior_predictive,
    summarize_dataset,
)
from .transforms import prepare_model_data


# ============================================================================
# Main Pipeline
# ============================================================================

class IFRReportPipeline:
    """
    End-to-end pipeline for the IFR meta-analysis report.

    Runs data preparation, model fitting and posterior summaries as a
    single pass and renders the results into figures and Markdown.
    """

    def __init__(
        self,
        output_dir: Optional[Path] = None,
        save_outputs: bool = True,
        config: Optional[Dict] = None,
        draws: Optional[int] = None,
        tune: Optional[int] = None,
        chains: Optional[int] = None
    ):
        """
        Initialize pipeline.

        Args:
            output_dir: Directory for output files
            save_outputs: Whether to save tables and figures
            config: Model configuration dict (defaults to Config.MODEL_CONFIG)
            draws: MCMC draws per chain (default from config)
            tune: MCMC tuning steps (default from config)
            chains: Number of MCMC chains (default from config)
        """
        self.output_dir = Path(output_dir or Config.OUTPUT_DIR)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        self.save_outputs = save_outputs
        self.config = config or Config.MODEL_CONFIG
        Config.validate_config(self.config)

        self.fit_kwargs = {
            "draws": draws,
            "tune": tune,
            "chains": chains,
            "progressbar": False,
        }

        # Pipeline components
        self.data = None
        self.analysis = None
        self.comparison = None

        # Results
        self.results = {}

        logger.info(f"Initialized pipeline (output: {self.output_dir})")

    def _figure_path(self, name: str) -> Optional[Path]:
        if not self.save_outputs:
            return None
        return self.output_dir / f"{name}.{Config.OUTPUT_CONFIG['plot_format']}"

    def _save_table(self, df: pd.DataFrame, name: str):
        if self.save_outputs:
            df.to_csv(self.output_dir / f"{name}.csv", index=False)

    def run(
        self,
        observations: pd.DataFrame,
        compare_pooling_types: bool = False,
        leave_studies_out: bool = False
    ) -> Dict:
        """
        Run the complete analysis on cleaned observations.

        Args:
            observations: Output of load_ifr_workbook()
            compare_pooling_types: Also fit full and no pooling and compare by LOO
            leave_studies_out: Also run leave-one-study-out cross-validation

        Returns:
            Dictionary with all results
        """
        logger.info("=" * 80)
        logger.info("COVID-19 IFR BAYESIAN META-ANALYSIS")
        logger.info("=" * 80)

        start_time = datetime.now()

        # ====================================================================
        # 1. DATA PREPARATION
        # ====================================================================

        logger.info("[1/4] DATA PREPARATION")
        logger.info("-" * 80)

        try:
            self.data = prepare_model_data(observations)
            dataset = summarize_dataset(self.data)

            self.results['data'] = {
                'n_observations': self.data.n_obs,
                'n_studies': self.data.n_studies,
                'summary': dataset,
            }

            if self.save_outputs:
                self._save_table(self.data.table, "model_data")
                self._save_table(dataset, "dataset_summary")

            logger.success(
                f"✓ Prepared {self.data.n_obs} observations from {self.data.n_studies} studies"
            )

        except Exception as e:
            logger.error(f"✗ Data preparation failed: {e}")
            self.results['data'] = {'error': str(e)}
            return self.results

        # ====================================================================
        # 2. MODEL FIT
        # ====================================================================

        logger.info(f"[2/4] MODEL FIT ({self.config['pooling']} pooling)")
        logger.info("-" * 80)

        try:
            self.analysis = IFRMetaAnalysis(self.data, config=self.config)
            self.analysis.build_model()
            self.analysis.fit(**self.fit_kwargs)

            effects = self.analysis.location_effects()
            pooled = self.analysis.pooled_ifr()
            reference = self.analysis.pooled_ifr(ages=[self.data.reference_age]).iloc[0]

            self.results['fit'] = {
                'pooling': self.analysis.pooling,
                'covariates': self.analysis.covariates,
                'diagnostics': self.analysis.diagnose(),
                'summary': self.analysis.summary(),
                'location_effects': effects,
                'pooled_ifr': pooled,
                'reference_ifr': reference,
                'study_curves': self.analysis.study_ifr_by_age(),
            }

            logger.success(
                f"✓ Model fit complete (pooled IFR at age {self.data.reference_age:g}: "
                f"{format_ifr(reference['ifr_median'])})"
            )

            if self.save_outputs:
                self._save_table(effects, "location_effects")
                self._save_table(pooled, "pooled_ifr_by_age")
                self._save_table(self.results['fit']['study_curves'], "study_ifr_by_age")
                self.results['fit']['summary'].to_csv(self.output_dir / "posterior_summary.csv")

                plot_forest(effects, pooled=reference, save_path=self._figure_path("forest_plot"))
                plot_ifr_by_age(pooled, self.data.table, save_path=self._figure_path("ifr_by_age"))

        except Exception as e:
            logger.error(f"✗ Model fit failed: {e}")
            self.results['fit'] = {'error': str(e)}
            return self.results

        # ====================================================================
        # 3. POOLING AND MODEL CHECKS
        # ====================================================================

        logger.info("[3/4] POOLING AND MODEL CHECKS")
        logger.info("-" * 80)

        try:
            metrics = pooling_metrics(self.analysis)
            self.results['pooling'] = metrics

            logger.success(
                f"✓ Heterogeneity {metrics['heterogeneity']['mean']:.2f} "
                f"[{metrics['heterogeneity']['lower']:.2f}-{metrics['heterogeneity']['upper']:.2f}]"
            )

            if self.save_outputs:
                self._save_table(metrics['groups'], "pooling_by_study")

        except Exception as e:
            logger.error(f"✗ Pooling metrics failed: {e}")
            self.results['pooling'] = {'error': str(e)}

        try:
            ppc = self.analysis.posterior_predictive_check()
            self.results['ppc'] = {
                'table': ppc,
                'coverage': float(ppc['covered'].mean()),
            }

            if self.save_outputs:
                self._save_table(ppc, "posterior_predictive")
                plot_posterior_predictive(ppc, save_path=self._figure_path("posterior_predictive"))

        except Exception as e:
            logger.error(f"✗ Posterior predictive check failed: {e}")
            self.results['ppc'] = {'error': str(e)}

        # ====================================================================
        # 4. CROSS-VALIDATION
        # ====================================================================

        logger.info("[4/4] POOLING COMPARISON AND CROSS-VALIDATION")
        logger.info("-" * 80)

        if compare_pooling_types:
            try:
                self.comparison = compare_pooling(
                    self.data,
                    covariates=self.analysis.covariates,
                    config=self.config,
                    **self.fit_kwargs
                )
                self.results['comparison'] = {
                    'loo': self.comparison.loo,
                    'effects': self.comparison.effects,
                }

                logger.success("✓ Pooling comparison complete")

                if self.save_outputs:
                    self._save_table(self.comparison.effects, "pooling_comparison")
                    if self.comparison.loo is not None:
                        self.comparison.loo.to_csv(self.output_dir / "loo_comparison.csv")
                    plot_pooling_comparison(
                        self.comparison.effects,
                        save_path=self._figure_path("pooling_comparison")
                    )

            except Exception as e:
                logger.error(f"✗ Pooling comparison failed: {e}")
                self.results['comparison'] = {'error': str(e)}

        if leave_studies_out:
            try:
                loso = leave_one_study_out(
                    self.data,
                    covariates=self.analysis.covariates,
                    config=self.config,
                    **self.fit_kwargs
                )
                self.results['loso'] = loso

                logger.success(f"✓ Leave-one-study-out elpd: {loso['elpd']:.1f}")

                if self.save_outputs:
                    self._save_table(loso['studies'], "leave_one_study_out")

            except Exception as e:
                logger.error(f"✗ Leave-one-study-out failed: {e}")
                self.results['loso'] = {'error': str(e)}

        # ====================================================================
        # SUMMARY
        # ====================================================================

        elapsed = (datetime.now() - start_time).total_seconds()

        logger.info("=" * 80)
        logger.info("PIPELINE SUMMARY")
        logger.info("=" * 80)
        logger.info(f"Execution time: {elapsed:.1f} seconds")
        logger.info(f"Output directory: {self.output_dir}")

        logger.success("✓ Pipeline complete!")

        return self.results

    def generate_report(self, output_path: Optional[Path] = None) -> str:
        """
        Generate Markdown report.

        Args:
            output_path: Path to save report (optional)

        Returns:
            Report as markdown string
        """
        report_lines = [
            "# COVID-19 Infection Fatality Rate Meta-Analysis",
            "",
            f"**Generated:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            "",
            "---",
            "",
        ]

        # Data section
        if 'data' in self.results:
            data = self.results['data']
            report_lines.extend(["## 1. Studies", ""])

            if 'error' in data:
                report_lines.append(f"**Status:** ✗ Failed - {data['error']}")
            else:
                report_lines.extend([
                    f"**Observations:** {data['n_observations']} age groups "
                    f"from {data['n_studies']} studies",
                    "",
                    markdown_table(
                        data['summary'],
                        {
                            "study": "Study",
                            "source": "Source",
                            "n_age_groups": "Age Groups",
                            "population": "Population",
                            "deaths": "Deaths",
                            "prevalence": "Prevalence",
                            "crude_ifr": "Crude IFR",
                        },
                        {
                            "population": ",.0f",
                            "deaths": ",.0f",
                            "prevalence": ".1%",
                            "crude_ifr": format_ifr,
                        },
                    ),
                ])

            report_lines.extend(["", "---", ""])

        # Model section
        if 'fit' in self.results:
            fit = self.results['fit']
            report_lines.extend(["## 2. Hierarchical Model", ""])

            if 'error' in fit:
                report_lines.append(f"**Status:** ✗ Failed - {fit['error']}")
            else:
                diagnostics = fit['diagnostics']
                reference = fit['reference_ifr']
                report_lines.extend([
                    "**Status:** ✓ Success",
                    f"**Pooling:** {fit['pooling']}",
                    f"**Covariates:** {', '.join(fit['covariates']) or 'none'}",
                    "",
                    "**MCMC Diagnostics:**",
                    f"- Max R-hat: {diagnostics.get('rhat_max', float('nan')):.3f}",
                    f"- Min ESS: {diagnostics.get('ess_min', float('nan')):.0f}",
                    f"- Divergences: {diagnostics.get('n_divergences', 'N/A')}",
                    "",
                    f"**Pooled IFR at age {self.data.reference_age:g}:** "
                    f"{format_ifr(reference['ifr_median'])} "
                    f"[95% CI: {format_ifr(reference['ci_lower'])}-{format_ifr(reference['ci_upper'])}]",
                    "",
                    "**Location Effects (IFR at reference age):**",
                    "",
                    markdown_table(
                        fit['location_effects'],
                        {
                            "study": "Study",
                            "logit_mean": "Logit Effect",
                            "ifr_median": "IFR",
                            "ifr_ci_lower": "95% CI Lower",
                            "ifr_ci_upper": "95% CI Upper",
                        },
                        {
                            "logit_mean": ".2f",
                            "ifr_median": format_ifr,
                            "ifr_ci_lower": format_ifr,
                            "ifr_ci_upper": format_ifr,
                        },
                    ),
                    "",
                    "**Pooled IFR by Age:**",
                    "",
                    markdown_table(
                        fit['pooled_ifr'],
                        {
                            "age": "Age",
                            "ifr_median": "IFR",
                            "ci_lower": "95% CI Lower",
                            "ci_upper": "95% CI Upper",
                        },
                        {
                            "age": ".0f",
                            "ifr_median": format_ifr,
                            "ci_lower": format_ifr,
                            "ci_upper": format_ifr,
                        },
                    ),
                ])

            report_lines.extend(["", "---", ""])

        # Pooling section
        if 'pooling' in self.results:
            pooling = self.results['pooling']
            report_lines.extend(["## 3. Pooling and Heterogeneity", ""])

            if 'error' in pooling:
                report_lines.append(f"**Status:** ✗ Failed - {pooling['error']}")
            else:
                het = pooling['heterogeneity']
                total = pooling['total']
                report_lines.extend([
                    f"**Total pooling:** {total['mean']:.2f} "
                    f"[{total['lower']:.2f}-{total['upper']:.2f}]",
                    f"**Heterogeneity:** {het['mean']:.2f} "
                    f"[{het['lower']:.2f}-{het['upper']:.2f}]",
                    "",
                    markdown_table(
                        pooling['groups'],
                        {
                            "study": "Study",
                            "se": "SE (logit)",
                            "pooling_mean": "Pooling",
                            "pooling_lower": "Lower",
                            "pooling_upper": "Upper",
                        },
                        {
                            "se": ".3f",
                            "pooling_mean": ".2f",
                            "pooling_lower": ".2f",
                            "pooling_upper": ".2f",
                        },
                    ),
                ])

            if 'ppc' in self.results and 'coverage' in self.results['ppc']:
                report_lines.extend([
                    "",
                    f"**Posterior predictive coverage:** "
                    f"{self.results['ppc']['coverage']:.1%} of age groups",
                ])

            report_lines.extend(["", "---", ""])

        # Cross-validation section
        if 'comparison' in self.results or 'loso' in self.results:
            report_lines.extend(["## 4. Model Comparison", ""])

            comparison = self.results.get('comparison', {})
            if 'error' in comparison:
                report_lines.append(f"**Pooling comparison:** ✗ Failed - {comparison['error']}")
            elif comparison.get('loo') is not None:
                loo = comparison['loo'].reset_index().rename(columns={"index": "model"})
                report_lines.extend([
                    "**PSIS-LOO by pooling type:**",
                    "",
                    markdown_table(
                        loo,
                        {
                            "model": "Pooling",
                            "elpd_loo": "ELPD",
                            "se": "SE",
                            "elpd_diff": "Difference",
                            "weight": "Weight",
                        },
                        {
                            "elpd_loo": ".1f",
                            "se": ".1f",
                            "elpd_diff": ".1f",
                            "weight": ".2f",
                        },
                    ),
                    "",
                ])

            loso = self.results.get('loso', {})
            if 'error' in loso:
                report_lines.append(f"**Leave-one-study-out:** ✗ Failed - {loso['error']}")
            elif loso:
                report_lines.extend([
                    f"**Leave-one-study-out ELPD:** {loso['elpd']:.1f} (SE {loso['se']:.1f})",
                    "",
                    markdown_table(
                        loso['studies'],
                        {
                            "study": "Held-out Study",
                            "elpd": "ELPD",
                            "observed_deaths": "Observed Deaths",
                            "predicted_deaths_median": "Predicted",
                        },
                        {
                            "elpd": ".1f",
                            "predicted_deaths_median": ",.0f",
                        },
                    ),
                ])

        report_md = "\n".join(report_lines) + "\n"

        # Save if path provided
        if output_path:
            with open(output_path, 'w', encoding='utf-8') as f:
                f.write(report_md)
            logger.info(f"Saved report to {output_path}")

        return report_md


# ============================================================================
# CLI Interface
# ============================================================================

def configure_logging(level: Optional[str] = None, log_file: Optional[Path] = None):
    """Send loguru output to stdout and a log file."""
    logger.remove()
    logger.add(
        sys.stdout,
        format=Config.LOG_FORMAT,
        level=level or Config.LOG_LEVEL
    )
    if log_file:
        logger.add(
            log_file,
            format=Config.LOG_FORMAT,
            level="DEBUG"
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="COVID-19 IFR Bayesian Meta-Analysis Report",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with synthetic demo studies
  ifr-report --demo

  # Run on a workbook
  ifr-report --input data/ifr_studies.xlsx

  # Compare pooling types and run leave-one-study-out CV
  ifr-report --input data/ifr_studies.xlsx --compare-pooling --loo-studies
        """
    )

    parser.add_argument(
        '--input',
        type=str,
        default=str(Config.DEFAULT_WORKBOOK),
        help=f'Path to IFR workbook (default: {Config.DEFAULT_WORKBOOK})'
    )
    parser.add_argument(
        '--demo',
        action='store_true',
        help='Run with synthetic demo studies'
    )
    parser.add_argument(
        '--output',
        type=str,
        default=str(Config.OUTPUT_DIR),
        help=f'Output directory (default: {Config.OUTPUT_DIR})'
    )
    parser.add_argument(
        '--pooling',
        choices=Config.POOLING_TYPES,
        default=None,
        help='Pooling type for the main model (default from config)'
    )
    parser.add_argument('--draws', type=int, default=None, help='MCMC draws per chain')
    parser.add_argument('--tune', type=int, default=None, help='MCMC tuning steps')
    parser.add_argument('--chains', type=int, default=None, help='Number of MCMC chains')
    parser.add_argument(
        '--compare-pooling',
        action='store_true',
        help='Fit partial, full and no pooling and compare with PSIS-LOO'
    )
    parser.add_argument(
        '--loo-studies',
        action='store_true',
        help='Run leave-one-study-out cross-validation (refits once per study)'
    )
    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='YAML file with model setting overrides'
    )
    parser.add_argument(
        '--no-save',
        action='store_true',
        help='Do not save tables and figures'
    )

    return parser


def main(argv=None):
    """Main entry point for CLI."""
    args = build_parser().parse_args(argv)

    output_dir = Path(args.output)
    output_dir.mkdir(parents=True, exist_ok=True)

    configure_logging(log_file=output_dir / Config.LOG_FILE.name)

    overrides = {}
    if args.config:
        loaded = Config.load_from_yaml(args.config)
        overrides.update(loaded.get("model", loaded))
    if args.pooling:
        overrides["pooling"] = args.pooling

    model_config = Config.model_config(overrides)

    # Load data
    if args.demo:
        logger.info("Generating synthetic demo studies...")
        workbook = write_ifr_workbook(
            simulate_ifr_studies(),
            output_dir / "demo_ifr_studies.xlsx"
        )
    else:
        workbook = Path(args.input)

    logger.info(f"Loading workbook {workbook}...")
    try:
        observations = load_ifr_workbook(workbook)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Could not load workbook: {e}")
        sys.exit(1)

    # Run pipeline
    pipeline = IFRReportPipeline(
        output_dir=output_dir,
        save_outputs=not args.no_save,
        config=model_config,
        draws=args.draws,
        tune=args.tune,
        chains=args.chains,
    )

    results = pipeline.run(
        observations,
        compare_pooling_types=args.compare_pooling,
        leave_studies_out=args.loo_studies,
    )

    # Generate report
    report_path = output_dir / Config.OUTPUT_CONFIG["report_name"]
    pipeline.generate_report(output_path=report_path)

    if 'error' in results['data']:
        logger.error(f"Could not prepare observations: {results['data']['error']}")
        sys.exit(1)

    logger.info(f"✓ All outputs saved to: {output_dir}")


if __name__ == "__main__":
    main()
