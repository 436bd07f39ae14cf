"""
Figures and tables for the IFR meta-analysis report.

This module generates:
- Forest plots of study-level IFR at the reference age
- IFR-by-age plots comparing the pooled curve with observed crude IFRs
- Pooling comparison plots (partial vs full vs no pooling)
- Posterior predictive plots of observed vs predicted deaths
- Markdown tables for the rendered report
"""

from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Union

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from loguru import logger

from .config import Config
from .transforms import ModelData

# Set visualization style
sns.set_style("whitegrid")
plt.rcParams['font.size'] = 10

POOLING_COLORS = {
    "partial": "#2E86AB",
    "full": "#A23B72",
    "none": "#F18F01",
}


def format_ifr(value: float) -> str:
    """Format an IFR proportion as a percentage."""
    if value is None or pd.isna(value):
        return "N/A"
    pct = value * 100
    if pct < 0.01:
        return f"{pct:.4f}%"
    if pct < 1:
        return f"{pct:.3f}%"
    return f"{pct:.2f}%"


def markdown_table(
    df: pd.DataFrame,
    columns: Mapping[str, str],
    formats: Optional[Dict[str, Union[str, Callable]]] = None
) -> str:
    """
    Render selected DataFrame columns as a Markdown table.

    Args:
        df: Data to render
        columns: Column name -> header text, in display order
        formats: Column name -> format spec (e.g. '.2f') or callable

    Returns:
        Markdown table as a string
    """
    formats = formats or {}

    header = "| " + " | ".join(columns.values()) + " |"
    divider = "|" + "|".join("-" * (len(h) + 2) for h in columns.values()) + "|"
    lines = [header, divider]

    for _, row in df.iterrows():
        cells = []
        for col in columns:
            value = row[col]
            fmt = formats.get(col)
            if callable(fmt):
                cells.append(fmt(value))
            elif fmt and not pd.isna(value):
                cells.append(format(value, fmt))
            else:
                cells.append(str(value))
        lines.append("| " + " | ".join(cells) + " |")

    return "\n".join(lines)


def summarize_dataset(data: ModelData) -> pd.DataFrame:
    """
    Per-study summary of the input data.

    Returns:
        DataFrame with age groups, population, deaths, mean prevalence and
        crude IFR per study
    """
    table = data.table.assign(infections=lambda d: d["population"] * d["ir"])

    summary = table.groupby("study", sort=False).agg(
        source=("source", "first"),
        n_age_groups=("age_group", "count"),
        min_age=("median_age", "min"),
        max_age=("median_age", "max"),
        population=("population", "sum"),
        deaths=("deaths", "sum"),
        infections=("infections", "sum"),
    ).reset_index()

    summary["prevalence"] = summary["infections"] / summary["population"]
    summary["crude_ifr"] = summary["deaths"] / summary["infections"]

    return summary


def _save(fig, save_path: Optional[Union[str, Path]], label: str):
    if save_path:
        fig.savefig(
            save_path,
            dpi=Config.OUTPUT_CONFIG["plot_dpi"],
            bbox_inches='tight'
        )
        logger.info(f"Saved {label} to {save_path}")


def plot_forest(
    effects: pd.DataFrame,
    pooled: Optional[Mapping] = None,
    title: str = "IFR at Reference Age by Study",
    save_path: Optional[Union[str, Path]] = None
):
    """
    Forest plot of study-level IFR with credible intervals.

    Args:
        effects: Output of IFRMetaAnalysis.location_effects()
        pooled: Optional mapping with ifr_median, ci_lower, ci_upper for the
            pooled estimate, drawn as a diamond at the bottom
        save_path: Path to save plot (optional)
    """
    effects = effects.sort_values("ifr_median").reset_index(drop=True)
    n = len(effects)
    y = np.arange(n)[::-1] + (1 if pooled is not None else 0)

    fig, ax = plt.subplots(figsize=(9, 0.45 * n + 2))

    if "source" in effects.columns:
        colors = ['#E76F51' if s == 'us' else '#2A9D8F' for s in effects["source"]]
    else:
        colors = '#2A9D8F'

    ax.errorbar(
        effects["ifr_median"],
        y,
        xerr=[
            effects["ifr_median"] - effects["ifr_ci_lower"],
            effects["ifr_ci_upper"] - effects["ifr_median"],
        ],
        fmt='none',
        ecolor='gray',
        elinewidth=1.5,
        capsize=3,
    )
    ax.scatter(effects["ifr_median"], y, c=colors, s=40, zorder=3)

    ticks = list(y)
    labels = list(effects["study"])

    if pooled is not None:
        lo, mid, hi = pooled["ci_lower"], pooled["ifr_median"], pooled["ci_upper"]
        ax.fill(
            [lo, mid, hi, mid],
            [0, 0.25, 0, -0.25],
            color='black',
            alpha=0.8,
        )
        ax.axvline(mid, color='black', linestyle='--', linewidth=1, alpha=0.5)
        ticks.append(0)
        labels.append("Pooled")

    ax.set_yticks(ticks)
    ax.set_yticklabels(labels)
    ax.set_xscale('log')
    ax.set_xlabel('IFR (log scale)', fontsize=11)
    ax.set_title(title, fontsize=12, fontweight='bold')
    ax.grid(True, alpha=0.3, axis='x')

    plt.tight_layout()
    _save(fig, save_path, "forest plot")

    return fig, ax


def plot_ifr_by_age(
    pooled_curve: pd.DataFrame,
    observations: pd.DataFrame,
    save_path: Optional[Union[str, Path]] = None
):
    """
    Pooled IFR-by-age curve against observed crude IFRs.

    Args:
        pooled_curve: Output of IFRMetaAnalysis.pooled_ifr()
        observations: Prepared table with median_age, crude_ifr and study
        save_path: Path to save plot (optional)
    """
    fig, ax = plt.subplots(figsize=(10, 6))

    if {"pred_lower", "pred_upper"} <= set(pooled_curve.columns):
        ax.fill_between(
            pooled_curve["age"],
            pooled_curve["pred_lower"],
            pooled_curve["pred_upper"],
            alpha=0.12,
            color='#2E86AB',
            label='95% Predictive Interval (new location)'
        )

    ax.fill_between(
        pooled_curve["age"],
        pooled_curve["ci_lower"],
        pooled_curve["ci_upper"],
        alpha=0.3,
        color='#2E86AB',
        label='95% Credible Interval'
    )
    ax.plot(
        pooled_curve["age"],
        pooled_curve["ifr_median"],
        '-',
        color='#2E86AB',
        linewidth=2,
        label='Pooled IFR (median)'
    )

    observed = observations.loc[observations["crude_ifr"] > 0]
    sns.scatterplot(
        data=observed,
        x="median_age",
        y="crude_ifr",
        hue="study",
        style="source",
        ax=ax,
        s=35,
        alpha=0.8,
    )

    ax.set_yscale('log')
    ax.set_xlabel('Median Age', fontsize=12)
    ax.set_ylabel('IFR (log scale)', fontsize=12)
    ax.set_title('Infection Fatality Rate by Age', fontsize=14, fontweight='bold')
    ax.legend(loc='upper left', fontsize=8, bbox_to_anchor=(1.01, 1))
    ax.grid(True, alpha=0.3)

    plt.tight_layout()
    _save(fig, save_path, "IFR-by-age plot")

    return fig, ax


def plot_pooling_comparison(
    effects: pd.DataFrame,
    save_path: Optional[Union[str, Path]] = None
):
    """
    Study-level IFR under each pooling type, side by side.

    Args:
        effects: Long table from pooling.compare_pooling().effects
        save_path: Path to save plot (optional)
    """
    studies = list(pd.unique(effects["study"]))
    poolings = list(pd.unique(effects["pooling"]))
    y_base = np.arange(len(studies))[::-1]
    offsets = np.linspace(-0.25, 0.25, len(poolings)) if len(poolings) > 1 else [0.0]

    fig, ax = plt.subplots(figsize=(9, 0.5 * len(studies) + 2))

    for offset, pooling in zip(offsets, poolings):
        part = effects.loc[effects["pooling"] == pooling].set_index("study").reindex(studies)
        ax.errorbar(
            part["ifr_median"],
            y_base + offset,
            xerr=[
                part["ifr_median"] - part["ifr_ci_lower"],
                part["ifr_ci_upper"] - part["ifr_median"],
            ],
            fmt='o',
            color=POOLING_COLORS.get(pooling, 'gray'),
            markersize=4,
            capsize=2,
            label=f'{pooling} pooling',
        )

    ax.set_yticks(y_base)
    ax.set_yticklabels(studies)
    ax.set_xscale('log')
    ax.set_xlabel('IFR at Reference Age (log scale)', fontsize=11)
    ax.set_title('Location Effects by Pooling Type', fontsize=12, fontweight='bold')
    ax.legend(loc='best', fontsize=9)
    ax.grid(True, alpha=0.3, axis='x')

    plt.tight_layout()
    _save(fig, save_path, "pooling comparison plot")

    return fig, ax


def plot_posterior_predictive(
    ppc: pd.DataFrame,
    save_path: Optional[Union[str, Path]] = None
):
    """
    Observed deaths against posterior predictive medians and intervals.

    Args:
        ppc: Output of IFRMetaAnalysis.posterior_predictive_check()
        save_path: Path to save plot (optional)
    """
    fig, ax = plt.subplots(figsize=(7, 7))

    ax.errorbar(
        ppc["observed"] + 1,
        ppc["predicted_median"] + 1,
        yerr=[
            ppc["predicted_median"] - ppc["predicted_lower"],
            ppc["predicted_upper"] - ppc["predicted_median"],
        ],
        fmt='none',
        ecolor='gray',
        alpha=0.6,
    )
    ax.scatter(
        ppc["observed"] + 1,
        ppc["predicted_median"] + 1,
        c=np.where(ppc["covered"], '#06A77D', '#E63946'),
        s=25,
        zorder=3,
    )

    limit = max(ppc["observed"].max(), ppc["predicted_upper"].max()) + 1
    ax.plot([1, limit], [1, limit], 'k--', linewidth=1, alpha=0.5)

    ax.set_xscale('log')
    ax.set_yscale('log')
    ax.set_xlabel('Observed Deaths + 1', fontsize=11)
    ax.set_ylabel('Predicted Deaths + 1', fontsize=11)
    ax.set_title(
        f'Posterior Predictive Check ({ppc["covered"].mean():.0%} covered)',
        fontsize=12,
        fontweight='bold'
    )
    ax.grid(True, alpha=0.3)

    plt.tight_layout()
    _save(fig, save_path, "posterior predictive plot")

    return fig, ax
