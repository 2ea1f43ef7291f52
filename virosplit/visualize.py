"""
Visualisation module for ViroSplit.

Generates summary plots from a finished run:
  • Stacked bar chart of retained vs shared reads per sample and track
  • Top-N gene TPM heatmap per track (log-scaled)

Every plot is saved as **both PNG (raster) and PDF (vector)**.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional

import matplotlib

matplotlib.use("Agg")  # non-interactive backend

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from virosplit.config import ViroSplitConfig
from virosplit.models import TRACKS
from virosplit.quantify import build_expression_matrix
from virosplit.utils import get_logger

if TYPE_CHECKING:
    from virosplit.pipeline import PipelineResult


# ---------------------------------------------------------------------------
# Global style
# ---------------------------------------------------------------------------

_STYLE_APPLIED = False

TRACK_COLOURS = {"human": "#3B75AF", "virus": "#C44E52", "shared": "#B0B0B0"}


def _apply_style() -> None:
    """Apply publication-quality matplotlib defaults once."""
    global _STYLE_APPLIED
    if _STYLE_APPLIED:
        return
    plt.rcParams.update(
        {
            "font.family": "sans-serif",
            "font.sans-serif": ["Arial", "Helvetica", "DejaVu Sans"],
            "font.size": 12,
            "axes.titlesize": 16,
            "axes.titleweight": "bold",
            "axes.labelsize": 13,
            "xtick.labelsize": 11,
            "ytick.labelsize": 11,
            "legend.fontsize": 11,
            "figure.dpi": 150,
            "savefig.dpi": 300,
            "savefig.bbox": "tight",
            "savefig.facecolor": "white",
            "axes.spines.top": False,
            "axes.spines.right": False,
            "axes.grid": False,
        }
    )
    _STYLE_APPLIED = True


def _save(fig: plt.Figure, path: Path, cfg: ViroSplitConfig) -> list[Path]:
    """Save figure once per ``cfg.plot_formats``. Returns list of saved paths."""
    path.parent.mkdir(parents=True, exist_ok=True)
    log = get_logger()
    saved: list[Path] = []
    for fmt in cfg.plot_formats:
        out = path.with_suffix(f".{fmt}")
        fig.savefig(out, format=fmt, dpi=cfg.dpi, bbox_inches="tight", facecolor="white")
        saved.append(out)
        log.info(f"Saved plot → {out}")
    plt.close(fig)
    return saved


# ---------------------------------------------------------------------------
# 1. Read reconciliation
# ---------------------------------------------------------------------------


def plot_reconciliation(
    stats: pd.DataFrame,
    output_path: Path,
    *,
    cfg: Optional[ViroSplitConfig] = None,
) -> list[Path]:
    """
    Mapped reads per sample and track, split into kept and shared.

    *stats* needs the columns of ``reconciliation_summary.csv``.
    """
    _apply_style()
    if cfg is None:
        cfg = ViroSplitConfig()

    data = stats.sort_values("sample_id").reset_index(drop=True)
    n = len(data)
    x = np.arange(n)
    width = 0.38

    fig, ax = plt.subplots(figsize=(max(6, n * 1.1), 5))
    for offset, track in ((-width / 2, "human"), (width / 2, "virus")):
        unique = data[f"{track}_mapped"] - data["shared"]
        ax.bar(x + offset, unique, width, color=TRACK_COLOURS[track], label=f"{track} only")
        ax.bar(
            x + offset,
            data["shared"],
            width,
            bottom=unique,
            color=TRACK_COLOURS["shared"],
            label="shared (removed)" if track == "human" else None,
        )

    ax.set_xticks(x)
    ax.set_xticklabels(data["sample_id"], rotation=45 if n > 6 else 0, ha="right" if n > 6 else "center")
    ax.set_ylabel("Mapped reads")
    ax.set_title("Cross-Mapping Read Reconciliation", pad=12)
    ax.legend(frameon=False)
    ax.ticklabel_format(axis="y", style="plain")
    fig.tight_layout()
    return _save(fig, output_path, cfg)


# ---------------------------------------------------------------------------
# 2. Top-N gene heatmap
# ---------------------------------------------------------------------------


def plot_gene_heatmap(
    matrix: pd.DataFrame,
    output_path: Path,
    *,
    top_n: int = 20,
    title: str = "Top Expressed Genes (log₁₀ TPM + 1)",
    cfg: Optional[ViroSplitConfig] = None,
) -> list[Path]:
    """Heatmap of the *top_n* genes by mean value across samples."""
    _apply_style()
    if cfg is None:
        cfg = ViroSplitConfig()

    top = matrix.loc[matrix.mean(axis=1).nlargest(top_n).index]
    data = np.log10(top.astype(float) + 1)

    fig, ax = plt.subplots(figsize=(max(6, 0.8 * data.shape[1] + 3), max(4, 0.35 * len(data) + 1.5)))
    sns.heatmap(
        data,
        cmap="viridis",
        linewidths=0.3,
        linecolor="white",
        cbar_kws={"label": "log₁₀(TPM + 1)"},
        ax=ax,
    )
    ax.set_xlabel("")
    ax.set_ylabel("")
    ax.set_title(title, pad=12)
    fig.tight_layout()
    return _save(fig, output_path, cfg)


# ---------------------------------------------------------------------------
# Generate all
# ---------------------------------------------------------------------------


def generate_all_plots(
    result: "PipelineResult",
    output_dir: Path,
    *,
    cfg: Optional[ViroSplitConfig] = None,
) -> list[Path]:
    """Render every plot a finished run supports; returns saved paths."""
    log = get_logger()
    if cfg is None:
        cfg = ViroSplitConfig()
    plots_dir = Path(output_dir)
    all_plots: list[Path] = []

    if result.reconciliation:
        from virosplit.pipeline import _reconciliation_frame

        stats = _reconciliation_frame(result.reconciliation)
        all_plots.extend(plot_reconciliation(stats, plots_dir / "read_reconciliation", cfg=cfg))

    for track in TRACKS:
        tables = result.tables_for(track)
        if not tables:
            continue
        matrix = build_expression_matrix(tables, "tpm", level="genes")
        if matrix.empty or not (matrix.to_numpy() > 0).any():
            log.info(f"No {track.value} expression to plot")
            continue
        all_plots.extend(
            plot_gene_heatmap(
                matrix,
                plots_dir / f"{track.value}_top_genes",
                top_n=cfg.top_n_genes,
                title=f"Top {track.value.capitalize()} Genes (log₁₀ TPM + 1)",
                cfg=cfg,
            )
        )

    log.info(f"Generated {len(all_plots)} plot files in {plots_dir}")
    return all_plots
