"""
Figure generation for communication regression reports.
"""

from pathlib import Path
from typing import Optional

import numpy as np

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import matplotlib.colors as mcolors
from matplotlib.figure import Figure

from commreg.logging import get_logger
from commreg.models.bootstrap import PValueTable
from commreg.models.effects import EffectEstimate
from commreg.models.rank import RankSelection

logger = get_logger()


def _key_labels(frame) -> list[str]:
    return [f"{s} > {r}: {lr}" for lr, s, r in frame.index]


class FigureGenerator:
    """Generate diagnostic figures from rank selection, effects, and p-values."""

    def __init__(
        self,
        output_dir: Path,
        formats: Optional[list[str]] = None,
        dpi: int = 150,
    ):
        self.output_dir = Path(output_dir)
        self.formats = formats or ["png"]
        self.dpi = dpi

        plt.rcParams.update({
            "font.size": 10,
            "axes.labelsize": 11,
            "axes.titlesize": 12,
            "legend.fontsize": 9,
        })

    def save_figure(self, fig: Figure, name: str) -> list[Path]:
        """Save figure in multiple formats."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        paths = []

        for fmt in self.formats:
            path = self.output_dir / f"{name}.{fmt}"
            fig.savefig(path, dpi=self.dpi, bbox_inches="tight")
            paths.append(path)

        plt.close(fig)
        return paths

    def plot_scree(
        self,
        selections: dict[str, RankSelection],
        variance_threshold: float,
    ) -> Figure:
        """Cumulative variance per mode, with the threshold and selected rank."""
        n = len(selections)
        fig, axes = plt.subplots(1, n, figsize=(4.5 * n, 4), squeeze=False)

        for ax, (mode, selection) in zip(axes[0], selections.items()):
            k = np.arange(1, len(selection.spectrum) + 1)
            ax.bar(k, selection.explained_ratio, color="steelblue", alpha=0.7, label="Explained")
            ax.plot(k, selection.cumulative_ratio, "o-", color="black", markersize=3, label="Cumulative")
            ax.axhline(variance_threshold, color="red", linestyle="--", alpha=0.6,
                       label=f"Threshold = {variance_threshold:g}")
            ax.axvline(selection.rank, color="coral", linestyle=":", label=f"Rank = {selection.rank}")

            ax.set_xlabel("Component")
            ax.set_ylabel("Variance ratio")
            ax.set_ylim(0, 1.05)
            ax.set_title(mode.replace("_", "-"))
            ax.legend(loc="center right")

        plt.tight_layout()
        return fig

    def plot_top_effects(
        self,
        effects: EffectEstimate,
        top_n: int = 20,
        pvalues: Optional[PValueTable] = None,
    ) -> Figure:
        """Horizontal bar chart of the largest effects by magnitude."""
        top = effects.top(top_n).iloc[::-1]
        fig, ax = plt.subplots(figsize=(8, max(3, 0.3 * len(top) + 1)))

        values = top["effect"].to_numpy()
        colors = np.where(values >= 0, "coral", "steelblue")
        if pvalues is not None:
            q = pvalues.table.loc[top.index, "q_value"].to_numpy()
            alpha = np.where(q < 0.05, 0.9, 0.35)
            colors = [mcolors.to_rgba(c, a) for c, a in zip(colors, alpha)]

        ax.barh(range(len(top)), values, color=colors)
        ax.set_yticks(range(len(top)))
        ax.set_yticklabels(_key_labels(top), fontsize=8)
        ax.axvline(0, color="black", linewidth=0.8)
        ax.set_xlabel(f"Effect of {effects.covariate}")
        ax.set_title(f"Top {len(top)} effects")

        plt.tight_layout()
        return fig

    def plot_effect_pvalues(self, pvalues: PValueTable) -> Figure:
        """Effect size against bootstrap p-value (volcano-style)."""
        table = pvalues.table
        fig, ax = plt.subplots(figsize=(7, 5))

        significant = table["q_value"] < 0.05
        neg_log_p = -np.log10(table["p_value"])
        ax.scatter(table.loc[~significant, "effect"], neg_log_p[~significant],
                   s=8, color="gray", alpha=0.5, label="q >= 0.05")
        ax.scatter(table.loc[significant, "effect"], neg_log_p[significant],
                   s=12, color="red", alpha=0.8, label="q < 0.05")

        ax.axhline(-np.log10(0.05), color="black", linestyle="--", alpha=0.5)
        ax.set_xlabel(f"Effect of {pvalues.covariate}")
        ax.set_ylabel("-log10(p)")
        ax.set_title(f"Bootstrap significance ({pvalues.n_success}/{pvalues.n_boot} replicates)")
        ax.legend()

        plt.tight_layout()
        return fig

    def generate_all(
        self,
        selections: dict[str, RankSelection],
        variance_threshold: float,
        effects: EffectEstimate,
        pvalues: Optional[PValueTable] = None,
        top_n: int = 20,
    ) -> list[Path]:
        """Generate and save every standard figure."""
        paths = []
        paths += self.save_figure(self.plot_scree(selections, variance_threshold), "scree")
        paths += self.save_figure(self.plot_top_effects(effects, top_n, pvalues), "top_effects")
        if pvalues is not None:
            paths += self.save_figure(self.plot_effect_pvalues(pvalues), "effect_pvalues")

        logger.debug(f"Saved {len(paths)} figure files to {self.output_dir}")
        return paths
