"""
End-to-end communication regression workflow.

Stages:
1. load     - read the tensor and covariates
2. ranks    - choose decomposition ranks per mode
3. fit      - fit the tensor regression once
4. effects  - project coefficients of the covariate of interest
5. bootstrap - estimate per-key significance
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional
import json
import time

import numpy as np

from commreg.config import Config, get_config
from commreg.data.base import CommunicationTensor, CovariateMatrix
from commreg.data.loaders import load_inputs
from commreg.errors import CommRegError, InsufficientReplicatesError
from commreg.logging import get_logger, log_context
from commreg.models.bootstrap import BootstrapSignificance, PValueTable
from commreg.models.effects import EffectEstimate, extract_effects
from commreg.models.rank import DecompositionRanks, RankSelection, select_ranks
from commreg.models.regression import FittedModel, TensorRegressor, TuckerRegressionFitter
from commreg.models.resampling import ResamplingStrategy, get_resampler
from commreg.reporting.figures import FigureGenerator
from commreg.reporting.tables import TableGenerator
from commreg.utils.hashing import checksum_inputs

logger = get_logger()

INPUT_FIELDS = ("covariates_file", "tensor_file", "pairs_file", "senders_file", "receivers_file")


class NumpyEncoder(json.JSONEncoder):
    """JSON encoder that handles numpy types."""
    def default(self, obj):
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.bool_):
            return bool(obj)
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


@dataclass
class AnalysisResult:
    """Complete results of one workflow run."""

    covariate: str
    covariate_names: list[str]
    tensor_summary: dict[str, Any]

    ranks: DecompositionRanks
    selections: dict[str, RankSelection]
    fitted_model: FittedModel
    effects: EffectEstimate

    # Bootstrap (None when disabled or failed)
    pvalues: Optional[PValueTable] = None
    bootstrap_error: Optional[str] = None

    seed: int = 42
    variance_threshold: float = 1.0
    config: Optional[dict] = None
    input_checksums: dict[str, dict[str, str]] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    @property
    def has_pvalues(self) -> bool:
        return self.pvalues is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "covariate": self.covariate,
            "covariates": self.covariate_names,
            "tensor": self.tensor_summary,
            "ranks": self.ranks.to_dict(),
            "variance_threshold": self.variance_threshold,
            "spectra": {mode: s.spectrum for mode, s in self.selections.items()},
            "fit": self.fitted_model.summary(),
            "n_effects": len(self.effects),
            "bootstrap": self.pvalues.summary() if self.pvalues is not None else None,
            "bootstrap_error": self.bootstrap_error,
            "seed": self.seed,
            "elapsed_seconds": self.elapsed_seconds,
            "input_checksums": self.input_checksums,
        }
        return result

    def save(self, path: Path) -> None:
        """Save results to JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2, cls=NumpyEncoder)

    def summary_string(self, top_n: int = 10) -> str:
        """Get human-readable summary."""
        shape = " x ".join(str(s) for s in self.tensor_summary["shape"])
        fit = self.fitted_model
        lines = [
            "=== Communication Regression Results ===",
            f"Tensor: {shape} ({self.tensor_summary['sparsity']:.0%} zeros)",
            f"Covariates: {', '.join(self.covariate_names)}",
            f"Ranks: {self.ranks.to_dict()} (threshold {self.variance_threshold:g})",
            f"Fit: {fit.n_iterations} iterations, residual std = {fit.residual_std:.4g}",
            "",
            f"Top effects of '{self.covariate}':",
        ]

        for (pair, sender, receiver), row in self.effects.top(top_n).iterrows():
            line = f"  {sender} -> {receiver} [{pair}]: {row['effect']:+.4f}"
            if self.pvalues is not None:
                p = self.pvalues.table.loc[(pair, sender, receiver)]
                line += f"  p = {p['p_value']:.4f}, q = {p['q_value']:.4f}"
            lines.append(line)

        lines.append("")
        if self.pvalues is not None:
            lines.append(
                f"Bootstrap: {self.pvalues.n_success}/{self.pvalues.n_boot} replicates succeeded"
            )
        elif self.bootstrap_error:
            lines.append(f"Bootstrap FAILED: {self.bootstrap_error}")
        else:
            lines.append("Bootstrap: not run")

        return "\n".join(lines)


class CommunicationAnalysis:
    """
    Regression of communication scores on sample covariates.

    Inputs come from the configuration unless a tensor and covariate
    matrix are passed in directly.
    """

    name: str = "communication_regression"

    def __init__(
        self,
        config: Optional[Config] = None,
        output_dir: Optional[Path] = None,
        fitter: Optional[TensorRegressor] = None,
        resampler: Optional[ResamplingStrategy] = None,
        tensor: Optional[CommunicationTensor] = None,
        covariates: Optional[CovariateMatrix] = None,
    ):
        """
        Initialize analysis.

        Args:
            config: Workflow configuration (default: global config)
            output_dir: Directory for outputs (default: config.output_dir)
            fitter: Tensor regression backend (default: TuckerRegressionFitter from config.fit)
            resampler: Bootstrap resampling strategy (default: from config.bootstrap)
            tensor: Preloaded tensor
            covariates: Preloaded covariate matrix
        """
        if (tensor is None) != (covariates is None):
            raise ValueError("Pass both tensor and covariates, or neither")

        self.config = config or get_config()
        self.output_dir = Path(output_dir) if output_dir else self.config.output_dir
        self.fitter = fitter or TuckerRegressionFitter(
            max_iterations=self.config.fit.max_iterations,
            tolerance=self.config.fit.tolerance,
            regularization=self.config.fit.regularization,
        )
        self.resampler = resampler

        self._tensor = tensor
        self._covariates = covariates
        self._input_checksums: dict[str, dict[str, str]] = {}
        self._result: Optional[AnalysisResult] = None

    @contextmanager
    def _stage(self, stage: str, source: Optional[str] = None):
        """Log a stage and tag any workflow error raised inside it."""
        with log_context(stage.capitalize(), logger):
            try:
                yield
            except CommRegError as e:
                raise e.with_context(stage=stage, source=source)

    @property
    def tensor(self) -> CommunicationTensor:
        if self._tensor is None:
            self.load_inputs()
        return self._tensor

    @property
    def covariates(self) -> CovariateMatrix:
        if self._covariates is None:
            self.load_inputs()
        return self._covariates

    def load_inputs(self) -> tuple[CommunicationTensor, CovariateMatrix]:
        """Load the tensor and covariates (once)."""
        if self._tensor is not None:
            return self._tensor, self._covariates

        inputs = self.config.inputs
        with self._stage("load", source=str(inputs.tensor_file)):
            self._tensor, self._covariates = load_inputs(inputs)

        self._input_checksums = checksum_inputs({name: getattr(inputs, name) for name in INPUT_FIELDS})
        return self._tensor, self._covariates

    def covariate_of_interest(self) -> str:
        """Configured covariate, or the first non-intercept one."""
        name = self.config.covariate_of_interest or self.covariates.default_covariate()
        try:
            self.covariates.index(name)
        except CommRegError as e:
            raise e.with_context(stage="load", source="covariate_of_interest")
        return name

    def select_ranks(self) -> tuple[DecompositionRanks, dict[str, RankSelection]]:
        """Run rank selection for every entity mode."""
        settings = self.config.ranks
        with self._stage("ranks"):
            return select_ranks(
                self.tensor,
                self.covariates,
                variance_threshold=settings.variance_threshold,
                eigen_tol=settings.eigen_tol,
                overrides=settings.overrides(),
            )

    def fit(self, ranks: DecompositionRanks) -> FittedModel:
        """Fit the tensor regression once."""
        with self._stage("fit", source=type(self.fitter).__name__):
            return self.fitter.fit(self.tensor, self.covariates, ranks)

    def run(
        self,
        n_bootstrap: Optional[int] = None,
        seed: Optional[int] = None,
        n_workers: Optional[int] = None,
        save_outputs: bool = True,
    ) -> AnalysisResult:
        """
        Run the complete analysis.

        Args:
            n_bootstrap: Override number of bootstrap replicates (0 to skip)
            seed: Override bootstrap seed
            n_workers: Override number of workers
            save_outputs: Save results, tables, and figures

        Returns:
            AnalysisResult
        """
        boot = self.config.bootstrap
        if n_bootstrap is None:
            n_bootstrap = boot.n_bootstrap if boot.enabled else 0
        if seed is None:
            seed = self.config.bootstrap_seed()
        if n_workers is None:
            n_workers = boot.n_workers

        start = time.monotonic()
        logger.info(f"Starting {self.name} analysis")

        tensor, covariates = self.load_inputs()
        covariate = self.covariate_of_interest()

        ranks, selections = self.select_ranks()
        model = self.fit(ranks)

        with self._stage("effects", source=covariate):
            effects = extract_effects(model, covariate, tensor.names)

        pvalues = None
        bootstrap_error = None
        if n_bootstrap > 0:
            resampler = self.resampler or get_resampler(
                boot.resampling,
                null_covariate=covariate if boot.null_hypothesis else None,
            )
            tester = BootstrapSignificance(
                n_bootstrap=n_bootstrap,
                seed=seed,
                n_workers=n_workers,
                resampler=resampler,
                fitter=self.fitter,
                min_success_fraction=boot.min_success_fraction,
                replicate_timeout=boot.replicate_timeout,
                backend=self.config.parallel.backend,
                show_progress=self.config.parallel.show_progress,
                batch_size=self.config.parallel.batch_size,
            )
            try:
                with self._stage("bootstrap", source=covariate):
                    pvalues = tester.run(model, tensor, covariates, covariate=covariate)
            except InsufficientReplicatesError as e:
                # Primary effects are still reported
                bootstrap_error = str(e)

        self._result = AnalysisResult(
            covariate=covariate,
            covariate_names=list(covariates.names),
            tensor_summary=tensor.summary(),
            ranks=ranks,
            selections=selections,
            fitted_model=model,
            effects=effects,
            pvalues=pvalues,
            bootstrap_error=bootstrap_error,
            seed=seed,
            variance_threshold=self.config.ranks.variance_threshold,
            config=self.config.model_dump(mode="json"),
            input_checksums=self._input_checksums,
            elapsed_seconds=time.monotonic() - start,
        )

        if save_outputs:
            self._save_outputs()

        logger.info(self._result.summary_string(top_n=min(10, self.config.report.top_n)))

        return self._result

    def _save_outputs(self) -> None:
        """Save all outputs to disk."""
        result = self._result
        report = self.config.report
        self.output_dir.mkdir(parents=True, exist_ok=True)

        result.save(self.output_dir / "results.json")

        with open(self.output_dir / "config.json", "w") as f:
            json.dump(self.config.model_dump(mode="json"), f, indent=2)

        TableGenerator(self.output_dir).generate_all_tables(
            result.ranks,
            result.selections,
            result.effects,
            result.pvalues,
            top_n=report.top_n,
            formats=report.table_formats,
        )

        if report.save_figures:
            FigureGenerator(self.output_dir / "figures", formats=report.figure_format).generate_all(
                result.selections,
                result.variance_threshold,
                result.effects,
                result.pvalues,
                top_n=report.top_n,
            )

        self._save_summary_markdown()

        logger.info(f"Outputs saved to {self.output_dir}")

    def _save_summary_markdown(self) -> None:
        """Generate summary markdown file."""
        result = self._result
        shape = " × ".join(str(s) for s in result.tensor_summary["shape"])

        lines = [
            "# Communication Regression",
            "",
            "## Inputs",
            "",
            f"- **Tensor**: {shape} (sample × sender × receiver × ligand-receptor)",
            f"- **Sparsity**: {result.tensor_summary['sparsity']:.1%} zeros",
            f"- **Covariates**: {', '.join(result.covariate_names)}",
            f"- **Covariate of interest**: {result.covariate}",
            "",
            "## Ranks",
            "",
            "| Mode | Size | Rank |",
            "|------|------|------|",
            f"| covariate | {result.ranks.covariate} | {result.ranks.covariate} |",
        ]
        for mode, selection in result.selections.items():
            lines.append(f"| {mode} | {len(selection.spectrum)} | {selection.rank} |")

        fit = result.fitted_model
        lines.extend([
            "",
            f"Variance threshold: {result.variance_threshold:g}",
            "",
            "## Fit",
            "",
            f"- **Iterations**: {fit.n_iterations}",
            f"- **Residual std**: {fit.residual_std:.4g}",
            "",
            "## Significance",
            "",
        ])

        if result.pvalues is not None:
            pv = result.pvalues
            lines.extend([
                f"- **Replicates**: {pv.n_success}/{pv.n_boot} succeeded (seed {pv.seed})",
                f"- **Keys with q < 0.05**: {pv.summary()['n_significant_q05']} of {len(pv)}",
            ])
        elif result.bootstrap_error:
            lines.append(f"> **WARNING**: bootstrap failed: {result.bootstrap_error}")
        else:
            lines.append("Bootstrap was not run.")

        lines.extend([
            "",
            "## Files",
            "",
            "- `results.json`: run summary",
            "- `effects.tsv`: every effect estimate",
        ])
        if result.pvalues is not None:
            lines.append("- `pvalues.tsv`: bootstrap p-values and q-values")

        with open(self.output_dir / "summary.md", "w") as f:
            f.write("\n".join(lines) + "\n")

