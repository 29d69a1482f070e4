"""
Bootstrap significance for tensor regression effects.

For each replicate b a pseudo-data tensor is drawn from the fitted
model with a generator seeded by ``seed + b``, the model is refitted
with the same ranks and covariates, and the effect slice of the
covariate of interest is kept. The per-key p-value is the fraction of
successful replicates whose absolute effect reaches the observed one:

    p = max(#{|effect_b| >= |effect_obs|} / n_success, 1 / n_success)

Replicates are independent and run through ``parallel_map``; outcomes
are ordered by replicate index before the reduction, so the table does
not depend on the number of workers.
"""

import math
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pandas as pd

from commreg.data.base import INTERCEPT, CommunicationTensor, CovariateMatrix, EntityNames
from commreg.errors import ConvergenceError, InsufficientReplicatesError, ShapeError
from commreg.logging import get_logger
from commreg.models.effects import effect_index
from commreg.models.regression import FittedModel, TensorRegressor, TuckerRegressionFitter
from commreg.models.resampling import ParametricResampler, ResamplingStrategy
from commreg.utils.parallel import parallel_map
from commreg.utils.stats import benjamini_hochberg, clopper_pearson_ci, empirical_pvalues

logger = get_logger()

# Replicate failures that are recorded and skipped
RECOVERABLE_ERRORS = (ConvergenceError, np.linalg.LinAlgError, FloatingPointError)


@dataclass
class ReplicateOutcome:
    """Result of one bootstrap replicate."""

    index: int
    seed: int
    effects: Optional[np.ndarray] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.effects is not None


@dataclass
class PValueTable:
    """Bootstrap p-values for every (pair, sender, receiver) key."""

    covariate: str
    table: pd.DataFrame

    n_boot: int
    n_success: int
    n_failed: int = 0
    failures: dict[int, str] = field(default_factory=dict)

    seed: int = 42
    resampling: dict = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.table)

    @property
    def p_values(self) -> np.ndarray:
        return self.table["p_value"].to_numpy()

    def significant(self, alpha: float = 0.05, adjusted: bool = True) -> pd.DataFrame:
        """Rows whose q-value (or raw p-value) is below alpha."""
        column = "q_value" if adjusted else "p_value"
        return self.table[self.table[column] < alpha].sort_values(column, kind="stable")

    def to_frame(self) -> pd.DataFrame:
        frame = self.table.reset_index()
        frame.insert(3, "covariate", self.covariate)
        return frame

    def summary(self) -> dict:
        return {
            "covariate": self.covariate,
            "n_boot": self.n_boot,
            "n_success": self.n_success,
            "n_failed": self.n_failed,
            "seed": self.seed,
            "min_p_value": float(self.table["p_value"].min()),
            "n_significant_q05": len(self.significant(0.05)),
            **self.resampling,
        }


class _ReplicateTask:
    """One bootstrap replicate as a picklable callable of the replicate index."""

    def __init__(
        self,
        model: FittedModel,
        tensor: np.ndarray,
        covariates: np.ndarray,
        covariate_index: int,
        resampler: ResamplingStrategy,
        fitter: TensorRegressor,
        seed: int,
    ):
        self.model = model
        self.tensor = tensor
        self.covariates = covariates
        self.covariate_index = covariate_index
        self.resampler = resampler
        self.fitter = fitter
        self.seed = seed

    def __call__(self, b: int) -> ReplicateOutcome:
        seed = self.seed + b
        rng = np.random.default_rng(seed)

        try:
            with np.errstate(invalid="raise", over="raise"):
                pseudo = self.resampler.draw(self.model, self.tensor, self.covariates, rng)
                refit = self.fitter.fit(pseudo, self.covariates, self.model.ranks)
                effects = np.array(refit.coefficient_slice(self.covariate_index)).ravel()
        except RECOVERABLE_ERRORS as e:
            return ReplicateOutcome(index=b, seed=seed, error=f"{type(e).__name__}: {e}")

        if not np.all(np.isfinite(effects)):
            return ReplicateOutcome(index=b, seed=seed, error="non-finite effects")

        return ReplicateOutcome(index=b, seed=seed, effects=effects)


class BootstrapSignificance:
    """
    Bootstrap significance tester for tensor regression effects.

    Configure once, then call :meth:`run` for each fitted model.
    """

    def __init__(
        self,
        n_bootstrap: int = 100,
        seed: int = 42,
        n_workers: int = 1,
        resampler: Optional[ResamplingStrategy] = None,
        fitter: Optional[TensorRegressor] = None,
        min_success_fraction: float = 0.5,
        replicate_timeout: Optional[float] = None,
        backend: str = "loky",
        show_progress: bool = True,
        batch_size: str = "auto",
    ):
        """
        Initialize bootstrap tester.

        Args:
            n_bootstrap: Number of replicates
            seed: Base seed; replicate b uses seed + b
            n_workers: Requested parallel workers (capped at the CPU count)
            resampler: Replicate generator (default: null-centred parametric)
            fitter: Backend used for refits (default: TuckerRegressionFitter)
            min_success_fraction: Minimum share of replicates that must succeed
            replicate_timeout: Seconds allowed for each replicate fit
            backend: Joblib backend
            show_progress: Show a progress bar
            batch_size: Joblib batch size
        """
        if n_bootstrap < 1:
            raise ValueError(f"n_bootstrap must be >= 1, got {n_bootstrap}")
        if not 0.0 < min_success_fraction <= 1.0:
            raise ValueError(f"min_success_fraction must be in (0, 1], got {min_success_fraction}")

        self.n_bootstrap = n_bootstrap
        self.seed = seed
        self.n_workers = n_workers
        self.resampler = resampler
        self.fitter = fitter or TuckerRegressionFitter()
        self.min_success_fraction = min_success_fraction
        self.replicate_timeout = replicate_timeout
        self.backend = backend
        self.show_progress = show_progress
        self.batch_size = batch_size

    @property
    def n_required(self) -> int:
        return math.ceil(self.min_success_fraction * self.n_bootstrap)

    def run(
        self,
        fitted_model: FittedModel,
        tensor: np.ndarray | CommunicationTensor,
        covariates: np.ndarray | CovariateMatrix,
        covariate: Optional[str | int] = None,
        entity_names: Optional[EntityNames] = None,
    ) -> PValueTable:
        """
        Compute bootstrap p-values for one covariate.

        Args:
            fitted_model: Model fitted on the observed data
            tensor: Observed tensor
            covariates: Covariate matrix used for the fit
            covariate: Covariate of interest (default: first non-intercept)
            entity_names: Labels for the key space (default: from the tensor)

        Returns:
            PValueTable with one row per (pair, sender, receiver)

        Raises:
            InsufficientReplicatesError: if too few replicates succeed
        """
        Y = tensor.values if isinstance(tensor, CommunicationTensor) else np.asarray(tensor, dtype=float)
        X = covariates.values if isinstance(covariates, CovariateMatrix) else np.asarray(covariates, dtype=float)

        if entity_names is None:
            entity_names = tensor.names if isinstance(tensor, CommunicationTensor) else EntityNames.default(Y.shape)
        if Y.shape[1:] != fitted_model.entity_shape:
            raise ShapeError(
                f"Tensor entity shape {Y.shape[1:]} does not match the fitted model {fitted_model.entity_shape}"
            )

        if covariate is None:
            covariate = next(
                (c for c in fitted_model.covariate_names if c != INTERCEPT),
                fitted_model.covariate_names[0],
            )
        cov_idx = fitted_model.covariate_index(covariate)
        cov_name = fitted_model.covariate_names[cov_idx]

        resampler = self.resampler or ParametricResampler(null_covariate=cov_idx)
        fitter = self.fitter.with_time_budget(self.replicate_timeout)

        observed = np.array(fitted_model.coefficient_slice(cov_idx)).ravel()

        logger.info(
            f"Starting bootstrap with {self.n_bootstrap} replicates for '{cov_name}' "
            f"({resampler.name} resampling, {self.n_workers} workers)"
        )

        task = _ReplicateTask(
            model=fitted_model,
            tensor=Y,
            covariates=X,
            covariate_index=cov_idx,
            resampler=resampler,
            fitter=fitter,
            seed=self.seed,
        )
        outcomes = parallel_map(
            task,
            list(range(self.n_bootstrap)),
            n_jobs=self.n_workers,
            backend=self.backend,
            desc="Bootstrap",
            show_progress=self.show_progress,
            batch_size=self.batch_size,
        )

        # Reduce in replicate order
        outcomes = sorted(outcomes, key=lambda o: o.index)
        successes = [o for o in outcomes if o.ok]
        failures = {o.index: o.error for o in outcomes if not o.ok}

        for index, reason in failures.items():
            logger.debug(f"Bootstrap replicate {index} failed: {reason}")
        if failures:
            logger.warning(f"{len(failures)}/{self.n_bootstrap} bootstrap replicates failed")

        n_success = len(successes)
        if n_success < self.n_required:
            raise InsufficientReplicatesError(
                n_success=n_success,
                n_required=self.n_required,
                n_boot=self.n_bootstrap,
                source=cov_name,
            )

        replicates = np.vstack([o.effects for o in successes])
        p_values, counts = empirical_pvalues(observed, replicates)
        ci_lower, ci_upper = clopper_pearson_ci(counts, n_success, alpha=0.05)

        table = pd.DataFrame(
            {
                "effect": observed,
                "p_value": p_values,
                "p_value_ci_lower": ci_lower,
                "p_value_ci_upper": ci_upper,
                "q_value": benjamini_hochberg(p_values),
                "boot_mean": replicates.mean(axis=0),
                "boot_std": replicates.std(axis=0, ddof=1) if n_success > 1 else np.zeros_like(observed),
                "n_exceed": counts.astype(int),
            },
            index=effect_index(entity_names),
        )

        result = PValueTable(
            covariate=cov_name,
            table=table,
            n_boot=self.n_bootstrap,
            n_success=n_success,
            n_failed=len(failures),
            failures=failures,
            seed=self.seed,
            resampling=resampler.describe(),
        )

        logger.info(
            f"Bootstrap complete: {n_success}/{self.n_bootstrap} replicates, "
            f"min p={table['p_value'].min():.4f}, "
            f"{result.summary()['n_significant_q05']} keys with q < 0.05"
        )
        return result


def bootstrap_pvalues(
    n_boot: int,
    fitted_model: FittedModel,
    tensor: np.ndarray | CommunicationTensor,
    covariates: np.ndarray | CovariateMatrix,
    entity_names: Optional[EntityNames] = None,
    n_workers: int = 1,
    *,
    covariate: Optional[str | int] = None,
    seed: int = 42,
    resampler: Optional[ResamplingStrategy] = None,
    fitter: Optional[TensorRegressor] = None,
    min_success_fraction: float = 0.5,
    replicate_timeout: Optional[float] = None,
    backend: str = "loky",
    show_progress: bool = True,
) -> PValueTable:
    """
    Convenience function to compute bootstrap p-values.

    Args:
        n_boot: Number of replicates
        fitted_model: Model fitted on the observed data
        tensor: Observed tensor
        covariates: Covariate matrix used for the fit
        entity_names: Labels for the key space
        n_workers: Requested parallel workers
        covariate: Covariate of interest (default: first non-intercept)
        seed: Base seed
        resampler: Replicate generator
        fitter: Backend used for refits
        min_success_fraction: Minimum share of successful replicates
        replicate_timeout: Seconds allowed per replicate fit
        backend: Joblib backend
        show_progress: Show a progress bar

    Returns:
        PValueTable
    """
    tester = BootstrapSignificance(
        n_bootstrap=n_boot,
        seed=seed,
        n_workers=n_workers,
        resampler=resampler,
        fitter=fitter,
        min_success_fraction=min_success_fraction,
        replicate_timeout=replicate_timeout,
        backend=backend,
        show_progress=show_progress,
    )
    return tester.run(fitted_model, tensor, covariates, covariate=covariate, entity_names=entity_names)
