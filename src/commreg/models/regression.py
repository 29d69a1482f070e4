"""
Tensor regression of communication scores on sample covariates.

The model regresses every (sender, receiver, pair) score on the sample
covariates,

    Y[i, s, r, l] = sum_c X[i, c] * B[c, s, r, l] + noise,

with the coefficient tensor B constrained to a Tucker structure of
ranks (p, r_sender, r_receiver, r_pair). The covariate mode is kept at
full rank p, so only the entity modes are compressed.

The default backend solves the problem in two steps:
1. Ridge-stabilized least squares for the unconstrained coefficients
2. Higher-order orthogonal iteration (HOOI) on the coefficients
   whitened by (X'X)^{1/2}, which minimizes the same squared error
   under the rank constraint
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np
from scipy import linalg
import tensorly as tl

from commreg.data.base import CommunicationTensor, CovariateMatrix
from commreg.errors import ConvergenceError, InputDataError, ShapeError
from commreg.logging import get_logger
from commreg.models.rank import DecompositionRanks
from commreg.models.tensor import leading_left_singular_vectors

logger = get_logger()

ENTITY_MODES = (1, 2, 3)


def _as_arrays(
    tensor: np.ndarray | CommunicationTensor,
    covariates: np.ndarray | CovariateMatrix,
) -> tuple[np.ndarray, np.ndarray, list[str]]:
    """Unwrap containers and check that rows line up."""
    Y = tensor.values if isinstance(tensor, CommunicationTensor) else np.asarray(tensor, dtype=float)
    if isinstance(covariates, CovariateMatrix):
        X = covariates.values
        names = list(covariates.names)
    else:
        X = np.asarray(covariates, dtype=float)
        names = [f"x{i}" for i in range(X.shape[1])] if X.ndim == 2 else []

    if Y.ndim != 4:
        raise ShapeError(f"Expected a 4D tensor, got shape {Y.shape}")
    if X.ndim != 2:
        raise ShapeError(f"Expected a 2D covariate matrix, got shape {X.shape}")
    if X.shape[0] != Y.shape[0]:
        raise ShapeError(
            f"Covariate matrix has {X.shape[0]} rows but tensor has {Y.shape[0]} samples"
        )
    return Y, X, names


@dataclass(eq=False)
class FittedModel:
    """
    Result of a tensor regression fit.

    Attributes:
        coefficients: Coefficient tensor of shape (p, n_senders, n_receivers, n_pairs)
        covariate_names: Names of the p covariates, in coefficient order
        ranks: Ranks used for the fit
        residual_std: Standard deviation of the residuals
        converged: Whether the alternating updates converged
        n_iterations: Number of alternating sweeps
        loss: Final rank-constrained loss (in whitened coefficient space)
        factors: Orthonormal factor matrices for the sender, receiver and pair modes
    """

    coefficients: np.ndarray
    covariate_names: list[str]
    ranks: DecompositionRanks
    residual_std: float
    converged: bool = True
    n_iterations: int = 0
    loss: float = 0.0
    factors: list[np.ndarray] = field(default_factory=list)

    def __post_init__(self):
        self.coefficients = np.asarray(self.coefficients, dtype=float)
        self.coefficients.setflags(write=False)

    @property
    def n_covariates(self) -> int:
        return self.coefficients.shape[0]

    @property
    def entity_shape(self) -> tuple[int, int, int]:
        return self.coefficients.shape[1:]

    def covariate_index(self, covariate: str | int) -> int:
        if isinstance(covariate, str):
            if covariate not in self.covariate_names:
                raise InputDataError(
                    f"Unknown covariate '{covariate}'; fitted covariates: {self.covariate_names}"
                )
            return self.covariate_names.index(covariate)
        index = int(covariate)
        if not 0 <= index < self.n_covariates:
            raise ShapeError(f"Covariate index {index} out of range for {self.n_covariates} covariates")
        return index

    def coefficient_slice(self, covariate: str | int) -> np.ndarray:
        """Coefficients of one covariate, shape (n_senders, n_receivers, n_pairs)."""
        return self.coefficients[self.covariate_index(covariate)]

    def predict(
        self,
        covariates: np.ndarray | CovariateMatrix,
        exclude: Optional[str | int] = None,
    ) -> np.ndarray:
        """
        Fitted mean tensor for a covariate matrix.

        Args:
            covariates: Matrix of shape (n, p)
            exclude: Covariate whose contribution is left out

        Returns:
            Array of shape (n, n_senders, n_receivers, n_pairs)
        """
        X = covariates.values if isinstance(covariates, CovariateMatrix) else np.asarray(covariates, dtype=float)
        if X.ndim != 2 or X.shape[1] != self.n_covariates:
            raise ShapeError(
                f"Covariate matrix must have {self.n_covariates} columns, got shape {X.shape}"
            )

        coefficients = self.coefficients
        if exclude is not None:
            coefficients = coefficients.copy()
            coefficients[self.covariate_index(exclude)] = 0.0

        # mode-0 product: (n, p) x (p, S, R, P)
        return tl.tenalg.mode_dot(coefficients, X, 0)

    def summary(self) -> dict:
        return {
            "ranks": self.ranks.to_dict(),
            "covariates": list(self.covariate_names),
            "residual_std": float(self.residual_std),
            "converged": bool(self.converged),
            "n_iterations": int(self.n_iterations),
            "loss": float(self.loss),
        }


class TensorRegressor(ABC):
    """
    Fitting backend for the tensor regression model.

    Implementations must be deterministic for identical inputs and must
    not mutate the tensor or the covariates.
    """

    @abstractmethod
    def fit(
        self,
        tensor: np.ndarray | CommunicationTensor,
        covariates: np.ndarray | CovariateMatrix,
        ranks: DecompositionRanks,
    ) -> FittedModel:
        """
        Fit the model.

        Raises:
            ShapeError: if ranks or covariates do not match the tensor
            ConvergenceError: if the fit does not converge
        """
        pass

    def with_time_budget(self, time_budget: Optional[float]) -> "TensorRegressor":
        """
        Copy of this backend that gives up after ``time_budget`` seconds.

        Backends without a time limit return themselves unchanged.
        """
        return self


class TuckerRegressionFitter(TensorRegressor):
    """
    Gaussian supervised Tucker regression.

    Minimizes ||Y - B x_0 X||^2 over coefficient tensors B whose
    sender, receiver and pair unfoldings have the requested ranks.
    """

    def __init__(
        self,
        max_iterations: int = 500,
        tolerance: float = 1e-8,
        regularization: float = 1e-8,
        time_budget: Optional[float] = None,
    ):
        """
        Initialize fitter.

        Args:
            max_iterations: Maximum number of HOOI sweeps
            tolerance: Relative change in loss that counts as converged
            regularization: Ridge term added to X'X
            time_budget: Wall-clock seconds allowed for the fit (None for no limit)
        """
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        self.regularization = regularization
        self.time_budget = time_budget

    def with_time_budget(self, time_budget: Optional[float]) -> "TuckerRegressionFitter":
        """Copy of this fitter with a different time budget."""
        return TuckerRegressionFitter(
            max_iterations=self.max_iterations,
            tolerance=self.tolerance,
            regularization=self.regularization,
            time_budget=time_budget,
        )

    def fit(
        self,
        tensor: np.ndarray | CommunicationTensor,
        covariates: np.ndarray | CovariateMatrix,
        ranks: DecompositionRanks,
    ) -> FittedModel:
        """
        Fit the rank-constrained regression.

        Args:
            tensor: Communication tensor (n, S, R, P)
            covariates: Covariate matrix (n, p)
            ranks: Decomposition ranks; covariate rank must equal p

        Returns:
            FittedModel

        Raises:
            ShapeError: on mismatched dimensions or invalid ranks
            ConvergenceError: if HOOI does not converge within
                max_iterations or the time budget
        """
        deadline = None if self.time_budget is None else time.monotonic() + self.time_budget

        Y, X, names = _as_arrays(tensor, covariates)
        n, p = X.shape
        ranks.validate(Y.shape, p)

        # Unconstrained coefficients
        gram = X.T @ X
        Y_flat = Y.reshape(n, -1)
        B_ols = linalg.solve(
            gram + self.regularization * np.eye(p),
            X.T @ Y_flat,
            assume_a="pos",
        ).reshape((p,) + Y.shape[1:])

        # Whitening: ||X (B - B_ols)||^2 = ||S (B - B_ols)||^2 with S = (X'X)^{1/2}
        evals, evecs = linalg.eigh(gram)
        S = (evecs * np.sqrt(np.clip(evals, 0.0, None))) @ evecs.T
        W = tl.tenalg.mode_dot(B_ols, S, 0)
        total = float(np.sum(W**2))

        target = ranks.entity_ranks

        # HOSVD initialization
        factors = [
            leading_left_singular_vectors(tl.unfold(W, mode), r)
            for mode, r in zip(ENTITY_MODES, target)
        ]

        prev_loss = np.inf
        loss = total
        converged = False
        n_iter = 0

        for n_iter in range(1, self.max_iterations + 1):
            for k, mode in enumerate(ENTITY_MODES):
                others = [j for j in range(3) if j != k]
                Z = tl.tenalg.multi_mode_dot(
                    W,
                    [factors[j] for j in others],
                    [ENTITY_MODES[j] for j in others],
                    transpose=True,
                )
                factors[k] = leading_left_singular_vectors(tl.unfold(Z, mode), target[k])

            core = tl.tenalg.multi_mode_dot(W, factors, ENTITY_MODES, transpose=True)
            loss = max(total - float(np.sum(core**2)), 0.0)

            if abs(prev_loss - loss) <= self.tolerance * max(1.0, abs(loss)):
                converged = True
                break
            prev_loss = loss

            if deadline is not None and time.monotonic() > deadline:
                raise ConvergenceError(
                    f"Tensor regression exceeded its time budget of {self.time_budget}s "
                    f"after {n_iter} iterations",
                    stage="fit",
                )

        if not converged:
            raise ConvergenceError(
                f"Tensor regression did not converge in {self.max_iterations} iterations "
                f"(last loss change {abs(prev_loss - loss):.3g})",
                stage="fit",
            )

        # Project the unconstrained coefficients onto the selected subspaces
        projectors = [U @ U.T for U in factors]
        coefficients = tl.tenalg.multi_mode_dot(B_ols, projectors, ENTITY_MODES)

        residuals = Y - tl.tenalg.mode_dot(coefficients, X, 0)
        dof = (n - p) * int(np.prod(Y.shape[1:]))
        rss = float(np.sum(residuals**2))
        residual_std = float(np.sqrt(rss / dof)) if dof > 0 else float(np.sqrt(rss / residuals.size))

        logger.debug(
            f"Tucker regression converged in {n_iter} iterations "
            f"(loss={loss:.4g}, residual_std={residual_std:.4g})"
        )

        return FittedModel(
            coefficients=coefficients,
            covariate_names=names,
            ranks=ranks,
            residual_std=residual_std,
            converged=converged,
            n_iterations=n_iter,
            loss=loss,
            factors=factors,
        )


def fit_regression(
    tensor: np.ndarray | CommunicationTensor,
    covariates: np.ndarray | CovariateMatrix,
    ranks: DecompositionRanks | Sequence[int],
    fitter: Optional[TensorRegressor] = None,
) -> FittedModel:
    """
    Convenience function to fit the tensor regression.

    Args:
        tensor: Communication tensor
        covariates: Covariate matrix
        ranks: DecompositionRanks or (covariate, sender, receiver, pair)
        fitter: Backend (default: TuckerRegressionFitter)

    Returns:
        FittedModel
    """
    if not isinstance(ranks, DecompositionRanks):
        ranks = DecompositionRanks(*ranks)
    fitter = fitter or TuckerRegressionFitter()
    return fitter.fit(tensor, covariates, ranks)
