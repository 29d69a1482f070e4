"""
Variance-explained rank selection for tensor modes.

For a chosen mode the tensor is unfolded (rows = that mode's entities),
the entity-by-entity covariance is eigendecomposed, and the selected rank
is the smallest number of leading eigenvalues whose cumulative share of
the total reaches the threshold.
"""

from dataclasses import dataclass
from typing import NamedTuple, Optional, Sequence

import numpy as np
from scipy import linalg
import tensorly as tl

from commreg.data.base import (
    MODES,
    CommunicationTensor,
    CovariateMatrix,
    mode_index,
)
from commreg.errors import ShapeError
from commreg.logging import ProgressLogger, get_logger
from commreg.utils.stats import cumulative_variance_ratio

logger = get_logger()


class RankSelection(NamedTuple):
    """Selected rank and the descending eigenvalue spectrum it came from."""

    rank: int
    spectrum: np.ndarray

    @property
    def explained_ratio(self) -> np.ndarray:
        """Share of total variance per eigenvalue."""
        total = np.sum(self.spectrum)
        if total <= 0:
            return np.zeros_like(self.spectrum)
        return self.spectrum / total

    @property
    def cumulative_ratio(self) -> np.ndarray:
        return cumulative_variance_ratio(self.spectrum)


@dataclass(frozen=True)
class DecompositionRanks:
    """
    Decomposition rank per tensor mode.

    The sample mode is replaced by the covariate mode in the regression,
    so its rank is the number of covariate columns.
    """

    covariate: int
    sender: int
    receiver: int
    pair: int

    def __post_init__(self):
        for name, value in zip(("covariate", "sender", "receiver", "pair"), self.as_tuple()):
            if int(value) != value or value < 1:
                raise ShapeError(f"Rank for {name} mode must be a positive integer, got {value}")

    def as_tuple(self) -> tuple[int, int, int, int]:
        return (self.covariate, self.sender, self.receiver, self.pair)

    @property
    def entity_ranks(self) -> tuple[int, int, int]:
        """Ranks of the sender, receiver and pair modes."""
        return (self.sender, self.receiver, self.pair)

    def validate(self, tensor_shape: Sequence[int], n_covariates: int) -> None:
        """
        Check the ranks against the data dimensions.

        Raises:
            ShapeError: if a rank exceeds its mode size, the covariate rank
                differs from the number of covariates, or a rank exceeds the
                product of the other ranks
        """
        if len(tensor_shape) != 4:
            raise ShapeError(f"Expected a 4D tensor shape, got {tuple(tensor_shape)}")
        if self.covariate != n_covariates:
            raise ShapeError(
                f"Covariate rank {self.covariate} must equal the number of covariates ({n_covariates})"
            )

        ranks = self.as_tuple()
        for mode in range(1, 4):
            if ranks[mode] > tensor_shape[mode]:
                raise ShapeError(
                    f"Rank {ranks[mode]} for {MODES[mode]} mode exceeds its size {tensor_shape[mode]}",
                    source=f"mode {MODES[mode]}",
                )
            others = int(np.prod([r for i, r in enumerate(ranks) if i != mode]))
            if ranks[mode] > others:
                raise ShapeError(
                    f"Rank {ranks[mode]} for {MODES[mode]} mode exceeds the product of the "
                    f"other ranks ({others})",
                    source=f"mode {MODES[mode]}",
                )

    def to_dict(self) -> dict[str, int]:
        return {
            "covariate": self.covariate,
            "sender": self.sender,
            "receiver": self.receiver,
            "ligand_receptor": self.pair,
        }


def mode_spectrum(
    tensor: np.ndarray,
    mode: int,
    complement_modes: Optional[Sequence[int]] = None,
) -> np.ndarray:
    """
    Descending eigenvalues of the entity covariance of a mode unfolding.

    Modes outside ``{mode} | complement_modes`` are averaged out before
    unfolding.

    Args:
        tensor: N-dimensional array
        mode: Mode whose entities form the rows
        complement_modes: Modes flattened into the columns (default: all others)

    Returns:
        Eigenvalues sorted descending, negatives clipped to zero
    """
    ndim = tensor.ndim
    if not 0 <= mode < ndim:
        raise ShapeError(
            f"Mode {mode} is out of range for a {ndim}-dimensional tensor",
            source=f"mode {mode}",
        )

    if complement_modes is None:
        complement_modes = [m for m in range(ndim) if m != mode]
    complement_modes = [int(m) for m in complement_modes]

    if mode in complement_modes:
        raise ShapeError(f"Complement modes {complement_modes} must not contain mode {mode}")
    if len(set(complement_modes)) != len(complement_modes):
        raise ShapeError(f"Complement modes {complement_modes} contain duplicates")
    invalid = [m for m in complement_modes if not 0 <= m < ndim]
    if invalid:
        raise ShapeError(f"Complement modes {invalid} are out of range for a {ndim}-dimensional tensor")

    dropped = tuple(m for m in range(ndim) if m != mode and m not in complement_modes)
    reduced = tensor.mean(axis=dropped, keepdims=True) if dropped else tensor

    matrix = tl.unfold(reduced, mode)
    n_entities, n_columns = matrix.shape
    if n_entities < 1:
        raise ShapeError(f"Mode {mode} has no entities", source=f"mode {mode}")
    if n_columns < 2:
        raise ShapeError(
            f"Unfolding along mode {mode} has {n_columns} column(s); need at least 2 "
            "to estimate a covariance",
            source=f"mode {mode}",
        )

    # Rows are variables: entity-by-entity covariance
    covariance = np.atleast_2d(np.cov(matrix))
    eigenvalues = linalg.eigvalsh(covariance)
    return np.clip(eigenvalues[::-1], 0.0, None)


def select_rank(
    tensor: np.ndarray | CommunicationTensor,
    mode: int | str,
    complement_modes: Optional[Sequence[int | str]] = None,
    variance_threshold: float = 1.0,
    eigen_tol: float = 1e-10,
) -> RankSelection:
    """
    Choose a decomposition rank for one tensor mode.

    Args:
        tensor: Communication tensor or raw array
        mode: Mode to evaluate (index or name)
        complement_modes: Modes folded into the unfolding columns
            (default: all other modes)
        variance_threshold: Required cumulative variance share, in (0, 1]
        eigen_tol: Relative tolerance used both for negligible eigenvalues
            and for the cumulative-sum comparison

    Returns:
        RankSelection(rank, spectrum)

    Raises:
        ShapeError: if the mode is out of range or the unfolding is degenerate
        ValueError: if variance_threshold is outside (0, 1]
    """
    if not 0.0 < variance_threshold <= 1.0:
        raise ValueError(f"variance_threshold must be in (0, 1], got {variance_threshold}")

    values = tensor.values if isinstance(tensor, CommunicationTensor) else np.asarray(tensor, dtype=float)
    mode = mode_index(mode)
    if complement_modes is not None:
        complement_modes = [mode_index(m) for m in complement_modes]

    spectrum = mode_spectrum(values, mode, complement_modes)

    total = float(np.sum(spectrum))
    if total <= 0:
        raise ShapeError(
            f"Unfolding along mode {mode} has zero variance; rank is undefined",
            source=f"mode {mode}",
        )

    # Eigenvalues below this are numerical noise
    cutoff = eigen_tol * spectrum[0] * len(spectrum)
    n_significant = max(1, int(np.sum(spectrum > cutoff)))

    cumulative = np.cumsum(spectrum) / total
    reached = np.flatnonzero(cumulative >= variance_threshold - eigen_tol)
    rank = int(reached[0]) + 1 if reached.size else n_significant
    rank = min(rank, n_significant)

    return RankSelection(rank=rank, spectrum=spectrum)


def _clamp_to_core(
    ranks: dict[str, int],
    covariate_rank: int,
    fixed: set[str],
) -> dict[str, int]:
    """
    Cap selected entity ranks at the product of the other ranks.

    A mode unfolding of the coefficient tensor has at most that many
    columns, so a larger rank cannot be realized. Caps are applied until
    no rank changes; ranks in ``fixed`` are left for validation to reject.
    """
    ranks = dict(ranks)
    changed = True
    while changed:
        changed = False
        for name in ranks:
            if name in fixed:
                continue
            others = covariate_rank * int(np.prod([r for other, r in ranks.items() if other != name]))
            if ranks[name] > others:
                logger.warning(
                    f"Capping {name} rank {ranks[name]} at {others}, the product of the other ranks"
                )
                ranks[name] = others
                changed = True
    return ranks


def select_ranks(
    tensor: CommunicationTensor,
    covariates: CovariateMatrix,
    variance_threshold: float = 1.0,
    eigen_tol: float = 1e-10,
    overrides: Optional[dict[str, int]] = None,
) -> tuple[DecompositionRanks, dict[str, RankSelection]]:
    """
    Select ranks for the sender, receiver and pair modes.

    The covariate-mode rank is fixed to the number of covariate columns.

    Args:
        tensor: Communication tensor
        covariates: Covariate matrix (sets the covariate rank)
        variance_threshold: Threshold passed to :func:`select_rank`
        eigen_tol: Tolerance passed to :func:`select_rank`
        overrides: Fixed ranks keyed by mode name; the spectrum is still
            computed for reporting. Selected (not fixed) ranks above the
            product of the other ranks are capped at that product

    Returns:
        (DecompositionRanks, {mode name: RankSelection})
    """
    overrides = overrides or {}
    selections: dict[str, RankSelection] = {}
    progress = ProgressLogger(3, "Rank selection", logger)

    for mode in range(1, 4):
        name = MODES[mode]
        selection = select_rank(tensor, mode, variance_threshold=variance_threshold, eigen_tol=eigen_tol)
        if name in overrides:
            selection = RankSelection(rank=int(overrides[name]), spectrum=selection.spectrum)
        selections[name] = selection
        progress.update(message=f"{name} rank = {selection.rank}")

    chosen = _clamp_to_core(
        {name: selections[name].rank for name in ("sender", "receiver", "ligand_receptor")},
        covariates.n_covariates,
        fixed=set(overrides),
    )
    for name, rank in chosen.items():
        if rank != selections[name].rank:
            selections[name] = RankSelection(rank=rank, spectrum=selections[name].spectrum)

    ranks = DecompositionRanks(
        covariate=covariates.n_covariates,
        sender=chosen["sender"],
        receiver=chosen["receiver"],
        pair=chosen["ligand_receptor"],
    )
    ranks.validate(tensor.shape, covariates.n_covariates)
    progress.done()

    logger.info(f"Decomposition ranks: {ranks.to_dict()}")
    return ranks, selections


__all__ = [
    "RankSelection",
    "DecompositionRanks",
    "mode_spectrum",
    "select_rank",
    "select_ranks",
]
