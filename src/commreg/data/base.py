"""
Core data containers for communication tensors and covariates.

The communication tensor is indexed (sample, sender, receiver,
ligand-receptor pair). Both the tensor and the covariate matrix are
loaded once and kept read-only for the rest of the workflow.
"""

from dataclasses import dataclass, field
from typing import Any, NamedTuple, Optional, Sequence

import numpy as np
import pandas as pd

from commreg.errors import InputDataError, ShapeError
from commreg.logging import get_logger

logger = get_logger()

# Tensor mode order
MODES = ("sample", "sender", "receiver", "ligand_receptor")
SAMPLE_MODE, SENDER_MODE, RECEIVER_MODE, PAIR_MODE = range(4)

INTERCEPT = "(Intercept)"

# Column order of effect keys
EFFECT_KEY = ["ligand_receptor", "sender", "receiver"]


def mode_index(mode: int | str) -> int:
    """Resolve a mode given by index or name."""
    if isinstance(mode, str):
        if mode not in MODES:
            raise ShapeError(f"Unknown mode '{mode}'; expected one of {MODES}")
        return MODES.index(mode)
    return int(mode)


def _check_unique(names: Sequence[str], what: str) -> None:
    counts = pd.Series(list(names), dtype=object).value_counts()
    dups = counts[counts > 1].index.tolist()
    if dups:
        raise InputDataError(f"Duplicate {what} names: {sorted(set(dups))[:5]}")


class EntityNames(NamedTuple):
    """Labels for every tensor mode."""

    samples: list[str]
    senders: list[str]
    receivers: list[str]
    pairs: list[str]

    def for_mode(self, mode: int | str) -> list[str]:
        return list(self[mode_index(mode)])

    @property
    def shape(self) -> tuple[int, int, int, int]:
        return tuple(len(n) for n in self)

    @classmethod
    def default(cls, shape: Sequence[int]) -> "EntityNames":
        """Generate placeholder labels for a tensor shape."""
        if len(shape) != 4:
            raise ShapeError(f"Expected a 4D shape, got {tuple(shape)}")
        return cls(*[[f"{mode}_{i}" for i in range(n)] for mode, n in zip(MODES, shape)])


def _readonly(values: np.ndarray) -> np.ndarray:
    values = np.array(values, dtype=np.float64, copy=True)
    values.setflags(write=False)
    return values


@dataclass(frozen=True, eq=False)
class CommunicationTensor:
    """
    4D communication-score tensor with entity labels.

    Attributes:
        values: Array of shape (n_samples, n_senders, n_receivers, n_pairs)
        names: Labels for each mode
        metadata: Free-form information (source file, generator settings)
    """

    values: np.ndarray
    names: EntityNames
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        values = np.asarray(self.values)
        if values.ndim != 4:
            raise ShapeError(
                f"Communication tensor must be 4-dimensional "
                f"(sample x sender x receiver x pair), got shape {values.shape}"
            )
        if not np.all(np.isfinite(values)):
            raise InputDataError("Communication tensor contains non-finite values")

        names = EntityNames(*[list(map(str, n)) for n in self.names])
        if names.shape != values.shape:
            raise ShapeError(
                f"Entity names {names.shape} do not match tensor shape {values.shape}"
            )
        for mode, labels in zip(MODES, names):
            _check_unique(labels, mode)

        object.__setattr__(self, "values", _readonly(values))
        object.__setattr__(self, "names", names)

    @classmethod
    def from_array(
        cls,
        values: np.ndarray,
        names: Optional[EntityNames] = None,
        **metadata: Any,
    ) -> "CommunicationTensor":
        """Wrap a raw array, generating labels when none are given."""
        values = np.asarray(values)
        if names is None:
            names = EntityNames.default(values.shape)
        return cls(values=values, names=names, metadata=metadata)

    @property
    def shape(self) -> tuple[int, ...]:
        return self.values.shape

    @property
    def n_samples(self) -> int:
        return self.values.shape[SAMPLE_MODE]

    @property
    def sparsity(self) -> float:
        """Fraction of exactly-zero entries."""
        return float(np.mean(self.values == 0))

    def with_values(self, values: np.ndarray) -> "CommunicationTensor":
        """New tensor with the same labels and different scores."""
        return CommunicationTensor(values=values, names=self.names, metadata=dict(self.metadata))

    def summary(self) -> dict[str, Any]:
        return {
            "shape": list(self.shape),
            "sparsity": self.sparsity,
            "min": float(self.values.min()),
            "max": float(self.values.max()),
            "n_negative": int(np.sum(self.values < 0)),
        }


@dataclass(frozen=True, eq=False)
class CovariateMatrix:
    """
    Sample-by-covariate design matrix.

    Attributes:
        values: Array of shape (n_samples, n_covariates)
        names: Covariate column names (the intercept is ``(Intercept)``)
        samples: Sample labels, in tensor order
    """

    values: np.ndarray
    names: list[str]
    samples: list[str]

    def __post_init__(self):
        values = np.asarray(self.values, dtype=np.float64)
        if values.ndim != 2:
            raise ShapeError(f"Covariate matrix must be 2-dimensional, got shape {values.shape}")

        names = list(map(str, self.names))
        samples = list(map(str, self.samples))
        if len(names) != values.shape[1]:
            raise ShapeError(f"{len(names)} covariate names for {values.shape[1]} columns")
        if len(samples) != values.shape[0]:
            raise ShapeError(f"{len(samples)} sample names for {values.shape[0]} rows")
        _check_unique(names, "covariate")
        if not np.all(np.isfinite(values)):
            raise InputDataError("Covariate matrix contains non-finite values")

        rank = np.linalg.matrix_rank(values) if values.size else 0
        if rank < values.shape[1]:
            raise ShapeError(
                f"Covariate matrix is rank deficient (rank {rank} < {values.shape[1]} columns)"
            )

        object.__setattr__(self, "values", _readonly(values))
        object.__setattr__(self, "names", names)
        object.__setattr__(self, "samples", samples)

    @property
    def n_samples(self) -> int:
        return self.values.shape[0]

    @property
    def n_covariates(self) -> int:
        return self.values.shape[1]

    def index(self, covariate: str) -> int:
        """Column index of a covariate."""
        try:
            return self.names.index(covariate)
        except ValueError:
            raise InputDataError(
                f"Unknown covariate '{covariate}'; available: {self.names}"
            ) from None

    def default_covariate(self) -> str:
        """First covariate that is not the intercept."""
        for name in self.names:
            if name != INTERCEPT:
                return name
        return self.names[0]

    def check_matches(self, tensor: CommunicationTensor) -> None:
        """Raise ShapeError if rows do not line up with the tensor samples."""
        if self.n_samples != tensor.n_samples:
            raise ShapeError(
                f"Covariate matrix has {self.n_samples} rows but tensor has "
                f"{tensor.n_samples} samples"
            )

    @classmethod
    def from_metadata(
        cls,
        metadata: pd.DataFrame,
        covariates: Optional[Sequence[str]] = None,
        sample_column: Optional[str] = "sample",
        intercept: bool = True,
    ) -> "CovariateMatrix":
        """
        Build a design matrix from a subject metadata table.

        Numeric columns are used as-is; categorical columns are one-hot
        encoded with the first level dropped. An intercept column is
        prepended unless ``intercept`` is False.

        Args:
            metadata: One row per sample
            covariates: Columns to encode (default: every non-sample column)
            sample_column: Column holding sample IDs (None to use the index)
            intercept: Prepend a constant column

        Returns:
            CovariateMatrix
        """
        if sample_column is not None and sample_column in metadata.columns:
            samples = metadata[sample_column].astype(str).tolist()
            table = metadata.drop(columns=[sample_column])
        else:
            samples = [str(s) for s in metadata.index]
            table = metadata

        if covariates:
            missing = [c for c in covariates if c not in table.columns]
            if missing:
                raise InputDataError(
                    f"Covariate columns not found in metadata: {missing}"
                )
            table = table[list(covariates)]

        design = pd.get_dummies(table, drop_first=True, dtype=float)
        if intercept:
            design.insert(0, INTERCEPT, 1.0)

        logger.debug(f"Design matrix columns: {list(design.columns)}")

        return cls(
            values=design.to_numpy(dtype=np.float64),
            names=[str(c) for c in design.columns],
            samples=samples,
        )

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(self.values, index=self.samples, columns=self.names)
