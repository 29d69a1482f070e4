"""
Tensor Regression of Cell-Cell Communication Scores.

This package regresses a 4D communication tensor (sample x sender x
receiver x ligand-receptor pair) on per-sample covariates, including:
- Variance-explained rank selection per tensor mode
- Rank-constrained (Tucker) tensor regression
- Effect estimates for a covariate of interest
- Parallel bootstrap p-values for every communication key

Key components:
- Loaders for precomputed tensors and covariate tables
- Pluggable fitting backends and resampling strategies
- Reporting tables and figures
"""

__version__ = "0.1.0"

from commreg.config import Config
from commreg.errors import (
    CommRegError,
    ShapeError,
    ConvergenceError,
    InsufficientReplicatesError,
    InputDataError,
)
from commreg.data import CommunicationTensor, CovariateMatrix, EntityNames
from commreg.models import (
    DecompositionRanks,
    TuckerRegressionFitter,
    bootstrap_pvalues,
    select_rank,
)

__all__ = [
    "__version__",
    "Config",
    "CommRegError",
    "ShapeError",
    "ConvergenceError",
    "InsufficientReplicatesError",
    "InputDataError",
    "CommunicationTensor",
    "CovariateMatrix",
    "EntityNames",
    "DecompositionRanks",
    "TuckerRegressionFitter",
    "bootstrap_pvalues",
    "select_rank",
]
