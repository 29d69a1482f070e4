"""Rank selection, tensor regression, and bootstrap significance."""

from commreg.models.rank import DecompositionRanks, RankSelection, select_rank, select_ranks
from commreg.models.regression import (
    FittedModel,
    TensorRegressor,
    TuckerRegressionFitter,
    fit_regression,
)
from commreg.models.effects import EffectEstimate, extract_effects
from commreg.models.resampling import (
    ResamplingStrategy,
    ParametricResampler,
    ResidualResampler,
    get_resampler,
)
from commreg.models.bootstrap import (
    BootstrapSignificance,
    PValueTable,
    ReplicateOutcome,
    bootstrap_pvalues,
)

__all__ = [
    "DecompositionRanks",
    "RankSelection",
    "select_rank",
    "select_ranks",
    "FittedModel",
    "TensorRegressor",
    "TuckerRegressionFitter",
    "fit_regression",
    "EffectEstimate",
    "extract_effects",
    "ResamplingStrategy",
    "ParametricResampler",
    "ResidualResampler",
    "get_resampler",
    "BootstrapSignificance",
    "PValueTable",
    "ReplicateOutcome",
    "bootstrap_pvalues",
]
