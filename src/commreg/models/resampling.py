"""
Resampling strategies for bootstrap replicates.

A strategy turns a fitted model plus the observed data into one
pseudo-data tensor, using only the generator it is given.
"""

from abc import ABC, abstractmethod
from typing import Optional

import numpy as np

from commreg.models.regression import FittedModel


class ResamplingStrategy(ABC):
    """
    Draws replicate tensors from a fitted model.

    When ``null_covariate`` is set, the replicate mean leaves out that
    covariate's contribution, so replicates follow the null hypothesis
    of no effect for it.
    """

    name: str = "base"

    def __init__(self, null_covariate: Optional[str | int] = None):
        self.null_covariate = null_covariate

    def mean(self, model: FittedModel, covariates: np.ndarray) -> np.ndarray:
        return model.predict(covariates, exclude=self.null_covariate)

    @abstractmethod
    def draw(
        self,
        model: FittedModel,
        tensor: np.ndarray,
        covariates: np.ndarray,
        rng: np.random.Generator,
    ) -> np.ndarray:
        """
        Generate one replicate tensor.

        Args:
            model: Fitted model on the observed data
            tensor: Observed tensor values (not modified)
            covariates: Covariate matrix values
            rng: Generator owned by this replicate

        Returns:
            Array with the shape of ``tensor``
        """
        pass

    def describe(self) -> dict:
        return {"resampling": self.name, "null_covariate": self.null_covariate}


class ParametricResampler(ResamplingStrategy):
    """Fitted mean plus i.i.d. Gaussian noise at the residual standard deviation."""

    name = "parametric"

    def draw(self, model, tensor, covariates, rng):
        mean = self.mean(model, covariates)
        return mean + model.residual_std * rng.standard_normal(mean.shape)


class ResidualResampler(ResamplingStrategy):
    """
    Fitted mean plus residuals resampled by whole sample.

    Each replicate sample receives the full (sender, receiver, pair)
    residual slab of a sample drawn with replacement, which keeps the
    within-sample dependence of the residuals.
    """

    name = "residual"

    def draw(self, model, tensor, covariates, rng):
        residuals = np.asarray(tensor) - model.predict(covariates)
        n = residuals.shape[0]
        picks = rng.integers(0, n, size=n)
        return self.mean(model, covariates) + residuals[picks]


RESAMPLERS = {
    ParametricResampler.name: ParametricResampler,
    ResidualResampler.name: ResidualResampler,
}


def get_resampler(name: str, null_covariate: Optional[str | int] = None) -> ResamplingStrategy:
    """Build a resampling strategy by name."""
    if name not in RESAMPLERS:
        raise ValueError(f"Unknown resampling '{name}'; expected one of {sorted(RESAMPLERS)}")
    return RESAMPLERS[name](null_covariate=null_covariate)
