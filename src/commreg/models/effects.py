"""
Effect estimates: coefficients of one covariate keyed by
(ligand_receptor, sender, receiver).
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd

from commreg.data.base import EFFECT_KEY, EntityNames
from commreg.errors import ShapeError
from commreg.models.regression import FittedModel


def effect_index(names: EntityNames) -> pd.MultiIndex:
    """
    Index over every (pair, sender, receiver) key.

    Rows follow the C order of a (sender, receiver, pair) array, so a
    flattened coefficient slice lines up with the index directly.
    """
    index = pd.MultiIndex.from_product(
        [names.senders, names.receivers, names.pairs],
        names=["sender", "receiver", "ligand_receptor"],
    )
    return index.reorder_levels(EFFECT_KEY)


@dataclass
class EffectEstimate:
    """Estimated effect of one covariate on every communication key."""

    covariate: str
    table: pd.DataFrame

    def __post_init__(self):
        if list(self.table.index.names) != EFFECT_KEY:
            raise ShapeError(f"Effect table must be indexed by {EFFECT_KEY}, got {self.table.index.names}")
        if not self.table.index.is_unique:
            raise ShapeError("Effect table has duplicate keys")

    def __len__(self) -> int:
        return len(self.table)

    @property
    def values(self) -> np.ndarray:
        return self.table["effect"].to_numpy()

    def top(self, n: int = 20) -> pd.DataFrame:
        """The n largest effects by absolute value."""
        order = self.table["effect"].abs().sort_values(ascending=False, kind="stable").index
        return self.table.loc[order[:n]]

    def to_frame(self) -> pd.DataFrame:
        """Flat table with key columns and a covariate column."""
        frame = self.table.reset_index()
        frame.insert(len(EFFECT_KEY), "covariate", self.covariate)
        return frame


def extract_effects(
    model: FittedModel,
    covariate: str | int,
    names: EntityNames,
) -> EffectEstimate:
    """
    Project a fitted model's coefficients to effect estimates.

    Args:
        model: Fitted tensor regression
        covariate: Covariate of interest (name or index)
        names: Entity labels of the fitted tensor

    Returns:
        EffectEstimate with one row per (pair, sender, receiver)
    """
    coefficients = model.coefficient_slice(covariate)
    expected = (len(names.senders), len(names.receivers), len(names.pairs))
    if coefficients.shape != expected:
        raise ShapeError(f"Coefficient slice {coefficients.shape} does not match entity names {expected}")

    name = model.covariate_names[model.covariate_index(covariate)]
    table = pd.DataFrame({"effect": coefficients.ravel()}, index=effect_index(names))
    return EffectEstimate(covariate=name, table=table)
