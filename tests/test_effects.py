"""
Tests for effect estimates.
"""

import pytest
import numpy as np
import pandas as pd

from commreg.data import EFFECT_KEY
from commreg.errors import ShapeError
from commreg.models.effects import EffectEstimate, effect_index, extract_effects


class TestExtractEffects:
    """Test extract_effects function."""

    def test_keys_match_coefficients(self, small_dataset, small_fit):
        names = small_dataset.tensor.names
        effects = extract_effects(small_fit, "condition_treated", names)
        coefficients = small_fit.coefficient_slice("condition_treated")

        assert len(effects) == coefficients.size
        assert list(effects.table.index.names) == EFFECT_KEY

        s, r, l = 2, 1, 3
        key = (names.pairs[l], names.senders[s], names.receivers[r])
        assert effects.table.loc[key, "effect"] == coefficients[s, r, l]

    def test_covariate_by_index(self, small_dataset, small_fit):
        idx = small_fit.covariate_index("condition_treated")
        effects = extract_effects(small_fit, idx, small_dataset.tensor.names)
        assert effects.covariate == "condition_treated"

    def test_top_sorted_by_magnitude(self, small_dataset, small_fit):
        effects = extract_effects(small_fit, "condition_treated", small_dataset.tensor.names)
        top = effects.top(5)

        assert len(top) == 5
        magnitudes = top["effect"].abs().to_numpy()
        assert np.all(np.diff(magnitudes) <= 0)
        assert magnitudes[0] == pytest.approx(np.abs(effects.values).max())

    def test_to_frame(self, small_dataset, small_fit):
        frame = extract_effects(small_fit, "age", small_dataset.tensor.names).to_frame()
        assert list(frame.columns) == EFFECT_KEY + ["covariate", "effect"]
        assert set(frame["covariate"]) == {"age"}

    def test_name_mismatch(self, small_dataset, small_fit):
        names = small_dataset.tensor.names._replace(pairs=["only_one"])
        with pytest.raises(ShapeError):
            extract_effects(small_fit, "age", names)


class TestEffectEstimate:
    """Test EffectEstimate validation."""

    def test_rejects_wrong_index(self):
        table = pd.DataFrame({"effect": [1.0]}, index=pd.Index(["a"], name="sender"))
        with pytest.raises(ShapeError):
            EffectEstimate(covariate="x", table=table)

    def test_rejects_duplicate_keys(self):
        index = pd.MultiIndex.from_tuples([("p", "s", "r"), ("p", "s", "r")], names=EFFECT_KEY)
        with pytest.raises(ShapeError):
            EffectEstimate(covariate="x", table=pd.DataFrame({"effect": [1.0, 2.0]}, index=index))

    def test_effect_index_order(self, small_dataset):
        names = small_dataset.tensor.names
        index = effect_index(names)

        # Pairs vary fastest, then receivers, then senders
        assert index[0] == (names.pairs[0], names.senders[0], names.receivers[0])
        assert index[1] == (names.pairs[1], names.senders[0], names.receivers[0])
        assert index[len(names.pairs)] == (names.pairs[0], names.senders[0], names.receivers[1])
