"""
Tests for input containers, loaders, and synthetic data.
"""

import pytest
import numpy as np
import pandas as pd

from commreg.config import InputConfig
from commreg.data import (
    INTERCEPT,
    CommunicationTensor,
    CovariateMatrix,
    EntityNames,
    build_tensor,
    load_inputs,
    load_name_list,
    load_tensor_array,
    make_synthetic_dataset,
    write_inputs,
)
from commreg.errors import InputDataError, ShapeError


class TestCommunicationTensor:
    """Test CommunicationTensor validation."""

    def test_from_array_generates_names(self):
        tensor = CommunicationTensor.from_array(np.zeros((2, 3, 4, 5)))
        assert tensor.names.shape == (2, 3, 4, 5)
        assert tensor.names.senders[0] == "sender_0"
        assert tensor.sparsity == 1.0

    def test_values_are_read_only(self):
        tensor = CommunicationTensor.from_array(np.ones((2, 2, 2, 2)))
        with pytest.raises(ValueError):
            tensor.values[0, 0, 0, 0] = 5.0

    def test_source_array_is_copied(self):
        raw = np.ones((2, 2, 2, 2))
        tensor = CommunicationTensor.from_array(raw)
        raw[0, 0, 0, 0] = 9.0
        assert tensor.values[0, 0, 0, 0] == 1.0

    def test_wrong_dimensions(self):
        with pytest.raises(ShapeError):
            CommunicationTensor.from_array(np.zeros((2, 3, 4)))

    def test_non_finite(self):
        values = np.ones((2, 2, 2, 2))
        values[1, 1, 1, 1] = np.nan
        with pytest.raises(InputDataError):
            CommunicationTensor.from_array(values)

    def test_names_shape_mismatch(self):
        names = EntityNames.default((2, 2, 2, 3))
        with pytest.raises(ShapeError):
            CommunicationTensor(values=np.zeros((2, 2, 2, 2)), names=names)

    def test_duplicate_names(self):
        names = EntityNames(["a", "b"], ["s", "s"], ["r1", "r2"], ["p1", "p2"])
        with pytest.raises(InputDataError, match="sender"):
            CommunicationTensor(values=np.zeros((2, 2, 2, 2)), names=names)

    def test_for_mode(self):
        names = EntityNames(["a"], ["s"], ["r"], ["p1", "p2"])
        assert names.for_mode("ligand_receptor") == ["p1", "p2"]
        assert names.for_mode(1) == ["s"]


class TestCovariateMatrix:
    """Test CovariateMatrix construction."""

    def test_from_metadata_encodes_categories(self):
        metadata = pd.DataFrame({
            "sample": ["a", "b", "c", "d"],
            "condition": ["ctrl", "treated", "ctrl", "treated"],
            "age": [30.0, 40.0, 50.0, 45.0],
        })

        covariates = CovariateMatrix.from_metadata(metadata)

        assert covariates.names == [INTERCEPT, "age", "condition_treated"]
        assert covariates.samples == ["a", "b", "c", "d"]
        np.testing.assert_array_equal(covariates.values[:, 0], 1.0)
        np.testing.assert_array_equal(covariates.values[:, 2], [0, 1, 0, 1])
        assert covariates.default_covariate() == "age"

    def test_selected_columns(self):
        metadata = pd.DataFrame({"sample": ["a", "b", "c"], "x": [1.0, 2.0, 4.0], "y": [0.0, 1.0, 0.0]})
        covariates = CovariateMatrix.from_metadata(metadata, covariates=["y"])
        assert covariates.names == [INTERCEPT, "y"]

    def test_missing_column(self):
        metadata = pd.DataFrame({"sample": ["a", "b"], "x": [1.0, 2.0]})
        with pytest.raises(InputDataError):
            CovariateMatrix.from_metadata(metadata, covariates=["batch"])

    def test_rank_deficient(self):
        values = np.column_stack([np.ones(4), 2 * np.ones(4)])
        with pytest.raises(ShapeError, match="rank deficient"):
            CovariateMatrix(values=values, names=["a", "b"], samples=list("wxyz"))

    def test_unknown_covariate(self, small_dataset):
        with pytest.raises(InputDataError):
            small_dataset.covariates.index("batch")

    def test_check_matches(self, small_dataset):
        tensor = CommunicationTensor.from_array(np.zeros((3, 2, 2, 2)))
        with pytest.raises(ShapeError):
            small_dataset.covariates.check_matches(tensor)


class TestLoaders:
    """Test reading inputs from disk."""

    def test_round_trip(self, small_dataset, temp_dir):
        inputs = write_inputs(small_dataset.tensor, small_dataset.metadata, temp_dir / "inputs")

        tensor, covariates = load_inputs(inputs)

        np.testing.assert_allclose(tensor.values, small_dataset.tensor.values)
        assert tensor.names == small_dataset.tensor.names
        assert covariates.names == small_dataset.covariates.names
        np.testing.assert_allclose(covariates.values, small_dataset.covariates.values)

    def test_npz_with_tensor_key(self, temp_dir):
        values = np.arange(16, dtype=float).reshape(2, 2, 2, 2)
        path = temp_dir / "scores.npz"
        np.savez(path, tensor=values, other=np.zeros(3))

        np.testing.assert_array_equal(load_tensor_array(path), values)

    def test_npz_ambiguous(self, temp_dir):
        path = temp_dir / "scores.npz"
        np.savez(path, a=np.zeros(3), b=np.zeros(3))
        with pytest.raises(InputDataError):
            load_tensor_array(path)

    def test_unsupported_suffix(self, temp_dir):
        path = temp_dir / "scores.csv"
        path.write_text("1,2,3\n")
        with pytest.raises(InputDataError, match="Unsupported"):
            load_tensor_array(path)

    def test_missing_file(self, temp_dir):
        with pytest.raises(InputDataError) as excinfo:
            load_tensor_array(temp_dir / "absent.npy")
        assert excinfo.value.stage == "load"
        assert "absent.npy" in str(excinfo.value)

    def test_name_list_header(self, temp_dir):
        path = temp_dir / "pairs.tsv"
        path.write_text("pair\nLIG1_REC1\nLIG2_REC2\n")
        assert load_name_list(path, has_header=True) == ["LIG1_REC1", "LIG2_REC2"]
        assert load_name_list(path) == ["pair", "LIG1_REC1", "LIG2_REC2"]

    def test_build_tensor_name_mismatch(self):
        with pytest.raises(ShapeError) as excinfo:
            build_tensor(np.zeros((2, 2, 2, 3)), pairs=["p1", "p2"], senders=["s1", "s2"],
                         receivers=["r1", "r2"], source="tensor.npy")
        assert excinfo.value.stage == "load"
        assert excinfo.value.source == "tensor.npy"

    def test_unconfigured_inputs(self):
        with pytest.raises(InputDataError, match="Missing input"):
            load_inputs(InputConfig())

    def test_sample_count_mismatch(self, small_dataset, temp_dir):
        inputs = write_inputs(small_dataset.tensor, small_dataset.metadata, temp_dir / "inputs")
        small_dataset.metadata.iloc[:-1].to_csv(inputs.covariates_file, sep="\t", index=False)

        with pytest.raises(ShapeError):
            load_inputs(inputs)


class TestSyntheticDataset:
    """Test synthetic data generation."""

    def test_shapes(self):
        dataset = make_synthetic_dataset(n_samples=12, n_senders=5, n_receivers=4, n_pairs=6, seed=1)

        assert dataset.tensor.shape == (12, 5, 4, 6)
        assert dataset.true_effect.shape == (5, 4, 6)
        assert dataset.covariates.n_samples == 12
        assert dataset.effect_covariate in dataset.covariates.names

    def test_nonnegative_and_sparse(self):
        dataset = make_synthetic_dataset(sparsity=0.6, seed=2)
        assert dataset.tensor.values.min() >= 0
        assert dataset.tensor.sparsity > 0.3

    def test_reproducible(self):
        a = make_synthetic_dataset(seed=5)
        b = make_synthetic_dataset(seed=5)
        np.testing.assert_array_equal(a.tensor.values, b.tensor.values)

    def test_invalid_sender_rank(self):
        with pytest.raises(ValueError):
            make_synthetic_dataset(n_senders=3, sender_rank=4)
