"""
Pytest configuration and fixtures for communication regression tests.
"""

import pytest
import numpy as np
from pathlib import Path
import tempfile
import shutil

from commreg.data import make_synthetic_dataset
from commreg.models import TuckerRegressionFitter, select_ranks


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test outputs."""
    d = Path(tempfile.mkdtemp())
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def small_dataset():
    """Small synthetic dataset that fits in a few milliseconds."""
    return make_synthetic_dataset(
        n_samples=20,
        n_senders=4,
        n_receivers=3,
        n_pairs=5,
        sender_rank=2,
        n_effects=4,
        sparsity=0.3,
        noise=0.02,
        seed=7,
    )


@pytest.fixture
def small_fit(small_dataset):
    """Full-rank fit of the small dataset."""
    ranks, _ = select_ranks(small_dataset.tensor, small_dataset.covariates, variance_threshold=1.0)
    model = TuckerRegressionFitter().fit(small_dataset.tensor, small_dataset.covariates, ranks)
    return model


@pytest.fixture
def rank2_sender_tensor():
    """
    Tensor of shape (50, 10, 10, 20) whose sender mode has rank 2.

    Senders 0-4 load on one profile and senders 5-9 on another; a small
    amount of uniform noise is added.
    """
    rng = np.random.default_rng(42)
    n_samples, n_senders, n_receivers, n_pairs = 50, 10, 10, 20

    loadings = np.zeros((n_senders, 2))
    loadings[:5, 0] = 1.0
    loadings[5:, 1] = 1.0

    profiles = rng.random((2, n_samples, n_receivers, n_pairs))
    tensor = np.einsum("sk,kirl->isrl", loadings, profiles)
    return tensor + 0.01 * rng.random(tensor.shape)


@pytest.fixture
def eight_cpus(monkeypatch):
    """Report 8 CPUs so worker requests above 1 reach joblib on any host."""
    monkeypatch.setattr("commreg.utils.parallel.os.cpu_count", lambda: 8)
