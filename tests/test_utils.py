"""
Tests for statistical, parallel, and checksum utilities.
"""

import hashlib
import time

import pytest
import numpy as np

from commreg.utils import parallel
from commreg.utils import (
    benjamini_hochberg,
    checksum_inputs,
    clopper_pearson_ci,
    compute_checksum,
    cumulative_variance_ratio,
    empirical_pvalues,
    get_n_workers,
    parallel_map,
)


def _square(x):
    return x * x


def _slow_square(x):
    # Early items finish last
    time.sleep(0.001 * (20 - x))
    return x * x


class TestStats:
    """Test statistical helpers."""

    def test_empirical_pvalues_floor(self):
        observed = np.array([10.0, 0.0])
        replicates = np.array([[0.1, 1.0], [-0.2, -2.0], [0.3, 0.5], [0.0, 0.1]])

        p, counts = empirical_pvalues(observed, replicates)

        np.testing.assert_array_equal(counts, [0, 4])
        np.testing.assert_allclose(p, [0.25, 1.0])

    def test_empirical_pvalues_two_sided(self):
        p, counts = empirical_pvalues(np.array([-1.0]), np.array([[1.5], [-0.5], [-2.0]]))
        assert counts[0] == 2
        assert p[0] == pytest.approx(2 / 3)

    def test_empirical_pvalues_needs_replicates(self):
        with pytest.raises(ValueError):
            empirical_pvalues(np.array([1.0]), np.empty((0, 1)))

    def test_clopper_pearson_edges(self):
        lower, upper = clopper_pearson_ci(np.array([0, 5, 10]), 10)

        assert lower[0] == 0.0
        assert upper[2] == 1.0
        assert lower[1] < 0.5 < upper[1]

    def test_cumulative_variance_ratio(self):
        np.testing.assert_allclose(cumulative_variance_ratio([3.0, 1.0]), [0.75, 1.0])
        np.testing.assert_array_equal(cumulative_variance_ratio([0.0, 0.0]), [0.0, 0.0])

    def test_benjamini_hochberg(self):
        p = np.array([0.01, 0.04, 0.03, 0.5])
        q = benjamini_hochberg(p)

        assert np.all(q >= p)
        assert q[0] == pytest.approx(0.04)
        assert benjamini_hochberg(np.array([])).size == 0


class TestParallel:
    """Test parallel helpers."""

    def test_get_n_workers_caps_at_cpu_count(self, eight_cpus):
        assert get_n_workers(1) == 1
        assert get_n_workers(5) == 5
        assert get_n_workers(10_000) == 8
        assert get_n_workers(-1) == 7
        assert get_n_workers(-2) == 7

    @pytest.mark.parametrize("backend", ["threading", "loky"])
    def test_parallel_map_preserves_order(self, eight_cpus, monkeypatch, backend):
        worker_counts = []

        class RecordingParallel(parallel.Parallel):
            def __init__(self, *args, **kwargs):
                worker_counts.append(kwargs["n_jobs"])
                super().__init__(*args, **kwargs)

        monkeypatch.setattr(parallel, "Parallel", RecordingParallel)

        items = list(range(20))
        results = parallel_map(_slow_square, items, n_jobs=4, backend=backend, show_progress=False)

        assert results == [x * x for x in items]
        assert worker_counts == [4]

    def test_single_worker_runs_serially(self, eight_cpus, monkeypatch):
        monkeypatch.setattr(parallel, "Parallel", None)
        assert parallel_map(_square, [1, 2, 3], n_jobs=1) == [1, 4, 9]

    def test_parallel_map_empty(self):
        assert parallel_map(_square, [], n_jobs=2) == []


class TestHashing:
    """Test checksum helpers."""

    def test_compute_checksum(self, temp_dir):
        path = temp_dir / "data.txt"
        path.write_bytes(b"communication")
        assert compute_checksum(path) == hashlib.sha256(b"communication").hexdigest()

    def test_unsupported_algorithm(self, temp_dir):
        path = temp_dir / "data.txt"
        path.write_bytes(b"x")
        with pytest.raises(ValueError):
            compute_checksum(path, algorithm="crc32")

    def test_checksum_inputs_skips_missing(self, temp_dir):
        path = temp_dir / "tensor.npy"
        path.write_bytes(b"abc")

        records = checksum_inputs({"tensor_file": path, "pairs_file": None, "senders_file": temp_dir / "nope"})

        assert set(records) == {"tensor_file"}
        assert records["tensor_file"]["sha256"] == hashlib.sha256(b"abc").hexdigest()
