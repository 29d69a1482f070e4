"""
Statistical utilities for rank selection and bootstrap significance.
"""

import numpy as np
from scipy import stats


def clopper_pearson_ci(
    k: np.ndarray,
    n: int,
    alpha: float = 0.05,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Clopper-Pearson exact binomial confidence interval.

    Vectorized over ``k`` so one call covers every effect entry.

    Args:
        k: Number of successes (scalar or array)
        n: Number of trials
        alpha: Significance level (default 0.05 for 95% CI)

    Returns:
        (lower, upper) confidence interval bounds, same shape as k
    """
    k = np.asarray(k, dtype=float)
    if n == 0:
        return np.zeros_like(k), np.ones_like(k)

    # beta.ppf is nan at the k == 0 / k == n edges; those are replaced below
    with np.errstate(invalid="ignore"):
        lower = np.where(k > 0, stats.beta.ppf(alpha / 2, k, n - k + 1), 0.0)
        upper = np.where(k < n, stats.beta.ppf(1 - alpha / 2, k + 1, n - k), 1.0)

    return lower, upper


def cumulative_variance_ratio(eigenvalues: np.ndarray) -> np.ndarray:
    """
    Cumulative fraction of total eigenvalue mass.

    Args:
        eigenvalues: Eigenvalues in descending order

    Returns:
        Array of the same length; last entry is 1 unless the total is zero
    """
    eigenvalues = np.asarray(eigenvalues, dtype=float)
    total = np.sum(eigenvalues)
    if total <= 0:
        return np.zeros_like(eigenvalues)
    return np.cumsum(eigenvalues) / total


def empirical_pvalues(
    observed: np.ndarray,
    replicates: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Two-sided empirical p-values from a replicate distribution.

    p = #{|replicate| >= |observed|} / B, floored at 1/B so that no entry
    is reported as exactly zero.

    Args:
        observed: Observed statistics, shape (K,)
        replicates: Replicate statistics, shape (B, K)

    Returns:
        (p_values, exceedance_counts) tuple
    """
    replicates = np.atleast_2d(replicates)
    B = replicates.shape[0]
    if B == 0:
        raise ValueError("Need at least one replicate to compute p-values")

    counts = np.sum(np.abs(replicates) >= np.abs(observed)[np.newaxis, :], axis=0)
    p_values = np.maximum(counts / B, 1.0 / B)
    return p_values, counts


def benjamini_hochberg(p_values: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg adjusted p-values (q-values)."""
    p_values = np.asarray(p_values, dtype=float)
    if p_values.size == 0:
        return p_values
    return stats.false_discovery_control(p_values, method="bh")
