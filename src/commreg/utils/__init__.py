"""Utility modules for the communication regression workflow."""

from commreg.utils.hashing import compute_checksum, checksum_inputs
from commreg.utils.parallel import parallel_map, get_n_workers
from commreg.utils.stats import (
    clopper_pearson_ci,
    cumulative_variance_ratio,
    empirical_pvalues,
    benjamini_hochberg,
)

__all__ = [
    "compute_checksum",
    "checksum_inputs",
    "parallel_map",
    "get_n_workers",
    "clopper_pearson_ci",
    "cumulative_variance_ratio",
    "empirical_pvalues",
    "benjamini_hochberg",
]
