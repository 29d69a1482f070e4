"""
Factor-matrix helper for the Tucker fits.

Unfoldings and mode-n products come from tensorly, whose unfolding
keeps the remaining modes in C order.
"""

import numpy as np
from scipy import linalg


def leading_left_singular_vectors(matrix: np.ndarray, k: int) -> np.ndarray:
    """
    Top-k left singular vectors of a matrix.

    Signs are fixed so that the largest-magnitude entry of each vector is
    positive, which makes the result independent of LAPACK sign choices.
    """
    U, _, _ = linalg.svd(matrix, full_matrices=False)
    U = U[:, :k]
    idx = np.argmax(np.abs(U), axis=0)
    signs = np.sign(U[idx, np.arange(U.shape[1])])
    signs[signs == 0] = 1.0
    return U * signs
