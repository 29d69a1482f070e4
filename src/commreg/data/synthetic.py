"""
Synthetic communication datasets with known structure.

Used by the test suite and by ``commreg simulate`` to produce inputs
whose sender rank and covariate effects are known in advance.
"""

from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

from commreg.data.base import CommunicationTensor, CovariateMatrix, EntityNames


@dataclass
class SyntheticDataset:
    """A generated tensor together with its ground truth."""

    tensor: CommunicationTensor
    covariates: CovariateMatrix
    metadata: pd.DataFrame

    # Covariate carrying the injected effect and its (sender, receiver, pair) slice
    effect_covariate: str
    true_effect: np.ndarray

    sender_rank: int
    params: dict[str, Any] = field(default_factory=dict)


def make_synthetic_dataset(
    n_samples: int = 50,
    n_senders: int = 10,
    n_receivers: int = 10,
    n_pairs: int = 20,
    sender_rank: int = 2,
    effect_size: float = 1.0,
    n_effects: int = 10,
    sparsity: float = 0.5,
    noise: float = 0.05,
    seed: int = 42,
) -> SyntheticDataset:
    """
    Generate a non-negative, mostly-zero communication tensor.

    Senders are split into ``sender_rank`` groups that share a receiver x
    pair profile, so the sender unfolding has rank ``sender_rank`` before
    noise. Half of the samples are "treated"; treatment adds
    ``effect_size`` to ``n_effects`` randomly chosen active
    (sender, receiver, pair) entries.

    Args:
        n_samples: Number of samples (conditions)
        n_senders: Number of sender cell types
        n_receivers: Number of receiver cell types
        n_pairs: Number of ligand-receptor pairs
        sender_rank: Number of distinct sender profiles
        effect_size: Size of the injected treatment effect
        n_effects: Number of entries carrying the effect
        sparsity: Fraction of (receiver, pair) interactions that are never active
        noise: Standard deviation of multiplicative sample noise
        seed: Random seed

    Returns:
        SyntheticDataset
    """
    if not 1 <= sender_rank <= n_senders:
        raise ValueError(f"sender_rank must be in [1, {n_senders}]")

    rng = np.random.default_rng(seed)

    # Sender groups and their receiver x pair profiles
    groups = np.arange(n_senders) % sender_rank
    loadings = np.zeros((n_senders, sender_rank))
    loadings[np.arange(n_senders), groups] = rng.uniform(0.8, 1.2, n_senders)

    active = rng.random((n_receivers, n_pairs)) >= sparsity
    profiles = rng.gamma(2.0, 1.0, (sender_rank, n_receivers, n_pairs)) * active

    # baseline[s, r, p] = sum_k loadings[s, k] * profiles[k, r, p]
    baseline = np.einsum("sk,krp->srp", loadings, profiles)

    # Treatment effect on a subset of active entries
    true_effect = np.zeros_like(baseline)
    active_idx = np.flatnonzero(baseline > 0)
    if active_idx.size and n_effects > 0:
        chosen = rng.choice(active_idx, size=min(n_effects, active_idx.size), replace=False)
        true_effect.flat[chosen] = effect_size

    treated = np.zeros(n_samples)
    treated[n_samples // 2:] = 1.0
    treated = rng.permutation(treated)
    age = rng.normal(0.0, 1.0, n_samples)

    mean = baseline[np.newaxis] + treated[:, None, None, None] * true_effect[np.newaxis]
    scale = 1.0 + noise * rng.standard_normal(mean.shape)
    values = np.clip(mean * scale, 0.0, None)

    names = EntityNames(
        samples=[f"S{i:03d}" for i in range(n_samples)],
        senders=[f"sender_{i}" for i in range(n_senders)],
        receivers=[f"receiver_{i}" for i in range(n_receivers)],
        pairs=[f"LIG{i}_REC{i}" for i in range(n_pairs)],
    )
    tensor = CommunicationTensor(values=values, names=names, metadata={"source": "synthetic"})

    metadata = pd.DataFrame({
        "sample": names.samples,
        "condition": np.where(treated > 0, "treated", "control"),
        "age": np.round(age, 4),
    })
    covariates = CovariateMatrix.from_metadata(metadata, sample_column="sample")

    return SyntheticDataset(
        tensor=tensor,
        covariates=covariates,
        metadata=metadata,
        effect_covariate="condition_treated",
        true_effect=true_effect,
        sender_rank=sender_rank,
        params={
            "n_samples": n_samples,
            "n_senders": n_senders,
            "n_receivers": n_receivers,
            "n_pairs": n_pairs,
            "effect_size": effect_size,
            "n_effects": n_effects,
            "sparsity": sparsity,
            "noise": noise,
            "seed": seed,
        },
    )
