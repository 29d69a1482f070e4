"""Input containers, file loaders, and synthetic data."""

from commreg.data.base import (
    MODES,
    INTERCEPT,
    EFFECT_KEY,
    EntityNames,
    CommunicationTensor,
    CovariateMatrix,
    mode_index,
)
from commreg.data.loaders import (
    load_inputs,
    load_covariate_table,
    load_name_list,
    load_tensor_array,
    build_tensor,
    write_inputs,
)
from commreg.data.synthetic import SyntheticDataset, make_synthetic_dataset

__all__ = [
    "MODES",
    "INTERCEPT",
    "EFFECT_KEY",
    "EntityNames",
    "CommunicationTensor",
    "CovariateMatrix",
    "mode_index",
    "load_inputs",
    "load_covariate_table",
    "load_name_list",
    "load_tensor_array",
    "build_tensor",
    "write_inputs",
    "SyntheticDataset",
    "make_synthetic_dataset",
]
