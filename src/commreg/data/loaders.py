"""
Readers for the precomputed analysis inputs.

Inputs are read once and never written back:
- a tab-separated subject covariate table
- a tensor file (.npy, or .npz with a ``tensor`` array)
- three tab-separated name lists (pairs, senders, receivers)
"""

from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from commreg.config import InputConfig
from commreg.data.base import CommunicationTensor, CovariateMatrix, EntityNames
from commreg.errors import CommRegError, InputDataError
from commreg.logging import get_logger

logger = get_logger()


def _require_file(path: Optional[Path], role: str) -> Path:
    if path is None:
        raise InputDataError(f"No {role} configured", stage="load")
    path = Path(path)
    if not path.exists():
        raise InputDataError(f"{role} not found", stage="load", source=str(path))
    return path


def load_covariate_table(path: Path) -> pd.DataFrame:
    """Read the subject covariate TSV."""
    path = _require_file(path, "covariate table")
    try:
        table = pd.read_csv(path, sep="\t")
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise InputDataError(f"Cannot parse covariate table: {e}", stage="load", source=str(path)) from e

    logger.debug(f"Read {len(table)} subjects x {table.shape[1]} columns from {path}")
    return table


def load_name_list(path: Path, has_header: bool = False) -> list[str]:
    """Read a single-column TSV of entity names (first column is used)."""
    path = _require_file(path, "name list")
    try:
        table = pd.read_csv(
            path,
            sep="\t",
            header=0 if has_header else None,
            dtype=str,
            keep_default_na=False,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise InputDataError(f"Cannot parse name list: {e}", stage="load", source=str(path)) from e

    names = [n.strip() for n in table.iloc[:, 0].tolist()]
    if not names:
        raise InputDataError("Name list is empty", stage="load", source=str(path))
    return names


def load_tensor_array(path: Path) -> np.ndarray:
    """Read the raw communication-score array."""
    path = _require_file(path, "tensor file")

    try:
        if path.suffix == ".npz":
            with np.load(path) as archive:
                if "tensor" in archive.files:
                    values = archive["tensor"]
                elif len(archive.files) == 1:
                    values = archive[archive.files[0]]
                else:
                    raise InputDataError(
                        f"Archive has arrays {archive.files}; expected one named 'tensor'",
                        stage="load",
                        source=str(path),
                    )
        elif path.suffix == ".npy":
            values = np.load(path)
        else:
            raise InputDataError(
                f"Unsupported tensor format '{path.suffix}' (use .npy or .npz)",
                stage="load",
                source=str(path),
            )
    except CommRegError:
        raise
    except (OSError, ValueError) as e:
        raise InputDataError(f"Cannot read tensor: {e}", stage="load", source=str(path)) from e

    return np.asarray(values, dtype=np.float64)


def build_tensor(
    values: np.ndarray,
    pairs: Sequence[str],
    senders: Sequence[str],
    receivers: Sequence[str],
    samples: Optional[Sequence[str]] = None,
    source: Optional[str] = None,
) -> CommunicationTensor:
    """Attach labels to a raw array, checking every mode size."""
    if samples is None:
        samples = [f"sample_{i}" for i in range(values.shape[0])] if values.ndim else []

    names = EntityNames(list(samples), list(senders), list(receivers), list(pairs))
    try:
        tensor = CommunicationTensor(values=values, names=names, metadata={"source": source})
    except CommRegError as e:
        raise e.with_context(stage="load", source=source)

    n_negative = int(np.sum(tensor.values < 0))
    if n_negative:
        logger.warning(f"Tensor has {n_negative} negative scores; communication scores are expected >= 0")

    return tensor


def load_inputs(inputs: InputConfig) -> tuple[CommunicationTensor, CovariateMatrix]:
    """
    Load the tensor and the covariate matrix described by an InputConfig.

    Returns:
        (tensor, covariates) with covariate rows aligned to tensor samples
    """
    missing = inputs.missing_files()
    if missing:
        raise InputDataError(f"Missing input paths in configuration: {missing}", stage="load")

    metadata = load_covariate_table(inputs.covariates_file)
    try:
        covariates = CovariateMatrix.from_metadata(
            metadata,
            covariates=inputs.covariates or None,
            sample_column=inputs.sample_column,
        )
    except CommRegError as e:
        raise e.with_context(stage="load", source=str(inputs.covariates_file))

    values = load_tensor_array(inputs.tensor_file)
    tensor = build_tensor(
        values,
        pairs=load_name_list(inputs.pairs_file, inputs.names_have_header),
        senders=load_name_list(inputs.senders_file, inputs.names_have_header),
        receivers=load_name_list(inputs.receivers_file, inputs.names_have_header),
        samples=covariates.samples if len(covariates.samples) == values.shape[0] else None,
        source=str(inputs.tensor_file),
    )

    try:
        covariates.check_matches(tensor)
    except CommRegError as e:
        raise e.with_context(stage="load", source=str(inputs.covariates_file))

    logger.info(
        f"Loaded tensor {tensor.shape} ({tensor.sparsity:.0%} zeros) and "
        f"{covariates.n_covariates} covariates: {covariates.names}"
    )
    return tensor, covariates


def write_inputs(
    tensor: CommunicationTensor,
    metadata: pd.DataFrame,
    out_dir: Path,
    sample_column: str = "sample",
) -> InputConfig:
    """
    Write a tensor and its subject metadata in the input file layout.

    Returns:
        InputConfig pointing at the written files
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    table = metadata.copy()
    if sample_column not in table.columns:
        table.insert(0, sample_column, tensor.names.samples)

    paths = {
        "covariates_file": out_dir / "covariates.tsv",
        "tensor_file": out_dir / "tensor.npy",
        "pairs_file": out_dir / "lr_pairs.tsv",
        "senders_file": out_dir / "senders.tsv",
        "receivers_file": out_dir / "receivers.tsv",
    }

    table.to_csv(paths["covariates_file"], sep="\t", index=False)
    np.save(paths["tensor_file"], np.asarray(tensor.values))
    for key, labels in [
        ("pairs_file", tensor.names.pairs),
        ("senders_file", tensor.names.senders),
        ("receivers_file", tensor.names.receivers),
    ]:
        pd.Series(labels).to_csv(paths[key], sep="\t", index=False, header=False)

    return InputConfig(sample_column=sample_column, **paths)
