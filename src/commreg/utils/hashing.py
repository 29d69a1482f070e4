"""
Checksums of the input files, recorded with every analysis result so a
run can be matched to the exact tensor and covariates it used.
"""

import hashlib
from pathlib import Path
from typing import Mapping, Optional

from commreg.logging import get_logger

logger = get_logger()

BLOCK_SIZE = 1 << 16


def compute_checksum(path: Path, algorithm: str = "sha256") -> str:
    """
    Hex digest of a file's contents.

    Args:
        path: File to hash
        algorithm: Any algorithm in ``hashlib.algorithms_guaranteed``

    Returns:
        Hex digest string
    """
    if algorithm not in hashlib.algorithms_guaranteed:
        raise ValueError(
            f"Unsupported algorithm: {algorithm}; choose from {sorted(hashlib.algorithms_guaranteed)}"
        )

    digest = hashlib.new(algorithm)
    with open(path, "rb") as f:
        while block := f.read(BLOCK_SIZE):
            digest.update(block)
    return digest.hexdigest()


def checksum_inputs(paths: Mapping[str, Optional[Path]]) -> dict[str, dict[str, str]]:
    """
    SHA-256 of every configured input that exists on disk.

    Args:
        paths: Input role (e.g. ``"tensor_file"``) to path

    Returns:
        Input role to ``{"path": ..., "sha256": ...}``; unset roles and
        missing files are left out
    """
    records = {}
    for role, path in paths.items():
        if path is None:
            continue
        path = Path(path)
        if not path.is_file():
            logger.warning(f"Cannot checksum {role}: {path} does not exist")
            continue
        records[role] = {"path": str(path), "sha256": compute_checksum(path)}
    return records
