"""
Configuration management using Pydantic models.

Provides centralized configuration for:
- Input files and covariate encoding
- Rank selection thresholds and fixed-rank overrides
- Tensor regression fit tolerances
- Bootstrap resampling and parallel execution settings
- Reporting options
"""

from pathlib import Path
from typing import Literal, Optional
import json
import yaml

from pydantic import BaseModel, Field, field_validator


class InputConfig(BaseModel):
    """Locations of the precomputed input files."""

    covariates_file: Optional[Path] = Field(default=None, description="Subject covariate TSV")
    tensor_file: Optional[Path] = Field(default=None, description="Tensor file (.npy or .npz)")
    pairs_file: Optional[Path] = Field(default=None, description="Ligand-receptor pair names")
    senders_file: Optional[Path] = Field(default=None, description="Sender cell type names")
    receivers_file: Optional[Path] = Field(default=None, description="Receiver cell type names")

    sample_column: str = Field(default="sample", description="Sample ID column in covariate table")
    covariates: list[str] = Field(default_factory=list, description="Metadata columns to encode")
    names_have_header: bool = Field(default=False)

    def missing_files(self) -> list[str]:
        """Names of required input fields that are unset."""
        required = ["covariates_file", "tensor_file", "pairs_file", "senders_file", "receivers_file"]
        return [name for name in required if getattr(self, name) is None]


class RankSelectionConfig(BaseModel):
    """Configuration for variance-explained rank selection."""

    variance_threshold: float = Field(default=1.0, description="Cumulative variance to capture")
    eigen_tol: float = Field(default=1e-10, description="Relative tolerance for negligible eigenvalues")

    # Fixed ranks bypass the selector for that mode
    sender_rank: Optional[int] = Field(default=None, ge=1)
    receiver_rank: Optional[int] = Field(default=None, ge=1)
    pair_rank: Optional[int] = Field(default=None, ge=1)

    @field_validator("variance_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("variance_threshold must be in (0, 1]")
        return v

    def overrides(self) -> dict[str, int]:
        """Fixed ranks keyed by mode name."""
        fixed = {
            "sender": self.sender_rank,
            "receiver": self.receiver_rank,
            "ligand_receptor": self.pair_rank,
        }
        return {k: v for k, v in fixed.items() if v is not None}


class FitConfig(BaseModel):
    """Configuration for the tensor regression fit."""

    max_iterations: int = Field(default=500, ge=1, description="Maximum alternating sweeps")
    tolerance: float = Field(default=1e-8, description="Relative loss change tolerance")
    regularization: float = Field(default=1e-8, description="Ridge regularization")


class BootstrapConfig(BaseModel):
    """Configuration for bootstrap significance estimation."""

    n_bootstrap: int = Field(default=100, description="Number of bootstrap replicates")
    seed: Optional[int] = Field(default=None, description="Base seed; replicate b uses seed + b (default: global seed)")
    n_workers: int = Field(default=5, description="Requested workers (capped by CPU count)")
    resampling: Literal["parametric", "residual"] = Field(default="parametric")
    null_hypothesis: bool = Field(
        default=True,
        description="Remove the tested covariate's effect from the resampling mean",
    )
    min_success_fraction: float = Field(default=0.5, description="Required fraction of successful replicates")
    replicate_timeout: Optional[float] = Field(default=None, description="Seconds per replicate fit")
    enabled: bool = Field(default=True)

    @field_validator("n_bootstrap")
    @classmethod
    def validate_n_bootstrap(cls, v: int) -> int:
        if v < 1:
            raise ValueError("n_bootstrap must be a positive integer")
        return v

    @field_validator("min_success_fraction")
    @classmethod
    def validate_fraction(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("min_success_fraction must be in (0, 1]")
        return v


class ParallelConfig(BaseModel):
    """Configuration for parallel execution."""

    backend: str = Field(default="loky", description="Joblib backend")
    batch_size: str = Field(default="auto", description="Batch size for joblib")
    show_progress: bool = Field(default=True)


class ReportConfig(BaseModel):
    """Configuration for persisted outputs."""

    top_n: int = Field(default=20, ge=1, description="Number of top effects to report")
    save_figures: bool = Field(default=True)
    figure_format: list[str] = Field(default=["png"])
    table_formats: list[str] = Field(default=["tsv", "md"])


class Config(BaseModel):
    """Top-level configuration for the communication regression workflow."""

    inputs: InputConfig = Field(default_factory=InputConfig)
    ranks: RankSelectionConfig = Field(default_factory=RankSelectionConfig)
    fit: FitConfig = Field(default_factory=FitConfig)
    bootstrap: BootstrapConfig = Field(default_factory=BootstrapConfig)
    parallel: ParallelConfig = Field(default_factory=ParallelConfig)
    report: ReportConfig = Field(default_factory=ReportConfig)

    # Covariate whose effects are reported and tested (default: first non-intercept)
    covariate_of_interest: Optional[str] = Field(default=None)

    # Output directory
    output_dir: Path = Field(default=Path("outputs"))

    # Global seed
    seed: int = Field(default=42)

    # Logging
    log_level: str = Field(default="INFO")
    log_file: Optional[Path] = Field(default=None)

    def save(self, path: Path) -> None:
        """Save configuration to file (YAML or JSON)."""
        data = self.model_dump(mode="json")

        path.parent.mkdir(parents=True, exist_ok=True)

        if path.suffix in (".yml", ".yaml"):
            with open(path, "w") as f:
                yaml.dump(data, f, default_flow_style=False, sort_keys=False)
        else:
            with open(path, "w") as f:
                json.dump(data, f, indent=2)

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load configuration from file."""
        with open(path) as f:
            if path.suffix in (".yml", ".yaml"):
                data = yaml.safe_load(f) or {}
            else:
                data = json.load(f)

        config = cls(**data)

        # Input paths are relative to the config file
        for name in ("covariates_file", "tensor_file", "pairs_file", "senders_file", "receivers_file"):
            value = getattr(config.inputs, name)
            if value is not None and not value.is_absolute():
                setattr(config.inputs, name, path.parent / value)

        return config

    def bootstrap_seed(self) -> int:
        """Seed for bootstrap replicates."""
        return self.bootstrap.seed if self.bootstrap.seed is not None else self.seed


# Default configuration singleton
_default_config: Optional[Config] = None


def get_config() -> Config:
    """Get the default configuration instance."""
    global _default_config
    if _default_config is None:
        _default_config = Config()
    return _default_config


def set_config(config: Config) -> None:
    """Set the default configuration instance."""
    global _default_config
    _default_config = config
