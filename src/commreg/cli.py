"""
Command-line interface for communication regression analysis.

Usage:
    commreg --help
    commreg simulate data/
    commreg run --config data/config.yaml
    commreg ranks --config data/config.yaml --threshold 0.9
"""

from pathlib import Path
from typing import Any, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from commreg.config import Config
from commreg.errors import CommRegError
from commreg.logging import setup_logging, get_logger

app = typer.Typer(
    name="commreg",
    help="Tensor regression of cell-cell communication scores on sample covariates",
    add_completion=False,
)

console = Console()


def _fail(error: Exception | str, code: int = 1) -> None:
    """Print a workflow error without a traceback and exit."""
    console.print(f"[bold red]Error:[/bold red] {escape(str(error))}")
    raise typer.Exit(code)


def _build_config(
    config_file: Optional[Path] = None,
    inputs: Optional[dict[str, Any]] = None,
    **overrides: Any,
) -> Config:
    """
    Load a configuration file and apply command-line overrides.

    Overrides are given as ``section__field=value``; None values are ignored.
    """
    if config_file is not None and not config_file.exists():
        _fail(f"Config file not found: {config_file}", code=2)

    cfg = Config.load(config_file) if config_file else Config()
    data = cfg.model_dump()

    for name, value in (inputs or {}).items():
        if value is not None:
            data["inputs"][name] = value

    for key, value in overrides.items():
        if value is None:
            continue
        if "__" in key:
            section, name = key.split("__", 1)
            data[section][name] = value
        else:
            data[key] = value

    try:
        return Config.model_validate(data)
    except ValidationError as e:
        _fail(f"Invalid configuration:\n{e}", code=2)


def _input_options(
    covariates: Optional[Path],
    tensor: Optional[Path],
    pairs: Optional[Path],
    senders: Optional[Path],
    receivers: Optional[Path],
) -> dict[str, Optional[Path]]:
    return {
        "covariates_file": covariates,
        "tensor_file": tensor,
        "pairs_file": pairs,
        "senders_file": senders,
        "receivers_file": receivers,
    }


# ============================================================================
# RUN command
# ============================================================================

@app.command("run")
def run(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML or JSON config"),
    covariates: Optional[Path] = typer.Option(None, "--covariates", help="Subject covariate TSV"),
    tensor: Optional[Path] = typer.Option(None, "--tensor", help="Tensor file (.npy/.npz)"),
    pairs: Optional[Path] = typer.Option(None, "--pairs", help="Ligand-receptor pair names"),
    senders: Optional[Path] = typer.Option(None, "--senders", help="Sender cell type names"),
    receivers: Optional[Path] = typer.Option(None, "--receivers", help="Receiver cell type names"),
    covariate: Optional[str] = typer.Option(None, "--covariate", help="Covariate of interest"),
    n_bootstrap: Optional[int] = typer.Option(None, "--bootstrap", "-b", help="Bootstrap replicates (0 to skip)"),
    seed: Optional[int] = typer.Option(None, "--seed", "-s", help="Random seed"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", help="Parallel workers"),
    threshold: Optional[float] = typer.Option(None, "--threshold", "-t", help="Variance threshold in (0, 1]"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output directory"),
    no_save: bool = typer.Option(False, "--no-save", help="Do not write output files"),
):
    """Run the full workflow: ranks, fit, effects, and bootstrap p-values."""
    cfg = _build_config(
        config,
        inputs=_input_options(covariates, tensor, pairs, senders, receivers),
        covariate_of_interest=covariate,
        output_dir=output,
        seed=seed,
        ranks__variance_threshold=threshold,
        bootstrap__n_workers=workers,
    )
    setup_logging(cfg.log_level, cfg.log_file)

    from commreg.analysis import CommunicationAnalysis

    try:
        result = CommunicationAnalysis(config=cfg).run(
            n_bootstrap=n_bootstrap,
            seed=seed,
            save_outputs=not no_save,
        )
    except CommRegError as e:
        _fail(e)

    table = Table(title=f"Top effects of {result.covariate}")
    table.add_column("Ligand-receptor")
    table.add_column("Sender")
    table.add_column("Receiver")
    table.add_column("Effect", justify="right")
    if result.pvalues is not None:
        table.add_column("p-value", justify="right")
        table.add_column("q-value", justify="right")

    for (pair, sender, receiver), row in result.effects.top(cfg.report.top_n).iterrows():
        cells = [pair, sender, receiver, f"{row['effect']:+.4f}"]
        if result.pvalues is not None:
            p = result.pvalues.table.loc[(pair, sender, receiver)]
            style = "red" if p["q_value"] < 0.05 else ""
            cells += [f"[{style}]{p['p_value']:.4f}[/{style}]" if style else f"{p['p_value']:.4f}",
                      f"{p['q_value']:.4f}"]
        table.add_row(*cells)

    console.print(table)

    if result.bootstrap_error:
        console.print(f"[yellow]Bootstrap failed: {escape(result.bootstrap_error)}[/yellow]")
    if not no_save:
        console.print(f"[green]Outputs written to {cfg.output_dir}[/green]")


# ============================================================================
# RANKS command
# ============================================================================

@app.command("ranks")
def ranks(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML or JSON config"),
    covariates: Optional[Path] = typer.Option(None, "--covariates"),
    tensor: Optional[Path] = typer.Option(None, "--tensor"),
    pairs: Optional[Path] = typer.Option(None, "--pairs"),
    senders: Optional[Path] = typer.Option(None, "--senders"),
    receivers: Optional[Path] = typer.Option(None, "--receivers"),
    threshold: Optional[float] = typer.Option(None, "--threshold", "-t", help="Variance threshold in (0, 1]"),
):
    """Select decomposition ranks without fitting."""
    cfg = _build_config(
        config,
        inputs=_input_options(covariates, tensor, pairs, senders, receivers),
        ranks__variance_threshold=threshold,
    )
    setup_logging(cfg.log_level, cfg.log_file)

    from commreg.analysis import CommunicationAnalysis

    try:
        decomposition, selections = CommunicationAnalysis(config=cfg).select_ranks()
    except CommRegError as e:
        _fail(e)

    table = Table(title=f"Decomposition ranks (threshold {cfg.ranks.variance_threshold:g})")
    table.add_column("Mode")
    table.add_column("Size", justify="right")
    table.add_column("Rank", justify="right")
    table.add_column("Variance captured", justify="right")

    table.add_row("covariate", str(decomposition.covariate), str(decomposition.covariate), "-")
    for mode, selection in selections.items():
        captured = selection.cumulative_ratio[selection.rank - 1]
        table.add_row(mode, str(len(selection.spectrum)), str(selection.rank), f"{captured:.1%}")

    console.print(table)


# ============================================================================
# SIMULATE command
# ============================================================================

@app.command("simulate")
def simulate(
    out_dir: Path = typer.Argument(..., help="Directory for the generated inputs"),
    n_samples: int = typer.Option(50, "--samples", help="Number of samples"),
    n_senders: int = typer.Option(10, "--senders", help="Number of sender cell types"),
    n_receivers: int = typer.Option(10, "--receivers", help="Number of receiver cell types"),
    n_pairs: int = typer.Option(20, "--pairs", help="Number of ligand-receptor pairs"),
    sender_rank: int = typer.Option(2, "--sender-rank", help="Rank of the sender structure"),
    effect_size: float = typer.Option(1.0, "--effect-size", help="Injected treatment effect"),
    seed: int = typer.Option(42, "--seed", "-s", help="Random seed"),
):
    """Write a synthetic dataset and a matching config.yaml."""
    setup_logging("INFO")
    logger = get_logger()

    from commreg.data import make_synthetic_dataset, write_inputs

    try:
        dataset = make_synthetic_dataset(
            n_samples=n_samples,
            n_senders=n_senders,
            n_receivers=n_receivers,
            n_pairs=n_pairs,
            sender_rank=sender_rank,
            effect_size=effect_size,
            seed=seed,
        )
    except (CommRegError, ValueError) as e:
        _fail(e)

    inputs = write_inputs(dataset.tensor, dataset.metadata, out_dir)
    # Paths in the config are relative to the config file
    for name in ("covariates_file", "tensor_file", "pairs_file", "senders_file", "receivers_file"):
        setattr(inputs, name, Path(getattr(inputs, name).name))

    cfg = Config(
        inputs=inputs,
        covariate_of_interest=dataset.effect_covariate,
        output_dir=out_dir.resolve() / "results",
        seed=seed,
    )
    cfg.save(out_dir / "config.yaml")

    n_true = int((dataset.true_effect != 0).sum())
    logger.info(f"Synthetic tensor {dataset.tensor.shape} with {n_true} true effects")
    console.print(f"[green]Synthetic dataset written to {out_dir}[/green]")
    console.print(f"Run it with: commreg run --config {out_dir / 'config.yaml'}")


# ============================================================================
# INFO command
# ============================================================================

@app.command("info")
def info():
    """Show package information and expected input formats."""
    from commreg import __version__

    console.print(f"[bold]commreg[/bold] v{__version__}")
    console.print()

    table = Table(title="Inputs")
    table.add_column("Input")
    table.add_column("Format")
    table.add_column("Description")

    table.add_row("covariates", "TSV with header", "One row per sample; sample ID column plus covariates")
    table.add_row("tensor", ".npy / .npz", "sample x sender x receiver x ligand-receptor scores")
    table.add_row("pairs", "TSV, one column", "Ligand-receptor pair names")
    table.add_row("senders", "TSV, one column", "Sender cell type names")
    table.add_row("receivers", "TSV, one column", "Receiver cell type names")

    console.print(table)


if __name__ == "__main__":
    app()
