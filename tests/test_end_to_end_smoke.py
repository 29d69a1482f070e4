"""
End-to-end smoke tests for the communication regression workflow.

These tests verify that the full pipeline and the CLI run without
errors, using few bootstrap replicates for speed.
"""

import json

import pytest
import numpy as np
from typer.testing import CliRunner

from commreg.analysis import CommunicationAnalysis
from commreg.cli import app
from commreg.config import BootstrapConfig, Config, ParallelConfig, RankSelectionConfig, ReportConfig
from commreg.errors import ConvergenceError, ShapeError
from commreg.models.regression import TensorRegressor, TuckerRegressionFitter

runner = CliRunner()


class FirstFitOnly(TensorRegressor):
    """Fits once, then fails every bootstrap refit."""

    def __init__(self):
        self.inner = TuckerRegressionFitter()
        self.calls = 0

    def fit(self, tensor, covariates, ranks):
        self.calls += 1
        if self.calls > 1:
            raise ConvergenceError("forced failure")
        return self.inner.fit(tensor, covariates, ranks)


def _config(**kwargs):
    return Config(
        bootstrap=BootstrapConfig(n_bootstrap=10, n_workers=1),
        parallel=ParallelConfig(show_progress=False),
        report=ReportConfig(top_n=5),
        **kwargs,
    )


class TestWorkflowSmoke:
    """Smoke tests for CommunicationAnalysis."""

    def test_full_run(self, small_dataset, temp_dir):
        analysis = CommunicationAnalysis(
            config=_config(covariate_of_interest=small_dataset.effect_covariate),
            output_dir=temp_dir / "outputs",
            tensor=small_dataset.tensor,
            covariates=small_dataset.covariates,
        )

        result = analysis.run()

        assert result.covariate == small_dataset.effect_covariate
        assert result.has_pvalues
        assert result.pvalues.n_success == 10
        assert len(result.effects) == int(np.prod(small_dataset.tensor.shape[1:]))

        out = temp_dir / "outputs"
        for name in ("results.json", "config.json", "effects.tsv", "pvalues.tsv", "summary.md"):
            assert (out / name).exists(), name
        assert (out / "figures").is_dir()

        with open(out / "results.json") as f:
            saved = json.load(f)
        assert saved["covariate"] == small_dataset.effect_covariate
        assert saved["ranks"]["covariate"] == small_dataset.covariates.n_covariates
        assert saved["bootstrap"]["n_success"] == 10

    def test_bootstrap_disabled(self, small_dataset, temp_dir):
        analysis = CommunicationAnalysis(
            config=_config(),
            output_dir=temp_dir,
            tensor=small_dataset.tensor,
            covariates=small_dataset.covariates,
        )

        result = analysis.run(n_bootstrap=0, save_outputs=False)

        assert result.pvalues is None
        assert result.bootstrap_error is None
        assert "not run" in result.summary_string()
        assert not (temp_dir / "results.json").exists()

    def test_failed_bootstrap_keeps_effects(self, small_dataset, temp_dir):
        analysis = CommunicationAnalysis(
            config=_config(),
            output_dir=temp_dir,
            fitter=FirstFitOnly(),
            tensor=small_dataset.tensor,
            covariates=small_dataset.covariates,
        )

        result = analysis.run()

        assert result.pvalues is None
        assert "0/10" in result.bootstrap_error
        assert len(result.effects) > 0
        assert (temp_dir / "effects.tsv").exists()
        assert not (temp_dir / "pvalues.tsv").exists()
        assert "WARNING" in (temp_dir / "summary.md").read_text()

    def test_errors_carry_stage(self, small_dataset, temp_dir):
        analysis = CommunicationAnalysis(
            config=_config(ranks=RankSelectionConfig(sender_rank=50)),
            output_dir=temp_dir,
            tensor=small_dataset.tensor,
            covariates=small_dataset.covariates,
        )

        with pytest.raises(ShapeError) as excinfo:
            analysis.run(save_outputs=False)
        assert excinfo.value.stage == "ranks"

    def test_unknown_covariate(self, small_dataset, temp_dir):
        analysis = CommunicationAnalysis(
            config=_config(covariate_of_interest="batch"),
            output_dir=temp_dir,
            tensor=small_dataset.tensor,
            covariates=small_dataset.covariates,
        )

        with pytest.raises(ValueError, match="batch"):
            analysis.run(save_outputs=False)

    def test_tensor_without_covariates(self, small_dataset):
        with pytest.raises(ValueError):
            CommunicationAnalysis(config=_config(), tensor=small_dataset.tensor)


class TestCLISmoke:
    """Smoke tests for the commreg CLI."""

    def test_help(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "simulate" in result.output

    def test_info(self):
        result = runner.invoke(app, ["info"])
        assert result.exit_code == 0
        assert "commreg" in result.output

    def test_missing_config(self, temp_dir):
        result = runner.invoke(app, ["run", "--config", str(temp_dir / "nope.yaml")])
        assert result.exit_code == 2

    def test_missing_inputs(self, temp_dir):
        result = runner.invoke(app, ["run", "--no-save", "-o", str(temp_dir)])
        assert result.exit_code == 1
        assert "Missing input" in result.output

    def test_invalid_threshold(self, temp_dir):
        result = runner.invoke(app, ["ranks", "--threshold", "1.5"])
        assert result.exit_code == 2

    @pytest.mark.slow
    def test_simulate_then_run(self, temp_dir):
        data_dir = temp_dir / "sim"
        result = runner.invoke(app, [
            "simulate", str(data_dir),
            "--samples", "20", "--senders", "4", "--receivers", "3", "--pairs", "5",
            "--seed", "3",
        ])
        assert result.exit_code == 0, result.output
        config_path = data_dir / "config.yaml"
        assert config_path.exists()

        result = runner.invoke(app, ["ranks", "--config", str(config_path)])
        assert result.exit_code == 0, result.output
        assert "sender" in result.output

        result = runner.invoke(app, ["run", "--config", str(config_path), "-b", "5", "-w", "1"])
        assert result.exit_code == 0, result.output
        assert (data_dir / "results" / "results.json").exists()
        assert (data_dir / "results" / "pvalues.tsv").exists()
