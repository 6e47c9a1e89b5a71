"""
Tests for the command-line interface.
"""

import json

from phylofit.cli.main import app
from phylofit.io.model_file import read_model


class TestCLIHelp:
    """Test help messages and basic CLI functionality."""

    def test_main_help(self, cli_runner):
        """Main help lists the commands."""
        result = cli_runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "fit" in result.stdout
        assert "models" in result.stdout

    def test_fit_help(self, cli_runner):
        """Fit help documents the main options."""
        result = cli_runner.invoke(app, ["fit", "--help"])
        assert result.exit_code == 0
        assert "--subst-mod" in result.stdout
        assert "--tree" in result.stdout

    def test_models(self, cli_runner):
        """Every substitution model is listed with its parameter count."""
        result = cli_runner.invoke(app, ["models"])
        assert result.exit_code == 0
        assert "HKY85" in result.stdout
        rev = next(line for line in result.stdout.splitlines() if line.startswith("REV "))
        assert rev.split()[4] == "6"


class TestFitCommand:
    """Test the fit command end to end."""

    def test_writes_model(self, cli_runner, alignment_file, tree_file, tmp_path):
        """A fit writes the model file under the output root."""
        root = str(tmp_path / "out")
        result = cli_runner.invoke(app, [
            "fit", str(alignment_file), "-t", str(tree_file), "-s", "HKY85", "-o", root,
        ])

        assert result.exit_code == 0, result.output
        assert "Log-likelihood" in result.stdout
        assert read_model(root + ".mod").kind.value == "HKY85"

    def test_json_output(self, cli_runner, alignment_file, tree_file, tmp_path):
        """--json prints one record per unit."""
        result = cli_runner.invoke(app, [
            "fit", str(alignment_file), "-t", str(tree_file), "-s", "F81",
            "-o", str(tmp_path / "out"), "--json", "-q",
        ])

        assert result.exit_code == 0, result.output
        records = json.loads(result.stdout)
        assert len(records) == 1
        assert records[0]["model"]["subst_mod"] == "F81"
        assert records[0]["lnL"] < 0

    def test_likelihood_only(self, cli_runner, alignment_file, tree_file, tmp_path):
        """A fitted model can be rescored without optimization."""
        root = str(tmp_path / "out")
        cli_runner.invoke(app, ["fit", str(alignment_file), "-t", str(tree_file),
                                "-s", "HKY85", "-o", root, "-q"])
        result = cli_runner.invoke(app, [
            "fit", str(alignment_file), "-M", root + ".mod", "--lnl",
            "-o", str(tmp_path / "rescored"), "--json", "-q",
        ])

        assert result.exit_code == 0, result.output
        lnl = json.loads(result.stdout)[0]["lnL"]
        assert abs(lnl - read_model(root + ".mod").lnl) < 1e-4

    def test_windows(self, cli_runner, alignment_file, tree_file, tmp_path):
        """Sliding windows produce a summary file."""
        root = str(tmp_path / "out")
        result = cli_runner.invoke(app, [
            "fit", str(alignment_file), "-t", str(tree_file), "-s", "HKY85",
            "-o", root, "-w", "100,100", "-q",
        ])

        assert result.exit_code == 0, result.output
        assert (tmp_path / "out.win-sum").exists()
        assert (tmp_path / "out.win-2.mod").exists()

    def test_unknown_model(self, cli_runner, alignment_file, tree_file):
        """Unknown models are reported as errors."""
        result = cli_runner.invoke(app, [
            "fit", str(alignment_file), "-t", str(tree_file), "-s", "K80",
        ])
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_bad_windows(self, cli_runner, alignment_file, tree_file):
        """Window options need a size and a shift."""
        result = cli_runner.invoke(app, [
            "fit", str(alignment_file), "-t", str(tree_file), "-w", "100",
        ])
        assert result.exit_code == 1
        assert "SIZE,SHIFT" in result.output

    def test_tree_required(self, cli_runner, alignment_file):
        """Four sequences need a tree."""
        result = cli_runner.invoke(app, ["fit", str(alignment_file), "-s", "HKY85"])
        assert result.exit_code == 1
        assert "--tree required" in result.output
