"""
Unit tests for per-unit output tables.
"""

import numpy as np
import pytest

from phylofit.fitting.output import (
    unit_filename,
    window_summary_header,
    window_summary_row,
    write_column_probs,
    write_parsimony_cost,
    write_standard_errors,
)
from phylofit.io.trees import Tree
from phylofit.models.subst import SubstModelKind
from phylofit.models.tree_model import TreeModel


class TestFilenames:
    """Test output file naming."""

    @pytest.mark.parametrize("args, expected", [
        (("out", ".mod"), "out.mod"),
        (("out", ".mod", 0), "out.win-1.mod"),
        (("out", ".mod", None, "CDS"), "out.CDS.mod"),
        (("out", ".postprob", 2, "3"), "out.win-3.3.postprob"),
    ])
    def test_names(self, args, expected):
        """Window numbers are 1-based and labels follow them."""
        assert unit_filename(*args) == expected


class TestTables:
    """Test table formatting."""

    def test_window_summary(self):
        """Rows carry window, coordinates, GC and total branch length."""
        model = TreeModel.new(Tree.from_newick("(a:0.1,b:0.2);"), SubstModelKind.F81, "ACGT",
                              backgd=np.array([0.1, 0.4, 0.3, 0.2]))
        header = window_summary_header()
        row = window_summary_row(0, 1, 100, -1, model, 42).split()

        assert header.startswith("#")
        assert header.splitlines()[1].split() == ["win", "beg", "end", "cat", "GC", "CpG", "ninf", "t"]
        assert row[:4] == ["1", "1", "100", "-1"]
        assert float(row[4]) == pytest.approx(0.7)
        assert row[5] == "nan"
        assert row[6] == "42"
        assert float(row[7]) == pytest.approx(0.3)

    def test_column_probs(self, tmp_path):
        """One indexed value per column."""
        path = tmp_path / "out.colprobs"
        write_column_probs(path, np.array([-2.0, np.nan, -1.5]))
        lines = path.read_text().splitlines()

        assert lines == ["0\t-2.000000", "1\tnan", "2\t-1.500000"]

    def test_parsimony_cost(self, tmp_path):
        path = tmp_path / "pars.txt"
        with open(path, "w") as f:
            write_parsimony_cost(f, 12.0)
        assert path.read_text() == "12.000000\n"

    def test_standard_errors(self, tmp_path):
        """Frozen parameters are left out; later units are appended."""
        path = tmp_path / "out.errors"
        write_standard_errors(path, ["branches[0]", "ratematrix[0]"],
                              np.array([0.2, 4.0]), np.array([0.01, np.nan]))
        write_standard_errors(path, ["branches[0]"], np.array([0.3]), np.array([0.02]),
                              append=True, title="win-2")

        lines = path.read_text().splitlines()
        assert lines == ["branches[0]\t0.2\t0.01", "# win-2", "branches[0]\t0.3\t0.02"]
