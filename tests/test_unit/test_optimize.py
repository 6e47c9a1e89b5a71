"""
Unit tests for starting values, direct optimization and EM.
"""

import numpy as np
import pytest

from phylofit.config import Precision
from phylofit.core.stats import SufficientStats
from phylofit.io.sequences import Alignment
from phylofit.io.trees import Tree
from phylofit.models.subst import SubstModelKind
from phylofit.models.tree_model import TreeModel
from phylofit.optimize.em import expected_complete_lnl, fit_em
from phylofit.optimize.init import (
    DEFAULT_BRANCH_LENGTH,
    fitch_states,
    init_branchlens_parsimony,
    init_default,
    init_from_model,
    init_random,
)
from phylofit.optimize.optimizer import estimate_standard_errors, fit_direct


def _jc_distance(p):
    return -0.75 * np.log(1.0 - 4.0 * p / 3.0)


@pytest.fixture
def pair_model():
    return TreeModel.new(Tree.from_newick("(a:0.1,b:0.1);"), SubstModelKind.JC69, "ACGT")


@pytest.fixture
def pair_stats(pair_alignment):
    return SufficientStats.from_alignment(pair_alignment, 1)


@pytest.fixture
def hky_model(four_taxon_tree):
    return TreeModel.new(four_taxon_tree, SubstModelKind.HKY85, "ACGT")


@pytest.fixture
def four_taxon_stats(four_taxon_alignment):
    return SufficientStats.from_alignment(four_taxon_alignment, 1)


class TestInitialValues:
    """Test starting points."""

    def test_default(self, hky_model):
        """Branches start at 0.1 and kappa at 5."""
        layout = hky_model.layout()
        params = init_default(hky_model, layout)
        branches = params[layout.group("branches").slice]

        assert params[layout.group("ratematrix").slice][0] == pytest.approx(5.0)
        unshared = [idx for _, idx, factor in layout.edge_params if factor == 1.0]
        np.testing.assert_allclose(branches[unshared], DEFAULT_BRANCH_LENGTH)
        # the tree itself is not modified
        assert hky_model.tree.get_node("mouse").branch_length == pytest.approx(0.15)

    def test_default_keeps_frozen(self, hky_model):
        """Frozen groups keep the model's values."""
        hky_model.no_opt = frozenset({"ratematrix"})
        hky_model.subst_params = np.array([2.5])
        layout = hky_model.layout()
        params = init_default(hky_model, layout)
        assert params[layout.group("ratematrix").slice][0] == pytest.approx(2.5)

    def test_random_reproducible(self, hky_model):
        """Random starts are inside the bounds and follow the generator."""
        layout = hky_model.layout()
        one = init_random(hky_model, layout, np.random.default_rng(3))
        two = init_random(hky_model, layout, np.random.default_rng(3))

        np.testing.assert_allclose(one, two)
        assert np.all(one >= layout.lower()) and np.all(one <= layout.upper())

    def test_from_model(self, hky_model):
        """Model-derived starts are the packed model."""
        layout = hky_model.layout()
        np.testing.assert_allclose(init_from_model(hky_model, layout), hky_model.pack(layout))

    def test_gamma_shape(self, four_taxon_tree):
        """The starting gamma shape can be given explicitly."""
        model = TreeModel.new(four_taxon_tree, SubstModelKind.HKY85, "ACGT",
                              nratecats=4, alpha=1.0)
        layout = model.layout()
        params = init_default(model, layout, alpha=0.3)
        assert params[layout.group("ratevar").slice][0] == pytest.approx(0.3)


class TestParsimony:
    """Test Fitch parsimony and parsimony branch lengths."""

    NAMES = ["human", "chimp", "mouse", "rat"]

    def _stats(self, columns):
        seqs = ["".join(col[i] for col in columns) for i in range(4)]
        return SufficientStats.from_alignment(Alignment.from_sequences(self.NAMES, seqs), 1)

    def test_fitch_cost(self, hky_model):
        """Costs are the minimum number of changes per column."""
        stats = self._stats(["AAAA", "AACC", "ACGT", "ACAA"])
        _, cost = fitch_states(hky_model, stats)

        by_column = {stats.tuple_string(t): cost[t] for t in range(stats.ntuples)}
        assert by_column["AAAA"] == 0
        assert by_column["AACC"] == 1
        assert by_column["ACGT"] == 3
        assert by_column["ACAA"] == 1

    def test_branch_lengths(self, hky_model):
        """Lengths are change fractions, floored at 0.001."""
        stats = self._stats(["AAAA", "AACC", "AAAA", "AAAA"])
        cost = init_branchlens_parsimony(hky_model, stats)

        assert cost == pytest.approx(1.0)
        lengths = [node.branch_length for node in hky_model.tree.nodes[1:]]
        assert sum(length > 0.01 for length in lengths) == 1
        assert min(lengths) == pytest.approx(1e-3)
        assert max(lengths) == pytest.approx(0.25)

    def test_into_parameters(self, hky_model):
        """With a layout, lengths go into the parameter vector only."""
        stats = self._stats(["AAAA", "AACC"])
        layout = hky_model.layout()
        params = init_default(hky_model, layout)
        before = [node.branch_length for node in hky_model.tree.nodes]

        init_branchlens_parsimony(hky_model, stats, params=params, layout=layout)

        assert [node.branch_length for node in hky_model.tree.nodes] == before
        assert params[layout.group("branches").slice].min() == pytest.approx(1e-3)


class TestDirectOptimization:
    """Test L-BFGS-B fitting."""

    def test_two_taxon_distance(self, pair_model, pair_stats):
        """The fitted JC69 distance matches the closed-form estimate."""
        layout = pair_model.layout()
        result = fit_direct(pair_model, pair_stats, init_default(pair_model, layout),
                            layout=layout)

        assert layout.group("branches").size == 1
        assert result.params[0] == pytest.approx(_jc_distance(0.2), rel=1e-3)
        assert pair_model.lnl == pytest.approx(result.lnl)
        assert pair_model.edge_lengths().sum() == pytest.approx(_jc_distance(0.2), rel=1e-3)

    def test_improves_likelihood(self, hky_model, four_taxon_stats):
        """Fitting never ends below the starting likelihood."""
        hky_model.init_backgd(four_taxon_stats)
        layout = hky_model.layout()
        start = init_default(hky_model, layout)
        hky_model.unpack(layout, start)
        from phylofit.core.likelihood import TreeLikelihood
        start_lnl = TreeLikelihood(hky_model, four_taxon_stats).log_likelihood()

        result = fit_direct(hky_model, four_taxon_stats, start, precision=Precision.MED,
                            layout=layout)

        assert result.lnl >= start_lnl - 1e-8
        assert np.all(np.isfinite(result.params))

    def test_no_free_parameters(self, pair_model, pair_stats):
        """With everything frozen the likelihood is just evaluated."""
        pair_model.no_opt = frozenset({"branches"})
        layout = pair_model.layout()
        result = fit_direct(pair_model, pair_stats, pair_model.pack(layout), layout=layout)

        assert result.message == "no free parameters"
        assert result.n_iterations == 0
        assert np.isfinite(result.lnl)

    def test_log_output(self, pair_model, pair_stats, tmp_path):
        """Diagnostics are written to the log stream."""
        path = tmp_path / "fit.log"
        with open(path, "w") as log:
            fit_direct(pair_model, pair_stats, pair_model.pack(pair_model.layout()), log=log)
        text = path.read_text()
        assert text.startswith("it\tlnL\tbranches[0]")
        assert "Final lnL" in text

    def test_standard_errors(self, pair_model, pair_stats):
        """Standard errors are positive for free parameters."""
        layout = pair_model.layout()
        result = fit_direct(pair_model, pair_stats, pair_model.pack(layout), layout=layout)
        errors = estimate_standard_errors(pair_model, pair_stats, layout, result.params)

        assert errors.shape == result.params.shape
        assert errors[0] > 0
        assert pair_model.pack(layout)[0] == pytest.approx(result.params[0])


class TestEM:
    """Test expectation-maximization fitting."""

    def test_matches_direct(self, pair_model, pair_stats):
        """EM reaches the same two-taxon distance."""
        layout = pair_model.layout()
        result = fit_em(pair_model, pair_stats, init_default(pair_model, layout), layout=layout)

        assert result.params[0] == pytest.approx(_jc_distance(0.2), rel=1e-2)
        assert result.n_iterations > 1

    def test_monotone(self, hky_model, four_taxon_stats):
        """EM does not lower the likelihood of its starting point."""
        hky_model.init_backgd(four_taxon_stats)
        layout = hky_model.layout()
        start = init_default(hky_model, layout)
        hky_model.unpack(layout, start)
        from phylofit.core.likelihood import TreeLikelihood
        start_lnl = TreeLikelihood(hky_model, four_taxon_stats).log_likelihood()

        result = fit_em(hky_model, four_taxon_stats, start, precision=Precision.LOW,
                        layout=layout)
        assert result.lnl >= start_lnl - 1e-8

    def test_rate_weights_closed_form(self, four_taxon_tree, four_taxon_stats):
        """Rate-constant weights are updated and stay a distribution."""
        model = TreeModel.new(four_taxon_tree, SubstModelKind.HKY85, "ACGT",
                              nratecats=2, rate_consts=[0.2, 3.0])
        layout = model.layout()
        fit_em(model, four_taxon_stats, init_default(model, layout),
               precision=Precision.LOW, layout=layout)

        assert model.rate_weights.sum() == pytest.approx(1.0)
        assert np.all(model.rate_weights > 0)

    def test_complete_data_lnl_finite(self, hky_model, four_taxon_stats):
        """The M-step objective is finite at the E-step point."""
        from phylofit.core.likelihood import TreeLikelihood
        counts = TreeLikelihood(hky_model, four_taxon_stats).expected_counts()
        value = expected_complete_lnl(hky_model, counts)

        assert np.isfinite(value)
        assert value <= 0.0
