"""
Unit tests for tree models and their parameter layout.
"""

import numpy as np
import pytest

from phylofit.config import BranchLengthMode, SubtreeBound
from phylofit.core.stats import SufficientStats
from phylofit.errors import ConfigurationError, DataError, ModelError
from phylofit.io.sequences import Alignment
from phylofit.io.trees import Tree
from phylofit.models.subst import SubstModelKind
from phylofit.models.tree_model import Ownership, TreeModel

NEWICK = "((a:0.1,b:0.2):0.3,(c:0.1,d:0.1):0.2);"
ULTRAMETRIC = "((a:1,b:1):1,(c:0.5,d:0.5):1.5);"


def _model(kind=SubstModelKind.HKY85, newick=NEWICK, **kwargs):
    return TreeModel.new(Tree.from_newick(newick), kind, "ACGT", **kwargs)


def _stats(seqs):
    aln = Alignment.from_sequences([f"s{i}" for i in range(len(seqs))], seqs)
    return SufficientStats.from_alignment(aln, 1)


class TestConstruction:
    """Test model creation and basic properties."""

    def test_defaults(self):
        """New models have uniform frequencies and unit rate parameters."""
        model = _model()

        np.testing.assert_allclose(model.backgd, 0.25)
        np.testing.assert_allclose(model.subst_params, [1.0])
        assert model.nstates == 4
        assert model.reversible
        assert model.rate_matrix.shape == (4, 4)

    def test_background_length(self):
        """Background frequencies must have one entry per state."""
        with pytest.raises(ModelError, match="16 states"):
            _model(SubstModelKind.R2, backgd=np.full(4, 0.25))

    def test_rate_constants_sorted(self):
        """Rate constants are stored in ascending order with equal weights."""
        model = _model(nratecats=3, rate_consts=[4.0, 0.5, 1.0])

        np.testing.assert_allclose(model.rate_consts, [0.5, 1.0, 4.0])
        np.testing.assert_allclose(model.rate_weights, 1.0 / 3.0)

    def test_reinit_keeps_order(self):
        """Reinitializing to a model of another order is an error."""
        model = _model()
        model.reinit(SubstModelKind.REV, 1, 1.0)
        assert len(model.subst_params) == 6

        with pytest.raises(ModelError, match="context order"):
            model.reinit(SubstModelKind.R2, 1, 1.0)

    def test_root_distribution(self):
        """Non-reversible models use their stationary distribution at the root."""
        model = _model(SubstModelKind.UNREST)
        model.subst_params = np.linspace(0.5, 2.0, 12)
        model.set_subst_matrices()

        np.testing.assert_allclose(model.root_distribution(), model.stationary)
        np.testing.assert_allclose(model.root_distribution() @ model.rate_matrix, 0.0, atol=1e-10)


class TestBorrowing:
    """Test borrowed models shared across units."""

    def test_reset_restores_state(self):
        """A borrowed model returns to its borrowed state."""
        model = _model()
        model.mark_borrowed()
        model.tree.nodes[2].branch_length = 9.0
        model.subst_params[0] = 7.0
        model.lnl = -10.0

        model.reset_for_unit()

        assert model.tree.nodes[2].branch_length == pytest.approx(0.1)
        assert model.subst_params[0] == pytest.approx(1.0)
        assert model.lnl is None
        assert model.ownership == Ownership.BORROWED

    def test_release(self):
        """A released model is owned again and keeps its stored likelihood."""
        model = _model()
        model.lnl = -50.0
        model.mark_borrowed()
        model.reset_for_unit()
        model.subst_params[0] = 7.0

        model.release()

        assert model.subst_params[0] == pytest.approx(1.0)
        assert model.lnl == -50.0
        assert model.ownership == Ownership.OWNED
        with pytest.raises(ModelError):
            model.release()

    def test_reset_owned(self):
        """Only borrowed models can be reset."""
        with pytest.raises(ModelError):
            _model().reset_for_unit()

    def test_copy_is_owned(self):
        """Copies are independent and owned."""
        model = _model()
        model.mark_borrowed()
        dup = model.copy()
        dup.tree.nodes[2].branch_length = 5.0

        assert dup.ownership == Ownership.OWNED
        assert model.tree.nodes[2].branch_length == pytest.approx(0.1)


class TestFreeLayout:
    """Test the layout with one length per branch."""

    def test_groups(self):
        """Empty groups are omitted; frequencies are frozen unless estimated."""
        model = _model()
        layout = model.layout()

        assert layout.names == ["branches", "backgd", "ratematrix"]
        assert layout.group("backgd").frozen
        assert not layout.group("ratematrix").frozen

    def test_shared_root_branch(self):
        """Reversible models share one parameter for the two root branches."""
        model = _model()
        layout = model.layout()
        params = model.pack(layout)

        assert layout.group("branches").size == 5
        shared = [idx for node, idx, factor in layout.edge_params if factor == 0.5]
        assert len(shared) == 2 and shared[0] == shared[1]
        assert params[shared[0]] == pytest.approx(0.5)

        params[shared[0]] = 1.0
        model.unpack(layout, params)
        assert model.tree.nodes[1].branch_length == pytest.approx(0.5)
        assert model.tree.nodes[4].branch_length == pytest.approx(0.5)

    def test_nonreversible_branches(self):
        """Non-reversible models estimate every branch separately."""
        model = _model(SubstModelKind.UNREST)
        layout = model.layout()

        assert layout.group("branches").size == 6
        assert "backgd" not in layout.names

    def test_pack_unpack_round_trip(self):
        """Unpacking packed parameters leaves them unchanged."""
        model = _model(SubstModelKind.REV, nratecats=4, alpha=0.7)
        model.estimate_backgd = True
        model.backgd = np.array([0.1, 0.2, 0.3, 0.4])
        model.subst_params = np.arange(1.0, 7.0)
        layout = model.layout()
        params = model.pack(layout)

        model.unpack(layout, params)

        np.testing.assert_allclose(model.pack(layout), params)
        assert model.alpha == pytest.approx(0.7)
        assert layout.group("ratevar").size == 1

    def test_no_opt_and_bounds(self):
        """Groups named in no_opt are frozen; user bounds override defaults."""
        model = _model()
        model.no_opt = frozenset({"branches"})
        model.bounds = {"ratematrix": (0.5, None)}
        layout = model.layout()

        assert layout.group("branches").frozen
        assert layout.group("ratematrix").lower[0] == 0.5
        assert layout.group("ratematrix").upper[0] == pytest.approx(1e4)
        assert layout.free_mask().sum() == 1

    def test_ignored_branches_fixed(self):
        """Ignored branches carry no parameter and have root-distribution rows."""
        model = _model(SubstModelKind.UNREST)
        model.set_ignored_branches(["a"])
        layout = model.layout()
        node_a = model.tree.get_node("a").id

        assert layout.group("branches").size == 5
        assert node_a not in [node for node, _, _ in layout.edge_params]
        P = model.transition_matrices()
        np.testing.assert_allclose(P[0, node_a], np.tile(model.root_distribution(), (4, 1)))

    def test_rate_constant_weights(self):
        """Fixed rate constants give one weight parameter per category."""
        model = _model(nratecats=2, rate_consts=[0.5, 2.0])
        layout = model.layout()
        g = layout.group("ratevar")
        assert g.size == 2

        params = model.pack(layout)
        params[g.slice] = [3.0, 1.0]
        model.unpack(layout, params)
        np.testing.assert_allclose(model.rate_weights, [0.75, 0.25])


class TestOtherLayouts:
    """Test clock, scale-only and fixed branch lengths."""

    def test_clock(self):
        """Clock layouts hold a root height and logit-scaled fractions."""
        model = _model(newick=ULTRAMETRIC)
        model.branchlen_mode = BranchLengthMode.CLOCK
        layout = model.layout()
        params = model.pack(layout)

        assert layout.clock_nodes == [1, 4]
        assert list(layout.logit_mask()[:3]) == [False, True, True]
        np.testing.assert_allclose(params[:3], [2.0, 0.5, 0.25])

        params[1] = 0.25
        model.unpack(layout, params)
        assert model.tree.nodes[1].branch_length == pytest.approx(1.5)
        assert model.tree.nodes[2].branch_length == pytest.approx(0.5)

    def test_clock_transform_round_trip(self):
        """Internal and natural scales invert each other."""
        model = _model(newick=ULTRAMETRIC)
        model.branchlen_mode = BranchLengthMode.CLOCK
        layout = model.layout()
        params = model.pack(layout)

        x = layout.to_internal(params)
        np.testing.assert_allclose(layout.to_natural(x, params), params)
        assert len(layout.internal_bounds()) == len(x)

    def test_scale_only_with_subtree(self):
        """A subtree adds a second scale factor bounded by its constraint."""
        model = _model()
        model.branchlen_mode = BranchLengthMode.SCALE_ONLY
        model.set_subtree("a", SubtreeBound.LOSS)
        layout = model.layout()

        assert layout.names[:2] == ["scale", "scale_sub"]
        assert layout.group("scale_sub").upper[0] == 1.0

        model.set_subtree("a", SubtreeBound.GAIN)
        assert model.layout().group("scale_sub").lower[0] == 1.0

    def test_scaled_edge_lengths(self):
        """Scale factors multiply the branch lengths."""
        model = _model()
        model.scale = 2.0
        model.set_subtree("a")
        model.scale_sub = 3.0
        lengths = model.edge_lengths()

        node_a = model.tree.get_node("a").id
        assert lengths[0] == 0.0
        assert lengths[node_a] == pytest.approx(0.6)
        assert lengths[model.tree.get_node("b").id] == pytest.approx(0.4)

    def test_no_branch_lengths(self):
        """Without branch-length estimation there is no branches group."""
        model = _model()
        model.branchlen_mode = BranchLengthMode.NONE
        assert "branches" not in model.layout().names

    def test_unknown_subtree(self):
        """Naming a missing subtree is an error."""
        with pytest.raises(ConfigurationError):
            _model().set_subtree("zebra")


class TestTreeEditing:
    """Test pruning, ancestral leaves and alternative models."""

    def test_prune(self):
        """Leaves without sequences are removed."""
        model = _model()
        assert model.prune(["a", "b", "c"]) == ["d"]
        assert model.tree.n_leaves == 3

    def test_prune_no_match(self):
        """A tree sharing no leaf with the alignment is an error."""
        with pytest.raises(DataError, match="No match"):
            _model().prune(["x", "y"])

    def test_root_leaf(self):
        """An ancestral leaf must hang from the root of a non-reversible model."""
        with pytest.raises(ConfigurationError):
            _model(newick="(anc:0.1,(a:0.1,b:0.1):0.1);").set_root_leaf("anc")

        model = _model(SubstModelKind.UNREST, newick="(anc:0.1,(a:0.1,b:0.1):0.1);")
        with pytest.raises(DataError):
            model.set_root_leaf("a")

        model.set_root_leaf("anc")
        assert model.tree.get_node("anc").branch_length == 0.0
        layout = model.layout()
        assert layout.group("branches").size == 3

    def test_alt_model_full(self):
        """An alternative model of the same order gets its own rate matrix."""
        model = _model(SubstModelKind.REV)
        model.attach_alt_models(["a,b:HKY85"])
        layout = model.layout()

        alt = model.alt_models[0]
        assert alt.kind == SubstModelKind.HKY85
        assert alt.nodes == [2, 3]
        assert layout.group("alt0.ratematrix").size == 1

    def test_alt_model_groups(self):
        """Separate groups copy the main model's values."""
        model = _model(SubstModelKind.REV)
        model.attach_alt_models(["c:ratematrix,backgd"])
        layout = model.layout()

        assert layout.names[-2:] == ["alt0.ratematrix", "alt0.backgd"]
        np.testing.assert_allclose(model.alt_models[0].backgd, model.backgd)

    def test_alt_backgd_follows_estimate_flag(self):
        """Separate background frequencies are estimated only with the main ones."""
        model = _model(SubstModelKind.REV)
        model.attach_alt_models(["c:backgd"])

        assert model.layout().group("alt0.backgd").frozen
        model.estimate_backgd = True
        assert not model.layout().group("alt0.backgd").frozen
        model.no_opt = frozenset({"backgd"})
        assert model.layout().group("alt0.backgd").frozen

    def test_alt_model_errors(self):
        """Order mismatches and impossible groups are rejected."""
        with pytest.raises(ConfigurationError, match="same order"):
            _model(SubstModelKind.REV).attach_alt_models(["a:R2"])
        with pytest.raises(ConfigurationError, match="background"):
            _model(SubstModelKind.JC69).attach_alt_models(["a:backgd"])
        with pytest.raises(ConfigurationError, match="No branch"):
            _model().attach_alt_models(["zebra:HKY85"])


class TestBackgroundFrequencies:
    """Test empirical background frequencies."""

    def test_uniform_data(self):
        """Balanced data give uniform frequencies."""
        model = _model()
        model.init_backgd(_stats(["ACGT", "ACGT"]))
        np.testing.assert_allclose(model.backgd, 0.25)
        assert model.gc_content() == pytest.approx(0.5)

    def test_pseudocount(self):
        """An unobserved base adds a pseudocount to every state."""
        model = _model()
        model.init_backgd(_stats(["AAAC", "AAAC"]))
        np.testing.assert_allclose(model.backgd, np.array([7, 3, 1, 1]) / 12)

    def test_missing_data_ignored(self):
        """Rows with missing symbols are not counted."""
        model = _model()
        model.init_backgd(_stats(["ACGTN", "ACGT-"]))
        np.testing.assert_allclose(model.backgd, 0.25)

    def test_strand_symmetric(self):
        """Symmetric frequencies average reverse-complement states."""
        model = _model()
        model.eqfreq_sym = True
        model.init_backgd(_stats(["AAAC", "AAAC"]))
        np.testing.assert_allclose(model.backgd, np.array([4, 2, 2, 4]) / 12)

        model.estimate_backgd = True
        assert model.layout().group("backgd").size == 2

    def test_jc69_stays_uniform(self):
        """JC69 keeps uniform frequencies."""
        model = _model(SubstModelKind.JC69)
        model.init_backgd(_stats(["AAAC", "AAAC"]))
        np.testing.assert_allclose(model.backgd, 0.25)
