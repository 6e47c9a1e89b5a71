"""
Unit tests for I/O modules (alignment, tree and category map parsing).
"""

import numpy as np
import pytest

from phylofit.errors import ConfigurationError
from phylofit.io.category_map import CategoryMap, read_site_categories
from phylofit.io.sequences import Alignment
from phylofit.io.trees import Tree


class TestTreeParsing:
    """Test Newick parsing and the node arena."""

    def test_preorder_ids(self):
        """Node ids are assigned in preorder with the root at 0."""
        tree = Tree.from_newick("((a:0.1,b:0.2):0.3,c:0.4);")

        assert tree.n_nodes == 5
        assert tree.root.id == 0
        assert tree.nodes[1].children == [2, 3]
        assert [tree.nodes[i].name for i in (2, 3, 4)] == ["a", "b", "c"]
        assert tree.nodes[2].parent == 1
        assert tree.nodes[4].branch_length == pytest.approx(0.4)

    def test_missing_semicolon_and_comments(self):
        """A missing semicolon and bracketed comments are tolerated."""
        tree = Tree.from_newick("((a:1,b:1)[internal]:1,c:2)")
        assert tree.leaf_names == ["a", "b", "c"]

    def test_branch_labels(self):
        """'#k' labels are kept and can be used to look up nodes."""
        tree = Tree.from_newick("((a:1,b:1) #1:1,c:2);")
        assert tree.get_node("#1").children == [2, 3]

    def test_negative_branch_length(self):
        """Negative branch lengths are rejected."""
        with pytest.raises(ValueError, match="Negative"):
            Tree.from_newick("(a:-0.1,b:0.2);")

    def test_newick_round_trip(self):
        """Formatting and re-parsing keeps topology and lengths."""
        tree = Tree.from_newick("((a:0.1,b:0.2):0.3,c:0.4);")
        again = Tree.from_newick(tree.to_newick())

        assert again.leaf_names == tree.leaf_names
        assert again.total_length() == pytest.approx(tree.total_length())

    def test_traversals(self):
        """Postorder visits children before parents."""
        tree = Tree.from_newick("((a,b),c);")
        post = [node.id for node in tree.postorder()]
        pre = [node.id for node in tree.preorder()]

        assert post[-1] == 0
        assert pre == [0, 1, 2, 3, 4]
        assert tree.descendants(1) == [1, 2, 3]

    def test_prune_collapses_unary_nodes(self):
        """Pruning a leaf merges its sibling's branch with the parent branch."""
        tree = Tree.from_newick("((a:0.1,b:0.2):0.3,c:0.4);")
        pruned = tree.prune(["a", "c"])

        assert pruned == ["b"]
        assert tree.n_nodes == 3
        assert tree.get_node("a").branch_length == pytest.approx(0.4)
        assert [node.id for node in tree.preorder()] == [0, 1, 2]

    def test_prune_idempotent(self):
        """Pruning twice with the same names changes nothing the second time."""
        tree = Tree.from_newick("((a:0.1,b:0.2):0.3,(c:0.4,d:0.5):0.6);")
        tree.prune(["a", "c", "d"])
        newick = tree.to_newick()

        assert tree.prune(["a", "c", "d"]) == []
        assert tree.to_newick() == newick

    def test_prune_everything(self):
        """Pruning every leaf leaves an empty tree."""
        tree = Tree.from_newick("(a,b);")
        assert tree.prune(["x"]) == ["a", "b"]
        assert tree.nodes == []


class TestAlignment:
    """Test alignment construction and coordinate mapping."""

    def test_from_sequences(self):
        """Sequences are upper-cased and stored as character codes."""
        aln = Alignment.from_sequences(["a", "b"], ["acgt", "ACGA"])

        assert aln.n_species == 2
        assert aln.length == 4
        assert aln.sequence(0) == "ACGT"
        assert aln.ncats == -1

    def test_unequal_lengths(self):
        """Sequences of different lengths are rejected."""
        with pytest.raises(ValueError, match="length"):
            Alignment.from_sequences(["a", "b"], ["ACGT", "ACG"])

    def test_duplicate_names(self):
        """Sequence names must be unique."""
        with pytest.raises(ValueError, match="unique"):
            Alignment.from_sequences(["a", "a"], ["A", "C"])

    def test_categories(self):
        """Category labels must cover every column."""
        aln = Alignment.from_sequences(["a"], ["ACGT"], categories=[0, 1, 2, 1])
        assert aln.ncats == 2

        with pytest.raises(ValueError):
            aln.set_categories([1, 2])

    def test_coord_map(self):
        """Reference positions map to alignment columns, skipping gaps."""
        aln = Alignment.from_sequences(["ref", "other"], ["A-CG", "AACG"])
        cmap = aln.coord_map(0)

        assert list(cmap) == [0, 1, 3, 4]
        assert aln.map_seq_to_msa(cmap, 2) == 3
        assert aln.map_seq_to_msa(cmap, 4) == -1

    def test_sub_alignment(self):
        """Sub-alignments take inclusive 1-based columns and keep categories."""
        aln = Alignment.from_sequences(["a"], ["ACGTA"], categories=[1, 2, 3, 4, 5])
        sub = aln.sub_alignment(2, 3)

        assert sub.length == 2
        assert sub.sequence(0) == "CG"
        assert list(sub.categories) == [2, 3]

    def test_drop_sequences(self):
        """Dropped sequences cannot be read back."""
        aln = Alignment.from_sequences(["a"], ["ACGT"])
        aln.drop_sequences()
        with pytest.raises(ValueError):
            aln.sequence(0)

    def test_fasta_file(self, tmp_path):
        """FASTA files may wrap sequences over several lines."""
        path = tmp_path / "aln.fa"
        path.write_text(">x description\nACG\nT\n>y\nAC-T\n")
        aln = Alignment.from_file(path)

        assert aln.names == ["x", "y"]
        assert aln.sequence(1) == "AC-T"

    def test_phylip_file(self, tmp_path):
        """Sequential PHYLIP files are detected and parsed."""
        path = tmp_path / "aln.phy"
        path.write_text("2 6\nx ACGTAC\ny\nACG TAA\n")
        aln = Alignment.from_file(path)

        assert aln.names == ["x", "y"]
        assert aln.sequence(1) == "ACGTAA"

    def test_phylip_wrong_count(self, tmp_path):
        """A PHYLIP header that promises more sequences is an error."""
        path = tmp_path / "aln.phy"
        path.write_text("3 4\nx ACGT\ny ACGT\n")
        with pytest.raises(ValueError, match="Expected 3"):
            Alignment.from_phylip(path)


class TestCategoryMap:
    """Test category maps and site category files."""

    TEXT = "NCATS = 3\nCDS 1-2\nintron 3   # comment\n"

    def test_resolve_names_and_numbers(self):
        """Names expand to their ranges; numbers are taken literally."""
        cmap = CategoryMap.from_string(self.TEXT)

        assert cmap.ncats == 3
        assert cmap.resolve(["CDS"]) == [1, 2]
        assert cmap.resolve(["intron", "0", "3"]) == [3, 0]
        assert cmap.resolve(["background"]) == [0]

    def test_unknown_category(self):
        """Unknown names and out-of-range numbers are errors."""
        cmap = CategoryMap.from_string(self.TEXT)
        with pytest.raises(ConfigurationError):
            cmap.resolve(["UTR"])
        with pytest.raises(ConfigurationError):
            cmap.resolve(["7"])

    def test_labels(self):
        """Labels are unique within a multi-category feature."""
        cmap = CategoryMap.from_string(self.TEXT)

        assert cmap.label(0) == "background"
        assert cmap.label(1) == "CDS-1"
        assert cmap.label(2) == "CDS-2"
        assert cmap.label(3) == "intron"

    def test_range_beyond_ncats(self):
        """A feature using a category above NCATS is rejected."""
        with pytest.raises(ConfigurationError, match="NCATS"):
            CategoryMap.from_string("NCATS = 1\nCDS 1-3\n")

    def test_read_site_categories(self, tmp_path):
        """Site category files hold whitespace-separated integers."""
        path = tmp_path / "cats.txt"
        path.write_text("0 1 1\n2 0\n")
        assert list(read_site_categories(path)) == [0, 1, 1, 2, 0]

        path.write_text("0 one\n")
        with pytest.raises(ConfigurationError):
            read_site_categories(path)
