"""
Pytest configuration and shared fixtures.
"""

import numpy as np
import pytest
from typer.testing import CliRunner

from phylofit.io.sequences import Alignment
from phylofit.io.trees import Tree

FOUR_TAXON_NEWICK = "((human:0.05,chimp:0.05):0.1,(mouse:0.15,rat:0.15):0.1);"


def _mutate(seq: np.ndarray, p: float, rng: np.random.Generator) -> np.ndarray:
    out = seq.copy()
    hits = rng.random(len(seq)) < p
    out[hits] = rng.choice(list("ACGT"), size=int(hits.sum()))
    return out


def simulate_sequences(length: int = 200, seed: int = 42) -> dict[str, str]:
    """Four related sequences evolved along FOUR_TAXON_NEWICK by random replacement."""
    rng = np.random.default_rng(seed)
    root = rng.choice(list("ACGT"), size=length, p=[0.3, 0.2, 0.2, 0.3])
    primate = _mutate(root, 0.1, rng)
    rodent = _mutate(root, 0.1, rng)
    seqs = {
        "human": _mutate(primate, 0.05, rng),
        "chimp": _mutate(primate, 0.05, rng),
        "mouse": _mutate(rodent, 0.15, rng),
        "rat": _mutate(rodent, 0.15, rng),
    }
    return {name: "".join(seq) for name, seq in seqs.items()}


@pytest.fixture
def cli_runner():
    """CLI test runner for Typer apps."""
    return CliRunner()


@pytest.fixture
def four_taxon_tree():
    """Four-taxon tree with two cherries."""
    return Tree.from_newick(FOUR_TAXON_NEWICK)


@pytest.fixture
def four_taxon_alignment():
    """200-column alignment of human, chimp, mouse and rat."""
    seqs = simulate_sequences()
    return Alignment.from_sequences(list(seqs), list(seqs.values()))


@pytest.fixture
def alignment_file(tmp_path):
    """FASTA file of the four-taxon alignment."""
    path = tmp_path / "aln.fa"
    with open(path, "w") as f:
        for name, seq in simulate_sequences().items():
            f.write(f">{name}\n{seq}\n")
    return path


@pytest.fixture
def tree_file(tmp_path):
    """Newick file of the four-taxon tree."""
    path = tmp_path / "tree.nwk"
    path.write_text(FOUR_TAXON_NEWICK + "\n")
    return path


@pytest.fixture
def pair_alignment():
    """Two sequences, 100 columns, differing at 20 of them."""
    seq_a = "ACGT" * 25
    changed = {"A": "C", "C": "G", "G": "T", "T": "A"}
    seq_b = "".join(changed[c] if i % 5 == 0 else c for i, c in enumerate(seq_a))
    return Alignment.from_sequences(["a", "b"], [seq_a, seq_b])
