"""
Result tables written after each unit is fitted.
"""

from pathlib import Path
from typing import Optional, TextIO

import numpy as np

from ..core.likelihood import TreePosteriors

EXPTOTSUB_PREAMBLE = """
A separate matrix of expected numbers of substitutions is shown for each
branch of the tree. Nodes of the tree are visited in a postorder traversal,
and each node is taken to be representative of the branch between itself and
its parent. Starting bases or tuples of bases appear on the vertical axis
of each matrix, and destination bases or tuples of bases appear on the
horizontal axis.

"""


def unit_filename(
    root: Optional[str],
    suffix: str,
    window: Optional[int] = None,
    label: Optional[str] = None,
) -> str:
    """
    Output filename ``root[.win-k][.label]suffix``.

    Parameters
    ----------
    root : str, optional
        Output root
    suffix : str
        Extension including the dot (e.g. ``.mod``)
    window : int, optional
        0-based window index; written 1-based
    label : str, optional
        Category label

    Examples
    --------
    >>> unit_filename("out", ".mod", window=0, label="CDS")
    'out.win-1.CDS.mod'
    """
    parts = [root] if root else []
    if window is not None:
        parts.append(f"win-{window + 1}")
    if label is not None:
        parts.append(label)
    return ".".join(parts) + suffix


def _tuples_in(stats, cat: int) -> list[int]:
    counts = stats.counts_for(cat)
    return [t for t in range(stats.ntuples) if counts[t] > 0 and stats.counts[t] > 0]


def write_postprob(filepath: Path | str, model, stats, post: TreePosteriors, cat: int = -1) -> None:
    """Posterior state distribution at each internal node, one row per tuple."""
    internal = [node.id for node in model.tree.nodes if not node.is_leaf]
    states = model.states
    with open(filepath, 'w') as f:
        header = [f"{'#':<6}", f"{'':<{stats.nseqs * stats.tuple_size + 4}}"]
        for node_id in internal:
            header.extend(
                f"{'node ' + str(node_id):>6}" if s == len(states) // 2 else f"{'':6}"
                for s in range(len(states))
            )
        f.write(" ".join(header) + "\n")
        f.write(" ".join([f"{'#':<6}", f"{'tuple':<{stats.nseqs * stats.tuple_size + 4}}"]
                         + [f"{s:>6}" for _ in internal for s in states]) + "\n")
        for tup in _tuples_in(stats, cat):
            row = [f"{tup:<6d}", f"{stats.tuple_string(tup):<{stats.nseqs * stats.tuple_size + 4}}"]
            row.extend(f"{p:6.4f}" for node_id in internal for p in post.base_probs[tup, node_id])
            f.write(" ".join(row) + "\n")


def write_expsub(filepath: Path | str, model, stats, post: TreePosteriors, cat: int = -1) -> None:
    """Expected substitutions on each branch, one row per tuple."""
    branches = [node.id for node in model.tree.postorder() if node.parent is not None]
    with open(filepath, 'w') as f:
        header = [f"{'#':<3}", f"{'tuple':>10}", f"{'count':>7}"]
        header.extend(f"node_{node_id:<2d}" for node_id in branches)
        f.write(" ".join(header) + "    total\n")
        for tup in _tuples_in(stats, cat):
            values = post.expected_nsubst[tup, branches]
            row = [f"{tup:<3d}", f"{stats.tuple_string(tup):>10}", f"{stats.counts[tup]:.0f}"]
            row.extend(f"{v:7.4f}" for v in values)
            row.append(f"{values.sum():7.4f}")
            f.write(" ".join(row) + "\n")


def write_exptotsub(filepath: Path | str, model, post: TreePosteriors) -> None:
    """Expected substitution counts by endpoint states, one matrix per branch."""
    states = model.states
    with open(filepath, 'w') as f:
        f.write(EXPTOTSUB_PREAMBLE)
        for node in model.tree.postorder():
            if node.parent is None:
                continue
            f.write(f"Branch above node {node.id}")
            if node.name:
                f.write(f" (leaf labeled '{node.name}')")
            f.write(":\n\n")
            f.write(f"{'':<4} " + " ".join(f"{s:>12}" for s in states) + "\n")
            for i, s in enumerate(states):
                values = post.expected_nsubst_tot[node.id, i]
                f.write(f"{s:<4} " + " ".join(f"{v:12.2f}" for v in values) + "\n")
            f.write("\n\n")


def window_summary_header() -> str:
    """Header of the ``.win-sum`` table."""
    return (
        "# CpG is not computed and is reported as nan\n"
        f"{'win':>5} {'beg':>8} {'end':>8} {'cat':>4} {'GC':>6} {'CpG':>8} {'ninf':>7} {'t':>7}\n"
    )


def window_summary_row(window: int, beg: int, end: int, cat: int, model, ninf: int) -> str:
    """
    One ``.win-sum`` row: 1-based window number, alignment coordinates,
    category, background G+C, CpG (nan), informative sites and total
    branch length.
    """
    cpg = float('nan')
    return (
        f"{window + 1:5d} {beg:8d} {end:8d} {cat:4d} {model.gc_content():6.4f} "
        f"{cpg:8.6f} {ninf:7d} {float(model.edge_lengths().sum()):7.4f}\n"
    )


def write_column_probs(filepath: Path | str, log_probs: np.ndarray) -> None:
    """Per-column log probabilities (base 2), as ``index<TAB>value``."""
    with open(filepath, 'w') as f:
        for j, value in enumerate(log_probs):
            f.write(f"{j}\t{value:.6f}\n")


def write_parsimony_cost(stream: TextIO, cost: float) -> None:
    print(f"{cost:f}", file=stream)


def write_standard_errors(
    filepath: Path | str,
    labels: list[str],
    params: np.ndarray,
    errors: np.ndarray,
    append: bool = False,
    title: Optional[str] = None,
) -> None:
    """Parameter estimates with their approximate standard errors."""
    with open(filepath, 'a' if append else 'w') as f:
        if title:
            f.write(f"# {title}\n")
        for label, value, err in zip(labels, params, errors):
            if np.isnan(err):
                continue
            f.write(f"{label}\t{value:.6g}\t{err:.6g}\n")
