"""
Starting values for tree model optimization.

Every initializer returns a natural-unit parameter vector in the order of a
:class:`~phylofit.models.tree_model.ParameterLayout`. Only free groups are
initialized; frozen groups keep the model's current values.
"""

from typing import Optional

import numpy as np

from ..config import BranchLengthMode
from ..models.tree_model import ParameterLayout, TreeModel

DEFAULT_BRANCH_LENGTH = 0.1
DEFAULT_TRANSITION_RATE = 5.0
MIN_PARSIMONY_BRANCH_LENGTH = 1e-3


def _keep_frozen(model: TreeModel, layout: ParameterLayout, params: np.ndarray) -> np.ndarray:
    current = model.pack(layout)
    return layout.clip(np.where(layout.free_mask(), params, current))


def _params_with_lengths(model: TreeModel, layout: ParameterLayout, lengths) -> np.ndarray:
    """Pack ``model`` after replacing its estimated branch lengths."""
    dup = model.copy()
    if model.branchlen_mode in (BranchLengthMode.FREE, BranchLengthMode.CLOCK):
        for node, length in zip(dup.tree.nodes, lengths):
            if node.parent is not None and node.id != dup.root_leaf:
                node.branch_length = float(length)
    return dup.pack(layout)


def init_default(model: TreeModel, layout: ParameterLayout, alpha: Optional[float] = None) -> np.ndarray:
    """
    Default starting point.

    Estimated branch lengths start at 0.1, transition-type rate-matrix
    parameters at 5 (a kappa of 5) and all other rate parameters at 1.

    Parameters
    ----------
    model : TreeModel
        Model to initialize
    layout : ParameterLayout
        Parameter layout of ``model``
    alpha : float, optional
        Starting gamma shape; the model's value when omitted

    Returns
    -------
    ndarray
        Natural-unit parameters
    """
    params = _params_with_lengths(
        model, layout, np.full(model.tree.n_nodes, DEFAULT_BRANCH_LENGTH)
    )

    g = layout.group("ratematrix")
    if g is not None:
        params[g.slice] = np.where(model.transition_param_mask(), DEFAULT_TRANSITION_RATE, 1.0)
    for k, alt in enumerate(model.alt_models):
        g = layout.group(f"alt{k}.ratematrix")
        if g is not None:
            params[g.slice] = 1.0

    g = layout.group("ratevar")
    if g is not None:
        if model.rate_consts is not None:
            params[g.slice] = 1.0 / model.nratecats
        else:
            params[g.slice] = model.alpha if alpha is None else alpha

    for name in ("scale", "scale_sub"):
        g = layout.group(name)
        if g is not None:
            params[g.slice] = 1.0

    return _keep_frozen(model, layout, params)


def init_random(
    model: TreeModel,
    layout: ParameterLayout,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """
    Random starting point.

    Branch lengths are drawn from U(0.01, 0.5), rate-matrix parameters from
    U(1, 5) and the gamma shape from U(0.5, 3).
    """
    if rng is None:
        rng = np.random.default_rng()

    params = _params_with_lengths(
        model, layout, rng.uniform(0.01, 0.5, size=model.tree.n_nodes)
    )
    for name in ["ratematrix"] + [f"alt{k}.ratematrix" for k in range(len(model.alt_models))]:
        g = layout.group(name)
        if g is not None:
            params[g.slice] = rng.uniform(1.0, 5.0, size=g.size)

    g = layout.group("ratevar")
    if g is not None:
        if model.rate_consts is not None:
            params[g.slice] = 1.0 / model.nratecats
        else:
            params[g.slice] = rng.uniform(0.5, 3.0)

    return _keep_frozen(model, layout, params)


def init_from_model(
    model: TreeModel,
    layout: ParameterLayout,
    source: Optional[TreeModel] = None,
) -> np.ndarray:
    """Start from the current values of ``source`` (``model`` itself by default)."""
    source = model if source is None else source
    return layout.clip(source.pack(layout))


def fitch_states(model: TreeModel, stats) -> tuple[dict[int, np.ndarray], np.ndarray]:
    """
    Fitch down-pass over the current column of every tuple.

    Returns
    -------
    sets : dict[int, ndarray]
        Bitmask of candidate bases at each node, shape (ntuples,)
    cost : ndarray, shape (ntuples,)
        Minimum number of changes of each tuple
    """
    alphabet = model.alphabet
    full = (1 << len(alphabet)) - 1
    lut = np.full(256, full, dtype=np.int64)
    for i, ch in enumerate(alphabet):
        lut[ord(ch)] = 1 << i
    rows = {name: i for i, name in enumerate(stats.names)}

    sets: dict[int, np.ndarray] = {}
    cost = np.zeros(stats.ntuples)
    for node in model.tree.postorder():
        if node.is_leaf:
            sets[node.id] = lut[stats.tuples[:, -1, rows[node.name]]]
            continue
        current = sets[node.children[0]]
        for c in node.children[1:]:
            inter = current & sets[c]
            empty = inter == 0
            cost += empty
            current = np.where(empty, current | sets[c], inter)
        sets[node.id] = current
    return sets, cost


def init_branchlens_parsimony(
    model: TreeModel,
    stats,
    cat: int = -1,
    params: Optional[np.ndarray] = None,
    layout: Optional[ParameterLayout] = None,
) -> float:
    """
    Branch lengths from a parsimony reconstruction.

    Each branch gets the (count-weighted) fraction of sites whose Fitch
    reconstruction changes along it, floored at 0.001. When ``params`` and
    ``layout`` are given the lengths are written into the ``branches`` group
    of ``params``; otherwise they are set on the model's tree.

    Returns
    -------
    float
        Parsimony cost: the count-weighted minimum number of changes
    """
    counts = stats.counts_for(cat)
    total = counts.sum()
    sets, cost = fitch_states(model, stats)

    tree = model.tree
    lengths = np.zeros(tree.n_nodes)
    states = {}
    for node in tree.preorder():
        s = sets[node.id]
        if node.parent is None:
            states[node.id] = s & -s
            continue
        parent_state = states[node.parent]
        keep = (parent_state & s) != 0
        states[node.id] = np.where(keep, parent_state, s & -s)
        changes = float(np.dot(counts, ~keep))
        lengths[node.id] = max(changes / total if total > 0 else 0.0, MIN_PARSIMONY_BRANCH_LENGTH)

    if params is not None and layout is not None:
        packed = _params_with_lengths(model, layout, lengths)
        g = layout.group("branches")
        if g is not None and not g.frozen:
            params[g.slice] = packed[g.slice]
    else:
        for node in tree.nodes:
            if node.parent is not None and node.id != model.root_leaf:
                node.branch_length = float(lengths[node.id])

    return float(np.dot(counts, cost))
