"""
Tree models: a phylogeny plus a substitution process.

A :class:`TreeModel` holds everything the likelihood needs (tree, rate
matrix, background frequencies, rate variation) together with the flags that
decide which of those quantities are estimated. The free quantities are
exchanged with the optimizers through a flat parameter vector whose layout is
described by :class:`ParameterLayout`.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np
from scipy.special import expit, logit

from ..config import BranchLengthMode, SubtreeBound
from ..core.matrix import transition_matrices
from ..errors import ConfigurationError, DataError, ModelError
from ..io.trees import Tree
from .rates import discrete_gamma
from .subst import (
    CAPABILITIES,
    SubstModelKind,
    build_rate_matrix,
    n_rate_params,
    parse_subst_model,
    rate_classes,
    tuple_states,
)

# Natural-unit bounds used when the caller gives none
DEFAULT_BOUNDS = {
    "branches": (1e-6, 50.0),
    "scale": (1e-3, 100.0),
    "scale_sub": (1e-3, 100.0),
    "alpha": (0.01, 100.0),
    "weights": (1e-6, 1e6),
    "backgd": (1e-6, 1e6),
    "ratematrix": (1e-4, 1e4),
}
CLOCK_FRACTION_BOUNDS = (1e-6, 1.0 - 1e-6)

_COMPLEMENT = {'A': 'T', 'C': 'G', 'G': 'C', 'T': 'A', '-': '-'}


class Ownership(str, Enum):
    """Whether a model is private to one unit or shared across units."""
    OWNED = "owned"
    BORROWED = "borrowed"


@dataclass
class AltSubstModel:
    """
    Separate substitution parameters for a subset of branches.

    Attributes
    ----------
    spec : str
        The ``branches:model`` or ``branches:groups`` text it was built from
    nodes : list[int]
        Ids of the nodes whose parent branch uses this model
    kind : SubstModelKind
        Substitution model of those branches
    groups : tuple[str, ...]
        Parameter groups estimated separately (``ratematrix``, ``backgd``)
    subst_params : ndarray
        Rate-matrix parameters
    backgd : ndarray, optional
        Separate background frequencies; shared with the main model when None
    """

    spec: str
    nodes: list[int]
    kind: SubstModelKind
    groups: tuple[str, ...]
    subst_params: np.ndarray
    backgd: Optional[np.ndarray] = None
    rate_matrix: Optional[np.ndarray] = None
    stationary: Optional[np.ndarray] = None

    @classmethod
    def parse(cls, spec: str, model: "TreeModel") -> "AltSubstModel":
        """
        Build an alternative model from ``branches:MODEL`` or
        ``branches:ratematrix[,backgd]``.

        Branches are given by node name or ``#k`` label, separated by commas.
        """
        branches, _, rhs = spec.partition(':')
        if not branches or not rhs:
            raise ConfigurationError(f"Bad alternative model '{spec}'")

        nodes: list[int] = []
        for name in branches.split(','):
            matches = model.tree.get_nodes(name.strip())
            if not matches:
                raise ConfigurationError(
                    f"No branch named '{name.strip()}' for alternative model '{spec}'"
                )
            for node in matches:
                if node.parent is None:
                    raise ConfigurationError(
                        f"Alternative model '{spec}' names the root, which has no branch"
                    )
                if node.id not in nodes:
                    nodes.append(node.id)

        requested = [g.strip() for g in rhs.split(',')]
        if all(g in ("ratematrix", "backgd") for g in requested):
            kind = model.kind
            groups = tuple(g for g in ("ratematrix", "backgd") if g in requested)
        else:
            if len(requested) != 1:
                raise ConfigurationError(f"Bad alternative model '{spec}'")
            kind = parse_subst_model(requested[0])
            if CAPABILITIES[kind].order != CAPABILITIES[model.kind].order:
                raise ConfigurationError(
                    f"Alternative model {kind.value} must have the same order as {model.kind.value}"
                )
            groups = ("ratematrix",)

        if "backgd" in groups and not _has_free_backgd(kind):
            raise ConfigurationError(
                f"{kind.value} has no background frequencies to estimate separately"
            )

        subst_params = (
            model.subst_params.copy() if kind == model.kind
            else np.ones(n_rate_params(kind, model.alphabet))
        )
        backgd = model.backgd.copy() if "backgd" in groups else None
        return cls(spec=spec, nodes=nodes, kind=kind, groups=groups,
                   subst_params=subst_params, backgd=backgd)


def _has_free_backgd(kind: SubstModelKind) -> bool:
    info = CAPABILITIES[kind]
    return info.reversible and not info.uniform_freqs


@dataclass
class ParameterGroup:
    """A named, contiguous block of the parameter vector."""

    name: str
    start: int
    size: int
    lower: np.ndarray
    upper: np.ndarray
    frozen: bool = False
    use_logit: Optional[np.ndarray] = None

    @property
    def slice(self) -> slice:
        return slice(self.start, self.start + self.size)


@dataclass
class ParameterLayout:
    """
    Layout of the natural-unit parameter vector of a tree model.

    Groups appear in the order ``branches``, ``scale``, ``scale_sub``,
    ``ratevar``, ``backgd``, ``ratematrix``, then one ``alt<k>.ratematrix``
    / ``alt<k>.backgd`` per alternative model; empty groups are omitted.
    Positive parameters are optimized on a log scale and clock fractions on
    a logit scale.

    Attributes
    ----------
    groups : list[ParameterGroup]
        Groups in vector order
    edge_params : list[tuple[int, int, float]]
        ``(node_id, parameter index, factor)`` for each branch whose length
        is a free parameter (``FREE`` mode)
    clock_nodes : list[int]
        Internal non-root nodes in preorder (``CLOCK`` mode)
    """

    groups: list[ParameterGroup] = field(default_factory=list)
    edge_params: list[tuple[int, int, float]] = field(default_factory=list)
    clock_nodes: list[int] = field(default_factory=list)

    @property
    def size(self) -> int:
        return sum(g.size for g in self.groups)

    @property
    def names(self) -> list[str]:
        return [g.name for g in self.groups]

    def group(self, name: str) -> Optional[ParameterGroup]:
        for g in self.groups:
            if g.name == name:
                return g
        return None

    def add(self, name: str, size: int, lower, upper, frozen: bool = False,
            use_logit=False) -> None:
        if size == 0:
            return
        lower = np.broadcast_to(np.asarray(lower, dtype=float), (size,)).copy()
        upper = np.broadcast_to(np.asarray(upper, dtype=float), (size,)).copy()
        use_logit = np.broadcast_to(np.asarray(use_logit, dtype=bool), (size,)).copy()
        self.groups.append(ParameterGroup(name, self.size, size, lower, upper, frozen, use_logit))

    def free_mask(self) -> np.ndarray:
        mask = np.zeros(self.size, dtype=bool)
        for g in self.groups:
            if not g.frozen:
                mask[g.slice] = True
        return mask

    def lower(self) -> np.ndarray:
        return np.concatenate([g.lower for g in self.groups]) if self.groups else np.empty(0)

    def upper(self) -> np.ndarray:
        return np.concatenate([g.upper for g in self.groups]) if self.groups else np.empty(0)

    def logit_mask(self) -> np.ndarray:
        mask = np.zeros(self.size, dtype=bool)
        for g in self.groups:
            mask[g.slice] = g.use_logit
        return mask

    def labels(self) -> list[str]:
        return [f"{g.name}[{i}]" for g in self.groups for i in range(g.size)]

    def clip(self, params: np.ndarray) -> np.ndarray:
        """Move natural-unit parameters inside their bounds."""
        return np.clip(params, self.lower(), self.upper())

    def to_internal(self, params: np.ndarray) -> np.ndarray:
        """Transformed values of the free parameters."""
        params = self.clip(np.asarray(params, dtype=float))
        free = self.free_mask()
        use_logit = self.logit_mask()[free]
        values = params[free]
        x = np.empty_like(values)
        x[use_logit] = logit(np.clip(values[use_logit], *CLOCK_FRACTION_BOUNDS))
        x[~use_logit] = np.log(np.maximum(values[~use_logit], 1e-300))
        return x

    def to_natural(self, x: np.ndarray, params: np.ndarray) -> np.ndarray:
        """Full natural-unit vector: ``params`` with the free entries replaced."""
        full = np.array(params, dtype=float)
        free = self.free_mask()
        use_logit = self.logit_mask()[free]
        x = np.asarray(x, dtype=float)
        values = np.empty_like(x)
        values[use_logit] = expit(x[use_logit])
        values[~use_logit] = np.exp(x[~use_logit])
        full[free] = values
        return full

    def internal_bounds(self) -> list[tuple[Optional[float], Optional[float]]]:
        """Bounds of the free parameters on the transformed scale."""
        free = self.free_mask()
        bounds = []
        for lo, hi, is_logit in zip(self.lower()[free], self.upper()[free], self.logit_mask()[free]):
            if is_logit:
                bounds.append((float(logit(lo)), float(logit(hi))))
            else:
                bounds.append((float(np.log(lo)) if lo > 0 else None,
                               float(np.log(hi)) if np.isfinite(hi) else None))
        return bounds


@dataclass
class TreeModel:
    """
    Phylogenetic tree plus a (possibly context-dependent) substitution model.

    Attributes
    ----------
    tree : Tree
        Tree with branch lengths in expected substitutions per site
    kind : SubstModelKind
        Substitution model
    alphabet : str
        Base alphabet
    nratecats : int
        Number of rate categories
    alpha : float
        Gamma shape parameter (discrete gamma rate variation)
    rate_consts : ndarray, optional
        Fixed rate constants, ascending; their weights are estimated
    rate_weights : ndarray
        Probability of each rate category
    backgd : ndarray
        Background (equilibrium) frequencies over states
    subst_params : ndarray
        Free parameters of the rate matrix
    lnl : float, optional
        Log likelihood (natural log) of the last fit or evaluation
    """

    tree: Tree
    kind: SubstModelKind
    alphabet: str
    nratecats: int
    alpha: float
    rate_consts: Optional[np.ndarray]
    rate_weights: np.ndarray
    backgd: np.ndarray
    subst_params: np.ndarray

    # Estimation control
    branchlen_mode: BranchLengthMode = BranchLengthMode.FREE
    estimate_ratemat: bool = True
    estimate_backgd: bool = False
    eqfreq_sym: bool = False
    no_opt: frozenset = frozenset()
    bounds: dict = field(default_factory=dict)
    use_conditionals: bool = False
    subtree_root: Optional[int] = None
    subtree_bound: SubtreeBound = SubtreeBound.NONE
    scale: float = 1.0
    scale_sub: float = 1.0
    ignored: set = field(default_factory=set)
    root_leaf: Optional[int] = None
    alt_models: list = field(default_factory=list)

    lnl: Optional[float] = None
    ownership: Ownership = Ownership.OWNED
    rate_matrix: Optional[np.ndarray] = None
    stationary: Optional[np.ndarray] = None
    _snapshot: Optional[dict] = field(default=None, repr=False)

    @classmethod
    def new(
        cls,
        tree: Tree,
        kind: SubstModelKind,
        alphabet: str,
        nratecats: int = 1,
        alpha: float = 1.0,
        rate_consts=None,
        backgd: Optional[np.ndarray] = None,
        subst_params: Optional[np.ndarray] = None,
    ) -> "TreeModel":
        """
        Create a model with uniform frequencies and unit rate parameters.

        Raises
        ------
        ModelError
            If ``backgd`` does not have one entry per state
        """
        order = CAPABILITIES[kind].order
        nstates = len(alphabet) ** (order + 1)
        if backgd is None:
            backgd = np.full(nstates, 1.0 / nstates)
        backgd = np.asarray(backgd, dtype=float)
        if len(backgd) != nstates:
            raise ModelError(
                f"{kind.value} over '{alphabet}' has {nstates} states, "
                f"got {len(backgd)} background frequencies"
            )
        if subst_params is None:
            subst_params = np.ones(n_rate_params(kind, alphabet))

        model = cls(
            tree=tree, kind=kind, alphabet=alphabet, nratecats=nratecats,
            alpha=alpha, rate_consts=None, rate_weights=np.ones(1),
            backgd=backgd, subst_params=np.asarray(subst_params, dtype=float),
        )
        model._set_rate_variation(nratecats, alpha, rate_consts)
        model.set_subst_matrices()
        return model

    def _set_rate_variation(self, nratecats: int, alpha: float, rate_consts) -> None:
        if nratecats < 1:
            raise ModelError(f"nratecats must be >= 1, got {nratecats}")
        self.nratecats = nratecats
        self.alpha = alpha
        if rate_consts is not None:
            consts = np.sort(np.asarray(rate_consts, dtype=float))
            if len(consts) != nratecats:
                raise ModelError(
                    f"Got {len(consts)} rate constants for {nratecats} rate categories"
                )
            self.rate_consts = consts
        else:
            self.rate_consts = None
        self.rate_weights = np.full(nratecats, 1.0 / nratecats)

    @property
    def order(self) -> int:
        return CAPABILITIES[self.kind].order

    @property
    def nstates(self) -> int:
        return len(self.alphabet) ** (self.order + 1)

    @property
    def reversible(self) -> bool:
        return CAPABILITIES[self.kind].reversible

    @property
    def states(self) -> list[str]:
        return tuple_states(self.alphabet, self.order)

    def reinit(self, kind: SubstModelKind, nratecats: int, alpha: float, rate_consts=None) -> None:
        """
        Switch substitution model and rate variation, keeping tree and frequencies.

        Rate-matrix parameters are kept when the model kind is unchanged.
        """
        if CAPABILITIES[kind].order != self.order:
            raise ModelError(
                f"Cannot reinitialize a {self.kind.value} model as {kind.value} "
                "(different context order)"
            )
        if kind != self.kind:
            self.kind = kind
            self.subst_params = np.ones(n_rate_params(kind, self.alphabet))
        self._set_rate_variation(nratecats, alpha, rate_consts)
        self.set_subst_matrices()

    def mark_borrowed(self) -> None:
        """Share this model across units; its current state is restored per unit."""
        self.ownership = Ownership.BORROWED
        self._snapshot = None
        self._snapshot = copy.deepcopy(self.__dict__)

    def reset_for_unit(self) -> None:
        """Restore a borrowed model to the state it had when it was borrowed."""
        if self.ownership != Ownership.BORROWED or self._snapshot is None:
            raise ModelError("Only borrowed models can be reset between units")
        snapshot = self._snapshot
        self.__dict__.update(copy.deepcopy(snapshot))
        self._snapshot = snapshot
        self.lnl = None

    def release(self) -> None:
        """Return a borrowed model to its owner exactly as it was borrowed."""
        if self.ownership != Ownership.BORROWED or self._snapshot is None:
            raise ModelError("Only borrowed models can be released")
        self.__dict__.update(copy.deepcopy(self._snapshot))
        self.ownership = Ownership.OWNED
        self._snapshot = None

    def copy(self) -> "TreeModel":
        """Independent deep copy, owned by the caller."""
        dup = copy.deepcopy(self)
        dup.ownership = Ownership.OWNED
        dup._snapshot = None
        return dup

    def category_rates(self) -> tuple[np.ndarray, np.ndarray]:
        """Rate multiplier and probability of each rate category."""
        if self.rate_consts is not None:
            return self.rate_consts, self.rate_weights
        if self.nratecats == 1:
            return np.ones(1), np.ones(1)
        return discrete_gamma(self.alpha, self.nratecats)

    def root_distribution(self) -> np.ndarray:
        """State distribution at the root (background or stationary)."""
        if self.reversible or self.stationary is None:
            return self.backgd
        return self.stationary

    def set_subst_matrices(self) -> None:
        """Rebuild the rate matrices from the current parameters."""
        self.rate_matrix, self.stationary = build_rate_matrix(
            self.kind, self.alphabet, self.subst_params, self.backgd
        )
        for alt in self.alt_models:
            backgd = alt.backgd if alt.backgd is not None else self.backgd
            alt.rate_matrix, alt.stationary = build_rate_matrix(
                alt.kind, self.alphabet, alt.subst_params, backgd
            )

    def subtree_nodes(self) -> set:
        """Nodes whose parent branch is scaled by ``scale_sub``."""
        if self.subtree_root is None:
            return set()
        return set(self.tree.descendants(self.subtree_root))

    def edge_lengths(self) -> np.ndarray:
        """Effective length of the branch above each node (0 at the root)."""
        lengths = np.array([node.branch_length for node in self.tree.nodes], dtype=float)
        lengths *= self.scale
        if self.subtree_root is not None:
            lengths[sorted(self.subtree_nodes())] *= self.scale_sub
        lengths[self.tree.root.id] = 0.0
        return lengths

    def transition_matrices(self) -> np.ndarray:
        """
        Transition matrices of every branch in every rate category.

        Returns
        -------
        ndarray, shape (nratecats, nnodes, nstates, nstates)
            ``P[k, v]`` is the matrix of the branch above node ``v``; the
            root entry is the identity and ignored branches have every row
            equal to the root distribution
        """
        if self.rate_matrix is None:
            self.set_subst_matrices()
        nnodes = self.tree.n_nodes
        n = self.nstates
        rates, _ = self.category_rates()
        lengths = self.edge_lengths()

        owner = np.full(nnodes, -1, dtype=np.int64)
        for k, alt in enumerate(self.alt_models):
            owner[alt.nodes] = k

        P = np.empty((len(rates), nnodes, n, n))
        root = self.tree.root.id
        for g in range(-1, len(self.alt_models)):
            ids = np.flatnonzero(owner == g)
            ids = ids[ids != root]
            if len(ids) == 0:
                continue
            if g < 0:
                Q, pi, kind = self.rate_matrix, self.stationary, self.kind
            else:
                alt = self.alt_models[g]
                Q, pi, kind = alt.rate_matrix, alt.stationary, alt.kind
            reversible = CAPABILITIES[kind].reversible
            for k, rate in enumerate(rates):
                P[k, ids] = transition_matrices(Q, pi, rate * lengths[ids], reversible)

        P[:, root] = np.eye(n)
        if self.ignored:
            P[:, sorted(self.ignored)] = self.root_distribution()[np.newaxis, :]
        return P

    # ------------------------------------------------------------------
    # Estimation setup

    def set_subtree(self, name: str, bound: SubtreeBound = SubtreeBound.NONE) -> None:
        node = self.tree.get_node(name)
        if node is None:
            raise ConfigurationError(f"No node named '{name}' for subtree scaling")
        self.subtree_root = node.id
        self.subtree_bound = bound

    def set_ignored_branches(self, names) -> None:
        """Treat the branches above the named nodes as infinitely long."""
        ignored = set()
        for name in names:
            matches = self.tree.get_nodes(name)
            if not matches:
                raise ConfigurationError(f"No branch named '{name}' to ignore")
            ignored.update(node.id for node in matches if node.parent is not None)
        self.ignored = ignored

    def set_root_leaf(self, name: str) -> None:
        """
        Treat leaf ``name`` as the ancestral sequence.

        The leaf must be a child of the root; its branch is fixed at zero
        length, so the root state is the observed base.
        """
        if self.reversible:
            raise ConfigurationError("An ancestral sequence requires a non-reversible model")
        node = self.tree.get_node(name)
        if node is None or not node.is_leaf:
            raise DataError(f"No leaf named '{name}' in the tree")
        if node.parent != self.tree.root.id:
            raise DataError(f"Ancestral sequence '{name}' must be a child of the root")
        node.branch_length = 0.0
        self.root_leaf = node.id

    def attach_alt_models(self, specs) -> None:
        self.alt_models = [AltSubstModel.parse(spec, self) for spec in specs]
        self.set_subst_matrices()

    def prune(self, names) -> list[str]:
        """
        Drop leaves not among ``names``.

        Returns
        -------
        list[str]
            Names of the removed leaves

        Raises
        ------
        DataError
            If no leaf of the tree is among ``names``
        """
        old_nnodes = self.tree.n_nodes
        pruned = self.tree.prune(names)
        if not self.tree.nodes or (pruned and len(pruned) == (old_nnodes + 1) // 2):
            raise DataError(
                "No match for leaves of tree in alignment (leaf names must match alignment names)"
            )
        if pruned:
            # Node ids changed
            self.subtree_root = None
            self.ignored = set()
            self.root_leaf = None
            self.alt_models = []
        return pruned

    def gc_content(self) -> float:
        """G+C frequency of the last tuple position under the root distribution."""
        pi = self.root_distribution()
        return float(sum(p for p, s in zip(pi, self.states) if s[-1] in "GC"))

    # ------------------------------------------------------------------
    # Parameter vector

    def _group_bounds(self, group: str, default: tuple[float, float]) -> tuple[float, float]:
        lo, hi = default
        user_lo, user_hi = self.bounds.get(group, (None, None))
        if user_lo is not None:
            lo = user_lo
        if user_hi is not None:
            hi = user_hi
        return lo, hi

    def layout(self) -> ParameterLayout:
        """Parameter layout for the current tree and estimation flags."""
        layout = ParameterLayout()
        no_opt = self.no_opt
        mode = self.branchlen_mode

        if mode == BranchLengthMode.FREE:
            fixed = set(self.ignored)
            if self.root_leaf is not None:
                fixed.add(self.root_leaf)
            root = self.tree.root
            shared = (
                self.reversible and len(root.children) == 2
                and not fixed.intersection(root.children)
            )
            index = 0
            shared_index = None
            for _, child in self.tree.get_branches():
                if child.id in fixed:
                    continue
                if shared and child.parent == root.id:
                    if shared_index is None:
                        shared_index = index
                        index += 1
                    layout.edge_params.append((child.id, shared_index, 0.5))
                else:
                    layout.edge_params.append((child.id, index, 1.0))
                    index += 1
            lo, hi = self._group_bounds("branches", DEFAULT_BOUNDS["branches"])
            layout.add("branches", index, lo, hi, frozen="branches" in no_opt)

        elif mode == BranchLengthMode.CLOCK:
            layout.clock_nodes = [
                node.id for node in self.tree.preorder()
                if not node.is_leaf and node.parent is not None
            ]
            lo, hi = self._group_bounds("branches", DEFAULT_BOUNDS["branches"])
            n_frac = len(layout.clock_nodes)
            # Root height, then one height fraction per internal node
            lower = np.concatenate([[lo], np.full(n_frac, CLOCK_FRACTION_BOUNDS[0])])
            upper = np.concatenate([[hi], np.full(n_frac, CLOCK_FRACTION_BOUNDS[1])])
            use_logit = np.arange(n_frac + 1) > 0
            layout.add("branches", n_frac + 1, lower, upper,
                       frozen="branches" in no_opt, use_logit=use_logit)

        elif mode == BranchLengthMode.SCALE_ONLY:
            lo, hi = self._group_bounds("scale", DEFAULT_BOUNDS["scale"])
            layout.add("scale", 1, lo, hi, frozen="scale" in no_opt)
            if self.subtree_root is not None:
                lo, hi = self._group_bounds("scale_sub", DEFAULT_BOUNDS["scale_sub"])
                if self.subtree_bound == SubtreeBound.LOSS:
                    hi = min(hi, 1.0)
                elif self.subtree_bound == SubtreeBound.GAIN:
                    lo = max(lo, 1.0)
                layout.add("scale_sub", 1, lo, hi, frozen="scale_sub" in no_opt)

        if self.nratecats > 1:
            if self.rate_consts is not None:
                lo, hi = self._group_bounds("ratevar", DEFAULT_BOUNDS["weights"])
                layout.add("ratevar", self.nratecats, lo, hi, frozen="ratevar" in no_opt)
            else:
                lo, hi = self._group_bounds("ratevar", DEFAULT_BOUNDS["alpha"])
                layout.add("ratevar", 1, lo, hi, frozen="ratevar" in no_opt)

        backgd_frozen = not self.estimate_backgd or "backgd" in no_opt
        if _has_free_backgd(self.kind):
            lo, hi = self._group_bounds("backgd", DEFAULT_BOUNDS["backgd"])
            layout.add("backgd", self._n_backgd_params(), lo, hi,
                       frozen=backgd_frozen)

        lo, hi = self._group_bounds("ratematrix", DEFAULT_BOUNDS["ratematrix"])
        ratemat_frozen = not self.estimate_ratemat or "ratematrix" in no_opt
        layout.add("ratematrix", len(self.subst_params), lo, hi, frozen=ratemat_frozen)

        for k, alt in enumerate(self.alt_models):
            if "ratematrix" in alt.groups:
                layout.add(f"alt{k}.ratematrix", len(alt.subst_params), lo, hi,
                           frozen=ratemat_frozen)
            if "backgd" in alt.groups:
                blo, bhi = self._group_bounds("backgd", DEFAULT_BOUNDS["backgd"])
                layout.add(f"alt{k}.backgd", self._n_backgd_params(), blo, bhi,
                           frozen=backgd_frozen)
        return layout

    def _sym_classes(self) -> np.ndarray:
        """Class of each state under reverse complementation."""
        states = self.states
        index = {s: i for i, s in enumerate(states)}
        classes = np.full(len(states), -1, dtype=np.int64)
        ncls = 0
        for i, s in enumerate(states):
            if classes[i] >= 0:
                continue
            mirror = index["".join(_COMPLEMENT[c] for c in reversed(s))]
            classes[i] = classes[mirror] = ncls
            ncls += 1
        return classes

    def _n_backgd_params(self) -> int:
        if self.eqfreq_sym:
            return int(self._sym_classes().max()) + 1
        return self.nstates

    def _pack_backgd(self, backgd: np.ndarray) -> np.ndarray:
        if not self.eqfreq_sym:
            return backgd.copy()
        classes = self._sym_classes()
        return np.bincount(classes, weights=backgd) / np.bincount(classes)

    def _unpack_backgd(self, values: np.ndarray) -> np.ndarray:
        freqs = values[self._sym_classes()] if self.eqfreq_sym else np.array(values)
        return freqs / freqs.sum()

    def _node_heights(self) -> np.ndarray:
        heights = np.zeros(self.tree.n_nodes)
        for node in self.tree.postorder():
            for c in node.children:
                heights[node.id] = max(heights[node.id],
                                       heights[c] + self.tree.nodes[c].branch_length)
        return heights

    def pack(self, layout: ParameterLayout) -> np.ndarray:
        """Current natural-unit parameter values in ``layout`` order."""
        params = np.zeros(layout.size)

        g = layout.group("branches")
        if g is not None and self.branchlen_mode == BranchLengthMode.FREE:
            values = params[g.slice]
            for node_id, idx, factor in layout.edge_params:
                length = self.tree.nodes[node_id].branch_length
                if factor < 1.0:
                    values[idx] += length
                else:
                    values[idx] = length
        elif g is not None:
            heights = self._node_heights()
            root_height = heights[self.tree.root.id]
            values = params[g.slice]
            values[0] = root_height if root_height > 0 else 0.1
            for i, node_id in enumerate(layout.clock_nodes, start=1):
                parent_height = heights[self.tree.nodes[node_id].parent]
                frac = heights[node_id] / parent_height if parent_height > 0 else 0.5
                values[i] = np.clip(frac, 0.01, 0.99)

        for name, value in (("scale", self.scale), ("scale_sub", self.scale_sub)):
            g = layout.group(name)
            if g is not None:
                params[g.slice] = value

        g = layout.group("ratevar")
        if g is not None:
            params[g.slice] = self.rate_weights if self.rate_consts is not None else self.alpha

        g = layout.group("backgd")
        if g is not None:
            params[g.slice] = self._pack_backgd(self.backgd)

        g = layout.group("ratematrix")
        if g is not None:
            params[g.slice] = self.subst_params

        for k, alt in enumerate(self.alt_models):
            g = layout.group(f"alt{k}.ratematrix")
            if g is not None:
                params[g.slice] = alt.subst_params
            g = layout.group(f"alt{k}.backgd")
            if g is not None:
                params[g.slice] = self._pack_backgd(alt.backgd)
        return params

    def unpack(self, layout: ParameterLayout, params: np.ndarray) -> None:
        """Set the model from natural-unit parameters and rebuild its matrices."""
        params = np.asarray(params, dtype=float)

        g = layout.group("branches")
        if g is not None and self.branchlen_mode == BranchLengthMode.FREE:
            values = params[g.slice]
            for node_id, idx, factor in layout.edge_params:
                self.tree.nodes[node_id].branch_length = float(values[idx] * factor)
        elif g is not None:
            values = params[g.slice]
            heights = np.zeros(self.tree.n_nodes)
            heights[self.tree.root.id] = values[0]
            fractions = dict(zip(layout.clock_nodes, values[1:]))
            for node in self.tree.preorder():
                if node.parent is None:
                    continue
                parent_height = heights[node.parent]
                if not node.is_leaf:
                    heights[node.id] = fractions[node.id] * parent_height
                node.branch_length = float(parent_height - heights[node.id])
        if self.root_leaf is not None:
            self.tree.nodes[self.root_leaf].branch_length = 0.0

        g = layout.group("scale")
        if g is not None:
            self.scale = float(params[g.start])
        g = layout.group("scale_sub")
        if g is not None:
            self.scale_sub = float(params[g.start])

        g = layout.group("ratevar")
        if g is not None:
            if self.rate_consts is not None:
                weights = params[g.slice]
                self.rate_weights = weights / weights.sum()
            else:
                self.alpha = float(params[g.start])

        g = layout.group("backgd")
        if g is not None:
            self.backgd = self._unpack_backgd(params[g.slice])

        g = layout.group("ratematrix")
        if g is not None:
            self.subst_params = params[g.slice].copy()

        for k, alt in enumerate(self.alt_models):
            g = layout.group(f"alt{k}.ratematrix")
            if g is not None:
                alt.subst_params = params[g.slice].copy()
            g = layout.group(f"alt{k}.backgd")
            if g is not None:
                alt.backgd = self._unpack_backgd(params[g.slice])

        self.set_subst_matrices()

    def init_backgd(self, stats, cat: int = -1) -> None:
        """
        Set background frequencies from the data.

        Frequencies are the observed state counts over fully observed tuple
        rows; a pseudocount of one is added to every state if any state is
        unobserved. JC69 keeps uniform frequencies.
        """
        if CAPABILITIES[self.kind].uniform_freqs:
            self.backgd = np.full(self.nstates, 1.0 / self.nstates)
            self.set_subst_matrices()
            return

        lut = np.full(256, -1, dtype=np.int64)
        for i, ch in enumerate(self.alphabet):
            lut[ord(ch)] = i
        size = self.order + 1
        tuples = stats.tuples[:, -size:, :] if stats.tuple_size >= size else None
        freqs = np.zeros(self.nstates)
        if tuples is not None and stats.ntuples > 0:
            codes = lut[tuples]
            valid = np.all(codes >= 0, axis=1)
            radix = len(self.alphabet) ** np.arange(size - 1, -1, -1)
            states = np.einsum('tps,p->ts', np.maximum(codes, 0), radix)
            weights = np.broadcast_to(stats.counts_for(cat)[:, np.newaxis], states.shape)
            freqs = np.bincount(states[valid], weights=weights[valid], minlength=self.nstates)

        if np.any(freqs == 0):
            freqs = freqs + 1.0
        if self.eqfreq_sym:
            classes = self._sym_classes()
            freqs = (np.bincount(classes, weights=freqs) / np.bincount(classes))[classes]
        self.backgd = freqs / freqs.sum()
        for alt in self.alt_models:
            if alt.backgd is not None:
                alt.backgd = self.backgd.copy()
        self.set_subst_matrices()

    def transition_param_mask(self) -> np.ndarray:
        """True for rate-matrix parameters scaling transition-type changes."""
        return rate_classes(self.kind, self.alphabet)[1]
