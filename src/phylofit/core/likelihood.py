"""
Tree likelihood and posterior computations.

Felsenstein's pruning algorithm is evaluated for all distinct column tuples
at once, one rate category at a time. Partial likelihoods at internal nodes
are rescaled per tuple to avoid underflow; the log scale factors are added
back at the root.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.special import logsumexp

from ..errors import DataError, ModelError

# Floor for per-tuple likelihoods before taking logs
MIN_TUPLE_LIKELIHOOD = 1e-300


@dataclass
class TreePosteriors:
    """
    Posterior quantities for the distinct tuples of an alignment.

    Attributes
    ----------
    tuple_lnl : ndarray, shape (ntuples,)
        Log likelihood of each tuple (natural log)
    base_probs : ndarray, shape (ntuples, nnodes, nstates), optional
        Posterior state distribution at every node
    expected_nsubst : ndarray, shape (ntuples, nnodes), optional
        Posterior probability that the branch above each node changes state
        (0 for the root)
    expected_nsubst_tot : ndarray, shape (nnodes, nstates, nstates), optional
        Expected number of sites with state ``a`` at the top and ``b`` at
        the bottom of the branch above each node, summed over tuples
    """

    tuple_lnl: np.ndarray
    base_probs: Optional[np.ndarray] = None
    expected_nsubst: Optional[np.ndarray] = None
    expected_nsubst_tot: Optional[np.ndarray] = None


@dataclass
class ExpectedCounts:
    """
    Sufficient statistics of the complete data, for the EM algorithm.

    Attributes
    ----------
    edge_counts : ndarray, shape (nratecats, nnodes, nstates, nstates)
        Expected endpoint-state pair counts of each branch, per rate category
    root_counts : ndarray, shape (nstates,)
        Expected root-state counts
    cat_counts : ndarray, shape (nratecats,)
        Expected number of sites in each rate category
    lnl : float
        Log likelihood at which the expectations were taken
    """

    edge_counts: np.ndarray
    root_counts: np.ndarray
    cat_counts: np.ndarray
    lnl: float


class TreeLikelihood:
    """
    Likelihood of a tree model given sufficient statistics.

    Parameters
    ----------
    model : TreeModel
        Tree model; its current parameters are read on every evaluation
    stats : SufficientStats
        Tuple counts; must contain a row for every leaf of the tree

    Examples
    --------
    >>> calc = TreeLikelihood(model, stats)  # doctest: +SKIP
    >>> calc.log_likelihood()  # doctest: +SKIP
    -1234.56
    """

    def __init__(self, model, stats):
        self.model = model
        self.stats = stats
        rows = {name: i for i, name in enumerate(stats.names)}
        self._leaf_rows = {}
        for node in model.tree.nodes:
            if node.is_leaf:
                if node.name not in rows:
                    raise DataError(f"Leaf '{node.name}' has no sequence in the alignment")
                self._leaf_rows[node.id] = rows[node.name]
        self._leaves = self._leaf_partials(marginalize_last=False)
        self._leaves_marginal = None

    def _leaf_partials(self, marginalize_last: bool) -> dict[int, np.ndarray]:
        """
        Indicator partials of each leaf.

        A state index is read with the first tuple position as its most
        significant digit, so the partial of a tuple row is the Kronecker
        product of one indicator vector per position. Symbols outside the
        alphabet are missing data (all ones).
        """
        alphabet = self.model.alphabet
        size = self.model.order + 1
        if self.stats.tuple_size < size:
            raise DataError(
                f"Statistics have tuples of size {self.stats.tuple_size}, "
                f"model needs {size}"
            )
        tuples = self.stats.tuples[:, -size:, :]
        nbases = len(alphabet)

        lut = np.full((256, nbases), 1.0)
        for i, ch in enumerate(alphabet):
            lut[ord(ch)] = 0.0
            lut[ord(ch), i] = 1.0

        partials = {}
        for node_id, row in self._leaf_rows.items():
            codes = tuples[:, :, row]
            partial = lut[codes[:, 0]]
            for pos in range(1, size):
                ind = lut[codes[:, pos]]
                if marginalize_last and pos == size - 1:
                    ind = np.ones_like(ind)
                partial = (partial[:, :, np.newaxis] * ind[:, np.newaxis, :]).reshape(len(codes), -1)
            if marginalize_last and size == 1:
                partial = np.ones_like(partial)
            partials[node_id] = partial
        return partials

    def _inside(self, P: np.ndarray, leaves: dict[int, np.ndarray]):
        """
        Postorder pass for one rate category.

        Returns
        -------
        partials : dict[int, ndarray]
            Rescaled partial likelihood of each node, shape (ntuples, nstates)
        ups : dict[int, ndarray]
            Message each non-root node sends to its parent
        log_scale : ndarray, shape (ntuples,)
            Sum of the log scale factors
        """
        ntuples = self.stats.ntuples
        partials = {}
        ups = {}
        log_scale = np.zeros(ntuples)
        for node in self.model.tree.postorder():
            if node.is_leaf:
                L = leaves[node.id]
            else:
                L = np.ones((ntuples, self.model.nstates))
                for c in node.children:
                    L = L * ups[c]
                scale = L.max(axis=1)
                scale[scale <= 0] = 1.0
                L = L / scale[:, np.newaxis]
                log_scale += np.log(scale)
            partials[node.id] = L
            if node.parent is not None:
                ups[node.id] = L @ P[node.id].T
        return partials, ups, log_scale

    def _category_tuple_lnl(self, P: np.ndarray, leaves) -> np.ndarray:
        """Per-category tuple log likelihoods, shape (nratecats, ntuples)."""
        pi = self.model.root_distribution()
        root = self.model.tree.root.id
        out = np.empty((P.shape[0], self.stats.ntuples))
        for k in range(P.shape[0]):
            partials, _, log_scale = self._inside(P[k], leaves)
            lik = partials[root] @ pi
            out[k] = np.log(np.maximum(lik, MIN_TUPLE_LIKELIHOOD)) + log_scale
        return out

    def _mixture_lnl(self, P: np.ndarray, leaves) -> np.ndarray:
        _, weights = self.model.category_rates()
        per_cat = self._category_tuple_lnl(P, leaves)
        with np.errstate(divide='ignore'):
            log_w = np.log(weights)
        return logsumexp(per_cat + log_w[:, np.newaxis], axis=0)

    def tuple_log_likelihoods(self) -> np.ndarray:
        """
        Log likelihood (natural log) of every distinct tuple.

        With conditional scoring, each tuple is scored by the probability of
        its last column given the preceding ones.
        """
        if self.stats.ntuples == 0:
            return np.empty(0)
        P = self.model.transition_matrices()
        lnl = self._mixture_lnl(P, self._leaves)
        if self.model.use_conditionals and self.model.order > 0:
            if self._leaves_marginal is None:
                self._leaves_marginal = self._leaf_partials(marginalize_last=True)
            lnl = lnl - self._mixture_lnl(P, self._leaves_marginal)
        return lnl

    def log_likelihood(self, cat: int = -1) -> float:
        """
        Log likelihood (natural log) of the columns in category ``cat``.

        Parameters
        ----------
        cat : int, default=-1
            Site category; negative means all columns

        Returns
        -------
        float
            Sum over tuples of count times tuple log likelihood
        """
        counts = self.stats.counts_for(cat)
        used = counts > 0
        if not np.any(used):
            return 0.0
        return float(np.dot(counts[used], self.tuple_log_likelihoods()[used]))

    def column_log_probs(self) -> np.ndarray:
        """
        Log probability (base 2) of every alignment column.

        Columns without a tuple (excluded categories) get NaN. Without a
        column map, tuples are reported in order.
        """
        tuple_lnl = self.tuple_log_likelihoods() / np.log(2.0)
        idx = self.stats.tuple_idx
        if idx is None:
            return tuple_lnl
        out = np.full(len(idx), np.nan)
        valid = idx >= 0
        out[valid] = tuple_lnl[idx[valid]]
        return out

    def _outside(self, P: np.ndarray, ups: dict[int, np.ndarray]):
        """
        Preorder pass: for each non-root node, the rescaled probability of the
        data outside its subtree as a function of its parent's state.
        """
        tree = self.model.tree
        ntuples = self.stats.ntuples
        pi = self.model.root_distribution()
        outside = {tree.root.id: np.broadcast_to(pi, (ntuples, len(pi)))}
        above = {}
        for node in tree.preorder():
            if node.parent is None:
                continue
            parent = tree.nodes[node.parent]
            msg = np.array(outside[parent.id])
            for s in parent.children:
                if s != node.id:
                    msg = msg * ups[s]
            norm = msg.max(axis=1)
            norm[norm <= 0] = 1.0
            msg = msg / norm[:, np.newaxis]
            above[node.id] = msg
            outside[node.id] = msg @ P[node.id]
        return outside, above

    def posteriors(
        self,
        cat: int = -1,
        do_bases: bool = True,
        do_nsubst: bool = False,
        do_nsubst_tot: bool = False,
    ) -> TreePosteriors:
        """
        Posterior state marginals and expected substitutions.

        Parameters
        ----------
        cat : int, default=-1
            Site category weighting ``expected_nsubst_tot``
        do_bases, do_nsubst, do_nsubst_tot : bool
            Which quantities to compute

        Raises
        ------
        ModelError
            If the model has more than one rate category
        """
        if self.model.nratecats > 1:
            raise ModelError("Posteriors are not supported with rate variation (nratecats > 1)")

        tree = self.model.tree
        P = self.model.transition_matrices()[0]
        partials, ups, _ = self._inside(P, self._leaves)
        outside, above = self._outside(P, ups)
        result = TreePosteriors(tuple_lnl=self.tuple_log_likelihoods())
        ntuples, n = self.stats.ntuples, self.model.nstates

        if do_bases:
            probs = np.zeros((ntuples, tree.n_nodes, n))
            for node in tree.nodes:
                joint = outside[node.id] * partials[node.id]
                total = joint.sum(axis=1, keepdims=True)
                total[total <= 0] = 1.0
                probs[:, node.id] = joint / total
            result.base_probs = probs

        if do_nsubst or do_nsubst_tot:
            counts = self.stats.counts_for(cat)
            nsubst = np.zeros((ntuples, tree.n_nodes))
            tot = np.zeros((tree.n_nodes, n, n))
            for node in tree.nodes:
                if node.parent is None:
                    continue
                a, L, Pv = above[node.id], partials[node.id], P[node.id]
                z = np.einsum('ta,ta->t', a, ups[node.id])
                z[z <= 0] = 1.0
                if do_nsubst:
                    stay = np.einsum('ta,a,ta->t', a, np.diag(Pv), L)
                    nsubst[:, node.id] = np.clip(1.0 - stay / z, 0.0, 1.0)
                if do_nsubst_tot:
                    tot[node.id] = Pv * ((a * (counts / z)[:, np.newaxis]).T @ L)
            if do_nsubst:
                result.expected_nsubst = nsubst
            if do_nsubst_tot:
                result.expected_nsubst_tot = tot
        return result

    def expected_counts(self, cat: int = -1) -> ExpectedCounts:
        """
        E-step: expected complete-data sufficient statistics.

        Rate-category memberships are the posterior category probabilities
        of each tuple; edge counts are weighted by them.
        """
        tree = self.model.tree
        P = self.model.transition_matrices()
        _, weights = self.model.category_rates()
        counts = self.stats.counts_for(cat)
        K, n = P.shape[0], self.model.nstates
        pi = self.model.root_distribution()
        root = tree.root.id

        per_cat = np.empty((K, self.stats.ntuples))
        passes = []
        for k in range(K):
            partials, ups, log_scale = self._inside(P[k], self._leaves)
            lik = partials[root] @ pi
            per_cat[k] = np.log(np.maximum(lik, MIN_TUPLE_LIKELIHOOD)) + log_scale
            passes.append((partials, ups))

        with np.errstate(divide='ignore'):
            joint = per_cat + np.log(weights)[:, np.newaxis]
        tuple_lnl = logsumexp(joint, axis=0)
        membership = np.exp(joint - tuple_lnl[np.newaxis, :])

        edge_counts = np.zeros((K, tree.n_nodes, n, n))
        root_counts = np.zeros(n)
        for k, (partials, ups) in enumerate(passes):
            w = counts * membership[k]
            if not np.any(w > 0):
                continue
            _, above = self._outside(P[k], ups)
            root_post = partials[root] * pi[np.newaxis, :]
            root_post /= np.maximum(root_post.sum(axis=1, keepdims=True), MIN_TUPLE_LIKELIHOOD)
            root_counts += w @ root_post
            for node in tree.nodes:
                if node.parent is None or node.id in self.model.ignored:
                    continue
                a, L = above[node.id], partials[node.id]
                z = np.einsum('ta,ta->t', a, ups[node.id])
                z[z <= 0] = 1.0
                edge_counts[k, node.id] = P[k, node.id] * ((a * (w / z)[:, np.newaxis]).T @ L)

        return ExpectedCounts(
            edge_counts=edge_counts,
            root_counts=root_counts,
            cat_counts=membership @ counts,
            lnl=float(np.dot(counts, tuple_lnl)),
        )
