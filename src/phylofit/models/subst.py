"""
Catalog of nucleotide substitution models.

Each supported model is a member of the closed :class:`SubstModelKind` enum.
Its capabilities (context order, reversibility, gap support) live in one
table, and its rate matrix is assembled from a *rate class* matrix: entry
``[i, j]`` is the index of the free parameter scaling the i -> j rate, or one
of the sentinels :data:`FIXED` (rate 1) and :data:`ZERO` (no direct change).
"""

from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from itertools import product

import numpy as np

from ..core.matrix import create_reversible_Q, stationary_distribution
from ..errors import ConfigurationError, ModelError

ZERO = -1
FIXED = -2

_TRANSITIONS = {('A', 'G'), ('G', 'A'), ('C', 'T'), ('T', 'C')}
_COMPLEMENT = {'A': 'T', 'T': 'A', 'C': 'G', 'G': 'C', '-': '-'}


class SubstModelKind(str, Enum):
    """Supported substitution models."""
    JC69 = "JC69"
    F81 = "F81"
    HKY85 = "HKY85"
    HKY85G = "HKY85+Gap"
    REV = "REV"
    SSREV = "SSREV"
    UNREST = "UNREST"
    R2 = "R2"
    U2 = "U2"
    R3 = "R3"
    U3 = "U3"


@dataclass(frozen=True)
class SubstModelInfo:
    """
    Capabilities of a substitution model.

    Attributes
    ----------
    order : int
        Context order; states are (order + 1)-tuples of bases
    reversible : bool
        Whether the model satisfies detailed balance
    supports_gaps : bool
        Whether gaps may be modeled as a fifth base
    uniform_freqs : bool
        Whether background frequencies are fixed to be uniform
    description : str
        Display name
    """

    order: int
    reversible: bool
    supports_gaps: bool
    uniform_freqs: bool
    description: str


CAPABILITIES: dict[SubstModelKind, SubstModelInfo] = {
    SubstModelKind.JC69: SubstModelInfo(0, True, True, True, "JC69"),
    SubstModelKind.F81: SubstModelInfo(0, True, True, False, "F81"),
    SubstModelKind.HKY85: SubstModelInfo(0, True, False, False, "HKY85"),
    SubstModelKind.HKY85G: SubstModelInfo(0, True, True, False, "HKY85+Gap"),
    SubstModelKind.REV: SubstModelInfo(0, True, True, False, "REV (general reversible)"),
    SubstModelKind.SSREV: SubstModelInfo(0, True, True, False, "SSREV (strand-symmetric REV)"),
    SubstModelKind.UNREST: SubstModelInfo(0, False, True, False, "UNREST (unrestricted)"),
    SubstModelKind.R2: SubstModelInfo(1, True, False, False, "R2 (dinucleotide reversible)"),
    SubstModelKind.U2: SubstModelInfo(1, False, False, False, "U2 (dinucleotide unrestricted)"),
    SubstModelKind.R3: SubstModelInfo(2, True, False, False, "R3 (trinucleotide reversible)"),
    SubstModelKind.U3: SubstModelInfo(2, False, False, False, "U3 (trinucleotide unrestricted)"),
}


def parse_subst_model(name: str) -> SubstModelKind:
    """
    Look up a model by name (case-insensitive).

    Examples
    --------
    >>> parse_subst_model("hky85")
    <SubstModelKind.HKY85: 'HKY85'>
    """
    key = name.strip().upper().replace('GAP', 'Gap')
    aliases = {"HKY85G": SubstModelKind.HKY85G, "HKY85+Gap": SubstModelKind.HKY85G,
               "GTR": SubstModelKind.REV}
    if key in aliases:
        return aliases[key]
    for kind in SubstModelKind:
        if kind.value.upper() == key.upper():
            return kind
    valid = ", ".join(k.value for k in SubstModelKind)
    raise ConfigurationError(f"Unknown substitution model '{name}'. Valid models: {valid}")


def model_order(kind: SubstModelKind) -> int:
    return CAPABILITIES[kind].order


def is_reversible(kind: SubstModelKind) -> bool:
    return CAPABILITIES[kind].reversible


def tuple_states(alphabet: str, order: int) -> list[str]:
    """
    State labels: all (order + 1)-tuples over ``alphabet``.

    The first tuple position is the most significant digit of the state index.
    """
    return ["".join(p) for p in product(alphabet, repeat=order + 1)]


@lru_cache(maxsize=None)
def rate_classes(kind: SubstModelKind, alphabet: str) -> tuple[np.ndarray, np.ndarray]:
    """
    Rate class matrix and transition flags of the free parameters.

    Parameters
    ----------
    kind : SubstModelKind
        Substitution model
    alphabet : str
        Base alphabet ("ACGT", or "ACGT-" when gaps are modeled as a base)

    Returns
    -------
    classes : ndarray, shape (nstates, nstates)
        Parameter index of each rate, or ZERO / FIXED
    is_transition : ndarray of bool, shape (nparams,)
        True for parameters that scale transition-type (A<->G, C<->T) changes
    """
    info = CAPABILITIES[kind]
    if '-' in alphabet and not info.supports_gaps:
        raise ModelError(f"{kind.value} does not support gaps as bases")

    states = tuple_states(alphabet, info.order)
    n = len(states)
    classes = np.full((n, n), ZERO, dtype=np.int64)
    keys: dict = {}
    transition_flags: list[bool] = []

    def param_for(key, transition: bool) -> int:
        if key not in keys:
            keys[key] = len(keys)
            transition_flags.append(transition)
        return keys[key]

    for i, si in enumerate(states):
        for j, sj in enumerate(states):
            if i == j:
                continue
            diffs = [k for k in range(len(si)) if si[k] != sj[k]]
            if len(diffs) != 1:
                continue
            a, b = si[diffs[0]], sj[diffs[0]]
            transition = (a, b) in _TRANSITIONS
            gap_change = a == '-' or b == '-'

            if kind in (SubstModelKind.JC69, SubstModelKind.F81):
                classes[i, j] = FIXED
            elif kind == SubstModelKind.HKY85:
                classes[i, j] = param_for('kappa', True) if transition else FIXED
            elif kind == SubstModelKind.HKY85G:
                if gap_change:
                    classes[i, j] = param_for('gap', False)
                elif transition:
                    classes[i, j] = param_for('kappa', True)
                else:
                    classes[i, j] = FIXED
            elif kind == SubstModelKind.SSREV:
                pair = frozenset((a, b))
                mirror = frozenset((_COMPLEMENT[a], _COMPLEMENT[b]))
                classes[i, j] = param_for(frozenset((pair, mirror)), transition)
            elif info.reversible:
                classes[i, j] = param_for(frozenset((si, sj)), transition)
            else:
                classes[i, j] = param_for((si, sj), transition)

    return classes, np.array(transition_flags, dtype=bool)


def n_rate_params(kind: SubstModelKind, alphabet: str) -> int:
    return len(rate_classes(kind, alphabet)[1])


def build_rate_matrix(
    kind: SubstModelKind,
    alphabet: str,
    params: np.ndarray,
    backgd: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Assemble a rate matrix normalized to one expected substitution per unit time.

    Parameters
    ----------
    kind : SubstModelKind
        Substitution model
    alphabet : str
        Base alphabet
    params : ndarray
        Free rate parameters (see :func:`rate_classes`)
    backgd : ndarray, shape (nstates,)
        Background frequencies (ignored for non-reversible models)

    Returns
    -------
    Q : ndarray, shape (nstates, nstates)
        Rate matrix
    pi : ndarray, shape (nstates,)
        Equilibrium distribution of Q (``backgd`` for reversible models)
    """
    classes, flags = rate_classes(kind, alphabet)
    params = np.asarray(params, dtype=float)
    if len(params) != len(flags):
        raise ModelError(
            f"{kind.value} expects {len(flags)} rate parameters, got {len(params)}"
        )

    rates = np.where(classes >= 0, params[np.clip(classes, 0, None)] if len(params) else 0.0,
                     np.where(classes == FIXED, 1.0, 0.0))

    if CAPABILITIES[kind].reversible:
        pi = np.asarray(backgd, dtype=float)
        return create_reversible_Q(rates, pi, normalize=True), pi

    Q = rates.astype(float)
    np.fill_diagonal(Q, 0.0)
    np.fill_diagonal(Q, -Q.sum(axis=1))
    pi = stationary_distribution(Q)
    expected_rate = -np.dot(pi, Q.diagonal())
    if expected_rate > 0:
        Q /= expected_rate
    return Q, pi
