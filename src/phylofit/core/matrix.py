"""
Matrix operations for phylogenetic likelihood calculations.

This module provides core matrix operations needed for computing transition
probabilities and likelihood calculations.
"""

import numpy as np
from scipy.linalg import expm


def matrix_exponential(Q: np.ndarray, t: float) -> np.ndarray:
    """
    Compute transition probability matrix P(t) = exp(Q*t).

    Uses scipy's matrix exponential (Padé approximation with scaling and
    squaring).

    Parameters
    ----------
    Q : ndarray, shape (n, n)
        Rate matrix
    t : float
        Branch length (time)

    Returns
    -------
    P : ndarray, shape (n, n)
        Transition probability matrix where P[i,j] is the probability
        of state i transitioning to state j over time t

    Examples
    --------
    >>> alpha = 0.25
    >>> Q = np.array([[-3*alpha, alpha, alpha, alpha],
    ...               [alpha, -3*alpha, alpha, alpha],
    ...               [alpha, alpha, -3*alpha, alpha],
    ...               [alpha, alpha, alpha, -3*alpha]])
    >>> P = matrix_exponential(Q, 0.1)
    >>> bool(np.isclose(np.sum(P[0]), 1.0))
    True
    """
    return expm(Q * t)


def eigen_decompose_rev(Q: np.ndarray, pi: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Eigendecompose reversible rate matrix Q = U @ diag(eigenvalues) @ V.

    Uses the symmetrization trick for reversible rate matrices:
    Q' = √D @ Q @ √D^(-1), where D = diag(pi), is symmetric and is
    decomposed with ``eigh``.

    Parameters
    ----------
    Q : ndarray, shape (n, n)
        Reversible rate matrix satisfying detailed balance
    pi : ndarray, shape (n,)
        Stationary distribution; all entries must be positive

    Returns
    -------
    eigenvalues : ndarray, shape (n,)
        Eigenvalues of Q, sorted in ascending order
    U : ndarray, shape (n, n)
        Left eigenvector matrix
    V : ndarray, shape (n, n)
        Right eigenvector matrix
    """
    sqrt_pi = np.sqrt(pi)

    Q_sym = Q * sqrt_pi[:, np.newaxis] / sqrt_pi[np.newaxis, :]
    # Remove round-off asymmetry before eigh
    Q_sym = 0.5 * (Q_sym + Q_sym.T)

    eigenvalues, eigenvectors = np.linalg.eigh(Q_sym)

    U = eigenvectors / sqrt_pi[:, np.newaxis]
    V = eigenvectors.T * sqrt_pi[np.newaxis, :]

    return eigenvalues, U, V


def transition_matrices(
    Q: np.ndarray,
    pi: np.ndarray,
    lengths: np.ndarray,
    reversible: bool,
) -> np.ndarray:
    """
    P(t) for many branch lengths at once.

    Reversible matrices with a strictly positive stationary distribution
    are decomposed once; otherwise each P(t) is computed with ``expm``.

    Parameters
    ----------
    Q : ndarray, shape (n, n)
        Rate matrix
    pi : ndarray, shape (n,)
        Stationary distribution of Q
    lengths : ndarray, shape (m,)
        Branch lengths (already multiplied by any rate-category factor)
    reversible : bool
        Whether Q satisfies detailed balance with ``pi``

    Returns
    -------
    ndarray, shape (m, n, n)
        One transition matrix per branch length
    """
    lengths = np.asarray(lengths, dtype=float)
    if reversible and np.all(pi > 0):
        eigenvalues, U, V = eigen_decompose_rev(Q, pi)
        expo = np.exp(np.outer(lengths, eigenvalues))
        P = np.einsum('ik,mk,kj->mij', U, expo, V)
    else:
        P = np.array([matrix_exponential(Q, t) for t in lengths]).reshape(len(lengths), *Q.shape)
    # Round-off can produce tiny negative entries
    return np.clip(P, 0.0, None)


def create_reversible_Q(
    rates: np.ndarray, pi: np.ndarray, normalize: bool = True
) -> np.ndarray:
    """
    Create a reversible rate matrix from exchangeability rates and stationary distribution.

    Parameters
    ----------
    rates : ndarray, shape (n, n)
        Symmetric exchangeability matrix (r[i,j] = r[j,i])
    pi : ndarray, shape (n,)
        Stationary distribution (equilibrium frequencies)
    normalize : bool, default=True
        If True, scale Q so that expected rate is 1 substitution per time unit

    Returns
    -------
    Q : ndarray, shape (n, n)
        Reversible rate matrix satisfying detailed balance

    Notes
    -----
    Q[i,j] = r[i,j] * pi[j] for i ≠ j, and Q[i,i] = -sum(Q[i,j] for j ≠ i).
    """
    Q = rates * pi[np.newaxis, :]

    np.fill_diagonal(Q, 0.0)
    row_sums = np.sum(Q, axis=1)
    np.fill_diagonal(Q, -row_sums)

    if normalize:
        expected_rate = -np.dot(pi, Q.diagonal())
        if expected_rate > 0:
            Q /= expected_rate

    return Q


def stationary_distribution(Q: np.ndarray) -> np.ndarray:
    """
    Equilibrium distribution pi of a rate matrix (pi @ Q = 0, sum(pi) = 1).
    """
    n = Q.shape[0]
    A = np.vstack([Q.T, np.ones(n)])
    b = np.zeros(n + 1)
    b[-1] = 1.0
    pi, *_ = np.linalg.lstsq(A, b, rcond=None)
    pi = np.clip(pi, 0.0, None)
    return pi / pi.sum()


def check_detailed_balance(Q: np.ndarray, pi: np.ndarray, rtol: float = 1e-10) -> bool:
    """
    Test if rate matrix Q satisfies detailed balance with stationary distribution pi.

    Detailed balance: π_i * Q[i,j] = π_j * Q[j,i] for all i, j
    """
    flux = pi[:, np.newaxis] * Q
    return bool(np.allclose(flux, flux.T, rtol=rtol, atol=1e-14))
