"""
Expectation-maximization for tree models.

The E-step takes expected branch endpoint-state counts, root-state counts
and rate-category memberships under the current parameters
(:meth:`TreeLikelihood.expected_counts`). The M-step maximizes the expected
complete-data log likelihood numerically; rate-category weights have a
closed-form update when the rate constants are fixed.
"""

from dataclasses import replace
from typing import Optional, TextIO

import numpy as np
from scipy.optimize import minimize

from ..config import DIRECT_TIERS, EM_TIERS, Precision
from ..core.likelihood import ExpectedCounts, TreeLikelihood
from ..models.tree_model import ParameterLayout, TreeModel
from .optimizer import BAD_OBJECTIVE, FitResult

# Iteration cap of each numerical M-step
M_STEP_MAXITER = 100


def expected_complete_lnl(model: TreeModel, counts: ExpectedCounts) -> float:
    """Expected complete-data log likelihood at the model's current parameters."""
    P = model.transition_matrices()
    with np.errstate(divide='ignore'):
        log_P = np.log(np.maximum(P, 1e-300))
        log_pi = np.log(np.maximum(model.root_distribution(), 1e-300))
    value = float(np.sum(counts.edge_counts * log_P)) + float(np.dot(counts.root_counts, log_pi))
    if model.nratecats > 1:
        _, weights = model.category_rates()
        value += float(np.dot(counts.cat_counts, np.log(np.maximum(weights, 1e-300))))
    return value


def _m_step(
    model: TreeModel,
    layout: ParameterLayout,
    params: np.ndarray,
    counts: ExpectedCounts,
    precision: Precision,
) -> np.ndarray:
    params = params.copy()
    groups = list(layout.groups)

    ratevar = layout.group("ratevar")
    if ratevar is not None and model.rate_consts is not None and not ratevar.frozen:
        total = counts.cat_counts.sum()
        if total > 0:
            params[ratevar.slice] = np.maximum(counts.cat_counts / total, ratevar.lower)
        groups = [replace(g, frozen=True) if g.name == "ratevar" else g for g in groups]

    m_layout = replace(layout, groups=groups)
    if not np.any(m_layout.free_mask()):
        model.unpack(layout, params)
        return params

    def objective(x: np.ndarray) -> float:
        model.unpack(m_layout, m_layout.to_natural(x, params))
        with np.errstate(over='ignore', invalid='ignore'):
            value = expected_complete_lnl(model, counts)
        return -value if np.isfinite(value) else BAD_OBJECTIVE

    ftol, gtol, _ = DIRECT_TIERS[precision]
    result = minimize(
        objective,
        m_layout.to_internal(params),
        method='L-BFGS-B',
        bounds=m_layout.internal_bounds(),
        options={'maxiter': M_STEP_MAXITER, 'ftol': ftol, 'gtol': gtol},
    )
    params = m_layout.to_natural(result.x, params)
    model.unpack(layout, params)
    return params


def fit_em(
    model: TreeModel,
    stats,
    params: np.ndarray,
    cat: int = -1,
    precision: Precision = Precision.HIGH,
    log: Optional[TextIO] = None,
    layout: Optional[ParameterLayout] = None,
) -> FitResult:
    """
    Fit a tree model by EM.

    Iterates until the log likelihood improves by less than the tolerance
    of ``precision`` or the iteration cap is reached. If an iteration
    lowers the likelihood, the previous point is kept and iteration stops.

    Parameters
    ----------
    model : TreeModel
        Model to fit; left at the returned point
    stats : SufficientStats
        Data
    params : ndarray
        Natural-unit starting values
    cat : int, default=-1
        Site category to fit
    precision : Precision
        Convergence tier
    log : TextIO, optional
        Destination of per-iteration diagnostics

    Returns
    -------
    FitResult
        Final parameters and log likelihood
    """
    precision = Precision(precision)
    tol, max_iter = EM_TIERS[precision]
    layout = model.layout() if layout is None else layout
    params = layout.clip(np.asarray(params, dtype=float))
    model.unpack(layout, params)
    calc = TreeLikelihood(model, stats)

    if log is not None:
        print("it\tlnL", file=log)

    prev_lnl = -np.inf
    prev_params = params
    converged = False
    message = "maximum number of iterations reached"
    iteration = 0
    for iteration in range(1, max_iter + 1):
        counts = calc.expected_counts(cat)
        if log is not None:
            print(f"{iteration}\t{counts.lnl:.6f}", file=log)

        if counts.lnl < prev_lnl:
            params = prev_params
            converged = True
            message = "likelihood decreased; kept previous point"
            break
        if counts.lnl - prev_lnl < tol:
            converged = True
            message = "converged"
            break

        prev_lnl, prev_params = counts.lnl, params
        params = _m_step(model, layout, params, counts, precision)

    model.unpack(layout, params)
    lnl = calc.log_likelihood(cat)
    model.lnl = lnl
    if log is not None:
        print(f"Final lnL: {lnl:.6f} ({message})", file=log)
    return FitResult(params=params, lnl=lnl, n_iterations=iteration,
                     converged=converged, message=message)
