"""
Direct maximum-likelihood optimization of tree models.
"""

from dataclasses import dataclass
from typing import Optional, TextIO

import numpy as np
from scipy.optimize import minimize

from ..config import DIRECT_TIERS, Precision
from ..core.likelihood import TreeLikelihood
from ..models.tree_model import ParameterLayout, TreeModel

# Objective value returned for parameters where the likelihood is undefined
BAD_OBJECTIVE = 1e300


@dataclass
class FitResult:
    """
    Outcome of an optimization.

    Attributes
    ----------
    params : ndarray
        Natural-unit parameters of the best point found
    lnl : float
        Log likelihood (natural log) at ``params``
    n_iterations : int
        Optimizer iterations (EM iterations for EM)
    converged : bool
        Whether the convergence criterion was met
    message : str
        Optimizer status message
    """

    params: np.ndarray
    lnl: float
    n_iterations: int
    converged: bool
    message: str = ""


class TreeModelOptimizer:
    """
    Maximize the likelihood of a tree model over its free parameters.

    Free parameters are optimized by L-BFGS-B on a log scale (logit for
    clock height fractions); frozen groups stay at their starting values.

    Parameters
    ----------
    model : TreeModel
        Model to fit; it is left at the best point found
    stats : SufficientStats
        Data
    layout : ParameterLayout
        Parameter layout of ``model``
    cat : int, default=-1
        Site category to fit (-1 for all sites)
    log : TextIO, optional
        Destination of per-iteration diagnostics
    """

    def __init__(
        self,
        model: TreeModel,
        stats,
        layout: ParameterLayout,
        cat: int = -1,
        log: Optional[TextIO] = None,
    ):
        self.model = model
        self.layout = layout
        self.cat = cat
        self.log = log
        self.calc = TreeLikelihood(model, stats)
        self.history = []
        self._base = model.pack(layout)
        self._best = (np.inf, None)

    def evaluate(self, params: np.ndarray) -> float:
        """Log likelihood at natural-unit ``params``; leaves the model there."""
        self.model.unpack(self.layout, params)
        return self.calc.log_likelihood(self.cat)

    def compute_log_likelihood(self, x: np.ndarray) -> float:
        """
        Negative log likelihood at transformed free parameters ``x``.

        Parameters
        ----------
        x : np.ndarray
            Free parameters on the optimizer's scale

        Returns
        -------
        float
            Negative log likelihood (for minimization)
        """
        params = self.layout.to_natural(x, self._base)
        with np.errstate(over='ignore', invalid='ignore'):
            lnl = self.evaluate(params)
        if not np.isfinite(lnl):
            return BAD_OBJECTIVE

        self.history.append({'log_likelihood': lnl})
        if -lnl < self._best[0]:
            self._best = (-lnl, params.copy())
        return -lnl

    def _log_iteration(self, x: np.ndarray) -> None:
        if self.log is None:
            return
        params = self.layout.to_natural(x, self._base)
        values = " ".join(f"{v:.6g}" for v in params[self.layout.free_mask()])
        lnl = self.history[-1]['log_likelihood'] if self.history else float('nan')
        print(f"{len(self.history)}\t{lnl:.6f}\t{values}", file=self.log)

    def optimize(self, init_params: np.ndarray, precision: Precision = Precision.HIGH) -> FitResult:
        """
        Optimize from ``init_params``.

        Parameters
        ----------
        init_params : ndarray
            Natural-unit starting values in layout order
        precision : Precision
            Convergence tier (ftol, gtol and iteration cap)

        Returns
        -------
        FitResult
            Best point found; not reaching convergence is not an error
        """
        ftol, gtol, maxiter = DIRECT_TIERS[Precision(precision)]
        self._base = self.layout.clip(np.asarray(init_params, dtype=float))
        self._best = (np.inf, None)
        self.history = []

        free = self.layout.free_mask()
        if not np.any(free):
            lnl = self.evaluate(self._base)
            self.model.lnl = lnl
            return FitResult(self._base.copy(), lnl, 0, True, "no free parameters")

        x0 = self.layout.to_internal(self._base)
        if self.log is not None:
            labels = [lab for lab, f in zip(self.layout.labels(), free) if f]
            print("it\tlnL\t" + "\t".join(labels), file=self.log)

        result = minimize(
            self.compute_log_likelihood,
            x0,
            method='L-BFGS-B',
            bounds=self.layout.internal_bounds(),
            callback=self._log_iteration,
            options={'maxiter': maxiter, 'ftol': ftol, 'gtol': gtol},
        )

        best_neg, best_params = self._best
        final = self.layout.to_natural(result.x, self._base)
        if best_params is None or result.fun <= best_neg:
            best_params = final
        lnl = self.evaluate(best_params)
        self.model.lnl = lnl
        if self.log is not None:
            print(f"Final lnL: {lnl:.6f} ({result.message})", file=self.log)

        return FitResult(
            params=best_params,
            lnl=lnl,
            n_iterations=int(result.nit),
            converged=bool(result.success),
            message=str(result.message),
        )


def fit_direct(
    model: TreeModel,
    stats,
    params: np.ndarray,
    cat: int = -1,
    precision: Precision = Precision.HIGH,
    log: Optional[TextIO] = None,
    layout: Optional[ParameterLayout] = None,
) -> FitResult:
    """Maximize the likelihood of ``model`` by direct optimization."""
    layout = model.layout() if layout is None else layout
    optimizer = TreeModelOptimizer(model, stats, layout, cat=cat, log=log)
    return optimizer.optimize(params, precision)


def estimate_standard_errors(
    model: TreeModel,
    stats,
    layout: ParameterLayout,
    params: np.ndarray,
    cat: int = -1,
    rel_step: float = 1e-4,
) -> np.ndarray:
    """
    Approximate standard errors of the free parameters.

    The Hessian of the negative log likelihood is taken by central
    differences in natural units; the standard errors are the square roots
    of the diagonal of its (pseudo-)inverse. The model is left at
    ``params``.

    Returns
    -------
    ndarray
        One entry per parameter in layout order; NaN for frozen parameters
    """
    calc = TreeLikelihood(model, stats)
    params = np.asarray(params, dtype=float)
    free_idx = np.flatnonzero(layout.free_mask())
    steps = rel_step * np.maximum(np.abs(params[free_idx]), 1e-3)

    def nll(delta: np.ndarray) -> float:
        point = params.copy()
        point[free_idx] = np.maximum(point[free_idx] + delta, 1e-12)
        model.unpack(layout, point)
        return -calc.log_likelihood(cat)

    m = len(free_idx)
    hessian = np.zeros((m, m))
    f0 = nll(np.zeros(m))
    for i in range(m):
        ei = np.zeros(m)
        ei[i] = steps[i]
        hessian[i, i] = (nll(ei) - 2.0 * f0 + nll(-ei)) / steps[i] ** 2
        for j in range(i + 1, m):
            ej = np.zeros(m)
            ej[j] = steps[j]
            value = (nll(ei + ej) - nll(ei - ej) - nll(-ei + ej) + nll(-ei - ej)) / (
                4.0 * steps[i] * steps[j]
            )
            hessian[i, j] = hessian[j, i] = value
    model.unpack(layout, params)

    try:
        cov = np.linalg.inv(hessian)
    except np.linalg.LinAlgError:
        cov = np.linalg.pinv(hessian)

    errors = np.full(len(params), np.nan)
    with np.errstate(invalid='ignore'):
        errors[free_idx] = np.sqrt(np.diag(cov))
    return errors
