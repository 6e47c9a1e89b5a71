"""
Parameter estimation for tree models.

- **Direct optimization**: L-BFGS-B on transformed parameters
- **EM**: expected counts from the likelihood engine, numerical M-step
- **Initialization**: default, random, model-derived and parsimony starts
"""

from phylofit.optimize.em import fit_em
from phylofit.optimize.optimizer import FitResult, TreeModelOptimizer, fit_direct

__all__ = ["FitResult", "TreeModelOptimizer", "fit_direct", "fit_em"]
