"""
Core algorithms for phylogenetic likelihood calculation.

This module provides low-level computational routines:

- **Sufficient statistics**: distinct column tuples and their counts
- **Likelihood calculation**: Felsenstein's pruning algorithm with rate
  variation, posteriors and expected substitution counts
- **Matrix operations**: Eigendecomposition and matrix exponential

These are expert-level functions typically not needed by end users.
The high-level API (:mod:`phylofit.api`) provides easier access.
"""

from phylofit.core.likelihood import TreeLikelihood, TreePosteriors
from phylofit.core.matrix import matrix_exponential
from phylofit.core.stats import SufficientStats

__all__ = ["SufficientStats", "TreeLikelihood", "TreePosteriors", "matrix_exponential"]
