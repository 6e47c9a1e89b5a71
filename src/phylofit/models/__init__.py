"""
Substitution models and rate variation.

Tree models (:mod:`phylofit.models.tree_model`) combine a substitution
model with a tree, rate categories and the parameter layout used during
fitting.
"""

from phylofit.models.rates import discrete_gamma
from phylofit.models.subst import CAPABILITIES, SubstModelKind, parse_subst_model

__all__ = ["CAPABILITIES", "SubstModelKind", "discrete_gamma", "parse_subst_model"]
