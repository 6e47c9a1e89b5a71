"""
phylofit: fit phylogenetic substitution models to multiple alignments.

Estimates branch lengths, substitution-rate parameters, equilibrium
frequencies and rate variation by maximum likelihood, optionally per site
category and per sliding window, and writes fitted tree models.

Quick Start
-----------
Fit a single model:

>>> from phylofit import fit_tree_model
>>> results = fit_tree_model("alignment.fa", "tree.nwk", subst_mod="HKY85")
>>> print(results[0].summary())

Score an alignment under an existing model:

>>> from phylofit import compute_likelihood
>>> lnl = compute_likelihood("alignment.fa", "phyloFit.mod")

Examples
--------
>>> # Discrete gamma rate variation, fitted separately in windows
>>> results = fit_tree_model("aln.fa", "tree.nwk", subst_mod="REV",
...                          nratecats=4, window_size=1000, window_shift=500)
>>> for r in results:
...     print(r.description, r.lnl)

>>> # Scale a subtree relative to the rest of the tree
>>> results = fit_tree_model("aln.fa", init_model="neutral.mod",
...                          subtree="primates:loss", no_freqs=True, no_rates=True)
"""

__version__ = "0.1.0"

# High-level API (simple interface)
from .api import (
    fit_tree_model,
    compute_likelihood,
    make_config,
)

# Configuration and results
from .config import FitConfig, Precision
from .fitting.session import FitSession, UnitResult
from .errors import PhyloFitError, ConfigurationError, DataError, ModelError, PhyloFitWarning

# I/O classes (for advanced users)
from .io.sequences import Alignment
from .io.trees import Tree
from .io.model_file import read_model, write_model

# Models and likelihood (expert use)
from .models.tree_model import TreeModel
from .core.likelihood import TreeLikelihood

__all__ = [
    # Simple API - Start here!
    "fit_tree_model",
    "compute_likelihood",
    "make_config",

    # Configuration and results
    "FitConfig",
    "Precision",
    "FitSession",
    "UnitResult",

    # Errors
    "PhyloFitError",
    "ConfigurationError",
    "DataError",
    "ModelError",
    "PhyloFitWarning",

    # I/O (advanced)
    "Alignment",
    "Tree",
    "read_model",
    "write_model",

    # Models and likelihood (expert)
    "TreeModel",
    "TreeLikelihood",

    # Version
    "__version__",
]
