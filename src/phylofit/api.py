"""
High-level API for fitting tree models.

This module loads inputs from files or objects, builds a
:class:`~phylofit.config.FitConfig` from keyword arguments and runs a
fitting session.
"""

from dataclasses import fields
from pathlib import Path
from typing import Optional, Union

from .config import FitConfig
from .core.likelihood import TreeLikelihood
from .core.stats import SufficientStats
from .errors import ConfigurationError, DataError
from .fitting.session import UnitResult, run_phylofit
from .io.category_map import CategoryMap, read_site_categories
from .io.model_file import read_model
from .io.sequences import Alignment
from .io.trees import Tree
from .models.subst import parse_subst_model
from .models.tree_model import TreeModel


def _load_alignment(alignment: Union[str, Path, Alignment]) -> Alignment:
    """
    Load an alignment with automatic format detection.

    Parameters
    ----------
    alignment : str, Path, or Alignment
        Path to a FASTA or PHYLIP file, or an Alignment object

    Returns
    -------
    Alignment
        Loaded alignment object

    Raises
    ------
    FileNotFoundError
        If the alignment file doesn't exist
    DataError
        If parsing fails
    """
    if isinstance(alignment, Alignment):
        return alignment

    path = Path(alignment)
    if not path.exists():
        raise FileNotFoundError(f"Alignment file not found: {path}")

    suffix = path.suffix.lower()
    try:
        if suffix in ('.fa', '.fasta', '.fna'):
            return Alignment.from_fasta(path)
        if suffix in ('.phy', '.phylip'):
            return Alignment.from_phylip(path)
        return Alignment.from_file(path)
    except ValueError as e:
        raise DataError(f"Could not parse alignment {path}: {e}") from e


def _load_tree(tree: Union[str, Path, Tree]) -> Tree:
    """
    Load a tree from a Newick file or string.

    Raises
    ------
    DataError
        If tree parsing fails
    """
    if isinstance(tree, Tree):
        return tree

    path_or_str = str(tree)
    path = Path(path_or_str)
    if path.exists():
        with open(path) as f:
            newick_str = f.read().strip()
    else:
        newick_str = path_or_str

    try:
        return Tree.from_newick(newick_str)
    except ValueError as e:
        raise DataError(f"Failed to parse tree: {e}") from e


def _load_model(model: Union[str, Path, TreeModel]) -> TreeModel:
    if isinstance(model, TreeModel):
        return model
    path = Path(model)
    if not path.exists():
        raise FileNotFoundError(f"Model file not found: {path}")
    return read_model(path)


def make_config(**options) -> FitConfig:
    """
    Build a :class:`FitConfig` from keyword options.

    ``subst_mod`` may be given by name; list-valued options may be given as
    lists.

    Raises
    ------
    ConfigurationError
        On unknown option names
    """
    known = {f.name for f in fields(FitConfig)}
    unknown = set(options) - known
    if unknown:
        raise ConfigurationError(f"Unknown option(s): {', '.join(sorted(unknown))}")

    if isinstance(options.get('subst_mod'), str):
        options['subst_mod'] = parse_subst_model(options['subst_mod'])
    for name in ('rate_consts', 'no_opt', 'bounds', 'ignore_branches', 'alt_models',
                 'do_cats', 'window_coords'):
        if options.get(name) is not None and not isinstance(options[name], tuple):
            options[name] = tuple(options[name])
    return FitConfig(**options)


def fit_tree_model(
    alignment: Union[str, Path, Alignment],
    tree: Optional[Union[str, Path, Tree]] = None,
    subst_mod: str = "REV",
    init_model: Optional[Union[str, Path, TreeModel]] = None,
    categories: Optional[Union[str, Path, list[int]]] = None,
    category_map: Optional[Union[str, Path, CategoryMap]] = None,
    **options,
) -> list[UnitResult]:
    """
    Fit a substitution model to an alignment and a tree.

    This is the main entry point for fitting tree models.

    Parameters
    ----------
    alignment : str, Path, or Alignment
        Alignment (FASTA or PHYLIP files are detected automatically)
    tree : str, Path, or Tree, optional
        Newick file, Newick string or Tree; may be omitted for two
        sequences (or three under a reversible model), or when
        ``init_model`` is given
    subst_mod : str, default="REV"
        Substitution model name (see ``phylofit models``)
    init_model : str, Path, or TreeModel, optional
        Starting model (model file or object)
    categories : str, Path, or list of int, optional
        Per-column site categories (file of integers or list)
    category_map : str, Path, or CategoryMap, optional
        Names of the categories
    **options
        Any other :class:`FitConfig` field (``output_root=None`` to skip
        writing files)

    Returns
    -------
    list[UnitResult]
        One result per unit (category x window)

    Examples
    --------
    >>> results = fit_tree_model("aln.fa", "((a,b),c);", subst_mod="HKY85",
    ...                          output_root=None)  # doctest: +SKIP
    >>> print(results[0].summary())  # doctest: +SKIP
    """
    aln = _load_alignment(alignment)
    tree_obj = _load_tree(tree) if tree is not None else None
    input_model = _load_model(init_model) if init_model is not None else None

    if categories is not None:
        labels = categories if isinstance(categories, list) else read_site_categories(categories)
        try:
            aln.set_categories(labels)
        except ValueError as e:
            raise DataError(str(e)) from e

    cmap = category_map
    if category_map is not None and not isinstance(category_map, CategoryMap):
        cmap = CategoryMap.from_file(category_map)

    options.setdefault('msa_label', str(alignment) if not isinstance(alignment, Alignment)
                       else "alignment")
    config = make_config(subst_mod=subst_mod, **options)
    return run_phylofit(aln, config, tree=tree_obj, input_model=input_model,
                        category_map=cmap)


def compute_likelihood(
    alignment: Union[str, Path, Alignment],
    model: Union[str, Path, TreeModel],
    conditional: bool = False,
) -> float:
    """
    Log likelihood (natural log) of an alignment under a fixed tree model.

    Parameters
    ----------
    alignment : str, Path, or Alignment
        Alignment
    model : str, Path, or TreeModel
        Model file or object; its tree must cover every sequence name it uses
    conditional : bool, default=False
        Score each tuple by the probability of its last column given the
        preceding ones

    Returns
    -------
    float
        Log likelihood
    """
    aln = _load_alignment(alignment)
    tree_model = _load_model(model)
    tree_model.use_conditionals = conditional
    stats = SufficientStats.from_alignment(
        Alignment(aln.names, aln.sequences, aln.length, tree_model.alphabet, aln.categories),
        tree_model.order + 1,
    )
    return TreeLikelihood(tree_model, stats).log_likelihood()
