"""
Fitting sessions: fit one tree model per unit of work.

A :class:`FitSession` takes an alignment, a validated
:class:`~phylofit.config.FitConfig` and either a tree or an input model. It
partitions the alignment into units (site category x window) and, for each
unit, builds and prunes a tree model, extracts sufficient statistics, picks
starting values, optimizes and writes the requested outputs. Units are
independent: a caller-supplied input model is restored to its original state
before every unit.
"""

import json
import sys
import warnings
from contextlib import ExitStack
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

import numpy as np

from ..config import DEFAULT_ALPHA, FitConfig, parse_subtree
from ..core.likelihood import TreeLikelihood
from ..core.stats import SufficientStats
from ..errors import ConfigurationError, PhyloFitWarning
from ..io.category_map import CategoryMap
from ..io.model_file import write_model
from ..io.sequences import Alignment
from ..io.trees import Tree
from ..models.subst import is_reversible
from ..models.tree_model import TreeModel
from ..optimize.em import fit_em
from ..optimize.init import (
    init_branchlens_parsimony,
    init_default,
    init_from_model,
    init_random,
)
from ..optimize.optimizer import FitResult, estimate_standard_errors, fit_direct
from . import output
from .partition import (
    POOL_ALL,
    WorkUnit,
    enumerate_units,
    explicit_window_coords,
    map_windows,
    nonoverlapping_categories,
    resolve_categories,
    window_coords,
)

# Raw sequences of longer alignments are released once the statistics of
# the whole alignment, or of its last window, exist
LARGE_ALIGNMENT_LENGTH = 1_000_000


@dataclass
class UnitResult:
    """
    Outcome of one unit of work.

    Attributes
    ----------
    unit : WorkUnit
        Category and window
    description : str
        Human-readable unit name (e.g. ``"aln.fa (category 2, window 3)"``)
    n_informative : int
        Informative sites in the unit
    model : TreeModel, optional
        Copy of the fitted (or scored) model
    lnl : float, optional
        Log likelihood, natural log
    fit : FitResult, optional
        Optimizer outcome (None for likelihood-only and parsimony-only units)
    parsimony_cost : float, optional
        Fitch parsimony cost, when parsimony initialization was requested
    model_file : str, optional
        Path of the written model file
    skipped : bool
        True when the unit had too few informative sites
    """

    unit: WorkUnit
    description: str
    n_informative: int
    model: Optional[TreeModel] = None
    lnl: Optional[float] = None
    fit: Optional[FitResult] = None
    parsimony_cost: Optional[float] = None
    model_file: Optional[str] = None
    skipped: bool = False

    def summary(self) -> str:
        """Human-readable summary of the unit."""
        lines = ["=" * 70, f"UNIT: {self.description}", "=" * 70, ""]
        if self.skipped:
            lines.append(f"Skipped: {self.n_informative} informative sites")
            lines.append("=" * 70)
            return "\n".join(lines)

        if self.lnl is not None:
            lines.append(f"Log-likelihood:       {self.lnl:.6f}")
        lines.append(f"Informative sites:    {self.n_informative}")
        if self.parsimony_cost is not None:
            lines.append(f"Parsimony cost:       {self.parsimony_cost:.1f}")
        if self.fit is not None:
            status = "converged" if self.fit.converged else "not converged"
            lines.append(f"Iterations:           {self.fit.n_iterations} ({status})")
        if self.model is not None:
            lines.append("")
            lines.append(f"MODEL: {self.model.kind.value}")
            if self.model.nstates <= 5:
                lines.append("  Background: " + " ".join(
                    f"{s}={p:.4f}" for s, p in zip(self.model.states, self.model.backgd)
                ))
            if len(self.model.subst_params):
                lines.append("  Rate parameters: " + " ".join(
                    f"{v:.4f}" for v in self.model.subst_params
                ))
            if self.model.nratecats > 1:
                if self.model.rate_consts is not None:
                    lines.append("  Rate weights: " + " ".join(
                        f"{w:.4f}" for w in self.model.rate_weights
                    ))
                else:
                    lines.append(f"  alpha = {self.model.alpha:.4f}")
            lines.append("")
            lines.append("TREE:")
            lines.append(f"  {self.model.tree.to_newick(precision=6)}")
        if self.model_file is not None:
            lines.append("")
            lines.append(f"Model written to {self.model_file}")
        lines.append("")
        lines.append("=" * 70)
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable view of the result (the model as text fields)."""
        data: Dict[str, Any] = {
            'description': self.description,
            'category': self.unit.cat,
            'window': None if self.unit.window is None else self.unit.window + 1,
            'n_informative': int(self.n_informative),
            'skipped': self.skipped,
            'lnL': None if self.lnl is None else float(self.lnl),
            'parsimony_cost': self.parsimony_cost,
            'model_file': self.model_file,
        }
        if self.fit is not None:
            data['convergence_info'] = {
                'n_iterations': self.fit.n_iterations,
                'converged': self.fit.converged,
                'message': self.fit.message,
            }
        if self.model is not None:
            data['model'] = {
                'subst_mod': self.model.kind.value,
                'backgd': [float(p) for p in self.model.backgd],
                'rate_params': [float(v) for v in self.model.subst_params],
                'nratecats': self.model.nratecats,
                'alpha': float(self.model.alpha),
                'tree': self.model.tree.to_newick(),
            }
        return data

    def to_json(self, filepath: Optional[str] = None, indent: int = 2) -> str:
        """Export as JSON, optionally writing it to ``filepath``."""
        text = json.dumps(self.to_dict(), indent=indent)
        if filepath:
            with open(filepath, 'w') as f:
                f.write(text)
        return text

    def __repr__(self) -> str:
        if self.skipped:
            return f"UnitResult({self.description!r}, skipped)"
        lnl = "None" if self.lnl is None else f"{self.lnl:.4f}"
        return f"UnitResult({self.description!r}, lnL={lnl})"


def default_tree(names: list[str], reversible: bool) -> Optional[Tree]:
    """
    Tree to use when none is given: ``(a,b)`` for two sequences, and
    ``(a,(b,c))`` for three under a reversible model.
    """
    if len(names) == 2:
        return Tree.from_newick(f"({names[0]},{names[1]});")
    if len(names) == 3 and reversible:
        return Tree.from_newick(f"({names[0]},({names[1]},{names[2]}));")
    return None


class FitSession:
    """
    Working state of one fitting run.

    Parameters
    ----------
    alignment : Alignment
        Input alignment (with optional per-column categories)
    config : FitConfig
        Options; validated on construction
    tree : Tree, optional
        Topology (and starting branch lengths)
    input_model : TreeModel, optional
        Starting model; shared across units, restored before each and
        handed back unchanged when ``run`` returns
    category_map : CategoryMap, optional
        Names for the alignment's category labels

    Raises
    ------
    ConfigurationError
        If the options and inputs are incompatible
    """

    def __init__(
        self,
        alignment: Alignment,
        config: FitConfig,
        tree: Optional[Tree] = None,
        input_model: Optional[TreeModel] = None,
        category_map: Optional[CategoryMap] = None,
    ):
        self.config = config.validate()
        self.alignment = replace(alignment, alphabet=config.alphabet)
        self.tree = tree
        self.input_model = input_model
        self.category_map = category_map
        self.validate_inputs()

        if input_model is not None:
            input_model.mark_borrowed()
        self.rng = np.random.default_rng(config.seed)
        self.results: list[UnitResult] = []
        self._stats_cache: dict[Optional[int], SufficientStats] = {}
        self._last_window: Optional[int] = None
        self._compacted: set = set()
        self._fitted_any = False

    def _say(self, message: str) -> None:
        if not self.config.quiet:
            print(message, file=sys.stderr)

    def validate_inputs(self) -> None:
        """Check option combinations that depend on the inputs."""
        cfg = self.config
        if cfg.likelihood_only and self.input_model is None:
            raise ConfigurationError("--lnl requires --init-model")
        if self.input_model is not None and self.tree is not None:
            raise ConfigurationError("--tree is not allowed with --init-model")
        if (cfg.no_freqs or cfg.no_rates) and self.input_model is None:
            raise ConfigurationError("--no-freqs and --no-rates require --init-model")

        if self.tree is None and self.input_model is None:
            self.tree = default_tree(self.alignment.names, is_reversible(cfg.subst_mod))
            if self.tree is None:
                raise ConfigurationError(
                    "--tree required (a tree can only be inferred for two sequences, "
                    "or three under a reversible model)"
                )

        if cfg.root_seqname is not None and is_reversible(cfg.subst_mod):
            raise ConfigurationError(
                "--ancestor requires a non-reversible substitution model"
            )

        wants_posteriors = cfg.do_bases or cfg.do_expected_nsubst or cfg.do_expected_nsubst_tot
        nratecats = cfg.nratecats
        if cfg.likelihood_only and self.input_model is not None:
            nratecats = self.input_model.nratecats
        if wants_posteriors and nratecats > 1:
            raise ConfigurationError(
                "Posterior probabilities and expected substitutions are not "
                "supported with rate variation"
            )

    # ------------------------------------------------------------------
    # Units

    def _categories(self) -> list[int]:
        cfg = self.config
        do_cats = cfg.do_cats
        if cfg.nonoverlapping:
            cats, do_cats = nonoverlapping_categories(self.alignment.length, cfg.order)
            self.alignment.categories = cats
        return resolve_categories(self.alignment.ncats, do_cats, self.category_map, cfg.quiet)

    def _windows(self) -> Optional[list]:
        cfg = self.config
        if cfg.window_size is not None:
            pairs = window_coords(self.alignment.length, cfg.window_size, cfg.window_shift)
        elif cfg.window_coords is not None:
            pairs = explicit_window_coords(cfg.window_coords)
        else:
            return None
        cmap = self.alignment.coord_map(0)
        return map_windows(pairs, lambda pos: self.alignment.map_seq_to_msa(cmap, pos))

    def _cat_label(self, cat: int) -> Optional[str]:
        if cat == POOL_ALL or self.config.nonoverlapping:
            return None
        if self.category_map is not None:
            return self.category_map.label(cat)
        return str(cat)

    def _describe(self, unit: WorkUnit) -> str:
        parts = []
        if unit.cat != POOL_ALL:
            parts.append(f"category {unit.cat}")
        if unit.window is not None:
            parts.append(f"window {unit.window + 1}")
        if not parts:
            return self.config.msa_label
        return f"{self.config.msa_label} ({', '.join(parts)})"

    def _stats_for(self, unit: WorkUnit, restrict: Optional[list[int]]) -> SufficientStats:
        if unit.window in self._stats_cache:
            return self._stats_cache[unit.window]
        if unit.window is None:
            aln = self.alignment
        else:
            aln = self.alignment.sub_alignment(unit.beg, unit.end)
        self._say("Extracting sufficient statistics ...")
        stats = SufficientStats.from_alignment(aln, self.config.order + 1, restrict)
        if self.alignment.length > LARGE_ALIGNMENT_LENGTH and unit.window == self._last_window:
            self.alignment.drop_sequences()
        self._stats_cache = {unit.window: stats}
        return stats

    # ------------------------------------------------------------------
    # Models

    def _obtain_model(self) -> TreeModel:
        cfg = self.config
        if self.input_model is None:
            return TreeModel.new(
                tree=self.tree.copy(),
                kind=cfg.subst_mod,
                alphabet=cfg.alphabet,
                nratecats=cfg.nratecats,
                alpha=cfg.alpha,
                rate_consts=cfg.sorted_rate_consts,
            )

        model = self.input_model
        model.reset_for_unit()
        if cfg.likelihood_only:
            return model
        alpha = cfg.alpha
        if model.nratecats > 1 and model.rate_consts is None and cfg.alpha == DEFAULT_ALPHA:
            alpha = model.alpha
        model.reinit(cfg.subst_mod, cfg.nratecats, alpha, cfg.sorted_rate_consts)
        return model

    def _configure(self, model: TreeModel) -> None:
        cfg = self.config
        model.no_opt = frozenset(cfg.no_opt)
        model.eqfreq_sym = cfg.symfreq
        model.bounds = cfg.parsed_bounds
        model.use_conditionals = cfg.use_conditionals
        model.branchlen_mode = cfg.branch_length_mode
        model.estimate_ratemat = not cfg.no_rates
        model.estimate_backgd = cfg.estimate_backgd

    def _prune_and_attach(self, model: TreeModel) -> None:
        cfg = self.config
        pruned = model.prune(self.alignment.names)
        if pruned and not cfg.quiet:
            warnings.warn(
                "pruned away leaves of tree with no match in alignment "
                f"({', '.join(pruned)})",
                PhyloFitWarning,
            )
        if cfg.subtree is not None:
            model.set_subtree(*parse_subtree(cfg.subtree))
        if cfg.ignore_branches:
            model.set_ignored_branches(cfg.ignore_branches)
        if cfg.root_seqname is not None:
            model.set_root_leaf(cfg.root_seqname)
        if cfg.alt_models:
            model.attach_alt_models(cfg.alt_models)

    # ------------------------------------------------------------------
    # Running

    def run(self) -> list[UnitResult]:
        """
        Fit every unit.

        Returns
        -------
        list[UnitResult]
            One entry per unit, in window-major, category-minor order
        """
        cfg = self.config
        cats = self._categories()
        windows = self._windows()
        if windows is not None:
            mapped = [i for i, bounds in enumerate(windows) if bounds is not None]
            self._last_window = mapped[-1] if mapped else None
        restrict = cats if (cfg.do_cats or cfg.nonoverlapping) and cats != [POOL_ALL] else None

        with ExitStack() as stack:
            if self.input_model is not None:
                stack.callback(self.input_model.release)
            log = None
            if cfg.log_file == "-":
                log = sys.stderr
            elif cfg.log_file is not None:
                log = stack.enter_context(open(cfg.log_file, 'w'))
            parsimony_stream = None
            if cfg.parsimony_cost_file is not None:
                parsimony_stream = stack.enter_context(open(cfg.parsimony_cost_file, 'w'))
            summary = None
            if windows is not None:
                summary = stack.enter_context(open(f"{cfg.output_root}.win-sum", 'w'))
                summary.write(output.window_summary_header())

            for unit in enumerate_units(cats, windows):
                result = self._run_unit(unit, restrict, log, parsimony_stream, summary)
                self.results.append(result)
        return self.results

    def _run_unit(self, unit, restrict, log, parsimony_stream, summary) -> UnitResult:
        cfg = self.config
        description = self._describe(unit)
        label = self._cat_label(unit.cat)

        model = self._obtain_model()
        self._configure(model)
        self._prune_and_attach(model)

        stats = self._stats_for(unit, restrict)
        ninf = stats.informative_sites(unit.cat)
        if ninf < cfg.min_informative:
            warnings.warn(
                f"Skipping {description}; insufficient informative sites "
                f"({ninf} < {cfg.min_informative})",
                PhyloFitWarning,
            )
            return UnitResult(unit, description, ninf, skipped=True)

        parsimony_cost = None
        if cfg.init_parsimony:
            parsimony_cost = init_branchlens_parsimony(model, stats, unit.cat)
            if parsimony_stream is not None:
                output.write_parsimony_cost(parsimony_stream, parsimony_cost)
            if cfg.parsimony_only:
                return UnitResult(unit, description, ninf, model=model.copy(),
                                  parsimony_cost=parsimony_cost)

        fit = None
        if cfg.likelihood_only:
            self._say(f"Computing likelihood of {description} ...")
            model.set_subst_matrices()
            calc = TreeLikelihood(model, stats)
            model.lnl = calc.log_likelihood(unit.cat)
            if cfg.do_column_probs:
                path = output.unit_filename(cfg.output_root, ".colprobs", unit.window, label)
                self._say(f"Writing column probabilities to {path} ...")
                output.write_column_probs(path, calc.column_log_probs())
        else:
            fit = self._fit(model, stats, unit, description, log)

        model_file = None
        if cfg.output_root is not None:
            model_file = output.unit_filename(cfg.output_root, ".mod", unit.window, label)
            self._say(f"Writing model to {model_file} ...")
            write_model(model, model_file)
            self._write_posteriors(model, stats, unit, label)

        if summary is not None:
            summary.write(output.window_summary_row(
                unit.window, unit.beg, unit.end, unit.cat, model, ninf
            ))

        return UnitResult(
            unit, description, ninf,
            model=model.copy(),
            lnl=model.lnl,
            fit=fit,
            parsimony_cost=parsimony_cost,
            model_file=model_file,
        )

    def _fit(self, model: TreeModel, stats: SufficientStats, unit: WorkUnit,
             description: str, log) -> FitResult:
        cfg = self.config
        if self.input_model is None or not cfg.no_freqs:
            model.init_backgd(stats, unit.cat)

        layout = model.layout()
        if cfg.random_init:
            params = init_random(model, layout, self.rng)
        elif self.input_model is not None:
            params = init_from_model(model, layout)
        else:
            params = init_default(model, layout, cfg.alpha)
        if cfg.init_parsimony:
            init_branchlens_parsimony(model, stats, unit.cat, params, layout)

        if unit.window not in self._compacted:
            self._say("Compacting sufficient statistics ...")
            stats.collapse_missing(gaps_as_missing=not cfg.gaps_as_bases)
            self._compacted.add(unit.window)

        self._say(
            f"Fitting tree model to {description} using {model.kind.value}"
            f"{' (with rate variation)' if model.nratecats > 1 else ''} ..."
        )
        if log is not None and log is not sys.stderr:
            self._say(f"(writing log to {cfg.log_file})")
        if log is not None:
            print(f"# {description}", file=log)

        fitter = fit_em if cfg.use_em else fit_direct
        result = fitter(model, stats, params, cat=unit.cat, precision=cfg.precision,
                        log=log, layout=layout)

        if cfg.error_file is not None:
            errors = estimate_standard_errors(model, stats, layout, result.params, unit.cat)
            output.write_standard_errors(
                cfg.error_file, layout.labels(), result.params, errors,
                append=self._fitted_any, title=description,
            )
        self._fitted_any = True
        return result

    def _write_posteriors(self, model: TreeModel, stats: SufficientStats,
                          unit: WorkUnit, label: Optional[str]) -> None:
        cfg = self.config
        if not (cfg.do_bases or cfg.do_expected_nsubst or cfg.do_expected_nsubst_tot):
            return
        self._say("Computing posterior probabilities and/or related stats ...")
        calc = TreeLikelihood(model, stats)
        post = calc.posteriors(
            unit.cat,
            do_bases=cfg.do_bases,
            do_nsubst=cfg.do_expected_nsubst,
            do_nsubst_tot=cfg.do_expected_nsubst_tot,
        )
        root = cfg.output_root
        if cfg.do_bases:
            path = output.unit_filename(root, ".postprob", unit.window, label)
            self._say(f"Writing posterior probabilities to {path} ...")
            output.write_postprob(path, model, stats, post, unit.cat)
        if cfg.do_expected_nsubst:
            path = output.unit_filename(root, ".expsub", unit.window, label)
            self._say(f"Writing expected numbers of substitutions to {path} ...")
            output.write_expsub(path, model, stats, post, unit.cat)
        if cfg.do_expected_nsubst_tot:
            path = output.unit_filename(root, ".exptotsub", unit.window, label)
            self._say(f"Writing total expected numbers of substitutions to {path} ...")
            output.write_exptotsub(path, model, post)


def run_phylofit(
    alignment: Alignment,
    config: FitConfig,
    tree: Optional[Tree] = None,
    input_model: Optional[TreeModel] = None,
    category_map: Optional[CategoryMap] = None,
) -> list[UnitResult]:
    """
    Fit tree models to every unit of an alignment.

    Parameters
    ----------
    alignment : Alignment
        Input alignment
    config : FitConfig
        Options
    tree : Tree, optional
        Tree topology; inferred only for two or three sequences
    input_model : TreeModel, optional
        Starting model (required for likelihood-only runs)
    category_map : CategoryMap, optional
        Category names

    Returns
    -------
    list[UnitResult]
        One entry per unit
    """
    session = FitSession(alignment, config, tree=tree, input_model=input_model,
                         category_map=category_map)
    return session.run()
