"""Fit command implementation."""

import json
import sys
import warnings
from pathlib import Path
from typing import Optional

from ...api import fit_tree_model
from ...config import Precision


def _split(text: Optional[str]) -> Optional[list[str]]:
    if text is None:
        return None
    return [tok.strip() for tok in text.split(',') if tok.strip()]


def _numbers(text: Optional[str], kind, option: str) -> Optional[list]:
    tokens = _split(text)
    if tokens is None:
        return None
    try:
        return [kind(tok) for tok in tokens]
    except ValueError:
        print(f"Error: Bad value for {option}: '{text}'", file=sys.stderr)
        sys.exit(1)


def _show_warning(message, category, filename, lineno, file=None, line=None):
    print(f"WARNING: {message}", file=sys.stderr)


def run_fit(
    alignment: Path,
    tree: Optional[Path],
    subst_mod: str,
    init_model: Optional[Path],
    out_root: str,
    nrates: int,
    alpha: float,
    rate_constants: Optional[str],
    use_em: bool,
    precision: Precision,
    markov: bool,
    lnl_only: bool,
    post_probs: bool,
    expected_subs: bool,
    expected_total_subs: bool,
    column_probs: bool,
    random_init: bool,
    seed: Optional[int],
    init_parsimony: bool,
    parsimony_only: bool,
    print_parsimony: Optional[Path],
    estimate_freqs: bool,
    sym_freqs: bool,
    no_freqs: bool,
    no_rates: bool,
    no_branchlens: bool,
    scale_only: bool,
    scale_subtree: Optional[str],
    clock: bool,
    no_opt: Optional[str],
    bound: list[str],
    ignore_branches: Optional[str],
    alt_model: list[str],
    ancestor: Optional[str],
    gaps_as_bases: bool,
    site_categories: Optional[Path],
    catmap: Optional[Path],
    do_cats: Optional[str],
    non_overlapping: bool,
    windows: Optional[str],
    windows_explicit: Optional[str],
    min_informative: int,
    log: Optional[str],
    error: Optional[str],
    json_output: bool,
    quiet: bool,
):
    """Fit a model to every category and window of an alignment."""
    consts = _numbers(rate_constants, float, "--rate-constants")
    if consts is not None and nrates == 1:
        nrates = len(consts)

    window_size = window_shift = None
    size_shift = _numbers(windows, int, "--windows")
    if size_shift is not None:
        if len(size_shift) != 2:
            print("Error: --windows expects SIZE,SHIFT", file=sys.stderr)
            sys.exit(1)
        window_size, window_shift = size_shift

    if not quiet:
        print(f"Fitting {subst_mod} to {alignment}", file=sys.stderr)
        print("=" * 70, file=sys.stderr)

    with warnings.catch_warnings():
        warnings.simplefilter("always")
        warnings.showwarning = _show_warning
        try:
            results = fit_tree_model(
                alignment,
                tree=tree,
                subst_mod=subst_mod,
                init_model=init_model,
                categories=site_categories,
                category_map=catmap,
                nratecats=nrates,
                alpha=alpha,
                rate_consts=consts,
                use_em=use_em,
                precision=precision,
                use_conditionals=markov,
                likelihood_only=lnl_only,
                do_bases=post_probs,
                do_expected_nsubst=expected_subs,
                do_expected_nsubst_tot=expected_total_subs,
                do_column_probs=column_probs,
                random_init=random_init,
                seed=seed,
                init_parsimony=init_parsimony,
                parsimony_only=parsimony_only,
                parsimony_cost_file=None if print_parsimony is None else str(print_parsimony),
                estimate_backgd=estimate_freqs,
                symfreq=sym_freqs,
                no_freqs=no_freqs,
                no_rates=no_rates,
                no_branchlens=no_branchlens,
                estimate_scale_only=scale_only,
                subtree=scale_subtree,
                assume_clock=clock,
                no_opt=_split(no_opt) or (),
                bounds=bound,
                ignore_branches=_split(ignore_branches) or (),
                alt_models=alt_model,
                root_seqname=ancestor,
                gaps_as_bases=gaps_as_bases,
                do_cats=_split(do_cats),
                nonoverlapping=non_overlapping,
                window_size=window_size,
                window_shift=window_shift,
                window_coords=_numbers(windows_explicit, int, "--windows-explicit"),
                min_informative=min_informative,
                output_root=out_root,
                log_file=log,
                error_file=error,
                msa_label=alignment.name,
                quiet=quiet,
            )
        except (ValueError, OSError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)

    if json_output:
        print(json.dumps([r.to_dict() for r in results], indent=2))
    elif not quiet:
        for result in results:
            print(result.summary())
    if not quiet:
        fitted = sum(not r.skipped for r in results)
        print(f"\nDone: {fitted} of {len(results)} unit(s) processed", file=sys.stderr)
