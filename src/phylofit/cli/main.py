"""Main CLI application for phylofit."""

import typer
from pathlib import Path
from typing import Optional, List

from ..config import DEFAULT_ALPHA, DEFAULT_MIN_INFORMATIVE, DEFAULT_OUTPUT_ROOT, Precision

app = typer.Typer(
    name="phylofit",
    help="Fit phylogenetic substitution models to multiple alignments",
    no_args_is_help=True,
)


@app.command()
def fit(
    alignment: Path = typer.Argument(
        ...,
        help="Alignment file (FASTA or PHYLIP)",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    tree: Optional[Path] = typer.Option(
        None,
        "--tree", "-t",
        help="Tree file (Newick); optional for 2 sequences, or 3 with a reversible model",
        exists=True,
        dir_okay=False,
    ),
    subst_mod: str = typer.Option(
        "REV",
        "--subst-mod", "-s",
        help="Substitution model (see 'phylofit models')",
    ),
    init_model: Optional[Path] = typer.Option(
        None,
        "--init-model", "-M",
        help="Initialize with this model file",
        exists=True,
        dir_okay=False,
    ),
    out_root: str = typer.Option(
        DEFAULT_OUTPUT_ROOT,
        "--out-root", "-o",
        help="Root of output filenames",
    ),
    nrates: int = typer.Option(
        1,
        "--nrates", "-k",
        help="Number of rate categories (discrete gamma unless --rate-constants)",
        min=1,
    ),
    alpha: float = typer.Option(
        DEFAULT_ALPHA,
        "--alpha", "-a",
        help="Initial gamma shape parameter",
    ),
    rate_constants: Optional[str] = typer.Option(
        None,
        "--rate-constants", "-K",
        help="Comma-separated fixed rate constants (weights are estimated)",
    ),
    use_em: bool = typer.Option(
        False,
        "--EM", "-E",
        help="Fit with expectation-maximization",
    ),
    precision: Precision = typer.Option(
        Precision.HIGH,
        "--precision", "-p",
        help="Convergence precision",
    ),
    markov: bool = typer.Option(
        False,
        "--markov", "-N",
        help="Score tuples by the probability of the last column given the preceding ones",
    ),
    lnl_only: bool = typer.Option(
        False,
        "--lnl", "-L",
        help="Only compute the likelihood of the --init-model",
    ),
    post_probs: bool = typer.Option(
        False,
        "--post-probs", "-P",
        help="Write posterior probabilities of ancestral bases (.postprob)",
    ),
    expected_subs: bool = typer.Option(
        False,
        "--expected-subs", "-X",
        help="Write expected substitutions per site and branch (.expsub)",
    ),
    expected_total_subs: bool = typer.Option(
        False,
        "--expected-total-subs", "-Z",
        help="Write expected substitution counts per branch (.exptotsub)",
    ),
    column_probs: bool = typer.Option(
        False,
        "--column-probs", "-U",
        help="With --lnl, write per-column log2 probabilities (.colprobs)",
    ),
    random_init: bool = typer.Option(
        False,
        "--random-init", "-r",
        help="Random starting values",
    ),
    seed: Optional[int] = typer.Option(
        None,
        "--seed",
        help="Random seed for --random-init",
    ),
    init_parsimony: bool = typer.Option(
        False,
        "--init-parsimony", "-y",
        help="Initialize branch lengths by parsimony",
    ),
    parsimony_only: bool = typer.Option(
        False,
        "--parsimony-only",
        help="Stop after computing parsimony costs (implies --init-parsimony)",
    ),
    print_parsimony: Optional[Path] = typer.Option(
        None,
        "--print-parsimony",
        help="Write parsimony costs to this file",
    ),
    estimate_freqs: bool = typer.Option(
        False,
        "--estimate-freqs", "-F",
        help="Estimate background frequencies by maximum likelihood",
    ),
    sym_freqs: bool = typer.Option(
        False,
        "--sym-freqs", "-W",
        help="Constrain frequencies to be strand symmetric",
    ),
    no_freqs: bool = typer.Option(
        False,
        "--no-freqs", "-f",
        help="Keep the frequencies of the --init-model",
    ),
    no_rates: bool = typer.Option(
        False,
        "--no-rates", "-n",
        help="Keep the rate-matrix parameters of the --init-model",
    ),
    no_branchlens: bool = typer.Option(
        False,
        "--no-branchlens",
        help="Do not estimate branch lengths",
    ),
    scale_only: bool = typer.Option(
        False,
        "--scale-only", "-B",
        help="Estimate only a scale factor for the branch lengths",
    ),
    scale_subtree: Optional[str] = typer.Option(
        None,
        "--scale-subtree", "-S",
        help="Also estimate a scale factor for the subtree NODE[:loss|:gain]",
    ),
    clock: bool = typer.Option(
        False,
        "--clock", "-z",
        help="Assume a molecular clock",
    ),
    no_opt: Optional[str] = typer.Option(
        None,
        "--no-opt",
        help="Comma-separated parameter groups to hold fixed",
    ),
    bound: Optional[List[str]] = typer.Option(
        None,
        "--bound",
        help="Bounds for a parameter group, e.g. 'ratematrix[0.1,10]' (repeatable)",
    ),
    ignore_branches: Optional[str] = typer.Option(
        None,
        "--ignore-branches", "-b",
        help="Comma-separated branches to treat as infinitely long",
    ),
    alt_model: Optional[List[str]] = typer.Option(
        None,
        "--alt-model", "-d",
        help="Separate model for some branches: 'branches:MODEL' or 'branches:ratematrix[,backgd]'",
    ),
    ancestor: Optional[str] = typer.Option(
        None,
        "--ancestor",
        help="Treat this sequence as the root (non-reversible models only)",
    ),
    gaps_as_bases: bool = typer.Option(
        False,
        "--gaps-as-bases", "-G",
        help="Model gaps as a fifth base",
    ),
    site_categories: Optional[Path] = typer.Option(
        None,
        "--site-categories",
        help="File of per-column category labels",
        exists=True,
        dir_okay=False,
    ),
    catmap: Optional[Path] = typer.Option(
        None,
        "--catmap", "-c",
        help="Category map file",
        exists=True,
        dir_okay=False,
    ),
    do_cats: Optional[str] = typer.Option(
        None,
        "--do-cats", "-C",
        help="Comma-separated categories to fit (names or numbers)",
    ),
    non_overlapping: bool = typer.Option(
        False,
        "--non-overlapping", "-R",
        help="Fit to non-overlapping tuples only",
    ),
    windows: Optional[str] = typer.Option(
        None,
        "--windows", "-w",
        help="Fit in sliding windows: SIZE,SHIFT (reference coordinates)",
    ),
    windows_explicit: Optional[str] = typer.Option(
        None,
        "--windows-explicit", "-v",
        help="Fit in windows BEG1,END1,BEG2,END2,... (reference coordinates)",
    ),
    min_informative: int = typer.Option(
        DEFAULT_MIN_INFORMATIVE,
        "--min-informative", "-I",
        help="Skip units with fewer informative sites",
        min=0,
    ),
    log: Optional[str] = typer.Option(
        None,
        "--log", "-l",
        help="Write optimizer diagnostics to this file ('-' for stderr)",
    ),
    error: Optional[str] = typer.Option(
        None,
        "--error", "-e",
        help="Write parameter standard errors to this file",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Print results as JSON",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet", "-q",
        help="Minimal output",
    ),
):
    """
    Fit a substitution model to an alignment.

    Example:
        phylofit fit aln.fa -t tree.nwk -s HKY85
        phylofit fit aln.fa -t tree.nwk -s REV -k 4 --windows 1000,500
    """
    from .commands.fit import run_fit

    run_fit(
        alignment=alignment,
        tree=tree,
        subst_mod=subst_mod,
        init_model=init_model,
        out_root=out_root,
        nrates=nrates,
        alpha=alpha,
        rate_constants=rate_constants,
        use_em=use_em,
        precision=precision,
        markov=markov,
        lnl_only=lnl_only,
        post_probs=post_probs,
        expected_subs=expected_subs,
        expected_total_subs=expected_total_subs,
        column_probs=column_probs,
        random_init=random_init,
        seed=seed,
        init_parsimony=init_parsimony or parsimony_only,
        parsimony_only=parsimony_only,
        print_parsimony=print_parsimony,
        estimate_freqs=estimate_freqs,
        sym_freqs=sym_freqs,
        no_freqs=no_freqs,
        no_rates=no_rates,
        no_branchlens=no_branchlens,
        scale_only=scale_only,
        scale_subtree=scale_subtree,
        clock=clock,
        no_opt=no_opt,
        bound=bound or [],
        ignore_branches=ignore_branches,
        alt_model=alt_model or [],
        ancestor=ancestor,
        gaps_as_bases=gaps_as_bases,
        site_categories=site_categories,
        catmap=catmap,
        do_cats=do_cats,
        non_overlapping=non_overlapping,
        windows=windows,
        windows_explicit=windows_explicit,
        min_informative=min_informative,
        log=log,
        error=error,
        json_output=json_output,
        quiet=quiet,
    )


@app.command()
def models():
    """
    List the available substitution models.
    """
    from ..models.subst import CAPABILITIES, n_rate_params

    typer.echo(f"{'Model':<12} {'Order':>5} {'Reversible':>10} {'Gaps':>5} {'Params':>6}  Description")
    typer.echo("-" * 72)
    for kind, info in CAPABILITIES.items():
        typer.echo(
            f"{kind.value:<12} {info.order:>5} {'yes' if info.reversible else 'no':>10} "
            f"{'yes' if info.supports_gaps else 'no':>5} "
            f"{n_rate_params(kind, 'ACGT'):>6}  {info.description}"
        )


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
