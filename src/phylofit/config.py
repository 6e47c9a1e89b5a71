"""
Fitting options.

:class:`FitConfig` is an immutable value object holding every option of a
fitting run. It is validated once, before any work is done; working state
(resolved units, per-unit models, parameter vectors) lives in
:class:`phylofit.fitting.session.FitSession`.
"""

import re
import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import ConfigurationError, PhyloFitWarning
from .io.sequences import DNA_ALPHABET, GAP_CHAR
from .models.subst import CAPABILITIES, SubstModelKind, model_order

DEFAULT_ALPHA = 1.0
DEFAULT_MIN_INFORMATIVE = 50
DEFAULT_OUTPUT_ROOT = "phyloFit"

PARAM_GROUPS = ("branches", "scale", "scale_sub", "ratevar", "backgd", "ratematrix")


class Precision(str, Enum):
    """Convergence tiers for the optimizers."""
    LOW = "LOW"
    MED = "MED"
    HIGH = "HIGH"
    VERY_HIGH = "VERY_HIGH"


# (ftol, gtol, maxiter) for scipy's L-BFGS-B
DIRECT_TIERS = {
    Precision.LOW: (1e-5, 1e-3, 100),
    Precision.MED: (1e-7, 1e-4, 300),
    Precision.HIGH: (1e-10, 1e-5, 1000),
    Precision.VERY_HIGH: (1e-13, 1e-7, 5000),
}

# (minimum lnL improvement, maximum number of EM iterations)
EM_TIERS = {
    Precision.LOW: (1e-2, 50),
    Precision.MED: (1e-4, 150),
    Precision.HIGH: (1e-6, 500),
    Precision.VERY_HIGH: (1e-8, 1000),
}


class BranchLengthMode(str, Enum):
    """How branch lengths are estimated."""
    FREE = "free"
    SCALE_ONLY = "scale-only"
    CLOCK = "clock"
    NONE = "none"


class SubtreeBound(str, Enum):
    """Constraint on the subtree scale factor in scale-only estimation."""
    NONE = "none"
    LOSS = "loss"   # subtree scale <= 1
    GAIN = "gain"   # subtree scale >= 1


def parse_subtree(spec: str) -> tuple[str, SubtreeBound]:
    """
    Split a ``name[:loss|:gain]`` subtree specification.

    Examples
    --------
    >>> parse_subtree("primates:loss")
    ('primates', <SubtreeBound.LOSS: 'loss'>)
    """
    name, _, suffix = spec.partition(':')
    if not name:
        raise ConfigurationError(f"Bad subtree specification '{spec}'")
    if not suffix:
        return name, SubtreeBound.NONE
    if suffix == "loss":
        return name, SubtreeBound.LOSS
    if suffix == "gain":
        return name, SubtreeBound.GAIN
    raise ConfigurationError(f"Unrecognized suffix '{suffix}'")


_BOUND_RE = re.compile(r'^\s*(\w+)\s*\[\s*([^,\]]*)\s*,\s*([^\]]*)\s*\]\s*$')


def parse_bounds(specs: tuple[str, ...]) -> dict[str, tuple[Optional[float], Optional[float]]]:
    """
    Parse ``group[lb,ub]`` bound specifications.

    Either bound may be left empty. Bounds are in natural units.

    Examples
    --------
    >>> parse_bounds(("ratematrix[0.1,10]", "branches[,0.5]"))
    {'ratematrix': (0.1, 10.0), 'branches': (None, 0.5)}
    """
    bounds = {}
    for spec in specs:
        match = _BOUND_RE.match(spec)
        if match is None:
            raise ConfigurationError(f"Bad bound specification '{spec}' (expected group[lb,ub])")
        group, lo, hi = match.groups()
        if group not in PARAM_GROUPS:
            raise ConfigurationError(
                f"Unknown parameter group '{group}' in bound; valid: {', '.join(PARAM_GROUPS)}"
            )
        try:
            lower = float(lo) if lo.strip() else None
            upper = float(hi) if hi.strip() else None
        except ValueError:
            raise ConfigurationError(f"Bad bound value in '{spec}'")
        if lower is not None and upper is not None and lower > upper:
            raise ConfigurationError(f"Lower bound exceeds upper bound in '{spec}'")
        bounds[group] = (lower, upper)
    return bounds


@dataclass(frozen=True)
class FitConfig:
    """
    Options of a fitting run.

    Branch-length estimation defaults to one free length per branch; the
    flags ``estimate_scale_only`` (or a ``subtree``), ``assume_clock`` and
    ``no_branchlens`` select the other modes.

    Attributes
    ----------
    subst_mod : SubstModelKind
        Substitution model
    nratecats : int
        Number of rate categories (1 = no rate variation)
    alpha : float
        Initial gamma shape parameter
    rate_consts : tuple of float, optional
        Fixed rate constants (one per category); their weights are estimated
    use_em : bool
        Fit with EM instead of direct optimization
    precision : Precision
        Convergence tier
    use_conditionals : bool
        Score tuples by the probability of their last column given the
        preceding ones
    likelihood_only : bool
        Only score the input model
    """

    subst_mod: SubstModelKind = SubstModelKind.REV
    nratecats: int = 1
    alpha: float = DEFAULT_ALPHA
    rate_consts: Optional[tuple[float, ...]] = None
    use_em: bool = False
    precision: Precision = Precision.HIGH
    use_conditionals: bool = False
    likelihood_only: bool = False

    # Posterior and per-column output
    do_bases: bool = False
    do_expected_nsubst: bool = False
    do_expected_nsubst_tot: bool = False
    do_column_probs: bool = False

    # Initialization
    random_init: bool = False
    init_parsimony: bool = False
    parsimony_only: bool = False
    seed: Optional[int] = None

    # Estimation control
    estimate_backgd: bool = False
    symfreq: bool = False
    no_freqs: bool = False
    no_rates: bool = False
    no_branchlens: bool = False
    estimate_scale_only: bool = False
    assume_clock: bool = False
    subtree: Optional[str] = None
    no_opt: tuple[str, ...] = ()
    bounds: tuple[str, ...] = ()
    ignore_branches: tuple[str, ...] = ()
    alt_models: tuple[str, ...] = ()
    root_seqname: Optional[str] = None
    gaps_as_bases: bool = False

    # Units of work
    do_cats: Optional[tuple[str, ...]] = None
    nonoverlapping: bool = False
    window_size: Optional[int] = None
    window_shift: Optional[int] = None
    window_coords: Optional[tuple[int, ...]] = None
    min_informative: int = DEFAULT_MIN_INFORMATIVE

    # Output
    output_root: Optional[str] = DEFAULT_OUTPUT_ROOT
    log_file: Optional[str] = None
    parsimony_cost_file: Optional[str] = None
    error_file: Optional[str] = None
    msa_label: str = "alignment"
    quiet: bool = False

    @property
    def order(self) -> int:
        return model_order(self.subst_mod)

    @property
    def alphabet(self) -> str:
        return DNA_ALPHABET + GAP_CHAR if self.gaps_as_bases else DNA_ALPHABET

    @property
    def scale_only(self) -> bool:
        """A subtree implies scale-only estimation."""
        return self.estimate_scale_only or self.subtree is not None

    @property
    def sorted_rate_consts(self) -> Optional[tuple[float, ...]]:
        if self.rate_consts is None:
            return None
        return tuple(sorted(self.rate_consts))

    @property
    def branch_length_mode(self) -> BranchLengthMode:
        if self.no_branchlens:
            return BranchLengthMode.NONE
        if self.scale_only:
            return BranchLengthMode.SCALE_ONLY
        if self.assume_clock:
            return BranchLengthMode.CLOCK
        return BranchLengthMode.FREE

    @property
    def parsed_bounds(self) -> dict[str, tuple[Optional[float], Optional[float]]]:
        return parse_bounds(self.bounds)

    @property
    def uses_windows(self) -> bool:
        return self.window_size is not None or self.window_coords is not None

    def validate(self) -> "FitConfig":
        """
        Check option combinations that do not depend on the input data.

        Returns
        -------
        FitConfig
            ``self``, for chaining

        Raises
        ------
        ConfigurationError
            On incompatible or malformed options
        """
        if self.use_conditionals and self.use_em:
            raise ConfigurationError(
                "Cannot use conditional probabilities (--markov) with EM (--EM)"
            )
        if self.nratecats < 1:
            raise ConfigurationError(f"nratecats must be >= 1, got {self.nratecats}")
        if self.nratecats > 1 and self.rate_consts is None and self.alpha <= 0:
            raise ConfigurationError(f"alpha must be positive, got {self.alpha}")

        if self.rate_consts is not None:
            consts = self.sorted_rate_consts
            if len(consts) < 2 or consts[0] <= 0:
                raise ConfigurationError(
                    "Must give >= 2 rate constants and all must be positive"
                )
            if len(set(consts)) != len(consts):
                raise ConfigurationError("Rate constants must be distinct")
            if len(consts) != self.nratecats:
                raise ConfigurationError(
                    f"Got {len(consts)} rate constants but nratecats = {self.nratecats}; "
                    "rate constants must have length nratecats"
                )

        if self.gaps_as_bases and not CAPABILITIES[self.subst_mod].supports_gaps:
            supported = ", ".join(k.value for k, info in CAPABILITIES.items() if info.supports_gaps)
            raise ConfigurationError(
                f"--gaps-as-bases is only supported with {supported}"
            )
        if self.no_freqs and self.estimate_backgd:
            raise ConfigurationError("Can't use both --no-freqs and --estimate-freqs")
        if self.symfreq and self.gaps_as_bases:
            raise ConfigurationError("Symmetric frequencies require the ACGT alphabet")

        if self.nonoverlapping and self.do_cats is not None:
            raise ConfigurationError("Cannot use --do-cats with --non-overlapping")

        if self.window_size is not None:
            if self.window_coords is not None:
                raise ConfigurationError("Cannot use both --windows and --windows-explicit")
            if self.window_size < 1 or self.window_shift is None or self.window_shift < 1:
                raise ConfigurationError("Window size and shift must be positive integers")
        if self.window_coords is not None and len(self.window_coords) % 2 != 0:
            raise ConfigurationError("Explicit windows must be given as begin,end pairs")
        if self.uses_windows and self.output_root is None:
            raise ConfigurationError("An output root is required to fit models in windows")
        if self.likelihood_only and self.do_column_probs and self.output_root is None:
            raise ConfigurationError("Column probabilities require an output root")

        if self.min_informative < 0:
            raise ConfigurationError("min_informative must be non-negative")

        for group in self.no_opt:
            if group not in PARAM_GROUPS:
                raise ConfigurationError(
                    f"Unknown parameter group '{group}' in no-opt list; "
                    f"valid: {', '.join(PARAM_GROUPS)}"
                )
        parse_bounds(self.bounds)

        if self.subtree is not None:
            parse_subtree(self.subtree)
            if not self.estimate_scale_only and not self.quiet:
                warnings.warn("Specifying a subtree implies scale-only estimation", PhyloFitWarning)

        for spec in self.alt_models:
            if ':' not in spec:
                raise ConfigurationError(
                    f"Bad alternative model '{spec}' (expected branches:model or branches:params)"
                )

        return self
