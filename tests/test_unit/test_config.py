"""
Unit tests for fitting options and their validation.
"""

import pytest

from phylofit.api import make_config
from phylofit.config import (
    BranchLengthMode,
    FitConfig,
    SubtreeBound,
    parse_bounds,
    parse_subtree,
)
from phylofit.errors import ConfigurationError, PhyloFitWarning
from phylofit.models.subst import SubstModelKind


class TestParsing:
    """Test option string parsers."""

    def test_subtree_suffixes(self):
        """Subtree names may carry a loss or gain constraint."""
        assert parse_subtree("primates") == ("primates", SubtreeBound.NONE)
        assert parse_subtree("primates:loss") == ("primates", SubtreeBound.LOSS)
        assert parse_subtree("primates:gain") == ("primates", SubtreeBound.GAIN)

    def test_subtree_bad_suffix(self):
        """Only loss and gain are recognized."""
        with pytest.raises(ConfigurationError, match="Unrecognized suffix"):
            parse_subtree("primates:lots")

    def test_bounds(self):
        """Either side of a bound may be left open."""
        bounds = parse_bounds(("ratematrix[0.1,10]", "branches[,0.5]", "scale[2,]"))

        assert bounds["ratematrix"] == (0.1, 10.0)
        assert bounds["branches"] == (None, 0.5)
        assert bounds["scale"] == (2.0, None)

    @pytest.mark.parametrize("spec, message", [
        ("ratematrix(0.1,10)", "expected group"),
        ("kappa[0.1,10]", "Unknown parameter group"),
        ("scale[x,2]", "Bad bound value"),
        ("scale[3,2]", "exceeds"),
    ])
    def test_bad_bounds(self, spec, message):
        """Malformed bounds are rejected with a specific message."""
        with pytest.raises(ConfigurationError, match=message):
            parse_bounds((spec,))


class TestDerivedOptions:
    """Test properties derived from the options."""

    def test_branch_length_modes(self):
        """Branch length mode follows the estimation flags."""
        assert FitConfig().branch_length_mode == BranchLengthMode.FREE
        assert FitConfig(assume_clock=True).branch_length_mode == BranchLengthMode.CLOCK
        assert FitConfig(estimate_scale_only=True).branch_length_mode == BranchLengthMode.SCALE_ONLY
        assert FitConfig(subtree="x").branch_length_mode == BranchLengthMode.SCALE_ONLY
        assert FitConfig(no_branchlens=True, assume_clock=True).branch_length_mode == BranchLengthMode.NONE

    def test_alphabet(self):
        """Gaps are added to the alphabet when modeled as bases."""
        assert FitConfig().alphabet == "ACGT"
        assert FitConfig(gaps_as_bases=True).alphabet == "ACGT-"

    def test_order(self):
        """Context order comes from the substitution model."""
        assert FitConfig(subst_mod=SubstModelKind.R2).order == 1
        assert FitConfig().order == 0

    def test_make_config(self):
        """Model names and lists are converted."""
        config = make_config(subst_mod="hky85", rate_consts=[2.0, 0.5], nratecats=2)

        assert config.subst_mod == SubstModelKind.HKY85
        assert config.rate_consts == (2.0, 0.5)
        assert config.sorted_rate_consts == (0.5, 2.0)

    def test_make_config_unknown(self):
        """Unknown option names are rejected."""
        with pytest.raises(ConfigurationError, match="nrates"):
            make_config(nrates=4)


class TestValidation:
    """Test rejection of incompatible options."""

    @pytest.mark.parametrize("options, message", [
        (dict(use_conditionals=True, use_em=True), "EM"),
        (dict(nratecats=0), "nratecats"),
        (dict(nratecats=2, rate_consts=(1.0,)), ">= 2 rate constants"),
        (dict(nratecats=2, rate_consts=(1.0, 1.0)), "distinct"),
        (dict(nratecats=3, rate_consts=(0.5, 1.0)), "length nratecats"),
        (dict(subst_mod=SubstModelKind.HKY85, gaps_as_bases=True), "gaps-as-bases"),
        (dict(no_freqs=True, estimate_backgd=True), "--no-freqs"),
        (dict(nonoverlapping=True, do_cats=("1",)), "--do-cats"),
        (dict(window_size=100, window_shift=50, window_coords=(1, 10)), "both"),
        (dict(window_coords=(1, 10, 20)), "pairs"),
        (dict(window_size=100, window_shift=50, output_root=None), "output root"),
        (dict(no_opt=("kappa",)), "no-opt"),
        (dict(alt_models=("HKY85",)), "alternative model"),
    ])
    def test_rejected(self, options, message):
        """Each bad combination raises a ConfigurationError."""
        with pytest.raises(ConfigurationError, match=message):
            FitConfig(**options).validate()

    def test_valid_returns_self(self):
        """Validation returns the config for chaining."""
        config = FitConfig(subst_mod=SubstModelKind.HKY85G, gaps_as_bases=True)
        assert config.validate() is config

    def test_subtree_warns(self):
        """A subtree without scale-only estimation warns unless quiet."""
        with pytest.warns(PhyloFitWarning, match="scale-only"):
            FitConfig(subtree="primates").validate()
