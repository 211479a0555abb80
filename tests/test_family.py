# tests/test_family.py
"""
Tests for response distributions and correlation structures.

Covers:
- Family construction, aliases, default and allowed links
- Family properties used by the code generators
- ``check_family`` normalization
- ARMA, ARR, BSTS and fixed covariance structures and their validation
"""

import dataclasses

import numpy as np
import pytest

from brmstan.exceptions import AutocorError, FamilyError
from brmstan.model import family as fam
from brmstan.model.autocor import (
    check_autocor,
    cor_ar,
    cor_arma,
    cor_arr,
    cor_bsts,
    cor_ma,
    cov_fixed,
)


# ==============================================================================
# Tests for Family
# ==============================================================================


class TestFamily:
    """Families and their links."""

    def test_alias(self):
        """Alternative spellings resolve to the canonical family name."""
        family = fam.Family("normal")
        assert family.family == "gaussian"
        assert family.link == "identity"

    def test_default_link(self):
        """The first allowed link is the default."""
        assert fam.Family("poisson").link == "log"
        assert fam.Family("inverse_gaussian").link == "1/mu^2"

    def test_invalid_link(self):
        """Links that do not belong to the family are rejected."""
        with pytest.raises(FamilyError, match="not supported for family 'poisson'"):
            fam.Family("poisson", "logit")

    def test_unknown_family(self):
        """Unknown families are rejected with a ValueError subclass."""
        with pytest.raises(ValueError, match="not supported"):
            fam.Family("foo")

    def test_frozen(self):
        """Families cannot be modified after construction."""
        with pytest.raises(dataclasses.FrozenInstanceError):
            fam.gaussian().link = "log"

    def test_str(self):
        """Printing shows the family and its link."""
        assert str(fam.cumulative("probit")) == "cumulative(probit)"

    def test_auxpars(self):
        """Families list their auxiliary parameters in a fixed order."""
        assert fam.student().auxpars == ("sigma", "nu")
        assert fam.zero_inflated_poisson().auxpars == ("zi",)
        assert fam.zero_inflated_negbinomial().auxpars == ("shape", "zi")
        assert fam.poisson().auxpars == ()

    def test_properties(self):
        """Properties sort families into the groups the code generators need."""
        assert fam.cumulative("probit").is_ordinal
        assert fam.poisson().is_discrete
        assert not fam.gamma().is_discrete
        assert fam.gaussian().is_linear
        assert fam.hurdle_gamma().is_forked
        assert fam.binomial().has_trials
        assert fam.categorical().has_cat
        assert fam.sratio().allows_cse
        assert not fam.cumulative().allows_cse
        assert fam.weibull().is_skewed


# ==============================================================================
# Tests for check_family
# ==============================================================================


class TestCheckFamily:
    """Normalization of the family argument."""

    def test_family_object(self):
        """Family objects are returned unchanged."""
        family = fam.poisson()
        assert fam.check_family(family) is family

    def test_name(self):
        """Names are converted with the default link."""
        assert fam.check_family("bernoulli") == fam.Family("bernoulli", "logit")

    @pytest.mark.parametrize("spec", [("poisson", "sqrt"), ["poisson", "sqrt"]])
    def test_pair(self, spec):
        """Pairs of family and link are accepted."""
        assert fam.check_family(spec).link == "sqrt"

    def test_invalid(self):
        """Other input is rejected."""
        with pytest.raises(FamilyError, match="invalid"):
            fam.check_family(5)


# ==============================================================================
# Tests for correlation structures
# ==============================================================================


class TestAutocor:
    """Construction and validation of correlation structures."""

    def test_cor_arma(self):
        """Time and grouping variables are read from the formula."""
        cor = cor_arma("~ time | g", p=1, q=1)
        assert (cor.time, cor.group) == ("time", "g")
        assert cor.has_arma
        assert not cor.has_arr

    def test_shortcuts(self):
        """The shortcuts set a single order."""
        assert (cor_ar().p, cor_ar().q) == (1, 0)
        assert (cor_ma().p, cor_ma().q) == (0, 1)
        assert cor_arr(r=2).r == 2
        assert cor_arr(r=2).has_arr

    def test_default_formula(self):
        """Without a formula the data order and a single series are used."""
        cor = cor_ar()
        assert cor.time is None
        assert cor.group is None

    def test_group_only(self):
        """The time variable is optional."""
        cor = cor_bsts("~ 1 | g")
        assert (cor.time, cor.group) == (None, "g")

    def test_str(self):
        """Printing shows the orders."""
        assert str(cor_ar()) == "arma(p = 1, q = 0, r = 0, cov = False)"

    def test_cov_high_order(self):
        """The covariance formulation is limited to order one."""
        with pytest.raises(AutocorError, match="maximal order one"):
            cor_arma(p=2, cov=True)

    def test_negative_order(self):
        """Orders must be non-negative."""
        with pytest.raises(AutocorError, match="non-negative"):
            cor_arma(p=-1)

    @pytest.mark.parametrize("formula", ["time | g", "~ log(time)", "~ a | b | c"])
    def test_invalid_formula(self, formula):
        """Formulas must be one-sided with plain variable names."""
        with pytest.raises(AutocorError):
            cor_arma(formula)

    def test_cov_fixed(self):
        """Fixed covariance matrices are stored as floats."""
        cor = cov_fixed([[1, 0], [0, 1]])
        np.testing.assert_array_equal(cor.V, np.eye(2))

    def test_cov_fixed_not_square(self):
        """Fixed covariance matrices must be square."""
        with pytest.raises(AutocorError, match="square"):
            cov_fixed(np.ones((2, 3)))

    def test_check_autocor(self):
        """Structures and None are accepted and anything else is rejected."""
        assert check_autocor(None) is None
        cor = cor_bsts()
        assert check_autocor(cor) is cor
        with pytest.raises(AutocorError):
            check_autocor("ar")
