# tests/test_prior.py
"""
Tests for prior specification and resolution.

Covers:
- ``set_prior`` validation, bounds and horseshoe priors
- Combining prior frames and resolving the prior of a single parameter
- Default priors reported by ``get_prior``
- Merging user priors with the defaults when generating Stan code
"""

import pytest

from brmstan.exceptions import PriorError
from brmstan.formula import bf
from brmstan.model.prior import (
    get_prior,
    horseshoe,
    HORSESHOE_PRIOR,
    PriorFrame,
    set_prior,
)
from brmstan.model.stan import make_stancode


# ==============================================================================
# Tests for set_prior
# ==============================================================================


class TestSetPrior:
    """Construction and validation of single priors."""

    def test_combine(self):
        """Frames are concatenated with +."""
        prior = set_prior("normal(0, 5)") + set_prior("cauchy(0, 2)", class_="sd")
        frame = prior.to_frame()
        assert len(prior) == 2
        assert frame["class"].tolist() == ["b", "sd"]
        assert frame["prior"].tolist() == ["normal(0, 5)", "cauchy(0, 2)"]
        assert list(frame.columns) == ["prior", "class", "coef", "group", "nlpar", "bound"]

    def test_unknown_class(self):
        """Only known parameter classes can be addressed."""
        with pytest.raises(PriorError, match="Unknown parameter class"):
            set_prior("normal(0, 1)", class_="foo")

    def test_group_on_b(self):
        """Groups are only meaningful for standard deviations and correlations."""
        with pytest.raises(PriorError, match="group"):
            set_prior("normal(0, 1)", group="g")

    def test_coef_on_cor(self):
        """Correlation matrices have no single coefficients."""
        with pytest.raises(PriorError, match="coef"):
            set_prior("lkj(2)", class_="cor", coef="x")

    def test_bounds(self):
        """Bounds are formatted as Stan constraints."""
        assert set_prior("normal(0, 1)", lb=0).priors[0].bound == "<lower=0>"
        assert (
            set_prior("normal(0, 1)", lb=0, ub=1).priors[0].bound
            == "<lower=0,upper=1>"
        )

    def test_bounds_on_other_classes(self):
        """Bounds are limited to population-level effects."""
        with pytest.raises(PriorError, match="boundaries"):
            set_prior("normal(0, 1)", class_="sigma", lb=0)

    def test_bounds_on_single_coefficient(self):
        """Bounds apply to all effects of a predictor."""
        with pytest.raises(PriorError, match="Boundaries"):
            set_prior("normal(0, 1)", coef="x", lb=0)

    def test_unchecked(self):
        """Unchecked priors are kept verbatim."""
        prior = set_prior("target += normal_lpdf(b[1] | 0, 1)", check=False)
        assert prior.unchecked[0].prior == "target += normal_lpdf(b[1] | 0, 1)"


# ==============================================================================
# Tests for horseshoe priors
# ==============================================================================


class TestHorseshoe:
    """Horseshoe priors of population-level effects."""

    def test_horseshoe_string(self):
        """horseshoe() builds the prior string."""
        assert horseshoe(3) == "horseshoe(3)"

    def test_degrees_of_freedom(self):
        """The degrees of freedom are stored on the frame."""
        prior = set_prior(horseshoe(3))
        assert prior.hs_df == 3.0
        assert prior.priors[0].prior == HORSESHOE_PRIOR

    def test_degrees_of_freedom_survive_combination(self):
        """Combining frames keeps the horseshoe settings."""
        prior = set_prior(horseshoe(2)) + set_prior("normal(0, 10)", class_="Intercept")
        assert prior.hs_df == 2.0

    def test_negative_degrees_of_freedom(self):
        """Degrees of freedom must be positive."""
        with pytest.raises(PriorError, match="positive"):
            horseshoe(-1)
        with pytest.raises(PriorError, match="positive"):
            set_prior("horseshoe(a)")

    def test_other_classes(self):
        """Horseshoe priors only act on population-level effects."""
        with pytest.raises(PriorError, match="Horseshoe"):
            set_prior(horseshoe(1), class_="sd")


# ==============================================================================
# Tests for PriorFrame.resolve
# ==============================================================================


class TestResolve:
    """Effective prior of single parameters."""

    def test_specific_before_general(self):
        """Coefficient priors take precedence over class priors."""
        prior = set_prior("normal(0, 5)") + set_prior("normal(0, 1)", coef="x")
        assert prior.resolve("b", coef="x") == "normal(0, 1)"
        assert prior.resolve("b", coef="z") == "normal(0, 5)"

    def test_later_wins(self):
        """Of two priors on the same parameters, the later one is used."""
        prior = set_prior("normal(0, 5)") + set_prior("normal(0, 2)")
        assert prior.resolve("b") == "normal(0, 2)"

    def test_shared_classes(self):
        """Standard deviations fall back to priors of the main predictor."""
        prior = set_prior("cauchy(0, 2)", class_="sd")
        assert prior.resolve("sd", coef="Intercept", group="g", nlpar="a") == "cauchy(0, 2)"

    def test_b_does_not_fall_back_across_predictors(self):
        """Population-level effects of other predictors keep flat priors."""
        prior = set_prior("normal(0, 5)")
        assert prior.resolve("b", nlpar="a") == ""

    def test_empty_specific_prior(self):
        """Empty specific priors inherit the general prior."""
        prior = set_prior("normal(0, 5)") + set_prior("", coef="x")
        assert prior.resolve("b", coef="x") == "normal(0, 5)"

    def test_empty_frame(self):
        """Without priors every parameter is flat."""
        assert PriorFrame().resolve("sigma") == ""


# ==============================================================================
# Tests for get_prior
# ==============================================================================


class TestGetPrior:
    """Default priors of models."""

    def test_group_level_model(self, data):
        """Every parameter class, group and coefficient gets a row."""
        frame = get_prior("y ~ x + (1 | g)", data).to_frame()
        assert frame["class"].tolist() == [
            "b",
            "b",
            "Intercept",
            "sd",
            "sd",
            "sd",
            "sigma",
        ]
        assert frame["coef"].tolist() == ["", "x", "", "", "", "Intercept", ""]
        assert frame["group"].tolist() == ["", "", "", "", "g", "g", ""]
        assert frame["prior"].tolist() == [
            "",
            "",
            "",
            "student_t(3, 0, 10)",
            "",
            "",
            "student_t(3, 0, 10)",
        ]

    def test_resolved_defaults(self, data):
        """Rows without a prior inherit the prior of their class."""
        prior = get_prior("y ~ x + (1 | g)", data)
        assert prior.resolve("sd", coef="Intercept", group="g") == "student_t(3, 0, 10)"
        assert prior.resolve("b", coef="x") == ""

    def test_ordinal_thresholds(self, data):
        """Flexible thresholds of ordinal models get one row each."""
        frame = get_prior("yo ~ x", data, family="cumulative").to_frame()
        intercepts = frame.loc[frame["class"] == "Intercept", "coef"].tolist()
        assert intercepts == ["", "1", "2", "3"]
        assert "sigma" not in frame["class"].tolist()

    def test_equidistant_thresholds(self, data):
        """Equidistant thresholds have a distance parameter."""
        frame = get_prior("yo ~ x", data, family="cumulative", threshold="equidistant")
        assert "delta" in frame.to_frame()["class"].tolist()

    def test_invalid_threshold(self, data):
        """Only two types of thresholds exist."""
        with pytest.raises(PriorError, match="threshold"):
            get_prior("yo ~ x", data, family="cumulative", threshold="foo")

    def test_distributional_model(self, data):
        """Predicted auxiliary parameters get population-level priors."""
        frame = get_prior(bf("y ~ x", sigma="~ x"), data).to_frame()
        sigma_rows = frame[frame["nlpar"] == "sigma"]
        assert sigma_rows["class"].tolist() == ["b", "b", "Intercept"]
        assert "sigma" not in frame["class"].tolist()


# ==============================================================================
# Tests for priors in generated code
# ==============================================================================


class TestCheckPrior:
    """Validation of user priors against the model."""

    def test_unknown_parameter(self, data):
        """Priors must address a parameter of the model."""
        with pytest.raises(PriorError, match="does not correspond"):
            make_stancode("y ~ x", data, prior=set_prior("normal(0, 1)", coef="foo"))

    def test_sample_prior_only_requires_proper_priors(self, data):
        """Flat default priors cannot be sampled from."""
        with pytest.raises(PriorError, match="no proper"):
            make_stancode("y ~ x", data, sample_prior="only")

    def test_sample_prior_only(self, data):
        """Proper priors allow sampling from the prior only."""
        prior = set_prior("normal(0, 5)") + set_prior("normal(0, 10)", class_="Intercept")
        code = make_stancode("y ~ x", data, prior=prior, sample_prior="only")
        assert "b ~ normal(0, 5);" in code

    def test_nonlinear_requires_priors(self, data):
        """Non-linear parameters need priors on their effects."""
        with pytest.raises(PriorError, match="non-linear"):
            make_stancode(bf("y ~ a - exp(b * x)", nonlinear="a + b ~ 1"), data)

    def test_nonlinear_priors(self, data):
        """Priors of non-linear parameters are addressed by parameter name."""
        prior = set_prior("normal(0, 5)", nlpar="a") + set_prior("normal(0, 2)", nlpar="b")
        code = make_stancode(
            bf("y ~ a - exp(b * x)", nonlinear="a + b ~ 1"), data, prior=prior
        )
        assert "b_a ~ normal(0, 5);" in code
        assert "b_b ~ normal(0, 2);" in code

    def test_horseshoe_with_monotonic_effects(self, data):
        """Horseshoe priors cannot shrink monotonic effects."""
        with pytest.raises(PriorError, match="monotonic"):
            make_stancode("y ~ x + mono(z)", data, prior=set_prior(horseshoe(1)))

    def test_horseshoe_on_auxiliary_predictor(self, data):
        """Horseshoe priors are limited to the main predictor."""
        with pytest.raises(PriorError, match="main predictor"):
            make_stancode(
                bf("y ~ x", sigma="~ x"),
                data,
                prior=set_prior(horseshoe(1), nlpar="sigma"),
            )
