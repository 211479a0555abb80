# tests/test_brm.py
"""
Tests for fitting models with CmdStan.

Covers:
- Translation of initial values and sampler settings to CmdStanPy arguments
- Validation of the fitting arguments
- Warnings about divergent transitions and saturated tree depths
- Fitting a linear model end to end (only when CmdStan is installed)
"""

from types import SimpleNamespace

import numpy as np
import pytest

from brmstan.model import brm as brm_module
from brmstan.model.brm import brm
from brmstan.model.results import BrmsFit


def cmdstan_installed() -> bool:
    """Whether a CmdStan installation can be found."""
    import cmdstanpy  # pylint: disable=import-outside-toplevel

    try:
        cmdstanpy.cmdstan_path()
    except ValueError:
        return False
    return True


# ==============================================================================
# Tests for argument translation
# ==============================================================================


class TestInits:
    """Initial values."""

    def test_random(self):
        """Random initial values are CmdStan's default."""
        assert brm_module._prepare_inits("random", 4) is None

    def test_zero(self):
        """'0' initializes every parameter at zero."""
        assert brm_module._prepare_inits("0", 4) == 0.0

    def test_radius(self):
        """Numbers give the range of random initial values."""
        assert brm_module._prepare_inits(0.5, 4) == 0.5

    def test_negative_radius(self):
        """The range must be non-negative."""
        with pytest.raises(ValueError, match="non-negative"):
            brm_module._prepare_inits(-1.0, 4)

    def test_unknown_string(self):
        """Only 'random' and '0' are accepted as strings."""
        with pytest.raises(ValueError, match="Unknown initial values"):
            brm_module._prepare_inits("zero", 4)

    def test_dict(self):
        """A dict is shared by all chains."""
        inits = {"sigma": 1.0}
        assert brm_module._prepare_inits(inits, 4) is inits

    def test_callable(self):
        """Functions are called once per chain."""
        calls = []

        def make_inits():
            calls.append(1)
            return {"sigma": float(len(calls))}

        inits = brm_module._prepare_inits(make_inits, 3)
        assert inits == [{"sigma": 1.0}, {"sigma": 2.0}, {"sigma": 3.0}]

    def test_list(self):
        """Lists need one entry per chain."""
        inits = [{"sigma": 1.0}, {"sigma": 2.0}]
        assert brm_module._prepare_inits(inits, 2) == inits
        with pytest.raises(ValueError, match="2 chains"):
            brm_module._prepare_inits(inits, 4)


class TestControl:
    """Sampler settings and algorithms."""

    def test_control_kwargs(self):
        """Settings are renamed to the CmdStanPy arguments."""
        kwargs = brm_module._control_kwargs({"adapt_delta": 0.95, "stepsize": 0.1})
        assert kwargs == {"adapt_delta": 0.95, "step_size": 0.1}

    def test_empty_control(self):
        """No settings give no arguments."""
        assert brm_module._control_kwargs(None) == {}

    def test_unknown_setting(self):
        """Unknown settings are rejected."""
        with pytest.raises(ValueError, match="Unknown sampler setting"):
            brm_module._control_kwargs({"foo": 1})

    @pytest.mark.parametrize("algorithm", ["sampling", "meanfield", "fullrank"])
    def test_algorithms(self, algorithm):
        """Sampling and both variational algorithms are available."""
        assert brm_module._check_algorithm(algorithm) == algorithm

    def test_unknown_algorithm(self):
        """Other algorithms are rejected."""
        with pytest.raises(ValueError, match="Unknown algorithm"):
            brm_module._check_algorithm("nuts")


# ==============================================================================
# Tests for brm
# ==============================================================================


class TestBrm:
    """Validation and warnings of brm."""

    def test_unknown_algorithm(self, data):
        """Algorithms are checked before anything is compiled."""
        with pytest.raises(ValueError, match="Unknown algorithm"):
            brm("y ~ x", data, algorithm="nuts")

    def test_warmup_too_long(self, data):
        """Warmup must leave iterations for sampling."""
        with pytest.raises(ValueError, match="warmup"):
            brm("y ~ x", data, iter=100, warmup=100)

    def test_divergence_warning(self):
        """Divergent transitions are reported with a hint on adapt_delta."""
        fit = SimpleNamespace(divergences=np.array([2, 1]), max_treedepths=np.zeros(2))
        with pytest.warns(UserWarning, match="3 divergent transitions"):
            brm_module._warn_sampling_problems(fit, {"adapt_delta": 0.9})

    def test_treedepth_warning(self):
        """Saturated tree depths are reported."""
        fit = SimpleNamespace(divergences=np.zeros(2), max_treedepths=np.array([0, 4]))
        with pytest.warns(UserWarning, match="maximum tree depth"):
            brm_module._warn_sampling_problems(fit, None)

    @pytest.mark.skipif(not cmdstan_installed(), reason="CmdStan is not installed")
    def test_fit_linear_model(self, data, tmp_path):
        """A linear model is compiled, sampled and summarized."""
        fit = brm(
            "y ~ x + (1 | g)",
            data,
            chains=2,
            iter=400,
            seed=1,
            output_dir=str(tmp_path),
        )
        assert isinstance(fit, BrmsFit)
        assert fit.is_mcmc
        assert fit.nsamples() == 400
        assert list(fit.fixef().index) == ["x", "Intercept"]
        assert list(fit.ranef()["g"].index) == ["a", "b", "c"]
        assert "Rhat" in fit.summary().columns

        # A second fit with the same program reuses the compiled model
        refit = brm("y ~ x + (1 | g)", data, fit=fit, chains=1, iter=200, seed=2)
        assert refit.stan_model is fit.stan_model
        assert refit.nsamples() == 100
