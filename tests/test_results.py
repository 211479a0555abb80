# tests/test_results.py
"""
Tests for the post-processing of fitted models.

Covers:
- Link and inverse link functions
- Summaries of draws and names of correlations
- Covariance matrices of group-level effects and of ARMA residuals
- Selection of parameters by name
- Translation of Stan parameter names to the names of the model terms
- BrmsFit accessors on the draws of a variational fit
"""

import numpy as np
import pandas as pd
import pytest

from brmstan.exceptions import FamilyError
from brmstan.model.results import (
    BrmsFit,
    extract_pars,
    get_cornames,
    get_cov_matrix,
    get_cov_matrix_ar1,
    get_cov_matrix_arma1,
    get_cov_matrix_ident,
    get_cov_matrix_ma1,
    get_summary,
    ilink,
    link,
    rename_pars,
)
from brmstan.model.stan.stancode import make_stancode_info


# ==============================================================================
# Fixtures
# ==============================================================================


class FakeVariationalFit:
    """Stands in for a CmdStanVB object with random draws."""

    def __init__(self, column_names, ndraws=100, seed=0):
        rng = np.random.default_rng(seed)
        self.column_names = tuple(column_names)
        self.variational_sample = np.abs(rng.normal(size=(ndraws, len(column_names))))


STAN_COLUMNS = [
    "lp__",
    "log_p__",
    "log_g__",
    "b[1]",
    "temp_Intercept",
    "sigma",
    "sd_1[1]",
    "sd_1[2]",
    "L_1[1,1]",
    "L_1[2,1]",
    "z_1[1,1]",
    "r_1[1,1]",
    "r_1_1[1]",
    "r_1_1[2]",
    "r_1_1[3]",
    "r_1_2[1]",
    "r_1_2[2]",
    "r_1_2[3]",
    "b_Intercept",
    "Cor_1[1,2]",
    "cor_1[1]",
]


@pytest.fixture
def design(data):
    """Design of a model with correlated varying intercepts and slopes."""
    _, _, design, _ = make_stancode_info("y ~ x + (1 + x | g)", data)
    return design


@pytest.fixture
def fit(data):
    """A BrmsFit wrapping 100 variational draws."""
    code, standata, design, prior = make_stancode_info("y ~ x + (1 + x | g)", data)
    return BrmsFit(
        formula="y ~ x + (1 + x | g)",
        design=design,
        prior=prior,
        model=code,
        standata=standata,
        fit=FakeVariationalFit(STAN_COLUMNS),
        algorithm="meanfield",
    )


# ==============================================================================
# Tests for link functions
# ==============================================================================


class TestLinks:
    """Link and inverse link functions."""

    @pytest.mark.parametrize(
        "value, link_, expected",
        [
            (0.0, "logit", 0.5),
            (0.0, "log", 1.0),
            (2.0, "sqrt", 4.0),
            (0.0, "probit", 0.5),
            (0.0, "cauchit", 0.5),
            (3.0, "identity", 3.0),
        ],
    )
    def test_ilink(self, value, link_, expected):
        """Inverse links map the linear predictor to the response scale."""
        assert ilink(value, link_) == pytest.approx(expected)

    def test_link(self):
        """Links map the response scale to the linear predictor."""
        assert link(1.0, "log") == pytest.approx(0.0)
        assert link(0.5, "logit") == pytest.approx(0.0)

    @pytest.mark.parametrize("link_", ["log", "logit", "probit", "cauchit", "inverse"])
    def test_scalar_input(self, link_):
        """Scalars come back as zero-dimensional arrays."""
        out = ilink(0.5, link_)
        assert isinstance(out, np.ndarray)
        assert out.shape == ()
        assert isinstance(link(0.5, link_), np.ndarray)

    @pytest.mark.parametrize(
        "link_", ["logit", "probit", "cloglog", "cauchit", "log", "inverse", "1/mu^2"]
    )
    def test_inverse(self, link_):
        """Links and inverse links undo each other."""
        values = np.array([0.2, 0.5, 0.7])
        np.testing.assert_allclose(ilink(link(values, link_), link_), values)

    def test_unknown_link(self):
        """Unknown links raise a FamilyError."""
        with pytest.raises(FamilyError, match="not supported"):
            ilink(0.0, "foo")
        with pytest.raises(FamilyError, match="not supported"):
            link(0.0, "foo")


# ==============================================================================
# Tests for summaries and names
# ==============================================================================


class TestSummaries:
    """Summaries of draws and names of correlations."""

    def test_get_summary(self):
        """Summaries report mean, standard deviation and quantiles."""
        samples = pd.DataFrame({"a": np.arange(101.0), "b": np.ones(101)})
        summary = get_summary(samples)
        assert list(summary.columns) == ["Estimate", "Est.Error", "2.5%ile", "97.5%ile"]
        assert list(summary.index) == ["a", "b"]
        assert summary.loc["a", "Estimate"] == pytest.approx(50.0)
        assert summary.loc["a", "2.5%ile"] == pytest.approx(2.5)
        assert summary.loc["b", "Est.Error"] == pytest.approx(0.0)

    def test_get_summary_custom_probs(self):
        """Quantile columns are named after their probabilities."""
        summary = get_summary(np.arange(11.0), probs=(0.1,))
        assert list(summary.columns) == ["Estimate", "Est.Error", "10%ile"]
        assert summary.iloc[0]["10%ile"] == pytest.approx(1.0)

    def test_get_summary_robust(self):
        """Robust summaries use the median."""
        summary = get_summary(np.array([0.0, 1.0, 2.0, 100.0]), robust=True)
        assert summary.iloc[0]["Estimate"] == pytest.approx(1.5)

    def test_get_cornames(self):
        """Pairs follow the upper triangle read column by column."""
        assert get_cornames(["a", "b", "c"]) == ["cor(a,b)", "cor(a,c)", "cor(b,c)"]
        assert get_cornames(["a", "b"], type_="rescor", brackets=False) == [
            "rescor__a__b"
        ]

    def test_extract_pars(self):
        """Parameters are selected by regular expressions or exact names."""
        names = ["b_Intercept", "b_x", "sigma", "sd_g__Intercept"]
        assert extract_pars("^b_", names) == ["b_Intercept", "b_x"]
        assert extract_pars(["sigma", "^sd"], names) == ["sigma", "sd_g__Intercept"]
        assert extract_pars("b_x", names, exact_match=True) == ["b_x"]
        assert extract_pars(None, names) == names


# ==============================================================================
# Tests for covariance matrices
# ==============================================================================


class TestCovMatrices:
    """Covariance matrices computed from draws."""

    def test_get_cov_matrix(self):
        """Standard deviations and correlations form covariance matrices."""
        cov, cor = get_cov_matrix([[1.0, 2.0]], [[0.5]])
        np.testing.assert_allclose(cov[0], [[1.0, 1.0], [1.0, 4.0]])
        np.testing.assert_allclose(cor[0], [[1.0, 0.5], [0.5, 1.0]])

    def test_get_cov_matrix_uncorrelated(self):
        """Without correlations the covariance matrices are diagonal."""
        cov, _ = get_cov_matrix([[1.0, 2.0], [3.0, 1.0]])
        assert cov.shape == (2, 2, 2)
        np.testing.assert_allclose(cov[1], [[9.0, 0.0], [0.0, 1.0]])

    def test_get_cov_matrix_mismatch(self):
        """The number of correlations must fit the number of SDs."""
        with pytest.raises(ValueError, match="number of correlations"):
            get_cov_matrix([[1.0, 2.0, 3.0]], [[0.5]])

    def test_ar1(self):
        """AR(1) covariances decay with the lag."""
        cov = get_cov_matrix_ar1(0.5, 1.0, 3)
        assert cov.shape == (1, 3, 3)
        assert cov[0, 0, 0] == pytest.approx(4 / 3)
        assert cov[0, 0, 2] == pytest.approx(1 / 3)

    def test_ma1(self):
        """MA(1) covariances vanish beyond lag one."""
        cov = get_cov_matrix_ma1(0.5, 1.0, 3)
        np.testing.assert_allclose(np.diag(cov[0]), 1.25)
        assert cov[0, 0, 1] == pytest.approx(0.5)
        assert cov[0, 0, 2] == pytest.approx(0.0)

    def test_arma1_without_ma(self):
        """ARMA(1, 1) without MA effect is AR(1)."""
        np.testing.assert_allclose(
            get_cov_matrix_arma1(0.5, 0.0, 1.0, 4), get_cov_matrix_ar1(0.5, 1.0, 4)
        )

    def test_ident(self):
        """Known standard errors are added to the diagonal."""
        cov = get_cov_matrix_ident(2.0, 2, se2=1.0)
        np.testing.assert_allclose(cov[0], [[5.0, 0.0], [0.0, 5.0]])


# ==============================================================================
# Tests for rename_pars
# ==============================================================================


class TestRenamePars:
    """Interpretable parameter names."""

    def test_renamed(self, design):
        """Numbered parameters are named after the model terms."""
        mapping = rename_pars(STAN_COLUMNS, design)
        assert mapping["b[1]"] == "b_x"
        assert mapping["sd_1[1]"] == "sd_g__Intercept"
        assert mapping["sd_1[2]"] == "sd_g__x"
        assert mapping["cor_1[1]"] == "cor_g__Intercept__x"
        assert mapping["r_1_1[1]"] == "r_g[a,Intercept]"
        assert mapping["r_1_2[3]"] == "r_g[c,x]"

    def test_kept(self, design):
        """Parameters without a numbered name keep their name."""
        mapping = rename_pars(STAN_COLUMNS, design)
        assert mapping["lp__"] == "lp__"
        assert mapping["sigma"] == "sigma"
        assert mapping["b_Intercept"] == "b_Intercept"

    def test_excluded(self, design):
        """Helper quantities and sampler diagnostics are dropped."""
        mapping = rename_pars(STAN_COLUMNS + ["accept_stat__"], design)
        for name in [
            "temp_Intercept",
            "L_1[1,1]",
            "z_1[1,1]",
            "r_1[1,1]",
            "Cor_1[1,2]",
            "log_p__",
            "accept_stat__",
        ]:
            assert name not in mapping


# ==============================================================================
# Tests for BrmsFit
# ==============================================================================


class TestBrmsFit:
    """Accessors of fitted models."""

    def test_parnames(self, fit):
        """Reported parameters carry interpretable names."""
        assert fit.parnames[:3] == ["lp__", "b_x", "sigma"]
        assert "r_g[b,x]" in fit.parnames
        assert "temp_Intercept" not in fit.parnames
        assert fit.nsamples() == 100
        assert not fit.is_mcmc

    def test_posterior_samples(self, fit):
        """Draws are selected by regular expressions."""
        samples = fit.posterior_samples("^b_")
        assert list(samples.columns) == ["b_x", "b_Intercept"]
        assert samples.shape == (100, 2)

    def test_posterior_samples_with_chain(self, fit):
        """Variational draws belong to a single chain."""
        samples = fit.posterior_samples("sigma", exact_match=True, add_chain=True)
        assert list(samples.columns) == ["chain__", "sigma"]
        assert (samples["chain__"] == 1).all()

    def test_posterior_samples_no_match(self, fit):
        """Selecting no parameter raises."""
        with pytest.raises(ValueError, match="No parameter"):
            fit.posterior_samples("^foo")

    def test_summary(self, fit):
        """Summaries of variational fits have no convergence diagnostics."""
        summary = fit.summary()
        assert "lp__" not in summary.index
        assert "Rhat" not in summary.columns

    def test_fixef(self, fit):
        """Population-level effects are indexed by coefficient."""
        fixef = fit.fixef()
        assert list(fixef.index) == ["x", "Intercept"]
        expected = fit.posterior_samples("b_x", exact_match=True)["b_x"].mean()
        assert fixef.loc["x", "Estimate"] == pytest.approx(expected)

    def test_ranef(self, fit):
        """Group-level effects are tabulated per grouping factor."""
        ranef = fit.ranef()
        assert list(ranef) == ["g"]
        assert list(ranef["g"].index) == ["a", "b", "c"]
        assert list(ranef["g"].columns) == ["Intercept", "x"]
        expected = fit.draws["r_g[c,x]"].mean()
        assert ranef["g"].loc["c", "x"] == pytest.approx(expected)

    def test_varcorr(self, fit):
        """Variance components include the residual SD."""
        varcorr = fit.varcorr()
        assert set(varcorr) == {"g", "RESIDUAL__"}
        assert list(varcorr["g"]["sd"].index) == ["Intercept", "x"]
        assert varcorr["g"]["cor"].loc["Intercept", "Intercept"] == pytest.approx(1.0)
        assert varcorr["g"]["cov"].shape == (2, 2)

    def test_diagnose(self, fit):
        """Sampler diagnostics require an MCMC fit."""
        with pytest.raises(ValueError, match="sampling"):
            fit.diagnose()

    def test_inference_data(self, fit):
        """Draws are converted to ArviZ with one chain."""
        idata = fit.inference_data
        assert idata.posterior["b_x"].shape == (1, 100)
        assert "sample_stats" not in idata.groups()
