# tests/test_stancode.py
"""
Tests for the generated Stan programs.

Covers:
- Rendering of code blocks and statements
- The complete program of a linear model
- Group-level effects with and without correlations and known covariances
- Links, weights, censoring and truncation in the likelihood
- Ordinal, categorical, distributional, multivariate and non-linear models
- Monotonic, category-specific and smooth terms
- Horseshoe priors, bounds, prior draws and user-defined functions
- Correlation structures
"""

import numpy as np
import pandas as pd
import pytest

from brmstan.exceptions import FormulaError
from brmstan.formula import bf
from brmstan.model.autocor import cor_ar, cor_arr, cor_bsts, cov_fixed
from brmstan.model.prior import horseshoe, set_prior
from brmstan.model.stan import make_stancode
from brmstan.model.stan.blocks import combine_lines, decl, finalize_line, StanBlocks


# ==============================================================================
# Tests for code rendering
# ==============================================================================


class TestBlocks:
    """Formatting of code lines and blocks."""

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("real x", "  real x;"),
            ("real x;", "  real x;"),
            ("for (n in 1:N) {", "  for (n in 1:N) {"),
            ("}", "  }"),
            ("// comment", "  // comment"),
            ("real x;  // comment", "  real x;  // comment"),
            ("", "  "),
        ],
    )
    def test_finalize_line(self, text, expected):
        """Statements get a semicolon; scopes, comments and blank lines do not."""
        assert finalize_line(text) == expected

    def test_combine_lines(self):
        """Scopes indent the lines they contain."""
        code = combine_lines(["for (n in 1:N) {", "y[n] = 1", "}"])
        assert code == "  for (n in 1:N) {\n    y[n] = 1;\n  }"

    def test_decl(self):
        """Declarations can carry a comment."""
        assert decl("real x") == "real x;"
        assert decl("real x", "a number") == "real x;  // a number"

    def test_empty_program(self):
        """Data, parameters and model blocks are always rendered."""
        code = StanBlocks().program()
        assert code.startswith("data {\n}\nparameters {\n}\nmodel {\n")
        assert "generated quantities" not in code

    def test_iadd(self):
        """Contributions are appended block by block."""
        blocks = StanBlocks(par=["real a"])
        blocks += StanBlocks(par=["real b"], prior=["a ~ normal(0, 1)"])
        assert blocks.par == ["real a", "real b"]
        assert blocks.prior == ["a ~ normal(0, 1)"]


# ==============================================================================
# Tests for linear models
# ==============================================================================

LINEAR_MODEL = """\
data {
  int<lower=1> N;  // total number of observations
  vector[N] Y;  // response variable
  int<lower=1> K;  // number of population-level effects
  matrix[N, K] X;  // population-level design matrix
  int prior_only;  // should the likelihood be ignored?
}
transformed data {
  int Kc = K - 1;
  matrix[N, Kc] Xc;  // centered version of X
  vector[Kc] means_X;  // column means of X before centering
  for (i in 2:K) {
    means_X[i - 1] = mean(X[, i]);
    Xc[, i - 1] = X[, i] - means_X[i - 1];
  }
}
parameters {
  vector[Kc] b;  // population-level effects
  real temp_Intercept;  // temporary intercept
  real<lower=0> sigma;  // residual SD
}
model {
  vector[N] eta = Xc * b + temp_Intercept;  // linear predictor
  // priors including all constants
  sigma ~ student_t(3, 0, 10);
  // likelihood including all constants
  if (!prior_only) {
    Y ~ normal(eta, sigma);
  }
}
generated quantities {
  real b_Intercept = temp_Intercept - dot_product(means_X, b);  // population-level intercept
}
"""


class TestLinearModel:
    """Programs of gaussian linear models."""

    def test_complete_program(self, data):
        """The whole program of a simple regression."""
        assert make_stancode("y ~ x", data) == LINEAR_MODEL

    def test_save_model(self, data, tmp_path):
        """Programs can be written to a file."""
        path = tmp_path / "model.stan"
        code = make_stancode("y ~ x", data, save_model=str(path))
        assert path.read_text(encoding="utf-8") == code

    def test_intercept_only(self, data):
        """Without coefficients the intercept is the whole predictor."""
        code = make_stancode("y ~ 1", data)
        assert "vector[N] eta = rep_vector(0, N) + temp_Intercept;" in code
        assert "real b_Intercept = temp_Intercept;" in code
        assert "transformed data" not in code

    def test_no_intercept(self, data):
        """Without intercept the design matrix is not centered."""
        code = make_stancode("y ~ 0 + x", data)
        assert "vector[K] b;" in code
        assert "vector[N] eta = X * b;" in code
        assert "temp_Intercept" not in code

    def test_sparse(self, data):
        """Sparse design matrices are multiplied in compressed row storage."""
        code = make_stancode("y ~ x", data, sparse=True)
        assert "vector[N] eta = csr_matrix_times_vector(N, K, wX, vX, uX, b);" in code

    def test_offset(self, data):
        """Offsets are added to the predictor."""
        code = make_stancode("y ~ x + offset(w)", data)
        assert "vector[N] eta = Xc * b + temp_Intercept + offset;" in code


# ==============================================================================
# Tests for group-level effects
# ==============================================================================


class TestGroupLevelCode:
    """Code of group-level effects."""

    def test_varying_intercept(self, data):
        """Uncorrelated effects are scaled by their standard deviations."""
        code = make_stancode("count ~ x + (1 | g)", data, family="poisson")
        assert "Y ~ poisson_log(eta);" in code
        assert "eta[n] += r_1_1[J_1[n]] * Z_1_1[n];" in code
        assert "sd_1 ~ student_t(3, 0, 10);" in code
        assert "z_1[1] ~ normal(0, 1);" in code
        assert "vector[N_1] r_1_1 = sd_1[1] * (z_1[1]);" in code
        assert "array[N] int Y;  // response variable" in code

    def test_correlated_effects(self, data):
        """Correlated effects use the cholesky factor of their correlations."""
        code = make_stancode("y ~ x + (1 + x | g)", data)
        assert "cholesky_factor_corr[M_1] L_1;" in code
        assert "matrix[N_1, M_1] r_1 = (diag_pre_multiply(sd_1, L_1) * z_1)';" in code
        assert "vector[N_1] r_1_2 = r_1[, 2];" in code
        assert "L_1 ~ lkj_corr_cholesky(1);" in code
        assert "to_vector(z_1) ~ normal(0, 1);" in code
        assert "eta[n] += r_1_1[J_1[n]] * Z_1_1[n] + r_1_2[J_1[n]] * Z_1_2[n];" in code
        assert "cor_1[choose(k - 1, 2) + j] = Cor_1[j, k];" in code

    def test_sd_priors_per_coefficient(self, data):
        """Different priors of the effects of one ID are stated per element."""
        prior = set_prior("normal(0, 1)", class_="sd", coef="x", group="g")
        code = make_stancode("y ~ x + (1 + x | g)", data, prior=prior)
        assert "sd_1[1] ~ student_t(3, 0, 10);" in code
        assert "sd_1[2] ~ normal(0, 1);" in code

    def test_cov_ranef(self, data):
        """Known covariance matrices enter through their cholesky factors."""
        cov = pd.DataFrame(np.eye(3), index=list("abc"), columns=list("abc"))
        code = make_stancode("y ~ x + (1 | g)", data, cov_ranef={"g": cov})
        assert "matrix[N_1, N_1] Lcov_1;" in code
        assert "vector[N_1] r_1_1 = sd_1[1] * (Lcov_1 * z_1[1]);" in code


# ==============================================================================
# Tests for the likelihood
# ==============================================================================


class TestLikelihood:
    """Links and addition arguments in the likelihood."""

    def test_sqrt_link(self, data):
        """Inverse links are applied in the loop over the observations."""
        code = make_stancode("count ~ x", data, family=("poisson", "sqrt"))
        assert "eta[n] = square(eta[n]);" in code
        assert "Y ~ poisson(eta);" in code

    def test_gamma(self, data):
        """Gamma models are parameterized by shape and rate."""
        code = make_stancode("ypos ~ x", data, family="gamma")
        assert "eta[n] = shape * exp(-(eta[n]));" in code
        assert "Y ~ gamma(shape, eta);" in code
        assert "real<lower=0> shape;" in code

    def test_weibull(self, data):
        """The Weibull scale divides the predictor by the shape before the
        inverse link."""
        code = make_stancode("ypos ~ x", data, family="weibull")
        assert "eta[n] = exp((eta[n]) / shape);" in code
        code = make_stancode("ypos | disp(w) ~ x", data, family="weibull")
        assert "vector[N] disp_shape = shape ./ disp;" in code
        assert "eta[n] = exp((eta[n]) / disp_shape[n]);" in code

    def test_weights(self, data):
        """Weighted likelihoods are stated per observation."""
        code = make_stancode("yb | weights(w) ~ x", data, family="bernoulli")
        assert "target += weights[n] * bernoulli_logit_lpmf(Y[n] | eta[n]);" in code

    def test_se(self, data):
        """Known standard errors replace the residual SD."""
        code = make_stancode("y | se(w) ~ x", data)
        assert "Y ~ normal(eta, se);" in code
        assert "real<lower=0> sigma;" not in code

    def test_censoring(self, data):
        """Censored observations use the cumulative distribution functions."""
        code = make_stancode("y | cens(censored) ~ x", data)
        assert "array[N] int<lower=-1,upper=2> cens;" in code
        assert "target += normal_lpdf(Y[n] | eta[n], sigma);" in code
        assert "target += normal_lccdf(Y[n] | eta[n], sigma);" in code
        assert "target += normal_lcdf(Y[n] | eta[n], sigma);" in code

    def test_truncation(self, data):
        """Truncated likelihoods use Stan's truncation syntax."""
        code = make_stancode("y | trunc(lb = -10) ~ x", data)
        assert "Y[n] ~ normal(eta[n], sigma) T[lb[n], ];" in code

    def test_weighted_truncation(self, data):
        """Weights cannot be combined with truncation."""
        with pytest.raises(FormulaError, match="Weighted truncation"):
            make_stancode("y | weights(w) + trunc(lb = -10) ~ x", data)

    def test_zero_inflated(self, data):
        """Zero-inflated families inline their log-PMF."""
        code = make_stancode("count ~ x", data, family="zero_inflated_poisson")
        assert "functions {" in code
        assert "Y[n] ~ zero_inflated_poisson(eta[n], zi);" in code
        assert "real<lower=0,upper=1> zi;" in code


# ==============================================================================
# Tests for ordinal and categorical models
# ==============================================================================


class TestCategoricalResponses:
    """Ordinal and categorical models."""

    def test_cumulative(self, data):
        """Thresholds are ordered and the predictor has no intercept."""
        code = make_stancode("yo ~ x", data, family="cumulative")
        assert "real cumulative_lpmf(int y, real mu, vector thres) {" in code
        assert "ordered[ncat - 1] temp_Intercept;" in code
        assert "vector[N] eta = Xc * b;" in code
        assert "Y[n] ~ cumulative(eta[n], temp_Intercept);" in code
        assert (
            "vector[ncat - 1] b_Intercept = temp_Intercept + dot_product(means_X, b);"
            in code
        )

    def test_cumulative_sparse(self, data):
        """Sparse ordinal designs have no intercept column to center, so the
        thresholds are the intercepts."""
        code = make_stancode("yo ~ x", data, family="cumulative", sparse=True)
        assert "vector[K] b;" in code
        assert "vector[N] eta = csr_matrix_times_vector(N, K, wX, vX, uX, b);" in code
        assert "vector[ncat - 1] b_Intercept = temp_Intercept;" in code
        assert "means_X" not in code

    def test_equidistant(self, data):
        """Equidistant thresholds are computed from the first and a distance."""
        code = make_stancode("yo ~ x", data, family="cumulative", threshold="equidistant")
        assert "real<lower=0> delta;" in code
        assert "temp_Intercept[k] = temp_Intercept1 + (k - 1.0) * delta;" in code

    def test_category_specific(self, data):
        """Category-specific effects have one coefficient per threshold."""
        code = make_stancode("yo ~ cse(x)", data, family="sratio")
        assert "matrix[Kcs, ncat - 1] bcs;" in code
        assert "matrix[N, ncat - 1] etacs = Xcs * bcs;" in code
        assert "Y[n] ~ sratio(eta[n], etacs[n], temp_Intercept);" in code
        assert "real sratio_lpmf(int y, real mu, row_vector mucs, vector thres) {" in code

    def test_categorical(self, data):
        """Categorical models have one predictor per non-reference category."""
        code = make_stancode("yc ~ x", data, family="categorical")
        assert "vector[N] eta_2 = Xc * b_2 + temp_2_Intercept;" in code
        assert "vector[N] eta_3 = Xc * b_3 + temp_3_Intercept;" in code
        assert "Y[n] ~ categorical_logit([0, eta_2[n], eta_3[n]]');" in code


# ==============================================================================
# Tests for distributional, multivariate and non-linear models
# ==============================================================================


class TestModelTypes:
    """Models with several predictors."""

    def test_distributional(self, data):
        """Predicted auxiliary parameters are transformed by their link."""
        code = make_stancode(bf("y ~ x", sigma="~ x"), data)
        assert "vector[N] sigma = Xc_sigma * b_sigma + temp_sigma_Intercept;" in code
        assert "sigma[n] = exp(sigma[n]);" in code
        assert "Y ~ normal(eta, sigma);" in code
        assert "real<lower=0> sigma;" not in code

    def test_multivariate(self, data):
        """Multivariate models have correlated residuals."""
        code = make_stancode("cbind(y, x2) ~ x", data)
        assert "vector[N] eta_y = Xc_y * b_y + temp_y_Intercept;" in code
        assert "Eta[n] = [eta_y[n], eta_x2[n]]';" in code
        assert "Y ~ multi_normal_cholesky(Eta, LSigma);" in code
        assert "sigma ~ student_t(3, 0, 10);" in code
        assert "Lrescor ~ lkj_corr_cholesky(1);" in code

    def test_nonlinear(self, data):
        """Non-linear models combine their parameters per observation."""
        prior = set_prior("normal(0, 5)", nlpar="a") + set_prior("normal(0, 2)", nlpar="b")
        code = make_stancode(
            bf("y ~ a - exp(b * x)", nonlinear="a + b ~ 1"), data, prior=prior
        )
        assert "vector[N] eta_a = X_a * b_a;" in code
        assert "eta[n] = eta_a[n] - exp(eta_b[n] * C[n, 1]);" in code
        assert "matrix[N, KC] C;  // covariate matrix" in code
        assert "Y ~ normal(eta, sigma);" in code

    def test_nonlinear_without_covariates(self, data):
        """Expressions of parameters alone pass no covariate matrix."""
        prior = set_prior("normal(0, 5)", nlpar="a") + set_prior("normal(0, 2)", nlpar="b")
        code = make_stancode(bf("y ~ a * b", nonlinear="a + b ~ 1"), data, prior=prior)
        assert "int<lower=0> KC;" in code
        assert "matrix[N, KC] C" not in code


# ==============================================================================
# Tests for special terms
# ==============================================================================


class TestSpecialTermCode:
    """Monotonic and smooth terms."""

    def test_monotonic(self, data):
        """Monotonic effects use a simplex per predictor."""
        code = make_stancode("y ~ mono(z)", data)
        assert "real monotonic(vector scale, int i) {" in code
        assert "eta[n] += (bm[1]) * monotonic(simplex_1, Xm[n, 1]);" in code
        assert "simplex_1 ~ dirichlet(con_simplex_1);" in code

    def test_smooth(self, data):
        """Smooth terms have standardized coefficients and a scale."""
        code = make_stancode("y ~ s(x)", data)
        assert "vector[N] eta = Xc * b + temp_Intercept + Zs_1_1 * s_1_1;" in code
        assert "zs_1_1 ~ normal(0, 1);" in code
        assert "sds_1_1 ~ student_t(3, 0, 10);" in code


# ==============================================================================
# Tests for priors in generated code
# ==============================================================================


class TestPriorCode:
    """Priors, bounds, prior draws and user functions."""

    def test_horseshoe(self, data):
        """Horseshoe priors add local and global scales."""
        code = make_stancode("y ~ x + x2", data, prior=set_prior(horseshoe(1)))
        assert "vector<lower=0>[Kc] hs_local;" in code
        assert "hs_local ~ student_t(1, 0, 1);" in code
        assert "hs_global ~ cauchy(0, 1);" in code
        assert "b ~ normal(0, hs_local * hs_global);" in code

    def test_bounds(self, data):
        """Bounds constrain the population-level effects."""
        code = make_stancode("y ~ x", data, prior=set_prior("normal(0, 1)", lb=0))
        assert "vector<lower=0>[Kc] b;" in code
        assert "b ~ normal(0, 1);" in code

    def test_coefficient_priors(self, data):
        """Different priors of the effects of a predictor are stated per element."""
        prior = set_prior("normal(0, 5)") + set_prior("normal(0, 1)", coef="x2")
        code = make_stancode("y ~ x + x2", data, prior=prior)
        assert "b[1] ~ normal(0, 5);" in code
        assert "b[2] ~ normal(0, 1);" in code

    def test_unchecked_prior(self, data):
        """Unchecked priors are added verbatim."""
        prior = set_prior("target += normal_lpdf(b[1] | 0, 1)", check=False)
        code = make_stancode("y ~ x", data, prior=prior)
        assert "target += normal_lpdf(b[1] | 0, 1);" in code

    def test_sample_prior(self, data):
        """Draws from proper priors are generated, respecting bounds."""
        code = make_stancode(
            "y ~ x", data, prior=set_prior("normal(0, 5)"), sample_prior=True
        )
        assert "real prior_b = normal_rng(0, 5);" in code
        assert "real prior_sigma = student_t_rng(3, 0, 10);" in code
        assert "while (prior_sigma < 0) {" in code

    def test_stan_funs(self, data):
        """User functions are added to the functions block."""
        funs = "real twice(real x) {\n  return 2 * x;\n}"
        code = make_stancode("y ~ x", data, stan_funs=funs)
        assert code.startswith("functions {\nreal twice(real x) {")


# ==============================================================================
# Tests for correlation structures
# ==============================================================================


class TestAutocorCode:
    """Code of correlation structures."""

    def test_ar(self, data):
        """AR effects are added through previous residuals."""
        code = make_stancode("y ~ x", data, autocor=cor_ar("~ time | g"))
        assert "vector<lower=-1,upper=1>[Kar] ar;" in code
        assert "eta[n] += head(E[n], Kar) * ar;" in code
        assert "array[N] int<lower=1> tg;" in code

    def test_ar_cov(self, data):
        """The covariance formulation builds a covariance matrix per series."""
        code = make_stancode("y ~ x", data, autocor=cor_ar(cov=True))
        assert "res_cov_matrix = cov_matrix_ar1(ar[1], sigma, max_nobs_tg);" in code
        assert (
            "Y ~ normal_cov(eta, se2, N_tg, begin_tg, end_tg, nobs_tg, res_cov_matrix);"
            in code
        )

    def test_cov_fixed(self, data):
        """Fixed covariance matrices replace the residual SD."""
        code = make_stancode("y ~ x", data, autocor=cov_fixed(np.eye(30)))
        assert "Y ~ multi_normal_cholesky(eta, LV);" in code
        assert "real<lower=0> sigma;" not in code

    def test_bsts(self, data):
        """Local levels follow a random walk per series."""
        code = make_stancode("y ~ x", data, autocor=cor_bsts("~ time | g"))
        assert "loclev[n] ~ normal(loclev[n - 1], sigmaLL);" in code
        assert "sigmaLL ~ student_t(3, 0, 10);" in code
        assert "eta[n] += loclev[n];" in code

    def test_arr(self, data):
        """Autoregressive effects of the response are added to the predictor."""
        code = make_stancode("y ~ x", data, autocor=cor_arr(r=2))
        assert "vector[Karr] arr;" in code
        assert "eta += Yarr * arr;" in code
