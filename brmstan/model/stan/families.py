# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Stan code of response distributions.

The likelihood is vectorized whenever the family, the addition arguments and
the auxiliary parameters allow it. Otherwise it is stated per observation.
Inverse link functions are applied to the linear predictor in the loop over
the observations, unless the Stan distribution takes the linear predictor on
the link scale itself (``poisson_log``, ``bernoulli_logit`` and so on).
"""

from __future__ import annotations

from typing import Optional, TYPE_CHECKING

from brmstan.exceptions import AutocorError, FormulaError
from brmstan.model.autocor import CorArma, CovFixed
from brmstan.model.family import AUXPAR_BOUNDS, AUXPAR_DESCRIPTIONS, AUXPAR_LINKS, Family
from brmstan.model.prior import has_sigma, PriorFrame
from brmstan.model.stan.blocks import combine_lines, decl, StanBlocks
from brmstan.model.stan.priors import stan_cor_prior, stan_prior, stan_prior_draw

if TYPE_CHECKING:
    from brmstan.model.data.standata import DesignInfo

# Inverse link functions in Stan
ILINKS: dict[str, str] = {
    "identity": "",
    "log": "exp",
    "inverse": "inv",
    "sqrt": "square",
    "1/mu^2": "inv_sqrt",
    "logit": "inv_logit",
    "probit": "Phi",
    "probit_approx": "Phi_approx",
    "cloglog": "inv_cloglog",
    "cauchit": "inv_cauchit",
    "tan_half": "inv_tan_half",
}

# Link functions applied to the response, used by correlation structures
_LINKS: dict[str, str] = {
    "identity": "{}",
    "log": "log({})",
    "inverse": "inv({})",
    "sqrt": "sqrt({})",
    "1/mu^2": "inv_square({})",
    "logit": "logit({})",
    "probit": "inv_Phi({})",
    "probit_approx": "inv_Phi({})",
    "cloglog": "log(-log1m({}))",
    "cauchit": "tan(pi() * ({} - 0.5))",
    "tan_half": "tan({} / 2)",
}

# Stan names of the distributions
_DISTRIBUTIONS: dict[str, str] = {
    "gaussian": "normal",
    "student": "student_t",
    "lognormal": "lognormal",
    "exponential": "exponential",
    "weibull": "weibull",
    "gamma": "gamma",
    "inverse_gaussian": "inv_gaussian",
    "von_mises": "von_mises_real",
    "beta": "beta",
    "binomial": "binomial",
    "bernoulli": "bernoulli",
    "poisson": "poisson",
    "negbinomial": "neg_binomial_2",
    "geometric": "neg_binomial_2",
    "zero_inflated_poisson": "zero_inflated_poisson",
    "zero_inflated_negbinomial": "zero_inflated_neg_binomial",
    "zero_inflated_binomial": "zero_inflated_binomial",
    "zero_inflated_beta": "zero_inflated_beta",
    "hurdle_poisson": "hurdle_poisson",
    "hurdle_negbinomial": "hurdle_neg_binomial",
    "hurdle_gamma": "hurdle_gamma",
}

# Function snippets needed by each family
_FAMILY_FUNCTIONS: dict[str, str] = {
    "inverse_gaussian": "inv_gaussian",
    "von_mises": "von_mises",
    "zero_inflated_poisson": "zero_inflated_poisson",
    "zero_inflated_negbinomial": "zero_inflated_negbinomial",
    "zero_inflated_binomial": "zero_inflated_binomial",
    "zero_inflated_beta": "zero_inflated_beta",
    "hurdle_poisson": "hurdle_poisson",
    "hurdle_negbinomial": "hurdle_negbinomial",
    "hurdle_gamma": "hurdle_gamma",
}

# Variants of distributions taking the linear predictor on the link scale
_LINK_VARIANTS: dict[tuple[str, str], str] = {
    ("poisson", "log"): "poisson_log",
    ("negbinomial", "log"): "neg_binomial_2_log",
    ("geometric", "log"): "neg_binomial_2_log",
    ("binomial", "logit"): "binomial_logit",
    ("bernoulli", "logit"): "bernoulli_logit",
}


def link_expr(link: str, value: str) -> str:
    """Stan expression applying a link function to a value."""
    return _LINKS[link].format(value)


def ilink_expr(link: str, value: str) -> str:
    """Stan expression applying an inverse link function to a value."""
    fun = ILINKS[link]
    return f"{fun}({value})" if fun else value


def _link_includes(link: str) -> list[str]:
    return {"cauchit": ["inv_cauchit"], "tan_half": ["inv_tan_half"]}.get(link, [])


def _uses_link_variant(design: "DesignInfo") -> bool:
    family = design.family
    return (family.family, family.link) in _LINK_VARIANTS and design.effects.cens is None and (
        design.effects.trunc is None
    )


def auxpar_value(design: "DesignInfo", auxpar: str, idx: str = "") -> str:
    """Stan expression of an auxiliary parameter.

    :param design: Design of the model
    :type design: DesignInfo
    :param auxpar: Name of the auxiliary parameter
    :type auxpar: str
    :param idx: Index of the observation, such as "[n]", or "" for all
        observations. Defaults to "".
    :type idx: str

    :returns: The parameter itself, its predicted values, its values scaled by
        dispersion factors or the known standard errors replacing it
    :rtype: str
    """
    effects = design.effects
    if auxpar in effects.auxpars:
        return f"{auxpar}{idx}"
    if effects.disp is not None and auxpar in {"sigma", "shape"}:
        return f"disp_{auxpar}{idx}"
    if auxpar == "sigma" and effects.se is not None and not has_sigma(design):
        return f"se{idx}"
    return auxpar


def _eta_transform(design: "DesignInfo", eta: str) -> Optional[str]:
    """Transformation of the linear predictor at one observation into the
    parameter of the distribution, or None if it is used as is."""
    family = design.family
    fam, link = family.family, family.link
    if family.is_forked or family.has_cat or _uses_link_variant(design):
        return None

    if fam == "exponential":
        # Rate parameter
        return {"log": f"exp(-({eta}))", "identity": f"inv({eta})", "inverse": None}[link]
    if fam == "gamma":
        # Rate parameter
        shape = auxpar_value(design, "shape", "[n]")
        return {
            "log": f"{shape} * exp(-({eta}))",
            "identity": f"{shape} / ({eta})",
            "inverse": f"{shape} * ({eta})",
        }[link]
    if fam == "weibull":
        # Scale parameter
        shape = auxpar_value(design, "shape", "[n]")
        return ilink_expr(link, f"({eta}) / {shape}")

    if link == "identity":
        return None
    return ilink_expr(link, eta)


def _dist_args(design: "DesignInfo", idx: str) -> tuple[str, list[str]]:
    """Name and arguments of the distribution of the response."""
    family = design.family
    fam = family.family
    eta = f"eta{idx}"

    def aux(name):
        return auxpar_value(design, name, idx)

    dist = _DISTRIBUTIONS[fam]
    if _uses_link_variant(design):
        dist = _LINK_VARIANTS[(fam, family.link)]

    if fam in {"gaussian", "lognormal"}:
        args = [eta, aux("sigma")]
    elif fam == "student":
        args = [aux("nu"), eta, aux("sigma")]
    elif fam in {"poisson", "bernoulli", "exponential"}:
        args = [eta]
    elif fam == "binomial":
        args = [f"trials{idx}", eta]
    elif fam == "negbinomial":
        args = [eta, aux("shape")]
    elif fam == "geometric":
        args = [eta, "1"]
    elif fam in {"gamma", "weibull"}:
        args = [aux("shape"), eta]
    elif fam == "inverse_gaussian":
        dist = "inv_gaussian" if idx else "inv_gaussian_vector"
        args = [eta, aux("shape")]
    elif fam == "von_mises":
        dist = "von_mises_real" if idx else "von_mises_vector"
        args = [eta, aux("kappa")]
    elif fam == "beta":
        phi = aux("phi")
        times = ".*" if not idx and "phi" in design.effects.auxpars else "*"
        args = [f"{eta} {times} {phi}", f"(1 - {eta}) {times} {phi}"]
    elif fam in {"zero_inflated_poisson", "hurdle_poisson"}:
        args = [eta, aux("zi" if family.is_zero_inflated else "hu")]
    elif fam in {"zero_inflated_negbinomial", "hurdle_negbinomial"}:
        args = [eta, aux("shape"), aux("zi" if family.is_zero_inflated else "hu")]
    elif fam == "zero_inflated_binomial":
        args = [f"trials{idx}", eta, aux("zi")]
    elif fam == "zero_inflated_beta":
        args = [eta, aux("phi"), aux("zi")]
    elif fam == "hurdle_gamma":
        args = [aux("shape"), eta, aux("hu")]
    else:
        raise FormulaError(f"Family '{fam}' has no univariate likelihood.")

    return dist, args


def _vectorize(design: "DesignInfo") -> bool:
    """Whether the likelihood can be stated for all observations at once."""
    effects, family = design.effects, design.family
    if any(add is not None for add in (effects.cens, effects.trunc, effects.weights)):
        return False
    if family.has_cat or family.is_forked:
        return False
    if family.family == "inverse_gaussian" and (
        "shape" in effects.auxpars or effects.disp is not None
    ):
        return False
    if family.family == "von_mises" and "kappa" in effects.auxpars:
        return False
    return True


def _llh_loop(design: "DesignInfo", dist: str, args: list[str]) -> list[str]:
    """Likelihood of a single observation with censoring, truncation and weights."""
    effects = design.effects
    lpdf = "lpmf" if design.family.is_discrete else "lpdf"
    weight = "weights[n] * " if effects.weights is not None else ""

    def call(fun, y):
        return f"{dist}_{fun}({y} | {', '.join(args)})"

    if effects.cens is not None:
        if effects.trunc is not None:
            raise FormulaError("Censoring and truncation cannot be combined yet.")
        lines = [
            "// special treatment of censored data",
            "if (cens[n] == 0) {",
            f"target += {weight}{call(lpdf, 'Y[n]')}",
            "} else if (cens[n] == 1) {",
            f"target += {weight}{call('lccdf', 'Y[n]')}",
            "} else if (cens[n] == -1) {",
            f"target += {weight}{call('lcdf', 'Y[n]')}",
        ]
        if effects.cens[1] is not None:
            lines += [
                "} else if (cens[n] == 2) {",
                f"target += {weight}log_diff_exp({call('lcdf', 'rcens[n]')}, "
                f"{call('lcdf', 'Y[n]')})",
            ]
        return lines + ["}"]

    if effects.trunc is not None:
        if effects.weights is not None:
            raise FormulaError("Weighted truncation is not yet possible.")
        lb = "lb[n]" if effects.trunc[0] is not None else ""
        ub = "ub[n]" if effects.trunc[1] is not None else ""
        return [f"Y[n] ~ {dist}({', '.join(args)}) T[{lb}, {ub}]"]

    if effects.weights is not None:
        return [f"target += weights[n] * {call(lpdf, 'Y[n]')}"]

    return [f"Y[n] ~ {dist}({', '.join(args)})"]


def _response_data(design: "DesignInfo") -> list[str]:
    effects, family = design.effects, design.family
    int_type = "array[N] int"
    real_type = "vector[N]"
    value_type = int_type if family.is_discrete else real_type

    lines = [decl(f"{value_type} Y", "response variable")]
    if family.has_trials:
        lines.append(decl(f"{int_type} trials", "number of trials"))
    if effects.se is not None:
        lines.append(decl("vector<lower=0>[N] se", "known sampling error"))
    if effects.weights is not None:
        lines.append(decl("vector<lower=0>[N] weights", "model weights"))
    if effects.disp is not None:
        lines.append(decl("vector<lower=0>[N] disp", "dispersion factors"))
    if effects.cens is not None:
        lines.append(decl("array[N] int<lower=-1,upper=2> cens", "indicates censoring"))
        if effects.cens[1] is not None:
            lines.append(decl(f"{value_type} rcens", "right censor points for interval censoring"))
    if effects.trunc is not None:
        if effects.trunc[0] is not None:
            lines.append(decl(f"{value_type} lb", "lower truncation bounds"))
        if effects.trunc[1] is not None:
            lines.append(decl(f"{value_type} ub", "upper truncation bounds"))
    return lines


def stan_auxpars(
    design: "DesignInfo", prior: PriorFrame, sample_prior: bool = False
) -> StanBlocks:
    """Auxiliary parameters of the response distribution.

    Parameters without a predictor are scalars; predicted parameters are
    transformed by their inverse link in the loop over the observations.

    :param design: Design of the model
    :type design: DesignInfo
    :param prior: Checked priors of the model
    :type prior: PriorFrame
    :param sample_prior: Whether to draw from their priors. Defaults to False.
    :type sample_prior: bool

    :returns: Code of the auxiliary parameters
    :rtype: StanBlocks
    """
    out = StanBlocks()
    effects, family = design.effects, design.family

    for auxpar in family.auxpars:
        if auxpar in effects.auxpars:
            out.loop.append(
                f"{auxpar}[n] = {ilink_expr(AUXPAR_LINKS[auxpar], f'{auxpar}[n]')}"
            )
            continue
        if auxpar == "sigma" and (not has_sigma(design) or effects.is_multivariate):
            continue
        bound = AUXPAR_BOUNDS[auxpar]
        out.par.append(decl(f"real{bound} {auxpar}", AUXPAR_DESCRIPTIONS[auxpar]))
        out.prior += stan_prior(prior, auxpar, auxpar)
        if sample_prior:
            defs, comp = stan_prior_draw(f"prior_{auxpar}", prior.resolve(auxpar), bound)
            out.gen_def += defs
            out.gen_comp += comp

    if effects.disp is not None:
        if "sigma" in family.auxpars:
            out.model_def.append(decl("vector[N] disp_sigma = sigma * disp"))
        elif "shape" in family.auxpars:
            out.model_def.append(decl("vector[N] disp_shape = shape ./ disp"))

    return out


def stan_llh(design: "DesignInfo") -> StanBlocks:
    """Response data, inverse links and likelihood of a univariate model.

    :param design: Design of the model
    :type design: DesignInfo

    :returns: Code of the likelihood
    :rtype: StanBlocks
    """
    out = StanBlocks()
    family, autocor = design.family, design.autocor
    out.includes += _link_includes(family.link)
    if family.family in _FAMILY_FUNCTIONS:
        out.includes.append(_FAMILY_FUNCTIONS[family.family])
    out.data += _response_data(design)

    if family.is_categorical:
        out.data.append(decl("int<lower=2> ncat", "number of categories"))
        etas = ", ".join(f"eta_{k}[n]" for k in range(2, design.ncat + 1))
        out.llh += ["for (n in 1:N) {", f"Y[n] ~ categorical_logit([0, {etas}]')", "}"]
        return out

    if family.is_ordinal:
        out.functions.append(ordinal_function(family, cse=_has_cse(design)))
        etacs = "etacs[n], " if _has_cse(design) else ""
        out.llh += [
            "for (n in 1:N) {",
            f"Y[n] ~ {family.family}(eta[n], {etacs}temp_Intercept)",
            "}",
        ]
        return out

    if (transform := _eta_transform(design, "eta[n]")) is not None:
        out.loop.append(f"eta[n] = {transform}")

    # Residual covariance matrices
    if isinstance(autocor, CovFixed):
        out.data.append(decl("matrix[N, N] V", "known residual covariance matrix"))
        if family.family == "gaussian":
            out.tdata_def.append(decl("matrix[N, N] LV = cholesky_decompose(V)"))
            out.llh.append("Y ~ multi_normal_cholesky(eta, LV)")
        else:
            out.llh.append("Y ~ multi_student_t(nu, eta, V)")
        return out
    if isinstance(autocor, CorArma) and autocor.cov and autocor.has_arma:
        tg_args = "se2, N_tg, begin_tg, end_tg, nobs_tg, res_cov_matrix"
        if family.family == "gaussian":
            out.includes.append("normal_cov")
            out.llh.append(f"Y ~ normal_cov(eta, {tg_args})")
        else:
            out.includes.append("student_t_cov")
            out.llh.append(f"Y ~ student_t_cov(nu, eta, {tg_args})")
        return out

    if _vectorize(design):
        dist, args = _dist_args(design, "")
        out.llh.append(f"Y ~ {dist}({', '.join(args)})")
    else:
        dist, args = _dist_args(design, "[n]")
        out.llh += ["for (n in 1:N) {"] + _llh_loop(design, dist, args) + ["}"]

    return out


def _has_cse(design: "DesignInfo") -> bool:
    info = design.predictors[""]
    return bool(info.cse) or bool((design.ranef["type"] == "cse").any())


def stan_multivariate(
    design: "DesignInfo", prior: PriorFrame, sample_prior: bool = False
) -> StanBlocks:
    """Likelihood and residual correlations of multivariate linear models.

    :param design: Design of the model
    :type design: DesignInfo
    :param prior: Checked priors of the model
    :type prior: PriorFrame
    :param sample_prior: Whether to draw from the priors of the residual standard
        deviations. Defaults to False.
    :type sample_prior: bool

    :returns: Code of the likelihood
    :rtype: StanBlocks
    """
    out = StanBlocks()
    effects, family = design.effects, design.family
    if any(
        add is not None
        for add in (effects.se, effects.weights, effects.disp, effects.cens, effects.trunc)
    ):
        raise FormulaError("Addition arguments are not supported in multivariate models.")
    responses = effects.response

    out.data += [
        decl("int<lower=1> nresp", "number of responses"),
        decl("int nrescor", "number of residual correlations"),
        decl("array[N] vector[nresp] Y", "response matrix"),
    ]
    out.par += [
        decl("vector<lower=0>[nresp] sigma", "residual SDs"),
        decl("cholesky_factor_corr[nresp] Lrescor", "parameters for multivariate linear models"),
    ]
    out.model_def += [
        decl("array[N] vector[nresp] Eta", "multivariate linear predictor matrix"),
        decl("matrix[nresp, nresp] LSigma = diag_pre_multiply(sigma, Lrescor)"),
    ]
    if family.family == "student":
        out.model_def.append(
            decl("cov_matrix[nresp] Sigma = multiply_lower_tri_self_transpose(LSigma)")
        )

    for resp in responses:
        if family.link != "identity":
            out.loop.append(f"eta_{resp}[n] = {ilink_expr(family.link, f'eta_{resp}[n]')}")
    out.loop.append(f"Eta[n] = [{', '.join(f'eta_{resp}[n]' for resp in responses)}]'")

    out.prior += stan_prior(prior, "sigma", "sigma", coefs=responses)
    out.prior += stan_cor_prior(prior, "rescor", "Lrescor")
    if family.family == "gaussian":
        out.llh.append("Y ~ multi_normal_cholesky(Eta, LSigma)")
    else:
        out.llh.append("Y ~ multi_student_t(nu, Eta, Sigma)")

    out.gen_def += [
        decl("corr_matrix[nresp] Rescor = multiply_lower_tri_self_transpose(Lrescor)"),
        decl("vector<lower=-1,upper=1>[nrescor] rescor", "residual correlations"),
    ]
    out.gen_comp += [
        "// extract upper diagonal of the residual correlation matrix",
        "for (k in 1:nresp) {",
        "for (j in 1:(k - 1)) {",
        "rescor[choose(k - 1, 2) + j] = Rescor[j, k]",
        "}",
        "}",
    ]
    if sample_prior:
        defs, comp = stan_prior_draw("prior_sigma", prior.resolve("sigma"), "<lower=0>")
        out.gen_def += defs
        out.gen_comp += comp
    return out


def check_autocor_family(design: "DesignInfo") -> None:
    """Combinations of correlation structures with predicted auxiliary parameters
    that have no Stan implementation.

    :raises AutocorError: If ``sigma`` is predicted in a model with a residual
        covariance matrix
    """
    autocor = design.autocor
    cov = isinstance(autocor, CovFixed) or (
        isinstance(autocor, CorArma) and autocor.cov and autocor.has_arma
    )
    if cov and "sigma" in design.effects.auxpars:
        raise AutocorError(
            "Residual covariance matrices cannot be combined with a predicted 'sigma'."
        )


def ordinal_function(family: Family, cse: bool = False) -> str:
    """Log-PMF of an ordinal family for its link function.

    Cumulative and stopping ratio models compare the thresholds with the linear
    predictor (``thres - mu``); continuation ratio and adjacent category models
    compare the linear predictor with the thresholds (``mu - thres``).

    :param family: An ordinal family
    :type family: Family
    :param cse: Whether the model has category-specific effects. Defaults to
        False.
    :type cse: bool

    :returns: Code of the function ``<family>_lpmf``
    :rtype: str
    """
    name, link = family.family, family.link
    mu = "(mu + mucs[k])" if cse else "mu"
    cs_arg = "row_vector mucs, " if cse else ""

    def ilink(x):
        return ilink_expr(link, x)

    lines = [
        f"/* {name} log-PMF of a single response",
        " * Args:",
        " *   y: response category",
        " *   mu: linear predictor",
    ]
    if cse:
        lines.append(" *   mucs: predictor of the category specific effects")
    lines += [
        " *   thres: ordinal thresholds",
        " * Returns:",
        " *   a scalar to be added to the log posterior",
        " */",
        f"real {name}_lpmf(int y, real mu, {cs_arg}vector thres) {{",
        "int ncat = num_elements(thres) + 1",
        "vector[ncat] p",
    ]

    if name == "cumulative":
        lines += [
            f"p[1] = {ilink('thres[1] - mu')}",
            "for (k in 2:(ncat - 1)) {",
            f"p[k] = {ilink('thres[k] - mu')} - {ilink('thres[k - 1] - mu')}",
            "}",
            f"p[ncat] = 1 - {ilink('thres[ncat - 1] - mu')}",
            "return categorical_lpmf(y | p)",
        ]
    elif name in {"sratio", "cratio"}:
        diff = f"thres[k] - {mu}" if name == "sratio" else f"{mu} - thres[k]"
        q = f"1 - {ilink(diff)}" if name == "sratio" else ilink(diff)
        lines += [
            "vector[ncat - 1] q",
            "for (k in 1:(ncat - 1)) {",
            f"q[k] = {q}",
            "p[k] = 1 - q[k]",
            "for (kk in 1:(k - 1)) {",
            "p[k] = p[k] * q[kk]",
            "}",
            "}",
            "p[ncat] = prod(q)",
            "return categorical_lpmf(y | p)",
        ]
    elif link == "logit":
        lines += [
            "p[1] = 0",
            "for (k in 1:(ncat - 1)) {",
            f"p[k + 1] = p[k] + {mu} - thres[k]",
            "}",
            "return categorical_logit_lpmf(y | p)",
        ]
    else:
        lines += [
            "vector[ncat - 1] q",
            "for (k in 1:(ncat - 1)) {",
            f"q[k] = {ilink(f'{mu} - thres[k]')}",
            "}",
            "p[1] = prod(1 - q)",
            "for (k in 1:(ncat - 1)) {",
            "p[k + 1] = prod(q[1:k]) * prod(1 - q[(k + 1):(ncat - 1)])",
            "}",
            "return categorical_lpmf(y | p / sum(p))",
        ]
    lines.append("}")

    return combine_lines(lines)
