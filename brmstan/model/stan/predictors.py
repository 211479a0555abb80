# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Stan code of linear predictors and group-level effects.

Every linear predictor is computed as a vector in the model block. Terms that
can be computed for all observations at once (population-level effects,
splines, offsets) form its definition; group-level and monotonic effects are
added per observation in the loop over the observations.

Names of the parameters of a predictor carry the predictor name as a suffix,
for example ``b_sigma`` or ``temp_sigma_Intercept``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from brmstan.exceptions import FormulaError, PriorError
from brmstan.model.prior import HORSESHOE_PRIOR, prior_nlpar, PriorFrame
from brmstan.model.stan.blocks import decl, StanBlocks
from brmstan.model.stan.priors import (
    stan_cor_prior,
    stan_prior,
    stan_prior_draw,
)

if TYPE_CHECKING:
    from brmstan.model.data.standata import DesignInfo, PredictorInfo


def eta_name(info: "PredictorInfo") -> str:
    """Stan name of the vector holding a linear predictor.

    Auxiliary parameters are predicted in place (``sigma``); every other
    predictor is called ``eta`` followed by its suffix.
    """
    if info.is_auxpar:
        return info.name
    return f"eta{info.suffix}"


def ranef_name(row) -> str:
    """Stan name of the group-level effects of one row of the group-level
    summary, such as ``r_1_sigma_2``."""
    nlpar = f"_{row['nlpar']}" if row["nlpar"] else ""
    return f"r_{row['id']}{nlpar}_{row['cn']}"


def _z_name(row) -> str:
    nlpar = f"_{row['nlpar']}" if row["nlpar"] else ""
    return f"Z_{row['id']}{nlpar}_{row['cn']}"


def _ranef_rows(design: "DesignInfo", info: "PredictorInfo", type_: str):
    ranef = design.ranef
    return ranef.loc[(ranef["nlpar"] == info.name) & (ranef["type"] == type_)]


def _vector_sum(terms: list[str]) -> str:
    """Sum of the terms of a predictor, of which only intercepts are scalars."""
    if all(term.endswith("_Intercept") for term in terms):
        terms = ["rep_vector(0, N)"] + terms
    return " + ".join(terms)


def _use_horseshoe(design: "DesignInfo", info: "PredictorInfo", prior: PriorFrame) -> bool:
    if prior.hs_df is None or prior_nlpar(design, info) != "":
        return False
    general = prior.get("b")
    if general is None or general.prior != HORSESHOE_PRIOR:
        return False
    if design.effects.is_multivariate or design.family.is_categorical:
        raise PriorError(
            "Horseshoe priors are not yet implemented for multivariate and categorical "
            "models."
        )
    return True


def _fixef_code(
    design: "DesignInfo",
    info: "PredictorInfo",
    prior: PriorFrame,
    sample_prior: bool,
) -> tuple[StanBlocks, list[list[str]]]:
    """Population-level effects of a predictor.

    :returns: Code and the terms of the predictor, one list per category of
        categorical models and a single list otherwise
    """
    out = StanBlocks()
    sfx = info.suffix
    nlpar = prior_nlpar(design, info)
    family = design.family
    K = len(info.fixef)  # pylint: disable=invalid-name
    ncoef = K - 1 if info.centered else K
    is_main = not info.is_auxpar
    categories = (
        [f"_{k}" for k in range(2, design.ncat + 1)]
        if family.is_categorical and is_main
        else [sfx]
    )

    if K > 0:
        out.data += [
            decl(f"int<lower=1> K{sfx}", "number of population-level effects"),
            decl(f"matrix[N, K{sfx}] X{sfx}", "population-level design matrix"),
        ]
    if info.sparse:
        out.data += [
            decl("int nnz_X", "number of non-zero elements in X"),
            decl("vector[nnz_X] wX", "non-zero elements in X"),
            decl("array[nnz_X] int vX", "column indices of the elements in X"),
            decl("array[N + 1] int uX", "row starting indices in X"),
        ]
    if info.centered and ncoef > 0:
        out.tdata_def += [
            decl(f"int Kc{sfx} = K{sfx} - 1"),
            decl(f"matrix[N, Kc{sfx}] Xc{sfx}", "centered version of X"),
            decl(f"vector[Kc{sfx}] means_X{sfx}", "column means of X before centering"),
        ]
        out.tdata_comp += [
            f"for (i in 2:K{sfx}) {{",
            f"means_X{sfx}[i - 1] = mean(X{sfx}[, i])",
            f"Xc{sfx}[, i - 1] = X{sfx}[, i] - means_X{sfx}[i - 1]",
            "}",
        ]

    # Coefficients
    size = f"Kc{sfx}" if info.centered else f"K{sfx}"
    coefs = info.fixef[1:] if info.centered else info.fixef
    general = prior.get("b", nlpar=nlpar)
    bound = general.bound if general is not None else ""
    terms = {cat: [] for cat in categories}
    if ncoef > 0:
        horseshoe = _use_horseshoe(design, info, prior)
        for cat in categories:
            b = f"b{cat}"
            out.par.append(decl(f"vector{bound}[{size}] {b}", "population-level effects"))
            out.prior += stan_prior(prior, "b", b, coefs=coefs, nlpar=nlpar)
            if info.sparse:
                terms[cat].append(f"csr_matrix_times_vector(N, K, wX, vX, uX, {b})")
            elif info.centered:
                terms[cat].append(f"Xc{sfx} * {b}")
            else:
                terms[cat].append(f"X{sfx} * {b}")
        if horseshoe:
            out.par += [
                decl(f"vector<lower=0>[{size}] hs_local", "local parameters for horseshoe prior"),
                decl("real<lower=0> hs_global", "global parameter for horseshoe prior"),
            ]
            out.prior += [
                f"hs_local ~ student_t({prior.hs_df:g}, 0, 1)",
                "hs_global ~ cauchy(0, 1)",
            ]
        if sample_prior and general is not None:
            defs, comp = stan_prior_draw(f"prior_b{sfx}", general.prior, bound)
            out.gen_def += defs
            out.gen_comp += comp

    # Intercepts; thresholds of ordinal models are added by the family
    if info.centered and not (family.is_ordinal and is_main):
        for cat in categories:
            temp = f"temp{cat}_Intercept"
            out.par.append(decl(f"real {temp}", "temporary intercept"))
            out.prior += stan_prior(prior, "Intercept", temp, nlpar=nlpar)
            terms[cat].append(temp)
            if ncoef > 0:
                value = f"{temp} - dot_product(means_X{sfx}, b{cat})"
            else:
                value = temp
            out.gen_def.append(
                decl(f"real b{cat}_Intercept = {value}", "population-level intercept")
            )
        if sample_prior:
            defs, _ = stan_prior_draw(
                f"prior{sfx}_Intercept", prior.resolve("Intercept", nlpar=nlpar)
            )
            out.gen_def += defs

    return out, [terms[cat] for cat in categories]


def _smooth_code(
    design: "DesignInfo", info: "PredictorInfo", prior: PriorFrame
) -> tuple[StanBlocks, list[str]]:
    out = StanBlocks()
    sfx = info.suffix
    nlpar = prior_nlpar(design, info)
    terms = []
    for i, (label, nblocks) in enumerate(info.smooths, start=1):
        out.data += [
            decl(f"int nb{sfx}_{i}", "number of bases"),
            decl(f"array[nb{sfx}_{i}] int knots{sfx}_{i}", "number of knots"),
        ]
        for j in range(1, nblocks + 1):
            name = f"{sfx}_{i}_{j}"
            out.data.append(decl(f"matrix[N, knots{sfx}_{i}[{j}]] Zs{name}", "basis matrix"))
            out.par += [
                decl(f"vector[knots{sfx}_{i}[{j}]] zs{name}", "standardized spline coefficients"),
                decl(f"real<lower=0> sds{name}", "standard deviation of spline coefficients"),
            ]
            out.tpar_def.append(
                decl(
                    f"vector[knots{sfx}_{i}[{j}]] s{name} = sds{name} * zs{name}",
                    "actual spline coefficients",
                )
            )
            out.prior.append(f"zs{name} ~ normal(0, 1)")
            if dist := prior.resolve("sds", coef=label, nlpar=nlpar):
                out.prior.append(f"sds{name} ~ {dist}")
            terms.append(f"Zs{name} * s{name}")
    return out, terms


def _mono_code(
    design: "DesignInfo", info: "PredictorInfo", prior: PriorFrame
) -> StanBlocks:
    out = StanBlocks()
    if not info.mono:
        return out
    sfx = info.suffix
    nlpar = prior_nlpar(design, info)
    eta = eta_name(info)
    out.includes.append("monotonic")
    out.data += [
        decl(f"int<lower=1> Km{sfx}", "number of monotonic effects"),
        decl(f"array[N, Km{sfx}] int Xm{sfx}", "monotonic design matrix"),
        decl(f"array[Km{sfx}] int Jm{sfx}", "length of simplexes"),
    ]
    out.par.append(decl(f"vector[Km{sfx}] bm{sfx}", "monotonic effects"))
    out.prior += stan_prior(prior, "b", f"bm{sfx}", coefs=info.mono, nlpar=nlpar)

    rows = _ranef_rows(design, info, "mono")
    for k, var in enumerate(info.mono, start=1):
        simplex = f"simplex{sfx}_{k}"
        out.data.append(
            decl(f"vector[Jm{sfx}[{k}]] con_{simplex}", "prior concentration of simplex")
        )
        out.par.append(decl(f"simplex[Jm{sfx}[{k}]] {simplex}", "monotonic simplex"))
        dist = prior.resolve("simplex", coef=var, nlpar=nlpar) or f"dirichlet(con_{simplex})"
        out.prior.append(f"{simplex} ~ {dist}")

        effect = [f"bm{sfx}[{k}]"]
        effect += [
            f"{ranef_name(row)}[J_{row['id']}[n]]"
            for _, row in rows.iterrows()
            if row["coef"] == var
        ]
        out.loop.append(
            f"{eta}[n] += ({' + '.join(effect)}) * monotonic({simplex}, Xm{sfx}[n, {k}])"
        )
    return out


def _cse_code(
    design: "DesignInfo", info: "PredictorInfo", prior: PriorFrame
) -> StanBlocks:
    out = StanBlocks()
    rows = _ranef_rows(design, info, "cse")
    if not info.cse and len(rows) == 0:
        return out
    nlpar = prior_nlpar(design, info)

    if info.cse:
        out.data += [
            decl("int<lower=1> Kcs", "number of category specific effects"),
            decl("matrix[N, Kcs] Xcs", "category specific design matrix"),
        ]
        out.par.append(decl("matrix[Kcs, ncat - 1] bcs", "category specific effects"))
        out.prior += stan_prior(
            prior, "b", "bcs", coefs=info.cse, nlpar=nlpar, vectorized="to_vector(bcs)"
        )
        etacs = "Xcs * bcs"
    else:
        etacs = "rep_matrix(0, N, ncat - 1)"
    out.model_def.append(
        decl(
            f"matrix[N, ncat - 1] etacs = {etacs}",
            "linear predictor for category specific effects",
        )
    )

    for thres in sorted(rows["thres"].unique()):
        terms = [
            f"{ranef_name(row)}[J_{row['id']}[n]] * {_z_name(row)}[n]"
            for _, row in rows.loc[rows["thres"] == thres].iterrows()
        ]
        out.loop.append(f"etacs[n, {thres}] += {' + '.join(terms)}")
    return out


def stan_predictor(
    design: "DesignInfo",
    info: "PredictorInfo",
    prior: PriorFrame,
    sample_prior: bool = False,
) -> StanBlocks:
    """Stan code of one linear predictor.

    :param design: Design of the model
    :type design: DesignInfo
    :param info: Design of the predictor
    :type info: PredictorInfo
    :param prior: Checked priors of the model
    :type prior: PriorFrame
    :param sample_prior: Whether to draw from the priors of the population-level
        effects in the generated quantities. Defaults to False.
    :type sample_prior: bool

    :returns: Code of the predictor
    :rtype: StanBlocks
    """
    out = StanBlocks()
    family = design.family
    sfx = info.suffix
    eta = eta_name(info)

    if family.is_categorical and not info.is_auxpar:
        if info.mono or info.smooths or info.offset:
            raise FormulaError(
                "Only population-level effects are supported by the categorical family."
            )
        fixef, etas = _fixef_code(design, info, prior, sample_prior)
        out += fixef
        for k, terms in zip(range(2, design.ncat + 1), etas):
            out.model_def.append(
                decl(f"vector[N] eta_{k} = {_vector_sum(terms)}", "linear predictor")
            )
        return out

    fixef, (terms,) = _fixef_code(design, info, prior, sample_prior)
    smooths, smooth_terms = _smooth_code(design, info, prior)
    out += fixef
    out += smooths
    terms += smooth_terms
    if info.offset:
        out.data.append(decl(f"vector[N] offset{sfx}", "offset"))
        terms.append(f"offset{sfx}")

    out.model_def.insert(0, decl(f"vector[N] {eta} = {_vector_sum(terms)}", "linear predictor"))

    # Group-level effects
    rows = _ranef_rows(design, info, "")
    if len(rows) > 0:
        ranef_terms = [
            f"{ranef_name(row)}[J_{row['id']}[n]] * {_z_name(row)}[n]"
            for _, row in rows.iterrows()
        ]
        out.loop.append(f"{eta}[n] += {' + '.join(ranef_terms)}")

    out += _mono_code(design, info, prior)
    if not info.is_auxpar:
        out += _cse_code(design, info, prior)

    return out


def stan_thresholds(
    design: "DesignInfo", prior: PriorFrame, threshold: str, sample_prior: bool = False
) -> StanBlocks:
    """Thresholds of ordinal models.

    :param design: Design of the model
    :type design: DesignInfo
    :param prior: Checked priors of the model
    :type prior: PriorFrame
    :param threshold: "flexible" or "equidistant"
    :type threshold: str
    :param sample_prior: Whether to draw from the threshold priors. Defaults to
        False.
    :type sample_prior: bool

    :returns: Code of the thresholds
    :rtype: StanBlocks
    """
    out = StanBlocks()
    info = design.predictors[""]
    ncoef = len(info.fixef) - 1 if info.centered else len(info.fixef)

    out.data.append(decl("int<lower=2> ncat", "number of categories"))
    if threshold == "flexible":
        out.par.append(decl("ordered[ncat - 1] temp_Intercept", "temporary thresholds"))
        out.prior += stan_prior(
            prior,
            "Intercept",
            "temp_Intercept",
            coefs=[str(thres) for thres in range(1, design.ncat)],
        )
    else:
        out.par += [
            decl("real temp_Intercept1", "first threshold"),
            decl("real<lower=0> delta", "distance between thresholds"),
        ]
        out.tpar_def.append(decl("vector[ncat - 1] temp_Intercept", "temporary thresholds"))
        out.tpar_comp += [
            "// compute equidistant thresholds",
            "for (k in 1:(ncat - 1)) {",
            "temp_Intercept[k] = temp_Intercept1 + (k - 1.0) * delta",
            "}",
        ]
        out.prior += stan_prior(prior, "Intercept", "temp_Intercept1")
        out.prior += stan_prior(prior, "delta", "delta")

    if info.centered and ncoef > 0:
        value = "temp_Intercept + dot_product(means_X, b)"
    else:
        value = "temp_Intercept"
    out.gen_def.append(decl(f"vector[ncat - 1] b_Intercept = {value}", "thresholds"))
    if sample_prior:
        defs, _ = stan_prior_draw("prior_Intercept", prior.resolve("Intercept"))
        out.gen_def += defs
    return out


def stan_ranef(
    design: "DesignInfo", gid: int, prior: PriorFrame, sample_prior: bool = False
) -> StanBlocks:
    """Stan code of the group-level effects of one ID.

    Effects of an ID are standardized (``z_1``) and scaled by their standard
    deviations (``sd_1``) and, if correlated, by the cholesky factor of their
    correlation matrix (``L_1``). A known covariance matrix of the levels enters
    through its cholesky factor ``Lcov_1``.

    :param design: Design of the model
    :type design: DesignInfo
    :param gid: ID number
    :type gid: int
    :param prior: Checked priors of the model
    :type prior: PriorFrame
    :param sample_prior: Whether to draw from the standard deviation prior.
        Defaults to False.
    :type sample_prior: bool

    :returns: Code of the group-level effects
    :rtype: StanBlocks
    """
    out = StanBlocks()
    rows = design.id_ranef(gid)
    group = rows["group"].iloc[0]
    M = len(rows)  # pylint: disable=invalid-name
    cor = bool(rows["cor"].iloc[0]) and M > 1
    cov = group in design.cov_ranef

    out.data += [
        f"// data for group-level effects of ID {gid}",
        decl(f"array[N] int<lower=1> J_{gid}", "grouping indicator per observation"),
        decl(f"int<lower=1> N_{gid}", "number of grouping levels"),
        decl(f"int<lower=1> M_{gid}", "number of coefficients per level"),
    ]
    if cor:
        out.data.append(decl(f"int<lower=1> NC_{gid}", "number of group-level correlations"))
    for _, row in rows.iterrows():
        if row["type"] != "mono":
            out.data.append(decl(f"vector[N] {_z_name(row)}", "group-level predictor values"))
    if cov:
        out.data.append(
            decl(
                f"matrix[N_{gid}, N_{gid}] Lcov_{gid}",
                "cholesky factor of known covariance matrix",
            )
        )

    out.par.append(decl(f"vector<lower=0>[M_{gid}] sd_{gid}", "group-level standard deviations"))
    out.tpar_def.append("// group-level effects")
    if cor:
        if cov:
            out.includes.append("kronecker")
            scaled = (
                f"as_matrix(kronecker(Lcov_{gid}, diag_pre_multiply(sd_{gid}, L_{gid})) "
                f"* to_vector(z_{gid}), N_{gid}, M_{gid})"
            )
        else:
            scaled = f"(diag_pre_multiply(sd_{gid}, L_{gid}) * z_{gid})'"
        out.par += [
            decl(f"matrix[M_{gid}, N_{gid}] z_{gid}", "unscaled group-level effects"),
            decl(
                f"cholesky_factor_corr[M_{gid}] L_{gid}",
                "cholesky factor of correlation matrix",
            ),
        ]
        out.tpar_def.append(decl(f"matrix[N_{gid}, M_{gid}] r_{gid} = {scaled}"))
        out.tpar_def += [
            decl(f"vector[N_{gid}] {ranef_name(row)} = r_{gid}[, {row['cn']}]")
            for _, row in rows.iterrows()
        ]
    else:
        lcov = f"Lcov_{gid} * " if cov else ""
        out.par.append(
            decl(f"array[M_{gid}] vector[N_{gid}] z_{gid}", "unscaled group-level effects")
        )
        out.tpar_def += [
            decl(
                f"vector[N_{gid}] {ranef_name(row)} = "
                f"sd_{gid}[{row['cn']}] * ({lcov}z_{gid}[{row['cn']}])"
            )
            for _, row in rows.iterrows()
        ]

    # Priors
    sd_dists = [
        prior.resolve("sd", coef=row["coef"], group=group, nlpar=row["nlpar"])
        for _, row in rows.iterrows()
    ]
    if len(set(sd_dists)) == 1:
        if sd_dists[0]:
            out.prior.append(f"sd_{gid} ~ {sd_dists[0]}")
    else:
        out.prior += [
            f"sd_{gid}[{cn}] ~ {dist}" for cn, dist in enumerate(sd_dists, start=1) if dist
        ]
    if cor:
        out.prior += stan_cor_prior(prior, "cor", f"L_{gid}", group=group)
        out.prior.append(f"to_vector(z_{gid}) ~ normal(0, 1)")
        out.gen_def += [
            decl(f"corr_matrix[M_{gid}] Cor_{gid} = multiply_lower_tri_self_transpose(L_{gid})"),
            decl(f"vector<lower=-1,upper=1>[NC_{gid}] cor_{gid}", "group-level correlations"),
        ]
        out.gen_comp += [
            f"// extract upper diagonal of correlation matrix {gid}",
            f"for (k in 1:M_{gid}) {{",
            "for (j in 1:(k - 1)) {",
            f"cor_{gid}[choose(k - 1, 2) + j] = Cor_{gid}[j, k]",
            "}",
            "}",
        ]
    else:
        out.prior += [f"z_{gid}[{cn}] ~ normal(0, 1)" for cn in range(1, M + 1)]

    if sample_prior:
        defs, comp = stan_prior_draw(
            f"prior_sd_{gid}", prior.resolve("sd", group=group), "<lower=0>"
        )
        out.gen_def += defs
        out.gen_comp += comp
    return out
