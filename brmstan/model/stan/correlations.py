# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Stan code of correlation structures of the residuals."""

from __future__ import annotations

from typing import TYPE_CHECKING

from brmstan.exceptions import AutocorError
from brmstan.model.autocor import CorArma, CorBsts
from brmstan.model.prior import PriorFrame
from brmstan.model.stan.blocks import decl, StanBlocks
from brmstan.model.stan.families import link_expr
from brmstan.model.stan.priors import stan_prior, stan_prior_draw

if TYPE_CHECKING:
    from brmstan.model.data.standata import DesignInfo

_TG_DATA = decl("array[N] int<lower=1> tg", "indicates independent groups")


def _arma_pars(autocor: CorArma, prior: PriorFrame, sample_prior: bool) -> StanBlocks:
    out = StanBlocks()
    out.data += [
        decl("int<lower=0> Kar", "AR order"),
        decl("int<lower=0> Kma", "MA order"),
        decl("int<lower=0> Karma", "max(Kma, Kar)"),
    ]
    for class_, order, description in (
        ("ar", autocor.p, "autoregressive effects"),
        ("ma", autocor.q, "moving-average effects"),
    ):
        if order == 0:
            continue
        size = "Kar" if class_ == "ar" else "Kma"
        out.par.append(decl(f"vector<lower=-1,upper=1>[{size}] {class_}", description))
        out.prior += stan_prior(prior, class_, class_)
        if sample_prior:
            defs, comp = stan_prior_draw(
                f"prior_{class_}", prior.resolve(class_), "<lower=-1,upper=1>"
            )
            out.gen_def += defs
            out.gen_comp += comp
    return out


def _arma_cov_code(design: "DesignInfo", autocor: CorArma) -> StanBlocks:
    """ARMA structure as a residual covariance matrix per time series."""
    if autocor.p > 1 or autocor.q > 1:
        raise AutocorError(
            "ARMA covariance matrices are only implemented for orders of at most 1."
        )
    out = StanBlocks(includes=["cov_matrix"])
    out.data += [
        decl("int<lower=1> N_tg", "number of time series"),
        decl("array[N_tg] int<lower=1> begin_tg", "first observation of each series"),
        decl("array[N_tg] int<lower=1> end_tg", "last observation of each series"),
        decl("array[N_tg] int<lower=1> nobs_tg", "number of observations of each series"),
        decl("vector<lower=0>[N] se2", "squared known standard errors"),
    ]
    out.tdata_def.append(decl("int max_nobs_tg = max(nobs_tg)", "longest time series"))
    out.model_def.append(
        decl("matrix[max_nobs_tg, max_nobs_tg] res_cov_matrix", "residual covariance matrix")
    )
    if autocor.p and autocor.q:
        call = "cov_matrix_arma1(ar[1], ma[1], sigma, max_nobs_tg)"
    elif autocor.p:
        call = "cov_matrix_ar1(ar[1], sigma, max_nobs_tg)"
    else:
        call = "cov_matrix_ma1(ma[1], sigma, max_nobs_tg)"
    out.model_comp.append(f"res_cov_matrix = {call}")
    return out


def _arma_code(design: "DesignInfo", autocor: CorArma) -> StanBlocks:
    """ARMA structure through the residuals of previous observations."""
    out = StanBlocks()
    out.data.append(_TG_DATA)
    out.model_def += [
        decl("matrix[N, Karma] E = rep_matrix(0.0, N, Karma)", "ARMA design matrix"),
        decl("vector[N] e", "residuals"),
    ]
    out.loop.append("// include ARMA terms")
    if autocor.q:
        out.loop.append("eta[n] += head(E[n], Kma) * ma")
    out.loop += [
        f"e[n] = {link_expr(design.family.link, 'Y[n]')} - eta[n]",
        "for (i in 1:Karma) {",
        "if (n + 1 - i > 0 && n < N && tg[n + 1] == tg[n + 1 - i]) {",
        "E[n + 1, i] = e[n + 1 - i]",
        "}",
        "}",
    ]
    if autocor.p:
        out.loop.append("eta[n] += head(E[n], Kar) * ar")
    return out


def _arr_code(
    design: "DesignInfo", prior: PriorFrame, sample_prior: bool
) -> StanBlocks:
    """Autoregressive effects of the response."""
    out = StanBlocks()
    out.data += [
        decl("int<lower=1> Karr", "ARR order"),
        decl("matrix[N, Karr] Yarr", "ARR design matrix"),
    ]
    out.par.append(decl("vector[Karr] arr", "autoregressive effects of the response"))
    if design.effects.is_nonlinear:
        out.loop.append("eta[n] += Yarr[n] * arr")
    else:
        out.model_comp.append("eta += Yarr * arr")
    out.prior += stan_prior(prior, "arr", "arr")
    if sample_prior:
        defs, comp = stan_prior_draw("prior_arr", prior.resolve("arr"))
        out.gen_def += defs
        out.gen_comp += comp
    return out


def _bsts_code(
    design: "DesignInfo", prior: PriorFrame, sample_prior: bool
) -> StanBlocks:
    """Local level model of basic structural time series."""
    out = StanBlocks()
    out.data.append(_TG_DATA)
    out.par += [
        decl("vector[N] loclev", "local level terms"),
        decl("real<lower=0> sigmaLL", "SD of local level terms"),
    ]
    out.loop.append("eta[n] += loclev[n]")
    out.prior += stan_prior(prior, "sigmaLL", "sigmaLL")
    out.prior += [
        "// local level of the first observation of a series is centered at the response",
        "for (n in 1:N) {",
        "if (n == 1 || tg[n] != tg[n - 1]) {",
        f"loclev[n] ~ normal({link_expr(design.family.link, 'Y[n]')}, sigmaLL)",
        "} else {",
        "loclev[n] ~ normal(loclev[n - 1], sigmaLL)",
        "}",
        "}",
    ]
    if sample_prior:
        defs, comp = stan_prior_draw("prior_sigmaLL", prior.resolve("sigmaLL"), "<lower=0>")
        out.gen_def += defs
        out.gen_comp += comp
    return out


def stan_autocor(
    design: "DesignInfo", prior: PriorFrame, sample_prior: bool = False
) -> StanBlocks:
    """Stan code of the correlation structure of a model.

    Fixed residual covariance matrices are part of the likelihood, see
    :py:func:`~brmstan.model.stan.families.stan_llh`.

    :param design: Design of the model
    :type design: DesignInfo
    :param prior: Checked priors of the model
    :type prior: PriorFrame
    :param sample_prior: Whether to draw from the priors of the correlation
        parameters. Defaults to False.
    :type sample_prior: bool

    :returns: Code of the correlation structure, empty without one
    :rtype: StanBlocks
    """
    autocor = design.autocor
    out = StanBlocks()

    if isinstance(autocor, CorBsts):
        out += _bsts_code(design, prior, sample_prior)
        return out
    if not isinstance(autocor, CorArma):
        return out

    if autocor.has_arma:
        out += _arma_pars(autocor, prior, sample_prior)
        if autocor.cov:
            out += _arma_cov_code(design, autocor)
        else:
            out += _arma_code(design, autocor)
    if autocor.has_arr:
        out += _arr_code(design, prior, sample_prior)
    return out
