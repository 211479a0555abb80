# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Assembly of complete Stan programs.

The program of a model is put together from the contributions of its parts in
a fixed order: the response data, the thresholds of ordinal models, every
linear predictor, the group-level effects of every ID, the non-linear
predictor, the auxiliary parameters, the correlation structure and finally the
likelihood. Within the loop over the observations this order makes sure that a
predictor is complete before it is transformed or used.
"""

from __future__ import annotations

from typing import Any, Optional, TYPE_CHECKING, Union

from brmstan.formula.effects import nl_to_stan
from brmstan.model.data.standata import DesignInfo, make_standata_info
from brmstan.model.prior import check_prior, PriorFrame
from brmstan.model.stan.blocks import decl, StanBlocks
from brmstan.model.stan.correlations import stan_autocor
from brmstan.model.stan.families import (
    check_autocor_family,
    stan_auxpars,
    stan_llh,
    stan_multivariate,
)
from brmstan.model.stan.predictors import stan_predictor, stan_ranef, stan_thresholds
from brmstan.model.stan.priors import stan_unchecked

if TYPE_CHECKING:
    from brmstan import custom_types


def _nonlinear_code(design: DesignInfo) -> StanBlocks:
    """Covariates and the non-linear predictor combining the parameters."""
    out = StanBlocks()
    effects = design.effects
    out.data.append(decl("int<lower=0> KC", "number of covariates"))
    if effects.covars:
        out.data.append(decl("matrix[N, KC] C", "covariate matrix"))
    out.model_def.append(decl("vector[N] eta", "non-linear predictor"))
    out.loop.append(f"eta[n] = {nl_to_stan(effects)}")
    return out


def stan_program(
    design: DesignInfo,
    prior: PriorFrame,
    threshold: str = "flexible",
    sample_prior: Union[bool, str] = False,
    stan_funs: Optional[str] = None,
) -> str:
    """Stan program of a model with a known design and checked priors.

    :param design: Design of the model
    :type design: DesignInfo
    :param prior: Checked priors of the model
    :type prior: PriorFrame
    :param threshold: Type of the thresholds of ordinal models. Defaults to
        "flexible".
    :type threshold: str
    :param sample_prior: True to draw from the priors in the generated
        quantities. "only" switches off the likelihood through the data instead.
        Defaults to False.
    :type sample_prior: Union[bool, str]
    :param stan_funs: User-defined Stan functions, added verbatim to the
        functions block. Defaults to None.
    :type stan_funs: Optional[str]

    :returns: Stan program code
    :rtype: str
    """
    effects, family = design.effects, design.family
    draw = sample_prior is True
    check_autocor_family(design)

    # The likelihood is last in the model block but its data come first
    if effects.is_multivariate:
        likelihood = stan_multivariate(design, prior, draw)
    else:
        likelihood = stan_llh(design)
    program = StanBlocks(data=[decl("int<lower=1> N", "total number of observations")])
    program.data += likelihood.data
    likelihood.data = []

    if family.is_ordinal:
        program += stan_thresholds(design, prior, threshold, draw)
    for info in design.predictors.values():
        program += stan_predictor(design, info, prior, draw)
    for gid in design.ids:
        program += stan_ranef(design, gid, prior, draw)
    if effects.is_nonlinear:
        program += _nonlinear_code(design)
    program += stan_auxpars(design, prior, draw)
    program += stan_autocor(design, prior, draw)
    program += likelihood

    program.prior += stan_unchecked(prior)
    if stan_funs:
        program.functions.append(stan_funs.rstrip("\n"))
    program.data.append(decl("int prior_only", "should the likelihood be ignored?"))

    return program.program()


def make_stancode_info(
    formula: "custom_types.FormulaType",
    data: "custom_types.DataType",
    family: "custom_types.FamilyType" = "gaussian",
    prior: Optional[PriorFrame] = None,
    autocor: "custom_types.AutocorType" = None,
    nonlinear: Any = None,
    threshold: str = "flexible",
    sparse: bool = False,
    cov_ranef: Optional[dict] = None,
    sample_prior: Union[bool, str] = False,
    knots: Optional[dict] = None,
    stan_funs: Optional[str] = None,
    save_model: Optional[str] = None,
    na_action: str = "omit",
) -> tuple[str, "custom_types.Standata", DesignInfo, PriorFrame]:
    """Stan program of a model together with its data, design and priors.

    See :py:func:`make_stancode` for the arguments.

    :returns: Stan program code, data for Stan, design information and checked
        priors
    :rtype: tuple[str, custom_types.Standata, DesignInfo, PriorFrame]
    """
    standata, design = make_standata_info(
        formula,
        data,
        family=family,
        autocor=autocor,
        nonlinear=nonlinear,
        cov_ranef=cov_ranef,
        sample_prior=sample_prior,
        knots=knots,
        sparse=sparse,
        na_action=na_action,
    )
    checked = check_prior(prior, design, threshold=threshold, sample_prior=sample_prior)
    code = stan_program(
        design, checked, threshold=threshold, sample_prior=sample_prior, stan_funs=stan_funs
    )

    if save_model is not None:
        with open(save_model, "w", encoding="utf-8") as f:
            f.write(code)

    return code, standata, design, checked


def make_stancode(
    formula: "custom_types.FormulaType",
    data: "custom_types.DataType",
    family: "custom_types.FamilyType" = "gaussian",
    prior: Optional[PriorFrame] = None,
    autocor: "custom_types.AutocorType" = None,
    nonlinear: Any = None,
    threshold: str = "flexible",
    sparse: bool = False,
    cov_ranef: Optional[dict] = None,
    sample_prior: Union[bool, str] = False,
    knots: Optional[dict] = None,
    stan_funs: Optional[str] = None,
    save_model: Optional[str] = None,
    na_action: str = "omit",
) -> str:
    """Generate the Stan program of a model.

    :param formula: Model formula, such as ``"y ~ x + (1 | g)"`` or the result of
        :py:func:`~brmstan.formula.brmsformula.bf`
    :type formula: custom_types.FormulaType
    :param data: Data of the model
    :type data: custom_types.DataType
    :param family: Response distribution. Defaults to "gaussian".
    :type family: custom_types.FamilyType
    :param prior: User priors, built with
        :py:func:`~brmstan.model.prior.set_prior`. Defaults to None (default
        priors only).
    :type prior: Optional[PriorFrame]
    :param autocor: Correlation structure. Defaults to None.
    :type autocor: custom_types.AutocorType
    :param nonlinear: Formulas of non-linear parameters. Defaults to None.
    :type nonlinear: Any
    :param threshold: "flexible" or "equidistant" thresholds of ordinal models.
        Defaults to "flexible".
    :type threshold: str
    :param sparse: Whether to treat the population-level design matrix as
        sparse. Defaults to False.
    :type sparse: bool
    :param cov_ranef: Known covariance matrices of the levels of grouping
        factors. Defaults to None.
    :type cov_ranef: Optional[dict]
    :param sample_prior: True to draw from the priors in addition to the
        posterior, "only" to draw from the priors only. Defaults to False.
    :type sample_prior: Union[bool, str]
    :param knots: Interior knots of smooth terms, keyed by covariate. Defaults to
        None.
    :type knots: Optional[dict]
    :param stan_funs: User-defined Stan functions. Defaults to None.
    :type stan_funs: Optional[str]
    :param save_model: Path the program is written to. Defaults to None.
    :type save_model: Optional[str]
    :param na_action: "omit" or "fail" for rows with missing values. Defaults to
        "omit".
    :type na_action: str

    :returns: Stan program code
    :rtype: str

    :raises FormulaError: If the formula cannot be interpreted for the family
    :raises PriorError: If the priors do not fit the model
    :raises DataError: If the data do not fit the model

    Example:
        >>> code = make_stancode("count ~ Trt + (1 | patient)", data=epilepsy,
        ...                      family="poisson")
        >>> "Y ~ poisson_log(eta);" in code
        True
    """
    return make_stancode_info(
        formula,
        data,
        family=family,
        prior=prior,
        autocor=autocor,
        nonlinear=nonlinear,
        threshold=threshold,
        sparse=sparse,
        cov_ranef=cov_ranef,
        sample_prior=sample_prior,
        knots=knots,
        stan_funs=stan_funs,
        save_model=save_model,
        na_action=na_action,
    )[0]
