# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Prior distributions of model parameters.

Priors are given as Stan distribution strings, such as ``"normal(0, 5)"``, and
are addressed by the parameter class they belong to (``b`` for
population-level effects, ``sd`` for standard deviations of group-level
effects, ``sigma`` for the residual standard deviation, and so on) plus an
optional coefficient, grouping factor and predictor name. A prior with fewer
of these fields set applies to every parameter it matches that has no more
specific prior.

Example:
    >>> prior = set_prior("normal(0, 5)") + set_prior("cauchy(0, 2)", class_="sd")
    >>> prior.to_frame()
             prior class coef group nlpar bound
    0  normal(0, 5)     b
    1  cauchy(0, 2)    sd
"""

from __future__ import annotations

import re

from dataclasses import dataclass, replace
from typing import Iterable, Iterator, Optional, TYPE_CHECKING, Union

import pandas as pd

from brmstan import defaults, utils
from brmstan.exceptions import PriorError
from brmstan.model.autocor import CorArma, CorBsts, CovFixed

if TYPE_CHECKING:
    from brmstan import custom_types
    from brmstan.model.data.standata import DesignInfo, PredictorInfo

# Horseshoe priors of population-level effects
_HORSESHOE = re.compile(r"^horseshoe\((.+)\)$")
HORSESHOE_PRIOR = "normal(0, hs_local * hs_global)"

# Classes whose priors may fall back to priors without predictor name
_SHARED_CLASSES = {"sd", "cor", "sds"}


@dataclass(frozen=True)
class Prior:
    """A single prior statement.

    :ivar prior: Stan distribution, such as ``"normal(0, 5)"``. An empty string
        denotes a flat prior.
    :ivar class_: Parameter class
    :ivar coef: Coefficient name, or "" for all coefficients of the class
    :ivar group: Grouping factor of group-level parameters, or ""
    :ivar nlpar: Predictor the parameter belongs to, or "" for the main predictor
    :ivar bound: Stan bounds of population-level effects, such as ``"<lower=0>"``
    :ivar check: Whether the prior must address a parameter of the model. Priors
        without check are added to the model block verbatim.
    """

    prior: str
    class_: str = "b"
    coef: str = ""
    group: str = ""
    nlpar: str = ""
    bound: str = ""
    check: bool = True

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.class_, self.coef, self.group, self.nlpar)


class PriorFrame:
    """An ordered collection of priors.

    Frames are combined with ``+``; when two priors address the same
    parameters, the later one wins.

    :param priors: Priors of the frame. Defaults to none.
    :type priors: Iterable[Prior]
    :param hs_df: Degrees of freedom of the local shrinkage parameters of a
        horseshoe prior, or None. Defaults to None.
    :type hs_df: Optional[float]
    """

    def __init__(self, priors: Iterable[Prior] = (), hs_df: Optional[float] = None):
        self.priors = list(priors)
        self.hs_df = hs_df

    def __add__(self, other: "PriorFrame") -> "PriorFrame":
        if not isinstance(other, PriorFrame):
            return NotImplemented
        hs_df = other.hs_df if other.hs_df is not None else self.hs_df
        return PriorFrame(self.priors + other.priors, hs_df=hs_df)

    def __iter__(self) -> Iterator[Prior]:
        return iter(self.priors)

    def __len__(self) -> int:
        return len(self.priors)

    def __repr__(self) -> str:
        return repr(self.to_frame())

    def to_frame(self) -> pd.DataFrame:
        """Priors as a data frame with the columns prior, class, coef, group, nlpar
        and bound."""
        return pd.DataFrame(
            [
                [p.prior, p.class_, p.coef, p.group, p.nlpar, p.bound]
                for p in self.priors
            ],
            columns=["prior", "class", "coef", "group", "nlpar", "bound"],
        )

    def get(
        self, class_: str, coef: str = "", group: str = "", nlpar: str = ""
    ) -> Optional[Prior]:
        """Prior with exactly the given fields, or None."""
        key = (class_, coef, group, nlpar)
        for prior in reversed(self.priors):
            if prior.check and prior.key == key:
                return prior
        return None

    def resolve(
        self, class_: str, coef: str = "", group: str = "", nlpar: str = ""
    ) -> str:
        """Effective prior of one parameter: the most specific matching prior that
        is not empty.

        :param class_: Parameter class
        :type class_: str
        :param coef: Coefficient name. Defaults to "".
        :type coef: str
        :param group: Grouping factor. Defaults to "".
        :type group: str
        :param nlpar: Predictor name. Defaults to "".
        :type nlpar: str

        :returns: The prior, or "" if the parameter has a flat prior
        :rtype: str
        """
        candidates = [
            (coef, group, nlpar),
            ("", group, nlpar),
            ("", "", nlpar),
        ]
        if class_ in _SHARED_CLASSES:
            candidates += [(coef, group, ""), ("", group, ""), ("", "", "")]
        for key in dict.fromkeys(candidates):
            if (prior := self.get(class_, *key)) is not None and prior.prior:
                return prior.prior
        return ""

    @property
    def unchecked(self) -> list[Prior]:
        """Priors to be added to the model verbatim."""
        return [prior for prior in self.priors if not prior.check]


def _format_bound(lb: Union[None, str, float], ub: Union[None, str, float]) -> str:
    parts = []
    if lb is not None and str(lb) != "":
        parts.append(f"lower={lb}")
    if ub is not None and str(ub) != "":
        parts.append(f"upper={ub}")
    return f"<{','.join(parts)}>" if parts else ""


def set_prior(
    prior: str,
    class_: str = "b",
    coef: str = "",
    group: str = "",
    nlpar: str = "",
    lb: Union[None, str, "custom_types.Float", "custom_types.Integer"] = None,
    ub: Union[None, str, "custom_types.Float", "custom_types.Integer"] = None,
    check: bool = True,
) -> PriorFrame:
    """Define a prior distribution.

    :param prior: Stan distribution, such as ``"normal(0, 5)"``, or
        ``horseshoe(df)`` for population-level effects. An empty string means a
        flat prior.
    :type prior: str
    :param class_: Parameter class. Defaults to "b".
    :type class_: str
    :param coef: Name of a single coefficient. Defaults to "" (all coefficients).
    :type coef: str
    :param group: Grouping factor of group-level parameters. Defaults to "".
    :type group: str
    :param nlpar: Name of a non-linear or distributional parameter. Defaults to ""
        (main predictor).
    :type nlpar: str
    :param lb: Lower bound of population-level effects. Defaults to None.
    :type lb: Union[None, str, float, int]
    :param ub: Upper bound of population-level effects. Defaults to None.
    :type ub: Union[None, str, float, int]
    :param check: Whether to check the prior against the model. Unchecked priors
        are full Stan statements, such as ``"target += normal_lpdf(b[1] | 0, 1)"``.
        Defaults to True.
    :type check: bool

    :returns: A frame holding the prior
    :rtype: PriorFrame

    :raises PriorError: If the fields are inconsistent
    """
    prior = prior.strip()
    if not check:
        return PriorFrame([Prior(prior=prior, class_=class_, check=False)])

    if class_ not in defaults.DEFAULT_CLASS_PRIORS:
        raise PriorError(
            f"Unknown parameter class '{class_}'. Valid classes are: "
            + ", ".join(defaults.DEFAULT_CLASS_PRIORS)
        )
    if group and class_ not in {"sd", "cor"}:
        raise PriorError("Argument 'group' is only meaningful for classes 'sd' and 'cor'.")
    if coef and class_ in {"cor", "rescor", "delta", "sigmaLL"}:
        raise PriorError(f"Argument 'coef' is not meaningful for class '{class_}'.")

    bound = _format_bound(lb, ub)
    if bound and class_ != "b":
        raise PriorError("Currently boundaries are only allowed for population-level effects.")
    if bound and coef:
        raise PriorError(
            "Boundaries can only be set for all population-level effects of a predictor."
        )

    # Horseshoe priors act on all population-level effects
    hs_df = None
    if match := _HORSESHOE.match(prior):
        if class_ != "b" or coef:
            raise PriorError("Horseshoe priors can only be used on all population-level effects.")
        if not utils.is_number(match.group(1)) or float(match.group(1)) <= 0:
            raise PriorError("Degrees of freedom of horseshoe priors must be positive.")
        hs_df = float(match.group(1))
        prior = HORSESHOE_PRIOR

    return PriorFrame(
        [
            Prior(
                prior=prior,
                class_=class_,
                coef=coef,
                group=group,
                nlpar=nlpar,
                bound=bound,
            )
        ],
        hs_df=hs_df,
    )


def horseshoe(df: "custom_types.Float" = 1) -> str:
    """Horseshoe prior of all population-level effects.

    The effects get normal priors with standard deviation ``hs_local *
    hs_global``, where the local scales have half student-t priors with ``df``
    degrees of freedom and the global scale a half Cauchy prior.

    :param df: Degrees of freedom of the local scales. Defaults to 1.
    :type df: custom_types.Float

    :returns: Prior string to be passed to :py:func:`set_prior`
    :rtype: str

    Example:
        >>> set_prior(horseshoe(3)).hs_df
        3.0
    """
    if df <= 0:
        raise PriorError("Degrees of freedom of horseshoe priors must be positive.")
    return f"horseshoe({df})"


def prior_nlpar(design: "DesignInfo", info: "PredictorInfo") -> str:
    """Name under which priors address the parameters of a predictor.

    Predictors of the responses of multivariate models share the priors of the
    main predictor.
    """
    if design.effects.is_multivariate and not info.is_auxpar:
        return ""
    return info.name


def b_coefs(info: "PredictorInfo") -> list[str]:
    """Names of the coefficients of class b of a predictor."""
    fixef = info.fixef[1:] if info.centered else info.fixef
    return list(fixef) + list(info.mono) + list(info.cse)


def has_sigma(design: "DesignInfo") -> bool:
    """Whether a residual standard deviation is estimated.

    Known standard errors replace it, except in ARMA covariance matrices, which
    add them to the residual variance.
    """
    autocor = design.autocor
    arma_cov = isinstance(autocor, CorArma) and autocor.cov and autocor.has_arma
    return (
        "sigma" in design.family.auxpars
        and (design.effects.se is None or arma_cov)
        and not isinstance(autocor, CovFixed)
    )


def default_priors(design: "DesignInfo", threshold: str = "flexible") -> PriorFrame:
    """Default prior of every parameter of a model.

    :param design: Design of the model
    :type design: DesignInfo
    :param threshold: Type of the thresholds of ordinal models. Defaults to
        "flexible".
    :type threshold: str

    :returns: One row per parameter class, grouping factor and coefficient
    :rtype: PriorFrame
    """
    class_priors = defaults.DEFAULT_CLASS_PRIORS
    rows: list[Prior] = []

    def add(class_: str, coef: str = "", group: str = "", nlpar: str = ""):
        row = Prior(
            prior=class_priors[class_] if not (coef or group) else "",
            class_=class_,
            coef=coef,
            group=group,
            nlpar=nlpar,
        )
        if row.key not in {existing.key for existing in rows}:
            rows.append(row)

    family, effects = design.family, design.effects

    # Population-level effects of every predictor
    for info in design.predictors.values():
        nlpar = prior_nlpar(design, info)
        if coefs := b_coefs(info):
            add("b", nlpar=nlpar)
            for coef in coefs:
                add("b", coef=coef, nlpar=nlpar)
        if info.centered:
            add("Intercept", nlpar=nlpar)
            if family.is_ordinal and threshold == "flexible" and not info.is_auxpar:
                for thres in range(1, design.ncat):
                    add("Intercept", coef=str(thres), nlpar=nlpar)
        if info.mono:
            add("simplex", nlpar=nlpar)
            for var in info.mono:
                add("simplex", coef=var, nlpar=nlpar)
        if info.smooths:
            add("sds", nlpar=nlpar)
            for label, _ in info.smooths:
                add("sds", coef=label, nlpar=nlpar)

    # Group-level effects
    if len(design.ranef) > 0:
        add("sd")
        for gid in design.ids:
            rows_ = design.id_ranef(gid)
            group = rows_["group"].iloc[0]
            add("sd", group=group)
            for _, row in rows_.iterrows():
                add("sd", coef=row["coef"], group=group, nlpar=row["nlpar"])
        if any(
            design.id_ranef(gid)["cor"].iloc[0] and len(design.id_ranef(gid)) > 1
            for gid in design.ids
        ):
            add("cor")
            for gid in design.ids:
                rows_ = design.id_ranef(gid)
                if rows_["cor"].iloc[0] and len(rows_) > 1:
                    add("cor", group=rows_["group"].iloc[0])

    # Auxiliary parameters that are not predicted
    for auxpar in family.auxpars:
        if auxpar in effects.auxpars or (auxpar == "sigma" and not has_sigma(design)):
            continue
        add(auxpar)
        if auxpar == "sigma" and effects.is_multivariate:
            for resp in effects.response:
                add("sigma", coef=resp)
    if family.is_ordinal and threshold == "equidistant":
        add("delta")
    if effects.is_multivariate:
        add("rescor")

    # Correlation structures
    autocor = design.autocor
    if isinstance(autocor, CorArma):
        for class_, order in (("ar", autocor.p), ("ma", autocor.q), ("arr", autocor.r)):
            if order > 0:
                add(class_)
    elif isinstance(autocor, CorBsts):
        add("sigmaLL")

    return PriorFrame(rows)


def get_prior(
    formula: "custom_types.FormulaType",
    data: "custom_types.DataType",
    family: "custom_types.FamilyType" = "gaussian",
    autocor: "custom_types.AutocorType" = None,
    nonlinear=None,
    threshold: str = "flexible",
    knots: Optional[dict] = None,
) -> PriorFrame:
    """All parameters of a model for which priors can be specified, with their
    default priors.

    :param formula: Model formula
    :type formula: custom_types.FormulaType
    :param data: Data of the model
    :type data: custom_types.DataType
    :param family: Response distribution. Defaults to "gaussian".
    :type family: custom_types.FamilyType
    :param autocor: Correlation structure. Defaults to None.
    :type autocor: custom_types.AutocorType
    :param nonlinear: Formulas of non-linear parameters. Defaults to None.
    :param threshold: "flexible" or "equidistant" thresholds of ordinal models.
        Defaults to "flexible".
    :type threshold: str
    :param knots: Interior knots of smooth terms. Defaults to None.
    :type knots: Optional[dict]

    :returns: Frame of default priors
    :rtype: PriorFrame

    Example:
        >>> get_prior("count ~ Trt + (1 | patient)", epilepsy, "poisson").to_frame()
                         prior      class       coef    group nlpar bound
        0                             b
        1                             b       Trtb
        2                     Intercept
        3  student_t(3, 0, 10)        sd
        4                            sd             patient
        5                            sd  Intercept  patient
    """
    # pylint: disable=import-outside-toplevel
    from brmstan.model.data.standata import make_standata_info

    _, design = make_standata_info(
        formula, data, family=family, autocor=autocor, nonlinear=nonlinear, knots=knots
    )
    return default_priors(design, threshold=check_threshold(threshold))


def check_threshold(threshold: str) -> str:
    if threshold not in {"flexible", "equidistant"}:
        raise PriorError("Argument 'threshold' must be either 'flexible' or 'equidistant'.")
    return threshold


def check_prior(
    prior: Optional[PriorFrame],
    design: "DesignInfo",
    threshold: str = "flexible",
    sample_prior: Union[bool, str] = False,
) -> PriorFrame:
    """Merge user priors with the default priors of a model.

    :param prior: User priors, or None
    :type prior: Optional[PriorFrame]
    :param design: Design of the model
    :type design: DesignInfo
    :param threshold: Type of ordinal thresholds. Defaults to "flexible".
    :type threshold: str
    :param sample_prior: If "only", all priors must be proper. Defaults to False.
    :type sample_prior: Union[bool, str]

    :returns: Default priors with the user priors in their place, followed by
        the unchecked user priors
    :rtype: PriorFrame

    :raises PriorError: If a prior addresses no parameter of the model, a
        non-linear parameter has no population-level prior or, when sampling
        from the priors only, a prior is improper
    """
    merged = default_priors(design, threshold=check_threshold(threshold))
    if prior is None:
        prior = PriorFrame()

    rows = list(merged.priors)
    index = {row.key: i for i, row in enumerate(rows)}
    unchecked = []
    for user in prior:
        if not user.check:
            unchecked.append(user)
            continue
        if user.key not in index:
            raise PriorError(
                f"Prior '{user.prior}' of class '{user.class_}'"
                + (f", coefficient '{user.coef}'" if user.coef else "")
                + (f", group '{user.group}'" if user.group else "")
                + (f", parameter '{user.nlpar}'" if user.nlpar else "")
                + " does not correspond to any model parameter. Use get_prior to "
                "find the parameters of the model."
            )
        if user.prior == HORSESHOE_PRIOR and user.nlpar:
            raise PriorError("Horseshoe priors are only allowed for the main predictor.")
        rows[index[user.key]] = replace(rows[index[user.key]], prior=user.prior, bound=user.bound)
    checked = PriorFrame(rows + unchecked, hs_df=prior.hs_df)

    main = design.predictors.get("")
    general = checked.get("b")
    if (
        main is not None
        and (main.mono or main.cse)
        and general is not None
        and general.prior == HORSESHOE_PRIOR
    ):
        raise PriorError(
            "Horseshoe priors cannot be combined with monotonic or category specific "
            "effects."
        )

    # Non-linear parameters need proper priors on their population-level effects
    if design.effects.is_nonlinear:
        for name, info in design.predictors.items():
            if info.is_auxpar:
                continue
            for coef in b_coefs(info):
                if not checked.resolve("b", coef=coef, nlpar=name):
                    raise PriorError(
                        "Priors on population-level effects are required in non-linear "
                        f"models, but none were found for parameter '{name}'. See "
                        "help(set_prior) for more details."
                    )

    if sample_prior == "only":
        _check_proper(checked, design)

    return checked


def _check_proper(prior: PriorFrame, design: "DesignInfo") -> None:
    """Require proper priors of all parameters with flat defaults."""
    improper = []
    for info in design.predictors.values():
        nlpar = prior_nlpar(design, info)
        for coef in b_coefs(info):
            if not prior.resolve("b", coef=coef, nlpar=nlpar):
                improper.append("b")
        if info.centered and not prior.resolve("Intercept", nlpar=nlpar):
            improper.append("Intercept")
    for class_ in ("ar", "ma", "arr", "delta"):
        if prior.get(class_) is not None and not prior.resolve(class_):
            improper.append(class_)
    if improper:
        raise PriorError(
            "Sampling from priors is not possible as some parameters have no proper "
            f"priors. Error occured for class '{improper[0]}'."
        )
