# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Interpretation of the terms of model formulas.

This module takes a :py:class:`~brmstan.formula.brmsformula.BrmsFormula` apart
into the pieces the rest of the package works with. Ordinary population-level
terms are left untouched and handed to patsy later on; only the syntax patsy
does not know is interpreted here:

    - addition arguments on the left-hand side (``se()``, ``weights()``,
      ``disp()``, ``trials()``, ``cat()``, ``cens()`` and ``trunc()``), separated
      from the response by ``|`` and from each other by ``|`` or ``+``
    - group-level terms ``(terms | group)``, uncorrelated group-level terms
      ``(terms || group)`` and terms with a shared ID ``(terms | ID | group)``
    - monotonic effects ``mono(x)`` (or ``monotonic(x)``), category-specific
      effects ``cse(x)``, smooth terms ``s(x)`` and ``t2(x, z)`` and offsets
      ``offset(x)``
    - the non-linear expression of non-linear models
    - the R spellings ``factor(x)`` and ``x^2`` that differ in patsy

The result is an :py:class:`Effects` object holding one
:py:class:`LinearEffects` per linear predictor of the model.
"""

from __future__ import annotations

import copy
import re

from dataclasses import dataclass, field
from typing import Optional, TYPE_CHECKING

from brmstan import defaults, utils
from brmstan.exceptions import FormulaError
from brmstan.formula.brmsformula import BrmsFormula, split_formula
from brmstan.model.family import Family

if TYPE_CHECKING:
    from brmstan import custom_types

# Addition arguments and the families they are valid for
_CENS_FAMILIES = {
    "gaussian",
    "student",
    "lognormal",
    "exponential",
    "weibull",
    "gamma",
    "inverse_gaussian",
    "poisson",
    "negbinomial",
    "geometric",
}
_DISP_FAMILIES = {
    "gaussian",
    "student",
    "lognormal",
    "weibull",
    "gamma",
    "negbinomial",
}
ADDITION_FAMILIES: dict[str, Optional[set[str]]] = {
    "se": {"gaussian", "student"},
    "weights": None,
    "disp": _DISP_FAMILIES,
    "trials": {"binomial", "zero_inflated_binomial"},
    "cat": {"cumulative", "sratio", "cratio", "acat", "categorical"},
    "cens": _CENS_FAMILIES,
    "trunc": _CENS_FAMILIES,
}
"""Families supporting each addition argument. None means every family."""

_SPECIAL_TERMS = {"mono", "monotonic", "cse", "s", "t2", "offset"}


@dataclass
class GroupTerm:
    """A group-level term, such as ``(1 + x | g)``.

    :param group: Grouping factor; interactions of factors are written ``g1:g2``
    :type group: str
    :param form: Right-hand side of the varying effects, with an explicit
        intercept marker (``"1 + x"`` or ``"0 + x"``). For monotonic terms, the
        monotonic variables separated by ``+``.
    :type form: str
    :param cor: Whether the effects are correlated. Defaults to True.
    :type cor: bool
    :param id: Shared ID across terms, or None. Defaults to None.
    :type id: Optional[str]
    :param type: "" for ordinary, "mono" for monotonic and "cse" for
        category-specific effects. Defaults to "".
    :type type: str
    :param nlpar: Linear predictor the term belongs to. Defaults to "".
    :type nlpar: str
    """

    group: str
    form: str
    cor: bool = True
    id: Optional[str] = None
    type: str = ""
    nlpar: str = ""

    @property
    def group_vars(self) -> list[str]:
        return self.group.split(":")


@dataclass
class SmoothTerm:
    """A penalized spline term, ``s(x, k = 10)`` or ``t2(x, z, k = 5)``.

    :param kind: "s" or "t2"
    :type kind: str
    :param covars: Variables the smooth function depends on
    :type covars: list[str]
    :param k: Dimension of the marginal spline bases
    :type k: int
    :param nlpar: Linear predictor the term belongs to. Defaults to "".
    :type nlpar: str
    """

    kind: str
    covars: list[str]
    k: int = defaults.DEFAULT_SPLINE_K
    nlpar: str = ""

    @property
    def label(self) -> str:
        """Name of the term used in parameter names, such as ``sx`` or ``t2xz``."""
        return utils.rename(self.kind + "".join(self.covars)).replace(".", "")


@dataclass
class LinearEffects:
    """The terms of one linear predictor.

    :ivar fixed: Ordinary population-level terms, in patsy syntax
    :ivar intercept: Whether the predictor has a population-level intercept
    :ivar random: Group-level terms
    :ivar mono: Variables with monotonic effects
    :ivar cse: Category-specific population-level terms (without intercept), or None
    :ivar smooths: Smooth terms
    :ivar offset: Offset expression, or None
    :ivar nlpar: Name of the predictor; "" for the main predictor of a linear
        model, the parameter name for non-linear and distributional parameters and
        the response name in multivariate models
    """

    fixed: list[str] = field(default_factory=list)
    intercept: bool = True
    random: list[GroupTerm] = field(default_factory=list)
    mono: list[str] = field(default_factory=list)
    cse: Optional[str] = None
    smooths: list[SmoothTerm] = field(default_factory=list)
    offset: Optional[str] = None
    nlpar: str = ""

    @property
    def fixed_formula(self) -> str:
        """Patsy right-hand side of the population-level design matrix."""
        return " + ".join(["1" if self.intercept else "0"] + self.fixed)

    @property
    def suffix(self) -> str:
        """Suffix of the Stan names of this predictor, such as ``_sigma``."""
        return f"_{self.nlpar}" if self.nlpar else ""

    def all_vars(self) -> list[str]:
        """Variables referenced by any term of the predictor."""
        found = []
        exprs = list(self.fixed) + list(self.mono)
        exprs += [term.form for term in self.random if term.type != "mono"]
        exprs += [term.group.replace(":", " + ") for term in self.random]
        exprs += [" + ".join(smooth.covars) for smooth in self.smooths]
        exprs += [expr for expr in (self.cse, self.offset) if expr is not None]
        for expr in exprs:
            found.extend(var for var in utils.all_vars(expr) if var not in found)
        return found


@dataclass
class Effects:
    """Everything the formula says about a model.

    :ivar response: Names (or expressions) of the response variables
    :ivar predictors: Linear predictors in the order their parameters are numbered:
        the main predictor (or the non-linear parameters, or one per response of a
        multivariate model), followed by the predicted auxiliary parameters
    :ivar auxpars: Names of the predictors that are auxiliary parameters
    :ivar nl_expr: Non-linear expression, or None for linear models
    :ivar covars: Covariates of the non-linear expression
    :ivar se: Expression of known standard errors, or None
    :ivar weights: Expression of observation weights, or None
    :ivar disp: Expression of dispersion factors, or None
    :ivar trials: Expression or number of binomial trials, or None
    :ivar cat: Expression or number of categories, or None
    :ivar cens: Censoring indicator and upper interval bound expressions, or None
    :ivar trunc: Lower and upper truncation bound expressions, or None
    :ivar time: Time variable of the correlation structure, or None
    :ivar time_group: Grouping factor of the correlation structure, or None
    """

    response: list[str]
    predictors: dict[str, LinearEffects] = field(default_factory=dict)
    auxpars: list[str] = field(default_factory=list)
    nl_expr: Optional[str] = None
    covars: list[str] = field(default_factory=list)
    se: Optional[str] = None
    weights: Optional[str] = None
    disp: Optional[str] = None
    trials: Optional[str] = None
    cat: Optional[str] = None
    cens: Optional[tuple] = None
    trunc: Optional[tuple] = None
    time: Optional[str] = None
    time_group: Optional[str] = None

    @property
    def is_nonlinear(self) -> bool:
        return self.nl_expr is not None

    @property
    def is_multivariate(self) -> bool:
        return len(self.response) > 1

    @property
    def main_predictors(self) -> dict[str, LinearEffects]:
        """Linear predictors that are not auxiliary parameters."""
        return {
            name: effects
            for name, effects in self.predictors.items()
            if name not in self.auxpars
        }

    @property
    def random(self) -> list[GroupTerm]:
        """Group-level terms of all predictors."""
        return [term for effects in self.predictors.values() for term in effects.random]

    def all_vars(self) -> list[str]:
        """Variables referenced anywhere in the model."""
        exprs = list(self.response) + list(self.covars)
        exprs += [
            expr
            for expr in (self.se, self.weights, self.disp, self.trials, self.cat)
            if expr is not None
        ]
        exprs += [expr for expr in (self.cens or ()) if expr is not None]
        exprs += [expr for expr in (self.trunc or ()) if expr is not None]
        exprs += [expr for expr in (self.time, self.time_group) if expr is not None]

        found = []
        for expr in exprs:
            found.extend(var for var in utils.all_vars(expr) if var not in found)
        for effects in self.predictors.values():
            found.extend(var for var in effects.all_vars() if var not in found)
        return found


def to_patsy(term: str) -> str:
    """Translate R spellings of a population-level term into patsy syntax.

    :param term: Term such as ``"factor(g)"`` or ``"I(x^2)"``
    :type term: str

    :returns: Patsy term such as ``"C(g)"`` or ``"I(x**2)"``
    :rtype: str
    """
    term = re.sub(r"\b(as\.)?factor\(", "C(", term)
    return term.replace("^", "**")


def _parse_vars(argstring: str, what: str) -> list[str]:
    """Parse ``x + z`` or ``x, z`` into plain variable names."""
    names = []
    for part in utils.split_top_level(argstring, "+,"):
        if part in {"", "1"}:
            continue
        if utils.all_vars(part) != [part]:
            raise FormulaError(f"Arguments of {what} must be variable names, got '{part}'.")
        names.append(part)
    if not names:
        raise FormulaError(f"No variables found in {what}.")
    return names


def _parse_smooth(name: str, argstring: str, nlpar: str) -> SmoothTerm:
    args, kwargs = utils.parse_args(argstring)
    if not args:
        raise FormulaError(f"Smooth term {name}({argstring}) needs at least one variable.")
    if name == "s" and len(args) > 1:
        raise FormulaError(
            "Smooth terms s() accept only one variable. Use t2() for smooth "
            "functions of multiple variables."
        )
    if unknown := set(kwargs) - {"k"}:
        raise FormulaError(
            f"Unsupported arguments of smooth term {name}(): {', '.join(sorted(unknown))}"
        )

    covars = _parse_vars(", ".join(args), f"{name}()")
    k = int(kwargs.get("k", defaults.DEFAULT_SPLINE_K))
    if k < 4:
        raise FormulaError(f"The basis dimension of smooth terms must be at least 4, got {k}.")

    return SmoothTerm(kind=name, covars=covars, k=k, nlpar=nlpar)


def _parse_group_term(term: str, nlpar: str) -> list[GroupTerm]:
    """Parse ``(form | group)``, ``(form || group)`` or ``(form | ID | group)``."""
    parts = utils.split_top_level(utils.strip_parens(term), "|")
    if len(parts) == 2:
        form, gid, group, cor = parts[0], None, parts[1], True
    elif len(parts) == 3 and parts[1] == "":
        form, gid, group, cor = parts[0], None, parts[2], False
    elif len(parts) == 3:
        form, gid, group, cor = parts[0], parts[1], parts[2], True
    else:
        raise FormulaError(f"Invalid group-level term '{term}'.")
    if not group:
        raise FormulaError(f"Group-level term '{term}' has no grouping factor.")

    # Nested grouping factors g1/g2 expand to g1 and g1:g2
    nested = utils.split_top_level(group, "/")
    groups = [":".join(nested[: i + 1]) for i in range(len(nested))]
    for group_name in groups:
        for var in group_name.split(":"):
            if utils.all_vars(var) != [var]:
                raise FormulaError(
                    f"Grouping factors must be variable names, got '{group_name}'."
                )

    # Sort the varying terms into ordinary, monotonic and category-specific ones
    regular, explicit_intercept, intercept = [], False, True
    special: list[tuple[str, str]] = []
    for sign, sub in utils.split_terms(form):
        if (sign == "-" and sub == "1") or sub == "0":
            intercept, explicit_intercept = False, True
        elif sub == "1":
            intercept, explicit_intercept = True, True
        elif (call := utils.split_call(sub)) and call[0] in {"mono", "monotonic", "cse"}:
            special.append(("mono" if call[0] != "cse" else "cse", call[1]))
        elif sign == "-":
            raise FormulaError(f"Cannot remove term '{sub}' in group-level term '{term}'.")
        else:
            regular.append(to_patsy(sub))

    terms = []
    for group_name in groups:
        if regular or explicit_intercept or not special:
            rhs = " + ".join(["1" if intercept else "0"] + regular)
            if rhs == "0":
                raise FormulaError(f"Group-level term '{term}' has no effects.")
            terms.append(
                GroupTerm(group=group_name, form=rhs, cor=cor, id=gid, nlpar=nlpar)
            )
        for type_, argstring in special:
            if type_ == "mono":
                rhs = " + ".join(_parse_vars(argstring, "mono()"))
            else:
                rhs = argstring.strip()
                if rhs not in {"0", "1"} and not rhs.startswith(("0 +", "1 +", "-1")):
                    rhs = "1 + " + to_patsy(rhs)
            terms.append(
                GroupTerm(
                    group=group_name, form=rhs, cor=cor, id=gid, type=type_, nlpar=nlpar
                )
            )

    return terms


def parse_rhs(rhs: str, nlpar: str = "") -> LinearEffects:
    """Parse the right-hand side of one linear predictor.

    :param rhs: Right-hand side, such as ``"x + mono(z) + (1 | g)"``
    :type rhs: str
    :param nlpar: Name of the predictor. Defaults to "".
    :type nlpar: str

    :returns: The terms of the predictor
    :rtype: LinearEffects

    :raises FormulaError: If a term cannot be interpreted
    """
    effects = LinearEffects(nlpar=nlpar)
    cse_terms, offsets = [], []
    for sign, term in utils.split_terms(rhs.strip().lstrip("~")):
        if term == "0" or (sign == "-" and term == "1"):
            effects.intercept = False
            continue
        if term == "1":
            effects.intercept = True
            continue
        if sign == "-":
            effects.fixed.append("- " + to_patsy(term))
            continue

        # Group-level terms
        inner = utils.strip_parens(term)
        if term.startswith("(") and len(utils.split_top_level(inner, "|")) > 1:
            effects.random.extend(_parse_group_term(term, nlpar))
            continue

        # Special terms
        call = utils.split_call(term)
        if call is None or call[0] not in _SPECIAL_TERMS:
            effects.fixed.append(to_patsy(term))
        elif call[0] in {"mono", "monotonic"}:
            effects.mono.extend(
                var for var in _parse_vars(call[1], "mono()") if var not in effects.mono
            )
        elif call[0] == "cse":
            cse_terms.append(to_patsy(call[1]))
        elif call[0] == "offset":
            offsets.append(call[1].strip())
        else:
            effects.smooths.append(_parse_smooth(call[0], call[1], nlpar))

    if cse_terms:
        effects.cse = " + ".join(cse_terms)
    if offsets:
        effects.offset = " + ".join(offsets)

    # Monotonic group-level terms only make sense on top of population-level ones
    for term in effects.random:
        if term.type == "mono" and not set(term.form.split(" + ")) <= set(effects.mono):
            raise FormulaError(
                "Monotonic group-level terms require corresponding population-level terms."
            )

    return effects


def _parse_addition(
    lhs: str, family: Family
) -> tuple[list[str], dict]:
    """Split the left-hand side into the responses and the addition arguments."""
    parts = utils.split_top_level(lhs, "|")
    response = parts[0]
    additions = {}
    for part in parts[1:]:
        for term in utils.split_top_level(part, "+"):
            call = utils.split_call(term)
            if call is None or call[0] not in ADDITION_FAMILIES:
                raise FormulaError(f"Invalid addition arguments: '{term}'.")
            name, argstring = call
            allowed = ADDITION_FAMILIES[name]
            if allowed is not None and family.family not in allowed:
                raise FormulaError(
                    f"Invalid addition arguments for this model: '{name}' is not "
                    f"supported by family '{family.family}'."
                )
            if name in additions:
                raise FormulaError(f"Addition argument '{name}' is given more than once.")

            args, kwargs = utils.parse_args(argstring)
            if name == "cens":
                y2 = kwargs.get("y2", args[1] if len(args) > 1 else None)
                additions[name] = (kwargs.get("x", args[0] if args else None), y2)
                if additions[name][0] is None:
                    raise FormulaError("cens() needs a censoring indicator.")
            elif name == "trunc":
                lb = kwargs.get("lb", args[0] if args else None)
                ub = kwargs.get("ub", args[1] if len(args) > 1 else None)
                if lb is None and ub is None:
                    raise FormulaError("trunc() needs a lower or an upper bound.")
                additions[name] = (lb, ub)
            else:
                if len(args) != 1 or kwargs:
                    raise FormulaError(f"Addition argument {name}() takes one argument.")
                additions[name] = args[0]

    # Multivariate responses
    if call := utils.split_call(response):
        if call[0] != "cbind":
            raise FormulaError(f"Invalid response '{response}'.")
        responses = _parse_vars(call[1], "cbind()")
    else:
        responses = [response]

    return responses, additions


def extract_effects(
    formula: BrmsFormula,
    family: Family,
    autocor: "custom_types.AutocorType" = None,
) -> Effects:
    """Interpret all terms of a model formula.

    :param formula: Model formula
    :type formula: BrmsFormula
    :param family: Response distribution
    :type family: Family
    :param autocor: Correlation structure, contributing its time and grouping
        variables. Defaults to None.
    :type autocor: custom_types.AutocorType

    :returns: The interpreted model
    :rtype: Effects

    :raises FormulaError: If the formula does not fit the family or contains
        invalid terms
    """
    lhs, rhs = split_formula(formula.formula)
    responses, additions = _parse_addition(lhs, family)
    effects = Effects(response=responses, **additions)

    if effects.is_multivariate and not family.is_linear:
        raise FormulaError(
            "Multivariate models are only implemented for families 'gaussian' and "
            "'student'."
        )

    # Linear predictors of the mean
    if formula.is_nonlinear:
        if effects.is_multivariate:
            raise FormulaError("Non-linear models cannot have multiple responses.")
        if family.has_cat:
            raise FormulaError(
                "Non-linear models are not implemented for categorical and ordinal "
                "families."
            )
        rhs_vars = utils.all_vars(rhs)
        for nlpar, nlrhs in formula.nonlinear.items():
            if nlpar not in rhs_vars:
                raise FormulaError(
                    f"Non-linear parameter '{nlpar}' does not appear in the "
                    f"non-linear formula '{rhs}'."
                )
            effects.predictors[nlpar] = parse_rhs(nlrhs, nlpar=nlpar)
        effects.nl_expr = rhs.strip()
        effects.covars = [var for var in rhs_vars if var not in formula.nonlinear]
    elif effects.is_multivariate:
        main = parse_rhs(rhs)
        for resp in responses:
            effects.predictors[resp] = _for_predictor(main, resp)
    else:
        effects.predictors[""] = parse_rhs(rhs)

    # Category-specific effects
    for effects_ in effects.predictors.values():
        has_cse = effects_.cse is not None or any(
            term.type == "cse" for term in effects_.random
        )
        if has_cse and not family.allows_cse:
            raise FormulaError(
                "Category specific effects are only meaningful for families "
                "'sratio', 'cratio', and 'acat'."
            )
    if family.is_categorical and effects.random:
        raise FormulaError(
            "Group-level effects are not implemented for the categorical family."
        )

    # Distributional parameters
    for auxpar, auxrhs in formula.pforms.items():
        if auxpar not in family.auxpars:
            raise FormulaError(
                f"The parameter '{auxpar}' is not a valid distributional parameter of "
                f"family '{family.family}'. Valid parameters are: "
                + (", ".join(family.auxpars) or "none")
            )
        if effects.is_multivariate:
            raise FormulaError(
                "Distributional parameters cannot be predicted in multivariate models."
            )
        if auxpar in formula.nonlinear:
            raise FormulaError(
                f"'{auxpar}' is a distributional parameter and cannot be used as a "
                "non-linear parameter."
            )
        aux_effects = parse_rhs(auxrhs, nlpar=auxpar)
        if aux_effects.cse is not None:
            raise FormulaError("Distributional parameters cannot have category specific effects.")
        effects.predictors[auxpar] = aux_effects
        effects.auxpars.append(auxpar)
    if effects.disp is not None and effects.auxpars:
        raise FormulaError(
            "Addition argument 'disp' cannot be combined with predicted "
            "distributional parameters."
        )

    # Correlation structures
    if autocor is not None:
        effects.time = autocor.time
        effects.time_group = autocor.group

    return effects


def _for_predictor(effects: LinearEffects, nlpar: str) -> LinearEffects:
    """Copy the terms of a predictor for another predictor name."""
    new = copy.deepcopy(effects)
    new.nlpar = nlpar
    for term in new.random:
        term.nlpar = nlpar
    for smooth in new.smooths:
        smooth.nlpar = nlpar
    return new


def nl_to_stan(effects: Effects) -> str:
    """Stan expression of the non-linear predictor at observation ``n``.

    Non-linear parameters become elements of their linear predictors
    (``eta_a[n]``) and covariates become elements of the covariate matrix
    (``C[n, 1]``). Python's power operator is translated to Stan's.

    :param effects: Interpreted non-linear model
    :type effects: Effects

    :returns: Stan expression
    :rtype: str

    Example:
        >>> formula = bf("y ~ a - exp(b * x)", nonlinear="a + b ~ 1")
        >>> effects = extract_effects(formula, gaussian())
        >>> nl_to_stan(effects)
        'eta_a[n] - exp(eta_b[n] * C[n, 1])'
    """
    if effects.nl_expr is None:
        raise FormulaError("The model is not non-linear.")
    mapping = {name: f"eta_{name}[n]" for name in effects.main_predictors}
    mapping.update(
        {var: f"C[n, {k}]" for k, var in enumerate(effects.covars, start=1)}
    )
    return utils.replace_vars(effects.nl_expr.replace("**", "^"), mapping)
