# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Model formulas with distributional and non-linear parts.

A :py:class:`BrmsFormula` bundles the main formula of a model with formulas for
auxiliary (distributional) parameters, such as ``sigma ~ x``, and with the
formulas of the parameters of a non-linear model, such as ``a ~ 1 + (1 | g)``.
Formulas are kept as strings; the terms are only interpreted by
:py:func:`~brmstan.formula.effects.extract_effects`.

Example:
    >>> f = bf("y ~ x + (1 | g)", "sigma ~ x")
    >>> f.pforms
    {'sigma': '~ x'}
    >>> f = bf("y ~ a * exp(b * x)", nonlinear="a + b ~ 1")
    >>> f.nonlinear
    {'a': '~ 1', 'b': '~ 1'}
"""

from __future__ import annotations

import re

from dataclasses import dataclass, field
from typing import Optional, Union

from brmstan import utils
from brmstan.exceptions import FormulaError

# Names of parameters of non-linear models
_PARNAME = re.compile(r"^[A-Za-z][A-Za-z0-9]*$")

NonlinearType = Union[None, str, list, tuple, dict]


def split_formula(formula: str) -> tuple[str, str]:
    """Split a two-sided formula into its left- and right-hand sides.

    :param formula: Formula such as ``"y | se(s) ~ x"``
    :type formula: str

    :returns: Left- and right-hand side
    :rtype: tuple[str, str]

    :raises FormulaError: If the formula is not two-sided
    """
    parts = utils.split_top_level(formula, "~")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise FormulaError(f"Formula '{formula}' must be two-sided, such as 'y ~ x'.")
    return parts[0], parts[1]


def _split_pform(pform: str) -> tuple[list[str], str]:
    """Split ``"a + b ~ rhs"`` into the parameter names and ``"~ rhs"``."""
    lhs, rhs = split_formula(pform)
    names = [name.strip() for name in utils.split_top_level(lhs, "+")]
    for name in names:
        if not _PARNAME.match(name):
            raise FormulaError(
                f"Parameter name '{name}' is invalid. Names of distributional and "
                "non-linear parameters may only contain letters and numbers."
            )
    return names, "~ " + rhs


def _parse_nonlinear(nonlinear: NonlinearType) -> dict[str, str]:
    """Convert the ``nonlinear`` argument into a dictionary of parameter formulas."""
    if nonlinear is None:
        return {}
    if isinstance(nonlinear, str):
        nonlinear = [nonlinear]
    if isinstance(nonlinear, dict):
        return {name: "~ " + rhs.strip().lstrip("~").strip() for name, rhs in nonlinear.items()}

    parsed = {}
    for pform in nonlinear:
        names, rhs = _split_pform(pform)
        for name in names:
            parsed[name] = rhs
    return parsed


@dataclass
class BrmsFormula:
    """Main formula of a model plus formulas of distributional and non-linear
    parameters.

    :param formula: Main formula, such as ``"y | weights(w) ~ x + (1 | g)"``
    :type formula: str
    :param pforms: Formulas of auxiliary parameters keyed by parameter name, with
        one-sided values such as ``"~ x"``. Defaults to no formulas.
    :type pforms: dict[str, str]
    :param nonlinear: Formulas of the parameters of a non-linear model keyed by
        parameter name. Defaults to a linear model.
    :type nonlinear: dict[str, str]
    """

    formula: str
    pforms: dict[str, str] = field(default_factory=dict)
    nonlinear: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.formula = self.formula.strip()
        split_formula(self.formula)

    def __str__(self) -> str:
        lines = [self.formula]
        lines.extend(f"{name} {rhs}" for name, rhs in self.pforms.items())
        lines.extend(f"{name} {rhs}" for name, rhs in self.nonlinear.items())
        return "\n".join(lines)

    @property
    def lhs(self) -> str:
        return split_formula(self.formula)[0]

    @property
    def rhs(self) -> str:
        return split_formula(self.formula)[1]

    @property
    def is_nonlinear(self) -> bool:
        return len(self.nonlinear) > 0


def bf(
    formula: str, *pforms: str, nonlinear: NonlinearType = None, **named_pforms: str
) -> BrmsFormula:
    """Set up a model formula.

    :param formula: Main formula of the model
    :type formula: str
    :param pforms: Formulas of auxiliary parameters, such as ``"sigma ~ x"``
    :type pforms: str
    :param nonlinear: Formulas of non-linear parameters. Either a single formula
        (``"a + b ~ 1"``), a list of formulas or a dictionary mapping parameter
        names to right-hand sides. Defaults to None (linear model).
    :type nonlinear: Union[None, str, list, tuple, dict]
    :param named_pforms: Formulas of auxiliary parameters given by keyword, such as
        ``sigma="~ x"``

    :returns: The combined formula
    :rtype: BrmsFormula

    :raises FormulaError: If one of the formulas is malformed

    Example:
        >>> bf("y ~ x", sigma="~ x")
        BrmsFormula(formula='y ~ x', pforms={'sigma': '~ x'}, nonlinear={})
    """
    parsed = {}
    for pform in pforms:
        names, rhs = _split_pform(pform)
        for name in names:
            parsed[name] = rhs
    for name, rhs in named_pforms.items():
        parsed[name] = "~ " + rhs.strip().lstrip("~").strip()

    return BrmsFormula(
        formula=formula, pforms=parsed, nonlinear=_parse_nonlinear(nonlinear)
    )


def update_formula(
    formula: Union[str, BrmsFormula], nonlinear: NonlinearType = None
) -> BrmsFormula:
    """Convert a formula into a :py:class:`BrmsFormula`, adding non-linear formulas.

    :param formula: Formula string or formula object
    :type formula: Union[str, BrmsFormula]
    :param nonlinear: Additional non-linear parameter formulas. Defaults to None.
    :type nonlinear: Union[None, str, list, tuple, dict]

    :returns: Formula object
    :rtype: BrmsFormula
    """
    if isinstance(formula, str):
        return bf(formula, nonlinear=nonlinear)
    if nonlinear is None:
        return formula
    return BrmsFormula(
        formula=formula.formula,
        pforms=dict(formula.pforms),
        nonlinear={**formula.nonlinear, **_parse_nonlinear(nonlinear)},
    )
