# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Sampling statements of priors and draws from priors."""

from __future__ import annotations

import re

from typing import Optional, Sequence

from brmstan import utils
from brmstan.model.prior import HORSESHOE_PRIOR, PriorFrame

# A distribution whose arguments are all numbers, such as "normal(0, 5)"
_NUMERIC_DIST = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\(([^()]*)\)$")

# LKJ priors on correlation matrices are stated on their cholesky factors
_LKJ = re.compile(r"^lkj\((.+)\)$")


def _element_prior(prior: str, index: int) -> str:
    if prior == HORSESHOE_PRIOR:
        return f"normal(0, hs_local[{index}] * hs_global)"
    return prior


def stan_prior(
    prior: PriorFrame,
    class_: str,
    par: str,
    coefs: Optional[Sequence[str]] = None,
    group: str = "",
    nlpar: str = "",
    vectorized: Optional[str] = None,
) -> list[str]:
    """Sampling statements of the prior of a parameter.

    :param prior: Checked priors of the model
    :type prior: PriorFrame
    :param class_: Parameter class
    :type class_: str
    :param par: Stan name of the parameter
    :type par: str
    :param coefs: Coefficient of every element of a parameter vector, or None
        for a scalar parameter. Defaults to None.
    :type coefs: Optional[Sequence[str]]
    :param group: Grouping factor. Defaults to "".
    :type group: str
    :param nlpar: Predictor name. Defaults to "".
    :type nlpar: str
    :param vectorized: Expression used when all elements share one prior.
        Defaults to ``par``.
    :type vectorized: Optional[str]

    :returns: One statement for the whole parameter if all its elements have
        the same prior, one statement per element with a proper prior otherwise
    :rtype: list[str]
    """
    if coefs is None:
        dist = prior.resolve(class_, group=group, nlpar=nlpar)
        return [f"{par} ~ {dist}"] if dist else []

    dists = [prior.resolve(class_, coef=coef, group=group, nlpar=nlpar) for coef in coefs]
    if len(set(dists)) == 1:
        return [f"{vectorized or par} ~ {dists[0]}"] if dists[0] else []

    return [
        f"{par}[{i}] ~ {_element_prior(dist, i)}"
        for i, dist in enumerate(dists, start=1)
        if dist
    ]


def stan_cor_prior(prior: PriorFrame, class_: str, par: str, group: str = "") -> list[str]:
    """Sampling statement of the prior of a cholesky factor of a correlation
    matrix."""
    dist = prior.resolve(class_, group=group)
    if not dist:
        return []
    if match := _LKJ.match(dist):
        return [f"{par} ~ lkj_corr_cholesky({match.group(1)})"]
    return [f"{par} ~ {dist}"]


def stan_unchecked(prior: PriorFrame) -> list[str]:
    """Statements of priors that are added verbatim."""
    return [p.prior.rstrip(";") for p in prior.unchecked]


def _rng_call(dist: str) -> Optional[str]:
    """Random number generator call of a distribution with numeric arguments."""
    match = _NUMERIC_DIST.match(dist)
    if match is None:
        return None
    args = [arg.strip() for arg in match.group(2).split(",")]
    if not all(utils.is_number(arg) for arg in args):
        return None
    return f"{match.group(1)}_rng({', '.join(args)})"


def _bound_condition(name: str, bound: str) -> Optional[str]:
    """Condition violating Stan bounds such as ``<lower=0,upper=1>``."""
    conditions = []
    for kind, value in re.findall(r"(lower|upper)=([^,>]+)", bound):
        op = "<" if kind == "lower" else ">"
        conditions.append(f"{name} {op} {value.strip()}")
    return " || ".join(conditions) or None


def stan_prior_draw(name: str, dist: str, bound: str = "") -> tuple[list[str], list[str]]:
    """Generated quantity drawing from a prior.

    :param name: Name of the generated quantity, such as "prior_b"
    :type name: str
    :param dist: Prior distribution
    :type dist: str
    :param bound: Stan bounds of the parameter. Draws outside the bounds are
        rejected. Defaults to "".
    :type bound: str

    :returns: Declaration lines and statement lines. Both are empty if the prior
        is flat or has non-numeric arguments.
    :rtype: tuple[list[str], list[str]]
    """
    call = _rng_call(dist)
    if call is None:
        return [], []
    defs = [f"real {name} = {call}"]
    comp = []
    if condition := _bound_condition(name, bound):
        comp = [f"while ({condition}) {{", f"{name} = {call}", "}"]
    return defs, comp
