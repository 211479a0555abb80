# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Correlation structures of the residuals.

Three kinds of structures are available:

    - :py:func:`cor_arma` (and the shortcuts :py:func:`cor_ar`, :py:func:`cor_ma`
      and :py:func:`cor_arr`): autoregressive moving-average effects of the
      residuals and autoregressive effects of the response, within groups and in
      the order of a time variable
    - :py:func:`cov_fixed`: a known residual covariance matrix
    - :py:func:`cor_bsts`: a Bayesian structural time series local level

The formula of ARMA and BSTS structures has the form ``~ time | group``. Both
parts are optional; without a time variable the order of the data is used and
without a grouping factor all observations belong to one series.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, TYPE_CHECKING

import numpy as np
import numpy.typing as npt

from brmstan import utils
from brmstan.exceptions import AutocorError

if TYPE_CHECKING:
    from brmstan import custom_types


def _parse_time_formula(formula: str) -> tuple[Optional[str], Optional[str]]:
    """Extract the time variable and the grouping factor of ``~ time | group``."""
    rhs = formula.strip()
    if not rhs.startswith("~"):
        raise AutocorError(
            f"Correlation formula '{formula}' must be one-sided, such as '~ time | group'."
        )
    parts = utils.split_top_level(rhs[1:], "|")
    if len(parts) > 2:
        raise AutocorError(f"Invalid correlation formula '{formula}'.")

    time = parts[0] if parts[0] not in {"", "1"} else None
    group = parts[1] if len(parts) == 2 and parts[1] else None
    for name in (time, group):
        if name is not None and utils.all_vars(name) != [name]:
            raise AutocorError(
                f"Time and grouping variables must be plain variable names, got '{name}'."
            )

    return time, group


@dataclass
class CorArma:
    """ARMA(p, q) structure of the residuals and ARR(r) structure of the response.

    :param formula: ``~ time | group`` formula. Defaults to ``"~ 1"``.
    :type formula: str
    :param p: Order of the autoregressive residual effects. Defaults to 0.
    :type p: int
    :param q: Order of the moving-average residual effects. Defaults to 0.
    :type q: int
    :param r: Order of the autoregressive effects of the response. Defaults to 0.
    :type r: int
    :param cov: Whether to model the ARMA structure through the residual covariance
        matrix rather than through residual terms. Defaults to False.
    :type cov: bool
    """

    formula: str = "~ 1"
    p: int = 0
    q: int = 0
    r: int = 0
    cov: bool = False
    time: Optional[str] = field(init=False, default=None)
    group: Optional[str] = field(init=False, default=None)

    def __post_init__(self):
        for name in ("p", "q", "r"):
            if getattr(self, name) < 0:
                raise AutocorError(f"Argument '{name}' must be non-negative.")
        if self.cov and (self.p > 1 or self.q > 1):
            raise AutocorError(
                "Covariance formulation of ARMA structures is only possible for "
                "effects of maximal order one."
            )
        self.time, self.group = _parse_time_formula(self.formula)

    @property
    def has_arma(self) -> bool:
        return self.p > 0 or self.q > 0

    @property
    def has_arr(self) -> bool:
        return self.r > 0

    def __str__(self) -> str:
        return f"arma(p = {self.p}, q = {self.q}, r = {self.r}, cov = {self.cov})"


@dataclass
class CovFixed:
    """Fixed residual covariance matrix.

    :param V: Known covariance matrix of the residuals, one row and column per
        observation in the order of the data
    :type V: npt.NDArray
    """

    V: npt.NDArray
    time: Optional[str] = field(init=False, default=None)
    group: Optional[str] = field(init=False, default=None)

    def __post_init__(self):
        self.V = np.asarray(self.V, dtype=float)
        if self.V.ndim != 2 or self.V.shape[0] != self.V.shape[1]:
            raise AutocorError("'V' must be a square matrix.")

    def __str__(self) -> str:
        return f"cov_fixed(V of dimension {self.V.shape[0]})"


@dataclass
class CorBsts:
    """Bayesian structural time series with a local level term per group.

    :param formula: ``~ time | group`` formula. Defaults to ``"~ 1"``.
    :type formula: str
    """

    formula: str = "~ 1"
    time: Optional[str] = field(init=False, default=None)
    group: Optional[str] = field(init=False, default=None)

    def __post_init__(self):
        self.time, self.group = _parse_time_formula(self.formula)

    def __str__(self) -> str:
        return "bsts()"


def cor_arma(
    formula: str = "~ 1",
    p: "custom_types.Integer" = 0,
    q: "custom_types.Integer" = 0,
    r: "custom_types.Integer" = 0,
    cov: bool = False,
) -> CorArma:
    """ARMA(p, q) correlation structure with optional ARR(r) effects.

    :param formula: ``~ time | group`` formula. Defaults to ``"~ 1"``.
    :type formula: str
    :param p: Autoregressive order. Defaults to 0.
    :type p: custom_types.Integer
    :param q: Moving-average order. Defaults to 0.
    :type q: custom_types.Integer
    :param r: Order of the autoregressive effects of the response. Defaults to 0.
    :type r: custom_types.Integer
    :param cov: Whether to use the covariance formulation. Only available for
        gaussian and student models with orders of at most one. Defaults to False.
    :type cov: bool

    :returns: The correlation structure
    :rtype: CorArma

    Example:
        >>> cor = cor_arma("~ visit | patient", p=1, q=1)
        >>> cor.time, cor.group
        ('visit', 'patient')
    """
    return CorArma(formula=formula, p=int(p), q=int(q), r=int(r), cov=cov)


def cor_ar(
    formula: str = "~ 1", p: "custom_types.Integer" = 1, cov: bool = False
) -> CorArma:
    """AR(p) correlation structure; shortcut of :py:func:`cor_arma`."""
    return cor_arma(formula, p=p, q=0, r=0, cov=cov)


def cor_ma(
    formula: str = "~ 1", q: "custom_types.Integer" = 1, cov: bool = False
) -> CorArma:
    """MA(q) correlation structure; shortcut of :py:func:`cor_arma`."""
    return cor_arma(formula, p=0, q=q, r=0, cov=cov)


def cor_arr(formula: str = "~ 1", r: "custom_types.Integer" = 1) -> CorArma:
    """Autoregressive effects of order r of the response; shortcut of
    :py:func:`cor_arma`."""
    return cor_arma(formula, p=0, q=0, r=r)


def cov_fixed(V: npt.ArrayLike) -> CovFixed:
    """Known residual covariance matrix.

    :param V: Covariance matrix of the residuals
    :type V: npt.ArrayLike

    :returns: The correlation structure
    :rtype: CovFixed
    """
    return CovFixed(V=np.asarray(V, dtype=float))


def cor_bsts(formula: str = "~ 1") -> CorBsts:
    """Local level (Bayesian structural time series) correlation structure.

    :param formula: ``~ time | group`` formula. Defaults to ``"~ 1"``.
    :type formula: str

    :returns: The correlation structure
    :rtype: CorBsts
    """
    return CorBsts(formula=formula)


def check_autocor(autocor: "custom_types.AutocorType") -> "custom_types.AutocorType":
    """Validate the ``autocor`` argument of the model functions.

    :raises AutocorError: If the argument is not a correlation structure
    """
    if autocor is None or isinstance(autocor, (CorArma, CovFixed, CorBsts)):
        return autocor
    raise AutocorError(f"Argument 'autocor' is invalid: {autocor!r}")
