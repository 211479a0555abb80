# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Helper functions for post-processing posterior draws.

The functions operate on plain arrays of draws with the draws along the first
axis, so they can be used on the output of
:py:meth:`~brmstan.model.results.brmsfit.BrmsFit.posterior_samples` as well as on
arrays obtained elsewhere.
"""

from __future__ import annotations

import re

from typing import Optional, Sequence, TYPE_CHECKING, Union

import numpy as np
import numpy.typing as npt
import pandas as pd

from scipy import special, stats

from brmstan.defaults import DEFAULT_PROBS
from brmstan.exceptions import FamilyError

if TYPE_CHECKING:
    from brmstan import custom_types


def link(x: npt.ArrayLike, link_: str) -> npt.NDArray:
    """Apply a link function.

    :param x: Values on the response scale
    :type x: npt.ArrayLike
    :param link_: Name of the link function, such as "logit"
    :type link_: str

    :returns: Values on the linear predictor scale, as an array even for scalar
        input
    :rtype: npt.NDArray

    :raises FamilyError: If the link function is unknown
    """
    x = np.asarray(x, dtype=float)
    if link_ == "identity":
        out = x
    elif link_ == "log":
        out = np.log(x)
    elif link_ == "inverse":
        out = 1 / x
    elif link_ == "sqrt":
        out = np.sqrt(x)
    elif link_ == "1/mu^2":
        out = 1 / x**2
    elif link_ == "logit":
        out = special.logit(x)
    elif link_ in {"probit", "probit_approx"}:
        out = special.ndtri(x)
    elif link_ == "cloglog":
        out = np.log(-np.log1p(-x))
    elif link_ == "cauchit":
        out = stats.cauchy.ppf(x)
    elif link_ == "tan_half":
        out = np.tan(x / 2)
    else:
        raise FamilyError(f"Link '{link_}' is not supported.")

    # Ufuncs return scalars for 0-d input
    return np.asarray(out)


def ilink(x: npt.ArrayLike, link_: str) -> npt.NDArray:
    """Apply an inverse link function.

    :param x: Values on the linear predictor scale
    :type x: npt.ArrayLike
    :param link_: Name of the link function, such as "logit"
    :type link_: str

    :returns: Values on the response scale, as an array even for scalar input
    :rtype: npt.NDArray

    :raises FamilyError: If the link function is unknown

    Example:
        >>> ilink(0.0, "logit")
        array(0.5)
    """
    x = np.asarray(x, dtype=float)
    if link_ == "identity":
        out = x
    elif link_ == "log":
        out = np.exp(x)
    elif link_ == "inverse":
        out = 1 / x
    elif link_ == "sqrt":
        out = x**2
    elif link_ == "1/mu^2":
        out = 1 / np.sqrt(x)
    elif link_ == "logit":
        out = special.expit(x)
    elif link_ in {"probit", "probit_approx"}:
        out = special.ndtr(x)
    elif link_ == "cloglog":
        out = 1 - np.exp(-np.exp(x))
    elif link_ == "cauchit":
        out = stats.cauchy.cdf(x)
    elif link_ == "tan_half":
        out = 2 * np.arctan(x)
    else:
        raise FamilyError(f"Link '{link_}' is not supported.")

    return np.asarray(out)


def _quantile_label(prob: float) -> str:
    return f"{100 * prob:g}%ile"


def get_summary(
    samples: Union[pd.DataFrame, npt.ArrayLike],
    probs: Sequence["custom_types.Float"] = DEFAULT_PROBS,
    robust: bool = False,
) -> pd.DataFrame:
    """Summarize draws by their mean, standard deviation and quantiles.

    :param samples: Draws, one column per quantity
    :type samples: Union[pd.DataFrame, npt.ArrayLike]
    :param probs: Probabilities of the quantiles. Defaults to (0.025, 0.975).
    :type probs: Sequence[custom_types.Float]
    :param robust: Whether to use the median and the median absolute deviation
        instead of the mean and the standard deviation. Defaults to False.
    :type robust: bool

    :returns: One row per quantity with the columns "Estimate", "Est.Error" and
        one column per quantile
    :rtype: pd.DataFrame
    """
    if not isinstance(samples, pd.DataFrame):
        samples = np.asarray(samples, dtype=float)
        if samples.ndim == 1:
            samples = samples[:, None]
        samples = pd.DataFrame(samples)
    values = samples.to_numpy(dtype=float)

    if robust:
        estimate = np.median(values, axis=0)
        error = stats.median_abs_deviation(values, axis=0, scale="normal")
    else:
        estimate = values.mean(axis=0)
        error = values.std(axis=0, ddof=1) if len(values) > 1 else np.zeros(values.shape[1])

    summary = pd.DataFrame(
        {"Estimate": estimate, "Est.Error": error}, index=samples.columns
    )
    quantiles = np.quantile(values, probs, axis=0)
    for prob, quantile in zip(probs, quantiles):
        summary[_quantile_label(prob)] = quantile
    return summary


def get_cornames(
    names: Sequence[str], type_: str = "cor", brackets: bool = True, sep: str = "__"
) -> list[str]:
    """Names of the correlations between pairs of quantities.

    Pairs are ordered as the upper triangle of the correlation matrix read
    column by column, which is the order of the correlation vectors of the Stan
    programs.

    :param names: Names of the correlated quantities
    :type names: Sequence[str]
    :param type_: Prefix of the names. Defaults to "cor".
    :type type_: str
    :param brackets: Whether to write ``cor(a,b)`` instead of ``cor__a__b``.
        Defaults to True.
    :type brackets: bool
    :param sep: Separator of the names without brackets. Defaults to "__".
    :type sep: str

    :returns: One name per pair of quantities
    :rtype: list[str]

    Example:
        >>> get_cornames(["a", "b", "c"], brackets=False)
        ['cor__a__b', 'cor__a__c', 'cor__b__c']
    """
    cornames = []
    for k in range(1, len(names)):
        for j in range(k):
            if brackets:
                cornames.append(f"{type_}({names[j]},{names[k]})")
            else:
                cornames.append(f"{type_}{sep}{names[j]}{sep}{names[k]}")
    return cornames


def get_cov_matrix(
    sd: npt.ArrayLike, cor: Optional[npt.ArrayLike] = None
) -> tuple[npt.NDArray, npt.NDArray]:
    """Covariance and correlation matrices of every draw.

    :param sd: Standard deviations, one row per draw
    :type sd: npt.ArrayLike
    :param cor: Correlations in the order of :py:func:`get_cornames`, one row per
        draw. Defaults to None (uncorrelated).
    :type cor: Optional[npt.ArrayLike]

    :returns: Covariance and correlation matrices, each of shape (draws, K, K)
    :rtype: tuple[npt.NDArray, npt.NDArray]

    :raises ValueError: If the number of correlations does not match the number
        of standard deviations
    """
    sd = np.atleast_2d(np.asarray(sd, dtype=float))
    ndraws, K = sd.shape  # pylint: disable=invalid-name
    cor_matrix = np.tile(np.eye(K), (ndraws, 1, 1))
    if cor is not None:
        cor = np.asarray(cor, dtype=float).reshape(ndraws, -1)
        if cor.shape[1] != K * (K - 1) // 2:
            raise ValueError("The number of correlations does not match the number of SDs.")
        i = 0
        for k in range(1, K):
            for j in range(k):
                cor_matrix[:, j, k] = cor_matrix[:, k, j] = cor[:, i]
                i += 1
    cov_matrix = sd[:, :, None] * sd[:, None, :] * cor_matrix
    return cov_matrix, cor_matrix


def _draws(x: npt.ArrayLike) -> npt.NDArray:
    return np.atleast_1d(np.asarray(x, dtype=float))


def _add_se2(mat: npt.NDArray, se2: Union["custom_types.Float", npt.ArrayLike]) -> npt.NDArray:
    nrows = mat.shape[-1]
    return mat + np.broadcast_to(np.asarray(se2, dtype=float), (nrows,)) * np.eye(nrows)


def get_cov_matrix_ar1(
    ar: npt.ArrayLike,
    sigma: npt.ArrayLike,
    nrows: "custom_types.Integer",
    se2: Union["custom_types.Float", npt.ArrayLike] = 0,
) -> npt.NDArray:
    """Residual covariance matrices of an AR(1) process for every draw.

    :param ar: Autocorrelations, one per draw
    :type ar: npt.ArrayLike
    :param sigma: Standard deviations of the innovations, one per draw
    :type sigma: npt.ArrayLike
    :param nrows: Number of observations of the time series
    :type nrows: custom_types.Integer
    :param se2: Squared known standard errors added to the diagonal. Defaults to
        0.
    :type se2: Union[custom_types.Float, npt.ArrayLike]

    :returns: Array of shape (draws, nrows, nrows)
    :rtype: npt.NDArray
    """
    ar, sigma = _draws(ar), _draws(sigma)
    lags = np.abs(np.subtract.outer(np.arange(nrows), np.arange(nrows)))
    mat = ar[:, None, None] ** lags
    scale = sigma**2 / (1 - ar**2)
    return _add_se2(scale[:, None, None] * mat, se2)


def get_cov_matrix_ma1(
    ma: npt.ArrayLike,
    sigma: npt.ArrayLike,
    nrows: "custom_types.Integer",
    se2: Union["custom_types.Float", npt.ArrayLike] = 0,
) -> npt.NDArray:
    """Residual covariance matrices of an MA(1) process for every draw. See
    :py:func:`get_cov_matrix_ar1` for the arguments."""
    ma, sigma = _draws(ma), _draws(sigma)
    lags = np.abs(np.subtract.outer(np.arange(nrows), np.arange(nrows)))
    mat = np.where(lags == 0, 1 + ma[:, None, None] ** 2, 0.0)
    mat = np.where(lags == 1, ma[:, None, None], mat)
    return _add_se2((sigma**2)[:, None, None] * mat, se2)


def get_cov_matrix_arma1(
    ar: npt.ArrayLike,
    ma: npt.ArrayLike,
    sigma: npt.ArrayLike,
    nrows: "custom_types.Integer",
    se2: Union["custom_types.Float", npt.ArrayLike] = 0,
) -> npt.NDArray:
    """Residual covariance matrices of an ARMA(1, 1) process for every draw. See
    :py:func:`get_cov_matrix_ar1` for the arguments."""
    ar, ma, sigma = _draws(ar), _draws(ma), _draws(sigma)
    lags = np.abs(np.subtract.outer(np.arange(nrows), np.arange(nrows)))
    gamma0 = 1 + ma**2 + 2 * ar * ma
    gamma1 = (1 + ar * ma) * (ar + ma)
    mat = gamma1[:, None, None] * ar[:, None, None] ** np.maximum(lags - 1, 0)
    mat = np.where(lags == 0, gamma0[:, None, None], mat)
    scale = sigma**2 / (1 - ar**2)
    return _add_se2(scale[:, None, None] * mat, se2)


def get_cov_matrix_ident(
    sigma: npt.ArrayLike,
    nrows: "custom_types.Integer",
    se2: Union["custom_types.Float", npt.ArrayLike] = 0,
) -> npt.NDArray:
    """Residual covariance matrices of independent residuals for every draw. See
    :py:func:`get_cov_matrix_ar1` for the arguments."""
    sigma = _draws(sigma)
    mat = (sigma**2)[:, None, None] * np.eye(nrows)
    return _add_se2(mat, se2)


def extract_pars(
    pars: Union[None, str, Sequence[str]],
    all_pars: Sequence[str],
    exact_match: bool = False,
) -> list[str]:
    """Select parameter names.

    :param pars: Regular expressions matching parameter names, or exact names if
        ``exact_match`` is True. None selects all parameters.
    :type pars: Union[None, str, Sequence[str]]
    :param all_pars: Names of all parameters
    :type all_pars: Sequence[str]
    :param exact_match: Whether ``pars`` are names rather than regular
        expressions. Defaults to False.
    :type exact_match: bool

    :returns: Matching names in the order of ``all_pars``
    :rtype: list[str]

    Example:
        >>> extract_pars("^b_", ["b_Intercept", "b_x", "sigma"])
        ['b_Intercept', 'b_x']
    """
    if pars is None:
        return list(all_pars)
    if isinstance(pars, str):
        pars = [pars]
    if exact_match:
        patterns = [re.compile(f"^{re.escape(par)}$") for par in pars]
    else:
        patterns = [re.compile(par) for par in pars]
    return [name for name in all_pars if any(p.search(name) for p in patterns)]
