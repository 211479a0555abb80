# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Penalized spline bases in mixed-model form.

Smooth terms are represented by cubic B-spline bases (built with patsy's
:py:func:`patsy.bs`) with a second-order difference penalty on the
coefficients (P-splines). The penalty is diagonalized so that the smooth
function splits into

    - an unpenalized part spanned by the null space of the penalty, which is
      estimated as ordinary population-level effects, and
    - penalized parts whose coefficients are independent normal variables with a
      common standard deviation, estimated like group-level effects.

``s(x)`` terms have one penalized part. ``t2(x, z, ...)`` terms build tensor
products of the marginal bases; every combination of marginal null spaces and
penalized parts other than the pure null space is a penalized part of its own.

Constant functions are removed from both parts, so the terms can be combined
with a population-level intercept.
"""

from __future__ import annotations

import itertools

from dataclasses import dataclass
from typing import Optional

import numpy as np
import numpy.typing as npt
import patsy

from brmstan import defaults
from brmstan.exceptions import DataError

# Relative tolerance of singular values of the unpenalized part
_RANK_TOL = 1e-8


@dataclass
class SmoothBasis:
    """Mixed-model representation of one smooth term.

    :ivar fixed: Unpenalized columns, one row per observation
    :ivar blocks: Penalized design matrices, one per penalized part
    """

    fixed: npt.NDArray[np.floating]
    blocks: list[npt.NDArray[np.floating]]

    @property
    def knots(self) -> list[int]:
        """Number of columns of every penalized part."""
        return [block.shape[1] for block in self.blocks]


def _center(matrix: npt.NDArray[np.floating]) -> npt.NDArray[np.floating]:
    return matrix - matrix.mean(axis=0, keepdims=True)


def _drop_constant(matrix: npt.NDArray[np.floating]) -> npt.NDArray[np.floating]:
    """Orthogonal basis of the centered column space of a matrix, scaled to unit
    standard deviation."""
    u, s, _ = np.linalg.svd(_center(matrix), full_matrices=False)
    keep = s > _RANK_TOL * max(s.max(), 1.0)
    basis = u[:, keep]
    return basis / basis.std(axis=0, keepdims=True)


def _row_kron(*matrices: npt.NDArray[np.floating]) -> npt.NDArray[np.floating]:
    """Row-wise Kronecker product of matrices with the same number of rows."""
    result = matrices[0]
    for matrix in matrices[1:]:
        result = (result[:, :, None] * matrix[:, None, :]).reshape(result.shape[0], -1)
    return result


def marginal_basis(
    x: npt.NDArray[np.floating],
    k: int = defaults.DEFAULT_SPLINE_K,
    knots: Optional[npt.ArrayLike] = None,
) -> tuple[npt.NDArray[np.floating], npt.NDArray[np.floating]]:
    """Split a P-spline basis of one variable into its null space and penalized part.

    :param x: Values of the variable
    :type x: npt.NDArray[np.floating]
    :param k: Number of B-spline basis functions. Ignored when ``knots`` are
        given. Defaults to 10.
    :type k: int
    :param knots: Interior knots. Defaults to None (equally spaced knots).
    :type knots: Optional[npt.ArrayLike]

    :returns: Null-space columns (including the constant) and penalized columns,
        scaled so that their coefficients have unit prior variance relative to
        each other
    :rtype: tuple[npt.NDArray[np.floating], npt.NDArray[np.floating]]

    :raises DataError: If the variable has too few distinct values
    """
    x = np.asarray(x, dtype=float)
    degree = defaults.DEFAULT_SPLINE_DEGREE
    lower, upper = x.min(), x.max()
    if knots is None:
        if len(np.unique(x)) < k - degree + 1:
            raise DataError(
                f"A smooth term with a basis of dimension {k} needs at least "
                f"{k - degree + 1} distinct covariate values."
            )
        knots = np.linspace(lower, upper, k - degree + 1)[1:-1]
    knots = np.asarray(knots, dtype=float)

    basis = np.asarray(
        patsy.bs(
            x,
            knots=knots,
            degree=degree,
            include_intercept=True,
            lower_bound=lower,
            upper_bound=upper,
        )
    )

    # Second-order difference penalty. Its eigenvalues are ascending and the two
    # smallest are zero.
    n_basis = basis.shape[1]
    diff = np.diff(np.eye(n_basis), n=2, axis=0)
    eigval, eigvec = np.linalg.eigh(diff.T @ diff)

    null_space = basis @ eigvec[:, :2]
    penalized = basis @ eigvec[:, 2:] / np.sqrt(eigval[2:])

    return null_space, penalized


def smooth_basis(
    covariates: list[npt.NDArray[np.floating]],
    k: int = defaults.DEFAULT_SPLINE_K,
    knots: Optional[list[Optional[npt.ArrayLike]]] = None,
) -> SmoothBasis:
    """Mixed-model representation of an ``s()`` or ``t2()`` term.

    :param covariates: Values of every covariate of the term
    :type covariates: list[npt.NDArray[np.floating]]
    :param k: Basis dimension of each margin. Defaults to 10.
    :type k: int
    :param knots: Interior knots of each margin, or None. Defaults to None.
    :type knots: Optional[list[Optional[npt.ArrayLike]]]

    :returns: Unpenalized columns and penalized parts
    :rtype: SmoothBasis

    Example:
        >>> basis = smooth_basis([x], k=10)
        >>> basis.fixed.shape, basis.knots
        ((100, 1), [8])
        >>> basis = smooth_basis([x, z], k=5)
        >>> basis.fixed.shape[1], basis.knots
        (3, [9, 6, 6])
    """
    knots = knots or [None] * len(covariates)
    margins = [marginal_basis(x, k, kn) for x, kn in zip(covariates, knots)]

    # Univariate smooth
    if len(margins) == 1:
        null_space, penalized = margins[0]
        return SmoothBasis(
            fixed=_drop_constant(null_space), blocks=[_center(penalized)]
        )

    # Tensor products. Marginal null spaces are [1, linear trend].
    nulls = [
        np.column_stack([np.ones(len(null)), _drop_constant(null)])
        for null, _ in margins
    ]
    blocks = []
    patterns = sorted(
        itertools.product((False, True), repeat=len(margins)),
        key=lambda pattern: -sum(pattern),
    )
    for pattern in patterns:
        if not any(pattern):
            continue
        parts = [
            margin[1] if is_penalized else null
            for margin, null, is_penalized in zip(margins, nulls, pattern)
        ]
        blocks.append(_center(_row_kron(*parts)))

    return SmoothBasis(fixed=_drop_constant(_row_kron(*nulls)), blocks=blocks)
