# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Helpers turning data frames into the arrays of a Stan program.

The functions in this module build the model frame (:py:func:`update_data`),
evaluate expressions on it (:py:func:`evaluate`), build population- and
group-level design matrices through patsy (:py:func:`model_matrix`), number the
levels of grouping factors (:py:func:`group_codes`) and summarize the group-level
structure of a model (:py:func:`tidy_ranef`). They are used by
:py:mod:`brmstan.model.data.standata`.
"""

from __future__ import annotations

import warnings

from typing import Optional, TYPE_CHECKING

import numpy as np
import numpy.typing as npt
import pandas as pd
import patsy

from brmstan import utils
from brmstan.exceptions import DataError, FormulaError

if TYPE_CHECKING:
    from brmstan import custom_types
    from brmstan.formula.effects import Effects
    from brmstan.model.family import Family

# Functions available to expressions in formulas, in addition to patsy's builtins
_FORMULA_FUNCTIONS = {
    "np": np,
    "log": np.log,
    "log1p": np.log1p,
    "log10": np.log10,
    "log2": np.log2,
    "exp": np.exp,
    "sqrt": np.sqrt,
    "abs": np.abs,
    "sin": np.sin,
    "cos": np.cos,
    "tan": np.tan,
    "round": np.round,
}


def _eval_env() -> patsy.EvalEnvironment:
    return patsy.EvalEnvironment([_FORMULA_FUNCTIONS])


def update_data(
    data: "custom_types.DataType",
    effects: "Effects",
    na_action: str = "omit",
) -> pd.DataFrame:
    """Build the model frame of a model.

    The model frame contains the variables referenced by the model, in the rows
    that have no missing values in any of them. Unused levels of categorical
    variables are dropped.

    :param data: Data of the model
    :type data: custom_types.DataType
    :param effects: Interpreted model formula
    :type effects: Effects
    :param na_action: What to do with rows containing missing values: "omit" to
        drop them with a warning, "fail" to raise an error. Defaults to "omit".
    :type na_action: str

    :returns: The model frame, with a fresh index
    :rtype: pd.DataFrame

    :raises DataError: If variables are missing or have invalid names
    """
    if isinstance(data, dict):
        data = pd.DataFrame(data)
    data = data.copy()

    # The reserved variable `intercept` stands for a column of ones
    all_vars = effects.all_vars()
    if "intercept" in all_vars and "intercept" not in data.columns:
        data["intercept"] = 1.0

    if missing := [var for var in all_vars if var not in data.columns]:
        raise DataError(
            "The following variables are missing in 'data': " + ", ".join(missing)
        )
    if invalid := [var for var in all_vars if "__" in var or var.endswith("_")]:
        raise DataError(
            "Variable names may not contain double underscores or underscores at the "
            "end. Invalid names: " + ", ".join(invalid)
        )

    frame = data[all_vars].copy()
    complete = frame.notna().all(axis=1)
    if not complete.all():
        if na_action == "fail":
            raise DataError("Missing values in the variables of the model.")
        warnings.warn(
            f"{(~complete).sum()} rows containing NAs were excluded from the model."
        )
        frame = frame.loc[complete]

    if len(frame) == 0:
        raise DataError("The model frame contains no observations.")

    # Drop unused levels
    for col in frame.columns:
        if isinstance(frame[col].dtype, pd.CategoricalDtype):
            frame[col] = frame[col].cat.remove_unused_categories()

    return frame.reset_index(drop=True)


def sort_data(frame: pd.DataFrame, time: Optional[str], group: Optional[str]) -> pd.DataFrame:
    """Sort the model frame by the grouping factor and then by the time variable
    of a correlation structure."""
    keys = [key for key in (group, time) if key is not None]
    if not keys:
        return frame
    return frame.sort_values(keys, kind="stable").reset_index(drop=True)


def evaluate(expr: str, frame: pd.DataFrame) -> npt.NDArray:
    """Evaluate an expression for every row of the model frame.

    :param expr: Variable name, number or arithmetic expression of variables
    :type expr: str
    :param frame: Model frame
    :type frame: pd.DataFrame

    :returns: One value per row
    :rtype: npt.NDArray
    """
    expr = expr.strip()
    if expr in frame.columns:
        return frame[expr].to_numpy()
    if utils.is_number(expr):
        return np.full(len(frame), float(expr))
    if expr in {"TRUE", "True"}:
        return np.ones(len(frame), dtype=bool)
    if expr in {"FALSE", "False"}:
        return np.zeros(len(frame), dtype=bool)
    values = frame.eval(expr.replace("^", "**"), engine="python")
    return np.broadcast_to(np.asarray(values), (len(frame),)).copy()


def model_matrix(rhs: str, frame: pd.DataFrame) -> pd.DataFrame:
    """Build a design matrix with patsy.

    :param rhs: Patsy right-hand side, with an explicit intercept marker as its
        first term (``"1 + x"`` or ``"0 + x"``)
    :type rhs: str
    :param frame: Model frame
    :type frame: pd.DataFrame

    :returns: Design matrix with one column per coefficient
    :rtype: pd.DataFrame

    :raises FormulaError: If patsy cannot interpret the terms
    """
    # patsy cannot infer the number of rows of formulas without variables
    terms = [term for _, term in utils.split_terms(rhs)]
    if all(term in {"0", "1"} for term in terms):
        if rhs.strip().startswith("1"):
            return pd.DataFrame({"Intercept": np.ones(len(frame))})
        return pd.DataFrame(index=range(len(frame)))

    try:
        matrix = patsy.dmatrix(
            rhs,
            frame,
            eval_env=_eval_env(),
            NA_action="raise",
            return_type="dataframe",
        )
    except patsy.PatsyError as error:
        raise FormulaError(f"Cannot build the design matrix of '{rhs}': {error}") from error

    return matrix.reset_index(drop=True)


def group_codes(group: str, frame: pd.DataFrame) -> tuple[npt.NDArray, list[str]]:
    """Number the levels of a grouping factor.

    :param group: Grouping factor, possibly an interaction ``g1:g2``
    :type group: str
    :param frame: Model frame
    :type frame: pd.DataFrame

    :returns: 1-based level index of every row and the level labels
    :rtype: tuple[npt.NDArray, list[str]]
    """
    columns = [frame[var] for var in group.split(":")]
    if len(columns) == 1 and isinstance(columns[0].dtype, pd.CategoricalDtype):
        codes = columns[0].cat.codes.to_numpy()
        return codes + 1, [str(level) for level in columns[0].cat.categories]

    if len(columns) == 1:
        values = columns[0].to_numpy()
    else:
        values = np.array(
            ["_".join(str(value) for value in row) for row in zip(*columns)]
        )
    codes, uniques = pd.factorize(values, sort=True)

    return codes + 1, [str(level) for level in uniques]


def tidy_ranef(
    effects: "Effects", frame: pd.DataFrame, ncat: Optional[int] = None
) -> pd.DataFrame:
    """Summarize the group-level effects of a model, one row per effect.

    Terms of the same grouping factor with the same explicit ID form one ID;
    every other term gets its own. IDs are numbered in the order of their first
    appearance in the model's predictors.

    :param effects: Interpreted model formula
    :type effects: Effects
    :param frame: Model frame
    :type frame: pd.DataFrame
    :param ncat: Number of response categories, needed for category-specific
        group-level effects. Defaults to None.
    :type ncat: Optional[int]

    :returns: Data frame with the columns ``id`` (1-based ID number), ``group``,
        ``coef`` (coefficient name), ``cn`` (1-based index within the ID),
        ``nlpar``, ``cor``, ``type``, ``thres`` (threshold of category-specific
        effects, 0 otherwise) and ``column`` (design-matrix column)
    :rtype: pd.DataFrame

    :raises FormulaError: If terms with the same ID are inconsistent
    """
    rows = []
    ids: dict[tuple, int] = {}
    id_props: dict[int, tuple[str, bool]] = {}
    for term in effects.random:
        key = (term.group, term.id) if term.id is not None else (term.group, object())
        if key not in ids:
            ids[key] = len(ids) + 1
        gid = ids[key]

        # Terms sharing an ID must agree in their grouping factor and correlations
        if gid in id_props and id_props[gid] != (term.group, term.cor):
            raise FormulaError(
                f"Group-level terms with ID '{term.id}' must have the same grouping "
                "factor and the same correlation structure."
            )
        id_props[gid] = (term.group, term.cor)

        if term.type == "mono":
            coefs = [(var, var, 0) for var in term.form.split(" + ")]
        else:
            columns = list(model_matrix(term.form, frame).columns)
            if term.type == "cse":
                if ncat is None:
                    raise FormulaError("Category specific effects require an ordinal family.")
                coefs = [
                    (f"{utils.rename(col)}[{thres}]", col, thres)
                    for col in columns
                    for thres in range(1, ncat)
                ]
            else:
                coefs = [(utils.rename(col), col, 0) for col in columns]

        for coef, column, thres in coefs:
            rows.append(
                {
                    "id": gid,
                    "group": term.group,
                    "coef": coef,
                    "nlpar": term.nlpar,
                    "cor": term.cor,
                    "type": term.type,
                    "thres": thres,
                    "column": column,
                    "form": term.form,
                }
            )

    ranef = pd.DataFrame(
        rows,
        columns=[
            "id",
            "group",
            "coef",
            "nlpar",
            "cor",
            "type",
            "thres",
            "column",
            "form",
        ],
    )
    if len(ranef) == 0:
        ranef["cn"] = pd.Series(dtype=int)
        return ranef

    ranef = ranef.sort_values("id", kind="stable").reset_index(drop=True)
    ranef["cn"] = ranef.groupby("id").cumcount() + 1

    # The same coefficient may not appear twice within an ID
    duplicated = ranef.duplicated(["id", "nlpar", "coef"])
    if duplicated.any():
        raise FormulaError(
            "Duplicated group-level effects are not allowed: "
            + ", ".join(ranef.loc[duplicated, "coef"])
        )

    return ranef


def mono_matrix(variables: list[str], frame: pd.DataFrame) -> npt.NDArray[np.int64]:
    """Integer codes of monotonic predictors, starting at zero.

    :raises DataError: If a predictor is neither integer nor an ordered factor
    """
    columns = []
    for var in variables:
        values = frame[var]
        if isinstance(values.dtype, pd.CategoricalDtype) and values.cat.ordered:
            codes = values.cat.codes.to_numpy()
        elif pd.api.types.is_numeric_dtype(values) and np.all(
            np.asarray(values) == np.round(np.asarray(values))
        ):
            codes = np.asarray(values).astype(np.int64)
            codes = codes - codes.min()
        else:
            raise DataError(
                f"Monotonic predictor '{var}' must be either integer or an ordered factor."
            )
        if codes.max() < 1:
            raise DataError(
                f"Monotonic predictor '{var}' must have at least two different values."
            )
        columns.append(codes.astype(np.int64))

    return np.column_stack(columns)


def arr_design_matrix(
    Y: npt.NDArray, r: int, tg: npt.NDArray  # pylint: disable=invalid-name
) -> npt.NDArray[np.floating]:
    """Design matrix of autoregressive effects of the response.

    Column ``i`` holds the response ``i`` observations earlier in the same group
    (``tg``), or zero where there is no such observation.

    :param Y: Response, sorted by group and time
    :type Y: npt.NDArray
    :param r: Autoregressive order
    :type r: int
    :param tg: Group index of every observation
    :type tg: npt.NDArray

    :returns: Matrix with one row per observation and r columns
    :rtype: npt.NDArray[np.floating]
    """
    Yarr = np.zeros((len(Y), r))  # pylint: disable=invalid-name
    for n in range(len(Y)):
        for i in range(1, r + 1):
            if n - i >= 0 and tg[n - i] == tg[n]:
                Yarr[n, i - 1] = Y[n - i]
    return Yarr


def _is_integer(values: npt.NDArray) -> bool:
    return np.issubdtype(values.dtype, np.number) and bool(
        np.all(values == np.round(values))
    )


def check_response(
    values: pd.Series, family: "Family"
) -> tuple[npt.NDArray, Optional[list[str]]]:
    """Validate the response against the support of the response distribution.

    :param values: Raw response values
    :type values: pd.Series
    :param family: Response distribution
    :type family: Family

    :returns: The response as Stan expects it and, for categorical and ordinal
        responses given as factors, the category labels
    :rtype: tuple[npt.NDArray, Optional[list[str]]]

    :raises DataError: If the response is outside the support of the family
    """
    name = family.family
    series = values.reset_index(drop=True)

    # Categorical responses are numbered in the order of their (sorted) levels
    if family.is_categorical:
        if isinstance(series.dtype, pd.CategoricalDtype):
            return series.cat.codes.to_numpy() + 1, [
                str(cat) for cat in series.cat.categories
            ]
        codes, uniques = pd.factorize(series, sort=True)
        return codes + 1, [str(level) for level in uniques]

    if family.is_ordinal:
        if isinstance(series.dtype, pd.CategoricalDtype) and series.cat.ordered:
            return series.cat.codes.to_numpy() + 1, [
                str(cat) for cat in series.cat.categories
            ]
        numeric = pd.api.types.is_numeric_dtype(series)
        if not numeric or not _is_integer(series.to_numpy()) or series.min() < 1:
            raise DataError(
                f"Family '{name}' requires either positive integers or ordered factors "
                "as responses."
            )
        return series.to_numpy().astype(np.int64), None

    if name == "bernoulli":
        uniques = np.sort(series.unique())
        if len(uniques) > 2:
            raise DataError(
                "Family 'bernoulli' requires responses to contain only two different values."
            )
        if pd.api.types.is_numeric_dtype(series) and set(uniques) <= {0, 1}:
            return series.to_numpy().astype(np.int64), None
        return (series.to_numpy() == uniques[-1]).astype(np.int64), None

    if not pd.api.types.is_numeric_dtype(series) or pd.api.types.is_bool_dtype(series):
        raise DataError(f"Family '{name}' requires numeric responses.")
    Y = series.to_numpy().astype(float)  # pylint: disable=invalid-name

    if family.is_count or family.is_binary or name in {
        "zero_inflated_poisson",
        "zero_inflated_negbinomial",
        "zero_inflated_binomial",
        "hurdle_poisson",
        "hurdle_negbinomial",
    }:
        if not _is_integer(Y) or Y.min() < 0:
            raise DataError(
                f"Family '{name}' requires responses of non-negative integers."
            )
        return Y.astype(np.int64), None

    if family.is_skewed or family.is_lognormal:
        if Y.min() <= 0:
            raise DataError(f"Family '{name}' requires responses to be positive.")
    elif name == "beta":
        if Y.min() <= 0 or Y.max() >= 1:
            raise DataError("Family 'beta' requires responses between 0 and 1.")
    elif name == "zero_inflated_beta":
        if Y.min() < 0 or Y.max() >= 1:
            raise DataError(
                "Family 'zero_inflated_beta' requires responses between 0 and 1 (0 included)."
            )
    elif name == "hurdle_gamma":
        if Y.min() < 0:
            raise DataError("Family 'hurdle_gamma' requires non-negative responses.")
    elif name == "von_mises":
        if Y.min() < -np.pi or Y.max() > np.pi:
            raise DataError("Family 'von_mises' requires responses between -pi and pi.")

    return Y, None


def censoring_codes(values: npt.NDArray) -> npt.NDArray[np.int64]:
    """Convert censoring indicators into -1 (left), 0 (none), 1 (right) and
    2 (interval).

    :raises DataError: If an indicator cannot be interpreted
    """
    codes = {"left": -1, "none": 0, "right": 1, "interval": 2}
    converted = []
    for value in values:
        if isinstance(value, (bool, np.bool_)):
            converted.append(int(value))
        elif isinstance(value, str):
            matches = [code for label, code in codes.items() if label.startswith(value.lower())]
            if len(matches) != 1 or not value:
                raise DataError(f"Invalid censoring indicator '{value}'.")
            converted.append(matches[0])
        elif value in (-1, 0, 1, 2):
            converted.append(int(value))
        else:
            raise DataError(
                "Invalid censoring data. Accepted values are 'left', 'none', 'right' and "
                "'interval' (abbreviations are allowed) or -1, 0, 1 and 2. True and False "
                "are also accepted and refer to 'right' and 'none' respectively."
            )
    return np.asarray(converted, dtype=np.int64)
