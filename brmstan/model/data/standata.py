# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Data of the generated Stan programs.

:py:func:`make_standata` returns the dictionary passed to the Stan sampler. Its
entries are named exactly as the data declared by the program of
:py:func:`~brmstan.model.stan.make_stancode` for the same model. Names of
predictor-specific entries carry the predictor name as a suffix (``X_sigma``,
``Z_1_a_1``); names of group-level entries carry the ID of the group-level term
(``J_1``, ``N_1``).

:py:func:`make_standata_info` additionally returns a :py:class:`DesignInfo`,
which keeps everything about the design the code generator and the fitted model
need: coefficient names, group levels, smooth labels and the structure of the
group-level effects.
"""

from __future__ import annotations

import warnings

from dataclasses import dataclass, field
from typing import Any, cast, Optional, TYPE_CHECKING, Union

import numpy as np
import numpy.typing as npt
import pandas as pd

from scipy import sparse as sp

from brmstan import utils
from brmstan.exceptions import AutocorError, DataError, FormulaError
from brmstan.formula.brmsformula import update_formula
from brmstan.formula.effects import Effects, extract_effects
from brmstan.model.autocor import check_autocor, CorArma, CorBsts, CovFixed
from brmstan.model.data.data_helpers import (
    arr_design_matrix,
    censoring_codes,
    check_response,
    evaluate,
    group_codes,
    model_matrix,
    mono_matrix,
    sort_data,
    tidy_ranef,
    update_data,
)
from brmstan.model.data.splines import smooth_basis
from brmstan.model.family import check_family, Family

if TYPE_CHECKING:
    from brmstan import custom_types


@dataclass
class PredictorInfo:
    """Design of one linear predictor.

    :ivar name: Name of the predictor ("" for the main predictor)
    :ivar fixef: Names of the population-level coefficients, one per column of
        ``X``, starting with "Intercept" if the predictor has one
    :ivar centered: Whether the population-level design matrix is centered and
        the intercept is estimated separately
    :ivar sparse: Whether the population-level design matrix is passed in sparse
        form
    :ivar mono: Names of the monotonic predictors
    :ivar cse: Names of the category-specific coefficients
    :ivar smooths: Label and number of penalized parts of every smooth term
    :ivar offset: Whether the predictor has an offset
    :ivar is_auxpar: Whether the predictor models an auxiliary parameter
    """

    name: str
    fixef: list[str] = field(default_factory=list)
    centered: bool = False
    sparse: bool = False
    mono: list[str] = field(default_factory=list)
    cse: list[str] = field(default_factory=list)
    smooths: list[tuple[str, int]] = field(default_factory=list)
    offset: bool = False
    is_auxpar: bool = False

    @property
    def suffix(self) -> str:
        return f"_{self.name}" if self.name else ""

    @property
    def intercept(self) -> bool:
        return len(self.fixef) > 0 and self.fixef[0] == "Intercept"


@dataclass
class DesignInfo:
    """Everything about a model's design beyond the raw Stan data.

    :ivar effects: Interpreted model formula
    :ivar family: Response distribution
    :ivar autocor: Correlation structure
    :ivar frame: Model frame, sorted as the Stan data
    :ivar predictors: Design of every linear predictor, keyed by predictor name
    :ivar ranef: Group-level effects as returned by
        :py:func:`~brmstan.model.data.data_helpers.tidy_ranef`
    :ivar levels: Level labels of every grouping factor
    :ivar ncat: Number of response categories of categorical and ordinal models
    :ivar categories: Labels of the response categories, if the response is a
        factor
    :ivar cov_ranef: Grouping factors with a known covariance matrix
    """

    effects: Effects
    family: Family
    autocor: Any
    frame: pd.DataFrame
    predictors: dict[str, PredictorInfo] = field(default_factory=dict)
    ranef: pd.DataFrame = None
    levels: dict[str, list[str]] = field(default_factory=dict)
    ncat: Optional[int] = None
    categories: Optional[list[str]] = None
    cov_ranef: list[str] = field(default_factory=list)

    @property
    def nobs(self) -> int:
        return len(self.frame)

    @property
    def ids(self) -> list[int]:
        """Numbers of the group-level IDs."""
        return sorted(self.ranef["id"].unique().tolist())

    def id_ranef(self, gid: int) -> pd.DataFrame:
        """Rows of the group-level effects of one ID."""
        return self.ranef.loc[self.ranef["id"] == gid]


def _as_int(values: npt.NDArray, what: str) -> npt.NDArray[np.int64]:
    values = np.asarray(values, dtype=float)
    if np.any(values != np.round(values)):
        raise DataError(f"'{what}' must contain integers only.")
    return values.astype(np.int64)


def _bound(values: npt.NDArray, what: str, family: Family) -> npt.NDArray:
    """Truncation bounds, integer for discrete families."""
    if family.is_discrete:
        return _as_int(values, what)
    return np.asarray(values, dtype=float)


def _response_data(
    effects: Effects, family: Family, frame: pd.DataFrame, standata: dict
) -> Optional[list[str]]:
    """Add the response and the addition arguments depending on it."""
    if effects.is_multivariate:
        columns = []
        for resp in effects.response:
            values = frame[resp]
            if not pd.api.types.is_numeric_dtype(values):
                raise DataError(f"Response '{resp}' must be numeric.")
            columns.append(values.to_numpy(dtype=float))
        standata["Y"] = np.column_stack(columns)
        standata["nresp"] = len(columns)
        standata["nrescor"] = len(columns) * (len(columns) - 1) // 2
        return None

    resp = effects.response[0]
    if resp in frame.columns:
        series = frame[resp]
    else:
        series = pd.Series(evaluate(resp, frame))
    Y, categories = check_response(series, family)  # pylint: disable=invalid-name
    standata["Y"] = Y

    return categories


def _ncat_data(
    effects: Effects,
    Y: npt.NDArray,  # pylint: disable=invalid-name
    categories: Optional[list[str]],
    standata: dict,
) -> int:
    if effects.cat is not None:
        if not utils.is_number(effects.cat):
            raise FormulaError("Addition argument cat() must be a number.")
        ncat = int(float(effects.cat))
    elif categories is not None:
        ncat = len(categories)
    else:
        ncat = int(Y.max())

    if ncat < int(Y.max()):
        raise DataError("Number of categories is smaller than the response would suggest.")
    if ncat < 2:
        raise DataError("At least two response categories are required.")
    if ncat == 2:
        warnings.warn(
            "Only 2 levels detected so that family 'bernoulli' might be a more "
            "efficient choice."
        )
    standata["ncat"] = ncat

    return ncat


def _addition_data(
    effects: Effects, family: Family, frame: pd.DataFrame, standata: dict
) -> None:
    """Add trials, standard errors, weights, dispersion, censoring and truncation."""
    Y = standata["Y"]  # pylint: disable=invalid-name
    N = len(frame)  # pylint: disable=invalid-name

    if family.has_trials:
        if effects.trials is not None:
            trials = _as_int(evaluate(effects.trials, frame), "trials")
        else:
            warnings.warn("Using the maximum of the response variable as the number of trials.")
            trials = np.full(N, int(Y.max()), dtype=np.int64)
        if np.any(trials < Y):
            raise DataError("Number of trials is smaller than the response variable would suggest.")
        if trials.max() == 1:
            warnings.warn(
                "Only 2 levels detected so that family 'bernoulli' might be a more "
                "efficient choice."
            )
        standata["trials"] = trials

    if effects.se is not None:
        se = evaluate(effects.se, frame).astype(float)
        if np.any(se < 0):
            raise DataError("Standard errors must be non-negative.")
        standata["se"] = se

    if effects.weights is not None:
        weights = evaluate(effects.weights, frame).astype(float)
        if np.any(weights < 0):
            raise DataError("Weights must be non-negative.")
        standata["weights"] = weights

    if effects.disp is not None:
        disp = evaluate(effects.disp, frame).astype(float)
        if np.any(disp <= 0):
            raise DataError("Dispersion factors must be positive.")
        standata["disp"] = disp

    if effects.cens is not None:
        cens = censoring_codes(evaluate(effects.cens[0], frame))
        standata["cens"] = cens
        interval = cens == 2
        if np.any(interval) and effects.cens[1] is None:
            raise DataError("Argument 'y2' of cens() is required for interval censored data.")
        if effects.cens[1] is not None:
            rcens = np.where(interval, evaluate(effects.cens[1], frame).astype(float), 0)
            if family.is_discrete:
                rcens = _as_int(rcens, "y2")
            if np.any(rcens[interval] <= Y[interval]):
                raise DataError(
                    "Upper bounds of interval censored observations must be greater than "
                    "the response."
                )
            standata["rcens"] = rcens

    if effects.trunc is not None:
        lb, ub = effects.trunc
        if lb is not None:
            standata["lb"] = _bound(evaluate(lb, frame), "lb", family)
            if np.any(Y < standata["lb"]):
                raise DataError("Some responses are smaller than the lower truncation bound.")
        if ub is not None:
            standata["ub"] = _bound(evaluate(ub, frame), "ub", family)
            if np.any(Y > standata["ub"]):
                raise DataError("Some responses are larger than the upper truncation bound.")


def _predictor_data(
    name: str,
    effects: Effects,
    family: Family,
    frame: pd.DataFrame,
    standata: dict,
    knots: Optional[dict],
    sparse: bool,
) -> PredictorInfo:
    """Add the population-level design of one linear predictor."""
    lin = effects.predictors[name]
    info = PredictorInfo(name=name, is_auxpar=name in effects.auxpars)
    sfx = info.suffix

    # Thresholds of ordinal models and the category-specific intercepts of
    # categorical models take the place of the intercept
    is_main = not info.is_auxpar and not effects.is_nonlinear
    intercept = lin.intercept or (family.has_cat and is_main)
    rhs = " + ".join(["1" if intercept else "0"] + lin.fixed)
    X = model_matrix(rhs, frame)  # pylint: disable=invalid-name
    # Sparse designs are not centered, so the intercept column is dropped
    # where thresholds take its place
    sparse = sparse and name == "" and not effects.is_multivariate
    if sparse and intercept and family.is_ordinal and is_main:
        X = X.iloc[:, 1:]  # pylint: disable=invalid-name
    fixef = [utils.rename(col) for col in X.columns]
    columns = [X.to_numpy(dtype=float)]

    # Smooth terms: unpenalized parts join the population-level effects
    knots = knots or {}
    labels = [smooth.label for smooth in lin.smooths]
    if len(set(labels)) < len(labels):
        raise FormulaError("Duplicated smooth terms are not allowed.")
    for i, smooth in enumerate(lin.smooths, start=1):
        basis = smooth_basis(
            [frame[var].to_numpy(dtype=float) for var in smooth.covars],
            k=smooth.k,
            knots=[knots.get(var) for var in smooth.covars],
        )
        columns.append(basis.fixed)
        fixef.extend(f"{smooth.label}_{j}" for j in range(1, basis.fixed.shape[1] + 1))
        standata[f"nb{sfx}_{i}"] = len(basis.blocks)
        standata[f"knots{sfx}_{i}"] = np.asarray(basis.knots, dtype=np.int64)
        for j, block in enumerate(basis.blocks, start=1):
            standata[f"Zs{sfx}_{i}_{j}"] = block
        info.smooths.append((smooth.label, len(basis.blocks)))

    X = np.column_stack(columns)  # pylint: disable=invalid-name
    info.fixef = fixef
    info.sparse = sparse
    info.centered = intercept and (is_main or info.is_auxpar) and not info.sparse
    standata[f"K{sfx}"] = X.shape[1]
    standata[f"X{sfx}"] = X
    if info.sparse:
        csr = sp.csr_matrix(X)
        standata["nnz_X"] = int(csr.nnz)
        standata["wX"] = csr.data
        standata["vX"] = csr.indices.astype(np.int64) + 1
        standata["uX"] = csr.indptr.astype(np.int64) + 1

    # Monotonic effects
    if lin.mono:
        Xm = mono_matrix(lin.mono, frame)  # pylint: disable=invalid-name
        Jm = Xm.max(axis=0)  # pylint: disable=invalid-name
        standata[f"Km{sfx}"] = Xm.shape[1]
        standata[f"Xm{sfx}"] = Xm
        standata[f"Jm{sfx}"] = Jm.astype(np.int64)
        for k, jm in enumerate(Jm, start=1):
            standata[f"con_simplex{sfx}_{k}"] = np.ones(int(jm))
        info.mono = list(lin.mono)

    # Category-specific effects
    if lin.cse is not None:
        Xcs = model_matrix("1 + " + lin.cse, frame)  # pylint: disable=invalid-name
        Xcs = Xcs.drop(columns="Intercept")  # pylint: disable=invalid-name
        if Xcs.shape[1] == 0:
            raise FormulaError("Category specific effects need at least one variable.")
        standata["Kcs"] = Xcs.shape[1]
        standata["Xcs"] = Xcs.to_numpy(dtype=float)
        info.cse = [utils.rename(col) for col in Xcs.columns]

    if lin.offset is not None:
        standata[f"offset{sfx}"] = evaluate(lin.offset, frame).astype(float)
        info.offset = True

    return info


def _ranef_data(
    design: DesignInfo, standata: dict, cov_ranef: Optional[dict]
) -> None:
    """Add the data of every group-level ID."""
    cov_ranef = cov_ranef or {}
    for gid in design.ids:
        rows = design.id_ranef(gid)
        group = rows["group"].iloc[0]
        codes, labels = group_codes(group, design.frame)
        design.levels[group] = labels
        M = len(rows)  # pylint: disable=invalid-name

        standata[f"J_{gid}"] = codes.astype(np.int64)
        standata[f"N_{gid}"] = len(labels)
        standata[f"M_{gid}"] = M
        if rows["cor"].iloc[0] and M > 1:
            standata[f"NC_{gid}"] = M * (M - 1) // 2

        matrices = {}
        for _, row in rows.iterrows():
            if row["type"] == "mono":
                continue
            if row["form"] not in matrices:
                matrices[row["form"]] = model_matrix(row["form"], design.frame)
            nlpar = f"_{row['nlpar']}" if row["nlpar"] else ""
            standata[f"Z_{gid}{nlpar}_{row['cn']}"] = matrices[row["form"]][
                row["column"]
            ].to_numpy(dtype=float)

        if group in cov_ranef:
            standata[f"Lcov_{gid}"] = _cov_ranef_cholesky(group, labels, cov_ranef[group])
            if group not in design.cov_ranef:
                design.cov_ranef.append(group)


def _cov_ranef_cholesky(
    group: str, labels: list[str], matrix: Union[pd.DataFrame, npt.ArrayLike]
) -> npt.NDArray[np.floating]:
    """Cholesky factor of a known covariance matrix of the levels of a group."""
    if isinstance(matrix, pd.DataFrame):
        matrix = matrix.rename(index=str, columns=str)
        if missing := set(labels) - set(matrix.index) | set(labels) - set(matrix.columns):
            raise DataError(
                f"Levels of '{group}' are missing in cov_ranef: "
                + ", ".join(sorted(missing))
            )
        matrix = matrix.loc[labels, labels].to_numpy(dtype=float)
    else:
        matrix = np.asarray(matrix, dtype=float)
        if matrix.shape != (len(labels), len(labels)):
            raise DataError(
                f"The covariance matrix of '{group}' in cov_ranef must have one row and "
                "column per level."
            )

    if not np.allclose(matrix, matrix.T):
        raise DataError(f"The covariance matrix of '{group}' in cov_ranef must be symmetric.")
    try:
        return np.linalg.cholesky(matrix)
    except np.linalg.LinAlgError as error:
        raise DataError(
            f"The covariance matrix of '{group}' in cov_ranef must be positive definite."
        ) from error


def _autocor_data(
    autocor: "custom_types.AutocorType",
    effects: Effects,
    family: Family,
    frame: pd.DataFrame,
    standata: dict,
) -> None:
    """Add the data of correlation structures after checking they fit the model."""
    if autocor is None:
        return
    N = len(frame)  # pylint: disable=invalid-name

    if isinstance(autocor, CovFixed):
        if not family.is_linear or effects.is_multivariate:
            raise AutocorError(
                "Fixed residual covariance matrices are only implemented for univariate "
                "gaussian and student models."
            )
        if autocor.V.shape != (N, N):
            raise AutocorError("'V' must have one row and column per observation.")
        try:
            np.linalg.cholesky(autocor.V)
        except np.linalg.LinAlgError as error:
            raise DataError("'V' must be positive definite.") from error
        standata["V"] = autocor.V
        return

    if effects.is_multivariate:
        if isinstance(autocor, CorArma) and autocor.cov:
            raise AutocorError(
                "ARMA covariance matrices are not yet working in multivariate models."
            )
        raise AutocorError(
            "Correlation structures are not yet implemented for multivariate models."
        )
    if family.has_cat or family.is_forked:
        raise AutocorError(
            f"Correlation structures are not implemented for family '{family.family}'."
        )

    if autocor.group is not None:
        tg, _ = group_codes(autocor.group, frame)
    else:
        tg = np.ones(N, dtype=np.int64)
    standata["tg"] = tg.astype(np.int64)

    if isinstance(autocor, CorBsts):
        return

    autocor = cast(CorArma, autocor)
    if autocor.has_arma:
        standata["Kar"] = autocor.p
        standata["Kma"] = autocor.q
        standata["Karma"] = max(autocor.p, autocor.q)
        if autocor.cov:
            if not family.is_linear:
                raise AutocorError(
                    "ARMA covariance matrices are only implemented for families "
                    "'gaussian' and 'student'."
                )
            if any(
                add is not None
                for add in (effects.cens, effects.trunc, effects.weights, effects.disp)
            ):
                raise AutocorError("Invalid addition arguments for ARMA covariance matrices.")
            _, begin, nobs = np.unique(tg, return_index=True, return_counts=True)
            order = np.argsort(begin)
            standata["N_tg"] = len(begin)
            standata["begin_tg"] = begin[order].astype(np.int64) + 1
            standata["nobs_tg"] = nobs[order].astype(np.int64)
            standata["end_tg"] = standata["begin_tg"] + standata["nobs_tg"] - 1
            standata["se2"] = standata["se"] ** 2 if "se" in standata else np.zeros(N)
        elif effects.se is not None:
            raise AutocorError(
                "Please set cov = TRUE in ARMA correlation structures to allow for known "
                "standard errors."
            )

    if autocor.has_arr:
        standata["Karr"] = autocor.r
        standata["Yarr"] = arr_design_matrix(standata["Y"], autocor.r, tg)


def make_standata_info(
    formula: "custom_types.FormulaType",
    data: "custom_types.DataType",
    family: "custom_types.FamilyType" = "gaussian",
    autocor: "custom_types.AutocorType" = None,
    nonlinear: Any = None,
    cov_ranef: Optional[dict] = None,
    sample_prior: Union[bool, str] = False,
    knots: Optional[dict] = None,
    sparse: bool = False,
    na_action: str = "omit",
) -> tuple["custom_types.Standata", DesignInfo]:
    """Data of the Stan program of a model together with its design information.

    See :py:func:`make_standata` for the arguments.

    :returns: Data for Stan and design information
    :rtype: tuple[custom_types.Standata, DesignInfo]
    """
    formula = update_formula(formula, nonlinear=nonlinear)
    family = check_family(family)
    autocor = check_autocor(autocor)
    effects = extract_effects(formula, family, autocor)

    frame = update_data(data, effects, na_action=na_action)
    if isinstance(autocor, (CorArma, CorBsts)):
        frame = sort_data(frame, autocor.time, autocor.group)

    design = DesignInfo(effects=effects, family=family, autocor=autocor, frame=frame)
    standata: dict[str, Any] = {"N": len(frame)}

    # Response
    design.categories = _response_data(effects, family, frame, standata)
    if family.has_cat:
        design.ncat = _ncat_data(effects, standata["Y"], design.categories, standata)
    _addition_data(effects, family, frame, standata)

    # Linear predictors
    for name in effects.predictors:
        design.predictors[name] = _predictor_data(
            name, effects, family, frame, standata, knots, sparse
        )
    if effects.is_nonlinear:
        standata["KC"] = len(effects.covars)
        if effects.covars:
            standata["C"] = np.column_stack(
                [evaluate(var, frame).astype(float) for var in effects.covars]
            )

    # Group-level effects
    design.ranef = tidy_ranef(effects, frame, ncat=design.ncat)
    if cov_ranef:
        if unknown := set(cov_ranef) - set(design.ranef["group"]):
            raise DataError(
                "cov_ranef contains matrices of unknown grouping factors: "
                + ", ".join(sorted(unknown))
            )
    _ranef_data(design, standata, cov_ranef)

    _autocor_data(autocor, effects, family, frame, standata)
    standata["prior_only"] = int(sample_prior == "only")

    return standata, design


def make_standata(
    formula: "custom_types.FormulaType",
    data: "custom_types.DataType",
    family: "custom_types.FamilyType" = "gaussian",
    autocor: "custom_types.AutocorType" = None,
    nonlinear: Any = None,
    cov_ranef: Optional[dict] = None,
    sample_prior: Union[bool, str] = False,
    knots: Optional[dict] = None,
    sparse: bool = False,
    na_action: str = "omit",
) -> "custom_types.Standata":
    """Data of the Stan program of a model.

    :param formula: Model formula
    :type formula: custom_types.FormulaType
    :param data: Data of the model
    :type data: custom_types.DataType
    :param family: Response distribution. Defaults to "gaussian".
    :type family: custom_types.FamilyType
    :param autocor: Correlation structure. Defaults to None.
    :type autocor: custom_types.AutocorType
    :param nonlinear: Formulas of non-linear parameters, see
        :py:func:`~brmstan.formula.brmsformula.bf`. Defaults to None.
    :type nonlinear: Any
    :param cov_ranef: Known covariance matrices of the levels of grouping factors,
        keyed by grouping factor. Data frames are matched to levels by their index
        and columns; arrays must be ordered like the sorted levels. Defaults to None.
    :type cov_ranef: Optional[dict]
    :param sample_prior: If "only", the likelihood is switched off. Defaults to False.
    :type sample_prior: Union[bool, str]
    :param knots: Interior knots of smooth terms, keyed by covariate. Defaults to
        None (equally spaced knots).
    :type knots: Optional[dict]
    :param sparse: Whether to pass the population-level design matrix of the main
        predictor in sparse form. Defaults to False.
    :type sparse: bool
    :param na_action: "omit" to drop rows with missing values, "fail" to raise an
        error. Defaults to "omit".
    :type na_action: str

    :returns: Data for Stan
    :rtype: custom_types.Standata

    :raises DataError: If the data do not fit the model

    Example:
        >>> standata = make_standata("count ~ Trt + (1 | patient)", data=epilepsy,
        ...                          family="poisson")
        >>> standata["K"], standata["N_1"]
        (2, 59)
    """
    return make_standata_info(
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
    )[0]
