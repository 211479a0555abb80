# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Fitting models with CmdStan.

:py:func:`brm` generates the Stan program and data of a model, compiles the
program (or reuses the compiled program of a previous fit), runs CmdStan and
wraps the result in a :py:class:`~brmstan.model.results.brmsfit.BrmsFit`.
"""

from __future__ import annotations

import numbers
import warnings

from typing import Any, Callable, Optional, TYPE_CHECKING, Union

import numpy as np

from brmstan.defaults import (
    DEFAULT_ALGORITHM,
    DEFAULT_CHAINS,
    DEFAULT_FORCE_COMPILE,
    DEFAULT_ITER,
    DEFAULT_THIN,
)
from brmstan.formula.brmsformula import update_formula
from brmstan.model.prior import PriorFrame
from brmstan.model.results.brmsfit import BrmsFit
from brmstan.model.stan.stan_model import StanModel
from brmstan.model.stan.stancode import make_stancode_info

if TYPE_CHECKING:
    from brmstan import custom_types

# Names of the sampler settings of `control` in CmdStanPy
_CONTROL_ARGS = {
    "adapt_delta": "adapt_delta",
    "max_treedepth": "max_treedepth",
    "stepsize": "step_size",
    "step_size": "step_size",
    "metric": "metric",
    "adapt_engaged": "adapt_engaged",
    "adapt_init_phase": "adapt_init_phase",
    "adapt_metric_window": "adapt_metric_window",
    "adapt_step_size": "adapt_step_size",
}

InitsType = Union[str, float, dict, list, Callable[[], dict]]


def _check_algorithm(algorithm: str) -> str:
    if algorithm not in {"sampling", "meanfield", "fullrank"}:
        raise ValueError(
            f"Unknown algorithm '{algorithm}'. Use 'sampling', 'meanfield' or 'fullrank'."
        )
    return algorithm


def _prepare_inits(inits: InitsType, chains: int) -> Any:
    """Translate initial values to the form CmdStanPy expects.

    :param inits: "random" for random initial values in (-2, 2), "0" for zeros,
        a number for random values in (-inits, inits), a dict used for every
        chain, a list with one dict per chain or a function returning a dict
    :type inits: InitsType
    :param chains: Number of chains
    :type chains: int

    :returns: Initial values for CmdStanPy
    :rtype: Any

    :raises ValueError: If the initial values are invalid
    """
    if isinstance(inits, str):
        if inits == "random":
            return None
        if inits == "0":
            return 0.0
        raise ValueError(f"Unknown initial values '{inits}'. Use 'random' or '0'.")
    if isinstance(inits, numbers.Real):
        if inits < 0:
            raise ValueError("Numeric initial values must be non-negative.")
        return float(inits)
    if isinstance(inits, dict):
        return inits
    if callable(inits):
        return [inits() for _ in range(chains)]
    if len(inits) != chains:
        raise ValueError(
            f"Initial values were given for {len(inits)} chains but {chains} "
            "chains are run."
        )
    return list(inits)


def _control_kwargs(control: Optional[dict[str, Any]]) -> dict[str, Any]:
    kwargs = {}
    for key, value in (control or {}).items():
        if key not in _CONTROL_ARGS:
            raise ValueError(f"Unknown sampler setting '{key}' in control.")
        kwargs[_CONTROL_ARGS[key]] = value
    return kwargs


def _warn_sampling_problems(fit: Any, control: Optional[dict[str, Any]]) -> None:
    """Warn about divergent transitions and saturated tree depths."""
    ndivergent = int(np.sum(fit.divergences))
    if ndivergent > 0:
        adapt_delta = (control or {}).get("adapt_delta", 0.8)
        warnings.warn(
            f"There were {ndivergent} divergent transitions after warmup. "
            f"Increasing adapt_delta above {adapt_delta} may help."
        )
    nsaturated = int(np.sum(fit.max_treedepths))
    if nsaturated > 0:
        warnings.warn(
            f"{nsaturated} transitions after warmup exceeded the maximum tree depth. "
            "Increasing max_treedepth may help."
        )


def brm(
    formula: "custom_types.FormulaType",
    data: "custom_types.DataType",
    family: "custom_types.FamilyType" = "gaussian",
    prior: Optional[PriorFrame] = None,
    autocor: "custom_types.AutocorType" = None,
    nonlinear: Any = None,
    threshold: str = "flexible",
    cov_ranef: Optional[dict] = None,
    sparse: bool = False,
    sample_prior: Union[bool, str] = False,
    knots: Optional[dict] = None,
    stan_funs: Optional[str] = None,
    fit: Optional[BrmsFit] = None,
    inits: InitsType = "random",
    chains: "custom_types.Integer" = DEFAULT_CHAINS,
    iter: "custom_types.Integer" = DEFAULT_ITER,  # pylint: disable=redefined-builtin
    warmup: Optional["custom_types.Integer"] = None,
    thin: "custom_types.Integer" = DEFAULT_THIN,
    cores: "custom_types.Integer" = 1,
    control: Optional[dict[str, Any]] = None,
    algorithm: str = DEFAULT_ALGORITHM,
    seed: Optional["custom_types.Integer"] = None,
    save_model: Optional[str] = None,
    output_dir: Optional[str] = None,
    force_compile: bool = DEFAULT_FORCE_COMPILE,
    na_action: str = "omit",
    **kwargs,
) -> BrmsFit:
    """Fit a Bayesian regression model with CmdStan.

    See :py:func:`~brmstan.model.stan.stancode.make_stancode` for the arguments
    describing the model.

    :param fit: A previous fit. Its compiled program is reused if the new model
        has the same Stan program. Defaults to None.
    :type fit: Optional[BrmsFit]
    :param inits: "random", "0", a number giving the range (-inits, inits) of
        random initial values, a dict of initial values, a list with one dict per
        chain or a function returning a dict. Defaults to "random".
    :type inits: InitsType
    :param chains: Number of Markov chains. Defaults to 4.
    :type chains: custom_types.Integer
    :param iter: Total number of iterations per chain, warmup included. For
        variational inference, the maximum number of iterations. Defaults to 2000.
    :type iter: custom_types.Integer
    :param warmup: Number of warmup iterations. Defaults to None (half of
        ``iter``).
    :type warmup: Optional[custom_types.Integer]
    :param thin: Thinning rate. Defaults to 1.
    :type thin: custom_types.Integer
    :param cores: Number of chains run in parallel. Defaults to 1.
    :type cores: custom_types.Integer
    :param control: Sampler settings, such as ``adapt_delta`` and
        ``max_treedepth``. Defaults to None.
    :type control: Optional[dict[str, Any]]
    :param algorithm: "sampling" for NUTS, "meanfield" or "fullrank" for
        variational inference. Defaults to "sampling".
    :type algorithm: str
    :param seed: Seed of the sampler. Defaults to None (drawn from
        :py:data:`brmstan.RNG`).
    :type seed: Optional[custom_types.Integer]
    :param save_model: Path the Stan program is written to. Defaults to None.
    :type save_model: Optional[str]
    :param output_dir: Directory for the compiled program and the CmdStan output.
        Defaults to None (temporary).
    :type output_dir: Optional[str]
    :param force_compile: Whether to recompile the program even if a compiled
        version exists. Defaults to False.
    :type force_compile: bool
    :param kwargs: Passed on to ``CmdStanModel.sample`` or
        ``CmdStanModel.variational``

    :returns: The fitted model
    :rtype: BrmsFit

    :raises ValueError: If the fitting arguments are invalid

    Example:
        >>> fit = brm("count ~ log_Age_c + Trt + (1 | patient)", data=epilepsy,
        ...           family="poisson", chains=2, iter=1000)
        >>> fit.fixef()
    """
    algorithm = _check_algorithm(algorithm)
    if warmup is None:
        warmup = iter // 2
    if not 0 <= warmup < iter:
        raise ValueError("warmup must be non-negative and smaller than iter.")

    code, standata, design, checked_prior = make_stancode_info(
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
    )

    # Compile unless a previous fit has the same program
    if fit is not None and fit.stan_model is not None and fit.model == code:
        stan_model = fit.stan_model
        stan_model.standata = standata
    else:
        stan_model = StanModel(
            code,
            standata=standata,
            output_dir=output_dir,
            force_compile=force_compile,
        )

    cmdstan_inits = _prepare_inits(inits, chains)
    if algorithm == "sampling":
        cmdstan_fit = stan_model.sample(
            data=standata,
            chains=chains,
            iter_warmup=warmup,
            iter_sampling=iter - warmup,
            thin=thin,
            parallel_chains=cores,
            seed=seed,
            inits=cmdstan_inits,
            **_control_kwargs(control),
            **kwargs,
        )
        _warn_sampling_problems(cmdstan_fit, control)
    else:
        if isinstance(cmdstan_inits, list):
            cmdstan_inits = cmdstan_inits[0]
        cmdstan_fit = stan_model.variational(
            data=standata,
            algorithm=algorithm,
            iter=iter,
            seed=seed,
            inits=cmdstan_inits,
            **kwargs,
        )

    return BrmsFit(
        formula=update_formula(formula, nonlinear=nonlinear),
        design=design,
        prior=checked_prior,
        model=code,
        standata=standata,
        fit=cmdstan_fit,
        stan_model=stan_model,
        algorithm=algorithm,
    )
