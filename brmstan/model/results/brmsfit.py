# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Fitted models.

A :py:class:`BrmsFit` keeps everything that describes a model (formula, family,
priors, data and the generated Stan program) together with the CmdStan fit.
The draws of the fit are reported under interpretable parameter names, see
:py:mod:`brmstan.model.results.rename`, and are summarized by the usual
accessors for population-level effects, group-level effects and variance
components.
"""

from __future__ import annotations

import re

from typing import Any, Optional, Sequence, TYPE_CHECKING, Union

import arviz as az
import numpy as np
import numpy.typing as npt
import pandas as pd

from cmdstanpy import CmdStanMCMC

from brmstan.defaults import (
    DEFAULT_EBFMI_THRESH,
    DEFAULT_ESS_THRESH,
    DEFAULT_PROBS,
    DEFAULT_RHAT_THRESH,
)
from brmstan.model.results.helpers import (
    extract_pars,
    get_cornames,
    get_cov_matrix,
    get_summary,
)
from brmstan.model.results.rename import rename_pars

if TYPE_CHECKING:
    from brmstan import custom_types
    from brmstan.model.data.standata import DesignInfo
    from brmstan.model.prior import PriorFrame
    from brmstan.model.stan.stan_model import StanModel

# Names of the sampler diagnostics in ArviZ
_SAMPLE_STATS = {
    "lp__": "lp",
    "accept_stat__": "acceptance_rate",
    "stepsize__": "step_size",
    "treedepth__": "tree_depth",
    "n_leapfrog__": "n_steps",
    "divergent__": "diverging",
    "energy__": "energy",
}

# Names of group-level effects, such as "r_g__a[level,Intercept]"
_RANEF_NAME = re.compile(r"^r_(.+?)(?:__(.+))?\[(.+),(.+)\]$")


class BrmsFit:
    """A fitted model.

    :param formula: Model formula
    :type formula: custom_types.FormulaType
    :param design: Design of the model
    :type design: DesignInfo
    :param prior: Checked priors of the model
    :type prior: PriorFrame
    :param model: Stan program
    :type model: str
    :param standata: Data of the Stan program
    :type standata: custom_types.Standata
    :param fit: CmdStan fit, a ``CmdStanMCMC`` for sampling and a ``CmdStanVB``
        for variational inference
    :type fit: Any
    :param stan_model: Compiled model, reused when refitting. Defaults to None.
    :type stan_model: Optional[StanModel]
    :param algorithm: Algorithm the model was fitted with. Defaults to
        "sampling".
    :type algorithm: str

    :ivar family: Response distribution
    :ivar autocor: Correlation structure
    :ivar data: Model frame, sorted as the data passed to Stan
    :ivar ranef_table: Summary of the group-level terms, one row per effect
    """

    def __init__(
        self,
        formula: "custom_types.FormulaType",
        design: "DesignInfo",
        prior: "PriorFrame",
        model: str,
        standata: "custom_types.Standata",
        fit: Any,
        stan_model: Optional["StanModel"] = None,
        algorithm: str = "sampling",
    ):
        self.formula = formula
        self.design = design
        self.family = design.family
        self.autocor = design.autocor
        self.data = design.frame
        self.ranef_table = design.ranef
        self.prior = prior
        self.model = model
        self.standata = standata
        self.fit = fit
        self.stan_model = stan_model
        self.algorithm = algorithm

        self._draws: Optional[pd.DataFrame] = None
        self._inference_data: Optional[az.InferenceData] = None

    def __repr__(self) -> str:
        return (
            f"BrmsFit(formula={str(self.formula)!r}, family={str(self.family)!r}, "
            f"algorithm={self.algorithm!r}, nsamples={self.nsamples()})"
        )

    @property
    def is_mcmc(self) -> bool:
        return isinstance(self.fit, CmdStanMCMC)

    def _raw_draws(self) -> pd.DataFrame:
        """Draws in CmdStan naming with the chain of every draw."""
        if self.is_mcmc:
            draws = self.fit.draws_pd()
            return draws.sort_values(["chain__", "iter__"], kind="stable").reset_index(
                drop=True
            )
        draws = pd.DataFrame(self.fit.variational_sample, columns=self.fit.column_names)
        draws.insert(0, "chain__", 1)
        return draws

    @property
    def draws(self) -> pd.DataFrame:
        """All reported draws under their interpretable names, with the chain
        (``chain__``) of every draw."""
        if self._draws is None:
            raw = self._raw_draws()
            mapping = rename_pars(list(raw.columns), self.design)
            renamed = raw[list(mapping)].rename(columns=mapping)
            renamed.insert(0, "chain__", raw["chain__"].to_numpy())
            self._draws = renamed
        return self._draws

    @property
    def parnames(self) -> list[str]:
        """Names of all reported parameters."""
        return [name for name in self.draws.columns if name != "chain__"]

    def posterior_samples(
        self,
        pars: Union[None, str, Sequence[str]] = None,
        exact_match: bool = False,
        add_chain: bool = False,
    ) -> pd.DataFrame:
        """Posterior draws of selected parameters.

        :param pars: Regular expressions selecting parameters, or exact names if
            ``exact_match``. Defaults to None (all parameters).
        :type pars: Union[None, str, Sequence[str]]
        :param exact_match: Whether ``pars`` are exact names. Defaults to False.
        :type exact_match: bool
        :param add_chain: Whether to add the chain of every draw. Defaults to
            False.
        :type add_chain: bool

        :returns: One row per draw and one column per parameter
        :rtype: pd.DataFrame

        :raises ValueError: If no parameter matches ``pars``

        Example:
            >>> fit.posterior_samples("^b_").columns.tolist()
            ['b_Intercept', 'b_x']
        """
        selected = extract_pars(pars, self.parnames, exact_match=exact_match)
        if not selected:
            raise ValueError(f"No parameter matches {pars!r}.")
        if add_chain:
            selected = ["chain__"] + selected
        return self.draws[selected].copy()

    def nsamples(self) -> int:
        """Number of posterior draws across all chains."""
        return len(self.draws)

    @property
    def inference_data(self) -> az.InferenceData:
        """The draws as an ArviZ InferenceData object.

        Every reported parameter is a scalar variable of the posterior group.
        The sampler diagnostics of MCMC fits form the sample_stats group.
        """
        if self._inference_data is None:
            draws = self.draws
            chains = draws["chain__"].to_numpy()
            nchains = len(np.unique(chains))

            def by_chain(values: npt.NDArray) -> npt.NDArray:
                return np.asarray(values).reshape(nchains, -1)

            posterior = {name: by_chain(draws[name].to_numpy()) for name in self.parnames}
            sample_stats = None
            if self.is_mcmc:
                raw = self._raw_draws()
                sample_stats = {
                    new: by_chain(raw[old].to_numpy())
                    for old, new in _SAMPLE_STATS.items()
                    if old in raw.columns
                }
                sample_stats["diverging"] = sample_stats["diverging"].astype(bool)
            self._inference_data = az.from_dict(
                posterior=posterior, sample_stats=sample_stats
            )
        return self._inference_data

    def summary(
        self,
        probs: Sequence["custom_types.Float"] = DEFAULT_PROBS,
        robust: bool = False,
        pars: Union[None, str, Sequence[str]] = None,
    ) -> pd.DataFrame:
        """Summary of the posterior draws.

        :param probs: Probabilities of the reported quantiles. Defaults to
            (0.025, 0.975).
        :type probs: Sequence[custom_types.Float]
        :param robust: Whether to report the median and the median absolute
            deviation. Defaults to False.
        :type robust: bool
        :param pars: Regular expressions selecting parameters. Defaults to None
            (all parameters except ``lp__``).
        :type pars: Union[None, str, Sequence[str]]

        :returns: One row per parameter. MCMC fits also report R-hat and the bulk
            and tail effective sample sizes.
        :rtype: pd.DataFrame
        """
        names = extract_pars(pars, [name for name in self.parnames if name != "lp__"])
        summary = get_summary(self.draws[names], probs=probs, robust=robust)
        if self.is_mcmc and names:
            diagnostics = az.summary(
                self.inference_data, var_names=names, kind="diagnostics"
            )
            summary["Rhat"] = diagnostics.loc[names, "r_hat"].to_numpy()
            summary["Bulk_ESS"] = diagnostics.loc[names, "ess_bulk"].to_numpy()
            summary["Tail_ESS"] = diagnostics.loc[names, "ess_tail"].to_numpy()
        return summary

    def fixef(
        self, probs: Sequence["custom_types.Float"] = DEFAULT_PROBS, robust: bool = False
    ) -> pd.DataFrame:
        """Summary of the population-level effects, indexed by coefficient."""
        names = extract_pars(r"^(b|bm|bcs)_", self.parnames)
        summary = get_summary(self.draws[names], probs=probs, robust=robust)
        summary.index = [re.sub(r"^b_", "", name) for name in names]
        return summary

    def ranef(self, robust: bool = False) -> dict[str, pd.DataFrame]:
        """Posterior estimates of the group-level effects.

        :param robust: Whether to use the posterior median instead of the mean.
            Defaults to False.
        :type robust: bool

        :returns: One data frame per grouping factor with one row per level and
            one column per coefficient (prefixed by the predictor name of
            non-linear and distributional parameters)
        :rtype: dict[str, pd.DataFrame]
        """
        estimates: dict[str, dict[str, dict[str, float]]] = {}
        for name in extract_pars(r"^r_", self.parnames):
            match = _RANEF_NAME.match(name)
            if match is None:
                continue
            group, nlpar, level, coef = match.groups()
            column = f"{nlpar}_{coef}" if nlpar else coef
            values = self.draws[name].to_numpy()
            estimate = np.median(values) if robust else values.mean()
            estimates.setdefault(group, {}).setdefault(column, {})[level] = estimate

        out = {}
        for group, columns in estimates.items():
            frame = pd.DataFrame(columns)
            frame = frame.loc[[lev for lev in self.design.levels[group] if lev in frame.index]]
            out[group] = frame
        return out

    def varcorr(self, robust: bool = False) -> dict[str, dict[str, pd.DataFrame]]:
        """Variance components of the group-level effects and the residuals.

        :param robust: Whether to use posterior medians instead of means.
            Defaults to False.
        :type robust: bool

        :returns: Per grouping factor, the summary of the standard deviations
            ("sd") and the posterior estimates of the correlation ("cor") and
            covariance ("cov") matrices. Models with a residual standard
            deviation have an additional "RESIDUAL__" entry.
        :rtype: dict[str, dict[str, pd.DataFrame]]
        """
        out = {}
        ranef = self.ranef_table
        for group in dict.fromkeys(ranef["group"]) if ranef is not None else ():
            rows = ranef.loc[ranef["group"] == group]
            coefs = [
                f"{row['nlpar']}_{row['coef']}" if row["nlpar"] else row["coef"]
                for _, row in rows.iterrows()
            ]
            sd_names = [f"sd_{group}__{coef}" for coef in coefs]
            sd = self.draws[sd_names].to_numpy()
            cor = np.column_stack(
                [
                    self.draws[name].to_numpy()
                    if name in self.draws.columns
                    else np.zeros(len(sd))
                    for name in get_cornames(coefs, type_=f"cor_{group}", brackets=False)
                ]
            ) if len(coefs) > 1 else None
            cov_matrix, cor_matrix = get_cov_matrix(sd, cor)
            estimate = np.median if robust else np.mean
            sd_summary = get_summary(self.draws[sd_names], robust=robust)
            sd_summary.index = coefs
            out[group] = {
                "sd": sd_summary,
                "cor": pd.DataFrame(estimate(cor_matrix, axis=0), index=coefs, columns=coefs),
                "cov": pd.DataFrame(estimate(cov_matrix, axis=0), index=coefs, columns=coefs),
            }

        if "sigma" in self.draws.columns:
            residual = get_summary(self.draws[["sigma"]], robust=robust)
            out["RESIDUAL__"] = {"sd": residual}
        return out

    def diagnose(
        self,
        max_tree_depth: Optional["custom_types.Integer"] = None,
        ebfmi_thresh: "custom_types.Float" = DEFAULT_EBFMI_THRESH,
        r_hat_thresh: "custom_types.Float" = DEFAULT_RHAT_THRESH,
        ess_thresh: "custom_types.Float" = DEFAULT_ESS_THRESH,
        silent: bool = False,
    ) -> tuple[dict[str, npt.NDArray], dict[str, list[str]]]:
        """Run the sampler and convergence diagnostics of an MCMC fit.

        Tests are considered failures when:

        - **E-BFMI**: the energy Bayesian fraction of missing information of a
          chain is below ``ebfmi_thresh``
        - **Tree Depth**: a draw reached the maximum tree depth
        - **Divergence**: a draw diverged
        - **R-hat**: the split R-hat of a parameter is at least ``r_hat_thresh``
        - **ESS**: the bulk or tail effective sample size of a parameter is at most
          ``ess_thresh`` per chain

        :param max_tree_depth: Maximum tree depth. Defaults to None (the value the
            sampler ran with).
        :type max_tree_depth: Optional[custom_types.Integer]
        :param ebfmi_thresh: E-BFMI threshold. Defaults to 0.2.
        :type ebfmi_thresh: custom_types.Float
        :param r_hat_thresh: R-hat threshold. Defaults to 1.01.
        :type r_hat_thresh: custom_types.Float
        :param ess_thresh: ESS threshold per chain. Defaults to 100.
        :type ess_thresh: custom_types.Float
        :param silent: Whether to suppress the printed report. Defaults to False.
        :type silent: bool

        :returns: Indices of the failed chains or draws per sampler test, and the
            names of the failed parameters per parameter test
        :rtype: tuple[dict[str, npt.NDArray], dict[str, list[str]]]

        :raises ValueError: If the model was not fitted by MCMC
        """
        if not self.is_mcmc:
            raise ValueError("Diagnostics are only available for models fitted by sampling.")
        idata = self.inference_data
        if max_tree_depth is None:
            max_tree_depth = self.fit.metadata.cmdstan_config.get("max_depth", 10)

        # Sampler tests
        # pylint: disable=no-member
        tree_depth = idata.sample_stats["tree_depth"].values.ravel()
        diverging = idata.sample_stats["diverging"].values.ravel()
        # pylint: enable=no-member
        ebfmi = np.atleast_1d(az.bfmi(idata))
        sample_failures = {
            "low_ebfmi": np.flatnonzero(ebfmi < ebfmi_thresh),
            "max_tree_depth_reached": np.flatnonzero(tree_depth >= max_tree_depth),
            "diverged": np.flatnonzero(diverging),
        }
        totals = {
            "low_ebfmi": (len(ebfmi), "chains"),
            "max_tree_depth_reached": (len(tree_depth), "draws"),
            "diverged": (len(diverging), "draws"),
        }

        # Parameter tests
        names = [name for name in self.parnames if name != "lp__"]
        diagnostics = az.summary(idata, var_names=names, kind="diagnostics")
        ess_limit = ess_thresh * idata.posterior.sizes["chain"]  # pylint: disable=no-member
        variable_failures = {
            "r_hat": diagnostics.index[diagnostics["r_hat"] >= r_hat_thresh].tolist(),
            "ess_bulk": diagnostics.index[diagnostics["ess_bulk"] <= ess_limit].tolist(),
            "ess_tail": diagnostics.index[diagnostics["ess_tail"] <= ess_limit].tolist(),
        }

        if silent:
            return sample_failures, variable_failures

        # Report
        message_map = {
            "low_ebfmi": "had a low energy",
            "max_tree_depth_reached": "reached the maximum tree depth",
            "diverged": "diverged",
        }
        header = "Sample diagnostic tests results' summaries:"
        print(header)
        print("-" * len(header))
        for test, failed in sample_failures.items():
            total, unit = totals[test]
            print(
                f"{len(failed)} of {total} ({len(failed) / total:.2%}) {unit} "
                f"{message_map[test]}."
            )
        print()
        header = "Variable diagnostic tests results' summaries:"
        print(header)
        print("-" * len(header))
        for metric, failed in variable_failures.items():
            print(
                f"{len(failed)} of {len(names)} ({len(failed) / max(len(names), 1):.2%}) "
                f"parameters failed the {metric} test"
                + (f": {', '.join(failed)}" if failed else ".")
            )

        return sample_failures, variable_failures
