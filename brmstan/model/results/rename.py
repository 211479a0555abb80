# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Interpretable names of the parameters of fitted models.

The Stan programs number coefficients, grouping factors and smooth terms. The
names of their draws are translated back to the names of the model terms, for
example ``b[2]`` to ``b_x``, ``sd_1[1]`` to ``sd_g__Intercept`` and
``r_1_1[3]`` to ``r_g[c,Intercept]``. Helper quantities that only serve the
sampler are dropped.
"""

from __future__ import annotations

import re

from typing import Callable, Sequence, TYPE_CHECKING

from brmstan.model.results.helpers import get_cornames

if TYPE_CHECKING:
    from brmstan.model.data.standata import DesignInfo

# Name of a scalar or an element of a container in CmdStan output
_STAN_NAME = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)(?:\[([0-9,]+)\])?$")

# Helper quantities that are not reported
_EXCLUDED = re.compile(
    r"^(temp_.*|z_\d+|L_\d+|Cor_\d+|r_\d+|zs_.*|Rescor|Lrescor|hs_local|hs_global)$"
)

# Element renamers take the indices of an element and return its new name
Renamer = Callable[[tuple[int, ...]], str]


def _vector(names: Sequence[str], prefix: str) -> Renamer:
    return lambda idx: f"{prefix}{names[idx[0] - 1]}"


def _keep_index(new_base: str) -> Renamer:
    return lambda idx: f"{new_base}[{','.join(map(str, idx))}]" if idx else new_base


def _predictor_renamers(design: "DesignInfo") -> dict[str, Renamer]:
    renamers: dict[str, Renamer] = {}
    family = design.family
    for info in design.predictors.values():
        sfx = info.suffix
        coefs = info.fixef[1:] if info.centered else info.fixef
        if family.is_categorical and not info.is_auxpar:
            for k in range(2, design.ncat + 1):
                renamers[f"b_{k}"] = _vector(coefs, f"b_{k}_")
        else:
            renamers[f"b{sfx}"] = _vector(coefs, f"b{sfx}_")

        if info.mono:
            renamers[f"bm{sfx}"] = _vector(info.mono, f"bm{sfx}_")
            for k, var in enumerate(info.mono, start=1):
                renamers[f"simplex{sfx}_{k}"] = _keep_index(f"simplex{sfx}_{var}")
        if info.cse:
            renamers["bcs"] = (
                lambda idx, cse=info.cse: f"bcs_{cse[idx[0] - 1]}[{idx[1]}]"
            )
        for i, (label, nblocks) in enumerate(info.smooths, start=1):
            for j in range(1, nblocks + 1):
                renamers[f"sds{sfx}_{i}_{j}"] = _keep_index(f"sds{sfx}_{label}_{j}")
                renamers[f"s{sfx}_{i}_{j}"] = _keep_index(f"s{sfx}_{label}_{j}")
    return renamers


def _ranef_renamers(design: "DesignInfo") -> dict[str, Renamer]:
    renamers: dict[str, Renamer] = {}
    if design.ranef is None or len(design.ranef) == 0:
        return renamers

    for gid in design.ids:
        rows = design.id_ranef(gid)
        group = rows["group"].iloc[0]
        levels = design.levels[group]
        coefs = [
            f"{row['nlpar']}_{row['coef']}" if row["nlpar"] else row["coef"]
            for _, row in rows.iterrows()
        ]
        renamers[f"sd_{gid}"] = _vector(coefs, f"sd_{group}__")
        renamers[f"cor_{gid}"] = _vector(
            get_cornames(coefs, type_=f"cor_{group}", brackets=False), ""
        )
        renamers[f"prior_sd_{gid}"] = _keep_index(f"prior_sd_{group}")
        for _, row in rows.iterrows():
            nlpar = f"__{row['nlpar']}" if row["nlpar"] else ""
            stan_nlpar = f"_{row['nlpar']}" if row["nlpar"] else ""
            renamers[f"r_{gid}{stan_nlpar}_{row['cn']}"] = (
                lambda idx, base=f"r_{group}{nlpar}", coef=row["coef"], levels=levels:
                f"{base}[{levels[idx[0] - 1]},{coef}]"
            )
    return renamers


def _multivariate_renamers(design: "DesignInfo") -> dict[str, Renamer]:
    responses = design.effects.response
    return {
        "sigma": _vector(responses, "sigma_"),
        "rescor": _vector(get_cornames(responses, type_="rescor", brackets=False), ""),
    }


def rename_pars(names: Sequence[str], design: "DesignInfo") -> dict[str, str]:
    """Interpretable names of the quantities of a fitted model.

    :param names: Names of the quantities in the CmdStan output, such as
        ``"b[1]"`` or ``"L_1[2,1]"``
    :type names: Sequence[str]
    :param design: Design of the model
    :type design: DesignInfo

    :returns: Mapping from the names of reported quantities to their new names.
        Helper quantities and sampler diagnostics other than ``lp__`` are not
        part of the mapping.
    :rtype: dict[str, str]

    Example:
        >>> rename_pars(["lp__", "b[1]", "sd_1[1]", "z_1[1,3]"], design)
        {'lp__': 'lp__', 'b[1]': 'b_x', 'sd_1[1]': 'sd_g__Intercept'}
    """
    renamers = _predictor_renamers(design)
    renamers.update(_ranef_renamers(design))
    if design.effects.is_multivariate:
        renamers.update(_multivariate_renamers(design))

    mapping = {}
    for name in names:
        if name.endswith("__") and name != "lp__":
            continue
        match = _STAN_NAME.match(name)
        if match is None:
            mapping[name] = name
            continue
        base = match.group(1)
        if _EXCLUDED.match(base):
            continue
        idx = (
            tuple(int(i) for i in match.group(2).split(",")) if match.group(2) else ()
        )
        renamer = renamers.get(base)
        mapping[name] = renamer(idx) if renamer is not None else name
    return mapping
