# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Fitted models and post-processing of their draws.

**Key Components:**
    - :py:class:`~brmstan.model.results.brmsfit.BrmsFit`: A fitted model with
      accessors for its draws, summaries, group-level effects, variance
      components and sampler diagnostics
    - :py:func:`~brmstan.model.results.rename.rename_pars`: Translation of the
      parameter names of generated Stan programs to the names of the model terms
    - :py:mod:`~brmstan.model.results.helpers`: Link functions, summaries and
      covariance matrices computed from arrays of draws
"""

from brmstan.model.results.brmsfit import BrmsFit
from brmstan.model.results.helpers import (
    extract_pars,
    get_cornames,
    get_cov_matrix,
    get_cov_matrix_ar1,
    get_cov_matrix_arma1,
    get_cov_matrix_ident,
    get_cov_matrix_ma1,
    get_summary,
    ilink,
    link,
)
from brmstan.model.results.rename import rename_pars
