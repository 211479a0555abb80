# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
brmstan: Bayesian regression models in Stan from regression formulas.

brmstan translates a regression model description (response distribution,
linear and non-linear predictors, group-level terms, priors and correlation
structures) into a Stan program, prepares the data that program expects,
runs the program through CmdStan and post-processes the draws into a fitted
model object with interpretable parameter names.

Key Features:
    - Extended formula syntax for group-level, monotonic, category-specific,
      spline and offset terms on top of patsy design matrices
    - A wide range of response distributions and link functions
    - Distributional and non-linear models
    - Censored, truncated and weighted likelihoods
    - ARMA, ARR, BSTS and fixed-covariance autocorrelation structures
    - Type-safe construction with comprehensive type checking

Global Variables:
    RNG: Global random number generator for reproducible computations
    __version__: Package version string

Example:
    >>> import brmstan as bst
    >>> bst.manual_seed(42)
    >>> code = bst.make_stancode("y ~ x + (1 | g)", data=df)
    >>> fit = bst.brm("y ~ x + (1 | g)", data=df, family="poisson")
"""

from typing import Optional, TYPE_CHECKING

from typeguard import install_import_hook

import numpy as np

# Define the version
__version__ = "0.1.0"

# Set up type checking
install_import_hook("brmstan")

# Define the global random number generator
RNG: np.random.Generator
"""Global random number generator for brmstan.

Seeds passed to the Stan sampler are drawn from this generator whenever the
user does not provide one. It can be seeded using the manual_seed() function
to ensure consistent results across runs.

:type: np.random.Generator
"""

# Get custom types if TYPE_CHECKING is True
if TYPE_CHECKING:
    from brmstan import custom_types


def manual_seed(seed: Optional["custom_types.Integer"] = None):
    """Set the seed for the global random number generator.

    :param seed: Seed value for random number generation. If None, uses
                system entropy to generate a random seed.
    :type seed: Union[custom_types.Integer, None]

    Example:
        >>> import brmstan as bst
        >>> bst.manual_seed(42)
        >>> fit = bst.brm("y ~ x", data=df)  # Sampler seed is now reproducible

    Note:
        This function modifies global state and should typically be called
        once at the beginning of a script or analysis for reproducibility.
    """
    global RNG  # pylint: disable=global-statement
    RNG = np.random.default_rng(seed)


manual_seed()  # Set the seed for the global random number generator

# Import objects that should be easily accessible from the package level
# pylint: disable=wrong-import-position
from brmstan import utils
from brmstan.formula import bf, BrmsFormula
from brmstan.model.autocor import (
    cor_ar,
    cor_arma,
    cor_arr,
    cor_bsts,
    cor_ma,
    cov_fixed,
)
from brmstan.model.family import *  # pylint: disable=wildcard-import
from brmstan.model.prior import get_prior, horseshoe, set_prior
from brmstan.model.data import make_standata
from brmstan.model.stan import make_stancode
from brmstan.model.brm import brm

results = utils.lazy_import("brmstan.model.results")
