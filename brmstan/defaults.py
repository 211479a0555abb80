# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Default configuration values for brmstan package components.

This module centralizes default values used across the brmstan package,
including sampler settings, default prior distributions, code formatting and
Stan model configuration options, among others.

The module is organized into logical groups covering:
    - Sampling defaults
    - Default priors of each parameter class
    - Formula term defaults
    - Stan model compilation and execution settings
    - Diagnostic thresholds for model validation

Default values cannot be programmatically altered. Every function that uses one
of them accepts a keyword argument overriding it for a single call.
"""

from typing import Any

# Sampling defaults
DEFAULT_CHAINS: int = 4
"""Default number of Markov chains.

:type: int
"""

DEFAULT_ITER: int = 2000
"""Default total number of iterations per chain, warmup included.

:type: int
"""

DEFAULT_THIN: int = 1
"""Default thinning rate of the stored draws.

:type: int
"""

DEFAULT_ALGORITHM: str = "sampling"
"""Default fitting algorithm. One of 'sampling', 'meanfield' and 'fullrank'.

:type: str
"""

DEFAULT_PROBS: tuple[float, float] = (0.025, 0.975)
"""Default lower and upper quantiles of the credible intervals in summaries.

:type: tuple[float, float]
"""

# Default priors
DEFAULT_SCALE_PRIOR: str = "student_t(3, 0, 10)"
"""Default prior of standard deviations (classes sd, sigma, sds and sigmaLL).

:type: str
"""

DEFAULT_CLASS_PRIORS: dict[str, str] = {
    "b": "",
    "Intercept": "",
    "sd": DEFAULT_SCALE_PRIOR,
    "cor": "lkj(1)",
    "sds": DEFAULT_SCALE_PRIOR,
    "sigma": DEFAULT_SCALE_PRIOR,
    "nu": "gamma(2, 0.1)",
    "shape": "gamma(0.01, 0.01)",
    "phi": "gamma(0.01, 0.01)",
    "kappa": "gamma(2, 0.01)",
    "zi": "beta(1, 1)",
    "hu": "beta(1, 1)",
    "ar": "",
    "ma": "",
    "arr": "",
    "sigmaLL": DEFAULT_SCALE_PRIOR,
    "rescor": "lkj(1)",
    "delta": "",
    "simplex": "",
}
"""Default prior of every parameter class. An empty string denotes an improper
flat prior over the support of the parameter.

:type: dict[str, str]
"""

# Formula term defaults
DEFAULT_SPLINE_K: int = 10
"""Default dimension of the basis of smooth terms.

:type: int
"""

DEFAULT_SPLINE_DEGREE: int = 3
"""Default polynomial degree of the B-spline bases of smooth terms.

:type: int
"""

# Code generation defaults
DEFAULT_INDENTATION: int = 2
"""Default number of spaces per indentation level of generated Stan code.

:type: int
"""

# Defaults for the Stan model
DEFAULT_FORCE_COMPILE: bool = False
"""Default setting for forcing Stan model recompilation.

When False, uses cached compiled models when available. When True,
forces recompilation even if a cached version exists.

:type: bool
"""

DEFAULT_STANC_OPTIONS: dict[str, Any] = {"O1": True}
"""Default options passed to the Stan compiler (stanc).

:type: dict[str, bool]
"""

DEFAULT_CPP_OPTIONS: dict[str, Any] = {"STAN_THREADS": True}
"""Default C++ compilation options for Stan models.

Enables threading support in compiled Stan models for improved
performance on multi-core systems.

:type: dict[str, bool]
"""

DEFAULT_USER_HEADER: str | None = None
"""Default user header content for Stan models.

Custom C++ code that can be included in Stan model compilation.
None indicates no custom header by default.

:type: str | None
"""

DEFAULT_MODEL_NAME: str = "model"
"""Default name for generated Stan models.

:type: str
"""

# Defaults for Stan diagnostics
DEFAULT_EBFMI_THRESH: float = 0.2
"""Default threshold for Energy Bayesian Fraction of Missing Information (E-BFMI).

Values below this threshold may indicate inefficient sampling and
potential bias in MCMC results.

:type: float
"""

DEFAULT_ESS_THRESH: int = 100  # Per chain
"""Default threshold for Effective Sample Size (ESS) per chain.

:type: int
"""

DEFAULT_RHAT_THRESH: float = 1.01
"""Default threshold for R-hat convergence diagnostic.

Values above this threshold indicate potential convergence issues
in MCMC sampling across chains.

:type: float
"""
