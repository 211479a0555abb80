# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Stan integration of brmstan.

This submodule turns a model description into a complete Stan program and
runs that program through CmdStan.

**Key Components:**
    - Code Generation: :py:func:`make_stancode` assembles the program from the
      pieces contributed by the linear predictors, the response distribution,
      the correlation structure and the priors
    - Custom Functions: Stan functions that extend the base language with the
      distributions and helpers the generated programs need, stored as ``.stan``
      snippets in the ``functions`` directory and inlined on demand
    - Compilation Management: :py:class:`~brmstan.model.stan.stan_model.StanModel`
      compiles generated programs with caching and wraps the CmdStan methods
"""

import os.path

# We need the path of the directory of the current file. This is used to include
# the custom stan functions.
STAN_INCLUDE_PATHS = [os.path.abspath(os.path.dirname(__file__))]
"""
A list of absolute paths used by the Stan compiler to locate bundled Stan
function snippets.
"""

FUNCTIONS_DIR = os.path.join(STAN_INCLUDE_PATHS[0], "functions")
"""Directory of the bundled Stan function snippets."""

# pylint: disable=wrong-import-position
from brmstan.model.stan.stancode import make_stancode
