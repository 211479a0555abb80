# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Model formulas and their interpretation."""

from brmstan.formula.brmsformula import bf, BrmsFormula, update_formula
from brmstan.formula.effects import (
    Effects,
    extract_effects,
    GroupTerm,
    LinearEffects,
    nl_to_stan,
    SmoothTerm,
)
