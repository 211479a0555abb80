# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Custom type definitions for brmstan.

This module provides type aliases and unions for the objects passed around the
brmstan package, including model specification inputs and data containers.

All imports are conditional on TYPE_CHECKING to avoid circular imports while
maintaining proper type hints for development and documentation tools.
"""

from typing import TYPE_CHECKING, Union

# Everything in this file is only imported if TYPE_CHECKING is True.
if TYPE_CHECKING:

    import numpy as np
    import numpy.typing as npt
    import pandas as pd

    from brmstan.formula import brmsformula
    from brmstan.model import autocor, family

# Scalar types
Integer = Union[int, "np.integer"]
"""Type alias for integer values.

Accepts both Python's built-in int and NumPy integer types.

:type: Union[int, np.integer]
"""

Float = Union[float, "np.floating"]
"""Type alias for floating-point values.

Accepts both Python's built-in float and NumPy floating-point types.

:type: Union[float, np.floating]
"""

# Model specification types
FormulaType = Union[str, "brmsformula.BrmsFormula"]
"""Type alias for model formulas.

Either a plain formula string such as ``"y ~ x + (1 | g)"`` or a
:py:class:`~brmstan.formula.brmsformula.BrmsFormula`.

:type: Union[str, brmsformula.BrmsFormula]
"""

FamilyType = Union[str, tuple, list, "family.Family"]
"""Type alias for response distributions.

A family name, a ``(name, link)`` pair or a
:py:class:`~brmstan.model.family.Family`.

:type: Union[str, tuple, list, family.Family]
"""

AutocorType = Union[None, "autocor.CorArma", "autocor.CovFixed", "autocor.CorBsts"]
"""Type alias for correlation structures.

:type: Union[None, autocor.CorArma, autocor.CovFixed, autocor.CorBsts]
"""

DataType = Union["pd.DataFrame", dict]
"""Type alias for model data. Dictionaries are converted to data frames.

:type: Union[pd.DataFrame, dict]
"""

StandataValue = Union[int, float, "npt.NDArray"]
"""Type alias for the values of the data passed to Stan.

:type: Union[int, float, npt.NDArray]
"""

Standata = dict[str, StandataValue]
"""Type alias for the complete data passed to Stan.

:type: dict[str, StandataValue]
"""
