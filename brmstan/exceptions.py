# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Custom exception classes for the brmstan package.

This module defines a hierarchy of custom exceptions used throughout the
brmstan package. All custom exceptions inherit from the base BrmstanError class
to allow for unified exception handling when needed. The specific exceptions
also inherit from ValueError, as every one of them reports an invalid argument
(formula, family, prior, data or correlation structure) passed by the user.
"""


class BrmstanError(Exception):
    """Base class for all exceptions in the brmstan package.

    :param message: Error message describing the exception
    :type message: str

    Example:
        >>> try:
        ...     code = bst.make_stancode("y ~ x", data=df, family="poisson")
        ... except BrmstanError as e:
        ...     print(f"brmstan error occurred: {e}")
    """


class FormulaError(BrmstanError, ValueError):
    """Raised when a model formula cannot be parsed or is not supported.

    This covers invalid addition arguments, unknown special terms, malformed
    group-level terms and formulas for parameters the family does not have.
    """


class FamilyError(BrmstanError, ValueError):
    """Raised when a family or link function is unknown or not allowed."""


class PriorError(BrmstanError, ValueError):
    """Raised when a prior does not correspond to a model parameter or is invalid."""


class DataError(BrmstanError, ValueError):
    """Raised when the data do not fit the model.

    Examples are missing variables, responses outside the support of the
    response distribution and covariance matrices that are not positive definite.
    """


class AutocorError(BrmstanError, ValueError):
    """Raised when a correlation structure cannot be combined with the model."""
