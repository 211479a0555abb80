# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Response distributions and link functions.

A :py:class:`Family` couples the name of a response distribution with the link
function that maps the main linear predictor onto the distribution's mean (or
location). Families know which auxiliary (distributional) parameters they have,
which link functions they accept and which addition arguments of the formula
they understand. Every family has a constructor function of the same name, for
example :py:func:`poisson` or :py:func:`cumulative`, and
:py:func:`check_family` normalizes user input into a :py:class:`Family`.

Example:
    >>> fam = cumulative("probit")
    >>> fam.is_ordinal
    True
    >>> check_family(("poisson", "sqrt")).link
    'sqrt'
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from brmstan.exceptions import FamilyError

if TYPE_CHECKING:
    from brmstan import custom_types

__all__ = [
    "Family",
    "check_family",
    "gaussian",
    "student",
    "lognormal",
    "exponential",
    "weibull",
    "gamma",
    "inverse_gaussian",
    "von_mises",
    "beta",
    "binomial",
    "bernoulli",
    "poisson",
    "negbinomial",
    "geometric",
    "categorical",
    "cumulative",
    "sratio",
    "cratio",
    "acat",
    "zero_inflated_poisson",
    "zero_inflated_negbinomial",
    "zero_inflated_binomial",
    "zero_inflated_beta",
    "hurdle_poisson",
    "hurdle_negbinomial",
    "hurdle_gamma",
]

# Links of the binomial-like families
_BINARY_LINKS = ("logit", "probit", "probit_approx", "cloglog", "cauchit")

# Allowed links of every family. The first entry is the default.
FAMILY_LINKS: dict[str, tuple[str, ...]] = {
    "gaussian": ("identity", "log", "inverse"),
    "student": ("identity", "log", "inverse"),
    "lognormal": ("identity", "inverse"),
    "exponential": ("log", "identity", "inverse"),
    "weibull": ("log", "identity", "inverse"),
    "gamma": ("log", "identity", "inverse"),
    "inverse_gaussian": ("1/mu^2", "inverse", "identity", "log"),
    "von_mises": ("tan_half", "identity"),
    "beta": _BINARY_LINKS,
    "binomial": _BINARY_LINKS,
    "bernoulli": _BINARY_LINKS,
    "poisson": ("log", "identity", "sqrt"),
    "negbinomial": ("log", "identity", "sqrt"),
    "geometric": ("log", "identity", "sqrt"),
    "categorical": ("logit",),
    "cumulative": _BINARY_LINKS,
    "sratio": _BINARY_LINKS,
    "cratio": _BINARY_LINKS,
    "acat": _BINARY_LINKS,
    "zero_inflated_poisson": ("log",),
    "zero_inflated_negbinomial": ("log",),
    "zero_inflated_binomial": ("logit",),
    "zero_inflated_beta": ("logit",),
    "hurdle_poisson": ("log",),
    "hurdle_negbinomial": ("log",),
    "hurdle_gamma": ("log",),
}
"""Allowed link functions of every family; the first one is the default."""

# Alternative spellings of family names
FAMILY_ALIASES: dict[str, str] = {
    "normal": "gaussian",
    "Gamma": "gamma",
    "inverse.gaussian": "inverse_gaussian",
    "zero_inflated_negative_binomial": "zero_inflated_negbinomial",
    "negative_binomial": "negbinomial",
}

# Auxiliary parameters of each family
_FAMILY_AUXPARS: dict[str, tuple[str, ...]] = {
    "gaussian": ("sigma",),
    "student": ("sigma", "nu"),
    "lognormal": ("sigma",),
    "weibull": ("shape",),
    "gamma": ("shape",),
    "inverse_gaussian": ("shape",),
    "von_mises": ("kappa",),
    "beta": ("phi",),
    "negbinomial": ("shape",),
    "zero_inflated_poisson": ("zi",),
    "zero_inflated_negbinomial": ("shape", "zi"),
    "zero_inflated_binomial": ("zi",),
    "zero_inflated_beta": ("phi", "zi"),
    "hurdle_poisson": ("hu",),
    "hurdle_negbinomial": ("shape", "hu"),
    "hurdle_gamma": ("shape", "hu"),
}

# Links of auxiliary parameters that are predicted by their own formula
AUXPAR_LINKS: dict[str, str] = {
    "sigma": "log",
    "shape": "log",
    "nu": "log",
    "phi": "log",
    "kappa": "log",
    "zi": "logit",
    "hu": "logit",
}
"""Link function of each auxiliary parameter when it has its own linear predictor."""

AUXPAR_BOUNDS: dict[str, str] = {
    "sigma": "<lower=0>",
    "shape": "<lower=0>",
    "nu": "<lower=1>",
    "phi": "<lower=0>",
    "kappa": "<lower=0>",
    "zi": "<lower=0,upper=1>",
    "hu": "<lower=0,upper=1>",
}
"""Stan bounds of each auxiliary parameter when it is a single scalar."""

AUXPAR_DESCRIPTIONS: dict[str, str] = {
    "sigma": "residual SD",
    "shape": "shape parameter",
    "nu": "degrees of freedom",
    "phi": "precision parameter",
    "kappa": "precision parameter",
    "zi": "zero-inflation probability",
    "hu": "hurdle probability",
}


@dataclass(frozen=True)
class Family:
    """A response distribution together with its link function.

    :param family: Name of the response distribution
    :type family: str
    :param link: Name of the link function. Defaults to the family's default link.
    :type link: Optional[str]

    :raises FamilyError: If the family is unknown or the link is not allowed for it
    """

    family: str
    link: str = None

    def __post_init__(self):
        # Resolve aliases of the family name
        name = FAMILY_ALIASES.get(self.family, self.family)
        if name not in FAMILY_LINKS:
            raise FamilyError(
                f"Family '{self.family}' is not supported. Supported families are: "
                + ", ".join(FAMILY_LINKS)
            )
        object.__setattr__(self, "family", name)

        # Resolve the link function
        allowed = FAMILY_LINKS[name]
        link = allowed[0] if self.link is None else self.link
        if link not in allowed:
            raise FamilyError(
                f"Link '{link}' is not supported for family '{name}'. "
                f"Supported links are: {', '.join(allowed)}"
            )
        object.__setattr__(self, "link", link)

    def __str__(self) -> str:
        return f"{self.family}({self.link})"

    @property
    def auxpars(self) -> tuple[str, ...]:
        """Auxiliary parameters of the response distribution."""
        return _FAMILY_AUXPARS.get(self.family, ())

    @property
    def is_linear(self) -> bool:
        """Whether the family is gaussian or student."""
        return self.family in {"gaussian", "student"}

    @property
    def is_lognormal(self) -> bool:
        return self.family == "lognormal"

    @property
    def is_skewed(self) -> bool:
        """Whether the family is a positive continuous family other than lognormal."""
        return self.family in {
            "gamma",
            "weibull",
            "exponential",
            "inverse_gaussian",
        }

    @property
    def is_count(self) -> bool:
        return self.family in {"poisson", "negbinomial", "geometric"}

    @property
    def is_binary(self) -> bool:
        return self.family in {"binomial", "bernoulli"}

    @property
    def is_ordinal(self) -> bool:
        return self.family in {"cumulative", "sratio", "cratio", "acat"}

    @property
    def is_categorical(self) -> bool:
        return self.family == "categorical"

    @property
    def is_zero_inflated(self) -> bool:
        return self.family.startswith("zero_inflated_")

    @property
    def is_hurdle(self) -> bool:
        return self.family.startswith("hurdle_")

    @property
    def is_forked(self) -> bool:
        """Whether the family is a zero-inflated or hurdle mixture."""
        return self.is_zero_inflated or self.is_hurdle

    @property
    def has_trials(self) -> bool:
        """Whether the response is the number of successes out of a number of trials."""
        return self.family in {"binomial", "zero_inflated_binomial"}

    @property
    def has_cat(self) -> bool:
        """Whether the response is a category."""
        return self.is_ordinal or self.is_categorical

    @property
    def is_discrete(self) -> bool:
        """Whether the response distribution is discrete."""
        return (
            self.is_count
            or self.is_binary
            or self.has_cat
            or self.family
            in {
                "zero_inflated_poisson",
                "zero_inflated_negbinomial",
                "zero_inflated_binomial",
                "hurdle_poisson",
                "hurdle_negbinomial",
            }
        )

    @property
    def allows_cse(self) -> bool:
        """Whether category-specific effects can be estimated."""
        return self.family in {"sratio", "cratio", "acat"}


def check_family(family: "custom_types.FamilyType") -> Family:
    """Normalize user input into a :py:class:`Family`.

    :param family: A family, a family name or a (name, link) pair
    :type family: custom_types.FamilyType

    :returns: The corresponding family
    :rtype: Family

    :raises FamilyError: If the input cannot be interpreted as a family
    """
    if isinstance(family, Family):
        return family
    if isinstance(family, str):
        return Family(family)
    if isinstance(family, (tuple, list)) and len(family) == 2:
        return Family(*family)
    raise FamilyError(f"Argument 'family' is invalid: {family!r}")


def gaussian(link: str = "identity") -> Family:
    """Normal response distribution with a residual standard deviation ``sigma``."""
    return Family("gaussian", link)


def student(link: str = "identity") -> Family:
    """Student-t response distribution with residual SD ``sigma`` and ``nu`` degrees
    of freedom."""
    return Family("student", link)


def lognormal(link: str = "identity") -> Family:
    return Family("lognormal", link)


def exponential(link: str = "log") -> Family:
    return Family("exponential", link)


def weibull(link: str = "log") -> Family:
    """Weibull response distribution parameterized by its mean and ``shape``."""
    return Family("weibull", link)


def gamma(link: str = "log") -> Family:
    """Gamma response distribution parameterized by its mean and ``shape``."""
    return Family("gamma", link)


def inverse_gaussian(link: str = "1/mu^2") -> Family:
    return Family("inverse_gaussian", link)


def von_mises(link: str = "tan_half") -> Family:
    """Von Mises response distribution for angles in radians, precision ``kappa``."""
    return Family("von_mises", link)


def beta(link: str = "logit") -> Family:
    """Beta response distribution parameterized by its mean and precision ``phi``."""
    return Family("beta", link)


def binomial(link: str = "logit") -> Family:
    return Family("binomial", link)


def bernoulli(link: str = "logit") -> Family:
    return Family("bernoulli", link)


def poisson(link: str = "log") -> Family:
    return Family("poisson", link)


def negbinomial(link: str = "log") -> Family:
    """Negative binomial response distribution parameterized by its mean and ``shape``."""
    return Family("negbinomial", link)


def geometric(link: str = "log") -> Family:
    return Family("geometric", link)


def categorical(link: str = "logit") -> Family:
    """Unordered categorical response. One linear predictor per non-reference
    category."""
    return Family("categorical", link)


def cumulative(link: str = "logit") -> Family:
    """Cumulative ordinal model."""
    return Family("cumulative", link)


def sratio(link: str = "logit") -> Family:
    """Stopping ratio ordinal model."""
    return Family("sratio", link)


def cratio(link: str = "logit") -> Family:
    """Continuation ratio ordinal model."""
    return Family("cratio", link)


def acat(link: str = "logit") -> Family:
    """Adjacent category ordinal model."""
    return Family("acat", link)


def zero_inflated_poisson(link: str = "log") -> Family:
    return Family("zero_inflated_poisson", link)


def zero_inflated_negbinomial(link: str = "log") -> Family:
    return Family("zero_inflated_negbinomial", link)


def zero_inflated_binomial(link: str = "logit") -> Family:
    return Family("zero_inflated_binomial", link)


def zero_inflated_beta(link: str = "logit") -> Family:
    return Family("zero_inflated_beta", link)


def hurdle_poisson(link: str = "log") -> Family:
    return Family("hurdle_poisson", link)


def hurdle_negbinomial(link: str = "log") -> Family:
    return Family("hurdle_negbinomial", link)


def hurdle_gamma(link: str = "log") -> Family:
    return Family("hurdle_gamma", link)
