# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Compilation and execution of generated Stan programs.

:py:class:`StanModel` extends CmdStanPy's ``CmdStanModel`` so that a program
generated by :py:func:`~brmstan.model.stan.make_stancode` is written to disk,
formatted and compiled in one step, and so that its methods know the data of the
model they were built for.

Users will not normally interact with this module directly. Instead, they will
use it implicitly when fitting a model via :py:func:`~brmstan.model.brm.brm`.
"""

from __future__ import annotations

import functools
import os.path
import warnings
import weakref

from tempfile import TemporaryDirectory
from typing import Any, Callable, Optional, ParamSpec, TYPE_CHECKING, TypeVar

from cmdstanpy import CmdStanModel, format_stan_file

import brmstan

from brmstan.defaults import (
    DEFAULT_CHAINS,
    DEFAULT_CPP_OPTIONS,
    DEFAULT_FORCE_COMPILE,
    DEFAULT_MODEL_NAME,
    DEFAULT_STANC_OPTIONS,
    DEFAULT_USER_HEADER,
)
from brmstan.model import stan

if TYPE_CHECKING:
    from brmstan import custom_types

# Parameter and return types for decorated functions
P = ParamSpec("P")
R = TypeVar("R")


def _update_cmdstanpy_func(func: Callable[P, R], warn: bool = False) -> Callable[P, R]:
    """Decorator completing the arguments of CmdStanModel methods.

    The data default to the data the model was built with and the seed is drawn
    from the global random number generator when none is given.

    :param func: CmdStanModel function to enhance
    :type func: Callable[P, R]
    :param warn: Whether to warn about experimental status. Defaults to False.
    :type warn: bool

    :returns: Enhanced function
    :rtype: Callable[P, R]
    """

    @functools.wraps(func)
    def inner(*args: P.args, **kwargs: P.kwargs) -> R:
        """Wrapper function for completing inputs."""
        if warn:
            warnings.warn(
                f"{func.__name__} is experimental and has not been thoroughly tested"
                " with brmstan models. Use with caution."
            )

        # Get the Stan model from the first argument
        stan_model = args[0]
        assert isinstance(stan_model, StanModel)

        # Combine args and kwargs into a single dictionary
        kwargs.update(dict(zip(func.__code__.co_varnames[1:], args[1:])))

        # If a seed is not provided, use the global random number generator
        if kwargs.get("seed") is None:
            kwargs["seed"] = int(brmstan.RNG.integers(0, 2**32 - 1))

        # Data default to those of the model
        if kwargs.get("data") is None:
            if stan_model.standata is None:
                raise ValueError(
                    f"The 'data' keyword argument must be provided to {func.__name__}"
                )
            kwargs["data"] = stan_model.standata

        return func(stan_model, **kwargs)

    return inner


class StanModel(CmdStanModel):
    """CmdStanModel built from generated Stan code.

    :param code: Stan program
    :type code: str
    :param standata: Data of the program, used whenever a method is called
        without data. Defaults to None.
    :type standata: Optional[custom_types.Standata]
    :param output_dir: Directory for Stan files and compilation. Defaults to None
        (temporary).
    :type output_dir: Optional[str]
    :param force_compile: Whether to force recompilation. Defaults to False.
    :type force_compile: bool
    :param stanc_options: Options for Stan compiler. Defaults to None (uses
        defaults).
    :type stanc_options: Optional[dict[str, Any]]
    :param cpp_options: Options for C++ compilation. Defaults to None (uses
        defaults).
    :type cpp_options: Optional[dict[str, Any]]
    :param user_header: Custom C++ header code. Defaults to None.
    :type user_header: Optional[str]
    :param model_name: Name for compiled model. Defaults to 'model'.
    :type model_name: str

    :ivar output_dir: Directory containing Stan files
    :ivar stan_executable_path: Path to compiled Stan executable

    An executable already present in the output directory is reused unless
    ``force_compile`` is set, so fitting the same program twice with the same
    output directory compiles it only once.
    """

    def __init__(
        self,
        code: str,
        standata: Optional["custom_types.Standata"] = None,
        output_dir: Optional[str] = None,
        force_compile: bool = DEFAULT_FORCE_COMPILE,
        stanc_options: Optional[dict[str, Any]] = None,
        cpp_options: Optional[dict[str, Any]] = None,
        user_header: Optional[str] = DEFAULT_USER_HEADER,
        model_name: str = DEFAULT_MODEL_NAME,
    ):
        # Set default options
        self._stanc_options = dict(stanc_options or DEFAULT_STANC_OPTIONS)
        cpp_options = cpp_options or DEFAULT_CPP_OPTIONS

        # Add the "include_paths" kwarg
        self._stanc_options["include-paths"] = (
            self._stanc_options.get("include-paths", []) + stan.STAN_INCLUDE_PATHS
        )

        self._code = code
        self.standata = standata

        # Set the output directory
        self._set_output_dir(output_dir)

        # Get the model name
        self.stan_executable_path = os.path.join(self.output_dir, model_name)

        # Write the Stan program. An executable compiled from different code is
        # stale.
        changed = self.write_stan_program()

        # Initialize the CmdStanModel
        super().__init__(
            stan_file=self.stan_program_path,
            exe_file=(
                self.stan_executable_path
                if os.path.exists(self.stan_executable_path)
                and not (force_compile or changed)
                else None
            ),
            force_compile=force_compile or changed,
            stanc_options=self._stanc_options,
            cpp_options=cpp_options,
            user_header=user_header,
        )

    def _set_output_dir(self, output_dir: Optional[str]) -> None:
        """Configure output directory with automatic cleanup for temporary directories.

        :param output_dir: Directory path or None for temporary directory
        :type output_dir: Optional[str]

        :raises FileNotFoundError: If specified directory doesn't exist
        """
        # Make a temporary directory if none is specified. Set up a weak reference
        # to clean up the temporary directory when the model is deleted.
        if output_dir is None:
            tempdir = TemporaryDirectory()
            weakref.finalize(self, tempdir.cleanup)
            output_dir = tempdir.name

        # Make sure the output directory exists
        if not os.path.exists(output_dir):
            raise FileNotFoundError(f"Output directory {output_dir} does not exist.")

        self.output_dir = output_dir

    def write_stan_program(self) -> bool:
        """Write and format the Stan program.

        :returns: Whether the program differs from a program previously written
            to the same path
        :rtype: bool
        """
        previous = None
        if os.path.exists(self.stan_program_path):
            with open(self.stan_program_path, "r", encoding="utf-8") as f:
                previous = f.read()

        # Write the raw code
        with open(self.stan_program_path, "w", encoding="utf-8") as f:
            f.write(self._code)

        # Format the code
        format_stan_file(
            self.stan_program_path,
            overwrite_file=True,
            canonicalize=True,
            stanc_options=self._stanc_options,
        )

        with open(self.stan_program_path, "r", encoding="utf-8") as f:
            return previous is not None and f.read() != previous

    def sample(self, *args, **kwargs):  # pylint: disable=arguments-differ
        """Run the NUTS sampler of CmdStan.

        Arguments are passed to ``CmdStanModel.sample``. Data default to the data
        of the model, the seed to a draw from the global random number generator
        and the number of chains to 4.

        :returns: The CmdStan fit
        :rtype: cmdstanpy.CmdStanMCMC
        """
        updated_parent_sample = _update_cmdstanpy_func(CmdStanModel.sample)

        # Combine args and kwargs into a single dictionary
        kwargs.update(dict(zip(CmdStanModel.sample.__code__.co_varnames[1:], args)))

        # Set the number of chains if not provided
        if kwargs.get("chains") is None:
            kwargs["chains"] = DEFAULT_CHAINS

        return updated_parent_sample(self, **kwargs)

    variational = _update_cmdstanpy_func(CmdStanModel.variational)
    """CmdStanModel.variational with the data of the model."""

    optimize = _update_cmdstanpy_func(CmdStanModel.optimize, warn=True)
    """CmdStanModel.optimize with the data of the model. Experimental feature.

    :warning: This method is experimental and not thoroughly tested.
    """

    generate_quantities = _update_cmdstanpy_func(
        CmdStanModel.generate_quantities, warn=True
    )
    """CmdStanModel.generate_quantities with the data of the model. Experimental
    feature.

    :warning: This method is experimental and not thoroughly tested.
    """

    @property
    def generated_code(self) -> str:
        """Stan program as generated, before formatting."""
        return self._code

    @property
    def stan_program_path(self) -> str:
        """Get path to the generated Stan program file.

        :returns: Full path to .stan file
        :rtype: str
        """
        return self.stan_executable_path + ".stan"
