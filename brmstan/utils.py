# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Utility functions for the brmstan package.

This module provides helpers that support the core functionality of brmstan,
including:

    - Lazy importing mechanisms for performance optimization
    - Splitting and inspecting formula expressions at the top nesting level
    - Turning arbitrary term labels into valid parameter names

Users will not typically need to interact with this module directly--it is designed
to be used internally by brmstan.
"""

from __future__ import annotations

import importlib.util
import keyword
import re
import sys

# Identifiers of formula expressions. Dots are allowed as in R variable names.
_IDENTIFIER = re.compile(r"[A-Za-z_.][A-Za-z0-9_.]*")
_NUMBER = re.compile(r"^[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?$")
_QUOTED = re.compile(r"\"[^\"]*\"|'[^']*'")


def lazy_import(name: str):
    """Import a module only when it is first needed.

    This function implements lazy module importing to improve package import
    performance by deferring module loading until actual use.

    :param name: The fully qualified module name to import
    :type name: str

    :returns: The imported module
    :rtype: module

    :raises ImportError: If the specified module cannot be found

    .. note::
        If the module is already imported, returns the cached version
        from sys.modules for efficiency.
    """
    # Check if the module is already imported
    if name in sys.modules:
        return sys.modules[name]

    # If not, import it lazily (modified from here:
    # https://docs.python.org/3/library/importlib.html#implementing-lazy-imports)
    spec = importlib.util.find_spec(name)
    if spec is None:
        raise ImportError(f"Module '{name}' not found.")

    # Create the module with a lazy loader
    spec.loader = importlib.util.LazyLoader(spec.loader)
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    spec.loader.exec_module(module)

    return module


def split_top_level(expr: str, separators: str = "+") -> list[str]:
    """Split an expression at separators that are not nested in brackets.

    :param expr: Expression to split
    :type expr: str
    :param separators: Characters at which to split. Defaults to "+".
    :type separators: str

    :returns: Stripped parts of the expression. Empty parts are kept so that
        callers can tell ``a||b`` from ``a|b``.
    :rtype: list[str]

    Example:
        >>> split_top_level("x + (1 + z | g) + s(w, k = 5)")
        ['x', '(1 + z | g)', 's(w, k = 5)']
    """
    parts, depth, current, quote = [], 0, [], None
    for char in expr:
        if quote is not None:
            if char == quote:
                quote = None
        elif char in "\"'":
            quote = char
        elif char in "([{":
            depth += 1
        elif char in ")]}":
            depth -= 1
        elif depth == 0 and char in separators:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    parts.append("".join(current).strip())

    return parts


def split_terms(rhs: str) -> list[tuple[str, str]]:
    """Split the right-hand side of a formula into signed terms.

    :param rhs: Right-hand side of a formula
    :type rhs: str

    :returns: Pairs of sign ("+" or "-") and term
    :rtype: list[tuple[str, str]]
    """
    terms, depth, current, sign = [], 0, [], "+"
    for char in rhs:
        if char in "([{":
            depth += 1
        elif char in ")]}":
            depth -= 1
        elif depth == 0 and char in "+-":
            # A sign directly after another sign or at the start belongs to the term
            if "".join(current).strip():
                terms.append((sign, "".join(current).strip()))
                current = []
                sign = char
                continue
            sign = "-" if (sign == "-") != (char == "-") else "+"
            continue
        current.append(char)
    if "".join(current).strip():
        terms.append((sign, "".join(current).strip()))

    return terms


def split_call(term: str) -> tuple[str, str] | None:
    """Split a function call term into its name and argument string.

    :param term: Term such as ``"cens(x, y)"``
    :type term: str

    :returns: Name and argument string, or None if the term is not a single call
    :rtype: Optional[tuple[str, str]]
    """
    match = re.match(r"^\s*([A-Za-z_.][A-Za-z0-9_.]*)\s*\((.*)\)\s*$", term, re.DOTALL)
    if match is None:
        return None

    # The closing bracket must belong to the opening one
    depth = 0
    for char in match.group(2):
        depth += char == "("
        depth -= char == ")"
        if depth < 0:
            return None

    return match.group(1), match.group(2)


def strip_parens(expr: str) -> str:
    """Remove brackets enclosing a whole expression.

    :param expr: Expression, such as ``"((1 | g))"``
    :type expr: str

    :returns: Expression without enclosing brackets
    :rtype: str
    """
    expr = expr.strip()
    while expr.startswith("(") and expr.endswith(")"):
        depth = 0
        for i, char in enumerate(expr):
            depth += char == "("
            depth -= char == ")"
            if depth == 0 and i < len(expr) - 1:
                return expr
        expr = expr[1:-1].strip()
    return expr


def parse_args(argstring: str) -> tuple[list[str], dict[str, str]]:
    """Split the argument string of a call into positional and keyword arguments.

    :param argstring: Argument string, such as ``"x, k = 5"``
    :type argstring: str

    :returns: Positional arguments and keyword arguments, all as strings
    :rtype: tuple[list[str], dict[str, str]]
    """
    args, kwargs = [], {}
    for arg in split_top_level(argstring, ","):
        if not arg:
            continue
        if match := re.match(r"^([A-Za-z_.][A-Za-z0-9_.]*)\s*=(?!=)\s*(.+)$", arg):
            kwargs[match.group(1)] = match.group(2).strip()
        else:
            args.append(arg)
    return args, kwargs


def is_number(expr: str) -> bool:
    """Check whether an expression is a numeric literal."""
    return bool(_NUMBER.match(expr.strip()))


def all_vars(expr: str) -> list[str]:
    """Find the variables an expression refers to.

    Function names, keyword argument names, numbers, string literals and Python
    keywords are not variables.

    :param expr: Expression such as ``"log(x) + I(z ** 2) + C(g, Treatment('a'))"``
    :type expr: str

    :returns: Names of the variables, in order of first appearance
    :rtype: list[str]
    """
    expr = _QUOTED.sub(" ", expr)
    found = []
    for match in _IDENTIFIER.finditer(expr):
        name = match.group(0)

        # Skip parts of numbers such as the `e` in `1e5` or a trailing `.5`
        if match.start() > 0 and (expr[match.start() - 1].isdigit()):
            continue
        if name.strip(".") == "" or is_number(name):
            continue

        rest = expr[match.end() :].lstrip()
        if rest.startswith("("):
            continue
        if rest.startswith("=") and not rest.startswith("=="):
            continue
        if keyword.iskeyword(name) or name in {"T", "F", "TRUE", "FALSE", "NA"}:
            continue
        if name not in found:
            found.append(name)

    return found


def replace_vars(expr: str, mapping: dict[str, str]) -> str:
    """Replace variables of an expression.

    Variables are recognized as in :py:func:`all_vars`; function names and
    keyword argument names are never replaced.

    :param expr: Expression such as ``"a * exp(-b * x)"``
    :type expr: str
    :param mapping: Replacement of every variable to be replaced
    :type mapping: dict[str, str]

    :returns: The expression with the variables replaced
    :rtype: str

    Example:
        >>> replace_vars("a * exp(b)", {"a": "eta_a[n]", "b": "eta_b[n]"})
        'eta_a[n] * exp(eta_b[n])'
    """

    def substitute(match: re.Match) -> str:
        name = match.group(0)
        if match.start() > 0 and expr[match.start() - 1].isdigit():
            return name
        rest = expr[match.end() :].lstrip()
        if rest.startswith("(") or (rest.startswith("=") and not rest.startswith("==")):
            return name
        return mapping.get(name, name)

    return _IDENTIFIER.sub(substitute, expr)


def rename(label: str) -> str:
    """Turn a design-matrix column label into a valid parameter name.

    Brackets, quotes, commas and spaces are removed. Interactions keep their
    colon.

    :param label: Column label, such as ``"treat[T.b]:x"``
    :type label: str

    :returns: Sanitised name, such as ``"treatb:x"``
    :rtype: str

    Example:
        >>> rename("C(g)[T.2]")
        'Cg2'
    """
    label = label.replace("[T.", "").replace(" ", "")
    return re.sub(r"[\[\]\(\)\"',=]", "", label)

