# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Containers and formatting of the code of generated Stan programs.

Every part of a model (a linear predictor, the group-level effects of an ID,
the response distribution, a correlation structure) contributes lines to the
blocks of the program through a :py:class:`StanBlocks` object. The
contributions are added together in a fixed order and rendered once, so the
indentation and the semicolons of statements are handled in one place.
"""

from __future__ import annotations

import os.path

from dataclasses import dataclass, field, fields
from typing import Optional, TYPE_CHECKING

from brmstan.defaults import DEFAULT_INDENTATION
from brmstan.model.stan import FUNCTIONS_DIR

if TYPE_CHECKING:
    from brmstan import custom_types


def finalize_line(
    text: str, indentation_level: "custom_types.Integer" = 1
) -> str:
    """Apply indentation and Stan syntax formatting to a single code line.

    :param text: Raw code text to format
    :type text: str
    :param indentation_level: Indentation level. Defaults to 1.
    :type indentation_level: custom_types.Integer

    :returns: Formatted Stan code line
    :rtype: str

    A semicolon is added unless the line is blank, opens or closes a scope,
    already ends with a semicolon or holds a comment.
    """
    # Pad the input text with spaces
    formatted = f"{' ' * DEFAULT_INDENTATION * indentation_level}{text}"

    # Add a semicolon to the end if not a bracket, comment or blank
    if (
        text
        and text[-1] not in {"{", "}", ";"}
        and not text.startswith(("#", "/*", "*"))
        and "//" not in text
    ):
        formatted += ";"

    return formatted


def combine_lines(
    lines: list[str], indentation_level: "custom_types.Integer" = 1
) -> str:
    """Combine multiple Stan code lines with proper formatting.

    Lines opening a scope (ending with ``{``) indent the lines that follow
    them; lines closing a scope (starting with ``}``) dedent themselves.

    :param lines: Code lines without indentation
    :type lines: list[str]
    :param indentation_level: Indentation level of the outermost lines.
        Defaults to 1.
    :type indentation_level: custom_types.Integer

    :returns: Combined and formatted Stan code
    :rtype: str
    """
    # Nothing if no lines
    if len(lines) == 0:
        return ""

    depth = indentation_level
    formatted = []
    for line in lines:
        line = line.strip()
        if line.startswith("}"):
            depth -= 1
        formatted.append(finalize_line(line, depth))
        if line.endswith("{"):
            depth += 1

    return "\n".join(formatted)


def decl(code: str, comment: Optional[str] = None) -> str:
    """A statement with a trailing comment."""
    if comment is None:
        return f"{code};"
    return f"{code};  // {comment}"


def load_function(name: str) -> str:
    """Code of one of the bundled Stan function snippets.

    :param name: Name of the snippet without extension, such as "monotonic"
    :type name: str

    :returns: Code of the functions defined in the snippet
    :rtype: str
    """
    with open(os.path.join(FUNCTIONS_DIR, f"{name}.stan"), encoding="utf-8") as f:
        return f.read().rstrip("\n")


@dataclass
class StanBlocks:
    """Lines of code a model part contributes to each block of the program.

    Declarations (``*_def``) precede statements (``*_comp``) within their block.
    Lines in ``loop`` are placed in a loop over the observations of the model
    block; ``prior`` and ``llh`` hold the sampling statements of the priors and
    of the likelihood.

    :ivar includes: Names of bundled function snippets to inline
    :ivar functions: Generated function definitions
    """

    includes: list[str] = field(default_factory=list)
    functions: list[str] = field(default_factory=list)
    data: list[str] = field(default_factory=list)
    tdata_def: list[str] = field(default_factory=list)
    tdata_comp: list[str] = field(default_factory=list)
    par: list[str] = field(default_factory=list)
    tpar_def: list[str] = field(default_factory=list)
    tpar_comp: list[str] = field(default_factory=list)
    model_def: list[str] = field(default_factory=list)
    model_comp: list[str] = field(default_factory=list)
    loop: list[str] = field(default_factory=list)
    prior: list[str] = field(default_factory=list)
    llh: list[str] = field(default_factory=list)
    gen_def: list[str] = field(default_factory=list)
    gen_comp: list[str] = field(default_factory=list)

    def __iadd__(self, other: "StanBlocks") -> "StanBlocks":
        for block in fields(self):
            getattr(self, block.name).extend(getattr(other, block.name))
        return self

    def _functions_code(self) -> str:
        snippets = [load_function(name) for name in dict.fromkeys(self.includes)]
        snippets += list(dict.fromkeys(self.functions))
        return "\n".join(snippets)

    def _model_lines(self) -> list[str]:
        lines = self.model_def + self.model_comp
        if self.loop:
            lines += ["for (n in 1:N) {"] + self.loop + ["}"]
        lines += ["// priors including all constants"] + self.prior
        if self.llh:
            lines += ["// likelihood including all constants", "if (!prior_only) {"]
            lines += self.llh + ["}"]
        return lines

    def program(self) -> str:
        """Render the complete Stan program.

        :returns: Stan program code
        :rtype: str
        """
        blocks = [
            ("functions", None),
            ("data", self.data),
            ("transformed data", self.tdata_def + self.tdata_comp),
            ("parameters", self.par),
            ("transformed parameters", self.tpar_def + self.tpar_comp),
            ("model", self._model_lines()),
            ("generated quantities", self.gen_def + self.gen_comp),
        ]

        code = []
        for name, lines in blocks:
            # Functions are inserted as formatted code
            if name == "functions":
                if body := self._functions_code():
                    code.append(f"functions {{\n{body}\n}}")
                continue

            # Data, parameters and model blocks are always present
            if not lines and name not in {"data", "parameters", "model"}:
                continue
            body = combine_lines(lines)
            code.append(f"{name} {{\n{body}\n}}" if body else f"{name} {{\n}}")

        return "\n".join(code) + "\n"
