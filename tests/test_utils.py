# tests/test_utils.py
"""
Tests for the expression helpers in ``brmstan.utils``.

Covers:
- Splitting expressions at top-level separators and into signed terms
- Recognizing calls, enclosing brackets and call arguments
- Finding and replacing variables of expressions
- Sanitising design matrix labels
- Lazy imports
"""

import pytest

from brmstan import utils


# ==============================================================================
# Tests for splitting expressions
# ==============================================================================


class TestSplitting:
    """Splitting of formula expressions."""

    def test_split_top_level(self):
        """Separators nested in brackets are ignored."""
        assert utils.split_top_level("x + (1 + z | g) + s(w, k = 5)") == [
            "x",
            "(1 + z | g)",
            "s(w, k = 5)",
        ]

    def test_split_top_level_keeps_empty_parts(self):
        """Double separators produce an empty part."""
        assert utils.split_top_level("1 + x || g", "|") == ["1 + x", "", "g"]

    def test_split_top_level_quotes(self):
        """Separators in string literals are ignored."""
        assert utils.split_top_level("C(g, Treatment('a+b')) + x") == [
            "C(g, Treatment('a+b'))",
            "x",
        ]

    def test_split_terms(self):
        """Terms keep the sign they are preceded by."""
        assert utils.split_terms("x - z + (1 | g)") == [
            ("+", "x"),
            ("-", "z"),
            ("+", "(1 | g)"),
        ]

    def test_split_terms_leading_sign(self):
        """A leading minus belongs to the first term."""
        assert utils.split_terms("-1 + x") == [("-", "1"), ("+", "x")]

    def test_split_call(self):
        """Single calls are split into name and arguments."""
        assert utils.split_call("cens(x, y)") == ("cens", "x, y")
        assert utils.split_call("x") is None
        assert utils.split_call("f(x) + g(y)") is None

    def test_strip_parens(self):
        """Only brackets enclosing the whole expression are removed."""
        assert utils.strip_parens("((1 | g))") == "1 | g"
        assert utils.strip_parens("(a) + (b)") == "(a) + (b)"

    def test_parse_args(self):
        """Keyword arguments are told apart from positional ones."""
        assert utils.parse_args("x, k = 5") == (["x"], {"k": "5"})
        assert utils.parse_args("x == 1") == (["x == 1"], {})


# ==============================================================================
# Tests for variables of expressions
# ==============================================================================


class TestVariables:
    """Finding and replacing variables."""

    @pytest.mark.parametrize(
        "expr, expected",
        [
            ("1e5", True),
            ("-2.5", True),
            (".5", True),
            ("x", False),
            ("1x", False),
        ],
    )
    def test_is_number(self, expr, expected):
        """Numeric literals are recognized."""
        assert utils.is_number(expr) is expected

    def test_all_vars(self):
        """Functions, numbers and string literals are not variables."""
        assert utils.all_vars("log(x) + I(z ** 2) + C(g, Treatment('a'))") == [
            "x",
            "z",
            "g",
        ]

    def test_all_vars_skips_keywords_and_exponents(self):
        """Keyword argument names, logical constants and exponents are skipped."""
        assert utils.all_vars("s(x, k = 5) + 1e5 * w + T") == ["x", "w"]

    def test_all_vars_comparison(self):
        """Comparisons are not keyword arguments."""
        assert utils.all_vars("x == 1") == ["x"]

    def test_all_vars_dotted_names(self):
        """Dots are allowed in variable names."""
        assert utils.all_vars("my.var + x") == ["my.var", "x"]

    def test_replace_vars(self):
        """Variables are replaced and function names are kept."""
        assert (
            utils.replace_vars("a * exp(b)", {"a": "eta_a[n]", "b": "eta_b[n]"})
            == "eta_a[n] * exp(eta_b[n])"
        )

    def test_replace_vars_unmapped(self):
        """Variables without replacement are kept."""
        assert utils.replace_vars("a + x", {"a": "A"}) == "A + x"


# ==============================================================================
# Tests for labels and imports
# ==============================================================================


@pytest.mark.parametrize(
    "label, expected",
    [
        ("C(g)[T.2]", "Cg2"),
        ("treat[T.b]:x", "treatb:x"),
        ("I(x ** 2)", "Ix**2"),
    ],
)
def test_rename(label, expected):
    """Design matrix labels become valid parameter names."""
    assert utils.rename(label) == expected


def test_lazy_import():
    """Modules are imported lazily and unknown modules raise."""
    module = utils.lazy_import("json")
    assert module.dumps([1]) == "[1]"
    with pytest.raises(ImportError):
        utils.lazy_import("not_a_real_module_name")
