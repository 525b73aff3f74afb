"""
SAB Census Crosswalk - Formula Expressions
Typed representation of the catalog's pre/post-interpolation formulas

Formulas are authored as short arithmetic strings in the variable sheet
(e.g. "100*(hh_below_pov/hh_total)" or "total_pop - white_alone"). They are
parsed once into a small expression tree and evaluated column-wise against a
DataFrame. Nothing authored in the sheet is ever executed as code.

Supported grammar: variable names, numeric literals, + - * /, unary minus,
parentheses.
"""

import ast
from dataclasses import dataclass
from functools import reduce
from typing import FrozenSet, Tuple, Union

import numpy as np
import pandas as pd


class FormulaError(ValueError):
    """Raised when a formula string cannot be represented"""
    pass


def _safe_divide(numerator: pd.Series, denominator: pd.Series) -> pd.Series:
    """Element-wise division yielding NaN where the denominator is zero or null."""
    denominator = denominator.where(denominator != 0)
    result = numerator / denominator
    return result.replace([np.inf, -np.inf], np.nan)


@dataclass(frozen=True)
class Field:
    """Reference to a column (a catalog variable or a `_per` percentage)"""
    name: str

    def evaluate(self, df: pd.DataFrame) -> pd.Series:
        if self.name not in df.columns:
            return pd.Series(np.nan, index=df.index, dtype=float)
        return pd.to_numeric(df[self.name], errors="coerce").astype(float)

    def fields(self) -> FrozenSet[str]:
        return frozenset({self.name})


@dataclass(frozen=True)
class Literal:
    value: float

    def evaluate(self, df: pd.DataFrame) -> pd.Series:
        return pd.Series(float(self.value), index=df.index, dtype=float)

    def fields(self) -> FrozenSet[str]:
        return frozenset()


@dataclass(frozen=True)
class Negate:
    operand: "Expr"

    def evaluate(self, df: pd.DataFrame) -> pd.Series:
        return -self.operand.evaluate(df)

    def fields(self) -> FrozenSet[str]:
        return self.operand.fields()


@dataclass(frozen=True)
class Sum:
    """Sum of fields; a null term makes the result null"""
    terms: Tuple["Expr", ...]

    def evaluate(self, df: pd.DataFrame) -> pd.Series:
        return reduce(lambda a, b: a + b, (t.evaluate(df) for t in self.terms))

    def fields(self) -> FrozenSet[str]:
        return frozenset().union(*(t.fields() for t in self.terms))


@dataclass(frozen=True)
class Difference:
    left: "Expr"
    right: "Expr"

    def evaluate(self, df: pd.DataFrame) -> pd.Series:
        return self.left.evaluate(df) - self.right.evaluate(df)

    def fields(self) -> FrozenSet[str]:
        return self.left.fields() | self.right.fields()


@dataclass(frozen=True)
class Product:
    factors: Tuple["Expr", ...]

    def evaluate(self, df: pd.DataFrame) -> pd.Series:
        return reduce(lambda a, b: a * b, (f.evaluate(df) for f in self.factors))

    def fields(self) -> FrozenSet[str]:
        return frozenset().union(*(f.fields() for f in self.factors))


@dataclass(frozen=True)
class Ratio:
    numerator: "Expr"
    denominator: "Expr"

    def evaluate(self, df: pd.DataFrame) -> pd.Series:
        return _safe_divide(self.numerator.evaluate(df), self.denominator.evaluate(df))

    def fields(self) -> FrozenSet[str]:
        return self.numerator.fields() | self.denominator.fields()


@dataclass(frozen=True)
class Percentage:
    """100 * numerator / denominator"""
    numerator: "Expr"
    denominator: "Expr"

    def evaluate(self, df: pd.DataFrame) -> pd.Series:
        return 100 * _safe_divide(self.numerator.evaluate(df), self.denominator.evaluate(df))

    def fields(self) -> FrozenSet[str]:
        return self.numerator.fields() | self.denominator.fields()


Expr = Union[Field, Literal, Negate, Sum, Difference, Product, Ratio, Percentage]


def _as_percentage(factors: Tuple[Expr, ...]) -> Expr:
    # 100*(a/b) and (a/b)*100 are the sheet's spelling of a percentage
    if len(factors) == 2:
        first, second = factors
        if isinstance(first, Literal) and first.value == 100 and isinstance(second, Ratio):
            return Percentage(second.numerator, second.denominator)
        if isinstance(second, Literal) and second.value == 100 and isinstance(first, Ratio):
            return Percentage(first.numerator, first.denominator)
    return Product(factors)


def _convert(node: ast.AST, source: str) -> Expr:
    if isinstance(node, ast.Expression):
        return _convert(node.body, source)

    if isinstance(node, ast.Name):
        return Field(node.id.lower())

    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) \
            and not isinstance(node.value, bool):
        return Literal(float(node.value))

    if isinstance(node, ast.UnaryOp):
        if isinstance(node.op, ast.USub):
            operand = _convert(node.operand, source)
            if isinstance(operand, Literal):
                return Literal(-operand.value)
            return Negate(operand)
        if isinstance(node.op, ast.UAdd):
            return _convert(node.operand, source)

    if isinstance(node, ast.BinOp):
        left = _convert(node.left, source)
        right = _convert(node.right, source)

        if isinstance(node.op, ast.Add):
            terms = (left.terms if isinstance(left, Sum) else (left,)) + (right,)
            return Sum(terms)
        if isinstance(node.op, ast.Sub):
            return Difference(left, right)
        if isinstance(node.op, ast.Mult):
            factors = (left.factors if isinstance(left, Product) else (left,)) + (right,)
            return _as_percentage(factors)
        if isinstance(node.op, ast.Div):
            return Ratio(left, right)

    raise FormulaError(f"Unsupported element {type(node).__name__} in formula: {source!r}")


def parse_formula(text: str) -> Expr:
    """
    Parse a sheet formula into an expression tree.

    Args:
        text: Formula string, e.g. "100*(hh_below_pov/hh_total)"

    Returns:
        Expression tree

    Raises:
        FormulaError: If the text is empty, malformed or uses unsupported syntax
    """
    if text is None or not str(text).strip():
        raise FormulaError("Empty formula")

    source = " ".join(str(text).split())
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise FormulaError(f"Malformed formula {source!r}: {e.msg}") from e

    return _convert(tree, source)


def percentage_of(name: str, universe: str) -> Percentage:
    """Universe percentage `100 * name / universe`."""
    return Percentage(Field(name), Field(universe))


def count_from_percentage(per_name: str, universe: str) -> Product:
    """Inverse of a universe percentage: `(per_name / 100) * universe`."""
    return Product((Ratio(Field(per_name), Literal(100.0)), Field(universe)))
