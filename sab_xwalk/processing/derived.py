"""
SAB Census Crosswalk - Derived Variables
Universe percentages and formula-defined variables

Run after Tier 1, after raw Tier 2, after capping and after the
multi-region merge. Evaluation order is fixed:
1. `{name}_per = 100 * name / universe` for every variable with a universe
2. Derived-only formulas in dependency order (they may reference `_per`
   columns, and a derived variable named like a `_per` column replaces it)

Division by a zero or null universe yields null for that row.
"""

from typing import List, Tuple

import pandas as pd

from sab_xwalk.processing.formulas import Expr, percentage_of
from sab_xwalk.processing.variable_catalog import VariableCatalog


def apply_formulas(df: pd.DataFrame, formulas: List[Tuple[str, Expr]]) -> pd.DataFrame:
    """
    Evaluate formulas in order, writing each result to its named column.

    Later formulas see the columns written by earlier ones.
    """
    out = df.copy()
    for name, expr in formulas:
        out[name] = expr.evaluate(out)
    return out


def compute_percentages(df: pd.DataFrame, catalog: VariableCatalog) -> pd.DataFrame:
    """Pass 1: universe percentages for every variable with a universe."""
    out = df.copy()
    for name, universe in catalog.universe_pairs():
        out[f"{name}_per"] = percentage_of(name, universe).evaluate(out)
    return out


def evaluate_derived(df: pd.DataFrame, catalog: VariableCatalog) -> pd.DataFrame:
    """
    Recompute every percentage and derived formula from the raw counts.

    Args:
        df: Rows with interpolated variables as columns
        catalog: Validated variable catalog

    Returns:
        Copy of df with `_per` and derived columns (re)computed
    """
    if df.empty:
        return df.copy()

    out = compute_percentages(df, catalog)

    # Pass 2
    derived_targets = {name for name, _ in catalog.derived_formulas()}
    for name, expr in catalog.derived_formulas():
        out[name] = expr.evaluate(out)

        # A derived variable's own percentage needs its value first
        spec = catalog.get(name)
        if spec.universe is not None and spec.per_name not in derived_targets:
            out[spec.per_name] = percentage_of(name, spec.universe).evaluate(out)

    return out
