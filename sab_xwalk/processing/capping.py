"""
SAB Census Crosswalk - Tier 2: Capping at Reported Population

The parcel crosswalk consistently overestimates tract-level population, so
Tier 2 boundaries whose estimated total population exceeds the population
reported for the system are scaled down to the reported figure.

Scaling keeps every variable's composition:
- each interpolated denominator keeps its ratio to total population
  (households are scaled by households / total population, so household
  proportions stay self-consistent rather than being forced to the
  population ratio)
- each counted variable is rebuilt as (name_per / 100) * scaled universe
- percentages and derived formulas are then recomputed
"""

import numpy as np
import pandas as pd

from config.settings import TIER_2_CAPPED, TIER_2_XWALK, TOTAL_POPULATION
from sab_xwalk.processing.derived import evaluate_derived
from sab_xwalk.processing.formulas import count_from_percentage, percentage_of
from sab_xwalk.processing.variable_catalog import VariableCatalog
from sab_xwalk.utils.logging import get_logger

logger = get_logger(__name__)


def needs_capping(rows: pd.DataFrame) -> pd.Series:
    """Rows whose estimated population exceeds the reported population."""
    reported = pd.to_numeric(rows["population_served"], errors="coerce")
    return pd.to_numeric(rows[TOTAL_POPULATION], errors="coerce") > reported


def scale_to_reported_population(rows: pd.DataFrame, catalog: VariableCatalog) -> pd.DataFrame:
    """
    Rescale rows to their reported population.

    Args:
        rows: Tier 2 rows with population_served and interpolated variables
        catalog: Validated variable catalog

    Returns:
        Scaled copy of rows tagged tier_2_capped, percentages recomputed
    """
    original = rows.copy()
    scaled = rows.copy()
    reported = pd.to_numeric(original["population_served"], errors="coerce")
    total = original[TOTAL_POPULATION]

    denominators = [v.name for v in catalog.population_denominators()]
    if TOTAL_POPULATION not in denominators:
        denominators.insert(0, TOTAL_POPULATION)
    for name in denominators:
        share = original[name] / total.where(total != 0)
        scaled[name] = share * reported

    averaged = set(catalog.averaged_names())
    interpolated = set(catalog.interpolated_names())
    for name, universe in catalog.universe_pairs():
        # Means are not counts, derived variables are recomputed below
        if name in denominators or name in averaged or name not in interpolated:
            continue
        per_name = f"{name}_per"
        scaled[per_name] = percentage_of(name, universe).evaluate(original)
        scaled[name] = count_from_percentage(per_name, universe).evaluate(scaled)

    scaled = evaluate_derived(scaled, catalog)
    scaled["tier_crosswalk"] = TIER_2_CAPPED
    return scaled


def cap_tier2(rows: pd.DataFrame, catalog: VariableCatalog) -> pd.DataFrame:
    """
    Replace over-estimated Tier 2 rows with their capped version.

    Rows without a reported population, or at/below it, keep tier_2_xwalk.
    """
    logger.info("Tier 2 Crosswalk: Capping Population at Reported Population")
    if rows.empty:
        return rows.copy()

    mask = needs_capping(rows)
    if not mask.any():
        logger.info("No Tier 2 boundaries exceed their reported population")
        return rows.copy()

    capped = scale_to_reported_population(rows.loc[mask], catalog)

    out = rows.copy()
    for column in capped.columns:
        if column not in out.columns:
            out[column] = np.nan
    out.loc[capped.index, capped.columns] = capped

    logger.info(f"Capped {int(mask.sum())} of {len(rows)} Tier 2 boundaries to reported population")
    return out


def cap_merged_rows(rows: pd.DataFrame, catalog: VariableCatalog) -> pd.DataFrame:
    """
    Cap merged multi-region rows that contain a Tier 2 part.

    Each region caps its part against the boundary's whole reported
    population, so the summed row can exceed it again. Such rows are scaled
    as a whole and their tier_2_xwalk tags become tier_2_capped.

    Args:
        rows: Output of merge_multi_region (boundary_id column, population_served set)
        catalog: Validated variable catalog

    Returns:
        Copy of rows with over-estimated merged rows scaled
    """
    if rows.empty:
        return rows.copy()

    tags = rows["tier_crosswalk"].fillna("").astype(str)
    merged_tier2 = tags.str.contains(", ", regex=False) & tags.str.contains("tier_2", regex=False)
    mask = merged_tier2 & needs_capping(rows)
    if not mask.any():
        return rows.copy()

    capped = scale_to_reported_population(rows.loc[mask], catalog)
    capped["tier_crosswalk"] = tags[mask].str.replace(TIER_2_XWALK, TIER_2_CAPPED, regex=False)

    out = rows.copy()
    for column in capped.columns:
        if column not in out.columns:
            out[column] = np.nan
    out.loc[capped.index, capped.columns] = capped

    logger.info(f"Capped {int(mask.sum())} merged multi-region boundaries to reported population")
    return out
