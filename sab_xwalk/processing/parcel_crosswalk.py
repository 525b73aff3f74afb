"""
SAB Census Crosswalk - Tier 2: Parcel-Weighted Tract Crosswalk

For boundaries Tier 1 could not cover, a precomputed crosswalk gives the
fraction of each boundary's parcels located in each census tract. Tract
counts are multiplied by that fraction and summed per boundary; rate/mean
variables use the same fractions as weights for a weighted mean.

NOTE: the parcel crosswalk has no coverage of tribal boundaries.
"""

from typing import Iterable

import pandas as pd

from config.settings import TIER_2_XWALK, TOTAL_POPULATION
from sab_xwalk.processing.derived import apply_formulas
from sab_xwalk.processing.interpolation import weighted_mean, weighted_sum
from sab_xwalk.processing.variable_catalog import VariableCatalog
from sab_xwalk.utils.logging import get_logger

logger = get_logger(__name__)

TRACT_GEOID_LENGTH = 11


def normalize_tract_geoid(values: pd.Series) -> pd.Series:
    """Restore the leading zero numeric readers strip from 10-digit tract ids."""
    geoids = values.astype("string").str.strip()
    geoids = geoids.str.replace(r"\.0$", "", regex=True)
    return geoids.where(geoids.str.len() != TRACT_GEOID_LENGTH - 1, "0" + geoids)


def prepare_parcel_crosswalk(records: pd.DataFrame) -> pd.DataFrame:
    """
    Clean crosswalk records (boundary_id, geoid, weight).

    Records without a tract id are dropped; those are errors in the source table.
    """
    xwalk = pd.DataFrame(records[["boundary_id", "geoid", "weight"]]).copy()
    xwalk = xwalk[xwalk["geoid"].notna()]
    xwalk["boundary_id"] = xwalk["boundary_id"].astype(str)
    xwalk["geoid"] = normalize_tract_geoid(xwalk["geoid"])
    xwalk = xwalk[xwalk["geoid"].notna() & (xwalk["geoid"] != "")]
    xwalk["weight"] = pd.to_numeric(xwalk["weight"], errors="coerce").fillna(0.0)
    return xwalk.astype({"geoid": str})


def apply_parcel_crosswalk(
    crosswalk: pd.DataFrame,
    source: pd.DataFrame,
    boundary_ids: Iterable[str],
    catalog: VariableCatalog,
) -> pd.DataFrame:
    """
    Estimate variables for boundaries from parcel weights.

    Args:
        crosswalk: Prepared records (boundary_id, geoid, weight)
        source: Tract values indexed by geoid (after pre-interpolation formulas)
        boundary_ids: Boundaries deferred from Tier 1
        catalog: Validated variable catalog

    Returns:
        Rows tagged tier_2_xwalk indexed by boundary_id. Boundaries whose
        crosswalk tracts carry no statistics in this region get no row.
    """
    logger.info("Starting Tier 2 Crosswalk: Tract Parcel Crosswalks")

    ids = set(boundary_ids)
    xwalk = crosswalk[crosswalk["boundary_id"].isin(ids)]
    if xwalk.empty:
        logger.info("Tier 2 covered 0 boundaries (none in the parcel crosswalk)")
        return _empty_rows(catalog)

    summed = catalog.summed_names()
    averaged = catalog.averaged_names()

    # Tracts outside this region's statistics carry nulls
    merged = xwalk.merge(
        source[summed + averaged], left_on="geoid", right_index=True, how="left"
    )

    parts = []
    if summed:
        parts.append(weighted_sum(merged, summed, "weight", "boundary_id").round(2))
    if averaged:
        parts.append(weighted_mean(merged, averaged, "weight", "boundary_id"))

    rows = pd.concat(parts, axis=1).reindex(columns=catalog.interpolated_names())
    rows = apply_formulas(rows, catalog.interpolated_post_formulas())

    rows = rows[rows[TOTAL_POPULATION].notna()].copy()
    rows["tier_crosswalk"] = TIER_2_XWALK
    rows.index.name = "boundary_id"

    logger.info(f"Tier 2 covered {len(rows)} of {len(ids)} deferred boundaries")
    return rows


def _empty_rows(catalog: VariableCatalog) -> pd.DataFrame:
    rows = pd.DataFrame(columns=catalog.interpolated_names() + ["tier_crosswalk"], dtype=float)
    rows.index.name = "boundary_id"
    return rows.astype({"tier_crosswalk": object})
