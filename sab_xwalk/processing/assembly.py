"""
SAB Census Crosswalk - Multi-Region Merge and Tier Assembly

Reduce step of the crosswalk. Per-region rows for boundaries spanning
several regions are merged (counts summed, means averaged, percentages
recomputed), then every input boundary is emitted exactly once, as Tier 3
with null statistics when no tier resolved it.
"""

from typing import List, Optional

import geopandas as gpd
import numpy as np
import pandas as pd

from config.settings import TIER_3, get_settings
from sab_xwalk.processing.derived import evaluate_derived
from sab_xwalk.processing.regions import RegionAssignment
from sab_xwalk.processing.variable_catalog import VariableCatalog
from sab_xwalk.utils.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()

ID_COLUMNS = ["boundary_id", "crosswalk_region", "population_served"]


def result_columns(catalog: VariableCatalog) -> List[str]:
    return ID_COLUMNS + catalog.output_columns() + ["tier_crosswalk"]


def _join_tags(values: pd.Series) -> str:
    return ", ".join(str(v) for v in values if pd.notna(v))


def merge_multi_region(rows: pd.DataFrame, catalog: VariableCatalog) -> pd.DataFrame:
    """
    Merge per-region rows of boundaries crosswalked in several regions.

    Args:
        rows: Concatenated per-region rows (one per boundary and region)
        catalog: Validated variable catalog

    Returns:
        One row per boundary. Merged rows sum count variables, average
        rate/mean variables, recompute every percentage and derived formula,
        and concatenate their region and tier tags in region order.
    """
    if rows.empty:
        return rows.copy()

    counts = rows["boundary_id"].value_counts()
    multi_ids = counts[counts > 1].index
    if len(multi_ids) == 0:
        return rows.reset_index(drop=True)

    logger.info(f"Fixing {len(multi_ids)} boundaries that overlap with multiple regions")

    single = rows[~rows["boundary_id"].isin(multi_ids)]
    multi = rows[rows["boundary_id"].isin(multi_ids)].sort_values(["boundary_id", "crosswalk_region"])

    grouped = multi.groupby("boundary_id", sort=False)
    summed = catalog.summed_names()
    averaged = catalog.averaged_names()

    parts = [
        grouped["crosswalk_region"].agg(_join_tags),
        grouped["tier_crosswalk"].agg(_join_tags),
        grouped["population_served"].first(),
    ]
    if summed:
        parts.append(grouped[summed].sum(min_count=1))
    if averaged:
        parts.append(grouped[averaged].mean())

    merged = pd.concat(parts, axis=1).reset_index()
    # Percentages of different denominators are not additive: recompute them
    merged = evaluate_derived(merged, catalog)

    return pd.concat([single, merged], ignore_index=True)


def tier3_rows(boundary_ids: List[str], assignment: Optional[RegionAssignment], catalog: VariableCatalog) -> pd.DataFrame:
    """Null-statistic rows for boundaries no tier resolved."""
    rows = pd.DataFrame(np.nan, index=range(len(boundary_ids)), columns=catalog.output_columns())
    rows.insert(0, "boundary_id", list(boundary_ids))
    rows.insert(1, "crosswalk_region", [
        assignment.region_label(bid) if assignment is not None else None for bid in boundary_ids
    ])
    rows.insert(2, "population_served", np.nan)
    rows["tier_crosswalk"] = TIER_3
    return rows


def assemble_tiers(
    rows: pd.DataFrame,
    boundaries: gpd.GeoDataFrame,
    catalog: VariableCatalog,
    assignment: Optional[RegionAssignment] = None,
) -> gpd.GeoDataFrame:
    """
    Final result: exactly one row per input boundary.

    Args:
        rows: Merged rows from every region (output of merge_multi_region)
        boundaries: The run's input boundaries (boundary_id, population_served, geometry)
        catalog: Validated variable catalog
        assignment: Region assignment, used to label Tier 3 rows

    Returns:
        GeoDataFrame in input order with input geometry in settings.TARGET_CRS
    """
    logger.info("Recombining Data")
    columns = result_columns(catalog)

    resolved = rows.reindex(columns=columns) if not rows.empty else pd.DataFrame(columns=columns)
    duplicated = resolved["boundary_id"].duplicated(keep="first")
    if duplicated.any():
        logger.warning(f"Dropping {int(duplicated.sum())} duplicate rows for the same boundary")
        resolved = resolved[~duplicated]

    input_ids = boundaries["boundary_id"].tolist()
    resolved = resolved[resolved["boundary_id"].isin(input_ids)]

    found = set(resolved["boundary_id"])
    missing = [bid for bid in input_ids if bid not in found]
    if missing:
        logger.info(f"Adding {len(missing)} Tier 3 boundaries")
        frames = [resolved, tier3_rows(missing, assignment, catalog).reindex(columns=columns)]
        combined = pd.concat([f for f in frames if not f.empty], ignore_index=True)
    else:
        combined = resolved.reset_index(drop=True)

    # Reported population always comes from the input, not a tier
    reported = boundaries.set_index("boundary_id")["population_served"] \
        if "population_served" in boundaries.columns else pd.Series(dtype=float)
    combined["population_served"] = combined["boundary_id"].map(reported)

    geoms = boundaries.set_index("boundary_id").geometry
    order = {bid: i for i, bid in enumerate(input_ids)}
    combined = combined.sort_values("boundary_id", key=lambda s: s.map(order)).reset_index(drop=True)

    result = gpd.GeoDataFrame(
        combined,
        geometry=gpd.GeoSeries(combined["boundary_id"].map(geoms).values, crs=boundaries.crs),
        crs=boundaries.crs,
    )
    if result.crs is not None and result.crs != settings.TARGET_CRS:
        result = result.to_crs(settings.TARGET_CRS)

    logger.info(
        "Tier counts: "
        + ", ".join(f"{tier}={n}" for tier, n in result["tier_crosswalk"].value_counts().items())
    )
    return result
