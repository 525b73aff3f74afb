"""
SAB Census Crosswalk - Tiered Crosswalk Engine

Estimates census variables for water-system service area boundaries:

- Tier 1: population-weighted interpolation from tracts through blocks
- Tier 2: parcel-weighted tract crosswalk for boundaries Tier 1 missed,
  capped at the system's reported population
- Tier 3: boundaries no method could estimate (null statistics)

Each region (state) is processed independently (map); boundaries spanning
several regions are then merged and every boundary is assembled into one
result row (reduce). A region whose data cannot be fetched fails alone.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import geopandas as gpd
import numpy as np
import pandas as pd

from config.settings import TIER_3, get_settings
from sab_xwalk.ingest.base import CrosswalkDataProvider
from sab_xwalk.processing.assembly import assemble_tiers, merge_multi_region, result_columns
from sab_xwalk.processing.capping import cap_merged_rows, cap_tier2
from sab_xwalk.processing.derived import evaluate_derived
from sab_xwalk.processing.geometry import geometry_validation, normalize_boundaries, to_target_crs
from sab_xwalk.processing.interpolation import (
    apply_pre_interpolation,
    pivot_source_statistics,
    prepare_weight_points,
    run_tier1,
)
from sab_xwalk.processing.parcel_crosswalk import apply_parcel_crosswalk, prepare_parcel_crosswalk
from sab_xwalk.processing.regions import RegionAssignment, resolve_regions
from sab_xwalk.processing.variable_catalog import VariableCatalog
from sab_xwalk.utils.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()


@dataclass
class CrosswalkResult:
    """Output of a crosswalk run"""
    records: gpd.GeoDataFrame  # one row per input boundary
    failed_regions: Dict[str, str] = field(default_factory=dict)  # region -> error message
    assignment: Optional[RegionAssignment] = None
    dropped_geometries: List[str] = field(default_factory=list)

    def tier_counts(self) -> Dict[str, int]:
        return self.records["tier_crosswalk"].value_counts().to_dict()


def _tract_geometries(statistics: pd.DataFrame) -> Optional[gpd.GeoDataFrame]:
    if not isinstance(statistics, gpd.GeoDataFrame) or statistics.empty:
        return None
    tracts = statistics[["geoid", "geometry"]].drop_duplicates("geoid")
    tracts = tracts.assign(geoid=tracts["geoid"].astype(str))
    return gpd.GeoDataFrame(tracts, geometry="geometry", crs=statistics.crs)


def crosswalk_region(
    region: str,
    boundaries: gpd.GeoDataFrame,
    catalog: VariableCatalog,
    acs_year: int,
    provider: CrosswalkDataProvider,
) -> pd.DataFrame:
    """
    Run Tiers 1 and 2 for the boundaries assigned to one region.

    Args:
        region: Region (state) code
        boundaries: Normalized boundaries in this region
        catalog: Validated variable catalog
        acs_year: ACS year matching the catalog's census variables
        provider: Data provider

    Returns:
        One row per boundary (tier_1, tier_2_xwalk, tier_2_capped or tier_3)
        with crosswalk_region set to the region
    """
    logger.info(f"Working on: {region}")
    ids = boundaries["boundary_id"].tolist()

    logger.info("Grabbing Census Data")
    fields = [v.source_field for v in catalog.source_variables()]
    statistics = provider.fetch_source_statistics(region, acs_year, fields)
    source = apply_pre_interpolation(pivot_source_statistics(statistics, catalog), catalog)

    logger.info("Grabbing Census Block Weights")
    weight_units = provider.fetch_weight_units(region, acs_year)
    weight_points = prepare_weight_points(weight_units, tracts=_tract_geometries(statistics))

    tier1, deferred = run_tier1(source, boundaries, weight_points, catalog)
    tier1 = evaluate_derived(tier1, catalog)

    tier2 = pd.DataFrame()
    if deferred:
        logger.info("Grabbing Tract Parcel Crosswalk")
        crosswalk = prepare_parcel_crosswalk(provider.fetch_parcel_crosswalk(deferred))
        tier2 = apply_parcel_crosswalk(crosswalk, source, deferred, catalog)
        if not tier2.empty:
            reported = boundaries.set_index("boundary_id")["population_served"]
            tier2["population_served"] = tier2.index.map(reported)
            tier2 = cap_tier2(evaluate_derived(tier2, catalog), catalog)

    frames = [f.reset_index() for f in (tier1, tier2) if not f.empty]
    rows = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(columns=["boundary_id"])

    resolved = set(rows["boundary_id"])
    unresolved = [bid for bid in ids if bid not in resolved]
    if unresolved:
        rows = pd.concat(
            [rows, pd.DataFrame({"boundary_id": unresolved, "tier_crosswalk": TIER_3})],
            ignore_index=True,
        )

    rows["crosswalk_region"] = region
    rows = rows.reindex(columns=result_columns(catalog))
    logger.info(f"{region}: " + ", ".join(
        f"{tier}={n}" for tier, n in rows["tier_crosswalk"].value_counts().items()
    ))
    return rows


def run_crosswalk(
    provider: CrosswalkDataProvider,
    catalog: VariableCatalog,
    acs_year: Optional[int] = None,
    strict_geometry: Optional[bool] = None,
    boundaries: Optional[gpd.GeoDataFrame] = None,
) -> CrosswalkResult:
    """
    Crosswalk every boundary to the catalog's census variables.

    Args:
        provider: Data provider
        catalog: Validated variable catalog (validation happens before any fetch)
        acs_year: ACS year (default: settings.ACS_LATEST_YEAR)
        strict_geometry: Route boundaries still invalid after repair to Tier 3
            (default: settings.STRICT_GEOMETRY)
        boundaries: Boundaries to use instead of provider.fetch_boundaries()

    Returns:
        CrosswalkResult
    """
    acs_year = acs_year or settings.ACS_LATEST_YEAR
    strict = settings.STRICT_GEOMETRY if strict_geometry is None else strict_geometry

    if boundaries is None:
        boundaries = provider.fetch_boundaries()
    boundaries = to_target_crs(boundaries.copy())
    boundaries["boundary_id"] = boundaries["boundary_id"].astype(str)
    if "population_served" not in boundaries.columns:
        boundaries["population_served"] = np.nan
    boundaries["population_served"] = pd.to_numeric(boundaries["population_served"], errors="coerce")
    duplicated = boundaries["boundary_id"].duplicated()
    if duplicated.any():
        logger.warning(f"Ignoring {int(duplicated.sum())} duplicate boundary ids")
        boundaries = boundaries[~duplicated]

    logger.info(f"Crosswalking {len(boundaries)} boundaries to ACS {acs_year} ({len(catalog)} variables)")

    failed: Dict[str, str] = {}
    with geometry_validation(strict=strict):
        normalized = normalize_boundaries(boundaries, strict=strict)
        assignment = resolve_regions(normalized.boundaries, provider.fetch_region_boundaries())

        # Map: each region independently
        region_rows = []
        for region in assignment.regions:
            region_ids = assignment.boundaries_for(region)
            subset = normalized.boundaries[normalized.boundaries["boundary_id"].isin(region_ids)]
            try:
                region_rows.append(crosswalk_region(region, subset, catalog, acs_year, provider))
            except Exception as e:
                logger.error(f"Crosswalk failed for region {region}: {e}", exc_info=True)
                failed[region] = str(e)

    # Reduce: merge boundaries spanning regions, then one row per boundary
    rows = pd.concat(region_rows, ignore_index=True) if region_rows else pd.DataFrame(
        columns=result_columns(catalog)
    )
    rows = merge_multi_region(rows, catalog)
    if not rows.empty:
        rows["population_served"] = rows["boundary_id"].map(
            boundaries.set_index("boundary_id")["population_served"]
        )
        rows = cap_merged_rows(rows, catalog)
    records = assemble_tiers(rows, boundaries, catalog, assignment)

    if failed:
        logger.warning(f"{len(failed)} regions failed: {sorted(failed)}")

    return CrosswalkResult(
        records=records,
        failed_regions=failed,
        assignment=assignment,
        dropped_geometries=normalized.dropped,
    )
