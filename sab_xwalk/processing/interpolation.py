"""
SAB Census Crosswalk - Tier 1: Population-Weighted Interpolation

Tract statistics are allocated to boundaries through 2020 census blocks:
each block centroid carries its share of the parent tract's population (or
housing units), and a boundary receives the tract value in proportion to the
weight of the blocks it contains.

Kernels by interpolation method:
- intensive_pop: summed, weighted by block population (POP20)
- intensive_hh:  summed, weighted by block housing units (HOUSING20)
- extensive_hh:  weighted mean by block housing units (income, rates)

A boundary is accepted into Tier 1 only when its interpolated total
population is non-null and non-zero. Everything else is deferred to Tier 2.
"""

from typing import Dict, List, Optional, Sequence, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd

from config.settings import (
    HOUSING_WEIGHT_COLUMN,
    POPULATION_WEIGHT_COLUMN,
    TIER_1,
    TOTAL_POPULATION,
    get_settings,
)
from sab_xwalk.processing.derived import apply_formulas
from sab_xwalk.processing.variable_catalog import InterpMethod, VariableCatalog
from sab_xwalk.utils.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()

# method -> (weight column, extensive?)
METHOD_KERNELS: Dict[InterpMethod, Tuple[str, bool]] = {
    InterpMethod.INTENSIVE_POP: (POPULATION_WEIGHT_COLUMN, True),
    InterpMethod.INTENSIVE_HH: (HOUSING_WEIGHT_COLUMN, True),
    InterpMethod.EXTENSIVE_HH: (HOUSING_WEIGHT_COLUMN, False),
}


def pivot_source_statistics(statistics: pd.DataFrame, catalog: VariableCatalog) -> pd.DataFrame:
    """
    Long (geoid, variable, estimate) statistics -> one row per tract.

    Source fields are matched case- and whitespace-insensitively and renamed
    to catalog names. Catalog variables absent from the source come back as
    all-null columns.

    Returns:
        DataFrame indexed by geoid with one column per source-backed variable
    """
    names = [v.name for v in catalog.source_variables()]
    if statistics.empty:
        return pd.DataFrame(columns=names, index=pd.Index([], name="geoid"), dtype=float)

    field_map = catalog.source_field_map()
    stats = pd.DataFrame(statistics[["geoid", "variable", "estimate"]]).copy()
    stats["geoid"] = stats["geoid"].astype(str)
    stats["name"] = stats["variable"].astype(str).map(lambda v: field_map.get("".join(v.split()).upper()))
    stats = stats[stats["name"].notna()]
    stats["estimate"] = pd.to_numeric(stats["estimate"], errors="coerce")

    wide = stats.pivot_table(
        index="geoid", columns="name", values="estimate", aggfunc="first", dropna=False
    )
    wide.columns.name = None
    return wide.reindex(columns=names).astype(float)


def apply_pre_interpolation(wide: pd.DataFrame, catalog: VariableCatalog) -> pd.DataFrame:
    """Evaluate calc_before_interp formulas on tract data (e.g. rates from raw counts)."""
    return apply_formulas(wide, catalog.pre_formulas())


def prepare_weight_points(
    weight_units: gpd.GeoDataFrame,
    tracts: Optional[gpd.GeoDataFrame] = None,
    area_crs: Optional[str] = None,
) -> gpd.GeoDataFrame:
    """
    Reduce weight units (blocks) to centroids in the equal-area CRS.

    Units without a parent_geoid are assigned to the tract containing their
    centroid when tract geometries are supplied; otherwise they are dropped.

    Returns:
        GeoDataFrame of points with parent_geoid, POP20, HOUSING20
    """
    area_crs = area_crs or settings.AREA_CRS

    units = weight_units.to_crs(area_crs)
    points = gpd.GeoDataFrame(
        units.drop(columns="geometry"),
        geometry=units.geometry.centroid,
        crs=area_crs,
    )
    for column in (POPULATION_WEIGHT_COLUMN, HOUSING_WEIGHT_COLUMN):
        if column not in points.columns:
            points[column] = 0.0
        points[column] = pd.to_numeric(points[column], errors="coerce").fillna(0.0)

    if "parent_geoid" not in points.columns:
        points["parent_geoid"] = None

    orphan = points["parent_geoid"].isna()
    if orphan.any() and tracts is not None and not tracts.empty:
        tract_polys = tracts[["geoid", "geometry"]].to_crs(area_crs)
        joined = gpd.sjoin(points.loc[orphan, ["geometry"]], tract_polys, how="left", predicate="within")
        joined = joined[~joined.index.duplicated(keep="first")]
        points.loc[orphan, "parent_geoid"] = joined["geoid"]

    missing = points["parent_geoid"].isna()
    if missing.any():
        logger.warning(f"Dropping {int(missing.sum())} weight units with no parent tract")
        points = points.loc[~missing]

    points["parent_geoid"] = points["parent_geoid"].astype(str)
    return points


def weighted_sum(frame: pd.DataFrame, columns: Sequence[str], weight: str, by: str) -> pd.DataFrame:
    """sum(value * weight) per group; null only when every value is null."""
    weighted = frame[list(columns)].multiply(frame[weight], axis=0)
    weighted[by] = frame[by].values
    return weighted.groupby(by).sum(min_count=1)


def weighted_mean(frame: pd.DataFrame, columns: Sequence[str], weight: str, by: str) -> pd.DataFrame:
    """sum(value * weight) / sum(weight) per group, ignoring null values."""
    result = {}
    for column in columns:
        values = frame[column]
        valid = values.notna()
        numerator = (values.where(valid) * frame[weight]).groupby(frame[by]).sum(min_count=1)
        denominator = frame[weight].where(valid).groupby(frame[by]).sum(min_count=1)
        result[column] = (numerator / denominator.where(denominator != 0)).replace(
            [np.inf, -np.inf], np.nan
        )
    out = pd.DataFrame(result)
    out.index.name = by
    return out


def interpolate_pw(
    source: pd.DataFrame,
    boundaries: gpd.GeoDataFrame,
    weight_points: gpd.GeoDataFrame,
    weight_column: str,
    columns: Sequence[str],
    extensive: bool = True,
    area_crs: Optional[str] = None,
) -> pd.DataFrame:
    """
    Population-weighted areal interpolation of tract values onto boundaries.

    Args:
        source: Tract values indexed by geoid
        boundaries: Target polygons (boundary_id, geometry)
        weight_points: Output of prepare_weight_points
        weight_column: POP20 or HOUSING20
        columns: Value columns to interpolate
        extensive: True sums values by weight share, False takes a weighted mean
        area_crs: CRS of weight_points (default: settings.AREA_CRS)

    Returns:
        DataFrame indexed by boundary_id (every input boundary, null where no
        weighted block falls inside)
    """
    area_crs = area_crs or settings.AREA_CRS
    ids = pd.Index(boundaries["boundary_id"], name="boundary_id")
    empty = pd.DataFrame(np.nan, index=ids, columns=list(columns), dtype=float)
    if not columns or boundaries.empty or weight_points.empty:
        return empty

    points = weight_points.loc[weight_points[weight_column] > 0, ["parent_geoid", weight_column, "geometry"]].copy()
    if points.empty:
        return empty
    points["wt_share"] = points[weight_column] / points.groupby("parent_geoid")[weight_column].transform("sum")

    targets = boundaries[["boundary_id", "geometry"]].to_crs(area_crs)
    joined = gpd.sjoin(points, targets, how="inner", predicate="within")
    if joined.empty:
        return empty

    pairs = (
        joined.groupby(["boundary_id", "parent_geoid"])
        .agg(wt_share=("wt_share", "sum"), wt_mass=(weight_column, "sum"))
        .reset_index()
    )
    pairs = pairs.merge(source[list(columns)], left_on="parent_geoid", right_index=True, how="left")

    if extensive:
        result = weighted_sum(pairs, columns, "wt_share", "boundary_id")
    else:
        result = weighted_mean(pairs, columns, "wt_mass", "boundary_id")

    return result.reindex(ids)


def interpolate_boundaries(
    source: pd.DataFrame,
    boundaries: gpd.GeoDataFrame,
    weight_points: gpd.GeoDataFrame,
    catalog: VariableCatalog,
    area_crs: Optional[str] = None,
) -> pd.DataFrame:
    """
    Run interpolation per method group, then post-interpolation formulas.

    Returns:
        DataFrame indexed by boundary_id with every interpolated variable
    """
    ids = pd.Index(boundaries["boundary_id"], name="boundary_id")
    parts = []

    for method, (weight_column, extensive) in METHOD_KERNELS.items():
        names = [v.name for v in catalog.by_method(method)]
        if not names:
            continue
        logger.info(f"Tier 1: population weighted interpolation on {method.value} variables ({len(names)})")
        parts.append(
            interpolate_pw(
                source, boundaries, weight_points, weight_column, names,
                extensive=extensive, area_crs=area_crs,
            )
        )

    interpolated = pd.concat(parts, axis=1) if parts else pd.DataFrame(index=ids)
    interpolated = interpolated.reindex(index=ids, columns=catalog.interpolated_names())

    return apply_formulas(interpolated, catalog.interpolated_post_formulas())


def run_tier1(
    source: pd.DataFrame,
    boundaries: gpd.GeoDataFrame,
    weight_points: gpd.GeoDataFrame,
    catalog: VariableCatalog,
    area_crs: Optional[str] = None,
) -> Tuple[pd.DataFrame, List[str]]:
    """
    Tier 1 estimates and the boundaries it could not cover.

    Returns:
        (accepted rows tagged tier_1 indexed by boundary_id, deferred boundary ids)
    """
    logger.info("Starting Tier 1 Crosswalk: Population Weighted Interpolation")
    interpolated = interpolate_boundaries(source, boundaries, weight_points, catalog, area_crs=area_crs)

    total = interpolated[TOTAL_POPULATION]
    accepted_mask = total.notna() & (total != 0)

    accepted = interpolated.loc[accepted_mask].copy()
    accepted["tier_crosswalk"] = TIER_1
    deferred = interpolated.index[~accepted_mask].tolist()

    logger.info(f"Tier 1 covered {len(accepted)} of {len(interpolated)} boundaries")
    return accepted, deferred
