"""
SAB Census Crosswalk - Region Resolution
Decides which state-equivalent regions each boundary is crosswalked in

A boundary counts as intersecting a region only when at least
REGION_OVERLAP_THRESHOLD percent of its (pre-repair) area lies in it. Smaller
overlaps are almost always digitization noise along a shared state line.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import geopandas as gpd
import pandas as pd

from config.settings import get_settings
from sab_xwalk.utils.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()


@dataclass
class RegionAssignment:
    """Boundary -> region(s) mapping for one run"""
    overlaps: pd.DataFrame  # boundary_id, region, area_overlap, og_area, pct_overlap (qualifying)
    regions_by_boundary: Dict[str, List[str]] = field(default_factory=dict)
    unassigned: List[str] = field(default_factory=list)

    @property
    def regions(self) -> List[str]:
        found = {r for regions in self.regions_by_boundary.values() for r in regions}
        return sorted(found)

    @property
    def multi_region_ids(self) -> List[str]:
        return [bid for bid, regions in self.regions_by_boundary.items() if len(regions) > 1]

    def boundaries_for(self, region: str) -> List[str]:
        return [bid for bid, regions in self.regions_by_boundary.items() if region in regions]

    def region_label(self, boundary_id: str) -> Optional[str]:
        regions = self.regions_by_boundary.get(boundary_id)
        return ", ".join(regions) if regions else None


def compute_overlaps(
    boundaries: gpd.GeoDataFrame,
    region_polygons: gpd.GeoDataFrame,
    area_crs: Optional[str] = None,
) -> pd.DataFrame:
    """
    Area of every boundary/region intersection as a percent of the boundary.

    Args:
        boundaries: Normalized boundaries (boundary_id, og_area, geometry)
        region_polygons: Regions (region, geometry)
        area_crs: Equal-area CRS (default: settings.AREA_CRS)

    Returns:
        DataFrame with boundary_id, region, area_overlap, og_area, pct_overlap
    """
    area_crs = area_crs or settings.AREA_CRS
    columns = ["boundary_id", "region", "area_overlap", "og_area", "pct_overlap"]

    bnd = boundaries[["boundary_id", "og_area", "geometry"]].to_crs(area_crs)
    # Fall back to the repaired area when the pre-repair ring cancels itself out
    current_area = bnd.geometry.area
    bnd["og_area"] = bnd["og_area"].where(bnd["og_area"] > 0, current_area)

    polygonal = bnd[bnd["og_area"] > 0]
    if polygonal.empty:
        return pd.DataFrame(columns=columns)

    regions = region_polygons[["region", "geometry"]].to_crs(area_crs)
    intersections = gpd.overlay(polygonal, regions, how="intersection", keep_geom_type=True)

    intersections["area_overlap"] = intersections.geometry.area.astype(float)
    intersections["pct_overlap"] = 100 * (intersections["area_overlap"] / intersections["og_area"])

    return pd.DataFrame(intersections[columns])


def _point_regions(boundaries: gpd.GeoDataFrame, region_polygons: gpd.GeoDataFrame) -> Dict[str, str]:
    # Zero-area boundaries: region holding a representative point
    if boundaries.empty:
        return {}
    points = gpd.GeoDataFrame(
        {"boundary_id": boundaries["boundary_id"].values},
        geometry=boundaries.geometry.representative_point().values,
        crs=boundaries.crs,
    )
    regions = region_polygons[["region", "geometry"]].to_crs(boundaries.crs)
    joined = gpd.sjoin(points, regions, how="inner", predicate="intersects")
    joined = joined.sort_values(["boundary_id", "region"]).drop_duplicates("boundary_id")
    return dict(zip(joined["boundary_id"], joined["region"]))


def resolve_regions(
    boundaries: gpd.GeoDataFrame,
    region_polygons: gpd.GeoDataFrame,
    threshold: Optional[float] = None,
    area_crs: Optional[str] = None,
) -> RegionAssignment:
    """
    Assign every normalized boundary to the region(s) it meaningfully overlaps.

    Boundaries with no qualifying overlap are still processed: they use their
    largest-overlap region, or, when they touch no region at all, the run's
    only region if exactly one qualifies. Anything left is unassigned (Tier 3).

    Args:
        boundaries: Normalized boundaries (boundary_id, og_area, geometry)
        region_polygons: Regions (region, geometry)
        threshold: Minimum percent of boundary area (default: settings.REGION_OVERLAP_THRESHOLD)
        area_crs: Equal-area CRS (default: settings.AREA_CRS)

    Returns:
        RegionAssignment
    """
    threshold = settings.REGION_OVERLAP_THRESHOLD if threshold is None else threshold

    logger.info("Finding what census data to pull")
    overlaps = compute_overlaps(boundaries, region_polygons, area_crs=area_crs)
    qualifying = overlaps[overlaps["pct_overlap"] >= threshold]

    regions_by_boundary: Dict[str, List[str]] = {}
    for bid, group in qualifying.groupby("boundary_id", sort=False):
        regions_by_boundary[bid] = sorted(group["region"].unique())

    ids = boundaries["boundary_id"].tolist()
    missing = [bid for bid in ids if bid not in regions_by_boundary]

    # Largest overlap below the threshold
    if missing and not overlaps.empty:
        below = overlaps[overlaps["boundary_id"].isin(missing) & (overlaps["area_overlap"] > 0)]
        largest = below.sort_values("pct_overlap", ascending=False).drop_duplicates("boundary_id")
        for bid, region in zip(largest["boundary_id"], largest["region"]):
            regions_by_boundary[bid] = [region]

    missing = [bid for bid in ids if bid not in regions_by_boundary]
    if missing:
        zero_area = boundaries[boundaries["boundary_id"].isin(missing)]
        for bid, region in _point_regions(zero_area, region_polygons).items():
            regions_by_boundary[bid] = [region]

    missing = [bid for bid in ids if bid not in regions_by_boundary]
    run_regions = sorted({r for regions in regions_by_boundary.values() for r in regions})
    unassigned = []
    if missing:
        if len(run_regions) == 1:
            logger.info(f"Crosswalking {len(missing)} boundaries outside every region in {run_regions[0]}")
            for bid in missing:
                regions_by_boundary[bid] = list(run_regions)
        else:
            logger.warning(f"{len(missing)} boundaries intersect no region and will be Tier 3")
            unassigned = missing

    # Keep input order
    ordered = {bid: regions_by_boundary[bid] for bid in ids if bid in regions_by_boundary}
    assignment = RegionAssignment(
        overlaps=qualifying.reset_index(drop=True),
        regions_by_boundary=ordered,
        unassigned=unassigned,
    )

    logger.info(
        f"Resolved {len(ordered)} boundaries across {len(assignment.regions)} regions "
        f"({len(assignment.multi_region_ids)} span multiple regions)"
    )
    return assignment
