"""
SAB Census Crosswalk - Boundary Geometry Normalization

- Reprojects boundaries to the shared geographic CRS (WGS84)
- Routes geometries the interpolation cannot handle to Tier 3
- Repairs invalid geometries (self-intersections, disconnected rings)

NOTE: repair uses GEOS linework reconstruction, which CAN change a
boundary's spatial footprint. It is only applied to invalid geometries.
"""

import warnings
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, List, Optional

import geopandas as gpd
import numpy as np
import shapely
from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry

from config.settings import get_settings
from sab_xwalk.utils.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()

POLYGONAL_TYPES = ("Polygon", "MultiPolygon")


@contextmanager
def geometry_validation(strict: bool = False) -> Iterator[None]:
    """
    Scope geometry-validation behaviour to a single crosswalk run.

    With strict=False, shapely/geopandas warnings raised by operations on
    imperfect geometries are silenced, and only inside this block. The
    previous warning filters are restored on exit.
    """
    with warnings.catch_warnings():
        if not strict:
            warnings.simplefilter("ignore", RuntimeWarning)
            warnings.filterwarnings("ignore", message=".*geographic CRS.*", category=UserWarning)
        yield


@dataclass
class NormalizedBoundaries:
    """Boundaries ready for region resolution and interpolation"""
    boundaries: gpd.GeoDataFrame  # boundary_id, population_served, og_area, geometry
    dropped: List[str] = field(default_factory=list)  # routed straight to Tier 3
    repaired: List[str] = field(default_factory=list)


def polygonal_part(geom: Optional[BaseGeometry]) -> Optional[BaseGeometry]:
    """
    Keep only the polygonal part of a geometry.

    make_valid can return collections mixing polygons with collapsed lines
    or points; only the polygons carry area.
    """
    if geom is None or geom.is_empty:
        return None
    if geom.geom_type in POLYGONAL_TYPES:
        return geom

    polygons = []
    for part in shapely.get_parts(geom):
        if isinstance(part, Polygon):
            polygons.append(part)
        elif isinstance(part, MultiPolygon):
            polygons.extend(part.geoms)

    if not polygons:
        return None
    if len(polygons) == 1:
        return polygons[0]
    return MultiPolygon(polygons)


def to_target_crs(gdf: gpd.GeoDataFrame, target_crs: Optional[str] = None) -> gpd.GeoDataFrame:
    """Reproject to the shared CRS, assuming it when the input carries none."""
    target_crs = target_crs or settings.TARGET_CRS
    if gdf.crs is None:
        logger.warning(f"Input has no CRS, assuming {target_crs}")
        return gdf.set_crs(target_crs)
    if gdf.crs != target_crs:
        return gdf.to_crs(target_crs)
    return gdf


def normalize_boundaries(
    boundaries: gpd.GeoDataFrame,
    strict: bool = False,
    target_crs: Optional[str] = None,
    area_crs: Optional[str] = None,
) -> NormalizedBoundaries:
    """
    Reproject, filter and repair boundary geometries.

    Args:
        boundaries: GeoDataFrame with boundary_id and geometry
        strict: If True, boundaries still invalid after repair go to Tier 3
        target_crs: Shared geographic CRS (default: settings.TARGET_CRS)
        area_crs: Equal-area CRS for the pre-repair area (default: settings.AREA_CRS)

    Returns:
        NormalizedBoundaries with an `og_area` column (pre-repair area, m²)
    """
    area_crs = area_crs or settings.AREA_CRS

    gdf = to_target_crs(boundaries.copy(), target_crs)
    gdf = gdf.reset_index(drop=True)

    # Heterogeneous collections cannot be interpolated
    geom_types = gdf.geometry.geom_type
    unusable = gdf.geometry.isna() | gdf.geometry.is_empty | (geom_types == "GeometryCollection")
    dropped = gdf.loc[unusable, "boundary_id"].tolist()
    if dropped:
        logger.warning(f"Routing {len(dropped)} boundaries with unusable geometry types to Tier 3")
    gdf = gdf.loc[~unusable].copy()

    gdf["og_area"] = gdf.geometry.to_crs(area_crs).area.astype(float)

    repaired = []
    invalid = ~gdf.geometry.is_valid
    if invalid.any():
        repaired = gdf.loc[invalid, "boundary_id"].tolist()
        logger.warning(
            f"Repairing {len(repaired)} invalid geometries; "
            f"repair can change the spatial footprint of these boundaries"
        )
        fixed = shapely.make_valid(np.asarray(gdf.geometry[invalid].values))
        # A collapsed polygon keeps its linework: it has no area for Tier 1 but
        # can still be resolved through the parcel crosswalk
        gdf.loc[invalid, "geometry"] = gpd.GeoSeries(
            [polygonal_part(g) or g for g in fixed], index=gdf.index[invalid], crs=gdf.crs
        )

    unusable = gdf.geometry.isna() | gdf.geometry.is_empty
    if strict:
        unusable |= ~gdf.geometry.is_valid
    lost = gdf.loc[unusable, "boundary_id"].tolist()
    if lost:
        logger.warning(f"Routing {len(lost)} boundaries left unusable by repair to Tier 3")
        dropped.extend(lost)
        gdf = gdf.loc[~unusable].copy()

    logger.info(
        f"Normalized {len(gdf)} boundaries ({len(repaired)} repaired, {len(dropped)} to Tier 3)"
    )

    return NormalizedBoundaries(
        boundaries=gpd.GeoDataFrame(gdf, geometry="geometry", crs=gdf.crs),
        dropped=dropped,
        repaired=repaired,
    )

