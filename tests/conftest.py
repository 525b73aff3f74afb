"""
Pytest configuration and shared fixtures for SAB Census Crosswalk tests.

The synthetic world is laid out in EPSG:5070 metres:

- Region TX: box(0, 0, 10000, 10000); region NM: box(-10000, 0, 0, 10000)
- Tracts (2 km squares), each split into four 1 km blocks:
    48001000100 box(0, 0, 2000, 2000)      blocks POP20=100, HOUSING20=40
    48001000200 box(2000, 0, 4000, 2000)   blocks POP20=50,  HOUSING20=20
    35001000100 box(-2000, 0, 0, 2000)     blocks POP20=100, HOUSING20=40
- Boundaries:
    A  covers the two western blocks of 48001000100          -> tier_1
    B  sliver with no block, parcel weights 0.5 / 0.3        -> tier_2_xwalk
    C  sliver with no block, parcel weight 1.0, pop served 250 -> tier_2_capped
    D  empty corner of TX, no parcel records                  -> tier_3
    E  straddles TX / NM (50% each)                           -> tier_1, tier_1
"""

from typing import Dict, Iterable, List, Sequence

import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import box

from sab_xwalk.ingest.base import CrosswalkDataProvider, DataProviderError
from sab_xwalk.processing.variable_catalog import VariableCatalog

AREA_CRS = "EPSG:5070"

TRACTS = {
    "48001000100": box(0, 0, 2000, 2000),
    "48001000200": box(2000, 0, 4000, 2000),
    "35001000100": box(-2000, 0, 0, 2000),
}

BLOCK_WEIGHTS = {
    "48001000100": (100, 40),
    "48001000200": (50, 20),
    "35001000100": (100, 40),
}

# geoid -> source field -> estimate
TRACT_STATISTICS = {
    "48001000100": {"B01003_001": 1000, "B11001_001": 400, "B02001_002": 600,
                    "B25003_002": 200, "B19013_001": 50000},
    "48001000200": {"B01003_001": 500, "B11001_001": 200, "B02001_002": 100,
                    "B25003_002": 50, "B19013_001": 30000},
    "35001000100": {"B01003_001": 800, "B11001_001": 300, "B02001_002": 400,
                    "B25003_002": 150, "B19013_001": 40000},
}

CATALOG_RECORDS = [
    {"var": "B01003_001", "name": "total_pop", "category": "denominator",
     "interp_method": "intensive_pop", "description": "Total population"},
    {"var": "B11001_001", "name": "hh_total", "category": "denominator",
     "interp_method": "intensive_hh", "description": "Total households"},
    {"var": "B02001_002", "name": "pop_white", "category": "numerator",
     "interp_method": "intensive_pop", "universe": "total_pop"},
    {"var": "B25003_002", "name": "hh_owner", "category": "numerator",
     "interp_method": "intensive_hh", "universe": "hh_total"},
    {"var": "B19013_001", "name": "mhi", "category": "none",
     "interp_method": "extensive_hh", "description": "Median household income"},
    {"var": "", "name": "pop_nonwhite", "category": "numerator",
     "interp_method": "intensive_pop", "universe": "total_pop",
     "calc_after_interp": "total_pop - pop_white"},
]


def region_of(geoid: str) -> str:
    return "TX" if geoid.startswith("48") else "NM"


def make_blocks(geoids: Iterable[str]) -> gpd.GeoDataFrame:
    """Four 1 km blocks per tract."""
    rows = []
    for geoid in geoids:
        minx, miny, maxx, maxy = TRACTS[geoid].bounds
        pop, housing = BLOCK_WEIGHTS[geoid]
        n = 1
        for x in (minx, minx + 1000):
            for y in (miny, miny + 1000):
                rows.append({
                    "unit_id": f"{geoid}100{n}",
                    "parent_geoid": geoid,
                    "POP20": pop,
                    "HOUSING20": housing,
                    "geometry": box(x, y, x + 1000, y + 1000),
                })
                n += 1
    return gpd.GeoDataFrame(rows, geometry="geometry", crs=AREA_CRS)


def make_statistics(geoids: Iterable[str]) -> pd.DataFrame:
    rows = [
        {"geoid": geoid, "variable": field, "estimate": value}
        for geoid in geoids
        for field, value in TRACT_STATISTICS[geoid].items()
    ]
    return pd.DataFrame(rows)


class FakeProvider(CrosswalkDataProvider):
    """In-memory provider over the synthetic world."""

    def __init__(self, boundaries: gpd.GeoDataFrame, crosswalk: pd.DataFrame, failing: Sequence[str] = ()):
        self.boundaries = boundaries
        self.crosswalk = crosswalk
        self.failing = set(failing)
        self.calls: Dict[str, List] = {"statistics": [], "weights": [], "crosswalk": []}

    def fetch_boundaries(self) -> gpd.GeoDataFrame:
        return self.boundaries.copy()

    def fetch_source_statistics(self, region, year, variable_names):
        self.calls["statistics"].append((region, year, list(variable_names)))
        if region in self.failing:
            raise DataProviderError(f"Census API unavailable for {region}")
        return make_statistics(g for g in TRACTS if region_of(g) == region)

    def fetch_weight_units(self, region, year):
        self.calls["weights"].append((region, year))
        return make_blocks(g for g in TRACTS if region_of(g) == region)

    def fetch_parcel_crosswalk(self, boundary_ids):
        ids = list(boundary_ids)
        self.calls["crosswalk"].append(ids)
        return self.crosswalk[self.crosswalk["boundary_id"].isin(ids)].reset_index(drop=True)

    def fetch_region_boundaries(self) -> gpd.GeoDataFrame:
        return gpd.GeoDataFrame(
            {"region": ["TX", "NM"]},
            geometry=[box(0, 0, 10000, 10000), box(-10000, 0, 0, 10000)],
            crs=AREA_CRS,
        )


@pytest.fixture
def catalog_records() -> List[dict]:
    return [dict(r) for r in CATALOG_RECORDS]


@pytest.fixture
def catalog() -> VariableCatalog:
    return VariableCatalog.from_records(CATALOG_RECORDS)


@pytest.fixture
def boundaries() -> gpd.GeoDataFrame:
    return gpd.GeoDataFrame(
        {
            "boundary_id": ["A", "B", "C", "D", "E"],
            "population_served": [600, 1000, 250, 50, 2000],
        },
        geometry=[
            box(0, 0, 1000, 2000),
            box(1900, 100, 2100, 300),
            box(3100, 100, 3300, 300),
            box(5000, 5000, 5200, 5200),
            box(-1000, 0, 1000, 2000),
        ],
        crs=AREA_CRS,
    )


@pytest.fixture
def parcel_crosswalk() -> pd.DataFrame:
    return pd.DataFrame({
        "boundary_id": ["B", "B", "C"],
        "geoid": ["48001000100", "48001000200", "48001000200"],
        "weight": [0.5, 0.3, 1.0],
    })


@pytest.fixture
def provider(boundaries, parcel_crosswalk) -> FakeProvider:
    return FakeProvider(boundaries, parcel_crosswalk)


@pytest.fixture
def tx_source(catalog) -> pd.DataFrame:
    """Wide TX tract values indexed by geoid."""
    from sab_xwalk.processing.interpolation import pivot_source_statistics

    return pivot_source_statistics(make_statistics(["48001000100", "48001000200"]), catalog)
