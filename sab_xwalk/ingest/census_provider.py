"""
SAB Census Crosswalk - Census Data Provider
Supplies the crosswalk engine from public Census sources and local files

Data sources:
- Boundaries: local GeoJSON / GeoPackage / shapefile of service areas
- Tract statistics: Census Data API, ACS 5-year (via requests)
- Tract geometry, 2020 blocks (POP20, HOUSING20), states: TIGER/Line (via pygris)
- Parcel crosswalk: local CSV of parcel-weighted boundary/tract fractions
"""

from typing import Dict, Iterable, Optional, Sequence

import geopandas as gpd
import pandas as pd

from config.settings import (
    HOUSING_WEIGHT_COLUMN,
    POPULATION_WEIGHT_COLUMN,
    STATE_FIPS,
    get_settings,
)
from sab_xwalk.ingest.base import CrosswalkDataProvider, DataProviderError
from sab_xwalk.utils.data_sources import fetch_acs_tract_estimates
from sab_xwalk.utils.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()


def state_fips(region: str) -> str:
    """USPS code ('TX') or FIPS ('48') -> FIPS."""
    code = str(region).strip().upper()
    if code in STATE_FIPS:
        return STATE_FIPS[code]
    if code.zfill(2) in STATE_FIPS.values():
        return code.zfill(2)
    raise DataProviderError(f"Unknown region: {region}")


class CensusDataProvider(CrosswalkDataProvider):
    """
    Crosswalk inputs from the Census Data API, TIGER/Line and local files.

    Args:
        boundaries_path: Path to service area boundaries
        crosswalk_path: Path to the parcel crosswalk CSV (default: settings.PARCEL_CROSSWALK_PATH)
        regions: Restrict region polygons (and so the run) to these USPS codes
        id_column: Boundary id column in the boundaries file
        population_column: Reported population column in the boundaries file
    """

    def __init__(
        self,
        boundaries_path: str,
        crosswalk_path: Optional[str] = None,
        regions: Optional[Sequence[str]] = None,
        id_column: Optional[str] = None,
        population_column: Optional[str] = None,
    ):
        self.boundaries_path = boundaries_path
        self.crosswalk_path = crosswalk_path or settings.PARCEL_CROSSWALK_PATH
        self.regions = [r.upper() for r in regions] if regions else None
        self.id_column = id_column or settings.BOUNDARY_ID_COLUMN
        self.population_column = population_column or settings.POPULATION_SERVED_COLUMN
        self._crosswalk: Optional[pd.DataFrame] = None
        self._tracts: Dict[str, gpd.GeoDataFrame] = {}

    def fetch_boundaries(self) -> gpd.GeoDataFrame:
        logger.info(f"Loading boundaries from {self.boundaries_path}")
        try:
            gdf = gpd.read_file(self.boundaries_path)
        except Exception as e:
            raise DataProviderError(f"Could not read boundaries {self.boundaries_path}: {e}") from e

        if self.id_column not in gdf.columns:
            raise DataProviderError(
                f"Boundaries have no '{self.id_column}' column (columns: {list(gdf.columns)})"
            )

        if self.population_column in gdf.columns:
            population = pd.to_numeric(gdf[self.population_column], errors="coerce")
        else:
            logger.warning(f"Boundaries have no '{self.population_column}' column; Tier 2 will not be capped")
            population = pd.Series(float("nan"), index=gdf.index)

        boundaries = gpd.GeoDataFrame(
            {
                "boundary_id": gdf[self.id_column].astype(str).str.strip(),
                "population_served": population,
            },
            geometry=gdf.geometry.values,
            crs=gdf.crs,
        )
        logger.info(f"Loaded {len(boundaries)} boundaries")
        return boundaries

    def fetch_tracts(self, region: str, year: int) -> gpd.GeoDataFrame:
        """Cartographic tract boundaries (geoid, geometry) for one state."""
        key = f"{region}_{year}"
        if key not in self._tracts:
            import pygris

            logger.info(f"Fetching {region} tract boundaries from Census TIGER/Line ({year})")
            tracts = pygris.tracts(state=state_fips(region), year=year, cb=True)
            tracts = tracts.rename(columns={"GEOID": "geoid"})[["geoid", "geometry"]]
            self._tracts[key] = tracts.to_crs(settings.TARGET_CRS)
        return self._tracts[key]

    def fetch_source_statistics(self, region: str, year: int, variable_names: Sequence[str]) -> pd.DataFrame:
        stats = fetch_acs_tract_estimates(state_fips(region), list(variable_names), year=year)
        if stats.empty:
            raise DataProviderError(f"No ACS {year} tract estimates returned for {region}")

        try:
            tracts = self.fetch_tracts(region, year)
        except Exception as e:
            # Geometry only rescues blocks without a parent id
            logger.warning(f"Tract geometry unavailable for {region}: {e}")
            return stats

        stats = stats.merge(tracts, on="geoid", how="left")
        return gpd.GeoDataFrame(stats, geometry="geometry", crs=tracts.crs)

    def fetch_weight_units(self, region: str, year: int) -> gpd.GeoDataFrame:
        import pygris

        block_year = settings.BLOCK_WEIGHT_YEAR
        logger.info(f"Fetching {region} census blocks ({block_year}) for ACS {year}")
        try:
            blocks = pygris.blocks(state=state_fips(region), year=block_year)
        except Exception as e:
            raise DataProviderError(f"Could not fetch blocks for {region}: {e}") from e

        id_column = "GEOID20" if "GEOID20" in blocks.columns else "GEOID"
        units = gpd.GeoDataFrame(
            {
                "unit_id": blocks[id_column].astype(str),
                "parent_geoid": blocks[id_column].astype(str).str[:11],
                POPULATION_WEIGHT_COLUMN: pd.to_numeric(blocks[POPULATION_WEIGHT_COLUMN], errors="coerce"),
                HOUSING_WEIGHT_COLUMN: pd.to_numeric(blocks[HOUSING_WEIGHT_COLUMN], errors="coerce"),
            },
            geometry=blocks.geometry.values,
            crs=blocks.crs,
        )
        logger.info(f"Fetched {len(units)} blocks for {region}")
        return units

    def _load_parcel_crosswalk(self) -> pd.DataFrame:
        if self._crosswalk is not None:
            return self._crosswalk

        if not self.crosswalk_path:
            logger.warning("No parcel crosswalk configured; Tier 2 will not resolve any boundaries")
            self._crosswalk = pd.DataFrame(columns=["boundary_id", "geoid", "weight"])
            return self._crosswalk

        logger.info(f"Loading parcel crosswalk from {self.crosswalk_path}")
        try:
            raw = pd.read_csv(
                self.crosswalk_path,
                dtype={
                    settings.PARCEL_CROSSWALK_BOUNDARY_COLUMN: str,
                    settings.PARCEL_CROSSWALK_GEOID_COLUMN: str,
                },
            )
        except Exception as e:
            raise DataProviderError(f"Could not read parcel crosswalk {self.crosswalk_path}: {e}") from e

        raw = raw.drop(columns=[c for c in raw.columns if c.startswith("Unnamed:")])
        self._crosswalk = raw.rename(columns={
            settings.PARCEL_CROSSWALK_BOUNDARY_COLUMN: "boundary_id",
            settings.PARCEL_CROSSWALK_GEOID_COLUMN: "geoid",
            settings.PARCEL_CROSSWALK_WEIGHT_COLUMN: "weight",
        })[["boundary_id", "geoid", "weight"]]
        logger.info(f"Loaded {len(self._crosswalk)} parcel crosswalk records")
        return self._crosswalk

    def fetch_parcel_crosswalk(self, boundary_ids: Iterable[str]) -> pd.DataFrame:
        crosswalk = self._load_parcel_crosswalk()
        ids = set(str(b) for b in boundary_ids)
        return crosswalk[crosswalk["boundary_id"].isin(ids)].reset_index(drop=True)

    def fetch_region_boundaries(self) -> gpd.GeoDataFrame:
        import pygris

        logger.info("Fetching state boundaries from Census TIGER/Line")
        try:
            states = pygris.states(cb=True, year=settings.ACS_LATEST_YEAR)
        except Exception as e:
            raise DataProviderError(f"Could not fetch state boundaries: {e}") from e

        states = states.rename(columns={"STUSPS": "region"})[["region", "geometry"]]
        if self.regions:
            states = states[states["region"].isin(self.regions)]
        return states.to_crs(settings.TARGET_CRS).reset_index(drop=True)
