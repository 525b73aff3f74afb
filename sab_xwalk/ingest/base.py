"""
Base Crosswalk Data Provider Interface

The crosswalk engine never fetches data itself. Everything it consumes
(boundaries, tract statistics, block weights, the parcel crosswalk and region
polygons) comes through this interface, so the engine can be run against
the Census APIs, local files or in-memory test fixtures alike.
"""

from abc import ABC, abstractmethod
from typing import Iterable, Sequence

import geopandas as gpd
import pandas as pd


class CrosswalkDataProvider(ABC):
    """
    Abstract base class for crosswalk data providers.

    Column contracts:
    - boundaries: boundary_id, population_served, geometry
    - source statistics: geoid, variable, estimate (optionally geometry)
    - weight units: unit_id, parent_geoid, POP20, HOUSING20, geometry
    - parcel crosswalk: boundary_id, geoid, weight
    - region boundaries: region, geometry
    """

    @abstractmethod
    def fetch_boundaries(self) -> gpd.GeoDataFrame:
        """
        Service area boundaries to crosswalk.

        Returns:
            GeoDataFrame with boundary_id, population_served, geometry

        Raises:
            DataProviderError: If boundaries cannot be loaded
        """
        pass

    @abstractmethod
    def fetch_source_statistics(
        self,
        region: str,
        year: int,
        variable_names: Sequence[str]
    ) -> pd.DataFrame:
        """
        Tract-level statistics for one region, long form.

        Args:
            region: Region (state) code, e.g. 'TX'
            year: Statistical (ACS) year
            variable_names: Source fields to fetch (e.g. 'B01003_001')

        Returns:
            DataFrame with geoid, variable, estimate. A GeoDataFrame carrying
            tract geometry lets weight units without a parent id be assigned
            spatially.

        Raises:
            DataProviderError: If statistics cannot be fetched
        """
        pass

    @abstractmethod
    def fetch_weight_units(self, region: str, year: int) -> gpd.GeoDataFrame:
        """
        Weight units (census blocks) for one region.

        Returns:
            GeoDataFrame with unit_id, parent_geoid, POP20, HOUSING20, geometry
        """
        pass

    @abstractmethod
    def fetch_parcel_crosswalk(self, boundary_ids: Iterable[str]) -> pd.DataFrame:
        """
        Parcel crosswalk records for the given boundaries.

        Returns:
            DataFrame with boundary_id, geoid, weight (empty when unavailable)
        """
        pass

    @abstractmethod
    def fetch_region_boundaries(self) -> gpd.GeoDataFrame:
        """
        Region (state-equivalent) polygons.

        Returns:
            GeoDataFrame with region, geometry
        """
        pass


class DataProviderError(Exception):
    """Base exception for data provider errors"""
    pass


class CensusAPIError(DataProviderError):
    """Raised when the Census Data API fails after retries"""
    pass
