"""
SAB Census Crosswalk - Application Settings
Manages environment variables and configuration using Pydantic
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Optional
import os


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Optional:
        - CENSUS_API_KEY (the Census Data API works without one, at lower limits)
        - PARCEL_CROSSWALK_PATH (Tier 2 is skipped when no crosswalk is available)
    """

    # External APIs
    CENSUS_API_KEY: Optional[str] = None
    CENSUS_API_BASE_URL: str = "https://api.census.gov/data"
    ACS_DATASET: str = "acs/acs5"

    # Application
    ENVIRONMENT: str = "production"
    LOG_LEVEL: str = "INFO"
    DEBUG: bool = False

    # Rate limiting (requests per minute)
    CENSUS_API_RATE_LIMIT: int = 30
    CENSUS_API_MAX_RETRIES: int = 4

    # Data years
    ACS_LATEST_YEAR: int = 2021
    BLOCK_WEIGHT_YEAR: int = 2020  # Decennial blocks carry POP20 / HOUSING20

    # Coordinate reference systems
    TARGET_CRS: str = "EPSG:4326"  # WGS84, shared by boundaries, tracts and blocks
    AREA_CRS: str = "EPSG:5070"  # CONUS Albers equal-area, used for areas and centroids

    # Region overlap (percent of a boundary's area) below which an overlap is
    # treated as digitization noise at a shared edge
    REGION_OVERLAP_THRESHOLD: float = 20.0

    # Geometry validation
    STRICT_GEOMETRY: bool = False

    # Boundary input columns
    BOUNDARY_ID_COLUMN: str = "pwsid"
    POPULATION_SERVED_COLUMN: str = "population_served_count"

    # Tier 2 parcel crosswalk
    PARCEL_CROSSWALK_PATH: Optional[str] = None
    PARCEL_CROSSWALK_BOUNDARY_COLUMN: str = "pwsid"
    PARCEL_CROSSWALK_GEOID_COLUMN: str = "tract_geoid"
    PARCEL_CROSSWALK_WEIGHT_COLUMN: str = "tract_parcel_weight"

    # File storage
    EXPORT_DIR: str = "exports"
    LOG_DIR: str = "logs"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Create directories if they don't exist
        os.makedirs(self.EXPORT_DIR, exist_ok=True)
        if self.LOG_DIR:
            os.makedirs(self.LOG_DIR, exist_ok=True)


@lru_cache()
def get_settings() -> Settings:
    """
    Returns cached settings instance.
    Uses lru_cache to avoid re-reading .env on every call.
    """
    return Settings()


# Tier tags carried in the tier_crosswalk output column
TIER_1 = "tier_1"
TIER_2_XWALK = "tier_2_xwalk"
TIER_2_CAPPED = "tier_2_capped"
TIER_3 = "tier_3"

# Name of the variable every catalog must define
TOTAL_POPULATION = "total_pop"

# Weight magnitudes carried by 2020 decennial blocks
POPULATION_WEIGHT_COLUMN = "POP20"
HOUSING_WEIGHT_COLUMN = "HOUSING20"

# State-equivalent regions served by the Census Data API (USPS code -> FIPS)
STATE_FIPS = {
    "AL": "01", "AK": "02", "AZ": "04", "AR": "05", "CA": "06",
    "CO": "08", "CT": "09", "DE": "10", "DC": "11", "FL": "12",
    "GA": "13", "HI": "15", "ID": "16", "IL": "17", "IN": "18",
    "IA": "19", "KS": "20", "KY": "21", "LA": "22", "ME": "23",
    "MD": "24", "MA": "25", "MI": "26", "MN": "27", "MS": "28",
    "MO": "29", "MT": "30", "NE": "31", "NV": "32", "NH": "33",
    "NJ": "34", "NM": "35", "NY": "36", "NC": "37", "ND": "38",
    "OH": "39", "OK": "40", "OR": "41", "PA": "42", "RI": "44",
    "SC": "45", "SD": "46", "TN": "47", "TX": "48", "UT": "49",
    "VT": "50", "VA": "51", "WA": "53", "WV": "54", "WI": "55",
    "WY": "56", "AS": "60", "GU": "66", "MP": "69", "PR": "72",
    "VI": "78",
}
