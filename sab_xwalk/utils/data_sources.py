"""
SAB Census Crosswalk - Data Source Utilities
Helper functions for accessing the Census Data API with rate limiting
"""

import random
import time
from functools import wraps
from typing import Any, Dict, List, Optional

import pandas as pd
import requests

from config.settings import get_settings
from sab_xwalk.ingest.base import CensusAPIError
from sab_xwalk.utils.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()

# The Census Data API accepts at most 50 variables per request, NAME included
MAX_VARIABLES_PER_REQUEST = 49

# Annotation values the API returns in place of an estimate
# (e.g. -666666666 "too few sample observations")
MISSING_SENTINEL = -100000000


class RateLimiter:
    """Simple rate limiter for API requests"""

    def __init__(self, calls_per_minute: int):
        self.calls_per_minute = calls_per_minute
        self.min_interval = 60.0 / calls_per_minute
        self.last_call = 0

    def __call__(self, func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            elapsed = time.time() - self.last_call
            if elapsed < self.min_interval:
                time.sleep(self.min_interval - elapsed)
            self.last_call = time.time()
            return func(*args, **kwargs)
        return wrapper


census_limiter = RateLimiter(settings.CENSUS_API_RATE_LIMIT)


def _request_with_retries(url: str, params: Dict[str, Any], max_retries: Optional[int] = None) -> Any:
    """GET a JSON payload, backing off on throttling, server errors and timeouts."""
    max_retries = max_retries or settings.CENSUS_API_MAX_RETRIES
    last_error: Optional[Exception] = None

    for attempt in range(1, max_retries + 1):
        try:
            response = requests.get(url, params=params, timeout=60)
            response.raise_for_status()
            return response.json()
        except (requests.exceptions.HTTPError,
                requests.exceptions.ConnectionError,
                requests.exceptions.Timeout) as e:
            last_error = e
            response = getattr(e, "response", None)
            code = getattr(response, "status_code", None)
            # Client errors (bad variable, bad geography) will not go away
            if code is not None and code not in (429, 500, 502, 503, 504):
                break
            if attempt == max_retries:
                break
            sleep_for = min(60, 2 ** attempt) + random.uniform(0, 1)
            logger.warning(f"Census API error on attempt {attempt}: {e}. Retrying in {sleep_for:.1f}s")
            time.sleep(sleep_for)
        except ValueError as e:
            # Invalid keys and unknown variables come back as HTML/text, not JSON
            last_error = e
            break

    raise CensusAPIError(f"Census API request failed: {last_error}")


def census_variable_code(source_field: str) -> str:
    """ACS detail-table fields are requested as estimates: B01003_001 -> B01003_001E."""
    code = "".join(str(source_field).split()).upper()
    return f"{code}E" if code[-1:].isdigit() else code


@census_limiter
def fetch_census_data(
    dataset: str,
    variables: List[str],
    geography: str,
    state: str,
    year: Optional[int] = None,
    **kwargs
) -> pd.DataFrame:
    """
    Fetch data from Census API with rate limiting.

    Args:
        dataset: Dataset name (e.g., 'acs/acs5')
        variables: List of variable codes (e.g., ['B01003_001E']), at most 49
        geography: Geography level (e.g., 'tract:*')
        state: State FIPS code (e.g., '48')
        year: Data year (default: latest from settings)
        **kwargs: Additional parameters for API

    Returns:
        DataFrame with census data (all values as strings)
    """
    year = year or settings.ACS_LATEST_YEAR

    url = f"{settings.CENSUS_API_BASE_URL}/{year}/{dataset}"

    params = {
        "get": ",".join(["NAME"] + list(variables)),
        "for": geography,
        "in": f"state:{state}",
    }
    if settings.CENSUS_API_KEY:
        params["key"] = settings.CENSUS_API_KEY
    params.update(kwargs)

    logger.info(f"Fetching Census data: {dataset} ({year}), variables: {len(variables)}")

    data = _request_with_retries(url, params)

    if not data or len(data) < 2:
        logger.warning(f"No data returned from Census API: {url}")
        return pd.DataFrame()

    # First row is headers
    df = pd.DataFrame(data[1:], columns=data[0])

    logger.info(f"Fetched {len(df)} records from Census API")
    return df


def fetch_acs_tract_estimates(
    state_fips: str,
    source_fields: List[str],
    year: Optional[int] = None,
    dataset: Optional[str] = None,
) -> pd.DataFrame:
    """
    ACS tract estimates for one state in long form.

    Args:
        state_fips: State FIPS code
        source_fields: Catalog source fields (estimate suffix optional)
        year: ACS year (default: settings.ACS_LATEST_YEAR)
        dataset: Census dataset (default: settings.ACS_DATASET)

    Returns:
        DataFrame with geoid, variable (as given in source_fields), estimate
    """
    dataset = dataset or settings.ACS_DATASET
    codes = {census_variable_code(f): f for f in dict.fromkeys(source_fields)}
    code_list = list(codes)

    frames = []
    for start in range(0, len(code_list), MAX_VARIABLES_PER_REQUEST):
        chunk = code_list[start:start + MAX_VARIABLES_PER_REQUEST]
        wide = fetch_census_data(dataset, chunk, "tract:*", state=state_fips, year=year)
        if wide.empty:
            continue

        wide["geoid"] = wide["state"] + wide["county"] + wide["tract"]
        long = wide.melt(id_vars=["geoid"], value_vars=chunk, var_name="code", value_name="estimate")
        frames.append(long)

    if not frames:
        return pd.DataFrame(columns=["geoid", "variable", "estimate"])

    stats = pd.concat(frames, ignore_index=True)
    stats["variable"] = stats["code"].map(codes)
    stats["estimate"] = pd.to_numeric(stats["estimate"], errors="coerce")
    stats["estimate"] = stats["estimate"].where(stats["estimate"] > MISSING_SENTINEL)

    return stats[["geoid", "variable", "estimate"]]
