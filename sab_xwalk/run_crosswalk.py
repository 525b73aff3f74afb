"""
SAB Census Crosswalk - Main Run Orchestration

Crosswalks water system service area boundaries to census variables and
exports the result.

Run stages:
1. Variable catalog validation
2. Boundary loading
3. Tiered crosswalk (per region, then merged)
4. GeoJSON / CSV export

Usage:
    python -m sab_xwalk.run_crosswalk --boundaries sabs.geojson --catalog variables.csv --acs-year 2021
    python -m sab_xwalk.run_crosswalk --boundaries sabs.gpkg --catalog variables.csv \
        --acs-year 2021 --crosswalk parcel_xwalk.csv --regions TX NM
"""

import argparse
import os
import sys
from datetime import datetime
from typing import Optional, Sequence

from config.settings import get_settings
from sab_xwalk.export.crosswalk_export import export_crosswalk
from sab_xwalk.ingest.census_provider import CensusDataProvider
from sab_xwalk.processing.crosswalk import run_crosswalk
from sab_xwalk.processing.variable_catalog import CatalogValidationError, load_catalog_csv
from sab_xwalk.utils.logging import setup_logging

logger = setup_logging("crosswalk")
settings = get_settings()


def check_prerequisites(boundaries: str, catalog: str, crosswalk: Optional[str] = None) -> bool:
    """
    Check that input files exist before anything is fetched.

    Returns:
        True if all checks pass, False otherwise
    """
    logger.info("Checking prerequisites")

    for label, path in (("boundaries", boundaries), ("catalog", catalog), ("crosswalk", crosswalk)):
        if path and not os.path.exists(path):
            logger.error(f"Input {label} file not found: {path}")
            return False

    if not settings.CENSUS_API_KEY:
        logger.warning("CENSUS_API_KEY not set; Census API requests are limited without a key")

    logger.info("Prerequisites check passed")
    return True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="SAB Census Crosswalk - service area boundaries to census variables"
    )

    parser.add_argument(
        "--boundaries",
        type=str,
        required=True,
        help="Service area boundaries (GeoJSON, GeoPackage or shapefile)"
    )

    parser.add_argument(
        "--catalog",
        type=str,
        required=True,
        help="Variable catalog CSV"
    )

    parser.add_argument(
        "--acs-year",
        type=int,
        default=settings.ACS_LATEST_YEAR,
        help=f"ACS 5-year release to crosswalk (default: {settings.ACS_LATEST_YEAR})"
    )

    parser.add_argument(
        "--crosswalk",
        type=str,
        default=settings.PARCEL_CROSSWALK_PATH,
        help="Parcel crosswalk CSV for Tier 2 (default: PARCEL_CROSSWALK_PATH)"
    )

    parser.add_argument(
        "--regions",
        type=str,
        nargs='+',
        help="Only crosswalk in these states (USPS codes, default: all)"
    )

    parser.add_argument(
        "--strict-geometry",
        action="store_true",
        default=settings.STRICT_GEOMETRY,
        help="Send boundaries still invalid after repair to Tier 3"
    )

    parser.add_argument(
        "--output-dir",
        type=str,
        default=settings.EXPORT_DIR,
        help=f"Export directory (default: {settings.EXPORT_DIR})"
    )

    parser.add_argument(
        "--no-export",
        action="store_true",
        help="Run the crosswalk without writing outputs"
    )

    return parser


def main(argv: Optional[Sequence[str]] = None):
    """Main crosswalk orchestration"""

    args = build_parser().parse_args(argv)

    start_time = datetime.now()
    logger.info("=" * 60)
    logger.info("SAB Census Crosswalk - Run Start")
    logger.info(f"Time: {start_time.isoformat()}")
    logger.info(f"Arguments: {vars(args)}")
    logger.info("=" * 60)

    if not check_prerequisites(args.boundaries, args.catalog, args.crosswalk):
        logger.error("Prerequisites check failed, exiting")
        sys.exit(1)

    try:
        # Stage 1: Catalog
        logger.info("STAGE 1: VARIABLE CATALOG")
        try:
            catalog = load_catalog_csv(args.catalog)
        except CatalogValidationError as e:
            logger.error(f"Variable catalog is invalid: {e}")
            sys.exit(1)

        # Stage 2: Boundaries
        logger.info("STAGE 2: BOUNDARIES")
        provider = CensusDataProvider(
            boundaries_path=args.boundaries,
            crosswalk_path=args.crosswalk,
            regions=args.regions,
        )
        boundaries = provider.fetch_boundaries()
        if boundaries.empty:
            logger.error("No boundaries to crosswalk")
            sys.exit(1)

        # Stage 3: Crosswalk
        logger.info("STAGE 3: TIERED CROSSWALK")
        result = run_crosswalk(
            provider,
            catalog,
            acs_year=args.acs_year,
            strict_geometry=args.strict_geometry,
            boundaries=boundaries,
        )

        attempted = result.assignment.regions if result.assignment is not None else []
        if attempted and len(result.failed_regions) == len(attempted):
            logger.error("All regions failed, nothing to export")
            sys.exit(1)

        for tier, count in sorted(result.tier_counts().items()):
            logger.info(f"{tier}: {count}")

        # Stage 4: Export
        if not args.no_export:
            logger.info("STAGE 4: EXPORT")
            summary = export_crosswalk(result, output_dir=args.output_dir, acs_year=args.acs_year)
            logger.info(f"Exported {summary['record_count']} boundaries to {summary['latest_geojson']}")

        end_time = datetime.now()
        duration = (end_time - start_time).total_seconds()

        logger.info("=" * 60)
        logger.info("CROSSWALK COMPLETE")
        logger.info(f"Duration: {duration:.1f} seconds")
        logger.info("=" * 60)

        sys.exit(0)

    except KeyboardInterrupt:
        logger.warning("Crosswalk interrupted by user")
        sys.exit(130)

    except Exception as e:
        logger.error(f"Crosswalk failed with unhandled exception: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
