"""
SAB Census Crosswalk - Export
Writes crosswalk results as GeoJSON (with geometry) and CSV (attributes only)

Outputs:
- exports/{stem}_latest.geojson / .csv (always current)
- exports/{stem}_{YYYYMMDD}.geojson / .csv (versioned snapshots)
- exports/{stem}_{YYYYMMDD}.json (manifest: counts, checksum, failed regions)
"""

import hashlib
import json
import os
from datetime import datetime, timezone
from typing import Dict, Optional

import geopandas as gpd
import pandas as pd

from config.settings import get_settings
from sab_xwalk.processing.crosswalk import CrosswalkResult
from sab_xwalk.utils.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()


def prepare_properties(gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """Round estimates for export; NaN is written as null."""
    gdf = gdf.copy()
    numeric = [c for c in gdf.select_dtypes(include="number").columns if c != "population_served"]
    gdf[numeric] = gdf[numeric].round(4)
    return gdf


def export_geojson(gdf: gpd.GeoDataFrame, output_path: str) -> str:
    """
    Export GeoDataFrame to GeoJSON file.

    Args:
        gdf: GeoDataFrame to export
        output_path: Output file path

    Returns:
        Path to exported file
    """
    logger.info(f"Exporting GeoJSON to {output_path}")

    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    if os.path.exists(output_path):
        # The GeoJSON driver refuses to overwrite
        os.remove(output_path)

    gdf.to_file(output_path, driver="GeoJSON")

    file_size = os.path.getsize(output_path)
    logger.info(f"Exported {len(gdf)} features, file size: {file_size / 1024:.1f} KB")

    return output_path


def export_csv(gdf: gpd.GeoDataFrame, output_path: str) -> str:
    """Export attributes (no geometry) to CSV."""
    logger.info(f"Exporting CSV to {output_path}")
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    pd.DataFrame(gdf.drop(columns="geometry")).to_csv(output_path, index=False)
    return output_path


def calculate_file_checksum(file_path: str) -> str:
    """
    Calculate SHA256 checksum of file.

    Args:
        file_path: Path to file

    Returns:
        Hex digest of checksum
    """
    sha256 = hashlib.sha256()

    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            sha256.update(chunk)

    return sha256.hexdigest()


def write_manifest(
    manifest_path: str,
    version: str,
    geojson_path: str,
    result: CrosswalkResult,
    acs_year: Optional[int] = None,
) -> str:
    """Record what an export contains, for reproducibility."""
    manifest = {
        "version": version,
        "export_date": datetime.now(timezone.utc).isoformat(),
        "acs_year": acs_year,
        "geojson_path": geojson_path,
        "record_count": len(result.records),
        "checksum": calculate_file_checksum(geojson_path),
        "tier_counts": {k: int(v) for k, v in result.tier_counts().items()},
        "failed_regions": result.failed_regions,
        "dropped_geometries": result.dropped_geometries,
        "crs": settings.TARGET_CRS,
    }
    with open(manifest_path, "w") as f:
        json.dump(manifest, f, indent=2)
    return manifest_path


def export_crosswalk(
    result: CrosswalkResult,
    output_dir: Optional[str] = None,
    stem: str = "sab_crosswalk",
    versioned: bool = True,
    acs_year: Optional[int] = None,
) -> Dict[str, object]:
    """
    Export a crosswalk result.

    Args:
        result: Output of run_crosswalk
        output_dir: Directory for outputs (default: settings.EXPORT_DIR)
        stem: File name stem
        versioned: If True, create dated snapshots in addition to 'latest'
        acs_year: ACS year, recorded in the manifest

    Returns:
        Dict with record_count and output paths
    """
    output_dir = output_dir or settings.EXPORT_DIR
    logger.info(f"Starting crosswalk export to {output_dir} (versioned={versioned})")

    gdf = prepare_properties(result.records)

    latest_geojson = export_geojson(gdf, os.path.join(output_dir, f"{stem}_latest.geojson"))
    latest_csv = export_csv(gdf, os.path.join(output_dir, f"{stem}_latest.csv"))

    versioned_geojson = versioned_csv = manifest_path = None
    if versioned:
        version = datetime.now(timezone.utc).strftime("%Y%m%d")
        versioned_geojson = export_geojson(gdf, os.path.join(output_dir, f"{stem}_{version}.geojson"))
        versioned_csv = export_csv(gdf, os.path.join(output_dir, f"{stem}_{version}.csv"))
        manifest_path = write_manifest(
            os.path.join(output_dir, f"{stem}_{version}.json"),
            version, versioned_geojson, result, acs_year=acs_year,
        )

    logger.info("Crosswalk export completed successfully")

    return {
        "record_count": len(gdf),
        "latest_geojson": latest_geojson,
        "latest_csv": latest_csv,
        "versioned_geojson": versioned_geojson,
        "versioned_csv": versioned_csv,
        "manifest": manifest_path,
    }
