import geopandas as gpd
import pytest
from shapely.geometry import box

from sab_xwalk.processing.geometry import normalize_boundaries
from sab_xwalk.processing.regions import compute_overlaps, resolve_regions

REGIONS = gpd.GeoDataFrame(
    {"region": ["TX", "NM"]},
    geometry=[box(0, 0, 10000, 10000), box(-10000, 0, 0, 10000)],
    crs="EPSG:5070",
)


def _normalized(ids, geoms):
    gdf = gpd.GeoDataFrame({"boundary_id": ids}, geometry=geoms, crs="EPSG:5070")
    return normalize_boundaries(gdf).boundaries


def test_overlap_threshold_19_vs_21_percent():
    boundaries = _normalized(
        ["nineteen", "twentyone"],
        [box(-190, 0, 810, 1000), box(-210, 2000, 790, 3000)],
    )

    assignment = resolve_regions(boundaries, REGIONS, threshold=20)

    assert assignment.regions_by_boundary["nineteen"] == ["TX"]
    assert assignment.regions_by_boundary["twentyone"] == ["NM", "TX"]
    assert assignment.multi_region_ids == ["twentyone"]
    assert assignment.region_label("twentyone") == "NM, TX"


def test_compute_overlaps_percentages():
    boundaries = _normalized(["half"], [box(-500, 0, 500, 1000)])

    overlaps = compute_overlaps(boundaries, REGIONS).set_index("region")

    assert overlaps.loc["TX", "pct_overlap"] == pytest.approx(50, abs=0.01)
    assert overlaps.loc["NM", "pct_overlap"] == pytest.approx(50, abs=0.01)


def test_small_boundary_falls_back_to_largest_overlap():
    # 15% / 85% split with an 90% threshold: nothing qualifies
    boundaries = _normalized(["edge"], [box(-150, 0, 850, 1000)])

    assignment = resolve_regions(boundaries, REGIONS, threshold=90)

    assert assignment.regions_by_boundary["edge"] == ["TX"]
    assert assignment.unassigned == []


def test_boundary_outside_every_region_uses_single_run_region():
    boundaries = _normalized(
        ["inside", "outside"],
        [box(100, 100, 200, 200), box(50000, 50000, 50100, 50100)],
    )

    assignment = resolve_regions(boundaries, REGIONS)

    assert assignment.regions == ["TX"]
    assert assignment.regions_by_boundary["outside"] == ["TX"]


def test_boundary_outside_every_region_unassigned_when_ambiguous():
    boundaries = _normalized(
        ["tx", "nm", "outside"],
        [box(100, 100, 200, 200), box(-200, 100, -100, 200), box(50000, 50000, 50100, 50100)],
    )

    assignment = resolve_regions(boundaries, REGIONS)

    assert assignment.unassigned == ["outside"]
    assert assignment.region_label("outside") is None
    assert assignment.boundaries_for("NM") == ["nm"]
