import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from shapely.geometry import box

from conftest import TRACTS, make_blocks, make_statistics
from sab_xwalk.processing.geometry import normalize_boundaries
from sab_xwalk.processing.interpolation import (
    apply_pre_interpolation,
    interpolate_pw,
    pivot_source_statistics,
    prepare_weight_points,
    run_tier1,
    weighted_mean,
    weighted_sum,
)
from sab_xwalk.processing.variable_catalog import VariableCatalog

TX_TRACTS = ["48001000100", "48001000200"]


@pytest.fixture
def tx_points():
    return prepare_weight_points(make_blocks(TX_TRACTS))


def _normalized(boundaries):
    return normalize_boundaries(boundaries).boundaries


def test_pivot_matches_fields_case_insensitively(catalog):
    stats = make_statistics(["48001000100"])
    stats["variable"] = stats["variable"].str.lower() + " "
    stats = pd.concat([stats, pd.DataFrame([{"geoid": "48001000100", "variable": "B99999_001", "estimate": 1}])])

    wide = pivot_source_statistics(stats, catalog)

    assert list(wide.columns) == ["total_pop", "hh_total", "pop_white", "hh_owner", "mhi"]
    assert wide.loc["48001000100", "total_pop"] == 1000


def test_pre_interpolation_formula(catalog_records):
    catalog_records.append({"var": "B17001_002", "name": "pov_rate", "category": "none",
                            "interp_method": "extensive_hh",
                            "calc_before_interp": "100*(pov_rate/total_pop)"})
    catalog = VariableCatalog.from_records(catalog_records)
    stats = pd.concat([
        make_statistics(["48001000100"]),
        pd.DataFrame([{"geoid": "48001000100", "variable": "B17001_002", "estimate": 150}]),
    ])

    source = apply_pre_interpolation(pivot_source_statistics(stats, catalog), catalog)

    assert source.loc["48001000100", "pov_rate"] == pytest.approx(15.0)


def test_weighted_helpers():
    frame = pd.DataFrame({
        "bid": ["a", "a", "b"],
        "value": [10.0, 20.0, np.nan],
        "w": [0.5, 0.3, 1.0],
    })

    sums = weighted_sum(frame, ["value"], "w", "bid")
    means = weighted_mean(frame, ["value"], "w", "bid")

    assert sums.loc["a", "value"] == pytest.approx(11.0)
    assert np.isnan(sums.loc["b", "value"])
    assert means.loc["a", "value"] == pytest.approx(13.75)
    assert np.isnan(means.loc["b", "value"])


def test_interpolate_pw_extensive_and_intensive(tx_source, tx_points, boundaries):
    targets = _normalized(boundaries[boundaries["boundary_id"].isin(["A", "B"])])

    summed = interpolate_pw(tx_source, targets, tx_points, "POP20", ["total_pop", "pop_white"], extensive=True)
    averaged = interpolate_pw(tx_source, targets, tx_points, "HOUSING20", ["mhi"], extensive=False)

    assert summed.loc["A", "total_pop"] == pytest.approx(500)
    assert summed.loc["A", "pop_white"] == pytest.approx(300)
    assert np.isnan(summed.loc["B", "total_pop"])
    assert averaged.loc["A", "mhi"] == pytest.approx(50000)


def test_intensive_mean_across_tracts(tx_source, tx_points):
    # Two blocks of each tract: housing 40+40 vs 20+20
    targets = _normalized(gpd.GeoDataFrame(
        {"boundary_id": ["span"]}, geometry=[box(1000, 0, 3000, 1000)], crs="EPSG:5070"
    ))

    result = interpolate_pw(tx_source, targets, tx_points, "HOUSING20", ["mhi"], extensive=False)

    # blocks at x=1500 (tract 1, 40 units) and x=2500 (tract 2, 20 units)
    assert result.loc["span", "mhi"] == pytest.approx((50000 * 40 + 30000 * 20) / 60)


def test_orphan_units_assigned_by_tract_geometry(tx_source):
    blocks = make_blocks(["48001000100"])
    blocks["parent_geoid"] = None
    tracts = gpd.GeoDataFrame(
        {"geoid": ["48001000100"]}, geometry=[TRACTS["48001000100"]], crs="EPSG:5070"
    )

    points = prepare_weight_points(blocks, tracts=tracts)

    assert (points["parent_geoid"] == "48001000100").all()
    assert len(points) == 4


def test_orphan_units_dropped_without_tracts():
    blocks = make_blocks(["48001000100"])
    blocks.loc[0, "parent_geoid"] = None

    points = prepare_weight_points(blocks)

    assert len(points) == 3


def test_run_tier1_accepts_only_nonzero_population(catalog, tx_source, tx_points, boundaries):
    targets = _normalized(boundaries[boundaries["boundary_id"].isin(["A", "B", "C", "D"])])

    accepted, deferred = run_tier1(tx_source, targets, tx_points, catalog)

    assert accepted.index.tolist() == ["A"]
    assert (accepted["tier_crosswalk"] == "tier_1").all()
    assert accepted.loc["A", "hh_total"] == pytest.approx(200)
    assert accepted.loc["A", "hh_owner"] == pytest.approx(100)
    assert deferred == ["B", "C", "D"]


def test_run_tier1_defers_zero_population(catalog, tx_source, boundaries):
    blocks = make_blocks(TX_TRACTS)
    blocks["POP20"] = 0
    points = prepare_weight_points(blocks)
    targets = _normalized(boundaries[boundaries["boundary_id"] == "A"])

    accepted, deferred = run_tier1(tx_source, targets, points, catalog)

    assert accepted.empty
    assert deferred == ["A"]
