import pandas as pd
import pytest

from sab_xwalk.processing.formulas import Percentage
from sab_xwalk.processing.variable_catalog import (
    CatalogValidationError,
    Category,
    InterpMethod,
    VariableCatalog,
    clean_column_name,
    load_catalog_csv,
    spec_from_record,
)


def test_missing_total_pop_is_fatal(catalog_records):
    records = [r for r in catalog_records if r["name"] != "total_pop"]
    with pytest.raises(CatalogValidationError, match="total_pop"):
        VariableCatalog.from_records(records)


def test_numerator_without_universe_is_fatal(catalog_records):
    catalog_records[2]["universe"] = ""
    with pytest.raises(CatalogValidationError, match="universe"):
        VariableCatalog.from_records(catalog_records)


def test_numerator_without_interp_method_is_fatal(catalog_records):
    catalog_records[3]["interp_method"] = "NA"
    with pytest.raises(CatalogValidationError, match="interpolation method"):
        VariableCatalog.from_records(catalog_records)


def test_unknown_universe_and_enum_values_are_fatal(catalog_records):
    bad_universe = [dict(r) for r in catalog_records]
    bad_universe[2]["universe"] = "people"
    with pytest.raises(CatalogValidationError, match="Universe"):
        VariableCatalog.from_records(bad_universe)

    bad_method = [dict(r) for r in catalog_records]
    bad_method[4]["interp_method"] = "areal"
    with pytest.raises(CatalogValidationError, match="interp_method"):
        VariableCatalog.from_records(bad_method)


def test_duplicate_names_after_normalization(catalog_records):
    catalog_records.append({"var": "B01001_001", "name": " Total  Pop ", "category": "none",
                            "interp_method": "intensive_pop"})
    with pytest.raises(CatalogValidationError, match="Duplicate"):
        VariableCatalog.from_records(catalog_records)


def test_formula_errors_are_catalog_errors(catalog_records):
    catalog_records[5]["calc_after_interp"] = "total_pop - unknown_count"
    with pytest.raises(CatalogValidationError, match="unknown_count"):
        VariableCatalog.from_records(catalog_records)

    catalog_records[5]["calc_after_interp"] = "__import__('os')"
    with pytest.raises(CatalogValidationError):
        VariableCatalog.from_records(catalog_records)


def test_derived_cycle_is_fatal(catalog_records):
    catalog_records.extend([
        {"name": "a_count", "category": "none", "calc_after_interp": "b_count + 1"},
        {"name": "b_count", "category": "none", "calc_after_interp": "a_count + 1"},
    ])
    with pytest.raises(CatalogValidationError, match="cycle"):
        VariableCatalog.from_records(catalog_records)


def test_derived_order_follows_dependencies(catalog_records):
    catalog_records.insert(0, {"name": "nonwhite_share", "category": "none",
                               "calc_after_interp": "100*(pop_nonwhite/total_pop)"})
    catalog = VariableCatalog.from_records(catalog_records)

    order = [name for name, _ in catalog.derived_formulas()]
    assert order == ["pop_nonwhite", "nonwhite_share"]
    assert isinstance(dict(catalog.derived_formulas())["nonwhite_share"], Percentage)


def test_independent_derived_formulas_keep_sheet_order(catalog_records):
    catalog_records.extend([
        {"name": "z_count", "category": "none", "calc_after_interp": "total_pop + 1"},
        {"name": "a_count", "category": "none", "calc_after_interp": "z_count + pop_white"},
        {"name": "m_count", "category": "none", "calc_after_interp": "hh_total + 1"},
    ])
    catalog = VariableCatalog.from_records(catalog_records)

    order = [name for name, _ in catalog.derived_formulas()]
    assert order == ["pop_nonwhite", "z_count", "a_count", "m_count"]


def test_pre_interpolation_variable_is_interpolated(catalog_records):
    catalog_records.append({"var": "", "name": "owner_rate", "category": "none",
                            "interp_method": "extensive_hh",
                            "calc_before_interp": "100*(hh_owner/hh_total)"})
    catalog = VariableCatalog.from_records(catalog_records)
    owner_rate = catalog.get("owner_rate")

    assert owner_rate.is_interpolated
    assert not owner_rate.is_derived
    assert "owner_rate" in catalog.averaged_names()
    assert "owner_rate" in catalog.output_columns()
    assert "owner_rate" not in catalog.source_field_map().values()


def test_names_and_fields_are_normalized():
    spec = spec_from_record({"var": " b01003_001 ", "name": "Total Pop", "category": "Denominator",
                             "interp_method": "Intensive_Pop"})
    assert spec.name == "total_pop"
    assert spec.source_field == "B01003_001"
    assert spec.category == Category.DENOMINATOR
    assert spec.interp_method == InterpMethod.INTENSIVE_POP


def test_catalog_queries(catalog):
    assert catalog.summed_names() == ["total_pop", "hh_total", "pop_white", "hh_owner"]
    assert catalog.averaged_names() == ["mhi"]
    assert [v.name for v in catalog.population_denominators()] == ["total_pop", "hh_total"]
    assert ("hh_owner", "hh_total") in catalog.universe_pairs()
    assert catalog.source_field_map()["B19013_001"] == "mhi"
    assert "pop_nonwhite" not in catalog.interpolated_names()
    assert catalog.output_columns()[-3:] == ["pop_white_per", "hh_owner_per", "pop_nonwhite_per"]
    assert "Total_Pop" in catalog

    with pytest.raises(ValueError):
        catalog.get("does_not_exist")


def test_percentage_override_is_reported(catalog_records):
    catalog_records.append({"name": "pop_white_per", "category": "none",
                            "calc_after_interp": "100 * (pop_white / hh_total)"})
    catalog = VariableCatalog.from_records(catalog_records)

    assert catalog.percentage_overrides() == ["pop_white_per"]
    assert catalog.output_columns().count("pop_white_per") == 1


def test_load_catalog_csv_cleans_sheet_headers(tmp_path, catalog_records):
    sheet = pd.DataFrame(catalog_records).rename(columns={
        "var": "Var", "interp_method": "Interp Method", "calc_after_interp": "Calc After Interp",
    })
    path = tmp_path / "variables.csv"
    sheet.to_csv(path, index=False)

    catalog = load_catalog_csv(path)

    assert len(catalog) == len(catalog_records)
    assert catalog.get("pop_nonwhite").is_derived
    assert clean_column_name("Interp Method") == "interp_method"
