"""
SAB Census Crosswalk - Variable Catalog
Single source of truth for every variable the crosswalk estimates

Each row of the census variable sheet defines:
- Output name and the census source field it is read from
- Category (numerator / denominator / none)
- Interpolation method, which picks the weighting kernel
- Universe (denominator used for the automatic `{name}_per` percentage)
- Optional formulas applied before and after interpolation

The catalog is validated before any data is fetched. A configuration error
here aborts the run.
"""

import re
from dataclasses import dataclass
from enum import Enum
from graphlib import CycleError, TopologicalSorter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import pandas as pd

from config.settings import TOTAL_POPULATION
from sab_xwalk.processing.formulas import Expr, FormulaError, parse_formula
from sab_xwalk.utils.logging import get_logger

logger = get_logger(__name__)

PERCENT_SUFFIX = "_per"


class CatalogValidationError(ValueError):
    """Raised when the variable sheet cannot drive a crosswalk run"""
    pass


class Category(str, Enum):
    """Role a variable plays in percentage calculations"""
    NUMERATOR = "numerator"
    DENOMINATOR = "denominator"
    NONE = "none"


class InterpMethod(str, Enum):
    """Interpolation kernel (names follow the variable sheet)"""
    NONE = "none"  # fetched for formulas only, never interpolated
    INTENSIVE_POP = "intensive_pop"  # summed, weighted by block population
    INTENSIVE_HH = "intensive_hh"  # summed, weighted by block housing units
    EXTENSIVE_HH = "extensive_hh"  # weighted mean by block housing units (income, rates)


# Methods whose values are counts and add up across areas
SUMMED_METHODS = (InterpMethod.INTENSIVE_POP, InterpMethod.INTENSIVE_HH)


@dataclass(frozen=True)
class VariableSpec:
    """
    Definition of a single crosswalk variable
    """
    name: str  # Output column name (normalized)
    category: Category
    source_field: Optional[str] = None  # Census variable code, None for derived-only rows
    interp_method: Optional[InterpMethod] = None
    universe: Optional[str] = None  # Denominator variable for `{name}_per`
    calc_before_interp: Optional[str] = None
    calc_after_interp: Optional[str] = None
    description: str = ""

    @property
    def per_name(self) -> str:
        return f"{self.name}{PERCENT_SUFFIX}"

    @property
    def has_source(self) -> bool:
        return self.source_field is not None

    @property
    def is_interpolated(self) -> bool:
        """Tract values exist (census field or calc_before_interp) and a method is set"""
        if self.interp_method in (None, InterpMethod.NONE):
            return False
        return self.has_source or self.calc_before_interp is not None

    @property
    def is_derived(self) -> bool:
        """Computed from other variables after interpolation"""
        return not self.is_interpolated and not self.has_source and self.calc_after_interp is not None


def normalize_name(value: str) -> str:
    """'  Total  Pop ' -> 'total_pop'"""
    return "_".join(str(value).split()).lower()


def normalize_source_field(value: str) -> str:
    """' b01003_001 ' -> 'B01003_001'"""
    return "".join(str(value).split()).upper()


def clean_column_name(column: str) -> str:
    """Snake-case a spreadsheet header ('Interp Method' -> 'interp_method')."""
    cleaned = re.sub(r"[^0-9a-zA-Z]+", "_", str(column).strip()).strip("_")
    return cleaned.lower()


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and pd.isna(value):
        return None
    text = str(value).strip()
    if not text or text.upper() in ("NA", "NAN"):
        return None
    return text


def _parse_enum(enum_cls, raw: Optional[str], field: str, name: str, default=None):
    if raw is None:
        return default
    try:
        return enum_cls(normalize_name(raw))
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise CatalogValidationError(
            f"Variable {name!r}: unknown {field} {raw!r} (expected one of: {allowed})"
        )


def spec_from_record(record: Mapping[str, Any]) -> VariableSpec:
    """
    Build a normalized VariableSpec from one sheet row.

    Accepts either the sheet's column names (`var`, `name`, ...) or the
    dataclass field names (`source_field`, ...).
    """
    raw_name = _clean(record.get("name"))
    if raw_name is None:
        raise CatalogValidationError(f"Variable row without a name: {dict(record)}")
    name = normalize_name(raw_name)

    source = _clean(record.get("var", record.get("source_field")))
    universe = _clean(record.get("universe"))

    return VariableSpec(
        name=name,
        category=_parse_enum(Category, _clean(record.get("category")), "category", name,
                             default=Category.NONE),
        source_field=normalize_source_field(source) if source else None,
        interp_method=_parse_enum(InterpMethod, _clean(record.get("interp_method")),
                                  "interp_method", name),
        universe=normalize_name(universe) if universe else None,
        calc_before_interp=_clean(record.get("calc_before_interp")),
        calc_after_interp=_clean(record.get("calc_after_interp")),
        description=_clean(record.get("description")) or "",
    )


class VariableCatalog:
    """
    Validated, indexed collection of VariableSpecs.

    Construction validates the catalog and compiles every formula; a catalog
    instance is therefore always usable by the crosswalk engine.
    """

    def __init__(self, variables: Iterable[VariableSpec]):
        self.variables: Tuple[VariableSpec, ...] = tuple(variables)

        names = [v.name for v in self.variables]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise CatalogValidationError(f"Duplicate variable names: {duplicates}")

        self._by_name: Dict[str, VariableSpec] = {v.name: v for v in self.variables}
        self._validate_required()

        self._pre_formulas = self._compile("calc_before_interp")
        self._post_formulas = self._compile("calc_after_interp")
        self._validate_references()
        self._derived_order = self._order_derived()

        for name in self.percentage_overrides():
            logger.info(f"Derived formula for {name} replaces the automatic universe percentage")

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_required(self) -> None:
        if TOTAL_POPULATION not in self._by_name:
            raise CatalogValidationError(f"The {TOTAL_POPULATION} census variable is missing")
        total = self._by_name[TOTAL_POPULATION]
        if not (total.has_source and total.is_interpolated):
            raise CatalogValidationError(
                f"{TOTAL_POPULATION} needs a census source field and an interpolation method"
            )

        numerators = [v for v in self.variables if v.category == Category.NUMERATOR]

        missing_universe = [v.name for v in numerators if v.universe is None]
        if missing_universe:
            raise CatalogValidationError(
                f"All numerator variables need a universe: {missing_universe}"
            )

        missing_method = [v.name for v in numerators if v.interp_method is None]
        if missing_method:
            raise CatalogValidationError(
                f"Provide an interpolation method for numerator variables: {missing_method}"
            )

        unknown_universe = [
            f"{v.name} -> {v.universe}"
            for v in self.variables
            if v.universe is not None and v.universe not in self._by_name
        ]
        if unknown_universe:
            raise CatalogValidationError(f"Universe is not a catalog variable: {unknown_universe}")

    def _compile(self, attribute: str) -> Dict[str, Expr]:
        compiled = {}
        for v in self.variables:
            text = getattr(v, attribute)
            if text is None:
                continue
            try:
                compiled[v.name] = parse_formula(text)
            except FormulaError as e:
                raise CatalogValidationError(f"Variable {v.name!r} {attribute}: {e}") from e
        return compiled

    def _validate_references(self) -> None:
        names = set(self._by_name)
        per_names = {v.per_name for v in self.variables if v.universe is not None}

        for name, expr in self._pre_formulas.items():
            unknown = sorted(expr.fields() - names)
            if unknown:
                raise CatalogValidationError(
                    f"Variable {name!r} calc_before_interp references unknown names: {unknown}"
                )

        for name, expr in self._post_formulas.items():
            unknown = sorted(expr.fields() - names - per_names)
            if unknown:
                raise CatalogValidationError(
                    f"Variable {name!r} calc_after_interp references unknown names: {unknown}"
                )

    def _order_derived(self) -> List[str]:
        derived = [v.name for v in self.variables if v.is_derived]
        derived_set = set(derived)

        graph = {}
        for name in derived:
            deps = set()
            for ref in self._post_formulas[name].fields():
                base = ref[: -len(PERCENT_SUFFIX)] if ref.endswith(PERCENT_SUFFIX) else ref
                for candidate in (ref, base):
                    if candidate in derived_set and candidate != name:
                        deps.add(candidate)
            graph[name] = deps

        sorter = TopologicalSorter(graph)
        try:
            sorter.prepare()
        except CycleError as e:
            raise CatalogValidationError(f"Derived formulas form a cycle: {e.args[1]}") from e

        # Earliest sheet row first among the formulas whose inputs are ready
        position = {name: i for i, name in enumerate(derived)}
        order: List[str] = []
        ready: List[str] = []
        while sorter.is_active():
            ready.extend(sorter.get_ready())
            ready.sort(key=position.get)
            name = ready.pop(0)
            order.append(name)
            sorter.done(name)
        return order

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def __iter__(self):
        return iter(self.variables)

    def __len__(self) -> int:
        return len(self.variables)

    def __contains__(self, name: str) -> bool:
        return normalize_name(name) in self._by_name

    def get(self, name: str) -> VariableSpec:
        """Case- and whitespace-insensitive lookup."""
        key = normalize_name(name)
        if key not in self._by_name:
            raise ValueError(f"Unknown variable: {name}")
        return self._by_name[key]

    @property
    def names(self) -> List[str]:
        return [v.name for v in self.variables]

    def source_variables(self) -> List[VariableSpec]:
        """Variables read from the census (they have a source field)."""
        return [v for v in self.variables if v.has_source]

    def source_field_map(self) -> Dict[str, str]:
        """source field -> variable name"""
        return {v.source_field: v.name for v in self.source_variables()}

    def by_method(self, method: InterpMethod) -> List[VariableSpec]:
        return [v for v in self.variables if v.is_interpolated and v.interp_method == method]

    def interpolated_names(self) -> List[str]:
        return [v.name for v in self.variables if v.is_interpolated]

    def summed_names(self) -> List[str]:
        """Count variables: weighted-summed in Tier 2, summed across regions."""
        return [v.name for v in self.variables if v.is_interpolated and v.interp_method in SUMMED_METHODS]

    def averaged_names(self) -> List[str]:
        """Rate/mean variables: weighted-averaged in Tier 2, averaged across regions."""
        return [v.name for v in self.by_method(InterpMethod.EXTENSIVE_HH)]

    def universe_pairs(self) -> List[Tuple[str, str]]:
        """(name, universe) for every variable with a percentage."""
        return [(v.name, v.universe) for v in self.variables if v.universe is not None]

    def population_denominators(self) -> List[VariableSpec]:
        """Interpolated denominators, rescaled when capping to reported population."""
        return [v for v in self.variables if v.category == Category.DENOMINATOR and v.is_interpolated]

    def pre_formulas(self) -> List[Tuple[str, Expr]]:
        return [(v.name, self._pre_formulas[v.name]) for v in self.variables if v.name in self._pre_formulas]

    def interpolated_post_formulas(self) -> List[Tuple[str, Expr]]:
        """Post-interpolation formulas of interpolated variables (e.g. income shares)."""
        return [
            (v.name, self._post_formulas[v.name])
            for v in self.variables
            if v.is_interpolated and v.name in self._post_formulas
        ]

    def derived_formulas(self) -> List[Tuple[str, Expr]]:
        """Derived-only formulas in dependency order."""
        return [(name, self._post_formulas[name]) for name in self._derived_order]

    def percentage_overrides(self) -> List[str]:
        """Derived variables whose name collides with an automatic `_per` column."""
        per_names = {v.per_name for v in self.variables if v.universe is not None}
        return [name for name in self._derived_order if name in per_names]

    def output_columns(self) -> List[str]:
        """Every statistic column a result row carries, in sheet order."""
        columns = []
        for v in self.variables:
            if v.is_interpolated or v.is_derived:
                columns.append(v.name)
        for v in self.variables:
            if v.universe is not None and v.per_name not in columns:
                columns.append(v.per_name)
        return columns

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_records(cls, records: Iterable[Mapping[str, Any]]) -> "VariableCatalog":
        return cls(spec_from_record(r) for r in records)

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> "VariableCatalog":
        cleaned = df.rename(columns=clean_column_name)
        return cls.from_records(cleaned.to_dict(orient="records"))


def load_catalog_csv(path: Union[str, Path]) -> VariableCatalog:
    """
    Load and validate a census variable sheet exported to CSV.

    Args:
        path: CSV with columns var, name, category, interp_method, universe,
              calc_before_interp, calc_after_interp

    Returns:
        Validated VariableCatalog
    """
    logger.info(f"Loading variable catalog from {path}")
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    catalog = VariableCatalog.from_dataframe(df)
    logger.info(f"Loaded {len(catalog)} catalog variables")
    return catalog
