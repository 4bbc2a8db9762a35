# backend/unit_conversion_engine.py

"""
Unit Conversion Engine - Price-Critical Component

This engine is responsible for:
- Measurement class lookup (weight / volume / count)
- Unit conversion via the stored conversion table
- Total preferred units for a distributor case
- Unit price derivation from a case price
- Conversion audit trail

This engine MUST NOT:
- Write distributor specs or prices
- Guess units
- Convert across measurement classes

RESOLUTION ORDER (first success wins):
1) Identity: same unit in and out, value returned unchanged
2) Class check: unknown unit -> UNKNOWN_UNIT, different classes -> INCOMPATIBLE_CLASSES
3) Direct edge: from -> to, value * factor
4) Reverse edge: to -> from, value / factor
5) Two-hop bridge: first stored edge from -> mid with a stored mid -> to
6) Otherwise NO_CONVERSION_PATH

The bridge search is a first-match scan in stored edge order, not a
shortest-path search. When several bridges exist and disagree numerically
the conversion table itself is inconsistent; the engine still returns the
first one so results stay deterministic.
"""

from enum import Enum
from types import MappingProxyType
from typing import Optional, List, Dict, Any, Iterable, Tuple, Union
from datetime import datetime, timezone
from pydantic import BaseModel, Field, ConfigDict
import logging

logger = logging.getLogger(__name__)

# ==================== ENUMS ====================

class MeasurementType(str, Enum):
    """Measurement classes. Conversions never cross a class boundary."""
    WEIGHT = "weight"
    VOLUME = "volume"
    COUNT = "count"


class ConversionStatus(str, Enum):
    """Conversion result status"""
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class FactorSource(str, Enum):
    """Where a conversion step's factor came from"""
    IDENTITY = "IDENTITY"
    DIRECT = "DIRECT"
    REVERSE = "REVERSE"
    BRIDGE = "BRIDGE"


# ==================== ERROR CLASSES ====================

class ConversionError(Exception):
    """Base conversion error"""
    def __init__(self, error_code: str, message: str, field: Optional[str] = None, severity: str = "HARD_ERROR"):
        self.error_code = error_code
        self.message = message
        self.field = field
        self.severity = severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "field": self.field,
            "severity": self.severity
        }


class UnknownUnitError(ConversionError):
    """Unit has no measurement class"""
    def __init__(self, unit: str):
        super().__init__(
            "UNKNOWN_UNIT",
            f"Unknown unit: {unit}",
            field="unit",
            severity="HARD_ERROR"
        )
        self.unit = unit


class IncompatibleClassesError(ConversionError):
    """Units belong to different measurement classes"""
    def __init__(self, from_type: MeasurementType, to_type: MeasurementType):
        super().__init__(
            "INCOMPATIBLE_CLASSES",
            f"Cannot convert between {from_type.value} and {to_type.value}",
            field="unit",
            severity="HARD_ERROR"
        )


class NoConversionPathError(ConversionError):
    """No direct, reverse or two-hop edge connects the units"""
    def __init__(self, from_unit: str, to_unit: str):
        super().__init__(
            "NO_CONVERSION_PATH",
            f"No conversion path found from {from_unit} to {to_unit}",
            field="unit",
            severity="HARD_ERROR"
        )


class InvalidCaseSpecError(ConversionError):
    """Case packaging data is corrupt (non-positive packs, size or total units)"""
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(
            "INVALID_CASE_SPEC",
            message,
            field=field,
            severity="DATA_CORRUPTION"
        )


# ==================== DATA MODELS ====================

class UnitConversionEdge(BaseModel):
    """1 from_unit = conversion_factor to_unit. Directed."""
    model_config = ConfigDict(frozen=True, extra="ignore")
    from_unit: str
    to_unit: str
    conversion_factor: float = Field(gt=0)


class MeasurementUnit(BaseModel):
    """A unit tagged with exactly one measurement class"""
    model_config = ConfigDict(frozen=True, extra="ignore")
    unit: str
    measurement_type: MeasurementType


class ConversionStep(BaseModel):
    """Single conversion step in audit trail"""
    step_number: int
    from_unit: str
    from_qty: float
    to_unit: str
    to_qty: float
    conversion_factor: float
    factor_source: FactorSource
    calculation_formula: str


class ConversionResult(BaseModel):
    """Engine output contract"""
    input_value: float
    from_unit: str
    to_unit: str
    value: Optional[float] = None
    status: ConversionStatus
    steps: List[ConversionStep] = []
    error_code: Optional[str] = None
    message: Optional[str] = None
    calculated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        return self.status == ConversionStatus.SUCCESS


# ==================== CONVERSION TABLE SNAPSHOT ====================

EdgeLike = Union[UnitConversionEdge, Dict[str, Any]]
UnitLike = Union[MeasurementUnit, Dict[str, Any]]


class ConversionTable:
    """
    Read-only snapshot of the conversion edge and measurement-class tables.

    Edges keep their stored order; the bridge search depends on it.
    """

    def __init__(self, edges: Iterable[EdgeLike] = (), units: Iterable[UnitLike] = ()):
        self._edges: Tuple[UnitConversionEdge, ...] = tuple(
            e if isinstance(e, UnitConversionEdge) else UnitConversionEdge(**e)
            for e in edges
        )
        classes: Dict[str, MeasurementType] = {}
        for u in units:
            unit = u if isinstance(u, MeasurementUnit) else MeasurementUnit(**u)
            classes[unit.unit] = unit.measurement_type
        self._classes = MappingProxyType(classes)

    @property
    def edges(self) -> Tuple[UnitConversionEdge, ...]:
        return self._edges

    @property
    def units(self) -> Dict[str, MeasurementType]:
        return dict(self._classes)

    def measurement_type(self, unit: str) -> Optional[MeasurementType]:
        return self._classes.get(unit)

    def find_edge(self, from_unit: str, to_unit: str) -> Optional[UnitConversionEdge]:
        for edge in self._edges:
            if edge.from_unit == from_unit and edge.to_unit == to_unit:
                return edge
        return None

    def edges_from(self, unit: str) -> List[UnitConversionEdge]:
        return [e for e in self._edges if e.from_unit == unit]

    def units_of_type(self, measurement_type: MeasurementType) -> List[str]:
        return sorted(u for u, t in self._classes.items() if t == measurement_type)


# ==================== PURE RESOLUTION ====================

def _step(number: int, from_unit: str, from_qty: float, to_unit: str, to_qty: float,
          factor: float, source: FactorSource, formula: str) -> ConversionStep:
    return ConversionStep(
        step_number=number,
        from_unit=from_unit,
        from_qty=from_qty,
        to_unit=to_unit,
        to_qty=to_qty,
        conversion_factor=factor,
        factor_source=source,
        calculation_formula=formula
    )


def resolve_conversion(
    table: ConversionTable,
    value: float,
    from_unit: str,
    to_unit: str
) -> Tuple[float, List[ConversionStep]]:
    """
    Resolve a conversion against a snapshot.

    Returns:
        Tuple of (converted_value, steps)

    Raises:
        UnknownUnitError, IncompatibleClassesError, NoConversionPathError
    """
    # Step 1: identity, no class lookup
    if from_unit == to_unit:
        return value, []

    # Step 2: class check
    from_type = table.measurement_type(from_unit)
    if from_type is None:
        raise UnknownUnitError(from_unit)
    to_type = table.measurement_type(to_unit)
    if to_type is None:
        raise UnknownUnitError(to_unit)
    if from_type != to_type:
        raise IncompatibleClassesError(from_type, to_type)

    # Step 3: direct edge
    direct = table.find_edge(from_unit, to_unit)
    if direct:
        result = value * direct.conversion_factor
        return result, [_step(
            1, from_unit, value, to_unit, result, direct.conversion_factor,
            FactorSource.DIRECT, f"{value} × {direct.conversion_factor} = {result}"
        )]

    # Step 4: reverse edge, inverted factor
    reverse = table.find_edge(to_unit, from_unit)
    if reverse:
        result = value / reverse.conversion_factor
        return result, [_step(
            1, from_unit, value, to_unit, result, 1 / reverse.conversion_factor,
            FactorSource.REVERSE, f"{value} ÷ {reverse.conversion_factor} = {result}"
        )]

    # Step 5: first stored bridge from -> mid -> to (no reverse on either hop)
    for first in table.edges_from(from_unit):
        second = table.find_edge(first.to_unit, to_unit)
        if second:
            mid_qty = value * first.conversion_factor
            result = mid_qty * second.conversion_factor
            return result, [
                _step(
                    1, from_unit, value, first.to_unit, mid_qty, first.conversion_factor,
                    FactorSource.BRIDGE, f"{value} × {first.conversion_factor} = {mid_qty}"
                ),
                _step(
                    2, first.to_unit, mid_qty, to_unit, result, second.conversion_factor,
                    FactorSource.BRIDGE, f"{mid_qty} × {second.conversion_factor} = {result}"
                ),
            ]

    raise NoConversionPathError(from_unit, to_unit)


def convert(table: ConversionTable, value: float, from_unit: str, to_unit: str) -> ConversionResult:
    """
    Convert value between units. Never raises for conversion failures;
    the failure is returned as an ERROR result carrying the error code.
    """
    try:
        converted, steps = resolve_conversion(table, value, from_unit, to_unit)
        return ConversionResult(
            input_value=value,
            from_unit=from_unit,
            to_unit=to_unit,
            value=converted,
            status=ConversionStatus.SUCCESS,
            steps=steps
        )
    except ConversionError as e:
        return ConversionResult(
            input_value=value,
            from_unit=from_unit,
            to_unit=to_unit,
            status=ConversionStatus.ERROR,
            error_code=e.error_code,
            message=e.message
        )


def calculate_total_preferred_units(
    table: ConversionTable,
    case_packs: int,
    pack_size: float,
    pack_unit: str,
    preferred_unit: str
) -> ConversionResult:
    """
    Total preferred units in one case: case_packs × pack_size converted from
    pack_unit to preferred_unit. Resolver failures propagate unchanged.
    """
    if isinstance(case_packs, bool) or not isinstance(case_packs, int) or case_packs <= 0:
        error = InvalidCaseSpecError(f"case_packs must be a positive integer. Received: {case_packs}", "case_packs")
    elif pack_size is None or pack_size <= 0:
        error = InvalidCaseSpecError(f"pack_size must be positive. Received: {pack_size}", "pack_size")
    else:
        return convert(table, case_packs * pack_size, pack_unit, preferred_unit)

    return ConversionResult(
        input_value=0.0,
        from_unit=pack_unit,
        to_unit=preferred_unit,
        status=ConversionStatus.ERROR,
        error_code=error.error_code,
        message=error.message
    )


def unit_price(case_price: float, total_preferred_units: float) -> float:
    """
    Price per preferred unit.

    Raises:
        InvalidCaseSpecError: total_preferred_units <= 0 or case_price < 0.
            A stored spec never holds such values, so this is logged as
            data corruption rather than defaulted.
    """
    if total_preferred_units is None or total_preferred_units <= 0:
        logger.error(f"Invalid case spec: total_preferred_units={total_preferred_units} (case_price={case_price})")
        raise InvalidCaseSpecError(
            f"total_preferred_units must be positive. Received: {total_preferred_units}",
            "total_preferred_units"
        )
    if case_price is None or case_price < 0:
        logger.error(f"Invalid case price: {case_price}")
        raise InvalidCaseSpecError(f"case_price must not be negative. Received: {case_price}", "case_price")
    return case_price / total_preferred_units


# ==================== UNIT CONVERSION ENGINE ====================

class UnitConversionEngine:
    """
    Unit conversion engine over the stored conversion tables.

    The tables are loaded once into an immutable ConversionTable snapshot
    and cached. Any mutation made through the engine drops the cache so the
    next resolution reloads.
    """

    def __init__(self, db=None, table: Optional[ConversionTable] = None):
        """
        Initialize engine.

        Args:
            db: MongoDB database instance (unit_conversions, measurement_types)
            table: Preloaded snapshot; used as-is when no db is given
        """
        self.db = db
        self._table = table
        self.version = "1.0.0"

    def invalidate_cache(self) -> None:
        if self.db is not None:
            self._table = None

    # Pure data access, no business logic
    async def get_all_conversions(self) -> List[dict]:
        if self.db is None:
            return [e.model_dump() for e in (self._table.edges if self._table else ())]
        return await self.db.unit_conversions.find({}, {"_id": 0}).to_list(None)

    async def get_measurement_types(self) -> List[dict]:
        if self.db is None:
            units = self._table.units if self._table else {}
            return [{"unit": u, "measurement_type": t.value} for u, t in sorted(units.items())]
        return await self.db.measurement_types.find({}, {"_id": 0}).sort("unit", 1).to_list(None)

    async def get_table(self) -> ConversionTable:
        """Return the cached snapshot, loading it on first use."""
        if self._table is None:
            edges = await self.get_all_conversions()
            units = await self.get_measurement_types()
            self._table = ConversionTable(edges, units)
            logger.info(f"Loaded conversion table: {len(self._table.edges)} edges, {len(units)} units")
        return self._table

    async def get_measurement_type(self, unit: str) -> Optional[MeasurementType]:
        table = await self.get_table()
        return table.measurement_type(unit)

    async def convert(self, value: float, from_unit: str, to_unit: str) -> ConversionResult:
        try:
            table = await self.get_table()
        except Exception as e:
            logger.error(f"Unexpected error loading conversion table: {e}", exc_info=True)
            return ConversionResult(
                input_value=value,
                from_unit=from_unit,
                to_unit=to_unit,
                status=ConversionStatus.ERROR,
                error_code="UNEXPECTED_ERROR",
                message=f"Unexpected error: {str(e)}"
            )
        return convert(table, value, from_unit, to_unit)

    async def calculate_total_preferred_units(
        self,
        case_packs: int,
        pack_size: float,
        pack_unit: str,
        preferred_unit: str
    ) -> ConversionResult:
        table = await self.get_table()
        return calculate_total_preferred_units(table, case_packs, pack_size, pack_unit, preferred_unit)

    def unit_price(self, case_price: float, total_preferred_units: float) -> float:
        return unit_price(case_price, total_preferred_units)

    async def get_units_by_type(self, measurement_type: Union[MeasurementType, str]) -> List[str]:
        table = await self.get_table()
        return table.units_of_type(MeasurementType(measurement_type))

    async def are_units_compatible(self, unit1: str, unit2: str) -> bool:
        table = await self.get_table()
        type1 = table.measurement_type(unit1)
        return type1 is not None and type1 == table.measurement_type(unit2)

    async def validate_measurement_unit(self, unit: str, measurement_type: Union[MeasurementType, str]) -> bool:
        """True when unit is registered under the given measurement class."""
        try:
            expected = MeasurementType(measurement_type)
        except ValueError:
            return False
        return await self.get_measurement_type(unit) == expected

    # ==================== ADMIN MUTATIONS ====================

    async def add_conversion(self, from_unit: str, to_unit: str, conversion_factor: float) -> List[dict]:
        """
        Store a conversion in both directions (factor and 1/factor).

        Raises:
            ConversionError: non-positive factor
            UnknownUnitError / IncompatibleClassesError: unit validation
        """
        if self.db is None:
            raise RuntimeError("Database connection required to add conversions")
        if conversion_factor is None or conversion_factor <= 0:
            raise ConversionError(
                "INVALID_CONVERSION_FACTOR",
                f"Conversion factor must be positive. Received: {conversion_factor}",
                field="conversion_factor"
            )

        table = await self.get_table()
        from_type = table.measurement_type(from_unit)
        if from_type is None:
            raise UnknownUnitError(from_unit)
        to_type = table.measurement_type(to_unit)
        if to_type is None:
            raise UnknownUnitError(to_unit)
        if from_type != to_type:
            raise IncompatibleClassesError(from_type, to_type)

        rows = [
            {"from_unit": from_unit, "to_unit": to_unit, "conversion_factor": conversion_factor},
            {"from_unit": to_unit, "to_unit": from_unit, "conversion_factor": 1 / conversion_factor},
        ]
        await self.db.unit_conversions.insert_many([dict(r) for r in rows])
        self.invalidate_cache()
        logger.info(f"Added conversion {from_unit} -> {to_unit} ({conversion_factor})")
        return rows

    async def add_measurement_unit(self, unit: str, measurement_type: Union[MeasurementType, str]) -> dict:
        """Register a unit under a measurement class, with its identity edge."""
        if self.db is None:
            raise RuntimeError("Database connection required to add units")
        unit = (unit or "").strip()
        if not unit:
            raise UnknownUnitError(unit)
        measurement_type = MeasurementType(measurement_type)

        existing = await self.db.measurement_types.find_one({"unit": unit}, {"_id": 0})
        if existing:
            raise ConversionError(
                "UNIT_ALREADY_EXISTS",
                f"Unit '{unit}' is already registered as {existing.get('measurement_type')}",
                field="unit"
            )

        row = {"unit": unit, "measurement_type": measurement_type.value}
        await self.db.measurement_types.insert_one(dict(row))
        await self.db.unit_conversions.insert_one(
            {"from_unit": unit, "to_unit": unit, "conversion_factor": 1.0}
        )
        self.invalidate_cache()
        logger.info(f"Added measurement unit {unit} ({measurement_type.value})")
        return row
