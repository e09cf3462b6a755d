"""
Update spec translation.

An update spec maps a field to a literal replacement or to a derived value::

    {"status": "moved", "startsAt": {"$sumDate": {"date": "startsAt", "number": 2, "unit": "day"}}}

``$sumDate`` adds ``number`` ``unit``s to ``date``. A string ``date`` or
``number`` refers to another field of the record being updated.

- ``to_update_values``: values for ``UPDATE ... SET`` in the primary store
- ``apply_update``: the same update applied to an in-memory record
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Any

import sqlalchemy as sa
from dateutil.relativedelta import relativedelta
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.expression import FunctionElement

from dbflow.errors import FilterError, UpdateSpecError
from dbflow.runtime.filters import coerce_value, column_attribute_type
from dbflow.specs.model import AttributeType

SUM_DATE = "$sumDate"

UpdateSpec = Mapping[str, Any]


class DateUnit(StrEnum):
    """Units accepted by ``$sumDate``."""

    SECOND = "second"
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"

    @classmethod
    def parse(cls, value: Any) -> DateUnit:
        """Parse a unit name; plural and capitalized forms are accepted."""
        if not isinstance(value, str):
            raise UpdateSpecError(f"Date unit must be a string, got {value!r}")
        name = value.strip().lower()
        if name.endswith("s"):
            name = name[:-1]
        try:
            return cls(name)
        except ValueError:
            raise UpdateSpecError(
                f"Unknown date unit '{value}' (expected one of {', '.join(u.value for u in cls)})"
            ) from None


def _parse_sum_date(field: str, directive: Any) -> tuple[Any, Any, DateUnit]:
    if not isinstance(directive, Mapping):
        raise UpdateSpecError(f"{SUM_DATE} on '{field}' expects an object", field=field)
    missing = [k for k in ("date", "number", "unit") if k not in directive]
    if missing:
        raise UpdateSpecError(
            f"{SUM_DATE} on '{field}' is missing {', '.join(missing)}", field=field
        )
    return directive["date"], directive["number"], DateUnit.parse(directive["unit"])


def _is_sum_date(value: Any) -> bool:
    return isinstance(value, Mapping) and SUM_DATE in value


# =============================================================================
# Primary store: dialect-compiled date arithmetic
# =============================================================================


class date_add(FunctionElement):
    """``expr + number * unit`` rendered per dialect."""

    name = "date_add"
    # unit and as_date live outside the clause list
    inherit_cache = False

    def __init__(self, expr: Any, number: Any, unit: DateUnit, as_date: bool = False):
        self.unit = unit
        self.as_date = as_date
        self.type = sa.Date() if as_date else sa.DateTime()
        super().__init__(expr, number)


@compiles(date_add, "postgresql")
def _date_add_postgresql(element: date_add, compiler: Any, **kw: Any) -> str:
    expr, number = list(element.clauses)
    return (
        f"({compiler.process(expr, **kw)} + INTERVAL '1 {element.unit.value}'"
        f" * {compiler.process(number, **kw)})"
    )


@compiles(date_add, "sqlite")
def _date_add_sqlite(element: date_add, compiler: Any, **kw: Any) -> str:
    expr, number = list(element.clauses)
    amount = compiler.process(number, **kw)
    unit = element.unit.value
    # SQLite modifiers have no week unit
    if element.unit is DateUnit.WEEK:
        amount, unit = f"({amount}) * 7", "day"
    function = "date" if element.as_date else "datetime"
    return f"{function}({compiler.process(expr, **kw)}, ({amount}) || ' {unit}s')"


def _operand(value: Any, table: sa.Table, field: str, literal_type: Any) -> Any:
    if isinstance(value, str):
        column = table.c.get(value)
        if column is None:
            raise UpdateSpecError(f"{SUM_DATE} on '{field}' refers to unknown field '{value}'", field=field)
        return column
    return sa.literal(value, literal_type)


def to_update_values(spec: UpdateSpec, table: sa.Table) -> dict[str, Any]:
    """
    Build the ``SET`` values for an update of ``table``.

    Raises:
        UpdateSpecError: Unknown target field, malformed ``$sumDate`` or a
            reference to a field the table does not have.
    """
    values: dict[str, Any] = {}
    for field, value in spec.items():
        column = table.c.get(field)
        if column is None:
            raise UpdateSpecError(f"Unknown field '{field}' for '{table.name}'", field=field)
        column_type = column_attribute_type(column)

        if not _is_sum_date(value):
            try:
                values[field] = coerce_value(value, column_type)
            except FilterError as e:
                raise UpdateSpecError(str(e), field=field) from e
            continue

        date_value, number, unit = _parse_sum_date(field, value[SUM_DATE])
        if not isinstance(date_value, str):
            try:
                date_value = coerce_value(date_value, AttributeType.DATETIME)
            except FilterError as e:
                raise UpdateSpecError(str(e), field=field) from e
        values[field] = date_add(
            _operand(date_value, table, field, sa.DateTime()),
            _operand(number, table, field, None),
            unit,
            as_date=column_type is AttributeType.DATE,
        )
    return values


# =============================================================================
# In-memory
# =============================================================================


def _resolve(record: Mapping[str, Any], value: Any, field: str) -> Any:
    if isinstance(value, str):
        if value not in record:
            raise UpdateSpecError(f"{SUM_DATE} on '{field}' refers to missing field '{value}'", field=field)
        return record[value]
    return value


def _sum_date(date_value: Any, number: Any, unit: DateUnit, field: str) -> Any:
    if date_value is None or number is None:
        return None
    try:
        start = coerce_value(date_value, AttributeType.DATETIME)
    except FilterError as e:
        raise UpdateSpecError(str(e), field=field) from e
    try:
        return start + relativedelta(**{f"{unit.value}s": number})
    except (TypeError, ValueError) as e:
        raise UpdateSpecError(f"Cannot add {number!r} {unit.value}s on '{field}': {e}", field=field) from e


def apply_update(
    spec: UpdateSpec,
    record: Mapping[str, Any],
    attribute_types: Mapping[str, AttributeType] | None = None,
) -> dict[str, Any]:
    """
    Return a copy of ``record`` with ``spec`` applied.

    References in ``$sumDate`` read the record's values before the update.
    Results are coerced to the target field's type when ``attribute_types``
    is given.

    Raises:
        UpdateSpecError: Malformed directive, unknown unit or a reference to
            a field the record does not have.
    """
    updated = dict(record)
    types = attribute_types or {}
    for field, value in spec.items():
        if _is_sum_date(value):
            date_value, number, unit = _parse_sum_date(field, value[SUM_DATE])
            value = _sum_date(
                _resolve(record, date_value, field),
                _resolve(record, number, field),
                unit,
                field,
            )
        try:
            updated[field] = coerce_value(value, types.get(field))
        except FilterError as e:
            raise UpdateSpecError(str(e), field=field) from e
    return updated
