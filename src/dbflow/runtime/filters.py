"""
Filter DSL translation.

A filter is a mapping from field name to a literal (implicit equality) or an
operator set, with ``$and``/``$or`` keys combining nested filters::

    {"age": {"$gt": 18, "$lte": 65}, "$or": [{"name": "ann"}, {"name": "bob"}]}

The same filter is translated two ways:

- ``to_store_predicate``: a SQLAlchemy Core clause for the primary store
- ``to_predicate``: a ``record -> bool`` function for cache records

Both go through the closed operator tables below, so a filter matches the
same records whichever store evaluates it. Null handling follows SQL: the
ordering operators, ``$in`` and ``$nin`` never match a null value.
"""

from __future__ import annotations

import calendar
import logging
import operator
import uuid
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from typing import Any

import sqlalchemy as sa
from dateutil import parser as date_parser
from sqlalchemy.sql.elements import ColumnElement

from dbflow.errors import FilterError
from dbflow.specs.model import AttributeType

logger = logging.getLogger(__name__)

Filter = Mapping[str, Any]
Predicate = Callable[[Mapping[str, Any]], bool]

# Stripped from every filter before translation
TRANSFORM_KEY = "$transform"


class FilterOperator(StrEnum):
    """Field-level operators."""

    EXISTS = "$exists"
    EQ = "$eq"
    GT = "$gt"
    GTE = "$gte"
    LT = "$lt"
    LTE = "$lte"
    IN = "$in"
    NIN = "$nin"


class LogicalOperator(StrEnum):
    """Top-level operators combining nested filters."""

    AND = "$and"
    OR = "$or"


# =============================================================================
# Value coercion
# =============================================================================


def to_epoch_micros(value: Any) -> int | None:
    """
    Convert a temporal value to epoch microseconds.

    Naive datetimes are taken as UTC. Dates are midnight UTC. Numbers are
    epoch milliseconds, as everywhere else in the filter DSL.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise FilterError(f"Cannot compare boolean {value!r} as a date")
    if isinstance(value, int | float):
        return round(value * 1000)
    if isinstance(value, str):
        value = _parse_datetime(value)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(UTC)
        return calendar.timegm(value.timetuple()) * 1_000_000 + value.microsecond
    if isinstance(value, date):
        return calendar.timegm(value.timetuple()) * 1_000_000
    raise FilterError(f"Cannot compare {type(value).__name__} as a date")


def _parse_datetime(value: str) -> datetime:
    try:
        return date_parser.isoparse(value)
    except (ValueError, OverflowError) as e:
        raise FilterError(f"Invalid date value {value!r}: {e}") from e


def _to_datetime(value: Any) -> Any:
    """Coerce to a naive UTC datetime (the primary store's DATETIME form)."""
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value / 1000, UTC).replace(tzinfo=None)
    if isinstance(value, str):
        value = _parse_datetime(value)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(UTC).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return value


def _to_date(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int | float | str | datetime):
        return _to_datetime(value).date()
    return value


def _to_uuid(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return uuid.UUID(value)
        except ValueError as e:
            raise FilterError(f"Invalid UUID value {value!r}") from e
    return value


def _to_decimal(value: Any) -> Any:
    # Through str so 1.1 becomes Decimal("1.1"), not the binary float expansion
    if value is None or isinstance(value, bool | Decimal):
        return value
    if isinstance(value, int | float | str):
        try:
            return Decimal(str(value))
        except InvalidOperation as e:
            raise FilterError(f"Invalid decimal value {value!r}") from e
    return value


def coerce_value(value: Any, attribute_type: AttributeType | None) -> Any:
    """Coerce a filter operand or record value to the attribute's Python type."""
    if attribute_type is AttributeType.DATETIME:
        return _to_datetime(value)
    if attribute_type is AttributeType.DATE:
        return _to_date(value)
    if attribute_type is AttributeType.DECIMAL:
        return _to_decimal(value)
    if attribute_type is AttributeType.UUID:
        return _to_uuid(value)
    return value


def _comparable(value: Any, attribute_type: AttributeType | None) -> Any:
    """In-memory comparison form: temporal values become epoch microseconds."""
    value = coerce_value(value, attribute_type)
    if attribute_type is not None and attribute_type.is_temporal:
        return to_epoch_micros(value)
    return value


def column_attribute_type(column: sa.Column) -> AttributeType | None:
    if isinstance(column.type, sa.DateTime):
        return AttributeType.DATETIME
    if isinstance(column.type, sa.Date):
        return AttributeType.DATE
    if isinstance(column.type, sa.Uuid):
        return AttributeType.UUID
    if isinstance(column.type, sa.Numeric) and not isinstance(column.type, sa.Float):
        return AttributeType.DECIMAL
    return None


# =============================================================================
# Operator tables
# =============================================================================


def _store_eq(column: ColumnElement, operand: Any) -> ColumnElement:
    return column.is_(None) if operand is None else column == operand


def _store_exists(column: ColumnElement, operand: Any) -> ColumnElement:
    return column.is_not(None) if operand else column.is_(None)


STORE_OPERATORS: dict[FilterOperator, Callable[[ColumnElement, Any], ColumnElement]] = {
    FilterOperator.EXISTS: _store_exists,
    FilterOperator.EQ: _store_eq,
    FilterOperator.GT: lambda c, v: c > v,
    FilterOperator.GTE: lambda c, v: c >= v,
    FilterOperator.LT: lambda c, v: c < v,
    FilterOperator.LTE: lambda c, v: c <= v,
    FilterOperator.IN: lambda c, v: c.in_(v),
    FilterOperator.NIN: lambda c, v: c.not_in(v),
}


def _ordered(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def check(value: Any, operand: Any) -> bool:
        if value is None or operand is None:
            return False
        try:
            return bool(compare(value, operand))
        except (TypeError, ArithmeticError):
            return False

    return check


def _memory_in(value: Any, operand: list[Any]) -> bool:
    return value is not None and value in operand


def _memory_nin(value: Any, operand: list[Any]) -> bool:
    if not operand:
        return True
    # NOT IN with a null member is never true in SQL
    if value is None or any(item is None for item in operand):
        return False
    return value not in operand


MEMORY_OPERATORS: dict[FilterOperator, Callable[[Any, Any], bool]] = {
    FilterOperator.EXISTS: lambda v, o: (v is not None) == bool(o),
    FilterOperator.EQ: lambda v, o: v is None if o is None else v == o,
    FilterOperator.GT: _ordered(operator.gt),
    FilterOperator.GTE: _ordered(operator.ge),
    FilterOperator.LT: _ordered(operator.lt),
    FilterOperator.LTE: _ordered(operator.le),
    FilterOperator.IN: _memory_in,
    FilterOperator.NIN: _memory_nin,
}


# =============================================================================
# Parsing
# =============================================================================


def strip_transform(where: Filter | None) -> dict[str, Any]:
    """Return a copy of ``where`` without the ``$transform`` key."""
    if not where:
        return {}
    return {k: v for k, v in where.items() if k != TRANSFORM_KEY}


def _field_conditions(field: str, value: Any) -> list[tuple[FilterOperator, Any]]:
    """Split one field's value into (operator, operand) pairs."""
    if not isinstance(value, Mapping):
        return [(FilterOperator.EQ, value)]

    conditions = []
    for key, operand in value.items():
        try:
            op = FilterOperator(key)
        except ValueError:
            logger.warning(f"Unknown filter operator '{key}' on field '{field}' ignored")
            continue
        if op in (FilterOperator.IN, FilterOperator.NIN):
            if isinstance(operand, str | bytes) or not isinstance(operand, Iterable):
                operand = [operand]
            operand = list(operand)
        conditions.append((op, operand))
    return conditions


def _nested_filters(key: str, value: Any) -> list[Filter]:
    if isinstance(value, Mapping):
        return [value]
    if isinstance(value, list | tuple) and all(isinstance(v, Mapping) for v in value):
        return list(value)
    raise FilterError(f"'{key}' expects a filter or a list of filters")


def _logical(key: str) -> LogicalOperator | None:
    try:
        return LogicalOperator(key)
    except ValueError:
        logger.warning(f"Unknown logical operator '{key}' ignored")
        return None


# =============================================================================
# Primary store translation
# =============================================================================


def to_store_predicate(where: Filter | None, table: sa.Table) -> ColumnElement[bool]:
    """
    Translate a filter into a SQLAlchemy clause over ``table``.

    Raises:
        FilterError: A field does not name a column of ``table``, or an
            operand cannot be coerced to the column type.
    """
    clauses = _store_clauses(strip_transform(where), table)
    if not clauses:
        return sa.true()
    return sa.and_(*clauses)


def _store_clauses(where: Filter, table: sa.Table) -> list[ColumnElement[bool]]:
    clauses: list[ColumnElement[bool]] = []
    for key, value in where.items():
        if key == TRANSFORM_KEY:
            continue
        if key.startswith("$"):
            logical = _logical(key)
            if logical is None:
                continue
            groups = [
                sa.and_(*sub) if sub else sa.true()
                for sub in (_store_clauses(strip_transform(f), table) for f in _nested_filters(key, value))
            ]
            if not groups:
                continue
            clauses.append(sa.and_(*groups) if logical is LogicalOperator.AND else sa.or_(*groups))
            continue

        column = table.c.get(key)
        if column is None:
            raise FilterError(f"Unknown field '{key}' for '{table.name}'", field=key)
        column_type = column_attribute_type(column)
        for op, operand in _field_conditions(key, value):
            if op in (FilterOperator.IN, FilterOperator.NIN):
                operand = [coerce_value(item, column_type) for item in operand]
            elif op is not FilterOperator.EXISTS:
                operand = coerce_value(operand, column_type)
            clauses.append(STORE_OPERATORS[op](column, operand))
    return clauses


# =============================================================================
# In-memory translation
# =============================================================================


def to_predicate(
    where: Filter | None,
    attribute_types: Mapping[str, AttributeType] | None = None,
) -> Predicate:
    """
    Translate a filter into a function evaluated against one record.

    ``attribute_types`` drives operand coercion (temporal fields compare as
    epoch microseconds, decimals as ``Decimal``). When given, a field it
    does not contain raises ``FilterError``, matching the primary store.
    """
    checks = _memory_checks(strip_transform(where), attribute_types)

    def predicate(record: Mapping[str, Any]) -> bool:
        return all(check(record) for check in checks)

    return predicate


def _memory_checks(
    where: Filter, attribute_types: Mapping[str, AttributeType] | None
) -> list[Predicate]:
    checks: list[Predicate] = []
    for key, value in where.items():
        if key == TRANSFORM_KEY:
            continue
        if key.startswith("$"):
            logical = _logical(key)
            if logical is None:
                continue
            groups = [to_predicate(f, attribute_types) for f in _nested_filters(key, value)]
            if not groups:
                continue
            if logical is LogicalOperator.AND:
                checks.append(lambda r, g=groups: all(p(r) for p in g))
            else:
                checks.append(lambda r, g=groups: any(p(r) for p in g))
            continue

        if attribute_types is not None and key not in attribute_types:
            raise FilterError(f"Unknown field '{key}'", field=key)
        attribute_type = attribute_types.get(key) if attribute_types else None
        for op, operand in _field_conditions(key, value):
            if op in (FilterOperator.IN, FilterOperator.NIN):
                operand = [_comparable(item, attribute_type) for item in operand]
            elif op is not FilterOperator.EXISTS:
                operand = _comparable(operand, attribute_type)
            checks.append(_field_check(key, op, operand, attribute_type))
    return checks


def _field_check(
    field: str, op: FilterOperator, operand: Any, attribute_type: AttributeType | None
) -> Predicate:
    compare = MEMORY_OPERATORS[op]

    def check(record: Mapping[str, Any]) -> bool:
        try:
            value = _comparable(record.get(field), attribute_type)
        except FilterError:
            return False
        return compare(value, operand)

    return check
