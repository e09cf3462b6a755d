"""
Primary store adapter.

Async SQLAlchemy Core over the model tables built by the registry. This is
the source of truth: the flow falls back to it on a cache miss and uses it
to discover the rows a cascading delete must remove.

The module uses SQLAlchemy Core only, no ORM and no Session. Store errors
are logged with their driver detail and returned as ``None``.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Mapping, Sequence
from typing import Any

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.sql.elements import ColumnElement

from dbflow.errors import FilterError, UpdateSpecError, describe_store_error
from dbflow.runtime.correlation import CorrelationContext, Tracer
from dbflow.runtime.filters import Filter, coerce_value, to_store_predicate
from dbflow.runtime.includes import IncludePlan, project
from dbflow.runtime.registry import ModelRegistry
from dbflow.runtime.results import UpdateCounts
from dbflow.runtime.updates import UpdateSpec, to_update_values

COMPONENT = "SQL"

Record = dict[str, Any]

_STORE_ERRORS = (SQLAlchemyError, FilterError, UpdateSpecError)


class PrimaryStore:
    """
    Query/mutate façade over an ``AsyncEngine``.

    Args:
        engine: Async engine (postgresql+psycopg in production)
        registry: Model registry providing the tables
        tracer: Correlation tracer for diagnostic events
    """

    def __init__(self, engine: AsyncEngine, registry: ModelRegistry, tracer: Tracer):
        self.engine = engine
        self.registry = registry
        self.tracer = tracer

    def _table(self, model: str, ctx: CorrelationContext) -> sa.Table | None:
        if not self.registry.has_model(model):
            ctx.error(f"Unknown model '{model}'", component=COMPONENT)
            return None
        return self.registry.table(model)

    def _clause(self, where: Filter | ColumnElement[bool] | None, table: sa.Table) -> ColumnElement[bool]:
        if isinstance(where, ColumnElement):
            return where
        return to_store_predicate(where, table)

    def _failed(self, ctx: CorrelationContext, action: str, model: str, exc: Exception) -> None:
        ctx.error(f"{action} failed: {describe_store_error(exc)}", component=COMPONENT, model=model)

    def _row_values(self, model: str, record: Mapping[str, Any]) -> dict[str, Any]:
        """Column values for an insert; embedded relation keys are dropped."""
        types = self.registry.attribute_types(model)
        model_names = self.registry.model_names
        return {
            key: coerce_value(value, types.get(key))
            for key, value in record.items()
            if key not in model_names
        }

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    async def query(
        self,
        model: str,
        where: Filter | ColumnElement[bool] | None = None,
        attributes: Sequence[str] | None = None,
        include: Sequence[IncludePlan] = (),
        ctx: CorrelationContext | None = None,
    ) -> list[Record] | None:
        """
        Select rows of ``model`` with includes loaded.

        Args:
            model: Model name
            where: Filter mapping or a prepared SQLAlchemy clause
            attributes: Projection (embedded relations are always kept)
            include: Include plans in store shape

        Returns:
            Rows as dicts, or None on failure
        """
        with self.tracer.scope(ctx) as ctx:
            table = self._table(model, ctx)
            if table is None:
                return None
            try:
                clause = self._clause(where, table)
                async with self.engine.connect() as conn:
                    rows = await self._select(conn, table, clause)
                    if include and rows:
                        rows = await self._load_includes(conn, rows, include)
            except _STORE_ERRORS as e:
                self._failed(ctx, "Query", model, e)
                return None
            if attributes is None:
                return rows
            return [project(row, attributes, self.registry.model_names) for row in rows]

    async def _select(
        self, conn: AsyncConnection, table: sa.Table, clause: ColumnElement[bool]
    ) -> list[Record]:
        stmt = sa.select(table).where(clause).order_by(*table.primary_key.columns)
        result = await conn.execute(stmt)
        return [dict(row) for row in result.mappings()]

    async def _load_includes(
        self, conn: AsyncConnection, rows: list[Record], include: Sequence[IncludePlan]
    ) -> list[Record]:
        """
        Attach related rows, one batched ``IN`` query per include.

        Parents without a match on a required include are dropped.
        """
        model_names = self.registry.model_names
        dropped: set[int] = set()

        for plan in include:
            relation = plan.relation
            if relation is None:
                continue
            keys = {row.get(relation.this_key) for row in rows} - {None}
            grouped: dict[Any, list[Record]] = defaultdict(list)
            if keys:
                child_table = self.registry.table(plan.model)
                clause = child_table.c[relation.other_key].in_(list(keys))
                if plan.where is not None:
                    clause = sa.and_(clause, plan.where)
                children = await self._select(conn, child_table, clause)
                if plan.children and children:
                    children = await self._load_includes(conn, children, plan.children)
                for child in children:
                    grouped[child[relation.other_key]].append(
                        project(child, plan.attributes, model_names)
                    )

            for index, row in enumerate(rows):
                value = row.get(relation.this_key)
                matches = grouped.get(value, []) if value is not None else []
                row[plan.model] = list(matches)
                if plan.required and not matches:
                    dropped.add(index)

        return [row for index, row in enumerate(rows) if index not in dropped]

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def create(
        self, model: str, record: Mapping[str, Any], ctx: CorrelationContext | None = None
    ) -> Record | None:
        """Insert one record and return it as stored (generated keys included)."""
        with self.tracer.scope(ctx) as ctx:
            table = self._table(model, ctx)
            if table is None:
                return None
            try:
                stmt = sa.insert(table).values(self._row_values(model, record)).returning(*table.c)
                async with self.engine.begin() as conn:
                    result = await conn.execute(stmt)
                    row = dict(result.mappings().one())
            except _STORE_ERRORS as e:
                self._failed(ctx, "Insert", model, e)
                return None
            return row

    async def bulk_create(
        self,
        model: str,
        records: Sequence[Mapping[str, Any]],
        ctx: CorrelationContext | None = None,
    ) -> list[Record] | None:
        """Insert records in one transaction and return them in input order."""
        with self.tracer.scope(ctx) as ctx:
            table = self._table(model, ctx)
            if table is None:
                return None
            if not records:
                return []
            try:
                params = [self._row_values(model, record) for record in records]
                async with self.engine.begin() as conn:
                    if all(p.keys() == params[0].keys() for p in params):
                        stmt = sa.insert(table).returning(*table.c, sort_by_parameter_order=True)
                        result = await conn.execute(stmt, params)
                        created = [dict(row) for row in result.mappings()]
                    else:
                        # executemany needs one key set; insert row by row instead
                        created = []
                        for values in params:
                            result = await conn.execute(sa.insert(table).values(values).returning(*table.c))
                            created.append(dict(result.mappings().one()))
            except _STORE_ERRORS as e:
                self._failed(ctx, "Bulk insert", model, e)
                return None
            ctx.debug(f"Inserted {len(created)} rows", component=COMPONENT, model=model)
            return created

    async def update(
        self,
        model: str,
        spec: UpdateSpec,
        where: Filter | None = None,
        ctx: CorrelationContext | None = None,
    ) -> UpdateCounts | None:
        """Update rows matching ``where``; counts matched and updated rows."""
        with self.tracer.scope(ctx) as ctx:
            table = self._table(model, ctx)
            if table is None:
                return None
            try:
                clause = self._clause(where, table)
                values = to_update_values(spec, table)
                async with self.engine.begin() as conn:
                    found = await conn.scalar(sa.select(sa.func.count()).select_from(table).where(clause))
                    if not found:
                        return UpdateCounts(found=0, updated=0)
                    result = await conn.execute(sa.update(table).where(clause).values(values))
            except _STORE_ERRORS as e:
                self._failed(ctx, "Update", model, e)
                return None
            return UpdateCounts(found=found, updated=result.rowcount)

    async def destroy(
        self, model: str, row: Mapping[str, Any], ctx: CorrelationContext | None = None
    ) -> bool | None:
        """
        Delete one row, matched by primary key (or by every column when the
        model has none).

        Returns:
            True if deleted, False if no longer present, None on failure
        """
        with self.tracer.scope(ctx) as ctx:
            table = self._table(model, ctx)
            if table is None:
                return None
            key_columns = self.registry.primary_keys(model) or [c.name for c in table.columns]
            try:
                clause = to_store_predicate({name: row.get(name) for name in key_columns}, table)
                async with self.engine.begin() as conn:
                    result = await conn.execute(sa.delete(table).where(clause))
            except _STORE_ERRORS as e:
                self._failed(ctx, "Delete", model, e)
                return None
            return result.rowcount > 0
