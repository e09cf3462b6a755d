"""
Dual-store flow.

The four public operations over the primary store (source of truth) and the
Redis cache (read accelerator):

- ``get``: cache first; on a miss or cache failure, query the primary
  store and repopulate the cache
- ``save``: insert into the primary store, then mirror into the cache
- ``update``: update both stores independently
- ``delete``: cascade over ``has*`` relations, destroy rows, then remove
  them from the cache

Every operation runs in one correlation context and reports each store's
outcome separately (``None`` error, ``False`` nothing matched, ``True`` or a
value for success). No exception escapes an operation.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Mapping, Sequence
from typing import Any

from dbflow.errors import FilterError
from dbflow.runtime.cache_store import CacheStore, encode_record
from dbflow.runtime.correlation import CorrelationContext, Tracer
from dbflow.runtime.filters import Filter
from dbflow.runtime.includes import Backend, IncludePlan, project, resolve_includes
from dbflow.runtime.primary_store import PrimaryStore
from dbflow.runtime.registry import ModelRegistry
from dbflow.runtime.results import DeleteResult, SaveResult, UpdateResult
from dbflow.runtime.updates import UpdateSpec

ALL_ATTRIBUTES = "all"

Record = dict[str, Any]


class DatabaseFlow:
    """
    Store-agnostic query/mutation API over a primary store and a cache.

    Example:
        flow = create_flow(FlowConfig.from_env(), models)
        await flow.save("user", {"name": "ann", "age": 30})
        users = await flow.get("user", {"age": {"$gt": 18}}, "all", "post", ["*", "title"])
    """

    def __init__(
        self,
        registry: ModelRegistry,
        primary: PrimaryStore,
        cache: CacheStore,
        tracer: Tracer,
    ):
        self.registry = registry
        self.primary = primary
        self.cache = cache
        self.tracer = tracer

    def _check_model(self, model: str, ctx: CorrelationContext) -> bool:
        if self.registry.has_model(model):
            return True
        ctx.error(f"Unknown model '{model}'")
        return False

    def _project(self, records: list[Record], attributes: str | Sequence[str] | None) -> list[Record]:
        if attributes is None or attributes == ALL_ATTRIBUTES:
            return records
        if isinstance(attributes, str):
            attributes = [attributes]
        return [project(record, attributes, self.registry.model_names) for record in records]

    # =========================================================================
    # Get
    # =========================================================================

    async def get(
        self,
        model: str,
        where: Filter | None = None,
        attributes: str | Sequence[str] = ALL_ATTRIBUTES,
        *include: Any,
        ctx: CorrelationContext | None = None,
    ) -> list[Record] | None:
        """
        Find records of ``model``.

        Args:
            model: Model name
            where: Filter
            attributes: ``"all"`` or the attributes to return (embedded
                relations are always kept)
            *include: Include tokens and/or ``include()`` plans

        Returns:
            Matching records, or None if neither store could be searched
        """
        with self.tracer.scope(ctx) as ctx:
            if not self._check_model(model, ctx):
                return None

            plans = resolve_includes(self.registry, model, include, Backend.CACHE, ctx)
            cached = await self.cache.find(model, where, plans, ctx)
            if cached:
                return self._project(cached, attributes)
            ctx.debug(
                "Cache miss" if cached is not None else "Cache unavailable, using primary store",
                model=model,
            )

            try:
                plans = resolve_includes(self.registry, model, include, Backend.STORE, ctx)
            except FilterError as e:
                ctx.error(f"Invalid include filter: {e}", model=model)
                return None
            rows = await self.primary.query(model, where, None, plans, ctx)
            if rows is None:
                return None

            if rows:
                await self._repopulate(model, rows, plans, ctx)
            return self._project(rows, attributes)

    def _included_rows(
        self, rows: list[Record], plans: Sequence[IncludePlan], collected: dict[str, list[Record]]
    ) -> None:
        for plan in plans:
            children = [child for row in rows for child in row.get(plan.model, ())]
            # Projected children are partial records and stay out of the cache
            if plan.attributes is None:
                collected[plan.model].extend(children)
            self._included_rows(children, plan.children, collected)

    async def _repopulate(
        self, model: str, rows: list[Record], plans: Sequence[IncludePlan], ctx: CorrelationContext
    ) -> None:
        """Write full primary rows, and the included rows, into their models' cache sets."""
        collected: dict[str, list[Record]] = defaultdict(list)
        collected[model].extend(rows)
        self._included_rows(rows, plans, collected)
        await asyncio.gather(
            *(self.cache.create(name, records, ctx) for name, records in collected.items() if records)
        )

    # =========================================================================
    # Save
    # =========================================================================

    async def save(
        self,
        model: str,
        records: Mapping[str, Any] | Sequence[Mapping[str, Any]],
        ctx: CorrelationContext | None = None,
    ) -> SaveResult:
        """
        Insert records into the primary store and mirror them into the cache.

        A primary failure leaves the cache untouched. A cache failure is
        reported (``cache=None``) but the primary insert stands.
        """
        with self.tracer.scope(ctx) as ctx:
            if not self._check_model(model, ctx):
                return SaveResult(primary=None, cache=None, records=None)
            if isinstance(records, Mapping):
                records = [records]
            if not records:
                ctx.error("Nothing to save", model=model)
                return SaveResult(primary=None, cache=None, records=None)

            if len(records) == 1:
                row = await self.primary.create(model, records[0], ctx)
                created = [row] if row is not None else None
            else:
                created = await self.primary.bulk_create(model, records, ctx)
            if created is None:
                return SaveResult(primary=None, cache=None, records=None)

            cached = await self.cache.create(model, created, ctx)
            if cached is None:
                ctx.warning("Saved to primary store but not to cache", model=model, rows=len(created))
            return SaveResult(primary=True, cache=cached, records=created)

    # =========================================================================
    # Update
    # =========================================================================

    async def update(
        self,
        model: str,
        spec: UpdateSpec,
        where: Filter | None = None,
        ctx: CorrelationContext | None = None,
    ) -> UpdateResult:
        """Apply ``spec`` to matching records in both stores."""
        with self.tracer.scope(ctx) as ctx:
            if not self._check_model(model, ctx):
                return UpdateResult(primary=None, cache=None)
            primary = await self.primary.update(model, spec, where, ctx)
            # Attempted whatever the primary outcome
            cache = await self.cache.update(model, spec, where, ctx)
            return UpdateResult(primary=primary, cache=cache)

    # =========================================================================
    # Delete
    # =========================================================================

    async def delete(
        self,
        model: str,
        where: Filter | None = None,
        ctx: CorrelationContext | None = None,
    ) -> DeleteResult:
        """
        Delete matching records and, recursively, their ``has*`` children.

        Returns:
            Per-store outcome for ``model`` with the cascaded results
        """
        with self.tracer.scope(ctx) as ctx:
            if not self._check_model(model, ctx):
                return DeleteResult(primary=None, cache=None)
            return await self._delete(model, where, ctx, set())

    def _identity(self, model: str, row: Mapping[str, Any]) -> tuple[str, Any]:
        keys = self.registry.primary_keys(model)
        if keys:
            return model, tuple(row.get(key) for key in keys)
        return model, encode_record(row)

    async def _delete(
        self,
        model: str,
        where: Filter | None,
        ctx: CorrelationContext,
        pending: set[tuple[str, Any]],
    ) -> DeleteResult:
        rows = await self.primary.query(model, where, ctx=ctx)

        cascade: dict[str, DeleteResult] = {}
        failed_rows = 0
        primary: bool | None = None
        if rows is not None:
            # Rows already being deleted higher up (self-referencing graphs)
            rows = [row for row in rows if self._identity(model, row) not in pending]
            pending.update(self._identity(model, row) for row in rows)

            cascade = await self._cascade(model, rows, ctx, pending)

            outcomes = await asyncio.gather(*(self.primary.destroy(model, row, ctx) for row in rows))
            failed_rows = sum(1 for outcome in outcomes if outcome is None)
            if rows and failed_rows == len(rows):
                primary = None
            else:
                primary = any(outcomes)
            if failed_rows:
                ctx.error(f"{failed_rows} of {len(rows)} rows not deleted", model=model)

        cache = await self.cache.delete(model, where, ctx)
        return DeleteResult(primary=primary, cache=cache, failed_rows=failed_rows, cascade=cascade)

    async def _cascade(
        self,
        model: str,
        rows: list[Record],
        ctx: CorrelationContext,
        pending: set[tuple[str, Any]],
    ) -> dict[str, DeleteResult]:
        targets = []
        for relation in self.registry.relations_of(model).values():
            if not relation.cascades:
                continue
            values = (row.get(relation.this_key) for row in rows)
            keys = list(dict.fromkeys(v for v in values if v is not None))
            if keys:
                targets.append((relation.name, {relation.other_key: {"$in": keys}}))

        results = await asyncio.gather(
            *(self._delete(name, child_where, ctx, pending) for name, child_where in targets)
        )
        return {name: result for (name, _), result in zip(targets, results, strict=True)}

    async def close(self) -> None:
        """Close the cache connection and dispose of the engine."""
        await self.cache.close()
        await self.primary.engine.dispose()
