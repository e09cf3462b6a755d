"""Redis set cache for model records.

Each model is one Redis set whose members are canonical JSON records::

    {namespace}{model}   → {"age":30,"id":1,"name":"ann"}, ...

Redis has no query language, so every lookup reads the whole set and
filters in memory. Includes are emulated by finding the related model's
records and joining them on the relation keys. Update is not atomic: the
matched members are removed and the updated records added back.

All public methods return ``None`` when the cache cannot be read or
written, so callers can tell an unavailable cache from an empty result.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable, Mapping, Sequence
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from dbflow.errors import FilterError, UpdateSpecError
from dbflow.runtime.correlation import CorrelationContext, Tracer
from dbflow.runtime.filters import Filter, Predicate, to_predicate
from dbflow.runtime.includes import IncludePlan, project
from dbflow.runtime.registry import ModelRegistry
from dbflow.runtime.results import UpdateCounts
from dbflow.runtime.updates import UpdateSpec, apply_update
from dbflow.specs.model import AttributeType

COMPONENT = "REDIS"

Record = dict[str, Any]


# =============================================================================
# Serialization
# =============================================================================


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_record(record: Mapping[str, Any]) -> str:
    """Canonical JSON form: identical records always encode to the same member."""
    return json.dumps(record, sort_keys=True, separators=(",", ":"), default=_json_default)


def _decode_value(value: Any, attribute_type: AttributeType | None) -> Any:
    if value is None or attribute_type is None:
        return value
    if attribute_type is AttributeType.DATETIME:
        return datetime.fromisoformat(value)
    if attribute_type is AttributeType.DATE:
        return date.fromisoformat(value)
    if attribute_type is AttributeType.DECIMAL:
        return Decimal(str(value))
    if attribute_type is AttributeType.UUID:
        return UUID(value)
    return value


def decode_record(raw: str, attribute_types: Mapping[str, AttributeType]) -> Record:
    """Parse a member back into a record with typed values."""
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("cache member is not a JSON object")
    return {key: _decode_value(value, attribute_types.get(key)) for key, value in data.items()}


# =============================================================================
# Cache Store
# =============================================================================


class CacheStore:
    """Per-model Redis sets with in-memory filtering and join emulation.

    Args:
        registry: Model registry.
        tracer: Correlation tracer for diagnostic events.
        redis_url: Redis URL, used on first access.
        namespace: Prefix for every set key.
        hello_message: Log once the connection is up.
        client: Pre-built ``redis.asyncio`` client (skips ``from_url``).
    """

    def __init__(
        self,
        registry: ModelRegistry,
        tracer: Tracer,
        redis_url: str | None = None,
        *,
        namespace: str = "",
        hello_message: bool = True,
        client: Any = None,
    ) -> None:
        self.registry = registry
        self.tracer = tracer
        self.namespace = namespace
        self.hello_message = hello_message
        self._redis_url = redis_url
        self._redis: Any = client
        self._connected = False

    async def _ensure_connected(self, ctx: CorrelationContext) -> bool:
        """Lazy-connect to Redis on first use.  Returns True if connected."""
        if self._connected:
            return True
        try:
            if self._redis is None:
                if not self._redis_url:
                    ctx.error("Cache store has no Redis URL configured", component=COMPONENT)
                    return False
                self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
            await self._redis.ping()
        except (RedisError, OSError, ValueError) as e:
            ctx.error(f"Redis unavailable: {e}", component=COMPONENT)
            return False
        self._connected = True
        if self.hello_message:
            ctx.info("Connected to Redis", component=COMPONENT, namespace=self.namespace)
        return True

    def key(self, model: str) -> str:
        return f"{self.namespace}{model}"

    def _check_model(self, model: str, ctx: CorrelationContext) -> bool:
        if self.registry.has_model(model):
            return True
        ctx.error(f"Unknown model '{model}'", component=COMPONENT)
        return False

    # -------------------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------------------

    async def _scan(
        self, model: str, predicate: Predicate, ctx: CorrelationContext
    ) -> list[tuple[str, Record]] | None:
        """Return ``(member, record)`` pairs matching ``predicate``."""
        if not await self._ensure_connected(ctx):
            return None
        try:
            members = await self._redis.smembers(self.key(model))
        except (RedisError, OSError) as e:
            ctx.error(f"Cache read failed: {e}", component=COMPONENT, model=model)
            return None

        types = self.registry.attribute_types(model)
        matches = []
        for raw in sorted(members):
            try:
                record = decode_record(raw, types)
            except (ValueError, TypeError) as e:
                ctx.warning(f"Undecodable cache member skipped: {e}", component=COMPONENT, model=model)
                continue
            if predicate(record):
                matches.append((raw, record))
        return matches

    def _predicate(self, model: str, where: Filter | None, ctx: CorrelationContext) -> Predicate | None:
        try:
            return to_predicate(where, self.registry.attribute_types(model))
        except FilterError as e:
            ctx.error(f"Invalid filter: {e}", component=COMPONENT, model=model)
            return None

    async def find(
        self,
        model: str,
        where: Filter | None = None,
        include: Sequence[IncludePlan] = (),
        ctx: CorrelationContext | None = None,
    ) -> list[Record] | None:
        """
        Find records of ``model`` matching ``where``, with includes joined.

        Returns:
            Matching records (possibly empty), or None if the cache could
            not be read
        """
        with self.tracer.scope(ctx) as ctx:
            if not self._check_model(model, ctx):
                return None
            predicate = self._predicate(model, where, ctx)
            if predicate is None:
                return None
            scanned = await self._scan(model, predicate, ctx)
            if scanned is None:
                return None
            records = [record for _, record in scanned]
            if not include or not records:
                return records
            return await self._join(records, include, ctx)

    async def _join(
        self, records: list[Record], include: Sequence[IncludePlan], ctx: CorrelationContext
    ) -> list[Record] | None:
        children = await asyncio.gather(
            *(self.find(plan.model, plan.where, plan.children, ctx) for plan in include)
        )
        if any(found is None for found in children):
            return None

        model_names = self.registry.model_names
        joined = []
        for record in records:
            keep = True
            for plan, found in zip(include, children, strict=True):
                relation = plan.relation
                if relation is None:
                    continue
                value = record.get(relation.this_key)
                matches = [
                    project(child, plan.attributes, model_names)
                    for child in found
                    if value is not None and child.get(relation.other_key) == value
                ]
                record[plan.model] = matches
                if plan.required and not matches:
                    keep = False
            if keep:
                joined.append(record)
        return joined

    # -------------------------------------------------------------------------
    # Writing
    # -------------------------------------------------------------------------

    def _encode_for_write(self, records: Iterable[Mapping[str, Any]]) -> list[str]:
        model_names = self.registry.model_names
        return [
            encode_record({k: v for k, v in record.items() if k not in model_names})
            for record in records
        ]

    async def create(
        self,
        model: str,
        records: Sequence[Mapping[str, Any]],
        ctx: CorrelationContext | None = None,
    ) -> bool | None:
        """
        Add records to the model's set (embedded relation keys are dropped).

        Returns:
            True if added (already present members count as added), False
            for no records, None on failure
        """
        with self.tracer.scope(ctx) as ctx:
            if not self._check_model(model, ctx):
                return None
            if not records:
                return False
            try:
                members = self._encode_for_write(records)
            except TypeError as e:
                ctx.error(f"Record not serializable: {e}", component=COMPONENT, model=model)
                return None
            if not await self._ensure_connected(ctx):
                return None
            try:
                await self._redis.sadd(self.key(model), *members)
            except (RedisError, OSError) as e:
                ctx.error(f"Cache write failed: {e}", component=COMPONENT, model=model)
                return None
            return True

    async def delete(
        self,
        model: str,
        where: Filter | None = None,
        ctx: CorrelationContext | None = None,
    ) -> bool | None:
        """
        Remove records matching ``where``.

        Returns:
            True if removed, False if nothing matched, None on failure
        """
        with self.tracer.scope(ctx) as ctx:
            if not self._check_model(model, ctx):
                return None
            predicate = self._predicate(model, where, ctx)
            if predicate is None:
                return None
            scanned = await self._scan(model, predicate, ctx)
            if scanned is None:
                return None
            if not scanned:
                return False
            try:
                await self._redis.srem(self.key(model), *(raw for raw, _ in scanned))
            except (RedisError, OSError) as e:
                ctx.error(f"Cache delete failed: {e}", component=COMPONENT, model=model)
                return None
            return True

    async def update(
        self,
        model: str,
        spec: UpdateSpec,
        where: Filter | None = None,
        ctx: CorrelationContext | None = None,
    ) -> UpdateCounts | None:
        """
        Rewrite records matching ``where`` (remove old members, add new ones).

        Not atomic. If the removal fails but the add succeeds, old and new
        records coexist (``stale_copies``). If the add fails after the
        removal, the records are gone from the cache (``updated == 0``).

        Returns:
            Counts, or None if nothing could be changed
        """
        with self.tracer.scope(ctx) as ctx:
            if not self._check_model(model, ctx):
                return None
            types = self.registry.attribute_types(model)
            unknown = [field for field in spec if field not in types]
            if unknown:
                ctx.error(f"Unknown update fields: {', '.join(unknown)}", component=COMPONENT, model=model)
                return None
            predicate = self._predicate(model, where, ctx)
            if predicate is None:
                return None
            scanned = await self._scan(model, predicate, ctx)
            if scanned is None:
                return None
            if not scanned:
                return UpdateCounts(found=0, updated=0)

            try:
                updated = [apply_update(spec, record, types) for _, record in scanned]
                members = self._encode_for_write(updated)
            except (UpdateSpecError, TypeError) as e:
                ctx.error(f"Invalid update: {e}", component=COMPONENT, model=model)
                return None

            key = self.key(model)
            removed = True
            try:
                await self._redis.srem(key, *(raw for raw, _ in scanned))
            except (RedisError, OSError) as e:
                removed = False
                ctx.error(f"Cache update could not remove old records: {e}", component=COMPONENT, model=model)

            try:
                await self._redis.sadd(key, *members)
            except (RedisError, OSError) as e:
                if not removed:
                    ctx.error(f"Cache update failed: {e}", component=COMPONENT, model=model)
                    return None
                ctx.error(
                    f"Cache update removed {len(scanned)} records but could not re-add them: {e}",
                    component=COMPONENT,
                    model=model,
                )
                return UpdateCounts(found=len(scanned), updated=0)

            if not removed:
                ctx.warning(
                    "Cache update added new records but old records were not removed",
                    component=COMPONENT,
                    model=model,
                    stale=len(scanned),
                )
                return UpdateCounts(found=len(scanned), updated=len(scanned), stale_copies=True)
            return UpdateCounts(found=len(scanned), updated=len(scanned))

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._connected = False
