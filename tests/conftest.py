"""Shared pytest fixtures for dbflow tests."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from dbflow.config import FlowConfig
from dbflow.runtime.cache_store import CacheStore
from dbflow.runtime.correlation import Tracer
from dbflow.runtime.factory import create_flow
from dbflow.runtime.flow import DatabaseFlow
from dbflow.runtime.primary_store import PrimaryStore
from dbflow.runtime.registry import ModelRegistry
from dbflow.specs.model import AttributeSpec, AttributeType, ModelSpec, RelationSpec

# =============================================================================
# Test doubles
# =============================================================================


class FakeRedis:
    """In-memory stand-in for the ``redis.asyncio`` set commands dbflow uses.

    Add a command name to ``fail`` to make it raise a connection error.
    """

    def __init__(self) -> None:
        self.sets: dict[str, set[str]] = {}
        self.fail: set[str] = set()
        self.calls: list[str] = []
        self.closed = False

    def _command(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail:
            raise RedisConnectionError(f"{name} failed")

    async def ping(self) -> bool:
        self._command("ping")
        return True

    async def smembers(self, key: str) -> set[str]:
        self._command("smembers")
        return set(self.sets.get(key, set()))

    async def sadd(self, key: str, *members: str) -> int:
        self._command("sadd")
        current = self.sets.setdefault(key, set())
        before = len(current)
        current.update(members)
        return len(current) - before

    async def srem(self, key: str, *members: str) -> int:
        self._command("srem")
        current = self.sets.setdefault(key, set())
        removed = len(current & set(members))
        current.difference_update(members)
        return removed

    async def aclose(self) -> None:
        self.closed = True


class RecordingSink:
    """Correlation sink that records every call."""

    def __init__(self) -> None:
        self.started: list[str] = []
        self.events: list[tuple[str, int, str, str, dict[str, Any]]] = []
        self.used: list[str] = []
        self.finished: list[str] = []

    def start(self) -> str:
        event_id = f"op-{len(self.started) + 1}"
        self.started.append(event_id)
        return event_id

    def annotate(
        self, event_id: str, level: int, component: str, message: str, context: dict[str, Any]
    ) -> None:
        self.events.append((event_id, level, component, message, context))

    def mark_used(self, event_id: str) -> None:
        self.used.append(event_id)

    def finish(self, event_id: str) -> None:
        self.finished.append(event_id)

    def messages(self, level: int | None = None) -> list[str]:
        return [e[3] for e in self.events if level is None or e[1] == level]


# =============================================================================
# Models
# =============================================================================


def build_models(post_required: bool = True) -> list[ModelSpec]:
    """user -< post -< comment; event (datetime), product (decimal), visit (no key)."""
    return [
        ModelSpec(
            name="user",
            attributes=[
                AttributeSpec(name="id", type=AttributeType.INT, primary_key=True, autoincrement=True),
                AttributeSpec(name="name", type=AttributeType.STR),
                AttributeSpec(name="age", type=AttributeType.INT),
            ],
            relations={
                "post": RelationSpec(
                    kind="hasMany", this_key="id", other_key="user_id", inner_join=post_required
                ),
            },
        ),
        ModelSpec(
            name="post",
            attributes=[
                AttributeSpec(name="id", type=AttributeType.INT, primary_key=True, autoincrement=True),
                AttributeSpec(name="user_id", type=AttributeType.INT),
                AttributeSpec(name="title", type=AttributeType.STR),
            ],
            relations={
                "user": RelationSpec(kind="belongsTo", this_key="user_id", other_key="id"),
                "comment": RelationSpec(
                    kind="hasMany", this_key="id", other_key="post_id", inner_join=False
                ),
            },
        ),
        ModelSpec(
            name="comment",
            attributes=[
                AttributeSpec(name="id", type=AttributeType.INT, primary_key=True, autoincrement=True),
                AttributeSpec(name="post_id", type=AttributeType.INT),
                AttributeSpec(name="body", type=AttributeType.TEXT),
            ],
        ),
        ModelSpec(
            name="event",
            attributes=[
                AttributeSpec(name="id", type=AttributeType.INT, primary_key=True, autoincrement=True),
                AttributeSpec(name="name", type=AttributeType.STR),
                AttributeSpec(name="starts_at", type=AttributeType.DATETIME),
            ],
        ),
        ModelSpec(
            name="product",
            attributes=[
                AttributeSpec(name="id", type=AttributeType.INT, primary_key=True, autoincrement=True),
                AttributeSpec(name="price", type=AttributeType.DECIMAL),
            ],
        ),
        ModelSpec(
            name="visit",
            attributes=[
                AttributeSpec(name="page", type=AttributeType.STR),
                AttributeSpec(name="count", type=AttributeType.INT),
            ],
        ),
    ]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def models() -> list[ModelSpec]:
    return build_models()


@pytest.fixture
def registry(models: list[ModelSpec]) -> ModelRegistry:
    return ModelRegistry(models)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def tracer(sink: RecordingSink) -> Tracer:
    return Tracer(sink)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache(registry: ModelRegistry, tracer: Tracer, fake_redis: FakeRedis) -> CacheStore:
    return CacheStore(registry, tracer, client=fake_redis)


async def _create_engine(path: Path, registry: ModelRegistry) -> AsyncEngine:
    # A file database: every pooled aiosqlite connection sees the same tables
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")
    async with engine.begin() as conn:
        await conn.run_sync(registry.metadata.create_all)
    return engine


@pytest_asyncio.fixture
async def engine(tmp_path: Path, registry: ModelRegistry) -> AsyncIterator[AsyncEngine]:
    engine = await _create_engine(tmp_path / "flow.db", registry)
    yield engine
    await engine.dispose()


@pytest.fixture
def primary(engine: AsyncEngine, registry: ModelRegistry, tracer: Tracer) -> PrimaryStore:
    return PrimaryStore(engine, registry, tracer)


def make_flow(
    registry: ModelRegistry, engine: AsyncEngine, fake_redis: FakeRedis, sink: RecordingSink
) -> DatabaseFlow:
    return create_flow(
        FlowConfig(),
        registry,
        engine=engine,
        redis_client=fake_redis,
        sink=sink,
        configure_logging=False,
    )


@pytest_asyncio.fixture
async def flow(
    registry: ModelRegistry, engine: AsyncEngine, fake_redis: FakeRedis, sink: RecordingSink
) -> AsyncIterator[DatabaseFlow]:
    flow = make_flow(registry, engine, fake_redis, sink)
    yield flow
    await flow.cache.close()


@pytest_asyncio.fixture
async def optional_flow(
    tmp_path: Path, fake_redis: FakeRedis, sink: RecordingSink
) -> AsyncIterator[DatabaseFlow]:
    """A flow whose user -> post relation is optional in joins."""
    registry = ModelRegistry(build_models(post_required=False))
    engine = await _create_engine(tmp_path / "optional.db", registry)
    flow = make_flow(registry, engine, fake_redis, sink)
    yield flow
    await flow.close()
