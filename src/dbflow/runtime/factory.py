"""
Flow factory.

Wires the registry, both store adapters and the correlation tracer from a
``FlowConfig``.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from dbflow.config import FlowConfig
from dbflow.runtime.cache_store import CacheStore
from dbflow.runtime.correlation import CorrelationSink, Tracer
from dbflow.runtime.flow import DatabaseFlow
from dbflow.runtime.logging import LoggingSink, get_flow_logger, setup_logging
from dbflow.runtime.primary_store import PrimaryStore
from dbflow.runtime.registry import ModelRegistry
from dbflow.specs.model import ModelSpec


def create_flow(
    config: FlowConfig,
    models: list[ModelSpec] | ModelRegistry,
    *,
    engine: AsyncEngine | None = None,
    redis_client: Any = None,
    sink: CorrelationSink | None = None,
    configure_logging: bool = True,
) -> DatabaseFlow:
    """
    Build a ``DatabaseFlow``.

    Args:
        config: Flow configuration
        models: Model specs, or an already built registry
        engine: Pre-built async engine (skips ``config`` database settings)
        redis_client: Pre-built ``redis.asyncio`` client (skips ``redis_url``)
        sink: Correlation sink (defaults to ``LoggingSink``)
        configure_logging: Install the dbflow log handlers

    Returns:
        The flow; call ``await flow.close()`` when done

    Raises:
        ConfigError: No database URL or Redis URL could be resolved
        RegistryError: Duplicate model names
    """
    if configure_logging:
        setup_logging(level=config.log_level, log_dir=config.log_dir)

    registry = models if isinstance(models, ModelRegistry) else ModelRegistry(models)
    tracer = Tracer(sink or LoggingSink())

    if engine is None:
        engine = create_async_engine(
            config.sqlalchemy_url, echo=config.echo_sql, **config.extra_engine_options
        )
    cache = CacheStore(
        registry,
        tracer,
        config.resolved_redis_url() if redis_client is None else None,
        namespace=config.redis_namespace,
        hello_message=config.hello_message,
        client=redis_client,
    )

    get_flow_logger().debug(f"Flow created for models: {', '.join(sorted(registry.model_names))}")
    return DatabaseFlow(registry, PrimaryStore(engine, registry, tracer), cache, tracer)
