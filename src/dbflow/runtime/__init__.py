"""
dbflow runtime: registry, translators, store adapters and the flow.
"""

from dbflow.runtime.cache_store import CacheStore
from dbflow.runtime.correlation import CorrelationContext, CorrelationSink, Tracer
from dbflow.runtime.factory import create_flow
from dbflow.runtime.filters import FilterOperator, LogicalOperator, to_predicate, to_store_predicate
from dbflow.runtime.flow import DatabaseFlow
from dbflow.runtime.includes import Backend, IncludePlan, include, resolve_includes
from dbflow.runtime.logging import LoggingSink, get_logger, setup_logging
from dbflow.runtime.primary_store import PrimaryStore
from dbflow.runtime.registry import ModelRegistry, RelationInfo
from dbflow.runtime.results import DeleteResult, SaveResult, UpdateCounts, UpdateResult
from dbflow.runtime.updates import DateUnit, apply_update, to_update_values

__all__ = [
    "Backend",
    "CacheStore",
    "CorrelationContext",
    "CorrelationSink",
    "DatabaseFlow",
    "DateUnit",
    "DeleteResult",
    "FilterOperator",
    "IncludePlan",
    "LogicalOperator",
    "LoggingSink",
    "ModelRegistry",
    "PrimaryStore",
    "RelationInfo",
    "SaveResult",
    "Tracer",
    "UpdateCounts",
    "UpdateResult",
    "apply_update",
    "create_flow",
    "get_logger",
    "include",
    "resolve_includes",
    "setup_logging",
    "to_predicate",
    "to_store_predicate",
    "to_update_values",
]
