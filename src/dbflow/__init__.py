"""
dbflow - a relational store and a Redis set cache behind one API.

    from dbflow import FlowConfig, ModelSpec, create_flow

    flow = create_flow(FlowConfig.from_env(), models)
    result = await flow.save("user", {"name": "ann", "age": 30})
    users = await flow.get("user", {"age": {"$gt": 18}})
"""

from dbflow.config import DatabaseConnection, FlowConfig
from dbflow.errors import ConfigError, FilterError, FlowError, RegistryError, UpdateSpecError
from dbflow.runtime import (
    DatabaseFlow,
    DeleteResult,
    IncludePlan,
    ModelRegistry,
    SaveResult,
    UpdateCounts,
    UpdateResult,
    create_flow,
    include,
)
from dbflow.specs import AttributeSpec, AttributeType, ModelSpec, RelationKind, RelationSpec

__version__ = "0.4.0"

__all__ = [
    "AttributeSpec",
    "AttributeType",
    "ConfigError",
    "DatabaseConnection",
    "DatabaseFlow",
    "DeleteResult",
    "FilterError",
    "FlowConfig",
    "FlowError",
    "IncludePlan",
    "ModelRegistry",
    "ModelSpec",
    "RegistryError",
    "RelationKind",
    "RelationSpec",
    "SaveResult",
    "UpdateCounts",
    "UpdateResult",
    "UpdateSpecError",
    "create_flow",
    "include",
]
