"""
Model specifications consumed by the registry.
"""

from dbflow.specs.model import (
    AttributeSpec,
    AttributeType,
    ModelSpec,
    RelationKind,
    RelationSpec,
)

__all__ = [
    "AttributeSpec",
    "AttributeType",
    "ModelSpec",
    "RelationKind",
    "RelationSpec",
]
