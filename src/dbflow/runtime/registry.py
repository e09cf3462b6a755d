"""
Model registry.

Holds the model specs, the validated relation graph and the SQLAlchemy
``MetaData`` built from them. One registry is constructed at startup and
passed by reference to every component.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import sqlalchemy as sa

from dbflow.errors import RegistryError
from dbflow.specs.model import AttributeSpec, AttributeType, ModelSpec, RelationKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelationInfo:
    """A validated relation from ``from_model`` to the model named ``name``."""

    name: str
    from_model: str
    kind: RelationKind
    this_key: str
    other_key: str
    inner_join: bool = True

    @property
    def required(self) -> bool:
        """Parents without a match are dropped when this relation is included."""
        return self.inner_join

    @property
    def cascades(self) -> bool:
        return self.kind.is_has


# ---------------------------------------------------------------------------
# Type mapping
# ---------------------------------------------------------------------------


def _attribute_type_to_sa(attribute_type: AttributeType) -> sa.types.TypeEngine:
    mapping: dict[AttributeType, sa.types.TypeEngine] = {
        AttributeType.STR: sa.String(),
        AttributeType.TEXT: sa.Text(),
        AttributeType.INT: sa.Integer(),
        AttributeType.DECIMAL: sa.Numeric(asdecimal=True),
        AttributeType.FLOAT: sa.Float(),
        AttributeType.BOOL: sa.Boolean(),
        AttributeType.DATE: sa.Date(),
        AttributeType.DATETIME: sa.DateTime(),
        AttributeType.UUID: sa.Uuid(),
        AttributeType.JSON: sa.JSON(),
    }
    return mapping[attribute_type]


def _attribute_to_column(attribute: AttributeSpec) -> sa.Column:
    kwargs: dict[str, object] = {}
    if attribute.primary_key:
        kwargs["primary_key"] = True
        kwargs["autoincrement"] = attribute.autoincrement
    else:
        kwargs["nullable"] = not attribute.required
    return sa.Column(attribute.name, _attribute_type_to_sa(attribute.type), **kwargs)


class ModelRegistry:
    """
    Registry of models and the relations between them.

    Relations are keyed by the related model's name. A relation with an
    unsupported kind, an unknown target model or a missing key attribute is
    logged and dropped; the rest of the registry is still usable.
    """

    def __init__(self, models: list[ModelSpec] | None = None):
        self._models: dict[str, ModelSpec] = {}
        self._relations: dict[str, dict[str, RelationInfo]] = {}
        self.metadata = sa.MetaData()
        if models:
            self.register(models)

    def register(self, models: list[ModelSpec]) -> None:
        """Register models and build their relation graph."""
        for model in models:
            if model.name in self._models:
                raise RegistryError(f"Model '{model.name}' is already registered")
            self._models[model.name] = model
            sa.Table(model.name, self.metadata, *(_attribute_to_column(a) for a in model.attributes))

        # Relations are resolved after every model is known so that
        # declaration order does not matter.
        for model in models:
            self._relations[model.name] = {}
            for target, spec in model.relations.items():
                info = self._validate_relation(model, target, spec.kind, spec.this_key, spec.other_key)
                if info is None:
                    continue
                self._relations[model.name][target] = RelationInfo(
                    name=target,
                    from_model=model.name,
                    kind=info,
                    this_key=spec.this_key,
                    other_key=spec.other_key,
                    inner_join=spec.inner_join,
                )

    def _validate_relation(
        self, model: ModelSpec, target: str, kind: str, this_key: str, other_key: str
    ) -> RelationKind | None:
        try:
            relation_kind = RelationKind(kind)
        except ValueError:
            logger.error(
                f"Relation {model.name}->{target}: unsupported kind '{kind}' "
                f"(expected one of {', '.join(k.value for k in RelationKind)})"
            )
            return None

        other = self._models.get(target)
        if other is None:
            logger.error(f"Relation {model.name}->{target}: unknown model '{target}'")
            return None
        if model.get_attribute(this_key) is None:
            logger.error(f"Relation {model.name}->{target}: '{model.name}' has no attribute '{this_key}'")
            return None
        if other.get_attribute(other_key) is None:
            logger.error(f"Relation {model.name}->{target}: '{target}' has no attribute '{other_key}'")
            return None
        return relation_kind

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def has_model(self, name: str) -> bool:
        return name in self._models

    @property
    def model_names(self) -> frozenset[str]:
        return frozenset(self._models)

    def relations_of(self, name: str) -> dict[str, RelationInfo]:
        """Relations declared on ``name``, keyed by related model name."""
        return dict(self._relations.get(name, {}))

    def relation(self, name: str, target: str) -> RelationInfo | None:
        return self._relations.get(name, {}).get(target)

    def attributes_of(self, name: str) -> list[AttributeSpec]:
        model = self._models.get(name)
        return list(model.attributes) if model else []

    def attribute_types(self, name: str) -> dict[str, AttributeType]:
        return {a.name: a.type for a in self.attributes_of(name)}

    def primary_keys(self, name: str) -> list[str]:
        model = self._models.get(name)
        return model.primary_keys if model else []

    def table(self, name: str) -> sa.Table:
        """SQLAlchemy table for a model (``KeyError`` if unregistered)."""
        return self.metadata.tables[name]
