"""
Tests for model specs and the model registry.
"""

from __future__ import annotations

import logging

import pytest
import sqlalchemy as sa
from pydantic import ValidationError

from dbflow.errors import RegistryError
from dbflow.runtime.registry import ModelRegistry
from dbflow.specs.model import AttributeSpec, AttributeType, ModelSpec, RelationKind, RelationSpec


def _model(name: str, *attributes: str, relations=None) -> ModelSpec:
    return ModelSpec(
        name=name,
        attributes=[AttributeSpec(name=a) for a in attributes],
        relations=relations or {},
    )


class TestSpecs:
    def test_attribute_name_must_be_identifier(self):
        with pytest.raises(ValidationError):
            AttributeSpec(name="first name")

    def test_model_name_must_be_identifier(self):
        with pytest.raises(ValidationError):
            ModelSpec(name="2fast")

    def test_specs_are_frozen(self):
        spec = AttributeSpec(name="a")
        with pytest.raises(ValidationError):
            spec.name = "b"

    def test_relation_defaults_to_inner_join(self):
        assert RelationSpec(kind="hasMany", this_key="id", other_key="x").inner_join is True

    def test_relation_kind_has(self):
        assert RelationKind.HAS_ONE.is_has
        assert RelationKind.HAS_MANY.is_has
        assert not RelationKind.BELONGS_TO.is_has
        assert not RelationKind.BELONGS_TO_MANY.is_has

    def test_primary_keys(self):
        spec = ModelSpec(
            name="m",
            attributes=[AttributeSpec(name="id", primary_key=True), AttributeSpec(name="v")],
        )
        assert spec.primary_keys == ["id"]
        assert spec.get_attribute("v") is not None
        assert spec.get_attribute("w") is None


class TestRelations:
    def test_relations_of(self, registry: ModelRegistry):
        relations = registry.relations_of("user")

        assert set(relations) == {"post"}
        post = relations["post"]
        assert post.kind is RelationKind.HAS_MANY
        assert post.this_key == "id"
        assert post.other_key == "user_id"
        assert post.required is True
        assert post.cascades is True

    def test_belongs_to_does_not_cascade(self, registry: ModelRegistry):
        assert registry.relation("post", "user").cascades is False

    def test_relations_of_unknown_model_is_empty(self, registry: ModelRegistry):
        assert registry.relations_of("ghost") == {}

    def test_unsupported_kind_is_dropped(self, caplog):
        models = [
            _model("a", "id", relations={"b": RelationSpec(kind="hasSome", this_key="id", other_key="a_id")}),
            _model("b", "a_id"),
        ]
        with caplog.at_level(logging.ERROR, logger="dbflow.runtime.registry"):
            registry = ModelRegistry(models)

        assert registry.relations_of("a") == {}
        assert "unsupported kind 'hasSome'" in caplog.text

    def test_unknown_target_is_dropped(self, caplog):
        models = [_model("a", "id", relations={"z": RelationSpec(kind="hasOne", this_key="id", other_key="a_id")})]
        with caplog.at_level(logging.ERROR, logger="dbflow.runtime.registry"):
            registry = ModelRegistry(models)

        assert registry.relations_of("a") == {}
        assert "unknown model 'z'" in caplog.text

    def test_missing_keys_are_dropped(self, caplog):
        models = [
            _model(
                "a",
                "id",
                relations={
                    "b": RelationSpec(kind="hasMany", this_key="uid", other_key="a_id"),
                    "c": RelationSpec(kind="hasMany", this_key="id", other_key="missing"),
                },
            ),
            _model("b", "a_id"),
            _model("c", "a_id"),
        ]
        with caplog.at_level(logging.ERROR, logger="dbflow.runtime.registry"):
            registry = ModelRegistry(models)

        assert registry.relations_of("a") == {}
        assert "'a' has no attribute 'uid'" in caplog.text
        assert "'c' has no attribute 'missing'" in caplog.text

    def test_valid_relations_survive_invalid_siblings(self):
        models = [
            _model(
                "a",
                "id",
                relations={
                    "b": RelationSpec(kind="hasMany", this_key="id", other_key="a_id"),
                    "c": RelationSpec(kind="owns", this_key="id", other_key="a_id"),
                },
            ),
            _model("b", "a_id"),
            _model("c", "a_id"),
        ]
        assert set(ModelRegistry(models).relations_of("a")) == {"b"}

    def test_declaration_order_does_not_matter(self):
        models = [
            _model("b", "a_id"),
            _model("a", "id", relations={"b": RelationSpec(kind="hasMany", this_key="id", other_key="a_id")}),
        ]
        assert "b" in ModelRegistry(models).relations_of("a")

    def test_duplicate_model_raises(self):
        with pytest.raises(RegistryError, match="already registered"):
            ModelRegistry([_model("a", "id"), _model("a", "id")])


class TestLookups:
    def test_model_names(self, registry: ModelRegistry):
        assert registry.model_names == {"user", "post", "comment", "event", "product", "visit"}
        assert registry.has_model("user")
        assert not registry.has_model("ghost")

    def test_attributes(self, registry: ModelRegistry):
        assert [a.name for a in registry.attributes_of("user")] == ["id", "name", "age"]
        assert registry.attributes_of("ghost") == []
        assert registry.attribute_types("event")["starts_at"] is AttributeType.DATETIME

    def test_primary_keys(self, registry: ModelRegistry):
        assert registry.primary_keys("user") == ["id"]
        assert registry.primary_keys("visit") == []


class TestMetadata:
    def test_tables_built(self, registry: ModelRegistry):
        assert set(registry.metadata.tables) == {"user", "post", "comment", "event", "product", "visit"}

    def test_column_types(self, registry: ModelRegistry):
        event = registry.table("event")
        assert isinstance(event.c.starts_at.type, sa.DateTime)
        assert isinstance(event.c.id.type, sa.Integer)
        assert event.c.id.primary_key

    def test_required_attribute_is_not_nullable(self):
        registry = ModelRegistry(
            [ModelSpec(name="m", attributes=[AttributeSpec(name="v", required=True), AttributeSpec(name="w")])]
        )
        table = registry.table("m")
        assert table.c.v.nullable is False
        assert table.c.w.nullable is True

    def test_table_without_primary_key(self, registry: ModelRegistry):
        assert list(registry.table("visit").primary_key.columns) == []

    def test_unknown_table_raises_key_error(self, registry: ModelRegistry):
        with pytest.raises(KeyError):
            registry.table("ghost")
