"""
Include resolution.

Turns an include request into a tree of ``IncludePlan`` nodes bound to the
registry's relations. Requests are either built explicitly::

    include("post", where={"published": True}, attributes=["id", "title"])

or given as a flat token sequence, parsed left to right::

    "post", ["*", "id", "title"], {"published": True}, "comment", ["tag"]

- a string starts a node for that relation of the current parent
- an array starting with ``"*"`` is the node's attribute projection
- any other array is a nested token sequence for the node's children
- a mapping is the node's filter

Anything else is reported and skipped; parsing never aborts. The parse is
the same for both stores, only the node filters are shaped per backend.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from dbflow.runtime.correlation import CorrelationContext
from dbflow.runtime.filters import strip_transform, to_store_predicate
from dbflow.runtime.registry import ModelRegistry, RelationInfo

logger = logging.getLogger(__name__)

PROJECTION_MARKER = "*"


class Backend(StrEnum):
    """Which store an include plan is shaped for."""

    CACHE = "cache"  # filters stay DSL mappings
    STORE = "store"  # filters become SQLAlchemy clauses


@dataclass
class IncludePlan:
    """
    One node of an include tree.

    Attributes:
        model: Related model name (also the key the children attach under)
        required: Drop parents without a match; ``None`` until bound, then
            taken from the relation's ``inner_join`` unless set explicitly
        attributes: Projection of the included records, ``None`` for all
        where: Filter on the related records
        children: Nested includes of the related model
        relation: The registry relation this node was bound to
    """

    model: str
    required: bool | None = None
    attributes: list[str] | None = None
    where: Any = None
    children: list[IncludePlan] = field(default_factory=list)
    relation: RelationInfo | None = None


def include(
    model: str,
    *,
    where: Mapping[str, Any] | None = None,
    attributes: Iterable[str] | None = None,
    children: Iterable[IncludePlan] = (),
    required: bool | None = None,
) -> IncludePlan:
    """Build an include node explicitly (resolved against the registry later)."""
    return IncludePlan(
        model=model,
        required=required,
        attributes=list(attributes) if attributes is not None else None,
        where=dict(where) if where is not None else None,
        children=list(children),
    )


def project(
    record: Mapping[str, Any], attributes: Iterable[str] | None, keep: Iterable[str]
) -> dict[str, Any]:
    """Keep ``attributes`` plus any key in ``keep`` (embedded relations)."""
    if attributes is None:
        return dict(record)
    wanted = set(attributes) | set(keep)
    return {key: value for key, value in record.items() if key in wanted}


def _report(ctx: CorrelationContext | None, message: str, **context: Any) -> None:
    if ctx is not None:
        ctx.warning(message, **context)
    else:
        logger.warning(message)


def _shape_where(
    registry: ModelRegistry, model: str, where: Any, backend: Backend
) -> Any:
    if where is None or not isinstance(where, Mapping):
        return where
    if backend is Backend.STORE:
        return to_store_predicate(where, registry.table(model))
    return strip_transform(where)


def _bind(
    registry: ModelRegistry,
    parent: str,
    plan: IncludePlan,
    backend: Backend,
    ctx: CorrelationContext | None,
) -> IncludePlan | None:
    relation = registry.relation(parent, plan.model)
    if relation is None:
        _report(ctx, f"Include skipped: '{parent}' has no relation '{plan.model}'", model=parent)
        return None
    children = []
    for child in plan.children:
        bound = _bind(registry, plan.model, child, backend, ctx)
        if bound is not None:
            children.append(bound)
    return replace(
        plan,
        required=relation.required if plan.required is None else plan.required,
        where=_shape_where(registry, plan.model, plan.where, backend),
        children=children,
        relation=relation,
    )


def resolve_includes(
    registry: ModelRegistry,
    model: str,
    tokens: Sequence[Any],
    backend: Backend = Backend.CACHE,
    ctx: CorrelationContext | None = None,
) -> list[IncludePlan]:
    """
    Resolve include tokens and/or ``IncludePlan`` values for ``model``.

    Raises:
        FilterError: A node filter names an unknown column (store shape).
    """
    nodes: list[IncludePlan] = []
    current: IncludePlan | None = None
    # Set after an unknown relation: its projection/filter tokens are dropped too
    skipping = False

    for position, token in enumerate(tokens):
        if isinstance(token, IncludePlan):
            current = _bind(registry, model, token, backend, ctx)
            skipping = current is None
            if current is not None:
                nodes.append(current)

        elif isinstance(token, str):
            relation = registry.relation(model, token)
            if relation is None:
                _report(ctx, f"Include skipped: '{model}' has no relation '{token}'", model=model)
                current, skipping = None, True
                continue
            current = IncludePlan(model=token, required=relation.inner_join, relation=relation)
            nodes.append(current)
            skipping = False

        elif isinstance(token, list | tuple):
            if skipping:
                continue
            if current is None:
                _report(ctx, f"Include token {position} ignored: no relation to apply it to", model=model)
                continue
            if token and token[0] == PROJECTION_MARKER:
                current.attributes = [a for a in token[1:] if isinstance(a, str)]
                if len(current.attributes) != len(token) - 1:
                    _report(ctx, f"Non-string attributes ignored in projection of '{current.model}'")
            else:
                current.children.extend(
                    resolve_includes(registry, current.model, token, backend, ctx)
                )

        elif isinstance(token, Mapping):
            if skipping:
                continue
            if current is None:
                _report(ctx, f"Include token {position} ignored: no relation to apply it to", model=model)
                continue
            current.where = _shape_where(registry, current.model, token, backend)

        else:
            _report(
                ctx,
                f"Include token {position} ignored: unexpected {type(token).__name__}",
                model=model,
            )

    return nodes
