"""
Result types returned by the stores and the flow.

Every field follows the tri-state convention: ``None`` an error occurred,
``False`` (or zero counts) nothing matched, ``True`` (or a value) success.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class UpdateCounts:
    """Outcome of an update in one store.

    ``found`` records matched the filter and ``updated`` of them were
    rewritten. In the cache, ``updated < found`` means the old records were
    removed but their replacements were not written, and ``stale_copies``
    means the replacements were written next to old records that could not
    be removed.
    """

    found: int
    updated: int
    stale_copies: bool = False


@dataclass(frozen=True)
class SaveResult:
    primary: bool | None
    cache: bool | None
    records: list[dict[str, Any]] | None


@dataclass(frozen=True)
class UpdateResult:
    primary: UpdateCounts | None
    cache: UpdateCounts | None


@dataclass(frozen=True)
class DeleteResult:
    """Outcome of a (cascading) delete.

    Attributes:
        primary: Primary store outcome for this model's rows
        cache: Cache outcome for this model's records
        failed_rows: Matched rows whose destroy failed
        cascade: Results of the cascaded deletes, keyed by related model
    """

    primary: bool | None
    cache: bool | None
    failed_rows: int = 0
    cascade: dict[str, DeleteResult] = field(default_factory=dict)
