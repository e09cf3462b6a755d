"""
Error types for dbflow.

Exceptions raised inside the translators and the registry. The store
adapters catch them (together with driver errors) at their boundary and
convert them into the tri-state results, so none of these escape a public
flow operation.
"""

from __future__ import annotations

import re


class FlowError(Exception):
    """Base class for dbflow errors."""


class ConfigError(FlowError):
    """Raised when the configuration cannot produce a usable store URL."""


class RegistryError(FlowError):
    """Raised for unrecoverable model registry problems (duplicate names)."""


class FilterError(FlowError):
    """Raised when a filter cannot be translated for the primary store."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class UpdateSpecError(FlowError):
    """Raised when an update spec cannot be applied to a record."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


def describe_store_error(exc: BaseException) -> str:
    """Build a one-line description of a store error, including driver detail.

    psycopg exceptions carry the server message in ``pgerror`` and the
    offending key in ``diag.detail``; both are often missing from
    ``str(exc)`` once SQLAlchemy has wrapped them.
    """
    orig = getattr(exc, "orig", None) or exc
    err = getattr(orig, "pgerror", None) or str(orig)
    detail = getattr(getattr(orig, "diag", None), "detail", None) or ""

    text = f"{type(exc).__name__}: {err.strip()}"
    if detail:
        text = f"{text} ({detail.strip()})"

    # PostgreSQL: Key (email)=(a@b.c) already exists.
    key_match = re.search(r"Key \((\w+)\)", detail)
    if key_match:
        text = f"{text} [field={key_match.group(1)}]"
    return text
