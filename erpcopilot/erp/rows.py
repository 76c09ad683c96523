"""
Typed decoding of raw Odoo rows.

Odoo returns loosely-typed JSON: a many2one value is an ``[id, display_name]``
pair, an empty relation or char is ``False``, and everything else is a plain
scalar.  Rows are decoded here, at the client boundary, so the rest of the
engine only ever sees:

  - ``Relation(id, label)`` for relation pairs
  - plain scalars (str / int / float / bool)
  - ``None`` for empty values of non-boolean fields
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, NamedTuple, Union

UNASSIGNED_LABEL = "Unassigned"


class Relation(NamedTuple):
    """A many2one value: record id plus its display label."""
    id: int
    label: str


FieldValue = Union[Relation, str, int, float, bool, None]


def decode_value(raw: Any) -> FieldValue:
    """Decode one raw JSON value into a ``FieldValue``."""
    if (
        isinstance(raw, (list, tuple))
        and len(raw) == 2
        and isinstance(raw[0], int)
        and not isinstance(raw[0], bool)
        and isinstance(raw[1], str)
    ):
        return Relation(id=raw[0], label=raw[1])
    if isinstance(raw, (list, tuple)):
        # x2many id lists are kept as plain lists of ids
        return list(raw)  # type: ignore[return-value]
    return raw


def decode_row(raw: dict[str, Any]) -> dict[str, FieldValue]:
    return {key: decode_value(val) for key, val in raw.items()}


def decode_rows(raw_rows: list[dict[str, Any]] | None) -> list[dict[str, FieldValue]]:
    return [decode_row(r) for r in raw_rows or []]


def display_label(value: FieldValue, default: str = UNASSIGNED_LABEL) -> str:
    """Human label for a grouping key or record field."""
    if isinstance(value, Relation):
        return value.label
    if value is None or value is False or value == "":
        return default
    return str(value)


def relation_id(value: FieldValue) -> int | None:
    if isinstance(value, Relation):
        return value.id
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def as_number(value: Any) -> float:
    """Coerce an aggregate cell to float (Odoo returns ``False`` for empty sums)."""
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def as_date(value: Any) -> date | None:
    """Parse an Odoo date / datetime string (``YYYY-MM-DD[ HH:MM:SS]``)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or len(value) < 10:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None
