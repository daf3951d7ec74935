"""
Per-integration field mappings for synced items.

An integration's ``config["field_mappings"]`` is a list of
``{source_field, target_field, transform?, default?}`` entries. Source
fields use dot notation (``"fields.assignee.email"``); transforms are
looked up by name in TRANSFORMS.

Mapped values are added next to the raw item under ``mapped`` so the
downstream consumer always sees the provider's original record too.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

from core.integrations.errors import InvalidFieldMapping

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Field mapping
# ---------------------------------------------------------------------------

@dataclass
class FieldMapping:
    """Maps one provider field to a platform field."""
    source_field: str       # Dot-notation path, e.g. "fields.status.name"
    target_field: str
    transform: str | None = None
    default: Any = None

    @classmethod
    def from_dict(cls, value: dict[str, Any]) -> "FieldMapping":
        source = str(value.get("source_field") or "").strip()
        target = str(value.get("target_field") or "").strip()
        if not source or not target:
            raise InvalidFieldMapping("Field mapping requires source_field and target_field")
        transform = value.get("transform") or None
        if transform is not None and transform not in TRANSFORMS:
            raise InvalidFieldMapping(f"Unknown field mapping transform: {transform}")
        return cls(source, target, transform, value.get("default"))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Transform functions
# ---------------------------------------------------------------------------

def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y", "on")
    return bool(value)


def _iso_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date().isoformat()


def _epoch_to_iso(value: Any) -> str:
    seconds = float(value)
    if seconds > 1e11:  # milliseconds
        seconds /= 1000
    return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()


TRANSFORMS: dict[str, Callable[[Any], Any]] = {
    "lowercase": lambda v: str(v).lower(),
    "uppercase": lambda v: str(v).upper(),
    "strip": lambda v: str(v).strip(),
    "to_int": lambda v: int(float(v)),
    "to_float": float,
    "to_bool": _to_bool,
    "iso_date": _iso_date,
    "epoch_to_iso": _epoch_to_iso,
}


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def get_nested(data: Any, path: str) -> Any:
    """Access nested dict values via dot notation; None when any hop is missing."""
    current = data
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
        if current is None:
            return None
    return current


def parse_mappings(raw: list[dict[str, Any]] | None) -> list[FieldMapping]:
    return [FieldMapping.from_dict(entry) for entry in raw or []]


def apply_field_mappings(item: dict[str, Any], mappings: list[FieldMapping]) -> dict[str, Any]:
    """Return the mapped fields for *item*.

    A transform that fails on a value yields the mapping's default rather
    than failing the whole item.
    """
    result: dict[str, Any] = {}
    for mapping in mappings:
        value = get_nested(item, mapping.source_field)
        if value is not None and mapping.transform:
            try:
                value = TRANSFORMS[mapping.transform](value)
            except (ValueError, TypeError, OverflowError) as exc:
                logger.debug(
                    f"[mapping] {mapping.transform} failed on {mapping.source_field}: {exc}"
                )
                value = None
        result[mapping.target_field] = mapping.default if value is None else value
    return result
