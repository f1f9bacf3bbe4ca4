from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

from roster_sync.schemas.sync import FieldChange
from roster_sync.utils.timestamps import to_naive_utc


def normalize_value(value: Any) -> Any:
    """Empty and whitespace-only strings compare equal to a missing value."""
    if value is None:
        return None
    if isinstance(value, str):
        return value if value.strip() else None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    return value


def _read(record: Any, field: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(field)
    return getattr(record, field, None)


def _display(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class ChangeDetector:
    def values_differ(self, existing: Any, incoming: Any) -> bool:
        return normalize_value(existing) != normalize_value(incoming)

    def changed_fields(self, existing: Any, incoming: Any, fields: Sequence[str]) -> list[FieldChange]:
        changes = []
        for field in fields:
            old = _read(existing, field)
            new = _read(incoming, field)
            if self.values_differ(old, new):
                changes.append(FieldChange(field=field, old=_display(old), new=_display(new)))
        return changes

    def is_changed(self, existing: Any, incoming: Any, fields: Sequence[str]) -> bool:
        return any(self.values_differ(_read(existing, field), _read(incoming, field)) for field in fields)
