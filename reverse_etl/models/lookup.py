"""Lookup index model."""

from collections.abc import Hashable
from typing import Any, Dict, List, Optional


class LookupIndex:
    """
    Append-only map from a remote field value to the ids of the rows holding it.

    ``complete`` is False when the scan that produced the index stopped early,
    in which case a missing value does not prove the row is absent remotely.
    """

    def __init__(self, table: str, field: str, complete: bool = True):
        self.table = table
        self.field = field
        self.complete = complete
        self._ids: Dict[Any, List[str]] = {}

    def add(self, value: Any, record_id: str) -> bool:
        """Record that ``record_id`` holds ``value``. Returns False if nothing changed."""
        if value is None or not record_id or not isinstance(value, Hashable):
            return False
        ids = self._ids.setdefault(value, [])
        if record_id in ids:
            return False
        ids.append(record_id)
        return True

    def add_values(self, values: Any, record_id: str) -> None:
        """Index a field that may be a single value or a list of values."""
        items = values if isinstance(values, (list, tuple)) else [values]
        for value in items:
            self.add(value, record_id)

    def ids_for(self, value: Any) -> List[str]:
        if value is None or not isinstance(value, Hashable):
            return []
        return list(self._ids.get(value, []))

    def first(self, value: Any) -> Optional[str]:
        ids = self.ids_for(value)
        return ids[0] if ids else None

    def __len__(self) -> int:
        return len(self._ids)

    def __repr__(self) -> str:
        return f"LookupIndex(table={self.table!r}, field={self.field!r}, values={len(self)}, complete={self.complete})"
