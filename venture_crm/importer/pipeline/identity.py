"""
Per-run identity cache.

Maps external identifiers and normalized display names to local primary keys
so a run resolves each identity against the database at most once. A cache is
created by the pipeline that owns it and discarded with it.
"""

from __future__ import annotations

from typing import Dict, Tuple

from venture_crm.models.crm.enums import EntityType


def normalize_name(value) -> str:
    """Trimmed, case-folded name used for grouping and firm lookup."""
    if value is None:
        return ""
    return " ".join(str(value).split()).casefold()


class IdentityCache:
    """Explicit ``(entity_type, key) -> local id`` lookups for one run."""

    def __init__(self) -> None:
        self._by_external_id: Dict[Tuple[EntityType, str], int] = {}
        self._by_name: Dict[Tuple[EntityType, str], int] = {}

    def __len__(self) -> int:
        return len(self._by_external_id)

    def get(self, entity_type, external_id) -> int | None:
        if external_id is None:
            return None
        return self._by_external_id.get((EntityType.coerce(entity_type), str(external_id)))

    def remember(self, entity_type, external_id, entity_id: int) -> None:
        if external_id is None or entity_id is None:
            return
        self._by_external_id[(EntityType.coerce(entity_type), str(external_id))] = entity_id

    def get_by_name(self, entity_type, name) -> int | None:
        key = normalize_name(name)
        if not key:
            return None
        return self._by_name.get((EntityType.coerce(entity_type), key))

    def remember_name(self, entity_type, name, entity_id: int) -> None:
        key = normalize_name(name)
        if key and entity_id is not None:
            self._by_name[(EntityType.coerce(entity_type), key)] = entity_id

    def forget(self, entity_type, entity_id: int) -> None:
        """Drop every key pointing at ``entity_id`` (e.g. after it is archived)."""
        entity = EntityType.coerce(entity_type)
        for mapping in (self._by_external_id, self._by_name):
            stale = [key for key, value in mapping.items() if key[0] is entity and value == entity_id]
            for key in stale:
                del mapping[key]
