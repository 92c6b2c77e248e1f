# venture_crm/models/crm/enums.py
"""
Enums for canonical CRM entities.
"""

from enum import Enum as PyEnum


class RecordSource(PyEnum):
    """Where a canonical entity originated"""

    EXTERNAL = "external"
    MANUAL = "manual"
    FILE_IMPORT = "file-import"


class SyncStatus(PyEnum):
    """Outcome of the last attempt to reach the external CRM"""

    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class EntityType(str, PyEnum):
    """Canonical entity variants handled by the reconciliation engine"""

    FIRM = "firm"
    INVESTOR = "investor"
    CONTACT = "contact"

    @classmethod
    def coerce(cls, value) -> "EntityType":
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower()
        # Accept plural collection-style names from CLI/API callers
        if normalized.endswith("s") and normalized[:-1] in cls._value2member_map_:
            normalized = normalized[:-1]
        try:
            return cls(normalized)
        except ValueError as exc:
            choices = ", ".join(member.value for member in cls)
            raise ValueError(f"Unknown entity type '{value}'. Expected one of: {choices}.") from exc
