# venture_crm/models/crm/__init__.py
"""
Canonical CRM entity models
"""

from .entities import ENTITY_MODELS, Contact, ExternalSyncMixin, InvestmentFirm, Investor, get_entity_model
from .enums import EntityType, RecordSource, SyncStatus

__all__ = [
    "ENTITY_MODELS",
    "Contact",
    "EntityType",
    "ExternalSyncMixin",
    "InvestmentFirm",
    "Investor",
    "RecordSource",
    "SyncStatus",
    "get_entity_model",
]
