# venture_crm/models/crm/entities.py
"""
Canonical firm, investor and contact models.

Each model carries the external-sync bookkeeping columns through
``ExternalSyncMixin`` and declares the domain fields counted when ranking
duplicate records by completeness.
"""

from datetime import datetime, timezone

from sqlalchemy import Enum, Index
from sqlalchemy.orm import declared_attr

from ..base import BaseModel, db
from .enums import EntityType, RecordSource, SyncStatus


class ExternalSyncMixin:
    """Columns shared by every entity that can be reconciled with the external CRM."""

    ENTITY_TYPE = None
    DISPLAY_NAME_FIELD = "name"
    COMPLETENESS_FIELDS = ()
    # Columns that are never overwritten by an import
    LOCAL_ONLY_FIELDS = ("notes", "is_active", "archived_at")

    external_id = db.Column(db.String(100), nullable=True, index=True)

    @declared_attr
    def source(cls):
        return db.Column(
            Enum(RecordSource, name="record_source_enum"),
            nullable=False,
            default=RecordSource.MANUAL,
            index=True,
        )

    @declared_attr
    def sync_status(cls):
        return db.Column(
            Enum(SyncStatus, name="sync_status_enum"),
            nullable=False,
            default=SyncStatus.PENDING,
            index=True,
        )

    last_external_sync_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sync_error = db.Column(db.Text, nullable=True)
    external_groups = db.Column(db.JSON, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    @property
    def display_name(self) -> str:
        return getattr(self, self.DISPLAY_NAME_FIELD, None) or ""

    def mark_synced(self, *, external_id=None, synced_at=None):
        """Record a successful round-trip with the external CRM."""
        if external_id:
            self.external_id = str(external_id)
        self.sync_status = SyncStatus.SYNCED
        self.sync_error = None
        self.last_external_sync_at = synced_at or datetime.now(timezone.utc)

    def mark_sync_error(self, message):
        self.sync_status = SyncStatus.ERROR
        self.sync_error = str(message)[:2000] if message else "Unknown error"

    def mark_pending(self):
        """Flag a local edit that still needs to be pushed."""
        self.sync_status = SyncStatus.PENDING

    def to_snapshot(self) -> dict:
        """Serialize every column to JSON-friendly values."""
        snapshot = {}
        for column in self.__table__.columns:
            value = getattr(self, column.key)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif hasattr(value, "value") and not isinstance(value, (str, int, float, bool)):
                value = value.value
            snapshot[column.key] = value
        return snapshot


class InvestmentFirm(ExternalSyncMixin, BaseModel):
    """Investment firm mirrored from the external CRM's companies collection"""

    __tablename__ = "firms"

    ENTITY_TYPE = EntityType.FIRM
    DISPLAY_NAME_FIELD = "name"
    COMPLETENESS_FIELDS = (
        "email",
        "phone",
        "website",
        "linkedin_url",
        "description",
        "firm_type",
        "industry",
        "hq_location",
        "location",
        "sectors",
        "stages",
        "min_ticket",
        "max_ticket",
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False, index=True)
    description = db.Column(db.Text, nullable=True)
    firm_type = db.Column(db.String(100), nullable=True, index=True)
    website = db.Column(db.String(500), nullable=True)
    linkedin_url = db.Column(db.String(500), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(50), nullable=True)
    industry = db.Column(db.String(255), nullable=True)
    hq_location = db.Column(db.String(255), nullable=True)
    location = db.Column(db.String(500), nullable=True)
    addresses = db.Column(db.JSON, nullable=True)
    sectors = db.Column(db.JSON, nullable=True)
    locations = db.Column(db.JSON, nullable=True)
    stages = db.Column(db.JSON, nullable=True)
    min_ticket = db.Column(db.String(100), nullable=True)
    max_ticket = db.Column(db.String(100), nullable=True)
    fund_size = db.Column(db.String(100), nullable=True)
    deeptech_deals = db.Column(db.String(100), nullable=True)
    parent_company = db.Column(db.String(255), nullable=True)

    investors = db.relationship("Investor", back_populates="firm")
    contacts = db.relationship("Contact", back_populates="firm")

    __table_args__ = (Index("idx_firm_external_active", "external_id", "is_active"),)

    def __repr__(self):
        return f"<InvestmentFirm {self.name}>"


class _PersonMixin(ExternalSyncMixin):
    DISPLAY_NAME_FIELD = "full_name"

    full_name = db.Column(db.String(255), nullable=False, index=True)
    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)
    title = db.Column(db.String(255), nullable=True)
    bio = db.Column(db.Text, nullable=True)
    linkedin_url = db.Column(db.String(500), nullable=True)
    twitter_url = db.Column(db.String(500), nullable=True)
    location = db.Column(db.String(255), nullable=True)
    firm_name = db.Column(db.String(255), nullable=True)

    @declared_attr
    def firm_id(cls):
        return db.Column(db.Integer, db.ForeignKey("firms.id"), nullable=True, index=True)


class Investor(_PersonMixin, BaseModel):
    """Individual investor, optionally attached to a firm"""

    __tablename__ = "investors"

    ENTITY_TYPE = EntityType.INVESTOR
    COMPLETENESS_FIELDS = (
        "email",
        "phone",
        "title",
        "bio",
        "linkedin_url",
        "twitter_url",
        "website",
        "location",
        "investor_type",
        "sectors",
        "stages",
        "firm_id",
    )

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=True, index=True)
    phone = db.Column(db.String(50), nullable=True)
    website = db.Column(db.String(500), nullable=True)
    investor_type = db.Column(db.String(100), nullable=True)
    sectors = db.Column(db.JSON, nullable=True)
    stages = db.Column(db.JSON, nullable=True)

    firm = db.relationship("InvestmentFirm", back_populates="investors")

    __table_args__ = (Index("idx_investor_external_active", "external_id", "is_active"),)

    def __repr__(self):
        return f"<Investor {self.full_name}>"


class Contact(_PersonMixin, BaseModel):
    """Relationship contact, optionally attached to a firm"""

    __tablename__ = "contacts"

    ENTITY_TYPE = EntityType.CONTACT
    COMPLETENESS_FIELDS = (
        "work_email",
        "personal_email",
        "primary_phone",
        "secondary_phone",
        "linkedin_url",
        "title",
        "bio",
        "firm_id",
        "location",
        "twitter_url",
    )

    id = db.Column(db.Integer, primary_key=True)
    work_email = db.Column(db.String(255), nullable=True, index=True)
    personal_email = db.Column(db.String(255), nullable=True)
    primary_phone = db.Column(db.String(50), nullable=True)
    secondary_phone = db.Column(db.String(50), nullable=True)

    firm = db.relationship("InvestmentFirm", back_populates="contacts")

    __table_args__ = (Index("idx_contact_external_active", "external_id", "is_active"),)

    def __repr__(self):
        return f"<Contact {self.full_name}>"


ENTITY_MODELS = {
    EntityType.FIRM: InvestmentFirm,
    EntityType.INVESTOR: Investor,
    EntityType.CONTACT: Contact,
}


def get_entity_model(entity_type):
    """Return the model class for an entity type name or enum member."""
    return ENTITY_MODELS[EntityType.coerce(entity_type)]
