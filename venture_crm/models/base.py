# venture_crm/models/base.py

from datetime import datetime, timezone

from flask import current_app
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError

db = SQLAlchemy()


def _utcnow():
    return datetime.now(timezone.utc)


class BaseModel(db.Model):
    """Abstract base providing timestamps and persistence helpers."""

    __abstract__ = True

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def save(self):
        """Add and commit the instance, rolling back on database errors."""
        try:
            db.session.add(self)
            db.session.commit()
            return self
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.error(f"Database error saving {self.__class__.__name__}: {str(e)}")
            raise


def as_utc(value):
    """Return ``value`` as an aware UTC datetime (SQLite drops tzinfo on reload)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def configure_sqlite_engine(engine, *, enforce_foreign_keys=True):
    """
    Tune a SQLite engine for the importer's access pattern.

    WAL lets progress readers see committed counters while a run writes.
    pysqlite's implicit transactions are switched off and BEGIN is emitted
    from the ``begin`` event instead, otherwise nested savepoints used by
    duplicate resolution silently commit. Non-SQLite engines are left alone.
    """
    if not engine.url.drivername.startswith("sqlite") or getattr(engine, "_venture_crm_sqlite", False):
        return engine

    pragmas = ["PRAGMA journal_mode=WAL", "PRAGMA synchronous=NORMAL", "PRAGMA busy_timeout=5000"]
    if enforce_foreign_keys:
        pragmas.append("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # pragma: no cover - driver hook
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        try:
            for pragma in pragmas:
                cursor.execute(pragma)
        finally:
            cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    engine._venture_crm_sqlite = True
    return engine
