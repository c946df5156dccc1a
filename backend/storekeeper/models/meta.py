from __future__ import annotations

from ..extensions import db

SCHEMA_VERSION_KEY = "schema_version"
MONEY_FORMAT_KEY = "money_format"
MONEY_FORMAT_DECIMAL = "decimal"


class EngineMeta(db.Model):
    """
    Key/value markers owned by the schema manager.

    money_format is the explicit marker that makes the cents-detection
    heuristic unnecessary once written.
    """
    __tablename__ = "engine_meta"

    key = db.Column(db.String(64), primary_key=True)
    value = db.Column(db.String(255), nullable=False)
    updated_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now(), onupdate=db.func.now())
