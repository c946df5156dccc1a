# backend/storekeeper/config.py
from __future__ import annotations
import os


class Config:
    # SQLite DB stored next to the process by default; one device, one writer
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///storekeeper.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Display/rounding currency. Stored amounts keep full precision regardless.
    CURRENCY_CODE = os.environ.get("STOREKEEPER_CURRENCY", "USD")
    # None means "use the catalog value for CURRENCY_CODE"
    CURRENCY_DECIMALS = (
        int(os.environ["STOREKEEPER_CURRENCY_DECIMALS"])
        if os.environ.get("STOREKEEPER_CURRENCY_DECIMALS")
        else None
    )

    # Migration status lives outside the relational store (instance folder)
    MIGRATION_STATUS_FILE = os.environ.get("STOREKEEPER_MIGRATION_STATUS_FILE", "migration_status.json")

    # Writes retried when SQLite reports "database is locked"
    WRITE_RETRY_ATTEMPTS = int(os.environ.get("STOREKEEPER_WRITE_RETRY_ATTEMPTS", "3"))
    WRITE_RETRY_BACKOFF = float(os.environ.get("STOREKEEPER_WRITE_RETRY_BACKOFF", "0.1"))

    # Rows sampled per monetary column when detecting legacy cents storage
    MIGRATION_SAMPLE_SIZE = 200
