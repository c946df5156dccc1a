# backend/storekeeper/__init__.py
from __future__ import annotations

import os

from flask import Flask, current_app

from .config import Config
from .currency import currency_settings_from_config
from .extensions import db


def create_app(overrides: dict | None = None, *, status_store=None) -> Flask:
    """
    Build an engine instance.

    overrides: config values applied after Config (tests pass an in-memory URI)
    status_store: MigrationStatusStore; defaults to a JSON file in the instance folder
    """
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    db.init_app(app)

    # Import models so create_all() sees every table
    from . import models  # noqa: F401

    if status_store is None:
        from .services.migration_status import JsonFileStatusStore

        status_path = app.config["MIGRATION_STATUS_FILE"]
        if not os.path.isabs(status_path):
            status_path = os.path.join(app.instance_path, status_path)
        status_store = JsonFileStatusStore(status_path)

    app.extensions["storekeeper"] = {
        "status_store": status_store,
        "currency": currency_settings_from_config(app.config),
        "ready": False,
    }

    return app


def init_engine() -> dict:
    """
    Startup sequence; call once inside an app context before any other service:
    ensure_schema(), then the one-time money migration.

    A MigrationError propagates and the engine stays not-ready, so financial
    writes keep refusing to run.
    """
    from .services.decimal_migration_service import migrate
    from .services.schema_service import ensure_schema

    state = current_app.extensions["storekeeper"]
    state["ready"] = False

    schema = ensure_schema()
    migration = migrate(state["status_store"])

    state["ready"] = True
    return {"schema": schema, "migration": migration}
