# Overview: Persistence of the migration status record, kept outside the relational store.

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Optional, Protocol

from flask import current_app

from ..errors import MigrationError

CURRENT_MIGRATION_VERSION = "1.0.0"


@dataclass(frozen=True)
class MigrationStatus:
    uuid_migration_complete: bool = False
    decimal_migration_complete: bool = False
    migration_version: str = CURRENT_MIGRATION_VERSION
    last_migration_attempt: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "MigrationStatus":
        # Records written by older app builds use camelCase keys
        return cls(
            uuid_migration_complete=bool(data.get("uuid_migration_complete", data.get("uuidMigrationComplete", False))),
            decimal_migration_complete=bool(
                data.get("decimal_migration_complete", data.get("decimalMigrationComplete", False))
            ),
            migration_version=str(data.get("migration_version", data.get("migrationVersion", CURRENT_MIGRATION_VERSION))),
            last_migration_attempt=data.get("last_migration_attempt", data.get("lastMigrationAttempt")),
        )

    def to_dict(self) -> dict:
        return asdict(self)


class MigrationStatusStore(Protocol):
    def load(self) -> MigrationStatus: ...

    def save(self, status: MigrationStatus) -> None: ...


class InMemoryStatusStore:
    """Per-instance store; tests build one per case."""

    def __init__(self, status: MigrationStatus | None = None):
        self._status = status or MigrationStatus()

    def load(self) -> MigrationStatus:
        return self._status

    def save(self, status: MigrationStatus) -> None:
        self._status = status


class JsonFileStatusStore:
    """
    Status record as a JSON document on disk.

    A missing file means the default record. An unreadable file is an error:
    guessing "not migrated" could divide already-decimal prices by 100 again.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> MigrationStatus:
        if not self.path.exists():
            return MigrationStatus()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise MigrationError(
                f"Migration status file {self.path} is unreadable",
                details={"cause": str(exc)},
            ) from exc
        if not isinstance(data, dict):
            raise MigrationError(f"Migration status file {self.path} is not a JSON object")
        return MigrationStatus.from_dict(data)

    def save(self, status: MigrationStatus) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # write-then-rename so a crash never leaves a half-written record
        fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=".migration_status.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(status.to_dict(), fh, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise


def get_status_store() -> MigrationStatusStore:
    return current_app.extensions["storekeeper"]["status_store"]


def update_status(store: MigrationStatusStore, **changes) -> MigrationStatus:
    status = replace(store.load(), **changes, migration_version=CURRENT_MIGRATION_VERSION)
    store.save(status)
    return status
