# Overview: Error taxonomy shared by every engine service.

from __future__ import annotations


class StorekeeperError(Exception):
    """Base class; `kind` lets a caller pick retry, toast, or blocking alert."""

    kind = "error"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class ValidationError(StorekeeperError, ValueError):
    """Bad input or a business rule the request breaks (bulk price too high, negative stock)."""

    kind = "validation"


class ConflictError(ValidationError):
    """Duplicate value, or an entity still referenced by history."""

    kind = "conflict"


class NotFoundError(StorekeeperError, LookupError):
    kind = "not_found"


class MigrationError(StorekeeperError):
    """
    The money columns are in an ambiguous state. Fatal at startup: no
    financial operation may run until this is resolved.
    """

    kind = "migration"


class TransactionError(StorekeeperError):
    """Store failure during a multi-statement write. Always raised after rollback."""

    kind = "transaction"
