"""Infrastructure adapters for storage and logging."""

from armory_app.infrastructure.db import (
    DataConnectionError,
    DataExecutionError,
    DataIntegrityError,
    DataQueryError,
    SQLiteClient,
)

__all__ = [
    "DataConnectionError",
    "DataExecutionError",
    "DataIntegrityError",
    "DataQueryError",
    "SQLiteClient",
]
