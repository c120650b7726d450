"""Storage boundary — interface, exceptions, in-memory backend, catalog loading."""

from pgalert.storage.catalog import Catalog, load_catalog, seed_store
from pgalert.storage.exceptions import (
    DuplicateAlertError,
    NotFoundError,
    StorageError,
    VersionConflictError,
)
from pgalert.storage.interfaces import AlertStore, ClaimOutcome, DeliveryClaim
from pgalert.storage.memory import InMemoryAlertStore

__all__ = [
    "AlertStore",
    "Catalog",
    "ClaimOutcome",
    "DeliveryClaim",
    "DuplicateAlertError",
    "InMemoryAlertStore",
    "NotFoundError",
    "StorageError",
    "VersionConflictError",
    "load_catalog",
    "seed_store",
]
