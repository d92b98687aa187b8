"""
Storage backends for orgaccess.

Exposes the document store contract, the in-memory implementation and the
Redis implementation.
"""

from .document_store import (
    ArrayContains,
    ArrayRemove,
    ArrayUnion,
    ConcurrentModificationError,
    DocumentStore,
    MemoryDocumentStore,
    StoreError,
    StoreUnavailableError,
    WriteBatch,
)
from .redis_client import RedisClient
from .redis_store import RedisDocumentStore

__all__ = [
    "ArrayContains",
    "ArrayRemove",
    "ArrayUnion",
    "ConcurrentModificationError",
    "DocumentStore",
    "MemoryDocumentStore",
    "RedisClient",
    "RedisDocumentStore",
    "StoreError",
    "StoreUnavailableError",
    "WriteBatch",
]
