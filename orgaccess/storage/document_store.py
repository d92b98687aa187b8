"""
Document store contract used by the organization services.

The engine persists JSON documents grouped in collections. The store offers
point reads, equality queries and atomic write batches:

- ``WriteBatch`` collects create/set/update/delete operations and applies
  them all-or-nothing on ``commit()``.
- Every document carries a ``version`` counter. Updates and deletes may pass
  the ``expected_version`` the caller read; a mismatch aborts the whole batch
  with ``ConcurrentModificationError``.
- ``ArrayUnion`` / ``ArrayRemove`` values are resolved against the stored
  document at commit time, so concurrent set-style edits do not clobber
  each other.

``MemoryDocumentStore`` is the process-local implementation used by default
and in tests. ``RedisDocumentStore`` lives in ``orgaccess.storage.redis_store``.
"""

import asyncio
import copy
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


# =============================================================================
# Errors
# =============================================================================


class StoreError(Exception):
    """Base exception for document store failures."""


class ConcurrentModificationError(StoreError):
    """Raised when a batch observed a stale document version."""

    def __init__(self, collection: str, doc_id: str, reason: str = "version mismatch"):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Concurrent modification of {collection}/{doc_id}: {reason}")


class StoreUnavailableError(StoreError):
    """Raised when the backing store cannot be reached."""


# =============================================================================
# Field Sentinels
# =============================================================================


class ArrayUnion:
    """Add values to a list field, skipping values already present."""

    def __init__(self, *values: Any):
        self.values = list(values)

    def apply(self, current: Any) -> List[Any]:
        result = list(current or [])
        for value in self.values:
            if value not in result:
                result.append(value)
        return result


class ArrayRemove:
    """Remove every occurrence of the given values from a list field."""

    def __init__(self, *values: Any):
        self.values = list(values)

    def apply(self, current: Any) -> List[Any]:
        return [item for item in (current or []) if item not in self.values]


class ArrayContains:
    """Query filter matching documents whose list field contains a value."""

    def __init__(self, value: Any):
        self.value = value


# =============================================================================
# Document helpers
# =============================================================================


def get_path(doc: Mapping[str, Any], path: str) -> Any:
    """Read a dotted path (``permissions.custom_permissions``) from a document."""
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


def set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    """Write a dotted path, creating intermediate mappings as needed."""
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    leaf = parts[-1]
    if isinstance(value, (ArrayUnion, ArrayRemove)):
        current[leaf] = value.apply(current.get(leaf))
    else:
        current[leaf] = value


def matches(doc: Mapping[str, Any], filters: Optional[Mapping[str, Any]]) -> bool:
    """Check a document against equality (or ArrayContains) filters."""
    if not filters:
        return True
    for path, expected in filters.items():
        actual = get_path(doc, path)
        if isinstance(expected, ArrayContains):
            if not isinstance(actual, list) or expected.value not in actual:
                return False
        elif actual != expected:
            return False
    return True


# =============================================================================
# Write Batch
# =============================================================================


@dataclass
class WriteOperation:
    """Single staged write."""
    kind: str  # create | set | update | delete
    collection: str
    doc_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    expected_version: Optional[int] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.collection, self.doc_id)


def apply_operation(
    op: WriteOperation,
    current: Optional[Dict[str, Any]],
    committed_version: Optional[int],
) -> Optional[Dict[str, Any]]:
    """
    Compute the document resulting from one staged operation.

    Args:
        op: The staged operation.
        current: Document as left by earlier operations in the same batch.
        committed_version: Version stored before the batch started (None if
            the document did not exist).

    Returns:
        The new document, or None when the operation deletes it.

    Raises:
        ConcurrentModificationError: On a version mismatch, a create over an
            existing document, or an update/delete of a missing document.
    """
    if op.expected_version is not None and committed_version != op.expected_version:
        raise ConcurrentModificationError(
            op.collection,
            op.doc_id,
            f"expected version {op.expected_version}, found {committed_version}",
        )

    if op.kind == "create":
        if current is not None:
            raise ConcurrentModificationError(op.collection, op.doc_id, "already exists")
        doc = copy.deepcopy(op.data)
        doc["id"] = op.doc_id
        doc["version"] = 1
        return doc

    if op.kind == "set":
        doc = copy.deepcopy(op.data)
        doc["id"] = op.doc_id
        doc["version"] = (current or {}).get("version", 0) + 1
        return doc

    if op.kind == "update":
        if current is None:
            raise ConcurrentModificationError(op.collection, op.doc_id, "document missing")
        doc = copy.deepcopy(current)
        for path, value in op.data.items():
            set_path(doc, path, value)
        doc["id"] = op.doc_id
        doc["version"] = current.get("version", 0) + 1
        return doc

    if op.kind == "delete":
        if current is None and op.expected_version is not None:
            raise ConcurrentModificationError(op.collection, op.doc_id, "document missing")
        return None

    raise ValueError(f"Unknown write operation: {op.kind}")


class WriteBatch:
    """
    Collects writes and commits them atomically.

    Usage:
        batch = store.batch()
        batch.create("organizations", org_id, org_doc)
        batch.update("users", user_id, {"organizations": ArrayUnion(org_id)})
        await batch.commit()
    """

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._operations: List[WriteOperation] = []
        self._committed = False

    @property
    def operations(self) -> List[WriteOperation]:
        return list(self._operations)

    def __len__(self) -> int:
        return len(self._operations)

    def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> "WriteBatch":
        """Stage a create; the commit fails if the document already exists."""
        self._operations.append(WriteOperation("create", collection, doc_id, dict(data)))
        return self

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> "WriteBatch":
        """Stage a full overwrite (or create) of a document."""
        self._operations.append(WriteOperation("set", collection, doc_id, dict(data)))
        return self

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> "WriteBatch":
        """Stage a partial update using dotted paths and array sentinels."""
        self._operations.append(
            WriteOperation("update", collection, doc_id, dict(fields), expected_version)
        )
        return self

    def delete(
        self,
        collection: str,
        doc_id: str,
        expected_version: Optional[int] = None,
    ) -> "WriteBatch":
        """Stage a delete."""
        self._operations.append(
            WriteOperation("delete", collection, doc_id, {}, expected_version)
        )
        return self

    async def commit(self) -> None:
        """
        Apply every staged operation atomically.

        Raises:
            ConcurrentModificationError: If any version check fails; nothing
                is written in that case.
            StoreUnavailableError: If the backing store cannot be reached.
            RuntimeError: If the batch was already committed.
        """
        if self._committed:
            raise RuntimeError("WriteBatch already committed")
        self._committed = True
        if not self._operations:
            return
        await self._store.commit_operations(self._operations)


# =============================================================================
# Store Contract
# =============================================================================


class DocumentStore(ABC):
    """Abstract document store."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Return the document, or None if it does not exist."""

    @abstractmethod
    async def find(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Return every document of the collection matching the filters."""

    @abstractmethod
    async def commit_operations(self, operations: List[WriteOperation]) -> None:
        """Apply staged operations all-or-nothing."""

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def new_id(self) -> str:
        return uuid.uuid4().hex

    async def close(self) -> None:
        """Release resources held by the store."""


def resolve_batch(
    operations: List[WriteOperation],
    load: Callable[[Tuple[str, str]], Optional[Dict[str, Any]]],
) -> Dict[Tuple[str, str], Optional[Dict[str, Any]]]:
    """
    Run every operation against committed state and return final documents.

    Args:
        operations: Staged operations in order.
        load: Returns the committed document for a (collection, id) key.

    Returns:
        Mapping of touched keys to their final document (None = deleted).
    """
    committed: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}
    working: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}
    for op in operations:
        if op.key not in committed:
            committed[op.key] = load(op.key)
            working[op.key] = committed[op.key]
        base = committed[op.key]
        working[op.key] = apply_operation(
            op,
            working[op.key],
            base.get("version") if base is not None else None,
        )
    return working


# =============================================================================
# In-memory Store
# =============================================================================


class MemoryDocumentStore(DocumentStore):
    """
    Process-local document store.

    Commits run under an asyncio lock so batches are serialized and applied
    all-or-nothing.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def find(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(doc)
            for doc in self._collections.get(collection, {}).values()
            if matches(doc, filters)
        ]

    async def commit_operations(self, operations: List[WriteOperation]) -> None:
        async with self._lock:
            final = resolve_batch(
                operations,
                lambda key: self._collections.get(key[0], {}).get(key[1]),
            )
            for (collection, doc_id), doc in final.items():
                docs = self._collections.setdefault(collection, {})
                if doc is None:
                    docs.pop(doc_id, None)
                else:
                    docs[doc_id] = doc
        logger.debug(f"Committed batch of {len(operations)} operations")

    def clear(self) -> None:
        """Drop every collection."""
        self._collections.clear()
