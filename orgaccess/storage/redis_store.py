"""
Redis-backed document store.

Layout:
- ``{prefix}{collection}:{id}`` holds the JSON document
- ``{prefix}{collection}:__ids__`` is a set indexing the collection

Batches are committed with WATCH/MULTI/EXEC: every touched key is watched,
the batch is resolved against the watched values, and the transaction
aborts if any of them changed in the meantime.
"""

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from .document_store import (
    ConcurrentModificationError,
    DocumentStore,
    StoreUnavailableError,
    WriteOperation,
    matches,
    resolve_batch,
)
from .redis_client import RedisClient

logger = logging.getLogger(__name__)

INDEX_SUFFIX = "__ids__"


class RedisDocumentStore(DocumentStore):
    """Document store persisting JSON documents in Redis."""

    def __init__(self, redis_client: RedisClient, key_prefix: str = "orgaccess:"):
        self._redis = redis_client
        self._prefix = key_prefix

    def _doc_key(self, collection: str, doc_id: str) -> str:
        return f"{self._prefix}{collection}:{doc_id}"

    def _index_key(self, collection: str) -> str:
        return f"{self._prefix}{collection}:{INDEX_SUFFIX}"

    async def _require_client(self):
        client = await self._redis.get_client()
        if client is None:
            raise StoreUnavailableError(
                self._redis.connection_error or "Redis is unavailable"
            )
        return client

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[Dict[str, Any]]:
        return json.loads(raw) if raw else None

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        client = await self._require_client()
        try:
            raw = await client.get(self._doc_key(collection, doc_id))
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise StoreUnavailableError(f"Redis read failed: {e}") from e
        return self._decode(raw)

    async def find(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        client = await self._require_client()
        try:
            ids = await client.smembers(self._index_key(collection))
            if not ids:
                return []
            ordered_ids = sorted(ids)
            raws = await client.mget([self._doc_key(collection, i) for i in ordered_ids])
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise StoreUnavailableError(f"Redis query failed: {e}") from e

        docs = []
        for raw in raws:
            doc = self._decode(raw)
            if doc is not None and matches(doc, filters):
                docs.append(doc)
        return docs

    async def commit_operations(self, operations: List[WriteOperation]) -> None:
        client = await self._require_client()

        keys: List[Tuple[str, str]] = list(dict.fromkeys(op.key for op in operations))
        redis_keys = [self._doc_key(c, i) for c, i in keys]

        try:
            async with client.pipeline(transaction=True) as pipe:
                await pipe.watch(*redis_keys)
                raws = await pipe.mget(redis_keys)
                loaded = {key: self._decode(raw) for key, raw in zip(keys, raws)}

                final = resolve_batch(operations, loaded.get)

                pipe.multi()
                for (collection, doc_id), doc in final.items():
                    key = self._doc_key(collection, doc_id)
                    if doc is None:
                        pipe.delete(key)
                        pipe.srem(self._index_key(collection), doc_id)
                    else:
                        pipe.set(key, json.dumps(doc, default=str))
                        pipe.sadd(self._index_key(collection), doc_id)
                await pipe.execute()
        except WatchError as e:
            collection, doc_id = keys[0]
            raise ConcurrentModificationError(
                collection, doc_id, "watched key changed during commit"
            ) from e
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise StoreUnavailableError(f"Redis commit failed: {e}") from e

        logger.debug(f"Committed batch of {len(operations)} operations to Redis")

    async def close(self) -> None:
        await self._redis.close()
