"""
Artifact cache with invalidation-first ordering.

Completed PDFs, page previews and describe() payloads are cached under keys of
the form::

    {prefix}:{document_id}:{content_version}:{kind}:{variant}[:{page_index}]

where `variant` is the fingerprint of the render options. List level metadata
written by the record layer lives under ``{prefix}:list:*`` and is cleared by
every document invalidation.

Two mechanisms keep stale artifacts unreachable once invalidate() returns:

- Epochs. Each document has a counter bumped by every invalidation. A render
  records the epoch before it reads the snapshot and passes it to put(); a put
  carrying an older epoch is dropped, so an invalidation always wins over a
  concurrent write. The check and the write hold a per-document lock, which
  invalidation takes too.
- Dirty prefixes. When the backing store fails during an invalidation the
  affected key prefix is remembered; reads under it are misses and writes are
  refused until a retried deletion succeeds.

Store failures never propagate: CacheUnavailableError is logged and turned
into a miss (or a skipped write).
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Protocol, Set, Tuple

import redis

from .errors import CacheUnavailableError

logger = logging.getLogger(__name__)

LIST_NAMESPACE = "list"


@dataclass(frozen=True)
class CacheKey:
    document_id: str
    content_version: str
    kind: str
    variant: str
    page_index: Optional[int] = None

    def render(self, prefix: str) -> str:
        key = f"{prefix}:{self.document_id}:{self.content_version}:{self.kind}:{self.variant}"
        if self.page_index is not None:
            key = f"{key}:{self.page_index}"
        return key


class ArtifactStore(Protocol):
    """Byte store behind the cache. Implementations raise CacheUnavailableError."""

    def get(self, key: str) -> Optional[bytes]:
        ...

    def set(self, key: str, payload: bytes, ttl_sec: float) -> None:
        ...

    def delete_prefix(self, prefix: str) -> int:
        ...

    def close(self) -> None:
        ...


class InMemoryArtifactStore:
    """
    Process-local store: a dict guarded by a mutex with lazy TTL expiry.

    Args:
        clock: Monotonic time source
        sweep_threshold: Entry count at which set() first drops every expired entry
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_threshold: int = 256) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[bytes, float]] = {}
        self._lock = threading.Lock()
        self._sweep_threshold = sweep_threshold
        self._next_sweep = sweep_threshold

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            payload, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return payload

    def set(self, key: str, payload: bytes, ttl_sec: float) -> None:
        with self._lock:
            if len(self._entries) >= self._next_sweep:
                self._purge_expired()
                # Next sweep once the live set has doubled.
                self._next_sweep = max(self._sweep_threshold, 2 * len(self._entries))
            self._entries[key] = (bytes(payload), self._clock() + ttl_sec)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]

    def close(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _escape_glob(value: str) -> str:
    return "".join(f"\\{char}" if char in "*?[]\\" else char for char in value)


class RedisArtifactStore:
    """
    Redis-backed store shared between service instances.

    Args:
        url: Redis connection string, e.g. redis://localhost:6379/0
        client: Pre-built client, mainly for tests
    """

    def __init__(self, url: Optional[str] = None, client: Optional[redis.Redis] = None) -> None:
        if client is None:
            if not url:
                raise ValueError("A Redis URL is required when no client is given")
            client = redis.Redis.from_url(url, socket_timeout=2.0, socket_connect_timeout=2.0, decode_responses=False)
        self._client = client

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self._client.get(key)
        except redis.RedisError as exc:
            raise CacheUnavailableError(f"Redis get failed: {exc}") from exc

    def set(self, key: str, payload: bytes, ttl_sec: float) -> None:
        try:
            self._client.set(key, payload, ex=max(1, int(round(ttl_sec))))
        except redis.RedisError as exc:
            raise CacheUnavailableError(f"Redis set failed: {exc}") from exc

    def delete_prefix(self, prefix: str) -> int:
        try:
            removed = 0
            batch: List[bytes] = []
            for key in self._client.scan_iter(match=f"{_escape_glob(prefix)}*", count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += self._client.delete(*batch)
                    batch = []
            if batch:
                removed += self._client.delete(*batch)
            return removed
        except redis.RedisError as exc:
            raise CacheUnavailableError(f"Redis delete failed: {exc}") from exc

    def close(self) -> None:
        try:
            self._client.close()
        except redis.RedisError as exc:
            raise CacheUnavailableError(f"Redis close failed: {exc}") from exc


class ArtifactCache:
    """
    Keyed artifact cache with point, pattern, bulk and full invalidation.

    Args:
        store: Backing byte store
        key_prefix: Namespace of every key this cache writes
    """

    def __init__(self, store: ArtifactStore, key_prefix: str = "techpack") -> None:
        self._store = store
        self.key_prefix = key_prefix
        self._epochs: Dict[str, int] = {}
        self._dirty: Set[str] = set()
        self._document_locks: Dict[str, threading.Lock] = {}
        # Guards the three maps above; never held across a store call.
        self._lock = threading.Lock()
        # Serializes prefix deletions so the dirty set follows store order.
        self._delete_lock = threading.RLock()

    @classmethod
    def from_config(cls, cache_config) -> "ArtifactCache":
        if cache_config.backend == "redis":
            store: ArtifactStore = RedisArtifactStore(cache_config.redis_url)
        elif cache_config.backend == "memory":
            store = InMemoryArtifactStore()
        else:
            raise ValueError(f"Unknown cache backend: {cache_config.backend}")
        return cls(store, key_prefix=cache_config.key_prefix)

    def _document_prefix(self, document_id: str) -> str:
        return f"{self.key_prefix}:{document_id}:"

    def current_epoch(self, document_id: str) -> int:
        """Epoch to hand back to put() for a render starting now."""
        with self._lock:
            return self._epochs.setdefault(document_id, 0)

    @contextmanager
    def _documents_locked(self, document_ids: Iterable[str]) -> Iterator[None]:
        """
        Hold the per-document locks of several documents.

        Locks are taken in sorted order, so callers holding several never
        deadlock against each other.
        """
        with self._lock:
            locks = [self._document_locks.setdefault(doc, threading.Lock()) for doc in sorted(set(document_ids))]
        with ExitStack() as stack:
            for lock in locks:
                stack.enter_context(lock)
            yield

    def _known_documents(self) -> List[str]:
        with self._lock:
            return list(set(self._epochs) | set(self._document_locks))

    def _bump(self, document_ids: Iterable[str]) -> None:
        with self._lock:
            for document_id in document_ids:
                self._epochs[document_id] = self._epochs.get(document_id, 0) + 1

    def _is_dirty(self, raw_key: str) -> bool:
        if not self._dirty:
            return False
        with self._delete_lock:
            with self._lock:
                pending = [prefix for prefix in self._dirty if raw_key.startswith(prefix)]
            for prefix in pending:
                self._delete_prefix(prefix)
            with self._lock:
                return any(raw_key.startswith(prefix) for prefix in self._dirty)

    def _delete_prefix(self, prefix: str) -> bool:
        with self._delete_lock:
            try:
                self._store.delete_prefix(prefix)
            except CacheUnavailableError as exc:
                logger.error(f"Cache invalidation of '{prefix}*' failed, keeping it dirty: {exc}")
                with self._lock:
                    self._dirty.add(prefix)
                return False
            with self._lock:
                self._dirty.discard(prefix)
            return True

    # ------------------------------------------------------------------
    # Reads and writes
    # ------------------------------------------------------------------

    def get(self, key: CacheKey) -> Optional[bytes]:
        raw_key = key.render(self.key_prefix)
        if self._is_dirty(raw_key):
            return None
        try:
            return self._store.get(raw_key)
        except CacheUnavailableError as exc:
            logger.warning(f"Cache read failed, treating as miss: {exc}")
            return None

    def put(self, key: CacheKey, payload: bytes, ttl_sec: float, epoch: Optional[int] = None) -> bool:
        """
        Store an artifact. Returns False when the write was skipped.

        The epoch check and the store write run under the document's lock,
        so writes to other documents proceed in parallel.

        Args:
            key: Cache key of the artifact
            payload: Artifact bytes
            ttl_sec: Time to live
            epoch: Value of current_epoch() taken before the snapshot was
                read; the write is dropped if the document was invalidated since
        """
        raw_key = key.render(self.key_prefix)
        with self._documents_locked([key.document_id]):
            with self._lock:
                stale = epoch is not None and self._epochs.get(key.document_id, 0) != epoch
            if stale:
                logger.info(f"Dropping stale cache write for {raw_key}")
                return False
            if self._is_dirty(raw_key):
                return False
            try:
                self._store.set(raw_key, payload, ttl_sec)
            except CacheUnavailableError as exc:
                logger.warning(f"Cache write failed, skipping: {exc}")
                return False
        return True

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate(self, document_id: str) -> bool:
        """
        Drop every artifact of a document and all list level metadata.

        Returns True when the store confirmed the deletion. On False the
        document stays dirty, so its entries are unreachable anyway.
        """
        with self._documents_locked([document_id, LIST_NAMESPACE]):
            self._bump([document_id])
            deleted = self._delete_prefix(self._document_prefix(document_id))
            listed = self._delete_prefix(f"{self.key_prefix}:{LIST_NAMESPACE}:")
        logger.info(f"Invalidated cache for document {document_id}")
        return deleted and listed

    def invalidate_pattern(self, prefix: str) -> bool:
        """Drop every key whose part after the namespace starts with prefix."""
        matching = [document_id for document_id in self._known_documents() if document_id.startswith(prefix)]
        with self._documents_locked(matching):
            self._bump(matching)
            return self._delete_prefix(f"{self.key_prefix}:{prefix}")

    def invalidate_many(self, document_ids: Iterable[str]) -> int:
        """Invalidate several documents. Returns how many were confirmed."""
        return sum(1 for document_id in document_ids if self.invalidate(document_id))

    def flush_all(self) -> bool:
        documents = self._known_documents()
        with self._documents_locked(documents):
            self._bump(documents)
            ok = self._delete_prefix(f"{self.key_prefix}:")
        logger.info("Flushed artifact cache")
        return ok

    def close(self) -> None:
        try:
            self._store.close()
        except CacheUnavailableError as exc:
            logger.warning(f"Closing the cache store failed: {exc}")
