"""Retrieval index manager: per-user semantic index with staleness detection.

Lookup order for a user's index:

1. In-memory cache (TTL from the cache manager)
2. Persisted index + sidecar metadata via IndexStorage
3. Rebuild from the resource store

A cached or persisted index is rebuilt when it is stale: the live resource
count differs from the recorded ``resourceCount``, the store's last write is
newer than ``lastUpdated``, or the requested wearable mode changed.

If index persistence fails the manager drops to memory-only mode for the
rest of the process lifetime. If embedding fails, queries fall back to the
filtered resource set ordered by recency.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from app.config import settings
from app.exceptions import PersistenceError
from app.repositories.fhir import FhirRepository
from app.services.cache import CacheManager
from app.services.embeddings import EmbeddingService
from app.services.textualize import INDEXED_TYPES, fragment_metadata
from app.services.vector_index import IndexFragment, IndexMetadata, IndexStorage, VectorIndex
from app.services.wearable_filter import WearableMode, filter_resources
from app.utils.fhir_helpers import resource_datetime, utc_now

logger = logging.getLogger(__name__)

# Default number of resources returned by a query
DEFAULT_QUERY_LIMIT = 10

# Hard maximum to keep generation context bounded
MAX_QUERY_LIMIT = 50

# Fragments retrieved per requested resource, before deduplication
CANDIDATE_MULTIPLIER = 3

INDEX_CACHE = "index"
RESOURCE_CACHE = "resources"


class IndexState(str, Enum):
    NOT_STARTED = "not_started"
    BUILDING = "building"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class IndexStatus:
    """Build status of one user's index."""

    state: IndexState = IndexState.NOT_STARTED
    resource_count: int = 0
    indexed_count: int = 0
    last_updated: datetime | None = None
    wearable_mode: str | None = None
    memory_only: bool = False
    error: str | None = None
    # Store changed since the index was built
    stale: bool = False


@dataclass
class CachedIndex:
    index: VectorIndex
    metadata: IndexMetadata


@dataclass
class RetrievalResult:
    """Resources relevant to a query, best first.

    Attributes:
        resources: FHIR resource dicts, deduplicated by (resourceType, id).
        scores: Similarity score per resource (0.0 on the recency fallback).
        used_index: False when the recency fallback produced the result.
        rebuilt: Whether this query triggered an index rebuild.
    """

    resources: list[dict[str, Any]] = field(default_factory=list)
    scores: list[float] = field(default_factory=list)
    used_index: bool = False
    rebuilt: bool = False


def clamp_limit(limit: int) -> int:
    return max(1, min(limit, MAX_QUERY_LIMIT))


class RetrievalIndexManager:
    """Maintains per-user retrieval indexes over the resource store."""

    def __init__(
        self,
        repository: FhirRepository,
        embedding_service: EmbeddingService,
        storage: IndexStorage | None = None,
        cache_manager: CacheManager | None = None,
        default_mode: WearableMode | str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the manager.

        Args:
            repository: Resource store to index.
            embedding_service: Embeds fragments and query text.
            storage: Durable index storage; defaults to settings.vector_index_dir.
            cache_manager: Source of the index and resource caches.
            default_mode: Wearable mode used when a call does not pass one.
            clock: Source of build timestamps.
        """
        self._repository = repository
        self._embeddings = embedding_service
        self._storage = storage or IndexStorage(settings.vector_index_dir)
        cache_manager = cache_manager or CacheManager()
        self._index_cache = cache_manager.get_cache(INDEX_CACHE)
        self._resource_cache = cache_manager.get_cache(RESOURCE_CACHE)
        self._default_mode = WearableMode(default_mode or settings.default_wearable_mode)
        self._clock = clock
        self._memory_only = False
        self._statuses: dict[str, IndexStatus] = {}

    @property
    def memory_only(self) -> bool:
        return self._memory_only

    def _mode(self, mode: WearableMode | str | None) -> WearableMode:
        return WearableMode(mode) if mode is not None else self._default_mode

    def _disable_persistence(self, error: Exception) -> None:
        if not self._memory_only:
            logger.warning(f"Index persistence unavailable, keeping indexes in memory only: {error}")
        self._memory_only = True

    # =========================================================================
    # Resource sets
    # =========================================================================

    async def get_resources(
        self, user_id: str, mode: WearableMode | str | None = None
    ) -> list[dict[str, Any]]:
        """Indexable resources of a user, filtered by wearable mode (cached)."""
        mode = self._mode(mode)
        by_mode = self._resource_cache.get(user_id) or {}
        if mode.value in by_mode:
            return by_mode[mode.value]

        resources = filter_resources(await self._repository.list_all(user_id, INDEXED_TYPES), mode)
        self._resource_cache.set(user_id, {**by_mode, mode.value: resources})
        return resources

    # =========================================================================
    # Index lifecycle
    # =========================================================================

    async def _is_stale(self, user_id: str, metadata: IndexMetadata, mode: WearableMode) -> bool:
        if metadata.wearable_mode != mode.value:
            return True
        if await self._repository.count(user_id) != metadata.resource_count:
            return True
        last_write = await self._repository.last_write_time(user_id)
        return last_write is not None and last_write > metadata.last_updated

    async def _load_persisted(self, user_id: str) -> CachedIndex | None:
        if self._memory_only:
            return None
        try:
            loaded = await self._storage.load(user_id)
        except PersistenceError as e:
            self._disable_persistence(e)
            return None
        if loaded is None:
            return None
        index, metadata = loaded
        logger.info(f"Loaded persisted index for user {user_id} ({len(index)} fragments)")
        return CachedIndex(index=index, metadata=metadata)

    async def _resolve(
        self, user_id: str, mode: WearableMode, force_rebuild: bool = False
    ) -> tuple[CachedIndex, bool]:
        if not force_rebuild:
            cached = self._index_cache.get(user_id)
            if cached is not None and not await self._is_stale(user_id, cached.metadata, mode):
                return cached, False

            persisted = await self._load_persisted(user_id)
            if persisted is not None and not await self._is_stale(user_id, persisted.metadata, mode):
                self._index_cache.set(user_id, persisted)
                return persisted, False

        return await self.rebuild(user_id, mode), True

    async def get_index(
        self,
        user_id: str,
        force_rebuild: bool = False,
        mode: WearableMode | str | None = None,
    ) -> CachedIndex:
        """Current index for a user, rebuilding it when missing or stale."""
        cached, _ = await self._resolve(user_id, self._mode(mode), force_rebuild)
        return cached

    async def rebuild(self, user_id: str, mode: WearableMode | str | None = None) -> CachedIndex:
        """Rebuild a user's index from the full resource set.

        Raises:
            PersistenceError: If the resource store is unavailable.
            Exception: Embedding failures propagate after the status is
                marked failed.
        """
        mode = self._mode(mode)
        started = self._clock()
        status = IndexStatus(state=IndexState.BUILDING, wearable_mode=mode.value, memory_only=self._memory_only)
        self._statuses[user_id] = status

        try:
            total = await self._repository.count(user_id)
            resources = filter_resources(await self._repository.list_all(user_id, INDEXED_TYPES), mode)
            embedded = await self._embeddings.embed_resources(resources) if resources else []
        except Exception as e:
            status.state = IndexState.FAILED
            status.error = str(e)
            logger.warning(f"Index build failed for user {user_id}: {e}")
            raise

        fragments = [IndexFragment(text=text, metadata=fragment_metadata(r)) for r, text, _ in embedded]
        index = VectorIndex(fragments, [vector for _, _, vector in embedded])
        metadata = IndexMetadata(
            resource_count=total,
            last_updated=started,
            resource_ids=[f"{f.key[0]}/{f.key[1]}" for f in fragments],
            wearable_mode=mode.value,
        )
        cached = CachedIndex(index=index, metadata=metadata)

        if not self._memory_only:
            try:
                await self._storage.save(user_id, index, metadata)
            except PersistenceError as e:
                self._disable_persistence(e)

        self._index_cache.set(user_id, cached)
        status.state = IndexState.COMPLETE
        status.resource_count = total
        status.indexed_count = len(fragments)
        status.last_updated = started
        status.memory_only = self._memory_only
        logger.info(f"Built index for user {user_id}: {len(fragments)} fragments from {total} resources")
        return cached

    async def status(self, user_id: str) -> IndexStatus:
        """Build status for a user.

        A build in progress or a failed build is reported as such; otherwise
        the status describes the cached or persisted index, flagged stale when
        the store has changed since it was built.

        Raises:
            PersistenceError: If the resource store is unavailable.
        """
        current = self._statuses.get(user_id)
        if current is not None and current.state in (IndexState.BUILDING, IndexState.FAILED):
            return current
        cached = self._index_cache.get(user_id) or await self._load_persisted(user_id)
        if cached is None:
            return IndexStatus(memory_only=self._memory_only)
        mode = self._mode(cached.metadata.wearable_mode)
        return IndexStatus(
            state=IndexState.COMPLETE,
            resource_count=cached.metadata.resource_count,
            indexed_count=len(cached.index),
            last_updated=cached.metadata.last_updated,
            wearable_mode=cached.metadata.wearable_mode,
            memory_only=self._memory_only,
            stale=await self._is_stale(user_id, cached.metadata, mode),
        )

    def invalidate(self, user_id: str) -> None:
        """Drop a user's cached index, resource set and build status."""
        self._index_cache.invalidate(user_id)
        self._statuses.pop(user_id, None)
        self._resource_cache.invalidate(user_id)

    # =========================================================================
    # Query
    # =========================================================================

    async def query(
        self,
        user_id: str,
        text: str,
        limit: int = DEFAULT_QUERY_LIMIT,
        mode: WearableMode | str | None = None,
    ) -> RetrievalResult:
        """Resources most relevant to a query text.

        Ordered by similarity, then by recency. An empty store returns an
        empty result without embedding anything.

        Raises:
            PersistenceError: If the resource store is unavailable.
        """
        limit = clamp_limit(limit)
        mode = self._mode(mode)
        if await self._repository.count(user_id, INDEXED_TYPES) == 0:
            return RetrievalResult()

        rebuilt = False
        try:
            cached, rebuilt = await self._resolve(user_id, mode)
            if not len(cached.index):
                return RetrievalResult(used_index=True, rebuilt=rebuilt)
            query_embedding = await self._embeddings.embed_text(text)
            hits = cached.index.search(query_embedding, limit * CANDIDATE_MULTIPLIER)
        except PersistenceError:
            raise
        except Exception as e:
            logger.warning(f"Index query failed for user {user_id}, falling back to recency: {e}")
            return await self._recency_fallback(user_id, mode, limit, rebuilt)

        best: dict[tuple[str, str], float] = {}
        for hit in hits:
            key = hit.fragment.key
            if key not in best:
                best[key] = hit.score

        fetched = await asyncio.gather(
            *(self._repository.get(user_id, resource_type, rid) for resource_type, rid in best)
        )
        # Resources deleted since the build drop out here
        found = [(resource, best[key]) for key, resource in zip(best, fetched) if resource is not None]
        found.sort(key=lambda pair: (-pair[1], -resource_datetime(pair[0]).timestamp()))
        found = found[:limit]

        return RetrievalResult(
            resources=[resource for resource, _ in found],
            scores=[score for _, score in found],
            used_index=True,
            rebuilt=rebuilt,
        )

    async def _recency_fallback(
        self, user_id: str, mode: WearableMode, limit: int, rebuilt: bool
    ) -> RetrievalResult:
        resources = sorted(
            await self.get_resources(user_id, mode),
            key=lambda r: resource_datetime(r),
            reverse=True,
        )[:limit]
        return RetrievalResult(
            resources=resources,
            scores=[0.0] * len(resources),
            used_index=False,
            rebuilt=rebuilt,
        )
