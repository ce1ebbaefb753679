"""In-process vector index over resource fragments, with file persistence.

Each user's index is two files under the index directory:

- ``{user}_index.npz``: float32 embedding matrix plus fragment texts and
  metadata (JSON-encoded)
- ``{user}_metadata.json``: ``{resourceCount, lastUpdated, resourceIds,
  wearableMode}``

Absence of either file means "no index". Saves write to a temp file and
rename, so a half-written index is never loaded.
"""

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import numpy as np

from app.exceptions import PersistenceError
from app.utils.fhir_helpers import parse_fhir_datetime

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


@dataclass
class IndexMetadata:
    """Sidecar describing what an index was built from."""

    resource_count: int
    last_updated: datetime
    resource_ids: list[str] = field(default_factory=list)
    wearable_mode: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "resourceCount": self.resource_count,
            "lastUpdated": self.last_updated.isoformat(),
            "resourceIds": list(self.resource_ids),
            "wearableMode": self.wearable_mode,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "IndexMetadata":
        last_updated = parse_fhir_datetime(data.get("lastUpdated"))
        if last_updated is None or "resourceCount" not in data:
            raise ValueError("index metadata missing resourceCount or lastUpdated")
        return cls(
            resource_count=int(data["resourceCount"]),
            last_updated=last_updated,
            resource_ids=list(data.get("resourceIds") or []),
            wearable_mode=data.get("wearableMode"),
        )


@dataclass
class IndexFragment:
    """One textualized resource and its retrieval metadata."""

    text: str
    metadata: dict[str, Any]

    @property
    def key(self) -> tuple[str, str]:
        return (str(self.metadata.get("resourceType")), str(self.metadata.get("id")))


@dataclass
class SearchHit:
    """A fragment with its cosine similarity to the query."""

    fragment: IndexFragment
    score: float


class VectorIndex:
    """Cosine-similarity index over normalized fragment embeddings."""

    def __init__(self, fragments: list[IndexFragment], embeddings: np.ndarray | list[list[float]]):
        matrix = np.asarray(embeddings, dtype=np.float32)
        if matrix.size == 0:
            matrix = matrix.reshape(0, matrix.shape[1] if matrix.ndim == 2 else 0)
        if matrix.ndim != 2 or matrix.shape[0] != len(fragments):
            raise ValueError(
                f"Embedding matrix shape {matrix.shape} does not match {len(fragments)} fragments"
            )
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        self.fragments = fragments
        self.embeddings = matrix / norms

    def __len__(self) -> int:
        return len(self.fragments)

    def search(self, query_embedding: list[float] | np.ndarray, top_k: int) -> list[SearchHit]:
        """Top-k fragments by cosine similarity, best first."""
        if not self.fragments or top_k < 1:
            return []
        query = np.asarray(query_embedding, dtype=np.float32)
        if query.shape[0] != self.embeddings.shape[1]:
            raise ValueError(
                f"Query dimension {query.shape[0]} does not match index dimension {self.embeddings.shape[1]}"
            )
        norm = np.linalg.norm(query)
        if norm:
            query = query / norm
        scores = self.embeddings @ query
        k = min(top_k, len(self.fragments))
        top = np.argsort(-scores, kind="stable")[:k]
        return [SearchHit(fragment=self.fragments[i], score=float(scores[i])) for i in top]


class IndexStorage:
    """File-backed persistence for per-user indexes.

    All file I/O runs in a worker thread. Filesystem and decode failures
    surface as PersistenceError.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def _paths(self, user_id: str) -> tuple[Path, Path]:
        safe = _UNSAFE_CHARS.sub("_", user_id)
        return (
            self.directory / f"{safe}_index.npz",
            self.directory / f"{safe}_metadata.json",
        )

    async def save(self, user_id: str, index: VectorIndex, metadata: IndexMetadata) -> None:
        try:
            await asyncio.to_thread(self._save_sync, user_id, index, metadata)
        except (OSError, ValueError, TypeError) as e:
            raise PersistenceError(f"Failed to persist index for user {user_id}: {e}") from e
        logger.info(f"Persisted index for user {user_id} ({len(index)} fragments)")

    def _save_sync(self, user_id: str, index: VectorIndex, metadata: IndexMetadata) -> None:
        index_path, metadata_path = self._paths(user_id)
        self.directory.mkdir(parents=True, exist_ok=True)

        fragments = json.dumps([{"text": f.text, "metadata": f.metadata} for f in index.fragments])
        tmp_index = index_path.with_suffix(".npz.tmp")
        with open(tmp_index, "wb") as fh:
            np.savez(fh, embeddings=index.embeddings, fragments=np.array(fragments))
        os.replace(tmp_index, index_path)

        tmp_metadata = metadata_path.with_suffix(".json.tmp")
        tmp_metadata.write_text(json.dumps(metadata.to_json()), encoding="utf-8")
        os.replace(tmp_metadata, metadata_path)

    async def load(self, user_id: str) -> tuple[VectorIndex, IndexMetadata] | None:
        """Load a persisted index, or None if either file is absent."""
        try:
            return await asyncio.to_thread(self._load_sync, user_id)
        except (OSError, ValueError, KeyError) as e:
            raise PersistenceError(f"Failed to load index for user {user_id}: {e}") from e

    def _load_sync(self, user_id: str) -> tuple[VectorIndex, IndexMetadata] | None:
        index_path, metadata_path = self._paths(user_id)
        if not index_path.exists() or not metadata_path.exists():
            return None

        metadata = IndexMetadata.from_json(json.loads(metadata_path.read_text(encoding="utf-8")))
        with np.load(index_path, allow_pickle=False) as blob:
            embeddings = blob["embeddings"]
            raw_fragments = json.loads(str(blob["fragments"]))
        fragments = [IndexFragment(text=f["text"], metadata=f["metadata"]) for f in raw_fragments]
        return VectorIndex(fragments, embeddings), metadata

    async def delete(self, user_id: str) -> None:
        try:
            await asyncio.to_thread(self._delete_sync, user_id)
        except OSError as e:
            raise PersistenceError(f"Failed to delete index for user {user_id}: {e}") from e

    def _delete_sync(self, user_id: str) -> None:
        for path in self._paths(user_id):
            path.unlink(missing_ok=True)
