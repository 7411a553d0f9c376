"""
Embedding stores: read-only access to precomputed document embeddings.

Directory layout read by :class:`DirectoryEmbeddingStore`::

    <root>/index.json
        {"version": ..., "totalNotes": 12, "model": ..., "dimensions": 768,
         "notes": {"<note id>": {"path": "...", "contentHash": "...", ...}}}
    <root>/embeddings/<note id>.json
        {"noteId": ..., "notePath": "...", "title": ..., "contentHash": ...,
         "vector": [...], "model": ...}

Records are read concurrently, ``READ_BATCH_SIZE`` at a time.  A missing or
malformed record file is skipped (logged) without failing the batch.
"""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import aiofiles

from gapscan.config import settings
from gapscan.models.domain import EmbeddingRecord, Vector
from gapscan.utils.helpers import generate_note_id, note_title

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"
EMBEDDINGS_SUBFOLDER = "embeddings"


@runtime_checkable
class EmbeddingStore(Protocol):
    async def is_available(self) -> bool:
        ...

    async def get_embedding_count(self) -> int:
        ...

    async def read_all_embeddings(self) -> Dict[str, EmbeddingRecord]:
        ...

    def clear_cache(self) -> None:
        ...


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class EmbeddingCache:
    """
    Explicit cache owned by a store.

    Holds the parsed index and every record read so far.  ``get`` only
    returns a record whose content hash still matches the index entry, so a
    re-embedded note is re-read even without an explicit ``invalidate``.
    """

    def __init__(self) -> None:
        self.index: Optional[Dict[str, Any]] = None
        self._records: Dict[str, EmbeddingRecord] = {}

    def get(self, note_id: str, content_hash: Optional[str] = None) -> Optional[EmbeddingRecord]:
        record = self._records.get(note_id)
        if record is None:
            return None
        if content_hash and record.content_hash and record.content_hash != content_hash:
            return None
        return record

    def put(self, record: EmbeddingRecord) -> None:
        self._records[record.note_id] = record

    def invalidate(self, note_id: str) -> None:
        self._records.pop(note_id, None)

    def clear(self) -> None:
        self.index = None
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)


# ---------------------------------------------------------------------------
# Directory-backed store
# ---------------------------------------------------------------------------

class DirectoryEmbeddingStore:
    """Reads an ``index.json`` plus one JSON file per embedded note."""

    def __init__(
        self,
        root: Optional[str] = None,
        cache: Optional[EmbeddingCache] = None,
        batch_size: Optional[int] = None,
    ) -> None:
        self.root = Path(root or settings.EMBEDDINGS_DIR)
        self.cache = cache if cache is not None else EmbeddingCache()
        self.batch_size = batch_size or settings.READ_BATCH_SIZE

    @property
    def index_path(self) -> Path:
        return self.root / INDEX_FILE

    async def is_available(self) -> bool:
        return self.index_path.is_file()

    async def read_index(self) -> Optional[Dict[str, Any]]:
        if self.cache.index is not None:
            return self.cache.index
        if not self.index_path.is_file():
            return None
        try:
            async with aiofiles.open(self.index_path, "r", encoding="utf-8") as fh:
                index = json.loads(await fh.read())
        except (OSError, ValueError) as exc:
            logger.error("Failed to read embedding index %s: %s", self.index_path, exc)
            return None
        if not isinstance(index, dict):
            logger.error("Embedding index %s is not a JSON object", self.index_path)
            return None
        self.cache.index = index
        return index

    async def get_embedding_count(self) -> int:
        index = await self.read_index()
        if not index:
            return 0
        total = index.get("totalNotes")
        if isinstance(total, int):
            return total
        return len(index.get("notes") or {})

    async def read_embedding(
        self, note_id: str, entry: Optional[Dict[str, Any]] = None
    ) -> Optional[EmbeddingRecord]:
        """Read one record file; ``None`` when missing or malformed."""
        entry = entry or {}
        cached = self.cache.get(note_id, entry.get("contentHash"))
        if cached is not None:
            return cached

        path = self.root / EMBEDDINGS_SUBFOLDER / f"{note_id}.json"
        if not path.is_file():
            logger.debug("Embedding file missing for note %s", note_id)
            return None
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as fh:
                raw = json.loads(await fh.read())
            record = self._to_record(note_id, raw, entry)
        except (OSError, ValueError, TypeError, KeyError) as exc:
            logger.warning("Skipping malformed embedding %s: %s", path.name, exc)
            return None

        self.cache.put(record)
        return record

    async def read_all_embeddings(self) -> Dict[str, EmbeddingRecord]:
        index = await self.read_index()
        if not index:
            return {}

        notes: Dict[str, Dict[str, Any]] = index.get("notes") or {}
        note_ids = list(notes.keys())
        records: Dict[str, EmbeddingRecord] = {}

        for start in range(0, len(note_ids), self.batch_size):
            batch = note_ids[start:start + self.batch_size]
            results = await asyncio.gather(
                *(self.read_embedding(nid, notes.get(nid) or {}) for nid in batch)
            )
            for note_id, record in zip(batch, results):
                if record is not None:
                    records[note_id] = record

        logger.info(
            "Loaded %d/%d embedding record(s) from %s", len(records), len(note_ids), self.root
        )
        return records

    async def get_embedding_by_path(self, note_path: str) -> Optional[EmbeddingRecord]:
        index = await self.read_index()
        if not index:
            return None
        for note_id, entry in (index.get("notes") or {}).items():
            if entry.get("path") == note_path:
                return await self.read_embedding(note_id, entry)
        return None

    def clear_cache(self) -> None:
        self.cache.clear()

    @staticmethod
    def _to_record(note_id: str, raw: Dict[str, Any], entry: Dict[str, Any]) -> EmbeddingRecord:
        vector = raw["vector"]
        if not isinstance(vector, list) or not vector:
            raise ValueError("vector must be a non-empty list")
        path = raw.get("notePath") or entry.get("path")
        if not path:
            raise KeyError("notePath")
        return EmbeddingRecord(
            note_id=note_id,
            path=path,
            vector=[float(x) for x in vector],
            content_hash=raw.get("contentHash") or entry.get("contentHash") or "",
            title=raw.get("title"),
            model=raw.get("model"),
        )


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class InMemoryEmbeddingStore:
    """Holds records in a dict.  ``available=False`` simulates a missing store."""

    def __init__(
        self,
        records: Optional[Dict[str, EmbeddingRecord]] = None,
        available: bool = True,
    ) -> None:
        self.records: Dict[str, EmbeddingRecord] = dict(records or {})
        self.available = available

    @classmethod
    def from_vectors(cls, vectors: Dict[str, Vector], available: bool = True) -> "InMemoryEmbeddingStore":
        """Build from ``{document path: vector}``; note ids are derived from the path."""
        records: Dict[str, EmbeddingRecord] = {}
        for path, vector in vectors.items():
            note_id = generate_note_id(path)
            records[note_id] = EmbeddingRecord(
                note_id=note_id, path=path, vector=list(vector), title=note_title(path)
            )
        return cls(records, available=available)

    async def is_available(self) -> bool:
        return self.available

    async def get_embedding_count(self) -> int:
        return len(self.records)

    async def read_all_embeddings(self) -> Dict[str, EmbeddingRecord]:
        return dict(self.records)

    def clear_cache(self) -> None:
        pass
