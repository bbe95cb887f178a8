"""Per-bot FAISS vector collections.

Handles:
- One index per bot under VECTOR_DIR/<bot_id>/ (never shared between bots)
- Lazy creation on first write, dimension checks on load
- Upserts keyed by (bot, document, ordinal) so retries overwrite
- Entry metadata persisted in SQLite, keyed by FAISS id
- Reloading when another process rewrote or removed the files
"""
import asyncio
import json
import math
import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import faiss
import numpy as np
import structlog

from plugrag import config
from plugrag.db import Database
from plugrag.exceptions import VectorStoreError

logger = structlog.get_logger()

SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")


@dataclass
class VectorHit:
    """One search result with its stored metadata."""

    vector_id: int
    distance: float
    entry: Dict[str, Any] = field(default_factory=dict)

    @property
    def relevance_score(self) -> float:
        """Map L2 distance to a 0-1 relevance score (1 = identical)."""
        return math.exp(-self.distance / 2.0)


class BotCollection:
    """FAISS index plus metadata file for a single bot.

    The API and the worker run as separate processes over the same
    directory, so the in-memory index is only a cache of the files: every
    ``load`` compares the index file's identity with the one last read and
    reloads (or forgets the index) when another process changed it.
    """

    def __init__(self, directory: Path):
        self.directory = directory
        self.index_path = directory / "vectors.index"
        self.metadata_path = directory / "metadata.json"
        self.index: Optional[faiss.Index] = None
        self.metadata: Dict[str, Any] = {}
        self._stamp: Optional[Tuple[int, int, int]] = None
        # Serialises writes; FAISS indexes are not safe for concurrent mutation
        self.lock = asyncio.Lock()

    @property
    def exists(self) -> bool:
        return self.index_path.exists()

    @property
    def dimension(self) -> Optional[int]:
        return self.metadata.get("embedding_dimension")

    @property
    def count(self) -> int:
        return self.index.ntotal if self.index is not None else 0

    def _disk_stamp(self) -> Optional[Tuple[int, int, int]]:
        try:
            stat = self.index_path.stat()
        except FileNotFoundError:
            return None
        return (stat.st_ino, stat.st_mtime_ns, stat.st_size)

    def forget(self) -> None:
        self.index = None
        self.metadata = {}
        self._stamp = None

    def load(self) -> bool:
        """Bring the in-memory index in line with disk.

        Returns:
            False when nothing is stored (including a collection deleted by
            another process since the last load)
        """
        stamp = self._disk_stamp()
        if stamp is None:
            if self.index is not None:
                logger.info("faiss_collection_gone_on_disk", directory=str(self.directory))
            self.forget()
            return False
        if self.index is not None and stamp == self._stamp:
            return True

        try:
            self.index = faiss.read_index(str(self.index_path))
            self.metadata = (
                json.loads(self.metadata_path.read_text()) if self.metadata_path.exists() else {}
            )
        except Exception as e:
            self.forget()
            raise VectorStoreError(f"Failed to load FAISS index {self.index_path}: {e}") from e
        self._stamp = stamp
        logger.debug("faiss_collection_loaded", directory=str(self.directory), vectors=self.index.ntotal)
        return True

    def create(self, dimension: int, embedding_model: str) -> None:
        # IDMap2 keeps our own ids and supports removal
        self.index = faiss.IndexIDMap2(faiss.IndexFlatL2(dimension))
        self.metadata = {
            "embedding_model": embedding_model,
            "embedding_dimension": dimension,
            "index_type": "IndexIDMap2(IndexFlatL2)",
            "vector_count": 0,
        }
        self._stamp = None
        logger.info("faiss_collection_created", directory=str(self.directory), dimension=dimension)

    def save(self) -> None:
        """Write index and metadata, each through a temp file and an atomic rename."""
        if self.index is None:
            raise VectorStoreError("No index to save")
        self.directory.mkdir(parents=True, exist_ok=True)
        self.metadata["vector_count"] = self.index.ntotal
        index_tmp = self.index_path.with_suffix(".index.tmp")
        metadata_tmp = self.metadata_path.with_suffix(".json.tmp")
        try:
            metadata_tmp.write_text(json.dumps(self.metadata, indent=2))
            os.replace(metadata_tmp, self.metadata_path)
            faiss.write_index(self.index, str(index_tmp))
            os.replace(index_tmp, self.index_path)
        except Exception as e:
            raise VectorStoreError(f"Failed to save FAISS index: {e}") from e
        self._stamp = self._disk_stamp()


class FAISSVectorStore:
    """Collection manager: one FAISS collection per bot."""

    def __init__(self, db: Database, root_dir: Path = None):
        """Initialize the store.

        Args:
            db: Database holding vector entry metadata
            root_dir: Directory holding one sub-directory per bot (default VECTOR_DIR)
        """
        self.db = db
        self.root_dir = Path(root_dir or config.VECTOR_DIR)
        self._collections: Dict[str, BotCollection] = {}

    def _collection(self, bot_id: str) -> BotCollection:
        collection = self._collections.get(bot_id)
        if collection is None:
            collection = BotCollection(self.root_dir / SAFE_NAME.sub("_", bot_id))
            self._collections.setdefault(bot_id, collection)
            collection = self._collections[bot_id]
        return collection

    def collection_exists(self, bot_id: str) -> bool:
        return self._collection(bot_id).exists

    async def upsert(
        self,
        bot_id: str,
        embeddings: List[List[float]],
        entries: List[Dict[str, Any]],
        embedding_model: str,
    ) -> List[int]:
        """Add vectors, replacing earlier vectors with the same ordinal key.

        The collection is created on first write with the dimension of the
        incoming vectors.

        Args:
            bot_id: Owning bot
            embeddings: One vector per entry
            entries: Entry metadata (see Database.replace_vector_entries)
            embedding_model: Model that produced the vectors

        Returns:
            FAISS ids of the stored vectors

        Raises:
            VectorStoreError: On dimension mismatch or storage failure
        """
        if not embeddings:
            return []
        if len(embeddings) != len(entries):
            raise VectorStoreError("Embedding and entry counts differ")

        vectors = np.asarray(embeddings, dtype=np.float32)
        collection = self._collection(bot_id)

        async with collection.lock:
            if not collection.load():
                collection.create(vectors.shape[1], embedding_model)
            if vectors.shape[1] != collection.dimension:
                raise VectorStoreError(
                    f"Embedding dimension mismatch for bot {bot_id}: collection has "
                    f"{collection.dimension}, got {vectors.shape[1]}. Delete the "
                    "collection to re-embed with a different model."
                )

            replaced_ids, new_ids = self.db.replace_vector_entries(bot_id, entries)
            if replaced_ids:
                collection.index.remove_ids(np.asarray(replaced_ids, dtype=np.int64))
            collection.index.add_with_ids(vectors, np.asarray(new_ids, dtype=np.int64))
            collection.save()

        logger.info(
            "vectors_upserted",
            bot_id=bot_id,
            count=len(new_ids),
            replaced=len(replaced_ids),
            total_vectors=collection.count,
        )
        return new_ids

    async def search(
        self, bot_id: str, query_embedding: List[float], top_k: int = None
    ) -> List[VectorHit]:
        """Nearest entries in one bot's collection.

        A missing or empty collection yields an empty list.
        """
        top_k = top_k or config.RETRIEVAL_TOP_K
        collection = self._collection(bot_id)
        if not collection.load() or collection.count == 0:
            logger.info("vector_search_empty_collection", bot_id=bot_id)
            return []

        query = np.asarray([query_embedding], dtype=np.float32)
        if query.shape[1] != collection.dimension:
            raise VectorStoreError(
                f"Query dimension mismatch: expected {collection.dimension}, got {query.shape[1]}"
            )

        k = min(top_k, collection.count)
        distances, ids = collection.index.search(query, k)
        pairs = [(int(i), float(d)) for i, d in zip(ids[0], distances[0]) if i != -1]

        entries = {
            entry["id"]: entry
            for entry in self.db.get_vector_entries(bot_id, [i for i, _ in pairs])
        }
        hits = [
            VectorHit(vector_id=i, distance=d, entry=entries[i])
            for i, d in pairs
            if i in entries
        ]
        hits.sort(key=lambda hit: hit.distance)

        logger.info("vector_search_completed", bot_id=bot_id, top_k=k, results_found=len(hits))
        return hits

    def count(self, bot_id: str) -> int:
        collection = self._collection(bot_id)
        return collection.count if collection.load() else 0

    def get_stats(self, bot_id: str) -> Dict[str, Any]:
        """Get statistics about one bot's collection."""
        collection = self._collection(bot_id)
        if not collection.load():
            return {"exists": False, "points_count": 0, "dimension": None}
        return {
            "exists": True,
            "points_count": collection.count,
            "dimension": collection.dimension,
            "embedding_model": collection.metadata.get("embedding_model"),
        }

    async def delete_document(self, bot_id: str, document_id: str) -> int:
        """Remove one document's vectors from a bot's collection."""
        collection = self._collection(bot_id)
        async with collection.lock:
            ids = self.db.vector_entry_ids(bot_id, document_id)
            if ids and collection.load():
                collection.index.remove_ids(np.asarray(ids, dtype=np.int64))
                collection.save()
            self.db.delete_vector_entries(ids)

        logger.info("document_vectors_deleted", bot_id=bot_id, document_id=document_id, count=len(ids))
        return len(ids)

    async def delete_collection(self, bot_id: str) -> bool:
        """Delete a bot's whole collection, and only that collection."""
        collection = self._collection(bot_id)
        async with collection.lock:
            existed = collection.exists
            self.db.delete_vector_entries(self.db.vector_entry_ids(bot_id))
            if collection.directory.exists():
                shutil.rmtree(collection.directory)
            collection.forget()

        logger.warning("collection_deleted", bot_id=bot_id, existed=existed)
        return existed
