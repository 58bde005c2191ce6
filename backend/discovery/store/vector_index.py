"""Vector index: ChromaDB collection holding one embedding per experience.

ChromaDB runs in embedded mode inside the backend process and persists to
``settings.chroma_dir``. Embeddings are always supplied by EmbeddingService;
the collection never embeds text on its own, and no documents are stored
(the narrative's source of truth is SQLite).

Metadata per vector: user_id, category, visibility, deleted. The visibility
scope is pushed into every query as a ``where`` clause so invisible rows
never reach ranking.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import chromadb
from chromadb.config import Settings as ChromaSettings

from discovery.config import settings
from discovery.models.experience import Experience, VisibilityScope

logger = logging.getLogger(__name__)

COLLECTION_NAME = "experiences"


def scope_where(scope: VisibilityScope, categories: list[str] | None = None) -> dict:
    """Translate a visibility scope (and optional category filter) to a Chroma where clause."""
    clauses: list[dict] = [{"deleted": False}]
    if scope.viewer_id:
        clauses.append({"$or": [{"visibility": "public"}, {"user_id": scope.viewer_id}]})
    else:
        clauses.append({"visibility": "public"})
    if categories:
        clauses.append({"category": {"$in": list(categories)}})
    return {"$and": clauses}


class VectorIndex:
    """Thin wrapper over the ``experiences`` collection (cosine space)."""

    def __init__(self, persist_dir: str | Path | None = None) -> None:
        persist_path = str(persist_dir or settings.chroma_dir)
        os.makedirs(persist_path, exist_ok=True)

        self.client = chromadb.PersistentClient(
            path=persist_path,
            settings=ChromaSettings(anonymized_telemetry=False),
        )
        self.collection = self.client.get_or_create_collection(
            name=COLLECTION_NAME,
            metadata={"hnsw:space": "cosine"},
        )

    @staticmethod
    def _metadata(exp: Experience) -> dict:
        return {
            "user_id": exp.user_id,
            "category": exp.category,
            "visibility": exp.visibility,
            "deleted": exp.deleted_at is not None,
        }

    def upsert(self, exp: Experience, embedding: list[float]) -> None:
        self.collection.upsert(
            ids=[exp.id],
            embeddings=[embedding],
            metadatas=[self._metadata(exp)],
        )

    def update_metadata(self, exp: Experience) -> None:
        """Refresh visibility/deletion flags after an edit. No-op if never embedded."""
        if not self.collection.get(ids=[exp.id])["ids"]:
            return
        self.collection.update(ids=[exp.id], metadatas=[self._metadata(exp)])

    def query(
        self,
        embedding: list[float],
        n_results: int,
        scope: VisibilityScope,
        categories: list[str] | None = None,
    ) -> dict[str, float]:
        """Nearest neighbours as {experience_id: similarity in [0, 1]}."""
        total = self.collection.count()
        if total == 0 or n_results <= 0:
            return {}
        results = self.collection.query(
            query_embeddings=[embedding],
            n_results=min(n_results, total),
            where=scope_where(scope, categories),
            include=["distances"],
        )
        hits: dict[str, float] = {}
        if results["ids"] and results["ids"][0]:
            for i, exp_id in enumerate(results["ids"][0]):
                distance = results["distances"][0][i] if results["distances"] else 1.0
                # cosine distance is in [0, 2]; clip similarity to [0, 1]
                hits[exp_id] = max(0.0, min(1.0, 1.0 - float(distance)))
        return hits

    def get_embeddings(self, ids: list[str]) -> dict[str, list[float]]:
        if not ids:
            return {}
        result = self.collection.get(ids=list(ids), include=["embeddings"])
        embeddings = result.get("embeddings")
        if embeddings is None:
            return {}
        return {
            exp_id: [float(x) for x in embeddings[i]]
            for i, exp_id in enumerate(result["ids"])
        }

    def count(self) -> int:
        return self.collection.count()

    def delete(self, exp_id: str) -> None:
        self.collection.delete(ids=[exp_id])
