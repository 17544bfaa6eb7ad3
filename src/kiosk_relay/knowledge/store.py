"""ChromaDB-backed knowledge store for product passages."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import chromadb
from chromadb.api.types import Documents, EmbeddingFunction, Embeddings
from chromadb.config import Settings as ChromaSettings

from kiosk_relay.config import Settings, get_settings
from kiosk_relay.models import KnowledgeHit, KnowledgeRecord

logger = logging.getLogger(__name__)


class GeminiEmbeddingFunction(EmbeddingFunction[Documents]):
    """Embeds documents with the Gemini embedding endpoint via google-genai."""

    def __init__(self, api_key: str, model_name: str = "gemini-embedding-001") -> None:
        from google import genai

        self._client = genai.Client(api_key=api_key)
        self._model_name = model_name

    def __call__(self, input: Documents) -> Embeddings:
        result = self._client.models.embed_content(
            model=self._model_name, contents=list(input)
        )
        return [list(e.values or []) for e in result.embeddings or []]

    @staticmethod
    def name() -> str:
        return "kiosk_relay_gemini"


class KnowledgeStore:
    """Semantic retrieval over ``{source, topic, content}`` passages.

    A ready ``collection`` may be passed in (anything exposing chromadb's
    ``add/get/query/count`` calls); otherwise a persistent client is opened
    under the configured vector store directory.
    """

    def __init__(
        self,
        persist_dir: Optional[Path] = None,
        collection: Any = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        if collection is not None:
            self.collection = collection
            return

        self.persist_dir = persist_dir or settings.vectorstore_dir
        self.persist_dir.mkdir(parents=True, exist_ok=True)

        self.client = chromadb.PersistentClient(
            path=str(self.persist_dir),
            settings=ChromaSettings(anonymized_telemetry=False),
        )
        self.collection = self.client.get_or_create_collection(
            name=settings.collection_name,
            embedding_function=self._build_embedding_function(settings),
            metadata={"hnsw:space": "cosine"},
        )
        logger.info(
            "KnowledgeStore ready: %d passages in %s",
            self.collection.count(), settings.collection_name,
        )

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------
    def add_records(self, records: list[KnowledgeRecord]) -> int:
        """Add passages to the store. Returns the number added."""
        if not records:
            return 0

        unique: dict[str, KnowledgeRecord] = {}
        for record in records:
            unique.setdefault(record.record_id, record)

        existing: set[str] = set()
        try:
            existing = set(self.collection.get(ids=list(unique))["ids"])
        except Exception:
            logger.debug("Existing-id lookup failed, indexing all records", exc_info=True)

        new = [r for rid, r in unique.items() if rid not in existing]
        if not new:
            logger.debug("All %d records already indexed", len(records))
            return 0

        batch_size = 500
        added = 0
        for i in range(0, len(new), batch_size):
            batch = new[i : i + batch_size]
            self.collection.add(
                ids=[r.record_id for r in batch],
                documents=[r.document for r in batch],
                metadatas=[
                    {"source": r.source, "topic": r.topic, "content": r.content}
                    for r in batch
                ],
            )
            added += len(batch)

        logger.info("Indexed %d new passages (total: %d)", added, self.count())
        return added

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------
    def search(
        self,
        query: str,
        n_results: int = 15,
        filter_source: Optional[str] = None,
        min_score: Optional[float] = None,
    ) -> list[KnowledgeHit]:
        """Nearest passages to ``query``, best first."""
        where = {"source": filter_source} if filter_source else None
        try:
            results = self.collection.query(
                query_texts=[query],
                n_results=min(n_results, self.collection.count() or 1),
                where=where,
            )
        except Exception:
            logger.exception("Knowledge search failed")
            raise

        if not results or not results.get("documents"):
            return []

        docs = results["documents"][0]
        metas = results["metadatas"][0] if results.get("metadatas") else [{}] * len(docs)
        distances = results["distances"][0] if results.get("distances") else [0.0] * len(docs)

        hits: list[KnowledgeHit] = []
        for doc, meta, dist in zip(docs, metas, distances):
            meta = meta or {}
            hit = KnowledgeHit(
                topic=meta.get("topic") or doc,
                content=meta.get("content", ""),
                source=meta.get("source", ""),
                # cosine distance -> similarity
                score=1.0 - float(dist),
            )
            if min_score is None or hit.score >= min_score:
                hits.append(hit)
        return hits

    def list_sources(self) -> list[str]:
        """Distinct ``source`` values across all passages."""
        try:
            metas = self.collection.get(include=["metadatas"])["metadatas"]
        except Exception:
            logger.exception("Listing knowledge sources failed")
            raise
        return sorted({m.get("source", "") for m in metas or [] if m and m.get("source")})

    def count(self) -> int:
        return self.collection.count()

    # ------------------------------------------------------------------
    # Embedding function
    # ------------------------------------------------------------------
    @staticmethod
    def _build_embedding_function(settings: Settings):
        """Gemini embeddings when a key is configured, local model otherwise."""
        if settings.gemini_api_key:
            return GeminiEmbeddingFunction(
                api_key=settings.gemini_api_key,
                model_name=settings.embedding_model,
            )
        from chromadb.utils.embedding_functions import SentenceTransformerEmbeddingFunction
        return SentenceTransformerEmbeddingFunction(
            model_name=settings.local_embedding_model,
        )
