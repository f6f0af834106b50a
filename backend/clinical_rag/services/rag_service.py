"""RAG service: embedding, Qdrant storage, and vector search."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Protocol

import httpx
from google import genai
from google.genai import types
from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PayloadSchemaType,
    PointStruct,
    VectorParams,
)

from clinical_rag.config import settings
from clinical_rag.models.providers import EmbeddingConfig
from clinical_rag.models.rag import ChunkMetadata, ChunkText, SearchHit

logger = logging.getLogger(__name__)

# Fixed namespace so the same chunk id always maps to the same point id
CHUNK_NAMESPACE = uuid.NAMESPACE_URL

# --- Clients (lazy init) ---

_async_qdrant_client: AsyncQdrantClient | None = None
_genai_clients: dict[tuple[str, str], genai.Client] = {}


def _qdrant_kwargs() -> dict:
    """Build kwargs for Qdrant client, including api_key if set."""
    kwargs: dict = {"url": settings.qdrant_url}
    if settings.qdrant_api_key:
        kwargs["api_key"] = settings.qdrant_api_key
    return kwargs


def get_async_qdrant_client() -> AsyncQdrantClient:
    """Get or create the async Qdrant client."""
    global _async_qdrant_client
    if _async_qdrant_client is None:
        _async_qdrant_client = AsyncQdrantClient(**_qdrant_kwargs())
    return _async_qdrant_client


async def close_async_qdrant_client() -> None:
    global _async_qdrant_client
    if _async_qdrant_client is not None:
        await _async_qdrant_client.close()
        _async_qdrant_client = None


def get_genai_client(project: str, location: str) -> genai.Client:
    """Get or create a Google GenAI client (Vertex AI via ADC) for a project."""
    key = (project, location)
    if key not in _genai_clients:
        _genai_clients[key] = genai.Client(
            vertexai=True,
            project=project,
            location=location,
        )
    return _genai_clients[key]


# --- Embedding ---

_VERTEX_PREDICT_URL = (
    "https://{location}-aiplatform.googleapis.com/v1/projects/{project}"
    "/locations/{location}/publishers/google/models/{model}:predict"
)


class Embedder(Protocol):
    async def embed(self, texts: list[str], task_type: str) -> list[list[float]]: ...


class GoogleEmbedder:
    """Google embeddings through the GenAI SDK or the Vertex REST endpoint.

    The REST endpoint is used when an API key is configured; otherwise the
    SDK authenticates with application default credentials.
    """

    def __init__(self, config: EmbeddingConfig) -> None:
        config.validate_ready()
        self.config = config

    async def _embed_via_api_key(self, texts: list[str], task_type: str) -> list[list[float]]:
        url = _VERTEX_PREDICT_URL.format(
            location=self.config.location,
            project=self.config.project,
            model=self.config.model,
        )
        body = {
            "instances": [{"content": t, "task_type": task_type} for t in texts],
            "parameters": {"outputDimensionality": self.config.dimensions},
        }
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                url, params={"key": self.config.api_key}, json=body, timeout=30
            )
        resp.raise_for_status()
        return [p["embeddings"]["values"] for p in resp.json()["predictions"]]

    async def embed(self, texts: list[str], task_type: str) -> list[list[float]]:
        logger.info(
            "Embedding %d texts (model=%s, dims=%d, task=%s)",
            len(texts),
            self.config.model,
            self.config.dimensions,
            task_type,
        )
        if self.config.api_key:
            vectors = await self._embed_via_api_key(texts, task_type)
        else:
            client = get_genai_client(self.config.project, self.config.location)
            response = await client.aio.models.embed_content(
                model=self.config.model,
                contents=texts,
                config=types.EmbedContentConfig(
                    output_dimensionality=self.config.dimensions,
                    task_type=task_type,
                ),
            )
            vectors = [list(e.values) for e in response.embeddings]
        logger.debug("Embedded %d texts -> %d vectors", len(texts), len(vectors))
        return vectors


# --- Vector index ---


def point_id(chunk_id: str) -> str:
    """Qdrant point id for a chunk id (stable across runs)."""
    return str(uuid.uuid5(CHUNK_NAMESPACE, chunk_id))


class QdrantVectorIndex:
    """Chunk vectors in a Qdrant collection, upserted by deterministic point id."""

    def __init__(
        self,
        client: AsyncQdrantClient,
        embedder: Embedder,
        collection: str | None = None,
        dimensions: int | None = None,
    ) -> None:
        self.client = client
        self.embedder = embedder
        self.collection = collection or settings.qdrant_collection
        self.dimensions = dimensions or settings.embedding_dimensions

    async def ensure_collection(self) -> None:
        """Create the Qdrant collection if it doesn't exist."""
        if await self.client.collection_exists(self.collection):
            logger.info("Qdrant collection '%s' already exists", self.collection)
            return
        await self.client.create_collection(
            collection_name=self.collection,
            vectors_config=VectorParams(size=self.dimensions, distance=Distance.COSINE),
        )
        # Payload indexes for filtering
        for field in ("document_id", "user_id", "category", "section_name"):
            await self.client.create_payload_index(
                collection_name=self.collection,
                field_name=field,
                field_schema=PayloadSchemaType.KEYWORD,
            )
        logger.info("Created Qdrant collection '%s'", self.collection)

    async def add_texts(
        self, items: list[ChunkText], metas: list[ChunkMetadata]
    ) -> list[str]:
        """Embed and upsert chunks. Re-adding a chunk id overwrites its point."""
        if len(items) != len(metas):
            raise ValueError(
                f"items and metas differ in length ({len(items)} != {len(metas)})"
            )
        if not items:
            return []

        vectors = await self.embedder.embed(
            [item.text for item in items], "RETRIEVAL_DOCUMENT"
        )
        points = [
            PointStruct(
                id=point_id(item.id),
                vector=vector,
                payload={
                    **meta.model_dump(),
                    "chunk_id": item.id,
                    "text": item.text,
                    "offset": item.chunk.offset if item.chunk else None,
                    "size": item.chunk.size if item.chunk else None,
                },
            )
            for item, meta, vector in zip(items, metas, vectors, strict=True)
        ]
        await self.client.upsert(collection_name=self.collection, points=points)
        logger.info("Upserted %d chunks into '%s'", len(points), self.collection)
        return [item.id for item in items]

    async def similarity_search(
        self, query: str, k: int, user_id: str | None = None
    ) -> list[SearchHit]:
        """Embed query, search Qdrant, return the top-k chunk hits."""
        logger.info("Vector search: query=%r k=%d user=%r", query[:200], k, user_id)
        [query_vector] = await self.embedder.embed([query], "RETRIEVAL_QUERY")

        query_filter = None
        if user_id:
            query_filter = Filter(
                must=[FieldCondition(key="user_id", match=MatchValue(value=user_id))]
            )

        results = await self.client.query_points(
            collection_name=self.collection,
            query=query_vector,
            query_filter=query_filter,
            limit=k,
            with_payload=True,
        )
        hits = []
        for point in results.points:
            payload: dict[str, Any] = dict(point.payload or {})
            hits.append(
                SearchHit(
                    id=payload.get("chunk_id", str(point.id)),
                    metadata=payload,
                    score=point.score,
                )
            )

        logger.info("Qdrant returned %d points", len(hits))
        for hit in hits:
            logger.debug(
                "  Hit score=%.3f doc=%r chunk=%r",
                hit.score,
                hit.metadata.get("document_id"),
                hit.id,
            )
        return hits

    async def count(self) -> int:
        result = await self.client.count(collection_name=self.collection, exact=True)
        return result.count
