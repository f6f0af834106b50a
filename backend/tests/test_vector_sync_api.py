"""Vector sync endpoint tests."""

from __future__ import annotations

import asyncio

import pytest
from httpx import AsyncClient

from clinical_rag.routers import vector_sync
from clinical_rag.services.document_store import DocumentStore
from clinical_rag.services.rag_service import QdrantVectorIndex
from conftest import make_observation, make_xml_document


async def test_status_before_sync(client: AsyncClient) -> None:
    response = await client.get("/api/v1/vector-sync")
    assert response.status_code == 200
    assert response.json() == {
        "state": "not_started",
        "processed": 0,
        "total": 0,
        "page": 0,
        "running": False,
    }


async def test_sync_runs_in_background(
    client: AsyncClient, store: DocumentStore, vector_index: QdrantVectorIndex
) -> None:
    await store.bulk_upsert(
        [make_observation("obs-1"), make_observation("obs-2"), make_xml_document("ccda-1")]
    )

    response = await client.post("/api/v1/vector-sync")
    assert response.status_code == 202
    await vector_sync._sync_task

    data = (await client.get("/api/v1/vector-sync")).json()
    assert data["state"] == "done"
    assert data["processed"] == data["total"] == 3
    assert data["running"] is False
    assert await vector_index.count() == 5


async def test_reindex_starts_over(
    client: AsyncClient, store: DocumentStore, vector_index: QdrantVectorIndex
) -> None:
    await store.bulk_upsert([make_observation("obs-1")])
    await client.post("/api/v1/vector-sync")
    await vector_sync._sync_task

    await store.bulk_upsert([make_observation("obs-2")])
    await client.post("/api/v1/vector-sync")
    await vector_sync._sync_task
    assert await vector_index.count() == 1

    await client.post("/api/v1/vector-sync", params={"reindex": "true"})
    await vector_sync._sync_task
    assert await vector_index.count() == 2


async def test_conflict_while_running(
    client: AsyncClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    pending = asyncio.create_task(asyncio.sleep(10))
    monkeypatch.setattr(vector_sync, "_sync_task", pending)

    response = await client.post("/api/v1/vector-sync")
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "SYNC_IN_PROGRESS"

    status = (await client.get("/api/v1/vector-sync")).json()
    assert status["running"] is True

    await vector_sync.cancel_background_sync()
    assert pending.cancelled()
    status = (await client.get("/api/v1/vector-sync")).json()
    assert status["running"] is False
