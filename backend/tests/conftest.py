"""Test fixtures and configuration."""

from __future__ import annotations

import zlib
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from qdrant_client import AsyncQdrantClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from clinical_rag.dependencies import (
    get_document_store,
    get_provider_config,
    get_sync_engine,
    get_vector_index,
)
from clinical_rag.main import app
from clinical_rag.models.orm import Base
from clinical_rag.models.providers import ProviderConfig
from clinical_rag.models.rag import (
    ClinicalDocument,
    DataRecord,
    DocumentMetadata,
)
from clinical_rag.services.document_store import DocumentStore
from clinical_rag.services.llm_service import ChatRequest
from clinical_rag.services.rag_service import QdrantVectorIndex
from clinical_rag.services.vector_sync import VectorSyncEngine

TEST_DIMENSIONS = 64
TEST_COLLECTION = "test_clinical_records"

test_engine = create_async_engine("sqlite+aiosqlite://", echo=False)
test_session_factory = async_sessionmaker(
    test_engine, class_=AsyncSession, expire_on_commit=False
)


# --- Fakes ---


class FakeEmbedder:
    """Bag-of-words hashing embedder: texts sharing words get similar vectors."""

    def __init__(self, dimensions: int = TEST_DIMENSIONS) -> None:
        self.dimensions = dimensions
        self.calls: list[tuple[list[str], str]] = []

    def vector(self, text: str) -> list[float]:
        vec = [0.01] * self.dimensions
        for word in text.lower().replace("|", " ").split():
            vec[zlib.crc32(word.encode()) % self.dimensions] += 1.0
        return vec

    async def embed(self, texts: list[str], task_type: str) -> list[list[float]]:
        self.calls.append((list(texts), task_type))
        return [self.vector(t) for t in texts]


class FakeChatProvider:
    """Scripted chat provider.

    ``replies`` feed ``stream_complete``/``complete`` in order; a reply may be a
    list of chunks. ``structured`` feeds ``complete_structured`` and may be a
    list of responses (exceptions are raised) or a callable of the request.
    """

    def __init__(
        self,
        replies: list[str | list[str]] | None = None,
        structured: list[Any] | Callable[[ChatRequest], Any] | None = None,
        config: ProviderConfig | None = None,
    ) -> None:
        self.config = config or ProviderConfig(provider="claude", model="fake-model")
        self.replies = list(replies or [])
        self.structured = structured if callable(structured) else list(structured or [])
        self.requests: list[ChatRequest] = []
        self.structured_requests: list[ChatRequest] = []

    def _next_reply(self) -> list[str]:
        if not self.replies:
            raise AssertionError("FakeChatProvider ran out of replies")
        reply = self.replies.pop(0)
        return reply if isinstance(reply, list) else [reply]

    async def complete(self, request: ChatRequest) -> str:
        self.requests.append(request)
        return "".join(self._next_reply())

    async def complete_structured(self, request: ChatRequest, schema: dict[str, Any]) -> Any:
        self.structured_requests.append(request)
        if callable(self.structured):
            item = self.structured(request)
        else:
            if not self.structured:
                raise AssertionError("FakeChatProvider ran out of structured responses")
            item = self.structured.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def stream_complete(self, request: ChatRequest) -> AsyncIterator[str]:
        self.requests.append(request)
        for chunk in self._next_reply():
            yield chunk


# --- Document factories ---


def make_observation(
    doc_id: str,
    *,
    user_id: str = "user-1",
    name: str = "Hemoglobin A1c",
    value: float = 7.2,
    date: str | None = "2024-01-15",
    codes: list[str] | None = None,
    source_id: str | None = None,
) -> ClinicalDocument:
    source_id = source_id or f"src-{doc_id}"
    return ClinicalDocument(
        id=doc_id,
        user_id=user_id,
        connection_record_id="conn-1",
        data_record=DataRecord(
            raw={
                "fullUrl": f"https://fhir.example.org/Observation/{source_id}",
                "resource": {
                    "resourceType": "Observation",
                    "id": source_id,
                    "status": "final",
                    "code": {"text": name},
                    "valueQuantity": {"value": value, "unit": "%"},
                    "effectiveDateTime": date,
                },
            },
            content_type="application/json",
            resource_type="Observation",
        ),
        metadata=DocumentMetadata(
            id=source_id, date=date, display_name=name, codes=codes or ["4548-4"]
        ),
    )


def make_report(
    doc_id: str,
    result_refs: list[str],
    *,
    user_id: str = "user-1",
    date: str | None = "2024-01-15",
) -> ClinicalDocument:
    return ClinicalDocument(
        id=doc_id,
        user_id=user_id,
        connection_record_id="conn-1",
        data_record=DataRecord(
            raw={
                "resource": {
                    "resourceType": "DiagnosticReport",
                    "code": {"text": "Basic metabolic panel"},
                    "result": [{"reference": ref} for ref in result_refs],
                }
            },
            content_type="application/json",
            resource_type="DiagnosticReport",
        ),
        metadata=DocumentMetadata(id=f"src-{doc_id}", date=date),
    )


CCDA_XML = """\
<ClinicalDocument xmlns="urn:hl7-org:v3">
  <component><structuredBody>
    <component><section>
      <templateId root="2.16.840.1.113883.10.20.22.2.6.1"/>
      <title>Allergies</title>
      <text><table><tr><td>Penicillin</td><td>Hives</td></tr></table></text>
    </section></component>
    <component><section>
      <templateId root="2.16.840.1.113883.10.20.22.2.1.1"/>
      <title>Medications</title>
      <text><list><item>Metformin 1000 mg twice daily</item></list></text>
    </section></component>
    <component><section>
      <templateId root="2.16.840.1.113883.10.20.22.2.5.1"/>
      <title>Problems</title>
      <text/>
    </section></component>
  </structuredBody></component>
</ClinicalDocument>
"""


def make_xml_document(
    doc_id: str,
    xml: str = CCDA_XML,
    *,
    user_id: str = "user-1",
    content_type: str = "application/xml",
    date: str | None = "2024-02-01",
) -> ClinicalDocument:
    return ClinicalDocument(
        id=doc_id,
        user_id=user_id,
        connection_record_id="conn-1",
        data_record=DataRecord(
            raw=xml,
            format="CCDA",
            content_type=content_type,
            resource_type="DocumentReference",
        ),
        metadata=DocumentMetadata(date=date, display_name="Summary of care"),
    )


# --- Fixtures ---


@pytest.fixture(autouse=True)
async def setup_database() -> AsyncIterator[None]:
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def store() -> DocumentStore:
    return DocumentStore(test_session_factory)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
async def vector_index(embedder: FakeEmbedder) -> AsyncIterator[QdrantVectorIndex]:
    """Vector index over an in-memory Qdrant."""
    client = AsyncQdrantClient(":memory:")
    index = QdrantVectorIndex(
        client, embedder, collection=TEST_COLLECTION, dimensions=TEST_DIMENSIONS
    )
    await index.ensure_collection()
    yield index
    await client.close()


@pytest.fixture
def sync_engine(store: DocumentStore, vector_index: QdrantVectorIndex) -> VectorSyncEngine:
    return VectorSyncEngine(store, vector_index, page_size=2)


@pytest.fixture
async def client(
    store: DocumentStore,
    vector_index: QdrantVectorIndex,
    sync_engine: VectorSyncEngine,
) -> AsyncIterator[AsyncClient]:
    app.dependency_overrides[get_document_store] = lambda: store
    app.dependency_overrides[get_vector_index] = lambda: vector_index
    app.dependency_overrides[get_sync_engine] = lambda: sync_engine
    app.dependency_overrides[get_provider_config] = lambda: ProviderConfig(
        provider="claude", model="fake-model"
    )
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
