"""CLI script to sync stored clinical documents into Qdrant.

Usage:
    cd backend
    uv run python ../scripts/sync_vectors.py
    uv run python ../scripts/sync_vectors.py --page-size 50 --collection clinical_records_dev
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add backend to path so imports work when run from backend/
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "backend"))

from clinical_rag.database import async_session, engine
from clinical_rag.models.providers import EmbeddingConfig
from clinical_rag.models.rag import SyncProgress
from clinical_rag.services.document_store import DocumentStore
from clinical_rag.services.rag_service import (
    GoogleEmbedder,
    QdrantVectorIndex,
    get_async_qdrant_client,
)
from clinical_rag.services.vector_sync import VectorSyncEngine


def print_progress(progress: SyncProgress) -> None:
    print(
        f"  Page {progress.page}: {progress.processed}/{progress.total} documents "
        f"({progress.state})"
    )


async def sync(page_size: int | None, collection: str | None) -> SyncProgress:
    index = QdrantVectorIndex(
        get_async_qdrant_client(),
        GoogleEmbedder(EmbeddingConfig.from_settings()),
        collection=collection,
    )
    print(f"Ensuring Qdrant collection '{index.collection}' exists...")
    await index.ensure_collection()

    sync_engine = VectorSyncEngine(DocumentStore(async_session), index, page_size=page_size)
    try:
        return await sync_engine.run(on_progress=print_progress)
    finally:
        await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Sync clinical documents into Qdrant")
    parser.add_argument("--page-size", type=int, default=None, help="Documents per page")
    parser.add_argument("--collection", type=str, default=None, help="Qdrant collection name override")
    args = parser.parse_args()

    try:
        progress = asyncio.run(sync(args.page_size, args.collection))
    except Exception as e:
        print(f"Error: sync stopped: {e}")
        print("Re-run to sync again; already indexed chunks are overwritten, not duplicated.")
        sys.exit(1)

    print(f"\nDone! Synced {progress.processed} documents in {progress.page} pages.")


if __name__ == "__main__":
    main()
