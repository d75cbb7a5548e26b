import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Generator, List, Optional

import pytest
from fastapi.testclient import TestClient

# Set test environment
os.environ["INIT_DB_ON_STARTUP"] = "false"
os.environ["EMBEDDING_PROVIDER"] = "hash"

from app.main import app
from app.api import documents, search
from app.db.document_store import DocumentStoreError
from app.db.models import DocumentRow
from app.services.embedding import (
    EmbeddingProvider,
    EmbeddingProviderError,
    HashEmbeddingProvider,
)
from app.services.ingestion import IngestionService
from app.services.retrieval import HybridRetriever


class InMemoryDocumentStore:
    """DocumentStore stand-in keeping rows in a list"""

    def __init__(self):
        self.rows: List[DocumentRow] = []
        self.fail_on_add = None
        self.search_calls = []
        self._clock = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def _active(self, tenant_id):
        return [r for r in self.rows if r.tenant_id == tenant_id and not r.deleted]

    def get(self, tenant_id, document_id):
        for row in self._active(tenant_id):
            if row.id == document_id:
                return row
        return None

    def find_active_root(self, tenant_id, name=None, source_filename=None, exclude_id=None):
        for row in self._active(tenant_id):
            if row.parent_id is not None or row.id == exclude_id:
                continue
            if name is not None and row.name != name:
                continue
            if source_filename is not None and row.source_filename != source_filename:
                continue
            return row
        return None

    def list_roots(self, tenant_id, offset, limit, search=None):
        rows = [r for r in self._active(tenant_id) if r.parent_id is None]
        if search:
            needle = search.lower()
            rows = [
                r for r in rows
                if any(needle in (value or "").lower()
                       for value in (r.name, r.description, r.source_filename))
            ]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows[offset:offset + limit], len(rows)

    def list_chunks(self, tenant_id, root_id):
        children = [r for r in self._active(tenant_id) if r.parent_id == root_id]
        return sorted(children, key=lambda r: r.chunk_index)

    def add(self, row):
        if self.fail_on_add and self.fail_on_add(row):
            raise DocumentStoreError("insert failed")
        if row.id is None:
            row.id = uuid.uuid4()
        if row.deleted is None:
            row.deleted = False
        if row.knowledge_base_ids is None:
            row.knowledge_base_ids = []
        row.created_at = row.created_at or self._tick()
        row.updated_at = row.created_at
        self.rows.append(row)
        return row

    def save(self, row):
        row.updated_at = self._tick()
        return row

    def soft_delete(self, tenant_id, document_id):
        count = 0
        for row in self._active(tenant_id):
            if row.id == document_id or row.parent_id == document_id:
                row.deleted = True
                count += 1
        return count

    def search_chunk_text(self, tenant_id, term, limit):
        self.search_calls.append(term)
        needle = term.lower()
        matches = [r for r in self._active(tenant_id) if needle in (r.chunk_text or "").lower()]
        return matches[:limit]

    def semantic_candidates(self, tenant_id, query_embedding, limit, exclude_ids=(), knowledge_base_ids=None):
        rows = []
        for row in self._active(tenant_id):
            if row.embedding is None or row.id in exclude_ids:
                continue
            if knowledge_base_ids and not set(knowledge_base_ids) & set(row.knowledge_base_ids or []):
                continue
            rows.append(row)
        return rows[:limit]

    def insert(self, **fields) -> DocumentRow:
        """Add a row directly, bypassing ingestion"""
        defaults = {
            "tenant_id": "tenant-a",
            "name": "Document",
            "description": None,
            "source_filename": "document.txt",
            "knowledge_base_ids": [],
            "chunk_index": 0,
            "total_chunks": 1,
            "chunk_text": "",
            "parent_id": None,
            "embedding": None,
            "deleted": False,
        }
        defaults.update(fields)
        return self.add(DocumentRow(id=uuid.uuid4(), **defaults))


class StaticEmbeddingProvider(EmbeddingProvider):
    """Returns preset vectors by text, a default vector otherwise"""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, default=None):
        self.vectors = vectors or {}
        self.default = default or [1.0, 0.0, 0.0]
        self.calls = []

    @property
    def dimension(self) -> int:
        return len(self.default)

    def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        return list(self.vectors.get(text, self.default))


class FailingEmbeddingProvider(HashEmbeddingProvider):
    """Hash provider that raises for texts matching a predicate"""

    def __init__(self, should_fail, error_cls=EmbeddingProviderError):
        super().__init__()
        self.should_fail = should_fail
        self.error_cls = error_cls

    def embed(self, text: str) -> List[float]:
        if self.should_fail(text):
            raise self.error_cls("provider unavailable")
        return super().embed(text)


def filler_text(length: int) -> str:
    """Sentence-free text whose every window is distinct"""
    digits = "".join(f"{i:05d}" for i in range(length // 5 + 1))
    return digits[:length]


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def embedding_provider():
    return HashEmbeddingProvider()


@pytest.fixture
def ingestion_service(store, embedding_provider):
    """Create ingestion service backed by the in-memory store"""
    return IngestionService(store, embedding_provider)


@pytest.fixture
def retriever(store, embedding_provider):
    return HybridRetriever(store, embedding_provider)


@pytest.fixture
def client(store, embedding_provider) -> Generator:
    """Create test client wired to the in-memory store"""
    app.dependency_overrides[documents.get_services] = lambda: {
        "ingestion": IngestionService(store, embedding_provider),
    }
    app.dependency_overrides[search.get_services] = lambda: {
        "retriever": HybridRetriever(store, embedding_provider),
    }
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def sample_document():
    """Sample ingestion payload"""
    return {
        "tenant_id": "tenant-a",
        "name": "Employee Handbook",
        "source_filename": "handbook.txt",
        "description": "HR policies",
        "content": "Vacation requests must be filed two weeks in advance. Remote work is allowed on Fridays.",
        "knowledge_base_ids": ["kb-hr"],
    }


@pytest.fixture
def filler():
    return filler_text


@pytest.fixture
def make_static_provider():
    return StaticEmbeddingProvider


@pytest.fixture
def make_failing_provider():
    return FailingEmbeddingProvider
