"""Document ingestion service: chunking, embedding and row persistence"""
import logging
import math
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from app.config import settings
from app.db.document_store import DocumentStore, DocumentStoreError
from app.db.models import DocumentRow
from app.models.schemas import (
    DocumentCreate,
    DocumentOut,
    DocumentPage,
    DocumentUpdate,
    IngestionResult,
    Pagination,
    RootDocument,
)
from app.services.chunking import ChunkingService, TextChunk, chunk_statistics, chunking_service
from app.services.embedding import (
    EmbeddingProvider,
    EmbeddingProviderError,
    EmbeddingTimeoutError,
)
from app.services.errors import DocumentServiceError, ErrorCode

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
SEMANTIC_FIELDS = ("name", "description", "source_filename", "content")


def build_document_text(
    name: str,
    description: Optional[str],
    source_filename: str,
    content: Optional[str],
) -> str:
    """Combine metadata and content into the text that gets chunked and embedded"""
    header = "\n".join(part for part in (name, description, source_filename) if part)
    if content:
        return f"{header}\n\n{content}"
    return header


class IngestionService:
    def __init__(
        self,
        store: DocumentStore,
        embedding_provider: EmbeddingProvider,
        chunker: Optional[ChunkingService] = None,
        max_concurrency: Optional[int] = None,
    ):
        self.store = store
        self.embedding_provider = embedding_provider
        self.chunker = chunker or chunking_service
        self.max_concurrency = max_concurrency or settings.ingestion_max_concurrency

    def create_document(self, document: DocumentCreate) -> IngestionResult:
        """
        Store a document as a single row, or as a root plus child chunk rows

        The root is written first and its failure aborts the ingestion. Child
        chunks are best-effort: each failure is logged and reported in the
        result instead of aborting the rest.
        """
        self._check_duplicates(document.tenant_id, document.name, document.source_filename)

        full_text = build_document_text(
            document.name, document.description, document.source_filename, document.content
        )
        chunks = self.chunker.chunk_text(full_text)
        stats = chunk_statistics(chunks)
        total_chunks = max(len(chunks), 1)
        logger.info(
            f"Ingesting '{document.name}' for tenant {document.tenant_id}: "
            f"{len(full_text)} chars, {stats.count} chunks (avg {stats.avg_size}, "
            f"min {stats.min_size}, max {stats.max_size})"
        )

        root_embedding = self._embed_or_fail(full_text)
        root = self._new_row(
            document,
            chunk_index=0,
            total_chunks=total_chunks,
            chunk_text=chunks[0].text if total_chunks > 1 else full_text,
            embedding=root_embedding,
        )
        root.content = document.content
        root = self._add_or_fail(root)

        failed = []
        if total_chunks > 1:
            failed = self._create_children(document, root, chunks[1:])

        persisted = total_chunks - len(failed)
        if failed:
            logger.warning(
                f"Document {root.id}: {persisted}/{total_chunks} chunks persisted, "
                f"failed indices {failed}"
            )

        return IngestionResult(
            document=DocumentOut.model_validate(root),
            total_chunks=total_chunks,
            chunks_persisted=persisted,
            failed_chunks=failed,
            complete=not failed,
            chunk_stats=stats,
        )

    def _create_children(
        self, document: DocumentCreate, root: DocumentRow, chunks: List[TextChunk]
    ) -> List[int]:
        """Embed child chunks concurrently, insert them one by one; return failed indices"""
        workers = min(self.max_concurrency, len(chunks))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                executor.submit(self.embedding_provider.embed, chunk.text) for chunk in chunks
            ]

            failed = []
            for chunk, future in zip(chunks, futures):
                try:
                    embedding = future.result()
                    child = self._new_row(
                        document,
                        chunk_index=chunk.index,
                        total_chunks=root.total_chunks,
                        chunk_text=chunk.text,
                        embedding=embedding,
                    )
                    child.parent_id = root.id
                    self.store.add(child)
                except (EmbeddingProviderError, DocumentStoreError) as e:
                    logger.error(f"Failed to store chunk {chunk.index} of document {root.id}: {e}")
                    failed.append(chunk.index)

        return failed

    def _new_row(
        self,
        document: DocumentCreate,
        chunk_index: int,
        total_chunks: int,
        chunk_text: str,
        embedding: List[float],
    ) -> DocumentRow:
        return DocumentRow(
            id=uuid.uuid4(),
            tenant_id=document.tenant_id,
            name=document.name,
            description=document.description,
            source_filename=document.source_filename,
            knowledge_base_ids=list(document.knowledge_base_ids),
            embedding=embedding,
            chunk_index=chunk_index,
            total_chunks=total_chunks,
            chunk_text=chunk_text,
            deleted=False,
        )

    def get_document(self, tenant_id: str, document_id: uuid.UUID) -> DocumentRow:
        try:
            row = self.store.get(tenant_id, document_id)
        except DocumentStoreError as e:
            raise DocumentServiceError(ErrorCode.DATABASE_ERROR, str(e)) from e
        if row is None:
            raise DocumentServiceError(ErrorCode.NOT_FOUND, "Document not found")
        return row

    def get_document_tree(self, tenant_id: str, document_id: uuid.UUID) -> RootDocument:
        """Root document with its chunk ids ordered by chunk_index"""
        root = self.get_document(tenant_id, document_id)
        if not root.is_root:
            raise DocumentServiceError(
                ErrorCode.VALIDATION_ERROR, "Document is a chunk, not a root document"
            )

        children = []
        if root.total_chunks > 1:
            try:
                children = self.store.list_chunks(tenant_id, root.id)
            except DocumentStoreError as e:
                raise DocumentServiceError(ErrorCode.DATABASE_ERROR, str(e)) from e

        # The root row is chunk 0
        chunk_ids = [root.id] + [child.id for child in children]
        expected = list(range(root.total_chunks))
        indices = [root.chunk_index] + [child.chunk_index for child in children]

        return RootDocument(
            document=DocumentOut.model_validate(root),
            chunk_ids=chunk_ids,
            total_chunks=root.total_chunks,
            complete=indices == expected,
        )

    def list_documents(
        self,
        tenant_id: str,
        page: int = 1,
        limit: int = 10,
        search: Optional[str] = None,
    ) -> DocumentPage:
        if page < 1:
            raise DocumentServiceError(ErrorCode.VALIDATION_ERROR, "Page must be greater than 0")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise DocumentServiceError(
                ErrorCode.VALIDATION_ERROR, f"Limit must be between 1 and {MAX_PAGE_SIZE}"
            )

        search = search.strip() if search else None
        try:
            rows, total = self.store.list_roots(tenant_id, (page - 1) * limit, limit, search)
        except DocumentStoreError as e:
            raise DocumentServiceError(ErrorCode.DATABASE_ERROR, str(e)) from e

        total_pages = math.ceil(total / limit)
        return DocumentPage(
            documents=[DocumentOut.model_validate(row) for row in rows],
            pagination=Pagination(
                current_page=page,
                total_pages=total_pages,
                total_items=total,
                items_per_page=limit,
                has_next_page=page < total_pages,
                has_previous_page=page > 1,
            ),
        )

    def update_document(
        self, tenant_id: str, document_id: uuid.UUID, changes: DocumentUpdate
    ) -> DocumentRow:
        """
        Apply a partial update to a single row

        Changing a semantic field regenerates this row's embedding only. The
        document is never re-chunked and sibling rows are left untouched.
        """
        row = self.get_document(tenant_id, document_id)
        fields = changes.model_dump(exclude_unset=True)

        if row.is_root:
            self._check_duplicates(
                tenant_id, fields.get("name"), fields.get("source_filename"), exclude_id=row.id
            )

        for field in ("name", "source_filename", "knowledge_base_ids"):
            if fields.get(field) is not None:
                setattr(row, field, fields[field])
        if "description" in fields:
            description = (fields["description"] or "").strip()
            row.description = description or None
        if "content" in fields and row.is_root:
            row.content = fields["content"]

        if any(field in fields for field in SEMANTIC_FIELDS):
            if row.is_root:
                text = build_document_text(row.name, row.description, row.source_filename, row.content)
                if row.total_chunks == 1:
                    row.chunk_text = text
            else:
                text = row.chunk_text or ""
            row.embedding = self._embed_or_fail(text)

        try:
            return self.store.save(row)
        except DocumentStoreError as e:
            raise DocumentServiceError(ErrorCode.DATABASE_ERROR, str(e)) from e

    def delete_document(self, tenant_id: str, document_id: uuid.UUID) -> int:
        """Soft-delete a row and every chunk that references it; returns rows flagged"""
        self.get_document(tenant_id, document_id)
        try:
            deleted = self.store.soft_delete(tenant_id, document_id)
        except DocumentStoreError as e:
            raise DocumentServiceError(ErrorCode.DATABASE_ERROR, str(e)) from e
        logger.info(f"Soft-deleted document {document_id} ({deleted} rows)")
        return deleted

    def _check_duplicates(
        self,
        tenant_id: str,
        name: Optional[str],
        source_filename: Optional[str],
        exclude_id: Optional[uuid.UUID] = None,
    ):
        try:
            if name and self.store.find_active_root(tenant_id, name=name, exclude_id=exclude_id):
                raise DocumentServiceError(
                    ErrorCode.DUPLICATE_NAME, "A document with this name already exists"
                )
            if source_filename and self.store.find_active_root(
                tenant_id, source_filename=source_filename, exclude_id=exclude_id
            ):
                raise DocumentServiceError(
                    ErrorCode.DUPLICATE_FILENAME, "A document with this file name already exists"
                )
        except DocumentStoreError as e:
            raise DocumentServiceError(ErrorCode.DATABASE_ERROR, str(e)) from e

    def _embed_or_fail(self, text: str) -> List[float]:
        try:
            return self.embedding_provider.embed(text)
        except EmbeddingTimeoutError as e:
            raise DocumentServiceError(ErrorCode.TIMEOUT_ERROR, str(e)) from e
        except EmbeddingProviderError as e:
            raise DocumentServiceError(ErrorCode.FILE_PROCESSING_ERROR, str(e)) from e

    def _add_or_fail(self, row: DocumentRow) -> DocumentRow:
        try:
            return self.store.add(row)
        except DocumentStoreError as e:
            raise DocumentServiceError(ErrorCode.DATABASE_ERROR, str(e)) from e
