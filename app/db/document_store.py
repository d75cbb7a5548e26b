"""Tenant-scoped row store for documents and their chunks"""
import uuid
from typing import Collection, List, Optional, Sequence, Tuple

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db.models import DocumentRow


class DocumentStoreError(Exception):
    """A row store read or write failed"""


class DocumentStore:
    """
    Every query is filtered by tenant_id. Reads only return rows that are not
    soft-deleted.
    """

    def __init__(self, db: Session):
        self.db = db

    def _active(self, tenant_id: str):
        return self.db.query(DocumentRow).filter(
            DocumentRow.tenant_id == tenant_id,
            DocumentRow.deleted.is_(False),
        )

    def get(self, tenant_id: str, document_id: uuid.UUID) -> Optional[DocumentRow]:
        try:
            return self._active(tenant_id).filter(DocumentRow.id == document_id).one_or_none()
        except SQLAlchemyError as e:
            raise DocumentStoreError(f"Failed to load document {document_id}: {e}") from e

    def find_active_root(
        self,
        tenant_id: str,
        name: Optional[str] = None,
        source_filename: Optional[str] = None,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> Optional[DocumentRow]:
        """Find a non-deleted root document with the given name or filename"""
        query = self._active(tenant_id).filter(DocumentRow.parent_id.is_(None))
        if name is not None:
            query = query.filter(DocumentRow.name == name)
        if source_filename is not None:
            query = query.filter(DocumentRow.source_filename == source_filename)
        if exclude_id is not None:
            query = query.filter(DocumentRow.id != exclude_id)
        try:
            return query.first()
        except SQLAlchemyError as e:
            raise DocumentStoreError(f"Failed to check for duplicates: {e}") from e

    def list_roots(
        self, tenant_id: str, offset: int, limit: int, search: Optional[str] = None
    ) -> Tuple[List[DocumentRow], int]:
        """Page through root documents, newest first"""
        query = self._active(tenant_id).filter(DocumentRow.parent_id.is_(None))
        if search:
            query = query.filter(
                or_(
                    DocumentRow.name.icontains(search, autoescape=True),
                    DocumentRow.description.icontains(search, autoescape=True),
                    DocumentRow.source_filename.icontains(search, autoescape=True),
                )
            )
        try:
            total = query.count()
            rows = (
                query.order_by(DocumentRow.created_at.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            raise DocumentStoreError(f"Failed to list documents: {e}") from e
        return rows, total

    def list_chunks(self, tenant_id: str, root_id: uuid.UUID) -> List[DocumentRow]:
        """Child chunks of a root, ordered by chunk_index"""
        try:
            return (
                self._active(tenant_id)
                .filter(DocumentRow.parent_id == root_id)
                .order_by(DocumentRow.chunk_index)
                .all()
            )
        except SQLAlchemyError as e:
            raise DocumentStoreError(f"Failed to list chunks of {root_id}: {e}") from e

    def add(self, row: DocumentRow) -> DocumentRow:
        """Insert and commit a single row"""
        try:
            self.db.add(row)
            self.db.commit()
            self.db.refresh(row)
            return row
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DocumentStoreError(f"Failed to insert document row: {e}") from e

    def save(self, row: DocumentRow) -> DocumentRow:
        """Commit pending changes on a loaded row"""
        try:
            self.db.commit()
            self.db.refresh(row)
            return row
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DocumentStoreError(f"Failed to update document {row.id}: {e}") from e

    def soft_delete(self, tenant_id: str, document_id: uuid.UUID) -> int:
        """Flag a row and its direct children as deleted; returns rows affected"""
        try:
            result = self.db.execute(
                update(DocumentRow)
                .where(
                    DocumentRow.tenant_id == tenant_id,
                    DocumentRow.deleted.is_(False),
                    or_(DocumentRow.id == document_id, DocumentRow.parent_id == document_id),
                )
                .values(deleted=True)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            return result.rowcount
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DocumentStoreError(f"Failed to delete document {document_id}: {e}") from e

    def search_chunk_text(self, tenant_id: str, term: str, limit: int) -> List[DocumentRow]:
        """Case-insensitive substring scan of chunk_text"""
        try:
            return (
                self._active(tenant_id)
                .filter(DocumentRow.chunk_text.icontains(term, autoescape=True))
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            raise DocumentStoreError(f"Text search for '{term}' failed: {e}") from e

    def semantic_candidates(
        self,
        tenant_id: str,
        query_embedding: Sequence[float],
        limit: int,
        exclude_ids: Collection[uuid.UUID] = (),
        knowledge_base_ids: Optional[Sequence[str]] = None,
    ) -> List[DocumentRow]:
        """Rows with embeddings, nearest to the query first"""
        query = self._active(tenant_id).filter(DocumentRow.embedding.isnot(None))
        if exclude_ids:
            query = query.filter(DocumentRow.id.notin_(list(exclude_ids)))
        if knowledge_base_ids:
            query = query.filter(DocumentRow.knowledge_base_ids.overlap(list(knowledge_base_ids)))
        try:
            return (
                query.order_by(DocumentRow.embedding.cosine_distance(query_embedding))
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            raise DocumentStoreError(f"Semantic candidate fetch failed: {e}") from e
