"""PostgreSQL database models"""
import uuid
from datetime import datetime, timezone

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY, UUID

from app.config import settings
from app.db.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentRow(Base):
    """
    A knowledge base document or one of its chunks

    Rows with parent_id NULL are root documents and hold chunk 0; rows with a
    parent_id are chunks 1..N-1 of that root.
    """
    __tablename__ = "documents"
    __table_args__ = (
        Index(
            "uq_documents_tenant_root_name",
            "tenant_id",
            "name",
            unique=True,
            postgresql_where=text("parent_id IS NULL AND NOT deleted"),
        ),
        Index(
            "uq_documents_tenant_root_filename",
            "tenant_id",
            "source_filename",
            unique=True,
            postgresql_where=text("parent_id IS NULL AND NOT deleted"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(255), nullable=False, index=True)

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    source_filename = Column(String(500), nullable=False)
    knowledge_base_ids = Column(ARRAY(String), nullable=False, default=list)

    # Full extracted text, kept on the root only
    content = Column(Text, nullable=True)
    embedding = Column(Vector(settings.embedding_dimension), nullable=True)

    parent_id = Column(UUID(as_uuid=True), ForeignKey("documents.id"), nullable=True, index=True)
    chunk_index = Column(Integer, nullable=False, default=0)
    total_chunks = Column(Integer, nullable=False, default=1)
    chunk_text = Column(Text, nullable=True)

    deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    @property
    def is_root(self) -> bool:
        return self.parent_id is None
