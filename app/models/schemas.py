"""Request/response schemas for the document API"""
import uuid
from datetime import datetime
from typing import Any, List, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from app.services.chunking import ChunkStats


def _strip_required(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be empty")
    return value


# Request/Response Schemas
class DocumentCreate(BaseModel):
    """Document ingestion request"""

    tenant_id: str = Field(..., description="Owning tenant", min_length=1)
    name: str = Field(..., description="Document name, unique per tenant", max_length=255)
    source_filename: str = Field(
        ..., description="Original file name, unique per tenant", max_length=500
    )
    description: Optional[str] = Field(None, description="Free-text description")
    content: Optional[str] = Field(None, description="Extracted plain text of the document")
    knowledge_base_ids: List[str] = Field(
        default_factory=list, description="Knowledge bases this document belongs to"
    )

    check_required = field_validator("tenant_id", "name", "source_filename")(
        _strip_required
    )

    @field_validator("description")
    @classmethod
    def empty_description_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            value = value.strip()
        return value or None


class DocumentUpdate(BaseModel):
    """Partial document update; at least one field is required"""

    name: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    source_filename: Optional[str] = Field(None, max_length=500)
    content: Optional[str] = None
    knowledge_base_ids: Optional[List[str]] = None

    @field_validator("name", "source_filename")
    @classmethod
    def not_blank(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _strip_required(value)

    @model_validator(mode="after")
    def at_least_one_field(self) -> "DocumentUpdate":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided for update")
        return self


class DocumentOut(BaseModel):
    """Document row as returned to callers (without vectors or full text)"""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: str
    name: str
    description: Optional[str] = None
    source_filename: str
    knowledge_base_ids: List[str] = Field(default_factory=list)
    parent_id: Optional[uuid.UUID] = None
    chunk_index: int
    total_chunks: int
    created_at: datetime
    updated_at: Optional[datetime] = None


class IngestionResult(BaseModel):
    """Outcome of ingesting one document, including partial chunk failures"""

    document: DocumentOut
    total_chunks: int
    chunks_persisted: int
    failed_chunks: List[int] = Field(default_factory=list)
    complete: bool
    chunk_stats: ChunkStats


class RootDocument(BaseModel):
    """A root document with the ordered ids of all its chunks (index 0 is the root)"""

    document: DocumentOut
    chunk_ids: List[uuid.UUID]
    total_chunks: int
    complete: bool


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int
    has_next_page: bool
    has_previous_page: bool


class DocumentPage(BaseModel):
    documents: List[DocumentOut]
    pagination: Pagination


class SearchRequest(BaseModel):
    """Knowledge base search request"""

    tenant_id: str = Field(..., description="Owning tenant", min_length=1)
    query: str = Field(..., description="Natural language query")
    knowledge_base_ids: List[str] = Field(
        default_factory=list, description="Restrict results to these knowledge bases"
    )
    search_terms: Optional[List[str]] = Field(
        None,
        description="Exact terms to match lexically, e.g. ['Art. 77']",
        validation_alias=AliasChoices("search_terms", "search_term"),
    )
    limit: Optional[int] = Field(None, description="Maximum number of results (1-100)")

    check_required = field_validator("tenant_id", "query")(_strip_required)

    @field_validator("search_terms", mode="before")
    @classmethod
    def single_term_to_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value


class SearchResult(BaseModel):
    """A ranked chunk returned by search"""

    id: uuid.UUID
    name: str
    description: Optional[str] = None
    source_filename: str
    chunk_index: int
    total_chunks: int
    parent_id: Optional[uuid.UUID] = None
    chunk_text: Optional[str] = None
    similarity: Optional[float] = None
    combined_score: Optional[float] = None
    text_match: bool
    matched_term: Optional[str] = None
    created_at: datetime


class SearchResponse(BaseModel):
    success: bool = True
    data: List[SearchResult]
    message: str
    search_terms: List[str] = Field(default_factory=list)


class ApiResponse(BaseModel):
    """Standard success envelope"""

    success: bool = True
    data: Any = None
    message: str


class ErrorResponse(BaseModel):
    """Standard failure envelope"""

    success: bool = False
    message: str
    data: None = None
    error: str
