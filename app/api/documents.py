"""Document ingestion and management API"""
import uuid
from typing import Dict, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.db.database import get_db
from app.db.document_store import DocumentStore
from app.models.schemas import ApiResponse, DocumentCreate, DocumentOut, DocumentUpdate
from app.services.errors import DocumentServiceError, ErrorCode
from app.services.ingestion import IngestionService
from app.services.text_extraction import TextExtractionError, extract_text

router = APIRouter()


def get_services(request: Request, db: Session = Depends(get_db)) -> Dict:
    """Get all required services"""
    return {
        "ingestion": IngestionService(DocumentStore(db), request.app.state.embedding_provider),
    }


def _ingestion_message(result) -> str:
    if result.complete:
        return "Document created successfully"
    return f"Document created with {result.chunks_persisted}/{result.total_chunks} chunks persisted"


@router.post("", status_code=201, response_model=ApiResponse)
def create_document(document: DocumentCreate, services: Dict = Depends(get_services)):
    """
    Ingest a document from already-extracted text

    Documents longer than the chunk size are split into a root row (chunk 0)
    and child rows for the remaining chunks.
    """
    result = services["ingestion"].create_document(document)
    return ApiResponse(data=result, message=_ingestion_message(result))


@router.post("/upload", status_code=201, response_model=ApiResponse)
def upload_document(
    tenant_id: str = Form(...),
    name: str = Form(...),
    description: Optional[str] = Form(None),
    knowledge_base_ids: Optional[str] = Form(None, description="Comma-separated ids"),
    file: UploadFile = File(...),
    services: Dict = Depends(get_services),
):
    """Upload a file, extract its text and ingest it"""
    try:
        content = extract_text(file.filename or "", file.file.read())
    except TextExtractionError as e:
        raise DocumentServiceError(ErrorCode.FILE_PROCESSING_ERROR, str(e)) from e

    base_ids = [kb.strip() for kb in (knowledge_base_ids or "").split(",") if kb.strip()]
    try:
        document = DocumentCreate(
            tenant_id=tenant_id,
            name=name,
            description=description,
            source_filename=file.filename or "",
            content=content,
            knowledge_base_ids=base_ids,
        )
    except ValidationError as e:
        raise DocumentServiceError(ErrorCode.VALIDATION_ERROR, str(e)) from e
    result = services["ingestion"].create_document(document)
    return ApiResponse(data=result, message=_ingestion_message(result))


@router.get("", response_model=ApiResponse)
def list_documents(
    tenant_id: str = Query(..., min_length=1),
    page: int = Query(1),
    limit: int = Query(10),
    search: Optional[str] = Query(None),
    services: Dict = Depends(get_services),
):
    """List root documents with pagination"""
    result = services["ingestion"].list_documents(tenant_id, page, limit, search)
    return ApiResponse(data=result, message="Documents listed successfully")


@router.get("/{document_id}", response_model=ApiResponse)
def get_document(
    document_id: uuid.UUID,
    tenant_id: str = Query(..., min_length=1),
    services: Dict = Depends(get_services),
):
    row = services["ingestion"].get_document(tenant_id, document_id)
    return ApiResponse(data=DocumentOut.model_validate(row), message="Document found")


@router.get("/{document_id}/chunks", response_model=ApiResponse)
def get_document_chunks(
    document_id: uuid.UUID,
    tenant_id: str = Query(..., min_length=1),
    services: Dict = Depends(get_services),
):
    """Root document with the ordered ids of its chunks"""
    tree = services["ingestion"].get_document_tree(tenant_id, document_id)
    return ApiResponse(data=tree, message="Document chunks found")


@router.put("/{document_id}", response_model=ApiResponse)
def update_document(
    document_id: uuid.UUID,
    changes: DocumentUpdate,
    tenant_id: str = Query(..., min_length=1),
    services: Dict = Depends(get_services),
):
    row = services["ingestion"].update_document(tenant_id, document_id, changes)
    return ApiResponse(data=DocumentOut.model_validate(row), message="Document updated successfully")


@router.delete("/{document_id}", response_model=ApiResponse)
def delete_document(
    document_id: uuid.UUID,
    tenant_id: str = Query(..., min_length=1),
    services: Dict = Depends(get_services),
):
    """Soft-delete a document; deleting a root also deletes its chunks"""
    deleted = services["ingestion"].delete_document(tenant_id, document_id)
    return ApiResponse(data={"deleted_rows": deleted}, message="Document deleted successfully")
