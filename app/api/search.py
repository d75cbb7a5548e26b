"""Knowledge base search API"""

from typing import Dict

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.db.database import get_db
from app.db.document_store import DocumentStore
from app.models.schemas import SearchRequest, SearchResponse
from app.services.retrieval import HybridRetriever, resolve_search_terms

router = APIRouter()


def get_services(request: Request, db: Session = Depends(get_db)) -> Dict:
    """Get required services for search"""
    return {
        "retriever": HybridRetriever(DocumentStore(db), request.app.state.embedding_provider),
    }


@router.post("", response_model=SearchResponse)
def hybrid_search(search_request: SearchRequest, services: Dict = Depends(get_services)):
    """
    Search a tenant's knowledge base

    This endpoint:
    1. Resolves exact terms (explicit, or article/law references in the query)
    2. Finds chunks containing those terms and scores them above everything else
    3. Fills the rest with the most semantically similar chunks
    """
    results = services["retriever"].search(
        search_request.tenant_id,
        search_request.query,
        knowledge_base_ids=search_request.knowledge_base_ids,
        search_terms=search_request.search_terms,
        limit=search_request.limit,
    )
    return SearchResponse(
        data=results,
        message=f"{len(results)} document(s) found",
        search_terms=resolve_search_terms(search_request.query, search_request.search_terms),
    )


@router.post("/text", response_model=SearchResponse)
def text_search(search_request: SearchRequest, services: Dict = Depends(get_services)):
    """Search by exact text only, without embeddings"""
    results = services["retriever"].text_search(
        search_request.tenant_id,
        search_request.query,
        knowledge_base_ids=search_request.knowledge_base_ids,
        search_terms=search_request.search_terms,
        limit=search_request.limit,
    )
    return SearchResponse(
        data=results,
        message=f"{len(results)} document(s) found",
        search_terms=resolve_search_terms(search_request.query, search_request.search_terms),
    )
