"""Hybrid lexical + semantic retrieval over document chunks"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from app.config import settings
from app.db.document_store import DocumentStore, DocumentStoreError
from app.db.models import DocumentRow
from app.models.schemas import SearchResult
from app.services.embedding import (
    EmbeddingDecodeError,
    EmbeddingProvider,
    EmbeddingProviderError,
    cosine_similarity,
    decode_embedding,
)
from app.services.errors import DocumentServiceError, ErrorCode

logger = logging.getLogger(__name__)

# "Art. 77", "art 5", "Artigo 12"
ARTICLE_PATTERN = re.compile(r"art\.?\s*\d+|artigo\s*\d+", re.IGNORECASE)
# "Lei 8666", "Lei Complementar 123"
LAW_PATTERN = re.compile(r"lei\s+(complementar\s+)?\d+", re.IGNORECASE)
NUMBER_PATTERN = re.compile(r"\d+")

# Lexical hits score in [1.0, 1.5], semantic hits in [0, 0.5]
TEXT_MATCH_BOOST = 1.0
SIMILARITY_WEIGHT = 0.5


@dataclass
class ScoredChunk:
    row: DocumentRow
    similarity: Optional[float]
    combined_score: Optional[float]
    text_match: bool
    matched_term: Optional[str] = None


def extract_search_terms(query: str) -> List[str]:
    """Pull article and law references out of a free-text query"""
    terms = [m.group(0) for m in ARTICLE_PATTERN.finditer(query)]
    terms.extend(m.group(0) for m in LAW_PATTERN.finditer(query))
    return terms


def resolve_search_terms(query: str, search_terms: Optional[Sequence[str]] = None) -> List[str]:
    """Use explicit terms verbatim when given, otherwise derive them from the query"""
    if search_terms:
        explicit = [term for term in search_terms if term and term.strip()]
        if explicit:
            return explicit
    return extract_search_terms(query)


def expand_term_variants(term: str) -> List[str]:
    """Spelling variants of an article reference; other terms are returned as-is"""
    variants = [term]
    number = NUMBER_PATTERN.search(term)
    if not number:
        return variants

    num = number.group(0)
    lowered = term.lower()
    if "artigo" in lowered:
        candidates = [f"art. {num}", f"art {num}", f"Art. {num}"]
    elif re.match(r"art\.?\s*\d+", lowered):
        candidates = [f"art. {num}", f"art {num}", f"artigo {num}", f"Art. {num}"]
    else:
        candidates = []

    for candidate in candidates:
        if candidate not in variants:
            variants.append(candidate)
    return variants


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return settings.search_default_limit
    return min(max(limit, 1), settings.search_max_limit)


def _matches_knowledge_bases(row: DocumentRow, knowledge_base_ids: Optional[Sequence[str]]) -> bool:
    if not knowledge_base_ids:
        return True
    row_ids = row.knowledge_base_ids or []
    return any(kb_id in row_ids for kb_id in knowledge_base_ids)


class HybridRetriever:
    """
    Ranks chunks by combining exact term matches with semantic similarity

    Lexical matches always outrank pure semantic matches because their score
    ranges do not overlap.
    """

    def __init__(
        self,
        store: DocumentStore,
        embedding_provider: EmbeddingProvider,
        candidates_per_term: Optional[int] = None,
        preview_chars: Optional[int] = None,
    ):
        self.store = store
        self.embedding_provider = embedding_provider
        self.candidates_per_term = candidates_per_term or settings.lexical_candidates_per_term
        self.preview_chars = preview_chars or settings.result_preview_chars

    def search(
        self,
        tenant_id: str,
        query_text: str,
        knowledge_base_ids: Optional[Sequence[str]] = None,
        search_terms: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[SearchResult]:
        """
        Run the hybrid search for a tenant

        Args:
            tenant_id: Owning tenant
            query_text: Natural language query
            knowledge_base_ids: Optional knowledge base filter
            search_terms: Explicit lexical terms; derived from the query when empty
            limit: Maximum results, clamped to [1, 100]

        Returns:
            Results ordered by combined score
        """
        limit = clamp_limit(limit)
        terms = resolve_search_terms(query_text, search_terms)
        logger.info(f"Hybrid search for tenant {tenant_id}: '{query_text}' terms={terms}")

        try:
            query_embedding = self.embedding_provider.embed_query(query_text)
        except EmbeddingProviderError as e:
            logger.error(f"Query embedding failed: {e}")
            raise DocumentServiceError(ErrorCode.SEARCH_ERROR, f"Search failed: {e}") from e

        try:
            text_hits = self._lexical_phase(tenant_id, terms, query_embedding, knowledge_base_ids)
            semantic_hits = self._semantic_phase(
                tenant_id,
                query_embedding,
                limit,
                exclude_ids={hit.row.id for hit in text_hits},
                knowledge_base_ids=knowledge_base_ids,
            )
        except DocumentStoreError as e:
            raise DocumentServiceError(ErrorCode.DATABASE_ERROR, str(e)) from e

        logger.info(f"Found {len(text_hits)} text matches, {len(semantic_hits)} semantic matches")

        # Stable sort keeps lexical hits ahead on equal scores
        ranked = sorted(text_hits + semantic_hits, key=lambda hit: hit.combined_score, reverse=True)
        return [self._to_result(hit) for hit in ranked[:limit]]

    def _lexical_phase(
        self,
        tenant_id: str,
        terms: List[str],
        query_embedding: List[float],
        knowledge_base_ids: Optional[Sequence[str]],
    ) -> List[ScoredChunk]:
        hits = []
        seen = set()

        # One term at a time
        for term in terms:
            rows = self.store.search_chunk_text(tenant_id, term, self.candidates_per_term)
            for row in rows:
                if row.id in seen or not _matches_knowledge_bases(row, knowledge_base_ids):
                    continue
                embedding = self._row_embedding(row, self.embedding_provider.dimension)
                if embedding is None:
                    continue
                similarity = cosine_similarity(query_embedding, embedding)
                seen.add(row.id)
                hits.append(
                    ScoredChunk(
                        row=row,
                        similarity=similarity,
                        combined_score=TEXT_MATCH_BOOST + similarity * SIMILARITY_WEIGHT,
                        text_match=True,
                        matched_term=term,
                    )
                )
        return hits

    def _semantic_phase(
        self,
        tenant_id: str,
        query_embedding: List[float],
        limit: int,
        exclude_ids: set,
        knowledge_base_ids: Optional[Sequence[str]],
    ) -> List[ScoredChunk]:
        rows = self.store.semantic_candidates(
            tenant_id,
            query_embedding,
            limit * 3,
            exclude_ids=exclude_ids,
            knowledge_base_ids=knowledge_base_ids,
        )

        hits = []
        for row in rows:
            if row.id in exclude_ids or not _matches_knowledge_bases(row, knowledge_base_ids):
                continue
            embedding = self._row_embedding(row, self.embedding_provider.dimension)
            if embedding is None:
                continue
            similarity = cosine_similarity(query_embedding, embedding)
            hits.append(
                ScoredChunk(
                    row=row,
                    similarity=similarity,
                    combined_score=similarity * SIMILARITY_WEIGHT,
                    text_match=False,
                )
            )

        hits.sort(key=lambda hit: hit.similarity, reverse=True)
        return hits[:limit * 2]

    def text_search(
        self,
        tenant_id: str,
        query_text: str,
        knowledge_base_ids: Optional[Sequence[str]] = None,
        search_terms: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[SearchResult]:
        """Substring-only search that never calls the embedding provider"""
        limit = clamp_limit(limit)
        terms = resolve_search_terms(query_text, search_terms) or [query_text]

        hits = []
        seen = set()
        try:
            for term in terms:
                for variant in expand_term_variants(term):
                    for row in self.store.search_chunk_text(
                        tenant_id, variant, self.candidates_per_term
                    ):
                        if row.id in seen or not _matches_knowledge_bases(row, knowledge_base_ids):
                            continue
                        seen.add(row.id)
                        hits.append(
                            ScoredChunk(
                                row=row,
                                similarity=None,
                                combined_score=None,
                                text_match=True,
                                matched_term=term,
                            )
                        )
        except DocumentStoreError as e:
            raise DocumentServiceError(ErrorCode.DATABASE_ERROR, str(e)) from e

        hits.sort(key=lambda hit: hit.row.chunk_index or 0)
        return [self._to_result(hit) for hit in hits[:limit]]

    def _row_embedding(self, row: DocumentRow, dimension: int) -> Optional[List[float]]:
        try:
            return decode_embedding(row.embedding, dimension)
        except EmbeddingDecodeError as e:
            logger.warning(f"Skipping document {row.id}: {e}")
            return None

    def _to_result(self, hit: ScoredChunk) -> SearchResult:
        row = hit.row
        return SearchResult(
            id=row.id,
            name=row.name,
            description=row.description,
            source_filename=row.source_filename,
            chunk_index=row.chunk_index,
            total_chunks=row.total_chunks,
            parent_id=row.parent_id,
            chunk_text=row.chunk_text[:self.preview_chars] if row.chunk_text else None,
            similarity=hit.similarity,
            combined_score=hit.combined_score,
            text_match=hit.text_match,
            matched_term=hit.matched_term,
            created_at=row.created_at,
        )
