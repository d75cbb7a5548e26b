from unittest.mock import MagicMock

import pytest

from app.db.document_store import DocumentStoreError
from app.models.schemas import DocumentCreate
from app.services.embedding import EmbeddingProvider
from app.services.errors import DocumentServiceError, ErrorCode
from app.services.ingestion import IngestionService
from app.services.retrieval import (
    HybridRetriever,
    clamp_limit,
    expand_term_variants,
    extract_search_terms,
    resolve_search_terms,
)

QUERY_VECTOR = [1.0, 0.0, 0.0]
ORTHOGONAL = [0.0, 1.0, 0.0]


@pytest.fixture
def static_retriever(store, make_static_provider):
    """Retriever whose query embedding is always [1, 0, 0]"""
    provider = make_static_provider(default=QUERY_VECTOR)
    retriever = HybridRetriever(store, provider)
    retriever.provider = provider
    return retriever


class TestSearchTerms:
    def test_extract_article_references(self):
        terms = extract_search_terms("O que diz o Art. 77 e o artigo 12?")

        assert terms == ["Art. 77", "artigo 12"]

    def test_extract_law_references(self):
        terms = extract_search_terms("Lei 8666 e Lei Complementar 123")

        assert terms == ["Lei 8666", "Lei Complementar 123"]

    def test_extract_nothing(self):
        assert extract_search_terms("vacation policy") == []

    def test_explicit_terms_win(self):
        assert resolve_search_terms("Art. 5", ["remote work", "  "]) == ["remote work"]

    def test_blank_explicit_terms_fall_back(self):
        assert resolve_search_terms("see art 5", ["", " "]) == ["art 5"]

    def test_variants_of_abbreviation(self):
        assert expand_term_variants("Art. 77") == ["Art. 77", "art. 77", "art 77", "artigo 77"]

    def test_variants_of_full_word(self):
        assert expand_term_variants("Artigo 12") == ["Artigo 12", "art. 12", "art 12", "Art. 12"]

    def test_variants_of_other_terms(self):
        assert expand_term_variants("Lei 8666") == ["Lei 8666"]
        assert expand_term_variants("remote work") == ["remote work"]

    @pytest.mark.parametrize("limit, expected", [(None, 10), (0, 1), (-5, 1), (5, 5), (500, 100)])
    def test_clamp_limit(self, limit, expected):
        assert clamp_limit(limit) == expected


class TestHybridSearch:
    def test_text_match_outranks_semantic(self, static_retriever, store):
        """Test a lexical hit with zero similarity still beats a perfect semantic hit"""
        lexical = store.insert(name="Law", chunk_text="Art. 77 governs zoning.", embedding=ORTHOGONAL)
        semantic = store.insert(name="Other", chunk_text="Unrelated text", embedding=QUERY_VECTOR)

        results = static_retriever.search("tenant-a", "what does Art. 77 say")

        assert [r.id for r in results] == [lexical.id, semantic.id]
        assert results[0].text_match is True
        assert results[0].matched_term == "Art. 77"
        assert results[0].similarity == pytest.approx(0.0)
        assert results[0].combined_score == pytest.approx(1.0)
        assert results[1].text_match is False
        assert results[1].matched_term is None
        assert results[1].combined_score == pytest.approx(0.5)

    def test_lexical_score_includes_similarity(self, static_retriever, store):
        store.insert(chunk_text="See Art. 77.", embedding=QUERY_VECTOR)

        results = static_retriever.search("tenant-a", "Art. 77")

        assert results[0].combined_score == pytest.approx(1.5)

    def test_semantic_only(self, static_retriever, store):
        far = store.insert(name="Far", embedding=ORTHOGONAL)
        near = store.insert(name="Near", embedding=QUERY_VECTOR)
        middle = store.insert(name="Middle", embedding=[0.5, 0.5, 0.0])

        results = static_retriever.search("tenant-a", "vacation policy")

        assert [r.id for r in results] == [near.id, middle.id, far.id]
        assert not any(r.text_match for r in results)
        assert results[1].combined_score == pytest.approx(0.5 * 0.7071, abs=1e-3)
        assert store.search_calls == []

    def test_rows_without_embedding_are_skipped(self, static_retriever, store):
        store.insert(chunk_text="Art. 77", embedding=None)

        assert static_retriever.search("tenant-a", "Art. 77") == []

    def test_malformed_embeddings_are_skipped(self, static_retriever, store):
        store.insert(name="Broken", chunk_text="Art. 77 broken", embedding="not json")
        store.insert(name="Short", chunk_text="Art. 77 short", embedding=[1.0, 0.0])
        good = store.insert(name="Good", chunk_text="Art. 77 good", embedding="[1.0, 0.0, 0.0]")

        results = static_retriever.search("tenant-a", "Art. 77")

        assert [r.id for r in results] == [good.id]
        assert results[0].similarity == pytest.approx(1.0)

    def test_rows_decoded_against_provider_dimension(self, store):
        provider = MagicMock(spec=EmbeddingProvider)
        provider.dimension = 3
        provider.embed_query.return_value = QUERY_VECTOR
        matching = store.insert(name="Matching", embedding=[0.5, 0.5, 0.0])
        store.insert(name="Stale", embedding=[1.0, 0.0, 0.0, 0.0])

        results = HybridRetriever(store, provider).search("tenant-a", "vacation policy")

        assert [r.id for r in results] == [matching.id]

    def test_knowledge_base_filter(self, static_retriever, store):
        hr = store.insert(name="HR", chunk_text="Art. 77", knowledge_base_ids=["kb-hr"], embedding=QUERY_VECTOR)
        store.insert(name="Legal", chunk_text="Art. 77", knowledge_base_ids=["kb-legal"], embedding=QUERY_VECTOR)
        store.insert(name="None", chunk_text="other", embedding=QUERY_VECTOR)
        both = store.insert(name="Both", chunk_text="other", knowledge_base_ids=["kb-legal", "kb-hr"],
                            embedding=QUERY_VECTOR)

        results = static_retriever.search("tenant-a", "Art. 77", knowledge_base_ids=["kb-hr"])

        assert [r.id for r in results] == [hr.id, both.id]

    def test_tenant_isolation(self, static_retriever, store):
        store.insert(tenant_id="tenant-b", chunk_text="Art. 77", embedding=QUERY_VECTOR)

        assert static_retriever.search("tenant-a", "Art. 77") == []

    def test_deleted_rows_are_excluded(self, static_retriever, store):
        store.insert(chunk_text="Art. 77", embedding=QUERY_VECTOR, deleted=True)

        assert static_retriever.search("tenant-a", "Art. 77") == []

    def test_duplicate_term_hits_are_merged(self, static_retriever, store):
        row = store.insert(chunk_text="Art. 77 and Lei 8666", embedding=QUERY_VECTOR)

        results = static_retriever.search("tenant-a", "Art. 77 da Lei 8666")

        assert [r.id for r in results] == [row.id]
        assert results[0].matched_term == "Art. 77"
        assert store.search_calls == ["Art. 77", "Lei 8666"]

    def test_explicit_search_terms(self, static_retriever, store):
        row = store.insert(chunk_text="Remote work is allowed", embedding=ORTHOGONAL)

        results = static_retriever.search("tenant-a", "can I work from home", search_terms=["remote work"])

        assert results[0].id == row.id
        assert results[0].matched_term == "remote work"

    def test_candidates_per_term_cap(self, static_retriever, store):
        for i in range(25):
            store.insert(name=f"Doc {i}", chunk_text="Art. 5 applies", embedding=QUERY_VECTOR)

        results = static_retriever.search("tenant-a", "Art. 5", limit=100)

        assert sum(1 for r in results if r.text_match) == 20
        assert len(results) == 25

    def test_semantic_candidate_ceiling(self, static_retriever, store):
        for i in range(10):
            store.insert(name=f"Doc {i}", embedding=QUERY_VECTOR)

        hits = static_retriever._semantic_phase("tenant-a", QUERY_VECTOR, 2, set(), None)

        assert len(hits) == 4

    def test_limit(self, static_retriever, store):
        for i in range(5):
            store.insert(name=f"Doc {i}", embedding=QUERY_VECTOR)

        assert len(static_retriever.search("tenant-a", "anything", limit=3)) == 3

    def test_preview_is_truncated(self, static_retriever, store):
        store.insert(chunk_text="Art. 77 " + "x" * 800, embedding=QUERY_VECTOR)

        results = static_retriever.search("tenant-a", "Art. 77")

        assert len(results[0].chunk_text) == 500

    def test_query_embedding_failure(self, store, make_failing_provider):
        retriever = HybridRetriever(store, make_failing_provider(lambda text: True))

        with pytest.raises(DocumentServiceError) as exc_info:
            retriever.search("tenant-a", "anything")

        assert exc_info.value.code == ErrorCode.SEARCH_ERROR
        assert exc_info.value.status_code == 502

    def test_store_failure(self, static_retriever, store):
        store.search_chunk_text = MagicMock(side_effect=DocumentStoreError("connection lost"))

        with pytest.raises(DocumentServiceError) as exc_info:
            static_retriever.search("tenant-a", "Art. 77")

        assert exc_info.value.code == ErrorCode.DATABASE_ERROR


class TestTextSearch:
    def test_matches_variants(self, static_retriever, store):
        second = store.insert(name="B", chunk_text="conforme art 77", chunk_index=2, embedding=QUERY_VECTOR)
        first = store.insert(name="A", chunk_text="Art. 77 trata de zoneamento", chunk_index=1)
        store.insert(name="C", chunk_text="nothing here", chunk_index=0)

        results = static_retriever.text_search("tenant-a", "Artigo 77")

        assert [r.id for r in results] == [first.id, second.id]
        assert all(r.similarity is None and r.combined_score is None for r in results)
        assert all(r.matched_term == "Artigo 77" for r in results)
        assert static_retriever.provider.calls == []

    def test_query_used_as_term(self, static_retriever, store):
        row = store.insert(chunk_text="Remote work is allowed on Fridays")

        results = static_retriever.text_search("tenant-a", "remote work")

        assert [r.id for r in results] == [row.id]
        assert results[0].matched_term == "remote work"

    def test_knowledge_base_filter_and_limit(self, static_retriever, store):
        for i in range(4):
            store.insert(chunk_text="Lei 8666", knowledge_base_ids=["kb-1"], chunk_index=i)
        store.insert(chunk_text="Lei 8666", knowledge_base_ids=["kb-2"])

        results = static_retriever.text_search("tenant-a", "Lei 8666", knowledge_base_ids=["kb-1"], limit=3)

        assert [r.chunk_index for r in results] == [0, 1, 2]


class TestIngestedDocuments:
    def test_article_reference_finds_its_chunk(self, store, embedding_provider, filler):
        """Test an article in the fourth chunk of a long document ranks first"""
        content = filler(12000)
        content = content[:9500] + " Art. 77 " + content[9500:]
        ingestion = IngestionService(store, embedding_provider)
        created = ingestion.create_document(
            DocumentCreate(tenant_id="tenant-a", name="Lei Municipal", source_filename="lei.txt", content=content)
        )
        assert created.total_chunks == 5

        results = HybridRetriever(store, embedding_provider).search("tenant-a", "O que diz o Art. 77?")

        assert results[0].text_match is True
        assert results[0].chunk_index == 3
        assert results[0].parent_id == created.document.id
        assert results[0].combined_score >= 1.0
        assert sum(1 for r in results if r.text_match) == 1
        assert all(r.combined_score <= 0.5 for r in results[1:])

    def test_deleted_document_is_not_found(self, store, embedding_provider, sample_document):
        ingestion = IngestionService(store, embedding_provider)
        created = ingestion.create_document(DocumentCreate(**sample_document))
        ingestion.delete_document("tenant-a", created.document.id)

        results = HybridRetriever(store, embedding_provider).search("tenant-a", "vacation requests")

        assert results == []
