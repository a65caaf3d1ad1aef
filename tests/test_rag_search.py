"""RAGSearcher / InMemoryVectorStore 검색 테스트."""

import pytest

from docembed.common.errors import NotFoundError, ValidationError
from docembed.embedding.embedder import EmbeddingClient
from docembed.embedding.rag_search import RAGSearcher
from docembed.storage.vector_store import (
    ChunkRecord,
    DocumentSource,
    EmbeddingStatus,
    InMemoryVectorStore,
    cosine_distance,
)

QUERY = "renewal pricing"
QUERY_VECTOR = [1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0]


def _vector(x, y):
    return [x, y, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0]


async def _seed(store):
    """계정 2개, 영업기회 2개, 문서 1개 + 텍스트 청크"""
    store.add_account(1, "Acme")
    store.add_account(2, "Globex")
    store.add_opportunity(10, "Acme renewal", "negotiation", account_id=1)
    store.add_opportunity(20, "Globex expansion", "discovery", account_id=2)
    store.add_document(100, "acme-contract.pdf", "pdf", opportunity_id=10)

    await store.insert_chunks([
        ChunkRecord("exact match", _vector(1.0, 0.0), 3, {"sourceType": "pdf", "chunkIndex": 0},
                    document_id=100, account_id=1, opportunity_id=10),
        ChunkRecord("close match", _vector(0.9, 0.1), 3, {"sourceType": "pdf", "chunkIndex": 1},
                    document_id=100, account_id=1, opportunity_id=10),
        ChunkRecord("globex note", _vector(0.8, 0.6), 3, {"sourceType": "email", "chunkIndex": 0},
                    account_id=2, opportunity_id=20),
        ChunkRecord("orthogonal", _vector(0.0, 1.0), 3, {"sourceType": "email", "chunkIndex": 0}),
    ])


@pytest.fixture
def store():
    return InMemoryVectorStore()


@pytest.fixture
def searcher(store, pipeline_config, fake_openai):
    fake_openai.vectors[QUERY] = QUERY_VECTOR
    embedder = EmbeddingClient(config=pipeline_config.openai, client=fake_openai)
    return RAGSearcher(store, embedder, max_top_k=100)


class TestSearch:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", ["", "   "])
    async def test_blank_query(self, searcher, fake_openai, query):
        """빈 쿼리는 임베딩 호출 없이 ValidationError."""
        with pytest.raises(ValidationError, match="Query is required"):
            await searcher.search(query)
        assert fake_openai.calls == []

    @pytest.mark.asyncio
    async def test_sorted_by_similarity(self, store, searcher):
        """유사도 내림차순, 최대 top_k개."""
        await _seed(store)

        results = await searcher.search(QUERY, top_k=3)

        assert [r.content for r in results] == ["exact match", "close match", "globex note"]
        similarities = [r.similarity for r in results]
        assert similarities == sorted(similarities, reverse=True)
        assert results[0].similarity == 1.0

    @pytest.mark.asyncio
    async def test_similarity_rounded_to_four_places(self, store, searcher):
        await _seed(store)

        results = await searcher.search(QUERY, top_k=2)

        expected = round(1 - cosine_distance(QUERY_VECTOR, _vector(0.9, 0.1)), 4)
        assert results[1].similarity == expected
        assert results[1].similarity == 0.9939

    @pytest.mark.asyncio
    async def test_filters_applied_before_ranking(self, store, searcher):
        """필터에 맞는 청크 안에서만 순위 계산."""
        await _seed(store)

        by_account = await searcher.search(QUERY, account_id=2)
        by_opportunity = await searcher.search(QUERY, opportunity_id=10)
        by_source = await searcher.search(QUERY, source_type="email")
        combined = await searcher.search(QUERY, account_id=1, source_type="email")

        assert [r.content for r in by_account] == ["globex note"]
        assert [r.content for r in by_opportunity] == ["exact match", "close match"]
        assert [r.content for r in by_source] == ["globex note", "orthogonal"]
        assert combined == []

    @pytest.mark.asyncio
    async def test_enrichment(self, store, searcher):
        """문서 / 계정 / 영업기회 최소 정보, 없으면 None."""
        await _seed(store)

        results = {r.content: r for r in await searcher.search(QUERY, top_k=10)}

        exact = results["exact match"]
        assert exact.document == {"id": 100, "name": "acme-contract.pdf", "type": "pdf"}
        assert exact.account == {"id": 1, "name": "Acme"}
        assert exact.opportunity == {"id": 10, "name": "Acme renewal", "stage": "negotiation"}
        assert exact.created_at is not None

        note = results["globex note"]
        assert note.document is None
        assert note.account == {"id": 2, "name": "Globex"}

        orphan = results["orthogonal"]
        assert orphan.document is None
        assert orphan.account is None
        assert orphan.opportunity is None

    @pytest.mark.asyncio
    async def test_empty_store(self, searcher):
        assert await searcher.search(QUERY) == []

    @pytest.mark.parametrize("top_k,expected", [
        (None, 10), (0, 1), (-5, 1), (7, 7), (100, 100), (1000, 100),
    ])
    def test_clamp_top_k(self, searcher, top_k, expected):
        assert searcher.clamp_top_k(top_k) == expected


class TestInMemoryStore:

    @pytest.mark.asyncio
    async def test_document_chunks_ordered_by_index(self, store, searcher):
        store.add_document(1, "doc", "text")
        await store.insert_chunks([
            ChunkRecord("second", _vector(0, 1), 1, {"chunkIndex": 1}, document_id=1),
            ChunkRecord("first", _vector(1, 0), 1, {"chunkIndex": 0}, document_id=1),
        ])

        chunks = await searcher.get_document_chunks(1)

        assert [c.content for c in chunks] == ["first", "second"]
        assert [c.id for c in chunks] == [2, 1]

    @pytest.mark.asyncio
    async def test_account_derived_from_opportunity(self, store):
        store.add_opportunity(10, "Deal", "won", account_id=7)
        store.add_document(1, "doc", "text", opportunity_id=10)
        store.add_document(2, "loose", "text")

        assert (await store.get_document(1)).account_id == 7
        assert (await store.get_document(2)).account_id is None
        assert await store.get_document(3) is None

    @pytest.mark.asyncio
    async def test_status_update_keeps_unset_fields(self, store):
        store.add_document(1, "doc", "text")
        await store.update_document_status(1, EmbeddingStatus.COMPLETED, chunk_count=4)

        await store.update_document_status(1, EmbeddingStatus.PROCESSING)

        document = await store.get_document(1)
        assert document.embedding_status == EmbeddingStatus.PROCESSING
        assert document.chunk_count == 4

        with pytest.raises(NotFoundError):
            await store.update_document_status(2, EmbeddingStatus.FAILED)

    @pytest.mark.asyncio
    async def test_delete_document_cascades(self, store):
        store.add_document(1, "doc", "text")
        await store.insert_chunks([ChunkRecord("a", _vector(1, 0), 1, document_id=1)])
        await store.save_document_source(DocumentSource(1, "a", "text"))

        assert await store.delete_document(1) is True
        assert await store.count_chunks() == 0
        assert await store.load_document_source(1) is None
        assert await store.delete_document(1) is False

    @pytest.mark.asyncio
    async def test_reindex_all(self, store):
        """모든 청크 삭제 + 모든 문서 초기화."""
        await _seed(store)
        await store.update_document_status(100, EmbeddingStatus.COMPLETED, chunk_count=2)

        deleted = await store.reindex_all()

        assert deleted == 4
        assert await store.count_chunks() == 0
        document = await store.get_document(100)
        assert document.embedding_status == EmbeddingStatus.PENDING
        assert document.chunk_count == 0

    def test_cosine_distance_of_zero_vector(self):
        assert cosine_distance([0.0, 0.0], [1.0, 0.0]) == 1.0
        assert cosine_distance([1.0, 0.0], [1.0, 0.0]) == pytest.approx(0.0)
