"""Unit tests for retrieval.pipeline module."""

import asyncio
import threading

import numpy as np
import pytest
import pytest_asyncio

from contentrag.errors import (
    DimensionMismatch,
    DocumentNotFound,
    InvalidConfig,
    OperationTimeout,
    PermanentEmbeddingError,
    TransientEmbeddingError,
)
from contentrag.retrieval.pipeline import RAGService, RetryPolicy


@pytest.mark.unit
class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()

        assert policy.max_attempts == 4
        assert policy.initial_delay == 1.0
        assert policy.max_delay == 30.0

    def test_requires_an_attempt(self):
        with pytest.raises(InvalidConfig):
            RetryPolicy(max_attempts=0)


@pytest.mark.unit
class TestServiceInit:
    def test_invalid_chunking(self, memory_store, fake_embedder):
        with pytest.raises(InvalidConfig):
            RAGService(memory_store, fake_embedder, chunk_size=100, overlap=100)


@pytest.mark.unit
class TestIngest:
    """Tests for RAGService.ingest."""

    @pytest.mark.asyncio
    async def test_ingest_scenario(self, rag_service, numbered_text):
        """1000 characters with size 400 / overlap 50 store three chunks."""
        result = await rag_service.ingest("d1", "Numbers", None, numbered_text)

        assert result.doc_id == "d1"
        assert result.chunks_stored == 3
        assert result.generation == 1
        chunks = rag_service.get_chunks("d1")
        assert [(c.start_offset, c.end_offset) for c in chunks] == [
            (0, 400),
            (350, 750),
            (700, 1000),
        ]

    @pytest.mark.asyncio
    async def test_single_embedding_call_per_ingest(self, rag_service, fake_embedder, numbered_text):
        await rag_service.ingest("d1", None, None, numbered_text)

        assert len(fake_embedder.calls) == 1
        assert len(fake_embedder.calls[0]) == 3

    @pytest.mark.asyncio
    async def test_reingest_identical_text_is_idempotent(self, rag_service, numbered_text):
        await rag_service.ingest("d1", None, None, numbered_text)
        first = rag_service.get_chunks("d1")

        result = await rag_service.ingest("d1", None, None, numbered_text)

        second = rag_service.get_chunks("d1")
        assert result.generation == 2
        assert rag_service.store.size == 3
        assert [(c.chunk_index, c.content) for c in second] == [
            (c.chunk_index, c.content) for c in first
        ]

    @pytest.mark.asyncio
    async def test_reingest_shorter_text_drops_old_chunks(self, rag_service, numbered_text):
        await rag_service.ingest("d1", None, None, numbered_text)

        result = await rag_service.ingest("d1", None, None, numbered_text[:100])

        assert result.chunks_stored == 1
        assert [c.chunk_index for c in rag_service.get_chunks("d1")] == [0]
        assert rag_service.stats().chunks == 1

    @pytest.mark.asyncio
    async def test_empty_text_stores_document_without_chunks(self, rag_service, fake_embedder):
        result = await rag_service.ingest("empty", "Blank", None, "")

        assert result.chunks_stored == 0
        assert fake_embedder.calls == []
        assert rag_service.get_document("empty").title == "Blank"
        assert rag_service.get_chunks("empty") == []

    @pytest.mark.asyncio
    async def test_generated_doc_id(self, rag_service):
        result = await rag_service.ingest(None, None, None, "Some text")

        assert len(result.doc_id) == 32
        assert rag_service.get_document(result.doc_id).raw_text == "Some text"

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, memory_store, make_embedder, no_wait_policy, numbered_text):
        embedder = make_embedder(transient_failures=2)
        service = RAGService(memory_store, embedder, retry_policy=no_wait_policy)

        result = await service.ingest("d1", None, None, numbered_text)

        assert result.chunks_stored == 3
        assert len(embedder.calls) == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted_leave_previous_chunks(
        self, memory_store, make_embedder, no_wait_policy, numbered_text
    ):
        service = RAGService(memory_store, make_embedder(), retry_policy=no_wait_policy)
        await service.ingest("d1", None, None, numbered_text)
        before = service.get_chunks("d1")

        service.embedder = make_embedder(transient_failures=10)
        with pytest.raises(TransientEmbeddingError):
            await service.ingest("d1", None, None, "Replacement text that never lands.")

        assert len(service.embedder.calls) == no_wait_policy.max_attempts
        assert service.get_chunks("d1") == before
        assert service.get_document("d1").generation == 1

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(
        self, memory_store, make_embedder, no_wait_policy, numbered_text
    ):
        service = RAGService(memory_store, make_embedder(), retry_policy=no_wait_policy)
        await service.ingest("d1", None, None, numbered_text)

        service.embedder = make_embedder(permanent_failure=True)
        with pytest.raises(PermanentEmbeddingError):
            await service.ingest("d1", None, None, "Replacement.")

        assert len(service.embedder.calls) == 1
        assert len(service.get_chunks("d1")) == 3

    @pytest.mark.asyncio
    async def test_timeout_leaves_previous_chunks(
        self, memory_store, make_embedder, no_wait_policy, numbered_text
    ):
        service = RAGService(memory_store, make_embedder(), retry_policy=no_wait_policy)
        await service.ingest("d1", None, None, numbered_text)

        service.embedder = make_embedder(delay=1.0)
        with pytest.raises(OperationTimeout):
            await service.ingest("d1", None, None, "Slow replacement.", timeout=0.05)

        assert service.get_document("d1").raw_text == numbered_text
        assert len(service.get_chunks("d1")) == 3
        # The abandoned ingest released its lock
        assert service._doc_locks == {}

    @pytest.mark.asyncio
    async def test_wrong_vector_count_is_permanent(self, memory_store, no_wait_policy):
        class ShortEmbedder:
            dimension = 4

            async def aembed_texts(self, texts):
                return np.ones((1, 4), dtype=np.float32)

        service = RAGService(memory_store, ShortEmbedder(), chunk_size=10, overlap=0, retry_policy=no_wait_policy)

        with pytest.raises(PermanentEmbeddingError):
            await service.ingest("d1", None, None, "x" * 30)

        assert service.store.get_document("d1") is None

    @pytest.mark.asyncio
    async def test_same_document_ingests_are_serialised(self, memory_store, make_embedder, no_wait_policy):
        embedder = make_embedder(delay=0.01)
        service = RAGService(memory_store, embedder, chunk_size=20, overlap=0, retry_policy=no_wait_policy)
        texts = [f"version {i} " * 10 for i in range(5)]

        await asyncio.gather(*(service.ingest("d1", None, None, text) for text in texts))

        assert embedder.max_in_flight == 1
        record = service.get_document("d1")
        assert record.generation == 5
        chunks = service.get_chunks("d1")
        assert "".join(c.content for c in chunks) == record.raw_text

    @pytest.mark.asyncio
    async def test_different_documents_run_concurrently(self, memory_store, make_embedder, no_wait_policy):
        embedder = make_embedder(delay=0.05)
        service = RAGService(memory_store, embedder, retry_policy=no_wait_policy)

        await asyncio.gather(
            service.ingest("a", None, None, "alpha text"),
            service.ingest("b", None, None, "bravo text"),
        )

        assert embedder.max_in_flight == 2
        assert service.stats().documents == 2

    @pytest.mark.asyncio
    async def test_commit_runs_off_the_event_loop(self, rag_service, monkeypatch, numbered_text):
        commit_threads = []
        upsert = rag_service.store.upsert_document

        def recording_upsert(*args, **kwargs):
            commit_threads.append(threading.get_ident())
            return upsert(*args, **kwargs)

        monkeypatch.setattr(rag_service.store, "upsert_document", recording_upsert)

        await rag_service.ingest("d1", None, None, numbered_text)

        assert len(commit_threads) == 1
        assert commit_threads[0] != threading.get_ident()

    @pytest.mark.asyncio
    async def test_waiting_for_the_document_lock_counts_toward_timeout(
        self, memory_store, make_embedder, no_wait_policy
    ):
        service = RAGService(memory_store, make_embedder(delay=0.3), retry_policy=no_wait_policy)
        first = asyncio.create_task(service.ingest("d1", None, None, "First version."))
        await asyncio.sleep(0.01)

        with pytest.raises(OperationTimeout):
            await service.ingest("d1", None, None, "Second version.", timeout=0.05)

        result = await first
        assert result.generation == 1
        assert service.get_document("d1").raw_text == "First version."
        assert len(service.embedder.calls) == 1


@pytest.mark.unit
class TestRetrieve:
    """Tests for RAGService.retrieve."""

    @pytest.mark.asyncio
    async def test_query_matching_middle_chunk(self, rag_service, numbered_text):
        await rag_service.ingest("d1", "Numbers", "https://x.test/n", numbered_text)
        middle = rag_service.get_chunks("d1")[1]

        results = await rag_service.retrieve(middle.content, top_k=1)

        assert len(results) == 1
        assert results[0].doc_id == "d1"
        assert results[0].chunk_index == 1
        assert results[0].score == pytest.approx(1.0)
        assert results[0].title == "Numbers"
        assert results[0].url == "https://x.test/n"

    @pytest.mark.asyncio
    async def test_results_sorted_and_bounded(self, rag_service, sample_documents):
        for doc_id, text in sample_documents.items():
            await rag_service.ingest(doc_id, None, None, text)

        results = await rag_service.retrieve("LinkedIn posts hashtags", top_k=3)

        assert len(results) == 3
        assert [r.score for r in results] == sorted((r.score for r in results), reverse=True)
        assert results[0].doc_id == "linkedin-playbook"
        assert all(-1.0 <= r.score <= 1.0 for r in results)

    @pytest.mark.asyncio
    async def test_repeated_query_is_deterministic(self, rag_service, sample_documents):
        for doc_id, text in sample_documents.items():
            await rag_service.ingest(doc_id, None, None, text)

        first = await rag_service.retrieve("newsletter subject lines", top_k=5)
        second = await rag_service.retrieve("newsletter subject lines", top_k=5)

        assert first == second

    @pytest.mark.asyncio
    async def test_empty_store_returns_nothing(self, rag_service, fake_embedder):
        assert await rag_service.retrieve("anything", top_k=5) == []
        assert fake_embedder.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("top_k", [0, -3])
    async def test_invalid_top_k(self, rag_service, top_k):
        with pytest.raises(InvalidConfig):
            await rag_service.retrieve("query", top_k=top_k)

    @pytest.mark.asyncio
    async def test_blank_query(self, rag_service):
        with pytest.raises(InvalidConfig):
            await rag_service.retrieve("   ", top_k=1)

    @pytest.mark.asyncio
    async def test_min_score(self, rag_service, sample_documents):
        for doc_id, text in sample_documents.items():
            await rag_service.ingest(doc_id, None, None, text)

        results = await rag_service.retrieve("Publish on Tuesday", top_k=10, min_score=0.3)

        assert all(r.score >= 0.3 for r in results)

    @pytest.mark.asyncio
    async def test_query_dimension_mismatch(self, memory_store, make_embedder, no_wait_policy):
        writer = RAGService(memory_store, make_embedder(dimension=256), retry_policy=no_wait_policy)
        await writer.ingest("d1", None, None, "stored with 256 dimensions")

        reader = RAGService(memory_store, make_embedder(dimension=32), retry_policy=no_wait_policy)
        with pytest.raises(DimensionMismatch):
            await reader.retrieve("query", top_k=1)

    @pytest.mark.asyncio
    async def test_search_during_reingest_sees_one_generation(
        self, memory_store, make_embedder, no_wait_policy, numbered_text
    ):
        service = RAGService(memory_store, make_embedder(), retry_policy=no_wait_policy)
        await service.ingest("d1", None, None, numbered_text)

        service.embedder = make_embedder(delay=0.05)
        ingest = asyncio.create_task(service.ingest("d1", None, None, numbered_text[:500]))
        await asyncio.sleep(0.01)
        candidates, _ = memory_store.candidates()
        await ingest

        assert {c.generation for c in candidates} == {1}
        assert {c.generation for c in memory_store.candidates()[0]} == {2}


@pytest.mark.unit
class TestDocumentManagement:
    @pytest.mark.asyncio
    async def test_get_unknown_document(self, rag_service):
        with pytest.raises(DocumentNotFound):
            rag_service.get_document("missing")
        with pytest.raises(DocumentNotFound):
            rag_service.get_chunks("missing")

    @pytest.mark.asyncio
    async def test_delete(self, rag_service, numbered_text):
        await rag_service.ingest("d1", None, None, numbered_text)

        assert await rag_service.delete_document("d1") is True
        assert await rag_service.delete_document("d1") is False
        assert await rag_service.retrieve("word1", top_k=3) == []

    @pytest.mark.asyncio
    async def test_reprocess_with_new_chunking(self, memory_store, fake_embedder, no_wait_policy, numbered_text):
        original = RAGService(memory_store, fake_embedder, chunk_size=400, overlap=50, retry_policy=no_wait_policy)
        await original.ingest("d1", "Numbers", None, numbered_text)

        smaller = RAGService(memory_store, fake_embedder, chunk_size=250, overlap=0, retry_policy=no_wait_policy)
        result = await smaller.reprocess("d1")

        assert result.chunks_stored == 4
        assert result.generation == 2
        assert smaller.get_document("d1").title == "Numbers"

    @pytest.mark.asyncio
    async def test_reprocess_unknown_document(self, rag_service):
        with pytest.raises(DocumentNotFound):
            await rag_service.reprocess("missing")

    @pytest.mark.asyncio
    async def test_list_documents(self, rag_service, sample_documents):
        for doc_id, text in sample_documents.items():
            await rag_service.ingest(doc_id, None, None, text)

        assert {d.doc_id for d in rag_service.list_documents()} == set(sample_documents)
        assert len(rag_service.list_documents(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_reprocess_keeps_author_and_tags(self, rag_service, numbered_text):
        await rag_service.ingest("d1", None, None, numbered_text, author="Dana Reyes", tags=["b2b"])

        await rag_service.reprocess("d1")

        record = rag_service.get_document("d1")
        assert record.generation == 2
        assert record.author == "Dana Reyes"
        assert record.tags == ("b2b",)


@pytest.mark.unit
class TestMetadataFilters:
    """Author and tag filters on retrieve and list_documents."""

    @pytest_asyncio.fixture
    async def tagged_service(self, rag_service, sample_documents):
        await rag_service.ingest(
            "linkedin-playbook",
            None,
            None,
            sample_documents["linkedin-playbook"],
            author="Dana Reyes",
            tags=["linkedin", "social"],
        )
        await rag_service.ingest(
            "newsletter-guide",
            None,
            None,
            sample_documents["newsletter-guide"],
            author="Sam Ito",
            tags=["newsletter"],
        )
        return rag_service

    @pytest.mark.asyncio
    async def test_ingest_stores_metadata(self, rag_service):
        await rag_service.ingest("d1", None, None, "Brief.", author="Dana", tags=[" social ", "social", ""])

        record = rag_service.get_document("d1")
        assert record.author == "Dana"
        assert record.tags == ("social",)

    @pytest.mark.asyncio
    async def test_retrieve_by_tag(self, tagged_service):
        results = await tagged_service.retrieve("newsletter subject lines", top_k=10, tags=["social"])

        assert results
        assert {r.doc_id for r in results} == {"linkedin-playbook"}

    @pytest.mark.asyncio
    async def test_retrieve_by_author(self, tagged_service):
        results = await tagged_service.retrieve("hashtags", top_k=10, author="sam")

        assert results
        assert {r.doc_id for r in results} == {"newsletter-guide"}

    @pytest.mark.asyncio
    async def test_retrieve_with_no_matching_documents(self, tagged_service):
        assert await tagged_service.retrieve("hashtags", top_k=10, tags=["podcast"]) == []

    @pytest.mark.asyncio
    async def test_list_documents_filtered(self, tagged_service):
        by_tag = tagged_service.list_documents(tags=["newsletter", "podcast"])
        by_author = tagged_service.list_documents(author="REYES")

        assert [d.doc_id for d in by_tag] == ["newsletter-guide"]
        assert [d.doc_id for d in by_author] == ["linkedin-playbook"]
        assert len(tagged_service.list_documents(author="", tags=[])) == 2
