"""Tests for the embedding store and the embedding backfill service."""

import asyncio

import pytest

from fakes import KeywordEmbedder, make_program

from grantmatch.batch import BatchOrchestrator
from grantmatch.config import EngineConfig
from grantmatch.embedding_store import (
    EmbeddingError,
    EmbeddingStore,
    EmptyContentError,
    cosine_similarity,
)
from grantmatch.services.embedding_service import (
    EmbeddingBackfillService,
    program_embedding_text,
)


def make_service(scope, embedder):
    return EmbeddingBackfillService(
        scope,
        embedder,
        EngineConfig(),
        orchestrator=BatchOrchestrator(batch_size=10, pause_seconds=0),
    )


class TestEmbeddingStore:
    def test_upsert_replaces_previous_vector(self, store, repos):
        embeddings = EmbeddingStore(repos.embeddings, KeywordEmbedder(["센서"]))

        asyncio.run(embeddings.upsert("support_project", "p-1", "센서"))
        asyncio.run(embeddings.upsert("support_project", "p-1", "센서 센서"))

        assert asyncio.run(embeddings.count_by_source_type("support_project")) == 1
        assert store.embeddings[("support_project", "p-1")]["vector"] == [2.0, 0.1]

    def test_empty_text_is_rejected(self, repos):
        embeddings = EmbeddingStore(repos.embeddings, KeywordEmbedder())
        with pytest.raises(EmptyContentError, match="No content to embed"):
            asyncio.run(embeddings.upsert("support_project", "p-1", "  "))

    def test_backend_failure_is_wrapped(self, repos):
        embeddings = EmbeddingStore(repos.embeddings, KeywordEmbedder(fail_on=["x"]))
        with pytest.raises(EmbeddingError):
            asyncio.run(embeddings.embed_text("x"))

    def test_long_text_is_truncated(self, repos):
        embedder = KeywordEmbedder()
        embeddings = EmbeddingStore(repos.embeddings, embedder)
        asyncio.run(embeddings.embed_text("가" * 9000))
        assert len(embedder.calls[0]) == 8000

    def test_cosine_similarity(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0


class TestProgramEmbeddingText:
    def test_joins_non_blank_fields(self):
        program = make_program("스마트공장", summary="공정 자동화", description="  ")
        assert program_embedding_text(program) == "스마트공장\n\n공정 자동화"


class TestEmbeddingBackfill:
    def test_second_run_processes_nothing(self, store, scope):
        for i in range(3):
            store.add_program(make_program(f"사업 {i}"))
        service = make_service(scope, KeywordEmbedder())

        first = asyncio.run(service.run())
        second = asyncio.run(service.run())

        assert first.processed == 3
        assert first.success_count == 3
        assert second.processed == 0
        assert all(not p.needs_embedding for p in store.programs.values())
        assert len(store.embeddings) == 3

    def test_metadata_stored_with_vector(self, store, scope):
        program = store.add_program(make_program(organization="KOTRA", region="서울"))

        asyncio.run(make_service(scope, KeywordEmbedder()).run())

        row = store.embeddings[("support_project", str(program.id))]
        assert row["metadata"]["organization"] == "KOTRA"
        assert row["metadata"]["region"] == "서울"

    def test_empty_content_clears_flag_and_counts_error(self, store, scope):
        empty = store.add_program(make_program(name=None, summary=None))
        service = make_service(scope, KeywordEmbedder())

        report = asyncio.run(service.run())

        assert report.error_count == 1
        assert report.error_details[0].item_id == str(empty.id)
        assert report.error_details[0].error == "No content to embed"
        assert empty.needs_embedding is False
        assert asyncio.run(service.run()).processed == 0

    def test_backend_failure_keeps_program_pending(self, store, scope):
        failing = store.add_program(make_program("실패 사업", summary=None))
        ok = store.add_program(make_program("정상 사업", summary=None))
        service = make_service(scope, KeywordEmbedder(fail_on=["실패"]))

        report = asyncio.run(service.run())

        assert report.success_count == 1
        assert report.error_count == 1
        assert failing.needs_embedding is True
        assert ok.needs_embedding is False

    def test_batch_size_limits_loaded_programs(self, store, scope):
        for i in range(5):
            store.add_program(make_program(f"사업 {i}"))

        report = asyncio.run(make_service(scope, KeywordEmbedder()).run(batch_size=2))

        assert report.processed == 2
        assert sum(p.needs_embedding for p in store.programs.values()) == 3

    def test_deleted_programs_are_ignored(self, store, scope):
        store.add_program(make_program(deleted_at=make_program().created_at))

        report = asyncio.run(make_service(scope, KeywordEmbedder()).run())

        assert report.processed == 0
