"""
API tests for the GrantMatch worker endpoints.

The app is built with in-memory repositories and a keyword embedder, so the
tests exercise routing, auth, validation, status codes and the camelCase
wire format without a database or an embedding backend.

Usage:
    pytest backend/tests/test_api.py -v
"""

import uuid
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from fakes import (
    KeywordEmbedder,
    fake_repositories,
    fake_scope,
    make_company,
    make_preference,
    make_program,
)

from grantmatch.config import EngineConfig
from grantmatch.deps import get_repositories
from grantmatch.main import create_app
from grantmatch.models.db.batch_job import JOB_COMPLETED
from grantmatch.models.db.duplicate_group import AUTO, CONFIRMED
from grantmatch.security import limiter

AUTH = {"Authorization": "Bearer secret"}


@pytest.fixture(autouse=True)
def reset_rate_limits():
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def client(store):
    app = create_app(
        EngineConfig(worker_api_key="secret", batch_pause_seconds=0),
        embedder=KeywordEmbedder(["센서", "창업"]),
        scope=fake_scope(store),
    )
    app.dependency_overrides[get_repositories] = lambda: fake_repositories(store)
    # The context manager runs the lifespan, which waits for background jobs.
    with TestClient(app) as test_client:
        yield test_client


def add_company(store, **preference_fields):
    company = make_company()
    store.add_company(
        company,
        preference=make_preference(company.id, **preference_fields),
        user_id=uuid.uuid4(),
    )
    return company


def add_duplicates(store, count=2):
    programs = []
    for i in range(count):
        program = make_program("2024년 스마트공장 구축지원사업")
        program.updated_at = program.updated_at + timedelta(minutes=i)
        programs.append(store.add_program(program))
    return programs


def run_grouping(client, store):
    response = client.post("/grouping/run", headers=AUTH)
    assert response.status_code == 202
    return response.json()


# ============================================================================
# Auth + health
# ============================================================================


class TestAuth:
    def test_missing_token_is_rejected(self, client):
        response = client.get("/embedding-stats")
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_wrong_token_is_rejected(self, client):
        response = client.get(
            "/matching/stats", headers={"Authorization": "Bearer nope"}
        )
        assert response.status_code == 401

    def test_unconfigured_key_rejects_everything(self, store):
        app = create_app(EngineConfig(worker_api_key=None), scope=fake_scope(store))
        with TestClient(app) as unconfigured:
            response = unconfigured.get("/embedding-stats", headers=AUTH)
        assert response.status_code == 401

    def test_health_needs_no_token(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["activeJobs"] == 0
        assert "X-Request-ID" in response.headers


# ============================================================================
# Embeddings
# ============================================================================


class TestEmbeddingEndpoints:
    def test_generate_embeddings_returns_camel_case_summary(self, client, store):
        store.add_program(make_program())
        store.add_program(make_program(name=None, summary=None, organization=None,
                                       category=None, region=None))

        response = client.post(
            "/generate-embeddings", json={"batchSize": 10}, headers=AUTH
        )

        assert response.status_code == 200
        body = response.json()
        assert body["processed"] == 2
        assert body["successCount"] == 1
        assert body["errorCount"] == 1
        assert len(body["errorDetails"]) == 1
        assert set(body["errorDetails"][0]) == {"itemId", "error"}
        assert "durationMs" in body

    def test_generate_embeddings_without_body_uses_default(self, client, store):
        store.add_program(make_program())
        response = client.post("/generate-embeddings", headers=AUTH)
        assert response.status_code == 200
        assert response.json()["successCount"] == 1

    def test_generate_embeddings_rejects_oversized_batch(self, client):
        response = client.post(
            "/generate-embeddings", json={"batchSize": 501}, headers=AUTH
        )
        assert response.status_code == 422

    def test_embedding_stats(self, client, store):
        for _ in range(4):
            store.add_program(make_program())
        client.post("/generate-embeddings", json={"batchSize": 1}, headers=AUTH)

        response = client.get("/embedding-stats", headers=AUTH)

        assert response.status_code == 200
        assert response.json() == {
            "totalProjects": 4,
            "needsEmbedding": 3,
            "hasEmbeddings": 1,
            "completionRate": 25.0,
        }

    def test_embedding_stats_on_empty_catalog(self, client):
        body = client.get("/embedding-stats", headers=AUTH).json()
        assert body["completionRate"] == 0.0


# ============================================================================
# Matching
# ============================================================================


class TestMatchingEndpoints:
    def test_batch_with_no_companies_is_not_accepted(self, client, store):
        response = client.post("/matching/batch", json={}, headers=AUTH)

        assert response.status_code == 200
        assert response.json()["accepted"] is False
        assert response.json()["companiesQueued"] == 0
        assert store.jobs == {}

    def test_batch_queues_a_job(self, client, store):
        store.add_program(make_program(category="기술"))
        for _ in range(3):
            add_company(store, categories=["기술"])

        response = client.post(
            "/matching/batch", json={"batchSize": 2, "maxCompanies": 10}, headers=AUTH
        )

        assert response.status_code == 202
        body = response.json()
        assert body["accepted"] is True
        assert body["companiesQueued"] == 3
        assert body["batchSize"] == 2
        job = store.jobs[uuid.UUID(body["jobId"])]
        assert job.queued_count == 3
        assert job.params == {"batchSize": 2, "maxCompanies": 10}

    def test_batch_job_runs_to_completion(self, store):
        store.add_program(make_program(category="기술"))
        add_company(store, categories=["기술"])
        app = create_app(
            EngineConfig(worker_api_key="secret", batch_pause_seconds=0),
            embedder=KeywordEmbedder(),
            scope=fake_scope(store),
        )
        with TestClient(app) as test_client:
            body = test_client.post("/matching/batch", headers=AUTH).json()

        # Lifespan shutdown waited for the job.
        job = store.jobs[uuid.UUID(body["jobId"])]
        assert job.status == JOB_COMPLETED
        assert job.success_count == 1
        assert len(store.results) == 1

    def test_batch_rejects_invalid_sizes(self, client):
        response = client.post("/matching/batch", json={"batchSize": 0}, headers=AUTH)
        assert response.status_code == 422

    def test_stats(self, client, store):
        add_company(store)
        store.add_company(make_company("선호없음"))

        response = client.get("/matching/stats", headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["totalCompanies"] == 2
        assert body["companiesWithPreferences"] == 1
        assert body["totalMatchingResults"] == 0
        assert body["resultsLast24Hours"] == 0
        assert body["lastJob"] is None

    def test_create_preference(self, client, store):
        company = make_company()
        store.add_company(company)

        response = client.post(
            f"/companies/{company.id}/matching-preferences",
            json={"categories": ["기술", " "], "minAmount": 10, "maxAmount": 20},
            headers=AUTH,
        )

        assert response.status_code == 201
        assert response.json()["categories"] == ["기술"]
        assert len(store.preferences) == 1

    def test_create_preference_rejects_inverted_range(self, client, store):
        company = make_company()
        store.add_company(company)

        response = client.post(
            f"/companies/{company.id}/matching-preferences",
            json={"minAmount": 500, "maxAmount": 100},
            headers=AUTH,
        )

        assert response.status_code == 422
        assert store.preferences == []

    def test_create_preference_for_unknown_company(self, client):
        response = client.post(
            f"/companies/{uuid.uuid4()}/matching-preferences",
            json={"categories": ["기술"]},
            headers=AUTH,
        )
        assert response.status_code == 404

    def test_single_company_refresh(self, client, store):
        program = store.add_program(make_program(category="기술"))
        company = add_company(store, categories=["기술"])

        response = client.post(f"/companies/{company.id}/matching", headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["companyId"] == str(company.id)
        assert body["resultCount"] == 1
        assert body["results"][0]["projectId"] == str(program.id)
        assert body["results"][0]["categoryScore"] == 100

    def test_single_company_refresh_without_preference(self, client, store):
        company = make_company()
        store.add_company(company, user_id=uuid.uuid4())
        response = client.post(f"/companies/{company.id}/matching", headers=AUTH)
        assert response.status_code == 409

    def test_single_company_refresh_with_corrupt_preference(self, client, store):
        company = add_company(store, min_amount="lots")
        response = client.post(f"/companies/{company.id}/matching", headers=AUTH)
        assert response.status_code == 422

    def test_single_company_refresh_unknown_company(self, client):
        response = client.post(f"/companies/{uuid.uuid4()}/matching", headers=AUTH)
        assert response.status_code == 404


# ============================================================================
# Grouping + jobs
# ============================================================================


class TestGroupingAndJobs:
    def test_grouping_run_is_tracked_as_a_job(self, store):
        add_duplicates(store)
        app = create_app(
            EngineConfig(worker_api_key="secret"),
            embedder=KeywordEmbedder(),
            scope=fake_scope(store),
        )
        app.dependency_overrides[get_repositories] = lambda: fake_repositories(store)
        with TestClient(app) as test_client:
            accepted = run_grouping(test_client, store)

        assert accepted["accepted"] is True
        assert len(store.groups) == 1
        job = store.jobs[uuid.UUID(accepted["jobId"])]
        assert job.status == JOB_COMPLETED
        assert job.result_summary["created"] == 1

    def test_grouping_rejects_out_of_range_year(self, client):
        response = client.post(
            "/grouping/run", json={"projectYear": 1900}, headers=AUTH
        )
        assert response.status_code == 422

    def test_unknown_job(self, client):
        response = client.get(f"/jobs/{uuid.uuid4()}", headers=AUTH)
        assert response.status_code == 404
        assert response.json()["detail"] == "Job not found"

    def test_get_job(self, client, store):
        add_company(store)
        body = client.post("/matching/batch", headers=AUTH).json()

        response = client.get(f"/jobs/{body['jobId']}", headers=AUTH)

        assert response.status_code == 200
        assert response.json()["jobType"] == "matching_refresh"
        assert response.json()["queuedCount"] == 1


# ============================================================================
# Duplicate groups
# ============================================================================


@pytest.fixture
def grouped(store):
    """Two listings of one program grouped automatically."""
    programs = add_duplicates(store)
    app = create_app(
        EngineConfig(worker_api_key="secret"),
        embedder=KeywordEmbedder(),
        scope=fake_scope(store),
    )
    with TestClient(app) as test_client:
        run_grouping(test_client, store)
    (group,) = store.groups.values()
    return group, programs


class TestDuplicateGroupEndpoints:
    def test_list_defaults_to_pending_review(self, client, grouped):
        body = client.get("/duplicate-groups", headers=AUTH).json()
        assert body["groups"] == []
        assert body["statusCounts"][AUTO] == 1

    def test_list_by_status(self, client, grouped):
        group, _ = grouped

        response = client.get(
            "/duplicate-groups", params={"status": AUTO, "pageSize": 5}, headers=AUTH
        )

        assert response.status_code == 200
        body = response.json()
        assert [g["id"] for g in body["groups"]] == [str(group.id)]
        assert body["pagination"] == {
            "page": 1,
            "pageSize": 5,
            "total": 1,
            "totalPages": 1,
        }

    def test_list_unknown_status(self, client):
        response = client.get(
            "/duplicate-groups", params={"status": "bogus"}, headers=AUTH
        )
        assert response.status_code == 400

    def test_detail_lists_members(self, client, grouped):
        group, programs = grouped

        body = client.get(f"/duplicate-groups/{group.id}", headers=AUTH).json()

        assert {m["id"] for m in body["members"]} == {str(p.id) for p in programs}
        assert sum(m["isCanonical"] for m in body["members"]) == 1
        assert body["canonicalProjectId"] == str(group.canonical_project_id)

    def test_detail_unknown_group(self, client):
        response = client.get(f"/duplicate-groups/{uuid.uuid4()}", headers=AUTH)
        assert response.status_code == 404

    def test_confirm_and_reassign(self, client, store, grouped):
        group, programs = grouped
        other = next(p for p in programs if p.id != group.canonical_project_id)

        response = client.patch(
            f"/duplicate-groups/{group.id}",
            json={
                "reviewStatus": CONFIRMED,
                "canonicalProjectId": str(other.id),
                "reviewedBy": "reviewer@example.com",
            },
            headers=AUTH,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["reviewStatus"] == CONFIRMED
        assert body["canonicalProjectId"] == str(other.id)
        assert body["canonicalLocked"] is True
        assert [p.id for p in store.group_members(group.id) if p.is_canonical] == [other.id]

    def test_patch_rejects_auto_status(self, client, grouped):
        group, _ = grouped
        response = client.patch(
            f"/duplicate-groups/{group.id}", json={"reviewStatus": AUTO}, headers=AUTH
        )
        assert response.status_code == 400

    def test_patch_rejects_non_member_canonical(self, client, store, grouped):
        group, _ = grouped
        outsider = store.add_program(make_program("다른 사업"))
        response = client.patch(
            f"/duplicate-groups/{group.id}",
            json={"canonicalProjectId": str(outsider.id)},
            headers=AUTH,
        )
        assert response.status_code == 400

    def test_patch_unknown_group(self, client):
        response = client.patch(
            f"/duplicate-groups/{uuid.uuid4()}",
            json={"reviewStatus": CONFIRMED},
            headers=AUTH,
        )
        assert response.status_code == 404

    def test_dissolve(self, client, store, grouped):
        group, programs = grouped

        response = client.delete(f"/duplicate-groups/{group.id}", headers=AUTH)

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "groupId": str(group.id),
            "detachedCount": 2,
        }
        assert store.groups == {}
        assert all(p.group_id is None and not p.is_canonical for p in programs)

    def test_dissolve_unknown_group(self, client):
        response = client.delete(f"/duplicate-groups/{uuid.uuid4()}", headers=AUTH)
        assert response.status_code == 404
