"""Tests for the REST API: routing, request/response shapes and error mapping.

The app runs in-process over httpx's ASGI transport with its collaborators
swapped through dependency_overrides; the lifespan (Postgres, Redis) is not
started.
"""

from __future__ import annotations

import uuid

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from redis.exceptions import RedisError

from escrow_arbiter.api.deps import (
    get_authorization_gate,
    get_db_session_factory,
    get_notification_dispatcher,
    get_payment_processor,
)
from escrow_arbiter.main import create_app

ADMIN_ID = "admin-1"


@pytest_asyncio.fixture
async def client(session_factory, processor, gate, dispatcher):
    app = create_app()
    app.dependency_overrides[get_db_session_factory] = lambda: session_factory
    app.dependency_overrides[get_payment_processor] = lambda: processor
    app.dependency_overrides[get_authorization_gate] = lambda: gate
    app.dependency_overrides[get_notification_dispatcher] = lambda: dispatcher

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await dispatcher.drain()


def file_body(seeded, **overrides) -> dict:
    body = {
        "jobId": str(seeded.job_id),
        "reason": "quality_issues",
        "description": "Roof still leaks",
        "userId": str(seeded.requester_id),
        "userType": "homeowner",
    }
    body.update(overrides)
    return body


async def file_via_api(client, seeded) -> dict:
    resp = await client.post("/api/v1/disputes", json=file_body(seeded))
    assert resp.status_code == 201, resp.text
    return resp.json()["dispute"]


class TestFileDispute:
    @pytest.mark.asyncio
    async def test_file(self, client, seed_job) -> None:
        seeded = await seed_job()
        resp = await client.post("/api/v1/disputes", json=file_body(seeded))

        assert resp.status_code == 201
        dispute = resp.json()["dispute"]
        assert dispute["status"] == "open"
        assert dispute["jobId"] == str(seeded.job_id)
        assert dispute["filedByRole"] == "requester"
        assert "X-Request-ID" in resp.headers

    @pytest.mark.asyncio
    async def test_snake_case_accepted(self, client, seed_job) -> None:
        seeded = await seed_job()
        body = {
            "job_id": str(seeded.job_id),
            "reason": "other",
            "user_id": str(seeded.provider_id),
            "user_type": "contractor",
        }
        resp = await client.post("/api/v1/disputes", json=body)
        assert resp.status_code == 201

    @pytest.mark.asyncio
    async def test_invalid_reason(self, client, seed_job) -> None:
        seeded = await seed_job()
        resp = await client.post("/api/v1/disputes", json=file_body(seeded, reason="meh"))
        assert resp.status_code == 400
        assert resp.json()["error"] == "INVALID_REASON"

    @pytest.mark.asyncio
    async def test_missing_field(self, client, seed_job) -> None:
        seeded = await seed_job()
        body = file_body(seeded)
        del body["userType"]
        resp = await client.post("/api/v1/disputes", json=body)
        assert resp.status_code == 400
        assert resp.json()["error"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_wrong_party(self, client, seed_job) -> None:
        seeded = await seed_job()
        resp = await client.post(
            "/api/v1/disputes", json=file_body(seeded, userId=str(uuid.uuid4()))
        )
        assert resp.status_code == 403
        assert resp.json()["error"] == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_unknown_job(self, client, seed_job) -> None:
        seeded = await seed_job()
        resp = await client.post(
            "/api/v1/disputes", json=file_body(seeded, jobId=str(uuid.uuid4()))
        )
        assert resp.status_code == 404
        assert resp.json()["error"] == "JOB_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_job_already_disputed(self, client, seed_job) -> None:
        seeded = await seed_job()
        await file_via_api(client, seeded)
        resp = await client.post("/api/v1/disputes", json=file_body(seeded))
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_duplicate_idempotency_key(self, client, seed_job, monkeypatch) -> None:
        async def already_used(scope: str, key: str) -> bool:
            return False

        monkeypatch.setattr(
            "escrow_arbiter.api.routes.disputes.reserve_idempotency_key", already_used
        )
        seeded = await seed_job()
        resp = await client.post(
            "/api/v1/disputes", json=file_body(seeded, idempotencyKey="abc-123")
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "DUPLICATE_OPERATION"

    @pytest.mark.asyncio
    async def test_redis_failure_after_filing_still_returns_dispute(
        self, client, seed_job, monkeypatch
    ) -> None:
        async def reserved(scope: str, key: str) -> bool:
            return True

        async def redis_down(*args) -> None:
            raise RedisError("connection lost")

        monkeypatch.setattr(
            "escrow_arbiter.api.routes.disputes.reserve_idempotency_key", reserved
        )
        monkeypatch.setattr(
            "escrow_arbiter.api.routes.disputes.complete_idempotency_key", redis_down
        )
        seeded = await seed_job()
        resp = await client.post(
            "/api/v1/disputes", json=file_body(seeded, idempotencyKey="abc-123")
        )

        assert resp.status_code == 201
        dispute_id = resp.json()["dispute"]["id"]
        listed = await client.get("/api/v1/disputes")
        assert [d["id"] for d in listed.json()] == [dispute_id]

    @pytest.mark.asyncio
    async def test_release_failure_keeps_original_error(
        self, client, seed_job, monkeypatch
    ) -> None:
        async def reserved(scope: str, key: str) -> bool:
            return True

        async def redis_down(*args) -> None:
            raise RedisError("connection lost")

        monkeypatch.setattr(
            "escrow_arbiter.api.routes.disputes.reserve_idempotency_key", reserved
        )
        monkeypatch.setattr(
            "escrow_arbiter.api.routes.disputes.release_idempotency_key", redis_down
        )
        seeded = await seed_job()
        resp = await client.post(
            "/api/v1/disputes",
            json=file_body(seeded, idempotencyKey="abc-123", jobId=str(uuid.uuid4())),
        )

        assert resp.status_code == 404
        assert resp.json()["error"] == "JOB_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_idempotency_without_redis(self, client, seed_job) -> None:
        # Redis is never initialized in tests; filing still goes through
        seeded = await seed_job()
        resp = await client.post(
            "/api/v1/disputes", json=file_body(seeded, idempotencyKey="abc-123")
        )
        assert resp.status_code == 201


class TestResolveDispute:
    @pytest.mark.asyncio
    async def test_release(self, client, seed_job) -> None:
        dispute = await file_via_api(client, await seed_job())

        resp = await client.post(
            "/api/v1/disputes/resolve",
            json={
                "disputeId": dispute["id"],
                "action": "release_to_contractor",
                "resolution": "Work verified",
                "adminId": ADMIN_ID,
            },
        )

        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["newJobStatus"] == "completed"
        assert data["newPaymentStatus"] == "released"
        assert data["settlementOperations"][0]["kind"] == "transfer"
        assert data["settlementOperations"][0]["amountMinor"] == 45000
        assert data["settlementOperations"][0]["status"] == "confirmed"

    @pytest.mark.asyncio
    async def test_partial_refund(self, client, seed_job) -> None:
        dispute = await file_via_api(client, await seed_job())

        resp = await client.post(
            "/api/v1/disputes/resolve",
            json={
                "disputeId": dispute["id"],
                "action": "partial_refund",
                "resolution": "Split it",
                "contractorAmount": 300,
                "homeownerRefund": 150,
                "adminId": ADMIN_ID,
            },
        )

        assert resp.status_code == 200, resp.text
        assert resp.json()["newPaymentStatus"] == "partial_refund"
        assert len(resp.json()["settlementOperations"]) == 2

    @pytest.mark.asyncio
    async def test_partial_refund_without_amounts(self, client, seed_job) -> None:
        dispute = await file_via_api(client, await seed_job())
        resp = await client.post(
            "/api/v1/disputes/resolve",
            json={
                "disputeId": dispute["id"],
                "action": "partial_refund",
                "resolution": "Split it",
                "adminId": ADMIN_ID,
            },
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_second_resolve_conflicts(self, client, seed_job) -> None:
        dispute = await file_via_api(client, await seed_job())
        body = {
            "disputeId": dispute["id"],
            "action": "dismissed",
            "resolution": "Nothing wrong",
            "adminId": ADMIN_ID,
        }
        first = await client.post("/api/v1/disputes/resolve", json=body)
        second = await client.post("/api/v1/disputes/resolve", json=body)

        assert first.status_code == 200
        assert first.json()["newJobStatus"] == "in_progress"
        assert second.status_code == 400
        assert second.json()["error"] == "STATE_CONFLICT"

    @pytest.mark.asyncio
    async def test_non_admin(self, client, seed_job) -> None:
        seeded = await seed_job()
        dispute = await file_via_api(client, seeded)
        resp = await client.post(
            "/api/v1/disputes/resolve",
            json={
                "disputeId": dispute["id"],
                "action": "refund_homeowner",
                "resolution": "Refund",
                "adminId": str(seeded.requester_id),
            },
        )
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_dispute(self, client) -> None:
        resp = await client.post(
            "/api/v1/disputes/resolve",
            json={
                "disputeId": str(uuid.uuid4()),
                "action": "dismissed",
                "resolution": "x",
                "adminId": ADMIN_ID,
            },
        )
        assert resp.status_code == 404
        assert resp.json()["error"] == "DISPUTE_NOT_FOUND"


class TestQueriesAndReview:
    @pytest.mark.asyncio
    async def test_get_and_list(self, client, seed_job) -> None:
        dispute = await file_via_api(client, await seed_job())

        one = await client.get(f"/api/v1/disputes/{dispute['id']}")
        assert one.status_code == 200
        assert one.json()["id"] == dispute["id"]

        listed = await client.get("/api/v1/disputes", params={"status": "open"})
        assert [d["id"] for d in listed.json()] == [dispute["id"]]

        stats = await client.get("/api/v1/disputes/stats")
        assert stats.json()["open"] == 1
        assert stats.json()["total"] == 1

    @pytest.mark.asyncio
    async def test_review_and_events(self, client, seed_job) -> None:
        dispute = await file_via_api(client, await seed_job())

        resp = await client.post(
            f"/api/v1/disputes/{dispute['id']}/review", json={"adminId": ADMIN_ID}
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "under_review"

        events = await client.get(f"/api/v1/disputes/{dispute['id']}/events")
        body = events.json()
        assert [e["eventType"] for e in body] == ["DISPUTE_FILED", "REVIEW_STARTED"]
        assert body[0]["metadata"]["reason"] == "quality_issues"

    @pytest.mark.asyncio
    async def test_unknown_dispute(self, client) -> None:
        resp = await client.get(f"/api/v1/disputes/{uuid.uuid4()}")
        assert resp.status_code == 404


class TestSettlements:
    @pytest.mark.asyncio
    async def test_failed_queue_and_reconcile(self, client, processor, seed_job) -> None:
        dispute = await file_via_api(client, await seed_job())
        processor.fail_transfers = True
        await client.post(
            "/api/v1/disputes/resolve",
            json={
                "disputeId": dispute["id"],
                "action": "release_to_contractor",
                "resolution": "Verified",
                "adminId": ADMIN_ID,
            },
        )

        failed = await client.get("/api/v1/settlements", params={"status": "failed"})
        assert len(failed.json()) == 1
        assert failed.json()[0]["lastError"]

        processor.fail_transfers = False
        resp = await client.post("/api/v1/settlements/reconcile")
        assert resp.status_code == 200
        assert resp.json()["confirmed"] == 1

        confirmed = await client.get("/api/v1/settlements", params={"status": "confirmed"})
        assert len(confirmed.json()) == 1


class TestHealth:
    @pytest.mark.asyncio
    async def test_reports_settlement_backlog(self, client, processor, seed_job) -> None:
        dispute = await file_via_api(client, await seed_job())
        processor.fail_transfers = True
        await client.post(
            "/api/v1/disputes/resolve",
            json={
                "disputeId": dispute["id"],
                "action": "release_to_contractor",
                "resolution": "Verified",
                "adminId": ADMIN_ID,
            },
        )

        resp = await client.get("/health")

        assert resp.status_code == 200
        body = resp.json()
        assert body["database"] == "healthy"
        # Redis is never initialized in tests
        assert body["redis"].startswith("unhealthy")
        assert body["status"] == "degraded"
        assert body["settlement_backlog"] == {"failed": 1}
