"""Router integration tests for the warranty endpoints.

Requests go through the full FastAPI app (auth, error envelope, request ID)
against the in-memory SQLite database; only the sweep's Redis-backed runner
is mocked.
"""

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt

from src.app import app
from src.config import settings
from src.database.session import get_db
from src.models.enums import ActorRole, AppointmentStatus
from src.modules.warranty.schemas import SweepReport


def _token(user_id: uuid.UUID, role: ActorRole) -> dict[str, str]:
    token = jwt.encode(
        {"sub": str(user_id), "role": role.value},
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def booked(session_factory, make_appointment, pair):
    """An in-progress appointment plus auth headers for everyone involved."""
    customer_id, provider_id = pair
    async with session_factory() as s:
        appointment = await make_appointment(
            s, customer_id=customer_id, provider_id=provider_id,
            status=AppointmentStatus.IN_PROGRESS,
        )
        await s.commit()
    return {
        "appointment_id": str(appointment.id),
        "customer_id": str(customer_id),
        "provider_id": str(provider_id),
        "customer": _token(customer_id, ActorRole.CUSTOMER),
        "provider": _token(provider_id, ActorRole.PROVIDER),
        "admin": _token(uuid.uuid4(), ActorRole.ADMIN),
    }


async def _finish(client, booked, days=7):
    return await client.post(
        f"/api/v1/appointments/{booked['appointment_id']}/finish",
        json={"warranty_days": days},
        headers=booked["provider"],
    )


async def _file(client, booked, reason="Leak is back"):
    return await client.post(
        f"/api/v1/appointments/{booked['appointment_id']}/backjobs",
        json={"reason": reason, "evidence": {"photos": ["sink.jpg"]}},
        headers=booked["customer"],
    )


class TestAuth:
    @pytest.mark.asyncio
    async def test_missing_token_is_401_envelope(self, client, booked):
        resp = await client.get(f"/api/v1/appointments/{booked['appointment_id']}")

        assert resp.status_code == 401
        body = resp.json()
        assert body["error"]["code"] == "UNAUTHORIZED"
        assert body["error"]["requestId"] == resp.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_request_id_is_propagated(self, client, booked):
        resp = await client.get(
            f"/api/v1/appointments/{booked['appointment_id']}",
            headers={**booked["customer"], "X-Request-ID": "req-123"},
        )

        assert resp.status_code == 200
        assert resp.headers["X-Request-ID"] == "req-123"

    @pytest.mark.asyncio
    async def test_outsider_cannot_read_appointment(self, client, booked):
        resp = await client.get(
            f"/api/v1/appointments/{booked['appointment_id']}",
            headers=_token(uuid.uuid4(), ActorRole.CUSTOMER),
        )

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_customer_cannot_finish(self, client, booked):
        resp = await client.post(
            f"/api/v1/appointments/{booked['appointment_id']}/finish",
            json={"warranty_days": 7},
            headers=booked["customer"],
        )

        assert resp.status_code == 403


class TestAppointmentEndpoints:
    @pytest.mark.asyncio
    async def test_finish_starts_warranty(self, client, booked):
        resp = await _finish(client, booked)

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "in-warranty"
        assert body["warranty_days"] == 7
        assert body["warranty_expires_at"] is not None

    @pytest.mark.asyncio
    async def test_finish_with_explicit_time(self, client, booked):
        resp = await client.post(
            f"/api/v1/appointments/{booked['appointment_id']}/finish",
            json={"warranty_days": 15, "finished_at": "2025-01-01T00:00:00Z"},
            headers=booked["provider"],
        )

        assert resp.status_code == 200
        expires = datetime.fromisoformat(resp.json()["warranty_expires_at"])
        assert expires == datetime(2025, 1, 16, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_backdated_finish_keeps_conversation_closed(self, client, booked):
        resp = await client.post(
            f"/api/v1/appointments/{booked['appointment_id']}/finish",
            json={"warranty_days": 15, "finished_at": "2025-01-01T00:00:00Z"},
            headers=booked["provider"],
        )
        assert resp.status_code == 200

        conversation = await client.get(
            "/api/v1/conversations/",
            params={"customer_id": booked["customer_id"], "provider_id": booked["provider_id"]},
            headers=booked["customer"],
        )

        assert conversation.json()["status"] == "closed"
        assert conversation.json()["warranty_expires"] is None
        assert conversation.json()["messaging_allowed"] is False

    @pytest.mark.asyncio
    async def test_finish_twice_is_409(self, client, booked):
        await _finish(client, booked)
        resp = await _finish(client, booked)

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "INVALID_TRANSITION"

    @pytest.mark.asyncio
    async def test_negative_warranty_days_is_validation_error(self, client, booked):
        resp = await _finish(client, booked, days=-3)

        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_customer_completes_early(self, client, booked):
        await _finish(client, booked)

        resp = await client.post(
            f"/api/v1/appointments/{booked['appointment_id']}/complete",
            headers=booked["customer"],
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"

    @pytest.mark.asyncio
    async def test_cancel_before_finish(self, client, booked):
        resp = await client.post(
            f"/api/v1/appointments/{booked['appointment_id']}/cancel",
            json={"reason": "Provider unavailable"},
            headers=booked["customer"],
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"
        assert resp.json()["cancellation_reason"] == "Provider unavailable"


class TestBackjobEndpoints:
    @pytest.mark.asyncio
    async def test_full_dispute_flow(self, client, booked):
        await _finish(client, booked)

        filed = await _file(client, booked)
        assert filed.status_code == 201
        assert filed.json()["appointment"]["status"] == "backjob"
        assert filed.json()["appointment"]["warranty_remaining_days"] == 7
        backjob_id = filed.json()["backjob"]["id"]

        disputed = await client.post(
            f"/api/v1/backjobs/{backjob_id}/dispute",
            json={"reason": "Unrelated damage"},
            headers=booked["provider"],
        )
        assert disputed.status_code == 200
        assert disputed.json()["status"] == "disputed"

        resolved = await client.post(
            f"/api/v1/backjobs/{backjob_id}/resolve",
            json={"outcome": "approved", "notes": "Redo the fitting"},
            headers=booked["admin"],
        )
        assert resolved.status_code == 200
        assert resolved.json()["status"] == "approved"

        appointment = await client.get(
            f"/api/v1/appointments/{booked['appointment_id']}", headers=booked["customer"]
        )
        assert appointment.json()["status"] == "in-warranty"
        assert appointment.json()["warranty_paused_at"] is None

        detail = await client.get(f"/api/v1/backjobs/{backjob_id}", headers=booked["customer"])
        assert [t["to_status"] for t in detail.json()["transitions"]] == [
            "pending", "disputed", "approved",
        ]

    @pytest.mark.asyncio
    async def test_duplicate_backjob_is_409(self, client, booked):
        await _finish(client, booked)
        await _file(client, booked)

        resp = await _file(client, booked, reason="Again")

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "DUPLICATE_BACKJOB"

    @pytest.mark.asyncio
    async def test_expired_warranty_is_422(self, client, booked):
        await _finish(client, booked, days=0)

        resp = await _file(client, booked)

        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "WARRANTY_EXPIRED"

    @pytest.mark.asyncio
    async def test_resolve_rejects_non_admin_outcome(self, client, booked):
        await _finish(client, booked)
        backjob_id = (await _file(client, booked)).json()["backjob"]["id"]

        resp = await client.post(
            f"/api/v1/backjobs/{backjob_id}/resolve",
            json={"outcome": "disputed"},
            headers=booked["admin"],
        )

        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_customer_cancel(self, client, booked):
        await _finish(client, booked)
        backjob_id = (await _file(client, booked)).json()["backjob"]["id"]

        resp = await client.post(f"/api/v1/backjobs/{backjob_id}/cancel", headers=booked["customer"])

        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled-by-user"

    @pytest.mark.asyncio
    async def test_list_is_admin_only(self, client, booked):
        await _finish(client, booked)
        await _file(client, booked)

        denied = await client.get("/api/v1/backjobs/", headers=booked["customer"])
        assert denied.status_code == 403

        listed = await client.get(
            "/api/v1/backjobs/", params={"status": "pending"}, headers=booked["admin"]
        )
        assert listed.status_code == 200
        assert listed.json()["total"] == 1
        assert listed.json()["items"][0]["reason"] == "Leak is back"


class TestConversationEndpoint:
    @pytest.mark.asyncio
    async def test_conversation_open_during_warranty(self, client, booked):
        await _finish(client, booked)

        resp = await client.get(
            "/api/v1/conversations/",
            params={"customer_id": booked["customer_id"], "provider_id": booked["provider_id"]},
            headers=booked["provider"],
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "active"
        assert resp.json()["messaging_allowed"] is True

    @pytest.mark.asyncio
    async def test_missing_conversation_is_404(self, client, booked):
        resp = await client.get(
            "/api/v1/conversations/",
            params={"customer_id": booked["customer_id"], "provider_id": booked["provider_id"]},
            headers=booked["customer"],
        )

        assert resp.status_code == 404


class TestAdminEndpoints:
    @pytest.mark.asyncio
    async def test_manual_sweep(self, client, booked):
        report = SweepReport(ran_at=datetime(2025, 1, 20, tzinfo=UTC), examined=2, expired=1)
        with patch("src.modules.warranty.router.ReconciliationSweep") as mock_sweep_cls:
            mock_sweep_cls.return_value.run = AsyncMock(return_value=report)

            resp = await client.post("/api/v1/admin/warranty/sweep", headers=booked["admin"])

        assert resp.status_code == 200
        assert resp.json()["examined"] == 2
        assert resp.json()["expired"] == 1

    @pytest.mark.asyncio
    async def test_manual_sweep_admin_only(self, client, booked):
        resp = await client.post("/api/v1/admin/warranty/sweep", headers=booked["provider"])

        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_status(self, client, booked):
        await _finish(client, booked)

        resp = await client.get("/api/v1/admin/warranty/status", headers=booked["admin"])

        assert resp.status_code == 200
        body = resp.json()
        assert body["task"] == "src.modules.warranty.tasks.reconcile_warranties"
        assert body["conversations_by_status"]["active"] == 1
