"""HTTP surface tests for the FastAPI application."""

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from backend.main import app
from backend.services.engine import get_front_desk_engine


HEADERS = {"X-Clinic-Id": "clinic-1", "X-Actor": "reception"}
DAY_PATH = "/doctors/doc-1/days/2024-01-10"


@pytest.fixture
def client(front_desk):
    app.dependency_overrides[get_front_desk_engine] = lambda: front_desk
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_slot(client: TestClient, capacity: int = 1) -> int:
    response = client.post(
        f"{DAY_PATH}/slots",
        json={
            "slots": [
                {"name": "Morning", "start_time": "09:00", "end_time": "10:00", "max_capacity": capacity}
            ]
        },
        headers=HEADERS,
    )
    assert response.status_code == 201
    return response.json()[0]["id"]


def test_health_endpoint(client: TestClient) -> None:
    """Health endpoint should return status ok."""

    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_version_endpoint(client: TestClient) -> None:
    """Version endpoint should expose application version."""

    response = client.get("/version")
    assert response.status_code == 200
    assert "version" in response.json()


def test_front_desk_flow(client: TestClient, sink) -> None:
    slot_id = _create_slot(client)

    booked = client.post(
        "/appointments",
        json={"doctor_id": "doc-1", "patient_id": "p1", "slot_id": slot_id},
        headers=HEADERS,
    )
    assert booked.status_code == 201
    body = booked.json()
    assert body["booking_order"] == 1
    assert body["queue_position"] == 1
    assert body["scheduled_datetime"] == "2024-01-10T09:00:00"

    full = client.post(
        "/appointments",
        json={"doctor_id": "doc-1", "patient_id": "p2", "slot_id": slot_id},
        headers=HEADERS,
    )
    assert full.status_code == 409
    assert full.json()["error"] == "slot_full"
    assert full.json()["retryable"] is False

    appointment_id = body["id"]
    premature = client.post(f"/appointments/{appointment_id}/complete", headers=HEADERS)
    assert premature.status_code == 409
    assert premature.json()["current_status"] == "scheduled"

    checked_in = client.post(f"/appointments/{appointment_id}/check-in", headers=HEADERS)
    assert checked_in.json()["status"] == "checked-in"

    queue = client.get(f"{DAY_PATH}/queue", headers=HEADERS)
    assert queue.status_code == 200
    assert [entry["id"] for entry in queue.json()["entries"]] == [appointment_id]
    assert queue.json()["summary"]["checked_in_count"] == 1

    bookings = client.get(f"/slots/{slot_id}/bookings", headers=HEADERS)
    assert [item["booking_order"] for item in bookings.json()] == [1]

    assert {item.clinic_id for item in sink.events} == {"clinic-1"}
    assert {item.actor for item in sink.events} == {"reception"}


def test_release_slot_route_refuses_no_show(client: TestClient) -> None:
    slot_id = _create_slot(client)
    booked = client.post(
        "/appointments",
        json={"doctor_id": "doc-1", "patient_id": "p1", "slot_id": slot_id},
        headers=HEADERS,
    ).json()
    client.post(f"/appointments/{booked['id']}/no-show", headers=HEADERS)

    response = client.post(f"/appointments/{booked['id']}/release-slot", headers=HEADERS)

    assert response.status_code == 409
    assert response.json()["error"] == "illegal_transition"
    assert client.get(f"/slots/{slot_id}", headers=HEADERS).json()["current_bookings"] == 1


def test_invalid_slot_batch_lists_violations(client: TestClient) -> None:
    response = client.post(
        f"{DAY_PATH}/slots",
        json={
            "slots": [
                {"name": "", "start_time": "10:00", "end_time": "09:00", "max_capacity": 0}
            ]
        },
        headers=HEADERS,
    )

    assert response.status_code == 422
    fields = {item["field"] for item in response.json()["violations"]}
    assert fields == {"slots[0].name", "slots[0].max_capacity", "slots[0].end_time"}


def test_missing_clinic_header_is_rejected(client: TestClient) -> None:
    response = client.get(f"{DAY_PATH}/queue")

    assert response.status_code == 422


def test_unknown_appointment_returns_404(client: TestClient) -> None:
    response = client.post("/appointments/999/start", headers=HEADERS)

    assert response.status_code == 404
    assert response.json()["error"] == "reference_not_found"


def test_delay_and_emergency_routes(client: TestClient) -> None:
    first = client.post(
        "/appointments",
        json={"doctor_id": "doc-1", "patient_id": "p1", "scheduled_datetime": "2024-01-10T10:00:00"},
        headers=HEADERS,
    ).json()
    second = client.post(
        "/appointments",
        json={"doctor_id": "doc-1", "patient_id": "p2", "scheduled_datetime": "2024-01-10T10:30:00"},
        headers=HEADERS,
    ).json()

    delayed = client.post(f"{DAY_PATH}/delay", json={"delay_minutes": 15}, headers=HEADERS)
    assert delayed.status_code == 200
    assert [item["scheduled_datetime"] for item in delayed.json()["shifted"]] == [
        "2024-01-10T10:15:00",
        "2024-01-10T10:45:00",
    ]

    rejected = client.post(f"{DAY_PATH}/delay", json={"delay_minutes": 0}, headers=HEADERS)
    assert rejected.status_code == 422

    emergency = client.post(
        "/emergencies",
        json={
            "appointment_id": second["id"],
            "reason": "swelling",
            "desired_time": "2024-01-10T10:45:00",
        },
        headers=HEADERS,
    )
    assert emergency.status_code == 200
    assert emergency.json()["created"] is False

    recomputed = client.post(f"{DAY_PATH}/queue/recompute", headers=HEADERS).json()
    assert [item["appointment_id"] for item in recomputed["positions"]] == [second["id"], first["id"]]


def test_slot_admin_routes(client: TestClient) -> None:
    slot_id = _create_slot(client, capacity=2)

    patched = client.patch(f"/slots/{slot_id}", json={"max_capacity": 4}, headers=HEADERS)
    assert patched.json()["max_capacity"] == 4

    toggled = client.post(
        "/slots/bulk-active", json={"slot_ids": [slot_id], "active": False}, headers=HEADERS
    )
    assert toggled.json()[0]["active"] is False

    available = client.get(f"{DAY_PATH}/slots", params={"available_only": True}, headers=HEADERS)
    assert available.json() == []

    stats = client.get("/doctors/doc-1/slot-statistics", headers=HEADERS)
    assert stats.json()["total_slots"] == 0

    deleted = client.delete(f"/slots/{slot_id}", headers=HEADERS)
    assert deleted.status_code == 204


def test_cancel_reschedule_and_sweep_routes(client: TestClient, clock) -> None:
    created = client.post(
        "/appointments",
        json={"doctor_id": "doc-1", "patient_id": "p1", "scheduled_datetime": "2024-01-10T09:00:00"},
        headers=HEADERS,
    ).json()

    moved = client.post(
        f"/appointments/{created['id']}/reschedule",
        json={"new_datetime": "2024-01-10T11:00:00"},
        headers=HEADERS,
    )
    assert moved.status_code == 200
    assert moved.json()["rescheduled_from_id"] == created["id"]

    cancelled = client.post(
        f"/appointments/{moved.json()['id']}/cancel",
        json={"reason": "travel"},
        headers=HEADERS,
    )
    assert cancelled.json()["cancellation_reason"] == "travel"

    client.post(
        "/appointments",
        json={"doctor_id": "doc-1", "patient_id": "p2", "scheduled_datetime": "2024-01-10T07:00:00"},
        headers=HEADERS,
    )
    swept = client.post("/maintenance/no-shows", headers=HEADERS)
    assert len(swept.json()["marked"]) == 1


@pytest.mark.anyio
async def test_queue_over_async_client(front_desk) -> None:
    app.dependency_overrides[get_front_desk_engine] = lambda: front_desk
    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            created = await client.post(
                "/appointments",
                json={
                    "doctor_id": "doc-1",
                    "patient_id": "p1",
                    "scheduled_datetime": "2024-01-10T09:30:00+05:30",
                },
                headers=HEADERS,
            )
            queue = await client.get(f"{DAY_PATH}/queue", headers=HEADERS)
    finally:
        app.dependency_overrides.clear()

    assert created.status_code == 201
    assert created.json()["scheduled_datetime"] == "2024-01-10T09:30:00"
    assert queue.json()["entries"][0]["patient_id"] == "p1"
