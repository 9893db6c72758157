"""
Full booking flow through the HTTP and WebSocket API.

Runs the app in-process with the in-memory seat store and a sqlite database:
- store a seat layout for a bus and open a trip on it
- watch the trip's seat map over the WebSocket
- hold seats for one checkout while a second checkout is refused
- commit the booking and see the booked diffs arrive
"""

from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from app.main import app
from app.models import Bus

pytestmark = pytest.mark.integration


@pytest.fixture(scope="module")
def client():
    with TestClient(app) as client:
        yield client


@pytest.fixture
def bus_id(database_schema):
    with Session(database_schema) as session:
        bus = Bus(registration_number=f"UBA {uuid4().hex[:6]}")
        session.add(bus)
        session.commit()
        return bus.id


def _open_trip(client, bus_id, bus_type="sleeper", total_seats=10):
    trip_id = f"trip-{uuid4().hex[:8]}"
    r = client.post(f"/seatmaps/buses/{bus_id}/layout", json={"bus_type": bus_type, "total_seats": total_seats})
    assert r.status_code == 200, r.text
    r = client.post(f"/seatmaps/trips/{trip_id}/open", json={"bus_id": bus_id})
    assert r.status_code == 200, r.text
    return trip_id


def _commit_body(trip_id, seat_ids, holder_token):
    return {
        "trip_id": trip_id,
        "seat_ids": seat_ids,
        "holder_token": holder_token,
        "passengers": [{"seat_id": s, "name": f"Passenger {s}"} for s in seat_ids],
        "contact": {"email": "traveller@example.com", "phone": "+256700000000"},
    }


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/ready").json() == {"status": "ready"}
    assert "X-Trace-Id" in client.get("/").headers


def test_layout_lifecycle(client, bus_id):
    r = client.post(f"/seatmaps/buses/{bus_id}/layout", json={"bus_type": "sleeper", "total_seats": 10})
    assert r.status_code == 200, r.text
    body = r.json()
    assert len(body["topology"]["seats"]) == 10
    assert body["added_seat_ids"] == ["L1", "L2", "L3", "L4", "L5", "U1", "U2", "U3", "U4", "U5"]

    r = client.post(f"/seatmaps/buses/{bus_id}/layout", json={"bus_type": "sleeper", "total_seats": 12})
    assert r.status_code == 409
    assert r.json()["error"] == "layout_change_refused"
    assert r.json()["added"] == ["L6", "U6"]

    r = client.post(
        f"/seatmaps/buses/{bus_id}/layout", json={"bus_type": "sleeper", "total_seats": 12, "force": True}
    )
    assert r.status_code == 200
    assert r.json()["added_seat_ids"] == ["L6", "U6"]

    r = client.get(f"/seatmaps/buses/{bus_id}/layout")
    assert r.status_code == 200
    assert r.json()["total_seats"] == 12


def test_invalid_layout(client, bus_id):
    r = client.post(f"/seatmaps/buses/{bus_id}/layout", json={"bus_type": "hovercraft", "total_seats": 10})
    assert r.status_code == 422
    assert r.json()["error"] == "invalid_configuration"

    r = client.post("/seatmaps/buses/999999/layout", json={"bus_type": "seater", "total_seats": 10})
    assert r.status_code == 404


def test_booking_flow(client, bus_id):
    trip_id = _open_trip(client, bus_id)

    with client.websocket_connect(f"/seatmaps/trips/{trip_id}/ws?holder_token=y") as ws:
        snapshot = ws.receive_json()
        assert snapshot["type"] == "snapshot"
        assert len(snapshot["states"]) == 10
        assert all(s["status"] == "available" for s in snapshot["states"])

        ws.send_text("ping")
        assert ws.receive_json() == {"type": "pong"}

        r = client.post("/bookings/holds", json={"trip_id": trip_id, "seat_ids": ["L1", "L2"], "holder_token": "x"})
        assert r.status_code == 200, r.text
        assert r.json()["seat_ids"] == ["L1", "L2"]

        held = [ws.receive_json(), ws.receive_json()]
        assert [(d["type"], d["seat_id"], d["new_status"]) for d in held] == [
            ("diff", "L1", "held"),
            ("diff", "L2", "held"),
        ]

        # a second checkout is refused the overlapping seat and gets nothing
        r = client.post("/bookings/holds", json={"trip_id": trip_id, "seat_ids": ["L2", "L3"], "holder_token": "y"})
        assert r.status_code == 409
        assert r.json()["error"] == "seats_unavailable"
        assert r.json()["seats"] == [{"seat_id": "L2", "status": "held"}]

        r = client.post("/bookings/commit", json=_commit_body(trip_id, ["L1", "L2"], "x"))
        assert r.status_code == 200, r.text
        booking = r.json()
        assert booking["status"] == "confirmed"

        booked = [ws.receive_json(), ws.receive_json()]
        assert [(d["seat_id"], d["new_status"], d["booking_id"]) for d in booked] == [
            ("L1", "booked", booking["booking_id"]),
            ("L2", "booked", booking["booking_id"]),
        ]

    states = {s["seat_id"]: s["status"] for s in client.get(f"/seatmaps/trips/{trip_id}").json()["states"]}
    assert states["L1"] == states["L2"] == "booked"
    assert states["L3"] == "available"

    # committing the same seats again fails without touching them
    r = client.post("/bookings/commit", json=_commit_body(trip_id, ["L1", "L2"], "x"))
    assert r.status_code == 409
    assert r.json()["error"] == "hold_lost_during_checkout"


def test_hold_renew_release(client, bus_id):
    trip_id = _open_trip(client, bus_id, bus_type="seater", total_seats=8)

    r = client.post(
        "/bookings/holds", json={"trip_id": trip_id, "seat_ids": ["L1"], "holder_token": "x", "ttl": 60}
    )
    assert r.status_code == 200
    first_expiry = r.json()["expires_at"]

    r = client.post(
        "/bookings/holds/renew", json={"trip_id": trip_id, "seat_ids": ["L1"], "holder_token": "x", "ttl": 600}
    )
    assert r.status_code == 200
    assert r.json()["expires_at"] > first_expiry

    r = client.post("/bookings/holds/renew", json={"trip_id": trip_id, "seat_ids": ["L1"], "holder_token": "y"})
    assert r.status_code == 409
    assert r.json()["error"] == "not_holder"

    r = client.post("/bookings/holds/release", json={"trip_id": trip_id, "holder_token": "x"})
    assert r.json() == {"trip_id": trip_id, "released": ["L1"]}
    r = client.post("/bookings/holds/release", json={"trip_id": trip_id, "holder_token": "x"})
    assert r.json()["released"] == []

    r = client.post("/bookings/holds/renew", json={"trip_id": trip_id, "seat_ids": ["L1"], "holder_token": "x"})
    assert r.status_code == 410
    assert r.json()["error"] == "hold_expired"


def test_request_errors(client, bus_id):
    trip_id = _open_trip(client, bus_id, bus_type="seater", total_seats=8)

    r = client.post("/bookings/holds", json={"trip_id": "no-such-trip", "seat_ids": ["L1"], "holder_token": "x"})
    assert r.status_code == 404
    assert r.json()["error"] == "trip_not_open"

    r = client.post("/bookings/holds", json={"trip_id": trip_id, "seat_ids": ["Z1"], "holder_token": "x"})
    assert r.status_code == 422
    assert r.json()["error"] == "invalid_seat_selection"

    many = [f"L{i}" for i in range(1, 8)]
    r = client.post("/bookings/holds", json={"trip_id": trip_id, "seat_ids": many, "holder_token": "x"})
    assert r.status_code == 422

    # passengers must cover exactly the committed seats
    body = _commit_body(trip_id, ["L1", "L2"], "x")
    body["passengers"] = body["passengers"][:1]
    r = client.post("/bookings/commit", json=body)
    assert r.status_code == 422

    with client.websocket_connect("/seatmaps/trips/no-such-trip/ws") as ws:
        frame = ws.receive_json()
    assert frame["type"] == "error"
    assert frame["error"] == "trip_not_open"
