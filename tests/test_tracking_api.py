"""
Tracking API tests (FastAPI TestClient)
"""
import httpx
import pytest
from fastapi.testclient import TestClient

from main import app
from shiptrack.http.controllers.tracking import get_sync_service
from shiptrack.models import LifecycleClass
from shiptrack.services.credentials import CredentialResolver
from shiptrack.services.shipway_service import ShipwayService
from shiptrack.services.tracking_sync import TrackingSyncService
from shiptrack.services.webhook_service import WebhookDispatcher


def _carrier(request: httpx.Request) -> httpx.Response:
    awbs = request.url.params["awb_numbers"].split(",")
    return httpx.Response(
        200,
        json=[
            {
                "awb": awb,
                "tracking_details": {
                    "shipment_status": "In Transit",
                    "shipment_track_activities": [
                        {"date": "2026-01-10 10:00:00", "activity": "Picked Up", "location": "Origin"}
                    ],
                },
            }
            for awb in awbs
        ],
    )


@pytest.fixture
def sync_service(session_factory, recording_sleep):
    transport = httpx.MockTransport(_carrier)
    return TrackingSyncService(
        session_factory,
        client=ShipwayService("https://carrier.test/api/tracking", transport=transport),
        credentials=CredentialResolver(session_factory, {}),
        dispatcher=WebhookDispatcher(transport=transport, sleep=recording_sleep),
        sleep=recording_sleep,
    )


@pytest.fixture
def client(sync_service):
    app.dependency_overrides[get_sync_service] = lambda: sync_service
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestTrackingAPI:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["service"] == "shiptrack"

    def test_status(self, client):
        response = client.get("/api/tracking/status")
        assert response.status_code == 200
        data = response.json()
        assert data["active"]["is_running"] is False
        assert data["inactive"]["last_result"] is None

    def test_trigger_active_sync(self, client, make_store, make_shipment):
        make_store("STORE1")
        make_shipment(order_id="ORD1", awb="AWB1")

        response = client.post("/api/tracking/sync/active")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["processed"] == 1
        assert data["changed_count"] == 1

    def test_unknown_lifecycle(self, client):
        response = client.post("/api/tracking/sync/archived")
        assert response.status_code == 400

    def test_sync_rejected_while_running(self, client, sync_service):
        sync_service.guard.try_acquire(LifecycleClass.INACTIVE)
        try:
            response = client.post("/api/tracking/sync/inactive")
        finally:
            sync_service.guard.release(LifecycleClass.INACTIVE)
        assert response.status_code == 409

    def test_single_shipment_sync(self, client, make_store, make_shipment):
        make_store("STORE1")
        make_shipment(order_id="ORD1", awb="AWB1", status="In Transit")

        response = client.post("/api/tracking/shipments/STORE1/ORD1/sync")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["status_changed"] is False
        assert data["current_status"] == "In Transit"

    def test_single_shipment_not_found(self, client):
        response = client.post("/api/tracking/shipments/STORE1/NOPE/sync")
        assert response.status_code == 404
