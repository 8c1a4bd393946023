"""
Webhook Dispatcher Tests
"""
import json
from datetime import datetime

import httpx
import pytest

from shiptrack.config import settings
from shiptrack.models import CustomerInfo, CustomerMessage, OrderLine
from shiptrack.services.tracking_persistence import ShipmentKey
from shiptrack.services.webhook_service import StatusChange, WebhookDispatcher, build_status_payload

WEBHOOK_URL = "https://hooks.test/status"


class WebhookStub:
    def __init__(self, statuses):
        self.statuses = list(statuses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return httpx.Response(status, json={"ok": status < 300})


@pytest.fixture
def change():
    return StatusChange(ShipmentKey("ORD1", "STORE1"), "Delivered", "In Transit")


@pytest.fixture
def enriched_order(db_session, make_shipment):
    make_shipment(order_id="ORD1", awb="AWB1", carrier_id="BD")
    db_session.add(CustomerInfo(order_id="ORD1", account_code="STORE1", shipping_phone="9999999999",
                                shipping_firstname="Asha", shipping_lastname="Rao"))
    db_session.add_all([
        OrderLine(order_id="ORD1", account_code="STORE1", product_code="P1", quantity=2),
        OrderLine(order_id="ORD1", account_code="STORE1", product_code="P1", quantity=1),
        OrderLine(order_id="ORD1", account_code="STORE1", product_code="P2", quantity=4),
        CustomerMessage(order_id="ORD1", account_code="STORE1", message_status="sent",
                        created_at=datetime(2026, 1, 10)),
        CustomerMessage(order_id="ORD1", account_code="STORE1", message_status="read",
                        created_at=datetime(2026, 1, 11)),
    ])
    db_session.commit()


class TestBuildPayload:
    def test_payload_joins_bulk_lookups(self, db_session, enriched_order, change):
        payload = build_status_payload(db_session, [change])

        assert payload["event"] == "status_update"
        assert "timestamp" in payload
        order = payload["orders"][0]
        assert order == {
            "order_id": "ORD1",
            "account_code": "STORE1",
            "carrier_id": "BD",
            "awb": "AWB1",
            "current_shipment_status": "Delivered",
            "previous_status": "In Transit",
            "shipping_phone": "9999999999",
            "shipping_firstname": "Asha",
            "shipping_lastname": "Rao",
            "number_of_product": 2,
            "number_of_quantity": 7,
            "latest_message_status": "read",
        }

    def test_orders_without_collaborator_rows(self, db_session):
        payload = build_status_payload(db_session, [StatusChange(ShipmentKey("X", "S"), "In Transit", None)])
        order = payload["orders"][0]
        assert order["awb"] is None
        assert order["number_of_product"] == 0
        assert order["latest_message_status"] is None

    def test_order_is_stable(self, db_session):
        changes = [
            StatusChange(ShipmentKey("B", "S2"), "x", None),
            StatusChange(ShipmentKey("A", "S2"), "x", None),
            StatusChange(ShipmentKey("C", "S1"), "x", None),
        ]
        payload = build_status_payload(db_session, changes)
        assert [(o["account_code"], o["order_id"]) for o in payload["orders"]] == [("S1", "C"), ("S2", "A"), ("S2", "B")]


class TestWebhookDispatcher:
    @pytest.mark.asyncio
    async def test_empty_change_list_makes_no_calls(self, db_session, recording_sleep):
        stub = WebhookStub([200])
        dispatcher = WebhookDispatcher(transport=httpx.MockTransport(stub), sleep=recording_sleep)

        result = await dispatcher.send_status_update(db_session, [])

        assert result["success"] is True
        assert result["sent"] == 0
        assert stub.requests == []

    @pytest.mark.asyncio
    async def test_missing_url_skips_delivery(self, db_session, change, recording_sleep):
        stub = WebhookStub([200])
        dispatcher = WebhookDispatcher(transport=httpx.MockTransport(stub), sleep=recording_sleep)

        result = await dispatcher.send_status_update(db_session, [change])

        assert result["success"] is False
        assert result["message"] == "Webhook URL not configured"
        assert stub.requests == []

    @pytest.mark.asyncio
    async def test_delivered_on_first_attempt(self, db_session, set_utility, enriched_order, change, recording_sleep):
        set_utility(settings.WEBHOOK_URL_KEY, WEBHOOK_URL)
        stub = WebhookStub([200])
        dispatcher = WebhookDispatcher(transport=httpx.MockTransport(stub), sleep=recording_sleep)

        result = await dispatcher.send_status_update(db_session, [change])

        assert result["success"] is True
        assert result["attempts"] == 1
        assert result["sent"] == 1
        request = stub.requests[0]
        assert request.method == "POST"
        assert str(request.url) == WEBHOOK_URL
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["User-Agent"] == settings.WEBHOOK_USER_AGENT
        assert json.loads(request.content)["orders"][0]["order_id"] == "ORD1"

    @pytest.mark.asyncio
    async def test_always_500_exhausts_three_attempts(self, db_session, set_utility, change, recording_sleep):
        set_utility(settings.WEBHOOK_URL_KEY, WEBHOOK_URL)
        set_utility(settings.WEBHOOK_RETRY_KEY, "3")
        stub = WebhookStub([500])
        dispatcher = WebhookDispatcher(transport=httpx.MockTransport(stub), sleep=recording_sleep)

        result = await dispatcher.send_status_update(db_session, [change])

        assert result["success"] is False
        assert result["attempts"] == 3
        assert len(stub.requests) == 3
        assert recording_sleep.calls == [1.0, 2.0]
        bodies = [json.loads(r.content) for r in stub.requests]
        assert bodies[0] == bodies[1] == bodies[2]

    @pytest.mark.asyncio
    async def test_recovers_on_retry(self, db_session, set_utility, change, recording_sleep):
        set_utility(settings.WEBHOOK_URL_KEY, WEBHOOK_URL)
        stub = WebhookStub([503, 200])
        dispatcher = WebhookDispatcher(transport=httpx.MockTransport(stub), sleep=recording_sleep)

        result = await dispatcher.send_status_update(db_session, [change])

        assert result["success"] is True
        assert result["attempts"] == 2
        assert recording_sleep.calls == [1.0]

    @pytest.mark.asyncio
    async def test_network_error_counts_as_failed_attempt(self, db_session, set_utility, change, recording_sleep):
        set_utility(settings.WEBHOOK_URL_KEY, WEBHOOK_URL)
        set_utility(settings.WEBHOOK_RETRY_KEY, "2")

        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        dispatcher = WebhookDispatcher(transport=httpx.MockTransport(refuse), sleep=recording_sleep)
        result = await dispatcher.send_status_update(db_session, [change])

        assert result["success"] is False
        assert result["attempts"] == 2
        assert "refused" in result["error"]
