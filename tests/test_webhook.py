from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from nodepath.main import app
from nodepath.schemas.webhook import normalize_inbound
from nodepath.services.orchestrator import PassReport, PassStatus, get_orchestrator


@pytest.fixture
def orchestrator():
    orchestrator = Mock()
    orchestrator.handle_inbound.side_effect = lambda message: PassReport(
        PassStatus.PROCESSED, message.phone_number, message.device_id
    )
    return orchestrator


@pytest.fixture
def client(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestWebhookEndpoint:
    def test_json_payload_runs_pass(self, client, orchestrator):
        response = client.post("/webhook/DEV-1/inst-1", json={"phone": "628111", "message": "halo", "pushName": "Ani"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "received"}
        message = orchestrator.handle_inbound.call_args[0][0]
        assert message.device_id == "DEV-1"
        assert message.instance == "inst-1"
        assert message.phone_number == "628111"
        assert message.text == "halo"
        assert message.sender_name == "Ani"

    def test_form_payload(self, client, orchestrator):
        response = client.post("/webhook/DEV-1/inst-1", data={"number": "628222", "message": "harga?"})

        assert response.status_code == 200
        message = orchestrator.handle_inbound.call_args[0][0]
        assert message.provider == "whacenter"
        assert message.text == "harga?"

    def test_unknown_payload_acknowledged_and_ignored(self, client, orchestrator):
        response = client.post("/webhook/DEV-1/inst-1", json={"event": "status"})

        assert response.json()["message"] == "ignored"
        orchestrator.handle_inbound.assert_not_called()

    def test_invalid_json_ignored(self, client, orchestrator):
        response = client.post(
            "/webhook/DEV-1/inst-1", content="{not json", headers={"content-type": "application/json"}
        )

        assert response.status_code == 200
        orchestrator.handle_inbound.assert_not_called()

    def test_get_probe(self, client):
        response = client.get("/webhook/DEV-1/inst-1")
        assert response.json()["ok"] is True

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}


class TestNormalizeInbound:
    def test_wablas(self):
        message = normalize_inbound("DEV-1", "inst", {"phone": "+628111", "message": "halo", "isFromMe": "true"})
        assert message.phone_number == "628111"
        assert message.from_me is True
        assert message.provider == "wablas"

    def test_whacenter_media(self):
        message = normalize_inbound("DEV-1", "inst", {"number": "628111", "file": "https://x.test/a.jpg"})
        assert message.media_url == "https://x.test/a.jpg"
        assert message.text is None

    def test_waha(self):
        body = {
            "session": "default",
            "payload": {
                "from": "628111@c.us",
                "body": "halo",
                "fromMe": False,
                "_data": {"Info": {"PushName": "Ani"}},
            },
        }
        message = normalize_inbound("DEV-1", None, body)
        assert message.phone_number == "628111"
        assert message.instance == "default"
        assert message.sender_name == "Ani"
        assert message.provider == "waha"

    def test_waha_group_ignored(self):
        body = {"payload": {"from": "1203630@g.us", "body": "halo"}}
        assert normalize_inbound("DEV-1", None, body) is None

    def test_missing_phone(self):
        assert normalize_inbound("DEV-1", "inst", {"phone": "", "message": "halo"}) is None

    def test_not_a_dict(self):
        assert normalize_inbound("DEV-1", "inst", ["phone"]) is None
