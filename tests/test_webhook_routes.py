from __future__ import annotations

import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from twitch_exporter.collector.eventsub_self import EventSubSelfCollector
from twitch_exporter.eventsub.signature import (
    MESSAGE_ID_HEADER,
    MESSAGE_SIGNATURE_HEADER,
    MESSAGE_TIMESTAMP_HEADER,
    MESSAGE_TYPE_HEADER,
    compute_signature,
)
from twitch_exporter.main import create_app

SECRET = "s3cr3t-webhook"
TIMESTAMP = "2024-05-01T12:00:00Z"


@pytest_asyncio.fixture
async def app(make_settings):
    settings = make_settings(
        twitch_client_id="cid",
        twitch_client_secret="csecret",
        twitch_self_channel="alice",
        eventsub_enabled=True,
        eventsub_webhook_url="https://exporter.example.com/eventsub",
        eventsub_webhook_secret=SECRET,
        eventsub_webhook_path="/eventsub",
    )
    app = create_app(settings)
    yield app
    await app.state.exporter_state.twitch.close()


def _signed(body: bytes, message_type: str, message_id: str = "msg-1") -> dict[str, str]:
    return {
        MESSAGE_ID_HEADER: message_id,
        MESSAGE_TIMESTAMP_HEADER: TIMESTAMP,
        MESSAGE_TYPE_HEADER: message_type,
        MESSAGE_SIGNATURE_HEADER: compute_signature(SECRET, message_id, TIMESTAMP, body),
        "Content-Type": "application/json",
    }


def _notification(event_type: str, event: dict) -> bytes:
    return json.dumps({"subscription": {"type": event_type, "version": "1"}, "event": event}).encode()


async def _post(app, body: bytes, headers: dict[str, str]):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        return await client.post("/eventsub", content=body, headers=headers)


@pytest.mark.asyncio
class TestEventSubWebhook:
    async def test_challenge_is_echoed(self, app) -> None:
        body = json.dumps({"challenge": "pogchamp-kappa-360noscope"}).encode()
        response = await _post(app, body, _signed(body, "webhook_callback_verification"))
        assert response.status_code == 200
        assert response.text == "pogchamp-kappa-360noscope"
        assert response.headers["content-type"].startswith("text/plain")

    async def test_bad_signature_is_rejected_and_counted(self, app) -> None:
        body = _notification("channel.follow", {})
        headers = _signed(body, "notification")
        response = await _post(app, body + b" ", headers)
        assert response.status_code == 403

        registry = app.state.exporter_state.registry
        assert registry.get_sample_value("twitch_eventsub_signature_fail_total", {"reason": "bad_signature"}) == 1
        assert registry.get_sample_value("twitch_eventsub_signature_fail_total", {"reason": "missing_headers"}) == 0

    async def test_missing_headers_are_rejected(self, app) -> None:
        body = _notification("channel.follow", {})
        response = await _post(app, body, {"Content-Type": "application/json"})
        assert response.status_code == 403
        registry = app.state.exporter_state.registry
        assert registry.get_sample_value("twitch_eventsub_signature_fail_total", {"reason": "missing_headers"}) == 1

    async def test_signed_garbage_is_bad_request(self, app) -> None:
        body = b"not json at all"
        response = await _post(app, body, _signed(body, "notification"))
        assert response.status_code == 400

    async def test_notification_is_dispatched_once(self, app) -> None:
        received: list[dict] = []
        app.state.exporter_state.eventsub.on("channel.cheer", received.append)
        body = _notification("channel.cheer", {"bits": 100})

        first = await _post(app, body, _signed(body, "notification", message_id="dup-1"))
        second = await _post(app, body, _signed(body, "notification", message_id="dup-1"))
        third = await _post(app, body, _signed(body, "notification", message_id="dup-2"))

        assert (first.status_code, second.status_code, third.status_code) == (204, 204, 204)
        assert received == [{"bits": 100}, {"bits": 100}]

    async def test_revocation_is_acknowledged(self, app) -> None:
        body = json.dumps(
            {"subscription": {"id": "sub-1", "type": "channel.cheer", "status": "authorization_revoked"}}
        ).encode()
        response = await _post(app, body, _signed(body, "revocation"))
        assert response.status_code == 204


@pytest.mark.asyncio
async def test_webhook_route_absent_without_eventsub(make_settings) -> None:
    app = create_app(make_settings(twitch_client_id="cid", twitch_client_secret="csecret", eventsub_enabled=False))
    response = await _post(app, b"{}", {})
    await app.state.exporter_state.twitch.close()
    assert response.status_code in (404, 405)


@pytest.mark.asyncio
async def test_cheers_through_webhook_reach_self_counters(app) -> None:
    state = app.state.exporter_state
    collector = EventSubSelfCollector(
        eventsub=state.eventsub,
        capabilities=state.capabilities,
        runtime_metrics=state.runtime_metrics,
        grouping=state.reward_grouping,
        self_login="alice",
        self_user_id="1001",
    )
    state.registry.register(collector)

    for message_id, bits in (("cheer-1", 500), ("cheer-2", 250)):
        body = _notification("channel.cheer", {"bits": bits, "broadcaster_user_id": "1001"})
        response = await _post(app, body, _signed(body, "notification", message_id=message_id))
        assert response.status_code == 204

    assert state.registry.get_sample_value("twitch_channel_bits_events_total", {"channel": "alice"}) == 2
    assert state.registry.get_sample_value("twitch_channel_bits_total", {"channel": "alice"}) == 750
