from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from pagerpush.core.errors import PayloadValidationError, TransportError, TransportTimeoutError
from pagerpush.domain.models import SessionState
from pagerpush.services.notifications.credentials import CredentialProvider
from pagerpush.services.notifications.transport import (
    MAX_PAYLOAD_BYTES,
    MockTransportSession,
    TransportSession,
    interpret_response,
)
from pagerpush.services.telemetry import counters_snapshot, external_latency_by_integration


HOST = "https://api.sandbox.push.apple.com"
TOKEN = "ab" * 32
PAYLOAD = {"aps": {"alert": {"title": "📟 ABC123", "body": "hi"}, "sound": "default"}}


def _credentials() -> CredentialProvider:
    return CredentialProvider(
        signing_key=ec.generate_private_key(ec.SECP256R1()),
        key_id="KEY123ABCD",
        team_id="TEAM456XYZ",
    )


def _session(handler, *, request_timeout_s: float = 5.0, clients: list | None = None) -> TransportSession:
    def factory() -> httpx.AsyncClient:
        client = httpx.AsyncClient(base_url=HOST, transport=httpx.MockTransport(handler))
        if clients is not None:
            clients.append(client)
        return client

    return TransportSession(
        credentials=_credentials(),
        host=HOST,
        request_timeout_s=request_timeout_s,
        client_factory=factory,
    )


async def _send(session: TransportSession, payload: dict | None = None):
    return await session.send(
        TOKEN,
        payload or PAYLOAD,
        topic="com.pager2077.app",
        push_type="alert",
        priority=10,
    )


@pytest.mark.asyncio
async def test_send_posts_to_device_path_with_gateway_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, headers={"apns-id": "0C1F4B1E-0000-0000-0000-000000000001"})

    session = _session(handler)
    result = await _send(session)

    assert result.accepted
    assert result.apns_id == "0C1F4B1E-0000-0000-0000-000000000001"
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == f"/3/device/{TOKEN}"
    assert request.headers["authorization"].startswith("bearer ")
    assert request.headers["apns-topic"] == "com.pager2077.app"
    assert request.headers["apns-push-type"] == "alert"
    assert request.headers["apns-priority"] == "10"
    assert request.headers["apns-expiration"] == "0"
    assert json.loads(request.content) == PAYLOAD
    assert session.state == SessionState.CONNECTED
    assert external_latency_by_integration(60)["apns"]["calls"] == 1


@pytest.mark.asyncio
async def test_rejections_are_classified_from_status_and_reason() -> None:
    responses = iter(
        [
            httpx.Response(410, json={"reason": "Unregistered", "timestamp": 1700000000000}),
            httpx.Response(400, json={"reason": "BadDeviceToken"}),
            httpx.Response(400, json={"reason": "PayloadEmpty"}),
            httpx.Response(503, json={"reason": "ServiceUnavailable"}),
        ]
    )
    session = _session(lambda request: next(responses))

    unregistered = await _send(session)
    bad_token = await _send(session)
    empty = await _send(session)
    unavailable = await _send(session)

    assert not unregistered.accepted
    assert unregistered.reason == "Unregistered"
    assert unregistered.invalid_token
    assert bad_token.invalid_token
    assert not empty.invalid_token
    assert not empty.transient
    assert unavailable.transient
    assert not unavailable.invalid_token
    # Rejections are answers, not connection failures.
    assert session.connect_count == 1


def test_interpret_response_tolerates_non_json_body() -> None:
    result = interpret_response(httpx.Response(500, text="upstream exploded"))
    assert not result.accepted
    assert result.reason is None
    assert result.transient


@pytest.mark.asyncio
async def test_connection_loss_tears_down_and_next_send_reconnects() -> None:
    calls = {"count": 0}
    clients: list[httpx.AsyncClient] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            raise httpx.RemoteProtocolError("GOAWAY received", request=request)
        return httpx.Response(200)

    session = _session(handler, clients=clients)

    with pytest.raises(TransportError):
        await _send(session)
    assert session.state == SessionState.DISCONNECTED
    assert clients[0].is_closed
    assert counters_snapshot()["apns_session_disconnect_total"] == 1

    result = await _send(session)
    assert result.accepted
    assert session.state == SessionState.CONNECTED
    assert session.connect_count == 2


@pytest.mark.asyncio
async def test_request_timeout_keeps_the_session() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200)

    session = _session(handler, request_timeout_s=0.05)

    with pytest.raises(TransportTimeoutError):
        await _send(session)
    assert session.state == SessionState.CONNECTED
    assert session.connect_count == 1
    assert external_latency_by_integration(60)["apns"]["failures"] == 1


@pytest.mark.asyncio
async def test_concurrent_sends_share_one_connection() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.01)
        return httpx.Response(200)

    session = _session(handler)

    results = await asyncio.gather(*(_send(session) for _ in range(10)))

    assert all(result.accepted for result in results)
    assert session.connect_count == 1


@pytest.mark.asyncio
async def test_oversized_payload_is_rejected_before_connecting() -> None:
    session = _session(lambda request: httpx.Response(200))
    payload = {"aps": {"content-available": 1}, "blob": "x" * MAX_PAYLOAD_BYTES}

    with pytest.raises(PayloadValidationError):
        await _send(session, payload)
    assert session.state == SessionState.DISCONNECTED
    assert session.connect_count == 0


@pytest.mark.asyncio
async def test_expired_provider_token_forces_new_credential() -> None:
    responses = iter([httpx.Response(403, json={"reason": "ExpiredProviderToken"}), httpx.Response(200)])
    session = _session(lambda request: next(responses))

    rejected = await _send(session)
    accepted = await _send(session)

    assert rejected.reason == "ExpiredProviderToken"
    assert accepted.accepted
    assert counters_snapshot()["apns_token_minted_total"] == 2


@pytest.mark.asyncio
async def test_close_releases_the_client() -> None:
    clients: list[httpx.AsyncClient] = []
    session = _session(lambda request: httpx.Response(200), clients=clients)
    await _send(session)

    await session.close()

    assert clients[0].is_closed
    assert session.state == SessionState.DISCONNECTED


@pytest.mark.asyncio
async def test_send_after_close_does_not_reconnect() -> None:
    clients: list[httpx.AsyncClient] = []
    session = _session(lambda request: httpx.Response(200), clients=clients)
    await _send(session)
    await session.close()

    with pytest.raises(TransportError, match="closed"):
        await _send(session)

    assert len(clients) == 1
    assert session.connect_count == 1
    assert session.state == SessionState.DISCONNECTED


@pytest.mark.asyncio
async def test_close_before_first_send_blocks_connecting() -> None:
    clients: list[httpx.AsyncClient] = []
    session = _session(lambda request: httpx.Response(200), clients=clients)
    await session.close()

    with pytest.raises(TransportError):
        await _send(session)

    assert clients == []
    assert session.connect_count == 0


@pytest.mark.asyncio
async def test_mock_session_accepts_and_validates_size() -> None:
    session = MockTransportSession()

    result = await _send(session)  # type: ignore[arg-type]

    assert result.accepted
    assert counters_snapshot()["apns_mock_send_total"] == 1
    with pytest.raises(PayloadValidationError):
        await _send(session, {"blob": "x" * (MAX_PAYLOAD_BYTES + 1)})  # type: ignore[arg-type]
