from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable, Protocol
from uuid import uuid4

import httpx

from pagerpush.core.config import Settings, get_settings
from pagerpush.core.errors import PayloadValidationError, TransportError, TransportTimeoutError
from pagerpush.domain.models import SendResult, SessionState
from pagerpush.services.notifications.credentials import CredentialProvider
from pagerpush.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

APNS_DEVICE_PATH = "/3/device/{device_token}"
# Gateway limit for regular and live activity payloads.
MAX_PAYLOAD_BYTES = 4096

# Errors after which the multiplexed connection cannot carry further streams.
_CONNECTION_LOST_ERRORS = (
    httpx.RemoteProtocolError,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.CloseError,
)

ClientFactory = Callable[[], httpx.AsyncClient]


class PushTransport(Protocol):
    @property
    def state(self) -> SessionState: ...

    async def send(
        self,
        device_token: str,
        payload: dict[str, Any],
        *,
        topic: str,
        push_type: str,
        priority: int,
    ) -> SendResult: ...

    async def close(self) -> None: ...


def serialize_payload(payload: dict[str, Any]) -> bytes:
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    if len(body) > MAX_PAYLOAD_BYTES:
        raise PayloadValidationError(f"payload is {len(body)} bytes; limit is {MAX_PAYLOAD_BYTES}")
    return body


def interpret_response(response: httpx.Response) -> SendResult:
    apns_id = response.headers.get("apns-id")
    if response.status_code == 200:
        return SendResult(accepted=True, status_code=200, apns_id=apns_id)
    reason: str | None = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("reason"), str):
        reason = body["reason"]
    return SendResult(accepted=False, status_code=int(response.status_code), reason=reason, apns_id=apns_id)


class TransportSession:
    """Owns the single HTTP/2 connection to the push gateway.

    Requests from every worker are multiplexed over one ``httpx.AsyncClient``.
    The only shared mutable state is the client handle and ``state``; both
    change only under ``_lock`` so concurrent senders never open two
    connections or race a teardown against a reconnect.
    """

    def __init__(
        self,
        *,
        credentials: CredentialProvider,
        host: str,
        connect_timeout_s: float = 30,
        request_timeout_s: float = 30,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._credentials = credentials
        self._host = host
        self._connect_timeout_s = connect_timeout_s
        self._request_timeout_s = request_timeout_s
        self._client_factory = client_factory or self._default_client
        self._client: httpx.AsyncClient | None = None
        self._state = SessionState.DISCONNECTED
        self._lock = asyncio.Lock()
        self._connects = 0
        self._closed = False

    @classmethod
    def from_settings(cls, credentials: CredentialProvider, settings: Settings | None = None) -> TransportSession:
        settings = settings or get_settings()
        return cls(
            credentials=credentials,
            host=settings.apns_host,
            connect_timeout_s=settings.apns_connect_timeout_s,
            request_timeout_s=settings.apns_request_timeout_s,
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def connect_count(self) -> int:
        return self._connects

    def _default_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._host,
            http2=True,
            timeout=httpx.Timeout(self._request_timeout_s, connect=self._connect_timeout_s),
        )

    async def _ensure_connected(self) -> httpx.AsyncClient:
        if self._closed:
            raise TransportError("push gateway session is closed")
        client = self._client
        if self._state == SessionState.CONNECTED and client is not None:
            return client
        async with self._lock:
            # A concurrent caller may have finished connecting while we waited.
            if self._state == SessionState.CONNECTED and self._client is not None:
                return self._client
            if self._closed:
                raise TransportError("push gateway session is closed")
            self._state = SessionState.CONNECTING
            try:
                client = self._client_factory()
            except Exception as exc:
                self._state = SessionState.DISCONNECTED
                raise TransportError(f"failed to open push gateway session: {exc}") from exc
            self._client = client
            self._state = SessionState.CONNECTED
            self._connects += 1
            logger.info("apns_session_connected host=%s connects=%s", self._host, self._connects)
            return client

    async def _teardown(self, client: httpx.AsyncClient, *, reason: str) -> None:
        async with self._lock:
            # Only drop the handle that failed; a newer one may already be in place.
            if self._client is not client:
                return
            self._client = None
            if self._state != SessionState.DRAINING:
                self._state = SessionState.DISCONNECTED
        logger.warning("apns_session_disconnected host=%s reason=%s", self._host, reason)
        increment_counter("apns_session_disconnect_total")
        try:
            await client.aclose()
        except (httpx.HTTPError, OSError):
            logger.debug("apns_session_close_failed host=%s", self._host, exc_info=True)

    async def send(
        self,
        device_token: str,
        payload: dict[str, Any],
        *,
        topic: str,
        push_type: str,
        priority: int,
    ) -> SendResult:
        body = serialize_payload(payload)
        client = await self._ensure_connected()
        credential = self._credentials.current_token()
        headers = {
            "authorization": f"bearer {credential.token}",
            "apns-topic": topic,
            "apns-push-type": push_type,
            "apns-priority": str(int(priority)),
            # Zero expiration: deliver now or discard.
            "apns-expiration": "0",
            "content-type": "application/json",
        }
        path = APNS_DEVICE_PATH.format(device_token=device_token)
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                client.post(path, content=body, headers=headers),
                timeout=self._request_timeout_s,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            record_external_call(integration="apns", latency_ms=(time.monotonic() - start) * 1000, success=False)
            if isinstance(exc, httpx.ConnectTimeout):
                await self._teardown(client, reason="connect_timeout")
            raise TransportTimeoutError(f"push gateway request timed out after {self._request_timeout_s}s") from exc
        except _CONNECTION_LOST_ERRORS as exc:
            record_external_call(integration="apns", latency_ms=(time.monotonic() - start) * 1000, success=False)
            await self._teardown(client, reason=type(exc).__name__)
            raise TransportError(f"push gateway connection lost: {exc}") from exc
        except httpx.HTTPError as exc:
            record_external_call(integration="apns", latency_ms=(time.monotonic() - start) * 1000, success=False)
            raise TransportError(f"push gateway request failed: {exc}") from exc

        result = interpret_response(response)
        record_external_call(
            integration="apns",
            latency_ms=(time.monotonic() - start) * 1000,
            success=result.accepted,
        )
        if result.reason == "ExpiredProviderToken":
            self._credentials.invalidate()
        return result

    async def close(self) -> None:
        async with self._lock:
            client = self._client
            self._closed = True
            self._state = SessionState.DRAINING
            self._client = None
        if client is not None:
            await client.aclose()
        self._state = SessionState.DISCONNECTED
        logger.info("apns_session_closed host=%s", self._host)


class MockTransportSession:
    """Stand-in used when gateway credentials are not configured.

    Logs the intended push and reports success so domain flows keep working
    in development.
    """

    def __init__(self) -> None:
        self._state = SessionState.CONNECTED

    @property
    def state(self) -> SessionState:
        return self._state

    async def send(
        self,
        device_token: str,
        payload: dict[str, Any],
        *,
        topic: str,
        push_type: str,
        priority: int,
    ) -> SendResult:
        serialize_payload(payload)
        increment_counter("apns_mock_send_total")
        logger.info(
            "apns_mock_send token=%s... topic=%s push_type=%s priority=%s payload=%s",
            device_token[:10],
            topic,
            push_type,
            priority,
            payload,
        )
        return SendResult(accepted=True, status_code=200, apns_id=str(uuid4()))

    async def close(self) -> None:
        self._state = SessionState.DISCONNECTED
