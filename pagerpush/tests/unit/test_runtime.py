from __future__ import annotations

import asyncio
import signal

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from pagerpush.core.config import APNS_PRODUCTION_HOST, APNS_SANDBOX_HOST, Settings, get_settings
from pagerpush.core.errors import RecipientDirectoryError
from pagerpush.domain.models import NotificationKind, Recipient, SendResult, SessionState
from pagerpush.services.notifications.dispatch import InMemoryRecipientDirectory
from pagerpush.services.notifications.queue import InMemoryJobQueue
from pagerpush.services.notifications.runtime import build_runtime, build_transport, load_recipient_directory
from pagerpush.services.notifications.transport import MockTransportSession, TransportSession
from pagerpush.services.notifications.worker_pool import Delivered
from pagerpush.workers.notification_worker import run_notification_worker


RECIPIENT_DIRECTORY = "pagerpush.services.notifications.dispatch:InMemoryRecipientDirectory"


def _pem() -> str:
    key = ec.generate_private_key(ec.SECP256R1())
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def test_gateway_host_follows_environment_flag() -> None:
    assert Settings().apns_host == APNS_SANDBOX_HOST
    assert Settings(apns_production=True).apns_host == APNS_PRODUCTION_HOST


def test_missing_credentials_select_mock_transport() -> None:
    transport, mock_mode = build_transport(Settings())

    assert mock_mode
    assert isinstance(transport, MockTransportSession)


def test_unreadable_key_selects_mock_transport() -> None:
    settings = Settings(apns_key="garbage", apns_key_id="KEY123ABCD", apns_team_id="TEAM456XYZ")

    transport, mock_mode = build_transport(settings)

    assert mock_mode
    assert isinstance(transport, MockTransportSession)


def test_configured_credentials_select_gateway_session() -> None:
    settings = Settings(apns_key=_pem(), apns_key_id="KEY123ABCD", apns_team_id="TEAM456XYZ")

    transport, mock_mode = build_transport(settings)

    assert not mock_mode
    assert isinstance(transport, TransportSession)
    assert transport.state == SessionState.DISCONNECTED


@pytest.mark.asyncio
async def test_runtime_wires_dispatch_to_delivery() -> None:
    recipient = Recipient(id="user-1", device_token="d" * 64, live_activity_token="1" * 64)
    directory = InMemoryRecipientDirectory([recipient])
    runtime = build_runtime(
        Settings(notify_queue_backend="memory", notify_worker_concurrency=3),
        recipients=directory,
        clear_live_activity_token=directory.clear_live_activity_token,
    )
    assert runtime.mock_mode
    assert runtime.pool.concurrency == 3
    assert isinstance(runtime.queue, InMemoryJobQueue)
    assert runtime.recipients is directory

    job = await runtime.dispatcher.send_message_notification(recipient, "ABC123", "hello", "m-1")
    outcome = await runtime.pool.run_once()
    metrics = await runtime.metrics()
    await runtime.stop()

    assert job.kind == NotificationKind.LIVE_ACTIVITY
    assert isinstance(outcome, Delivered)
    assert metrics.completed == 1
    assert runtime.transport.state == SessionState.DISCONNECTED


@pytest.mark.asyncio
async def test_worker_entrypoint_runs_until_terminated() -> None:
    runtime = build_runtime(
        Settings(
            notify_queue_backend="memory",
            notify_shutdown_grace_s=5,
            notify_recipient_directory=RECIPIENT_DIRECTORY,
        )
    )
    worker = asyncio.create_task(run_notification_worker(runtime))
    for _ in range(100):
        if runtime.pool.running:
            break
        await asyncio.sleep(0.01)
    assert runtime.pool.running

    await runtime.dispatcher.notify_alert(Recipient(id="user-1", device_token="d" * 64), "t", "b")
    for _ in range(200):
        if (await runtime.metrics()).completed == 1:
            break
        await asyncio.sleep(0.01)
    signal.raise_signal(signal.SIGTERM)
    await asyncio.wait_for(worker, timeout=10)

    assert not runtime.pool.running
    assert runtime.transport.state == SessionState.DISCONNECTED


class _GatewayRejectingLiveActivities:
    """Answers push-to-start sends with 410 Unregistered and accepts everything else."""

    def __init__(self) -> None:
        self.state = SessionState.CONNECTED
        self.sent: list[tuple[str, str]] = []

    async def send(self, device_token, payload, *, topic, push_type, priority) -> SendResult:  # noqa: ANN001
        self.sent.append((push_type, device_token))
        if push_type == "liveactivity":
            return SendResult(accepted=False, status_code=410, reason="Unregistered")
        return SendResult(accepted=True, status_code=200, apns_id=f"apns-{len(self.sent)}")

    async def close(self) -> None:
        self.state = SessionState.DISCONNECTED


def test_runtime_requires_recipient_directory() -> None:
    with pytest.raises(RecipientDirectoryError, match="NOTIFY_RECIPIENT_DIRECTORY"):
        build_runtime(Settings(notify_queue_backend="memory", notify_recipient_directory=None))


@pytest.mark.parametrize(
    "target",
    ["pagerpush.services.notifications.dispatch", "pagerpush.no_such_module:factory", "pagerpush.core.config:missing"],
)
def test_unloadable_recipient_directory_is_rejected(target: str) -> None:
    with pytest.raises(RecipientDirectoryError):
        load_recipient_directory(Settings(notify_recipient_directory=target))


def test_recipient_directory_must_offer_lookups() -> None:
    with pytest.raises(RecipientDirectoryError, match="get_recipient"):
        load_recipient_directory(Settings(notify_recipient_directory="pagerpush.core.config:Settings"))


def test_runtime_requires_token_cleanup_hook() -> None:
    class _LookupOnly:
        def get_recipient(self, user_id: str) -> Recipient | None:
            return None

    with pytest.raises(RecipientDirectoryError, match="clear_live_activity_token"):
        build_runtime(Settings(notify_queue_backend="memory"), recipients=_LookupOnly())


@pytest.mark.asyncio
async def test_worker_entrypoint_fails_fast_without_recipient_directory(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NOTIFY_QUEUE_BACKEND", "memory")
    monkeypatch.delenv("NOTIFY_RECIPIENT_DIRECTORY", raising=False)
    get_settings.cache_clear()
    try:
        with pytest.raises(RecipientDirectoryError):
            await run_notification_worker()
    finally:
        get_settings.cache_clear()


@pytest.mark.asyncio
async def test_worker_entrypoint_clears_dead_live_activity_token_and_sends_alert() -> None:
    transport = _GatewayRejectingLiveActivities()
    runtime = build_runtime(
        Settings(
            notify_queue_backend="memory",
            notify_shutdown_grace_s=5,
            notify_recipient_directory=RECIPIENT_DIRECTORY,
        ),
        transport=transport,
    )
    recipient = Recipient(id="user-1", device_token="d" * 64, live_activity_token="1" * 64)
    runtime.recipients.upsert(recipient)

    worker = asyncio.create_task(run_notification_worker(runtime))
    for _ in range(100):
        if runtime.pool.running:
            break
        await asyncio.sleep(0.01)
    await runtime.dispatcher.send_message_notification(recipient, "ABC123", "hello", "m-1")
    for _ in range(300):
        metrics = await runtime.metrics()
        if (metrics.completed, metrics.failed) == (1, 1):
            break
        await asyncio.sleep(0.01)
    signal.raise_signal(signal.SIGTERM)
    await asyncio.wait_for(worker, timeout=10)

    assert (metrics.waiting, metrics.active, metrics.completed, metrics.failed) == (0, 0, 1, 1)
    assert transport.sent == [("liveactivity", "1" * 64), ("alert", "d" * 64)]
    assert runtime.recipients.get_recipient("user-1").live_activity_token is None
    assert transport.state == SessionState.DISCONNECTED
