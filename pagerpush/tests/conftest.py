from __future__ import annotations

import pytest

from pagerpush.core.config import get_settings
from pagerpush.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def _isolate_process_state(monkeypatch) -> None:
    # Tests never talk to a real gateway and never share counters or cached settings.
    for name in ("APNS_KEY", "APNS_KEY_PATH", "APNS_KEY_ID", "APNS_TEAM_ID"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_telemetry()
