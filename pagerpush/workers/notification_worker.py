from __future__ import annotations

import asyncio
import logging
import signal

from pagerpush.core.config import get_settings
from pagerpush.services.notifications.runtime import NotificationRuntime, build_runtime


logger = logging.getLogger(__name__)


async def run_notification_worker(runtime: NotificationRuntime | None = None) -> None:
    # Run the worker pool until SIGINT/SIGTERM, then drain and close the gateway session.
    runtime = runtime or build_runtime(get_settings())
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Signal handlers are unavailable off the main thread and on some platforms.
            pass
    runtime.start()
    logger.info("notification_worker_running mock_mode=%s", runtime.mock_mode)
    try:
        await stop.wait()
    finally:
        logger.info("notification_worker_stopping")
        await runtime.stop()
