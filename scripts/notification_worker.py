from __future__ import annotations

import asyncio

from pagerpush.core.logging import configure_logging
from pagerpush.workers.notification_worker import run_notification_worker


async def _main() -> None:
    # Boot a dedicated delivery process so gateway sends never run inside API handlers.
    configure_logging()
    await run_notification_worker()


if __name__ == "__main__":
    asyncio.run(_main())
