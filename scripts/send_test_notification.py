from __future__ import annotations

import argparse
import asyncio
import json
import sys
from uuid import uuid4

from pagerpush.core.config import get_settings
from pagerpush.core.errors import PagerPushError
from pagerpush.core.logging import configure_logging
from pagerpush.domain.models import Recipient
from pagerpush.services.notifications.dispatch import InMemoryRecipientDirectory
from pagerpush.services.notifications.runtime import build_runtime


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Enqueue a sample push notification and report queue metrics")
    parser.add_argument("--kind", choices=["alert", "silent", "message"], default="message")
    parser.add_argument("--device-token", required=True, help="Regular push device token")
    parser.add_argument("--live-activity-token", default=None, help="Push-to-start token (message kind only)")
    parser.add_argument("--user-id", default=None, help="Recipient id used for log correlation")
    parser.add_argument("--sender", default="ABC123", help="Sender name shown in the notification")
    parser.add_argument("--text", default="Test page from PagerPush", help="Message text")
    parser.add_argument(
        "--deliver",
        action="store_true",
        help="Process the queued job in this process instead of leaving it for the worker",
    )
    return parser


async def _send(args: argparse.Namespace) -> int:
    recipient = Recipient(
        id=args.user_id or uuid4().hex,
        device_token=args.device_token,
        live_activity_token=args.live_activity_token,
        handle=args.sender,
    )
    directory = InMemoryRecipientDirectory([recipient])
    runtime = build_runtime(
        get_settings(),
        recipients=directory,
        clear_live_activity_token=directory.clear_live_activity_token,
    )
    try:
        dispatcher = runtime.dispatcher
        if args.kind == "alert":
            job = await dispatcher.notify_alert(recipient, "📟 Test", args.text, {"type": "TEST"})
        elif args.kind == "silent":
            job = await dispatcher.notify_silent(recipient, {"type": "TEST"})
        else:
            job = await dispatcher.send_message_notification(recipient, args.sender, args.text, uuid4().hex)
        print(f"enqueued job_id={job.id} kind={job.kind.value} mock_mode={runtime.mock_mode}")
        if args.deliver:
            # A fallback alert may be enqueued by the first job, so drain until empty.
            while (outcome := await runtime.pool.run_once(timeout=0)) is not None:
                print(f"processed outcome={type(outcome).__name__} detail={outcome}")
        metrics = await runtime.metrics()
        print(json.dumps(metrics.to_dict()))
    except PagerPushError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        await runtime.transport.close()
        await runtime.queue.close()
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    return asyncio.run(_send(args))


if __name__ == "__main__":
    raise SystemExit(main())
