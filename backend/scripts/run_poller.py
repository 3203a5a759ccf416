from __future__ import annotations

import argparse
import asyncio
import signal
from dataclasses import dataclass

from jewelry_ai.config import settings
from jewelry_ai.db import engine
from jewelry_ai.deps import get_image_provider
from jewelry_ai.logger import logger
from jewelry_ai.services.polling import ai_preview_poller, upgrade_preview_poller


@dataclass(frozen=True)
class PollerOptions:
    ai_preview: bool
    upgrade_preview: bool
    once: bool
    interval: float


async def run(options: PollerOptions) -> None:
    pollers = []
    if options.ai_preview:
        pollers.append(ai_preview_poller(get_image_provider, poll_interval=options.interval))
    if options.upgrade_preview:
        pollers.append(upgrade_preview_poller(get_image_provider, poll_interval=options.interval))
    if not pollers:
        raise SystemExit("Nothing to run: both pollers are disabled.")

    try:
        if options.once:
            for poller in pollers:
                processed = await poller.run_once()
                logger.info(f"[{poller.name}] processed {processed} job(s)")
            return

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        await asyncio.gather(*(poller.run_forever(stop) for poller in pollers))
    finally:
        await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the AI preview / upgrade preview job pollers.")
    parser.add_argument("--no-ai-preview", action="store_true", help="Do not poll AI preview jobs.")
    parser.add_argument("--no-upgrade-preview", action="store_true", help="Do not poll upgrade preview jobs.")
    parser.add_argument("--once", action="store_true", help="Run a single iteration and exit.")
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.WORKER_POLL_INTERVAL_SECONDS,
        help="Seconds to sleep between iterations.",
    )
    args = parser.parse_args()

    asyncio.run(
        run(
            PollerOptions(
                ai_preview=not args.no_ai_preview,
                upgrade_preview=not args.no_upgrade_preview,
                once=args.once,
                interval=args.interval,
            )
        )
    )


if __name__ == "__main__":
    main()
