"""One-shot expiry of stale guest reservations, for cron."""
import argparse
import asyncio
import logging

from app.core.logger import configure_logging
from app.core.reservation_sweeper import sweep_once
from app.db.session import async_session_factory, ensure_schema_ready


async def run(loop_forever: bool, interval: float) -> None:
    logger = logging.getLogger("giftregistry.sweeper")
    await ensure_schema_ready()
    while True:
        expired = await sweep_once(async_session_factory)
        logger.info("expired=%d", expired)
        if not loop_forever:
            return
        await asyncio.sleep(interval)


def main() -> None:
    parser = argparse.ArgumentParser(description="Expire guest reservations past their TTL")
    parser.add_argument("--loop", action="store_true", help="keep running instead of a single pass")
    parser.add_argument("--interval", type=float, default=300.0, help="seconds between passes with --loop")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(run(args.loop, args.interval))


if __name__ == "__main__":
    main()
