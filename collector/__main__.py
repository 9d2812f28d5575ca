"""Entry point for running the rank collector: python -m collector"""
import asyncio
import logging
import os
import signal

from collector.database import init_db
from collector.scheduler import scheduler

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("collector")


async def main():
    init_db()
    scheduler.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    logger.info("Rank collector running")
    try:
        await stop.wait()
    finally:
        scheduler.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
