"""
Entry point for the real-time market signal engine.

Loads settings from the environment, boots the engine and runs analysis
cycles until SIGINT/SIGTERM.  Startup failures that leave the engine unable
to run (no exchange metadata, no tradable symbols) exit with status 1.
"""
from __future__ import annotations

import asyncio
import signal
import sys

from config import load_engine_settings
from log_utils import setup_logger
from signal_engine import FatalStartupError, SignalEngine

logger = setup_logger(__name__)


async def run(engine: SignalEngine) -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops do not support signal handlers.
            pass

    tasks = []
    try:
        await engine.start()
        runner = asyncio.create_task(engine.run_forever())
        stopper = asyncio.create_task(stop.wait())
        tasks = [runner, stopper]
        done, _ = await asyncio.wait({runner, stopper}, return_when=asyncio.FIRST_COMPLETED)
        if runner in done:
            # Surface unexpected loop failures.
            runner.result()
        logger.info("Shutdown requested")
    finally:
        await engine.shutdown()
        for task in tasks:
            task.cancel()


def main() -> None:
    """Program entry point."""

    settings = load_engine_settings()
    logger.info(
        "Starting signal engine for %s on %s candles",
        ", ".join(settings.symbols),
        settings.timeframe,
    )
    engine = SignalEngine(settings)
    try:
        asyncio.run(run(engine))
    except FatalStartupError as exc:
        logger.critical("Fatal startup error: %s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
