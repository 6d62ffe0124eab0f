# src/taskpulse/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then runs on one event loop:
- the heartbeat driver,
- the Matrix connector (optional).

SIGINT/SIGTERM stop both; in-flight dispatches are cancelled.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from ..config import Settings, get_settings
from ..logging_setup import setup_logging
from .bootstrap import create_app_state
from .commands import handle_message

logger = logging.getLogger(__name__)


async def _shutdown(state) -> None:
    """Best-effort shutdown (no exceptions should escape)."""
    try:
        await state.driver.stop()
    except Exception:
        logger.exception("Failed to stop heartbeat driver.")

    aclose = getattr(state.executor, "aclose", None)
    if aclose is not None:
        try:
            await aclose()
        except Exception:
            logger.debug("Executor close failed.", exc_info=True)

    # TaskStore opens a short-lived sqlite connection per call.
    state.store.close()


async def run(settings: Settings) -> None:
    matrix_client = None
    if settings.matrix_enabled:
        from ..connectors.matrix_client import create_matrix_client

        matrix_client = await create_matrix_client(settings)
        if matrix_client is None:
            logger.error("Matrix client creation failed; notifications go to the log.")

    state = create_app_state(settings, matrix_client=matrix_client)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not supported by every platform's event loop.
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop_event.set)

    workers: list[asyncio.Task] = [asyncio.create_task(state.driver.run_forever(), name="heartbeat")]

    if matrix_client is not None:
        from ..connectors.matrix_connector import MatrixConnector

        async def on_message(owner_id: str, text: str) -> str | None:
            return await handle_message(state, owner_id, text)

        connector = MatrixConnector(matrix_client, state.owners, on_message)
        workers.append(asyncio.create_task(connector.run(stop_event), name="matrix"))

    try:
        stop_waiter = asyncio.create_task(stop_event.wait())
        done, _ = await asyncio.wait([stop_waiter, *workers], return_when=asyncio.FIRST_COMPLETED)
        for t in done:
            if t is not stop_waiter and not t.cancelled() and t.exception() is not None:
                logger.error("Worker %s stopped with an error", t.get_name(), exc_info=t.exception())
        logger.info("Shutting down...")
        stop_waiter.cancel()
        for t in workers:
            t.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
    finally:
        await _shutdown(state)


def main() -> None:
    settings = get_settings()
    setup_logging(log_dir=settings.data_dir, console_level=settings.log_level)

    logger.info("Starting %s...", settings.app_name)
    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        pass
    logger.info("Bye.")


if __name__ == "__main__":
    main()
