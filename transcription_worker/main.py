"""Worker entry point for the transcription pipeline.

Builds the clients from the environment, selects the poll or queue
consumer from WORKER_MODE, and runs it until SIGTERM/SIGINT. An HTTP
health check server is started when PORT is set.
"""

import asyncio
import logging
import os
import signal
import sys
from asyncio import StreamReader, StreamWriter
from collections.abc import Awaitable, Callable, Iterable
from datetime import timedelta

from dotenv import load_dotenv

from transcription_worker.heartbeat import HEARTBEAT_INTERVAL_SECONDS
from transcription_worker.observability.audit import AuditLogger
from transcription_worker.observability.logger import setup_logging
from transcription_worker.pipeline import JobCoordinator
from transcription_worker.queue import get_consumer
from transcription_worker.queue.interface import JobConsumer
from transcription_worker.storage.blob_client import BlobClient
from transcription_worker.storage.supabase_client import SupabaseClient
from transcription_worker.storage.supabase_store import SupabaseJobStore
from transcription_worker.transcription import get_transcriber
from transcription_worker.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

Closer = Callable[[], Awaitable[None]]


async def _health_handler(reader: StreamReader, writer: StreamWriter) -> None:
    """Minimal HTTP handler that returns 200 OK for liveness probes."""
    await reader.read(4096)
    response = (
        "HTTP/1.1 200 OK\r\n"
        "Content-Type: text/plain\r\n"
        "Content-Length: 2\r\n"
        "\r\n"
        "ok"
    )
    writer.write(response.encode())
    await writer.drain()
    writer.close()


def _float_env(name: str, default: float | None) -> float | None:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(
            f"{name} must be a number, got '{raw}'", setting=name
        ) from exc


def build_worker() -> tuple[JobConsumer, list[Closer]]:
    """Construct the consumer and everything it depends on.

    Returns:
        The consumer and the async close callbacks to run on shutdown,
        in order.

    Raises:
        ConfigurationError: If any required setting is missing or invalid.
    """
    supabase = SupabaseClient()
    store = SupabaseJobStore(supabase)
    blob_client = BlobClient()
    transcriber = get_transcriber()

    max_delay_minutes = _float_env("RETRY_MAX_DELAY_MINUTES", None)
    coordinator = JobCoordinator(
        store,
        blob_client,
        transcriber,
        audit=AuditLogger(supabase),
        heartbeat_interval=_float_env(
            "HEARTBEAT_INTERVAL_SECONDS", HEARTBEAT_INTERVAL_SECONDS
        ),
        max_retry_delay=(
            timedelta(minutes=max_delay_minutes)
            if max_delay_minutes is not None
            else None
        ),
    )

    consumer = get_consumer(store=store, coordinator=coordinator)
    return consumer, [consumer.close, transcriber.close, supabase.close]


async def _run(consumer: JobConsumer, closers: Iterable[Closer] = ()) -> None:
    """Run the consumer (and optional health server) until a signal arrives.

    The job in flight is allowed to finish; it is never cancelled.
    """
    server = None
    port = os.environ.get("PORT")
    if port:
        server = await asyncio.start_server(_health_handler, "0.0.0.0", int(port))
        logger.info("Health server listening on port %s", port)

    loop = asyncio.get_running_loop()

    def _shutdown() -> None:
        logger.info("Received shutdown signal")
        consumer.stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown)

    try:
        await consumer.run()
    finally:
        if server is not None:
            server.close()
            await server.wait_closed()
        for close in closers:
            try:
                await close()
            except Exception:
                logger.warning("Error while closing resources", exc_info=True)
        logger.info("Worker exited")


def main() -> None:
    """Start the transcription worker."""
    load_dotenv()
    setup_logging()
    logger.info("Transcription worker starting")

    try:
        consumer, closers = build_worker()
    except ConfigurationError as exc:
        logger.critical("Invalid configuration: %s", exc)
        sys.exit(1)

    logger.info(
        "Worker mode selected", extra={"worker_mode": consumer.mode}
    )
    asyncio.run(_run(consumer, closers))


if __name__ == "__main__":
    main()
