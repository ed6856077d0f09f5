"""Worker entry point for the cry analysis pipeline.

Starts the JobWorker polling loop alongside a lightweight HTTP health
check server (the container platform requires a listening port),
registers the recurring maintenance jobs, and handles SIGTERM/SIGINT
for graceful shutdown.
"""

import asyncio
import logging
import os
import signal
import sys
from asyncio import StreamReader, StreamWriter
from collections.abc import Sequence
from typing import Any

from cry_analysis.maintenance import MaintenanceTasks
from cry_analysis.observability.logger import StructuredJsonFormatter
from cry_analysis.pipeline import AnalysisPipeline, retry_policy_from_env
from cry_analysis.prediction.circuit_breaker import CircuitBreaker
from cry_analysis.prediction.client import PredictionClient
from cry_analysis.queue.models import JobKind
from cry_analysis.queue.scheduler import JobScheduler
from cry_analysis.queue.sqlite_store import SQLiteJobStore
from cry_analysis.queue.worker import JobWorker
from cry_analysis.storage.audio_storage import AudioStorage
from cry_analysis.storage.recording_api import RecordingApiClient

logger = logging.getLogger(__name__)

# Leaves a buffer before the platform's SIGKILL at 30s.
SHUTDOWN_TIMEOUT_SECONDS = 25


def _setup_logging() -> None:
    """Configure root logger with structured JSON output."""
    root = logging.getLogger()
    root.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(handler)


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


def build_worker() -> tuple[JobWorker, MaintenanceTasks, list[Any]]:
    """Assemble the worker and its collaborators from environment variables.

    Returns:
        The worker, the maintenance tasks, and clients to close on exit.
    """
    breaker = CircuitBreaker(
        failure_threshold=int(os.environ.get("CIRCUIT_FAILURE_THRESHOLD", 5)),
        success_threshold=int(os.environ.get("CIRCUIT_SUCCESS_THRESHOLD", 2)),
        cooldown_seconds=float(os.environ.get("CIRCUIT_COOLDOWN_SECONDS", 60)),
    )
    predictor = PredictionClient(breaker=breaker)
    recordings = RecordingApiClient()
    audio_storage = AudioStorage()
    retry_policy = retry_policy_from_env()

    scheduler = JobScheduler(
        SQLiteJobStore(),
        kind_concurrency={
            JobKind.ANALYZE_AUDIO: int(os.environ.get("ANALYSIS_CONCURRENCY", 2)),
        },
    )
    pipeline = AnalysisPipeline(
        scheduler, recordings, predictor, audio_storage, retry_policy
    )
    maintenance = MaintenanceTasks(
        scheduler, recordings, predictor, audio_storage, retry_policy
    )
    worker = JobWorker(scheduler, {**pipeline.handlers(), **maintenance.handlers()})
    return worker, maintenance, [predictor, recordings]


async def _run(
    worker: JobWorker,
    maintenance: MaintenanceTasks | None = None,
    resources: Sequence[Any] = (),
) -> None:
    """Run the health server and job worker until a shutdown signal."""
    port = int(os.environ.get("PORT", "8080"))
    server = await asyncio.start_server(_health_handler, "0.0.0.0", port)
    logger.info("Health server listening on port %d", port)

    if maintenance is not None:
        await maintenance.schedule()

    worker_task = asyncio.create_task(worker.run())

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _shutdown() -> None:
        logger.info("Received shutdown signal")
        worker.stop()
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown)

    await stop_event.wait()

    try:
        await asyncio.wait_for(worker_task, timeout=SHUTDOWN_TIMEOUT_SECONDS)
    except TimeoutError:
        logger.warning(
            "Worker loop did not stop within %ss; cancelling",
            SHUTDOWN_TIMEOUT_SECONDS,
        )
        worker_task.cancel()
        await asyncio.gather(worker_task, return_exceptions=True)

    if not await worker.drain(SHUTDOWN_TIMEOUT_SECONDS):
        logger.warning("In-flight jobs were cancelled; their leases will expire")

    for resource in resources:
        await resource.close()
    server.close()
    await server.wait_closed()


def main() -> None:
    """Start the job worker and process scheduled analyses."""
    _setup_logging()
    logger.info("Cry analysis worker starting")

    worker, maintenance, resources = build_worker()

    asyncio.run(_run(worker, maintenance, resources))


if __name__ == "__main__":
    main()
