"""SuaTalk Analysis - Worker process.

Runs the scheduler poll loop with every job kind wired to its handler:
- analyze_audio  -> analysis.analyze
- cleanup_failed, cleanup_temp, health_check -> analysis.maintenance

Usage:
    analysis-worker [--db-path PATH] [--log-level LEVEL]

SIGINT/SIGTERM stop polling and wait for in-flight handlers before exit.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from sqlalchemy.orm import sessionmaker

from analysis.analyze import AnalysisHandlerDeps, build_analyze_audio_handler
from analysis.config import DB_PATH, ML_SERVICE_URL, TEMP_DIR
from analysis.db import init_db
from analysis.job_store import JobStore
from analysis.maintenance import MaintenanceDeps, build_maintenance_handlers
from analysis.recording_store import RecordingStore
from analysis.scheduler import Scheduler, SchedulerSettings
from analysis.schemas import JobKind
from services.alerting import AlertingSystem
from services.prediction_client import PredictionClient

logger = logging.getLogger(__name__)


def build_scheduler(
    SessionFactory: sessionmaker,
    prediction_client: PredictionClient,
    alerting: AlertingSystem,
    *,
    settings: SchedulerSettings | None = None,
    temp_dir: Path = TEMP_DIR,
) -> Scheduler:
    """Create a scheduler with handlers registered for every job kind."""
    recordings = RecordingStore(SessionFactory)
    scheduler = Scheduler(JobStore(SessionFactory), settings=settings)

    scheduler.register_handler(
        JobKind.ANALYZE_AUDIO,
        build_analyze_audio_handler(
            AnalysisHandlerDeps(
                recordings=recordings,
                prediction_client=prediction_client,
                scheduler=scheduler,
            )
        ),
    )
    maintenance = build_maintenance_handlers(
        MaintenanceDeps(
            recordings=recordings,
            scheduler=scheduler,
            alerting=alerting,
            temp_dir=temp_dir,
        )
    )
    for kind, handler in maintenance.items():
        scheduler.register_handler(kind, handler)
    return scheduler


async def run_worker(db_path: Path, ml_service_url: str) -> None:
    engine, SessionFactory = init_db(db_path)
    try:
        async with PredictionClient(ml_service_url) as prediction_client:
            scheduler = build_scheduler(SessionFactory, prediction_client, AlertingSystem())

            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, scheduler.request_stop)
                except NotImplementedError:
                    # add_signal_handler is unavailable on Windows event loops
                    pass

            await scheduler.start()
            logger.info("Worker %s started (db=%s)", scheduler.worker_id, db_path)
            await scheduler.wait_closed()
    finally:
        engine.dispose()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="SuaTalk analysis worker")
    parser.add_argument("--db-path", type=Path, default=DB_PATH, help="SQLite database file")
    parser.add_argument("--ml-service-url", default=ML_SERVICE_URL, help="Prediction service URL")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(run_worker(args.db_path, args.ml_service_url))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
