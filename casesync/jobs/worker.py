"""
RQ Worker
=========

Worker process for background sync jobs.
"""

import logging

from redis import Redis
from rq import Worker

from ..config import get_settings

logger = logging.getLogger(__name__)

DEFAULT_QUEUES = ["default", "maintenance"]


def start_worker(
    queues: list = None,
    burst: bool = False,
    logging_level: str = "INFO"
):
    """
    Start an RQ worker.

    Args:
        queues: List of queue names to listen to
        burst: Run in burst mode (exit when queues are empty)
        logging_level: Logging level
    """
    logging.basicConfig(
        level=getattr(logging, logging_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    queues = queues or DEFAULT_QUEUES
    conn = Redis.from_url(get_settings().redis_url)

    worker = Worker(
        queues,
        connection=conn,
        worker_ttl=420,
        job_monitoring_interval=5,
    )

    logger.info(f"Starting worker on queues: {queues}")
    worker.work(burst=burst)


def add_worker_arguments(parser):
    parser.add_argument(
        "--queues", "-q",
        nargs="+",
        default=DEFAULT_QUEUES,
        help="Queues to listen to"
    )
    parser.add_argument(
        "--burst", "-b",
        action="store_true",
        help="Run in burst mode"
    )
    parser.add_argument(
        "--log-level", "-l",
        default="INFO",
        help="Logging level"
    )


def run_worker_cli():
    """CLI entry point for worker"""
    import argparse

    parser = argparse.ArgumentParser(description="RQ worker for casesync")
    add_worker_arguments(parser)
    args = parser.parse_args()
    start_worker(
        queues=args.queues,
        burst=args.burst,
        logging_level=args.log_level
    )


if __name__ == "__main__":
    run_worker_cli()
