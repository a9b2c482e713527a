"""Scheduler worker process: ``duesync-worker --once`` or a periodic loop."""

from __future__ import annotations

import argparse
import logging
import signal
import threading

from .core.config import settings
from .core.logging_setup import configure_logging
from .services.scheduler_runner import SchedulerRunner


logger = logging.getLogger(__name__)


def _create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="duesync-worker",
        description="Run the recurring generation, reminder, agenda and calendar sync tick",
    )
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument(
        "--interval",
        type=int,
        metavar="SECONDS",
        default=settings.SCHEDULER_INTERVAL_SECONDS,
        help="Seconds between ticks (default: %(default)s)",
    )
    parser.add_argument("--workers", type=int, default=None, help="Thread pool size for one tick")
    parser.add_argument("--log-level", default=None, help="Overrides DUESYNC_LOG_LEVEL")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _create_parser().parse_args(argv)
    configure_logging(args.log_level)
    runner = SchedulerRunner(max_workers=args.workers)

    if args.once:
        report = runner.run_tick()
        return 1 if report.failed else 0

    stop_event = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        logger.info("received signal %s, stopping after the current tick", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    runner.run_forever(args.interval, stop_event)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
