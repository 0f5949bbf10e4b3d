import argparse
import logging
import os
import threading
from typing import Optional

from burst_buffer import config
from burst_buffer.controller import REPORTS, BurstBufferController
from burst_buffer.errors import ConfigError
from burst_buffer.scheduler import JobRecord, Scheduler


class _NoJobs(Scheduler):
    """Stands in for the scheduler when reporting from the command line."""

    def __init__(self) -> None:
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def find_job(self, job_id: int) -> Optional[JobRecord]:
        return None

    def queue_job_scheduler(self) -> None:
        pass


def interface() -> None:
    parser = argparse.ArgumentParser(
        description=(
            "Tool for checking burst buffer state. Reports pools, allocated "
            "buffers and per-user usage as CSV."
        )
    )
    parser.add_argument(
        "-c",
        "--command",
        nargs=1,
        type=str,
        default=["buffers"],
        help="""One of ("pools", "buffers", "usage").""",
    )
    parser.add_argument(
        "--config",
        nargs=1,
        type=str,
        default=[config.DEFAULT_CONFIG_FILE],
        help="Path of burst_buffer.conf.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Logs every orchestration tool call.",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    command = args.command[0].casefold()
    if command not in REPORTS:
        parser.error(f"unknown command {command!r}")

    try:
        bb_config = config.load_config(args.config[0])
    except ConfigError as e:
        parser.error(str(e))
    controller = BurstBufferController(bb_config, _NoJobs())
    try:
        controller.reconciler.survey()
        out = controller.state_pack(os.getuid())[command]
    finally:
        controller.shutdown()

    print(out.to_csv(index=False))


if __name__ == "__main__":
    interface()
