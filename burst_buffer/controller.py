"""
The scheduler-facing surface of the burst buffer controller.

The scheduler calls these methods with its own job lock held. Each method
takes the controller lock for its own duration; anything that has to call the
orchestration tool is handed to the worker pool.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional

import pandas as pd

import burst_buffer.tool as tool
from burst_buffer import report
from burst_buffer.admission import set_use_times
from burst_buffer.config import BbConfig
from burst_buffer.errors import (
    InvalidRequestError,
    LimitExceededError,
    PermissionDeniedError,
)
from burst_buffer.interpret import decode
from burst_buffer.interpret.size import (
    BYTE_CONVERSIONS,
    MEBI,
    bytes_to_mebibytes,
    size_to_bytes,
)
from burst_buffer.inventory import Inventory
from burst_buffer.job_files import JobFiles
from burst_buffer.jobs import BbJob
from burst_buffer.lifecycle import PLUGIN, LifecycleDriver
from burst_buffer.limits import LimitKey
from burst_buffer.reconcile import ReconcileAgent, Reconciler
from burst_buffer.request import (
    BbRequest,
    build_script,
    parse_interactive,
    parse_script,
)
from burst_buffer.scheduler import Accounting, JobRecord, Scheduler
from burst_buffer.state import Clock, ControllerState, wall_clock
from burst_buffer.state_file import StateFile
from burst_buffer.states import Admission, BbState, StageStatus

logger = logging.getLogger(__name__)

ONE_YEAR = 365 * 24 * 60 * 60
TRES_PREFIX = "cray:"

POOLS = "pools"
BUFFERS = "buffers"
USAGE = "usage"
REPORTS = (POOLS, BUFFERS, USAGE)


class BurstBufferController:
    def __init__(
        self,
        config: BbConfig,
        scheduler: Scheduler,
        accounting: Optional[Accounting] = None,
        tool_: Optional[tool.Tool] = None,
        executor: Optional[Executor] = None,
        clock: Clock = wall_clock,
        tres_pos: int = 0,
    ) -> None:
        if tool_ is None:
            tool_ = tool.Tool(config.get_sys_state)
        self._owns_executor = executor is None
        if executor is None:
            executor = ThreadPoolExecutor(
                max_workers=config.max_workers, thread_name_prefix="bb_worker"
            )

        self.state = ControllerState(config, accounting, clock)
        self.scheduler = scheduler
        self.tool = tool_
        self.executor = executor
        self.tres_pos = tres_pos
        self.files = JobFiles(config.state_save_location)
        self.inventory = Inventory(tool_, config)
        self.lifecycle = LifecycleDriver(
            self.state, scheduler, tool_, self.files, executor
        )
        self.admission = self.lifecycle.admission
        self.state_file = StateFile(config.state_save_location)
        self.reconciler = Reconciler(
            self.state, scheduler, self.inventory, self.lifecycle, self.state_file
        )
        self._agent: Optional[ReconcileAgent] = None

    # ------------------------------------------------------------------
    # startup and configuration

    def init(self, start_agent: bool = True) -> None:
        self.reconciler.init()
        if start_agent:
            self._agent = ReconcileAgent(self.reconciler, self.state)
            self._agent.start()

    def shutdown(self, wait: bool = True) -> None:
        self.state.terminating.set()
        if self._agent is not None:
            self._agent.stop()
            self._agent = None
        if self._owns_executor:
            self.executor.shutdown(wait=wait)

    def reconfig(
        self, config: BbConfig, accounting: Optional[Accounting] = None
    ) -> None:
        with self.state.lock:
            self.state.reconfigure(config, accounting)
            self.inventory.reconfigure(self.state.config)
        logger.info("burst buffer configuration reloaded")

    def load_state(self) -> bool:
        return self.reconciler.load_state()

    def get_system_size(self) -> int:
        """Default pool size in MiB."""
        with self.state.lock:
            return self.state.capacity.total_space // BYTE_CONVERSIONS[MEBI]

    # ------------------------------------------------------------------
    # submission

    def validate(self, job: JobRecord, submit_uid: int) -> None:
        """
        First look at a submitted job. Raises a BurstBufferError subclass
        when the request must be refused, and rewrites job.burst_buffer to
        the canonical request string otherwise.
        """
        state = self.state
        with state.lock:
            granularity = state.capacity.granularity
        request = self._parse_request(job, granularity)
        if request is None or request.empty:
            return
        request.check()

        if job.user_id == 0:
            raise InvalidRequestError("User root can not allocate burst buffers")

        if (request.creates or request.destroys) and not (
            state.config.enable_persistent or self.scheduler.is_operator(submit_uid)
        ):
            raise PermissionDeniedError(
                "User not authorized to create or destroy persistent burst buffers"
            )

        size = request.size + request.persist_add
        with state.lock:
            if not state.config.user_permitted(job.user_id):
                raise PermissionDeniedError(
                    f"User {job.user_id} not permitted to use burst buffers"
                )
            key = LimitKey.of(job.user_id, job.account, job.partition, job.qos)
            if not state.limits.test(key, size):
                raise LimitExceededError("Burst buffer request exceeds a size limit")
            cap = state.config.user_size_limit
            if cap is not None and size > cap:
                raise LimitExceededError(
                    f"Burst buffer request of {size} bytes exceeds user limit of {cap}"
                )

        job.burst_buffer = str(request)

    def validate2(self, job: JobRecord) -> None:
        """
        Runs job_process and paths once the job has an id, and starts
        allocation right away if there is room. Raises InvalidRequestError
        carrying the tool response on failure.
        """
        if not job.burst_buffer:
            return
        if job.array:
            raise InvalidRequestError(
                f"{PLUGIN}: Burst buffers not currently supported for job arrays"
            )

        with self.state.lock:
            bb_job = self.state.jobs.get(job)
            if bb_job is None:
                return
            config = self.state.config

        try:
            self._write_script(job, bb_job)
        except OSError as e:
            with self.state.lock:
                self.state.jobs.remove(job.job_id)
            raise InvalidRequestError(
                f"{PLUGIN}: unable to write job script: {e}"
            ) from e

        script = str(self.files.script_path(job.job_id))
        path_file = str(self.files.path_file(job.job_id))
        try:
            self._run_checked(tool.JOB_PROCESS, ["--job", script], config)
            self._run_checked(
                tool.PATHS,
                ["--job", script, "--token", str(job.job_id), "--pathfile", path_file],
                config,
            )
        except InvalidRequestError:
            with self.state.lock:
                self.state.jobs.remove(job.job_id)
            raise

        job.environment.extend(self.files.read_path_file(job.job_id))

        with self.state.lock:
            if self.admission.test(job, bb_job) == Admission.ADMIT:
                self.lifecycle.allocate(job, bb_job, False)

    def set_tres_cnt(self, job: JobRecord) -> None:
        with self.state.lock:
            bb_job = self.state.jobs.get(job)
            if bb_job is not None:
                job.tres_bb_mb = bb_job.total_size // BYTE_CONVERSIONS[MEBI]

    def xlate_bb_2_tres_str(self, burst_buffer: Optional[str]) -> Optional[str]:
        """
        "cray:100G,200G" -> "<tres_pos>=307200"

        Items for another plugin are skipped.
        """
        if not burst_buffer or self.tres_pos < 1:
            return None

        with self.state.lock:
            granularity = self.state.config.granularity
        total = 0
        for item in decode.comma_separated_list(burst_buffer):
            if ":" in item:
                if not item.startswith(TRES_PREFIX):
                    continue
                item = item[len(TRES_PREFIX) :]
            size = size_to_bytes(item, granularity)
            if size is not None:
                total += bytes_to_mebibytes(size)

        if not total:
            return None
        return f"{self.tres_pos}={total}"

    # ------------------------------------------------------------------
    # scheduling

    def get_est_start(self, job: JobRecord) -> int:
        state = self.state
        now = state.now()
        if not job.burst_buffer or job.array:
            return now

        with state.lock:
            bb_job = state.jobs.get(job)
            if bb_job is None:
                return now
            if not (bb_job.persist_add or bb_job.swap_gb or bb_job.total_size):
                return now
            if bb_job.state != BbState.PENDING:
                return now + 1

            admission = self.admission.test(job, bb_job)
            if admission == Admission.ADMIT:
                return now
            if admission == Admission.DEFERRED_OVER_LIMIT:
                return now + ONE_YEAR
            return max(now, state.next_end_time)

    def try_stage_in(self, jobs: Iterable[JobRecord]) -> None:
        """
        Allocates buffers for pending jobs in order of expected start. Stops
        at the first job for which there is no space.
        """
        state = self.state
        with state.lock:
            candidates = []
            for job in jobs:
                if not job.pending or not job.start_time or not job.burst_buffer:
                    continue
                if job.array:
                    continue
                bb_job = state.jobs.get(job)
                if bb_job is not None:
                    candidates.append((job, bb_job))
            candidates.sort(key=lambda c: c[0].start_time)

            set_use_times(state, self.scheduler, state.now())
            for job, bb_job in candidates:
                if bb_job.state >= BbState.STAGING_IN:
                    continue
                admission = self.admission.test(job, bb_job)
                if admission == Admission.ADMIT:
                    self.lifecycle.allocate(job, bb_job, True)
                elif admission == Admission.DEFERRED_OVER_LIMIT:
                    continue
                else:
                    break

    def test_stage_in(self, job: JobRecord, test_only: bool) -> StageStatus:
        if not job.burst_buffer:
            return StageStatus.COMPLETE
        if job.array:
            return StageStatus.NOT_READY

        with self.state.lock:
            bb_job = self.state.jobs.get(job)
            if bb_job is None:
                return StageStatus.NOT_READY

            if bb_job.state < BbState.STAGING_IN:
                if test_only:
                    return StageStatus.NOT_READY
                if self.admission.test(job, bb_job) != Admission.ADMIT:
                    return StageStatus.NOT_READY
                if not self.lifecycle.allocate(job, bb_job, True):
                    return StageStatus.UNDERWAY
            return _stage_in_status(job, bb_job)

    def begin(self, job: JobRecord) -> bool:
        if not job.burst_buffer:
            return True
        with self.state.lock:
            bb_job = self.state.jobs.get(job)
            return self.lifecycle.begin(job, bb_job)

    def start_stage_out(self, job: JobRecord) -> None:
        if not job.burst_buffer:
            return
        with self.state.lock:
            bb_job = self.state.jobs.get(job)
            if bb_job is None:
                logger.debug("job %d has no burst buffer record", job.job_id)
            self.lifecycle.start_stage_out(job, bb_job)

    def test_stage_out(self, job: JobRecord) -> StageStatus:
        if not job.burst_buffer:
            return StageStatus.COMPLETE
        with self.state.lock:
            bb_job = self.state.jobs.get(job)
            if bb_job is None:
                return StageStatus.COMPLETE
            if bb_job.state < BbState.STAGING_OUT:
                return StageStatus.NOT_READY
            if bb_job.state == BbState.STAGING_OUT:
                return StageStatus.UNDERWAY
            return StageStatus.COMPLETE

    def cancel(self, job: JobRecord) -> None:
        with self.state.lock:
            self.lifecycle.cancel(job, self.state.jobs.get(job))

    # ------------------------------------------------------------------
    # reporting

    def state_pack(self, uid: Optional[int] = None) -> Dict[str, pd.DataFrame]:
        is_operator = self.scheduler.is_operator
        out = {
            POOLS: report.Pools(self.state).to_df(),
            BUFFERS: report.Buffers(self.state, uid, is_operator).to_df(),
            USAGE: report.Usage(self.state, uid, is_operator).to_df(),
        }
        return out

    # ------------------------------------------------------------------
    # helpers

    def _parse_request(self, job: JobRecord, granularity: int) -> Optional[BbRequest]:
        if job.batch and job.script:
            request = parse_script(job.script, granularity, job.min_nodes)
            if request is not None:
                return request
        if not job.burst_buffer:
            return None
        request = BbRequest.from_string(job.burst_buffer)
        if request is not None:
            return request
        return parse_interactive(job.burst_buffer, granularity, job.min_nodes)

    def _write_script(self, job: JobRecord, bb_job: BbJob) -> None:
        if job.batch and job.script:
            text = job.script
        else:
            text = build_script(bb_job.request)
        self.files.write_script(job.job_id, text)

    def _run_checked(self, operation: str, args: List[str], config: BbConfig) -> None:
        result = self.tool.run(operation, args, tool.timeout_for(config, operation))
        if not result.ok:
            logger.error(
                "%s status:%s response:%s", operation, result.status, result.output
            )
            raise InvalidRequestError(f"{PLUGIN}: {result.output}")


def _stage_in_status(job: JobRecord, bb_job: BbJob) -> StageStatus:
    if bb_job.state < BbState.STAGING_IN:
        if bb_job.pending_buffers():
            return StageStatus.UNDERWAY
        return StageStatus.NOT_READY
    if bb_job.state == BbState.STAGING_IN:
        return StageStatus.UNDERWAY
    if bb_job.state >= BbState.TEARDOWN and job.pending:
        return StageStatus.NOT_READY
    return StageStatus.COMPLETE
