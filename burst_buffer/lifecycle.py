"""
Lifecycle of job burst buffers and persistent buffers.

Entry points run with the scheduler lock and the controller lock held.
Anything that calls the orchestration tool is submitted to the worker pool;
the worker runs the tool with no lock held, then takes the scheduler lock
and the controller lock, in that order, to commit the outcome.

A job has at most one staging worker in flight. A step requested while one
is running (stage-out, or teardown after a cancel) is parked on the job and
started when the running worker finishes.
"""

from __future__ import annotations

import contextlib
import logging
from concurrent.futures import Executor
from pathlib import Path
from typing import Callable, Iterator, List, Optional

import burst_buffer.tool as tool
from burst_buffer.admission import AdmissionEngine
from burst_buffer.command import Result
from burst_buffer.interpret.node import NodeList
from burst_buffer.job_files import JobFiles
from burst_buffer.jobs import BbJob, BufferRequest
from burst_buffer.limits import LimitKey
from burst_buffer.registry import AllocationRecord
from burst_buffer.scheduler import JobRecord, Scheduler
from burst_buffer.state import ControllerState
from burst_buffer.states import BbState

logger = logging.getLogger(__name__)

PLUGIN = "burst_buffer/cray"
CALLER = "SLURM"


class LifecycleDriver:
    def __init__(
        self,
        state: ControllerState,
        scheduler: Scheduler,
        tool_: tool.Tool,
        files: JobFiles,
        executor: Executor,
    ) -> None:
        self._state = state
        self._scheduler = scheduler
        self._tool = tool_
        self._files = files
        self._executor = executor
        self.admission = AdmissionEngine(state, scheduler, self.revoke)

    # ------------------------------------------------------------------
    # transitions started by the scheduler

    def allocate(self, job: JobRecord, bb_job: BbJob, job_ready: bool) -> bool:
        """
        Starts allocation of an admitted job. Returns False while persistent
        buffer work is still outstanding.
        """
        if bb_job.buffers and self.process_buffers(job, bb_job, job_ready) > 0:
            return False

        if bb_job.total_size or bb_job.gres:
            bb_job.set_state(BbState.STAGING_IN, self._state.now())
            self._insert_job_record(job, bb_job)
            self._queue_stage_in(job, bb_job)
        else:
            bb_job.set_state(BbState.STAGED_IN, self._state.now())
        return True

    def begin(self, job: JobRecord, bb_job: Optional[BbJob]) -> bool:
        if not job.nodes:
            logger.error("job %d lacks a node allocation", job.job_id)
            return False

        if bb_job is None:
            logger.error("no burst buffer record for job %d", job.job_id)
            job.hold("Could not find burst buffer record")
            self.queue_teardown(job.job_id, job.user_id, True)
            return False

        if bb_job.pending_buffers() > 0:
            job.hold("Error managing persistent burst buffers")
            self.request_teardown(bb_job, job.job_id, job.user_id, True)
            return False

        args: Optional[List[str]] = None
        if bb_job.total_size or bb_job.gres:
            script = str(self._files.script_path(job.job_id))
            args = ["--token", str(job.job_id), "--job", script]
            nodes = NodeList.from_string(job.nodes)
            if nodes is None:
                logger.error(
                    "job %d has unreadable node list %s", job.job_id, job.nodes
                )
            else:
                path = self._write_client_nids(job, bb_job, nodes)
                if path is None:
                    return False
                args.extend(["--nodehostnamefile", str(path)])

        now = self._state.now()
        bb_job.set_state(BbState.RUNNING, now)
        record = self._state.registry.find_job(job.job_id)
        if record is not None:
            record.set_state(BbState.RUNNING, now)
        if args is not None:
            self._submit(
                bb_job, tool.PRE_RUN, self._pre_run, job.job_id, job.user_id, args
            )
        return True

    def start_stage_out(self, job: JobRecord, bb_job: Optional[BbJob]) -> None:
        if bb_job is None:
            return

        if bb_job.total_size == 0 and not bb_job.gres:
            self.request_teardown(bb_job, job.job_id, job.user_id, False)
        elif bb_job.state < BbState.STAGING_OUT:
            now = self._state.now()
            bb_job.set_state(BbState.STAGING_OUT, now)
            record = self._state.registry.find_job(job.job_id)
            if record is not None:
                record.set_state(BbState.STAGING_OUT, now)
            step = lambda: self._queue_stage_out(job.job_id, job.user_id, bb_job)
            if bb_job.worker is None:
                step()
            elif bb_job.next_step is None:
                bb_job.next_step = step

    def cancel(self, job: JobRecord, bb_job: Optional[BbJob]) -> None:
        if bb_job is None or bb_job.state == BbState.PENDING:
            return
        if bb_job.state >= BbState.TEARDOWN:
            return

        record = self._state.registry.find_job(job.job_id)
        if record is not None:
            record.set_state(BbState.TEARDOWN, self._state.now())
        self.request_teardown(bb_job, job.job_id, job.user_id, True)

    def revoke(self, record: AllocationRecord) -> None:
        """Takes a buffer away from a job that will not need it soon."""
        now = self._state.now()
        record.cancelled = True
        record.end_time = 0
        record.set_state(BbState.TEARDOWN, now)
        bb_job = self._state.jobs.find(record.job_id)
        self.request_teardown(bb_job, record.job_id, record.user_id, True)

    def request_teardown(
        self, bb_job: Optional[BbJob], job_id: int, user_id: int, hurry: bool
    ) -> None:
        if bb_job is not None:
            bb_job.set_state(BbState.TEARDOWN, self._state.now())
            if bb_job.worker is not None:
                bb_job.next_step = lambda: self.queue_teardown(job_id, user_id, hurry)
                return
        self.queue_teardown(job_id, user_id, hurry)

    def queue_teardown(self, job_id: int, user_id: int, hurry: bool) -> None:
        script = self._files.script_or_dummy(job_id)
        args = ["--token", str(job_id), "--job", str(script)]
        if hurry:
            args.append("--hurry")
        bb_job = self._state.jobs.find(job_id)
        self._submit(bb_job, tool.TEARDOWN, self._teardown, job_id, user_id, args)

    # ------------------------------------------------------------------
    # persistent buffers

    def process_buffers(self, job: JobRecord, bb_job: BbJob, job_ready: bool) -> int:
        """
        Starts any persistent create, and any destroy once the job is ready
        to run. Returns how many sub-requests are still outstanding.
        """
        pending = 0
        for buf in bb_job.buffers:
            if buf.active:
                pending += 1
            elif buf.terminal:
                continue
            elif buf.create:
                self._start_create(job, bb_job, buf)
                pending += 1
            elif not job_ready:
                pending += 1
            elif self._start_destroy(job, bb_job, buf):
                pending += 1
        return pending

    def _start_create(self, job: JobRecord, bb_job: BbJob, buf: BufferRequest) -> None:
        state = self._state
        key = bb_job.limit_key
        state.limits.add(key, buf.size)
        state.capacity.charge(buf.size, {})
        buf.state = BbState.ALLOCATING
        bb_job.set_state(BbState.ALLOCATING, state.now())

        pool = state.capacity.default_pool or state.config.default_pool or ""
        args = ["-c", CALLER, "-t", buf.name, "-u", str(job.user_id)]
        args.extend(["-C", f"{pool}:{buf.size}"])
        if buf.access:
            args.extend(["-a", buf.access])
        if buf.type:
            args.extend(["-T", buf.type])
        self._submit(
            None,
            tool.CREATE_PERSISTENT,
            self._create_persistent,
            job.job_id,
            key,
            buf.name,
            buf.size,
            args,
        )

    def _start_destroy(
        self, job: JobRecord, bb_job: BbJob, buf: BufferRequest
    ) -> bool:
        registry = self._state.registry
        record = registry.find_name(buf.name, job.user_id)
        if record is None:
            record = registry.find_any_name(buf.name)
        if record is None or not record.persistent:
            logger.info(
                "destroy_persistent: no burst buffer named %s for job %d",
                buf.name,
                job.job_id,
            )
            buf.state = BbState.DELETED
            bb_job.settle_buffers(self._state.now())
            return False

        owner = record.user_id
        if owner != job.user_id and not self._scheduler.is_super_user(job.user_id):
            logger.info(
                "destroy_persistent: job %d user %d may not destroy %s of user %d",
                job.job_id,
                job.user_id,
                buf.name,
                record.user_id,
            )
            job.hold(f"{PLUGIN}: Delete permission denied for buffer {buf.name}")
            return True

        now = self._state.now()
        buf.state = BbState.DELETING
        bb_job.set_state(BbState.DELETING, now)
        record.set_state(BbState.TEARDOWN, now)

        script = self._files.script_or_dummy(job.job_id)
        args = ["--token", buf.name, "--job", str(script)]
        if buf.hurry:
            args.append("--hurry")
        self._submit(
            None,
            tool.DESTROY_PERSISTENT,
            self._destroy_persistent,
            job.job_id,
            owner,
            buf.name,
            args,
        )
        return True

    # ------------------------------------------------------------------
    # workers

    def _stage_in(
        self,
        job_id: int,
        user_id: int,
        setup_args: List[str],
        data_in_args: List[str],
    ) -> None:
        result = self._run(tool.SETUP, setup_args)
        with self._locks():
            bb_job = self._state.jobs.find(job_id)
            if not result.ok:
                self._failed(job_id, user_id, tool.SETUP, result)
                self._finish(bb_job)
                return
            if bb_job is None:
                logger.error("setup: burst buffer record for job %d vanished", job_id)
                self.queue_teardown(job_id, user_id, True)
                return
            if bb_job.state != BbState.STAGING_IN:
                self._finish(bb_job)
                return

        result = self._run(tool.DATA_IN, data_in_args)
        with self._locks():
            bb_job = self._state.jobs.find(job_id)
            if not result.ok:
                self._failed(job_id, user_id, tool.DATA_IN, result)
            elif bb_job is None:
                logger.error("data_in: burst buffer record for job %d vanished", job_id)
                self.queue_teardown(job_id, user_id, True)
                return
            elif bb_job.state == BbState.STAGING_IN:
                now = self._state.now()
                bb_job.set_state(BbState.STAGED_IN, now)
                record = self._state.registry.find_job(job_id)
                if record is not None:
                    record.set_state(BbState.STAGED_IN, now)
                self._scheduler.queue_job_scheduler()
            self._finish(bb_job)

    def _pre_run(self, job_id: int, user_id: int, args: List[str]) -> None:
        result = self._run(tool.PRE_RUN, args)
        with self._locks():
            bb_job = self._state.jobs.find(job_id)
            if not result.ok:
                self._failed(job_id, user_id, tool.PRE_RUN, result)
            self._finish(bb_job)

    def _stage_out(self, job_id: int, user_id: int, args: List[str]) -> None:
        operation = tool.DATA_OUT
        result = self._run(tool.DATA_OUT, args)
        if result.ok:
            operation = tool.POST_RUN
            result = self._run(tool.POST_RUN, args)

        with self._locks():
            bb_job = self._state.jobs.find(job_id)
            if not result.ok:
                self._failed(job_id, user_id, operation, result)
            else:
                now = self._state.now()
                record = self._state.registry.find_job(job_id)
                if record is not None:
                    record.set_state(BbState.TEARDOWN, now)
                if bb_job is not None:
                    bb_job.set_state(BbState.STAGED_OUT, now)
                self.request_teardown(bb_job, job_id, user_id, False)
            self._finish(bb_job)

    def _teardown(self, job_id: int, user_id: int, args: List[str]) -> None:
        result = self._run(tool.TEARDOWN, args)
        if not result.ok and not tool.is_token_not_found(result):
            logger.error(
                "teardown for job %d status:%s response:%s",
                job_id,
                result.status,
                result.output,
            )
            with self._locks():
                job = self._scheduler.find_job(job_id)
                if job is not None:
                    job.hold(f"{PLUGIN}: teardown: {result.output}")
                self._finish(self._state.jobs.find(job_id))
            return

        with self._locks():
            state = self._state
            record = state.registry.find_job(job_id)
            if record is None:
                record = state.registry.find_name(str(job_id), user_id)
            if record is not None:
                state.registry.remove(record)

            job = self._scheduler.find_job(job_id)
            requeued = job is not None and job.pending
            if requeued:
                # revoked or failed before the job started: it may stage again
                # and the tool will need the script
                self._files.remove_client_nids(job_id)
            else:
                self._files.purge(job_id)
            bb_job = state.jobs.find(job_id)
            if bb_job is not None:
                if requeued:
                    bb_job.set_state(BbState.PENDING, state.now())
                else:
                    bb_job.set_state(BbState.COMPLETE, state.now())
            self._finish(bb_job)

    def _create_persistent(
        self, job_id: int, key: LimitKey, name: str, size: int, args: List[str]
    ) -> None:
        result = self._run(tool.CREATE_PERSISTENT, args)
        with self._locks():
            state = self._state
            now = state.now()
            state.limits.remove(key, size)
            state.capacity.release(size, {})
            job = self._scheduler.find_job(job_id)
            bb_job = state.jobs.find(job_id)
            buf = _find_buffer(bb_job, name, True)

            if not result.ok:
                logger.error(
                    "create_persistent for job %d name %s status:%s response:%s",
                    job_id,
                    name,
                    result.status,
                    result.output,
                )
                if job is not None:
                    job.hold(f"{PLUGIN}: create_persistent: {result.output}")
                if buf is not None and bb_job is not None:
                    buf.state = BbState.PENDING
                    bb_job.set_state(BbState.PENDING, now)
                return

            if state.registry.find_name(name, key.user_id) is not None:
                logger.error("persistent burst buffer %s already recorded", name)
            else:
                record = AllocationRecord(
                    name,
                    key.user_id,
                    size,
                    account=key.account or None,
                    partition=key.partition or None,
                    qos=key.qos or None,
                    create_time=now,
                )
                record.seen_time = now
                state.registry.insert(record)
                state.persist_change_time = now
            if buf is not None and bb_job is not None:
                buf.state = BbState.ALLOCATED
                bb_job.settle_buffers(now)
            self._scheduler.queue_job_scheduler()

    def _destroy_persistent(
        self, job_id: int, owner: int, name: str, args: List[str]
    ) -> None:
        result = self._run(tool.DESTROY_PERSISTENT, args)
        with self._locks():
            state = self._state
            now = state.now()
            job = self._scheduler.find_job(job_id)
            bb_job = state.jobs.find(job_id)
            buf = _find_buffer(bb_job, name, False)
            record = state.registry.find_name(name, owner)

            if not result.ok and not tool.is_token_not_found(result):
                logger.error(
                    "destroy_persistent for job %d name %s status:%s response:%s",
                    job_id,
                    name,
                    result.status,
                    result.output,
                )
                if job is not None:
                    job.hold(f"{PLUGIN}: destroy_persistent: {result.output}")
                if record is not None:
                    record.set_state(BbState.ALLOCATED, now)
                if buf is not None and bb_job is not None:
                    buf.state = BbState.PENDING
                    bb_job.set_state(BbState.PENDING, now)
                return

            if record is not None:
                state.registry.remove(record)
                state.persist_change_time = now
            if buf is not None and bb_job is not None:
                buf.state = BbState.DELETED
                bb_job.settle_buffers(now)
            self._scheduler.queue_job_scheduler()

    # ------------------------------------------------------------------
    # helpers

    def _queue_stage_in(self, job: JobRecord, bb_job: BbJob) -> None:
        state = self._state
        pool = state.capacity.default_pool or state.config.default_pool or ""
        script = str(self._files.script_path(job.job_id))
        setup_args = ["--token", str(job.job_id), "--caller", CALLER]
        setup_args.extend(["--user", str(job.user_id)])
        setup_args.extend(["--capacity", f"{pool}:{bb_job.total_size}"])
        setup_args.extend(["--job", script])
        if job.nodes:
            nodes = NodeList.from_string(job.nodes)
            if nodes is not None:
                path = self._write_client_nids(job, bb_job, nodes)
                if path is None:
                    return
                setup_args.extend(["--nodehostnamefile", str(path)])
        data_in_args = ["--token", str(job.job_id), "--job", script]
        self._submit(
            bb_job,
            tool.SETUP,
            self._stage_in,
            job.job_id,
            job.user_id,
            setup_args,
            data_in_args,
        )

    def _write_client_nids(
        self, job: JobRecord, bb_job: BbJob, nodes: NodeList
    ) -> Optional[Path]:
        """
        Writes the job's node list for the tool. On failure the job is held and
        its buffer torn down, and None is returned.
        """
        try:
            return self._files.write_client_nids(job.job_id, nodes.hostnames())
        except OSError as e:
            logger.error("unable to write node list for job %d: %s", job.job_id, e)
            job.hold(f"{PLUGIN}: unable to write node list: {e}")
            record = self._state.registry.find_job(job.job_id)
            if record is not None:
                record.set_state(BbState.TEARDOWN, self._state.now())
            self.request_teardown(bb_job, job.job_id, job.user_id, True)
            return None

    def _queue_stage_out(self, job_id: int, user_id: int, bb_job: BbJob) -> None:
        args = ["--token", str(job_id), "--job", str(self._files.script_path(job_id))]
        self._submit(bb_job, tool.DATA_OUT, self._stage_out, job_id, user_id, args)

    def _insert_job_record(self, job: JobRecord, bb_job: BbJob) -> None:
        state = self._state
        if state.registry.find_job(bb_job.job_id) is not None:
            return
        now = state.now()
        gres = {}
        for name, count in bb_job.gres.items():
            pool = state.capacity.gres.get(name)
            gres[name] = pool.round(count) if pool is not None else count
        record = AllocationRecord(
            str(bb_job.job_id),
            bb_job.user_id,
            bb_job.total_size,
            bb_job.job_id,
            bb_job.account,
            bb_job.partition,
            bb_job.qos,
            gres,
            now,
            BbState.STAGING_IN,
        )
        record.use_time = job.start_time or now
        record.end_time = job.end_time
        state.registry.insert(record)

    def _failed(
        self, job_id: int, user_id: int, operation: str, result: Result
    ) -> None:
        logger.error(
            "%s for job %d status:%s response:%s",
            operation,
            job_id,
            result.status,
            result.output,
        )
        job = self._scheduler.find_job(job_id)
        if job is not None:
            job.hold(f"{PLUGIN}: {operation}: {result.output}")
        record = self._state.registry.find_job(job_id)
        if record is not None:
            record.set_state(BbState.TEARDOWN, self._state.now())
        self.request_teardown(self._state.jobs.find(job_id), job_id, user_id, True)

    def _finish(self, bb_job: Optional[BbJob]) -> None:
        if bb_job is None:
            return
        bb_job.worker = None
        step, bb_job.next_step = bb_job.next_step, None
        if step is not None:
            step()

    def _submit(
        self,
        bb_job: Optional[BbJob],
        operation: str,
        fn: Callable[..., None],
        *args: object,
    ) -> None:
        if bb_job is not None:
            bb_job.worker = operation
        try:
            self._executor.submit(self._guard, operation, fn, *args)
        except RuntimeError as e:
            logger.error("unable to start %s: %s", operation, e)
            if bb_job is not None:
                bb_job.worker = None

    def _guard(self, operation: str, fn: Callable[..., None], *args: object) -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception("burst buffer %s worker failed", operation)

    def _run(self, operation: str, args: List[str]) -> Result:
        timeout = tool.timeout_for(self._state.config, operation)
        return self._tool.run(operation, args, timeout)

    @contextlib.contextmanager
    def _locks(self) -> Iterator[None]:
        with self._scheduler.lock:
            with self._state.lock:
                yield


def _find_buffer(
    bb_job: Optional[BbJob], name: str, create: bool
) -> Optional[BufferRequest]:
    if bb_job is None:
        return None
    for buf in bb_job.buffers:
        if buf.name == name and buf.create == create:
            return buf
    return None
