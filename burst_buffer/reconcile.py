"""
Periodic reconciliation of the registry with what the orchestration tool
reports.

Each cycle refreshes pool capacity and the live session list. A session the
registry does not know becomes a record; a record missing from two cycles in
a row is purged and its limit charge released. Persistent buffer metadata is
written to the state file whenever it has changed since the last save.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from typing import Iterator, List, Optional, Set

from burst_buffer.interpret import decode
from burst_buffer.inventory import Inventory, Pool, SessionSnapshot
from burst_buffer.lifecycle import LifecycleDriver
from burst_buffer.registry import AllocationRecord, NameKey
from burst_buffer.scheduler import Association, Scheduler
from burst_buffer.state import ControllerState
from burst_buffer.state_file import Snapshot, StateFile
from burst_buffer.states import BbState

logger = logging.getLogger(__name__)

STALE_CYCLES = 2


class Reconciler:
    def __init__(
        self,
        state: ControllerState,
        scheduler: Scheduler,
        inventory: Inventory,
        lifecycle: LifecycleDriver,
        state_file: StateFile,
    ) -> None:
        self._state = state
        self._scheduler = scheduler
        self._inventory = inventory
        self._lifecycle = lifecycle
        self._state_file = state_file

    def init(self) -> None:
        """Startup: rebuild the registry, restore metadata, clean up leftovers."""
        snapshot = self._state_file.read()
        self.load_state()
        with self._locks():
            if snapshot is not None:
                self.restore_metadata(snapshot)
            self.cleanup_vestigial()
        self.save_state()

    def survey(self) -> bool:
        """One inventory read. Tears nothing down and writes no state file."""
        snapshot = self._state_file.read()
        out = self.load_state()
        if snapshot is not None:
            with self._locks():
                self.restore_metadata(snapshot)
        return out

    def run_cycle(self) -> None:
        self.load_state()
        self.timeout_records()
        self.save_state()

    def load_state(self) -> bool:
        """
        Inventory calls run with no lock held. Returns False when the tool
        could not be read, in which case nothing changes.
        """
        pools = self._inventory.get_pools()
        sessions = self._inventory.get_session_snapshot()

        with self._locks():
            state = self._state
            if pools is not None:
                self._refresh_pools(pools)
            if sessions is None:
                return False
            purged = self._refresh_sessions(sessions)
            state.last_load_time = state.now()

        if purged:
            self._scheduler.queue_job_scheduler()
        return pools is not None

    def timeout_records(self) -> None:
        """Drops cached requests of jobs the scheduler has forgotten."""
        with self._locks():
            state = self._state
            for bb_job in state.jobs:
                if bb_job.worker is not None:
                    continue
                if self._scheduler.find_job(bb_job.job_id) is None:
                    logger.debug("purging request of job %d", bb_job.job_id)
                    state.jobs.remove(bb_job.job_id)

    def save_state(self) -> bool:
        with self._state.lock:
            state = self._state
            unchanged = state.persist_change_time < state.last_save_time
            if state.last_save_time and unchanged:
                return True
            records = [r for r in state.registry if r.persistent]
            now = state.now()

        if not self._state_file.write(records):
            return False
        with self._state.lock:
            self._state.last_save_time = now
        return True

    def restore_metadata(self, snapshot: Snapshot) -> None:
        """Caller holds the locks."""
        registry = self._state.registry
        for saved in snapshot.records:
            record = registry.find_name(saved.name, saved.user_id)
            if record is None or not record.persistent:
                logger.debug(
                    "no burst buffer %s of user %d to restore",
                    saved.name,
                    saved.user_id,
                )
                continue
            registry.rekey(
                record, account=saved.account, partition=saved.partition, qos=saved.qos
            )
            if saved.create_time:
                record.create_time = saved.create_time

    def cleanup_vestigial(self) -> None:
        """Hurried teardown of job buffers whose job no longer exists."""
        for record in self._state.registry:
            if record.persistent or self._scheduler.find_job(record.job_id) is not None:
                continue
            logger.info("tearing down vestigial burst buffer of job %d", record.job_id)
            record.set_state(BbState.TEARDOWN, self._state.now())
            self._lifecycle.queue_teardown(record.job_id, record.user_id, True)

    def _refresh_pools(self, _pools: List[Pool]) -> None:
        state = self._state
        state.capacity.refresh(_pools, state.config.default_pool)
        default_pool = state.capacity.default_pool
        if state.config.default_pool is None and default_pool is not None:
            state.config = state.config._replace(default_pool=default_pool)

    def _refresh_sessions(self, _snapshot: SessionSnapshot) -> int:
        state = self._state
        now = state.now()
        sizes = _snapshot.session_bytes()

        seen: Set[NameKey] = set()
        for session in _snapshot.sessions:
            key = (session.token, session.owner)
            seen.add(key)
            record = state.registry.find_name(*key)
            if record is None:
                size = sizes.get(session.id, 0)
                record = self._discovered(session.token, session.owner, size, now)
                state.registry.insert(record, charge_capacity=False)
                if record.persistent:
                    state.persist_change_time = now
            record.seen_time = now
            record.missed_cycles = 0

        purged = 0
        for record in state.registry:
            if record.key in seen:
                continue
            # setup has not created the session yet
            if record.state == BbState.STAGING_IN:
                continue
            record.missed_cycles += 1
            if record.missed_cycles < STALE_CYCLES:
                continue
            if record.persistent:
                logger.info("persistent burst buffer %s purged", record.name)
                state.persist_change_time = now
            else:
                logger.info("burst buffer of job %d purged", record.job_id)
            state.registry.remove(record)
            purged += 1
        return purged

    def _discovered(
        self, _token: str, _owner: int, _size: int, _now: int
    ) -> AllocationRecord:
        job_id = decode.nonnegative_int(_token) or 0
        association = self._association(job_id, _owner)
        out = AllocationRecord(
            _token,
            _owner,
            _size,
            job_id,
            association.account,
            association.partition,
            association.qos,
            create_time=_now,
        )
        if job_id:
            job = self._scheduler.find_job(job_id)
            if job is not None and not job.pending:
                out.state = BbState.RUNNING
            else:
                out.state = BbState.STAGED_IN
        logger.info("discovered burst buffer %s", out)
        return out

    def _association(self, _job_id: int, _user_id: int) -> Association:
        job = self._scheduler.find_job(_job_id) if _job_id else None
        if job is not None:
            return Association(job.account, job.partition, job.qos)
        for record in self._state.registry.records_for_user(_user_id):
            if record.account or record.partition or record.qos:
                return Association(record.account, record.partition, record.qos)
        return self._state.accounting.default_association(_user_id)

    @contextlib.contextmanager
    def _locks(self) -> Iterator[None]:
        with self._scheduler.lock:
            with self._state.lock:
                yield


class ReconcileAgent(threading.Thread):
    """Runs a reconciliation cycle every PollInterval seconds until stopped."""

    def __init__(self, reconciler: Reconciler, state: ControllerState) -> None:
        super().__init__(name="bb_agent", daemon=True)
        self._reconciler = reconciler
        self._state = state

    def run(self) -> None:
        while not self._state.terminating.wait(self._state.config.poll_interval):
            try:
                self._reconciler.run_cycle()
            except Exception:
                logger.exception("burst buffer reconciliation failed")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._state.terminating.set()
        if self.is_alive():
            self.join(timeout)
