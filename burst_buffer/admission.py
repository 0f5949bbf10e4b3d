"""
Admission of burst buffer requests, with preemption of buffers held for jobs
expected to start later.

A request is measured against three kinds of deficit:

- total space: used + requested + reserved for other jobs - pool total
- user space: user's usage + requested - UserSizeLimit
- per generic resource: rounded count - (free - reserved)

When every deficit is <= 0 the request is admitted. Otherwise buffers owned
by jobs expected to start after the requester are candidates for revocation.
If the candidates together cover every deficit, the latest needed ones are
revoked one at a time until nothing is owed. Either way the caller is told
there is no space yet and retries on a later pass.

Generic resource deficits are credited only with a candidate's resources of
exactly the same name. Credits from several candidates add up. Buffers
already revoked by an earlier pass are credited first and are not counted
twice.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, NamedTuple

from burst_buffer.jobs import BbJob
from burst_buffer.registry import AllocationRecord
from burst_buffer.scheduler import JobRecord, Scheduler
from burst_buffer.state import ControllerState
from burst_buffer.states import Admission

logger = logging.getLogger(__name__)

ONE_DAY = 24 * 60 * 60

Revoke = Callable[[AllocationRecord], None]


class Candidate(NamedTuple):
    record: AllocationRecord
    job_id: int
    user_id: int
    size: int
    use_time: int
    gres: Dict[str, int]


class Deficit:
    def __init__(self, total: int, user: int, gres: Dict[str, int]) -> None:
        self.total: int = total
        self.user: int = user
        self.gres: Dict[str, int] = gres

    def __repr__(self) -> str:
        return f"Deficit(total={self.total}, user={self.user}, gres={self.gres})"

    @property
    def satisfied(self) -> bool:
        return self.total <= 0 and self.user <= 0 and all(
            [v <= 0 for v in self.gres.values()]
        )

    def coverable(self, _candidates: List[Candidate], _user_id: int) -> bool:
        total = sum([c.size for c in _candidates])
        user = sum([c.size for c in _candidates if c.user_id == _user_id])
        if total < self.total or user < self.user:
            return False
        for name, needed in self.gres.items():
            available = sum([c.gres.get(name, 0) for c in _candidates])
            if available < needed:
                return False
        return True

    def wants(self, _candidate: Candidate, _user_id: int) -> bool:
        same_user = _candidate.user_id == _user_id
        if same_user and (self.user > 0 or self.total > 0):
            return True
        if not same_user and self.total > max(self.user, 0):
            return True
        for name, needed in self.gres.items():
            if needed > 0 and _candidate.gres.get(name, 0) > 0:
                return True
        return False

    def credit(self, _candidate: Candidate, _user_id: int) -> None:
        if _candidate.user_id == _user_id:
            self.user -= _candidate.size
        self.total -= _candidate.size
        for name in self.gres:
            self.gres[name] -= _candidate.gres.get(name, 0)


def set_use_times(_state: ControllerState, _scheduler: Scheduler, _now: int) -> None:
    """
    Records when each buffer's job expects to use it, and the soonest time
    a job holding space should end.
    """
    next_end_time = 0
    for record in _state.registry:
        if record.persistent:
            record.use_time = _now
            continue

        job = _scheduler.find_job(record.job_id)
        if job is None:
            record.use_time = _now
        elif job.start_time:
            record.end_time = job.end_time
            record.use_time = job.start_time
        else:
            record.use_time = _now + ONE_DAY

        if record.end_time and record.size:
            if record.end_time <= _now:
                next_end_time = _now
            elif next_end_time == 0 or record.end_time < next_end_time:
                next_end_time = record.end_time
    _state.next_end_time = next_end_time


class AdmissionEngine:
    def __init__(
        self, state: ControllerState, scheduler: Scheduler, revoke: Revoke
    ) -> None:
        self._state = state
        self._scheduler = scheduler
        self._revoke = revoke

    def test(self, job: JobRecord, bb_job: BbJob) -> Admission:
        """Caller holds the controller lock."""
        state = self._state
        capacity = state.capacity
        now = state.now()

        add_space = bb_job.requested_size
        if not state.limits.test(bb_job.limit_key, add_space):
            return Admission.DEFERRED_OVER_LIMIT

        reservation = self._scheduler.reserved_space(job, now)
        resv_space = capacity.round(reservation.space)

        user_needed = 0
        user_cap = state.config.user_size_limit
        if user_cap is not None:
            user_needed = state.limits.user_usage(bb_job.user_id) + add_space - user_cap

        total_needed = (
            capacity.used_space + add_space + resv_space - capacity.total_space
        )

        gres_needed: Dict[str, int] = {}
        for name, count in bb_job.gres.items():
            pool = capacity.gres.get(name)
            if pool is None:
                logger.info("job %d requests unknown gres %s", job.job_id, name)
                return Admission.DEFERRED_OVER_LIMIT
            if count > pool.total:
                logger.info(
                    "job %d requests %d of gres %s, only %d exist",
                    job.job_id,
                    count,
                    name,
                    pool.total,
                )
                return Admission.DEFERRED_OVER_LIMIT
            count = pool.round(count)
            free = pool.free - reservation.gres.get(name, 0)
            gres_needed[name] = count - free

        deficit = Deficit(total_needed, user_needed, gres_needed)
        if deficit.satisfied:
            return Admission.ADMIT

        set_use_times(state, self._scheduler, now)
        candidates = self.candidates(job, now)

        for candidate in [c for c in candidates if c.record.cancelled]:
            deficit.credit(candidate, bb_job.user_id)
        if deficit.satisfied:
            logger.debug("job %d waiting on revoked buffers", job.job_id)
            return Admission.DEFERRED_NO_SPACE

        fresh = [c for c in candidates if not c.record.cancelled]
        if not deficit.coverable(fresh, bb_job.user_id):
            logger.debug("job %d lacks space: %s", job.job_id, deficit)
            return Admission.DEFERRED_NO_SPACE

        fresh.sort(key=lambda c: c.use_time, reverse=True)
        for candidate in fresh:
            if deficit.satisfied:
                break
            if not deficit.wants(candidate, bb_job.user_id):
                continue
            logger.info(
                "revoking burst buffer of job %d for job %d",
                candidate.job_id,
                job.job_id,
            )
            self._revoke(candidate.record)
            deficit.credit(candidate, bb_job.user_id)

        return Admission.DEFERRED_NO_SPACE

    def candidates(self, job: JobRecord, now: int) -> List[Candidate]:
        out: List[Candidate] = []
        for record in self._state.registry:
            if not record.job_id or record.job_id == job.job_id:
                continue
            if record.use_time <= now or record.use_time <= job.start_time:
                continue
            out.append(
                Candidate(
                    record,
                    record.job_id,
                    record.user_id,
                    record.size,
                    record.use_time,
                    dict(record.gres),
                )
            )
        return out
