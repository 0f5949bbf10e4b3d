from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Dict, Iterator, List, Optional

from burst_buffer.limits import LimitKey
from burst_buffer.request import BbRequest
from burst_buffer.states import ACTIVE_BUFFER_STATES, TERMINAL_BUFFER_STATES, BbState

if TYPE_CHECKING:
    from burst_buffer.scheduler import JobRecord

logger = logging.getLogger(__name__)


class BufferRequest:
    """One persistent buffer create or destroy named by a job."""

    def __init__(
        self,
        name: str,
        create: bool,
        size: int = 0,
        access: Optional[str] = None,
        type: Optional[str] = None,
        hurry: bool = False,
    ) -> None:
        self.name: str = name
        self.create: bool = create
        self.size: int = size
        self.access: Optional[str] = access
        self.type: Optional[str] = type
        self.hurry: bool = hurry
        self.state: BbState = BbState.PENDING

    def __repr__(self) -> str:
        op = "create" if self.create else "destroy"
        return f"BufferRequest({op} {self.name!r}, {self.state!s})"

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_BUFFER_STATES

    @property
    def active(self) -> bool:
        return self.state in ACTIVE_BUFFER_STATES


class BbJob:
    def __init__(
        self,
        job_id: int,
        user_id: int,
        request: BbRequest,
        account: Optional[str] = None,
        partition: Optional[str] = None,
        qos: Optional[str] = None,
    ) -> None:
        self.job_id: int = job_id
        self.user_id: int = user_id
        self.request: BbRequest = request
        self.account: Optional[str] = account
        self.partition: Optional[str] = partition
        self.qos: Optional[str] = qos
        self.total_size: int = request.size
        self.swap_gb: int = request.swap_gb
        self.swap_nodes: int = request.swap_nodes
        self.gres: Dict[str, int] = {}
        for g in request.gres:
            self.gres[g.name] = self.gres.get(g.name, 0) + g.count
        self.buffers: List[BufferRequest] = [
            BufferRequest(c.name, True, c.size, c.access, c.type)
            for c in request.creates
        ] + [BufferRequest(d.name, False, hurry=d.hurry) for d in request.destroys]
        self.use_persistent: bool = request.use_persistent
        self.state: BbState = BbState.PENDING
        self.state_time: int = 0
        # name of the staging worker in flight, and what to run after it
        self.worker: Optional[str] = None
        self.next_step: Optional[Callable[[], None]] = None

    def __repr__(self) -> str:
        return f"BbJob(job_id={self.job_id}, state={self.state!s}, {self.request!s})"

    @property
    def limit_key(self) -> LimitKey:
        return LimitKey.of(self.user_id, self.account, self.partition, self.qos)

    @property
    def persist_add(self) -> int:
        """Bytes of persistent creates not yet charged to the limit tracker."""
        return sum(
            [b.size for b in self.buffers if b.create and b.state == BbState.PENDING]
        )

    @property
    def requested_size(self) -> int:
        return self.total_size + self.persist_add

    @property
    def persistent_only(self) -> bool:
        """Uses or destroys existing buffers but asks for no new space."""
        return self.total_size == 0 and not self.gres and not any(
            [b.create for b in self.buffers]
        )

    def pending_buffers(self) -> int:
        return len([b for b in self.buffers if not b.terminal])

    def set_state(self, _state: BbState, _now: int) -> None:
        logger.debug("job %d burst buffer %s -> %s", self.job_id, self.state, _state)
        self.state = _state
        self.state_time = _now

    def settle_buffers(self, _now: int) -> None:
        """
        Moves the job out of ALLOCATING or DELETING once no persistent
        sub-request is in flight.
        """
        if any([b.active for b in self.buffers]):
            return
        if self.state == BbState.ALLOCATING:
            self.set_state(BbState.ALLOCATED, _now)
        elif self.state == BbState.DELETING:
            self.set_state(BbState.DELETED, _now)


class JobCache:
    """Parsed burst buffer requests, by job id, for the life of each job."""

    def __init__(self) -> None:
        self._jobs: Dict[int, BbJob] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def __iter__(self) -> Iterator[BbJob]:
        return iter(list(self._jobs.values()))

    def find(self, job_id: int) -> Optional[BbJob]:
        return self._jobs.get(job_id)

    def get(self, job: JobRecord) -> Optional[BbJob]:
        bb_job = self._jobs.get(job.job_id)
        if bb_job is not None:
            return bb_job

        if not job.burst_buffer:
            return None
        request = BbRequest.from_string(job.burst_buffer)
        if request is None:
            logger.error(
                "invalid burst buffer request for job %d: %s",
                job.job_id,
                job.burst_buffer,
            )
            return None
        if request.empty:
            return None

        bb_job = BbJob(
            job.job_id, job.user_id, request, job.account, job.partition, job.qos
        )
        self._jobs[job.job_id] = bb_job
        return bb_job

    def remove(self, job_id: int) -> Optional[BbJob]:
        return self._jobs.pop(job_id, None)

    def clear(self) -> None:
        self._jobs = {}
