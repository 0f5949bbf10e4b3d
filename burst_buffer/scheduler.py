"""
Interfaces of the collaborators the controller is driven by: the job
scheduler, which owns job records and their lock, and the accounting
subsystem, which supplies size caps and default associations.
"""

from __future__ import annotations

import abc
from typing import ContextManager, Dict, List, NamedTuple, Optional

from burst_buffer.config import BbConfig
from burst_buffer.limits import ACCOUNT, PARTITION, QOS, AxisName

FAIL_BURST_BUFFER_OP = "BurstBufferOperation"


class JobRecord:
    """The fields of a scheduler job record the controller reads or updates."""

    def __init__(
        self,
        job_id: int,
        user_id: int,
        account: Optional[str] = None,
        partition: Optional[str] = None,
        qos: Optional[str] = None,
        burst_buffer: Optional[str] = None,
        script: Optional[str] = None,
        batch: bool = True,
        array: bool = False,
        start_time: int = 0,
        end_time: int = 0,
        pending: bool = True,
        nodes: Optional[str] = None,
        min_nodes: int = 1,
        priority: int = 1,
    ) -> None:
        self.job_id: int = job_id
        self.user_id: int = user_id
        self.account: Optional[str] = account
        self.partition: Optional[str] = partition
        self.qos: Optional[str] = qos
        self.burst_buffer: Optional[str] = burst_buffer
        self.script: Optional[str] = script
        self.batch: bool = batch
        self.array: bool = array
        self.start_time: int = start_time
        self.end_time: int = end_time
        self.pending: bool = pending
        self.nodes: Optional[str] = nodes
        self.min_nodes: int = min_nodes
        self.priority: int = priority
        self.state_reason: Optional[str] = None
        self.state_desc: Optional[str] = None
        self.environment: List[str] = []
        self.tres_bb_mb: int = 0

    def __repr__(self) -> str:
        return f"JobRecord(job_id={self.job_id}, user_id={self.user_id})"

    @property
    def held(self) -> bool:
        return self.priority == 0

    def hold(self, _desc: str) -> None:
        self.state_reason = FAIL_BURST_BUFFER_OP
        self.state_desc = _desc
        self.priority = 0


class Reservation(NamedTuple):
    """Space held for other jobs expected to run alongside a job."""

    space: int = 0
    gres: Dict[str, int] = {}


class Scheduler(abc.ABC):
    @property
    @abc.abstractmethod
    def lock(self) -> ContextManager:
        """Job record lock. Always taken before the controller lock."""

    @abc.abstractmethod
    def find_job(self, job_id: int) -> Optional[JobRecord]:
        pass

    @abc.abstractmethod
    def queue_job_scheduler(self) -> None:
        """Asks for another scheduling pass soon."""

    def reserved_space(self, job: JobRecord, now: int) -> Reservation:
        return Reservation()

    def is_operator(self, user_id: int) -> bool:
        return user_id == 0

    def is_super_user(self, user_id: int) -> bool:
        return user_id == 0


class Association(NamedTuple):
    account: Optional[str] = None
    partition: Optional[str] = None
    qos: Optional[str] = None


class Accounting(abc.ABC):
    @abc.abstractmethod
    def size_cap(self, axis: str, name: AxisName) -> Optional[int]:
        pass

    @abc.abstractmethod
    def default_association(self, user_id: int) -> Association:
        pass


class ConfiguredAccounting(Accounting):
    """Caps from burst_buffer.conf; no default associations."""

    def __init__(self, config: BbConfig) -> None:
        self._caps: Dict[str, Dict[str, int]] = {
            ACCOUNT: dict(config.account_size_limits),
            PARTITION: dict(config.partition_size_limits),
            QOS: dict(config.qos_size_limits),
        }

    def size_cap(self, axis: str, name: AxisName) -> Optional[int]:
        return self._caps.get(axis, {}).get(str(name))

    def default_association(self, user_id: int) -> Association:
        return Association()
