from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Optional, Tuple

from burst_buffer.capacity import Capacity
from burst_buffer.limits import LimitKey, LimitTracker
from burst_buffer.states import BbState

logger = logging.getLogger(__name__)

NameKey = Tuple[str, int]


class AllocationRecord:
    """
    One granted buffer. Job buffers carry their job id and are named after
    it; persistent buffers have job_id 0 and a user chosen name.
    """

    def __init__(
        self,
        name: str,
        user_id: int,
        size: int,
        job_id: int = 0,
        account: Optional[str] = None,
        partition: Optional[str] = None,
        qos: Optional[str] = None,
        gres: Optional[Dict[str, int]] = None,
        create_time: int = 0,
        state: BbState = BbState.ALLOCATED,
    ) -> None:
        self.name: str = name
        self.user_id: int = user_id
        self.size: int = size
        self.job_id: int = job_id
        self.account: Optional[str] = account
        self.partition: Optional[str] = partition
        self.qos: Optional[str] = qos
        self.gres: Dict[str, int] = dict(gres or {})
        self.create_time: int = create_time
        self.seen_time: int = create_time
        self.use_time: int = create_time
        self.end_time: int = 0
        self.state: BbState = state
        self.state_time: int = create_time
        self.cancelled: bool = False
        self.missed_cycles: int = 0

    def __repr__(self) -> str:
        return (
            f"AllocationRecord(name={self.name!r}, user_id={self.user_id}, "
            f"job_id={self.job_id}, size={self.size}, state={self.state!s})"
        )

    @property
    def persistent(self) -> bool:
        return self.job_id == 0

    @property
    def key(self) -> NameKey:
        return (self.name, self.user_id)

    @property
    def limit_key(self) -> LimitKey:
        return LimitKey.of(self.user_id, self.account, self.partition, self.qos)

    def set_state(self, _state: BbState, _now: int) -> None:
        self.state = _state
        self.state_time = _now


class BufferRegistry:
    """
    Allocation records indexed by (name, user) and by job id.

    Inserting charges the record's size to the limit tracker and capacity
    model, removing releases it. Removing a record that is no longer present
    is a no-op.
    """

    def __init__(self, limits: LimitTracker, capacity: Capacity) -> None:
        self._limits: LimitTracker = limits
        self._capacity: Capacity = capacity
        self._by_name: Dict[NameKey, AllocationRecord] = {}
        self._by_job: Dict[int, AllocationRecord] = {}
        self._by_user: Dict[int, Dict[str, AllocationRecord]] = {}

    def __len__(self) -> int:
        return len(self._by_name)

    def __iter__(self) -> Iterator[AllocationRecord]:
        return iter(list(self._by_name.values()))

    def find_name(self, name: str, user_id: int) -> Optional[AllocationRecord]:
        return self._by_name.get((name, user_id))

    def find_any_name(self, name: str) -> Optional[AllocationRecord]:
        for record in self:
            if record.name == name:
                return record
        return None

    def find_job(self, job_id: int) -> Optional[AllocationRecord]:
        return self._by_job.get(job_id)

    def records_for_user(self, user_id: int) -> List[AllocationRecord]:
        return list(self._by_user.get(user_id, {}).values())

    def insert(self, record: AllocationRecord, charge_capacity: bool = True) -> None:
        if record.key in self._by_name:
            raise ValueError(
                f"duplicate burst buffer {record.name} for {record.user_id}"
            )
        if record.job_id and record.job_id in self._by_job:
            raise ValueError(f"duplicate burst buffer for job {record.job_id}")

        self._by_name[record.key] = record
        if record.job_id:
            self._by_job[record.job_id] = record
        self._by_user.setdefault(record.user_id, {})[record.name] = record

        self._limits.add(record.limit_key, record.size)
        if charge_capacity:
            self._capacity.charge(record.size, record.gres)

    def remove(self, record: AllocationRecord) -> bool:
        if self._by_name.get(record.key) is not record:
            return False

        del self._by_name[record.key]
        if record.job_id and self._by_job.get(record.job_id) is record:
            del self._by_job[record.job_id]
        user_records = self._by_user.get(record.user_id, {})
        user_records.pop(record.name, None)
        if not user_records:
            self._by_user.pop(record.user_id, None)

        self._limits.remove(record.limit_key, record.size)
        self._capacity.release(record.size, record.gres)
        return True

    def rekey(self, record: AllocationRecord, **metadata: Optional[str]) -> None:
        """Changes account, partition or qos while keeping limits consistent."""
        self._limits.remove(record.limit_key, record.size)
        for field, value in metadata.items():
            setattr(record, field, value)
        self._limits.add(record.limit_key, record.size)
