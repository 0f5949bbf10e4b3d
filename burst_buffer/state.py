from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from burst_buffer.capacity import Capacity
from burst_buffer.config import BbConfig
from burst_buffer.jobs import JobCache
from burst_buffer.limits import LimitTracker
from burst_buffer.registry import BufferRegistry
from burst_buffer.scheduler import Accounting, ConfiguredAccounting

Clock = Callable[[], int]


def wall_clock() -> int:
    return int(time.time())


class ControllerState:
    """
    Everything the controller mutates, owned in one place and guarded by one
    lock. Components receive this object and never copy pieces out of it.
    """

    def __init__(
        self,
        config: BbConfig,
        accounting: Optional[Accounting] = None,
        clock: Clock = wall_clock,
    ) -> None:
        if accounting is None:
            accounting = ConfiguredAccounting(config)
        self.lock = threading.RLock()
        self.config: BbConfig = config
        self.accounting: Accounting = accounting
        self.clock: Clock = clock
        self.capacity = Capacity(config.granularity)
        self.limits = LimitTracker(accounting.size_cap)
        self.registry = BufferRegistry(self.limits, self.capacity)
        self.jobs = JobCache()
        self.last_load_time: int = 0
        self.next_end_time: int = 0
        self.persist_change_time: int = 0
        self.last_save_time: int = 0
        self.terminating = threading.Event()

    def now(self) -> int:
        return self.clock()

    def reconfigure(
        self, config: BbConfig, accounting: Optional[Accounting] = None
    ) -> None:
        if config.default_pool is None and self.capacity.default_pool is not None:
            config = config._replace(default_pool=self.capacity.default_pool)
        if accounting is None:
            accounting = ConfiguredAccounting(config)
        self.config = config
        self.accounting = accounting
        self.limits.set_caps(accounting.size_cap)
