from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional

from burst_buffer.interpret.size import round_up_to_granularity
from burst_buffer.inventory import Pool

logger = logging.getLogger(__name__)


class GresPool:
    def __init__(self, name: str, granularity: int, total: int, used: int) -> None:
        self.name: str = name
        self.granularity: int = granularity
        self.total: int = total
        self.used: int = used

    @property
    def free(self) -> int:
        return self.total - self.used

    def round(self, _count: int) -> int:
        return round_up_to_granularity(_count, self.granularity)


class Capacity:
    """
    Default pool bytes plus named generic resource pools.

    Refreshed wholesale from each pools inventory. Between refreshes charge()
    and release() keep `used` current as buffers come and go, so `free` may
    briefly go negative.
    """

    def __init__(self, granularity: int = 1) -> None:
        self.default_pool: Optional[str] = None
        self.granularity: int = granularity
        self.total_space: int = 0
        self.used_space: int = 0
        self.gres: Dict[str, GresPool] = {}

    @property
    def free_space(self) -> int:
        return self.total_space - self.used_space

    def round(self, _size: int) -> int:
        return round_up_to_granularity(_size, self.granularity)

    def refresh(self, pools: List[Pool], default_pool: Optional[str]) -> None:
        if not pools:
            logger.info("no burst buffer pools reported")
            return

        if default_pool is None:
            default_pool = pools[0].id
            logger.info("setting default pool to %s", default_pool)
        self.default_pool = default_pool

        gres: Dict[str, GresPool] = {}
        found = False
        for pool in pools:
            used = pool.quantity - pool.free
            if pool.id == default_pool:
                found = True
                self.granularity = max(pool.granularity, 1)
                self.total_space = pool.quantity * self.granularity
                self.used_space = used * self.granularity
            else:
                existing = self.gres.get(pool.id)
                if existing is not None and existing.total != pool.quantity:
                    logger.info(
                        "gres %s count changed from %d to %d",
                        pool.id,
                        existing.total,
                        pool.quantity,
                    )
                gres[pool.id] = GresPool(
                    pool.id, max(pool.granularity, 1), pool.quantity, used
                )
        self.gres = gres

        if not found:
            logger.error("default pool %s not reported by inventory", default_pool)

    def charge(self, size: int, gres: Mapping[str, int]) -> None:
        self.used_space += size
        for name, count in gres.items():
            pool = self.gres.get(name)
            if pool is not None:
                pool.used += count

    def release(self, size: int, gres: Mapping[str, int]) -> None:
        self.used_space = max(self.used_space - size, 0)
        for name, count in gres.items():
            pool = self.gres.get(name)
            if pool is not None:
                pool.used = max(pool.used - count, 0)
