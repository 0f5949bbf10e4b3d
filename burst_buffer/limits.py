from __future__ import annotations

import logging
from typing import Callable, Dict, Iterator, List, NamedTuple, Optional, Tuple, Union

logger = logging.getLogger(__name__)

USER = "user"
ACCOUNT = "account"
PARTITION = "partition"
QOS = "qos"
AXES = (USER, ACCOUNT, PARTITION, QOS)

AxisName = Union[int, str]
CapLookup = Callable[[str, AxisName], Optional[int]]


class LimitKey(NamedTuple):
    user_id: int
    account: str
    partition: str
    qos: str

    def __str__(self) -> str:
        return f"{self.user_id}:{self.account}:{self.partition}:{self.qos}"

    def axis_names(self) -> List[Tuple[str, AxisName]]:
        return [
            (USER, self.user_id),
            (ACCOUNT, self.account),
            (PARTITION, self.partition),
            (QOS, self.qos),
        ]

    @classmethod
    def of(
        cls,
        user_id: int,
        account: Optional[str],
        partition: Optional[str],
        qos: Optional[str],
    ) -> LimitKey:
        return cls(user_id, account or "", partition or "", qos or "")


def no_caps(_axis: str, _name: AxisName) -> Optional[int]:
    return None


class LimitTracker:
    """
    Bytes allocated or pending allocation, per (user, account, partition,
    qos) and per single axis.

    Every add() is matched by one remove() when the owning record
    terminates. Caps come from a lookup so that accounting changes apply
    without rebuilding the tracker.
    """

    def __init__(self, caps: CapLookup = no_caps) -> None:
        self._caps: CapLookup = caps
        self._usage: Dict[LimitKey, int] = {}
        self._axes: Dict[str, Dict[AxisName, int]] = {axis: {} for axis in AXES}

    def set_caps(self, caps: CapLookup) -> None:
        self._caps = caps

    def add(self, key: LimitKey, size: int) -> None:
        if size <= 0:
            return
        self._usage[key] = self._usage.get(key, 0) + size
        for axis, name in key.axis_names():
            counters = self._axes[axis]
            counters[name] = counters.get(name, 0) + size

    def remove(self, key: LimitKey, size: int) -> None:
        if size <= 0:
            return
        current = self._usage.get(key, 0)
        if current < size:
            logger.error(
                "limit underflow for %s: removing %d from %d", key, size, current
            )
        self._set(self._usage, key, current - size)
        for axis, name in key.axis_names():
            counters = self._axes[axis]
            self._set(counters, name, counters.get(name, 0) - size)

    def test(self, key: LimitKey, size: int) -> bool:
        for axis, name in key.axis_names():
            cap = self._caps(axis, name)
            if cap is None:
                continue
            if self._axes[axis].get(name, 0) + size > cap:
                logger.debug("%s %s over limit %d with %d more", axis, name, cap, size)
                return False
        return True

    def usage(self, key: LimitKey) -> int:
        return self._usage.get(key, 0)

    def axis_usage(self, axis: str, name: AxisName) -> int:
        return self._axes[axis].get(name, 0)

    def user_usage(self, user_id: int) -> int:
        return self.axis_usage(USER, user_id)

    def items(self) -> Iterator[Tuple[LimitKey, int]]:
        return iter(sorted(self._usage.items()))

    def clear(self) -> None:
        self._usage = {}
        self._axes = {axis: {} for axis in AXES}

    @staticmethod
    def _set(_d: Dict, _k: object, _v: int) -> None:
        if _v > 0:
            _d[_k] = _v
        else:
            _d.pop(_k, None)
