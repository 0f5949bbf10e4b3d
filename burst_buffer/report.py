from typing import Callable, Dict, List, Optional

import pandas as pd

from burst_buffer.interpret.size import bytes_to_mebibytes
from burst_buffer.state import ControllerState

"""
Reports are built under the controller lock and hold copies only.

_total = Amount of capacity the pool reports.
_used = Amount allocated or being allocated.
_free = Amount left for new buffers.
"""

NAME = "name"
GRANULARITY = "granularity"
TOTAL = "total"
USED = "used"
FREE = "free"
DEFAULT = "default"

JOB_ID = "job_id"
USER_ID = "user_id"
ACCOUNT = "account"
PARTITION = "partition"
QOS = "qos"
SIZE = "size"
SIZE_MB = "size_mb"
STATE = "state"
CREATE_TIME = "create_time"
GRES = "gres"

POOL_COLUMNS = [NAME, DEFAULT, GRANULARITY, TOTAL, USED, FREE]
BUFFER_COLUMNS = [
    NAME,
    JOB_ID,
    USER_ID,
    ACCOUNT,
    PARTITION,
    QOS,
    SIZE,
    SIZE_MB,
    STATE,
    CREATE_TIME,
    GRES,
]
USAGE_COLUMNS = [USER_ID, ACCOUNT, PARTITION, QOS, SIZE, SIZE_MB]

IsOperator = Callable[[int], bool]


class Pools:
    def __init__(self, state: ControllerState):
        rows: List[Dict[str, object]] = []
        with state.lock:
            capacity = state.capacity
            if capacity.default_pool is not None:
                rows.append(
                    {
                        NAME: capacity.default_pool,
                        DEFAULT: True,
                        GRANULARITY: capacity.granularity,
                        TOTAL: capacity.total_space,
                        USED: capacity.used_space,
                        FREE: capacity.free_space,
                    }
                )
            for pool in capacity.gres.values():
                rows.append(
                    {
                        NAME: pool.name,
                        DEFAULT: False,
                        GRANULARITY: pool.granularity,
                        TOTAL: pool.total,
                        USED: pool.used,
                        FREE: pool.free,
                    }
                )
        self._df = pd.DataFrame(rows, columns=POOL_COLUMNS)

    def to_df(self) -> pd.DataFrame:
        return self._df


class Buffers:
    """
    One row per allocation record. With PrivateData set, a user who is not
    an operator sees only their own buffers.
    """

    def __init__(
        self,
        state: ControllerState,
        uid: Optional[int] = None,
        is_operator: Optional[IsOperator] = None,
    ):
        rows: List[Dict[str, object]] = []
        with state.lock:
            visible = _visible_user(state, uid, is_operator)
            for record in state.registry:
                if visible is not None and record.user_id != visible:
                    continue
                rows.append(
                    {
                        NAME: record.name,
                        JOB_ID: record.job_id,
                        USER_ID: record.user_id,
                        ACCOUNT: record.account or "",
                        PARTITION: record.partition or "",
                        QOS: record.qos or "",
                        SIZE: record.size,
                        SIZE_MB: bytes_to_mebibytes(record.size),
                        STATE: str(record.state),
                        CREATE_TIME: record.create_time,
                        GRES: ",".join(
                            [f"{k}:{v}" for k, v in sorted(record.gres.items())]
                        ),
                    }
                )
        df = pd.DataFrame(rows, columns=BUFFER_COLUMNS)
        df = df.sort_values(by=[USER_ID, NAME]).reset_index(drop=True)
        self._df = df

    def to_df(self) -> pd.DataFrame:
        return self._df


class Usage:
    def __init__(
        self,
        state: ControllerState,
        uid: Optional[int] = None,
        is_operator: Optional[IsOperator] = None,
    ):
        rows: List[Dict[str, object]] = []
        with state.lock:
            visible = _visible_user(state, uid, is_operator)
            for key, size in state.limits.items():
                if visible is not None and key.user_id != visible:
                    continue
                rows.append(
                    {
                        USER_ID: key.user_id,
                        ACCOUNT: key.account,
                        PARTITION: key.partition,
                        QOS: key.qos,
                        SIZE: size,
                        SIZE_MB: bytes_to_mebibytes(size),
                    }
                )
        self._df = pd.DataFrame(rows, columns=USAGE_COLUMNS)

    def to_df(self) -> pd.DataFrame:
        return self._df


def _visible_user(
    _state: ControllerState, _uid: Optional[int], _is_operator: Optional[IsOperator]
) -> Optional[int]:
    """None means every user's rows are visible."""
    if _uid is None or not _state.config.private_data:
        return None
    if _is_operator is not None and _is_operator(_uid):
        return None
    return _uid
