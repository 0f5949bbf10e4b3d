from .decode import comma_separated_list, nonnegative_int
from .exit_status import ExitStatus
from .node import NodeList
from .size import SizeSpec, bytes_to_mebibytes, round_up_to_granularity, size_to_bytes
from .time import duration_timedelta, seconds_timedelta, timeout_seconds

__all__ = [
    "bytes_to_mebibytes",
    "comma_separated_list",
    "duration_timedelta",
    "ExitStatus",
    "NodeList",
    "nonnegative_int",
    "round_up_to_granularity",
    "seconds_timedelta",
    "size_to_bytes",
    "SizeSpec",
    "timeout_seconds",
]
