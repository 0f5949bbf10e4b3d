import datetime as dt
import re
from typing import Optional

_S = r"(?P<seconds>\d{2})"
_M = r"(?P<minutes>\d{2})"
_H = r"(?P<hours>\d{2})"
_D = r"(?P<days>\d+)"

_MS_REGEX_STRING = f"^{_M}:{_S}$"
_HMS_REGEX_STRING = f"^{_H}:{_M}:{_S}$"
_DH_REGEX_STRING = f"^{_D}-{_H}$"
_DHM_REGEX_STRING = f"^{_D}-{_H}:{_M}$"
_DHMS_REGEX_STRING = f"^{_D}-{_H}:{_M}:{_S}$"
_DURATION_REGEX_STRINGS = [
    _MS_REGEX_STRING,
    _HMS_REGEX_STRING,
    _DH_REGEX_STRING,
    _DHM_REGEX_STRING,
    _DHMS_REGEX_STRING,
]
_DURATION_REGEX = [re.compile(s) for s in _DURATION_REGEX_STRINGS]


def duration_timedelta(_v: str) -> Optional[dt.timedelta]:
    """
    "2-03:04:05" -> dt.timedelta(days=2, seconds=11045)
    """
    for regex in _DURATION_REGEX:
        match = regex.match(_v)
        if match is None or match.group() == "":
            continue
        parts = {k: int(v) for k, v in match.groupdict().items()}
        return dt.timedelta(**parts)
    return None


def seconds_timedelta(_v: str) -> Optional[dt.timedelta]:
    try:
        seconds = int(_v)
    except ValueError:
        return None
    if seconds < 0:
        return None
    return dt.timedelta(seconds=seconds)


def timeout_seconds(_v: str) -> Optional[float]:
    """
    "300" -> 300.0
    "01:30:00" -> 5400.0
    """
    td = seconds_timedelta(_v)
    if td is None:
        td = duration_timedelta(_v)
    if td is None:
        return None
    return td.total_seconds()
