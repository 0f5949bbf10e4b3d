from __future__ import annotations

from typing import List, Optional, Tuple

from burst_buffer.interpret import _common, _safe_convert

"""
These functions decode strings into collections of strings and small values.
"""


def nonnegative_int(_v: str) -> Optional[int]:
    out = _safe_convert.type_cast_int_unsafe_to_none(_v)
    out = _safe_convert.restrict_negative_value_to_none(out)
    return out


def comma_separated_list(_v: str) -> List[str]:
    """
    "a, b,,c" -> ["a", "b", "c"]
    "" -> []
    """
    out = delimited_list(_common.LIST_DELIMITER, _v)
    out = [item.strip() for item in out]
    out = [item for item in out if item]
    return out


def comma_separated_key_value_list(
    _separator: str, _v: str
) -> Optional[List[Tuple[str, str]]]:
    """
    (":", "a:1,b:2") -> [("a", "1"), ("b", "2")]
    (":", "a,b:2") -> None
    """
    items = comma_separated_list(_v)
    out = [separated_key_value(_separator, item) for item in items]
    if _common.any_none(out):
        return None
    return out  # type: ignore


def delimited_list(_delimiter: str, _v: str) -> List[str]:
    """
    x,y,... -> [x, y, ...]
    '' -> ['']
    """
    return _v.split(_delimiter)


def ranged(_separator: str, _v: str) -> Tuple[str, str]:
    """
    ("-", "x-y") -> ("x", "y")
    ("-", "x") -> ("x", "")
    """
    r = _v.split(_separator, maxsplit=1)
    if len(r) < 2:
        r.append("")
    return (r[0], r[1])


def hyphenated_csl_to_list(_v: str) -> Optional[List[int]]:
    """
    "1,3-6,8" -> [1, 3, 4, 5, 6, 8]
    "" -> []
    "3-1" -> None
    """
    if _v == "":
        return []

    out: List[int] = []
    for item in delimited_list(_common.LIST_DELIMITER, _v):
        lo, hi = ranged("-", item)
        if hi == "":
            hi = lo
        v0 = nonnegative_int(lo)
        v1 = nonnegative_int(hi)
        if v0 is None or v1 is None or v1 < v0:
            return None
        out.extend(range(v0, v1 + 1))
    return out


def separated_key_value(_separator: str, _v: str) -> Optional[Tuple[str, str]]:
    """
    ("=", "k=v=w") -> ("k", "v=w")
    ("=", "k") -> None
    """
    v = _v.split(_separator, maxsplit=1)
    if len(v) < 2:
        return None
    return (v[0].strip(), v[1].strip())
