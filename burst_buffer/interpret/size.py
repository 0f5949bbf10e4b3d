from __future__ import annotations

import re
from typing import NamedTuple, Optional

PEBI = "p"
TEBI = "t"
GIBI = "g"
MEBI = "m"
KIBI = "k"
BYTE = "b"
BYTE_CONVERSIONS = {
    PEBI: 1125899906842624,
    TEBI: 1099511627776,
    GIBI: 1073741824,
    MEBI: 1048576,
    KIBI: 1024,
    BYTE: 1,
}
DEFAULT_PREFIX = MEBI
NODES = "n"

_SIZE_REGEX_STRING = r"^([0-9]+)(?:([kmgtp])(?:ib|b)?|(b)|(n)(?:odes)?)?$"
_SIZE_REGEX = re.compile(_SIZE_REGEX_STRING)


class SizeSpec(NamedTuple):
    count: int
    prefix: str

    def __str__(self) -> str:
        if self.prefix == DEFAULT_PREFIX:
            suffix = ""
        else:
            suffix = self.prefix.upper()
        return f"{self.count}{suffix}"

    @property
    def in_nodes(self) -> bool:
        return self.prefix == NODES

    def to_bytes(self) -> Optional[int]:
        if self.in_nodes:
            return None
        return BYTE_CONVERSIONS[self.prefix] * self.count

    @classmethod
    def from_string(cls, _v: str) -> Optional[SizeSpec]:
        """
        "100GiB" -> SizeSpec(100, "g")
        "10g" -> SizeSpec(10, "g")
        "512" -> SizeSpec(512, "m")
        "4N" -> SizeSpec(4, "n")
        """
        match = _SIZE_REGEX.match(_v.strip().casefold())
        if not match:
            return None

        count = int(match.group(1))
        prefix = match.group(2) or match.group(3) or match.group(4)
        if prefix is None:
            prefix = DEFAULT_PREFIX
        return cls(count, prefix)


def size_to_bytes(_v: str, _granularity: int = 1) -> Optional[int]:
    """
    ("1G", 1) -> 1073741824
    ("1000", 1048576 * 3) -> 1006632960
    ("2N", 1) -> None
    """
    spec = SizeSpec.from_string(_v)
    if spec is None:
        return None
    out = spec.to_bytes()
    if out is None:
        return None
    return round_up_to_granularity(out, _granularity)


def round_up_to_granularity(_v: int, _granularity: int) -> int:
    if _granularity <= 1:
        return _v
    return ((_v + _granularity - 1) // _granularity) * _granularity


def bytes_to_mebibytes(_v: int) -> int:
    mebi = BYTE_CONVERSIONS[MEBI]
    return (_v + mebi - 1) // mebi


def format_bytes(_v: int) -> str:
    """
    107374182400 -> "100GiB"
    1536 -> "1536B"
    0 -> "0B"
    """
    for prefix in (PEBI, TEBI, GIBI, MEBI, KIBI):
        factor = BYTE_CONVERSIONS[prefix]
        if _v >= factor and _v % factor == 0:
            return f"{_v // factor}{prefix.upper()}iB"
    return f"{_v}B"
