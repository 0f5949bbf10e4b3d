from __future__ import annotations

import re
from typing import List, Optional

from burst_buffer.interpret import decode
from burst_buffer.interpret._common import any_none

_NODE_SPEC_REGEX_STRING = r"^([^\[\],]*)(?:\[([0-9,\-]+)\])?$"
_NODE_SPEC_REGEX = re.compile(_NODE_SPEC_REGEX_STRING)


class NodeList:
    def __init__(self, _node_specs: List[_NodeSpec]) -> None:
        self._node_specs: List[_NodeSpec] = _node_specs

    def __str__(self) -> str:
        return ",".join([str(node_spec) for node_spec in self._node_specs])

    def __len__(self) -> int:
        return sum([len(node_spec) for node_spec in self._node_specs])

    def hostnames(self) -> List[str]:
        out: List[str] = []
        for node_spec in self._node_specs:
            out.extend(node_spec.hostnames())
        return out

    @classmethod
    def from_string(cls, _v: str) -> Optional[NodeList]:
        """
        "nid[00001-00003,00007],login1" -> 5 hosts
        """
        tokens = _split_outside_brackets(_v)
        node_specs = [_NodeSpec.from_string(token) for token in tokens]
        if any_none(node_specs):
            out = None
        else:
            out = NodeList(node_specs)  # type: ignore
        return out


class _NodeSpec:
    def __init__(self, _prefix: str, _digits: int, _numbers: List[int]) -> None:
        self._prefix: str = _prefix
        self._digits: int = _digits
        self._numbers: List[int] = _numbers

    def __len__(self) -> int:
        return max(len(self._numbers), 1)

    def __str__(self) -> str:
        if not self._numbers:
            return self._prefix
        return f"{self._prefix}[{self._range_string()}]"

    def hostnames(self) -> List[str]:
        if not self._numbers:
            return [self._prefix]
        format_spec = f"{self._prefix}{{n:0{self._digits}d}}"
        return [format_spec.format(n=n) for n in self._numbers]

    def _range_string(self) -> str:
        d = self._digits
        items: List[str] = []
        lo = hi = self._numbers[0]
        for n in self._numbers[1:] + [None]:  # type: ignore
            if n is not None and n == hi + 1:
                hi = n
                continue
            if lo == hi:
                items.append(f"{lo:0{d}d}")
            else:
                items.append(f"{lo:0{d}d}-{hi:0{d}d}")
            if n is not None:
                lo = hi = n
        return ",".join(items)

    @classmethod
    def from_string(cls, _v: str) -> Optional[_NodeSpec]:
        """
        "login1" -> ("login1", 0, [])
        "c[0001-0003,0007]" -> ("c", 4, [1, 2, 3, 7])
        """
        match = _NODE_SPEC_REGEX.match(_v)
        if not match or match.group(1) == "":
            return None

        prefix = match.group(1)
        ranges = match.group(2)
        if ranges is None:
            return cls(prefix, 0, [])

        numbers = decode.hyphenated_csl_to_list(ranges)
        if not numbers:
            return None
        first = decode.ranged("-", decode.delimited_list(",", ranges)[0])[0]
        return cls(prefix, len(first), numbers)


def _split_outside_brackets(_v: str) -> List[str]:
    out: List[str] = []
    depth = 0
    token = ""
    for c in _v:
        if c == "[":
            depth += 1
        elif c == "]":
            depth -= 1
        if c == "," and depth == 0:
            out.append(token)
            token = ""
        else:
            token += c
    out.append(token)
    return [t.strip() for t in out if t.strip()]
