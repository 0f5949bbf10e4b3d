from __future__ import annotations

from typing import NamedTuple, Optional

from burst_buffer.interpret import _safe_convert, decode

TIMED_OUT = -1


class ExitStatus(NamedTuple):
    exit_code: int
    exit_signal: int

    def __str__(self) -> str:
        return f"{self.exit_code}:{self.exit_signal}"

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and self.exit_signal == 0

    @classmethod
    def from_returncode(cls, _v: Optional[int]) -> ExitStatus:
        """
        0 -> 0:0
        1 -> 1:0
        -9 -> 0:9 (killed by signal 9)
        None -> -1:0 (never finished)
        """
        if _v is None:
            return cls(TIMED_OUT, 0)
        if _v < 0:
            return cls(0, -_v)
        return cls(_v, 0)

    @classmethod
    def from_string(cls, _v: str) -> Optional[ExitStatus]:
        """
        "127:0" -> ExitStatus(127, 0)
        """
        code, signal = decode.ranged(":", _v)
        c = _safe_convert.type_cast_int_unsafe_to_none(code)
        s = _safe_convert.type_cast_int_unsafe_to_none(signal)
        if c is None or s is None:
            return None
        return cls(c, s)
