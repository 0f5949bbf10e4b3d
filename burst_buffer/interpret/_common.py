from __future__ import annotations

from typing import Any, Iterable, Optional

COMMENT = "#"
LIST_DELIMITER = ","
KEY_VALUE_SEPARATOR = "="


def any_none(_value: Iterable[Optional[Any]]) -> bool:
    for v in _value:
        if v is None:
            return True
    return False


def strip_comment(_v: str) -> str:
    index = _v.find(COMMENT)
    if index >= 0:
        _v = _v[:index]
    return _v.strip()
