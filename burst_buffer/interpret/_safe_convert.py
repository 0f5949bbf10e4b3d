from typing import Optional, Type, TypeVar, Union

T = TypeVar("T")
Numeric = Union[int, float]
NumericT = TypeVar("NumericT", bound=Numeric)


def type_cast_int_unsafe_to_none(_v: Union[str, None]) -> Optional[int]:
    return type_cast_value_unsafe_to_safe(int, None, _v)


def type_cast_value_unsafe_to_safe(
    _type: Type[T], _safe_v: Union[T, None], _v: Union[str, None]
) -> Optional[T]:
    try:
        out = _type(_v)  # type: ignore
    except (TypeError, ValueError):
        out = _safe_v
    return out


def restrict_negative_value_to_none(_v: Optional[NumericT]) -> Optional[NumericT]:
    if _v is None or _v < 0:
        out = None
    else:
        out = _v
    return out
