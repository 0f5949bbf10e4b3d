from __future__ import annotations

import logging
import pwd
from pathlib import Path, PurePath
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple, Union

from burst_buffer.errors import ConfigError
from burst_buffer.interpret import _common, decode, size, time

logger = logging.getLogger(__name__)

PathLike = Union[Path, PurePath, str]

DEFAULT_CONFIG_FILE = "/etc/slurm/burst_buffer.conf"
DEFAULT_GET_SYS_STATE = "/opt/cray/dw_wlm/default/bin/dw_wlm_cli"
DEFAULT_STATE_SAVE_LOCATION = "/var/spool/slurm"
DEFAULT_POLL_INTERVAL = 30.0
DEFAULT_MAX_WORKERS = 16

FLAG_ENABLE_PERSISTENT = "enablepersistent"
FLAG_PRIVATE_DATA = "privatedata"
FLAGS = (FLAG_ENABLE_PERSISTENT, FLAG_PRIVATE_DATA)


class BbConfig(NamedTuple):
    allow_users: Optional[List[int]] = None
    deny_users: Optional[List[int]] = None
    default_pool: Optional[str] = None
    enable_persistent: bool = False
    private_data: bool = False
    get_sys_state: str = DEFAULT_GET_SYS_STATE
    granularity: int = 1
    stage_in_timeout: Optional[float] = None
    stage_out_timeout: Optional[float] = None
    other_timeout: Optional[float] = None
    user_size_limit: Optional[int] = None
    account_size_limits: Dict[str, int] = {}
    partition_size_limits: Dict[str, int] = {}
    qos_size_limits: Dict[str, int] = {}
    state_save_location: str = DEFAULT_STATE_SAVE_LOCATION
    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_workers: int = DEFAULT_MAX_WORKERS

    def user_permitted(self, _user_id: int) -> bool:
        if self.allow_users is not None:
            return _user_id in self.allow_users
        if self.deny_users is not None:
            return _user_id not in self.deny_users
        return True


def load_config(_path: PathLike = DEFAULT_CONFIG_FILE) -> BbConfig:
    path = Path(_path)
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigError(f"unable to read {path}: {e}") from e
    return parse_config(text)


def parse_config(_text: str) -> BbConfig:
    """
    Reads `Key=Value` lines of burst_buffer.conf. Keys are case insensitive,
    `#` starts a comment. Unknown keys are logged and skipped.
    """
    values: Dict[str, object] = {}
    for number, raw in enumerate(_text.splitlines(), start=1):
        line = _common.strip_comment(raw)
        if not line:
            continue

        kv = decode.separated_key_value(_common.KEY_VALUE_SEPARATOR, line)
        if kv is None:
            raise ConfigError(f"line {number}: expected Key=Value, got {line!r}")
        key, value = kv[0].casefold(), kv[1]

        if key == "flags":
            values.update(_flags(value, number))
            continue

        entry = _KEYS.get(key)
        if entry is None:
            logger.warning("ignoring unknown burst buffer option %s", kv[0])
            continue

        field, decoder = entry
        decoded = decoder(value)
        if decoded is None:
            raise ConfigError(f"line {number}: invalid value for {kv[0]}: {value!r}")
        values[field] = decoded

    return BbConfig(**values)  # type: ignore


def _flags(_v: str, _line: int) -> Dict[str, bool]:
    out: Dict[str, bool] = {}
    for flag in decode.comma_separated_list(_v):
        flag = flag.casefold()
        if flag == FLAG_ENABLE_PERSISTENT:
            out["enable_persistent"] = True
        elif flag == FLAG_PRIVATE_DATA:
            out["private_data"] = True
        else:
            raise ConfigError(f"line {_line}: unknown flag {flag!r}")
    return out


def _users(_v: str) -> Optional[List[int]]:
    out: List[int] = []
    for name in decode.comma_separated_list(_v):
        user_id = decode.nonnegative_int(name)
        if user_id is None:
            try:
                user_id = pwd.getpwnam(name).pw_uid
            except KeyError:
                logger.error("unknown user %s in burst buffer user list", name)
                return None
        out.append(user_id)
    return out


def _size(_v: str) -> Optional[int]:
    return size.size_to_bytes(_v)


def _named_sizes(_v: str) -> Optional[Dict[str, int]]:
    pairs = decode.comma_separated_key_value_list(":", _v)
    if pairs is None:
        return None
    out: Dict[str, int] = {}
    for name, value in pairs:
        count = _size(value)
        if count is None:
            return None
        out[name] = count
    return out


def _positive_int(_v: str) -> Optional[int]:
    out = decode.nonnegative_int(_v)
    if out == 0:
        return None
    return out


def _text(_v: str) -> Optional[str]:
    return _v if _v else None


_KEYS: Dict[str, Tuple[str, Callable[[str], Optional[object]]]] = {
    "allowusers": ("allow_users", _users),
    "denyusers": ("deny_users", _users),
    "defaultpool": ("default_pool", _text),
    "getsysstate": ("get_sys_state", _text),
    "granularity": ("granularity", lambda v: _positive_int(v) or _size(v) or None),
    "stageintimeout": ("stage_in_timeout", time.timeout_seconds),
    "stageouttimeout": ("stage_out_timeout", time.timeout_seconds),
    "othertimeout": ("other_timeout", time.timeout_seconds),
    "usersizelimit": ("user_size_limit", _size),
    "accountsizelimit": ("account_size_limits", _named_sizes),
    "partitionsizelimit": ("partition_size_limits", _named_sizes),
    "qossizelimit": ("qos_size_limits", _named_sizes),
    "statesavelocation": ("state_save_location", _text),
    "pollinterval": ("poll_interval", time.timeout_seconds),
    "maxworkers": ("max_workers", _positive_int),
}
