from .config import BbConfig, load_config, parse_config
from .controller import BurstBufferController
from .errors import (
    BurstBufferError,
    ConfigError,
    InvalidRequestError,
    LimitExceededError,
    PermissionDeniedError,
)
from .request import BbRequest, parse_interactive, parse_script
from .scheduler import Accounting, Association, JobRecord, Reservation, Scheduler
from .states import Admission, BbState, StageStatus

__all__ = [
    "Accounting",
    "Admission",
    "Association",
    "BbConfig",
    "BbRequest",
    "BbState",
    "BurstBufferController",
    "BurstBufferError",
    "ConfigError",
    "InvalidRequestError",
    "JobRecord",
    "LimitExceededError",
    "load_config",
    "parse_config",
    "parse_interactive",
    "parse_script",
    "PermissionDeniedError",
    "Reservation",
    "Scheduler",
    "StageStatus",
]
