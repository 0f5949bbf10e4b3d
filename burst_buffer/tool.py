from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

import burst_buffer.command as command
from burst_buffer.config import BbConfig

logger = logging.getLogger(__name__)

JOB_PROCESS = "job_process"
PATHS = "paths"
SETUP = "setup"
DATA_IN = "data_in"
PRE_RUN = "pre_run"
DATA_OUT = "data_out"
POST_RUN = "post_run"
TEARDOWN = "teardown"
CREATE_PERSISTENT = "create_persistent"
DESTROY_PERSISTENT = "destroy_persistent"
POOLS = "pools"
SHOW_INSTANCES = "show_instances"
SHOW_SESSIONS = "show_sessions"
SHOW_CONFIGURATIONS = "show_configurations"

ONE_DAY = 24 * 60 * 60.0

# seconds
DEFAULT_TIMEOUTS: Dict[str, float] = {
    JOB_PROCESS: 2.0,
    PATHS: 2.0,
    SETUP: 5.0,
    DATA_IN: ONE_DAY,
    PRE_RUN: 2.0,
    DATA_OUT: ONE_DAY,
    POST_RUN: 5.0,
    TEARDOWN: 5.0,
    CREATE_PERSISTENT: 3.0,
    DESTROY_PERSISTENT: 3.0,
    POOLS: 3.0,
    SHOW_INSTANCES: 3.0,
    SHOW_SESSIONS: 3.0,
    SHOW_CONFIGURATIONS: 3.0,
}

STAGE_IN_FUNCTIONS = (SETUP, DATA_IN)
STAGE_OUT_FUNCTIONS = (DATA_OUT, POST_RUN)

SLOW_THRESHOLD = 0.5
SLOW_DATA_THRESHOLD = 5.0

# destroy_persistent is driven through the tool's teardown function
_TOOL_FUNCTION = {DESTROY_PERSISTENT: TEARDOWN}

# error text for a token the tool has already forgotten
TOKEN_NOT_FOUND = "token not found"

Runner = Callable[[List[str], Optional[float]], command.Result]


def timeout_for(_config: BbConfig, _operation: str) -> float:
    if _operation in STAGE_IN_FUNCTIONS and _config.stage_in_timeout:
        return _config.stage_in_timeout
    if _operation in STAGE_OUT_FUNCTIONS and _config.stage_out_timeout:
        return _config.stage_out_timeout
    if (
        _operation not in STAGE_IN_FUNCTIONS + STAGE_OUT_FUNCTIONS
        and _config.other_timeout
    ):
        return _config.other_timeout
    return DEFAULT_TIMEOUTS[_operation]


def is_token_not_found(_result: command.Result) -> bool:
    return TOKEN_NOT_FOUND in _result.output.casefold()


class Tool:
    """
    The storage orchestration tool. Every call blocks until the tool exits or
    the timeout expires; callers must not hold the controller lock.
    """

    def __init__(self, path: str, runner: Runner = command.run) -> None:
        self._path: str = path
        self._runner: Runner = runner

    @property
    def path(self) -> str:
        return self._path

    def run(self, operation: str, args: List[str], timeout: float) -> command.Result:
        function = _TOOL_FUNCTION.get(operation, operation)
        argv = [self._path, "--function", function, *args]
        result = self._runner(argv, timeout)
        self._log(operation, argv, result)
        return result

    def _log(self, _operation: str, _argv: List[str], _result: command.Result) -> None:
        logger.debug("%s", " ".join(_argv))
        logger.debug("%s", _result.output)
        if _operation in (DATA_IN, DATA_OUT):
            threshold = SLOW_DATA_THRESHOLD
        else:
            threshold = SLOW_THRESHOLD
        if _result.elapsed > threshold:
            logger.info("%s ran for %.3f s", _operation, _result.elapsed)
