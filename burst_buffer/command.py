from typing import List, Optional, Union

from typing_extensions import Literal
import subprocess
import time

from burst_buffer.interpret.exit_status import ExitStatus

RAISE = "raise"
IGNORE = "ignore"

SPAWN_FAILED = 127


class Result:
    def __init__(
        self, stdout: str, stderr: str, returncode: Optional[int], elapsed: float = 0.0
    ) -> None:
        self._stdout: str = stdout
        self._stderr: str = stderr
        self._returncode: Optional[int] = returncode
        self._elapsed: float = elapsed

    @property
    def stdout(self) -> str:
        return self._stdout

    @property
    def stderr(self) -> str:
        return self._stderr

    @property
    def output(self) -> str:
        if self._stderr and self._stdout:
            return f"{self._stdout}\n{self._stderr}"
        return self._stdout or self._stderr

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    @property
    def status(self) -> ExitStatus:
        return ExitStatus.from_returncode(self._returncode)

    @property
    def ok(self) -> bool:
        return self.status.ok

    @property
    def timed_out(self) -> bool:
        return self._returncode is None

    @property
    def elapsed(self) -> float:
        return self._elapsed


def run(
    args: List[str],
    timeout: Optional[float] = None,
    error_handling: Union[Literal["raise"], Literal["ignore"]] = IGNORE,
) -> Result:
    """
    Runs args as a child process. A timeout or a spawn failure is reported
    through the returned Result like any other failed exit, never raised,
    unless error_handling is "raise".
    """
    start = time.monotonic()
    returncode: Optional[int]
    try:
        result = subprocess.run(
            args, stdout=subprocess.PIPE, stderr=subprocess.PIPE, timeout=timeout
        )
        returncode = result.returncode
        stdout = _decode(result.stdout)
        stderr = _decode(result.stderr)
    except subprocess.TimeoutExpired as e:
        returncode = None
        stdout = _decode(e.stdout)
        stderr = f"timed out after {timeout} s"
    except OSError as e:
        returncode = SPAWN_FAILED
        stdout = ""
        stderr = str(e)
    elapsed = time.monotonic() - start

    out = Result(stdout, stderr, returncode, elapsed)
    if error_handling == RAISE and not out.ok:
        raise RuntimeError(out.stderr)
    elif error_handling == IGNORE:
        pass
    elif error_handling != RAISE:
        assert False

    return out


def _decode(_v: Optional[bytes]) -> str:
    if not _v:
        return ""
    return _v.decode("utf-8", "ignore")
