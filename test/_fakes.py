import json
import threading
from concurrent.futures import Executor, Future
from typing import Callable, Dict, List, Optional

from burst_buffer.command import Result
from burst_buffer.config import BbConfig
from burst_buffer.scheduler import JobRecord, Reservation, Scheduler
from burst_buffer.tool import Tool

GIB = 1024**3
TOOL_PATH = "dw_wlm_cli"
POOL = "dwcache"

Hook = Callable[[List[str]], None]


class FakeClock:
    def __init__(self, now: int = 1_700_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


class FakeTool(Tool):
    """
    Responses are keyed by the tool function named in argv. Functions without
    a scripted response succeed with no output.
    """

    def __init__(self) -> None:
        super().__init__(TOOL_PATH, runner=self._respond)
        self.calls: List[List[str]] = []
        self.responses: Dict[str, Result] = {}
        self.hooks: Dict[str, Hook] = {}

    def respond(
        self, function: str, stdout: str = "", returncode: int = 0, stderr: str = ""
    ) -> None:
        self.responses[function] = Result(stdout, stderr, returncode)

    def fail(self, function: str, message: str) -> None:
        self.respond(function, returncode=1, stderr=message)

    def functions(self) -> List[str]:
        return [argv[2] for argv in self.calls]

    def calls_to(self, function: str) -> List[List[str]]:
        return [argv for argv in self.calls if argv[2] == function]

    def _respond(self, argv: List[str], timeout: Optional[float]) -> Result:
        self.calls.append(argv)
        function = argv[2]
        hook = self.hooks.get(function)
        if hook is not None:
            hook(argv)
        return self.responses.get(function, Result("", "", 0))


def pools_response(*pools: Dict[str, object]) -> str:
    return json.dumps({"pools": list(pools)})


def pool(
    id: str = POOL, quantity: int = 500, free: int = 500, granularity: int = GIB
) -> Dict[str, object]:
    return {
        "id": id,
        "units": "bytes",
        "granularity": granularity,
        "quantity": quantity,
        "free": free,
    }


def sessions_response(*sessions: Dict[str, object]) -> str:
    return json.dumps({"sessions": list(sessions)})


def session(id: int, token: str, owner: int) -> Dict[str, object]:
    return {"id": id, "token": token, "owner": owner, "created": 1}


def instances_response(*instances: Dict[str, object]) -> str:
    return json.dumps({"instances": list(instances)})


def instance(id: int, session: int, size: int) -> Dict[str, object]:
    return {
        "id": id,
        "capacity": {"bytes": size, "nodes": 1},
        "label": f"I{id}",
        "links": {"session": session},
    }


def script_inventory(
    tool: FakeTool,
    pools: Optional[List[Dict[str, object]]] = None,
    sessions: Optional[List[Dict[str, object]]] = None,
    instances: Optional[List[Dict[str, object]]] = None,
) -> None:
    if pools is None:
        pools = [pool()]
    tool.respond("pools", pools_response(*pools))
    tool.respond("show_sessions", sessions_response(*(sessions or [])))
    tool.respond("show_instances", instances_response(*(instances or [])))


class FakeScheduler(Scheduler):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.jobs: Dict[int, JobRecord] = {}
        self.operators: List[int] = []
        self.reservation = Reservation()
        self.queued = 0

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def add(self, job: JobRecord) -> JobRecord:
        self.jobs[job.job_id] = job
        return job

    def find_job(self, job_id: int) -> Optional[JobRecord]:
        return self.jobs.get(job_id)

    def queue_job_scheduler(self) -> None:
        self.queued += 1

    def reserved_space(self, job: JobRecord, now: int) -> Reservation:
        return self.reservation

    def is_operator(self, user_id: int) -> bool:
        return user_id == 0 or user_id in self.operators


class ManualExecutor(Executor):
    """Runs submitted work only when asked, in submission order."""

    def __init__(self) -> None:
        self.pending: List[tuple] = []
        self._shutdown = False

    def submit(self, fn, *args, **kwargs) -> Future:
        if self._shutdown:
            raise RuntimeError("cannot schedule new futures after shutdown")
        future: Future = Future()
        self.pending.append((future, fn, args, kwargs))
        return future

    def run_pending(self) -> int:
        count = 0
        while self.pending:
            future, fn, args, kwargs = self.pending.pop(0)
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as e:
                future.set_exception(e)
            count += 1
        return count

    def shutdown(self, wait: bool = True, *, cancel_futures: bool = False) -> None:
        self._shutdown = True


def make_config(state_save_location: str, **kwargs) -> BbConfig:
    kwargs.setdefault("get_sys_state", TOOL_PATH)
    return BbConfig(state_save_location=state_save_location, **kwargs)


def batch_job(
    job_id: int,
    user_id: int,
    script: str,
    start_time: int = 0,
    **kwargs,
) -> JobRecord:
    return JobRecord(job_id, user_id, script=script, start_time=start_time, **kwargs)
