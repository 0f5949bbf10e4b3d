from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Iterable, List

logger = logging.getLogger(__name__)

HASH_BUCKETS = 10
SCRIPT = "script"
CLIENT_NIDS = "client_nids"
PATH_FILE = "pathfile"
DUMMY_SCRIPT = "burst_buffer_script"
DUMMY_SCRIPT_TEXT = "#!/bin/bash\nexit 0\n"


class JobFiles:
    """
    Per-job scratch files read by the orchestration tool:

    <state_save>/hash.<job_id % 10>/job.<job_id>/{script,client_nids,pathfile}
    """

    def __init__(self, state_save_location: str) -> None:
        self._base = Path(state_save_location)

    @property
    def base(self) -> Path:
        return self._base

    def job_dir(self, job_id: int) -> Path:
        return self._base / f"hash.{job_id % HASH_BUCKETS}" / f"job.{job_id}"

    def script_path(self, job_id: int) -> Path:
        return self.job_dir(job_id) / SCRIPT

    def client_nids_path(self, job_id: int) -> Path:
        return self.job_dir(job_id) / CLIENT_NIDS

    def path_file(self, job_id: int) -> Path:
        return self.job_dir(job_id) / PATH_FILE

    def make_job_dir(self, job_id: int) -> Path:
        path = self.job_dir(job_id)
        path.mkdir(mode=0o700, parents=True, exist_ok=True)
        return path

    def write_script(self, job_id: int, text: str) -> Path:
        self.make_job_dir(job_id)
        path = self.script_path(job_id)
        path.write_text(text)
        os.chmod(path, 0o700)
        return path

    def write_client_nids(self, job_id: int, hostnames: Iterable[str]) -> Path:
        self.make_job_dir(job_id)
        path = self.client_nids_path(job_id)
        path.write_text("".join([f"{h}\n" for h in hostnames]))
        return path

    def read_path_file(self, job_id: int) -> List[str]:
        """
        KEY=value lines the tool wrote for the job's environment.
        """
        try:
            text = self.path_file(job_id).read_text()
        except FileNotFoundError:
            return []
        return [line.strip() for line in text.splitlines() if "=" in line]

    def script_or_dummy(self, job_id: int) -> Path:
        path = self.script_path(job_id)
        if path.exists():
            return path

        dummy = self._base / DUMMY_SCRIPT
        if not dummy.exists():
            self._base.mkdir(parents=True, exist_ok=True)
            dummy.write_text(DUMMY_SCRIPT_TEXT)
            os.chmod(dummy, 0o755)
        return dummy

    def purge(self, job_id: int) -> None:
        shutil.rmtree(self.job_dir(job_id), ignore_errors=True)

    def remove_client_nids(self, job_id: int) -> None:
        path = self.client_nids_path(job_id)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("unable to remove %s: %s", path, e)
