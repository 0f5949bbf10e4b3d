import tempfile
import unittest
from pathlib import Path
from typing import Tuple

from burst_buffer.job_files import DUMMY_SCRIPT, JobFiles
from burst_buffer.jobs import BbJob
from burst_buffer.lifecycle import LifecycleDriver
from burst_buffer.registry import AllocationRecord
from burst_buffer.request import BbRequest, PersistentCreate, PersistentDestroy
from burst_buffer.scheduler import JobRecord
from burst_buffer.state import ControllerState
from burst_buffer.states import BbState

from test._fakes import (
    GIB,
    POOL,
    TOOL_PATH,
    FakeClock,
    FakeScheduler,
    FakeTool,
    ManualExecutor,
    make_config,
)


class LifecycleTestCase(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.clock = FakeClock()
        config = make_config(tmp.name, default_pool=POOL)
        self.state = ControllerState(config, clock=self.clock)
        self.state.capacity.total_space = 500 * GIB
        self.scheduler = FakeScheduler()
        self.tool = FakeTool()
        self.files = JobFiles(tmp.name)
        self.executor = ManualExecutor()
        self.driver = LifecycleDriver(
            self.state, self.scheduler, self.tool, self.files, self.executor
        )

    def job(
        self, job_id: int, request: BbRequest, user_id: int = 1000, **kwargs
    ) -> Tuple[JobRecord, BbJob]:
        job = self.scheduler.add(
            JobRecord(job_id, user_id, burst_buffer=str(request), **kwargs)
        )
        bb_job = self.state.jobs.get(job)
        assert bb_job is not None
        return job, bb_job

    def staged_in(self, job_id: int, size: int = 10 * GIB) -> Tuple[JobRecord, BbJob]:
        job, bb_job = self.job(job_id, BbRequest(size))
        self.assertTrue(self.driver.allocate(job, bb_job, True))
        self.executor.run_pending()
        self.assertEqual(bb_job.state, BbState.STAGED_IN)
        return job, bb_job


class StageInTest(LifecycleTestCase):
    def test_allocate_charges_at_once(self):
        job, bb_job = self.job(5, BbRequest(10 * GIB))
        self.assertTrue(self.driver.allocate(job, bb_job, False))

        self.assertEqual(bb_job.state, BbState.STAGING_IN)
        record = self.state.registry.find_job(5)
        assert record is not None
        self.assertEqual(record.state, BbState.STAGING_IN)
        self.assertEqual(self.state.capacity.used_space, 10 * GIB)
        self.assertEqual(self.state.limits.user_usage(1000), 10 * GIB)
        self.assertEqual(bb_job.worker, "setup")
        self.assertEqual(self.tool.calls, [])

    def test_stage_in(self):
        job, bb_job = self.job(5, BbRequest(10 * GIB))
        self.driver.allocate(job, bb_job, False)
        self.executor.run_pending()

        self.assertEqual(self.tool.functions(), ["setup", "data_in"])
        script = str(self.files.script_path(5))
        self.assertEqual(
            self.tool.calls_to("setup")[0],
            [
                TOOL_PATH,
                "--function",
                "setup",
                "--token",
                "5",
                "--caller",
                "SLURM",
                "--user",
                "1000",
                "--capacity",
                f"{POOL}:{10 * GIB}",
                "--job",
                script,
            ],
        )
        self.assertEqual(
            self.tool.calls_to("data_in")[0][3:], ["--token", "5", "--job", script]
        )
        self.assertEqual(bb_job.state, BbState.STAGED_IN)
        self.assertEqual(self.state.registry.find_job(5).state, BbState.STAGED_IN)
        self.assertEqual(bb_job.worker, None)
        self.assertEqual(self.scheduler.queued, 1)

    def test_no_space_needed(self):
        job, bb_job = self.job(5, BbRequest(use_persistent=True))
        self.assertTrue(self.driver.allocate(job, bb_job, True))
        self.assertEqual(bb_job.state, BbState.STAGED_IN)
        self.assertEqual(len(self.state.registry), 0)
        self.assertEqual(self.executor.pending, [])

    def test_setup_failure(self):
        self.tool.fail("setup", "no space on device")
        job, bb_job = self.job(5, BbRequest(10 * GIB))
        self.driver.allocate(job, bb_job, True)
        with self.assertLogs("burst_buffer.lifecycle", level="ERROR"):
            self.executor.run_pending()

        self.assertEqual(self.tool.functions(), ["setup", "teardown"])
        self.assertTrue(job.held)
        self.assertEqual(
            job.state_desc, "burst_buffer/cray: setup: no space on device"
        )
        self.assertEqual(len(self.state.registry), 0)
        self.assertEqual(self.state.limits.user_usage(1000), 0)
        self.assertEqual(bb_job.state, BbState.PENDING)

    def test_unwritable_node_list_tears_down(self):
        job, bb_job = self.job(6, BbRequest(10 * GIB), nodes="nid00001")
        self.files.job_dir(6).parent.mkdir(parents=True, exist_ok=True)
        self.files.job_dir(6).write_text("")

        with self.assertLogs("burst_buffer.lifecycle", level="ERROR"):
            self.assertTrue(self.driver.allocate(job, bb_job, True))
        self.assertTrue(job.held)
        self.assertEqual(bb_job.state, BbState.TEARDOWN)
        self.assertEqual(bb_job.worker, "teardown")

        self.executor.run_pending()
        self.assertEqual(self.tool.functions(), ["teardown"])
        self.assertEqual(len(self.state.registry), 0)
        self.assertEqual(self.state.limits.user_usage(1000), 0)
        self.assertEqual(bb_job.state, BbState.PENDING)

    def test_cancel_during_stage_in(self):
        job, bb_job = self.job(5, BbRequest(10 * GIB))
        self.driver.allocate(job, bb_job, True)
        self.driver.cancel(job, bb_job)
        self.assertEqual(bb_job.state, BbState.TEARDOWN)
        self.assertEqual(len(self.executor.pending), 1)

        job.pending = False
        self.executor.run_pending()
        self.assertEqual(self.tool.functions(), ["setup", "teardown"])
        self.assertEqual(self.tool.calls_to("teardown")[0][-1], "--hurry")
        self.assertEqual(bb_job.state, BbState.COMPLETE)
        self.assertEqual(len(self.state.registry), 0)

    def test_cancel_pending_does_nothing(self):
        job, bb_job = self.job(5, BbRequest(10 * GIB))
        self.driver.cancel(job, bb_job)
        self.assertEqual(bb_job.state, BbState.PENDING)
        self.assertEqual(self.executor.pending, [])


class RunTest(LifecycleTestCase):
    def test_begin_and_stage_out(self):
        job, bb_job = self.staged_in(5)
        job.pending = False
        job.nodes = "nid[00001-00002]"

        self.assertTrue(self.driver.begin(job, bb_job))
        self.assertEqual(bb_job.state, BbState.RUNNING)
        self.assertEqual(
            self.files.client_nids_path(5).read_text(), "nid00001\nnid00002\n"
        )

        # pre_run is still in flight, so stage-out waits for it
        self.driver.start_stage_out(job, bb_job)
        self.assertEqual(bb_job.state, BbState.STAGING_OUT)
        self.assertEqual(len(self.executor.pending), 1)

        self.executor.run_pending()
        self.assertEqual(
            self.tool.functions(),
            ["setup", "data_in", "pre_run", "data_out", "post_run", "teardown"],
        )
        pre_run = self.tool.calls_to("pre_run")[0]
        self.assertEqual(
            pre_run[-2:], ["--nodehostnamefile", str(self.files.client_nids_path(5))]
        )
        self.assertNotIn("--hurry", self.tool.calls_to("teardown")[0])
        self.assertEqual(bb_job.state, BbState.COMPLETE)
        self.assertEqual(len(self.state.registry), 0)
        self.assertEqual(self.state.capacity.used_space, 0)
        self.assertFalse(self.files.job_dir(5).exists())

    def test_begin_without_nodes(self):
        job, bb_job = self.staged_in(5)
        self.assertFalse(self.driver.begin(job, bb_job))
        self.assertEqual(bb_job.state, BbState.STAGED_IN)

    def test_begin_without_record(self):
        job = self.scheduler.add(JobRecord(5, 1000, nodes="nid00001"))
        self.assertFalse(self.driver.begin(job, None))
        self.assertTrue(job.held)
        self.assertEqual(job.state_desc, "Could not find burst buffer record")
        self.executor.run_pending()
        self.assertEqual(self.tool.functions(), ["teardown"])

    def test_unwritable_node_list_holds_job(self):
        job, bb_job = self.staged_in(6)
        job.pending = False
        job.nodes = "nid00001"
        # a file where the job directory should be
        self.files.job_dir(6).parent.mkdir(parents=True, exist_ok=True)
        self.files.job_dir(6).write_text("")

        with self.assertLogs("burst_buffer.lifecycle", level="ERROR"):
            self.assertFalse(self.driver.begin(job, bb_job))
        self.assertTrue(job.held)
        self.assertTrue(job.state_desc.startswith("burst_buffer/cray: unable to"))
        self.assertEqual(bb_job.state, BbState.TEARDOWN)
        self.assertEqual(self.state.registry.find_job(6).state, BbState.TEARDOWN)

        self.executor.run_pending()
        self.assertNotIn("pre_run", self.tool.functions())
        self.assertEqual(self.tool.calls_to("teardown")[0][-1], "--hurry")
        self.assertEqual(bb_job.state, BbState.COMPLETE)
        self.assertEqual(len(self.state.registry), 0)

    def test_stage_out_failure_tears_down(self):
        job, bb_job = self.staged_in(5)
        job.pending = False
        self.tool.fail("data_out", "copy failed")
        self.driver.start_stage_out(job, bb_job)
        with self.assertLogs("burst_buffer.lifecycle", level="ERROR"):
            self.executor.run_pending()

        self.assertEqual(
            self.tool.functions(), ["setup", "data_in", "data_out", "teardown"]
        )
        self.assertEqual(self.tool.calls_to("teardown")[0][-1], "--hurry")
        self.assertTrue(job.held)
        self.assertEqual(bb_job.state, BbState.COMPLETE)

    def test_stage_out_without_space(self):
        job, bb_job = self.job(5, BbRequest(use_persistent=True))
        self.driver.allocate(job, bb_job, True)
        self.driver.start_stage_out(job, bb_job)
        self.assertEqual(bb_job.state, BbState.TEARDOWN)
        self.executor.run_pending()
        self.assertEqual(self.tool.functions(), ["teardown"])


class TeardownTest(LifecycleTestCase):
    def test_teardown_is_idempotent(self):
        job, bb_job = self.staged_in(5)
        job.pending = False
        self.driver.queue_teardown(5, 1000, True)
        self.driver.queue_teardown(5, 1000, True)
        self.executor.run_pending()

        teardowns = self.tool.calls_to("teardown")
        self.assertEqual(len(teardowns), 2)
        self.assertEqual(teardowns[0], teardowns[1])
        self.assertEqual(len(self.state.registry), 0)
        self.assertEqual(self.state.limits.user_usage(1000), 0)
        self.assertEqual(list(self.state.limits.items()), [])

    def test_missing_script_uses_dummy(self):
        self.driver.queue_teardown(9, 1000, False)
        self.executor.run_pending()

        argv = self.tool.calls_to("teardown")[0]
        dummy = self.files.base / DUMMY_SCRIPT
        self.assertEqual(argv[3:], ["--token", "9", "--job", str(dummy)])
        self.assertTrue(dummy.exists())

    def test_token_not_found_counts_as_done(self):
        job, bb_job = self.staged_in(5)
        self.tool.fail("teardown", "Error: token not found")
        self.driver.queue_teardown(5, 1000, True)
        self.executor.run_pending()

        self.assertFalse(job.held)
        self.assertEqual(len(self.state.registry), 0)
        self.assertEqual(bb_job.state, BbState.PENDING)

    def test_teardown_failure_holds_job(self):
        job, bb_job = self.staged_in(5)
        self.tool.fail("teardown", "busy")
        self.driver.queue_teardown(5, 1000, True)
        with self.assertLogs("burst_buffer.lifecycle", level="ERROR"):
            self.executor.run_pending()

        self.assertTrue(job.held)
        self.assertEqual(len(self.state.registry), 1)

    def test_revoke(self):
        job, bb_job = self.staged_in(5)
        record = self.state.registry.find_job(5)
        self.driver.revoke(record)
        self.assertTrue(record.cancelled)
        self.assertEqual(record.state, BbState.TEARDOWN)

        self.executor.run_pending()
        self.assertEqual(self.tool.calls_to("teardown")[0][-1], "--hurry")
        self.assertEqual(len(self.state.registry), 0)
        # the job is still pending and will stage in again
        self.assertEqual(bb_job.state, BbState.PENDING)

    def test_revoked_job_stages_again_with_its_script(self):
        self.files.write_script(5, "#!/bin/bash\n#DW jobdw capacity=10GiB\n")
        job, bb_job = self.job(5, BbRequest(10 * GIB), nodes="nid00001")
        self.driver.allocate(job, bb_job, True)
        self.executor.run_pending()
        self.assertTrue(self.files.client_nids_path(5).exists())

        self.driver.revoke(self.state.registry.find_job(5))
        self.executor.run_pending()
        self.assertEqual(bb_job.state, BbState.PENDING)
        self.assertTrue(self.files.script_path(5).exists())
        self.assertFalse(self.files.client_nids_path(5).exists())

        scripts = []
        self.tool.hooks["setup"] = lambda argv: scripts.append(
            Path(argv[argv.index("--job") + 1]).exists()
        )
        self.assertTrue(self.driver.allocate(job, bb_job, True))
        self.executor.run_pending()
        self.assertEqual(scripts, [True])
        self.assertEqual(bb_job.state, BbState.STAGED_IN)
        self.assertEqual(len(self.state.registry), 1)

    def test_finished_job_purges_its_files(self):
        self.files.write_script(5, "#!/bin/bash\n")
        job, bb_job = self.staged_in(5)
        job.pending = False
        self.driver.queue_teardown(5, 1000, False)
        self.executor.run_pending()
        self.assertEqual(bb_job.state, BbState.COMPLETE)
        self.assertFalse(self.files.job_dir(5).exists())


class PersistentTest(LifecycleTestCase):
    def create_request(self) -> BbRequest:
        return BbRequest(creates=[PersistentCreate("scratch1", 10 * GIB, "striped")])

    def test_create(self):
        job, bb_job = self.job(5, self.create_request())
        self.assertFalse(self.driver.allocate(job, bb_job, False))
        self.assertEqual(bb_job.state, BbState.ALLOCATING)
        self.assertEqual(self.state.limits.user_usage(1000), 10 * GIB)
        self.assertEqual(self.state.capacity.used_space, 10 * GIB)

        self.executor.run_pending()
        self.assertEqual(
            self.tool.calls_to("create_persistent")[0][3:],
            [
                "-c",
                "SLURM",
                "-t",
                "scratch1",
                "-u",
                "1000",
                "-C",
                f"{POOL}:{10 * GIB}",
                "-a",
                "striped",
            ],
        )
        record = self.state.registry.find_name("scratch1", 1000)
        assert record is not None
        self.assertTrue(record.persistent)
        self.assertEqual(record.create_time, self.clock.now)
        self.assertEqual(self.state.limits.user_usage(1000), 10 * GIB)
        self.assertEqual(self.state.capacity.used_space, 10 * GIB)
        self.assertEqual(bb_job.state, BbState.ALLOCATED)
        self.assertEqual(bb_job.buffers[0].state, BbState.ALLOCATED)
        self.assertEqual(self.state.persist_change_time, self.clock.now)
        self.assertEqual(self.scheduler.queued, 1)

        self.assertTrue(self.driver.allocate(job, bb_job, True))
        self.assertEqual(bb_job.state, BbState.STAGED_IN)

    def test_create_failure(self):
        self.tool.fail("create_persistent", "quota exceeded")
        job, bb_job = self.job(5, self.create_request())
        self.driver.allocate(job, bb_job, False)
        with self.assertLogs("burst_buffer.lifecycle", level="ERROR"):
            self.executor.run_pending()

        self.assertEqual(self.state.limits.user_usage(1000), 0)
        self.assertEqual(self.state.capacity.used_space, 0)
        self.assertEqual(len(self.state.registry), 0)
        self.assertEqual(bb_job.buffers[0].state, BbState.PENDING)
        self.assertEqual(bb_job.state, BbState.PENDING)
        self.assertTrue(job.held)
        self.assertEqual(
            job.state_desc, "burst_buffer/cray: create_persistent: quota exceeded"
        )

    def test_destroy(self):
        self.state.registry.insert(AllocationRecord("old", 1000, 5 * GIB))
        request = BbRequest(destroys=[PersistentDestroy("old", True)])
        job, bb_job = self.job(5, request)

        self.assertFalse(self.driver.allocate(job, bb_job, False))
        self.assertEqual(self.executor.pending, [])

        self.assertFalse(self.driver.allocate(job, bb_job, True))
        self.assertEqual(bb_job.state, BbState.DELETING)
        self.executor.run_pending()

        dummy = str(self.files.base / DUMMY_SCRIPT)
        self.assertEqual(
            self.tool.calls[0],
            [TOOL_PATH, "--function", "teardown", "--token", "old", "--job", dummy]
            + ["--hurry"],
        )
        self.assertEqual(len(self.state.registry), 0)
        self.assertEqual(self.state.limits.user_usage(1000), 0)
        self.assertEqual(bb_job.state, BbState.DELETED)
        self.assertEqual(self.state.persist_change_time, self.clock.now)

        self.assertTrue(self.driver.allocate(job, bb_job, True))
        self.assertEqual(bb_job.state, BbState.STAGED_IN)

    def test_destroy_unknown(self):
        request = BbRequest(destroys=[PersistentDestroy("missing", False)])
        job, bb_job = self.job(5, request)
        self.assertTrue(self.driver.allocate(job, bb_job, True))
        self.assertEqual(bb_job.buffers[0].state, BbState.DELETED)
        self.assertEqual(self.tool.calls, [])

    def test_destroy_denied(self):
        self.state.registry.insert(AllocationRecord("old", 1001, 5 * GIB))
        request = BbRequest(destroys=[PersistentDestroy("old", False)])
        job, bb_job = self.job(5, request)

        self.assertFalse(self.driver.allocate(job, bb_job, True))
        self.assertTrue(job.held)
        self.assertEqual(
            job.state_desc, "burst_buffer/cray: Delete permission denied for buffer old"
        )
        self.assertEqual(self.executor.pending, [])
        self.assertEqual(len(self.state.registry), 1)

    def test_begin_with_outstanding_buffers(self):
        job, bb_job = self.job(5, self.create_request(), nodes="nid00001")
        self.driver.allocate(job, bb_job, False)
        self.assertFalse(self.driver.begin(job, bb_job))
        self.assertTrue(job.held)
        self.assertEqual(job.state_desc, "Error managing persistent burst buffers")
