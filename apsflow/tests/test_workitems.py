"""
Workitem orchestrator tests

Argument building, the poll loop timing, terminal status handling,
cancellation and background jobs. Sleeps are injected so nothing waits.
"""

import threading
import unittest

from apsflow import (
    ApsError,
    ArgumentSlot,
    CancellationToken,
    JobState,
    MemorySink,
    WorkitemCancelledError,
    WorkitemFailedError,
    WorkitemJob,
    WorkitemTimeoutError,
    build_arguments,
    default_slots,
)
from apsflow.settings import DA_BASE_URL, OSS_BASE_URL
from apsflow.testing import FakeResponse, make_client
from apsflow.workitems import is_terminal

BUCKET = "dynbucket"
OBJ = f"{OSS_BASE_URL}/buckets/{BUCKET}/objects"
WORKITEMS = f"{DA_BASE_URL}/workitems"
WI = f"{WORKITEMS}/wi-1"
REPORT = "https://dasprod-store.s3.amazonaws.com/workItem/reports/wi-1"


def status(value, **extra):
    body = {"id": "wi-1", "status": value}
    body.update(extra)
    return FakeResponse(200, body)


class RecordingSleep:
    def __init__(self, on_sleep=None):
        self.calls = []
        self._on_sleep = on_sleep

    def __call__(self, seconds):
        self.calls.append(seconds)
        if self._on_sleep:
            self._on_sleep(len(self.calls))


class TestBuildArguments(unittest.TestCase):
    """Argument map and the optional packages slot."""

    def test_every_slot_addresses_the_bucket(self):
        args = build_arguments(BUCKET, default_slots(), {"Authorization": "Bearer t"}, lambda b, k: True)

        self.assertEqual(set(args), {"rvtFile", "runRequest", "pythonLibs", "packages", "dynResult", "rvtResult"})
        self.assertEqual(args["rvtFile"]["url"], "urn:adsk.objects:os.object:dynbucket/run.rvt")
        self.assertEqual(args["rvtFile"]["verb"], "get")
        self.assertEqual(args["dynResult"]["verb"], "put")
        self.assertEqual(args["rvtResult"]["headers"], {"Authorization": "Bearer t"})

    def test_packages_skipped_when_probe_fails(self):
        probed = []

        def probe(bucket, key):
            probed.append(key)
            return False

        args = build_arguments(BUCKET, default_slots(), {}, probe)

        self.assertNotIn("packages", args)
        # pythonLibs is always bound
        self.assertIn("pythonLibs", args)
        self.assertEqual(probed, ["packages.zip"])

    def test_custom_slots(self):
        slots = [ArgumentSlot("input", "a.txt"), ArgumentSlot("extra", "b.zip", probe_before_submit=True)]
        args = build_arguments(BUCKET, slots, {}, lambda b, k: True)
        self.assertEqual(list(args), ["input", "extra"])

    def test_terminal_statuses(self):
        self.assertFalse(is_terminal("pending"))
        self.assertFalse(is_terminal("inprogress"))
        for s in ("success", "cancelled", "failedInstructions", "failedUploadOptional", "somethingNew"):
            self.assertTrue(is_terminal(s))


class TestWorkitemRun(unittest.TestCase):
    """Submit one workitem and poll it to a terminal status."""

    def setUp(self):
        self.sleep = RecordingSleep()
        self.client, self.session = make_client(sleep=self.sleep)
        self.session.add("HEAD", f"{OBJ}/packages.zip", FakeResponse(200))
        self.session.add("POST", WORKITEMS, FakeResponse(200, {"id": "wi-1", "status": "pending"}))

    def test_three_polls_two_sleeps(self):
        self.session.add("GET", WI, status("pending"), status("inprogress"), status("success"))
        sink = MemorySink()

        result = self.client.workitems.run(sink=sink)

        self.assertEqual(result.workitem_id, "wi-1")
        self.assertEqual(result.status, "success")
        self.assertEqual(result.attempts, 3)
        self.assertEqual(result.outputs, ["result.json", "result.rvt"])
        self.assertEqual(len(self.session.calls_to("GET", WI)), 3)
        self.assertEqual(self.sleep.calls, [5.0, 5.0])
        self.assertIn("Workitem status: inprogress", sink.messages)
        self.assertIn("Workitem completed successfully!", sink.messages)

    def test_submission_body(self):
        self.session.add("GET", WI, status("success"))

        self.client.workitems.run()

        post = self.session.calls_to("POST", WORKITEMS)[0]
        self.assertEqual(post.json["activityId"], "dynnick.DynamoActivity+default")
        self.assertIn("packages", post.json["arguments"])
        self.assertEqual(post.json["arguments"]["runRequest"]["headers"], {"Authorization": "Bearer test-token"})
        self.assertEqual(len(self.session.calls_to("POST", WORKITEMS)), 1)

    def test_packages_omitted_when_missing(self):
        client, session = make_client(sleep=self.sleep)
        session.add("HEAD", f"{OBJ}/packages.zip", FakeResponse(404))
        session.add("POST", WORKITEMS, FakeResponse(200, {"id": "wi-1"}))
        session.add("GET", WI, status("success"))

        client.workitems.run()

        self.assertNotIn("packages", session.calls_to("POST", WORKITEMS)[0].json["arguments"])

    def test_timeout_after_poll_cap(self):
        self.session.add("GET", WI, status("pending"))

        with self.assertRaises(WorkitemTimeoutError) as ctx:
            self.client.workitems.run()

        self.assertEqual(ctx.exception.attempts, 60)
        self.assertEqual(ctx.exception.last_status, "pending")
        self.assertEqual(ctx.exception.http_status, 504)
        self.assertEqual(len(self.session.calls_to("GET", WI)), 60)
        self.assertEqual(len(self.sleep.calls), 59)

    def test_failed_status_fetches_report(self):
        self.session.add("GET", WI, status("inprogress"), status("failedInstructions", reportUrl=REPORT))
        self.session.add("GET", REPORT, FakeResponse(200, text="[01/01 00:00:00] Dynamo crashed"))

        with self.assertRaises(WorkitemFailedError) as ctx:
            self.client.workitems.run()

        err = ctx.exception
        self.assertEqual(err.status, "failedInstructions")
        self.assertEqual(err.message, "Workitem failed with status: failedInstructions")
        self.assertEqual(err.details["report"], "[01/01 00:00:00] Dynamo crashed")
        self.assertEqual(err.details["reportUrl"], REPORT)
        self.assertNotIn("Authorization", self.session.calls_to("GET", REPORT)[0].headers)

    def test_unknown_status_is_terminal_failure(self):
        self.session.add("GET", WI, status("failedSomethingElse"))
        with self.assertRaises(WorkitemFailedError) as ctx:
            self.client.workitems.run()
        self.assertIsNone(ctx.exception.details["report"])

    def test_cancel_between_polls(self):
        token = CancellationToken()
        self.sleep._on_sleep = lambda n: token.cancel()
        self.session.add("GET", WI, status("pending"))

        with self.assertRaises(WorkitemCancelledError) as ctx:
            self.client.workitems.run(token=token)

        self.assertEqual(ctx.exception.workitem_id, "wi-1")
        self.assertEqual(len(self.session.calls_to("GET", WI)), 1)

    def test_cancel_before_submit(self):
        token = CancellationToken()
        token.cancel()
        with self.assertRaises(WorkitemCancelledError):
            self.client.workitems.run(token=token)
        self.assertEqual(self.session.calls_to("POST", WORKITEMS), [])

    def test_observe_resumes_without_submitting(self):
        self.session.add("GET", WI, status("inprogress"), status("success"))

        result = self.client.workitems.observe("wi-1")

        self.assertEqual(result.status, "success")
        self.assertEqual(self.session.calls_to("POST", WORKITEMS), [])


class TestWorkitemJob(unittest.TestCase):
    """Background submit-and-poll."""

    def test_job_completes_and_snapshots(self):
        client, session = make_client(sleep=lambda s: None)
        session.add("HEAD", f"{OBJ}/packages.zip", FakeResponse(200))
        session.add("POST", WORKITEMS, FakeResponse(200, {"id": "wi-1"}))
        session.add("GET", WI, status("pending"), status("success"))

        job = client.start_job()
        result = job.wait(5)

        self.assertEqual(result.status, "success")
        snap = job.snapshot()
        self.assertEqual(snap["state"], JobState.SUCCEEDED.value)
        self.assertEqual(snap["workitemId"], "wi-1")
        self.assertEqual(snap["attempts"], 2)
        self.assertEqual(snap["result"]["workitemId"], "wi-1")

    def test_job_failure_is_captured(self):
        client, session = make_client(sleep=lambda s: None)
        session.add("HEAD", f"{OBJ}/packages.zip", FakeResponse(404))
        session.add("POST", WORKITEMS, FakeResponse(400, {"diagnostic": "bad activity"}))

        job = client.start_job()

        with self.assertRaises(ApsError):
            job.wait(5)
        snap = job.snapshot()
        self.assertEqual(snap["state"], JobState.FAILED.value)
        self.assertEqual(snap["error"]["details"], {"diagnostic": "bad activity"})

    def test_cancel_interrupts_wait(self):
        client, session = make_client(poll_interval=30.0)
        polled = threading.Event()

        def pending(call):
            polled.set()
            return status("pending")

        session.add("GET", WI, pending)

        job = client.resume_job("wi-1")
        self.assertTrue(polled.wait(5))
        job.cancel()

        with self.assertRaises(WorkitemCancelledError):
            job.wait(5)
        self.assertEqual(job.state, JobState.CANCELLED)

    def test_wait_timeout(self):
        client, session = make_client(poll_interval=30.0)
        session.add("GET", WI, status("pending"))
        job = WorkitemJob(client.workitems, workitem_id="wi-1").start()
        try:
            with self.assertRaises(TimeoutError):
                job.wait(0.05)
            self.assertFalse(job.done)
        finally:
            job.cancel()
        with self.assertRaises(WorkitemCancelledError):
            job.wait(5)


if __name__ == "__main__":
    unittest.main(verbosity=2)
