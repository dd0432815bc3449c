"""Job retry driver: bounded attempts, unknown outcomes and cancellation."""

import threading
import unittest

from fakes import RecordingLogger

from salam_bq.errors import JobFailedError, JobInterruptedError, JobStatusUnknownError
from salam_bq.events import CounterSubscriber, Emitter
from salam_bq.jobs import JobRunner, JobStatus, attempt_job_id, parse_status
from salam_bq.references import JobReference
from salam_bq.services.base import Job


class ScriptedJobClient:
    """Answers polls from a list of outcomes: ok, failed, unknown or interrupt."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.polled = []

    def poll_job(self, job_ref, max_retries=None, interrupt=None):
        self.polled.append(job_ref.job_id)
        outcome = self.outcomes.pop(0)
        if outcome == "ok":
            return Job(job_ref)
        if outcome == "failed":
            return Job(job_ref, error_result={"reason": "backendError", "message": "boom"})
        if outcome == "interrupt":
            raise JobInterruptedError("interrupted", job_id_prefix=job_ref.job_id)
        return None


class ParseStatusTest(unittest.TestCase):
    def test_classification(self):
        ref = JobReference("test-project", "j-0")
        self.assertEqual(parse_status(None), JobStatus.UNKNOWN)
        self.assertEqual(parse_status(Job(ref)), JobStatus.SUCCEEDED)
        self.assertEqual(parse_status(Job(ref, error_result={"reason": "x"})), JobStatus.FAILED)
        self.assertEqual(parse_status(Job(ref, errors=[{"reason": "x"}])), JobStatus.FAILED)

    def test_attempt_ids(self):
        self.assertEqual(attempt_job_id("salam_job_abc", 2), "salam_job_abc-2")


class JobRunnerTest(unittest.TestCase):
    def setUp(self):
        self.logger = RecordingLogger()
        self.submitted = []

    def submit(self, job_ref):
        self.submitted.append(job_ref)

    def runner(self, outcomes, **kwargs):
        self.client = ScriptedJobClient(outcomes)
        return JobRunner(self.client, logger=self.logger, **kwargs)

    def test_first_attempt_succeeds_and_runs_post_action(self):
        seen = []
        job = self.runner(["ok"]).run_job("p", "test-project", self.submit, kind="load", on_success=seen.append)
        self.assertEqual(job.job_ref, JobReference("test-project", "p-0"))
        self.assertEqual(seen, [job])
        self.assertEqual([ref.job_id for ref in self.submitted], ["p-0"])

    def test_failed_attempts_are_retried_with_new_ids(self):
        job = self.runner(["failed", "failed", "ok"]).run_job("p", "test-project", self.submit, kind="copy")
        self.assertEqual(job.job_ref.job_id, "p-2")
        self.assertEqual([ref.job_id for ref in self.submitted], ["p-0", "p-1", "p-2"])

    def test_three_failures_exhaust_the_budget(self):
        seen = []
        with self.assertRaises(JobFailedError) as ctx:
            self.runner(["failed"] * 3).run_job("p", "test-project", self.submit, kind="load", on_success=seen.append)
        err = ctx.exception
        self.assertEqual(err.attempts, ("p-0", "p-1", "p-2"))
        self.assertEqual(err.job_id_prefix, "p")
        self.assertIn("reached max retries: 3", str(err))
        self.assertIn("backendError", err.last_job)
        self.assertEqual(seen, [])

    def test_max_attempts_override(self):
        with self.assertRaises(JobFailedError) as ctx:
            self.runner(["failed"]).run_job("p", "test-project", self.submit, kind="load", max_attempts=1)
        self.assertEqual(ctx.exception.attempts, ("p-0",))

    def test_unknown_status_stops_immediately(self):
        with self.assertRaises(JobStatusUnknownError) as ctx:
            self.runner([None, "ok"]).run_job("p", "test-project", self.submit, kind="extract")
        self.assertEqual(len(self.submitted), 1)
        self.assertIn("UNKNOWN status of extract job [p-0]", str(ctx.exception))

    def test_cancel_before_poll_raises_and_logs(self):
        runner = self.runner(["ok"])
        runner.cancel()
        with self.assertRaises(JobInterruptedError):
            runner.run_job("p", "test-project", self.submit, kind="load")
        self.assertEqual(self.client.polled, [])
        self.assertIn("job_poll_interrupted", self.logger.messages("WARN"))

    def test_interrupt_during_poll_is_propagated(self):
        with self.assertRaises(JobInterruptedError) as ctx:
            self.runner(["interrupt"]).run_job("p", "test-project", self.submit, kind="query")
        self.assertEqual(ctx.exception.job_id_prefix, "p")
        self.assertEqual(ctx.exception.attempts, ("p-0",))

    def test_shared_cancel_event(self):
        event = threading.Event()
        runner = self.runner(["ok"], cancel_event=event)
        event.set()
        with self.assertRaises(JobInterruptedError):
            runner.run_job("p", "test-project", self.submit, kind="load")

    def test_job_events_are_counted(self):
        emitter = Emitter()
        counters = emitter.subscribe(CounterSubscriber())
        self.runner(["failed", "failed", "ok"], emitter=emitter).run_job("p", "test-project", self.submit, kind="load")
        self.assertEqual(counters.get("job.submitted"), 3)
        self.assertEqual(counters.get("job.failed"), 2)
        self.assertEqual(counters.get("job.succeeded"), 1)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
