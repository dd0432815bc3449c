"""BigQuery-backed job and table clients driven through a mocked ``bigquery.Client``."""

import json
import threading
import unittest
from unittest import mock

from google.api_core import exceptions as api_exceptions
from google.cloud import bigquery

from fakes import RecordingLogger

from salam_bq.errors import InsertError, JobInterruptedError, ResourceNotFoundError
from salam_bq.references import JobReference, TableReference
from salam_bq.services.base import LoadJobSpec, QueryJobSpec
from salam_bq.services.bigquery import (
    MAX_INSERT_ATTEMPTS,
    MAX_NOT_FOUND_POLLS,
    TRANSIENT_RETRY,
    BigQueryJobClient,
    BigQueryTableClient,
)

JOB = JobReference("test-project", "salam_job_nightly_load-0")
TABLE = TableReference("ds", "events", "test-project")
SCHEMA = [{"name": "id", "type": "INTEGER"}]


def remote_job(cls=bigquery.LoadJob, state="DONE", **attrs):
    job = mock.MagicMock(spec=cls)
    job.project = JOB.project_id
    job.job_id = JOB.job_id
    job.state = state
    job.error_result = None
    job.errors = None
    for key, value in attrs.items():
        setattr(job, key, value)
    return job


def insert_failure(index, reason):
    return {"index": index, "errors": [{"reason": reason, "message": reason}]}


class ServicesTestCase(unittest.TestCase):
    def setUp(self):
        patcher = mock.patch("salam_bq.services.bigquery.time")
        self.time = patcher.start()
        self.addCleanup(patcher.stop)
        self.client = mock.MagicMock()
        self.client.project = "test-project"
        self.logger = RecordingLogger()


class JobClientTest(ServicesTestCase):
    def setUp(self):
        super().setUp()
        self.jobs = BigQueryJobClient(self.client, self.logger)

    def test_existing_job_id_is_logged_and_then_polled(self):
        self.client.load_table_from_uri.side_effect = api_exceptions.Conflict("Already Exists")
        spec = LoadJobSpec(TABLE, ["gs://bucket/f-0.json"], SCHEMA, "WRITE_APPEND", "CREATE_IF_NEEDED")
        self.jobs.submit_load(JOB, spec)
        self.assertIn("job_already_exists", self.logger.messages("WARN"))
        kwargs = self.client.load_table_from_uri.call_args.kwargs
        self.assertEqual(kwargs["job_id"], JOB.job_id)
        self.assertEqual(kwargs["job_config"].write_disposition, "WRITE_APPEND")

        self.client.get_job.return_value = remote_job(output_rows=3, output_bytes=30)
        job = self.jobs.poll_job(JOB)
        self.assertEqual(job.job_ref, JOB)
        self.assertEqual(job.statistics["load"], {"output_rows": 3, "output_bytes": 30})

    def test_other_submit_errors_propagate(self):
        self.client.load_table_from_uri.side_effect = api_exceptions.Forbidden("denied")
        spec = LoadJobSpec(TABLE, ["gs://bucket/f-0.json"], SCHEMA, "WRITE_APPEND", "CREATE_IF_NEEDED")
        with self.assertRaises(api_exceptions.Forbidden):
            self.jobs.submit_load(JOB, spec)

    def test_poll_waits_until_done(self):
        self.client.get_job.side_effect = [remote_job(state="RUNNING"), remote_job(state="DONE")]
        job = self.jobs.poll_job(JOB)
        self.assertEqual(job.state, "DONE")
        self.assertEqual(self.client.get_job.call_count, 2)
        self.assertEqual(self.time.sleep.call_count, 1)
        self.assertIs(self.client.get_job.call_args.kwargs["retry"], TRANSIENT_RETRY)

    def test_missing_job_gives_up_after_bounded_polls(self):
        self.client.get_job.side_effect = api_exceptions.NotFound("no such job")
        self.assertIsNone(self.jobs.poll_job(JOB))
        self.assertEqual(self.client.get_job.call_count, MAX_NOT_FOUND_POLLS)
        self.assertIn("job_not_found", self.logger.messages("WARN"))

    def test_exhausted_lookups_stop_after_max_retries(self):
        self.client.get_job.side_effect = api_exceptions.RetryError("deadline exceeded", cause=None)
        self.assertIsNone(self.jobs.poll_job(JOB, max_retries=2))
        self.assertEqual(self.client.get_job.call_count, 3)
        self.assertEqual(self.logger.messages("WARN").count("job_poll_failed"), 3)

    def test_interrupt_stops_polling(self):
        self.client.get_job.return_value = remote_job(state="RUNNING")
        interrupt = threading.Event()
        interrupt.set()
        with self.assertRaises(JobInterruptedError):
            self.jobs.poll_job(JOB, interrupt=interrupt)
        self.time.sleep.assert_not_called()

    def test_extract_statistics_and_errors_are_mapped(self):
        self.client.get_job.return_value = remote_job(
            bigquery.ExtractJob,
            destination_uri_file_counts=[4],
            error_result={"reason": "invalid", "message": "bad"},
            errors=[{"reason": "invalid"}],
        )
        job = self.jobs.get_job(JOB)
        self.assertEqual(job.statistics, {"extract": {"destination_uri_file_counts": [4]}})
        self.assertEqual(job.error_result["reason"], "invalid")
        self.assertEqual(job.errors, [{"reason": "invalid"}])

    def test_query_statistics_are_mapped(self):
        self.client.get_job.return_value = remote_job(bigquery.QueryJob, total_bytes_processed=512)
        self.assertEqual(self.jobs.get_job(JOB).statistics, {"query": {"total_bytes_processed": 512}})

    def test_get_job_returns_none_when_missing(self):
        self.client.get_job.side_effect = api_exceptions.NotFound("no such job")
        self.assertIsNone(self.jobs.get_job(JOB))

    def test_dry_run_reports_referenced_tables(self):
        dry = mock.MagicMock()
        dry.total_bytes_processed = 42
        dry.referenced_tables = [bigquery.TableReference(bigquery.DatasetReference("other", "ds"), "t")]
        self.client.query.return_value = dry
        result = self.jobs.dry_run_query("test-project", QueryJobSpec("SELECT a FROM ds.t", use_legacy_sql=False))
        self.assertEqual(result.total_bytes_processed, 42)
        self.assertEqual(result.referenced_tables, [TableReference("ds", "t", "other")])
        config = self.client.query.call_args.kwargs["job_config"]
        self.assertTrue(config.dry_run)
        self.assertFalse(config.use_legacy_sql)


class TableClientTest(ServicesTestCase):
    def setUp(self):
        super().setUp()
        self.tables = BigQueryTableClient(self.client, self.logger)
        self.client.insert_rows_json.return_value = []

    def test_insert_all_sends_bounded_requests(self):
        rows = [{"id": i} for i in range(1200)]
        ids = [f"row-{i}" for i in range(1200)]
        sent = self.tables.insert_all(TABLE, rows, ids)
        calls = self.client.insert_rows_json.call_args_list
        self.assertEqual([len(call.args[1]) for call in calls], [500, 500, 200])
        self.assertEqual(calls[2].kwargs["row_ids"], ids[1000:])
        self.assertIs(calls[0].kwargs["retry"], TRANSIENT_RETRY)
        self.assertEqual(sent, sum(len(json.dumps(row, separators=(",", ":"))) for row in rows))

    def test_only_failed_rows_are_resent(self):
        self.client.insert_rows_json.side_effect = [[insert_failure(1, "backendError")], []]
        rows = [{"id": 0}, {"id": 1}, {"id": 2}]
        self.tables.insert_all(TABLE, rows, ["a", "b", "c"])
        retry_call = self.client.insert_rows_json.call_args_list[1]
        self.assertEqual(retry_call.args[1], [{"id": 1}])
        self.assertEqual(retry_call.kwargs["row_ids"], ["b"])
        self.assertEqual(self.time.sleep.call_count, 1)
        self.assertIn("insert_retry", self.logger.messages("WARN"))

    def test_invalid_rows_fail_without_retry(self):
        self.client.insert_rows_json.return_value = [insert_failure(0, "invalid")]
        with self.assertRaises(InsertError) as ctx:
            self.tables.insert_all(TABLE, [{"id": "x"}], ["a"])
        self.assertEqual(self.client.insert_rows_json.call_count, 1)
        self.assertEqual(ctx.exception.errors[0]["index"], 0)

    def test_persistent_failures_exhaust_the_attempts(self):
        self.client.insert_rows_json.return_value = [insert_failure(0, "backendError")]
        with self.assertRaises(InsertError):
            self.tables.insert_all(TABLE, [{"id": 1}], ["a"])
        self.assertEqual(self.client.insert_rows_json.call_count, MAX_INSERT_ATTEMPTS)

    def test_mismatched_ids_are_rejected(self):
        with self.assertRaises(ValueError):
            self.tables.insert_all(TABLE, [{"id": 1}], [])
        self.client.insert_rows_json.assert_not_called()

    def test_missing_table_is_none(self):
        self.client.get_table.side_effect = api_exceptions.NotFound("missing")
        self.assertIsNone(self.tables.get_table(TableReference("ds", "nope")))

    def test_missing_dataset_raises(self):
        self.client.get_dataset.side_effect = api_exceptions.NotFound("missing")
        with self.assertRaises(ResourceNotFoundError):
            self.tables.get_dataset("test-project", "nope")

    def test_table_metadata_is_mapped(self):
        remote = mock.MagicMock()
        remote.schema = [bigquery.SchemaField("id", "INTEGER")]
        remote.num_bytes = 100
        remote.num_rows = 4
        remote.location = "EU"
        remote.description = "events"
        self.client.get_table.return_value = remote
        info = self.tables.get_table(TableReference("ds", "events"))
        self.assertEqual([field["name"] for field in info.schema], ["id"])
        self.assertEqual((info.num_rows, info.location), (4, "EU"))
        table_ref = self.client.get_table.call_args.args[0]
        self.assertEqual((table_ref.project, table_ref.dataset_id), ("test-project", "ds"))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
