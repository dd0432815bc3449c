"""Bulk load commit protocol against the in-memory warehouse."""

import os
import tempfile
import unittest

from fakes import FakeWarehouse, RecordingLogger

from salam_bq.config import BigQueryOptions, CreateDisposition, WriteConfig, WriteDisposition
from salam_bq.errors import JobFailedError
from salam_bq.events import CounterSubscriber, Emitter
from salam_bq.io.paths import Paths
from salam_bq.load import BulkLoadWriter, temp_table_for
from salam_bq.references import TableReference
from salam_bq.staging import write_bundle

SCHEMA = [{"name": "id", "type": "INTEGER"}, {"name": "name", "type": "STRING"}]
TOKEN = "salam_job_step1_nightly"


class BulkLoadWriterTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.warehouse = FakeWarehouse()
        self.warehouse.add_dataset("ds")
        self.logger = RecordingLogger()
        self.emitter = Emitter()
        self.counters = self.emitter.subscribe(CounterSubscriber())
        self.destination = TableReference("ds", "orders", "test-project")
        self.temp_prefix = Paths.write_temp_prefix(self.tmp.name, "step1")

    def tearDown(self):
        self.tmp.cleanup()

    def make_writer(self, max_num_files=10, **write_kwargs):
        options = BigQueryOptions(
            project="test-project",
            temp_location=self.tmp.name,
            job_name="nightly",
            max_num_files=max_num_files,
            max_parallel_loads=2,
        )
        write_kwargs.setdefault("write_disposition", WriteDisposition.WRITE_APPEND)
        write = WriteConfig(table="ds.orders", schema=SCHEMA, **write_kwargs)
        return BulkLoadWriter(
            options,
            write,
            self.destination,
            self.warehouse,
            self.warehouse,
            step_uuid="step1",
            temp_prefix=self.temp_prefix,
            logger=self.logger,
            emitter=self.emitter,
        )

    def stage(self, bundles):
        files = []
        for bundle in bundles:
            files.extend(write_bundle(bundle, self.temp_prefix, logger=self.logger))
        return files

    def rows(self, count, start=0):
        return [{"id": i, "name": f"n{i}"} for i in range(start, start + count)]

    def test_single_partition_loads_destination_directly(self):
        staged = self.stage([self.rows(3)])
        result = self.make_writer(table_description="orders table").write(staged)
        self.assertEqual(result.plan, "direct")
        self.assertEqual(result.jobs, [f"{TOKEN}_00001-0"])
        self.assertEqual(self.warehouse.jobs_of("copy"), [])
        self.assertEqual(len(self.warehouse.rows("ds.orders")), 3)
        self.assertEqual(self.warehouse.tables["test-project:ds.orders"].description, "orders table")
        self.assertFalse(any(os.path.exists(f.path) for f in staged))

    def test_multiple_partitions_commit_with_one_copy(self):
        staged = self.stage([self.rows(2, start=i * 2) for i in range(5)])
        result = self.make_writer(max_num_files=2).write(staged)
        self.assertEqual(result.plan, "staged")
        self.assertEqual(result.partitions, 3)
        self.assertEqual(
            [t.table_id for t in result.temp_tables],
            [f"{TOKEN}_00001", f"{TOKEN}_00002", f"{TOKEN}_00003"],
        )
        self.assertEqual(self.warehouse.jobs_of("copy"), [f"{TOKEN}-0"])
        # every load finished before the copy was submitted
        kinds = [kind for kind, _ in self.warehouse.history]
        self.assertEqual(kinds, ["load", "load", "load", "copy"])
        self.assertEqual(sorted(r["id"] for r in self.warehouse.rows("ds.orders")), list(range(10)))
        for table in result.temp_tables:
            self.assertIsNone(self.warehouse.get_table(table))
        self.assertFalse(any(os.path.exists(f.path) for f in staged))
        self.assertEqual(self.counters.get("load.partitions"), 3)

    def test_failed_load_attempt_is_retried(self):
        self.warehouse.fail_next("load", 1)
        result = self.make_writer().write(self.stage([self.rows(2)]))
        self.assertEqual(result.jobs, [f"{TOKEN}_00001-1"])
        self.assertEqual(len(self.warehouse.rows("ds.orders")), 2)

    def test_copy_failure_keeps_temp_tables_and_removes_staged_files(self):
        self.warehouse.fail_next("copy", 3)
        staged = self.stage([self.rows(1, start=i) for i in range(3)])
        writer = self.make_writer(max_num_files=1)
        with self.assertRaises(JobFailedError) as ctx:
            writer.write(staged)
        self.assertEqual(ctx.exception.attempts, (f"{TOKEN}-0", f"{TOKEN}-1", f"{TOKEN}-2"))
        for i in range(1, 4):
            self.assertIsNotNone(self.warehouse.get_table(temp_table_for(self.destination, f"{TOKEN}_{i:05d}")))
        self.assertIsNone(self.warehouse.get_table(self.destination))
        self.assertFalse(any(os.path.exists(f.path) for f in staged))

    def test_load_failure_removes_staged_files(self):
        self.warehouse.fail_next("load", 3)
        staged = self.stage([self.rows(2)])
        with self.assertRaises(JobFailedError):
            self.make_writer().write(staged)
        self.assertFalse(os.path.exists(staged[0].path))

    def test_no_rows_still_creates_destination(self):
        result = self.make_writer().write([])
        self.assertEqual(result.plan, "direct")
        self.assertIsNotNone(self.warehouse.get_table(self.destination))
        self.assertEqual(self.warehouse.rows("ds.orders"), [])

    def test_truncate_replaces_existing_rows(self):
        self.warehouse.add_table("ds.orders", SCHEMA, [{"id": 99, "name": "old"}])
        self.make_writer(write_disposition=WriteDisposition.WRITE_TRUNCATE).write(self.stage([self.rows(2)]))
        self.assertEqual([r["id"] for r in self.warehouse.rows("ds.orders")], [0, 1])

    def test_create_never_on_missing_table_fails(self):
        with self.assertRaises(JobFailedError):
            self.make_writer(create_disposition=CreateDisposition.CREATE_NEVER).write(self.stage([self.rows(1)]))

    def test_temp_table_cleanup_failure_is_only_logged(self):
        for i in range(1, 3):
            self.warehouse.failing_deletes.add(f"test-project:ds.{TOKEN}_{i:05d}")
        result = self.make_writer(max_num_files=1).write(self.stage([self.rows(1), self.rows(1, start=1)]))
        self.assertEqual(result.partitions, 2)
        self.assertEqual(self.logger.messages("WARN").count("temp_table_delete_failed"), 2)
        self.assertEqual(len(self.warehouse.rows("ds.orders")), 2)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
