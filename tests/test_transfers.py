"""End-to-end transfers through endpoints and the orchestrator on the local tool."""

import json
import os
import tempfile
import unittest
from unittest import mock

from fakes import FakeWarehouse, RecordingLogger

from salam_bq.endpoints import BigQuerySinkEndpoint, BigQuerySourceEndpoint, EndpointFactory
from salam_bq.orchestrator import main
from salam_bq.streaming import clear_created_tables
from salam_bq.tools.base import QueryRequest
from salam_bq.tools.local import LocalTool

SCHEMA = [{"name": "id", "type": "INTEGER"}, {"name": "name", "type": "STRING"}]


def rows(count):
    return [{"id": i, "name": f"n{i}"} for i in range(count)]


class TransferTestCase(unittest.TestCase):
    def setUp(self):
        clear_created_tables()
        self.tmp = tempfile.TemporaryDirectory()
        self.warehouse = FakeWarehouse()
        self.logger = RecordingLogger(level="INFO")
        self.tool = LocalTool(parallelism=3, logger=self.logger)
        self.temp_location = os.path.join(self.tmp.name, "temp")

    def tearDown(self):
        self.tmp.cleanup()

    def config(self, *transfers, **limits):
        return {
            "runtime": {
                "project": "test-project",
                "temp_location": self.temp_location,
                "job_name": "nightly",
                "max_parallel_transfers": 1,
                "limits": limits,
            },
            "transfers": list(transfers),
        }

    def write_input(self, name, data):
        path = os.path.join(self.tmp.name, f"{name}.json")
        with open(path, "w", encoding="utf-8") as handle:
            for row in data:
                handle.write(json.dumps(row) + "\n")
        return path

    def read_output(self, path):
        return self.tool.query(QueryRequest(format="json", options={"path": path}))

    def leftover_files(self):
        found = []
        for root, _, files in os.walk(self.temp_location):
            found.extend(os.path.join(root, name) for name in files)
        return found

    def run_main(self, cfg):
        return main(self.tool, cfg, base_logger=self.logger, services=self.warehouse)


class TableReadTest(TransferTestCase):
    def test_table_snapshot_lands_in_output_and_is_cleaned_up(self):
        self.warehouse.add_table("ds.orders", SCHEMA, rows(7))
        self.warehouse.extract_files = 3
        out = os.path.join(self.tmp.name, "out")
        cfg = self.config(
            {"name": "orders_out", "direction": "read", "table": "ds.orders", "output": {"path": out, "format": "json"}}
        )
        results, errors = self.run_main(cfg)
        self.assertEqual(errors, [])
        self.assertEqual(results[0]["rows"], 7)
        self.assertEqual(sorted(r["id"] for r in self.read_output(out)), list(range(7)))
        self.assertEqual(self.leftover_files(), [])

    def test_failed_output_write_keeps_the_snapshot(self):
        self.warehouse.add_table("ds.orders", SCHEMA, rows(4))
        self.warehouse.extract_files = 2
        out = os.path.join(self.tmp.name, "out")
        cfg = self.config(
            {"name": "orders_out", "direction": "read", "table": "ds.orders", "output": {"path": out, "format": "csv"}}
        )
        results, errors = self.run_main(cfg)
        self.assertEqual(results, [])
        self.assertIn("Unsupported local format", errors[0][1])
        self.assertEqual(len(self.leftover_files()), 2)


class QueryReadTest(TransferTestCase):
    def test_query_snapshot_drops_temporary_dataset(self):
        origin = self.warehouse.add_table("ds.orders", SCHEMA, rows(1))
        query = "SELECT id, name FROM [test-project:ds.orders] WHERE id > 0"
        self.warehouse.register_query(query, SCHEMA, rows(4), referenced_tables=[origin])
        out = os.path.join(self.tmp.name, "out")
        cfg = self.config(
            {"name": "big_orders", "direction": "read", "query": query, "output": {"path": out, "format": "parquet"}}
        )
        results, errors = self.run_main(cfg)
        self.assertEqual(errors, [])
        self.assertEqual(results[0]["rows"], 4)
        self.assertEqual(len(self.tool.query(QueryRequest(format="parquet", options={"path": out}))), 4)
        self.assertEqual([ds for _, ds in self.warehouse.datasets], ["ds"])
        self.assertEqual(self.leftover_files(), [])

    def test_standard_sql_query_snapshot(self):
        query = "SELECT id, name FROM `test-project.ds.orders` WHERE id < 5"
        self.warehouse.register_query(query, SCHEMA, rows(5))
        self.warehouse.extract_files = 2
        out = os.path.join(self.tmp.name, "out")
        cfg = self.config(
            {
                "name": "std_orders",
                "direction": "read",
                "query": query,
                "use_legacy_sql": False,
                "output": {"path": out, "format": "json"},
            }
        )
        with mock.patch.object(self.warehouse, "submit_query", wraps=self.warehouse.submit_query) as submit:
            results, errors = self.run_main(cfg)
        self.assertEqual(errors, [])
        self.assertEqual(results[0]["sources"], 2)
        self.assertEqual(sorted(r["id"] for r in self.read_output(out)), list(range(5)))
        spec = submit.call_args.args[1]
        self.assertFalse(spec.use_legacy_sql)
        self.assertEqual(spec.query, query)
        self.assertEqual(self.leftover_files(), [])


class LoadWriteTest(TransferTestCase):
    def transfer(self, path, **extra):
        transfer = {
            "name": "orders_in",
            "direction": "write",
            "table": "ds.orders_copy",
            "input": {"path": path, "format": "json"},
            "schema": SCHEMA,
            "write_disposition": "WRITE_APPEND",
        }
        transfer.update(extra)
        return transfer

    def test_direct_load(self):
        self.warehouse.add_dataset("ds")
        path = self.write_input("orders", rows(5))
        results, errors = self.run_main(self.config(self.transfer(path)))
        self.assertEqual(errors, [])
        self.assertEqual(results[0]["plan"], "direct")
        self.assertEqual(len(self.warehouse.rows("ds.orders_copy")), 5)
        self.assertEqual(self.leftover_files(), [])

    def test_default_dispositions_create_missing_table(self):
        self.warehouse.add_dataset("ds")
        path = self.write_input("orders", rows(25_000))
        transfer = self.transfer(path)
        del transfer["write_disposition"]
        results, errors = self.run_main(self.config(transfer))
        self.assertEqual(errors, [])
        self.assertEqual(results[0]["rows"], 25_000)
        self.assertEqual(len(self.warehouse.rows("ds.orders_copy")), 25_000)
        self.assertEqual(self.warehouse.tables["test-project:ds.orders_copy"].schema, SCHEMA)

    def test_non_empty_destination_fails_before_any_job(self):
        self.warehouse.add_table("ds.orders_copy", SCHEMA, rows(1))
        path = self.write_input("orders", rows(3))
        transfer = self.transfer(path, write_disposition="WRITE_EMPTY")
        results, errors = self.run_main(self.config(transfer))
        self.assertEqual(results, [])
        self.assertEqual(len(errors), 1)
        self.assertEqual(self.warehouse.history, [])
        self.assertEqual(self.leftover_files(), [])

    def test_many_files_commit_through_temp_tables(self):
        self.warehouse.add_dataset("ds")
        path = self.write_input("orders", rows(6))
        results, errors = self.run_main(self.config(self.transfer(path), max_num_files=1))
        self.assertEqual(errors, [])
        self.assertEqual(results[0]["plan"], "staged")
        self.assertEqual(results[0]["partitions"], 3)
        self.assertEqual(sorted(r["id"] for r in self.warehouse.rows("ds.orders_copy")), list(range(6)))
        self.assertEqual(len(self.warehouse.jobs_of("copy")), 1)
        self.assertEqual(sorted(self.warehouse.tables), ["test-project:ds.orders_copy"])
        self.assertEqual(self.leftover_files(), [])

    def test_failed_transfer_is_reported_and_others_continue(self):
        self.warehouse.add_dataset("ds")
        self.warehouse.add_table("ds.full", SCHEMA, rows(1))
        path = self.write_input("orders", rows(2))
        cfg = self.config(
            self.transfer(path, name="into_full", table="ds.full", write_disposition="WRITE_EMPTY"),
            self.transfer(path),
        )
        results, errors = self.run_main(cfg)
        self.assertEqual([r["name"] for r in results], ["orders_in"])
        self.assertEqual(errors[0][0], "into_full")
        self.assertIn("not empty", errors[0][1])
        self.assertIn("transfer_failed", self.logger.messages("ERROR"))


class StreamingWriteTest(TransferTestCase):
    def test_streaming_creates_table_and_inserts_each_row_once(self):
        self.warehouse.add_dataset("ds")
        path = self.write_input("events", rows(9))
        cfg = self.config(
            {
                "name": "events_in",
                "direction": "write",
                "table": "ds.events",
                "input": {"path": path, "format": "json"},
                "schema": SCHEMA,
                "method": "streaming",
                "write_disposition": "WRITE_APPEND",
                "table_description": "streamed events",
            },
            num_shards=4,
        )
        results, errors = self.run_main(cfg)
        self.assertEqual(errors, [])
        self.assertEqual(results[0]["method"], "streaming")
        self.assertEqual(sorted(r["id"] for r in self.warehouse.rows("ds.events")), list(range(9)))
        self.assertEqual(self.warehouse.tables["test-project:ds.events"].description, "streamed events")


class EndpointFactoryTest(TransferTestCase):
    def test_builds_bigquery_endpoints(self):
        self.warehouse.add_table("ds.orders", SCHEMA, rows(1))
        cfg = self.config()
        source = EndpointFactory.build_source(
            self.tool, cfg, {"table": "ds.orders", "name": "r"}, self.warehouse, logger=self.logger
        )
        sink = EndpointFactory.build_sink(
            self.tool, cfg, {"table": "ds.copy", "name": "w", "schema": SCHEMA}, self.warehouse, logger=self.logger
        )
        self.assertIsInstance(source, BigQuerySourceEndpoint)
        self.assertIsInstance(sink, BigQuerySinkEndpoint)
        self.assertTrue(source.capabilities().supports_read)
        self.assertTrue(sink.capabilities().supports_streaming)
        self.assertEqual(sink.describe()["table"], "test-project:ds.copy")
        self.assertGreater(source.estimated_size_bytes(), 0)

    def test_unknown_endpoint(self):
        with self.assertRaises(ValueError):
            EndpointFactory.build_source(self.tool, self.config(), {"endpoint": "ftp", "table": "ds.t"}, self.warehouse)

    def test_tool_required(self):
        with self.assertRaises(ValueError):
            EndpointFactory.build_sink(None, self.config(), {"table": "ds.t"}, self.warehouse)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
