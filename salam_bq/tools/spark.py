from __future__ import annotations

from functools import partial
from typing import Any, Dict, List, Optional, Sequence

from pyspark import StorageLevel
from pyspark.sql import SparkSession
from pyspark.sql import types as T

from ..common import DEFAULT_LOGGER, PrintLogger
from ..staging import StagedFile, write_bundle
from ..streaming import shard_partition
from .base import ExecutionTool, QueryRequest, WriteRequest

_SPARK_TYPES = {
    "INTEGER": T.LongType,
    "INT64": T.LongType,
    "FLOAT": T.DoubleType,
    "FLOAT64": T.DoubleType,
    "BOOLEAN": T.BooleanType,
    "BOOL": T.BooleanType,
}


def _field_type(field: Dict[str, Any]) -> T.DataType:
    kind = str(field.get("type", "STRING")).upper()
    if kind in {"RECORD", "STRUCT"}:
        dtype: T.DataType = to_spark_schema(field.get("fields") or [])
    else:
        dtype = _SPARK_TYPES.get(kind, T.StringType)()
    if str(field.get("mode") or "").upper() == "REPEATED":
        return T.ArrayType(dtype)
    return dtype


def to_spark_schema(schema: List[Dict[str, Any]]) -> T.StructType:
    """Spark struct for rows decoded from a snapshot with this table schema."""
    return T.StructType(
        [
            T.StructField(field["name"], _field_type(field), str(field.get("mode") or "").upper() != "REQUIRED")
            for field in schema
        ]
    )


def _to_spark_value(field: Dict[str, Any], value: Any) -> Any:
    if value is None:
        return None
    if str(field.get("type", "")).upper() not in {"RECORD", "STRUCT"}:
        return value
    if str(field.get("mode") or "").upper() == "REPEATED":
        return [to_spark_row(field.get("fields") or [], item) for item in value]
    return to_spark_row(field.get("fields") or [], value)


def to_spark_row(schema: List[Dict[str, Any]], row: Optional[Dict[str, Any]]) -> Optional[tuple]:
    if row is None:
        return None
    return tuple(_to_spark_value(field, row.get(field["name"])) for field in schema)


def _read_source(source) -> Any:
    return source.read()


class SparkTool(ExecutionTool):
    def __init__(self, spark: SparkSession, logger: PrintLogger = DEFAULT_LOGGER) -> None:
        self.spark = spark
        self.logger = logger
        self._current_pool: Optional[str] = None
        self._current_group: Optional[str] = None

    def query(self, request: QueryRequest):
        reader = self.spark.read.format(request.format)
        for key, value in request.options.items():
            if key == "path":
                continue
            reader = reader.option(key, value)
        if request.partition_options:
            for key, value in request.partition_options.items():
                reader = reader.option(key, value)
        path = request.options.get("path")
        return reader.load(path) if path else reader.load()

    def write_dataset(self, request: WriteRequest) -> None:
        writer = request.dataset.write.format(request.format).mode(request.mode)
        if request.options:
            for k, v in request.options.items():
                writer = writer.option(k, v)
        writer.save(request.path)

    def count(self, dataset: Any) -> int:
        return dataset.count()

    @staticmethod
    def _rdd(dataset: Any):
        return dataset.rdd if hasattr(dataset, "rdd") else dataset

    def stage_rows(
        self, dataset: Any, temp_prefix: str, storage_options: Optional[Dict[str, Any]] = None
    ) -> List[StagedFile]:
        stage = partial(write_bundle, temp_prefix=temp_prefix, logger=self.logger, storage_options=storage_options)
        return self._rdd(dataset).mapPartitions(stage).collect()

    def read_sources(self, sources: Sequence[Any], schema: List[Dict[str, Any]]):
        sc = self.spark.sparkContext
        rows = sc.parallelize(list(sources), max(1, len(sources))).flatMap(_read_source)
        df = self.spark.createDataFrame(rows.map(partial(to_spark_row, schema)), to_spark_schema(schema))
        df = df.persist(StorageLevel.MEMORY_AND_DISK)
        rows_read = df.count()
        self.logger.info("snapshot_materialized", rows=rows_read, sources=len(sources))
        return df

    def stream_rows(self, dataset: Any, tagger: Any, writer: Any) -> int:
        sc = self.spark.sparkContext
        tagged = self._rdd(dataset).mapPartitions(tagger.tag_partition)
        shuffled = tagged.partitionBy(tagger.num_shards, shard_partition)
        if sc.getCheckpointDir():
            shuffled.persist(StorageLevel.DISK_ONLY)
            shuffled.checkpoint()
        else:
            self.logger.warn("stream_barrier_not_checkpointed", shards=tagger.num_shards)
            shuffled.persist(StorageLevel.DISK_ONLY_2)
        shuffled.count()
        inserted = sc.accumulator(0)

        def insert(items) -> None:
            inserted.add(writer.write_partition(items))

        try:
            shuffled.foreachPartition(insert)
        finally:
            shuffled.unpersist()
        return inserted.value

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "SparkTool":
        runtime = cfg.get("runtime", {})
        spark_cfg: Dict[str, Any] = runtime.get("spark", {})
        builder = SparkSession.builder.appName(spark_cfg.get("app_name", runtime.get("job_name", "salam_bq")))
        if spark_cfg.get("master"):
            builder = builder.master(spark_cfg["master"])
        builder = builder.config("spark.scheduler.mode", spark_cfg.get("scheduler.mode", "FAIR"))
        builder = builder.config("spark.sql.session.timeZone", spark_cfg.get("timezone", "UTC"))
        extra_jars = spark_cfg.get("extra_jars", [])
        if extra_jars:
            builder = builder.config("spark.jars", ",".join(extra_jars))
        for key, value in spark_cfg.get("conf", {}).items():
            builder = builder.config(key, value)
        spark = builder.getOrCreate()
        checkpoint_dir = spark_cfg.get("checkpoint_dir")
        if checkpoint_dir:
            spark.sparkContext.setCheckpointDir(checkpoint_dir)
        return cls(spark)

    def stop(self) -> None:
        if self.spark is not None:
            self.spark.stop()

    def set_job_context(self, *, pool: Optional[str], group_id: Optional[str], description: Optional[str]) -> None:
        sc = self.spark.sparkContext
        if pool:
            sc.setLocalProperty("spark.scheduler.pool", pool)
            self._current_pool = pool
        if group_id is not None or description is not None:
            sc.setJobGroup(group_id or "", description or "")
            self._current_group = group_id

    def clear_job_context(self) -> None:
        sc = self.spark.sparkContext
        sc.setLocalProperty("spark.scheduler.pool", None)
        sc.setJobGroup("", "")
        self._current_pool = None
        self._current_group = None
