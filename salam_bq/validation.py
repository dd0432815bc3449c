"""Pre-flight checks run before any row is staged or any job is submitted."""

from __future__ import annotations

from typing import Optional

from google.api_core import exceptions as api_exceptions

from .config import BigQueryOptions, CreateDisposition, ReadConfig, WriteConfig, WriteDisposition
from .errors import ConfigurationError, ResourceNotFoundError, ValidationError
from .io.filesystem import is_remote_path
from .references import TableReference
from .services.base import JobClient, QueryJobSpec, TableClient

RESOURCE_NOT_FOUND_ERROR = (
    'BigQuery {kind} not found for table "{table}". Please create the {kind} before the transfer runs. '
    'If the {kind} is created by an earlier transfer, set "validate": false to skip this check.'
)
UNABLE_TO_CONFIRM_PRESENCE_ERROR = (
    'Unable to confirm BigQuery {kind} presence for table "{table}". '
    'If the {kind} is created by an earlier transfer, set "validate": false to skip this check.'
)
QUERY_VALIDATION_FAILURE_ERROR = (
    'Validation of query "{query}" failed. If the query depends on an earlier transfer, '
    'set "validate": false to skip this check.'
)


def verify_dataset_presence(table_client: TableClient, ref: TableReference) -> None:
    try:
        table_client.get_dataset(ref.project_id, ref.dataset_id)
    except ResourceNotFoundError as exc:
        raise ValidationError(RESOURCE_NOT_FOUND_ERROR.format(kind="dataset", table=ref.to_spec())) from exc
    except api_exceptions.GoogleAPICallError as exc:
        raise ValidationError(UNABLE_TO_CONFIRM_PRESENCE_ERROR.format(kind="dataset", table=ref.to_spec())) from exc


def verify_table_presence(table_client: TableClient, ref: TableReference) -> None:
    try:
        table = table_client.get_table(ref)
    except api_exceptions.GoogleAPICallError as exc:
        raise ValidationError(UNABLE_TO_CONFIRM_PRESENCE_ERROR.format(kind="table", table=ref.to_spec())) from exc
    if table is None:
        raise ValidationError(RESOURCE_NOT_FOUND_ERROR.format(kind="table", table=ref.to_spec()))


def verify_table_not_exist_or_empty(table_client: TableClient, ref: TableReference) -> None:
    try:
        if table_client.get_table(ref) is not None and not table_client.is_table_empty(ref):
            raise ValidationError(f"BigQuery table is not empty: {ref.to_spec()}.")
    except api_exceptions.GoogleAPICallError as exc:
        raise ValidationError(f"unable to confirm BigQuery table emptiness for table {ref.to_spec()}") from exc


def check_read_config(options: BigQueryOptions, read: ReadConfig) -> ReadConfig:
    """Reject contradictory read settings; returns the config with query defaults applied."""
    if not options.temp_location:
        raise ConfigurationError("runtime.temp_location is required for snapshot reads")
    if (read.table is None) == (read.query is None):
        raise ConfigurationError(f"Transfer {read.name}: set exactly one of table or query")
    if read.table is not None:
        if read.flatten_results is not None:
            raise ConfigurationError(f"Transfer {read.name}: flatten_results only applies to query reads")
        if read.use_legacy_sql is not None:
            raise ConfigurationError(f"Transfer {read.name}: use_legacy_sql only applies to query reads")
        read.table_ref(options.project)
    return read.with_defaults()


def validate_read(
    options: BigQueryOptions,
    read: ReadConfig,
    job_client: JobClient,
    table_client: TableClient,
) -> ReadConfig:
    read = check_read_config(options, read)
    if not read.validate:
        return read
    table = read.table_ref(options.project)
    if table is not None:
        verify_dataset_presence(table_client, table)
        verify_table_presence(table_client, table)
        return read
    try:
        job_client.dry_run_query(
            options.executing_project(),
            QueryJobSpec(query=read.query, use_legacy_sql=bool(read.use_legacy_sql), flatten_results=bool(read.flatten_results)),
        )
    except (api_exceptions.GoogleAPICallError, ValueError) as exc:
        raise ValidationError(QUERY_VALIDATION_FAILURE_ERROR.format(query=read.query)) from exc
    return read


def check_write_config(options: BigQueryOptions, write: WriteConfig, *, requires_gcs: bool = False) -> None:
    if (write.table is None) == (write.table_fn is None):
        raise ConfigurationError(f"Transfer {write.name}: set exactly one of table or table_fn")
    if write.create_disposition == CreateDisposition.CREATE_IF_NEEDED and write.schema is None:
        raise ConfigurationError(f"Transfer {write.name}: CreateDisposition is CREATE_IF_NEEDED, however no schema was provided")
    if write.table is not None:
        write.table_ref(options.project)
    if write.is_streaming:
        if write.table_fn is not None and write.create_disposition == CreateDisposition.CREATE_NEVER:
            raise ConfigurationError(f"Transfer {write.name}: CREATE_NEVER is not supported with a table function")
        if write.schema is None and write.create_disposition != CreateDisposition.CREATE_NEVER:
            raise ConfigurationError(f"Transfer {write.name}: a schema is required unless CREATE_NEVER is used")
        if write.write_disposition == WriteDisposition.WRITE_TRUNCATE:
            raise ConfigurationError(f"Transfer {write.name}: WRITE_TRUNCATE is not supported for streaming writes")
        return
    if not options.temp_location:
        raise ConfigurationError(f"Transfer {write.name}: runtime.temp_location is required for load writes")
    if requires_gcs and not is_remote_path(options.temp_location):
        raise ConfigurationError(
            f"Transfer {write.name}: runtime.temp_location must be a gs:// path for BigQuery load jobs, "
            f"got {options.temp_location}"
        )


def validate_write(
    options: BigQueryOptions,
    write: WriteConfig,
    table_client: TableClient,
    *,
    requires_gcs: bool = False,
) -> Optional[TableReference]:
    check_write_config(options, write, requires_gcs=requires_gcs)
    table = write.table_ref(options.project)
    if not write.validate or table is None:
        return table
    verify_dataset_presence(table_client, table)
    if write.create_disposition == CreateDisposition.CREATE_NEVER:
        verify_table_presence(table_client, table)
    if write.write_disposition == WriteDisposition.WRITE_EMPTY:
        verify_table_not_exist_or_empty(table_client, table)
    return table
