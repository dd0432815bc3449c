"""
Warehouse collaborators.

``base`` holds the client protocols and job specs the transfer logic is
written against; ``bigquery`` implements them with google-cloud-bigquery.
"""

from .base import (
    CopyJobSpec,
    DatasetInfo,
    ExtractJobSpec,
    Job,
    JobClient,
    LoadJobSpec,
    QueryDryRun,
    QueryJobSpec,
    Services,
    TableClient,
    TableInfo,
)

__all__ = [
    "CopyJobSpec",
    "DatasetInfo",
    "ExtractJobSpec",
    "Job",
    "JobClient",
    "LoadJobSpec",
    "QueryDryRun",
    "QueryJobSpec",
    "Services",
    "TableClient",
    "TableInfo",
]
