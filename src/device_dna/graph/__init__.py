"""
Microsoft Graph access: session, request gateway and export jobs.
"""

from .session import GraphSession
from .gateway import RequestGateway, rows_from_table
from .export_jobs import (
    ExportJob,
    ExportJobPoller,
    ExportJobSpec,
    ExportJobStatus,
    parse_export_archive,
)

__all__ = [
    'GraphSession',
    'RequestGateway',
    'rows_from_table',
    'ExportJob',
    'ExportJobPoller',
    'ExportJobSpec',
    'ExportJobStatus',
    'parse_export_archive',
]
