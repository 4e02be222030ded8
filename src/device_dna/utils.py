"""
Utility functions for device-dna.
"""

import logging
import re
from typing import Any, Dict, List, Optional


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging for a collection run.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    logging.basicConfig(
        level=getattr(logging, log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    # aiohttp access/client chatter is noise at INFO
    logging.getLogger("aiohttp").setLevel(max(logging.WARNING, getattr(logging, log_level)))


def odata_quote(value: str) -> str:
    """Quote a literal for an OData $filter (single quotes doubled)."""
    return "'" + str(value).replace("'", "''") + "'"


def as_list(value: Any) -> List[Any]:
    """
    Normalize ConvertTo-Json output to a list.

    PowerShell emits a bare object for single-element arrays and null for
    empty ones.
    """
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


_SAFE_FILENAME = re.compile(r'[^A-Za-z0-9._-]+')


def safe_filename(value: str) -> str:
    """Replace characters not allowed in report file names."""
    cleaned = _SAFE_FILENAME.sub('_', value or '').strip('_')
    return cleaned or 'unknown'


def first_present(record: Dict[str, Any], *keys: str) -> Optional[Any]:
    """Return the first non-empty value among keys."""
    for key in keys:
        value = record.get(key)
        if value not in (None, ''):
            return value
    return None
