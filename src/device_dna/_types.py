"""
Shared types for device-dna.

Import common enums and helpers from this module rather than redefining
them per collector.

Usage:
    from device_dna._types import (
        IssueSeverity, CollectionCategory, JoinType,
        now_utc, parse_graph_datetime
    )
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def now_utc() -> datetime:
    """
    Get current UTC time with timezone info.

    Use this instead of datetime.utcnow() which is deprecated.
    """
    return datetime.now(timezone.utc)


def parse_graph_datetime(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp as returned by Microsoft Graph.

    Graph emits "Z"-suffixed values and sometimes seven fractional digits;
    fractions are trimmed to microseconds. Naive values are treated as UTC.

    Returns:
        Aware datetime, or None when the value is empty or unparseable
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    text = str(value).strip().replace("Z", "+00:00")
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = ""
        for i, ch in enumerate(tail):
            if ch.isdigit():
                digits += ch
            else:
                rest = tail[i:]
                break
        text = f"{head}.{digits[:6]}{rest}" if digits else f"{head}{rest}"

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def is_truthy(value: Any) -> bool:
    """Interpret registry-style values ("1", 1, "true", True) as booleans."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in ("1", "true", "yes", "on", "enabled")


# =============================================================================
# ENUMS
# =============================================================================


class IssueSeverity(str, Enum):
    """Severity of a collection issue, as shown in the report."""
    INFO = "Info"
    WARNING = "Warning"
    ERROR = "Error"


class CollectionCategory(str, Enum):
    """Collection steps that can be skipped from the command line."""
    DEVICE = "device"
    WINDOWS_UPDATE = "windows_update"
    SCCM = "sccm"
    GROUP_POLICY = "group_policy"
    INTUNE = "intune"


class JoinType(str, Enum):
    """Directory join state reported by dsregcmd."""
    AZURE_AD_JOINED = "Azure AD Joined"
    HYBRID_JOINED = "Hybrid Azure AD Joined"
    DOMAIN_JOINED = "Domain Joined"
    WORKGROUP = "Workgroup"
    UNKNOWN = "Unknown"


class ManagementType(str, Enum):
    """Overall management posture of the device."""
    CLOUD_ONLY = "Cloud-only"
    CO_MANAGED = "Co-managed"
    HYBRID = "Hybrid"
    ON_PREM_ONLY = "On-prem only"
    UNMANAGED = "Unmanaged"


# Phase names used in the issue ledger. The report filters on these.
PHASE_IDENTITY = "Identity"
PHASE_DEVICE = "Device"
PHASE_WINDOWS_UPDATE = "Windows Update"
PHASE_SCCM = "SCCM"
PHASE_GROUP_POLICY = "Group Policy"
PHASE_INTUNE = "Intune"
PHASE_ARBITRATION = "Update Management"
