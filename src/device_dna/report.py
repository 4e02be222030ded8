"""
Report boundary.

DeviceReport is the reconciled output of one run. Renderers turn it into
files; JSON is the only built-in format.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from ._types import now_utc
from .issues import IssueRecord
from .utils import safe_filename

logger = logging.getLogger(__name__)


REPORT_PREFIX = "DeviceDNA"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


@dataclass
class DeviceReport:
    """
    Everything collected for one device.

    Sections that were skipped or whose step failed are None; the reason
    is in collection_issues.
    """
    device_info: Dict[str, Any]
    device_groups: Optional[List[Dict[str, Any]]] = None
    configuration_profiles: Optional[List[Dict[str, Any]]] = None
    compliance_policies: Optional[List[Dict[str, Any]]] = None
    applications: Optional[List[Dict[str, Any]]] = None
    proactive_remediations: Optional[List[Dict[str, Any]]] = None
    windows_update: Optional[Dict[str, Any]] = None
    sccm: Optional[Dict[str, Any]] = None
    group_policy: Optional[Dict[str, Any]] = None
    collection_issues: List[IssueRecord] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def device_name(self) -> str:
        return self.device_info.get("deviceName") or "unknown"

    @property
    def collected_at(self) -> datetime:
        value = self.metadata.get("collectedAt")
        return value if isinstance(value, datetime) else now_utc()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceInfo": self.device_info,
            "deviceGroups": self.device_groups,
            "configurationProfiles": self.configuration_profiles,
            "compliancePolicies": self.compliance_policies,
            "applications": self.applications,
            "proactiveRemediations": self.proactive_remediations,
            "windowsUpdate": self.windows_update,
            "sccm": self.sccm,
            "groupPolicy": self.group_policy,
            "collectionIssues": [issue.to_dict() for issue in self.collection_issues],
            "metadata": self.metadata,
        }


class ReportRenderer(Protocol):
    """Anything that can write a DeviceReport to an output directory."""

    def render(self, report: DeviceReport, output_dir: Path) -> Path:
        ...


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)


class JsonReportWriter:
    """Writes DeviceDNA_<device>_<timestamp>.json."""

    def __init__(self, indent: int = 2):
        self.indent = indent

    def filename_for(self, report: DeviceReport) -> str:
        stamp = report.collected_at.strftime(TIMESTAMP_FORMAT)
        return f"{REPORT_PREFIX}_{safe_filename(report.device_name)}_{stamp}.json"

    def render(self, report: DeviceReport, output_dir: Path) -> Path:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        path = output_dir / self.filename_for(report)

        with open(path, 'w', encoding='utf-8') as f:
            json.dump(report.to_dict(), f, indent=self.indent, default=_json_default)

        logger.info(f"Report written to {path}")
        return path
