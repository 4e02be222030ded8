"""Device DNA - Windows device management posture collector"""

__version__ = "0.3.0"

from .arbiter import ArbitrationResult, Evidence, UpdateManagementArbiter, arbitrate
from .collector import DeviceCollector
from .config import CollectorConfig, load_config
from .identity import DeviceIdentity, IdentityResolver
from .issues import CollectionContext, IssueLedger, IssueRecord, NameCache
from .report import DeviceReport, JsonReportWriter, ReportRenderer

__all__ = [
    "__version__",

    # Orchestration
    "DeviceCollector",
    "CollectionContext",

    # Configuration
    "CollectorConfig",
    "load_config",

    # Identity
    "DeviceIdentity",
    "IdentityResolver",

    # Update management
    "ArbitrationResult",
    "Evidence",
    "UpdateManagementArbiter",
    "arbitrate",

    # Issues
    "IssueLedger",
    "IssueRecord",
    "NameCache",

    # Output
    "DeviceReport",
    "JsonReportWriter",
    "ReportRenderer",
]
