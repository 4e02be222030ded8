"""
Typed Windows Update policy documents.

Each registry location the collector reads has its own pydantic model with
the settings we understand as typed fields. Anything else found under the
key lands in `unrecognized` so nothing read from the device is dropped.

Usage:
    doc = parse_policy("windows_update_au", {"UseWUServer": 1, "AUOptions": 4})
    rows = doc.settings()
    evidence = update_evidence([doc])
"""

import logging
from enum import Enum
from typing import Annotated, Any, Callable, ClassVar, Dict, Iterable, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ._types import is_truthy
from .arbiter import Evidence, classify_signal, weight_for

logger = logging.getLogger(__name__)


class PolicyKind(str, Enum):
    """Registry locations holding update policy."""
    WINDOWS_UPDATE = "windows_update"
    WINDOWS_UPDATE_AU = "windows_update_au"
    MDM_UPDATE = "mdm_update"
    DELIVERY_OPTIMIZATION = "delivery_optimization"


REGISTRY_PATHS = {
    PolicyKind.WINDOWS_UPDATE: r"HKLM\SOFTWARE\Policies\Microsoft\Windows\WindowsUpdate",
    PolicyKind.WINDOWS_UPDATE_AU: r"HKLM\SOFTWARE\Policies\Microsoft\Windows\WindowsUpdate\AU",
    PolicyKind.MDM_UPDATE: r"HKLM\SOFTWARE\Microsoft\PolicyManager\current\device\Update",
    PolicyKind.DELIVERY_OPTIMIZATION: r"HKLM\SOFTWARE\Policies\Microsoft\Windows\DeliveryOptimization",
}


# =============================================================================
# Value decoders
# =============================================================================

Decoder = Callable[[Any], Optional[str]]

AU_OPTIONS = {
    1: "Never check for updates",
    2: "Notify before download",
    3: "Auto download and notify for install",
    4: "Auto download and schedule install",
    5: "Allow local admin to choose setting",
    7: "Auto download, notify to install, notify to restart",
}

DO_DOWNLOAD_MODES = {
    0: "HTTP only, no peering",
    1: "LAN peering (same NAT)",
    2: "Group peering",
    3: "Internet peering",
    99: "Simple download, no peering",
    100: "Bypass mode (BITS)",
}

BRANCH_READINESS_LEVELS = {
    2: "Windows Insider (Fast)",
    4: "Windows Insider (Slow)",
    8: "Release Preview",
    16: "Semi-Annual Channel (Targeted)",
    32: "General Availability Channel",
}

INSTALL_DAYS = {
    0: "Every day",
    1: "Sunday",
    2: "Monday",
    3: "Tuesday",
    4: "Wednesday",
    5: "Thursday",
    6: "Friday",
    7: "Saturday",
}


def lookup_decoder(table: Dict[int, str]) -> Decoder:
    """Decoder mapping integer codes through a table."""
    def decode(value: Any) -> Optional[str]:
        try:
            code = int(value)
        except (TypeError, ValueError):
            return None
        return table.get(code, f"Unknown ({code})")
    return decode


def decode_flag(value: Any) -> str:
    return "Enabled" if is_truthy(value) else "Disabled"


def decode_days(value: Any) -> Optional[str]:
    try:
        return f"{int(value)} days"
    except (TypeError, ValueError):
        return None


def decode_hour(value: Any) -> Optional[str]:
    try:
        return f"{int(value):02d}:00"
    except (TypeError, ValueError):
        return None


decode_au_options = lookup_decoder(AU_OPTIONS)
decode_download_mode = lookup_decoder(DO_DOWNLOAD_MODES)
decode_branch_readiness = lookup_decoder(BRANCH_READINESS_LEVELS)
decode_install_day = lookup_decoder(INSTALL_DAYS)


# =============================================================================
# Documents
# =============================================================================


class RegistryPolicy(BaseModel):
    """Common behaviour of every policy document."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, coerce_numbers_to_str=True)

    kind: str
    unrecognized: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    decoders: ClassVar[Dict[str, Decoder]] = {}
    metadata_suffixes: ClassVar[Tuple[str, ...]] = ()
    # Registry names reported under a different evidence signal
    signal_aliases: ClassVar[Dict[str, str]] = {}

    @property
    def registry_path(self) -> str:
        return REGISTRY_PATHS[PolicyKind(self.kind)]

    @classmethod
    def known_settings(cls) -> Dict[str, str]:
        """Registry value name -> model field name."""
        return {
            (info.alias or name): name
            for name, info in cls.model_fields.items()
            if name not in ("kind", "unrecognized", "metadata")
        }

    def known_values(self) -> Dict[str, Any]:
        """Registry value name -> value for every known setting that is set."""
        values = {}
        for registry_name, field_name in self.known_settings().items():
            value = getattr(self, field_name)
            if value is not None:
                values[registry_name] = value
        return values

    def decode(self, registry_name: str, value: Any) -> str:
        decoder = self.decoders.get(registry_name)
        decoded = decoder(value) if decoder else None
        return decoded if decoded is not None else str(value)

    def settings(self) -> List[Dict[str, Any]]:
        """Report rows (Hive, Setting, Value, Decoded, Known, Description)."""
        fields = type(self).model_fields
        known = self.known_settings()
        rows = []
        for name, value in self.known_values().items():
            rows.append({
                "Hive": self.registry_path,
                "Setting": name,
                "Value": value,
                "Decoded": self.decode(name, value),
                "Known": True,
                "Description": fields[known[name]].description or "",
            })
        for name, value in self.unrecognized.items():
            rows.append({
                "Hive": self.registry_path,
                "Setting": name,
                "Value": value,
                "Decoded": str(value),
                "Known": False,
                "Description": "",
            })
        return sorted(rows, key=lambda row: row["Setting"].lower())

    def setting_map(self) -> Dict[str, Dict[str, Any]]:
        """Known settings as {name: {"Value", "Decoded"}}."""
        return {
            name: {"Value": value, "Decoded": self.decode(name, value)}
            for name, value in self.known_values().items()
        }

    def update_evidence(self) -> List[Evidence]:
        """Evidence records for the update-management arbiter."""
        evidence = []
        for name, value in self.known_values().items():
            signal = self.signal_aliases.get(name, name)
            category = classify_signal(signal, value)
            if category is None:
                continue
            evidence.append(Evidence(
                category=category,
                signal=signal,
                value=value,
                source=f"{self.registry_path}\\{name}",
                weight=weight_for(category),
                note=self.decode(name, value) if name in self.decoders else "",
            ))
        return evidence


class WindowsUpdatePolicy(RegistryPolicy):
    """Group Policy: ...\\Policies\\Microsoft\\Windows\\WindowsUpdate"""

    kind: Literal["windows_update"] = "windows_update"

    wu_server: Optional[str] = Field(None, alias="WUServer", description="Intranet update service URL")
    wu_status_server: Optional[str] = Field(None, alias="WUStatusServer", description="Intranet statistics server URL")
    update_service_url_alternate: Optional[str] = Field(
        None, alias="UpdateServiceUrlAlternate", description="Alternate download server URL"
    )
    target_group: Optional[str] = Field(None, alias="TargetGroup", description="WSUS client-side target group")
    target_group_enabled: Optional[int] = Field(
        None, alias="TargetGroupEnabled", description="Client-side targeting enabled"
    )
    defer_quality_updates: Optional[int] = Field(
        None, alias="DeferQualityUpdates", description="Quality update deferral enabled"
    )
    defer_quality_updates_period_in_days: Optional[int] = Field(
        None, alias="DeferQualityUpdatesPeriodInDays", description="Quality update deferral period"
    )
    defer_feature_updates: Optional[int] = Field(
        None, alias="DeferFeatureUpdates", description="Feature update deferral enabled"
    )
    defer_feature_updates_period_in_days: Optional[int] = Field(
        None, alias="DeferFeatureUpdatesPeriodInDays", description="Feature update deferral period"
    )
    pause_quality_updates_start_time: Optional[str] = Field(
        None, alias="PauseQualityUpdatesStartTime", description="Quality updates paused since"
    )
    pause_feature_updates_start_time: Optional[str] = Field(
        None, alias="PauseFeatureUpdatesStartTime", description="Feature updates paused since"
    )
    branch_readiness_level: Optional[int] = Field(
        None, alias="BranchReadinessLevel", description="Servicing channel"
    )
    target_release_version: Optional[int] = Field(
        None, alias="TargetReleaseVersion", description="Pin to a feature update version"
    )
    target_release_version_info: Optional[str] = Field(
        None, alias="TargetReleaseVersionInfo", description="Target feature update version"
    )
    product_version: Optional[str] = Field(None, alias="ProductVersion", description="Target product")
    disable_dual_scan: Optional[int] = Field(
        None, alias="DisableDualScan", description="Do not allow deferral policies to scan Windows Update"
    )
    set_disable_ux_wu_access: Optional[int] = Field(
        None, alias="SetDisableUXWUAccess", description="Remove access to Windows Update features"
    )
    exclude_wu_drivers: Optional[int] = Field(
        None, alias="ExcludeWUDriversInQualityUpdate", description="Exclude drivers from quality updates"
    )
    do_not_connect_internet: Optional[int] = Field(
        None,
        alias="DoNotConnectToWindowsUpdateInternetLocations",
        description="Block Windows Update internet locations",
    )
    policy_driven_source_quality: Optional[int] = Field(
        None,
        alias="SetPolicyDrivenUpdateSourceForQualityUpdates",
        description="Quality update source (0 = Windows Update, 1 = WSUS)",
    )
    policy_driven_source_feature: Optional[int] = Field(
        None,
        alias="SetPolicyDrivenUpdateSourceForFeatureUpdates",
        description="Feature update source (0 = Windows Update, 1 = WSUS)",
    )

    decoders: ClassVar[Dict[str, Decoder]] = {
        "BranchReadinessLevel": decode_branch_readiness,
        "DeferQualityUpdates": decode_flag,
        "DeferFeatureUpdates": decode_flag,
        "DeferQualityUpdatesPeriodInDays": decode_days,
        "DeferFeatureUpdatesPeriodInDays": decode_days,
        "TargetGroupEnabled": decode_flag,
        "TargetReleaseVersion": decode_flag,
        "DisableDualScan": decode_flag,
        "SetDisableUXWUAccess": decode_flag,
        "ExcludeWUDriversInQualityUpdate": decode_flag,
        "DoNotConnectToWindowsUpdateInternetLocations": decode_flag,
    }


class WindowsUpdateAUPolicy(RegistryPolicy):
    """Group Policy: ...\\WindowsUpdate\\AU"""

    kind: Literal["windows_update_au"] = "windows_update_au"

    use_wu_server: Optional[int] = Field(None, alias="UseWUServer", description="Use the intranet update server")
    no_auto_update: Optional[int] = Field(None, alias="NoAutoUpdate", description="Automatic updates disabled")
    au_options: Optional[int] = Field(None, alias="AUOptions", description="Automatic update behaviour")
    scheduled_install_day: Optional[int] = Field(
        None, alias="ScheduledInstallDay", description="Scheduled install day"
    )
    scheduled_install_time: Optional[int] = Field(
        None, alias="ScheduledInstallTime", description="Scheduled install hour"
    )
    no_auto_reboot: Optional[int] = Field(
        None, alias="NoAutoRebootWithLoggedOnUsers", description="No auto-restart with logged on users"
    )
    detection_frequency_enabled: Optional[int] = Field(
        None, alias="DetectionFrequencyEnabled", description="Custom detection frequency enabled"
    )
    detection_frequency: Optional[int] = Field(
        None, alias="DetectionFrequency", description="Detection frequency in hours"
    )
    auto_install_minor_updates: Optional[int] = Field(
        None, alias="AutoInstallMinorUpdates", description="Install minor updates silently"
    )

    decoders: ClassVar[Dict[str, Decoder]] = {
        "UseWUServer": decode_flag,
        "NoAutoUpdate": decode_flag,
        "AUOptions": decode_au_options,
        "ScheduledInstallDay": decode_install_day,
        "ScheduledInstallTime": decode_hour,
        "NoAutoRebootWithLoggedOnUsers": decode_flag,
        "DetectionFrequencyEnabled": decode_flag,
        "AutoInstallMinorUpdates": decode_flag,
    }


class MDMUpdatePolicy(RegistryPolicy):
    """Policy CSP (Intune / MDM): PolicyManager\\current\\device\\Update"""

    kind: Literal["mdm_update"] = "mdm_update"

    defer_quality_updates_period_in_days: Optional[int] = Field(
        None, alias="DeferQualityUpdatesPeriodInDays", description="Quality update deferral period"
    )
    defer_feature_updates_period_in_days: Optional[int] = Field(
        None, alias="DeferFeatureUpdatesPeriodInDays", description="Feature update deferral period"
    )
    pause_quality_updates: Optional[int] = Field(
        None, alias="PauseQualityUpdates", description="Quality updates paused"
    )
    pause_feature_updates: Optional[int] = Field(
        None, alias="PauseFeatureUpdates", description="Feature updates paused"
    )
    pause_quality_updates_start_time: Optional[str] = Field(
        None, alias="PauseQualityUpdatesStartTime", description="Quality updates paused since"
    )
    pause_feature_updates_start_time: Optional[str] = Field(
        None, alias="PauseFeatureUpdatesStartTime", description="Feature updates paused since"
    )
    branch_readiness_level: Optional[int] = Field(
        None, alias="BranchReadinessLevel", description="Servicing channel"
    )
    target_release_version: Optional[str] = Field(
        None, alias="TargetReleaseVersion", description="Target feature update version"
    )
    product_version: Optional[str] = Field(None, alias="ProductVersion", description="Target product")
    allow_auto_update: Optional[int] = Field(
        None, alias="AllowAutoUpdate", description="Automatic update behaviour"
    )
    active_hours_start: Optional[int] = Field(None, alias="ActiveHoursStart", description="Active hours start")
    active_hours_end: Optional[int] = Field(None, alias="ActiveHoursEnd", description="Active hours end")
    update_service_url: Optional[str] = Field(
        None, alias="UpdateServiceUrl", description="Update service URL"
    )
    update_service_url_alternate: Optional[str] = Field(
        None, alias="UpdateServiceUrlAlternate", description="Alternate download server URL"
    )
    quality_update_deadline: Optional[int] = Field(
        None, alias="ConfigureDeadlineForQualityUpdates", description="Quality update deadline (days)"
    )
    feature_update_deadline: Optional[int] = Field(
        None, alias="ConfigureDeadlineForFeatureUpdates", description="Feature update deadline (days)"
    )
    deadline_grace_period: Optional[int] = Field(
        None, alias="ConfigureDeadlineGracePeriod", description="Deadline grace period (days)"
    )

    decoders: ClassVar[Dict[str, Decoder]] = {
        "BranchReadinessLevel": decode_branch_readiness,
        "PauseQualityUpdates": decode_flag,
        "PauseFeatureUpdates": decode_flag,
        "DeferQualityUpdatesPeriodInDays": decode_days,
        "DeferFeatureUpdatesPeriodInDays": decode_days,
        "ActiveHoursStart": decode_hour,
        "ActiveHoursEnd": decode_hour,
        "ConfigureDeadlineForQualityUpdates": decode_days,
        "ConfigureDeadlineForFeatureUpdates": decode_days,
        "ConfigureDeadlineGracePeriod": decode_days,
    }
    # PolicyManager writes <Setting>_ProviderSet / _WinningProvider beside each value
    metadata_suffixes: ClassVar[Tuple[str, ...]] = ("_ProviderSet", "_WinningProvider", "_LastWrite")
    signal_aliases: ClassVar[Dict[str, str]] = {"UpdateServiceUrl": "WUServer"}

    @property
    def winning_providers(self) -> Dict[str, str]:
        """Setting -> enrollment id of the provider that set it."""
        suffix = "_WinningProvider"
        return {k[: -len(suffix)]: str(v) for k, v in self.metadata.items() if k.endswith(suffix)}


class DeliveryOptimizationPolicy(RegistryPolicy):
    """Group Policy: ...\\Policies\\Microsoft\\Windows\\DeliveryOptimization"""

    kind: Literal["delivery_optimization"] = "delivery_optimization"

    download_mode: Optional[int] = Field(None, alias="DODownloadMode", description="Download mode")
    group_id: Optional[str] = Field(None, alias="DOGroupId", description="Peering group id")
    max_cache_size: Optional[int] = Field(None, alias="DOMaxCacheSize", description="Max cache size (%)")
    max_cache_age: Optional[int] = Field(None, alias="DOMaxCacheAge", description="Max cache age (seconds)")
    min_ram_to_peer: Optional[int] = Field(
        None, alias="DOMinRAMAllowedToPeer", description="Minimum RAM to peer (GB)"
    )
    allow_vpn_peer_caching: Optional[int] = Field(
        None, alias="DOAllowVPNPeerCaching", description="Allow peer caching over VPN"
    )
    max_foreground_bandwidth: Optional[int] = Field(
        None, alias="DOMaxForegroundDownloadBandwidth", description="Max foreground bandwidth (%)"
    )
    max_background_bandwidth: Optional[int] = Field(
        None, alias="DOMaxBackgroundDownloadBandwidth", description="Max background bandwidth (%)"
    )
    cache_host: Optional[str] = Field(None, alias="DOCacheHost", description="Connected Cache servers")

    decoders: ClassVar[Dict[str, Decoder]] = {
        "DODownloadMode": decode_download_mode,
        "DOAllowVPNPeerCaching": decode_flag,
    }


PolicyDocument = Annotated[
    Union[WindowsUpdatePolicy, WindowsUpdateAUPolicy, MDMUpdatePolicy, DeliveryOptimizationPolicy],
    Field(discriminator="kind"),
]

POLICY_MODELS = {
    PolicyKind.WINDOWS_UPDATE: WindowsUpdatePolicy,
    PolicyKind.WINDOWS_UPDATE_AU: WindowsUpdateAUPolicy,
    PolicyKind.MDM_UPDATE: MDMUpdatePolicy,
    PolicyKind.DELIVERY_OPTIMIZATION: DeliveryOptimizationPolicy,
}

_DOCUMENT_ADAPTER = TypeAdapter(PolicyDocument)

# Added by Get-ItemProperty, not registry values
POWERSHELL_PROPERTIES = frozenset({"PSPath", "PSParentPath", "PSChildName", "PSDrive", "PSProvider"})


def parse_policy(kind: Union[PolicyKind, str], values: Optional[Dict[str, Any]]) -> RegistryPolicy:
    """
    Build a typed policy document from raw registry values.

    Unknown value names, and known names whose value does not fit the
    expected type, are kept in `unrecognized`.

    Args:
        kind: Registry location
        values: Value name -> data as read from the registry

    Returns:
        The matching PolicyDocument variant
    """
    kind = PolicyKind(kind)
    model = POLICY_MODELS[kind]
    known = model.known_settings()

    data: Dict[str, Any] = {"kind": kind.value}
    unrecognized: Dict[str, Any] = {}
    metadata: Dict[str, Any] = {}

    for name, value in (values or {}).items():
        if name in POWERSHELL_PROPERTIES:
            continue
        if model.metadata_suffixes and name.endswith(model.metadata_suffixes):
            metadata[name] = value
        elif name in known:
            data[name] = value
        else:
            unrecognized[name] = value

    data["unrecognized"] = unrecognized
    data["metadata"] = metadata

    try:
        return _DOCUMENT_ADAPTER.validate_python(data)
    except ValidationError as e:
        bad = {part for err in e.errors() for part in err["loc"] if part in known}
        if not bad:
            raise
        for name in bad:
            logger.debug(f"{REGISTRY_PATHS[kind]}\\{name}: unexpected value {data[name]!r}")
            unrecognized[name] = data.pop(name)
        return _DOCUMENT_ADAPTER.validate_python(data)


def update_evidence(documents: Iterable[RegistryPolicy]) -> List[Evidence]:
    """Collect arbiter evidence from every document."""
    evidence: List[Evidence] = []
    for document in documents:
        evidence.extend(document.update_evidence())
    return evidence
