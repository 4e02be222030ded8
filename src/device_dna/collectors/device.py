"""
Device registration and inventory.

Registration (dsregcmd) supplies the Entra deviceId used to anchor
identity resolution, and the join type used to classify management.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .._types import PHASE_DEVICE, JoinType, ManagementType, is_truthy
from ..issues import CollectionContext
from ..probes.definitions import PROBE_DEVICE_INVENTORY, PROBE_DEVICE_REGISTRATION
from ..probes.executor import ProbeRunner
from .base import run_json_probe

logger = logging.getLogger(__name__)


_EMPTY_GUID = "00000000-0000-0000-0000-000000000000"


def determine_join_type(azure_ad_joined: bool, domain_joined: bool) -> JoinType:
    if azure_ad_joined and domain_joined:
        return JoinType.HYBRID_JOINED
    if azure_ad_joined:
        return JoinType.AZURE_AD_JOINED
    if domain_joined:
        return JoinType.DOMAIN_JOINED
    return JoinType.WORKGROUP


def determine_management_type(
    join_type: JoinType,
    intune_managed: bool,
    sccm_present: bool,
) -> ManagementType:
    """
    Classify overall management.

    SCCM + Intune is co-managed; Intune alone is cloud-only, or hybrid
    when the device is also domain joined; SCCM alone, or a plain domain
    join, is on-prem only.
    """
    if intune_managed and sccm_present:
        return ManagementType.CO_MANAGED
    if intune_managed:
        if join_type == JoinType.HYBRID_JOINED:
            return ManagementType.HYBRID
        return ManagementType.CLOUD_ONLY
    if sccm_present or join_type in (JoinType.DOMAIN_JOINED, JoinType.HYBRID_JOINED):
        return ManagementType.ON_PREM_ONLY
    return ManagementType.UNMANAGED


@dataclass
class DeviceRegistration:
    """Local view of directory registration."""
    computer_name: str
    domain: Optional[str] = None
    azure_ad_joined: bool = False
    domain_joined: bool = False
    device_id: Optional[str] = None
    tenant_id: Optional[str] = None
    tenant_name: Optional[str] = None

    @property
    def join_type(self) -> JoinType:
        return determine_join_type(self.azure_ad_joined, self.domain_joined)

    @property
    def is_registered(self) -> bool:
        return bool(self.device_id)

    @classmethod
    def from_probe(cls, output: Dict[str, Any]) -> "DeviceRegistration":
        device_id = (output.get("DeviceId") or "").strip() or None
        if device_id == _EMPTY_GUID:
            device_id = None
        return cls(
            computer_name=output.get("ComputerName") or "",
            domain=output.get("Domain"),
            azure_ad_joined=is_truthy(output.get("AzureAdJoined")),
            domain_joined=is_truthy(output.get("DomainJoined")),
            device_id=device_id,
            tenant_id=output.get("TenantId") or None,
            tenant_name=output.get("TenantName") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "computerName": self.computer_name,
            "domain": self.domain,
            "azureAdJoined": self.azure_ad_joined,
            "domainJoined": self.domain_joined,
            "azureADDeviceId": self.device_id,
            "tenantId": self.tenant_id,
            "tenantName": self.tenant_name,
            "joinType": self.join_type.value,
        }


async def collect_registration(context: CollectionContext, runner: ProbeRunner) -> DeviceRegistration:
    """
    Read registration state from dsregcmd.

    Raises:
        ProbeError: The probe could not run
    """
    output = await run_json_probe(context, runner, PROBE_DEVICE_REGISTRATION, PHASE_DEVICE)
    registration = DeviceRegistration.from_probe(output)
    logger.info(
        f"{registration.computer_name}: {registration.join_type.value}, "
        f"deviceId={registration.device_id or 'none'}"
    )
    return registration


async def collect_inventory(context: CollectionContext, runner: ProbeRunner) -> Dict[str, Any]:
    """OS and hardware facts for deviceInfo."""
    output = await run_json_probe(context, runner, PROBE_DEVICE_INVENTORY, PHASE_DEVICE)
    return {
        "operatingSystem": output.get("OperatingSystem"),
        "osVersion": output.get("OSVersion"),
        "osBuild": output.get("OSBuild"),
        "displayVersion": output.get("DisplayVersion"),
        "ubr": output.get("UBR"),
        "manufacturer": output.get("Manufacturer"),
        "model": output.get("Model"),
        "serialNumber": output.get("SerialNumber"),
        "totalMemoryGB": output.get("TotalMemoryGB"),
        "lastBootTime": output.get("LastBootTime"),
    }
