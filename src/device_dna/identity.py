"""
Device identity resolution across Entra ID and Intune.

Maps a device display name to the identifiers each directory uses:

    object_id          Entra directory object id (devices/{id})
    hardware_id        Entra deviceId == Intune azureADDeviceId
    managed_device_id  Intune managedDevices/{id}

Resolution runs in four phases:

    1. Entra lookup by display name (duplicates resolved by tie-break)
    2. Intune lookup by hardware id, falling back to device name
    3. Entra lookup by hardware id to recover a missing object id
    4. Freeze and return the bundle

Stale and duplicate directory records are normal in real tenants, so
every multi-match is resolved by a deterministic, total ordering.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from ._types import PHASE_IDENTITY, parse_graph_datetime
from .exceptions import IdentityPartialError, IdentityUnresolvedError
from .graph.gateway import RequestGateway
from .issues import CollectionContext
from .utils import odata_quote

logger = logging.getLogger(__name__)


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

DIRECTORY_SELECT = "id,deviceId,displayName,isManaged,approximateLastSignInDateTime,trustType,operatingSystem"
MANAGED_SELECT = "id,deviceName,azureADDeviceId,lastSyncDateTime,managementAgent,complianceState,userPrincipalName"


@dataclass
class DeviceIdentity:
    """
    Cross-referenced identifiers for one device.

    Mutable only while the resolver works on it; freeze() makes any later
    attribute assignment raise.
    """
    device_name: str
    object_id: Optional[str] = None
    hardware_id: Optional[str] = None
    managed_device_id: Optional[str] = None
    trust_type: Optional[str] = None
    is_managed: Optional[bool] = None
    management_agent: Optional[str] = None
    provenance: Dict[str, str] = field(default_factory=dict)

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get("_frozen"):
            raise AttributeError(f"DeviceIdentity is frozen; cannot set {name}")
        super().__setattr__(name, value)

    def set(self, name: str, value: Optional[str], source: str) -> None:
        """Set an identifier once, recording where it came from."""
        if value and not getattr(self, name):
            setattr(self, name, value)
            self.provenance[name] = source

    def freeze(self) -> "DeviceIdentity":
        self.provenance = dict(self.provenance)
        object.__setattr__(self, "_frozen", True)
        return self

    @property
    def frozen(self) -> bool:
        return bool(self.__dict__.get("_frozen"))

    @property
    def is_complete(self) -> bool:
        return bool(self.object_id and self.hardware_id and self.managed_device_id)

    def require_managed_device_id(self) -> str:
        """
        Intune id for steps that cannot run without it.

        Raises:
            IdentityUnresolvedError: Device not found in Intune
        """
        if not self.managed_device_id:
            raise IdentityUnresolvedError(
                f"No Intune managed device found for {self.device_name}",
                device_name=self.device_name,
            )
        return self.managed_device_id

    def require_object_id(self) -> str:
        """
        Entra object id for optional steps (e.g. group membership).

        Raises:
            IdentityPartialError: Device not found in Entra ID
        """
        if not self.object_id:
            raise IdentityPartialError(
                f"No Entra ID device object found for {self.device_name}",
                device_name=self.device_name,
            )
        return self.object_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceName": self.device_name,
            "entraObjectId": self.object_id,
            "azureADDeviceId": self.hardware_id,
            "intuneDeviceId": self.managed_device_id,
            "trustType": self.trust_type,
            "isManaged": self.is_managed,
            "managementAgent": self.management_agent,
            "provenance": dict(self.provenance),
        }


# =============================================================================
# Tie-break rules
# =============================================================================


def _same_id(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a and b) and a.strip().lower() == b.strip().lower()


def _timestamp(record: Dict[str, Any], key: str) -> datetime:
    return parse_graph_datetime(record.get(key)) or _EPOCH


def select_directory_candidate(
    candidates: Sequence[Dict[str, Any]],
    hardware_id: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """
    Pick one Entra device record among same-name candidates.

    Order: deviceId equals the supplied hardware id, then isManaged, then
    the most recent approximateLastSignInDateTime, then object id ascending.
    The last key makes the ordering total, so the result never depends on
    the order the service returned records in.

    Returns:
        The chosen record, or None for an empty candidate list
    """
    if not candidates:
        return None

    def rank(record: Dict[str, Any]):
        return (
            0 if _same_id(record.get("deviceId"), hardware_id) else 1,
            0 if record.get("isManaged") is True else 1,
            -_timestamp(record, "approximateLastSignInDateTime").timestamp(),
            str(record.get("id") or ""),
        )

    return min(candidates, key=rank)


def select_managed_candidate(
    candidates: Sequence[Dict[str, Any]],
    hardware_id: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """Pick one Intune record: matching azureADDeviceId, latest sync, id."""
    if not candidates:
        return None

    def rank(record: Dict[str, Any]):
        return (
            0 if _same_id(record.get("azureADDeviceId"), hardware_id) else 1,
            -_timestamp(record, "lastSyncDateTime").timestamp(),
            str(record.get("id") or ""),
        )

    return min(candidates, key=rank)


# =============================================================================
# Resolver
# =============================================================================


class IdentityResolver:
    """Runs the four-phase identity lookup for a single device."""

    def __init__(self, gateway: RequestGateway, context: CollectionContext):
        self.gateway = gateway
        self.context = context

    async def resolve(self, device_name: str, hardware_id: Optional[str] = None) -> DeviceIdentity:
        """
        Resolve identifiers for a device.

        Args:
            device_name: Display name (hostname)
            hardware_id: Entra deviceId from local registration, if known

        Returns:
            Frozen DeviceIdentity with whatever could be resolved
        """
        identity = DeviceIdentity(device_name=device_name)
        identity.set("hardware_id", hardware_id, "local registration")

        await self._phase_directory_by_name(identity)
        if not identity.is_complete:
            await self._phase_managed_device(identity)
        if not identity.object_id and identity.hardware_id:
            await self._phase_directory_by_hardware_id(identity)

        return self._summarize(identity)

    async def _phase_directory_by_name(self, identity: DeviceIdentity) -> None:
        candidates = await self.gateway.call(
            "GET",
            f"devices?$filter=displayName eq {odata_quote(identity.device_name)}&$select={DIRECTORY_SELECT}",
        )

        if not candidates:
            logger.info(f"No Entra ID device named {identity.device_name}")
            return

        chosen = select_directory_candidate(candidates, identity.hardware_id)
        if len(candidates) > 1:
            self.context.ledger.info(
                PHASE_IDENTITY,
                f"{len(candidates)} Entra ID devices named {identity.device_name}; "
                f"selected {chosen.get('id')}",
            )

        source = "entra display name" if len(candidates) == 1 else "entra display name (tie-break)"
        self._apply_directory_record(identity, chosen, source)

    async def _phase_managed_device(self, identity: DeviceIdentity) -> None:
        candidates: List[Dict[str, Any]] = []
        source = ""

        if identity.hardware_id:
            candidates = await self.gateway.call(
                "GET",
                f"deviceManagement/managedDevices?$filter=azureADDeviceId eq "
                f"{odata_quote(identity.hardware_id)}&$select={MANAGED_SELECT}",
            )
            source = "intune azureADDeviceId"

        if not candidates:
            candidates = await self.gateway.call(
                "GET",
                f"deviceManagement/managedDevices?$filter=deviceName eq "
                f"{odata_quote(identity.device_name)}&$select={MANAGED_SELECT}",
            )
            source = "intune device name"

        if not candidates:
            logger.info(f"No Intune managed device for {identity.device_name}")
            return

        chosen = select_managed_candidate(candidates, identity.hardware_id)
        if len(candidates) > 1:
            self.context.ledger.info(
                PHASE_IDENTITY,
                f"{len(candidates)} Intune devices matched {identity.device_name}; "
                f"selected {chosen.get('id')}",
            )

        identity.set("managed_device_id", chosen.get("id"), source)
        identity.set("hardware_id", chosen.get("azureADDeviceId"), source)
        if identity.management_agent is None:
            identity.management_agent = chosen.get("managementAgent")

    async def _phase_directory_by_hardware_id(self, identity: DeviceIdentity) -> None:
        candidates = await self.gateway.call(
            "GET",
            f"devices?$filter=deviceId eq {odata_quote(identity.hardware_id)}&$select={DIRECTORY_SELECT}",
        )
        chosen = select_directory_candidate(candidates, identity.hardware_id)
        if chosen is None:
            return
        self._apply_directory_record(identity, chosen, "entra deviceId")

    @staticmethod
    def _apply_directory_record(identity: DeviceIdentity, record: Dict[str, Any], source: str) -> None:
        identity.set("object_id", record.get("id"), source)
        identity.set("hardware_id", record.get("deviceId"), source)
        if identity.trust_type is None:
            identity.trust_type = record.get("trustType")
        if identity.is_managed is None and record.get("isManaged") is not None:
            identity.is_managed = bool(record.get("isManaged"))

    def _summarize(self, identity: DeviceIdentity) -> DeviceIdentity:
        if not identity.object_id:
            self.context.ledger.warning(
                PHASE_IDENTITY,
                f"Entra ID object id not resolved for {identity.device_name}; "
                "group membership will be skipped",
            )
        if not identity.managed_device_id:
            self.context.ledger.warning(
                PHASE_IDENTITY,
                f"Intune managed device not found for {identity.device_name}",
            )

        logger.info(
            f"Identity for {identity.device_name}: object={identity.object_id} "
            f"hardware={identity.hardware_id} intune={identity.managed_device_id}"
        )
        return identity.freeze()
