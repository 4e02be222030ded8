"""
Intune / Entra ID collector (remote track).

Sections:
- deviceGroups            transitive Entra group membership of the device
- configurationProfiles   profiles targeted at the device, with deployment state
- compliancePolicies      compliance policy states for the device
- applications            assigned apps, matched against detected inventory
- proactiveRemediations   remediation script states

Targeting is computed from policy assignments against the device's own
groups ("All Devices" / "All Users" always apply). User-group assignments
cannot be evaluated from the device's membership and are not reported.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .._types import PHASE_INTUNE
from ..arbiter import Authority, Evidence, UpdateManagementArbiter, weight_for
from ..exceptions import JobFailedError, JobTimeoutError, ParseError
from ..graph.export_jobs import ExportJobPoller, ExportJobSpec
from ..graph.gateway import RequestGateway
from ..identity import DeviceIdentity
from ..issues import CollectionContext
from ..utils import first_present, odata_quote

logger = logging.getLogger(__name__)


GRAPH_TYPE_PREFIX = "#microsoft.graph."

ALL_DEVICES_TARGET = "#microsoft.graph.allDevicesAssignmentTarget"
ALL_USERS_TARGET = "#microsoft.graph.allLicensedUsersAssignmentTarget"
GROUP_TARGET = "#microsoft.graph.groupAssignmentTarget"
EXCLUSION_TARGET = "#microsoft.graph.exclusionGroupAssignmentTarget"

UPDATE_RING_TYPE = "windowsUpdateForBusinessConfiguration"

WINDOWS_APP_TYPES = frozenset({
    "win32LobApp",
    "windowsMobileMSI",
    "winGetApp",
    "officeSuiteApp",
    "windowsMicrosoftEdgeApp",
    "windowsStoreApp",
    "microsoftStoreForBusinessApp",
    "windowsUniversalAppX",
    "windowsWebApp",
    "webApp",
})

# Per-device configuration report status codes
POLICY_STATUS = {
    1: "Not applicable",
    2: "Succeeded",
    3: "Pending",
    4: "Error",
    5: "Conflict",
    6: "Not assigned",
}

CONFIGURATION_REPORT_URI = "deviceManagement/reports/getConfigurationPoliciesReportForDevice"
CONFIGURATION_REPORT_COLUMNS = (
    "PolicyId",
    "PolicyName",
    "PolicyBaseTypeName",
    "PolicyStatus",
    "UPN",
    "PspdpuLastModifiedTimeUtc",
)

APP_INVENTORY_REPORT = "AppInvByDevice"
APP_INVENTORY_COLUMNS = (
    "ApplicationName",
    "ApplicationPublisher",
    "ApplicationVersion",
    "Platform",
)

# Skipped when flattening profile properties into settings
_PROFILE_METADATA = frozenset({
    "id", "displayName", "description", "version", "createdDateTime",
    "lastModifiedDateTime", "roleScopeTagIds", "supportsScopeTags",
    "deviceManagementApplicabilityRuleOsEdition",
    "deviceManagementApplicabilityRuleOsVersion",
    "deviceManagementApplicabilityRuleDeviceMode", "assignments",
})


def graph_type(record: Dict[str, Any]) -> str:
    """'#microsoft.graph.win32LobApp' -> 'win32LobApp'."""
    return (record.get("@odata.type") or "").replace(GRAPH_TYPE_PREFIX, "")


# =============================================================================
# Assignment targeting
# =============================================================================


@dataclass
class Targeting:
    """How a policy's assignments relate to this device."""
    included_by: List[str] = field(default_factory=list)
    excluded_by: List[str] = field(default_factory=list)
    intent: Optional[str] = None

    @property
    def applies(self) -> bool:
        return bool(self.included_by) and not self.excluded_by

    @property
    def status(self) -> str:
        if self.excluded_by:
            return f"Excluded ({', '.join(self.excluded_by)})"
        return ", ".join(self.included_by)


def evaluate_assignments(assignments: Sequence[Dict[str, Any]], groups: Dict[str, str]) -> Targeting:
    """
    Evaluate assignments against the device's group membership.

    Args:
        assignments: Graph assignment objects (with a "target")
        groups: Device group id -> display name

    Returns:
        Targeting listing the including and excluding targets
    """
    targeting = Targeting()
    for assignment in assignments or []:
        target = assignment.get("target") or {}
        kind = target.get("@odata.type")
        group_id = target.get("groupId")
        label = None

        if kind == ALL_DEVICES_TARGET:
            label = "All Devices"
        elif kind == ALL_USERS_TARGET:
            label = "All Users"
        elif kind == GROUP_TARGET and group_id in groups:
            label = groups[group_id]
        elif kind == EXCLUSION_TARGET and group_id in groups:
            targeting.excluded_by.append(groups[group_id])
            continue

        if label is not None:
            targeting.included_by.append(label)
            if targeting.intent is None and assignment.get("intent"):
                targeting.intent = str(assignment["intent"]).capitalize()

    return targeting


def _group_map(groups: Optional[Sequence[Dict[str, Any]]]) -> Dict[str, str]:
    return {g["id"]: g.get("displayName") or g["id"] for g in groups or [] if g.get("id")}


# =============================================================================
# Device groups
# =============================================================================


async def collect_device_groups(
    context: CollectionContext,
    gateway: RequestGateway,
    identity: DeviceIdentity,
) -> List[Dict[str, Any]]:
    """
    Transitive group membership of the device object.

    Raises:
        IdentityPartialError: Entra object id not resolved
    """
    object_id = identity.require_object_id()
    records = await gateway.call(
        "GET",
        f"devices/{object_id}/transitiveMemberOf/microsoft.graph.group"
        "?$select=id,displayName,groupTypes,membershipRule",
    )

    async def resolve_name(group_id: str) -> str:
        group = await gateway.request("GET", f"groups/{group_id}?$select=displayName")
        return group.get("displayName") or group_id

    groups = []
    for record in records:
        group_id = record.get("id")
        if not group_id:
            continue
        if record.get("displayName"):
            name = context.names.put_if_absent(group_id, record["displayName"])
        else:
            name = await context.names.get_or_resolve(group_id, resolve_name)
        group_types = record.get("groupTypes") or []
        groups.append({
            "id": group_id,
            "displayName": name,
            "groupType": "Dynamic" if "DynamicMembership" in group_types else "Assigned",
            "membershipRule": record.get("membershipRule"),
        })

    logger.info(f"{identity.device_name}: member of {len(groups)} groups")
    return sorted(groups, key=lambda g: (g["displayName"].lower(), g["id"]))


# =============================================================================
# Configuration profiles
# =============================================================================


def _policy_status(row: Dict[str, Any]) -> str:
    if row.get("PolicyStatus_loc"):
        return str(row["PolicyStatus_loc"])
    try:
        return POLICY_STATUS.get(int(row.get("PolicyStatus")), str(row.get("PolicyStatus")))
    except (TypeError, ValueError):
        return str(row.get("PolicyStatus") or "Unknown")


def _profile_settings(profile: Dict[str, Any]) -> List[Dict[str, Any]]:
    settings = []
    for name, value in profile.items():
        if name.startswith("@") or name in _PROFILE_METADATA:
            continue
        if value is None or value == [] or value == {}:
            continue
        if isinstance(value, (dict, list)):
            continue
        settings.append({"name": name, "value": value})
    return sorted(settings, key=lambda s: s["name"].lower())


def update_ring_evidence(profile: Dict[str, Any]) -> Evidence:
    """WUFB evidence for an update ring profile targeted at the device."""
    return Evidence(
        category=Authority.WUFB,
        signal="IntuneUpdateRing",
        value=profile.get("displayName") or profile.get("id"),
        source=f"Intune: deviceConfigurations/{profile.get('id')}",
        weight=weight_for(Authority.WUFB),
        note=f"Quality deferral {profile.get('qualityUpdatesDeferralPeriodInDays', 0)} days",
    )


async def collect_configuration_profiles(
    context: CollectionContext,
    gateway: RequestGateway,
    identity: DeviceIdentity,
    arbiter: UpdateManagementArbiter,
    groups: Optional[Sequence[Dict[str, Any]]] = None,
) -> List[Dict[str, Any]]:
    """
    Configuration profiles that apply to the device.

    Raises:
        IdentityUnresolvedError: Device not enrolled in Intune
    """
    managed_id = identity.require_managed_device_id()
    group_names = _group_map(groups)

    status_rows = await gateway.report(
        CONFIGURATION_REPORT_URI,
        filter=f"(IntuneDeviceId eq {odata_quote(managed_id)})",
        select=CONFIGURATION_REPORT_COLUMNS,
        top=50,
    )
    status_by_id = {row.get("PolicyId"): row for row in status_rows if row.get("PolicyId")}

    legacy = await gateway.call("GET", "deviceManagement/deviceConfigurations?$expand=assignments")
    catalog = await gateway.call(
        "GET",
        "deviceManagement/configurationPolicies"
        "?$select=id,name,description,platforms,technologies&$expand=assignments",
    )

    profiles = []
    for profile in legacy + catalog:
        profile_id = profile.get("id")
        targeting = evaluate_assignments(profile.get("assignments"), group_names)
        status = status_by_id.pop(profile_id, None)
        if not targeting.applies and status is None:
            continue

        policy_type = graph_type(profile) or "settingsCatalog"
        profiles.append({
            "id": profile_id,
            "displayName": profile.get("displayName") or profile.get("name"),
            "description": profile.get("description"),
            "policyType": policy_type,
            "deploymentState": _policy_status(status) if status else "Not reported",
            "targetingStatus": targeting.status or None,
            "lastReported": status.get("PspdpuLastModifiedTimeUtc") if status else None,
            "settings": _profile_settings(profile) if "name" not in profile else [],
        })

        if policy_type == UPDATE_RING_TYPE and targeting.applies:
            arbiter.add(update_ring_evidence(profile))

    # Reported for the device but not visible in the policy lists (e.g. other policy families)
    for policy_id, row in status_by_id.items():
        profiles.append({
            "id": policy_id,
            "displayName": row.get("PolicyName"),
            "description": None,
            "policyType": row.get("PolicyBaseTypeName"),
            "deploymentState": _policy_status(row),
            "targetingStatus": None,
            "lastReported": row.get("PspdpuLastModifiedTimeUtc"),
            "settings": [],
        })

    logger.info(f"{identity.device_name}: {len(profiles)} configuration profiles")
    return sorted(profiles, key=lambda p: ((p["displayName"] or "").lower(), p["id"] or ""))


# =============================================================================
# Compliance
# =============================================================================


async def collect_compliance_policies(
    context: CollectionContext,
    gateway: RequestGateway,
    identity: DeviceIdentity,
    groups: Optional[Sequence[Dict[str, Any]]] = None,
) -> List[Dict[str, Any]]:
    """Compliance policy states reported by the device."""
    managed_id = identity.require_managed_device_id()
    group_names = _group_map(groups)

    states = await gateway.call(
        "GET", f"deviceManagement/managedDevices/{managed_id}/deviceCompliancePolicyStates"
    )
    policies = await gateway.call("GET", "deviceManagement/deviceCompliancePolicies?$expand=assignments")
    assignments = {p.get("id"): p.get("assignments") or [] for p in policies}

    results = []
    for state in states:
        targeting = evaluate_assignments(assignments.get(state.get("id"), []), group_names)
        results.append({
            "id": state.get("id"),
            "displayName": state.get("displayName"),
            "platform": state.get("platformType"),
            "complianceState": state.get("state") or "unknown",
            "settingCount": state.get("settingCount"),
            "targetingStatus": targeting.status or None,
        })

    non_compliant = [r for r in results if r["complianceState"] not in ("compliant", "notApplicable")]
    if non_compliant:
        context.ledger.info(
            PHASE_INTUNE,
            f"{len(non_compliant)} compliance policies not compliant: "
            + ", ".join(sorted(r["displayName"] or r["id"] for r in non_compliant)),
        )
    return sorted(results, key=lambda r: ((r["displayName"] or "").lower(), r["id"] or ""))


# =============================================================================
# Applications
# =============================================================================


async def collect_applications(
    context: CollectionContext,
    gateway: RequestGateway,
    poller: ExportJobPoller,
    identity: DeviceIdentity,
    groups: Optional[Sequence[Dict[str, Any]]] = None,
    max_wait_seconds: float = 90,
) -> List[Dict[str, Any]]:
    """
    Windows apps assigned to the device, with detected install state.

    Detected inventory comes from the AppInvByDevice export job. When that
    job times out or fails the assignments are still reported, with
    installedOnDevice left unknown (None).
    """
    managed_id = identity.require_managed_device_id()
    group_names = _group_map(groups)

    apps = await gateway.call(
        "GET", "deviceAppManagement/mobileApps?$filter=isAssigned eq true&$expand=assignments"
    )

    inventory: Optional[Dict[str, Dict[str, str]]] = None
    try:
        rows = await poller.run_export_job(
            ExportJobSpec(
                report_name=APP_INVENTORY_REPORT,
                filter=f"(DeviceId eq {odata_quote(managed_id)})",
                select=APP_INVENTORY_COLUMNS,
            ),
            max_wait_seconds=max_wait_seconds,
        )
        inventory = {(row.get("ApplicationName") or "").strip().lower(): row for row in rows}
    except JobTimeoutError as e:
        context.ledger.warning(PHASE_INTUNE, f"Application inventory unknown: {e}")
    except (JobFailedError, ParseError) as e:
        context.ledger.error(PHASE_INTUNE, f"Application inventory failed: {e}")

    results = []
    for app in apps:
        app_type = graph_type(app)
        if app_type not in WINDOWS_APP_TYPES:
            continue
        targeting = evaluate_assignments(app.get("assignments"), group_names)
        if not targeting.applies:
            continue

        detected = None
        if inventory is not None:
            detected = inventory.get((app.get("displayName") or "").strip().lower())

        results.append({
            "id": app.get("id"),
            "displayName": app.get("displayName"),
            "publisher": app.get("publisher"),
            "version": first_present(app, "displayVersion", "productVersion", "version"),
            "appType": app_type,
            "intent": targeting.intent,
            "targetingStatus": targeting.status,
            "installedOnDevice": None if inventory is None else detected is not None,
            "appVersion": detected.get("ApplicationVersion") if detected else None,
            "appInstallState": "Installed" if detected else None,
        })

    logger.info(
        f"{identity.device_name}: {len(results)} assigned apps, "
        f"{'unknown' if inventory is None else len(inventory)} detected"
    )
    return sorted(results, key=lambda a: ((a["displayName"] or "").lower(), a["id"] or ""))


# =============================================================================
# Proactive remediations
# =============================================================================


async def collect_proactive_remediations(
    context: CollectionContext,
    gateway: RequestGateway,
    identity: DeviceIdentity,
) -> List[Dict[str, Any]]:
    managed_id = identity.require_managed_device_id()
    states = await gateway.call(
        "GET", f"deviceManagement/managedDevices/{managed_id}/deviceHealthScriptStates"
    )
    results = [
        {
            "id": state.get("policyId") or state.get("id"),
            "displayName": state.get("policyName"),
            "detectionState": state.get("detectionState"),
            "remediationState": state.get("remediationState"),
            "targetingStatus": state.get("remediationState") or state.get("detectionState"),
            "lastUpdated": state.get("lastStateUpdateDateTime"),
        }
        for state in states
    ]
    return sorted(results, key=lambda r: ((r["displayName"] or "").lower(), r["id"] or ""))
