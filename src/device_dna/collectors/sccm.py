"""
ConfigMgr (SCCM) client collector.

Client presence is arbiter evidence: when the CcmExec service or the
root\\ccm namespace exists, SCCM owns update management regardless of
what other policy was found earlier in the run.
"""

import logging
from typing import Any, Dict, List

from .._types import PHASE_SCCM
from ..arbiter import Authority, Evidence, UpdateManagementArbiter, weight_for
from ..exceptions import ProbeError
from ..issues import CollectionContext
from ..probes.definitions import PROBE_SCCM_CLIENT, PROBE_SCCM_DETAILS
from ..probes.executor import ProbeRunner
from ..utils import as_list
from .base import run_json_probe

logger = logging.getLogger(__name__)


def client_evidence(client: Dict[str, Any]) -> List[Evidence]:
    """Evidence records for a detected ConfigMgr client."""
    weight = weight_for(Authority.SCCM)
    evidence = []
    if client.get("ServiceInstalled"):
        evidence.append(Evidence(
            category=Authority.SCCM,
            signal="CcmExecService",
            value=True,
            source="Service: CcmExec",
            weight=weight,
            note=f"State: {client.get('ServiceState') or 'Unknown'}",
        ))
    if client.get("NamespacePresent"):
        evidence.append(Evidence(
            category=Authority.SCCM,
            signal="CcmNamespace",
            value=True,
            source="WMI: root\\ccm",
            weight=weight,
            note=f"Site {client['SiteCode']}" if client.get("SiteCode") else "",
        ))
    return evidence


def _client_settings(details: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {"Category": entry.get("Category"), "Settings": entry.get("Settings") or {}}
        for entry in as_list(details.get("ClientSettings"))
    ]


async def collect_sccm(
    context: CollectionContext,
    runner: ProbeRunner,
    arbiter: UpdateManagementArbiter,
) -> Dict[str, Any]:
    """
    Collect the sccm report section.

    Raises:
        ProbeError: The client presence probe could not run
    """
    client = await run_json_probe(context, runner, PROBE_SCCM_CLIENT, PHASE_SCCM)
    evidence = client_evidence(client)

    section: Dict[str, Any] = {
        "clientInstalled": bool(evidence),
        "serviceState": client.get("ServiceState"),
        "clientVersion": client.get("ClientVersion"),
        "siteCode": client.get("SiteCode"),
        "managementPoint": client.get("ManagementPoint"),
        "applications": [],
        "baselines": [],
        "softwareUpdates": [],
        "clientSettings": [],
    }

    if not evidence:
        logger.info("ConfigMgr client not present")
        return section

    arbiter.extend(evidence)
    logger.info(f"ConfigMgr client {client.get('ClientVersion') or ''} detected (site {client.get('SiteCode')})")

    try:
        details = await run_json_probe(context, runner, PROBE_SCCM_DETAILS, PHASE_SCCM)
    except ProbeError as e:
        context.ledger.warning(PHASE_SCCM, f"ConfigMgr deployment details unavailable: {e}")
        return section

    section["applications"] = as_list(details.get("Applications"))
    section["baselines"] = as_list(details.get("Baselines"))
    section["softwareUpdates"] = as_list(details.get("SoftwareUpdates"))
    section["clientSettings"] = _client_settings(details)
    return section
