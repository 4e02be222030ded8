"""
Windows Update collector.

Reads update policy from the registry into typed documents, feeds the
resulting evidence to the arbiter, and adds service, reboot, scan and
update history state from the Windows Update agent.
"""

import logging
from typing import Any, Dict, List

from .._types import PHASE_WINDOWS_UPDATE
from ..arbiter import UpdateManagementArbiter
from ..exceptions import ProbeError
from ..issues import CollectionContext
from ..policy import PolicyKind, RegistryPolicy, parse_policy, update_evidence
from ..probes.definitions import PROBE_WU_POLICY, PROBE_WU_STATUS
from ..probes.executor import ProbeRunner
from ..utils import as_list
from .base import run_json_probe

logger = logging.getLogger(__name__)


def parse_policy_documents(output: Dict[str, Any]) -> List[RegistryPolicy]:
    """One document per registry location present in the probe output."""
    documents = []
    for kind in PolicyKind:
        values = output.get(kind.value)
        if isinstance(values, dict):
            documents.append(parse_policy(kind, values))
    return documents


def registry_policy_rows(documents: List[RegistryPolicy]) -> Dict[str, Dict[str, Any]]:
    """registryPolicy section keyed by "<hive>\\<setting>"."""
    rows = {}
    for document in documents:
        if document.kind == PolicyKind.DELIVERY_OPTIMIZATION.value:
            continue
        for row in document.settings():
            rows[f"{row['Hive']}\\{row['Setting']}"] = row
    return rows


def _pending_updates(status: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {
            "Title": update.get("Title"),
            "KBArticleIDs": as_list(update.get("KBArticleIDs")),
            "MsrcSeverity": update.get("MsrcSeverity"),
            "IsDownloaded": bool(update.get("IsDownloaded")),
        }
        for update in as_list(status.get("PendingUpdates"))
    ]


async def collect_windows_update(
    context: CollectionContext,
    runner: ProbeRunner,
    arbiter: UpdateManagementArbiter,
) -> Dict[str, Any]:
    """
    Collect the windowsUpdate report section.

    The summary's updateManagement fields hold a preliminary arbitration;
    the orchestrator overwrites them once all evidence is in.

    Raises:
        ProbeError: The policy probe could not run
    """
    policy_output = await run_json_probe(context, runner, PROBE_WU_POLICY, PHASE_WINDOWS_UPDATE)
    documents = parse_policy_documents(policy_output)

    evidence = update_evidence(documents)
    arbiter.extend(evidence)
    preliminary = arbiter.determine()
    logger.debug(f"Windows Update evidence: {len(evidence)} records, preliminary {preliminary.effective_source}")

    for document in documents:
        if document.unrecognized:
            logger.debug(f"{document.registry_path}: unrecognized values {sorted(document.unrecognized)}")

    delivery = next(
        (d for d in documents if d.kind == PolicyKind.DELIVERY_OPTIMIZATION.value), None
    )

    try:
        status = await run_json_probe(context, runner, PROBE_WU_STATUS, PHASE_WINDOWS_UPDATE)
    except ProbeError as e:
        context.ledger.warning(PHASE_WINDOWS_UPDATE, f"Update status unavailable: {e}")
        status = {}

    pending = _pending_updates(status)
    summary = {
        "updateManagement": preliminary.effective_source,
        "updateSource": preliminary.update_source,
        "sourcePriority": preliminary.source_priority,
        "serviceState": status.get("ServiceState") or "Unknown",
        "rebootPending": bool(status.get("RebootPending")) if status else None,
        "pendingCount": len(pending),
        "lastScanTime": status.get("LastScanTime"),
        "lastScanSuccess": status.get("LastScanSuccess"),
    }

    return {
        "summary": summary,
        "registryPolicy": registry_policy_rows(documents),
        "pendingUpdates": pending,
        "updateHistory": as_list(status.get("UpdateHistory")),
        "deliveryOptimization": delivery.setting_map() if delivery else {},
        "arbitration": preliminary.to_dict(),
    }
