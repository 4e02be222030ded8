"""
Run orchestrator.

One run collects one device:

1. Identity: local registration (dsregcmd), then the Graph identity
   resolver when remote collection is enabled.
2. Two tracks joined with asyncio.gather: the local probe track (inventory,
   Windows Update, SCCM, Group Policy) and the remote Graph track (Intune).
3. Final update-management arbitration over the evidence from both tracks,
   then the management-type classification.

Every step is fault-isolated: its failure is recorded in the issue ledger
and its report section is left empty. Only a device whose identity cannot
be established at all fails the run.
"""

import asyncio
import logging
import socket
import time
from typing import Any, Awaitable, Dict, Optional

from . import __version__
from ._types import (
    PHASE_ARBITRATION,
    PHASE_DEVICE,
    PHASE_GROUP_POLICY,
    PHASE_IDENTITY,
    PHASE_INTUNE,
    PHASE_SCCM,
    PHASE_WINDOWS_UPDATE,
    CollectionCategory,
    JoinType,
    now_utc,
)
from .arbiter import ArbitrationResult, UpdateManagementArbiter
from .collectors.device import (
    DeviceRegistration,
    collect_inventory,
    collect_registration,
    determine_management_type,
)
from .collectors.group_policy import collect_group_policy
from .collectors.intune import (
    collect_applications,
    collect_compliance_policies,
    collect_configuration_profiles,
    collect_device_groups,
    collect_proactive_remediations,
)
from .collectors.sccm import collect_sccm
from .collectors.windows_update import collect_windows_update
from .config import CollectorConfig
from .exceptions import (
    DeviceDNAError,
    IdentityPartialError,
    IdentityUnresolvedError,
    JobTimeoutError,
)
from .graph.export_jobs import ExportJobPoller
from .graph.gateway import RequestGateway
from .identity import DeviceIdentity, IdentityResolver
from .issues import CollectionContext
from .probes.executor import ProbeRunner
from .report import DeviceReport

logger = logging.getLogger(__name__)


class DeviceCollector:
    """Collects a DeviceReport for the configured target."""

    def __init__(
        self,
        config: CollectorConfig,
        context: Optional[CollectionContext] = None,
        runner: Optional[ProbeRunner] = None,
        gateway: Optional[RequestGateway] = None,
        poller: Optional[ExportJobPoller] = None,
        arbiter: Optional[UpdateManagementArbiter] = None,
    ):
        """
        Initialize the collector.

        Args:
            config: Validated configuration
            context: Run context (a fresh one is created from config.skip)
            runner: Probe runner for the local track; None disables it
            gateway: Graph gateway for the remote track; None disables it
            poller: Export job poller (built on gateway when omitted)
            arbiter: Evidence accumulator shared by both tracks
        """
        self.config = config
        self.context = context or CollectionContext(skip=config.skip)
        self.runner = runner
        self.gateway = gateway
        self.poller = poller or (ExportJobPoller.from_config(gateway, config) if gateway else None)
        self.arbiter = arbiter or UpdateManagementArbiter()

        self.registration: Optional[DeviceRegistration] = None
        self.identity: Optional[DeviceIdentity] = None
        self.sections: Dict[str, Any] = {}

    @property
    def remote_enabled(self) -> bool:
        return self.gateway is not None and self.config.remote_enabled

    # =========================================================================
    # Step isolation
    # =========================================================================

    async def _run_step(self, phase: str, step: Awaitable[Any], default: Any = None) -> Any:
        """
        Await one collection step, recording any failure under its phase.

        Soft failures (missing Entra object, export job timeout) are
        Warnings; everything else is an Error. Sibling steps are unaffected.
        """
        try:
            return await step
        except IdentityPartialError as e:
            self.context.ledger.warning(phase, str(e))
        except JobTimeoutError as e:
            self.context.ledger.warning(phase, f"{e}; data unknown")
        except DeviceDNAError as e:
            self.context.ledger.error(phase, str(e))
        except Exception as e:
            logger.exception(f"Unexpected failure in {phase}")
            self.context.ledger.error(phase, f"Unexpected error: {e}")
        return default

    def _skipped(self, category: CollectionCategory) -> bool:
        return self.context.is_skipped(category)

    # =========================================================================
    # Identity
    # =========================================================================

    def _device_name(self) -> Optional[str]:
        if self.config.device_name:
            return self.config.device_name
        if self.registration and self.registration.computer_name:
            return self.registration.computer_name
        if self.config.is_local_target:
            return socket.gethostname().split(".")[0] or None
        return None

    async def _establish_identity(self) -> str:
        """
        Resolve who the device is before any other collection.

        Raises:
            IdentityUnresolvedError: No device name, or remote collection
                enabled and the device is unknown both locally and in the
                directory
        """
        if self.runner is not None and not self._skipped(CollectionCategory.DEVICE):
            self.registration = await self._run_step(
                PHASE_DEVICE, collect_registration(self.context, self.runner)
            )

        device_name = self._device_name()
        if not device_name:
            raise IdentityUnresolvedError("Device name could not be established")

        if self.remote_enabled:
            hardware_id = self.registration.device_id if self.registration else None
            resolver = IdentityResolver(self.gateway, self.context)
            self.identity = await self._run_step(
                PHASE_IDENTITY, resolver.resolve(device_name, hardware_id)
            )

            directory_known = self.identity is not None and (
                self.identity.object_id or self.identity.managed_device_id or self.identity.hardware_id
            )
            if self.registration is None and not directory_known:
                raise IdentityUnresolvedError(
                    f"{device_name} was not found locally or in the directory",
                    device_name=device_name,
                )

        return device_name

    # =========================================================================
    # Tracks
    # =========================================================================

    async def _local_track(self) -> None:
        if self.runner is None:
            return

        if not self._skipped(CollectionCategory.DEVICE):
            self.sections["inventory"] = await self._run_step(
                PHASE_DEVICE, collect_inventory(self.context, self.runner)
            )
        if not self._skipped(CollectionCategory.WINDOWS_UPDATE):
            self.sections["windowsUpdate"] = await self._run_step(
                PHASE_WINDOWS_UPDATE, collect_windows_update(self.context, self.runner, self.arbiter)
            )
        # SCCM runs after Windows Update; its evidence overrides the preliminary result
        if not self._skipped(CollectionCategory.SCCM):
            self.sections["sccm"] = await self._run_step(
                PHASE_SCCM, collect_sccm(self.context, self.runner, self.arbiter)
            )
        if not self._skipped(CollectionCategory.GROUP_POLICY):
            self.sections["groupPolicy"] = await self._run_step(
                PHASE_GROUP_POLICY, collect_group_policy(self.context, self.runner)
            )

    async def _remote_track(self) -> None:
        if not self.remote_enabled:
            return
        if self.identity is None:
            self.context.ledger.error(PHASE_INTUNE, "Device identity not resolved; Intune collection skipped")
            return

        identity = self.identity
        groups = await self._run_step(
            PHASE_INTUNE, collect_device_groups(self.context, self.gateway, identity)
        )
        self.sections["deviceGroups"] = groups

        self.sections["configurationProfiles"] = await self._run_step(
            PHASE_INTUNE,
            collect_configuration_profiles(self.context, self.gateway, identity, self.arbiter, groups),
        )
        self.sections["compliancePolicies"] = await self._run_step(
            PHASE_INTUNE,
            collect_compliance_policies(self.context, self.gateway, identity, groups),
        )
        self.sections["applications"] = await self._run_step(
            PHASE_INTUNE,
            collect_applications(
                self.context,
                self.gateway,
                self.poller,
                identity,
                groups,
                max_wait_seconds=self.config.large_export_job_max_wait,
            ),
        )
        self.sections["proactiveRemediations"] = await self._run_step(
            PHASE_INTUNE,
            collect_proactive_remediations(self.context, self.gateway, identity),
        )

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def _apply_arbitration(self) -> Optional[ArbitrationResult]:
        """Overwrite the Windows Update summary with the final arbitration."""
        if not self.arbiter.evidence() and self.sections.get("windowsUpdate") is None:
            return None

        result = self.arbiter.determine()
        section = self.sections.get("windowsUpdate")
        if section is None:
            section = {"summary": {}}
            self.sections["windowsUpdate"] = section

        summary = section.setdefault("summary", {})
        preliminary = summary.get("updateManagement")
        if preliminary and preliminary != result.effective_source:
            self.context.ledger.info(
                PHASE_ARBITRATION,
                f"Update management changed from {preliminary} to {result.effective_source} "
                "after evidence from later collection steps",
            )

        summary["updateManagement"] = result.effective_source
        summary["updateSource"] = result.update_source
        summary["sourcePriority"] = result.source_priority
        section["arbitration"] = result.to_dict()

        if result.override_risk:
            self.context.ledger.info(PHASE_ARBITRATION, result.override_risk)
        return result

    def _device_info(self, device_name: str, arbitration: Optional[ArbitrationResult]) -> Dict[str, Any]:
        join_type = self.registration.join_type if self.registration else JoinType.UNKNOWN
        intune_managed = bool(self.identity and self.identity.managed_device_id)
        sccm = self.sections.get("sccm") or {}
        management = determine_management_type(join_type, intune_managed, bool(sccm.get("clientInstalled")))

        info: Dict[str, Any] = {"deviceName": device_name}
        info.update(self.sections.get("inventory") or {})
        info["joinType"] = join_type.value
        info["managementType"] = management.value
        info["updateManagement"] = arbitration.effective_source if arbitration else None
        info["registration"] = self.registration.to_dict() if self.registration else None
        info["identity"] = self.identity.to_dict() if self.identity else None
        return info

    def _metadata(self, started: float, started_at) -> Dict[str, Any]:
        counts = self.context.ledger.counts()
        return {
            "tool": "device-dna",
            "version": __version__,
            "collectedAt": started_at,
            "durationSeconds": round(time.monotonic() - started, 2),
            "targetHost": self.config.target_host,
            "collectionMode": "local" if self.config.is_local_target else "remote",
            "remoteEnabled": self.remote_enabled,
            "skippedCategories": sorted(self.context.skip),
            "issueCounts": counts,
        }

    # =========================================================================
    # Entry point
    # =========================================================================

    async def run(self) -> DeviceReport:
        """
        Collect the device.

        Returns:
            DeviceReport, possibly with empty sections and recorded issues

        Raises:
            IdentityUnresolvedError: Identity could not be established
        """
        started = time.monotonic()
        started_at = now_utc()

        for category in sorted(self.context.skip):
            self.context.ledger.info(PHASE_DEVICE, f"Collection category skipped: {category}")

        device_name = await self._establish_identity()
        logger.info(f"Collecting {device_name} (remote={'on' if self.remote_enabled else 'off'})")

        await asyncio.gather(self._local_track(), self._remote_track())

        arbitration = self._apply_arbitration()

        report = DeviceReport(
            device_info=self._device_info(device_name, arbitration),
            device_groups=self.sections.get("deviceGroups"),
            configuration_profiles=self.sections.get("configurationProfiles"),
            compliance_policies=self.sections.get("compliancePolicies"),
            applications=self.sections.get("applications"),
            proactive_remediations=self.sections.get("proactiveRemediations"),
            windows_update=self.sections.get("windowsUpdate"),
            sccm=self.sections.get("sccm"),
            group_policy=self.sections.get("groupPolicy"),
            collection_issues=self.context.ledger.snapshot(),
            metadata=self._metadata(started, started_at),
        )

        counts = self.context.ledger.counts()
        logger.info(
            f"Collection of {device_name} complete: "
            f"{counts.get('Error', 0)} errors, {counts.get('Warning', 0)} warnings"
        )
        return report
