"""
End-to-end tests for the run orchestrator with scripted probes and Graph.
"""

import pytest

from device_dna._types import IssueSeverity
from device_dna.collector import DeviceCollector
from device_dna.config import CollectorConfig
from device_dna.exceptions import IdentityUnresolvedError, NonRetriableTransportError
from device_dna.issues import CollectionContext, IssueLedger

from conftest import FakeGateway, FakeRunner


REGISTRATION = {
    "ComputerName": "PC001",
    "AzureAdJoined": "YES",
    "DomainJoined": "NO",
    "DeviceId": "HW-1",
    "TenantId": "tenant-1",
}

WSUS_POLICY = {
    "windows_update": {"WUServer": "http://wsus.contoso.local:8530"},
    "windows_update_au": {"UseWUServer": 1},
}

SCCM_CLIENT = {"ServiceInstalled": True, "ServiceState": "Running", "NamespacePresent": True, "SiteCode": "P01"}


def probe_outputs(**overrides):
    outputs = {
        "PROBE-DEV-REG": REGISTRATION,
        "PROBE-DEV-INV": {"OperatingSystem": "Windows 11 Enterprise", "OSBuild": "22631"},
        "PROBE-WU-POLICY": WSUS_POLICY,
        "PROBE-WU-STATUS": {"ServiceState": "Running"},
        "PROBE-SCCM-CLIENT": {"ServiceInstalled": False, "NamespacePresent": False},
        "PROBE-GPO": {"ComputerScope": {"Gpos": {"Name": "Workstation Baseline"}}},
    }
    outputs.update(overrides)
    return outputs


class FakePoller:

    async def run_export_job(self, spec, max_wait_seconds=None):
        return []


def make_collector(config, runner, gateway=None):
    context = CollectionContext(ledger=IssueLedger(sink=None), skip=config.skip)
    return DeviceCollector(config, context=context, runner=runner, gateway=gateway, poller=FakePoller())


def issues(report, severity=None, phase=None):
    return [
        r for r in report.collection_issues
        if (severity is None or r.severity == severity) and (phase is None or r.phase == phase)
    ]


def remote_config(**kwargs):
    return CollectorConfig(tenant_id="tenant-1", access_token="token", **kwargs)


class TestLocalRun:

    @pytest.mark.asyncio
    async def test_all_sections(self):
        runner = FakeRunner(probe_outputs())

        report = await make_collector(CollectorConfig(), runner).run()

        info = report.device_info
        assert info["deviceName"] == "PC001"
        assert info["operatingSystem"] == "Windows 11 Enterprise"
        assert info["joinType"] == "Azure AD Joined"
        assert info["updateManagement"] == "WSUS"
        assert report.windows_update["summary"]["updateManagement"] == "WSUS"
        assert report.group_policy["computerScope"]["gpos"][0]["name"] == "Workstation Baseline"
        assert report.sccm["clientInstalled"] is False
        assert report.device_groups is None
        assert report.metadata["remoteEnabled"] is False
        assert report.metadata["collectionMode"] == "local"
        assert issues(report, IssueSeverity.ERROR) == []

    @pytest.mark.asyncio
    async def test_sccm_overrides_preliminary_wsus(self):
        """SCCM found after Windows Update replaces the preliminary WSUS result."""
        runner = FakeRunner(probe_outputs(**{"PROBE-SCCM-CLIENT": SCCM_CLIENT}))

        report = await make_collector(CollectorConfig(), runner).run()

        summary = report.windows_update["summary"]
        assert summary["updateManagement"] == "SCCM"
        assert summary["sourcePriority"] == "SCCM > WSUS"
        assert report.windows_update["arbitration"]["effectiveSource"] == "SCCM"
        assert report.device_info["managementType"] == "On-prem only"
        changed = issues(report, IssueSeverity.INFO, "Update Management")
        assert any("from WSUS to SCCM" in r.message for r in changed)

    @pytest.mark.asyncio
    async def test_failed_step_is_isolated(self):
        runner = FakeRunner(probe_outputs(), failures={"PROBE-SCCM-CLIENT": "Access is denied"})

        report = await make_collector(CollectorConfig(), runner).run()

        assert report.sccm is None
        assert report.group_policy is not None
        assert report.windows_update is not None
        errors = issues(report, IssueSeverity.ERROR)
        assert len(errors) == 1
        assert errors[0].phase == "SCCM"
        assert report.metadata["issueCounts"]["Error"] == 1

    @pytest.mark.asyncio
    async def test_skipped_categories(self):
        runner = FakeRunner(probe_outputs())
        config = CollectorConfig(skip_categories="sccm,group_policy")

        report = await make_collector(config, runner).run()

        assert "PROBE-SCCM-CLIENT" not in runner.calls
        assert "PROBE-GPO" not in runner.calls
        assert report.sccm is None
        assert report.group_policy is None
        messages = [r.message for r in issues(report, IssueSeverity.INFO, "Device")]
        assert "Collection category skipped: group_policy" in messages
        assert "Collection category skipped: sccm" in messages
        assert report.metadata["skippedCategories"] == ["group_policy", "sccm"]

    @pytest.mark.asyncio
    async def test_configured_name_wins(self):
        runner = FakeRunner(probe_outputs())
        report = await make_collector(CollectorConfig(device_name="PC001-renamed"), runner).run()
        assert report.device_name == "PC001-renamed"


class TestRemoteRun:

    ROUTES = [
        ("GET", "devices?$filter=displayName eq", [{"id": "OBJ-1", "deviceId": "HW-1", "isManaged": True}]),
        ("GET", "deviceManagement/managedDevices?$filter=azureADDeviceId eq",
         [{"id": "M1", "azureADDeviceId": "HW-1", "managementAgent": "configurationManagerClientMdm"}]),
        ("GET", "deviceManagement/managedDevices/M1/deviceCompliancePolicyStates",
         [{"id": "c1", "displayName": "Windows baseline", "state": "compliant"}]),
    ]

    @pytest.mark.asyncio
    async def test_co_managed_device(self):
        runner = FakeRunner(probe_outputs(**{"PROBE-SCCM-CLIENT": SCCM_CLIENT}))
        gateway = FakeGateway(list(self.ROUTES))

        report = await make_collector(remote_config(), runner, gateway).run()

        assert report.device_info["identity"]["intuneDeviceId"] == "M1"
        assert report.device_info["managementType"] == "Co-managed"
        assert report.compliance_policies[0]["complianceState"] == "compliant"
        assert report.device_groups == []
        assert report.applications == []
        assert report.metadata["remoteEnabled"] is True

    @pytest.mark.asyncio
    async def test_group_failure_does_not_stop_intune(self):
        gateway = FakeGateway(list(self.ROUTES))
        gateway.add("GET", "devices/OBJ-1/transitiveMemberOf", NonRetriableTransportError("Forbidden", status_code=403))

        report = await make_collector(remote_config(), FakeRunner(probe_outputs()), gateway).run()

        assert report.device_groups is None
        assert report.compliance_policies is not None
        assert report.configuration_profiles == []
        errors = issues(report, IssueSeverity.ERROR, "Intune")
        assert len(errors) == 1
        assert "Forbidden" in errors[0].message

    @pytest.mark.asyncio
    async def test_update_ring_makes_wsus_co_managed(self):
        gateway = FakeGateway(list(self.ROUTES))
        gateway.add("GET", "deviceManagement/deviceConfigurations", [{
            "@odata.type": "#microsoft.graph.windowsUpdateForBusinessConfiguration",
            "id": "ring-1",
            "displayName": "Ring 1",
            "assignments": [{"target": {"@odata.type": "#microsoft.graph.allDevicesAssignmentTarget"}}],
        }])

        report = await make_collector(remote_config(), FakeRunner(probe_outputs()), gateway).run()

        assert report.windows_update["summary"]["updateManagement"] == "WSUS + WUFB"
        assert report.windows_update["arbitration"]["isCoManaged"] is True

    @pytest.mark.asyncio
    async def test_unknown_everywhere_is_fatal(self):
        runner = FakeRunner(failures={"PROBE-DEV-REG": "dsregcmd not found"})
        collector = make_collector(remote_config(device_name="GHOST"), runner, FakeGateway())

        with pytest.raises(IdentityUnresolvedError):
            await collector.run()

    @pytest.mark.asyncio
    async def test_directory_match_without_local_registration(self):
        runner = FakeRunner(probe_outputs(), failures={"PROBE-DEV-REG": "dsregcmd not found"})
        gateway = FakeGateway([
            ("GET", "devices?$filter=displayName eq", [{"id": "OBJ-9", "deviceId": "HW-9"}]),
        ])

        report = await make_collector(remote_config(device_name="PC009"), runner, gateway).run()

        assert report.device_info["identity"]["entraObjectId"] == "OBJ-9"
        assert report.device_info["joinType"] == "Unknown"
        assert issues(report, IssueSeverity.ERROR, "Device")
