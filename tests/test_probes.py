"""
Tests for probe definitions and runners.
"""

import base64
import sys
import time

import pytest

from device_dna._types import CollectionCategory
from device_dna.probes import (
    PROBE_DEVICE_REGISTRATION,
    PROBE_WU_STATUS,
    LocalProbeRunner,
    ProbeTarget,
    WinRMProbeRunner,
    create_runner,
    get_probe,
    probes_for,
)
from device_dna.probes.definitions import ALL_PROBES
from device_dna.probes.executor import SCRIPT_PREAMBLE, parse_probe_output


class PythonRunner(LocalProbeRunner):
    """Runs the "script" with the current interpreter instead of PowerShell."""

    def build_command(self, script):
        return [sys.executable, "-c", script]


class ScriptedWinRMRunner(WinRMProbeRunner):
    """WinRM runner with the pywinrm call replaced."""

    def __init__(self, response=None, error=None, delay=0.0, **kwargs):
        super().__init__(ProbeTarget(hostname="srv01.contoso.local"), **kwargs)
        self.response = response
        self.error = error
        self.delay = delay
        self.scripts = []

    def _execute_sync(self, script):
        self.scripts.append(script)
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return self.response


class TestDefinitions:

    def test_ids_unique(self):
        ids = [p.id for p in ALL_PROBES]
        assert len(ids) == len(set(ids))

    def test_lookup(self):
        assert get_probe("PROBE-DEV-REG") is PROBE_DEVICE_REGISTRATION
        with pytest.raises(KeyError):
            get_probe("PROBE-NOPE")

    def test_probes_for_category(self):
        assert [p.id for p in probes_for(CollectionCategory.SCCM)] == ["PROBE-SCCM-CLIENT", "PROBE-SCCM-DETAILS"]
        assert probes_for(CollectionCategory.INTUNE) == []

    def test_scripts_emit_json(self):
        for probe in ALL_PROBES:
            assert "ConvertTo-Json" in probe.script, probe.id


class TestParseOutput:

    @pytest.mark.parametrize("stdout,expected", [
        ('{"a": 1}', {"a": 1}),
        ('\r\n[1, 2]\r\n', [1, 2]),
        ("", None),
        ("WARNING: something", None),
    ])
    def test_parse(self, stdout, expected):
        assert parse_probe_output(stdout) == expected


class TestProbeTarget:

    @pytest.mark.parametrize("hostname", ["", ".", "localhost", "LOCALHOST", "127.0.0.1"])
    def test_local_names(self, hostname):
        assert ProbeTarget(hostname=hostname).is_local

    def test_own_hostname_is_local(self, monkeypatch):
        monkeypatch.setattr("socket.gethostname", lambda: "WKS-042")
        assert ProbeTarget(hostname="wks-042.contoso.local").is_local
        assert not ProbeTarget(hostname="srv01.contoso.local").is_local

    def test_create_runner(self, monkeypatch):
        monkeypatch.setattr("socket.gethostname", lambda: "WKS-042")
        assert isinstance(create_runner(ProbeTarget()), LocalProbeRunner)
        remote = create_runner(ProbeTarget(hostname="srv01"), timeout=30)
        assert isinstance(remote, WinRMProbeRunner)
        assert remote.timeout == 30


class TestLocalProbeRunner:

    def test_encoded_command(self):
        runner = LocalProbeRunner()
        command = runner.build_command("Get-Date")

        assert command[0] == "powershell.exe"
        assert command[-2] == "-EncodedCommand"
        decoded = base64.b64decode(command[-1]).decode("utf-16-le")
        assert decoded == SCRIPT_PREAMBLE + "Get-Date"

    @pytest.mark.asyncio
    async def test_json_output_parsed(self):
        runner = PythonRunner()
        result = await runner.run_script('print(\'{"Name": "WKS-042"}\')', timeout=30)

        assert result.success
        assert result.output == {"Name": "WKS-042"}
        assert result.exit_code == 0

    @pytest.mark.asyncio
    async def test_non_zero_exit(self):
        runner = PythonRunner()
        result = await runner.run_script("import sys; sys.stderr.write('boom'); sys.exit(3)", timeout=30)

        assert not result.success
        assert result.exit_code == 3
        assert result.error == "boom"

    @pytest.mark.asyncio
    async def test_timeout_is_failed_result(self):
        runner = PythonRunner()
        result = await runner.run_script("import time; time.sleep(30)", timeout=0.5)

        assert not result.success
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_missing_executable(self):
        runner = LocalProbeRunner(executable="definitely-not-powershell-xyz")
        result = await runner.run_script("Get-Date")

        assert not result.success
        assert "Cannot start" in result.error

    @pytest.mark.asyncio
    async def test_run_probe_tags_id_and_uses_runner_timeout(self):
        seen = []

        class Recording(LocalProbeRunner):
            async def run_script(self, script, timeout=120):
                seen.append(timeout)
                return await LocalProbeRunner.run_script(self, "print('{}')", timeout)

            build_command = PythonRunner.build_command

        result = await Recording(timeout=45).run_probe(PROBE_WU_STATUS)
        assert result.probe_id == "PROBE-WU-STATUS"
        assert seen == [45]

        await Recording().run_probe(PROBE_WU_STATUS)
        assert seen[-1] == PROBE_WU_STATUS.timeout_seconds


class TestWinRMProbeRunner:

    @pytest.mark.asyncio
    async def test_success(self):
        runner = ScriptedWinRMRunner({"status_code": 0, "std_out": '{"Enabled": true}', "std_err": ""})
        result = await runner.run_script("Get-Thing")

        assert result.success
        assert result.output == {"Enabled": True}
        assert result.target == "srv01.contoso.local"
        assert runner.scripts == ["Get-Thing"]

    @pytest.mark.asyncio
    async def test_failure_status(self):
        runner = ScriptedWinRMRunner({"status_code": 1, "std_out": "", "std_err": "Access is denied"})
        result = await runner.run_script("Get-Thing")

        assert not result.success
        assert result.error == "Access is denied"

    @pytest.mark.asyncio
    async def test_transport_error_is_failed_result(self):
        runner = ScriptedWinRMRunner(error=ConnectionError("connection refused"))
        result = await runner.run_script("Get-Thing")

        assert not result.success
        assert "connection refused" in result.error

    @pytest.mark.asyncio
    async def test_timeout(self):
        runner = ScriptedWinRMRunner({"status_code": 0, "std_out": "", "std_err": ""}, delay=1.0)
        result = await runner.run_script("Get-Thing", timeout=0.05)

        assert not result.success
        assert "timed out" in result.error
