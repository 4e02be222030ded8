"""
PowerShell probe execution, local or over WinRM.

Collectors only see ProbeRunner. LocalProbeRunner starts powershell.exe on
this machine; WinRMProbeRunner runs the same script on a remote machine
through pywinrm. Probe scripts emit JSON (ConvertTo-Json) which is parsed
into ProbeResult.output.

A probe that times out or fails to start is returned as a failed
ProbeResult; it never raises into the collector.
"""

import asyncio
import base64
import json
import logging
import socket
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from .._types import now_utc
from .definitions import Probe

logger = logging.getLogger(__name__)


DEFAULT_PROBE_TIMEOUT = 120
LOCAL_HOSTNAMES = ("", ".", "localhost", "127.0.0.1", "::1")

# Keeps progress records (CLIXML) out of stderr
SCRIPT_PREAMBLE = "$ProgressPreference = 'SilentlyContinue'\n"


@dataclass
class ProbeTarget:
    """Machine a probe runs against."""
    hostname: str = "localhost"
    port: int = 5985  # WinRM HTTP (5986 for HTTPS)
    username: str = ""
    password: str = ""
    use_ssl: bool = False
    verify_ssl: bool = True
    transport: str = "ntlm"  # ntlm, kerberos, certificate

    @classmethod
    def from_config(cls, config) -> "ProbeTarget":
        return cls(
            hostname=config.target_host,
            port=config.winrm_port,
            username=config.winrm_username,
            password=config.winrm_password,
            use_ssl=config.winrm_use_ssl,
            transport=config.winrm_transport,
        )

    @property
    def is_local(self) -> bool:
        name = (self.hostname or "").strip().lower()
        if name in LOCAL_HOSTNAMES:
            return True
        local = socket.gethostname().lower()
        return name == local or name.split(".")[0] == local.split(".")[0]


@dataclass
class ProbeResult:
    """Outcome of one probe run."""
    success: bool
    target: str
    output: Any = None
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    duration_seconds: float = 0.0
    error: Optional[str] = None
    probe_id: str = ""
    timestamp: datetime = field(default_factory=now_utc)


def parse_probe_output(stdout: str) -> Any:
    """Parse ConvertTo-Json output; None for empty or non-JSON output."""
    text = (stdout or "").strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


class ProbeRunner(ABC):
    """Runs PowerShell probes against one target."""

    def __init__(self, target: ProbeTarget, timeout: Optional[int] = None):
        self.target = target
        self.timeout = timeout

    @property
    def hostname(self) -> str:
        return self.target.hostname

    @abstractmethod
    async def run_script(self, script: str, timeout: int = DEFAULT_PROBE_TIMEOUT) -> ProbeResult:
        """Run a PowerShell script and return its parsed JSON output."""

    async def run_probe(self, probe: Probe, timeout: Optional[int] = None) -> ProbeResult:
        """
        Run a probe definition.

        Args:
            probe: Probe to run
            timeout: Override for the runner and probe timeouts

        Returns:
            ProbeResult tagged with the probe id
        """
        logger.debug(f"Running probe {probe.id} on {self.hostname}")
        result = await self.run_script(probe.script, timeout or self.timeout or probe.timeout_seconds)
        result.probe_id = probe.id
        if not result.success:
            logger.warning(f"Probe {probe.id} failed on {self.hostname}: {result.error}")
        return result

    async def close(self) -> None:
        pass


class LocalProbeRunner(ProbeRunner):
    """Runs probes with a local powershell.exe process."""

    def __init__(
        self,
        target: Optional[ProbeTarget] = None,
        executable: str = "powershell.exe",
        timeout: Optional[int] = None,
    ):
        super().__init__(target or ProbeTarget(), timeout=timeout)
        self.executable = executable

    def build_command(self, script: str) -> list:
        encoded = base64.b64encode((SCRIPT_PREAMBLE + script).encode("utf-16-le")).decode("ascii")
        return [
            self.executable,
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy", "Bypass",
            "-EncodedCommand", encoded,
        ]

    async def run_script(self, script: str, timeout: int = DEFAULT_PROBE_TIMEOUT) -> ProbeResult:
        start_time = now_utc()

        def elapsed() -> float:
            return (now_utc() - start_time).total_seconds()

        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(script),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return ProbeResult(
                success=False,
                target=self.hostname,
                duration_seconds=elapsed(),
                error=f"Cannot start {self.executable}: {e}",
            )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return ProbeResult(
                success=False,
                target=self.hostname,
                duration_seconds=elapsed(),
                error=f"Probe timed out after {timeout}s",
            )

        out = stdout.decode("utf-8", errors="replace") if stdout else ""
        err = stderr.decode("utf-8", errors="replace") if stderr else ""
        return ProbeResult(
            success=process.returncode == 0,
            target=self.hostname,
            output=parse_probe_output(out),
            stdout=out,
            stderr=err,
            exit_code=process.returncode,
            duration_seconds=elapsed(),
            error=None if process.returncode == 0 else (err.strip() or f"Exit code {process.returncode}"),
        )


class WinRMProbeRunner(ProbeRunner):
    """
    Runs probes on a remote machine over WinRM.

    pywinrm is synchronous, so each call runs in the default thread pool.
    """

    def __init__(self, target: ProbeTarget, timeout: Optional[int] = None):
        super().__init__(target, timeout=timeout)
        self._session = None

    def _get_session(self):
        """
        Get or create the WinRM session.

        Returns:
            winrm.Session object
        """
        try:
            import winrm
        except ImportError:
            raise ImportError(
                "pywinrm is required for remote probes. "
                "Install with: pip install device-dna[winrm]"
            )

        if self._session is None:
            protocol = "https" if self.target.use_ssl else "http"
            endpoint = f"{protocol}://{self.target.hostname}:{self.target.port}/wsman"
            self._session = winrm.Session(
                endpoint,
                auth=(self.target.username, self.target.password),
                transport=self.target.transport,
                server_cert_validation='validate' if self.target.verify_ssl else 'ignore'
            )

        return self._session

    def _execute_sync(self, script: str) -> Dict[str, Any]:
        """Synchronous script execution (runs in thread pool)."""
        session = self._get_session()
        result = session.run_ps(SCRIPT_PREAMBLE + script)
        return {
            "status_code": result.status_code,
            "std_out": result.std_out.decode('utf-8', errors='replace') if result.std_out else "",
            "std_err": result.std_err.decode('utf-8', errors='replace') if result.std_err else "",
        }

    async def run_script(self, script: str, timeout: int = DEFAULT_PROBE_TIMEOUT) -> ProbeResult:
        start_time = now_utc()

        try:
            loop = asyncio.get_running_loop()
            raw = await asyncio.wait_for(
                loop.run_in_executor(None, self._execute_sync, script),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            return ProbeResult(
                success=False,
                target=self.hostname,
                duration_seconds=(now_utc() - start_time).total_seconds(),
                error=f"Probe timed out after {timeout}s",
            )
        except Exception as e:
            logger.exception(f"Probe execution failed on {self.hostname}")
            return ProbeResult(
                success=False,
                target=self.hostname,
                duration_seconds=(now_utc() - start_time).total_seconds(),
                error=str(e),
            )

        ok = raw["status_code"] == 0
        return ProbeResult(
            success=ok,
            target=self.hostname,
            output=parse_probe_output(raw["std_out"]),
            stdout=raw["std_out"],
            stderr=raw["std_err"],
            exit_code=raw["status_code"],
            duration_seconds=(now_utc() - start_time).total_seconds(),
            error=None if ok else (raw["std_err"].strip() or f"Exit code {raw['status_code']}"),
        )


def create_runner(
    target: ProbeTarget,
    executable: str = "powershell.exe",
    timeout: Optional[int] = None,
) -> ProbeRunner:
    """Local runner for this machine, WinRM runner for anything else."""
    if target.is_local:
        return LocalProbeRunner(target, executable=executable, timeout=timeout)
    return WinRMProbeRunner(target, timeout=timeout)
