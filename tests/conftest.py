"""
Shared fixtures: scripted probe runner, scripted Graph gateway, fake clock.
"""

import base64
import copy
import json
import os
from typing import Any, Dict, List, Optional, Tuple

import pytest

from device_dna.issues import CollectionContext, IssueLedger
from device_dna.probes.executor import ProbeResult, ProbeRunner, ProbeTarget


def make_token(claims: Dict[str, Any]) -> str:
    """Unsigned JWT carrying the given claims."""
    def part(data: Dict[str, Any]) -> str:
        raw = json.dumps(data).encode()
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()

    return f"{part({'alg': 'none', 'typ': 'JWT'})}.{part(claims)}.sig"


class FakeRunner(ProbeRunner):
    """Returns canned JSON per probe id."""

    def __init__(self, outputs: Optional[Dict[str, Any]] = None, failures: Optional[Dict[str, str]] = None):
        super().__init__(ProbeTarget(hostname="localhost"))
        self.outputs = outputs or {}
        self.failures = failures or {}
        self.calls: List[str] = []

    async def run_script(self, script: str, timeout: int = 120) -> ProbeResult:
        raise AssertionError("FakeRunner only runs probe definitions")

    async def run_probe(self, probe, timeout=None) -> ProbeResult:
        self.calls.append(probe.id)
        if probe.id in self.failures:
            return ProbeResult(success=False, target=self.hostname, error=self.failures[probe.id], probe_id=probe.id)
        output = copy.deepcopy(self.outputs.get(probe.id, {}))
        return ProbeResult(success=True, target=self.hostname, output=output, probe_id=probe.id)


class FakeGateway:
    """
    Scripted stand-in for RequestGateway.

    Routes are (method, uri prefix, response). A response that is an
    exception instance is raised; anything else is returned as-is.
    Unrouted calls return an empty result.
    """

    def __init__(self, routes: Optional[List[Tuple[str, str, Any]]] = None):
        self.routes = list(routes or [])
        self.calls: List[Tuple[str, str, Any]] = []

    def add(self, method: str, prefix: str, response: Any) -> "FakeGateway":
        self.routes.append((method, prefix, response))
        return self

    def _respond(self, method: str, uri: str, default: Any) -> Any:
        for route_method, prefix, response in self.routes:
            if route_method == method and uri.startswith(prefix):
                if isinstance(response, Exception):
                    raise response
                return copy.deepcopy(response)
        return default

    async def call(self, method: str, uri: str, json=None) -> List[Dict[str, Any]]:
        self.calls.append((method, uri, json))
        return self._respond(method, uri, [])

    async def request(self, method: str, uri: str, json=None) -> Dict[str, Any]:
        self.calls.append((method, uri, json))
        return self._respond(method, uri, {})

    async def report(self, uri: str, filter=None, select=None, top=None) -> List[Dict[str, Any]]:
        self.calls.append(("REPORT", uri, {"filter": filter, "select": select, "top": top}))
        return self._respond("REPORT", uri, [])

    async def download(self, url: str) -> bytes:
        self.calls.append(("DOWNLOAD", url, None))
        return self._respond("DOWNLOAD", url, b"")

    def uris(self, method: Optional[str] = None) -> List[str]:
        return [uri for m, uri, _ in self.calls if method is None or m == method]


class FakeClock:
    """Monotonic clock advanced by the fake sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Isolate from the caller's DEVICEDNA_* variables and .env file."""
    for key in list(os.environ):
        if key.startswith("DEVICEDNA_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def ledger():
    return IssueLedger(sink=None)


@pytest.fixture
def context(ledger):
    return CollectionContext(ledger=ledger)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def token():
    return make_token({
        "tid": "tenant-1",
        "exp": 4102444800,
        "roles": ["Device.Read.All", "DeviceManagementManagedDevices.Read.All"],
    })
