"""
Read-only PowerShell probes against the target device.

The same probe runs locally or over WinRM; collectors only deal with
ProbeRunner.
"""

from .definitions import (
    Probe,
    PROBE_DEVICE_REGISTRATION,
    PROBE_DEVICE_INVENTORY,
    PROBE_WU_POLICY,
    PROBE_WU_STATUS,
    PROBE_SCCM_CLIENT,
    PROBE_SCCM_DETAILS,
    PROBE_GROUP_POLICY,
    get_probe,
    probes_for,
)
from .executor import (
    LocalProbeRunner,
    ProbeResult,
    ProbeRunner,
    ProbeTarget,
    WinRMProbeRunner,
    create_runner,
)

__all__ = [
    'Probe',
    'PROBE_DEVICE_REGISTRATION',
    'PROBE_DEVICE_INVENTORY',
    'PROBE_WU_POLICY',
    'PROBE_WU_STATUS',
    'PROBE_SCCM_CLIENT',
    'PROBE_SCCM_DETAILS',
    'PROBE_GROUP_POLICY',
    'get_probe',
    'probes_for',
    'LocalProbeRunner',
    'ProbeResult',
    'ProbeRunner',
    'ProbeTarget',
    'WinRMProbeRunner',
    'create_runner',
]
