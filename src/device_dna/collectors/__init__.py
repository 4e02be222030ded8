"""
Collection steps, one module per report section.

Probe-based collectors take a ProbeRunner; the Intune collector takes the
Graph gateway. All of them take the run's CollectionContext.
"""

from .device import (
    DeviceRegistration,
    collect_inventory,
    collect_registration,
    determine_join_type,
    determine_management_type,
)
from .windows_update import collect_windows_update
from .sccm import collect_sccm
from .group_policy import collect_group_policy
from .intune import (
    collect_applications,
    collect_compliance_policies,
    collect_configuration_profiles,
    collect_device_groups,
    collect_proactive_remediations,
    evaluate_assignments,
)

__all__ = [
    'DeviceRegistration',
    'collect_inventory',
    'collect_registration',
    'determine_join_type',
    'determine_management_type',
    'collect_windows_update',
    'collect_sccm',
    'collect_group_policy',
    'collect_applications',
    'collect_compliance_policies',
    'collect_configuration_profiles',
    'collect_device_groups',
    'collect_proactive_remediations',
    'evaluate_assignments',
]
