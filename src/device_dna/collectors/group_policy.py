"""
Applied Group Policy collector.
"""

import logging
from typing import Any, Dict

from .._types import PHASE_GROUP_POLICY
from ..issues import CollectionContext
from ..probes.definitions import PROBE_GROUP_POLICY
from ..probes.executor import ProbeRunner
from ..utils import as_list
from .base import run_json_probe

logger = logging.getLogger(__name__)


def _scope(raw: Any) -> Dict[str, Any]:
    raw = raw if isinstance(raw, dict) else {}
    gpos = [
        {
            "name": gpo.get("Name"),
            "status": gpo.get("Status") or "Applied",
            "linkLocation": gpo.get("LinkLocation"),
            "id": gpo.get("Id"),
        }
        for gpo in as_list(raw.get("Gpos"))
    ]
    settings = [
        {
            "name": setting.get("Name"),
            "value": setting.get("Value"),
            "sourceGPO": setting.get("SourceGPO"),
            "keyPath": setting.get("KeyPath"),
        }
        for setting in as_list(raw.get("Settings"))
    ]
    return {
        "gpos": sorted(gpos, key=lambda g: (g["name"] or "").lower()),
        "settings": settings,
    }


async def collect_group_policy(context: CollectionContext, runner: ProbeRunner) -> Dict[str, Any]:
    """Collect the groupPolicy report section."""
    output = await run_json_probe(context, runner, PROBE_GROUP_POLICY, PHASE_GROUP_POLICY)
    section = {
        "computerScope": _scope(output.get("ComputerScope")),
        "userScope": _scope(output.get("UserScope")),
    }
    logger.info(f"{len(section['computerScope']['gpos'])} computer GPOs applied")
    return section
