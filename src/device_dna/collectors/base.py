"""
Helpers shared by the probe-based collectors.
"""

import logging
from typing import Any, Dict

from ..exceptions import ProbeError
from ..issues import CollectionContext
from ..probes.definitions import Probe
from ..probes.executor import ProbeRunner
from ..utils import as_list

logger = logging.getLogger(__name__)


async def run_json_probe(
    context: CollectionContext,
    runner: ProbeRunner,
    probe: Probe,
    phase: str,
) -> Dict[str, Any]:
    """
    Run a probe and return its JSON object.

    Errors the script caught itself (its "Errors" array) are recorded as
    ledger warnings; the rest of the output is still returned.

    Raises:
        ProbeError: The probe failed or did not print a JSON object
    """
    result = await runner.run_probe(probe)
    if not result.success:
        raise ProbeError(f"{probe.name} failed: {result.error}", probe_id=probe.id)

    output = result.output
    if not isinstance(output, dict):
        raise ProbeError(f"{probe.name} returned no JSON object", probe_id=probe.id)

    for message in as_list(output.pop("Errors", None)):
        context.ledger.warning(phase, f"{probe.name}: {message}")

    return output
