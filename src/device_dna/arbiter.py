"""
Update-management arbitration.

Decides which authority controls Windows Update on a device from the
evidence gathered by the local and remote collectors.

Priority (highest first):

    SCCM             ConfigMgr client present
    Intune (ESUS)    update server points at the Intune cloud endpoint
    Intune (WUFB)    deferral / pause / ring policies present
    WSUS             UseWUServer with an on-prem server
    None             Windows Update direct

The rule table is data: arbitrate() walks it and the first detected rule
wins. WSUS together with WUFB (and nothing above them) is reported as
co-management; no other combination is merged.
"""

import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ._types import is_truthy

logger = logging.getLogger(__name__)


class Authority(str, Enum):
    """Candidate update-management authorities."""
    SCCM = "SCCM"
    ESUS = "ESUS"
    WUFB = "WUFB"
    WSUS = "WSUS"
    DIRECT = "Direct"


class Confidence(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


ESUS_URL_PATTERN = re.compile(r"eus\.wu\.manage\.microsoft\.com", re.IGNORECASE)

URL_SIGNALS = frozenset({"WUServer", "WUStatusServer", "UpdateServiceUrlAlternate"})

DEFERRAL_SIGNALS = frozenset({
    "DeferQualityUpdates",
    "DeferQualityUpdatesPeriodInDays",
    "DeferFeatureUpdates",
    "DeferFeatureUpdatesPeriodInDays",
    "PauseQualityUpdates",
    "PauseFeatureUpdates",
    "PauseQualityUpdatesStartTime",
    "PauseFeatureUpdatesStartTime",
    "BranchReadinessLevel",
    "TargetReleaseVersion",
    "IntuneUpdateRing",
})

USE_WU_SERVER = "UseWUServer"
DIRECT_LABEL = "None"
CO_MANAGED_LABEL = "WSUS + WUFB"


@dataclass(frozen=True)
class Evidence:
    """One observed fact feeding the arbitration."""
    category: Authority
    signal: str
    value: Any
    source: str
    weight: int = 0
    note: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "signal": self.signal,
            "value": self.value,
            "source": self.source,
            "weight": self.weight,
            "note": self.note,
        }


# =============================================================================
# Predicates
# =============================================================================


def _is_cloud_url(evidence: Evidence) -> bool:
    return evidence.signal in URL_SIGNALS and bool(ESUS_URL_PATTERN.search(str(evidence.value or "")))


def _present(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def _sccm_support(evidence: Tuple[Evidence, ...]) -> List[Evidence]:
    return [e for e in evidence if e.category == Authority.SCCM and is_truthy(e.value)]


def _esus_support(evidence: Tuple[Evidence, ...]) -> List[Evidence]:
    return [e for e in evidence if _is_cloud_url(e)]


def _wufb_support(evidence: Tuple[Evidence, ...]) -> List[Evidence]:
    return [e for e in evidence if e.signal in DEFERRAL_SIGNALS and _present(e.value)]


def _wsus_support(evidence: Tuple[Evidence, ...]) -> List[Evidence]:
    flags = [e for e in evidence if e.signal == USE_WU_SERVER and is_truthy(e.value)]
    if not flags or any(_is_cloud_url(e) for e in evidence):
        return []
    servers = [e for e in evidence if e.signal in URL_SIGNALS and _present(e.value)]
    return flags + servers


@dataclass(frozen=True)
class Rule:
    """A row in the priority table."""
    authority: Authority
    label: str
    weight: int
    support: Callable[[Tuple[Evidence, ...]], List[Evidence]]
    update_source: str


RULES: Tuple[Rule, ...] = (
    Rule(Authority.SCCM, "SCCM", 100, _sccm_support, "Configuration Manager (Software Update Point)"),
    Rule(Authority.ESUS, "Intune (ESUS)", 80, _esus_support, "Intune endpoint update service"),
    Rule(Authority.WUFB, "Intune (WUFB)", 60, _wufb_support, "Windows Update for Business"),
    Rule(Authority.WSUS, "WSUS", 40, _wsus_support, "WSUS"),
)

_PRIORITY = {rule.authority: index for index, rule in enumerate(RULES)}
_WEIGHT = {rule.authority: rule.weight for rule in RULES}


def weight_for(authority: Authority) -> int:
    """Display weight of an authority (0 for direct)."""
    return _WEIGHT.get(authority, 0)


def classify_signal(signal: str, value: Any) -> Optional[Authority]:
    """
    Evidence category for a Windows Update policy value.

    Returns:
        The authority the signal speaks for, or None if it is not evidence
    """
    if signal in URL_SIGNALS:
        if ESUS_URL_PATTERN.search(str(value or "")):
            return Authority.ESUS
        return Authority.WSUS if _present(value) else None
    if signal == USE_WU_SERVER:
        return Authority.WSUS
    if signal in DEFERRAL_SIGNALS:
        return Authority.WUFB
    return None


# =============================================================================
# Arbitration
# =============================================================================


@dataclass(frozen=True)
class ArbitrationResult:
    """Outcome of arbitrating a full evidence set."""
    effective_source: str
    authority: Authority
    detected: Tuple[Authority, ...]
    confidence: Confidence
    is_co_managed: bool
    override_risk: Optional[str]
    source_priority: str
    update_source: str
    evidence: Tuple[Evidence, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "effectiveSource": self.effective_source,
            "authority": self.authority.value,
            "detected": [a.value for a in self.detected],
            "confidence": self.confidence.value,
            "isCoManaged": self.is_co_managed,
            "overrideRisk": self.override_risk,
            "sourcePriority": self.source_priority,
            "updateSource": self.update_source,
            "evidence": [e.to_dict() for e in self.evidence],
        }


def _evidence_key(evidence: Evidence):
    return (
        -evidence.weight,
        _PRIORITY.get(evidence.category, len(RULES)),
        evidence.signal,
        evidence.source,
        type(evidence.value).__name__,
        str(evidence.value),
        evidence.note,
    )


def _labels(authorities: Iterable[Authority]) -> List[str]:
    by_authority = {rule.authority: rule.label for rule in RULES}
    return [by_authority[a] for a in authorities]


def _override_risk(winner: Authority, detected: Tuple[Authority, ...], co_managed: bool) -> Optional[str]:
    if co_managed:
        return (
            "WSUS server and WUFB deferral policies are both configured; "
            "dual scan may pull updates from Microsoft Update and bypass WSUS approvals"
        )
    shadowed = [a for a in detected if a != winner]
    if not shadowed:
        return None
    if winner == Authority.SCCM and Authority.WUFB in shadowed:
        return (
            "SCCM client present alongside WUFB policies; "
            "the co-management Windows Update workload decides which one applies"
        )
    return f"{', '.join(_labels(shadowed))} settings are also present but overridden by {_labels([winner])[0]}"


def _update_source(rule: Optional[Rule], support: List[Evidence]) -> str:
    if rule is None:
        return "Microsoft Update (direct)"
    servers = sorted({str(e.value) for e in support if e.signal == "WUServer" and _present(e.value)})
    if servers:
        return f"{rule.update_source}: {servers[0]}"
    return rule.update_source


def arbitrate(evidence: Iterable[Evidence]) -> ArbitrationResult:
    """
    Determine the effective update-management authority.

    Pure and order-independent: the same evidence, in any order, always
    yields an equal result.

    Args:
        evidence: Every Evidence record collected so far

    Returns:
        ArbitrationResult
    """
    ordered = tuple(sorted(evidence, key=_evidence_key))

    support = {rule.authority: rule.support(ordered) for rule in RULES}
    detected = tuple(rule.authority for rule in RULES if support[rule.authority])

    winner_rule = next((rule for rule in RULES if support[rule.authority]), None)
    higher_than_wufb = {Authority.SCCM, Authority.ESUS}
    co_managed = (
        Authority.WSUS in detected
        and Authority.WUFB in detected
        and not higher_than_wufb.intersection(detected)
    )

    if winner_rule is None:
        label = DIRECT_LABEL
        authority = Authority.DIRECT
        confidence = Confidence.LOW
    else:
        authority = winner_rule.authority
        label = CO_MANAGED_LABEL if co_managed else winner_rule.label
        if co_managed:
            confidence = Confidence.MEDIUM
        elif len(support[authority]) >= 2:
            confidence = Confidence.HIGH
        else:
            confidence = Confidence.MEDIUM

    if co_managed:
        wsus_rule = RULES[_PRIORITY[Authority.WSUS]]
        update_source = f"{_update_source(wsus_rule, support[Authority.WSUS])} + Windows Update for Business"
    else:
        update_source = _update_source(winner_rule, support.get(authority, []))

    return ArbitrationResult(
        effective_source=label,
        authority=authority,
        detected=detected,
        confidence=confidence,
        is_co_managed=co_managed,
        override_risk=_override_risk(authority, detected, co_managed),
        source_priority=" > ".join(_labels(detected)) if detected else "Windows Update (direct)",
        update_source=update_source,
        evidence=ordered,
    )


class UpdateManagementArbiter:
    """
    Accumulates evidence over a run and recomputes on demand.

    Collectors on both tracks add evidence as they find it; determine()
    always arbitrates the full set, so SCCM evidence arriving after an
    earlier determination replaces that answer.
    """

    def __init__(self):
        self._evidence: List[Evidence] = []
        self._lock = threading.Lock()
        self._last: Optional[ArbitrationResult] = None

    def add(self, evidence: Evidence) -> None:
        with self._lock:
            if evidence not in self._evidence:
                self._evidence.append(evidence)

    def extend(self, evidence: Iterable[Evidence]) -> None:
        for item in evidence:
            self.add(item)

    def evidence(self) -> List[Evidence]:
        with self._lock:
            return list(self._evidence)

    def determine(self) -> ArbitrationResult:
        result = arbitrate(self.evidence())
        previous = self._last
        if previous is not None and previous.effective_source != result.effective_source:
            logger.info(
                f"Update management changed from {previous.effective_source} "
                f"to {result.effective_source} after new evidence"
            )
        self._last = result
        return result

    @property
    def last_result(self) -> Optional[ArbitrationResult]:
        return self._last
