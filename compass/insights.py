"""Insight engine: explanation / suggestion / risk for key results and objectives.

Two generators per level:

- **Rules** (deterministic, always computed): bands the KR's progress the same
  way :func:`compass.progress.health` does, and aggregates KR risks for the
  objective. Tagged ``source="rules"``, ``version=1``.
- **Generated** (optional provider): fed the same structured signals, tagged
  ``source="generated"``, ``version=2``. Any provider result other than ``ok``
  falls back to the rule output.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any

from compass import progress
from compass.llm import KIND_KR, KIND_OBJECTIVE, InsightProvider

log = logging.getLogger(__name__)

SOURCE_RULES = "rules"
SOURCE_GENERATED = "generated"
RULES_VERSION = 1
GENERATED_VERSION = 2

RISK_LOW = "low"
RISK_MEDIUM = "medium"
RISK_HIGH = "high"


@dataclass(frozen=True)
class InsightDraft:
    explanation_short: str
    explanation_long: str
    suggestion: str
    risk: str | None = None
    source: str = SOURCE_RULES
    version: int = RULES_VERSION


# ---------------------------------------------------------------------------
# Rule texts
# ---------------------------------------------------------------------------

_KR_NO_TARGET = InsightDraft(
    "no target defined",
    "This key result has no numeric target, so its progress cannot be evaluated.",
    "Define a numeric target and a date",
    RISK_HIGH,
)
_KR_NO_CHECKINS = InsightDraft(
    "no check-ins recorded",
    "No progress has been recorded for this key result yet.",
    "Record the first check-in with the current value",
    RISK_HIGH,
)
_KR_BANDS: dict[str, InsightDraft] = {
    progress.OFF_TRACK: InsightDraft(
        "off track",
        "Current progress is below 40% of the target.",
        "Define 1-2 initiatives and check in more often",
        RISK_HIGH,
    ),
    progress.AT_RISK: InsightDraft(
        "at risk",
        "Current progress is between 40% and 70% of the target.",
        "Adjust initiatives and review the weekly pace",
        RISK_MEDIUM,
    ),
    progress.ON_TRACK: InsightDraft(
        "on track",
        "Current progress is above 70% of the target.",
        "Keep the cadence and remove blockers",
        RISK_LOW,
    ),
}

_OBJECTIVE_NO_KRS = InsightDraft(
    "no KRs",
    "This objective has no key results yet.",
    "Add 1-3 measurable key results",
)
_OBJECTIVE_CRITICAL = InsightDraft(
    "at risk due to critical KRs",
    "Some key results are in a critical state and are dragging the objective down.",
    "Prioritise the critical key results and define initiatives for them",
)
_OBJECTIVE_AT_RISK = InsightDraft(
    "at risk",
    "Most key results are at risk.",
    "Review the pace and the supporting actions",
)
_OBJECTIVE_ON_TRACK = InsightDraft(
    "on track",
    "Most key results are in good shape.",
    "Keep focus and cadence",
)


def rule_kr_insight(target: float | None, current: float | None, checkin_count: int = 0) -> InsightDraft:
    if not progress.has_target(target):
        return _KR_NO_TARGET
    if checkin_count == 0 and current is None:
        return _KR_NO_CHECKINS
    pct = progress.progress_pct(current, target) or 0.0
    return _KR_BANDS[progress.band(pct)]


def rule_objective_insight(kr_risks: list[str | None]) -> InsightDraft:
    if not kr_risks:
        return _OBJECTIVE_NO_KRS
    high = sum(1 for r in kr_risks if r == RISK_HIGH)
    medium = sum(1 for r in kr_risks if r == RISK_MEDIUM)
    if high > 0:
        return _OBJECTIVE_CRITICAL
    if medium > len(kr_risks) / 2:
        return _OBJECTIVE_AT_RISK
    return _OBJECTIVE_ON_TRACK


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


@dataclass
class KrSignals:
    title: str
    metric_name: str | None
    unit: str | None
    target_value: float | None
    current_value: float | None
    progress_pct: float | None
    health: str
    checkin_count: int
    last_checkin_value: float | None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class KrSummarySignal:
    id: str
    title: str
    progress_pct: float | None
    health: str
    risk: str | None
    insight_short: str | None = None


@dataclass
class ObjectiveSignals:
    statement: str
    start_date: date
    end_date: date
    status: str
    krs: list[KrSummarySignal] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["start_date"] = self.start_date.isoformat()
        data["end_date"] = self.end_date.isoformat()
        return data


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class InsightEngine:
    def __init__(self, provider: InsightProvider | None = None):
        self.provider = provider

    async def kr_insight(self, signals: KrSignals) -> InsightDraft:
        rules = rule_kr_insight(signals.target_value, signals.current_value, signals.checkin_count)
        if self.provider is None:
            return rules
        result = await self.provider.generate(KIND_KR, signals.as_dict())
        if not result.ok:
            log.debug("KR insight falling back to rules (%s: %s)", result.status, result.reason)
            return rules
        out = result.output
        return InsightDraft(
            explanation_short=out.explanation_short,  # type: ignore[union-attr]
            explanation_long=out.explanation_long,  # type: ignore[union-attr]
            suggestion=out.suggestion,  # type: ignore[union-attr]
            risk=out.risk,  # type: ignore[union-attr]
            source=SOURCE_GENERATED,
            version=GENERATED_VERSION,
        )

    async def objective_insight(self, signals: ObjectiveSignals) -> InsightDraft:
        rules = rule_objective_insight([kr.risk for kr in signals.krs])
        if self.provider is None:
            return rules
        result = await self.provider.generate(KIND_OBJECTIVE, signals.as_dict())
        if not result.ok:
            log.debug("Objective insight falling back to rules (%s: %s)", result.status, result.reason)
            return rules
        out = result.output
        return InsightDraft(
            explanation_short=out.explanation_short,  # type: ignore[union-attr]
            explanation_long=out.explanation_long,  # type: ignore[union-attr]
            suggestion=out.suggestion,  # type: ignore[union-attr]
            source=SOURCE_GENERATED,
            version=GENERATED_VERSION,
        )
