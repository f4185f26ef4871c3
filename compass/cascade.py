"""Recompute cascade: KR change -> KR insight -> parent objective insight.

The KR insight is fully persisted before the objective recompute starts,
because the objective reads the KR's stored risk. Nothing here is run in
parallel, and nothing is locked: two racing writers on the same entity are
last-writer-wins.
"""
from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Protocol

from compass import progress
from compass.insights import (
    InsightDraft, InsightEngine, KrSignals, KrSummarySignal, ObjectiveSignals,
    rule_kr_insight, rule_objective_insight,
)
from compass.models import new_id
from compass.schemas import (
    CheckinRecord, InsightRecord, KeyResultRecord, ObjectiveRecord,
)

log = logging.getLogger(__name__)


class InsightStore(Protocol):
    def get_objective(self, tenant_id: str, objective_id: str) -> ObjectiveRecord: ...
    def get_key_result(self, tenant_id: str, kr_id: str) -> KeyResultRecord: ...
    def list_key_results_by_objective(self, tenant_id: str, objective_id: str) -> list[KeyResultRecord]: ...
    def list_checkins_by_key_result(self, tenant_id: str, kr_id: str) -> list[CheckinRecord]: ...
    def get_kr_insight(self, tenant_id: str, kr_id: str) -> InsightRecord | None: ...
    def upsert_kr_insight(self, record: InsightRecord) -> InsightRecord: ...
    def upsert_objective_insight(self, record: InsightRecord) -> InsightRecord: ...


def observed_value(kr: KeyResultRecord, checkin_count: int) -> float | None:
    """The KR's current value, or None while nothing has been checked in.

    ``current_value`` defaults to 0 on creation; that default is not an
    observation.
    """
    return kr.current_value if checkin_count > 0 else None


def kr_signals(kr: KeyResultRecord, checkins: list[CheckinRecord]) -> KrSignals:
    """Build KR signals; *checkins* must be most-recent-first."""
    current = observed_value(kr, len(checkins))
    return KrSignals(
        title=kr.title,
        metric_name=kr.metric_name,
        unit=kr.unit,
        target_value=kr.target_value,
        current_value=current,
        progress_pct=progress.progress_pct(current, kr.target_value),
        health=progress.health(current, kr.target_value),
        checkin_count=len(checkins),
        last_checkin_value=checkins[0].value if checkins else None,
    )


class RecomputeCascade:
    def __init__(self, store: InsightStore, engine: InsightEngine | None = None):
        self.store = store
        self.engine = engine or InsightEngine()

    def _record(self, tenant_id: str, entity_id: str, draft: InsightDraft) -> InsightRecord:
        return InsightRecord(
            id=new_id(),
            tenant_id=tenant_id,
            entity_id=entity_id,
            risk=draft.risk,
            explanation_short=draft.explanation_short,
            explanation_long=draft.explanation_long,
            suggestion=draft.suggestion,
            source=draft.source,
            version=draft.version,
            computed_at=datetime.now(UTC),
        )

    async def on_key_result_changed(self, tenant_id: str, kr_id: str) -> InsightRecord:
        """Recompute one KR's insight, then its objective's. Raises NotFound for unknown KRs."""
        kr = self.store.get_key_result(tenant_id, kr_id)
        checkins = self.store.list_checkins_by_key_result(tenant_id, kr_id)
        draft = await self.engine.kr_insight(kr_signals(kr, checkins))
        record = self.store.upsert_kr_insight(self._record(tenant_id, kr.id, draft))
        log.debug("KR %s insight: %s (%s v%d)", kr.id, draft.risk, draft.source, draft.version)
        await self.on_objective_changed(tenant_id, kr.objective_id)
        return record

    async def on_objective_changed(self, tenant_id: str, objective_id: str) -> InsightRecord:
        objective = self.store.get_objective(tenant_id, objective_id)
        summaries: list[KrSummarySignal] = []
        for kr in self.store.list_key_results_by_objective(tenant_id, objective_id):
            insight = self.store.get_kr_insight(tenant_id, kr.id)
            if insight is not None and insight.risk:
                risk = insight.risk
            else:
                # No stored insight yet: target/current only, no check-in history.
                risk = rule_kr_insight(kr.target_value, kr.current_value).risk
            checkin_count = len(self.store.list_checkins_by_key_result(tenant_id, kr.id))
            current = observed_value(kr, checkin_count)
            summaries.append(KrSummarySignal(
                id=kr.id,
                title=kr.title,
                progress_pct=progress.progress_pct(current, kr.target_value),
                health=progress.health(current, kr.target_value),
                risk=risk,
                insight_short=insight.explanation_short if insight else None,
            ))
        signals = ObjectiveSignals(
            statement=objective.statement,
            start_date=objective.start_date,
            end_date=objective.end_date,
            status=objective.status,
            krs=summaries,
        )
        draft = await self.engine.objective_insight(signals)
        log.debug("Objective %s insight: %r (%s v%d)", objective.id, draft.explanation_short,
                  draft.source, draft.version)
        return self.store.upsert_objective_insight(self._record(tenant_id, objective.id, draft))

    def ensure_initial_insight(self, tenant_id: str, objective_id: str) -> InsightRecord:
        """Seed the "no KRs" insight for a new objective. Rules only, never generated."""
        objective = self.store.get_objective(tenant_id, objective_id)
        return self.store.upsert_objective_insight(
            self._record(tenant_id, objective.id, rule_objective_insight([]))
        )
