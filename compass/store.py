"""SQLAlchemy-backed implementation of the engine's collaborator interfaces.

Every method converts ORM rows into pydantic records before returning, so
callers only ever see validated shapes.
"""
from __future__ import annotations

from datetime import UTC, date, datetime

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from compass.errors import NotFound
from compass.models import (
    AlignmentEdge, Checkin, KeyResult, KrInsight, Membership, Objective, ObjectiveInsight,
)
from compass.schemas import (
    CheckinRecord, InsightRecord, KeyResultRecord, MembershipRecord, ObjectiveRecord,
)


def _kr_insight_record(row: KrInsight) -> InsightRecord:
    return InsightRecord(
        id=row.id, tenant_id=row.tenant_id, entity_id=row.key_result_id, risk=row.risk,
        explanation_short=row.explanation_short, explanation_long=row.explanation_long,
        suggestion=row.suggestion, source=row.source, version=row.version,
        computed_at=row.computed_at,
    )


def _objective_insight_record(row: ObjectiveInsight) -> InsightRecord:
    return InsightRecord(
        id=row.id, tenant_id=row.tenant_id, entity_id=row.objective_id, risk=None,
        explanation_short=row.explanation_short, explanation_long=row.explanation_long,
        suggestion=row.suggestion, source=row.source, version=row.version,
        computed_at=row.computed_at,
    )


class SqlStore:
    """Read/write accessors, graph store, and membership store over one session.

    Writes are flushed, never committed; the caller owns the transaction.
    """

    def __init__(self, session: Session):
        self.session = session

    # -- rows ---------------------------------------------------------------

    def _objective_row(self, tenant_id: str, objective_id: str) -> Objective:
        row = self.session.execute(
            select(Objective).where(Objective.id == objective_id, Objective.tenant_id == tenant_id)
        ).scalars().first()
        if row is None:
            raise NotFound("objective_not_found")
        return row

    def _kr_row(self, tenant_id: str, kr_id: str) -> KeyResult:
        row = self.session.execute(
            select(KeyResult).where(KeyResult.id == kr_id, KeyResult.tenant_id == tenant_id)
        ).scalars().first()
        if row is None:
            raise NotFound("kr_not_found")
        return row

    def _membership_row(self, tenant_id: str, objective_id: str, user_id: str) -> Membership | None:
        return self.session.execute(
            select(Membership).where(
                Membership.tenant_id == tenant_id,
                Membership.objective_id == objective_id,
                Membership.user_id == user_id,
            )
        ).scalars().first()

    # -- objectives ---------------------------------------------------------

    def get_objective(self, tenant_id: str, objective_id: str) -> ObjectiveRecord:
        return ObjectiveRecord.model_validate(self._objective_row(tenant_id, objective_id))

    def list_objectives(self, tenant_id: str) -> list[ObjectiveRecord]:
        rows = self.session.execute(
            select(Objective).where(Objective.tenant_id == tenant_id)
            .order_by(Objective.created_at.desc())
        ).scalars().all()
        return [ObjectiveRecord.model_validate(r) for r in rows]

    def create_objective(
        self, tenant_id: str, statement: str, start_date: date, end_date: date,
    ) -> ObjectiveRecord:
        row = Objective(
            tenant_id=tenant_id, statement=statement,
            start_date=start_date, end_date=end_date, status="draft", created_at=datetime.now(UTC),
        )
        self.session.add(row)
        self.session.flush()
        return ObjectiveRecord.model_validate(row)

    def set_objective_status(self, tenant_id: str, objective_id: str, status: str) -> ObjectiveRecord:
        row = self._objective_row(tenant_id, objective_id)
        row.status = status
        self.session.flush()
        return ObjectiveRecord.model_validate(row)

    def delete_objective(self, tenant_id: str, objective_id: str) -> None:
        row = self._objective_row(tenant_id, objective_id)
        self.session.execute(delete(AlignmentEdge).where(
            AlignmentEdge.tenant_id == tenant_id,
            or_(
                AlignmentEdge.parent_objective_id == objective_id,
                AlignmentEdge.child_objective_id == objective_id,
            ),
        ))
        self.session.delete(row)
        self.session.flush()

    # -- key results & check-ins --------------------------------------------

    def get_key_result(self, tenant_id: str, kr_id: str) -> KeyResultRecord:
        return KeyResultRecord.model_validate(self._kr_row(tenant_id, kr_id))

    def list_key_results_by_objective(self, tenant_id: str, objective_id: str) -> list[KeyResultRecord]:
        rows = self.session.execute(
            select(KeyResult).where(
                KeyResult.tenant_id == tenant_id, KeyResult.objective_id == objective_id,
            ).order_by(KeyResult.created_at, KeyResult.id)
        ).scalars().all()
        return [KeyResultRecord.model_validate(r) for r in rows]

    def create_key_result(
        self, tenant_id: str, objective_id: str, title: str,
        metric_name: str | None = None, unit: str | None = None,
        target_value: float | None = None,
    ) -> KeyResultRecord:
        self._objective_row(tenant_id, objective_id)
        row = KeyResult(
            tenant_id=tenant_id, objective_id=objective_id, title=title,
            metric_name=metric_name, unit=unit, target_value=target_value, current_value=0.0,
            created_at=datetime.now(UTC),
        )
        self.session.add(row)
        self.session.flush()
        return KeyResultRecord.model_validate(row)

    def delete_key_result(self, tenant_id: str, kr_id: str) -> int:
        """Delete a KR with its check-ins and insight; return the check-in count."""
        row = self._kr_row(tenant_id, kr_id)
        count = len(row.checkins)
        self.session.delete(row)
        self.session.flush()
        return count

    def list_checkins_by_key_result(self, tenant_id: str, kr_id: str) -> list[CheckinRecord]:
        """Check-ins for a KR, most recent first."""
        self._kr_row(tenant_id, kr_id)
        rows = self.session.execute(
            select(Checkin).where(Checkin.tenant_id == tenant_id, Checkin.key_result_id == kr_id)
            .order_by(Checkin.seq.desc())
        ).scalars().all()
        return [CheckinRecord.model_validate(r) for r in rows]

    def add_checkin(
        self, tenant_id: str, kr_id: str, value: float,
        comment: str | None = None, created_by: str | None = None,
    ) -> CheckinRecord:
        """Append a check-in and move the KR's current value to it."""
        kr = self._kr_row(tenant_id, kr_id)
        last_seq = self.session.execute(
            select(func.max(Checkin.seq)).where(Checkin.key_result_id == kr_id)
        ).scalar()
        row = Checkin(
            tenant_id=tenant_id, key_result_id=kr_id, value=value, comment=comment,
            created_by=created_by, seq=(last_seq or 0) + 1, created_at=datetime.now(UTC),
        )
        self.session.add(row)
        kr.current_value = value
        self.session.flush()
        return CheckinRecord.model_validate(row)

    # -- insights -----------------------------------------------------------

    def get_kr_insight(self, tenant_id: str, kr_id: str) -> InsightRecord | None:
        row = self.session.execute(
            select(KrInsight).where(KrInsight.tenant_id == tenant_id, KrInsight.key_result_id == kr_id)
        ).scalars().first()
        return _kr_insight_record(row) if row else None

    def get_objective_insight(self, tenant_id: str, objective_id: str) -> InsightRecord | None:
        row = self.session.execute(
            select(ObjectiveInsight).where(
                ObjectiveInsight.tenant_id == tenant_id, ObjectiveInsight.objective_id == objective_id,
            )
        ).scalars().first()
        return _objective_insight_record(row) if row else None

    def upsert_kr_insight(self, record: InsightRecord) -> InsightRecord:
        row = self.session.execute(
            select(KrInsight).where(
                KrInsight.tenant_id == record.tenant_id, KrInsight.key_result_id == record.entity_id,
            )
        ).scalars().first()
        if row is None:
            row = KrInsight(id=record.id, tenant_id=record.tenant_id, key_result_id=record.entity_id)
            self.session.add(row)
        row.risk = record.risk or "high"
        row.explanation_short = record.explanation_short
        row.explanation_long = record.explanation_long
        row.suggestion = record.suggestion
        row.source = record.source
        row.version = record.version
        row.computed_at = record.computed_at or datetime.now(UTC)
        self.session.flush()
        return _kr_insight_record(row)

    def upsert_objective_insight(self, record: InsightRecord) -> InsightRecord:
        row = self.session.execute(
            select(ObjectiveInsight).where(
                ObjectiveInsight.tenant_id == record.tenant_id,
                ObjectiveInsight.objective_id == record.entity_id,
            )
        ).scalars().first()
        if row is None:
            row = ObjectiveInsight(id=record.id, tenant_id=record.tenant_id, objective_id=record.entity_id)
            self.session.add(row)
        row.explanation_short = record.explanation_short
        row.explanation_long = record.explanation_long
        row.suggestion = record.suggestion
        row.source = record.source
        row.version = record.version
        row.computed_at = record.computed_at or datetime.now(UTC)
        self.session.flush()
        return _objective_insight_record(row)

    # -- graph store --------------------------------------------------------

    def edges_for_tenant(self, tenant_id: str) -> set[tuple[str, str]]:
        rows = self.session.execute(
            select(AlignmentEdge.parent_objective_id, AlignmentEdge.child_objective_id)
            .where(AlignmentEdge.tenant_id == tenant_id)
        ).all()
        return {(parent, child) for parent, child in rows}

    def has_edge(self, tenant_id: str, parent_id: str, child_id: str) -> bool:
        return self.session.execute(
            select(AlignmentEdge.id).where(
                AlignmentEdge.tenant_id == tenant_id,
                AlignmentEdge.parent_objective_id == parent_id,
                AlignmentEdge.child_objective_id == child_id,
            )
        ).first() is not None

    def add_edge(self, tenant_id: str, parent_id: str, child_id: str) -> None:
        if self.has_edge(tenant_id, parent_id, child_id):
            return
        self.session.add(AlignmentEdge(
            tenant_id=tenant_id, parent_objective_id=parent_id, child_objective_id=child_id,
        ))
        self.session.flush()

    def remove_edge(self, tenant_id: str, parent_id: str, child_id: str) -> None:
        self.session.execute(delete(AlignmentEdge).where(
            AlignmentEdge.tenant_id == tenant_id,
            AlignmentEdge.parent_objective_id == parent_id,
            AlignmentEdge.child_objective_id == child_id,
        ))
        self.session.flush()

    # -- membership store ---------------------------------------------------

    def get_membership(self, tenant_id: str, objective_id: str, user_id: str) -> MembershipRecord | None:
        row = self._membership_row(tenant_id, objective_id, user_id)
        return MembershipRecord.model_validate(row) if row else None

    def list_memberships(self, tenant_id: str, objective_id: str) -> list[MembershipRecord]:
        rows = self.session.execute(
            select(Membership).where(
                Membership.tenant_id == tenant_id, Membership.objective_id == objective_id,
            ).order_by(Membership.created_at, Membership.id)
        ).scalars().all()
        return [MembershipRecord.model_validate(r) for r in rows]

    def add_membership(self, record: MembershipRecord) -> str:
        """Insert a membership; ``"exists"`` when the user already has one."""
        if self._membership_row(record.tenant_id, record.objective_id, record.user_id):
            return "exists"
        self.session.add(Membership(
            tenant_id=record.tenant_id, objective_id=record.objective_id,
            user_id=record.user_id, role=record.role, created_by=record.created_by,
        ))
        self.session.flush()
        return "created"

    def update_membership_role(self, tenant_id: str, objective_id: str, user_id: str, role: str) -> None:
        row = self._membership_row(tenant_id, objective_id, user_id)
        if row is None:
            raise NotFound("member_not_found")
        row.role = role
        self.session.flush()

    def remove_membership(self, tenant_id: str, objective_id: str, user_id: str) -> None:
        self.session.execute(delete(Membership).where(
            Membership.tenant_id == tenant_id,
            Membership.objective_id == objective_id,
            Membership.user_id == user_id,
        ))
        self.session.flush()

    def count_owners(self, tenant_id: str, objective_id: str) -> int:
        return self.session.execute(
            select(func.count(Membership.id)).where(
                Membership.tenant_id == tenant_id,
                Membership.objective_id == objective_id,
                Membership.role == "owner",
            )
        ).scalar() or 0

    def count_memberships(self, tenant_id: str, objective_id: str) -> int:
        return self.session.execute(
            select(func.count(Membership.id)).where(
                Membership.tenant_id == tenant_id, Membership.objective_id == objective_id,
            )
        ).scalar() or 0
