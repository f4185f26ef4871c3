from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import (
    Date, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(200), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Objective(Base):
    __tablename__ = "objectives"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    statement: Mapped[str] = mapped_column(Text, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="draft")  # draft | active | closed
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    key_results: Mapped[list[KeyResult]] = relationship(
        "KeyResult", back_populates="objective", cascade="all, delete-orphan",
        order_by="KeyResult.created_at",
    )
    insight: Mapped[ObjectiveInsight | None] = relationship(
        "ObjectiveInsight", cascade="all, delete-orphan", uselist=False,
    )
    memberships: Mapped[list[Membership]] = relationship(
        "Membership", cascade="all, delete-orphan",
    )


class KeyResult(Base):
    __tablename__ = "key_results"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    objective_id: Mapped[str] = mapped_column(String(36), ForeignKey("objectives.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    metric_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    unit: Mapped[str | None] = mapped_column(String(50), nullable=True)
    target_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    current_value: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    objective: Mapped[Objective] = relationship("Objective", back_populates="key_results")
    checkins: Mapped[list[Checkin]] = relationship(
        "Checkin", back_populates="key_result", cascade="all, delete-orphan",
    )
    insight: Mapped[KrInsight | None] = relationship(
        "KrInsight", cascade="all, delete-orphan", uselist=False,
    )


class Checkin(Base):
    __tablename__ = "checkins"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    key_result_id: Mapped[str] = mapped_column(String(36), ForeignKey("key_results.id"), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    # Integer sequence breaks ties between check-ins stored within the same second
    seq: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    key_result: Mapped[KeyResult] = relationship("KeyResult", back_populates="checkins")


class AlignmentEdge(Base):
    __tablename__ = "alignment_edges"
    __table_args__ = (UniqueConstraint("tenant_id", "parent_objective_id", "child_objective_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    parent_objective_id: Mapped[str] = mapped_column(String(36), nullable=False)
    child_objective_id: Mapped[str] = mapped_column(String(36), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Membership(Base):
    __tablename__ = "memberships"
    __table_args__ = (UniqueConstraint("tenant_id", "objective_id", "user_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    objective_id: Mapped[str] = mapped_column(String(36), ForeignKey("objectives.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)  # viewer | editor | owner
    created_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class KrInsight(Base):
    __tablename__ = "kr_insights"
    __table_args__ = (UniqueConstraint("tenant_id", "key_result_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False)
    key_result_id: Mapped[str] = mapped_column(String(36), ForeignKey("key_results.id"), nullable=False)
    risk: Mapped[str] = mapped_column(String(10), nullable=False)  # low | medium | high
    explanation_short: Mapped[str] = mapped_column(String(280), default="")
    explanation_long: Mapped[str] = mapped_column(Text, default="")
    suggestion: Mapped[str] = mapped_column(String(280), default="")
    source: Mapped[str] = mapped_column(String(20), default="rules")  # rules | generated
    version: Mapped[int] = mapped_column(Integer, default=1)
    computed_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ObjectiveInsight(Base):
    __tablename__ = "objective_insights"
    __table_args__ = (UniqueConstraint("tenant_id", "objective_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False)
    objective_id: Mapped[str] = mapped_column(String(36), ForeignKey("objectives.id"), nullable=False)
    explanation_short: Mapped[str] = mapped_column(String(280), default="")
    explanation_long: Mapped[str] = mapped_column(Text, default="")
    suggestion: Mapped[str] = mapped_column(String(280), default="")
    source: Mapped[str] = mapped_column(String(20), default="rules")
    version: Mapped[int] = mapped_column(Integer, default=1)
    computed_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
