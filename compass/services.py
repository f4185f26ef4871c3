"""Shared business logic for the Compass API.

Every write fully awaits its insight cascade before returning, so the caller
sees fresh insights on its next read. Functions flush but never commit; the
caller owns the transaction.
"""
from __future__ import annotations

import hashlib
import json
import logging
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from compass import progress
from compass.alignment import AlignmentGraph
from compass.authz import AuthzResolver, build_owner_membership
from compass.cascade import RecomputeCascade, observed_value
from compass.errors import NotFound, PermissionDenied, ValidationError
from compass.insights import InsightEngine
from compass.llm import KIND_VALIDATE_KR, KIND_VALIDATE_OBJECTIVE, InsightProvider, LLMInsightProvider
from compass.schemas import InsightRecord, KeyResultRecord, ObjectiveRecord
from compass.store import SqlStore
from compass.tenants import ensure_tenant

log = logging.getLogger(__name__)

OBJECTIVE_STATUSES = ("draft", "active", "closed")


# ---------------------------------------------------------------------------
# Wiring helpers
# ---------------------------------------------------------------------------


def _ensure_provider(provider: InsightProvider | None) -> InsightProvider:
    return provider if provider is not None else LLMInsightProvider()


def _authz(store: SqlStore, mode: str | None) -> AuthzResolver:
    return AuthzResolver(store, mode)


def _cascade(store: SqlStore, provider: InsightProvider | None) -> RecomputeCascade:
    return RecomputeCascade(store, InsightEngine(_ensure_provider(provider)))


# ---------------------------------------------------------------------------
# Rule validation
# ---------------------------------------------------------------------------


def _issue(severity: str, code: str, message: str, fix: str) -> dict[str, str]:
    return {"severity": severity, "code": code, "message": message, "fix_suggestion": fix}


def rule_validate_objective(statement: str, start_date: date | None, end_date: date | None) -> list[dict[str, str]]:
    issues: list[dict[str, str]] = []
    if not statement or len(statement.strip()) < 5:
        issues.append(_issue(
            "high", "objective_short", "The objective is empty or too short.",
            "Write a specific, measurable objective.",
        ))
    if start_date is None or end_date is None or start_date > end_date:
        issues.append(_issue(
            "high", "dates_invalid", "The objective dates are invalid.",
            "Make sure the start date is before the end date.",
        ))
    return issues


def rule_validate_kr(title: str, target_value: float | None) -> list[dict[str, str]]:
    issues: list[dict[str, str]] = []
    if not title or len(title.strip()) < 3:
        issues.append(_issue(
            "high", "kr_title_short", "The key result title is too short.",
            "Write a measurable, specific key result.",
        ))
    if not progress.has_target(target_value):
        issues.append(_issue(
            "high", "kr_target_missing", "A numeric target greater than 0 is required.",
            "Define a numeric target.",
        ))
    return issues


def _has_high(issues: list[dict[str, str]]) -> bool:
    return any(i["severity"] == "high" for i in issues)


def rule_validate_okr(
    statement: str, start_date: date | None, end_date: date | None, key_results: list[dict[str, Any]],
) -> list[dict[str, str]]:
    """Rules for a whole draft: the objective checks plus every KR in it."""
    issues = rule_validate_objective(statement, start_date, end_date)
    if not key_results:
        issues.append(_issue(
            "high", "krs_missing", "An OKR needs at least one key result.",
            "Add numeric, measurable key results.",
        ))
    for kr in key_results:
        title = kr.get("title") or ""
        if len(title.strip()) < 3:
            issues.append(_issue(
                "medium", "kr_title_short", "A key result title is too short.",
                "Name the KR after a concrete metric.",
            ))
        if not progress.has_target(kr.get("target_value")):
            issues.append(_issue(
                "high", "kr_target_missing", "Every key result needs a numeric target greater than 0.",
                "Define a coherent numeric target.",
            ))
    return issues


def okr_fingerprint(
    statement: str, start_date: date | None, end_date: date | None, key_results: list[dict[str, Any]],
) -> str:
    """Stable hash of a draft, so a client can tell whether a validation is still current."""
    payload = {
        "objective": (statement or "").strip(),
        "start_date": start_date.isoformat() if start_date else "",
        "end_date": end_date.isoformat() if end_date else "",
        "key_results": [
            {
                "title": (kr.get("title") or "").strip(),
                "metric_name": kr.get("metric_name") or None,
                "unit": kr.get("unit") or None,
                "target_value": None if kr.get("target_value") is None else float(kr["target_value"]),
            }
            for kr in key_results
        ],
    }
    return hashlib.sha256(json.dumps(payload, ensure_ascii=False, sort_keys=True).encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Draft validation
# ---------------------------------------------------------------------------


def _generated_issues(output) -> list[dict[str, str | None]]:
    return [
        {"severity": i.severity, "code": i.code, "message": i.message, "fix_suggestion": i.fix_suggestion}
        for i in output.issues
    ]


async def validate_key_result(
    title: str, *, metric_name: str | None = None, unit: str | None = None,
    target_value: float | None = None, provider: InsightProvider | None = None,
) -> dict[str, Any]:
    """Review a KR draft with the provider; rule issues when it has no usable answer."""
    result = await _ensure_provider(provider).generate(KIND_VALIDATE_KR, {
        "title": title, "metricName": metric_name, "unit": unit, "targetValue": target_value,
    })
    if not result.ok:
        log.info("KR validation fell back to rules (%s: %s)", result.status, result.reason)
        return {"source": "rules", "issues": rule_validate_kr(title, target_value)}
    return {
        "source": "generated",
        "issues": _generated_issues(result.output),
        "suggested_target_value": result.output.suggested_target_value,
    }


async def validate_okr(
    statement: str, start_date: date | None, end_date: date | None,
    key_results: list[dict[str, Any]], *, provider: InsightProvider | None = None,
) -> dict[str, Any]:
    """Review a whole OKR draft. The response always carries the draft's fingerprint."""
    fingerprint = okr_fingerprint(statement, start_date, end_date, key_results)
    log.info("Validating OKR draft %s (%d KRs)", fingerprint[:12], len(key_results))
    result = await _ensure_provider(provider).generate(KIND_VALIDATE_OBJECTIVE, {
        "today": date.today().isoformat(),
        "objective": statement,
        "fromDate": start_date, "toDate": end_date,
        "krs": [
            {"title": kr.get("title"), "metricName": kr.get("metric_name"),
             "unit": kr.get("unit"), "targetValue": kr.get("target_value")}
            for kr in key_results
        ],
    })
    if not result.ok:
        log.info("OKR validation fell back to rules (%s: %s)", result.status, result.reason)
        return {
            "source": "rules", "fingerprint": fingerprint,
            "issues": rule_validate_okr(statement, start_date, end_date, key_results),
        }
    return {
        "source": "generated", "fingerprint": fingerprint,
        "issues": _generated_issues(result.output),
        "score": result.output.score,
    }


async def generation_status(provider: InsightProvider | None = None) -> dict[str, Any]:
    provider = _ensure_provider(provider)
    ok = await provider.ping()
    return {
        "enabled": bool(getattr(provider, "enabled", True)),
        "ok": ok,
        "checked_at": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def insight_out(record: InsightRecord | None) -> dict[str, Any] | None:
    if record is None:
        return None
    return {
        "risk": record.risk,
        "explanation_short": record.explanation_short,
        "explanation_long": record.explanation_long,
        "suggestion": record.suggestion,
        "source": record.source,
        "version": record.version,
        "computed_at": record.computed_at.isoformat() if record.computed_at else None,
    }


def key_result_out(store: SqlStore, kr: KeyResultRecord) -> dict[str, Any]:
    checkins = store.list_checkins_by_key_result(kr.tenant_id, kr.id)
    current = observed_value(kr, len(checkins))
    return {
        "id": kr.id, "objective_id": kr.objective_id, "title": kr.title,
        "metric_name": kr.metric_name, "unit": kr.unit,
        "target_value": kr.target_value, "current_value": kr.current_value,
        "progress_pct": progress.progress_pct(current, kr.target_value),
        "health": progress.health(current, kr.target_value),
        "insight": insight_out(store.get_kr_insight(kr.tenant_id, kr.id)),
    }


def objective_summary_stats(store: SqlStore, obj: ObjectiveRecord) -> dict[str, Any]:
    """Board rollup: KR count, mean progress over KRs with a target, health counts."""
    counts = {state: 0 for state in progress.HEALTH_STATES}
    pcts: list[float] = []
    krs = store.list_key_results_by_objective(obj.tenant_id, obj.id)
    for kr in krs:
        current = observed_value(kr, len(store.list_checkins_by_key_result(kr.tenant_id, kr.id)))
        counts[progress.health(current, kr.target_value)] += 1
        pct = progress.progress_pct(current, kr.target_value)
        if pct is not None:
            pcts.append(pct)
    return {
        "kr_count": len(krs),
        "avg_progress_pct": round(sum(pcts) / len(pcts), 1) if pcts else None,
        "health_counts": counts,
        "overall_health": progress.overall_health(counts),
    }


def objective_summary(store: SqlStore, obj: ObjectiveRecord) -> dict[str, Any]:
    return {
        "id": obj.id, "statement": obj.statement,
        "start_date": obj.start_date, "end_date": obj.end_date, "status": obj.status,
        "insight": insight_out(store.get_objective_insight(obj.tenant_id, obj.id)),
        "summary": objective_summary_stats(store, obj),
    }


def _aligned(store: SqlStore, tenant_id: str, ids: list[str]) -> list[dict[str, Any]]:
    items = []
    for oid in ids:
        try:
            obj = store.get_objective(tenant_id, oid)
        except NotFound:
            continue
        items.append({
            "id": obj.id, "statement": obj.statement,
            "start_date": obj.start_date, "end_date": obj.end_date, "status": obj.status,
        })
    return sorted(items, key=lambda o: o["start_date"], reverse=True)


def objective_detail(store: SqlStore, obj: ObjectiveRecord) -> dict[str, Any]:
    graph = AlignmentGraph(store)
    base = objective_summary(store, obj)
    base["key_results"] = [
        key_result_out(store, kr)
        for kr in store.list_key_results_by_objective(obj.tenant_id, obj.id)
    ]
    base["aligned_to"] = _aligned(store, obj.tenant_id, graph.parents_of(obj.tenant_id, obj.id))
    base["aligned_from"] = _aligned(store, obj.tenant_id, graph.children_of(obj.tenant_id, obj.id))
    return base


# ---------------------------------------------------------------------------
# Objectives
# ---------------------------------------------------------------------------


def create_objective(
    session: Session, tenant_id: str, user_id: str,
    statement: str, start_date: date, end_date: date,
) -> ObjectiveRecord:
    """Create an objective owned by its creator, seeded with the "no KRs" insight."""
    issues = rule_validate_objective(statement, start_date, end_date)
    if _has_high(issues):
        raise ValidationError("objective_validation_failed", issues=issues)
    ensure_tenant(session, tenant_id)
    store = SqlStore(session)
    obj = store.create_objective(tenant_id, statement.strip(), start_date, end_date)
    store.add_membership(build_owner_membership(tenant_id, obj.id, user_id))
    RecomputeCascade(store).ensure_initial_insight(tenant_id, obj.id)
    return obj


def list_objectives(session: Session, tenant_id: str, user_id: str, *, mode: str | None = None) -> list[dict]:
    store = SqlStore(session)
    authz = _authz(store, mode)
    visible = []
    for obj in store.list_objectives(tenant_id):
        try:
            authz.require_view(tenant_id, obj.id, user_id)
        except PermissionDenied:
            continue
        visible.append(objective_summary(store, obj))
    return visible


def get_objective(
    session: Session, tenant_id: str, user_id: str, objective_id: str, *, mode: str | None = None,
) -> dict[str, Any]:
    store = SqlStore(session)
    obj = store.get_objective(tenant_id, objective_id)
    _authz(store, mode).require_view(tenant_id, objective_id, user_id)
    return objective_detail(store, obj)


def set_objective_status(
    session: Session, tenant_id: str, user_id: str, objective_id: str, status: str,
    *, mode: str | None = None,
) -> ObjectiveRecord:
    if status not in OBJECTIVE_STATUSES:
        raise ValidationError("invalid_status", f"Invalid status: {status!r}")
    store = SqlStore(session)
    store.get_objective(tenant_id, objective_id)
    _authz(store, mode).require_edit(tenant_id, objective_id, user_id)
    return store.set_objective_status(tenant_id, objective_id, status)


def delete_objective(
    session: Session, tenant_id: str, user_id: str, objective_id: str, *, mode: str | None = None,
) -> None:
    store = SqlStore(session)
    store.get_objective(tenant_id, objective_id)
    _authz(store, mode).require_delete(tenant_id, objective_id, user_id)
    store.delete_objective(tenant_id, objective_id)
    log.info("Deleted objective %s (tenant %s)", objective_id, tenant_id)


# ---------------------------------------------------------------------------
# Key results & check-ins
# ---------------------------------------------------------------------------


async def create_key_result(
    session: Session, tenant_id: str, user_id: str, objective_id: str, title: str,
    *, metric_name: str | None = None, unit: str | None = None,
    target_value: float | None = None, allow_high: bool = False,
    mode: str | None = None, provider: InsightProvider | None = None,
) -> tuple[KeyResultRecord, list[dict[str, str]]]:
    """Create a KR and cascade insights. Returns the KR and its validation issues."""
    store = SqlStore(session)
    store.get_objective(tenant_id, objective_id)
    _authz(store, mode).require_edit(tenant_id, objective_id, user_id)
    issues = rule_validate_kr(title, target_value)
    if _has_high(issues) and not allow_high:
        raise ValidationError("kr_validation_failed", issues=issues)
    kr = store.create_key_result(
        tenant_id, objective_id, title.strip(),
        metric_name=metric_name, unit=unit, target_value=target_value,
    )
    await _cascade(store, provider).on_key_result_changed(tenant_id, kr.id)
    return kr, issues


def list_key_results(
    session: Session, tenant_id: str, user_id: str, objective_id: str, *, mode: str | None = None,
) -> list[dict[str, Any]]:
    store = SqlStore(session)
    store.get_objective(tenant_id, objective_id)
    _authz(store, mode).require_view(tenant_id, objective_id, user_id)
    return [key_result_out(store, kr) for kr in store.list_key_results_by_objective(tenant_id, objective_id)]


async def add_checkin(
    session: Session, tenant_id: str, user_id: str, kr_id: str, value: float,
    *, comment: str | None = None, mode: str | None = None,
    provider: InsightProvider | None = None,
) -> dict[str, Any]:
    """Record a check-in, move the KR's current value, and cascade insights."""
    store = SqlStore(session)
    kr = store.get_key_result(tenant_id, kr_id)
    _authz(store, mode).require_edit(tenant_id, kr.objective_id, user_id)
    pct = progress.progress_pct(kr.current_value, kr.target_value)
    if pct is not None and pct >= 100:
        raise ValidationError("kr_already_completed")
    checkin = store.add_checkin(tenant_id, kr_id, value, comment=comment, created_by=user_id)
    await _cascade(store, provider).on_key_result_changed(tenant_id, kr_id)
    return checkin_out(checkin)


def checkin_out(checkin) -> dict[str, Any]:
    return {
        "id": checkin.id, "key_result_id": checkin.key_result_id,
        "value": checkin.value, "comment": checkin.comment,
        "created_at": checkin.created_at.isoformat() if checkin.created_at else None,
    }


def list_checkins(
    session: Session, tenant_id: str, user_id: str, kr_id: str, *, mode: str | None = None,
) -> list[dict[str, Any]]:
    store = SqlStore(session)
    kr = store.get_key_result(tenant_id, kr_id)
    _authz(store, mode).require_view(tenant_id, kr.objective_id, user_id)
    return [checkin_out(c) for c in store.list_checkins_by_key_result(tenant_id, kr_id)]


def key_result_delete_info(
    session: Session, tenant_id: str, user_id: str, kr_id: str, *, mode: str | None = None,
) -> dict[str, Any]:
    store = SqlStore(session)
    kr = store.get_key_result(tenant_id, kr_id)
    _authz(store, mode).require_view(tenant_id, kr.objective_id, user_id)
    return {
        "key_result_id": kr_id,
        "checkins_count": len(store.list_checkins_by_key_result(tenant_id, kr_id)),
    }


async def delete_key_result(
    session: Session, tenant_id: str, user_id: str, kr_id: str,
    *, mode: str | None = None, provider: InsightProvider | None = None,
) -> dict[str, Any]:
    """Delete a KR (check-ins and insight included) and refresh its objective's insight."""
    store = SqlStore(session)
    kr = store.get_key_result(tenant_id, kr_id)
    _authz(store, mode).require_edit(tenant_id, kr.objective_id, user_id)
    count = store.delete_key_result(tenant_id, kr_id)
    log.info("Deleted KR %s (%d check-ins) from objective %s", kr_id, count, kr.objective_id)
    await _cascade(store, provider).on_objective_changed(tenant_id, kr.objective_id)
    return {"key_result_id": kr_id, "checkins_count": count}


# ---------------------------------------------------------------------------
# Insights
# ---------------------------------------------------------------------------


def get_kr_insight(
    session: Session, tenant_id: str, user_id: str, kr_id: str, *, mode: str | None = None,
) -> dict[str, Any]:
    store = SqlStore(session)
    kr = store.get_key_result(tenant_id, kr_id)
    _authz(store, mode).require_view(tenant_id, kr.objective_id, user_id)
    record = store.get_kr_insight(tenant_id, kr_id)
    if record is None:
        raise NotFound("kr_insight_not_found")
    return insight_out(record)  # type: ignore[return-value]


def get_objective_insight(
    session: Session, tenant_id: str, user_id: str, objective_id: str, *, mode: str | None = None,
) -> dict[str, Any]:
    store = SqlStore(session)
    store.get_objective(tenant_id, objective_id)
    _authz(store, mode).require_view(tenant_id, objective_id, user_id)
    record = store.get_objective_insight(tenant_id, objective_id)
    if record is None:
        raise NotFound("objective_insight_not_found")
    return insight_out(record)  # type: ignore[return-value]


async def recompute_objective(
    session: Session, tenant_id: str, user_id: str, objective_id: str,
    *, mode: str | None = None, provider: InsightProvider | None = None,
) -> dict[str, Any]:
    """Recompute every KR insight of an objective, then the objective's own."""
    store = SqlStore(session)
    store.get_objective(tenant_id, objective_id)
    _authz(store, mode).require_edit(tenant_id, objective_id, user_id)
    cascade = _cascade(store, provider)
    krs = store.list_key_results_by_objective(tenant_id, objective_id)
    for kr in krs:
        await cascade.on_key_result_changed(tenant_id, kr.id)
    if not krs:
        await cascade.on_objective_changed(tenant_id, objective_id)
    return insight_out(store.get_objective_insight(tenant_id, objective_id))  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Alignment
# ---------------------------------------------------------------------------


def link_objectives(
    session: Session, tenant_id: str, user_id: str, child_id: str, parent_id: str,
    *, mode: str | None = None,
) -> None:
    """Record that *child_id* contributes to *parent_id*."""
    store = SqlStore(session)
    store.get_objective(tenant_id, child_id)
    store.get_objective(tenant_id, parent_id)
    _authz(store, mode).require_edit(tenant_id, child_id, user_id)
    AlignmentGraph(store).link(tenant_id, parent_id, child_id)


def unlink_objectives(
    session: Session, tenant_id: str, user_id: str, child_id: str, parent_id: str,
    *, mode: str | None = None,
) -> None:
    store = SqlStore(session)
    store.get_objective(tenant_id, child_id)
    _authz(store, mode).require_edit(tenant_id, child_id, user_id)
    AlignmentGraph(store).unlink(tenant_id, parent_id, child_id)


def get_alignment(
    session: Session, tenant_id: str, user_id: str, objective_id: str, *, mode: str | None = None,
) -> dict[str, list[dict[str, Any]]]:
    store = SqlStore(session)
    store.get_objective(tenant_id, objective_id)
    _authz(store, mode).require_view(tenant_id, objective_id, user_id)
    graph = AlignmentGraph(store)
    return {
        "aligned_to": _aligned(store, tenant_id, graph.parents_of(tenant_id, objective_id)),
        "aligned_from": _aligned(store, tenant_id, graph.children_of(tenant_id, objective_id)),
    }


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------


def list_members(
    session: Session, tenant_id: str, user_id: str, objective_id: str, *, mode: str | None = None,
) -> list[dict[str, Any]]:
    store = SqlStore(session)
    store.get_objective(tenant_id, objective_id)
    _authz(store, mode).require_view(tenant_id, objective_id, user_id)
    return [
        {"user_id": m.user_id, "role": m.role, "created_by": m.created_by}
        for m in store.list_memberships(tenant_id, objective_id)
    ]


def add_member(
    session: Session, tenant_id: str, actor_id: str, objective_id: str, user_id: str, role: str,
    *, mode: str | None = None,
) -> str:
    store = SqlStore(session)
    store.get_objective(tenant_id, objective_id)
    return _authz(store, mode).add_member(tenant_id, objective_id, actor_id, user_id, role)


def change_member_role(
    session: Session, tenant_id: str, actor_id: str, objective_id: str, user_id: str, role: str,
    *, mode: str | None = None,
) -> None:
    store = SqlStore(session)
    store.get_objective(tenant_id, objective_id)
    _authz(store, mode).change_role(tenant_id, objective_id, actor_id, user_id, role)


def remove_member(
    session: Session, tenant_id: str, actor_id: str, objective_id: str, user_id: str,
    *, mode: str | None = None,
) -> None:
    store = SqlStore(session)
    store.get_objective(tenant_id, objective_id)
    _authz(store, mode).remove_member(tenant_id, objective_id, actor_id, user_id)
