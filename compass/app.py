from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Generator

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from compass import services
from compass.authz import authz_mode_from_env
from compass.db import init_db, session_generator, session_scope
from compass.errors import CompassError, NotFound, PermissionDenied, ValidationError
from compass.llm import InsightProvider, LLMInsightProvider
from compass.schemas import (
    AIStatusOut,
    AlignmentCreate,
    AlignmentOut,
    CheckinCreate,
    CheckinOut,
    DeleteInfo,
    InsightOut,
    KeyResultCreate,
    KeyResultDraft,
    KeyResultOut,
    MemberCreate,
    MemberOut,
    MemberRoleUpdate,
    ObjectiveCreate,
    ObjectiveDetail,
    ObjectiveOut,
    ObjectiveStatusUpdate,
    ObjectiveValidateRequest,
    ValidationOut,
)
from compass.store import SqlStore
from compass.tenants import TenantRegistry

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    tenants = TenantRegistry()
    with session_scope() as session:
        log.info("Default tenant: %s", tenants.initialize(session))
    app.state.tenants = tenants
    yield
    tenants.invalidate()


app = FastAPI(
    title="Compass",
    version="0.1.0",
    description=(
        "OKR tracking API. Objectives, key results and check-ins, with "
        "derived progress, health and insights kept consistent on every write. "
        "Caller identity is passed in the X-User-Id header; X-Tenant-Id is optional "
        "and defaults to the default tenant."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Objectives", "description": "Create, browse and close objectives."},
        {"name": "Key Results", "description": "Key results and their check-ins."},
        {"name": "Insights", "description": "Derived explanations, suggestions and risk."},
        {"name": "Alignment", "description": "Contribution links between objectives."},
        {"name": "Members", "description": "Per-objective roles."},
        {"name": "Validation", "description": "Draft review before objectives and key results are saved."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


@dataclass(frozen=True)
class Caller:
    tenant_id: str
    user_id: str


def caller(
    request: Request,
    x_user_id: str = Header(...),
    x_tenant_id: str | None = Header(None),
    session: Session = Depends(db_session),
) -> Caller:
    """Identity from headers; a missing tenant header means the default tenant."""
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        tenant_id = request.app.state.tenants.default_tenant_id(session)
    return Caller(tenant_id=tenant_id, user_id=x_user_id.strip())


def authz_mode() -> str:
    return authz_mode_from_env()


def insight_provider() -> InsightProvider:
    return LLMInsightProvider()


def _status_for(exc: CompassError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, PermissionDenied):
        return 403
    if isinstance(exc, ValidationError):
        return 409 if exc.code == "kr_already_completed" else 400
    return 500


@app.exception_handler(CompassError)
async def compass_error_handler(request: Request, exc: CompassError):
    body: dict = {"error": exc.code}
    if isinstance(exc, ValidationError) and exc.issues:
        body["issues"] = exc.issues
    return JSONResponse(status_code=_status_for(exc), content=body)


# ---------------------------------------------------------------------------
# Routes: Objectives
# ---------------------------------------------------------------------------


@app.get("/api/objectives", response_model=list[ObjectiveOut],
         tags=["Objectives"], summary="List objectives visible to the caller")
async def list_objectives(
    who: Caller = Depends(caller), mode: str = Depends(authz_mode),
    session: Session = Depends(db_session),
):
    return services.list_objectives(session, who.tenant_id, who.user_id, mode=mode)


@app.post("/api/objectives", response_model=ObjectiveDetail, status_code=201,
          tags=["Objectives"], summary="Create an objective owned by the caller")
async def create_objective(
    body: ObjectiveCreate, who: Caller = Depends(caller), session: Session = Depends(db_session),
):
    obj = services.create_objective(
        session, who.tenant_id, who.user_id, body.statement, body.start_date, body.end_date,
    )
    session.commit()
    return services.objective_detail(SqlStore(session), obj)


@app.get("/api/objectives/{objective_id}", response_model=ObjectiveDetail,
         tags=["Objectives"], summary="Objective with key results, insight and alignment")
async def get_objective(
    objective_id: str, who: Caller = Depends(caller), mode: str = Depends(authz_mode),
    session: Session = Depends(db_session),
):
    return services.get_objective(session, who.tenant_id, who.user_id, objective_id, mode=mode)


@app.put("/api/objectives/{objective_id}/status", response_model=ObjectiveOut,
         tags=["Objectives"], summary="Change objective status (draft, active, closed)")
async def set_objective_status(
    objective_id: str, body: ObjectiveStatusUpdate,
    who: Caller = Depends(caller), mode: str = Depends(authz_mode),
    session: Session = Depends(db_session),
):
    obj = services.set_objective_status(
        session, who.tenant_id, who.user_id, objective_id, body.status, mode=mode,
    )
    session.commit()
    return services.objective_summary(SqlStore(session), obj)


@app.delete("/api/objectives/{objective_id}", tags=["Objectives"],
            summary="Delete an objective with its key results, check-ins and links")
async def delete_objective(
    objective_id: str, who: Caller = Depends(caller), mode: str = Depends(authz_mode),
    session: Session = Depends(db_session),
):
    services.delete_objective(session, who.tenant_id, who.user_id, objective_id, mode=mode)
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Draft validation
# ---------------------------------------------------------------------------


@app.get("/api/ai/status", response_model=AIStatusOut,
         tags=["Validation"], summary="Whether the generation provider is enabled and reachable")
async def ai_status(provider: InsightProvider = Depends(insight_provider)):
    return await services.generation_status(provider)


@app.post("/api/objectives/validate", response_model=ValidationOut,
          dependencies=[Depends(caller)],
          tags=["Validation"], summary="Review an OKR draft before saving it")
async def validate_okr(
    body: ObjectiveValidateRequest, provider: InsightProvider = Depends(insight_provider),
):
    return await services.validate_okr(
        body.statement, body.start_date, body.end_date,
        [kr.model_dump() for kr in body.key_results], provider=provider,
    )


@app.post("/api/key-results/validate", response_model=ValidationOut,
          dependencies=[Depends(caller)],
          tags=["Validation"], summary="Review a key result draft before saving it")
async def validate_key_result(
    body: KeyResultDraft, provider: InsightProvider = Depends(insight_provider),
):
    return await services.validate_key_result(
        body.title, metric_name=body.metric_name, unit=body.unit,
        target_value=body.target_value, provider=provider,
    )


# ---------------------------------------------------------------------------
# Routes: Key Results & Check-ins
# ---------------------------------------------------------------------------


@app.get("/api/objectives/{objective_id}/key-results", response_model=list[KeyResultOut],
         tags=["Key Results"], summary="List key results with progress and insight")
async def list_key_results(
    objective_id: str, who: Caller = Depends(caller), mode: str = Depends(authz_mode),
    session: Session = Depends(db_session),
):
    return services.list_key_results(session, who.tenant_id, who.user_id, objective_id, mode=mode)


@app.post("/api/objectives/{objective_id}/key-results", status_code=201,
          tags=["Key Results"], summary="Create a key result and refresh insights")
async def create_key_result(
    objective_id: str, body: KeyResultCreate,
    who: Caller = Depends(caller), mode: str = Depends(authz_mode),
    provider: InsightProvider = Depends(insight_provider),
    session: Session = Depends(db_session),
):
    kr, issues = await services.create_key_result(
        session, who.tenant_id, who.user_id, objective_id, body.title,
        metric_name=body.metric_name, unit=body.unit, target_value=body.target_value,
        allow_high=body.allow_high, mode=mode, provider=provider,
    )
    session.commit()
    return {
        "key_result": services.key_result_out(SqlStore(session), kr),
        "issues": issues,
    }


@app.get("/api/key-results/{kr_id}/delete-info", response_model=DeleteInfo,
         tags=["Key Results"], summary="What deleting this key result would remove")
async def key_result_delete_info(
    kr_id: str, who: Caller = Depends(caller), mode: str = Depends(authz_mode),
    session: Session = Depends(db_session),
):
    return services.key_result_delete_info(session, who.tenant_id, who.user_id, kr_id, mode=mode)


@app.delete("/api/key-results/{kr_id}", response_model=DeleteInfo,
            tags=["Key Results"], summary="Delete a key result and its check-ins")
async def delete_key_result(
    kr_id: str, who: Caller = Depends(caller), mode: str = Depends(authz_mode),
    provider: InsightProvider = Depends(insight_provider),
    session: Session = Depends(db_session),
):
    info = await services.delete_key_result(
        session, who.tenant_id, who.user_id, kr_id, mode=mode, provider=provider,
    )
    session.commit()
    return info


@app.get("/api/key-results/{kr_id}/checkins", response_model=list[CheckinOut],
         tags=["Key Results"], summary="Check-ins, most recent first")
async def list_checkins(
    kr_id: str, who: Caller = Depends(caller), mode: str = Depends(authz_mode),
    session: Session = Depends(db_session),
):
    return services.list_checkins(session, who.tenant_id, who.user_id, kr_id, mode=mode)


@app.post("/api/key-results/{kr_id}/checkins", response_model=CheckinOut, status_code=201,
          tags=["Key Results"], summary="Record a check-in and refresh insights")
async def add_checkin(
    kr_id: str, body: CheckinCreate,
    who: Caller = Depends(caller), mode: str = Depends(authz_mode),
    provider: InsightProvider = Depends(insight_provider),
    session: Session = Depends(db_session),
):
    checkin = await services.add_checkin(
        session, who.tenant_id, who.user_id, kr_id, body.value,
        comment=body.comment, mode=mode, provider=provider,
    )
    session.commit()
    return checkin


# ---------------------------------------------------------------------------
# Routes: Insights
# ---------------------------------------------------------------------------


@app.get("/api/key-results/{kr_id}/insight", response_model=InsightOut,
         tags=["Insights"], summary="Current insight for a key result")
async def get_kr_insight(
    kr_id: str, who: Caller = Depends(caller), mode: str = Depends(authz_mode),
    session: Session = Depends(db_session),
):
    return services.get_kr_insight(session, who.tenant_id, who.user_id, kr_id, mode=mode)


@app.get("/api/objectives/{objective_id}/insight", response_model=InsightOut,
         tags=["Insights"], summary="Current insight for an objective")
async def get_objective_insight(
    objective_id: str, who: Caller = Depends(caller), mode: str = Depends(authz_mode),
    session: Session = Depends(db_session),
):
    return services.get_objective_insight(session, who.tenant_id, who.user_id, objective_id, mode=mode)


@app.post("/api/objectives/{objective_id}/insight/recompute", response_model=InsightOut,
          tags=["Insights"], summary="Recompute all insights of an objective")
async def recompute_objective_insight(
    objective_id: str, who: Caller = Depends(caller), mode: str = Depends(authz_mode),
    provider: InsightProvider = Depends(insight_provider),
    session: Session = Depends(db_session),
):
    insight = await services.recompute_objective(
        session, who.tenant_id, who.user_id, objective_id, mode=mode, provider=provider,
    )
    session.commit()
    return insight


# ---------------------------------------------------------------------------
# Routes: Alignment
# ---------------------------------------------------------------------------


@app.get("/api/objectives/{objective_id}/alignment", response_model=AlignmentOut,
         tags=["Alignment"], summary="Objectives this one contributes to, and those contributing to it")
async def get_alignment(
    objective_id: str, who: Caller = Depends(caller), mode: str = Depends(authz_mode),
    session: Session = Depends(db_session),
):
    return services.get_alignment(session, who.tenant_id, who.user_id, objective_id, mode=mode)


@app.post("/api/objectives/{objective_id}/alignment", response_model=AlignmentOut, status_code=201,
          tags=["Alignment"], summary="Link this objective as a contributor to a parent")
async def link_objectives(
    objective_id: str, body: AlignmentCreate,
    who: Caller = Depends(caller), mode: str = Depends(authz_mode),
    session: Session = Depends(db_session),
):
    services.link_objectives(
        session, who.tenant_id, who.user_id, objective_id, body.parent_objective_id, mode=mode,
    )
    session.commit()
    return services.get_alignment(session, who.tenant_id, who.user_id, objective_id, mode=mode)


@app.delete("/api/objectives/{objective_id}/alignment/{parent_id}", tags=["Alignment"],
            summary="Remove a contribution link")
async def unlink_objectives(
    objective_id: str, parent_id: str,
    who: Caller = Depends(caller), mode: str = Depends(authz_mode),
    session: Session = Depends(db_session),
):
    services.unlink_objectives(session, who.tenant_id, who.user_id, objective_id, parent_id, mode=mode)
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Members
# ---------------------------------------------------------------------------


@app.get("/api/objectives/{objective_id}/members", response_model=list[MemberOut],
         tags=["Members"], summary="List objective members and roles")
async def list_members(
    objective_id: str, who: Caller = Depends(caller), mode: str = Depends(authz_mode),
    session: Session = Depends(db_session),
):
    return services.list_members(session, who.tenant_id, who.user_id, objective_id, mode=mode)


@app.post("/api/objectives/{objective_id}/members", tags=["Members"],
          summary="Add a member (owners only)")
async def add_member(
    objective_id: str, body: MemberCreate,
    who: Caller = Depends(caller), mode: str = Depends(authz_mode),
    session: Session = Depends(db_session),
):
    outcome = services.add_member(
        session, who.tenant_id, who.user_id, objective_id, body.user_id, body.role, mode=mode,
    )
    session.commit()
    return {"status": outcome}


@app.put("/api/objectives/{objective_id}/members/{user_id}", tags=["Members"],
         summary="Change a member's role (owners only)")
async def change_member_role(
    objective_id: str, user_id: str, body: MemberRoleUpdate,
    who: Caller = Depends(caller), mode: str = Depends(authz_mode),
    session: Session = Depends(db_session),
):
    services.change_member_role(
        session, who.tenant_id, who.user_id, objective_id, user_id, body.role, mode=mode,
    )
    session.commit()
    return {"ok": True}


@app.delete("/api/objectives/{objective_id}/members/{user_id}", tags=["Members"],
            summary="Remove a member (owners only)")
async def remove_member(
    objective_id: str, user_id: str,
    who: Caller = Depends(caller), mode: str = Depends(authz_mode),
    session: Session = Depends(db_session),
):
    services.remove_member(session, who.tenant_id, who.user_id, objective_id, user_id, mode=mode)
    session.commit()
    return {"ok": True}


def main():
    import uvicorn
    uvicorn.run("compass.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
