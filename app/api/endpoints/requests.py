from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import models, schemas
from app.core.database import get_db
from app.core.notifications import NotificationHub, get_notifier
from app.core.query import history
from app.core.query.connection import Connector, get_connector
from app.core.query.lifecycle import RequestLifecycle
from app.core.security import (
    get_current_user,
    validate_admin_role,
    validate_reviewer_role,
)

router = APIRouter(prefix="/requests", tags=["Requests"])

db_dep = Annotated[AsyncSession, Depends(get_db)]
user_dep = Annotated[models.User, Depends(get_current_user)]
reviewer_dep = Annotated[models.User, Depends(validate_reviewer_role)]
admin_dep = Annotated[models.User, Depends(validate_admin_role)]
params_dep = Annotated[schemas.RequestListParams, Query()]


def get_lifecycle(
    db: db_dep,
    connector: Annotated[Connector, Depends(get_connector)],
    notifier: Annotated[NotificationHub, Depends(get_notifier)],
) -> RequestLifecycle:
    return RequestLifecycle(db, connector=connector, notifier=notifier)


lifecycle_dep = Annotated[RequestLifecycle, Depends(get_lifecycle)]


def _filters(params: schemas.RequestListParams, **scope) -> history.RequestFilters:
    values = {
        "status": params.status.value if params.status else None,
        "db_instance_id": params.db_instance_id,
        "collection_name": params.collection_name,
        "developer_id": params.developer_id,
        "date_from": params.date_from,
        "date_to": params.date_to,
    }
    # Scope always wins over a caller supplied filter
    values.update(scope)
    return history.RequestFilters(**values)


def _reviewer_scope(user: models.User) -> dict:
    return {} if user.role == "admin" else {"team_lead_id": user.id}


def _ensure_can_view(request: models.AccessRequest, user: models.User):
    if user.role == "admin":
        return
    if user.id in (request.developer_id, request.team_lead_id):
        return
    raise HTTPException(
        status.HTTP_403_FORBIDDEN, "You do not have access to this request"
    )


def _ensure_can_review(request: models.AccessRequest, user: models.User):
    if user.role != "admin" and request.team_lead_id != user.id:
        raise HTTPException(
            status.HTTP_403_FORBIDDEN, "This request is assigned to another team lead"
        )


# =========================
# Developer
# =========================
@router.post(
    "",
    response_model=schemas.AccessRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_request(
    payload: schemas.AccessRequestCreate,
    current_user: user_dep,
    lifecycle: lifecycle_dep,
):
    """
    Submit a query. Reads run straight away and come back executed or
    failed; writes come back pending until the team lead decides.
    """
    return await lifecycle.create(
        developer=current_user,
        db_instance_id=payload.db_instance_id,
        query=payload.query,
        reason=payload.reason,
        team_lead_id=payload.team_lead_id or current_user.team_lead_id,
    )


@router.get("/my-requests", response_model=schemas.AccessRequestPage)
async def get_my_requests(current_user: user_dep, db: db_dep, params: params_dep):
    filters = _filters(params, developer_id=current_user.id)
    return await history.list_requests(db, filters, params.page, params.limit)


@router.get(
    "/filter-options/developer", response_model=schemas.FilterOptionsResponse
)
async def get_developer_filter_options(current_user: user_dep, db: db_dep):
    filters = history.RequestFilters(developer_id=current_user.id)
    return await history.filter_options(db, filters)


@router.post(
    "/{request_id}/resubmit",
    response_model=schemas.AccessRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
async def resubmit_request(
    request_id: int, current_user: user_dep, lifecycle: lifecycle_dep
):
    source = await lifecycle.get(request_id)
    if source.developer_id != current_user.id:
        raise HTTPException(
            status.HTTP_403_FORBIDDEN, "Only the author can resubmit a request"
        )
    return await lifecycle.resubmit(request_id, current_user)


# =========================
# Team lead
# =========================
@router.get("/team-requests", response_model=schemas.AccessRequestPage)
async def get_team_requests(reviewer: reviewer_dep, db: db_dep, params: params_dep):
    filters = _filters(params, **_reviewer_scope(reviewer))
    return await history.list_requests(db, filters, params.page, params.limit)


@router.get(
    "/filter-options/team-lead", response_model=schemas.FilterOptionsResponse
)
async def get_team_lead_filter_options(reviewer: reviewer_dep, db: db_dep):
    filters = history.RequestFilters(**_reviewer_scope(reviewer))
    return await history.filter_options(db, filters)


@router.post("/{request_id}/approve", response_model=schemas.AccessRequestResponse)
async def approve_request(
    request_id: int,
    reviewer: reviewer_dep,
    lifecycle: lifecycle_dep,
    payload: Optional[schemas.ApproveRequest] = None,
):
    request = await lifecycle.get(request_id)
    _ensure_can_review(request, reviewer)
    comment = payload.comment if payload else None
    return await lifecycle.approve(request_id, reviewer, comment)


@router.post("/{request_id}/reject", response_model=schemas.AccessRequestResponse)
async def reject_request(
    request_id: int,
    payload: schemas.RejectRequest,
    reviewer: reviewer_dep,
    lifecycle: lifecycle_dep,
):
    request = await lifecycle.get(request_id)
    _ensure_can_review(request, reviewer)
    return await lifecycle.reject(request_id, reviewer, payload.comment)


# =========================
# Admin
# =========================
@router.get("/all", response_model=schemas.AccessRequestPage)
async def get_all_requests(admin: admin_dep, db: db_dep, params: params_dep):
    return await history.list_requests(db, _filters(params), params.page, params.limit)


@router.get("/filter-options/admin", response_model=schemas.FilterOptionsResponse)
async def get_admin_filter_options(admin: admin_dep, db: db_dep):
    return await history.filter_options(db, history.RequestFilters())


# =========================
# Common
# =========================
@router.get("/{request_id}", response_model=schemas.AccessRequestResponse)
async def get_request(
    request_id: int, current_user: user_dep, lifecycle: lifecycle_dep
):
    request = await lifecycle.get(request_id)
    _ensure_can_view(request, current_user)
    return request
