"""lp_points user REST API: read-only views of the caller's own ledger.

All endpoints require JWT authentication; the token's `sub` is the user id.
"""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.lp_common.database import get_db_session
from src.lp_common.response import ApiResponse, success_response
from src.lp_gateway.auth.dependencies import Principal, get_current_principal
from src.lp_gateway.middleware.request_log import request_id_of
from src.lp_points.application.query_service import PointsQueryService
from src.lp_points.application.schemas import TransactionStatusParam, TransactionTypeParam
from src.lp_points.domain.models import TransactionFilter

router = APIRouter(prefix="/points", tags=["points"])

_queries = PointsQueryService()


@router.get("/balance")
async def get_balance(
    principal: Annotated[Principal, Depends(get_current_principal)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    data = await _queries.get_balance(db, principal.user_id)
    return success_response(data.model_dump(), request_id_of(request))


@router.get("/account")
async def get_account(
    principal: Annotated[Principal, Depends(get_current_principal)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    data = await _queries.get_account(db, principal.user_id)
    return success_response(data.model_dump(), request_id_of(request))


@router.get("/transactions")
async def list_transactions(
    principal: Annotated[Principal, Depends(get_current_principal)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
    type: TransactionTypeParam | None = Query(None, description="Filter by transaction type"),
    status: TransactionStatusParam | None = Query(None, description="Filter by status"),
    reference_type: str | None = Query(None, max_length=50),
    reference_id: str | None = Query(None, max_length=64),
    date_from: datetime | None = Query(None, description="created_at >= (ISO8601)"),
    date_to: datetime | None = Query(None, description="created_at <= (ISO8601)"),
    cursor: str | None = Query(None, description="Pagination cursor (opaque Base64)"),
    limit: int = Query(20, ge=1, le=100, description="Items per page"),
) -> ApiResponse:
    filters = TransactionFilter(
        type=type,
        status=status,
        reference_type=reference_type,
        reference_id=reference_id,
        date_from=date_from,
        date_to=date_to,
    )
    data = await _queries.list_transactions(db, principal.user_id, filters, cursor, limit)
    return success_response(data.model_dump(), request_id_of(request))


@router.get("/expiring")
async def list_expiring(
    principal: Annotated[Principal, Depends(get_current_principal)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
    days: int = Query(30, ge=1, le=365, description="Look-ahead window in days"),
) -> ApiResponse:
    data = await _queries.list_expiring(db, principal.user_id, days)
    return success_response(data.model_dump(), request_id_of(request))


@router.get("/stats")
async def get_stats(
    principal: Annotated[Principal, Depends(get_current_principal)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    data = await _queries.get_user_stats(db, principal.user_id)
    return success_response(data.model_dump(), request_id_of(request))
