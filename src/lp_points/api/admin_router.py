"""lp_points admin REST API: ledger mutations and management views.

All endpoints require a JWT with role == "admin". Mutations are attributed
to the admin's user id (created_by / adjust reference_id).
"""

from typing import Annotated

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Path, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.lp_common.database import get_db_session
from src.lp_common.redis_client import get_redis
from src.lp_common.response import ApiResponse, success_response
from src.lp_gateway.auth.dependencies import Principal, require_admin
from src.lp_gateway.middleware.request_log import request_id_of
from src.lp_points.application.expiry_sweep import ExpirySweepService
from src.lp_points.application.query_service import PointsQueryService
from src.lp_points.application.schemas import (
    AccountResponse,
    AdjustRequest,
    EarnRequest,
    ExpireRequest,
    ExpiryDaysRequest,
    PointTransactionItem,
    RedeemRequest,
    RefundRequest,
    TransactionStatusParam,
    TransactionTypeParam,
)
from src.lp_points.application.service import PointsLedgerService
from src.lp_points.domain.models import TransactionFilter

router = APIRouter(prefix="/admin/points", tags=["admin-points"])

_ledger = PointsLedgerService()
_queries = PointsQueryService()
_sweep = ExpirySweepService(ledger=_ledger)

_UserId = Annotated[str, Path(min_length=1, max_length=64)]


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


@router.post("/earn")
async def earn(
    body: EarnRequest,
    admin: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    tx = await _ledger.earn(
        db,
        body.user_id,
        body.amount,
        body.reference_type,
        body.reference_id,
        body.description,
        expiry_days=body.expiry_days,
        notes=body.notes,
        idempotency_key=body.idempotency_key,
    )
    return success_response(PointTransactionItem.from_domain(tx).model_dump(), request_id_of(request))


@router.post("/redeem")
async def redeem(
    body: RedeemRequest,
    admin: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    tx = await _ledger.redeem(
        db,
        body.user_id,
        body.amount,
        body.reference_type,
        body.reference_id,
        body.description,
        notes=body.notes,
        idempotency_key=body.idempotency_key,
    )
    return success_response(PointTransactionItem.from_domain(tx).model_dump(), request_id_of(request))


@router.post("/refund")
async def refund(
    body: RefundRequest,
    admin: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    tx = await _ledger.refund(
        db,
        body.user_id,
        body.amount,
        body.reference_type,
        body.reference_id,
        body.description,
        notes=body.notes,
        idempotency_key=body.idempotency_key,
    )
    return success_response(PointTransactionItem.from_domain(tx).model_dump(), request_id_of(request))


@router.post("/adjust")
async def adjust(
    body: AdjustRequest,
    admin: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    tx = await _ledger.adjust(
        db,
        body.user_id,
        body.amount,
        body.description,
        notes=body.notes,
        operator_id=admin.user_id,
    )
    return success_response(PointTransactionItem.from_domain(tx).model_dump(), request_id_of(request))


@router.post("/expire")
async def expire(
    body: ExpireRequest,
    admin: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    tx = await _ledger.expire(
        db,
        body.user_id,
        body.amount,
        body.description,
        reference_id=body.reference_id,
        notes=body.notes,
    )
    return success_response(PointTransactionItem.from_domain(tx).model_dump(), request_id_of(request))


# ---------------------------------------------------------------------------
# Account administration
# ---------------------------------------------------------------------------


@router.post("/accounts/{user_id}/deactivate")
async def deactivate_account(
    user_id: _UserId,
    admin: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    account = await _ledger.deactivate_account(db, user_id)
    return success_response(AccountResponse.from_domain(account).model_dump(), request_id_of(request))


@router.post("/accounts/{user_id}/activate")
async def activate_account(
    user_id: _UserId,
    admin: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    account = await _ledger.activate_account(db, user_id)
    return success_response(AccountResponse.from_domain(account).model_dump(), request_id_of(request))


@router.put("/accounts/{user_id}/expiry-days")
async def set_expiry_days(
    user_id: _UserId,
    body: ExpiryDaysRequest,
    admin: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    account = await _ledger.set_expiry_days(db, user_id, body.expiry_days)
    return success_response(AccountResponse.from_domain(account).model_dump(), request_id_of(request))


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


@router.get("/accounts/{user_id}")
async def get_account(
    user_id: _UserId,
    admin: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    data = await _queries.get_account(db, user_id)
    return success_response(data.model_dump(), request_id_of(request))


@router.get("/accounts/{user_id}/transactions")
async def list_account_transactions(
    user_id: _UserId,
    admin: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
    type: TransactionTypeParam | None = Query(None),
    status: TransactionStatusParam | None = Query(None),
    reference_type: str | None = Query(None, max_length=50),
    reference_id: str | None = Query(None, max_length=64),
    cursor: str | None = Query(None, description="Pagination cursor (opaque Base64)"),
    limit: int = Query(20, ge=1, le=100),
) -> ApiResponse:
    filters = TransactionFilter(
        type=type, status=status, reference_type=reference_type, reference_id=reference_id
    )
    data = await _queries.list_transactions(db, user_id, filters, cursor, limit)
    return success_response(data.model_dump(), request_id_of(request))


@router.get("/accounts/{user_id}/expired")
async def list_expired(
    user_id: _UserId,
    admin: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    data = await _queries.list_expired(db, user_id)
    return success_response(data.model_dump(), request_id_of(request))


@router.get("/accounts/{user_id}/stats")
async def get_user_stats(
    user_id: _UserId,
    admin: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    data = await _queries.get_user_stats(db, user_id)
    return success_response(data.model_dump(), request_id_of(request))


@router.get("/transactions/{transaction_id}")
async def get_transaction(
    transaction_id: int,
    admin: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    data = await _queries.get_transaction(db, transaction_id)
    return success_response(data.model_dump(), request_id_of(request))


@router.get("/stats")
async def get_stats(
    admin: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    data = await _queries.get_stats(db)
    return success_response(data.model_dump(), request_id_of(request))


@router.get("/top-earners")
async def get_top_earners(
    admin: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
    limit: int = Query(10, ge=1, le=100),
) -> ApiResponse:
    earners = await _queries.get_top_earners(db, limit)
    return success_response([e.model_dump() for e in earners], request_id_of(request))


@router.get("/invariants")
async def verify_invariants(
    admin: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    data = await _queries.verify_invariants(db)
    return success_response(data.model_dump(), request_id_of(request))


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


@router.post("/expiry-sweep")
async def run_expiry_sweep(
    admin: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    redis: Annotated[aioredis.Redis, Depends(get_redis)],
    request: Request,
) -> ApiResponse:
    data = await _sweep.run_exclusive(db, redis)
    return success_response(data.model_dump(), request_id_of(request))


@router.get("/expiring")
async def report_expiring(
    admin: Annotated[Principal, Depends(require_admin)],
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
    days: int = Query(7, ge=1, le=365),
) -> ApiResponse:
    data = await _sweep.report_expiring(db, days)
    return success_response(data.model_dump(), request_id_of(request))
