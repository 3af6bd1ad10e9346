"""
Credit balance API.

- GET /: current balance and plan
- GET /transactions: ledger history, most recent first
"""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from api.auth_middleware import AuthContext, get_current_auth
from api.routes.staging import get_store
from services import credits
from services.staging_store import StagingStore

logger = logging.getLogger(__name__)

router = APIRouter()


class BalanceResponse(BaseModel):
    credits: int
    plan: str


class TransactionListResponse(BaseModel):
    transactions: list[dict[str, Any]]


@router.get("", response_model=BalanceResponse)
async def get_balance(
    auth: AuthContext = Depends(get_current_auth),
    store: StagingStore = Depends(get_store),
) -> BalanceResponse:
    balance = await credits.get_balance(store, auth.user_id_str)
    return BalanceResponse(credits=balance, plan=auth.plan)


@router.get("/transactions", response_model=TransactionListResponse)
async def list_transactions(
    limit: int = Query(50, ge=1, le=200),
    auth: AuthContext = Depends(get_current_auth),
    store: StagingStore = Depends(get_store),
) -> TransactionListResponse:
    transactions = await credits.list_transactions(store, auth.user_id_str, limit=limit)
    return TransactionListResponse(transactions=[tx.to_dict() for tx in transactions])
