"""
Credits API Routes

Endpoints:
- GET /api/credits - Get balance (creates the account on first call)
- GET /api/credits/transactions - Recent transactions
- POST /api/credits/debit - Atomic debit for a feature or explicit amount
- POST /api/credits/verify-purchase - Verify a store receipt and credit it once
- POST /api/credits/restore - Re-submit purchase history, credit uncredited purchases
- POST /api/credits/daily-claim - Daily free credits, once per calendar date
- POST /api/credits/rewards/{action} - Action reward grant
- POST /api/credits/refund - Refund a recent Spend once (failed feature)
- POST /api/credits/earn - Arbitrary credit (admin only)
- GET /api/credits/products - Credit pack catalog
- GET /api/credits/costs - Feature costs
"""

import logging
from datetime import date, datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from utils.auth import get_current_user, get_admin_user

from . import config
from .config import (
    CREDIT_PRODUCTS,
    DAILY_CREDIT_AMOUNT,
    DAILY_CREDIT_DESCRIPTION,
    REWARD_ACTIONS,
    TRANSACTION_HISTORY_LIMIT,
    USAGE_COSTS,
    USAGE_DESCRIPTIONS,
)
from .errors import CreditsApiError, FAILED_PRECONDITION, INVALID_ARGUMENT, to_api_error
from .models import (
    CreditAccount,
    CreditGrantResponse,
    CreditResult,
    CreditsResponse,
    DailyClaimRequest,
    DailyClaimResponse,
    DebitRequest,
    DebitResponse,
    EarnRequest,
    PurchaseReceipt,
    RefundRequest,
    RestoreRequest,
    RestoreResult,
    VerifyPurchaseRequest,
    VerifyPurchaseResult,
)

logger = logging.getLogger(__name__)

credits_router = APIRouter(prefix="/credits", tags=["Credits"])

_store = None


def get_credits_store():
    """Shared Mongo-backed store; overridden in tests."""
    global _store
    if _store is None:
        from database import db
        from .mongo_store import MongoCreditsStore
        _store = MongoCreditsStore(db)
    return _store


def _api_error(e: CreditsApiError) -> HTTPException:
    logger.warning(f"Credits API error ({e.code}): {e}")
    return HTTPException(status_code=e.status_code, detail=e.to_dict())


def _credits_response(account: CreditAccount) -> CreditsResponse:
    return CreditsResponse(
        account_id=account.account_id,
        credits=account.balance,
        total_earned=account.total_earned,
        total_spent=account.total_spent,
        last_updated=account.last_updated,
        last_daily_claim=account.last_daily_claim
    )


def _grant_response(result: CreditResult) -> CreditGrantResponse:
    return CreditGrantResponse(
        **_credits_response(result.account).model_dump(),
        transaction=result.transaction,
        duplicate=result.duplicate
    )


# ==================== BALANCE ENDPOINTS ====================

@credits_router.get("", response_model=CreditsResponse)
async def get_credits(user: dict = Depends(get_current_user), store=Depends(get_credits_store)):
    """Get the signed-in account's balance."""
    try:
        account = await store.get_credits(user["id"], user.get("is_anonymous", False))
    except CreditsApiError as e:
        raise _api_error(e)
    return _credits_response(account)


@credits_router.get("/transactions")
async def get_transactions(
    limit: int = Query(TRANSACTION_HISTORY_LIMIT, ge=1, le=TRANSACTION_HISTORY_LIMIT),
    user: dict = Depends(get_current_user),
    store=Depends(get_credits_store)
):
    """Recent transactions, oldest first."""
    transactions = await store.get_transactions(user["id"], limit)
    return {
        "transactions": [tx.model_dump() for tx in transactions],
        "count": len(transactions)
    }


@credits_router.post("/debit", response_model=DebitResponse)
async def debit_credits(
    body: DebitRequest,
    user: dict = Depends(get_current_user),
    store=Depends(get_credits_store)
):
    """
    Debit credits atomically.

    Either `feature` (cost looked up server-side) or `amount` must be given.
    An insufficient balance is a normal `success: false` response.
    """
    if body.feature:
        if body.feature not in USAGE_COSTS:
            raise HTTPException(
                status_code=400,
                detail={"error_code": INVALID_ARGUMENT,
                        "message": f"Invalid feature. Valid options: {list(USAGE_COSTS.keys())}"}
            )
        amount = USAGE_COSTS[body.feature]
        description = body.description or USAGE_DESCRIPTIONS[body.feature]
    elif body.amount:
        amount = body.amount
        description = body.description or "Credit usage"
    else:
        raise HTTPException(
            status_code=400,
            detail={"error_code": INVALID_ARGUMENT, "message": "Either feature or amount is required"}
        )

    try:
        result = await store.debit(user["id"], amount, description)
    except CreditsApiError as e:
        raise _api_error(e)

    return DebitResponse(**result.model_dump())


# ==================== PURCHASE ENDPOINTS ====================

@credits_router.post("/verify-purchase", response_model=VerifyPurchaseResult)
async def verify_purchase(
    body: VerifyPurchaseRequest,
    user: dict = Depends(get_current_user),
    store=Depends(get_credits_store)
):
    """
    Verify a store receipt and credit its product.

    Resubmitting a credited receipt returns `duplicate: true` and credits nothing.
    """
    try:
        return await store.verify_purchase(user["id"], PurchaseReceipt(**body.model_dump()))
    except Exception as e:
        raise _api_error(to_api_error(e))


@credits_router.post("/restore", response_model=RestoreResult)
async def restore_purchases(
    body: RestoreRequest,
    user: dict = Depends(get_current_user),
    store=Depends(get_credits_store)
):
    """Credit every verified purchase of this account that was never credited."""
    receipts = [PurchaseReceipt(**receipt.model_dump()) for receipt in body.receipts]
    try:
        return await store.restore_purchases(user["id"], receipts)
    except CreditsApiError as e:
        raise _api_error(e)


@credits_router.get("/products")
async def get_products():
    """Credit packs available for purchase."""
    return {
        "products": [
            {
                "product_id": product_id,
                "total_credits": product["credits"] + product["bonus"],
                **product
            }
            for product_id, product in CREDIT_PRODUCTS.items()
        ]
    }


@credits_router.get("/costs")
async def get_costs():
    """Credit cost per feature."""
    return {
        "costs": USAGE_COSTS,
        "descriptions": USAGE_DESCRIPTIONS
    }


# ==================== GRANT ENDPOINTS ====================

@credits_router.post("/daily-claim", response_model=DailyClaimResponse)
async def claim_daily(
    body: DailyClaimRequest,
    user: dict = Depends(get_current_user),
    store=Depends(get_credits_store)
):
    """
    Grant DAILY_CREDIT_AMOUNT credits for the client's local calendar date.

    The date must be within one day of the server's UTC date, which covers
    every time zone.
    """
    if not config.DAILY_CREDITS_ENABLED:
        raise _api_error(CreditsApiError("Daily credits are disabled", FAILED_PRECONDITION))

    try:
        claim_date = date.fromisoformat(body.claim_date)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail={"error_code": INVALID_ARGUMENT, "message": "claim_date must be YYYY-MM-DD"}
        )

    server_date = datetime.now(timezone.utc).date()
    if abs((claim_date - server_date).days) > 1:
        raise HTTPException(
            status_code=400,
            detail={"error_code": INVALID_ARGUMENT, "message": "claim_date is not today"}
        )

    result = await store.claim_daily(
        user["id"], claim_date.isoformat(), DAILY_CREDIT_AMOUNT, DAILY_CREDIT_DESCRIPTION
    )
    if result is None:
        return DailyClaimResponse(granted=False)
    return DailyClaimResponse(granted=True, account=_grant_response(result))


@credits_router.post("/rewards/{action}", response_model=CreditGrantResponse)
async def grant_reward(
    action: str,
    user: dict = Depends(get_current_user),
    store=Depends(get_credits_store)
):
    """Grant the fixed reward for a completed action (share_app, rate_app, ...)."""
    if action not in REWARD_ACTIONS:
        raise HTTPException(
            status_code=400,
            detail={"error_code": INVALID_ARGUMENT,
                    "message": f"Invalid action. Valid options: {list(REWARD_ACTIONS.keys())}"}
        )

    try:
        result = await store.grant_reward(user["id"], action)
    except CreditsApiError as e:
        raise _api_error(e)
    return _grant_response(result)


@credits_router.post("/refund", response_model=CreditGrantResponse)
async def refund_spend(
    body: RefundRequest,
    user: dict = Depends(get_current_user),
    store=Depends(get_credits_store)
):
    """
    Refund a recent Spend of the caller whose feature failed.

    Each Spend is refunded at most once; repeats return `duplicate: true`.
    Spends older than REFUND_WINDOW_SECONDS are rejected with 412.
    """
    try:
        result = await store.refund(user["id"], body.transaction_id)
    except CreditsApiError as e:
        raise _api_error(e)
    return _grant_response(result)


# ==================== ADMIN ENDPOINTS ====================

@credits_router.post("/earn", response_model=CreditGrantResponse)
async def earn_credits(
    body: EarnRequest,
    account_id: Optional[str] = Query(None, description="Account to credit (default: caller)"),
    admin: dict = Depends(get_admin_user),
    store=Depends(get_credits_store)
):
    """Credit an arbitrary amount (admin only)."""
    target = account_id or admin["id"]
    try:
        result = await store.credit(target, body.amount, body.description, body.product_id)
    except CreditsApiError as e:
        raise _api_error(e)

    logger.info(f"Admin {admin['id']} credited {body.amount} to {target}")
    return _grant_response(result)
