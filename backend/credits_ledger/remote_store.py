"""
Remote Credits Store

The authoritative copy of every account. Two implementations live here:

- InMemoryCreditsStore: process-local store with the same atomic semantics
  as the Mongo store (development and tests)
- HttpCreditsStore: client for the /api/credits routes

MongoCreditsStore (mongo_store.py) is the server-side source of truth.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Set, Tuple

import httpx

from . import config
from .config import (
    INITIAL_CREDITS,
    INITIAL_CREDITS_DESCRIPTION,
    TRANSACTION_HISTORY_LIMIT,
    CREDIT_PRODUCTS,
    REWARD_ACTIONS,
    product_credits,
)
from .errors import (
    CreditsApiError,
    FAILED_PRECONDITION,
    INVALID_ARGUMENT,
    NOT_FOUND,
    PURCHASE_REJECTED,
    UNAVAILABLE,
    code_for_status,
    user_message_for,
)
from .models import (
    CreditAccount,
    CreditResult,
    CreditTransaction,
    DebitResult,
    PurchaseReceipt,
    RestoreResult,
    VerifyPurchaseResult,
)

logger = logging.getLogger(__name__)


class RemoteCreditsStore(Protocol):
    """Operations every authoritative credits store provides."""

    async def get_credits(self, account_id: str, is_anonymous: bool = False) -> CreditAccount:
        ...

    async def debit(self, account_id: str, amount: int, description: str) -> DebitResult:
        ...

    async def credit(
        self,
        account_id: str,
        amount: int,
        description: str,
        product_id: Optional[str] = None
    ) -> CreditResult:
        ...

    async def grant_reward(self, account_id: str, action: str) -> CreditResult:
        ...

    async def refund(self, account_id: str, spend_transaction_id: str) -> CreditResult:
        ...

    async def claim_daily(
        self,
        account_id: str,
        claim_date: str,
        amount: int,
        description: str
    ) -> Optional[CreditResult]:
        ...

    async def get_transactions(self, account_id: str, limit: int = TRANSACTION_HISTORY_LIMIT) -> List[CreditTransaction]:
        ...

    async def verify_purchase(self, account_id: str, receipt: PurchaseReceipt) -> VerifyPurchaseResult:
        ...

    async def restore_purchases(self, account_id: str, receipts: List[PurchaseReceipt]) -> RestoreResult:
        ...


def purchase_description(product_id: str) -> str:
    return f"Purchased {CREDIT_PRODUCTS[product_id]['title']}"


def reward_grant(action: str) -> Tuple[int, str]:
    """(amount, description) of a reward action; unknown actions raise invalid-argument."""
    reward = REWARD_ACTIONS.get(action)
    if reward is None:
        raise CreditsApiError(f"Unknown reward action: {action}", INVALID_ARGUMENT)
    return reward["amount"], f"{reward['label']} reward"


def refund_description(spend: CreditTransaction) -> str:
    return f"Refund: {spend.description}"


def check_refundable(spend: Optional[CreditTransaction], now: Optional[datetime] = None):
    """
    Raise unless `spend` is a Spend entry still inside REFUND_WINDOW_SECONDS.

    Raises:
        CreditsApiError: not-found for a missing or non-Spend entry,
            failed-precondition once the window has passed
    """
    if spend is None or spend.kind != "spend":
        raise CreditsApiError("Spend transaction not found", NOT_FOUND)

    spent_at = datetime.fromisoformat(spend.timestamp)
    if spent_at.tzinfo is None:
        spent_at = spent_at.replace(tzinfo=timezone.utc)

    age = ((now or datetime.now(timezone.utc)) - spent_at).total_seconds()
    if age > config.REFUND_WINDOW_SECONDS:
        raise CreditsApiError(f"Refund window for {spend.id} has passed", FAILED_PRECONDITION)


class InMemoryCreditsStore:
    """
    Process-local authoritative store.

    Every mutation runs under a single asyncio.Lock, which gives the same
    check-and-mutate atomicity the Mongo store gets from conditional updates.
    Set `online = False` to simulate an unreachable backend.
    """

    def __init__(self, verifier=None):
        if verifier is None:
            from .verification import MockReceiptVerifier
            verifier = MockReceiptVerifier()
        self.verifier = verifier
        self.online = True
        self._accounts: Dict[str, CreditAccount] = {}
        self._transactions: Dict[str, List[CreditTransaction]] = {}
        # purchase_key -> {"account_id", "product_id", "credits", "status"}
        self._purchases: Dict[str, dict] = {}
        # account_id -> ids of Spend entries already refunded
        self._refunded: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()

    def _check_online(self):
        if not self.online:
            raise CreditsApiError("Credits backend unreachable", UNAVAILABLE)

    def _ensure_account(self, account_id: str, is_anonymous: bool = False) -> CreditAccount:
        account = self._accounts.get(account_id)
        if account is None:
            welcome = CreditTransaction.earn(INITIAL_CREDITS, INITIAL_CREDITS_DESCRIPTION)
            account = CreditAccount(
                account_id=account_id,
                balance=INITIAL_CREDITS,
                total_earned=INITIAL_CREDITS,
                total_spent=0,
                is_anonymous=is_anonymous
            )
            self._accounts[account_id] = account
            self._transactions[account_id] = [welcome]
            logger.info(f"Created credits account {account_id} with {INITIAL_CREDITS} credits")
        return account

    def _append(self, account_id: str, transaction: CreditTransaction):
        log = self._transactions.setdefault(account_id, [])
        log.append(transaction)
        del log[:-TRANSACTION_HISTORY_LIMIT]

    def _apply_earn(self, account_id: str, amount: int, description: str,
                    product_id: Optional[str] = None, **updates) -> CreditResult:
        account = self._ensure_account(account_id)
        account = account.model_copy(update={
            "balance": account.balance + amount,
            "total_earned": account.total_earned + amount,
            "last_updated": datetime.now(timezone.utc).isoformat(),
            **updates
        })
        self._accounts[account_id] = account
        transaction = CreditTransaction.earn(amount, description, product_id)
        self._append(account_id, transaction)
        return CreditResult(account=account.model_copy(), transaction=transaction)

    async def get_credits(self, account_id: str, is_anonymous: bool = False) -> CreditAccount:
        self._check_online()
        async with self._lock:
            return self._ensure_account(account_id, is_anonymous).model_copy()

    async def debit(self, account_id: str, amount: int, description: str) -> DebitResult:
        self._check_online()
        if amount <= 0:
            raise CreditsApiError(f"Debit amount must be positive, got {amount}", INVALID_ARGUMENT)

        async with self._lock:
            account = self._ensure_account(account_id)
            if account.balance < amount:
                return DebitResult(success=False, credits_left=account.balance)

            transaction = CreditTransaction.spend(amount, description)
            account = account.model_copy(update={
                "balance": account.balance - amount,
                "total_spent": account.total_spent + amount,
                "last_updated": transaction.timestamp
            })
            self._accounts[account_id] = account
            self._append(account_id, transaction)
            return DebitResult(success=True, credits_left=account.balance, transaction=transaction)

    async def credit(
        self,
        account_id: str,
        amount: int,
        description: str,
        product_id: Optional[str] = None
    ) -> CreditResult:
        self._check_online()
        if amount <= 0:
            raise CreditsApiError(f"Credit amount must be positive, got {amount}", INVALID_ARGUMENT)

        async with self._lock:
            return self._apply_earn(account_id, amount, description, product_id)

    async def grant_reward(self, account_id: str, action: str) -> CreditResult:
        amount, description = reward_grant(action)
        return await self.credit(account_id, amount, description)

    async def refund(self, account_id: str, spend_transaction_id: str) -> CreditResult:
        """Credit back one Spend entry; repeated calls for the same entry are duplicates."""
        self._check_online()
        async with self._lock:
            account = self._ensure_account(account_id)
            refunded = self._refunded.setdefault(account_id, set())
            if spend_transaction_id in refunded:
                return CreditResult(account=account.model_copy(), duplicate=True)

            spend = next(
                (tx for tx in self._transactions[account_id] if tx.id == spend_transaction_id),
                None
            )
            check_refundable(spend)
            refunded.add(spend_transaction_id)
            return self._apply_earn(account_id, spend.amount, refund_description(spend))

    async def claim_daily(
        self,
        account_id: str,
        claim_date: str,
        amount: int,
        description: str
    ) -> Optional[CreditResult]:
        self._check_online()
        async with self._lock:
            account = self._ensure_account(account_id)
            # ISO dates order as strings; claims only move forward
            if account.last_daily_claim is not None and account.last_daily_claim >= claim_date:
                return None
            return self._apply_earn(account_id, amount, description, last_daily_claim=claim_date)

    async def get_transactions(self, account_id: str, limit: int = TRANSACTION_HISTORY_LIMIT) -> List[CreditTransaction]:
        self._check_online()
        async with self._lock:
            self._ensure_account(account_id)
            return list(self._transactions[account_id][-limit:])

    async def verify_purchase(self, account_id: str, receipt: PurchaseReceipt) -> VerifyPurchaseResult:
        self._check_online()
        if receipt.product_id not in CREDIT_PRODUCTS:
            return VerifyPurchaseResult(
                success=False,
                product_id=receipt.product_id,
                error_code=INVALID_ARGUMENT,
                error=f"Invalid product_id: {receipt.product_id}"
            )

        verified = await self.verifier.verify(receipt)
        key = verified.purchase_key
        if not verified.valid or not key or verified.product_id != receipt.product_id:
            return VerifyPurchaseResult(
                success=False,
                product_id=receipt.product_id,
                error_code=PURCHASE_REJECTED,
                error=verified.error or user_message_for(PURCHASE_REJECTED)
            )

        async with self._lock:
            existing = self._purchases.get(key)
            if existing is not None:
                if existing["account_id"] != account_id:
                    return VerifyPurchaseResult(
                        success=False,
                        product_id=receipt.product_id,
                        error_code=PURCHASE_REJECTED,
                        error="Receipt belongs to another account"
                    )
                return VerifyPurchaseResult(
                    success=True,
                    credits_added=0,
                    total_credits=self._ensure_account(account_id).balance,
                    duplicate=True,
                    product_id=receipt.product_id
                )

            credits = product_credits(receipt.product_id)
            self._purchases[key] = {
                "account_id": account_id,
                "product_id": receipt.product_id,
                "credits": credits,
                "status": "credited"
            }
            account = self._apply_earn(
                account_id, credits, purchase_description(receipt.product_id), receipt.product_id
            ).account
            logger.info(f"Credited {credits} credits to {account_id} for {key}")
            return VerifyPurchaseResult(
                success=True,
                credits_added=credits,
                total_credits=account.balance,
                product_id=receipt.product_id
            )

    async def restore_purchases(self, account_id: str, receipts: List[PurchaseReceipt]) -> RestoreResult:
        credited_count = 0
        credits_added = 0
        for receipt in receipts:
            result = await self.verify_purchase(account_id, receipt)
            if result.success and not result.duplicate:
                credited_count += 1
                credits_added += result.credits_added

        account = await self.get_credits(account_id)
        return RestoreResult(
            status="restored",
            credited_count=credited_count,
            credits_added=credits_added,
            total_credits=account.balance
        )


class HttpCreditsStore:
    """
    Client for the credits HTTP API.

    The bearer token identifies the account; account_id arguments are kept
    for interface compatibility and checked against nothing server-side.
    `credit` maps to the admin-only /earn route; end users earn through
    `grant_reward`, `refund` and `claim_daily`.
    """

    def __init__(self, token: str, base_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.token = token
        self.base_url = (base_url or config.CREDITS_API_URL).rstrip("/")
        self._client = client

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        headers = {"Authorization": f"Bearer {self.token}"}
        url = f"{self.base_url}/credits{path}"

        if self._client is not None:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=config.CREDITS_API_TIMEOUT_SECONDS) as client:
                response = await client.request(method, url, headers=headers, **kwargs)

        if response.status_code >= 400:
            raise self._error_from_response(response)
        return response.json()

    @staticmethod
    def _error_from_response(response: httpx.Response) -> CreditsApiError:
        code = code_for_status(response.status_code)
        message = response.text[:200]
        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = None
        if isinstance(detail, dict):
            code = detail.get("error_code", code)
            message = detail.get("message", message)
        elif isinstance(detail, str):
            message = detail
        return CreditsApiError(f"{response.status_code}: {message}", code)

    @staticmethod
    def _account_from(data: dict) -> CreditAccount:
        return CreditAccount(
            account_id=data["account_id"],
            balance=data["credits"],
            total_earned=data["total_earned"],
            total_spent=data["total_spent"],
            last_updated=data["last_updated"],
            last_daily_claim=data.get("last_daily_claim")
        )

    @classmethod
    def _credit_result_from(cls, data: dict) -> CreditResult:
        transaction = data.get("transaction")
        return CreditResult(
            account=cls._account_from(data),
            transaction=CreditTransaction.model_validate(transaction) if transaction else None,
            duplicate=data.get("duplicate", False)
        )

    async def get_credits(self, account_id: str, is_anonymous: bool = False) -> CreditAccount:
        return self._account_from(await self._request("GET", ""))

    async def debit(self, account_id: str, amount: int, description: str) -> DebitResult:
        data = await self._request("POST", "/debit", json={"amount": amount, "description": description})
        return DebitResult.model_validate(data)

    async def credit(
        self,
        account_id: str,
        amount: int,
        description: str,
        product_id: Optional[str] = None
    ) -> CreditResult:
        data = await self._request(
            "POST", "/earn",
            json={"amount": amount, "description": description, "product_id": product_id}
        )
        return self._credit_result_from(data)

    async def grant_reward(self, account_id: str, action: str) -> CreditResult:
        return self._credit_result_from(await self._request("POST", f"/rewards/{action}"))

    async def refund(self, account_id: str, spend_transaction_id: str) -> CreditResult:
        data = await self._request("POST", "/refund", json={"transaction_id": spend_transaction_id})
        return self._credit_result_from(data)

    async def claim_daily(
        self,
        account_id: str,
        claim_date: str,
        amount: int,
        description: str
    ) -> Optional[CreditResult]:
        data = await self._request("POST", "/daily-claim", json={"claim_date": claim_date})
        if not data.get("granted"):
            return None
        return self._credit_result_from(data["account"])

    async def get_transactions(self, account_id: str, limit: int = TRANSACTION_HISTORY_LIMIT) -> List[CreditTransaction]:
        data = await self._request("GET", "/transactions", params={"limit": limit})
        return [CreditTransaction.model_validate(tx) for tx in data.get("transactions", [])]

    async def verify_purchase(self, account_id: str, receipt: PurchaseReceipt) -> VerifyPurchaseResult:
        try:
            data = await self._request("POST", "/verify-purchase", json=receipt.model_dump())
        except CreditsApiError as e:
            if e.code not in (PURCHASE_REJECTED, INVALID_ARGUMENT, NOT_FOUND):
                raise
            return VerifyPurchaseResult(
                success=False,
                product_id=receipt.product_id,
                error_code=e.code,
                error=str(e)
            )
        return VerifyPurchaseResult.model_validate(data)

    async def restore_purchases(self, account_id: str, receipts: List[PurchaseReceipt]) -> RestoreResult:
        data = await self._request(
            "POST", "/restore",
            json={"receipts": [receipt.model_dump() for receipt in receipts]}
        )
        return RestoreResult.model_validate(data)
