"""
Mongo Credits Store

Server-side source of truth for balances, transactions and purchases.

CRITICAL: Every balance change is a single conditional update. The debit
filter carries `balance >= amount`, so negative balances are impossible
under any concurrency scenario. The daily claim filter carries
`last_daily_claim < date`, so claims only move forward and at most one
lands per date. Purchase credits and refunds carry their key in the filter
(`purchase_keys`, `refunded_spends`), so a replayed write is a no-op.

Collections:
- credit_accounts: one document per account, with the last 100 transactions embedded
- credit_purchases: one document per verified purchase, unique on purchase_key
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .config import (
    INITIAL_CREDITS,
    INITIAL_CREDITS_DESCRIPTION,
    TRANSACTION_HISTORY_LIMIT,
    CREDIT_PRODUCTS,
    product_credits,
)
from .errors import (
    CreditsApiError,
    INVALID_ARGUMENT,
    INTERNAL,
    NOT_FOUND,
    PURCHASE_REJECTED,
    user_message_for,
)
from .models import (
    CreditAccount,
    CreditResult,
    CreditTransaction,
    DebitResult,
    PurchaseReceipt,
    PurchaseRecord,
    RestoreResult,
    VerifyPurchaseResult,
)
from .remote_store import check_refundable, purchase_description, refund_description, reward_grant

logger = logging.getLogger(__name__)

ACCOUNT_PROJECTION = {"_id": 0, "transactions": 0, "purchase_keys": 0, "refunded_spends": 0}


def _push_transaction(transaction: CreditTransaction) -> dict:
    return {
        "transactions": {
            "$each": [transaction.model_dump()],
            "$slice": -TRANSACTION_HISTORY_LIMIT
        }
    }


class MongoCreditsStore:
    """Motor-backed credits store."""

    def __init__(self, db, verifier=None):
        self.db = db
        self.purchases = PurchaseAuthority(db, self, verifier)

    async def get_credits(self, account_id: str, is_anonymous: bool = False) -> CreditAccount:
        """
        Get the account, creating it lazily on first access.

        New accounts are seeded with INITIAL_CREDITS and a matching Earn entry.
        """
        doc = await self.db.credit_accounts.find_one({"account_id": account_id}, ACCOUNT_PROJECTION)
        if doc:
            return CreditAccount.model_validate(doc)

        now = datetime.now(timezone.utc).isoformat()
        welcome = CreditTransaction.earn(INITIAL_CREDITS, INITIAL_CREDITS_DESCRIPTION)
        account_doc = {
            "account_id": account_id,
            "balance": INITIAL_CREDITS,
            "total_earned": INITIAL_CREDITS,
            "total_spent": 0,
            "last_updated": now,
            "last_daily_claim": None,
            "is_anonymous": is_anonymous,
            "created_at": now,
            "transactions": [welcome.model_dump()]
        }

        # Upsert so concurrent first accesses create one account
        result = await self.db.credit_accounts.update_one(
            {"account_id": account_id},
            {"$setOnInsert": account_doc},
            upsert=True
        )
        if result.upserted_id is not None:
            logger.info(f"Created credits account {account_id} with {INITIAL_CREDITS} credits")

        doc = await self.db.credit_accounts.find_one({"account_id": account_id}, ACCOUNT_PROJECTION)
        if not doc:
            raise CreditsApiError(f"Account {account_id} missing after creation", INTERNAL)
        return CreditAccount.model_validate(doc)

    async def debit(self, account_id: str, amount: int, description: str) -> DebitResult:
        """Atomically debit `amount`; fails without mutation when the balance is short."""
        if amount <= 0:
            raise CreditsApiError(f"Debit amount must be positive, got {amount}", INVALID_ARGUMENT)

        await self.get_credits(account_id)

        transaction = CreditTransaction.spend(amount, description)
        doc = await self.db.credit_accounts.find_one_and_update(
            {
                "account_id": account_id,
                "balance": {"$gte": amount}
            },
            {
                "$inc": {"balance": -amount, "total_spent": amount},
                "$set": {"last_updated": transaction.timestamp},
                "$push": _push_transaction(transaction)
            },
            projection=ACCOUNT_PROJECTION,
            return_document=ReturnDocument.AFTER
        )

        if doc is None:
            current = await self.get_credits(account_id)
            logger.info(f"Debit of {amount} denied for {account_id}: balance {current.balance}")
            return DebitResult(success=False, credits_left=current.balance)

        logger.info(f"Debited {amount} credits from {account_id} ({description})")
        return DebitResult(success=True, credits_left=doc["balance"], transaction=transaction)

    async def _apply_earn(
        self,
        account_id: str,
        transaction: CreditTransaction,
        conditions: Optional[dict] = None,
        extra_set: Optional[dict] = None,
        extra_push: Optional[dict] = None
    ) -> Optional[CreditResult]:
        """Single conditional earn; None when `conditions` no longer match."""
        doc = await self.db.credit_accounts.find_one_and_update(
            {"account_id": account_id, **(conditions or {})},
            {
                "$inc": {"balance": transaction.amount, "total_earned": transaction.amount},
                "$set": {"last_updated": transaction.timestamp, **(extra_set or {})},
                "$push": {**_push_transaction(transaction), **(extra_push or {})}
            },
            projection=ACCOUNT_PROJECTION,
            return_document=ReturnDocument.AFTER
        )
        if doc is None:
            return None
        return CreditResult(account=CreditAccount.model_validate(doc), transaction=transaction)

    async def credit(
        self,
        account_id: str,
        amount: int,
        description: str,
        product_id: Optional[str] = None
    ) -> CreditResult:
        if amount <= 0:
            raise CreditsApiError(f"Credit amount must be positive, got {amount}", INVALID_ARGUMENT)

        await self.get_credits(account_id)

        result = await self._apply_earn(account_id, CreditTransaction.earn(amount, description, product_id))
        if result is None:
            raise CreditsApiError(f"Account {account_id} disappeared during credit", INTERNAL)

        logger.info(f"Credited {amount} credits to {account_id} ({description})")
        return result

    async def grant_reward(self, account_id: str, action: str) -> CreditResult:
        amount, description = reward_grant(action)
        return await self.credit(account_id, amount, description)

    async def credit_purchase(
        self,
        account_id: str,
        purchase_key: str,
        product_id: str,
        credits: int
    ) -> Optional[CreditResult]:
        """
        Credit a verified purchase unless its key was already applied to the account.

        The key is recorded in the same update as the balance, so a retry after
        a lost acknowledgement returns None instead of crediting twice.
        """
        await self.get_credits(account_id)

        return await self._apply_earn(
            account_id,
            CreditTransaction.earn(credits, purchase_description(product_id), product_id),
            conditions={"purchase_keys": {"$ne": purchase_key}},
            extra_push={"purchase_keys": purchase_key}
        )

    async def refund(self, account_id: str, spend_transaction_id: str) -> CreditResult:
        """
        Credit back one Spend entry, at most once.

        Raises:
            CreditsApiError: not-found when the entry is not a retained Spend,
                failed-precondition once REFUND_WINDOW_SECONDS has passed
        """
        doc = await self.db.credit_accounts.find_one(
            {"account_id": account_id},
            {
                "_id": 0,
                "transactions": {"$elemMatch": {"id": spend_transaction_id}},
                "refunded_spends": 1
            }
        )
        if not doc:
            raise CreditsApiError(f"Account {account_id} not found", NOT_FOUND)

        if spend_transaction_id in doc.get("refunded_spends", []):
            return CreditResult(account=await self.get_credits(account_id), duplicate=True)

        matches = doc.get("transactions") or []
        spend = CreditTransaction.model_validate(matches[0]) if matches else None
        check_refundable(spend)

        result = await self._apply_earn(
            account_id,
            CreditTransaction.earn(spend.amount, refund_description(spend)),
            conditions={"refunded_spends": {"$ne": spend_transaction_id}},
            extra_push={"refunded_spends": {"$each": [spend_transaction_id], "$slice": -TRANSACTION_HISTORY_LIMIT}}
        )
        if result is None:
            return CreditResult(account=await self.get_credits(account_id), duplicate=True)

        logger.info(f"Refunded {spend.amount} credits to {account_id} for {spend_transaction_id}")
        return result

    async def claim_daily(
        self,
        account_id: str,
        claim_date: str,
        amount: int,
        description: str
    ) -> Optional[CreditResult]:
        """Grant the daily credits unless a claim for `claim_date` or a later date already landed."""
        await self.get_credits(account_id)

        # ISO dates order as strings
        result = await self._apply_earn(
            account_id,
            CreditTransaction.earn(amount, description),
            conditions={"$or": [
                {"last_daily_claim": None},
                {"last_daily_claim": {"$lt": claim_date}}
            ]},
            extra_set={"last_daily_claim": claim_date}
        )
        if result is None:
            logger.info(f"Daily claim for {claim_date} already granted to {account_id}")
        return result

    async def get_transactions(self, account_id: str, limit: int = TRANSACTION_HISTORY_LIMIT) -> List[CreditTransaction]:
        """Most recent transactions, oldest first."""
        doc = await self.db.credit_accounts.find_one(
            {"account_id": account_id},
            {"_id": 0, "transactions": {"$slice": -limit}}
        )
        if not doc:
            return []
        return [CreditTransaction.model_validate(tx) for tx in doc.get("transactions", [])]

    async def verify_purchase(self, account_id: str, receipt: PurchaseReceipt) -> VerifyPurchaseResult:
        return await self.purchases.verify_and_credit(account_id, receipt)

    async def restore_purchases(self, account_id: str, receipts: List[PurchaseReceipt]) -> RestoreResult:
        return await self.purchases.restore(account_id, receipts)


class PurchaseAuthority:
    """
    Single source of truth for "has this receipt been credited".

    Each verified purchase is inserted under a unique purchase_key with status
    "verified". The account is then credited with a write that is conditional
    on the key not being in the account's `purchase_keys`, and the record is
    marked "credited" afterwards. A record left in "verified" (crash or lost
    acknowledgement between the two steps) is finished by restore(); the
    conditional credit makes that replay a no-op if the first write landed.
    """

    def __init__(self, db, store: MongoCreditsStore, verifier=None):
        if verifier is None:
            from .verification import create_receipt_verifier
            verifier = create_receipt_verifier()
        self.db = db
        self.store = store
        self.verifier = verifier

    @staticmethod
    def _rejected(product_id: str, error: str, code: str = PURCHASE_REJECTED) -> VerifyPurchaseResult:
        return VerifyPurchaseResult(success=False, product_id=product_id, error_code=code, error=error)

    async def verify_and_credit(self, account_id: str, receipt: PurchaseReceipt) -> VerifyPurchaseResult:
        """
        Verify a receipt and credit its product exactly once.

        Rejections are returned as results; verifier transport failures
        propagate so the caller can retry.
        """
        if receipt.product_id not in CREDIT_PRODUCTS:
            return self._rejected(receipt.product_id, f"Invalid product_id: {receipt.product_id}", INVALID_ARGUMENT)

        verified = await self.verifier.verify(receipt)
        purchase_key = verified.purchase_key
        if not verified.valid or not purchase_key:
            logger.warning(f"Receipt rejected for {account_id}: {verified.error}")
            return self._rejected(receipt.product_id, verified.error or user_message_for(PURCHASE_REJECTED))

        if verified.product_id != receipt.product_id:
            logger.warning(
                f"Receipt product mismatch for {account_id}: "
                f"claimed {receipt.product_id}, verified {verified.product_id}"
            )
            return self._rejected(receipt.product_id, "Receipt does not match product")

        credits = product_credits(receipt.product_id)
        record = PurchaseRecord(
            purchase_key=purchase_key,
            account_id=account_id,
            product_id=receipt.product_id,
            platform=verified.platform,
            transaction_id=verified.transaction_id,
            credits=credits,
            status="verified",
            created_at=datetime.now(timezone.utc).isoformat()
        )

        try:
            await self.db.credit_purchases.insert_one(record.model_dump())
        except DuplicateKeyError:
            existing = await self.db.credit_purchases.find_one({"purchase_key": purchase_key}, {"_id": 0})
            if existing and existing.get("account_id") != account_id:
                logger.warning(f"Receipt {purchase_key} replayed by {account_id}, owned by another account")
                return self._rejected(receipt.product_id, "Receipt belongs to another account")
            if not existing or existing.get("status") != "verified":
                logger.info(f"Purchase {purchase_key} already credited, skipping")
                return await self._duplicate(account_id, receipt.product_id)
            # Verified but never credited; finish the job below

        return await self._credit_record(account_id, purchase_key, receipt.product_id, credits)

    async def _duplicate(self, account_id: str, product_id: str) -> VerifyPurchaseResult:
        account = await self.store.get_credits(account_id)
        return VerifyPurchaseResult(
            success=True,
            credits_added=0,
            total_credits=account.balance,
            duplicate=True,
            product_id=product_id
        )

    async def _credit_record(self, account_id: str, purchase_key: str, product_id: str, credits: int) -> VerifyPurchaseResult:
        # On failure the record stays verified for a retry or restore to finish
        result = await self.store.credit_purchase(account_id, purchase_key, product_id, credits)

        await self.db.credit_purchases.update_one(
            {"purchase_key": purchase_key, "status": "verified"},
            {"$set": {"status": "credited", "credited_at": datetime.now(timezone.utc).isoformat()}}
        )

        if result is None:
            logger.info(f"Purchase {purchase_key} was already applied to {account_id}")
            return await self._duplicate(account_id, product_id)

        logger.info(f"Purchase {purchase_key} credited {credits} credits to {account_id}")
        return VerifyPurchaseResult(
            success=True,
            credits_added=credits,
            total_credits=result.account.balance,
            product_id=product_id
        )

    async def restore(self, account_id: str, receipts: List[PurchaseReceipt]) -> RestoreResult:
        """
        Re-submit receipts from the platform purchase history, then credit
        any of the account's purchases still in "verified" status.
        """
        credited_count = 0
        credits_added = 0

        for receipt in receipts:
            result = await self.verify_and_credit(account_id, receipt)
            if result.success and not result.duplicate:
                credited_count += 1
                credits_added += result.credits_added

        cursor = self.db.credit_purchases.find(
            {"account_id": account_id, "status": "verified"},
            {"_id": 0}
        )
        pending = await cursor.to_list(length=100)
        for record in pending:
            result = await self._credit_record(
                account_id, record["purchase_key"], record["product_id"], record["credits"]
            )
            if not result.duplicate:
                credited_count += 1
                credits_added += result.credits_added

        account = await self.store.get_credits(account_id)
        logger.info(f"Restore for {account_id}: {credited_count} purchases, {credits_added} credits")
        return RestoreResult(
            status="restored",
            credited_count=credited_count,
            credits_added=credits_added,
            total_credits=account.balance
        )
