"""
Purchase Reconciler

Turns a completed or restored platform purchase into exactly one credited
ledger transaction. The verification authority behind the remote store is
the only record of which receipts were credited; nothing is tracked locally.
"""

import logging
from typing import Optional

from .config import CREDIT_PRODUCTS
from .errors import (
    CreditsApiError,
    INVALID_ARGUMENT,
    PURCHASE_REJECTED,
    UNAUTHENTICATED,
    user_message_for,
)
from .ledger_service import CreditsLedger
from .models import CreditTransaction, PurchaseReceipt, ReconcileResult, RestoreResult, utc_now_iso
from .remote_store import purchase_description

logger = logging.getLogger(__name__)


class PurchaseReconciler:
    """
    Usage:
        reconciler = PurchaseReconciler(ledger, provider)
        result = await reconciler.purchase(user_id, "credits_50")
        if result.status == "credited":
            show_balance(result.total_credits)
    """

    def __init__(self, ledger: CreditsLedger, provider, remote=None):
        self.ledger = ledger
        self.provider = provider
        self.remote = remote if remote is not None else ledger.remote

    @staticmethod
    def _rejected(product_id: str, code: str, message: Optional[str] = None) -> ReconcileResult:
        return ReconcileResult(
            status="rejected",
            product_id=product_id,
            error_code=code,
            user_message=message or user_message_for(code)
        )

    async def reconcile(self, account_id: str, product_id: str, receipt: PurchaseReceipt) -> ReconcileResult:
        """
        Submit a receipt to the verification authority and credit the product.

        Rejection and network failure both return a rejected result and leave
        the ledger untouched.
        """
        if not self.ledger.is_loaded(account_id):
            return self._rejected(product_id, UNAUTHENTICATED)
        if product_id not in CREDIT_PRODUCTS or receipt.product_id != product_id:
            return self._rejected(product_id, INVALID_ARGUMENT)

        async with self.ledger.account_lock(account_id):
            try:
                result = await self.ledger.call_remote(
                    "verify_purchase", lambda: self.remote.verify_purchase(account_id, receipt)
                )
            except CreditsApiError as e:
                logger.warning(f"Purchase verification failed for {account_id} ({e.code}): {e}")
                return self._rejected(product_id, e.code, e.user_message)

            if not result.success:
                code = result.error_code or PURCHASE_REJECTED
                logger.warning(f"Purchase of {product_id} rejected for {account_id}: {result.error}")
                return self._rejected(product_id, code)

            if result.duplicate:
                # The first attempt may have credited before its response was lost
                logger.info(f"Receipt for {product_id} was already credited to {account_id}")
                await self.ledger.refresh_locked(account_id)
            else:
                current = self.ledger.get_account(account_id)
                account = current.model_copy(update={
                    "balance": result.total_credits,
                    "total_earned": result.total_credits + current.total_spent,
                    "last_updated": utc_now_iso()
                })
                self.ledger.apply_remote_account(
                    account_id,
                    account,
                    CreditTransaction.earn(result.credits_added, purchase_description(product_id), product_id)
                )
                await self.ledger.persist(account_id)
                logger.info(f"Purchase of {product_id} credited {result.credits_added} to {account_id}")

            return ReconcileResult(
                status="credited",
                product_id=product_id,
                credits_added=result.credits_added,
                total_credits=self.ledger.get_balance(account_id) if result.duplicate else result.total_credits,
                duplicate=result.duplicate
            )

    async def purchase(self, account_id: str, product_id: str) -> ReconcileResult:
        """Run the platform purchase flow, then reconcile its receipt."""
        if not self.ledger.is_loaded(account_id):
            return self._rejected(product_id, UNAUTHENTICATED)

        try:
            receipt = await self.provider.purchase(product_id)
        except CreditsApiError as e:
            logger.warning(f"Purchase of {product_id} failed for {account_id}: {e}")
            return self._rejected(product_id, e.code, e.user_message)

        return await self.reconcile(account_id, product_id, receipt)

    async def restore(self, account_id: str) -> RestoreResult:
        """
        Hand the platform purchase history to the authority, which credits
        every receipt that was verified but never credited, once.
        """
        if not self.ledger.is_loaded(account_id):
            return RestoreResult(
                status="rejected",
                error_code=UNAUTHENTICATED,
                user_message=user_message_for(UNAUTHENTICATED)
            )

        receipts = await self.provider.get_purchase_history()

        async with self.ledger.account_lock(account_id):
            try:
                result = await self.ledger.call_remote(
                    "restore_purchases", lambda: self.remote.restore_purchases(account_id, receipts)
                )
            except CreditsApiError as e:
                logger.warning(f"Restore failed for {account_id} ({e.code}): {e}")
                return RestoreResult(status="rejected", error_code=e.code, user_message=e.user_message)

        if result.credited_count:
            await self.ledger.refresh(account_id)
        logger.info(f"Restored {result.credited_count} purchases for {account_id}")
        return result
