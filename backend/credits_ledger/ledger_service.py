"""
Credits Ledger Service

Account-scoped balance and transaction state for signed-in accounts.

- The remote store is authoritative: every debit goes through its atomic
  decrement-if-sufficient operation, the local balance never decides
  sufficiency for concurrent calls
- Mutations are serialized per account with an asyncio.Lock
- Every mutation is written through to the local cache before returning
- Debits and credits are not retried: a timed-out call may already have
  applied server-side, so recovery is a refresh, never a replay
"""

import asyncio
import logging
from typing import Dict, List, Optional

from .config import (
    INITIAL_CREDITS,
    INITIAL_CREDITS_DESCRIPTION,
    TRANSACTION_HISTORY_LIMIT,
)
from .errors import (
    CreditsApiError,
    NotAuthenticatedError,
    INVALID_ARGUMENT,
    UNAUTHENTICATED,
)
from .local_cache import LocalCreditsCache
from .models import CreditAccount, CreditResult, CreditTransaction, utc_now_iso
from .retry import retry_api_call

logger = logging.getLogger(__name__)


class AccountState:
    """In-memory view of one loaded account."""

    def __init__(self, account: CreditAccount, transactions: Optional[List[CreditTransaction]] = None):
        self.account = account
        self.transactions = list(transactions or [])[-TRANSACTION_HISTORY_LIMIT:]

    def append(self, transaction: CreditTransaction):
        self.transactions.append(transaction)
        del self.transactions[:-TRANSACTION_HISTORY_LIMIT]


class CreditsLedger:
    """
    Ledger core for every account signed in on this process.

    Usage:
        ledger = CreditsLedger(remote_store, LocalCreditsCache(JsonFileStore(dir)))
        await ledger.load_account(user_id)
        if await ledger.spend(user_id, 2, "Basic hairstyle change"):
            ...
    """

    def __init__(
        self,
        remote,
        cache: Optional[LocalCreditsCache] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        timeout_seconds: Optional[float] = None
    ):
        self.remote = remote
        self.cache = cache if cache is not None else LocalCreditsCache()
        self._retry_options = {
            "max_retries": max_retries,
            "base_delay": base_delay,
            "timeout_seconds": timeout_seconds
        }
        self._accounts: Dict[str, AccountState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # ==================== HELPERS ====================

    async def call_remote(self, operation: str, api_call, idempotent: bool = True):
        """Run a remote store call through the retry policy."""
        options = dict(self._retry_options)
        if not idempotent:
            options["max_retries"] = 0
        return await retry_api_call(api_call, operation=operation, **options)

    def account_lock(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    def is_loaded(self, account_id: Optional[str]) -> bool:
        return bool(account_id) and account_id in self._accounts

    def get_account(self, account_id: str) -> Optional[CreditAccount]:
        state = self._accounts.get(account_id)
        return state.account.model_copy() if state else None

    async def _persist(self, account_id: str):
        state = self._accounts.get(account_id)
        if state is None:
            return
        await self.cache.save_account(state.account)
        await self.cache.save_transactions(account_id, state.transactions)

    @staticmethod
    def _seed_account(account_id: str, is_anonymous: bool) -> AccountState:
        account = CreditAccount(
            account_id=account_id,
            balance=INITIAL_CREDITS,
            total_earned=INITIAL_CREDITS,
            total_spent=0,
            is_anonymous=is_anonymous
        )
        return AccountState(account, [CreditTransaction.earn(INITIAL_CREDITS, INITIAL_CREDITS_DESCRIPTION)])

    # ==================== LIFECYCLE ====================

    async def load_account(self, account_id: str, is_anonymous: bool = False) -> CreditAccount:
        """
        Load an account on sign-in.

        Order of preference: remote store, local cache, seed defaults.
        """
        if not account_id:
            raise NotAuthenticatedError()

        async with self.account_lock(account_id):
            try:
                account = await self.call_remote(
                    "get_credits", lambda: self.remote.get_credits(account_id, is_anonymous)
                )
                transactions = await self.call_remote(
                    "get_transactions", lambda: self.remote.get_transactions(account_id)
                )
                self._accounts[account_id] = AccountState(account, transactions)
                await self._persist(account_id)
                logger.info(f"Loaded credits for {account_id}: balance {account.balance}")
            except CreditsApiError as e:
                if e.code == UNAUTHENTICATED:
                    raise
                logger.warning(f"Remote credits unavailable for {account_id} ({e.code}), using local cache")
                cached = await self.cache.load_account(account_id)
                if cached is not None:
                    transactions = await self.cache.load_transactions(account_id)
                    self._accounts[account_id] = AccountState(cached, transactions)
                else:
                    logger.info(f"No cached credits for {account_id}, seeding defaults")
                    self._accounts[account_id] = self._seed_account(account_id, is_anonymous)
                    await self._persist(account_id)

            return self._accounts[account_id].account.model_copy()

    async def unload(self, account_id: str):
        """Drop in-memory and cached state on sign-out."""
        async with self.account_lock(account_id):
            self._accounts.pop(account_id, None)
            await self.cache.clear(account_id)
        self._locks.pop(account_id, None)
        logger.info(f"Unloaded credits for {account_id}")

    # ==================== READS ====================

    def get_balance(self, account_id: str) -> int:
        state = self._accounts.get(account_id)
        return state.account.balance if state else 0

    def can_afford(self, account_id: str, cost: int) -> bool:
        state = self._accounts.get(account_id)
        if state is None or cost < 0:
            return False
        return state.account.balance >= cost

    def get_transactions(self, account_id: str) -> List[CreditTransaction]:
        """Retained transactions, oldest first."""
        state = self._accounts.get(account_id)
        return list(state.transactions) if state else []

    # ==================== MUTATIONS ====================

    async def spend(self, account_id: str, amount: int, description: str) -> bool:
        """
        Debit `amount` credits.

        Returns False without mutating anything when the account is not
        loaded, the amount is not positive, the balance is short (locally or
        remotely) or the remote store cannot be reached.
        """
        return await self.debit(account_id, amount, description) is not None

    async def debit(self, account_id: str, amount: int, description: str) -> Optional[CreditTransaction]:
        """Same as spend, but returns the Spend entry the remote store recorded (None on failure)."""
        if not self.is_loaded(account_id):
            logger.warning(f"Spend denied: account {account_id} not loaded")
            return None
        if amount <= 0:
            return None

        async with self.account_lock(account_id):
            state = self._accounts.get(account_id)
            if state is None or amount > state.account.balance:
                return None

            try:
                result = await self.call_remote(
                    "debit",
                    lambda: self.remote.debit(account_id, amount, description),
                    idempotent=False
                )
            except CreditsApiError as e:
                logger.warning(f"Spend of {amount} for {account_id} failed remotely ({e.code}): {e}")
                await self.refresh_locked(account_id)
                return None

            if not result.success:
                logger.info(f"Spend of {amount} for {account_id} denied by remote (balance {result.credits_left})")
                await self.refresh_locked(account_id)
                return None

            transaction = result.transaction or CreditTransaction.spend(amount, description)
            total_spent = state.account.total_spent + amount
            state.account = state.account.model_copy(update={
                "balance": result.credits_left,
                "total_spent": total_spent,
                "total_earned": result.credits_left + total_spent,
                "last_updated": utc_now_iso()
            })
            state.append(transaction)
            await self._persist(account_id)

            logger.info(f"Spent {amount} credits for {account_id} ({description}), balance {result.credits_left}")
            return transaction

    async def earn(
        self,
        account_id: str,
        amount: int,
        description: str,
        product_id: Optional[str] = None
    ) -> CreditAccount:
        """
        Credit `amount` credits.

        Raises:
            NotAuthenticatedError: account not loaded
            CreditsApiError: invalid amount, or the remote store rejected or
                could not be reached (nothing is mutated locally)
        """
        if not self.is_loaded(account_id):
            raise NotAuthenticatedError(account_id)
        if amount <= 0:
            raise CreditsApiError(f"Earn amount must be positive, got {amount}", INVALID_ARGUMENT)

        result = await self.apply_remote_credit(
            account_id,
            "credit",
            lambda: self.remote.credit(account_id, amount, description, product_id),
            idempotent=False
        )
        logger.info(f"Earned {amount} credits for {account_id} ({description}), balance {result.account.balance}")
        return result.account.model_copy()

    async def refund(self, account_id: str, spend_transaction_id: str) -> CreditAccount:
        """
        Refund one Spend entry through the remote store.

        Safe to retry: the store refunds each Spend at most once.

        Raises:
            NotAuthenticatedError: account not loaded
            CreditsApiError: entry unknown, too old, or remote unreachable
        """
        if not self.is_loaded(account_id):
            raise NotAuthenticatedError(account_id)

        result = await self.apply_remote_credit(
            account_id,
            "refund",
            lambda: self.remote.refund(account_id, spend_transaction_id)
        )
        if result.duplicate:
            logger.info(f"Spend {spend_transaction_id} of {account_id} was already refunded")
        return result.account.model_copy()

    async def apply_remote_credit(self, account_id: str, operation: str, api_call, idempotent: bool = True) -> CreditResult:
        """Run a remote credit under the account lock and mirror its result locally."""
        async with self.account_lock(account_id):
            result = await self.call_remote(operation, api_call, idempotent=idempotent)
            self.apply_remote_account(account_id, result.account, None if result.duplicate else result.transaction)
            await self._persist(account_id)
            return result

    def apply_remote_account(
        self,
        account_id: str,
        account: CreditAccount,
        transaction: Optional[CreditTransaction] = None
    ):
        """
        Overwrite local state with an authoritative account.

        Call with the account lock held, then persist.
        """
        state = self._accounts.get(account_id)
        if state is None:
            return
        state.account = account.model_copy()
        if transaction is not None:
            state.append(transaction)

    async def persist(self, account_id: str):
        await self._persist(account_id)

    async def clear_history(self, account_id: str):
        """Forget the local transaction log; balances are untouched."""
        async with self.account_lock(account_id):
            state = self._accounts.get(account_id)
            if state is not None:
                state.transactions = []
            await self.cache.clear_transactions(account_id)

    # ==================== REFRESH ====================

    async def refresh(self, account_id: str):
        """
        Re-fetch the authoritative account, overwriting local state.

        Fail-soft: on remote failure the local state is kept and the error
        is only logged.
        """
        if not self.is_loaded(account_id):
            return
        async with self.account_lock(account_id):
            await self.refresh_locked(account_id)

    async def refresh_locked(self, account_id: str):
        """Same as refresh; the caller holds the account lock."""
        try:
            account = await self.call_remote("get_credits", lambda: self.remote.get_credits(account_id))
            transactions = await self.call_remote(
                "get_transactions", lambda: self.remote.get_transactions(account_id)
            )
        except CreditsApiError as e:
            logger.warning(f"Refresh failed for {account_id} ({e.code}), keeping cached balance")
            return

        state = self._accounts.get(account_id)
        if state is None:
            return
        state.account = account
        state.transactions = list(transactions)[-TRANSACTION_HISTORY_LIMIT:]
        await self._persist(account_id)
