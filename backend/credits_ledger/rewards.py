"""
Daily and Reward Grants

- Daily claim: DAILY_CREDIT_AMOUNT credits, at most once per calendar date
  in CREDITS_TIMEZONE. The remote store enforces the date atomically; the
  local check only avoids pointless round trips.
- Action rewards: fixed grants for share/rate/profile actions, priced by the
  store from REWARD_ACTIONS. Detecting the qualifying action is the caller's job.
"""

import logging
from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from . import config
from .config import DAILY_CREDIT_AMOUNT, DAILY_CREDIT_DESCRIPTION, REWARD_ACTIONS
from .errors import CreditsApiError, INVALID_ARGUMENT, NotAuthenticatedError
from .ledger_service import CreditsLedger
from .local_cache import LocalCreditsCache
from .models import CreditAccount, DailyClaimResult, DailyClaimState

logger = logging.getLogger(__name__)


class RewardService:
    def __init__(
        self,
        ledger: CreditsLedger,
        cache: Optional[LocalCreditsCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
        tz: Optional[str] = None,
        enabled: Optional[bool] = None
    ):
        self.ledger = ledger
        self.cache = cache if cache is not None else ledger.cache
        self.tz = ZoneInfo(tz or config.CREDITS_TIMEZONE)
        self.clock = clock or (lambda: datetime.now(self.tz))
        self.enabled = config.DAILY_CREDITS_ENABLED if enabled is None else enabled

    def today(self) -> str:
        """Current calendar date in the configured time zone (YYYY-MM-DD)."""
        now = self.clock()
        if now.tzinfo is not None:
            now = now.astimezone(self.tz)
        return now.date().isoformat()

    async def can_claim_daily(self, account_id: str) -> bool:
        if not self.enabled or not self.ledger.is_loaded(account_id):
            return False

        today = self.today()
        state = await self.cache.load_daily_claim(account_id)
        # ISO dates order as strings; a claim never moves back to an earlier date
        if state.last_claim is not None and state.last_claim >= today:
            return False

        account = self.ledger.get_account(account_id)
        return account.last_daily_claim is None or account.last_daily_claim < today

    async def claim_daily(self, account_id: str) -> DailyClaimResult:
        """Grant today's free credits once; later calls on the same date are denied."""
        if not await self.can_claim_daily(account_id):
            return DailyClaimResult(granted=False, balance=self.ledger.get_balance(account_id))

        async with self.ledger.account_lock(account_id):
            # Re-check under the lock; a concurrent claim may have landed
            if not await self.can_claim_daily(account_id):
                return DailyClaimResult(granted=False, balance=self.ledger.get_balance(account_id))

            today = self.today()
            try:
                result = await self.ledger.call_remote(
                    "claim_daily",
                    lambda: self.ledger.remote.claim_daily(
                        account_id, today, DAILY_CREDIT_AMOUNT, DAILY_CREDIT_DESCRIPTION
                    )
                )
            except CreditsApiError as e:
                logger.warning(f"Daily claim failed for {account_id} ({e.code}): {e}")
                return DailyClaimResult(granted=False, balance=self.ledger.get_balance(account_id))

            await self.cache.save_daily_claim(account_id, DailyClaimState(last_claim=today))

            if result is None:
                logger.info(f"Daily credits for {today} already claimed by {account_id}")
                return DailyClaimResult(granted=False, balance=self.ledger.get_balance(account_id))

            self.ledger.apply_remote_account(account_id, result.account, result.transaction)
            await self.ledger.persist(account_id)

        logger.info(f"Granted {DAILY_CREDIT_AMOUNT} daily credits to {account_id} for {today}")
        return DailyClaimResult(granted=True, amount=DAILY_CREDIT_AMOUNT, balance=result.account.balance)

    async def grant_reward(self, account_id: str, action_kind: str) -> CreditAccount:
        """
        Credit the fixed reward for a completed user action.

        The store looks the amount up by action; clients never choose it.

        Raises:
            CreditsApiError: unknown action, or the remote store failed
            NotAuthenticatedError: account not loaded
        """
        if action_kind not in REWARD_ACTIONS:
            raise CreditsApiError(f"Unknown reward action: {action_kind}", INVALID_ARGUMENT)
        if not self.ledger.is_loaded(account_id):
            raise NotAuthenticatedError(account_id)

        result = await self.ledger.apply_remote_credit(
            account_id,
            "grant_reward",
            lambda: self.ledger.remote.grant_reward(account_id, action_kind),
            idempotent=False
        )
        logger.info(f"Granted {action_kind} reward to {account_id}, balance {result.account.balance}")
        return result.account.model_copy()
