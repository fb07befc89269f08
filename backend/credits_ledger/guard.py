"""
Usage Guard - Pre-execution credits guard

Enforces:
- Credit cost lookup per feature
- Balance check and authoritative debit before the feature runs
- Compensating refund when a debited feature fails

IMPORTANT: attempt_usage must succeed strictly before the feature provider
is invoked. Prefer run_metered, which pairs the debit with its refund.
"""

import logging
from typing import Any, Awaitable, Callable, Optional

from .config import USAGE_COSTS, USAGE_DESCRIPTIONS
from .errors import (
    CreditsApiError,
    InsufficientCreditsError,
    INSUFFICIENT_CREDITS,
    UNAUTHENTICATED,
    UNAVAILABLE,
    user_message_for,
)
from .ledger_service import CreditsLedger
from .models import UsageResult

logger = logging.getLogger(__name__)


class UsageGuard:
    """
    Usage:
        guard = UsageGuard(ledger)
        result = await guard.attempt_usage(user_id, "basic_hairstyle")
        if not result.authorized:
            prompt_purchase(result.error_message)

        try:
            image = await provider.generate(...)
        except Exception:
            await guard.reverse_usage(user_id, result, "Provider failed")
            raise
    """

    def __init__(self, ledger: CreditsLedger):
        self.ledger = ledger

    def cost(self, feature: str, custom_cost: Optional[int] = None) -> int:
        """Credit cost of a feature. Unknown features raise ValueError."""
        if custom_cost is not None:
            if custom_cost <= 0:
                raise ValueError(f"Custom cost must be positive, got {custom_cost}")
            return custom_cost
        if feature not in USAGE_COSTS:
            raise ValueError(f"Unknown feature: {feature}")
        return USAGE_COSTS[feature]

    def can_use(self, account_id: str, feature: str, custom_cost: Optional[int] = None) -> bool:
        return self.ledger.can_afford(account_id, self.cost(feature, custom_cost))

    async def attempt_usage(self, account_id: str, feature: str, custom_cost: Optional[int] = None) -> UsageResult:
        """
        Check the balance and debit the feature cost.

        Denied results never mutate the ledger.
        """
        cost = self.cost(feature, custom_cost)

        if not self.ledger.is_loaded(account_id):
            return UsageResult(
                authorized=False,
                feature=feature,
                cost=cost,
                error_code=UNAUTHENTICATED,
                error_message=user_message_for(UNAUTHENTICATED)
            )

        balance = self.ledger.get_balance(account_id)
        if not self.ledger.can_afford(account_id, cost):
            return UsageResult(
                authorized=False,
                feature=feature,
                cost=cost,
                error_code=INSUFFICIENT_CREDITS,
                error_message=InsufficientCreditsError(cost, balance).user_message,
                remaining_balance=balance
            )

        description = USAGE_DESCRIPTIONS.get(feature, feature)
        transaction = await self.ledger.debit(account_id, cost, description)
        if transaction is None:
            balance = self.ledger.get_balance(account_id)
            # Spend fails either on a short remote balance or an unreachable remote
            code = INSUFFICIENT_CREDITS if balance < cost else UNAVAILABLE
            return UsageResult(
                authorized=False,
                feature=feature,
                cost=cost,
                error_code=code,
                error_message=user_message_for(code),
                remaining_balance=balance
            )

        return UsageResult(
            authorized=True,
            feature=feature,
            cost=cost,
            remaining_balance=self.ledger.get_balance(account_id),
            usage_id=transaction.id
        )

    async def reverse_usage(self, account_id: str, result: UsageResult, reason: str = "System error"):
        """
        Refund a debited usage whose feature failed.

        Only call this for failures of the feature itself. The store refunds the
        Spend entry `result.usage_id` once with a new Earn; the original Spend
        stays in the log. Repeating the call is harmless.
        """
        if not result.authorized or result.cost == 0 or not result.usage_id:
            return

        await self.ledger.refund(account_id, result.usage_id)
        logger.info(f"Reversed {result.cost} credits for {account_id} usage {result.usage_id}: {reason}")

    async def run_metered(
        self,
        account_id: str,
        feature: str,
        operation: Callable[[UsageResult], Awaitable[Any]],
        custom_cost: Optional[int] = None
    ) -> Any:
        """
        Debit, run the feature, refund if it raises.

        Raises:
            InsufficientCreditsError: the usage was not authorized
        """
        result = await self.attempt_usage(account_id, feature, custom_cost)
        if not result.authorized:
            if result.error_code == INSUFFICIENT_CREDITS:
                raise InsufficientCreditsError(result.cost, result.remaining_balance)
            raise CreditsApiError(f"Usage of {feature} not authorized", result.error_code)

        try:
            return await operation(result)
        except Exception as e:
            logger.error(f"Metered {feature} failed for {account_id}: {e}")
            try:
                await self.reverse_usage(account_id, result, str(e))
            except CreditsApiError as refund_error:
                logger.error(f"Refund of {result.cost} credits for {account_id} failed: {refund_error}")
            raise
