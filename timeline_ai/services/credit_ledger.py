"""
Credit Ledger - Check-and-deduct metering of per-user credits.

NO NEGATIVE BALANCES - deductions are conditional and atomic in the store.
"""

from typing import NoReturn

from timeline_ai.exceptions import InsufficientCreditsError
from timeline_ai.models.domain import CreditAccountData, DeductionResult
from timeline_ai.observability.logging import get_logger
from timeline_ai.observability.metrics import metrics
from timeline_ai.services.credit_store import CreditStore

logger = get_logger(__name__)

DEFAULT_STARTING_BALANCE = 100


class CreditLedger:
    """Per-user credit balances on top of a CreditStore."""

    def __init__(self, store: CreditStore, default_balance: int = DEFAULT_STARTING_BALANCE):
        if default_balance < 0:
            raise ValueError(f"default_balance cannot be negative: {default_balance}")
        self.store = store
        self.default_balance = default_balance

    async def get_or_create(self, user_id: str) -> CreditAccountData:
        """Return the user's account, granting the starting balance on first use."""
        return await self.store.get_or_create(user_id, self.default_balance)

    async def get_balance(self, user_id: str) -> int:
        """Current balance (creates the account if needed)."""
        account = await self.get_or_create(user_id)
        return account.balance

    async def check_and_deduct(self, user_id: str, amount: int, action: str) -> DeductionResult:
        """
        Deduct credits for one chargeable action.

        Args:
            user_id: Caller identity
            amount: Credits to deduct, must be positive
            action: Label recorded with the deduction (usually the pipeline stage)

        Returns:
            DeductionResult with the balance after deduction

        Raises:
            ValueError: If amount is not positive
            InsufficientCreditsError: If the balance cannot cover amount. The
                reported available balance is the one observed at call time.
        """
        if amount <= 0:
            raise ValueError(f"Deduction amount must be positive: {amount}")

        snapshot = await self.get_or_create(user_id)
        if snapshot.balance < amount:
            self._reject(user_id, amount, snapshot.balance, action)

        new_balance = await self.store.try_decrement(user_id, amount, action)
        if new_balance is None:
            # Lost a race against a concurrent deduction
            self._reject(user_id, amount, snapshot.balance, action)

        metrics.record_deduction(action, amount, success=True)
        logger.info(
            "credits_deducted",
            user_id=user_id,
            amount=amount,
            balance_after=new_balance,
            action=action,
        )
        return DeductionResult(
            user_id=user_id, amount=amount, new_balance=new_balance, action=action
        )

    async def increment(self, user_id: str, amount: int, reason: str = "grant") -> int:
        """
        Add credits (e.g. after a completed payment). Never clamps.

        Raises:
            ValueError: If amount is negative
        """
        if amount < 0:
            raise ValueError(f"Increment amount cannot be negative: {amount}")

        await self.get_or_create(user_id)
        if amount == 0:
            return await self.get_balance(user_id)

        new_balance = await self.store.increment(user_id, amount, reason)
        metrics.credits_added_total.inc(amount)
        logger.info(
            "credits_added",
            user_id=user_id,
            amount=amount,
            balance_after=new_balance,
            reason=reason,
        )
        return new_balance

    def _reject(self, user_id: str, amount: int, available: int, action: str) -> NoReturn:
        metrics.record_deduction(action, amount, success=False)
        logger.warning(
            "insufficient_credits",
            user_id=user_id,
            required=amount,
            available=available,
            action=action,
        )
        raise InsufficientCreditsError(required=amount, available=available)
