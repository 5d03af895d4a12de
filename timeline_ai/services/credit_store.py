"""
Credit Stores - Persistence for per-user credit balances.

Both stores guarantee at most one account per user and a balance that never
goes negative; the decrement is a single conditional operation.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from timeline_ai.db.models import CreditAccount, CreditTransaction, utc_now
from timeline_ai.models.api import TransactionKind
from timeline_ai.models.domain import CreditAccountData

logger = get_logger(__name__)


class CreditStore(ABC):
    """Storage backend for the credit ledger."""

    @abstractmethod
    async def get_or_create(self, user_id: str, default_balance: int) -> CreditAccountData:
        """Return the user's account, creating it with default_balance on first use."""

    @abstractmethod
    async def try_decrement(self, user_id: str, amount: int, action: str) -> int | None:
        """
        Subtract amount only if the balance covers it.

        Returns:
            The new balance, or None when the balance was insufficient
        """

    @abstractmethod
    async def increment(self, user_id: str, amount: int, reason: str) -> int:
        """Add amount to an existing account and return the new balance."""


class SqlCreditStore(CreditStore):
    """Credit store over any SQLAlchemy async engine."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @staticmethod
    def _to_domain(account: CreditAccount) -> CreditAccountData:
        return CreditAccountData(
            user_id=account.user_id,
            balance=account.balance,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )

    async def _find(self, session: AsyncSession, user_id: str) -> CreditAccount | None:
        stmt = select(CreditAccount).where(CreditAccount.user_id == user_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create(self, user_id: str, default_balance: int) -> CreditAccountData:
        async with self.session_factory() as session:
            account = await self._find(session, user_id)
            if account is not None:
                return self._to_domain(account)

            account = CreditAccount(user_id=user_id, balance=default_balance)
            session.add(account)
            try:
                await session.commit()
            except IntegrityError as e:
                # Race condition - account created by a concurrent request
                logger.info("credit_account_creation_race", user_id=user_id, error=str(e))
                await session.rollback()
                account = await self._find(session, user_id)
                if account is None:
                    raise
            else:
                logger.info(
                    "credit_account_created", user_id=user_id, balance=default_balance
                )
            return self._to_domain(account)

    async def try_decrement(self, user_id: str, amount: int, action: str) -> int | None:
        async with self.session_factory() as session:
            stmt = (
                update(CreditAccount)
                .where(CreditAccount.user_id == user_id, CreditAccount.balance >= amount)
                .values(balance=CreditAccount.balance - amount, updated_at=utc_now())
                .returning(CreditAccount.balance)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            new_balance = result.scalar_one_or_none()
            if new_balance is None:
                await session.rollback()
                return None

            session.add(
                CreditTransaction(
                    user_id=user_id,
                    kind=TransactionKind.DEDUCTION,
                    amount=amount,
                    balance_after=new_balance,
                    reason=action,
                )
            )
            await session.commit()
            return int(new_balance)

    async def increment(self, user_id: str, amount: int, reason: str) -> int:
        async with self.session_factory() as session:
            stmt = (
                update(CreditAccount)
                .where(CreditAccount.user_id == user_id)
                .values(balance=CreditAccount.balance + amount, updated_at=utc_now())
                .returning(CreditAccount.balance)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            new_balance = result.scalar_one_or_none()
            if new_balance is None:
                await session.rollback()
                raise LookupError(f"No credit account for user {user_id}")

            session.add(
                CreditTransaction(
                    user_id=user_id,
                    kind=TransactionKind.INCREMENT,
                    amount=amount,
                    balance_after=new_balance,
                    reason=reason,
                )
            )
            await session.commit()
            return int(new_balance)


class MemoryCreditStore(CreditStore):
    """In-process credit store for development and tests."""

    def __init__(self) -> None:
        self._balances: dict[str, int] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.transactions: list[tuple[str, TransactionKind, int, int, str]] = []

    async def get_or_create(self, user_id: str, default_balance: int) -> CreditAccountData:
        async with self._locks[user_id]:
            if user_id not in self._balances:
                self._balances[user_id] = default_balance
                logger.info("credit_account_created", user_id=user_id, balance=default_balance)
            return CreditAccountData(user_id=user_id, balance=self._balances[user_id])

    async def try_decrement(self, user_id: str, amount: int, action: str) -> int | None:
        async with self._locks[user_id]:
            balance = self._balances.get(user_id)
            if balance is None or balance < amount:
                return None
            self._balances[user_id] = balance - amount
            self.transactions.append(
                (user_id, TransactionKind.DEDUCTION, amount, balance - amount, action)
            )
            return balance - amount

    async def increment(self, user_id: str, amount: int, reason: str) -> int:
        async with self._locks[user_id]:
            if user_id not in self._balances:
                raise LookupError(f"No credit account for user {user_id}")
            self._balances[user_id] += amount
            new_balance = self._balances[user_id]
            self.transactions.append(
                (user_id, TransactionKind.INCREMENT, amount, new_balance, reason)
            )
            return new_balance
