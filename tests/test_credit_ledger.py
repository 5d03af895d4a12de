"""
Tests for the credit ledger.

Covers account creation, check-and-deduct, increments and the
no-negative-balance guarantee under concurrent deductions.
"""

import asyncio

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from timeline_ai.exceptions import InsufficientCreditsError
from timeline_ai.models.api import TransactionKind
from timeline_ai.services.credit_ledger import CreditLedger
from timeline_ai.services.credit_store import MemoryCreditStore

# ============================================================================
# Hypothesis Strategies
# ============================================================================

operations = st.lists(
    st.tuples(st.sampled_from(["deduct", "increment"]), st.integers(min_value=1, max_value=60)),
    min_size=1,
    max_size=30,
)


class InterleavingStore(MemoryCreditStore):
    """
    Memory store that holds every decrement until two are in flight.

    Forces both callers to take their balance snapshot before either
    decrement lands.
    """

    def __init__(self) -> None:
        super().__init__()
        self.arrived = 0
        self.both_arrived = asyncio.Event()

    async def try_decrement(self, user_id: str, amount: int, action: str) -> int | None:
        self.arrived += 1
        if self.arrived >= 2:
            self.both_arrived.set()
        await self.both_arrived.wait()
        return await super().try_decrement(user_id, amount, action)


class TestGetOrCreate:
    """Tests for account creation."""

    @pytest.mark.asyncio
    async def test_first_access_grants_default(self, ledger: CreditLedger):
        """A new user starts with the default balance."""
        account = await ledger.get_or_create("new-user")
        assert account.balance == 100

    @pytest.mark.asyncio
    async def test_second_access_keeps_balance(self, ledger: CreditLedger):
        """Existing accounts are returned, not reset."""
        await ledger.check_and_deduct("user-1", 30, "events_draft")
        account = await ledger.get_or_create("user-1")
        assert account.balance == 70

    @pytest.mark.asyncio
    async def test_concurrent_first_access_creates_one_account(self, ledger: CreditLedger):
        """Racing first accesses still see a single account."""
        accounts = await asyncio.gather(*(ledger.get_or_create("racer") for _ in range(5)))
        assert {a.balance for a in accounts} == {100}
        await ledger.check_and_deduct("racer", 10, "events_draft")
        assert await ledger.get_balance("racer") == 90

    def test_negative_default_rejected(self, memory_store: MemoryCreditStore):
        """A negative starting balance is a configuration error."""
        with pytest.raises(ValueError):
            CreditLedger(memory_store, default_balance=-1)


class TestCheckAndDeduct:
    """Tests for check_and_deduct."""

    @pytest.mark.asyncio
    async def test_deducts_and_returns_new_balance(self, ledger: CreditLedger):
        """A covered deduction lowers the balance."""
        result = await ledger.check_and_deduct("user-1", 8, "events_draft")
        assert result.new_balance == 92
        assert result.amount == 8
        assert result.action == "events_draft"
        assert await ledger.get_balance("user-1") == 92

    @pytest.mark.asyncio
    async def test_exact_balance_can_be_spent(self, memory_store: MemoryCreditStore):
        """Spending the whole balance leaves zero."""
        ledger = CreditLedger(memory_store, default_balance=8)
        result = await ledger.check_and_deduct("user-1", 8, "events_draft")
        assert result.new_balance == 0

    @pytest.mark.asyncio
    async def test_insufficient_balance_rejected_unchanged(
        self, memory_store: MemoryCreditStore
    ):
        """An uncovered deduction raises and leaves the balance alone."""
        ledger = CreditLedger(memory_store, default_balance=5)

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await ledger.check_and_deduct("user-1", 8, "events_draft")

        assert exc_info.value.required == 8
        assert exc_info.value.available == 5
        assert exc_info.value.shortfall == 3
        assert await ledger.get_balance("user-1") == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5])
    async def test_non_positive_amount_rejected(self, ledger: CreditLedger, amount: int):
        """Deductions must be positive."""
        with pytest.raises(ValueError):
            await ledger.check_and_deduct("user-1", amount, "events_draft")

    @pytest.mark.asyncio
    async def test_deduction_recorded(self, ledger: CreditLedger, memory_store: MemoryCreditStore):
        """Each deduction leaves an audit entry."""
        await ledger.check_and_deduct("user-1", 8, "descriptions")
        assert memory_store.transactions == [
            ("user-1", TransactionKind.DEDUCTION, 8, 92, "descriptions")
        ]

    @pytest.mark.asyncio
    async def test_concurrent_deductions_never_overdraw(self):
        """Two 8-credit deductions against 10 credits: one wins, one reports (8, 10)."""
        store = InterleavingStore()
        ledger = CreditLedger(store, default_balance=10)
        await ledger.get_or_create("user-1")

        results = await asyncio.gather(
            ledger.check_and_deduct("user-1", 8, "events_draft"),
            ledger.check_and_deduct("user-1", 8, "events_draft"),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, BaseException)]
        failures = [r for r in results if isinstance(r, InsufficientCreditsError)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert successes[0].new_balance == 2
        assert (failures[0].required, failures[0].available) == (8, 10)
        assert await ledger.get_balance("user-1") == 2


class TestIncrement:
    """Tests for increment."""

    @pytest.mark.asyncio
    async def test_adds_credits(self, ledger: CreditLedger):
        """Increments raise the balance."""
        assert await ledger.increment("user-1", 50, reason="purchase") == 150

    @pytest.mark.asyncio
    async def test_never_clamps(self, ledger: CreditLedger):
        """Large increments are kept in full."""
        assert await ledger.increment("user-1", 10_000) == 10_100

    @pytest.mark.asyncio
    async def test_zero_is_noop(self, ledger: CreditLedger, memory_store: MemoryCreditStore):
        """A zero increment returns the balance and records nothing."""
        assert await ledger.increment("user-1", 0) == 100
        assert memory_store.transactions == []

    @pytest.mark.asyncio
    async def test_negative_rejected(self, ledger: CreditLedger):
        """Negative increments are rejected."""
        with pytest.raises(ValueError):
            await ledger.increment("user-1", -1)

    @pytest.mark.asyncio
    async def test_restores_spending_power(self, memory_store: MemoryCreditStore):
        """Credits added after a rejection make the action affordable."""
        ledger = CreditLedger(memory_store, default_balance=5)
        with pytest.raises(InsufficientCreditsError):
            await ledger.check_and_deduct("user-1", 8, "events_draft")

        await ledger.increment("user-1", 10)
        result = await ledger.check_and_deduct("user-1", 8, "events_draft")
        assert result.new_balance == 7


class TestBalanceProperties:
    """Property tests for ledger arithmetic."""

    @given(ops=operations, start=st.integers(min_value=0, max_value=100))
    @settings(max_examples=100)
    def test_balance_never_negative_and_conserved(self, ops, start):
        """Balance equals start plus increments minus accepted deductions, never below zero."""

        async def scenario() -> tuple[int, int]:
            ledger = CreditLedger(MemoryCreditStore(), default_balance=start)
            expected = start
            for op, amount in ops:
                if op == "increment":
                    await ledger.increment("user-1", amount)
                    expected += amount
                else:
                    try:
                        await ledger.check_and_deduct("user-1", amount, "images")
                    except InsufficientCreditsError:
                        continue
                    expected -= amount
                assert await ledger.get_balance("user-1") >= 0
            return await ledger.get_balance("user-1"), expected

        balance, expected = asyncio.run(scenario())
        assert balance == expected
        assert balance >= 0
