"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
Generic column types keep the schema portable between PostgreSQL and SQLite.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from timeline_ai.models.api import PromptStep, TransactionKind


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class CreditAccount(Base):
    """
    ORM model for credit_accounts table.

    One row per user; the balance never drops below zero.
    """

    __tablename__ = "credit_accounts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_balance_non_negative"),
        UniqueConstraint("user_id", name="uq_credit_accounts_user_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<CreditAccount(user_id={self.user_id}, balance={self.balance})>"


class CreditTransaction(Base):
    """
    ORM model for credit_transactions table.

    Append-only audit trail of deductions and increments.
    """

    __tablename__ = "credit_transactions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[TransactionKind] = mapped_column(
        SQLEnum(
            TransactionKind,
            name="credit_transaction_kind",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # Pipeline stage for deductions, grant reason for increments
    reason: Mapped[str] = mapped_column(String(100), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_credit_transaction_amount_positive"),
        CheckConstraint("balance_after >= 0", name="ck_credit_transaction_balance_non_negative"),
        Index("idx_credit_transactions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditTransaction(user_id={self.user_id}, kind={self.kind}, "
            f"amount={self.amount}, balance_after={self.balance_after})>"
        )


class PromptTemplateRecord(Base):
    """
    ORM model for prompt_templates table.

    Versioned system/user prompt pairs, one series per pipeline step.
    """

    __tablename__ = "prompt_templates"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    step: Mapped[PromptStep] = mapped_column(
        SQLEnum(
            PromptStep,
            name="prompt_step",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    system_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # "metadata" is reserved on declarative classes
    template_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("version >= 1", name="ck_prompt_template_version_positive"),
        Index("idx_prompt_templates_step_updated", "step", "updated_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<PromptTemplateRecord(id={self.id}, step={self.step}, version={self.version})>"
