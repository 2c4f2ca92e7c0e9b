"""
SQLAlchemy ORM models for the deposit relay.

Defines the correlation record tracking one STK push attempt, the ledger
account holding an owner's balance, and the ledger credit row written once
per completed record. Amounts are stored as integer minor units.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    JSON,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def cents_to_amount(cents: int) -> Decimal:
    """Convert integer minor units to a two-place Decimal amount."""
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


class CorrelationRecord(Base):
    """
    Correlation record for one deposit attempt.

    Created as pending before the STK push is sent; moves exactly once to
    completed or failed when the gateway callback arrives. Status progresses
    through: pending → completed | failed
    """

    __tablename__ = "mpesa_transactions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    # Gateway identifiers (provisional until the push is accepted)
    merchant_request_id: Mapped[str] = mapped_column(
        String(128), nullable=False, unique=True
    )
    checkout_request_id: Mapped[str] = mapped_column(
        String(128), nullable=False, unique=True
    )

    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_cents: Mapped[int] = mapped_column(nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=STATUS_PENDING
    )

    # Populated from the callback
    result_code: Mapped[Optional[int]] = mapped_column(nullable=True)
    result_desc: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    receipt_reference: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    raw_callback: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="ck_mpesa_transaction_status",
        ),
        CheckConstraint("amount_cents > 0", name="ck_mpesa_transaction_amount"),
    )

    @property
    def amount(self) -> Decimal:
        """Deposit amount as a Decimal."""
        return cents_to_amount(self.amount_cents)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"CorrelationRecord(id={self.id!r}, owner_id={self.owner_id!r}, "
            f"checkout_request_id={self.checkout_request_id!r}, "
            f"amount_cents={self.amount_cents}, status={self.status!r})"
        )


class LedgerAccount(Base):
    """
    Ledger account holding an owner's balance.

    Only ever mutated by the credit applied on a pending → completed
    transition of one of the owner's correlation records.
    """

    __tablename__ = "ledger_accounts"

    owner_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    balance_cents: Mapped[int] = mapped_column(nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("balance_cents >= 0", name="ck_ledger_account_balance"),
    )

    @property
    def balance(self) -> Decimal:
        return cents_to_amount(self.balance_cents)

    def __repr__(self) -> str:
        return (
            f"LedgerAccount(owner_id={self.owner_id!r}, "
            f"balance_cents={self.balance_cents})"
        )


class LedgerCredit(Base):
    """
    One credit per completed correlation record.

    The unique record_id makes a second credit for the same record a
    constraint violation even if the status guard were bypassed.
    """

    __tablename__ = "ledger_credits"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    record_id: Mapped[str] = mapped_column(
        ForeignKey("mpesa_transactions.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
    )
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    amount_cents: Mapped[int] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_ledger_credit_amount"),
    )

    def __repr__(self) -> str:
        return (
            f"LedgerCredit(record_id={self.record_id!r}, owner_id={self.owner_id!r}, "
            f"amount_cents={self.amount_cents})"
        )
