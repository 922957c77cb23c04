import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from metering.core.database import Base

LEDGER_ENTRY_TYPES = ("grant", "expire", "purchase", "debit", "refund", "reversal")
CREDIT_POOLS = ("included", "purchased")


class CreditLedgerEntry(Base):
    """Immutable, attributed record of a balance-affecting event.

    The ledger is the system of record; CreditBalance is recomputable from it.
    """

    __tablename__ = "credit_ledger"
    __table_args__ = (
        UniqueConstraint("account_id", "idempotency_key", name="uq_credit_ledger_account_idempotency_key"),
        Index("ix_credit_ledger_account_id_created_at", "account_id", "created_at"),
        Index("ix_credit_ledger_account_id_operation_key", "account_id", "operation_key"),
        Index("ix_credit_ledger_reverses_entry_id", "reverses_entry_id"),
        Index("ix_credit_ledger_type", "type"),
        Index("ix_credit_ledger_feature", "feature"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False
    )
    type: Mapped[str] = mapped_column(
        Enum(*LEDGER_ENTRY_TYPES, name="credit_ledger_entry_type"),
        nullable=False,
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    pool: Mapped[str] = mapped_column(
        Enum(*CREDIT_POOLS, name="credit_pool"),
        nullable=False,
    )
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    feature: Mapped[str | None] = mapped_column(String(100))
    feature_metadata: Mapped[dict | None] = mapped_column(JSON().with_variant(JSONB(), "postgresql"))
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    operation_key: Mapped[str] = mapped_column(String(255), nullable=False)
    reverses_entry_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("credit_ledger.id")
    )
    external_reference: Mapped[str | None] = mapped_column(String(255))
    period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    description: Mapped[str | None] = mapped_column(String(500))
    created_by: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<CreditLedgerEntry {self.type} {self.pool} {self.amount}>"
