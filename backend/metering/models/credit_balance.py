import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from metering.core.database import Base


class CreditBalance(Base):
    """Materialized per-account balance — one row per account.

    A cache of the credit ledger: each pool field equals the sum of that
    pool's ledger entries.
    """

    __tablename__ = "credit_balances"
    __table_args__ = (
        CheckConstraint("included_credits >= 0", name="ck_credit_balances_included_non_negative"),
        CheckConstraint("purchased_credits >= 0", name="ck_credit_balances_purchased_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False, unique=True
    )
    included_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    included_credits_expire_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    purchased_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_monthly_grant_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_grant_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_frozen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    frozen_reason: Mapped[str | None] = mapped_column(String(500))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now()
    )

    account: Mapped["Account"] = relationship(back_populates="credit_balance")

    def __repr__(self) -> str:
        return (
            f"<CreditBalance account={self.account_id} "
            f"included={self.included_credits} purchased={self.purchased_credits}>"
        )
