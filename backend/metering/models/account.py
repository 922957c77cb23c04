import uuid
from datetime import datetime

from sqlalchemy import DateTime, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from metering.core.database import Base


class Account(Base):
    """Tenant account as seen by the credit ledger.

    Only the subscription fields the grant policy reads live here; the
    account system owns the rest.
    """

    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    plan: Mapped[str | None] = mapped_column(String(50), index=True)
    billing_anchor_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), onupdate=func.now())

    credit_balance: Mapped["CreditBalance | None"] = relationship(back_populates="account", uselist=False)

    def __repr__(self) -> str:
        return f"<Account {self.name} plan={self.plan}>"
