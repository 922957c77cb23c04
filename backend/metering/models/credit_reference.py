import uuid

from sqlalchemy import Boolean, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from metering.core.database import Base


class TierCredit(Base):
    """Monthly included credits per subscription tier."""

    __tablename__ = "credit_included_by_tier"

    tier: Mapped[str] = mapped_column(String(50), primary_key=True)
    monthly_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<TierCredit {self.tier}={self.monthly_credits}>"


class CreditPricingRule(Base):
    """Administrator override for a feature's unit credit cost."""

    __tablename__ = "credit_pricing_rules"
    __table_args__ = (
        UniqueConstraint("feature", "rule_key", name="uq_credit_pricing_rules_feature_rule_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    feature: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    rule_key: Mapped[str] = mapped_column(String(100), nullable=False)
    credit_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(String(500))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<CreditPricingRule {self.feature}:{self.rule_key}={self.credit_cost}>"
