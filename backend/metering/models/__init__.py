from metering.models.account import Account
from metering.models.credit_balance import CreditBalance
from metering.models.credit_ledger import CreditLedgerEntry
from metering.models.credit_pack import CreditPack
from metering.models.credit_reference import CreditPricingRule, TierCredit

__all__ = [
    "Account",
    "CreditBalance",
    "CreditLedgerEntry",
    "CreditPack",
    "CreditPricingRule",
    "TierCredit",
]
