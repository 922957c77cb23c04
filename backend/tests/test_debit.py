"""Tests for the debit engine — consumption order, expiry, idempotency, refunds."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from metering.models import Account, CreditLedgerEntry, CreditPack
from metering.services.credits import (
    DuplicateOperationError,
    InsufficientCreditsError,
    InvalidAmountError,
    LedgerEntryNotFoundError,
    LedgerInvariantViolation,
    RefundNotAllowedError,
    apply_monthly_grant,
    apply_purchase,
    debit,
    get_balance,
    refund,
    refund_operation,
    seed_tier_credits,
    verify_ledger,
)

UTC = timezone.utc
NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)
EXPIRY = datetime(2026, 4, 1, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _fund(db, account, included=0, purchased=0, now=NOW):
    """Give the account ``included`` credits expiring at EXPIRY and ``purchased`` credits."""
    if included:
        seed_tier_credits(db, {"custom": included})
        account.plan = "custom"
        db.commit()
        apply_monthly_grant(db, account.id, now=now)
    if purchased:
        pack = CreditPack(name=f"Pack {purchased}", credits=purchased, price_cents=purchased * 40)
        db.add(pack)
        db.commit()
        apply_purchase(db, account.id, pack.id, f"test-purchase:{uuid.uuid4()}", now=now)


def _debits(db, account_id):
    return (
        db.query(CreditLedgerEntry)
        .filter(CreditLedgerEntry.account_id == account_id, CreditLedgerEntry.type == "debit")
        .order_by(CreditLedgerEntry.pool)
        .all()
    )


# ---------------------------------------------------------------------------
# Consumption order
# ---------------------------------------------------------------------------


class TestConsumptionOrder:
    def test_included_spent_before_purchased(self, db, account):
        _fund(db, account, included=5, purchased=10)

        result = debit(db, account.id, 8, "geo-grid", "op-1", now=NOW)
        assert result.included_debited == 5
        assert result.purchased_debited == 3
        assert result.balance_after == 7
        assert result.replayed is False

        balance = get_balance(db, account.id, now=NOW)
        assert balance.included_credits == 0
        assert balance.purchased_credits == 7

    def test_split_debit_writes_one_row_per_pool(self, db, account):
        _fund(db, account, included=5, purchased=10)
        result = debit(db, account.id, 8, "geo-grid", "op-1", now=NOW)

        included, purchased = _debits(db, account.id)
        assert (included.pool, included.amount, included.idempotency_key) == ("included", -5, "op-1:included")
        assert (purchased.pool, purchased.amount, purchased.idempotency_key) == ("purchased", -3, "op-1:purchased")
        assert included.operation_key == purchased.operation_key == "op-1"
        assert set(result.entry_ids) == {included.id, purchased.id}
        assert purchased.balance_after == 7

    def test_single_pool_debit_keeps_key(self, db, account):
        _fund(db, account, included=20)
        debit(db, account.id, 8, "geo-grid", "op-1", now=NOW)

        (entry,) = _debits(db, account.id)
        assert entry.idempotency_key == "op-1"
        assert entry.pool == "included"

    def test_purchased_only(self, db, account):
        _fund(db, account, purchased=10)
        result = debit(db, account.id, 4, "rank-check", "op-1", now=NOW)
        assert result.purchased_debited == 4
        assert result.included_debited == 0

    def test_attribution_recorded(self, db, account):
        _fund(db, account, purchased=10)
        debit(
            db,
            account.id,
            4,
            "rank-check",
            "op-1",
            metadata={"keywords": 2},
            created_by="user-42",
            now=NOW,
        )
        (entry,) = _debits(db, account.id)
        assert entry.feature == "rank-check"
        assert entry.feature_metadata == {"keywords": 2}
        assert entry.created_by == "user-42"


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


class TestExpiry:
    def test_expired_included_cannot_be_spent(self, db, account):
        _fund(db, account, included=5, purchased=3)
        later = EXPIRY + timedelta(days=1)

        assert get_balance(db, account.id, now=later).total_credits == 3
        with pytest.raises(InsufficientCreditsError) as exc_info:
            debit(db, account.id, 4, "geo-grid", "op-1", now=later)
        assert exc_info.value.required == 4
        assert exc_info.value.available == 3
        assert exc_info.value.shortfall == 1

    def test_debit_at_exact_expiry_uses_purchased_only(self, db, account):
        _fund(db, account, included=5, purchased=3)
        result = debit(db, account.id, 2, "geo-grid", "op-1", now=EXPIRY)
        assert result.included_debited == 0
        assert result.purchased_debited == 2

    def test_debit_just_before_expiry_uses_included(self, db, account):
        _fund(db, account, included=5, purchased=3)
        result = debit(db, account.id, 2, "geo-grid", "op-1", now=EXPIRY - timedelta(seconds=1))
        assert result.included_debited == 2


# ---------------------------------------------------------------------------
# Insufficient credits
# ---------------------------------------------------------------------------


class TestInsufficientCredits:
    def test_refused_without_changes(self, db, account):
        _fund(db, account, included=5, purchased=10)

        with pytest.raises(InsufficientCreditsError) as exc_info:
            debit(db, account.id, 16, "sentiment-analysis", "op-1", now=NOW)
        assert exc_info.value.shortfall == 1

        balance = get_balance(db, account.id, now=NOW)
        assert balance.included_credits == 5
        assert balance.purchased_credits == 10
        assert _debits(db, account.id) == []

    def test_exact_balance_allowed(self, db, account):
        _fund(db, account, included=5, purchased=10)
        result = debit(db, account.id, 15, "geo-grid", "op-1", now=NOW)
        assert result.balance_after == 0

    def test_empty_account(self, db, account):
        with pytest.raises(InsufficientCreditsError):
            debit(db, account.id, 1, "geo-grid", "op-1", now=NOW)

    def test_refused_key_can_be_reused(self, db, account):
        with pytest.raises(InsufficientCreditsError):
            debit(db, account.id, 5, "geo-grid", "op-1", now=NOW)
        _fund(db, account, purchased=10)
        assert debit(db, account.id, 5, "geo-grid", "op-1", now=NOW).replayed is False


# ---------------------------------------------------------------------------
# Idempotency
# ---------------------------------------------------------------------------


class TestIdempotency:
    def test_same_key_debits_once(self, db, account):
        _fund(db, account, included=5, purchased=10)

        first = debit(db, account.id, 8, "geo-grid", "op-1", now=NOW)
        second = debit(db, account.id, 8, "geo-grid", "op-1", now=NOW + timedelta(minutes=5))

        assert second.replayed is True
        assert second.entry_ids == first.entry_ids
        assert second.included_debited == first.included_debited
        assert second.purchased_debited == first.purchased_debited
        assert get_balance(db, account.id, now=NOW).total_credits == 7
        assert len(_debits(db, account.id)) == 2

    def test_replay_succeeds_even_when_balance_now_short(self, db, account):
        _fund(db, account, purchased=10)
        debit(db, account.id, 10, "geo-grid", "op-1", now=NOW)
        assert debit(db, account.id, 10, "geo-grid", "op-1", now=NOW).replayed is True

    def test_same_key_different_amount(self, db, account):
        _fund(db, account, purchased=10)
        debit(db, account.id, 3, "geo-grid", "op-1", now=NOW)
        with pytest.raises(DuplicateOperationError):
            debit(db, account.id, 4, "geo-grid", "op-1", now=NOW)

    def test_same_key_different_feature(self, db, account):
        _fund(db, account, purchased=10)
        debit(db, account.id, 3, "geo-grid", "op-1", now=NOW)
        with pytest.raises(DuplicateOperationError):
            debit(db, account.id, 3, "rank-check", "op-1", now=NOW)

    def test_key_used_by_purchase(self, db, account, pack):
        apply_purchase(db, account.id, pack.id, "shared-key", now=NOW)
        with pytest.raises(DuplicateOperationError):
            debit(db, account.id, 3, "geo-grid", "shared-key", now=NOW)

    def test_keys_scoped_per_account(self, db, account, tiers):
        other = Account(name="Other", plan="builder")
        db.add(other)
        db.commit()
        _fund(db, account, purchased=10)
        _fund(db, other, purchased=10)

        debit(db, account.id, 3, "geo-grid", "op-1", now=NOW)
        assert debit(db, other.id, 3, "geo-grid", "op-1", now=NOW).replayed is False

    def test_key_of_split_debit_row(self, db, account):
        _fund(db, account, included=5, purchased=10)
        debit(db, account.id, 8, "geo-grid", "op", now=NOW)

        with pytest.raises(DuplicateOperationError):
            debit(db, account.id, 1, "geo-grid", "op:purchased", now=NOW)
        assert get_balance(db, account.id, now=NOW).total_credits == 7
        assert len(_debits(db, account.id)) == 2

    def test_split_debit_colliding_with_existing_key(self, db, account):
        _fund(db, account, included=5, purchased=10)
        debit(db, account.id, 1, "geo-grid", "op:included", now=NOW)

        with pytest.raises(DuplicateOperationError):
            debit(db, account.id, 8, "geo-grid", "op", now=NOW)
        assert get_balance(db, account.id, now=NOW).total_credits == 14
        verify_ledger(db, account.id)


# ---------------------------------------------------------------------------
# Validation & halts
# ---------------------------------------------------------------------------


class TestValidation:
    @pytest.mark.parametrize("amount", [0, -5, 1.5, True, "3"])
    def test_invalid_amount(self, db, account, amount):
        with pytest.raises(InvalidAmountError):
            debit(db, account.id, amount, "geo-grid", "op-1", now=NOW)

    def test_invalid_amount_is_value_error(self, db, account):
        with pytest.raises(ValueError):
            debit(db, account.id, 0, "geo-grid", "op-1", now=NOW)

    def test_missing_key(self, db, account):
        with pytest.raises(ValueError):
            debit(db, account.id, 1, "geo-grid", "  ", now=NOW)

    def test_missing_balance_record(self, db, tiers):
        acct = Account(name="No Balance", plan="builder")
        db.add(acct)
        db.commit()
        with pytest.raises(LedgerInvariantViolation):
            debit(db, acct.id, 1, "geo-grid", "op-1", now=NOW)

    def test_ledger_matches_balance_after_mixed_operations(self, db, account):
        _fund(db, account, included=20, purchased=30)
        debit(db, account.id, 25, "geo-grid", "op-1", now=NOW)
        debit(db, account.id, 5, "rank-check", "op-2", now=NOW)
        with pytest.raises(InsufficientCreditsError):
            debit(db, account.id, 50, "geo-grid", "op-3", now=NOW)
        verify_ledger(db, account.id)


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------


class TestRefund:
    def test_refund_to_included_within_period(self, db, account):
        _fund(db, account, included=20)
        charged = debit(db, account.id, 8, "geo-grid", "op-1", now=NOW)

        result = refund(db, charged.entry_ids[0], now=NOW + timedelta(minutes=1))
        assert result.pool == "included"
        assert result.amount == 8
        assert result.idempotency_key == f"refund:{charged.entry_ids[0]}"
        assert get_balance(db, account.id, now=NOW).included_credits == 20
        verify_ledger(db, account.id)

    def test_refund_after_expiry_goes_to_purchased(self, db, account):
        _fund(db, account, included=20)
        charged = debit(db, account.id, 8, "geo-grid", "op-1", now=NOW)

        result = refund(db, charged.entry_ids[0], now=EXPIRY + timedelta(days=1))
        assert result.pool == "purchased"
        balance = get_balance(db, account.id, now=EXPIRY + timedelta(days=1))
        assert balance.purchased_credits == 8
        assert balance.total_credits == 8

    def test_refund_after_new_grant_goes_to_purchased(self, db, account):
        _fund(db, account, included=20)
        charged = debit(db, account.id, 8, "geo-grid", "op-1", now=NOW)
        apply_monthly_grant(db, account.id, now=EXPIRY)

        result = refund(db, charged.entry_ids[0], now=EXPIRY + timedelta(days=1))
        assert result.pool == "purchased"
        balance = get_balance(db, account.id, now=EXPIRY + timedelta(days=1))
        assert balance.included_credits == 20
        assert balance.purchased_credits == 8
        verify_ledger(db, account.id)

    def test_purchased_debit_refunds_to_purchased(self, db, account):
        _fund(db, account, purchased=10)
        charged = debit(db, account.id, 4, "geo-grid", "op-1", now=NOW)
        assert refund(db, charged.entry_ids[0], now=NOW).pool == "purchased"
        assert get_balance(db, account.id, now=NOW).purchased_credits == 10

    def test_refund_is_idempotent(self, db, account):
        _fund(db, account, purchased=10)
        charged = debit(db, account.id, 4, "geo-grid", "op-1", now=NOW)

        first = refund(db, charged.entry_ids[0], now=NOW)
        second = refund(db, charged.entry_ids[0], now=NOW)
        assert second.replayed is True
        assert second.entry_id == first.entry_id
        assert get_balance(db, account.id, now=NOW).purchased_credits == 10

    def test_partial_refunds(self, db, account):
        _fund(db, account, purchased=10)
        charged = debit(db, account.id, 10, "geo-grid", "op-1", now=NOW)
        entry_id = charged.entry_ids[0]

        assert refund(db, entry_id, amount=4, idempotency_key="partial-1", now=NOW).amount == 4
        assert refund(db, entry_id, idempotency_key="partial-2", now=NOW).amount == 6
        with pytest.raises(RefundNotAllowedError):
            refund(db, entry_id, idempotency_key="partial-3", now=NOW)
        assert get_balance(db, account.id, now=NOW).purchased_credits == 10

    def test_cannot_refund_more_than_debited(self, db, account):
        _fund(db, account, purchased=10)
        charged = debit(db, account.id, 4, "geo-grid", "op-1", now=NOW)
        with pytest.raises(RefundNotAllowedError):
            refund(db, charged.entry_ids[0], amount=5, now=NOW)

    def test_replay_with_different_amount(self, db, account):
        _fund(db, account, purchased=10)
        charged = debit(db, account.id, 4, "geo-grid", "op-1", now=NOW)
        refund(db, charged.entry_ids[0], amount=2, idempotency_key="r-1", now=NOW)
        with pytest.raises(DuplicateOperationError):
            refund(db, charged.entry_ids[0], amount=3, idempotency_key="r-1", now=NOW)

    def test_only_debits_refundable(self, db, account):
        _fund(db, account, included=20)
        grant = db.query(CreditLedgerEntry).filter(CreditLedgerEntry.type == "grant").one()
        with pytest.raises(RefundNotAllowedError):
            refund(db, grant.id, now=NOW)

    def test_unknown_entry(self, db, account):
        with pytest.raises(LedgerEntryNotFoundError):
            refund(db, uuid.uuid4(), now=NOW)


class TestRefundOperation:
    def test_reverses_split_debit(self, db, account):
        _fund(db, account, included=5, purchased=10)
        debit(db, account.id, 8, "geo-grid", "op-1", now=NOW)

        results = refund_operation(db, account.id, "op-1", now=NOW)
        assert sorted((r.pool, r.amount) for r in results) == [("included", 5), ("purchased", 3)]
        assert {r.idempotency_key for r in results} == {"op-1:refund:included", "op-1:refund:purchased"}

        balance = get_balance(db, account.id, now=NOW)
        assert balance.included_credits == 5
        assert balance.purchased_credits == 10
        verify_ledger(db, account.id)

    def test_idempotent(self, db, account):
        _fund(db, account, purchased=10)
        debit(db, account.id, 4, "geo-grid", "op-1", now=NOW)

        refund_operation(db, account.id, "op-1", now=NOW)
        (again,) = refund_operation(db, account.id, "op-1", now=NOW)
        assert again.replayed is True
        assert again.idempotency_key == "op-1:refund"
        assert get_balance(db, account.id, now=NOW).purchased_credits == 10

    def test_unknown_operation(self, db, account):
        with pytest.raises(LedgerEntryNotFoundError):
            refund_operation(db, account.id, "never-happened")
