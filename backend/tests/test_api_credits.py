"""Tests for the read-only credit API and its error mapping."""

import uuid

from fastapi import FastAPI
from fastapi.testclient import TestClient

from metering.api.errors import register_exception_handlers
from metering.models import Account, CreditPack
from metering.services.credits import (
    StorageError,
    apply_monthly_grant,
    apply_purchase,
    debit,
)

NONEXISTENT_UUID = str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Balance
# ---------------------------------------------------------------------------


class TestBalanceEndpoint:
    def test_empty_balance(self, client, account_id):
        resp = client.get("/api/v1/credits/balance", params={"account_id": str(account_id)})
        assert resp.status_code == 200
        data = resp.json()
        assert data["included"] == 0
        assert data["purchased"] == 0
        assert data["total"] == 0
        assert data["monthly_credits"] == 100
        assert data["included_credits_expire_at"] is None
        assert data["last_monthly_grant_at"] is None

    def test_after_grant_and_purchase(self, client, db, account_id, pack):
        apply_monthly_grant(db, account_id)
        apply_purchase(db, account_id, pack.id, "checkout:cs_1")
        debit(db, account_id, 10, "geo-grid", "op-1")

        data = client.get("/api/v1/credits/balance", params={"account_id": str(account_id)}).json()
        assert data["included"] == 90
        assert data["purchased"] == 50
        assert data["total"] == 140
        assert data["included_credits_expire_at"] is not None
        assert data["last_monthly_grant_at"] is not None

    def test_creates_missing_balance_record(self, client, db, tiers):
        acct = Account(name="Fresh", plan="grower")
        db.add(acct)
        db.commit()

        resp = client.get("/api/v1/credits/balance", params={"account_id": str(acct.id)})
        assert resp.status_code == 200
        assert resp.json()["monthly_credits"] == 50

    def test_unknown_account(self, client):
        resp = client.get("/api/v1/credits/balance", params={"account_id": NONEXISTENT_UUID})
        assert resp.status_code == 404

    def test_account_id_required(self, client):
        resp = client.get("/api/v1/credits/balance")
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Packs
# ---------------------------------------------------------------------------


class TestPacksEndpoint:
    def test_lists_active_packs_with_formatted_price(self, client, db, pack):
        db.add(CreditPack(name="Retired", credits=10, price_cents=500, is_active=False))
        db.commit()

        resp = client.get("/api/v1/credits/packs")
        assert resp.status_code == 200
        items = resp.json()["items"]
        assert len(items) == 1
        assert items[0]["name"] == "Small"
        assert items[0]["credits"] == 50
        assert items[0]["price_cents"] == 2000
        assert items[0]["formatted_price"] == "$20.00"
        assert items[0]["external_price_id_recurring"] == "price_small_monthly"

    def test_empty_catalog(self, client):
        resp = client.get("/api/v1/credits/packs")
        assert resp.status_code == 200
        assert resp.json()["items"] == []


# ---------------------------------------------------------------------------
# Ledger history
# ---------------------------------------------------------------------------


class TestLedgerEndpoint:
    def test_history(self, client, db, account_id):
        apply_monthly_grant(db, account_id)
        debit(db, account_id, 10, "geo-grid", "op-1", metadata={"grid_size": 3})

        resp = client.get("/api/v1/credits/ledger", params={"account_id": str(account_id)})
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 2
        assert data["page"] == 1
        assert data["page_size"] == 20
        types = {item["type"] for item in data["items"]}
        assert types == {"grant", "debit"}

    def test_filter_by_type_and_feature(self, client, db, account_id):
        apply_monthly_grant(db, account_id)
        debit(db, account_id, 10, "geo-grid", "op-1")
        debit(db, account_id, 2, "rank-check", "op-2")

        data = client.get(
            "/api/v1/credits/ledger",
            params={"account_id": str(account_id), "type": "debit", "feature": "rank-check"},
        ).json()
        assert data["total"] == 1
        item = data["items"][0]
        assert item["amount"] == -2
        assert item["pool"] == "included"
        assert item["idempotency_key"] == "op-2"

    def test_invalid_type(self, client, account_id):
        resp = client.get("/api/v1/credits/ledger", params={"account_id": str(account_id), "type": "bonus"})
        assert resp.status_code == 422

    def test_page_size_bounds(self, client, account_id):
        resp = client.get("/api/v1/credits/ledger", params={"account_id": str(account_id), "page_size": 101})
        assert resp.status_code == 422

    def test_unknown_account(self, client):
        resp = client.get("/api/v1/credits/ledger", params={"account_id": NONEXISTENT_UUID})
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Tiers
# ---------------------------------------------------------------------------


class TestTiersEndpoint:
    def test_lists_tiers(self, client, tiers):
        resp = client.get("/api/v1/credits/tiers")
        assert resp.status_code == 200
        assert resp.json() == [
            {"tier": "free", "monthly_credits": 0},
            {"tier": "grower", "monthly_credits": 50},
            {"tier": "builder", "monthly_credits": 100},
            {"tier": "maven", "monthly_credits": 200},
        ]


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


class TestErrorMapping:
    def _client(self, db, account_id, failure=None):
        app = FastAPI()
        register_exception_handlers(app)

        @app.post("/charge/{amount}")
        def charge(amount: int):
            if failure is not None:
                raise failure
            return debit(db, account_id, amount, "geo-grid", f"charge:{amount}").model_dump(mode="json")

        return TestClient(app)

    def test_insufficient_credits_is_402(self, db, account_id):
        resp = self._client(db, account_id).post("/charge/12")
        assert resp.status_code == 402
        detail = resp.json()["detail"]
        assert detail["required"] == 12
        assert detail["available"] == 0
        assert detail["shortfall"] == 12
        assert "Insufficient credits" in detail["message"]

    def test_successful_charge(self, db, account_id, pack):
        apply_purchase(db, account_id, pack.id, "checkout:cs_1")
        resp = self._client(db, account_id).post("/charge/12")
        assert resp.status_code == 200
        assert resp.json()["balance_after"] == 38

    def test_storage_error_is_503(self, db, account_id):
        resp = self._client(db, account_id, failure=StorageError("connection reset")).post("/charge/1")
        assert resp.status_code == 503
        assert "try again" in resp.json()["detail"]
