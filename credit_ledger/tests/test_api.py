"""HTTP surface: envelopes, status codes, auth."""

import json

import pytest
from fastapi.testclient import TestClient

from credit_ledger.api import create_app
from credit_ledger.config import Settings


TOKEN = "test-dev-token"
DEV_UID = "dev-user-uid-123"
AUTH = {"Authorization": f"Bearer {TOKEN}"}
PACK_ID = "credits.pack.10"


@pytest.fixture
def settings():
    return Settings(
        dev_auth_enabled=True,
        dev_auth_token=TOKEN,
        iap_products=json.dumps([
            {"product_id": PACK_ID, "name": "10 credits", "credits": 10, "display_order": 1},
            {"product_id": "credits.pack.50", "name": "50 credits", "credits": 50, "display_order": 2},
        ]),
        reward_daily_cap=1,
    )


@pytest.fixture
def client(settings):
    return TestClient(create_app(settings))


@pytest.fixture
def registered(client):
    response = client.post("/users/register", headers=AUTH)
    assert response.status_code == 200
    return client


def _purchase_body(transaction_id: str, product_id: str = PACK_ID) -> dict:
    return {
        "transaction_data": json.dumps({
            "transaction_id": transaction_id,
            "original_transaction_id": transaction_id,
            "product_id": product_id,
        }),
        "product_id": product_id,
    }


class TestEnvelope:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["success"] is True
        assert body["data"]["status"] == "healthy"
        assert body["error"] is None
        assert body["meta"]["request_id"]

    def test_request_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Request-Id": "req-123"})
        assert response.headers["X-Request-Id"] == "req-123"
        assert response.json()["meta"]["request_id"] == "req-123"

    def test_unknown_route(self, client):
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestAuth:
    def test_missing_token(self, client):
        response = client.get("/credits/balance")
        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["data"] is None
        assert body["error"]["code"] == "unauthorized"

    def test_wrong_token(self, client):
        response = client.get("/credits/balance", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401


class TestCreditsEndpoints:
    def test_balance_requires_account(self, client):
        response = client.get("/credits/balance", headers=AUTH)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "user_not_found"

    def test_register_and_balance(self, registered):
        response = registered.get("/credits/balance", headers=AUTH)
        assert response.status_code == 200
        assert response.json()["data"] == {"credits": 0}

    def test_purchase(self, registered):
        response = registered.post("/credits/purchase", headers=AUTH, json=_purchase_body("2000000001"))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["credits_added"] == 10
        assert data["new_balance"] == 10
        assert data["transaction_id"]

    def test_purchase_retry_is_idempotent(self, registered):
        body = _purchase_body("2000000002")
        first = registered.post("/credits/purchase", headers=AUTH, json=body).json()["data"]
        second = registered.post("/credits/purchase", headers=AUTH, json=body).json()["data"]

        assert second["transaction_id"] == first["transaction_id"]
        assert second["new_balance"] == 10

    def test_purchase_product_mismatch(self, registered):
        body = _purchase_body("2000000003")
        body["product_id"] = "credits.pack.50"

        response = registered.post("/credits/purchase", headers=AUTH, json=body)

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "invalid_transaction"

    def test_purchase_expired(self, registered):
        body = {
            "transaction_data": json.dumps({
                "transaction_id": "9",
                "original_transaction_id": "9",
                "product_id": PACK_ID,
                "expires_date": 1_000_000_000_000,
            }),
            "product_id": PACK_ID,
        }

        response = registered.post("/credits/purchase", headers=AUTH, json=body)

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "verification_expired"

    def test_purchase_unreadable_expiry(self, registered):
        body = _purchase_body("2000000005")
        payload = json.loads(body["transaction_data"])
        payload["expires_date"] = "99999999999999999999999"
        body["transaction_data"] = json.dumps(payload)

        response = registered.post("/credits/purchase", headers=AUTH, json=body)

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "invalid_transaction"

    def test_purchase_inactive_product(self, registered):
        registered.delete(f"/admin/iap-products/{PACK_ID}/activate", headers=AUTH)

        response = registered.post("/credits/purchase", headers=AUTH, json=_purchase_body("2000000006"))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "product_inactive"

    def test_purchase_replay_after_deactivation(self, registered):
        body = _purchase_body("2000000007")
        first = registered.post("/credits/purchase", headers=AUTH, json=body).json()["data"]
        registered.delete(f"/admin/iap-products/{PACK_ID}", headers=AUTH)

        response = registered.post("/credits/purchase", headers=AUTH, json=body)

        assert response.status_code == 200
        assert response.json()["data"] == first

    def test_purchase_body_validation(self, registered):
        response = registered.post("/credits/purchase", headers=AUTH, json={"product_id": PACK_ID})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"]["validationErrors"]

    def test_reward_and_daily_cap(self, registered):
        first = registered.post("/credits/reward", headers=AUTH, json={"source": "rewarded_ad"})
        assert first.status_code == 200
        assert first.json()["data"] == {"credits_added": 1, "new_balance": 1}

        second = registered.post("/credits/reward", headers=AUTH)
        assert second.status_code == 429
        assert second.json()["error"]["code"] == "reward_limit_reached"

    def test_transactions_page(self, registered):
        registered.post("/credits/purchase", headers=AUTH, json=_purchase_body("2000000004"))
        registered.post("/credits/reward", headers=AUTH)

        response = registered.get("/credits/transactions?limit=1&offset=0", headers=AUTH)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["meta"] == {"total": 2, "limit": 1, "offset": 0}
        assert len(data["transactions"]) == 1
        txn = data["transactions"][0]
        assert txn["type"] == "bonus"
        assert txn["amount"] == 1
        assert txn["product_id"] == "rewarded_ad"
        assert txn["status"] == "completed"

    def test_transactions_default_limit(self, registered):
        data = registered.get("/credits/transactions", headers=AUTH).json()["data"]
        assert data["meta"] == {"total": 0, "limit": 20, "offset": 0}

    @pytest.mark.parametrize("query", ["limit=0", "offset=-1", "limit=101", "limit=abc"])
    def test_transactions_bad_query(self, registered, query):
        response = registered.get(f"/credits/transactions?{query}", headers=AUTH)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestProducts:
    def test_lists_seeded_products(self, client):
        response = client.get("/iap/products")

        assert response.status_code == 200
        products = response.json()["data"]["products"]
        assert [p["product_id"] for p in products] == [PACK_ID, "credits.pack.50"]
        assert products[0]["credits"] == 10


class TestAdminProducts:
    def test_list_includes_inactive_with_meta(self, client):
        client.delete("/admin/iap-products/credits.pack.50/activate", headers=AUTH)

        response = client.get("/admin/iap-products?limit=1&offset=1", headers=AUTH)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["meta"] == {"total": 2, "limit": 1, "offset": 1}
        assert data["products"][0]["product_id"] == "credits.pack.50"
        assert data["products"][0]["is_active"] is False

    def test_list_filters(self, client):
        client.delete("/admin/iap-products/credits.pack.50/activate", headers=AUTH)

        active = client.get("/admin/iap-products?is_active=true", headers=AUTH).json()["data"]
        searched = client.get("/admin/iap-products?search=50", headers=AUTH).json()["data"]

        assert [p["product_id"] for p in active["products"]] == [PACK_ID]
        assert [p["product_id"] for p in searched["products"]] == ["credits.pack.50"]

    def test_list_rejects_unknown_sort_field(self, client):
        response = client.get("/admin/iap-products?sort_by=price", headers=AUTH)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_create_get_and_update(self, client):
        created = client.post(
            "/admin/iap-products",
            headers=AUTH,
            json={"product_id": "credits.pack.100", "name": "100 credits", "credits": 100, "display_order": 3},
        )
        assert created.status_code == 201
        assert created.json()["data"]["is_active"] is True

        updated = client.put("/admin/iap-products/credits.pack.100", headers=AUTH, json={"price": 9.99})
        assert updated.status_code == 200
        assert updated.json()["data"]["price"] == 9.99
        assert updated.json()["data"]["credits"] == 100

        fetched = client.get("/admin/iap-products/credits.pack.100", headers=AUTH).json()["data"]
        assert fetched["price"] == 9.99

    def test_create_duplicate(self, client):
        response = client.post(
            "/admin/iap-products", headers=AUTH, json={"product_id": PACK_ID, "name": "dup", "credits": 1},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "product_id_exists"

    def test_update_validates_body(self, client):
        response = client.put(f"/admin/iap-products/{PACK_ID}", headers=AUTH, json={"credits": 0})
        assert response.status_code == 400

    def test_unknown_product(self, client):
        assert client.get("/admin/iap-products/ghost", headers=AUTH).status_code == 404
        assert client.delete("/admin/iap-products/ghost", headers=AUTH).status_code == 404

    def test_delete_hides_from_public_catalog(self, client):
        response = client.delete(f"/admin/iap-products/{PACK_ID}", headers=AUTH)
        assert response.status_code == 204

        public = client.get("/iap/products").json()["data"]["products"]
        assert [p["product_id"] for p in public] == ["credits.pack.50"]

        reactivated = client.post(f"/admin/iap-products/{PACK_ID}/activate", headers=AUTH)
        assert reactivated.json()["data"]["is_active"] is True

    def test_requires_auth(self, client):
        assert client.get("/admin/iap-products").status_code == 401

    def test_admin_allow_list(self, settings):
        settings.admin_user_ids = "firebase-uid-admin"
        client = TestClient(create_app(settings))

        response = client.get("/admin/iap-products", headers=AUTH)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"
