from urllib.parse import parse_qs, urlparse

import requests

from conftest import FakeResponse, auth_headers
from payments import FALLBACK_PRODUCTS, list_products, normalize_product, static_checkout_url


class TestNormalizeProduct:
    def test_prefers_price_detail(self):
        product = normalize_product(
            {
                "product_id": "pdt_1",
                "name": "Pro",
                "price": 100,
                "currency": "usd",
                "price_detail": {"price": 1800, "currency": "EUR", "type": "recurring_price"},
            }
        )
        assert product["price"] == 18.0
        assert product["currency"] == "EUR"
        assert product["pricing_type"] == "recurring_price"

    def test_missing_price_is_zero(self):
        product = normalize_product({"product_id": "pdt_free", "name": "Free"})
        assert product["price"] == 0.0
        assert product["archived"] is False


class TestListProducts:
    def test_without_api_key_returns_fallback(self, dodo_api, monkeypatch):
        monkeypatch.delenv("DODO_PAYMENTS_API_KEY")
        assert list_products() == FALLBACK_PRODUCTS
        assert dodo_api.calls == []

    def test_filters_archived_products(self, dodo_api):
        dodo_api.queue(
            FakeResponse(
                200,
                {
                    "items": [
                        {"product_id": "pdt_a", "name": "A", "price": 999, "currency": "USD"},
                        {"product_id": "pdt_b", "name": "B", "price": 1999, "currency": "USD", "archived": True},
                    ]
                },
            )
        )

        products = list_products()

        assert [p["product_id"] for p in products] == ["pdt_a"]
        assert products[0]["price"] == 9.99
        assert dodo_api.calls[0]["url"] == "https://test.dodopayments.com/products"
        assert dodo_api.calls[0]["params"] == {"page_number": 0, "page_size": 100}

    def test_follows_full_pages(self, dodo_api):
        full_page = [
            {"product_id": f"pdt_{i}", "name": str(i), "price": 100, "currency": "USD"} for i in range(100)
        ]
        dodo_api.queue(
            FakeResponse(200, {"items": full_page}),
            FakeResponse(200, {"items": [{"product_id": "pdt_last", "name": "last", "price": 100}]}),
        )

        products = list_products()

        assert len(products) == 101
        assert dodo_api.calls[1]["params"]["page_number"] == 1

    def test_accepts_plain_list_response(self, dodo_api):
        dodo_api.queue(FakeResponse(200, [{"product_id": "pdt_a", "name": "A", "price": 500}]))
        assert [p["product_id"] for p in list_products()] == ["pdt_a"]

    def test_provider_error_returns_fallback(self, dodo_api):
        dodo_api.queue(requests.Timeout("slow"))
        assert list_products() == FALLBACK_PRODUCTS

    def test_route(self, client, dodo_api):
        dodo_api.queue(FakeResponse(200, {"items": [{"product_id": "pdt_a", "name": "A", "price": 1250}]}))

        resp = client.get("/api/products")

        assert resp.status_code == 200
        assert resp.json()["products"][0]["price"] == 12.5

    def test_route_prices_are_json_numbers(self, client, dodo_api, monkeypatch):
        monkeypatch.delenv("DODO_PAYMENTS_API_KEY")

        resp = client.get("/api/products")

        prices = [product["price"] for product in resp.json()["products"]]
        assert prices == [9.99, 19.99, 29.99]
        assert all(isinstance(price, float) for price in prices)


class TestCheckout:
    def test_static_checkout_url(self):
        url = urlparse(static_checkout_url("pdt_pro", 2))
        assert url.netloc == "test.checkout.dodopayments.com"
        assert url.path == "/buy/pdt_pro"
        assert parse_qs(url.query) == {
            "quantity": ["2"],
            "redirect_url": ["https://app.example.com/success"],
        }

    def test_live_mode_checkout_host(self, monkeypatch):
        monkeypatch.setenv("DODO_PAYMENTS_ENVIRONMENT", "live_mode")
        assert static_checkout_url("pdt_pro").startswith("https://checkout.dodopayments.com/buy/pdt_pro")

    def test_static_checkout_redirects(self, client):
        resp = client.get("/checkout", params={"productId": "pdt_pro"}, follow_redirects=False)
        assert resp.status_code == 307
        assert resp.headers["location"].startswith("https://test.checkout.dodopayments.com/buy/pdt_pro")

    def test_static_checkout_requires_product(self, client):
        resp = client.get("/checkout", follow_redirects=False)
        assert resp.status_code == 422

    def test_session_checkout(self, client, dodo_api):
        dodo_api.queue(
            FakeResponse(200, {"session_id": "cks_1", "checkout_url": "https://test.checkout.dodopayments.com/session/cks_1"})
        )

        resp = client.post("/checkout", json={"product_cart": [{"product_id": "pdt_pro", "quantity": 1}]})

        assert resp.status_code == 200
        assert resp.json() == {
            "checkout_url": "https://test.checkout.dodopayments.com/session/cks_1",
            "session_id": "cks_1",
        }
        call = dodo_api.calls[0]
        assert call["method"] == "POST"
        assert call["url"] == "https://test.dodopayments.com/checkouts"
        assert call["json"]["product_cart"] == [{"product_id": "pdt_pro", "quantity": 1}]
        assert call["json"]["return_url"] == "https://app.example.com/success"

    def test_session_checkout_requires_items(self, client, dodo_api):
        resp = client.post("/checkout", json={"product_cart": []})
        assert resp.status_code == 422
        assert dodo_api.calls == []

    def test_session_checkout_provider_error_is_502(self, client, dodo_api):
        dodo_api.queue(FakeResponse(400, text="bad product"))
        resp = client.post("/checkout", json={"product_cart": [{"product_id": "pdt_x"}]})
        assert resp.status_code == 502


class TestCustomerPortal:
    def test_redirects_to_portal_link(self, client, dodo_api, store):
        store.upsert_customer({"customer_id": "cus_001", "email": "jane@example.com", "name": None})
        dodo_api.queue(FakeResponse(200, {"link": "https://customer.dodopayments.com/p/abc"}))

        resp = client.get("/customer-portal", headers=auth_headers(), follow_redirects=False)

        assert resp.status_code == 307
        assert resp.headers["location"] == "https://customer.dodopayments.com/p/abc"
        assert dodo_api.calls[0]["url"] == (
            "https://test.dodopayments.com/customers/cus_001/customer-portal/session"
        )

    def test_unknown_customer_is_404(self, client, dodo_api, store):
        resp = client.get("/customer-portal", headers=auth_headers(), follow_redirects=False)
        assert resp.status_code == 404
        assert dodo_api.calls == []

    def test_requires_auth(self, client, store):
        resp = client.get("/customer-portal", follow_redirects=False)
        assert resp.status_code == 401
