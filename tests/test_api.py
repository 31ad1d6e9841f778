from urllib.parse import unquote

import httpx
import pytest
from fastapi.testclient import TestClient

from tests.conftest import RecordingWebhook

BUYER = {"X-Session-ID": "buyer-1"}
CUSTOMER = {"name": "Amina Yusuf", "phone": "+254712345678", "location": "Eastleigh 1st Ave"}


def login(client):
    response = client.post("/admin/login", json={"username": "admin", "password": "hafsa2025"})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['data']['access_token']}"}


def fill_cart(client, *product_ids, headers=BUYER):
    for product_id in product_ids:
        assert client.post("/cart/items", json={"product_id": product_id}, headers=headers).status_code == 200


def reach_preview(client, headers=BUYER):
    assert client.post("/checkout", headers=headers).status_code == 200
    response = client.put("/checkout/form", json=CUSTOMER, headers=headers)
    assert response.status_code == 200
    return response.json()["data"]


# --- Health and catalog ---

def test_health_reports_collaborators(make_app, webhook):
    with TestClient(make_app(webhook=webhook)) as client:
        response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database"] == "in-memory"
    assert data["dependencies"] == {"order-log": "configured", "image-host": "not configured"}
    assert response.headers["X-Frame-Options"] == "DENY"


def test_products_by_category(make_app):
    with TestClient(make_app()) as client:
        everything = client.get("/products").json()["data"]
        bags = client.get("/products", params={"category": "bags"}).json()["data"]
        featured = client.get("/products", params={"featured": "true"}).json()["data"]
        invalid = client.get("/products", params={"category": "shoes"})

    assert [p["id"] for p in everything] == ["SC-1", "NK-1", "LP-1"]
    assert [p["id"] for p in bags] == ["SC-1"]
    assert bags[0]["price"] == 2500
    assert [p["id"] for p in featured] == ["NK-1"]
    assert invalid.status_code == 422


def test_product_detail_and_categories(make_app):
    with TestClient(make_app()) as client:
        assert client.get("/products/NK-1").json()["data"]["name"] == "Gold Necklace"
        assert client.get("/products/nope").status_code == 404
        categories = client.get("/categories").json()["data"]

    assert [c["id"] for c in categories] == ["jewelry", "bags", "makeup"]


# --- Cart ---

def test_cart_session_is_issued_when_missing(make_app):
    with TestClient(make_app()) as client:
        first = client.post("/cart/items", json={"product_id": "SC-1"})
        session = {"X-Session-ID": first.headers["X-Session-ID"]}
        again = client.get("/cart", headers=session).json()["data"]
        other = client.get("/cart", headers={"X-Session-ID": "someone-else"}).json()["data"]

    assert again["total_items"] == 1
    assert other["items"] == []


def test_cart_operations(make_app):
    with TestClient(make_app()) as client:
        fill_cart(client, "SC-1", "LP-1", "SC-1")
        cart = client.get("/cart", headers=BUYER).json()["data"]
        assert [(i["id"], i["quantity"]) for i in cart["items"]] == [("SC-1", 2), ("LP-1", 1)]
        assert cart["total_price"] == 5800
        assert cart["total_items"] == 3
        assert cart["is_open"] is False

        cart = client.put("/cart/items/LP-1", json={"quantity": 4}, headers=BUYER).json()["data"]
        assert cart["total_price"] == 8200

        cart = client.put("/cart/items/SC-1", json={"quantity": 0}, headers=BUYER).json()["data"]
        assert [i["id"] for i in cart["items"]] == ["LP-1"]

        cart = client.delete("/cart/items/missing", headers=BUYER).json()["data"]
        assert cart["total_items"] == 4

        assert client.post("/cart/open", headers=BUYER).json()["data"]["is_open"] is True
        assert client.post("/cart/close", headers=BUYER).json()["data"]["is_open"] is False

        cart = client.delete("/cart", headers=BUYER).json()["data"]
        assert cart["items"] == []
        assert cart["total_price"] == 0


def test_adding_unknown_product_is_404(make_app):
    with TestClient(make_app()) as client:
        response = client.post("/cart/items", json={"product_id": "nope"}, headers=BUYER)
        cart = client.get("/cart", headers=BUYER).json()["data"]

    assert response.status_code == 404
    assert cart["items"] == []


# --- Checkout ---

def test_checkout_form_errors(make_app):
    with TestClient(make_app()) as client:
        fill_cart(client, "SC-1")
        state = client.post("/checkout", headers=BUYER).json()["data"]
        assert state["step"] == "form"
        assert state["form"]["phone"] == "+254"

        response = client.put("/checkout/form", json={"name": "A", "phone": "0712345678"}, headers=BUYER)

    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["errors"]["name"] == "Name must be at least 2 characters"
    assert detail["errors"]["phone"] == "Enter valid Kenyan phone (+254...)"
    assert detail["form"]["name"] == "A"


def test_checkout_sends_order(make_app, webhook):
    with TestClient(make_app(webhook=webhook)) as client:
        fill_cart(client, "SC-1", "SC-1")
        client.post("/cart/open", headers=BUYER)

        preview = reach_preview(client)
        assert preview["step"] == "preview"
        assert preview["totals"] == {"subtotal": 5000, "delivery_fee": 300, "total": 5300, "free_delivery": False}
        assert "• Satin Scarf x2 - Ksh 5,000" in preview["message"]

        response = client.post("/checkout/confirm", headers=BUYER)
        assert response.status_code == 200
        body = response.json()
        cart = client.get("/cart", headers=BUYER).json()["data"]
        after = client.get("/checkout", headers=BUYER)

    data = body["data"]
    assert body["message"] == "Order sent to WhatsApp! We will confirm your order shortly."
    assert data["chat_url"].startswith("https://wa.me/254700000000?text=")
    assert data["target"] == "_blank"
    assert data["total"] == 5300
    assert "TOTAL: Ksh 5,300" in unquote(data["chat_url"])

    assert cart["items"] == []
    assert cart["is_open"] is False
    assert after.status_code == 409

    # Shutdown drains the detached append
    [appended] = webhook.appended
    assert appended["action"] == "appendOrder"
    assert appended["order"]["orderId"] == data["order_id"]
    assert appended["order"]["name"] == "Amina Yusuf"
    assert appended["order"]["total"] == 5300


def test_order_log_failure_still_hands_off(make_app):
    webhook = RecordingWebhook(fail=True)
    with TestClient(make_app(webhook=webhook)) as client:
        fill_cart(client, "NK-1")
        reach_preview(client)
        response = client.post("/checkout/confirm", headers=BUYER)
        cart = client.get("/cart", headers=BUYER).json()["data"]

    assert response.status_code == 200
    assert response.json()["data"]["chat_url"].startswith("https://wa.me/")
    assert cart["items"] == []
    assert len(webhook.requests) == 1


def test_unconfigured_order_log_still_hands_off(make_app):
    with TestClient(make_app()) as client:
        fill_cart(client, "NK-1")
        reach_preview(client)
        response = client.post("/checkout/confirm", headers=BUYER)

    assert response.status_code == 200


def test_second_confirm_is_rejected(make_app, webhook):
    with TestClient(make_app(webhook=webhook)) as client:
        fill_cart(client, "SC-1")
        reach_preview(client)
        assert client.post("/checkout/confirm", headers=BUYER).status_code == 200
        assert client.post("/checkout/confirm", headers=BUYER).status_code == 409

    assert len(webhook.appended) == 1


def test_confirm_before_preview_is_rejected(make_app):
    with TestClient(make_app()) as client:
        fill_cart(client, "SC-1")
        assert client.post("/checkout/confirm", headers=BUYER).status_code == 409
        client.post("/checkout", headers=BUYER)
        assert client.post("/checkout/confirm", headers=BUYER).status_code == 409
        cart = client.get("/cart", headers=BUYER).json()["data"]

    assert cart["total_items"] == 1


def test_back_navigation(make_app):
    with TestClient(make_app()) as client:
        fill_cart(client, "SC-1")
        reach_preview(client)

        state = client.post("/checkout/back", headers=BUYER).json()["data"]
        assert state["step"] == "form"
        assert state["form"] == CUSTOMER
        assert state["message"] is None

        closed = client.post("/checkout/back", headers=BUYER).json()
        assert closed["data"] is None
        assert closed["message"] == "Checkout closed"
        assert client.get("/checkout", headers=BUYER).status_code == 409


def test_free_delivery_at_threshold(make_app):
    with TestClient(make_app()) as client:
        fill_cart(client, "NK-1", "LP-1", "LP-1")
        preview = reach_preview(client)

    assert preview["totals"]["subtotal"] == 10600
    assert preview["totals"]["delivery_fee"] == 0
    assert "Delivery: FREE" in preview["message"]


# --- Admin ---

def test_admin_login_rejects_bad_password(make_app):
    with TestClient(make_app()) as client:
        response = client.post("/admin/login", json={"username": "admin", "password": "nope"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid credentials"


def test_admin_requires_session(make_app):
    with TestClient(make_app()) as client:
        assert client.get("/admin/products").status_code == 401
        assert client.get("/admin/products", headers={"Authorization": "Bearer not-a-token"}).status_code == 401


def test_admin_product_crud(make_app):
    with TestClient(make_app()) as client:
        auth = login(client)

        created = client.post(
            "/admin/products",
            data={"name": "Silk Head Wrap", "price": "1800", "category": "bags", "stock": "4", "tags": "silk, wrap"},
            headers=auth,
        )
        assert created.status_code == 200
        product = created.json()["data"]
        assert product["id"].startswith("SILK-HEAD-WRAP-")
        assert product["tags"] == ["silk", "wrap"]

        listing = client.get("/admin/products", headers=auth).json()["data"]
        assert listing[0]["id"] == product["id"]

        updated = client.put(
            f"/admin/products/{product['id']}",
            data={"name": "Silk Head Wrap", "price": "2000", "category": "bags", "stock": "1", "featured": "true"},
            headers=auth,
        ).json()["data"]
        assert updated["price"] == 2000
        assert updated["featured"] is True
        assert updated["tags"] == ["silk", "wrap"]

        stats = client.get("/admin/stats", headers=auth).json()["data"]
        assert stats["total_products"] == 4
        assert stats["featured"] == 2

        assert client.delete(f"/admin/products/{product['id']}", headers=auth).status_code == 200
        assert client.delete(f"/admin/products/{product['id']}", headers=auth).status_code == 404
        assert client.get("/admin/products", params={"search": "silk"}, headers=auth).json()["data"] == []

        # Storefront catalog is untouched
        assert [p["id"] for p in client.get("/products").json()["data"]] == ["SC-1", "NK-1", "LP-1"]


def test_admin_rejects_invalid_product_form(make_app):
    with TestClient(make_app()) as client:
        auth = login(client)
        response = client.post(
            "/admin/products", data={"name": "Ring", "price": "-5", "category": "jewelry"}, headers=auth
        )

    assert response.status_code == 422


def test_admin_image_upload(make_app):
    def cloudinary(request):
        return httpx.Response(200, json={"secure_url": "https://res.cloudinary.com/boutique/wrap.jpg"})

    with TestClient(make_app(upload_handler=cloudinary)) as client:
        auth = login(client)
        response = client.post(
            "/admin/products",
            data={"name": "Silk Head Wrap", "price": "1800", "category": "bags"},
            files={"file": ("wrap.jpg", b"\xff\xd8jpeg-bytes", "image/jpeg")},
            headers=auth,
        )

    assert response.status_code == 200
    assert response.json()["data"]["images"] == ["https://res.cloudinary.com/boutique/wrap.jpg"]


def test_admin_image_upload_without_configuration(make_app):
    with TestClient(make_app()) as client:
        auth = login(client)
        response = client.post(
            "/admin/products",
            data={"name": "Silk Head Wrap", "category": "bags"},
            files={"file": ("wrap.jpg", b"bytes", "image/jpeg")},
            headers=auth,
        )
        listing = client.get("/admin/products", headers=auth).json()["data"]

    assert response.status_code == 503
    assert len(listing) == 3


def test_admin_orders(make_app):
    webhook = RecordingWebhook(orders=[{
        "orderId": "1700000000000", "name": "Amina", "phone": "+254712345678", "location": "Eastleigh",
        "items": [], "subtotal": 5000, "deliveryFee": 300, "total": 5300, "status": "new",
        "createdAt": "2025-03-01T09:30:15.123Z",
    }])
    with TestClient(make_app(webhook=webhook)) as client:
        auth = login(client)
        orders = client.get("/admin/orders", headers=auth).json()

    assert orders["data"][0]["orderId"] == "1700000000000"
    assert orders["data"][0]["total"] == 5300


@pytest.mark.parametrize("order_log", [None, RecordingWebhook(fail=True)])
def test_admin_orders_empty_when_log_unavailable(make_app, order_log):
    with TestClient(make_app(webhook=order_log)) as client:
        auth = login(client)
        orders = client.get("/admin/orders", headers=auth).json()

    assert orders["data"] == []
    assert orders["message"] == "No orders found"


def test_admin_logout(make_app):
    with TestClient(make_app()) as client:
        auth = login(client)
        assert client.post("/admin/logout", headers=auth).status_code == 200
        assert client.get("/admin/stats", headers=auth).status_code == 401


def test_admin_update_keeps_path_id(make_app):
    with TestClient(make_app()) as client:
        auth = login(client)
        response = client.put(
            "/admin/products/SC-1",
            data={"id": "OTHER-ID", "name": "Satin Scarf", "price": "2700", "category": "bags"},
            headers=auth,
        )
        listing = client.get("/admin/products", headers=auth).json()["data"]

    assert response.status_code == 200
    assert response.json()["data"]["id"] == "SC-1"
    assert [p["id"] for p in listing] == ["SC-1", "NK-1", "LP-1"]
    assert listing[0]["price"] == 2700


def test_admin_create_with_existing_id_is_409(make_app):
    with TestClient(make_app()) as client:
        auth = login(client)
        response = client.post(
            "/admin/products", data={"id": "SC-1", "name": "Clash", "category": "bags"}, headers=auth
        )
        listing = client.get("/admin/products", headers=auth).json()["data"]

    assert response.status_code == 409
    assert [p["id"] for p in listing] == ["SC-1", "NK-1", "LP-1"]


def test_anonymous_traffic_leaves_no_session_locks(make_app):
    app = make_app()
    with TestClient(app) as client:
        for _ in range(200):
            assert client.get("/cart").status_code == 200
        for _ in range(50):
            assert client.post("/checkout").status_code == 200

    sessions = app.state.cart_sessions
    assert sessions.lock_count == 0
    assert sessions.flow_count == 50
