from __future__ import annotations

from gule.models import ProductStatus, SellerStatus

from conftest import SHIPPING_ADDRESS


def _checkout(client, headers, product):
    response = client.post(
        "/api/orders",
        json={
            "items": [{"product": product.productID, "quantity": 1}],
            "shippingAddress": dict(SHIPPING_ADDRESS),
            "paymentMethod": "card",
        },
        headers=headers,
    )
    assert response.status_code == 201, response.get_json()
    return response.get_json()["data"]["id"]


def test_categories_and_storefront_are_public(client, factory):
    seller = factory.seller(business_name="Lalibela Looms")
    factory.product(seller=seller, category="textiles", name="Shawl")
    factory.product(seller=seller, category="textiles", name="Scarf")
    factory.product(seller=seller, category="baskets", status=ProductStatus.PENDING)

    response = client.get("/api/products/categories")
    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data == {"categories": [{"name": "textiles", "count": 2}], "totalCategories": 1}

    response = client.get(f"/api/products/seller/{seller.sellerID}")
    assert response.status_code == 200
    body = response.get_json()
    assert body["data"]["seller"]["businessName"] == "Lalibela Looms"
    assert "email" not in body["data"]["seller"]
    assert sorted(p["name"] for p in body["data"]["products"]) == ["Scarf", "Shawl"]
    assert body["pagination"]["total"] == 2

    assert client.get("/api/products/seller/999999").status_code == 404


def test_seller_deletes_product_once_orders_close(client, factory, auth_headers):
    seller = factory.seller()
    product = factory.product(seller=seller)
    buyer_headers = auth_headers(factory.buyer())
    seller_headers = auth_headers(seller)
    order_id = _checkout(client, buyer_headers, product)

    response = client.delete(f"/api/products/{product.productID}", headers=seller_headers)
    assert response.status_code == 409

    response = client.patch(f"/api/orders/{order_id}/cancel", json={"reason": "Changed my mind"}, headers=buyer_headers)
    assert response.status_code == 200

    assert client.delete(f"/api/products/{product.productID}", headers=buyer_headers).status_code == 403
    response = client.delete(f"/api/products/{product.productID}", headers=seller_headers)
    assert response.status_code == 200
    assert response.get_json()["message"] == "Product deleted successfully"

    assert client.get(f"/api/products/{product.productID}").status_code == 404
    assert client.get("/api/products").get_json()["pagination"]["total"] == 0


def test_admin_suspends_and_reinstates_seller(client, factory, auth_headers):
    seller = factory.seller()
    factory.product(seller=seller)
    admin_headers = auth_headers(factory.admin())

    response = client.post(f"/api/admin/sellers/{seller.sellerID}/suspend", json={}, headers=auth_headers(seller))
    assert response.status_code == 403

    response = client.post(
        f"/api/admin/sellers/{seller.sellerID}/suspend", json={"reason": "Counterfeit listings"}, headers=admin_headers
    )
    assert response.status_code == 200
    assert response.get_json()["data"]["status"] == SellerStatus.SUSPENDED.value
    assert client.get("/api/products").get_json()["pagination"]["total"] == 0

    response = client.post(f"/api/admin/sellers/{seller.sellerID}/reinstate", headers=admin_headers)
    assert response.status_code == 200
    assert response.get_json()["data"]["status"] == SellerStatus.ACTIVE.value
    assert client.get("/api/products").get_json()["pagination"]["total"] == 1
