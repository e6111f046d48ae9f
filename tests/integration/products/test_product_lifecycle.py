"""
Integration tests for the product catalogue and admin trash maintenance.

Covers caching of reads, soft delete through DELETE, trash listing,
restore and permanent deletion.
"""

from typing import Any, Callable, Dict, List

from fastapi.testclient import TestClient

from agrotrack.core.cache import CacheKeys


def create_product(
    client: TestClient,
    csrf_headers: Callable[[], Dict[str, str]],
    payload: Dict[str, Any],
) -> Dict[str, Any]:
    response = client.post("/api/products", json=payload, headers=csrf_headers())
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestProductReads:
    """Test listing and detail reads."""

    def test_list_is_paginated(
        self,
        test_client: TestClient,
        login: Callable[..., Any],
        csrf_headers: Callable[[], Dict[str, str]],
        many_products: List[Dict[str, Any]],
    ) -> None:
        login("farmer-1", "FARMER")
        for payload in many_products:
            create_product(test_client, csrf_headers, payload)

        response = test_client.get("/api/products", params={"limit": 2})

        assert response.status_code == 200
        assert response.headers["X-API-Version"] == "v1"
        data = response.json()["data"]
        assert len(data["items"]) == 2
        assert data["pagination"] == {
            "page": 1,
            "limit": 2,
            "total": 3,
            "total_pages": 2,
            "has_next": True,
            "has_prev": False,
        }

    def test_list_filters(
        self,
        test_client: TestClient,
        login: Callable[..., Any],
        csrf_headers: Callable[[], Dict[str, str]],
        product_payload: Dict[str, Any],
        many_products: List[Dict[str, Any]],
    ) -> None:
        login("farmer-1", "FARMER")
        create_product(test_client, csrf_headers, product_payload)
        for payload in many_products:
            create_product(test_client, csrf_headers, payload)

        by_search = test_client.get("/api/products", params={"search": "kale"}).json()["data"]
        by_category = test_client.get("/api/v1/products", params={"category": "vegetables"}).json()["data"]

        assert [item["name"] for item in by_search["items"]] == ["Curly Kale"]
        assert by_category["pagination"]["total"] == 4

    def test_detail_is_served_from_cache(
        self,
        app: Any,
        test_client: TestClient,
        login: Callable[..., Any],
        csrf_headers: Callable[[], Dict[str, str]],
        product_payload: Dict[str, Any],
    ) -> None:
        """Test repeated detail reads hit the local tier."""
        login("farmer-1", "FARMER")
        product = create_product(test_client, csrf_headers, product_payload)

        first = test_client.get(f"/api/products/{product['id']}")
        assert CacheKeys.product(product["id"]) in app.state.cache.local.keys()
        second = test_client.get(f"/api/products/{product['id']}")

        assert first.status_code == second.status_code == 200
        assert first.json()["data"] == second.json()["data"]
        test_client.portal.call(app.state.cache.drain)
        assert test_client.portal.call(app.state.cache.store.client.get, CacheKeys.product(product["id"]))

    def test_missing_product_is_404(self, test_client: TestClient) -> None:
        response = test_client.get("/api/products/does-not-exist")

        assert response.status_code == 404
        assert response.json() == {"success": False, "error": {"code": "NOT_FOUND", "message": "Product not found"}}

    def test_create_validates_body(
        self,
        test_client: TestClient,
        login: Callable[..., Any],
        csrf_headers: Callable[[], Dict[str, str]],
    ) -> None:
        login("farmer-1", "FARMER")

        response = test_client.post("/api/products", json={"name": "K", "price": -1}, headers=csrf_headers())

        assert response.status_code == 400
        fields = {error["field"] for error in response.json()["error"]["details"]["errors"]}
        assert {"name", "price"} <= fields


class TestSoftDeleteFlow:
    """Test DELETE hides a product and admin restore brings it back."""

    def test_delete_then_restore(
        self,
        test_client: TestClient,
        login: Callable[..., Any],
        csrf_headers: Callable[[], Dict[str, str]],
        product_payload: Dict[str, Any],
    ) -> None:
        login("farmer-1", "FARMER")
        product = create_product(test_client, csrf_headers, product_payload)
        product_id = product["id"]
        assert test_client.get(f"/api/products/{product_id}").status_code == 200
        assert test_client.get("/api/products").json()["data"]["pagination"]["total"] == 1

        deleted = test_client.delete(f"/api/products/{product_id}", headers=csrf_headers())
        assert deleted.status_code == 200
        assert deleted.json()["data"] == {"id": product_id, "deleted": True}

        assert test_client.get(f"/api/products/{product_id}").status_code == 404
        assert test_client.get("/api/products").json()["data"]["items"] == []
        assert test_client.delete(f"/api/products/{product_id}", headers=csrf_headers()).status_code == 404

        login("admin-1", "ADMIN")
        trash = test_client.get("/api/admin/trash/product")
        assert trash.status_code == 200
        items = trash.json()["data"]["items"]
        assert [item["id"] for item in items] == [product_id]
        assert items[0]["days_since_deleted"] == 0

        restored = test_client.post(
            "/api/admin/trash/product/restore",
            json={"where": {"id": product_id}},
            headers=csrf_headers(),
        )
        assert restored.status_code == 200
        assert restored.json()["data"] == {"restored": 1}

        assert test_client.get(f"/api/products/{product_id}").status_code == 200
        assert test_client.get("/api/admin/trash/product").json()["data"]["items"] == []

    def test_hard_delete_requires_where(
        self,
        test_client: TestClient,
        login: Callable[..., Any],
        csrf_headers: Callable[[], Dict[str, str]],
    ) -> None:
        login("admin-1", "ADMIN")

        response = test_client.request(
            "DELETE",
            "/api/admin/trash/product",
            json={"where": {}},
            headers=csrf_headers(),
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "MISSING_REQUIRED_FIELD"
        assert error["field"] == "where"

    def test_hard_delete_removes_product(
        self,
        app: Any,
        test_client: TestClient,
        login: Callable[..., Any],
        csrf_headers: Callable[[], Dict[str, str]],
        product_payload: Dict[str, Any],
    ) -> None:
        login("admin-1", "ADMIN")
        product = create_product(test_client, csrf_headers, product_payload)

        response = test_client.request(
            "DELETE",
            "/api/admin/trash/product",
            json={"where": {"id": product["id"]}, "reason": "GDPR request"},
            headers=csrf_headers(),
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"deleted": 1}
        raw = app.state.data_access.model("Product")
        assert test_client.portal.call(raw.count) == 0

    def test_hard_delete_evicts_cached_detail(
        self,
        app: Any,
        test_client: TestClient,
        redis_client: Any,
        login: Callable[..., Any],
        csrf_headers: Callable[[], Dict[str, str]],
        product_payload: Dict[str, Any],
    ) -> None:
        """Test a live product removed for good is no longer served from cache."""
        login("admin-1", "ADMIN")
        product = create_product(test_client, csrf_headers, product_payload)
        assert test_client.get(f"/api/products/{product['id']}").status_code == 200
        test_client.portal.call(app.state.cache.drain)
        assert test_client.portal.call(redis_client.get, CacheKeys.product(product["id"]))

        response = test_client.request(
            "DELETE",
            "/api/admin/trash/product",
            json={"where": {"id": product["id"]}},
            headers=csrf_headers(),
        )

        assert response.json()["data"] == {"deleted": 1}
        assert test_client.portal.call(redis_client.get, CacheKeys.product(product["id"])) is None
        assert test_client.get(f"/api/products/{product['id']}").status_code == 404

    def test_purge_defaults_to_retention(
        self,
        test_client: TestClient,
        login: Callable[..., Any],
        csrf_headers: Callable[[], Dict[str, str]],
        product_payload: Dict[str, Any],
    ) -> None:
        login("admin-1", "ADMIN")
        product = create_product(test_client, csrf_headers, product_payload)
        test_client.delete(f"/api/products/{product['id']}", headers=csrf_headers())

        response = test_client.post("/api/admin/purge", json={"models": ["Product"]}, headers=csrf_headers())

        assert response.status_code == 200
        assert response.json()["data"] == {"purged": {"Product": 0}, "total": 0}

    def test_admin_routes_require_admin(self, test_client: TestClient, login: Callable[..., Any]) -> None:
        login("farmer-1", "FARMER")

        response = test_client.get("/api/admin/trash/product")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    def test_unknown_model_rejected(self, test_client: TestClient, login: Callable[..., Any]) -> None:
        login("admin-1", "ADMIN")

        response = test_client.get("/api/admin/trash/widget")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_INPUT"


class TestCacheInvalidation:
    """Test the admin cache invalidation endpoint."""

    def test_invalidate_pattern(
        self,
        test_client: TestClient,
        redis_client: Any,
        login: Callable[..., Any],
        csrf_headers: Callable[[], Dict[str, str]],
    ) -> None:
        test_client.get("/api/products")
        test_client.portal.call(test_client.app.state.cache.drain)
        assert test_client.portal.call(redis_client.keys, "api:products*")

        login("admin-1", "ADMIN")
        response = test_client.post(
            "/api/admin/cache/invalidate",
            json={"pattern": "api:products*"},
            headers=csrf_headers(),
        )

        assert response.status_code == 200
        assert test_client.portal.call(redis_client.keys, "api:products*") == []
