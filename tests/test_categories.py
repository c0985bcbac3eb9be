"""Tests for the category hierarchy."""


class TestCreateCategory:
    def test_root_category(self, category):
        assert category["slug"] == "groceries"
        assert category["level"] == 0
        assert category["path"] == []
        assert category["product_count"] == 0

    def test_child_inherits_path(self, make_category, category):
        child = make_category("Rice", parent_id=category["id"])
        assert child["level"] == 1
        assert child["path"] == [category["id"]]
        grandchild = make_category("Basmati", parent_id=child["id"])
        assert grandchild["path"] == [category["id"], child["id"]]

    def test_depth_limit(self, client, admin, make_category):
        parent = make_category("L0")
        for level in (1, 2, 3):
            parent = make_category(f"L{level}", parent_id=parent["id"])
        response = client.post("/api/categories", json={"name": "L4", "parent_id": parent["id"]}, headers=admin["headers"])
        assert response.status_code == 400

    def test_duplicate_name(self, client, admin, category):
        response = client.post("/api/categories", json={"name": "Groceries"}, headers=admin["headers"])
        assert response.status_code == 400

    def test_admin_only(self, client, owner):
        response = client.post("/api/categories", json={"name": "Toys"}, headers=owner["headers"])
        assert response.status_code == 403


class TestReadCategories:
    def test_tree(self, client, make_category, category):
        make_category("Rice", parent_id=category["id"])
        tree = client.get("/api/categories/tree").json()["categories"]
        assert len(tree) == 1
        assert tree[0]["children"][0]["name"] == "Rice"

    def test_get_by_slug_with_breadcrumb(self, client, make_category, category):
        child = make_category("Rice", parent_id=category["id"])
        data = client.get(f"/api/categories/{child['slug']}").json()
        assert [c["name"] for c in data["breadcrumb"]] == ["Groceries", "Rice"]

    def test_list_roots(self, client, make_category, category):
        make_category("Rice", parent_id=category["id"])
        roots = client.get("/api/categories", params={"parent": "null"}).json()["categories"]
        assert [c["name"] for c in roots] == ["Groceries"]

    def test_category_products_include_subcategory_links(self, client, make_category, category, make_product):
        rice = make_category("Rice", parent_id=category["id"])
        make_product(category_id=category["id"], subcategory_ids=[rice["id"]], price=80)
        make_product(category_id=category["id"], price=40)
        data = client.get(f"/api/categories/{rice['id']}/products").json()
        assert data["pagination"]["total"] == 1
        sorted_prices = client.get(f"/api/categories/{category['id']}/products", params={"sort": "price_asc"}).json()
        assert [p["price"] for p in sorted_prices["products"]] == [40, 80]

    def test_unknown_category(self, client):
        assert client.get("/api/categories/does-not-exist").status_code == 404


class TestUpdateCategory:
    def test_move_cascades_to_descendants(self, client, admin, make_category):
        food = make_category("Food")
        drinks = make_category("Drinks")
        tea = make_category("Tea", parent_id=food["id"])
        green = make_category("Green Tea", parent_id=tea["id"])

        response = client.put(f"/api/categories/{tea['id']}", json={"parent_id": drinks["id"]}, headers=admin["headers"])
        assert response.status_code == 200
        assert response.json()["category"]["path"] == [drinks["id"]]
        moved = client.get(f"/api/categories/{green['id']}").json()["category"]
        assert moved["path"] == [drinks["id"], tea["id"]]
        assert moved["level"] == 2

    def test_move_to_root(self, client, admin, make_category, category):
        child = make_category("Rice", parent_id=category["id"])
        response = client.put(f"/api/categories/{child['id']}", json={"parent_id": ""}, headers=admin["headers"])
        assert response.json()["category"]["level"] == 0
        assert response.json()["category"]["parent_id"] is None

    def test_cannot_move_under_descendant(self, client, admin, make_category, category):
        child = make_category("Rice", parent_id=category["id"])
        response = client.put(f"/api/categories/{category['id']}", json={"parent_id": child["id"]}, headers=admin["headers"])
        assert response.status_code == 400

    def test_reorder(self, client, admin, make_category):
        a = make_category("Alpha")
        b = make_category("Beta")
        response = client.put(
            "/api/categories/reorder",
            json={"categories": [{"id": a["id"], "sort_order": 2}, {"id": b["id"], "sort_order": 1}]},
            headers=admin["headers"],
        )
        assert response.json()["updated"] == 2
        names = [c["name"] for c in client.get("/api/categories").json()["categories"]]
        assert names == ["Beta", "Alpha"]


class TestDeleteCategory:
    def test_refused_with_products(self, client, admin, category, product):
        response = client.delete(f"/api/categories/{category['id']}", headers=admin["headers"])
        assert response.status_code == 400
        assert response.json()["message"] == "Cannot delete category with existing products"

    def test_refused_with_children(self, client, admin, make_category, category):
        make_category("Rice", parent_id=category["id"])
        response = client.delete(f"/api/categories/{category['id']}", headers=admin["headers"])
        assert response.status_code == 400

    def test_delete_empty(self, client, admin, category):
        assert client.delete(f"/api/categories/{category['id']}", headers=admin["headers"]).status_code == 200
        assert client.get(f"/api/categories/{category['id']}").status_code == 404
