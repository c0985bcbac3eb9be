"""Tests for the product catalogue and product reviews."""

from bson import ObjectId


def deliver(client, order_id, headers):
    for status in ("confirmed", "preparing", "ready", "delivered"):
        response = client.put(f"/api/orders/{order_id}/status", json={"status": status}, headers=headers)
        assert response.status_code == 200, response.text


class TestCreateProduct:
    def test_create_increments_shop_counter(self, client, shop, product, db):
        assert product["shop_id"] == shop["id"]
        assert product["is_available"] is True
        assert db["shop"].find_one({"_id": ObjectId(shop["id"])})["stats"]["total_products"] == 1

    def test_zero_stock_starts_out_of_stock(self, make_product):
        assert make_product(stock=0)["status"] == "out_of_stock"
        assert make_product(stock=0, track_quantity=False)["status"] == "active"

    def test_unverified_shop_cannot_list(self, client, register, make_shop, category):
        owner = register("shop_owner")
        make_shop(owner, verified=False)
        response = client.post("/api/products", json={
            "name": "Tea", "description": "Assam tea", "category_id": category["id"], "price": 50,
        }, headers=owner["headers"])
        assert response.status_code == 400
        assert response.json()["message"] == "Your shop must be verified before adding products"

    def test_unknown_category(self, client, owner, shop):
        response = client.post("/api/products", json={
            "name": "Tea", "description": "Assam tea", "category_id": str(ObjectId()), "price": 50,
        }, headers=owner["headers"])
        assert response.status_code == 400

    def test_variants_get_ids(self, make_product):
        product = make_product(variants=[{"name": "Size", "value": "1kg", "price": 120, "stock": 4}])
        assert product["has_variants"] is True
        assert product["variants"][0]["id"]

    def test_discount_percentage(self, make_product):
        assert make_product(price=75, compare_price=100)["discount_percentage"] == 25


class TestListProducts:
    def test_search_and_price_filters(self, client, make_product):
        make_product(name="Green Tea", price=50, tags=["tea"])
        make_product(name="Coffee Beans", price=300)
        found = client.get("/api/products", params={"search": "tea"}).json()
        assert [p["name"] for p in found["products"]] == ["Green Tea"]
        cheap = client.get("/api/products", params={"max_price": 100}).json()
        assert cheap["pagination"]["total"] == 1

    def test_sort_by_price(self, client, make_product):
        for price in (30, 10, 20):
            make_product(price=price)
        prices = [p["price"] for p in client.get("/api/products", params={"sort": "price_desc"}).json()["products"]]
        assert prices == [30, 20, 10]

    def test_location_filter(self, client, product):
        near = client.get("/api/products", params={"latitude": 19.08, "longitude": 72.88}).json()
        assert [p["id"] for p in near["products"]] == [product["id"]]
        far = client.get("/api/products", params={"latitude": 28.6139, "longitude": 77.2090}).json()
        assert far["products"] == []

    def test_closed_shop_hidden_from_location_search(self, client, shop, owner, product):
        client.put(f"/api/shops/{shop['id']}", json={"settings": {"is_open": False}}, headers=owner["headers"])
        response = client.get("/api/products", params={"latitude": 19.08, "longitude": 72.88})
        assert response.json()["products"] == []

    def test_search_requires_two_characters(self, client):
        assert client.get("/api/products/search", params={"q": "a"}).status_code == 422

    def test_search_text_is_literal(self, client, make_product):
        guide = make_product(name="C++ Guide")
        make_product(name="Cooking Oil")
        found = client.get("/api/products/search", params={"q": "c++"}).json()
        assert [p["id"] for p in found["products"]] == [guide["id"]]
        listed = client.get("/api/products", params={"search": "c++"}).json()
        assert [p["id"] for p in listed["products"]] == [guide["id"]]
        for text in ("(x", "[", "*+"):
            response = client.get("/api/products/search", params={"q": text})
            assert response.status_code == 200
            assert response.json()["products"] == []
        assert client.get("/api/products", params={"search": "["}).status_code == 200

    def test_featured(self, client, make_product):
        make_product(is_featured=True)
        make_product()
        assert len(client.get("/api/products/featured").json()["products"]) == 1


class TestProductDetail:
    def test_view_counter_and_similar(self, client, make_product):
        first = make_product()
        second = make_product()
        data = client.get(f"/api/products/{first['id']}").json()
        assert data["product"]["stats"]["views"] == 1
        assert [p["id"] for p in data["similar_products"]] == [second["id"]]
        assert data["shop"]["business_name"] == "Fresh Mart"

    def test_lookup_by_slug(self, client, product):
        assert client.get(f"/api/products/{product['slug']}").json()["product"]["id"] == product["id"]

    def test_missing(self, client):
        assert client.get(f"/api/products/{ObjectId()}").status_code == 404


class TestUpdateProduct:
    def test_restock_reactivates(self, client, owner, make_product):
        product = make_product(stock=0)
        response = client.put(f"/api/products/{product['id']}", json={"stock": 5}, headers=owner["headers"])
        assert response.json()["product"]["status"] == "active"

    def test_selling_out_marks_out_of_stock(self, client, owner, product):
        response = client.put(f"/api/products/{product['id']}", json={"stock": 0}, headers=owner["headers"])
        assert response.json()["product"]["status"] == "out_of_stock"

    def test_other_owner_forbidden(self, client, register, product):
        stranger = register("shop_owner")
        response = client.put(f"/api/products/{product['id']}", json={"price": 1}, headers=stranger["headers"])
        assert response.status_code == 403

    def test_delete(self, client, owner, shop, product, db):
        assert client.delete(f"/api/products/{product['id']}", headers=owner["headers"]).status_code == 200
        assert db["product"].count_documents({}) == 0
        assert db["shop"].find_one({"_id": ObjectId(shop["id"])})["stats"]["total_products"] == 0


class TestReviews:
    def review(self, client, user, product, rating=4, **extra):
        return client.post("/api/reviews", json={
            "product_id": product["id"], "rating": rating, "comment": "Good quality", **extra,
        }, headers=user["headers"])

    def test_review_updates_ratings(self, client, customer, register, product, shop, db):
        assert self.review(client, customer, product, rating=5).status_code == 201
        self.review(client, register("customer"), product, rating=2)

        data = client.get(f"/api/products/{product['id']}/reviews").json()
        assert data["rating"]["average"] == 3.5
        assert data["rating"]["count"] == 2
        assert data["rating"]["distribution"]["5"] == 1
        stats = db["shop"].find_one({"_id": ObjectId(shop["id"])})["stats"]
        assert stats["total_reviews"] == 2

    def test_one_review_per_product(self, client, customer, product):
        self.review(client, customer, product)
        response = self.review(client, customer, product)
        assert response.status_code == 400
        assert response.json()["message"] == "You have already reviewed this product"

    def test_only_customers_review(self, client, owner, product):
        assert self.review(client, owner, product).status_code == 403

    def test_verified_purchase(self, client, customer, owner, product, place_order):
        order = place_order(customer, [{"product_id": product["id"], "quantity": 1}]).json()["order"]
        deliver(client, order["id"], owner["headers"])
        review = self.review(client, customer, product).json()["review"]
        assert review["is_verified"] is True

    def test_votes(self, client, customer, register, product):
        review = self.review(client, customer, product).json()["review"]
        voter = register("customer")
        url = f"/api/reviews/{review['id']}/vote"
        assert client.post(url, json={"helpful": True}, headers=customer["headers"]).status_code == 400
        client.post(url, json={"helpful": False}, headers=voter["headers"])
        data = client.post(url, json={"helpful": True}, headers=voter["headers"]).json()["review"]
        assert data["total_votes"] == 1
        assert data["helpful_votes"] == 1
        assert data["helpfulness_percentage"] == 100
        assert "voters" not in data

    def test_edit_and_delete(self, client, customer, admin, product):
        review = self.review(client, customer, product).json()["review"]
        edited = client.put(f"/api/reviews/{review['id']}", json={"rating": 1}, headers=customer["headers"]).json()["review"]
        assert edited["is_edited"] is True
        assert client.delete(f"/api/reviews/{review['id']}", headers=admin["headers"]).status_code == 200
        assert client.get(f"/api/products/{product['id']}/reviews").json()["rating"]["count"] == 0

    def test_shop_response_and_moderation(self, client, customer, owner, admin, product):
        review = self.review(client, customer, product).json()["review"]
        response = client.post(f"/api/reviews/{review['id']}/response", json={"comment": "Thank you!"}, headers=owner["headers"])
        assert response.json()["review"]["shop_response"]["comment"] == "Thank you!"
        client.put(f"/api/reviews/{review['id']}/moderate", json={"status": "rejected", "reason": "Spam"}, headers=admin["headers"])
        data = client.get(f"/api/products/{product['id']}/reviews").json()
        assert data["reviews"] == []
        assert data["rating"]["count"] == 0
