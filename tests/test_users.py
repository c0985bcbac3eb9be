"""Tests for addresses, the notification inbox and admin user management."""

from bson import ObjectId


class TestAddresses:
    def test_first_address_becomes_default(self, client, customer, address, db):
        assert address["is_default"] is True
        assert address["formatted_address"].startswith("22 Hill Road, Mumbai")
        user = db["user"].find_one({"_id": ObjectId(customer["id"])})
        assert user["default_address_id"] == address["id"]

    def test_single_default(self, client, customer, make_address, address):
        office = make_address(customer, type="office", address_line1="5 Office Park", is_default=True)
        listed = client.get("/api/users/me/addresses", headers=customer["headers"]).json()["addresses"]
        defaults = [a["id"] for a in listed if a["is_default"]]
        assert defaults == [office["id"]]

    def test_update(self, client, customer, address):
        response = client.put(f"/api/users/me/addresses/{address['id']}", json={"landmark": "Near temple"}, headers=customer["headers"])
        assert response.json()["address"]["landmark"] == "Near temple"

    def test_delete_default_promotes_another(self, client, customer, make_address, address, db):
        other = make_address(customer, address_line1="7 Lake View")
        client.delete(f"/api/users/me/addresses/{address['id']}", headers=customer["headers"])
        listed = client.get("/api/users/me/addresses", headers=customer["headers"]).json()["addresses"]
        assert [a["id"] for a in listed] == [other["id"]]
        assert listed[0]["is_default"] is True

    def test_other_users_address(self, client, register, address):
        stranger = register("customer")
        response = client.put(f"/api/users/me/addresses/{address['id']}", json={"landmark": "x"}, headers=stranger["headers"])
        assert response.status_code == 404

    def test_bad_pincode(self, client, customer):
        response = client.post("/api/users/me/addresses", json={
            "full_name": "Asha Rao", "phone": "+919811111111", "address_line1": "1 Road",
            "city": "Mumbai", "state": "Maharashtra", "pincode": "12",
        }, headers=customer["headers"])
        assert response.status_code == 422


class TestNotifications:
    def test_inbox_and_mark_read(self, client, customer, owner, product, place_order):
        place_order(customer, [{"product_id": product["id"], "quantity": 1}])
        inbox = client.get("/api/users/me/notifications", headers=owner["headers"]).json()
        assert inbox["unread_count"] == 1
        notification = inbox["notifications"][0]
        assert notification["subject"] == "New Order"

        url = f"/api/users/me/notifications/{notification['id']}/read"
        assert client.put(url, headers=owner["headers"]).status_code == 200
        assert client.get("/api/users/me/notifications", params={"unread": True}, headers=owner["headers"]).json()["notifications"] == []

    def test_cannot_read_someone_elses(self, client, customer, owner, product, place_order):
        place_order(customer, [{"product_id": product["id"], "quantity": 1}])
        notification = client.get("/api/users/me/notifications", headers=owner["headers"]).json()["notifications"][0]
        response = client.put(f"/api/users/me/notifications/{notification['id']}/read", headers=customer["headers"])
        assert response.status_code == 404


class TestUserAdmin:
    def test_list_and_search(self, client, admin, customer, owner):
        data = client.get("/api/users", params={"role": "shop_owner"}, headers=admin["headers"]).json()
        assert [u["id"] for u in data["users"]] == [owner["id"]]
        found = client.get("/api/users", params={"search": customer["email"]}, headers=admin["headers"]).json()
        assert found["pagination"]["total"] == 1
        assert "password_hash" not in found["users"][0]

    def test_search_text_is_literal(self, client, admin, customer):
        plus = client.get("/api/users", params={"search": "+91"}, headers=admin["headers"]).json()
        assert plus["pagination"]["total"] == 2
        assert client.get("/api/users", params={"search": ")("}, headers=admin["headers"]).json()["users"] == []

    def test_list_requires_admin(self, client, customer):
        response = client.get("/api/users", headers=customer["headers"])
        assert response.status_code == 403
        assert response.json() == {"status": "error", "message": "User role 'customer' is not authorized to access this route"}

    def test_update_role(self, client, admin, customer):
        response = client.put(f"/api/users/{customer['id']}", json={"role": "delivery_partner"}, headers=admin["headers"])
        assert response.json()["user"]["role"] == "delivery_partner"

    def test_deactivate(self, client, admin, customer):
        assert client.delete(f"/api/users/{customer['id']}", headers=admin["headers"]).status_code == 200
        assert client.get("/api/auth/me", headers=customer["headers"]).status_code == 401

    def test_admin_cannot_deactivate_self(self, client, admin):
        assert client.delete(f"/api/users/{admin['id']}", headers=admin["headers"]).status_code == 400

    def test_self_or_admin(self, client, customer, register):
        other = register("customer")
        assert client.get(f"/api/users/{customer['id']}", headers=customer["headers"]).status_code == 200
        assert client.get(f"/api/users/{customer['id']}", headers=other["headers"]).status_code == 403

    def test_customer_stats(self, client, customer, product, place_order):
        place_order(customer, [{"product_id": product["id"], "quantity": 2}])
        stats = client.get(f"/api/users/{customer['id']}/stats", headers=customer["headers"]).json()["stats"]
        assert stats["total_orders"] == 1
        assert stats["total_spent"] == 230
        assert stats["orders_by_status"]["pending"] == 1
