"""Tests for payment initiation, verification, refunds and reporting."""

from bson import ObjectId

from marketplace.routes.payments import razorpay_signature


def order_for(customer, product, place_order, method="card"):
    response = place_order(customer, [{"product_id": product["id"], "quantity": 2}], method=method)
    assert response.status_code == 201, response.text
    return response.json()["order"]


def initiate(client, customer, order, method="card", gateway="razorpay"):
    return client.post("/api/payments/initiate", json={
        "order_id": order["id"], "payment_method": method, "gateway": gateway,
    }, headers=customer["headers"])


def pay_with_stripe(client, customer, order):
    intent = initiate(client, customer, order, gateway="stripe").json()
    return client.post("/api/payments/verify", json={
        "order_id": order["id"], "payment_id": intent["transaction_id"], "gateway": "stripe",
    }, headers=customer["headers"])


class TestMethods:
    def test_enabled_methods(self, client, shop):
        data = client.get(f"/api/payments/methods/{shop['id']}").json()
        methods = {m["id"]: m for m in data["payment_methods"]}
        assert sorted(methods) == ["card", "cash", "upi"]
        assert methods["cash"]["type"] == "cash"
        assert methods["upi"]["gateways"] == ["razorpay", "paytm"]

    def test_unknown_shop(self, client):
        assert client.get(f"/api/payments/methods/{ObjectId()}").status_code == 404


class TestInitiate:
    def test_razorpay_payload(self, client, customer, product, place_order, db):
        order = order_for(customer, product, place_order)
        response = initiate(client, customer, order)
        assert response.status_code == 200
        data = response.json()
        assert data["requires_online_payment"] is True
        assert data["transaction_id"].startswith("rzp_")
        assert data["gateway_order_id"].startswith("order_")
        assert data["amount"] == round(order["total"] * 100)
        assert data["currency"] == "INR"
        stored = db["order"].find_one({"_id": ObjectId(order["id"])})["payment"]
        assert stored["transaction_id"] == data["transaction_id"]
        assert stored["gateway"] == "razorpay"

    def test_stripe_and_paytm(self, client, customer, product, place_order):
        order = order_for(customer, product, place_order)
        stripe = initiate(client, customer, order, gateway="stripe").json()
        assert stripe["transaction_id"].startswith("pi_")
        assert stripe["client_secret"]
        paytm = initiate(client, customer, order, method="upi", gateway="paytm").json()
        assert paytm["transaction_id"].startswith("paytm_")

    def test_cash_needs_no_gateway(self, client, customer, product, place_order):
        order = order_for(customer, product, place_order, method="cash")
        data = initiate(client, customer, order, method="cash").json()
        assert data["message"] == "Cash on delivery selected"
        assert data["requires_online_payment"] is False

    def test_unsupported_gateway(self, client, customer, product, place_order):
        order = order_for(customer, product, place_order)
        response = initiate(client, customer, order, gateway="bitpay")
        assert response.status_code == 400
        assert response.json()["message"] == "Unsupported payment gateway"

    def test_method_not_accepted(self, client, customer, product, place_order):
        order = order_for(customer, product, place_order)
        assert initiate(client, customer, order, method="wallet").status_code == 400

    def test_only_order_owner(self, client, customer, register, product, place_order):
        order = order_for(customer, product, place_order)
        stranger = register("customer")
        assert initiate(client, stranger, order).status_code == 403

    def test_cancelled_order_cannot_be_paid(self, client, customer, product, place_order):
        order = order_for(customer, product, place_order)
        client.put(f"/api/orders/{order['id']}/cancel", headers=customer["headers"])
        response = initiate(client, customer, order)
        assert response.json()["message"] == "Order is not in a valid state for payment"


class TestVerify:
    def test_razorpay_signature(self, client, customer, product, shop, place_order, db):
        order = order_for(customer, product, place_order)
        transaction_id = initiate(client, customer, order).json()["transaction_id"]
        response = client.post("/api/payments/verify", json={
            "order_id": order["id"],
            "payment_id": "pay_123",
            "signature": razorpay_signature(transaction_id, "pay_123"),
            "gateway": "razorpay",
        }, headers=customer["headers"])
        assert response.status_code == 200
        assert response.json()["order_status"] == "confirmed"

        stored = db["order"].find_one({"_id": ObjectId(order["id"])})
        assert stored["payment"]["status"] == "paid"
        assert stored["payment"]["transaction_id"] == "pay_123"
        assert stored["status_history"][-1]["status"] == "confirmed"
        assert db["shop"].find_one({"_id": ObjectId(shop["id"])})["stats"]["total_revenue"] == order["total"]

    def test_bad_signature_marks_failed(self, client, customer, product, place_order, db):
        order = order_for(customer, product, place_order)
        initiate(client, customer, order)
        response = client.post("/api/payments/verify", json={
            "order_id": order["id"], "payment_id": "pay_123", "signature": "forged", "gateway": "razorpay",
        }, headers=customer["headers"])
        assert response.status_code == 400
        assert response.json()["message"] == "Payment verification failed"
        assert db["order"].find_one({"_id": ObjectId(order["id"])})["payment"]["status"] == "failed"

    def test_stripe_prefix(self, client, customer, product, place_order):
        order = order_for(customer, product, place_order)
        initiate(client, customer, order, gateway="stripe")
        bad = client.post("/api/payments/verify", json={
            "order_id": order["id"], "payment_id": "ch_999", "gateway": "stripe",
        }, headers=customer["headers"])
        assert bad.status_code == 400
        assert pay_with_stripe(client, customer, order).status_code == 200

    def test_already_paid(self, client, customer, product, place_order):
        order = order_for(customer, product, place_order)
        pay_with_stripe(client, customer, order)
        response = initiate(client, customer, order)
        assert response.json()["message"] == "Payment already completed for this order"

    def test_verify_twice_counts_revenue_once(self, client, customer, product, shop, place_order, db):
        order = order_for(customer, product, place_order)
        assert pay_with_stripe(client, customer, order).status_code == 200
        intent_id = db["order"].find_one({"_id": ObjectId(order["id"])})["payment"]["transaction_id"]
        again = client.post("/api/payments/verify", json={
            "order_id": order["id"], "payment_id": intent_id, "gateway": "stripe",
        }, headers=customer["headers"])
        assert again.status_code == 400
        assert again.json()["message"] == "Payment already completed for this order"
        assert db["shop"].find_one({"_id": ObjectId(shop["id"])})["stats"]["total_revenue"] == order["total"]

    def test_failed_verify_keeps_paid_status(self, client, customer, product, place_order, db):
        order = order_for(customer, product, place_order)
        pay_with_stripe(client, customer, order)
        response = client.post("/api/payments/verify", json={
            "order_id": order["id"], "payment_id": "pay_1", "signature": "forged", "gateway": "razorpay",
        }, headers=customer["headers"])
        assert response.status_code == 400
        assert db["order"].find_one({"_id": ObjectId(order["id"])})["payment"]["status"] == "paid"

    def test_refunded_order_cannot_be_verified(self, client, customer, owner, product, place_order, db):
        order = order_for(customer, product, place_order)
        pay_with_stripe(client, customer, order)
        client.put(f"/api/orders/{order['id']}/status", json={"status": "cancelled"}, headers=owner["headers"])
        client.post("/api/payments/refund", json={"order_id": order["id"]}, headers=owner["headers"])
        response = client.post("/api/payments/verify", json={
            "order_id": order["id"], "payment_id": "pi_again", "gateway": "stripe",
        }, headers=customer["headers"])
        assert response.status_code == 400
        assert db["order"].find_one({"_id": ObjectId(order["id"])})["payment"]["status"] == "refunded"


class TestRefund:
    def cancel(self, client, owner, order):
        client.put(f"/api/orders/{order['id']}/status", json={"status": "cancelled"}, headers=owner["headers"])

    def test_requires_paid_order(self, client, customer, owner, product, place_order):
        order = order_for(customer, product, place_order)
        self.cancel(client, owner, order)
        response = client.post("/api/payments/refund", json={"order_id": order["id"]}, headers=owner["headers"])
        assert response.status_code == 400
        assert response.json()["message"] == "Order payment is not completed"

    def test_requires_cancelled_or_delivered(self, client, customer, owner, product, place_order):
        order = order_for(customer, product, place_order)
        pay_with_stripe(client, customer, order)
        response = client.post("/api/payments/refund", json={"order_id": order["id"]}, headers=owner["headers"])
        assert response.status_code == 400

    def test_partial_then_full(self, client, customer, owner, product, place_order, db):
        order = order_for(customer, product, place_order)
        pay_with_stripe(client, customer, order)
        self.cancel(client, owner, order)

        partial = client.post("/api/payments/refund", json={"order_id": order["id"], "amount": 100, "reason": "Damaged"}, headers=owner["headers"])
        assert partial.status_code == 200
        assert partial.json()["payment_status"] == "partially_refunded"
        assert partial.json()["refund_id"].startswith("refund_")

        smaller = client.post("/api/payments/refund", json={"order_id": order["id"], "amount": 50}, headers=owner["headers"])
        assert smaller.json()["message"] == "Refund amount already processed"

        full = client.post("/api/payments/refund", json={"order_id": order["id"]}, headers=owner["headers"])
        assert full.json()["payment_status"] == "refunded"
        stored = db["order"].find_one({"_id": ObjectId(order["id"])})
        assert stored["status"] == "cancelled"
        assert stored["cancellation"]["refund_amount"] == order["total"]

    def test_delivered_order_moves_to_refunded(self, client, customer, owner, product, place_order, db):
        order = order_for(customer, product, place_order)
        pay_with_stripe(client, customer, order)
        for status in ("preparing", "ready", "delivered"):
            client.put(f"/api/orders/{order['id']}/status", json={"status": status}, headers=owner["headers"])
        client.post("/api/payments/refund", json={"order_id": order["id"]}, headers=owner["headers"])
        stored = db["order"].find_one({"_id": ObjectId(order["id"])})
        assert stored["status"] == "refunded"
        assert stored["status_history"][-1]["status"] == "refunded"

    def test_amount_cannot_exceed_total(self, client, customer, owner, product, place_order):
        order = order_for(customer, product, place_order)
        pay_with_stripe(client, customer, order)
        self.cancel(client, owner, order)
        response = client.post("/api/payments/refund", json={"order_id": order["id"], "amount": 10000}, headers=owner["headers"])
        assert response.status_code == 400

    def test_customer_cannot_refund(self, client, customer, product, place_order):
        order = order_for(customer, product, place_order)
        assert client.post("/api/payments/refund", json={"order_id": order["id"]}, headers=customer["headers"]).status_code == 403


class TestReporting:
    def test_history(self, client, customer, product, place_order):
        paid = order_for(customer, product, place_order)
        order_for(customer, product, place_order, method="cash")
        pay_with_stripe(client, customer, paid)
        data = client.get("/api/payments/history", headers=customer["headers"]).json()
        assert data["pagination"]["total"] == 2
        only_paid = client.get("/api/payments/history", params={"status": "paid"}, headers=customer["headers"]).json()
        assert [p["id"] for p in only_paid["payments"]] == [paid["id"]]

    def test_analytics(self, client, customer, owner, product, place_order):
        paid = order_for(customer, product, place_order)
        order_for(customer, product, place_order, method="cash")
        pay_with_stripe(client, customer, paid)
        data = client.get("/api/payments/analytics", headers=owner["headers"]).json()
        methods = {m["method"]: m for m in data["payment_method_stats"]}
        assert methods["card"]["paid_orders"] == 1
        assert methods["cash"]["paid_orders"] == 0
        assert {s["status"] for s in data["payment_status_stats"]} == {"paid", "pending"}
        assert data["daily_trends"][0]["total_payments"] == 1
