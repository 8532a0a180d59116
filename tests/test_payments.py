import json
from datetime import date, timedelta

import pytest

from nutriconnect import payment_app
from nutriconnect.database import DBSession
from nutriconnect.models import Order, PaymentRecord


METHODS_DETAIL = "paymentMethods must be a list of: CREDIT_CARD, DEBIT_CARD, BANK_TRANSFER, DIGITAL_WALLET, QR_CODE"


def make_order(order_id="ORD10001234", student_id="std_001", final_amount=40.0, payment_status="PENDING"):
    session = DBSession()
    session.add(Order(
        id=order_id,
        student_id=student_id,
        meal_id="meal_001",
        school_id="Royal College",
        scheduled_date=date.today() + timedelta(days=1),
        quantity=2,
        total_amount=100.0,
        subsidy_amount=60.0,
        final_amount=final_amount,
        payment_status=payment_status,
    ))
    session.commit()
    DBSession.remove()
    return order_id


def get_order(order_id):
    order = DBSession().get(Order, order_id)
    result = (order.payment_status, order.payment_id)
    DBSession.remove()
    return result


def process(client, headers, username="student123", **body):
    payload = {"orderId": "ORD10001234", "amount": 40.0, **body}
    return client.post("/api/payments/process", json=payload, headers=headers(username))


def signed_post(client, event, secret_client=None):
    payload = json.dumps(event)
    timestamp = "1768464000"
    signature = (secret_client or payment_app.paydpi_client).sign_webhook(payload, timestamp)
    return client.post(
        "/api/payments/webhook/paydpi",
        data=payload,
        content_type="application/json",
        headers={"X-PayDPI-Signature": signature, "X-PayDPI-Timestamp": timestamp},
    )


class TestProcessPayment:
    def test_opens_session_and_records_it(self, payment_client, headers, clock):
        make_order()
        response = process(payment_client, headers, description="Lunch")
        assert response.status_code == 201

        body = response.get_json()
        assert body["success"] is True
        assert body["status"] == "INITIATED"
        assert body["currency"] == "LKR"
        assert body["fees"] == 1.0
        assert body["paymentMethods"] == ["CREDIT_CARD", "DEBIT_CARD", "DIGITAL_WALLET"]
        assert body["redirectUrl"].endswith(body["paymentId"])

        record = DBSession().get(PaymentRecord, body["paymentId"])
        assert record.student_id == "std_001"
        assert record.order_id == "ORD10001234"
        DBSession.remove()
        assert get_order("ORD10001234") == ("PENDING", body["paymentId"])

        customer = payment_app.paydpi_client.payments[body["paymentId"]]["customerInfo"]
        assert customer["name"] == "Kasun Perera"
        assert customer["sludiId"] == "std_001"

    @pytest.mark.parametrize("body, detail", [
        ({"orderId": ""}, "Order ID is required"),
        ({"amount": 0}, "Valid amount is required"),
        ({"amount": "40"}, "Valid amount is required"),
        ({"amount": 10000.01}, "Amount exceeds maximum limit"),
        ({"orderId": {"id": 1}}, "Order ID must be a string"),
        ({"paymentMethods": 5}, METHODS_DETAIL),
        ({"paymentMethods": "CREDIT_CARD"}, METHODS_DETAIL),
        ({"paymentMethods": ["CASH"]}, METHODS_DETAIL),
        ({"expiryMinutes": "soon"}, "expiryMinutes must be a positive integer"),
        ({"expiryMinutes": 0}, "expiryMinutes must be a positive integer"),
        ({"description": ["lunch"]}, "description must be a string"),
        ({"metadata": "x"}, "metadata must be an object"),
    ])
    def test_validation(self, payment_client, headers, body, detail):
        response = process(payment_client, headers, **body)
        assert response.status_code == 400

        result = response.get_json()
        assert result["error"] == "validation_error"
        assert result["message"] == "Payment validation failed"
        assert detail in result["details"]

    def test_cannot_pay_for_another_students_order(self, payment_client, headers, clock):
        make_order()
        response = process(payment_client, headers, username="student124")
        assert response.status_code == 404
        assert response.get_json()["error"] == "order_not_found"
        assert get_order("ORD10001234") == ("PENDING", None)

    def test_amount_must_match_order(self, payment_client, headers, clock):
        make_order()
        response = process(payment_client, headers, amount=0.01)
        assert response.status_code == 400
        assert response.get_json()["details"] == ["Amount must match the order total of 40.00"]
        assert payment_app.paydpi_client.payments == {}

    def test_settled_payment_leaves_foreign_order_alone(self, payment_client, headers, clock):
        # paid before the order existed, so the ownership check could not run
        payment_id = process(payment_client, headers, username="student124").get_json()["paymentId"]
        make_order()

        clock.advance(61)
        body = payment_client.get(
            f"/api/payments/status/{payment_id}", headers=headers("student124")
        ).get_json()
        assert body["status"] == "COMPLETED"
        assert get_order("ORD10001234") == ("PENDING", None)

    def test_requires_token(self, payment_client):
        response = payment_client.post("/api/payments/process", json={"orderId": "x", "amount": 1})
        assert response.status_code == 401


class TestPaymentStatus:
    def test_polling_completes_payment_and_order(self, payment_client, headers, clock):
        make_order()
        payment_id = process(payment_client, headers).get_json()["paymentId"]

        clock.advance(31)
        body = payment_client.get(f"/api/payments/status/{payment_id}", headers=headers()).get_json()
        assert body["status"] == "PROCESSING"
        assert get_order("ORD10001234")[0] == "PROCESSING"

        clock.advance(30)
        body = payment_client.get(f"/api/payments/status/{payment_id}", headers=headers()).get_json()
        assert body["status"] == "COMPLETED"
        assert body["transactionId"]
        assert get_order("ORD10001234")[0] == "PAID"

        record = DBSession().get(PaymentRecord, payment_id)
        assert record.status == "COMPLETED"
        assert record.transaction_id == body["transactionId"]
        DBSession.remove()

    def test_other_students_cannot_see_payment(self, payment_client, headers, clock):
        payment_id = process(payment_client, headers).get_json()["paymentId"]
        response = payment_client.get(f"/api/payments/status/{payment_id}", headers=headers("student124"))
        assert response.status_code == 404
        assert response.get_json()["error"] == "payment_not_found"

    def test_staff_can_see_payment(self, payment_client, headers, clock):
        payment_id = process(payment_client, headers).get_json()["paymentId"]
        response = payment_client.get(f"/api/payments/status/{payment_id}", headers=headers("staff789"))
        assert response.status_code == 200

    def test_expired_payment_fails_order(self, payment_client, headers, clock):
        make_order()
        payment_id = process(payment_client, headers, expiryMinutes=1).get_json()["paymentId"]
        clock.advance(90)

        body = payment_client.get(f"/api/payments/status/{payment_id}", headers=headers()).get_json()
        assert body["status"] == "EXPIRED"
        assert get_order("ORD10001234")[0] == "FAILED"

    def test_history_is_per_student(self, payment_client, headers, clock):
        process(payment_client, headers)
        process(payment_client, headers, orderId="ORD10011111")
        process(payment_client, headers, username="student124", orderId="ORD10022222")

        body = payment_client.get("/api/payments/history", headers=headers()).get_json()
        assert body["pagination"]["total"] == 2
        assert {p["orderId"] for p in body["payments"]} == {"ORD10001234", "ORD10011111"}


class TestCancelAndRefund:
    def test_cancel_payment(self, payment_client, headers, clock):
        make_order()
        payment_id = process(payment_client, headers).get_json()["paymentId"]

        response = payment_client.post(
            f"/api/payments/cancel/{payment_id}", json={"reason": "wrong meal"}, headers=headers()
        )
        assert response.status_code == 200
        assert response.get_json()["status"] == "CANCELLED"
        assert get_order("ORD10001234")[0] == "FAILED"

        response = payment_client.post(f"/api/payments/cancel/{payment_id}", json={}, headers=headers())
        assert response.status_code == 409
        assert response.get_json()["error"] == "invalid_state"

    def test_refund_completed_payment(self, payment_client, headers, clock):
        make_order()
        payment_id = process(payment_client, headers).get_json()["paymentId"]
        clock.advance(61)
        payment_client.get(f"/api/payments/status/{payment_id}", headers=headers())

        response = payment_client.post(
            f"/api/payments/refund/{payment_id}", json={"reason": "order cancelled"}, headers=headers()
        )
        assert response.status_code == 200
        refund = response.get_json()
        assert refund["status"] == "INITIATED"
        assert refund["amount"] == 40.0

        clock.advance(31)
        status = payment_client.get(
            f"/api/payments/refunds/{refund['refundId']}", headers=headers()
        ).get_json()
        assert status["status"] == "COMPLETED"
        assert get_order("ORD10001234")[0] == "REFUNDED"

        history = payment_client.get("/api/payments/history", headers=headers()).get_json()
        assert history["payments"][0]["refunds"][0]["status"] == "COMPLETED"

    def test_refund_of_pending_payment_refused(self, payment_client, headers, clock):
        payment_id = process(payment_client, headers).get_json()["paymentId"]
        response = payment_client.post(f"/api/payments/refund/{payment_id}", json={}, headers=headers())
        assert response.status_code == 409
        assert response.get_json()["message"] == "Can only refund completed payments"

    def test_refund_too_large(self, payment_client, headers, clock):
        payment_id = process(payment_client, headers).get_json()["paymentId"]
        clock.advance(61)
        payment_client.get(f"/api/payments/status/{payment_id}", headers=headers())

        response = payment_client.post(
            f"/api/payments/refund/{payment_id}", json={"amount": 99.0}, headers=headers()
        )
        assert response.status_code == 400
        assert response.get_json()["error"] == "invalid_amount"

    def test_refund_unknown_payment(self, payment_client, headers):
        response = payment_client.post("/api/payments/refund/PAY_nope", json={}, headers=headers())
        assert response.status_code == 404

    def test_refund_status_unknown(self, payment_client, headers):
        response = payment_client.get("/api/payments/refunds/REF_nope", headers=headers())
        assert response.status_code == 404
        assert response.get_json()["error"] == "refund_not_found"


class TestMerchantViews:
    def test_methods_are_public(self, payment_client):
        methods = payment_client.get("/api/payments/methods").get_json()["methods"]
        assert [m["method"] for m in methods][:2] == ["CREDIT_CARD", "DEBIT_CARD"]

    def test_balance_staff_only(self, payment_client, headers):
        assert payment_client.get("/api/payments/balance", headers=headers()).status_code == 403

        body = payment_client.get("/api/payments/balance", headers=headers("staff789")).get_json()
        assert body["availableBalance"] == 125000.0

    def test_transactions_for_admin(self, payment_client, headers, clock):
        payment_id = process(payment_client, headers).get_json()["paymentId"]
        clock.advance(61)
        payment_client.get(f"/api/payments/status/{payment_id}", headers=headers())

        body = payment_client.get("/api/payments/transactions", headers=headers("admin000")).get_json()
        assert body["pagination"]["total"] == 1
        assert body["transactions"][0]["paymentId"] == payment_id


class TestWebhook:
    def test_payment_completed_marks_order_paid(self, payment_client, headers, clock):
        make_order()
        payment_id = process(payment_client, headers).get_json()["paymentId"]

        response = signed_post(payment_client, {
            "event": "payment.completed",
            "data": {"paymentId": payment_id, "transactionId": "TXN_ABCDEFGHI"},
        })
        assert response.status_code == 200
        body = response.get_json()
        assert body["processed"] is True
        assert body["event"] == "payment.completed"

        assert get_order("ORD10001234") == ("PAID", payment_id)
        record = DBSession().get(PaymentRecord, payment_id)
        assert record.status == "COMPLETED"
        assert record.transaction_id == "TXN_ABCDEFGHI"
        DBSession.remove()

    def test_payment_failed_marks_order_failed(self, payment_client, headers, clock):
        make_order()
        payment_id = process(payment_client, headers).get_json()["paymentId"]
        signed_post(payment_client, {"event": "payment.failed", "data": {"paymentId": payment_id}})
        assert get_order("ORD10001234")[0] == "FAILED"

    def test_unknown_event_is_acknowledged(self, payment_client):
        response = signed_post(payment_client, {"event": "payment.teleported", "data": {}})
        assert response.status_code == 200
        assert response.get_json()["processed"] is False

    def test_bad_signature_rejected(self, payment_client):
        from nutriconnect.paydpi import PayDPIClient

        forger = PayDPIClient(webhook_secret="not-the-secret")
        response = signed_post(payment_client, {"event": "payment.completed", "data": {}}, forger)
        assert response.status_code == 400
        assert response.get_json()["error"] == "invalid_signature"

    def test_undecodable_body_rejected(self, payment_client):
        response = payment_client.post(
            "/api/payments/webhook/paydpi",
            data=b"\xff\xfe{}",
            content_type="application/json",
            headers={"X-PayDPI-Signature": "v1=abc", "X-PayDPI-Timestamp": "1768464000"},
        )
        assert response.status_code == 400
        assert response.get_json()["error"] == "invalid_signature"

    def test_signed_body_that_is_not_json(self, payment_client):
        payload = b"\xff\xfe{}"
        signature = payment_app.paydpi_client.sign_webhook(payload, "1768464000")
        response = payment_client.post(
            "/api/payments/webhook/paydpi",
            data=payload,
            content_type="application/json",
            headers={"X-PayDPI-Signature": signature, "X-PayDPI-Timestamp": "1768464000"},
        )
        assert response.status_code == 400
        assert response.get_json()["error"] == "invalid_payload"

    def test_missing_signature_rejected(self, payment_client):
        response = payment_client.post("/api/payments/webhook/paydpi", json={"event": "payment.completed"})
        assert response.status_code == 400
