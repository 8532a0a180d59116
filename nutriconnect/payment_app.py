import logging

from flask import Flask, jsonify, request, g

from . import config
from .database import DBSession, init_db
from .errors import ServiceError
from .paydpi import PayDPIClient
from .payments import PaymentService
from .security import protect, require_role
from .web import init_app, json_body, query_int

logger = logging.getLogger(__name__)

# Setup DB
init_db()

app = Flask(__name__)
init_app(app)

paydpi_client = PayDPIClient()
payment_service = PaymentService(DBSession, paydpi_client)


@app.route("/api/payments/process", methods=["POST"])
@protect
def process_payment():
    result = payment_service.process_payment(g.user, json_body())
    return jsonify(result), 201


@app.route("/api/payments/status/<payment_id>", methods=["GET"])
@protect
def payment_status(payment_id):
    return jsonify(payment_service.get_payment_status(payment_id, g.user))


@app.route("/api/payments/history", methods=["GET"])
@protect
def payment_history():
    result = payment_service.get_payment_history(
        g.user,
        limit=query_int("limit", 20, minimum=1, maximum=100),
        offset=query_int("offset", 0),
    )
    return jsonify(result)


@app.route("/api/payments/cancel/<payment_id>", methods=["POST"])
@protect
def cancel_payment(payment_id):
    reason = json_body().get("reason")
    return jsonify(payment_service.cancel_payment(payment_id, g.user, reason))


@app.route("/api/payments/refund/<payment_id>", methods=["POST"])
@protect
def refund_payment(payment_id):
    return jsonify(payment_service.initiate_refund(payment_id, g.user, json_body()))


@app.route("/api/payments/refunds/<refund_id>", methods=["GET"])
@protect
def refund_status(refund_id):
    return jsonify(payment_service.get_refund_status(refund_id, g.user))


@app.route("/api/payments/methods", methods=["GET"])
def payment_methods():
    return jsonify({"success": True, "methods": payment_service.get_available_payment_methods()})


@app.route("/api/payments/balance", methods=["GET"])
@protect
@require_role("SCHOOL_STAFF", "ADMIN")
def merchant_balance():
    return jsonify(payment_service.get_merchant_balance())


@app.route("/api/payments/transactions", methods=["GET"])
@protect
@require_role("SCHOOL_STAFF", "ADMIN")
def transactions():
    return jsonify(payment_service.get_transaction_history(
        limit=query_int("limit", 20, minimum=1, maximum=100),
        offset=query_int("offset", 0),
    ))


@app.route("/api/payments/webhook/paydpi", methods=["POST"])
def paydpi_webhook():
    payload = request.get_data()
    payment_service.verify_webhook(
        payload,
        request.headers.get("X-PayDPI-Signature"),
        request.headers.get("X-PayDPI-Timestamp"),
    )

    event = request.get_json(silent=True)
    if not isinstance(event, dict) or not event.get("event"):
        raise ServiceError("Webhook body must be a JSON event", 400, "invalid_payload")

    result = payment_service.process_webhook(event)
    return jsonify({**result, "message": "Webhook processed"})


if __name__ == "__main__":
    config.configure_logging()
    app.run(port=config.PAYMENT_PORT, debug=True)
