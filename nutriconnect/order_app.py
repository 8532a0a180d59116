import logging

from flask import Flask, jsonify, request, g

from . import config
from .catalog import MealService
from .database import DBSession, init_db
from .directory import StudentService
from .errors import validation_error
from .models import ORDER_STATUSES
from .notifications import NotificationService
from .orders import (
    OrderService, validate_order_request, validate_status_update, validate_cancel_request, parse_date,
)
from .payment_client import PaymentClient
from .security import protect, require_role
from .web import init_app, json_body, query_int

logger = logging.getLogger(__name__)

# Setup DB
init_db()

app = Flask(__name__)
init_app(app)

meal_service = MealService(DBSession)
order_service = OrderService(
    DBSession,
    meals=meal_service,
    students=StudentService(),
    payments=PaymentClient(),
    notifications=NotificationService(),
)


@app.route("/api/meals", methods=["GET"])
@protect
def list_meals():
    return jsonify({"success": True, "meals": [m.to_dict() for m in meal_service.list_meals()]})


@app.route("/api/orders", methods=["POST"])
@protect
def create_order():
    order_data = validate_order_request(json_body())
    result = order_service.create_order(g.user["id"], order_data, token=g.token)
    return jsonify(result), 201


@app.route("/api/orders", methods=["GET"])
@protect
def list_orders():
    status = request.args.get("status") or None
    if status is not None and status not in ORDER_STATUSES:
        raise validation_error([f"Unknown status {status}"])
    result = order_service.get_orders_by_student(
        g.user["id"],
        status=status,
        limit=query_int("limit", 20, minimum=1, maximum=100),
        offset=query_int("offset", 0),
    )
    return jsonify(result)


@app.route("/api/orders/staff/pending", methods=["GET"])
@protect
@require_role("SCHOOL_STAFF", "ADMIN")
def pending_orders():
    raw_date = request.args.get("date")
    scheduled_date = None
    if raw_date:
        scheduled_date = parse_date(raw_date)
        if scheduled_date is None:
            raise validation_error(["Invalid date format"])
    return jsonify(order_service.get_pending_orders(scheduled_date))


@app.route("/api/orders/<order_id>", methods=["GET"])
@protect
def get_order(order_id):
    return jsonify(order_service.get_order(order_id, g.user))


@app.route("/api/orders/<order_id>/cancel", methods=["PATCH"])
@protect
def cancel_order(order_id):
    reason = validate_cancel_request(json_body())
    return jsonify(order_service.cancel_order(order_id, g.user["id"], reason, token=g.token))


@app.route("/api/orders/<order_id>/status", methods=["PATCH"])
@protect
@require_role("SCHOOL_STAFF", "ADMIN")
def update_order_status(order_id):
    update = validate_status_update(json_body())
    return jsonify(order_service.update_order_status(order_id, g.user["id"], update))


if __name__ == "__main__":
    config.configure_logging()
    logger.info("Payment service: %s", config.PAYMENT_SERVICE_URL or "not configured")
    app.run(port=config.ORDER_PORT, debug=True)
