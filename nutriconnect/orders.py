import logging
import time
from datetime import date, datetime

from sqlalchemy.exc import IntegrityError

from .errors import ServiceError, validation_error, not_found
from .models import Order, OrderStatusChange, STAFF_STATUSES, CANCELLABLE_STATUSES, utcnow
from .payment_client import PaymentClientError

logger = logging.getLogger(__name__)

MAX_QUANTITY = 10
STAFF_ROLES = ("SCHOOL_STAFF", "ADMIN")


def parse_date(value):
    """Parse an ISO date, or an ISO datetime reduced to its date."""
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def optional_text(data, field, errors):
    value = data.get(field)
    if value is not None and not isinstance(value, str):
        errors.append(f"{field} must be a string")
        return None
    return value


def validate_order_request(data):
    """Check an order body and return the cleaned fields.

    Raises a 400 ``validation_error`` listing every problem found.
    """
    errors = []
    meal_id = data.get("mealId")
    scheduled_date = data.get("scheduledDate")
    quantity = data.get("quantity")

    if not meal_id:
        errors.append("Meal ID is required")
    elif not isinstance(meal_id, str):
        errors.append("Meal ID must be a string")
    if not scheduled_date:
        errors.append("Scheduled date is required")
    elif parse_date(scheduled_date) is None:
        errors.append("Invalid date format")

    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        errors.append("Valid quantity is required")
    elif quantity > MAX_QUANTITY:
        errors.append(f"Maximum {MAX_QUANTITY} meals per order")

    pickup_time = optional_text(data, "pickupTime", errors)
    special_instructions = optional_text(data, "specialInstructions", errors)

    if errors:
        raise validation_error(errors)

    return {
        "meal_id": meal_id,
        "scheduled_date": parse_date(scheduled_date),
        "quantity": quantity,
        "pickup_time": pickup_time,
        "special_instructions": special_instructions,
    }


def validate_status_update(data):
    status = data.get("status")
    if not isinstance(status, str) or status not in STAFF_STATUSES:
        raise ServiceError(
            "Valid status is required", 400, "validation_error",
            validStatuses=list(STAFF_STATUSES),
        )
    errors = []
    notes = optional_text(data, "notes", errors)
    if errors:
        raise validation_error(errors)
    return {"status": status, "notes": notes}


def validate_cancel_request(data):
    errors = []
    reason = optional_text(data, "reason", errors)
    if errors:
        raise validation_error(errors)
    return reason


def duplicate_order_error():
    return ServiceError("You already have an order for this date", 409, "duplicate_order")


class OrderService:
    def __init__(self, session_factory, meals, students, payments, notifications):
        self.session_factory = session_factory
        self.meals = meals
        self.students = students
        self.payments = payments
        self.notifications = notifications

    def _next_order_id(self, session):
        counter = 1000 + session.query(Order).count()
        suffix = str(int(time.time() * 1000))[-4:]
        order_id = f"ORD{counter}{suffix}"
        while session.get(Order, order_id) is not None:
            counter += 1
            order_id = f"ORD{counter}{suffix}"
        return order_id

    def _find_existing_order(self, session, student_id, scheduled_date):
        return (
            session.query(Order)
            .filter(
                Order.student_id == student_id,
                Order.scheduled_date == scheduled_date,
                Order.status != "CANCELLED",
            )
            .first()
        )

    def create_order(self, student_id, order_data, token=None):
        session = self.session_factory()
        meal_id = order_data["meal_id"]
        scheduled_date = order_data["scheduled_date"]
        quantity = order_data["quantity"]

        logger.info("Creating order for student %s, meal %s", student_id, meal_id)

        if scheduled_date < date.today():
            raise ServiceError("Cannot order meals for past dates", 400, "invalid_date")

        meal = self.meals.get_meal(meal_id)
        if meal is None or not meal.available:
            raise not_found("Selected meal is not available", "meal_not_available")

        student = self.students.get_student(student_id)
        eligibility = self.students.get_subsidy_eligibility(student_id)
        if student is None or eligibility is None:
            raise ServiceError("Student not found in system", 401, "student_not_found")

        if self._find_existing_order(session, student_id, scheduled_date):
            raise duplicate_order_error()

        total_amount = round(meal.price * quantity, 2)
        subsidy_amount = round(meal.subsidy_amount * quantity, 2) if eligibility["eligible"] else 0.0
        final_amount = max(0.0, round(total_amount - subsidy_amount, 2))

        order = Order(
            id=self._next_order_id(session),
            student_id=student_id,
            meal_id=meal_id,
            school_id=student["school"],
            scheduled_date=scheduled_date,
            quantity=quantity,
            total_amount=total_amount,
            subsidy_amount=subsidy_amount,
            final_amount=final_amount,
            status="PENDING",
            payment_status="PENDING" if final_amount > 0 else "PAID",
            dietary_restrictions=student["dietaryRestrictions"],
            special_instructions=order_data.get("special_instructions"),
            pickup_time=order_data.get("pickup_time"),
            extra={
                "mealName": meal.name,
                "nutritionScore": meal.nutrition_score,
                "orderSource": "web_app",
                "apiVersion": "v1",
            },
        )
        session.add(order)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise duplicate_order_error()

        payment = None
        if final_amount > 0:
            payment = self._open_payment(session, order, token, student)

        self.meals.update_availability(meal_id, quantity)
        self._notify(self.notifications.send_order_confirmation, student_id, order)

        logger.info("Order created successfully: %s", order.id)

        result = {
            "success": True,
            "order": order.to_dict(),
            "message": "Order placed successfully",
            "paymentRequired": final_amount > 0,
            "nextSteps": (
                ["Complete payment to confirm order"]
                if final_amount > 0
                else ["Order confirmed - fully subsidized"]
            ),
        }
        if payment is not None:
            result["payment"] = payment
        return result

    def _open_payment(self, session, order, token, student):
        if not self.payments.enabled or not token:
            logger.info("Payment required: Rs. %.2f (PayDPI integration pending)", order.final_amount)
            return None

        try:
            payment = self.payments.initiate_payment(token, order, customer_name=student["name"])
        except PaymentClientError as e:
            # the order stands, the student can retry payment later
            logger.error("Payment initiation failed for order %s: %s", order.id, e)
            return None

        order.payment_id = payment["paymentId"]
        order.payment_status = "PENDING"
        session.commit()
        return {
            "paymentId": payment["paymentId"],
            "status": payment["status"],
            "redirectUrl": payment.get("redirectUrl"),
            "qrCode": payment.get("qrCode"),
            "expiresAt": payment.get("expiresAt"),
            "fees": payment.get("fees"),
        }

    def _notify(self, send, student_id, order):
        try:
            send(student_id, order)
        except Exception:
            logger.exception("Notification failed for order %s", order.id)

    def get_orders_by_student(self, student_id, status=None, limit=20, offset=0):
        session = self.session_factory()
        logger.info("Fetching orders for student %s", student_id)

        query = session.query(Order).filter(Order.student_id == student_id)
        if status:
            query = query.filter(Order.status == status)
        total = query.count()
        orders = (
            query.order_by(Order.order_date.desc(), Order.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return {
            "success": True,
            "orders": [o.to_dict() for o in orders],
            "pagination": {"total": total, "limit": limit, "offset": offset},
        }

    def _get_owned_order(self, session, order_id, user):
        order = session.get(Order, order_id)
        if order is None or (order.student_id != user["id"] and user["role"] not in STAFF_ROLES):
            raise not_found("Order not found", "order_not_found")
        return order

    def get_order(self, order_id, user):
        session = self.session_factory()
        order = self._get_owned_order(session, order_id, user)
        return {"success": True, "order": order.to_dict()}

    def cancel_order(self, order_id, student_id, reason=None, token=None):
        session = self.session_factory()
        order = session.get(Order, order_id)
        if order is None or order.student_id != student_id:
            raise not_found("Order not found", "order_not_found")

        if order.status not in CANCELLABLE_STATUSES:
            raise ServiceError("Order cannot be cancelled at this stage", 400, "cannot_cancel")

        was_paid = order.payment_status == "PAID" and order.final_amount > 0

        order.status = "CANCELLED"
        order.cancelled_at = utcnow()
        order.cancellation_reason = reason
        order.extra = {**(order.extra or {}), "cancelledBy": "student"}
        session.commit()

        if was_paid:
            self._refund(session, order, reason, token)

        self.meals.restore_availability(order.meal_id, order.quantity)
        self._notify(self.notifications.send_order_cancellation, student_id, order)

        logger.info("Order cancelled: %s", order_id)
        return {
            "success": True,
            "order": order.to_dict(),
            "message": "Order cancelled successfully",
        }

    def _refund(self, session, order, reason, token):
        try:
            if self.payments.enabled and token and order.payment_id:
                self.payments.initiate_refund(token, order, reason)
            order.payment_status = "REFUNDED"
            session.commit()
            logger.info("Refund initiated for order %s", order.id)
        except PaymentClientError as e:
            session.rollback()
            logger.error("Refund failed for order %s: %s", order.id, e)

    def get_pending_orders(self, scheduled_date=None):
        session = self.session_factory()
        query = session.query(Order).filter(Order.status.in_(CANCELLABLE_STATUSES))
        if scheduled_date is not None:
            query = query.filter(Order.scheduled_date == scheduled_date)
        orders = query.order_by(Order.scheduled_date, Order.order_date, Order.id).all()

        by_date = {}
        for order in orders:
            key = order.scheduled_date.isoformat()
            by_date[key] = by_date.get(key, 0) + 1

        return {
            "success": True,
            "orders": [o.to_dict() for o in orders],
            "summary": {"total": len(orders), "byDate": by_date},
        }

    def update_order_status(self, order_id, staff_id, update):
        session = self.session_factory()
        order = session.get(Order, order_id)
        if order is None:
            raise not_found("Order not found", "order_not_found")

        status = update["status"]
        notes = update.get("notes")

        order.status = status
        order.updated_by = staff_id
        order.staff_notes = notes
        order.status_history.append(OrderStatusChange(status=status, staff_id=staff_id, notes=notes))
        try:
            session.commit()
        except IntegrityError:
            # reviving a cancelled order that already has a replacement that day
            session.rollback()
            raise duplicate_order_error()

        self._notify(self.notifications.send_status_update, order.student_id, order)
        logger.info("Order %s status updated to %s by %s", order_id, status, staff_id)

        return {
            "success": True,
            "order": order.to_dict(),
            "message": "Order status updated successfully",
        }
