import logging

from .errors import ServiceError, validation_error, not_found
from .models import Order, PaymentRecord, RefundRecord
from .paydpi import PayDPIError, DEFAULT_METHODS, FEE_RATES

logger = logging.getLogger(__name__)

MAX_PAYMENT_AMOUNT = 10000
STAFF_ROLES = ("SCHOOL_STAFF", "ADMIN")
OPTIONAL_TEXT_FIELDS = ("currency", "description", "customerName", "customerEmail", "customerPhone")

# gateway payment status -> order payment status
ORDER_PAYMENT_STATUS = {
    "INITIATED": "PENDING",
    "PROCESSING": "PROCESSING",
    "COMPLETED": "PAID",
    "FAILED": "FAILED",
    "CANCELLED": "FAILED",
    "EXPIRED": "FAILED",
}

FINAL_STATUSES = ("COMPLETED", "FAILED", "CANCELLED", "EXPIRED")

GATEWAY_ERRORS = {
    "VALIDATION_ERROR": (400, "validation_error"),
    "NOT_FOUND": (404, "payment_not_found"),
    "INVALID_STATE": (409, "invalid_state"),
    "INVALID_AMOUNT": (400, "invalid_amount"),
}


def gateway_error(error):
    status_code, code = GATEWAY_ERRORS.get(error.code, (502, "gateway_error"))
    extra = {"details": error.details} if error.details else {}
    return ServiceError(error.message, status_code, code, **extra)


def validate_payment_request(data):
    errors = []
    order_id = data.get("orderId")
    amount = data.get("amount")

    if not order_id:
        errors.append("Order ID is required")
    elif not isinstance(order_id, str):
        errors.append("Order ID must be a string")
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount <= 0:
        errors.append("Valid amount is required")
    elif amount > MAX_PAYMENT_AMOUNT:
        errors.append("Amount exceeds maximum limit")

    for field in OPTIONAL_TEXT_FIELDS:
        value = data.get(field)
        if value is not None and not isinstance(value, str):
            errors.append(f"{field} must be a string")

    methods = data.get("paymentMethods")
    if methods is not None and (
        not isinstance(methods, list)
        or not methods
        or any(not isinstance(m, str) or m not in FEE_RATES for m in methods)
    ):
        errors.append(f"paymentMethods must be a list of: {', '.join(FEE_RATES)}")

    expiry = data.get("expiryMinutes")
    if expiry is not None and (isinstance(expiry, bool) or not isinstance(expiry, int) or expiry < 1):
        errors.append("expiryMinutes must be a positive integer")

    if data.get("metadata") is not None and not isinstance(data["metadata"], dict):
        errors.append("metadata must be an object")

    if errors:
        raise validation_error(errors, "Payment validation failed")


class PaymentService:
    """Payment processing facade over the PayDPI gateway client.

    Keeps a local ``PaymentRecord`` per gateway payment and mirrors gateway
    progress onto the matching order's ``payment_status``.
    """

    def __init__(self, session_factory, gateway):
        self.session_factory = session_factory
        self.gateway = gateway

    def process_payment(self, user, data):
        validate_payment_request(data)
        session = self.session_factory()
        self._check_order(session, user, data)
        currency = data.get("currency") or "LKR"
        profile = user.get("profile") or {}

        request = {
            "orderId": data["orderId"],
            "amount": data["amount"],
            "currency": currency,
            "description": data.get("description") or f"School meal order {data['orderId']}",
            "customerInfo": {
                "name": data.get("customerName") or profile.get("name") or "Customer",
                "email": data.get("customerEmail") or profile.get("email"),
                "phone": data.get("customerPhone"),
                "sludiId": user["id"],
            },
            "expiryMinutes": data.get("expiryMinutes") or 60,
            "paymentMethods": data.get("paymentMethods"),
            "metadata": {
                "serviceType": "school_meal_payment",
                "source": "nutriconnect_order_service",
                **(data.get("metadata") or {}),
            },
        }

        try:
            result = self.gateway.initiate_payment(request)
        except PayDPIError as e:
            logger.warning("Payment initiation failed for order %s: %s", data["orderId"], e.message)
            raise gateway_error(e)

        record = PaymentRecord(
            id=result["paymentId"],
            order_id=data["orderId"],
            student_id=user["id"],
            amount=data["amount"],
            currency=currency,
            fees=result["fees"],
            status=result["status"],
            redirect_url=result["redirectUrl"],
            expires_at=result["expiresAt"],
        )
        session.add(record)
        self._sync_order(session, record)
        session.commit()
        logger.info("Payment %s opened for order %s", record.id, record.order_id)

        return {
            "success": True,
            "paymentId": result["paymentId"],
            "status": result["status"],
            "amount": data["amount"],
            "currency": currency,
            "redirectUrl": result["redirectUrl"],
            "qrCode": result["qrCode"],
            "deepLink": result["deepLink"],
            "expiresAt": result["expiresAt"],
            "fees": result["fees"],
            "paymentMethods": request["paymentMethods"] or list(DEFAULT_METHODS),
        }

    @staticmethod
    def _check_order(session, user, data):
        order = session.get(Order, data["orderId"])
        if order is None:
            return
        if order.student_id != user["id"]:
            raise not_found("Order not found", "order_not_found")
        if round(data["amount"], 2) != round(order.final_amount, 2):
            raise validation_error(
                [f"Amount must match the order total of {order.final_amount:.2f}"],
                "Payment validation failed",
            )

    def _get_record(self, session, payment_id, user):
        record = session.get(PaymentRecord, payment_id)
        if record is None or (record.student_id != user["id"] and user["role"] not in STAFF_ROLES):
            raise ServiceError("Payment not found", 404, "payment_not_found")
        return record

    @staticmethod
    def _sync_order(session, record):
        order = session.get(Order, record.order_id)
        if order is None or order.student_id != record.student_id:
            return
        order.payment_id = record.id
        order.payment_status = ORDER_PAYMENT_STATUS.get(record.status, order.payment_status)

    def get_payment_status(self, payment_id, user):
        session = self.session_factory()
        record = self._get_record(session, payment_id, user)

        try:
            status = self.gateway.get_payment_status(payment_id)
        except PayDPIError as e:
            raise gateway_error(e)

        # a webhook may already have settled the record ahead of the simulator
        if record.status not in FINAL_STATUSES and status["status"] != record.status:
            logger.info("Payment %s moved %s -> %s", payment_id, record.status, status["status"])
            record.status = status["status"]
            record.payment_method = status.get("paymentMethod")
            record.transaction_id = status.get("transactionId")
            record.completed_at = status.get("completedAt")
            self._sync_order(session, record)
            session.commit()

        return status

    def get_payment_history(self, user, limit=20, offset=0):
        session = self.session_factory()
        query = session.query(PaymentRecord).filter(PaymentRecord.student_id == user["id"])
        total = query.count()
        records = (
            query.order_by(PaymentRecord.created_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return {
            "success": True,
            "payments": [r.to_dict() for r in records],
            "pagination": {"total": total, "limit": limit, "offset": offset},
        }

    def cancel_payment(self, payment_id, user, reason=None):
        session = self.session_factory()
        record = self._get_record(session, payment_id, user)
        try:
            result = self.gateway.cancel_payment(payment_id, reason or "Customer requested cancellation")
        except PayDPIError as e:
            raise gateway_error(e)

        record.status = "CANCELLED"
        self._sync_order(session, record)
        session.commit()
        return result

    def initiate_refund(self, payment_id, user, data):
        session = self.session_factory()
        record = self._get_record(session, payment_id, user)
        amount = data.get("amount", record.amount)
        if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount <= 0:
            raise validation_error(["Valid refund amount is required"], "Refund validation failed")
        for field in ("reason", "refundType"):
            if data.get(field) is not None and not isinstance(data[field], str):
                raise validation_error([f"{field} must be a string"], "Refund validation failed")

        try:
            result = self.gateway.initiate_refund({
                "paymentId": payment_id,
                "amount": amount,
                "reason": data.get("reason") or "Order cancelled",
                "metadata": {
                    "source": "nutriconnect_order_service",
                    "refundType": data.get("refundType") or "customer_request",
                },
            })
        except PayDPIError as e:
            logger.warning("Refund refused for payment %s: %s", payment_id, e.message)
            raise gateway_error(e)

        session.add(RefundRecord(
            id=result["refundId"],
            payment_id=payment_id,
            amount=amount,
            reason=data.get("reason") or "Order cancelled",
            status=result["status"],
        ))
        session.commit()
        return result

    def get_refund_status(self, refund_id, user):
        session = self.session_factory()
        refund = session.get(RefundRecord, refund_id)
        if refund is None:
            raise ServiceError("Refund not found", 404, "refund_not_found")
        self._get_record(session, refund.payment_id, user)

        try:
            status = self.gateway.get_refund_status(refund_id)
        except PayDPIError as e:
            raise gateway_error(e)

        if status["status"] != refund.status:
            refund.status = status["status"]
            refund.completed_at = status.get("completedAt")
            if refund.status == "COMPLETED":
                self._mark_order_refunded(session, refund.payment)
            session.commit()
        return status

    def get_merchant_balance(self):
        return self.gateway.get_merchant_balance()

    def get_transaction_history(self, limit=20, offset=0):
        return self.gateway.get_transaction_history(limit=limit, offset=offset)

    def get_available_payment_methods(self):
        return self.gateway.get_available_payment_methods()

    # webhooks

    def verify_webhook(self, payload, signature, timestamp):
        if not self.gateway.verify_webhook_signature(payload, signature, timestamp):
            logger.warning("Rejected PayDPI webhook with bad signature")
            raise ServiceError("Invalid webhook signature", 400, "invalid_signature")

    def process_webhook(self, event):
        name = event.get("event")
        data = event.get("data") or {}
        handlers = {
            "payment.completed": self._handle_payment_completed,
            "payment.failed": self._handle_payment_failed,
            "payment.cancelled": self._handle_payment_cancelled,
            "refund.completed": self._handle_refund_completed,
            "refund.failed": self._handle_refund_failed,
        }
        handler = handlers.get(name)
        if handler is None:
            logger.warning("Unknown PayDPI webhook event: %s", name)
            return {"success": True, "processed": False, "event": name}

        logger.info("Processing PayDPI webhook %s", name)
        session = self.session_factory()
        handler(session, data)
        session.commit()
        return {"success": True, "processed": True, "event": name}

    def _webhook_record(self, session, data):
        record = session.get(PaymentRecord, data.get("paymentId"))
        if record is None:
            logger.warning("Webhook for unknown payment %s", data.get("paymentId"))
        return record

    def _handle_payment_completed(self, session, data):
        record = self._webhook_record(session, data)
        if record is None:
            return
        record.status = "COMPLETED"
        record.payment_method = data.get("paymentMethod", record.payment_method)
        record.transaction_id = data.get("transactionId", record.transaction_id)
        record.completed_at = data.get("completedAt", record.completed_at)
        self._sync_order(session, record)

    def _handle_payment_failed(self, session, data):
        record = self._webhook_record(session, data)
        if record is None:
            return
        record.status = "FAILED"
        self._sync_order(session, record)
        logger.info("Payment %s failed: %s", record.id, data.get("failureReason"))

    def _handle_payment_cancelled(self, session, data):
        record = self._webhook_record(session, data)
        if record is None:
            return
        record.status = "CANCELLED"
        self._sync_order(session, record)

    def _handle_refund_completed(self, session, data):
        refund = session.get(RefundRecord, data.get("refundId"))
        if refund is None:
            logger.warning("Webhook for unknown refund %s", data.get("refundId"))
            return
        refund.status = "COMPLETED"
        refund.completed_at = data.get("completedAt", refund.completed_at)
        self._mark_order_refunded(session, refund.payment)

    def _handle_refund_failed(self, session, data):
        refund = session.get(RefundRecord, data.get("refundId"))
        if refund is not None:
            refund.status = "FAILED"
        logger.error("Refund %s failed, manual review required", data.get("refundId"))

    @staticmethod
    def _mark_order_refunded(session, record):
        order = session.get(Order, record.order_id)
        if order is not None:
            order.payment_status = "REFUNDED"
