"""
In-process PayDPI gateway simulator.

No HTTP calls are made. Payments and refunds live in dicts and move through
their lifecycle purely from wall-clock time elapsed since initiation, checked
whenever their status is polled:

    payment: INITIATED -> PROCESSING (>30s) -> COMPLETED (>60s)
             INITIATED -> EXPIRED once past expiresAt
             INITIATED/PROCESSING -> CANCELLED on request
    refund:  INITIATED -> PROCESSING (>5s) -> COMPLETED (>30s)
"""
import hashlib
import hmac
import logging
import random
import string
from datetime import datetime, timedelta, timezone

from . import config

logger = logging.getLogger(__name__)

FEE_RATES = {
    "CREDIT_CARD": 0.025,
    "DEBIT_CARD": 0.025,
    "BANK_TRANSFER": 0.01,
    "DIGITAL_WALLET": 0.015,
    "QR_CODE": 0.015,
}
DEFAULT_METHODS = ["CREDIT_CARD", "DEBIT_CARD", "DIGITAL_WALLET"]

PAYMENT_PROCESSING_AFTER = timedelta(seconds=30)
PAYMENT_COMPLETED_AFTER = timedelta(seconds=60)
REFUND_PROCESSING_AFTER = timedelta(seconds=5)
REFUND_COMPLETED_AFTER = timedelta(seconds=30)

BASE_BALANCE = 125000.00
PENDING_BALANCE = 15000.00


class PayDPIError(Exception):
    def __init__(self, code, message, details=None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or []


def _iso(value):
    return value.isoformat()


class PayDPIClient:
    def __init__(self, merchant_id=None, webhook_secret=None, base_url=None, clock=None):
        self.merchant_id = merchant_id or config.PAYDPI_MERCHANT_ID
        self.webhook_secret = webhook_secret or config.PAYDPI_WEBHOOK_SECRET
        self.base_url = (base_url or config.PAYDPI_BASE_URL).rstrip("/")
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.payments = {}
        self.refunds = {}
        self.payment_counter = 5000
        self.refund_counter = 1000

    def reset(self):
        self.payments.clear()
        self.refunds.clear()
        self.payment_counter = 5000
        self.refund_counter = 1000

    # ids

    def generate_payment_id(self):
        self.payment_counter += 1
        return f"PAY_{self.clock():%Y%m%d}_{self.payment_counter}"

    def generate_refund_id(self):
        self.refund_counter += 1
        return f"REF_{self.clock():%Y%m%d}_{self.refund_counter}"

    @staticmethod
    def generate_transaction_id():
        return "TXN_" + "".join(random.choices(string.ascii_uppercase + string.digits, k=9))

    @staticmethod
    def calculate_fees(amount, payment_methods=None):
        primary = (payment_methods or ["CREDIT_CARD"])[0]
        rate = FEE_RATES.get(primary, 0.025)
        return round(amount * rate, 2)

    # payments

    def initiate_payment(self, payment_data):
        logger.info("Initiating payment for order %s", payment_data.get("orderId"))

        for field in ("orderId", "amount", "currency", "description"):
            if not payment_data.get(field):
                raise PayDPIError(
                    "VALIDATION_ERROR",
                    f"Missing required field: {field}",
                    [{"field": field, "message": f"{field} is required"}],
                )
        if payment_data["amount"] <= 0:
            raise PayDPIError(
                "VALIDATION_ERROR",
                "Invalid amount",
                [{"field": "amount", "message": "Amount must be greater than 0"}],
            )

        now = self.clock()
        payment_id = self.generate_payment_id()
        methods = payment_data.get("paymentMethods") or list(DEFAULT_METHODS)
        fees = self.calculate_fees(payment_data["amount"], methods)
        expires_at = now + timedelta(minutes=payment_data.get("expiryMinutes") or 60)

        payment = {
            "paymentId": payment_id,
            "merchantId": self.merchant_id,
            "orderId": payment_data["orderId"],
            "amount": payment_data["amount"],
            "currency": payment_data["currency"],
            "description": payment_data["description"],
            "customerInfo": payment_data.get("customerInfo") or {},
            "metadata": payment_data.get("metadata") or {},
            "status": "INITIATED",
            "fees": fees,
            "initiatedAt": now,
            "expiresAt": expires_at,
            "paymentMethods": methods,
        }
        self.payments[payment_id] = payment

        return {
            "success": True,
            "paymentId": payment_id,
            "status": "INITIATED",
            "redirectUrl": f"{self.base_url}/payment/{payment_id}",
            "qrCode": f"{self.base_url}/qr/{payment_id}",
            "deepLink": f"paydpi://payment/{payment_id}",
            "expiresAt": _iso(expires_at),
            "fees": fees,
        }

    def _get_payment(self, payment_id, message="Payment not found"):
        payment = self.payments.get(payment_id)
        if payment is None:
            raise PayDPIError("NOT_FOUND", message)
        return payment

    def _advance_payment(self, payment):
        now = self.clock()
        if payment["status"] == "INITIATED" and now > payment["expiresAt"]:
            payment["status"] = "EXPIRED"
            return

        elapsed = now - payment["initiatedAt"]
        if payment["status"] == "INITIATED" and elapsed > PAYMENT_PROCESSING_AFTER:
            payment["status"] = "PROCESSING"
        if payment["status"] == "PROCESSING" and elapsed > PAYMENT_COMPLETED_AFTER:
            method = random.choice(list(FEE_RATES))
            payment["status"] = "COMPLETED"
            payment["paymentMethod"] = method
            payment["transactionId"] = self.generate_transaction_id()
            payment["completedAt"] = now
            if "CARD" in method:
                payment["cardLast4"] = str(random.randint(1000, 9999))

    def get_payment_status(self, payment_id):
        payment = self._get_payment(payment_id)
        self._advance_payment(payment)

        response = {
            "success": True,
            "paymentId": payment["paymentId"],
            "orderId": payment["orderId"],
            "status": payment["status"],
            "amount": payment["amount"],
            "currency": payment["currency"],
            "initiatedAt": _iso(payment["initiatedAt"]),
            "fees": payment["fees"],
        }
        if payment["status"] == "COMPLETED":
            response["paymentMethod"] = payment["paymentMethod"]
            response["transactionId"] = payment["transactionId"]
            response["completedAt"] = _iso(payment["completedAt"])
            if "cardLast4" in payment:
                response["cardLast4"] = payment["cardLast4"]
        if payment["status"] in ("INITIATED", "PROCESSING"):
            response["expiresAt"] = _iso(payment["expiresAt"])

        logger.debug("Payment %s status %s", payment_id, payment["status"])
        return response

    def cancel_payment(self, payment_id, reason="Customer requested cancellation"):
        payment = self._get_payment(payment_id)
        previous = payment["status"]
        if previous not in ("INITIATED", "PROCESSING"):
            raise PayDPIError("INVALID_STATE", f"Cannot cancel payment in {previous} status")

        now = self.clock()
        payment["status"] = "CANCELLED"
        payment["cancelledAt"] = now
        payment["cancellationReason"] = reason
        logger.info("Payment %s cancelled: %s", payment_id, reason)

        return {
            "success": True,
            "paymentId": payment_id,
            "status": "CANCELLED",
            "cancelledAt": _iso(now),
            "refundAmount": payment["amount"] if previous == "PROCESSING" else 0,
        }

    # refunds

    def initiate_refund(self, refund_data):
        for field in ("paymentId", "amount", "reason"):
            if not refund_data.get(field):
                raise PayDPIError("VALIDATION_ERROR", f"Missing required field: {field}")

        original = self._get_payment(refund_data["paymentId"], "Original payment not found")
        if original["status"] != "COMPLETED":
            raise PayDPIError("INVALID_STATE", "Can only refund completed payments")
        if refund_data["amount"] > original["amount"]:
            raise PayDPIError("INVALID_AMOUNT", "Refund amount cannot exceed original payment amount")

        now = self.clock()
        refund_id = self.generate_refund_id()
        refund = {
            "refundId": refund_id,
            "paymentId": refund_data["paymentId"],
            "amount": refund_data["amount"],
            "reason": refund_data["reason"],
            "status": "INITIATED",
            "metadata": refund_data.get("metadata") or {},
            "initiatedAt": now,
            "estimatedCompletion": now + timedelta(hours=24),
        }
        self.refunds[refund_id] = refund
        logger.info("Refund %s initiated for payment %s", refund_id, refund["paymentId"])

        return {
            "success": True,
            "refundId": refund_id,
            "status": "INITIATED",
            "amount": refund["amount"],
            "estimatedCompletion": _iso(refund["estimatedCompletion"]),
        }

    def get_refund_status(self, refund_id):
        refund = self.refunds.get(refund_id)
        if refund is None:
            raise PayDPIError("NOT_FOUND", "Refund not found")

        now = self.clock()
        elapsed = now - refund["initiatedAt"]
        if refund["status"] == "INITIATED" and elapsed > REFUND_PROCESSING_AFTER:
            refund["status"] = "PROCESSING"
        if refund["status"] == "PROCESSING" and elapsed > REFUND_COMPLETED_AFTER:
            refund["status"] = "COMPLETED"
            refund["completedAt"] = now

        response = {
            "success": True,
            "refundId": refund_id,
            "paymentId": refund["paymentId"],
            "status": refund["status"],
            "amount": refund["amount"],
            "initiatedAt": _iso(refund["initiatedAt"]),
        }
        if "completedAt" in refund:
            response["completedAt"] = _iso(refund["completedAt"])
        return response

    # merchant

    def get_merchant_balance(self):
        completed = [p for p in self.payments.values() if p["status"] == "COMPLETED"]
        net = sum(p["amount"] - p["fees"] for p in completed)
        return {
            "success": True,
            "availableBalance": round(BASE_BALANCE + net, 2),
            "pendingBalance": PENDING_BALANCE,
            "currency": "LKR",
            "lastUpdated": _iso(self.clock()),
        }

    def get_transaction_history(self, limit=20, offset=0):
        transactions = []
        for payment in self.payments.values():
            if payment["status"] != "COMPLETED":
                continue
            transactions.append({
                "paymentId": payment["paymentId"],
                "orderId": payment["orderId"],
                "type": "PAYMENT",
                "status": payment["status"],
                "amount": payment["amount"],
                "fees": payment["fees"],
                "netAmount": round(payment["amount"] - payment["fees"], 2),
                "currency": payment["currency"],
                "paymentMethod": payment.get("paymentMethod", "CREDIT_CARD"),
                "customerName": payment["customerInfo"].get("name") or "Customer",
                "description": payment["description"],
                "createdAt": payment["initiatedAt"],
                "settledAt": payment.get("completedAt"),
            })
        for refund in self.refunds.values():
            if refund["status"] != "COMPLETED":
                continue
            transactions.append({
                "paymentId": refund["refundId"],
                "orderId": refund["paymentId"],
                "type": "REFUND",
                "status": refund["status"],
                "amount": -refund["amount"],
                "fees": 0,
                "netAmount": -refund["amount"],
                "currency": "LKR",
                "paymentMethod": "REFUND",
                "customerName": "Refund Transaction",
                "description": refund["reason"],
                "createdAt": refund["initiatedAt"],
                "settledAt": refund.get("completedAt"),
            })

        transactions.sort(key=lambda t: t["createdAt"], reverse=True)
        total = len(transactions)
        page = transactions[offset:offset + limit]
        for t in page:
            t["createdAt"] = _iso(t["createdAt"])
            t["settledAt"] = _iso(t["settledAt"]) if t["settledAt"] else None

        return {
            "success": True,
            "transactions": page,
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "hasNext": offset + limit < total,
                "hasPrevious": offset > 0,
            },
        }

    # webhooks

    def sign_webhook(self, payload, timestamp):
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        message = str(timestamp).encode("utf-8") + b"." + payload
        digest = hmac.new(self.webhook_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
        return f"v1={digest}"

    def verify_webhook_signature(self, payload, signature, timestamp):
        if not signature or not timestamp:
            return False
        expected = self.sign_webhook(payload, timestamp)
        return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8"))

    @staticmethod
    def get_available_payment_methods():
        return [
            {"method": "CREDIT_CARD", "name": "Credit Card", "fee": "2.5%", "processingTime": "Instant"},
            {"method": "DEBIT_CARD", "name": "Debit Card", "fee": "2.5%", "processingTime": "Instant"},
            {"method": "DIGITAL_WALLET", "name": "Digital Wallet", "fee": "1.5%", "processingTime": "Instant"},
            {"method": "BANK_TRANSFER", "name": "Bank Transfer", "fee": "1.0%", "processingTime": "1-2 business days"},
            {"method": "QR_CODE", "name": "QR Code Payment", "fee": "1.5%", "processingTime": "Instant"},
        ]
