import logging

import requests

from . import config

logger = logging.getLogger(__name__)


class PaymentClientError(Exception):
    pass


class PaymentClient:
    """Order service side of the payment service API.

    Calls are made with the caller's bearer token so the payment service
    attributes the payment to the same student.
    """

    def __init__(self, base_url=None, timeout=None):
        self.base_url = (base_url if base_url is not None else config.PAYMENT_SERVICE_URL) or None
        self.timeout = timeout or config.PAYMENT_TIMEOUT

    @property
    def enabled(self):
        return bool(self.base_url)

    def _post(self, path, token, payload):
        url = f"{self.base_url.rstrip('/')}{path}"
        try:
            response = requests.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise PaymentClientError(f"payment service unreachable: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400 or not body.get("success"):
            raise PaymentClientError(
                f"payment service returned {response.status_code}: {body.get('message', 'no message')}"
            )
        return body

    def initiate_payment(self, token, order, customer_name=None):
        return self._post("/api/payments/process", token, {
            "orderId": order.id,
            "amount": order.final_amount,
            "currency": "LKR",
            "description": f"School meal order {order.id}",
            "customerName": customer_name,
        })

    def initiate_refund(self, token, order, reason=None):
        return self._post(f"/api/payments/refund/{order.payment_id}", token, {
            "amount": order.final_amount,
            "reason": reason or "Order cancelled",
        })
