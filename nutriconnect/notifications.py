import logging

logger = logging.getLogger(__name__)


class NotificationService:
    """SMS/email/push integration point. Every notification is a log line for now."""

    def send_order_confirmation(self, student_id, order):
        logger.info("Order confirmation sent to student %s for order %s", student_id, order.id)

    def send_order_cancellation(self, student_id, order):
        logger.info("Order cancellation sent to student %s for order %s", student_id, order.id)

    def send_status_update(self, student_id, order):
        logger.info("Status update sent to student %s: %s", student_id, order.status)
