from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Float, Date, DateTime, Boolean, JSON, ForeignKey, Index, Text, text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

ORDER_STATUSES = ("PENDING", "CONFIRMED", "PREPARING", "READY", "DELIVERED", "CANCELLED")
STAFF_STATUSES = ("CONFIRMED", "PREPARING", "READY", "DELIVERED")
CANCELLABLE_STATUSES = ("PENDING", "CONFIRMED")


def utcnow():
    return datetime.now(timezone.utc)


def isoformat(value):
    return value.isoformat() if value is not None else None


class Meal(Base):
    __tablename__ = "meals"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    price = Column(Float, nullable=False)
    subsidy_amount = Column(Float, default=0.0)
    nutrition_score = Column(Integer)
    available = Column(Boolean, default=True)
    max_quantity_per_day = Column(Integer, default=0)
    current_quantity = Column(Integer, default=0)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "subsidyAmount": self.subsidy_amount,
            "nutritionScore": self.nutrition_score,
            "available": self.available,
            "maxQuantityPerDay": self.max_quantity_per_day,
            "currentQuantity": self.current_quantity,
        }


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        # one live order per student per day
        Index(
            "uq_orders_student_day_active",
            "student_id", "scheduled_date",
            unique=True,
            sqlite_where=text("status != 'CANCELLED'"),
            postgresql_where=text("status != 'CANCELLED'"),
        ),
    )

    id = Column(String, primary_key=True)
    student_id = Column(String, nullable=False, index=True)
    meal_id = Column(String, ForeignKey("meals.id"), nullable=False)
    school_id = Column(String)
    scheduled_date = Column(Date, nullable=False)
    quantity = Column(Integer, default=1)
    total_amount = Column(Float, nullable=False)
    subsidy_amount = Column(Float, default=0.0)
    final_amount = Column(Float, nullable=False)
    status = Column(String, default="PENDING")  # see ORDER_STATUSES
    payment_status = Column(String, default="PENDING")
    payment_id = Column(String)
    dietary_restrictions = Column(JSON, default=list)
    special_instructions = Column(Text)
    pickup_time = Column(String)
    # "metadata" is reserved on declarative classes
    extra = Column("metadata", JSON, default=dict)
    order_date = Column(DateTime(timezone=True), default=utcnow)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    cancelled_at = Column(DateTime(timezone=True))
    cancellation_reason = Column(Text)
    updated_by = Column(String)
    staff_notes = Column(Text)

    status_history = relationship(
        "OrderStatusChange",
        order_by="OrderStatusChange.id",
        back_populates="order",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "studentId": self.student_id,
            "mealId": self.meal_id,
            "schoolId": self.school_id,
            "scheduledDate": isoformat(self.scheduled_date),
            "quantity": self.quantity,
            "totalAmount": self.total_amount,
            "subsidyAmount": self.subsidy_amount,
            "finalAmount": self.final_amount,
            "status": self.status,
            "paymentStatus": self.payment_status,
            "paymentId": self.payment_id,
            "dietaryRestrictions": self.dietary_restrictions or [],
            "specialInstructions": self.special_instructions,
            "pickupTime": self.pickup_time,
            "metadata": self.extra or {},
            "statusHistory": [change.to_dict() for change in self.status_history],
            "orderDate": isoformat(self.order_date),
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
            "cancelledAt": isoformat(self.cancelled_at),
            "cancellationReason": self.cancellation_reason,
            "updatedBy": self.updated_by,
            "staffNotes": self.staff_notes,
        }


class OrderStatusChange(Base):
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    status = Column(String, nullable=False)
    staff_id = Column(String)
    notes = Column(Text)
    timestamp = Column(DateTime(timezone=True), default=utcnow)

    order = relationship("Order", back_populates="status_history")

    def to_dict(self):
        return {
            "status": self.status,
            "timestamp": isoformat(self.timestamp),
            "staffId": self.staff_id,
            "notes": self.notes,
        }


class PaymentRecord(Base):
    """Payment service ledger entry mirroring a PayDPI payment."""

    __tablename__ = "payments"

    id = Column(String, primary_key=True)  # PayDPI payment id
    order_id = Column(String, nullable=False, index=True)
    student_id = Column(String, nullable=False, index=True)
    amount = Column(Float, nullable=False)
    currency = Column(String, default="LKR")
    fees = Column(Float, default=0.0)
    status = Column(String, default="INITIATED")
    payment_method = Column(String)
    transaction_id = Column(String)
    redirect_url = Column(String)
    expires_at = Column(String)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    completed_at = Column(String)

    refunds = relationship("RefundRecord", back_populates="payment", order_by="RefundRecord.created_at")

    def to_dict(self):
        return {
            "paymentId": self.id,
            "orderId": self.order_id,
            "studentId": self.student_id,
            "amount": self.amount,
            "currency": self.currency,
            "fees": self.fees,
            "status": self.status,
            "paymentMethod": self.payment_method,
            "transactionId": self.transaction_id,
            "redirectUrl": self.redirect_url,
            "expiresAt": self.expires_at,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
            "completedAt": self.completed_at,
            "refunds": [refund.to_dict() for refund in self.refunds],
        }


class RefundRecord(Base):
    __tablename__ = "refunds"

    id = Column(String, primary_key=True)  # PayDPI refund id
    payment_id = Column(String, ForeignKey("payments.id"), nullable=False)
    amount = Column(Float, nullable=False)
    reason = Column(Text)
    status = Column(String, default="INITIATED")
    created_at = Column(DateTime(timezone=True), default=utcnow)
    completed_at = Column(String)

    payment = relationship("PaymentRecord", back_populates="refunds")

    def to_dict(self):
        return {
            "refundId": self.id,
            "paymentId": self.payment_id,
            "amount": self.amount,
            "reason": self.reason,
            "status": self.status,
            "createdAt": isoformat(self.created_at),
            "completedAt": self.completed_at,
        }
