from datetime import datetime
from models.db import db

# status values
PENDING = "pending"
CONFIRMED = "confirmed"
COMPLETED = "completed"
CANCELLED = "cancelled"
REJECTED = "rejected"

BOOKING_STATUSES = (PENDING, CONFIRMED, COMPLETED, CANCELLED, REJECTED)
TERMINAL_STATUSES = (COMPLETED, CANCELLED, REJECTED)

# bookings in these states no longer hold their date window
RELEASED_STATUSES = (CANCELLED, REJECTED)

# payment_status values
UNPAID = "unpaid"
PAID = "paid"
REFUNDED = "refunded"


def _iso(value):
    return value.isoformat() if value else None


class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.Integer, primary_key=True)
    booking_code = db.Column(db.String(16), unique=True, nullable=False)

    customer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    bike_id = db.Column(db.Integer, db.ForeignKey("bikes.id"), nullable=False, index=True)
    # copied from the bike at creation so vendor listings skip the join
    vendor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    start_date = db.Column(db.Date, nullable=False, index=True)
    end_date = db.Column(db.Date, nullable=False, index=True)
    duration_days = db.Column(db.Integer, nullable=False)

    daily_rate = db.Column(db.Numeric(12, 2), nullable=False)
    base_amount = db.Column(db.Numeric(12, 2), nullable=False)
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False)
    security_deposit = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(10), nullable=False, default="INR")

    status = db.Column(db.String(20), nullable=False, default=PENDING, index=True)
    notes = db.Column(db.String(500), nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)

    # payment sub-record, written in the same row update as the status change
    payment_status = db.Column(db.String(20), nullable=False, default=UNPAID)
    payment_order_ref = db.Column(db.String(255), nullable=True, index=True)
    payment_transaction_id = db.Column(db.String(255), nullable=True, unique=True)
    payment_method = db.Column(db.String(40), nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    refund_ref = db.Column(db.String(255), nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    status_updates = db.relationship(
        "BookingStatusUpdate",
        backref="booking",
        order_by="BookingStatusUpdate.id",
        lazy=True,
    )

    __table_args__ = (
        db.CheckConstraint("end_date > start_date", name="ck_booking_dates_ordered"),
    )

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def payment_dict(self):
        if self.payment_status == UNPAID and not self.payment_order_ref:
            return None
        return {
            "status": self.payment_status,
            "order_ref": self.payment_order_ref,
            "transaction_id": self.payment_transaction_id,
            "method": self.payment_method,
            "paid_at": _iso(self.paid_at),
            "refund_ref": self.refund_ref,
            "refunded_at": _iso(self.refunded_at),
        }

    def to_dict(self, include_history=False):
        out = {
            "id": self.id,
            "booking_code": self.booking_code,
            "customer_id": self.customer_id,
            "bike_id": self.bike_id,
            "vendor_id": self.vendor_id,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "duration_days": self.duration_days,
            "daily_rate": str(self.daily_rate),
            "base_amount": str(self.base_amount),
            "tax_amount": str(self.tax_amount),
            "security_deposit": str(self.security_deposit),
            "total_amount": str(self.total_amount),
            "currency": self.currency,
            "status": self.status,
            "notes": self.notes,
            "cancellation_reason": self.cancellation_reason,
            "payment_status": self.payment_status,
            "payment": self.payment_dict(),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_history:
            out["status_updates"] = [u.to_dict() for u in self.status_updates]
        return out


class BookingStatusUpdate(db.Model):
    __tablename__ = "booking_status_updates"

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.id"), nullable=False, index=True)

    status = db.Column(db.String(20), nullable=False)
    actor_id = db.Column(db.Integer, nullable=True)  # null for the payment system actor
    actor_role = db.Column(db.String(20), nullable=False)
    note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            "status": self.status,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "note": self.note,
            "timestamp": _iso(self.created_at),
        }
