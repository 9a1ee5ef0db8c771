from flask import Blueprint, request, jsonify, g

from services import reconciliation
from services.errors import ValidationError
from services.reconciliation import PaymentConfirmation
from utils.auth_context import login_required

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")


def _booking_id(data):
    try:
        return int(data.get("booking_id"))
    except (TypeError, ValueError):
        raise ValidationError(f"booking_id={data.get('booking_id')!r}", "booking_id required")


# ---------- CUSTOMERS: open a gateway order for a pending booking ----------
@payments_bp.post("/order")
@login_required
def create_order():
    data = request.get_json(silent=True) or {}
    booking_id = _booking_id(data)

    order_ref = reconciliation.start_payment(booking_id, g.actor)
    return jsonify(booking_id=booking_id, order_ref=order_ref), 201


# ---------- CUSTOMERS: client-side confirmation after checkout ----------
@payments_bp.post("/verify")
@login_required
def verify_payment():
    data = request.get_json(silent=True) or {}
    booking_id = _booking_id(data)
    order_ref = (data.get("order_ref") or "").strip()
    payment_ref = (data.get("payment_ref") or "").strip()
    signature = (data.get("signature") or "").strip()
    if not order_ref or not payment_ref or not signature:
        return jsonify(error="order_ref, payment_ref, signature are required"), 400

    booking = reconciliation.reconcile(
        booking_id,
        PaymentConfirmation(order_ref=order_ref, payment_ref=payment_ref, signature=signature),
    )
    return jsonify(message="Payment verified", booking=booking.to_dict()), 200


# ---------- ADMIN: refund a released booking ----------
@payments_bp.post("/<int:booking_id>/refund")
@login_required
def refund(booking_id: int):
    booking = reconciliation.refund_payment(booking_id, g.actor)
    return jsonify(message="Refund issued", payment=booking.payment_dict()), 200
