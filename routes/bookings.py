from flask import Blueprint, request, jsonify, g

from models.booking import CANCELLED
from services import bookings as booking_service
from services import lifecycle
from services.errors import ValidationError
from utils.auth_context import login_required

booking_bp = Blueprint("booking", __name__, url_prefix="/bookings")


def _int_field(data, name):
    value = data.get(name)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name}={value!r} is not an id", f"Invalid {name}")


# ---------- CUSTOMERS: book a bike (DOUBLE-BOOKING SAFE) ----------
@booking_bp.post("")
@login_required
def create_booking():
    data = request.get_json(silent=True) or {}
    bike_id = _int_field(data, "bike_id")
    start_date = data.get("start_date")
    end_date = data.get("end_date")
    if not bike_id or not start_date or not end_date:
        return jsonify(error="bike_id, start_date, end_date are required"), 400

    booking = booking_service.create_booking(
        g.actor,
        bike_id,
        start_date,
        end_date,
        notes=data.get("notes"),
        customer_id=_int_field(data, "customer_id"),
    )
    return jsonify(booking.to_dict()), 201


# ---------- EVERYONE: list bookings in scope ----------
@booking_bp.get("")
@login_required
def list_bookings():
    page = booking_service.list_bookings(g.actor, request.args)
    return jsonify(
        count=len(page.items),
        total=page.total,
        pagination=page.pagination(),
        data=[b.to_dict() for b in page.items],
    ), 200


@booking_bp.get("/<int:booking_id>")
@login_required
def get_booking(booking_id: int):
    booking = booking_service.get_booking(booking_id, g.actor)
    return jsonify(booking.to_dict(include_history=True)), 200


# ---------- CUSTOMER / VENDOR / ADMIN: move a booking ----------
@booking_bp.post("/<int:booking_id>/status")
@login_required
def update_booking_status(booking_id: int):
    data = request.get_json(silent=True) or {}
    status = (data.get("status") or "").strip().lower()
    reason = (data.get("reason") or "").strip() or None
    if not status:
        return jsonify(error="Please provide a valid status"), 400

    booking = lifecycle.transition(booking_id, status, g.actor, reason=reason)
    return jsonify(booking.to_dict(include_history=True)), 200


# ---------- CUSTOMERS: cancel booking (policy window) ----------
@booking_bp.post("/<int:booking_id>/cancel")
@login_required
def cancel_booking(booking_id: int):
    data = request.get_json(silent=True) or {}
    reason = (data.get("reason") or "").strip() or None

    booking = lifecycle.transition(booking_id, CANCELLED, g.actor, reason=reason)
    return jsonify(message="Cancelled", booking=booking.to_dict()), 200
