from flask import Blueprint, request, jsonify, g, current_app

from models import db
from models.bike import Bike, AVAILABLE, VENDOR_HELD_STATUSES
from models.booking import Booking
from security.rbac import require_roles, has_role, SUPERUSER_ROLE
from services import availability, repository
from services.bike_status import refresh_bike_status
from services.errors import Conflict, Forbidden, ValidationError
from services.pricing import price, to_money
from utils.audit import log_event
from utils.auth_context import login_required

bike_bp = Blueprint("bike", __name__, url_prefix="/bikes")

# statuses a vendor may set; Rented is derived from bookings
VENDOR_SETTABLE_STATUSES = (AVAILABLE,) + VENDOR_HELD_STATUSES


def _money(data, name, required=False):
    value = data.get(name)
    if value in (None, ""):
        if required:
            raise ValidationError(f"{name} missing", f"{name} is required")
        return None
    amount = to_money(value)
    if amount < 0:
        raise ValidationError(f"{name} negative", f"{name} must not be negative")
    return amount


def _owned_bike(bike_id):
    bike = availability.get_bike(bike_id)
    if bike.vendor_id != g.user.id and not has_role(SUPERUSER_ROLE):
        raise Forbidden(f"User {g.user.id} does not own bike {bike_id}", "Not allowed")
    return bike


# ---------- VENDORS: list a bike ----------
@bike_bp.post("")
@require_roles("VENDOR")
def create_bike():
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    if not name:
        return jsonify(error="Bike name required"), 400

    bike = Bike(
        vendor_id=g.user.id,
        name=name[:100],
        brand=(data.get("brand") or "").strip() or None,
        model=(data.get("model") or "").strip() or None,
        daily_rate=_money(data, "daily_rate", required=True),
        security_deposit=_money(data, "security_deposit") or 0,
    )
    db.session.add(bike)
    db.session.commit()

    log_event("BIKE_CREATE", user_id=g.user.id, entity="bike", entity_id=bike.id)
    return jsonify(bike.to_dict()), 201


@bike_bp.get("")
def list_bikes():
    vendor_id = request.args.get("vendor_id", type=int)
    status = (request.args.get("status") or "").strip()

    q = Bike.query.filter(Bike.is_active.is_(True))
    if vendor_id:
        q = q.filter(Bike.vendor_id == vendor_id)
    if status:
        q = q.filter(Bike.availability_status == status)

    rows = q.order_by(Bike.created_at.desc()).limit(200).all()
    return jsonify([b.to_dict() for b in rows]), 200


@bike_bp.get("/<int:bike_id>")
def get_bike(bike_id: int):
    return jsonify(availability.get_bike(bike_id).to_dict()), 200


@bike_bp.get("/<int:bike_id>/availability")
def check_availability(bike_id: int):
    start_date = request.args.get("start_date")
    end_date = request.args.get("end_date")
    if not start_date or not end_date:
        return jsonify(error="start_date and end_date are required"), 400

    available = availability.is_available(bike_id, start_date, end_date)
    bike = availability.get_bike(bike_id)
    quote = price(bike.daily_rate, start_date, end_date, tax_rate=current_app.config.get("TAX_RATE"))
    return jsonify(
        bike_id=bike_id,
        available=available,
        quote=quote.to_dict(),
        security_deposit=str(bike.security_deposit),
    ), 200


# ---------- VENDORS: rate / status changes ----------
@bike_bp.patch("/<int:bike_id>")
@login_required
def update_bike(bike_id: int):
    bike = _owned_bike(bike_id)
    data = request.get_json(silent=True) or {}

    rate = _money(data, "daily_rate")
    if rate is not None:
        bike.daily_rate = rate
    deposit = _money(data, "security_deposit")
    if deposit is not None:
        bike.security_deposit = deposit
    if "is_available" in data:
        bike.is_available = bool(data.get("is_available"))
    status = data.get("availability_status")
    if status:
        if status not in VENDOR_SETTABLE_STATUSES:
            return jsonify(error=f"availability_status must be one of {', '.join(VENDOR_SETTABLE_STATUSES)}"), 400
        bike.availability_status = status
    db.session.commit()

    if status == AVAILABLE:
        # back from maintenance: let the projection decide between Available and Rented
        refresh_bike_status(bike.id)

    log_event("BIKE_UPDATE", user_id=g.user.id, entity="bike", entity_id=bike.id,
              metadata={k: data[k] for k in ("daily_rate", "security_deposit", "is_available", "availability_status") if k in data})
    return jsonify(bike.to_dict()), 200


@bike_bp.delete("/<int:bike_id>")
@login_required
def delete_bike(bike_id: int):
    bike = _owned_bike(bike_id)
    if repository.has_active_bookings(bike.id):
        raise Conflict(f"Bike {bike.id} has active bookings", "Bike has active bookings")

    has_history = db.session.scalar(db.select(Booking.id).where(Booking.bike_id == bike.id).limit(1)) is not None
    if has_history:
        # past bookings still point at it
        bike.is_active = False
    else:
        db.session.delete(bike)
    db.session.commit()

    log_event("BIKE_DELETE", user_id=g.user.id, entity="bike", entity_id=bike_id,
              metadata={"soft": has_history})
    return jsonify(message="Bike deleted"), 200
