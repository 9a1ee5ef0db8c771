import logging
import secrets
import string
from datetime import date

from flask import current_app

from models import db
from models.booking import Booking, BookingStatusUpdate, PENDING, UNPAID
from services import repository
from services.availability import bike_accepts_bookings, get_bike, normalize_window
from services.errors import Conflict, Forbidden, ValidationError
from services.pricing import price
from services.query import parse_query
from utils.audit import log_event
from utils.auth_context import ROLE_ADMIN, ROLE_CUSTOMER, ROLE_VENDOR

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_booking_code():
    return "B-" + "".join(secrets.choice(_CODE_ALPHABET) for _ in range(8))


def create_booking(actor, bike_id, start_date, end_date, notes=None, customer_id=None, today=None) -> Booking:
    if actor.role == ROLE_CUSTOMER:
        customer_id = actor.id
    elif actor.role == ROLE_ADMIN:
        if not customer_id:
            raise ValidationError("customer_id required when booking on behalf of a customer",
                                  "customer_id is required")
    else:
        raise Forbidden(f"{actor.role} {actor.id} may not create bookings", "Only customers can book bikes")

    if not bike_id:
        raise ValidationError("bike_id missing", "bike_id, start_date, end_date are required")
    start, end = normalize_window(start_date, end_date)
    today = today or date.today()
    if start < today:
        raise ValidationError(f"start_date {start} is in the past", "Start date cannot be in the past")

    bike = get_bike(bike_id)
    if bike.vendor_id == customer_id:
        raise Forbidden(f"Vendor {customer_id} tried to book own bike {bike.id}", "You cannot book your own bike")
    if not bike_accepts_bookings(bike):
        raise Conflict(f"Bike {bike.id} is {bike.availability_status}", "Bike is not available")

    quote = price(bike.daily_rate, start, end, tax_rate=current_app.config.get("TAX_RATE"))

    # serialise with other writers for this bike, then re-check inside the same transaction
    repository.lock_bike(bike)
    clashes = repository.overlapping(bike.id, start, end)
    if clashes:
        db.session.rollback()
        log_event("BOOKING_FAIL_CONFLICT", user_id=actor.id, entity="bike", entity_id=bike.id,
                  metadata={"start_date": start, "end_date": end, "conflicts": [b.id for b in clashes]})
        raise Conflict(f"Bike {bike.id} already booked for {start}..{end}", "Dates unavailable")

    booking = Booking(
        booking_code=generate_booking_code(),
        customer_id=customer_id,
        bike_id=bike.id,
        vendor_id=bike.vendor_id,
        start_date=start,
        end_date=end,
        duration_days=quote.duration_days,
        daily_rate=bike.daily_rate,
        base_amount=quote.base_amount,
        tax_amount=quote.tax_amount,
        security_deposit=bike.security_deposit,
        total_amount=quote.total_amount,
        currency=current_app.config.get("CURRENCY", "INR"),
        status=PENDING,
        payment_status=UNPAID,
        notes=(notes or "").strip()[:500] or None,
    )
    trail = BookingStatusUpdate(status=PENDING, actor_id=actor.id, actor_role=actor.role)
    repository.insert(booking, trail)

    logger.info("Booking %s created for bike %s (%s..%s)", booking.id, bike.id, start, end)
    log_event("BOOKING_CREATE", user_id=actor.id, entity="booking", entity_id=booking.id,
              metadata={"bike_id": bike.id, "total_amount": booking.total_amount})
    return booking


def can_view(booking, actor) -> bool:
    if actor.role == ROLE_ADMIN:
        return True
    if actor.role == ROLE_VENDOR:
        return booking.vendor_id == actor.id
    return booking.customer_id == actor.id


def get_booking(booking_id, actor) -> Booking:
    booking = repository.get(booking_id)
    if not can_view(booking, actor):
        raise Forbidden(f"{actor.role} {actor.id} may not view booking {booking_id}",
                        "Not authorized to view this booking")
    return booking


def list_bookings(actor, args) -> repository.Page:
    query = parse_query(
        args,
        default_limit=current_app.config.get("DEFAULT_PAGE_SIZE", 10),
        max_limit=current_app.config.get("MAX_PAGE_SIZE", 100),
    )
    if actor.role == ROLE_CUSTOMER:
        query.scoped("customer_id", actor.id)
    elif actor.role == ROLE_VENDOR:
        query.scoped("vendor_id", actor.id)
    elif actor.role != ROLE_ADMIN:
        raise Forbidden(f"{actor.role} may not list bookings")
    return repository.find_many(query)
