"""
Booking status state machine.

Who may move a booking where::

    customer (owner)   pending|confirmed -> cancelled   (cancellation cutoff applies)
    vendor (bike owner) pending -> confirmed | rejected
                       confirmed -> completed
    system (payments)  pending -> confirmed
    admin              any -> any

A target outside the actor's column is Forbidden; a permitted target from the
wrong current status is InvalidTransition. Writes go through
``repository.update_if_status`` so a concurrent transition makes the loser
fail with Conflict.
"""
import logging
from datetime import datetime, time

from flask import current_app

from models import db
from models.booking import (
    BookingStatusUpdate,
    BOOKING_STATUSES,
    PENDING,
    CONFIRMED,
    COMPLETED,
    CANCELLED,
    REJECTED,
    RELEASED_STATUSES,
    PAID,
)
from services import repository
from services.availability import get_bike
from services.bike_status import refresh_bike_status
from services.errors import (
    CancellationWindowClosed,
    Conflict,
    Forbidden,
    InvalidTransition,
    ValidationError,
)
from utils.audit import log_event
from utils.auth_context import ROLE_CUSTOMER, ROLE_VENDOR, ROLE_SYSTEM
from utils.emailer import notify_customer

logger = logging.getLogger(__name__)

# role -> {target status: allowed source statuses}
TRANSITIONS = {
    ROLE_CUSTOMER: {CANCELLED: (PENDING, CONFIRMED)},
    ROLE_VENDOR: {
        CONFIRMED: (PENDING,),
        REJECTED: (PENDING,),
        COMPLETED: (CONFIRMED,),
    },
    ROLE_SYSTEM: {CONFIRMED: (PENDING,)},
}

_STATUS_MESSAGES = {
    CONFIRMED: "Your booking {code} has been confirmed.",
    COMPLETED: "Your booking {code} is complete. Thank you for riding with us!",
    CANCELLED: "Your booking {code} has been cancelled.",
    REJECTED: "Your booking {code} was declined by the vendor.",
    PENDING: "Your booking {code} is pending again.",
}


def owns_booking(booking, actor) -> bool:
    if actor.role == ROLE_CUSTOMER:
        return booking.customer_id == actor.id
    if actor.role == ROLE_VENDOR:
        return booking.vendor_id == actor.id
    return actor.role == ROLE_SYSTEM or actor.is_admin


def cancellation_cutoff_hours():
    return current_app.config.get("CANCEL_CUTOFF_HOURS", 24)


def within_cancellation_window(booking, now=None, cutoff_hours=None) -> bool:
    cutoff_hours = cancellation_cutoff_hours() if cutoff_hours is None else cutoff_hours
    if not cutoff_hours:
        return True
    now = now or datetime.utcnow()
    starts_at = datetime.combine(booking.start_date, time.min)
    return (starts_at - now).total_seconds() >= cutoff_hours * 3600


def check_transition(booking, new_status, actor, now=None):
    if new_status not in BOOKING_STATUSES:
        raise ValidationError(f"Unknown status {new_status!r}", "Please provide a valid status")
    if new_status == booking.status:
        raise InvalidTransition(f"Booking {booking.id} is already {new_status}")
    if actor.is_admin:
        return

    allowed = TRANSITIONS.get(actor.role)
    if not allowed or not owns_booking(booking, actor):
        raise Forbidden(f"{actor.role} {actor.id} may not update booking {booking.id}")
    if new_status not in allowed:
        raise Forbidden(f"{actor.role} may not move a booking to {new_status}")
    if booking.status not in allowed[new_status]:
        raise InvalidTransition(f"Cannot move booking {booking.id} from {booking.status} to {new_status}")

    if actor.role == ROLE_CUSTOMER and new_status == CANCELLED:
        if not within_cancellation_window(booking, now):
            raise CancellationWindowClosed(
                f"Booking {booking.id} starts within {cancellation_cutoff_hours()} hours"
            )


def _revalidate_window(booking):
    """A released booking re-entering a blocking status must not overlap anything."""
    bike = get_bike(booking.bike_id)
    repository.lock_bike(bike)
    if repository.overlapping(bike.id, booking.start_date, booking.end_date, exclude_booking_id=booking.id):
        db.session.rollback()
        raise Conflict(f"Booking {booking.id} window is taken by another booking", "Dates unavailable")


def transition(booking_id, new_status, actor, reason=None, extra=None, now=None, notify=True):
    """
    Move a booking to ``new_status`` on behalf of ``actor``.

    ``extra`` is merged into the same row update (reconciliation uses it for
    the payment sub-record). Returns the refreshed booking.
    """
    booking = repository.get(booking_id)
    observed = booking.status
    check_transition(booking, new_status, actor, now)

    values = {"status": new_status}
    if new_status == CANCELLED and reason:
        values["cancellation_reason"] = reason[:255]
    if extra:
        values.update(extra)

    if observed in RELEASED_STATUSES and new_status not in RELEASED_STATUSES:
        _revalidate_window(booking)

    trail = BookingStatusUpdate(
        status=new_status,
        actor_id=actor.id,
        actor_role=actor.role,
        note=reason[:255] if reason else None,
    )
    updated = repository.update_if_status(booking_id, observed, values, trail)
    logger.info("Booking %s %s -> %s by %s %s", booking_id, observed, new_status, actor.role, actor.id)

    after_transition(updated, observed, actor, notify=notify)
    return updated


def after_transition(booking, previous_status, actor, notify=True):
    metadata = {"from": previous_status, "to": booking.status, "role": actor.role}
    if booking.status in RELEASED_STATUSES and booking.payment_status == PAID:
        metadata["refund_due"] = True
        logger.info("Booking %s released with a settled payment; refund due", booking.id)
    log_event("BOOKING_STATUS_CHANGE", user_id=actor.id, entity="booking", entity_id=booking.id, metadata=metadata)

    refresh_bike_status(booking.bike_id)

    # customers get told about changes they did not make themselves
    if notify and not (actor.role == ROLE_CUSTOMER and actor.id == booking.customer_id):
        message = _STATUS_MESSAGES[booking.status].format(code=booking.booking_code)
        notify_customer(booking, f"Booking {booking.booking_code}: {booking.status}", message)
