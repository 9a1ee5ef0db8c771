"""
Bike.availability_status as a projection of the bookings table.

The flag is a display cache: it is recomputed after booking changes and by
``flask refresh-bike-status``, and may lag behind. Conflict detection never
reads it.
"""
import logging
from datetime import date

from sqlalchemy import func

from models import db
from models.bike import Bike, AVAILABLE, RENTED, VENDOR_HELD_STATUSES
from models.booking import Booking, CONFIRMED

logger = logging.getLogger(__name__)


def derive_status(bike: Bike, today=None) -> str:
    if bike.availability_status in VENDOR_HELD_STATUSES:
        return bike.availability_status
    today = today or date.today()
    on_rent = db.session.scalar(
        db.select(func.count()).select_from(Booking).where(
            Booking.bike_id == bike.id,
            Booking.status == CONFIRMED,
            Booking.start_date <= today,
            Booking.end_date >= today,
        )
    )
    return RENTED if on_rent else AVAILABLE


def refresh_bike_status(bike_id, today=None):
    bike = db.session.get(Bike, bike_id)
    if bike is None:
        return None
    status = derive_status(bike, today)
    if status != bike.availability_status:
        logger.info("Bike %s availability %s -> %s", bike.id, bike.availability_status, status)
        bike.availability_status = status
        db.session.commit()
    return status


def refresh_all(today=None) -> int:
    changed = 0
    for bike_id in db.session.scalars(db.select(Bike.id)).all():
        before = db.session.get(Bike, bike_id).availability_status
        if refresh_bike_status(bike_id, today) != before:
            changed += 1
    return changed
