"""
Persistence boundary for bookings.

Every state-changing write goes through ``update_if_status`` (for existing
bookings) or ``lock_bike`` + ``insert`` (for new ones), so two requests racing
on the same row or the same bike cannot both win.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from models import db
from models.bike import Bike
from models.booking import Booking, BookingStatusUpdate, RELEASED_STATUSES, TERMINAL_STATUSES
from services.errors import Conflict, NotFound
from services.query import BookingQuery

logger = logging.getLogger(__name__)


@dataclass
class Page:
    items: List[Booking]
    total: int
    page: int
    limit: int

    def pagination(self):
        out = {}
        if self.page * self.limit < self.total:
            out["next"] = {"page": self.page + 1, "limit": self.limit}
        if self.page > 1:
            out["prev"] = {"page": self.page - 1, "limit": self.limit}
        return out


def find_by_id(booking_id) -> Optional[Booking]:
    return db.session.get(Booking, booking_id)


def get(booking_id) -> Booking:
    booking = find_by_id(booking_id)
    if booking is None:
        raise NotFound(f"Booking {booking_id} not found", "Booking not found")
    return booking


def find_many(query: BookingQuery) -> Page:
    clauses = query.clauses()
    total = db.session.scalar(
        db.select(func.count()).select_from(Booking).where(*clauses)
    )
    items = db.session.scalars(
        db.select(Booking)
        .where(*clauses)
        .order_by(*query.order_by())
        .offset(query.offset)
        .limit(query.limit)
    ).all()
    return Page(items=list(items), total=total or 0, page=query.page, limit=query.limit)


def overlapping(bike_id, start_date, end_date, exclude_booking_id=None) -> List[Booking]:
    """Bookings still holding a window that meets [start_date, end_date] (closed interval)."""
    stmt = db.select(Booking).where(
        Booking.bike_id == bike_id,
        Booking.status.not_in(RELEASED_STATUSES),
        Booking.start_date <= end_date,
        Booking.end_date >= start_date,
    )
    if exclude_booking_id is not None:
        stmt = stmt.where(Booking.id != exclude_booking_id)
    return list(db.session.scalars(stmt).all())


def has_active_bookings(bike_id) -> bool:
    stmt = db.select(func.count()).select_from(Booking).where(
        Booking.bike_id == bike_id,
        Booking.status.not_in(TERMINAL_STATUSES),
    )
    return bool(db.session.scalar(stmt))


def lock_bike(bike: Bike) -> None:
    """
    Compare-and-increment the bike's booking_version inside the current
    transaction. A concurrent writer that already bumped it makes this fail
    with Conflict; on row-locking databases the second writer also waits
    here until the first commits.
    """
    observed = bike.booking_version
    result = db.session.execute(
        update(Bike)
        .where(Bike.id == bike.id, Bike.booking_version == observed)
        .values(booking_version=observed + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        raise Conflict(f"Bike {bike.id} was booked concurrently", "Dates unavailable")
    db.session.refresh(bike)


def insert(booking: Booking, trail: BookingStatusUpdate) -> Booking:
    try:
        db.session.add(booking)
        db.session.flush()
        trail.booking_id = booking.id
        db.session.add(trail)
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Booking insert rejected by the database: %s", exc)
        raise Conflict("Booking insert violated a constraint", "Dates unavailable")
    return booking


def update_if_status(booking_id, expected_status, patch: dict, trail: Optional[BookingStatusUpdate] = None) -> Booking:
    """
    Apply ``patch`` only if the stored status still equals ``expected_status``.
    The status-trail row (if any) is written in the same transaction.
    """
    values = dict(patch)
    values["updated_at"] = datetime.utcnow()
    try:
        result = db.session.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.status == expected_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            if find_by_id(booking_id) is None:
                raise NotFound(f"Booking {booking_id} not found", "Booking not found")
            raise Conflict(
                f"Booking {booking_id} is no longer {expected_status}",
                "Booking was updated by someone else, please refresh",
            )
        if trail is not None:
            trail.booking_id = booking_id
            db.session.add(trail)
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Booking %s update rejected by the database: %s", booking_id, exc)
        raise Conflict(f"Booking {booking_id} update violated a constraint", "Booking could not be updated")

    booking = find_by_id(booking_id)
    db.session.refresh(booking)
    return booking
