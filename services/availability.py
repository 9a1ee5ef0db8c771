from models import db
from models.bike import Bike, VENDOR_HELD_STATUSES
from services import repository
from services.errors import NotFound, ValidationError
from services.pricing import to_date


def get_bike(bike_id) -> Bike:
    bike = db.session.get(Bike, bike_id)
    if bike is None or not bike.is_active:
        raise NotFound(f"Bike {bike_id} not found", "Bike not found")
    return bike


def normalize_window(start_date, end_date):
    start = to_date(start_date, "start_date")
    end = to_date(end_date, "end_date")
    if end <= start:
        raise ValidationError("end_date must be after start_date", "End date must be after start date")
    return start, end


def bike_accepts_bookings(bike: Bike) -> bool:
    # Rented is a projection of today's bookings and says nothing about other dates
    return bool(bike.is_available) and bike.availability_status not in VENDOR_HELD_STATUSES


def find_conflicts(bike_id, start_date, end_date, exclude_booking_id=None):
    start, end = normalize_window(start_date, end_date)
    return repository.overlapping(bike_id, start, end, exclude_booking_id=exclude_booking_id)


def is_available(bike_id, start_date, end_date) -> bool:
    bike = get_bike(bike_id)
    start, end = normalize_window(start_date, end_date)
    if not bike_accepts_bookings(bike):
        return False
    return not repository.overlapping(bike.id, start, end)
