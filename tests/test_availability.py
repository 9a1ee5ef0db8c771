import threading
from datetime import date, timedelta

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from app import create_app
from config import TestConfig
from models import db
from models.audit_log import AuditLog
from models.bike import Bike, MAINTENANCE, RENTED
from models.booking import Booking, BookingStatusUpdate, CANCELLED, RELEASED_STATUSES
from models.user import User, Role
from services import availability, lifecycle, repository
from services.bookings import create_booking
from services.errors import Conflict, Forbidden, NotFound, ValidationError
from utils.auth_context import actor_for


def future(days):
    return date.today() + timedelta(days=days)


@pytest.fixture
def january_booking(customer, bike):
    year = date.today().year + 1
    create_booking(actor_for(customer), bike.id, date(year, 1, 10), date(year, 1, 12))
    return year


@pytest.mark.parametrize("start_day,end_day,free", [
    (11, 13, False),
    (12, 14, False),  # touching on the 12th still clashes
    (8, 10, False),
    (13, 15, True),
    (5, 9, True),
])
def test_closed_interval_overlap(bike, january_booking, start_day, end_day, free):
    year = january_booking
    start, end = date(year, 1, start_day), date(year, 1, end_day)

    assert availability.is_available(bike.id, start, end) is free
    assert bool(availability.find_conflicts(bike.id, start, end)) is not free


def test_overlapping_create_is_refused_and_audited(other_customer, bike, january_booking):
    year = january_booking

    with pytest.raises(Conflict) as exc:
        create_booking(actor_for(other_customer), bike.id, date(year, 1, 11), date(year, 1, 13))

    assert exc.value.retryable
    assert Booking.query.count() == 1
    assert AuditLog.query.filter_by(action="BOOKING_FAIL_CONFLICT").count() == 1


def test_cancelled_booking_releases_its_window(customer, other_customer, bike, pending_booking):
    lifecycle.transition(pending_booking.id, CANCELLED, actor_for(customer))

    assert availability.is_available(bike.id, future(10), future(13))
    again = create_booking(actor_for(other_customer), bike.id, future(10), future(13))
    assert again.status == "pending"


def test_maintenance_bike_blocks_every_window(customer, make_bike):
    bike = make_bike(availability_status=MAINTENANCE)

    assert availability.is_available(bike.id, future(30), future(31)) is False
    with pytest.raises(Conflict):
        create_booking(actor_for(customer), bike.id, future(30), future(31))


def test_switched_off_bike_blocks_every_window(customer, make_bike):
    bike = make_bike(is_available=False)
    with pytest.raises(Conflict):
        create_booking(actor_for(customer), bike.id, future(30), future(31))


def test_rented_today_does_not_block_later_dates(customer, make_bike):
    bike = make_bike(availability_status=RENTED)
    booking = create_booking(actor_for(customer), bike.id, future(30), future(31))
    assert booking.bike_id == bike.id


def test_retired_bike_is_not_found(customer, make_bike):
    bike = make_bike(is_active=False)
    with pytest.raises(NotFound):
        availability.is_available(bike.id, future(1), future(2))
    with pytest.raises(NotFound):
        create_booking(actor_for(customer), bike.id, future(1), future(2))


@pytest.mark.parametrize("start,end", [
    (-1, 2),   # starts yesterday
    (5, 5),    # zero length
    (6, 4),    # inverted
])
def test_bad_windows_persist_nothing(customer, bike, start, end):
    with pytest.raises(ValidationError):
        create_booking(actor_for(customer), bike.id, future(start), future(end))
    assert Booking.query.count() == 0


def test_only_customers_book(vendor, bike):
    with pytest.raises(Forbidden):
        create_booking(actor_for(vendor), bike.id, future(3), future(4))


def test_admin_books_on_behalf_of_customer(admin, customer, vendor, bike):
    booking = create_booking(actor_for(admin), bike.id, future(3), future(4), customer_id=customer.id)
    assert booking.customer_id == customer.id
    assert booking.vendor_id == vendor.id

    with pytest.raises(ValidationError):
        create_booking(actor_for(admin), bike.id, future(6), future(7))
    with pytest.raises(Forbidden):
        create_booking(actor_for(admin), bike.id, future(6), future(7), customer_id=vendor.id)


def test_booking_snapshots_price_and_deposit(customer, bike):
    booking = create_booking(actor_for(customer), bike.id, future(3), future(6))
    bike.daily_rate = 999
    db.session.commit()

    db.session.refresh(booking)
    assert str(booking.total_amount) == "354.00"
    assert str(booking.security_deposit) == "500.00"
    assert booking.currency == "INR"
    assert booking.booking_code.startswith("B-")


# (day offset, length in days, which customer, optional cancel pick)
booking_attempts = st.lists(
    st.tuples(
        st.integers(min_value=1, max_value=30),
        st.integers(min_value=1, max_value=5),
        st.integers(min_value=0, max_value=1),
        st.none() | st.integers(min_value=0, max_value=50),
    ),
    min_size=1,
    max_size=25,
)


@settings(max_examples=40, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
@given(attempts=booking_attempts)
def test_live_bookings_never_overlap(customer, other_customer, admin, bike, attempts):
    BookingStatusUpdate.query.delete()
    Booking.query.delete()
    db.session.commit()

    actors = [actor_for(customer), actor_for(other_customer)]
    created = []
    for offset, length, who, cancel_pick in attempts:
        start = future(offset)
        try:
            created.append(create_booking(actors[who], bike.id, start, start + timedelta(days=length)))
        except Conflict:
            pass
        if created and cancel_pick is not None:
            victim = created[cancel_pick % len(created)]
            if victim.status not in RELEASED_STATUSES:
                lifecycle.transition(victim.id, CANCELLED, actor_for(admin), notify=False)

    live = Booking.query.filter(Booking.status.not_in(RELEASED_STATUSES)).all()
    for i, a in enumerate(live):
        for b in live[i + 1:]:
            assert a.end_date < b.start_date or b.end_date < a.start_date, (a.id, b.id)


@pytest.fixture
def file_app(tmp_path):
    config = type("FileDbConfig", (TestConfig,), {
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'race.db'}",
    })
    app = create_app(config)
    yield app
    with app.app_context():
        db.drop_all()
        db.engine.dispose()


def test_concurrent_creates_for_one_window_admit_exactly_one(file_app, monkeypatch):
    with file_app.app_context():
        riders = []
        for email in ("first@example.com", "second@example.com"):
            rider = User(email=email, full_name="Rider")
            rider.roles.append(Role.query.filter_by(name="CUSTOMER").one())
            riders.append(rider)
        owner = User(email="owner@example.com", full_name="Owner")
        owner.roles.append(Role.query.filter_by(name="VENDOR").one())
        db.session.add_all(riders + [owner])
        db.session.commit()
        race_bike = Bike(vendor_id=owner.id, name="Himalayan", brand="Royal Enfield", model="Himalayan",
                         daily_rate=100, security_deposit=500)
        db.session.add(race_bike)
        db.session.commit()
        rider_ids = [r.id for r in riders]
        bike_id = race_bike.id
        db.session.remove()

    # both writers have read the same booking_version before either bumps it
    barrier = threading.Barrier(2, timeout=10)
    real_lock_bike = repository.lock_bike

    def lock_together(bike):
        barrier.wait()
        real_lock_bike(bike)

    monkeypatch.setattr(repository, "lock_bike", lock_together)

    results = {}

    def book(user_id):
        with file_app.app_context():
            try:
                user = db.session.get(User, user_id)
                create_booking(actor_for(user), bike_id, future(4), future(6))
                results[user_id] = "ok"
            except Conflict:
                results[user_id] = "conflict"
            finally:
                db.session.remove()

    threads = [threading.Thread(target=book, args=(user_id,)) for user_id in rider_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(results.values()) == ["conflict", "ok"]
    with file_app.app_context():
        assert Booking.query.filter_by(bike_id=bike_id).count() == 1
        assert db.session.get(Bike, bike_id).booking_version == 1
