from datetime import date, timedelta
from decimal import Decimal

import pytest
import stripe

from app import create_app
from config import TestConfig
from models import db
from models.bike import Bike
from models.user import User, Role
from security.session import create_session
from services.bookings import create_booking
from utils import emailer
from utils.auth_context import actor_for
from utils.payment_gateway import StripeGateway, PaymentInfo


class FakeGateway(StripeGateway):
    """StripeGateway with the network calls replaced; signatures are still checked for real."""

    def __init__(self, config):
        super().__init__(
            secret_key=config["STRIPE_SECRET_KEY"],
            signing_secret=config["PAYMENT_SIGNING_SECRET"],
            webhook_secret=config["STRIPE_WEBHOOK_SECRET"],
            tolerance=config["PAYMENT_SIGNATURE_TOLERANCE_SECONDS"],
        )
        self.orders = {}
        self.charges = {}
        self.refunds = []
        self.fetch_count = 0
        self.fail_with = None

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    def create_order(self, amount, currency, receipt):
        self._maybe_fail()
        order_ref = f"pi_test_{len(self.orders) + 1}"
        self.orders[order_ref] = (amount, currency.upper())
        return order_ref

    def settle(self, order_ref, amount=None, currency=None, status="succeeded"):
        """Record a charge against an order, as the customer's checkout would."""
        expected_amount, expected_currency = self.orders[order_ref]
        payment_ref = f"ch_test_{len(self.charges) + 1}"
        self.charges[payment_ref] = PaymentInfo(
            payment_ref=payment_ref,
            order_ref=order_ref,
            amount=expected_amount if amount is None else amount,
            currency=currency or expected_currency,
            status=status,
            method="card",
        )
        return payment_ref

    def fetch_payment(self, payment_ref):
        self.fetch_count += 1
        self._maybe_fail()
        return self.charges[payment_ref]

    def refund(self, payment_ref, amount, currency):
        self._maybe_fail()
        self.refunds.append((payment_ref, amount, currency))
        return f"re_test_{len(self.refunds)}"


def future(days):
    return date.today() + timedelta(days=days)


@pytest.fixture
def app():
    app = create_app(TestConfig)
    app.extensions["payment_gateway"] = FakeGateway(app.config)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def gateway(app):
    return app.extensions["payment_gateway"]


@pytest.fixture
def outbox(monkeypatch):
    sent = []

    def fake_send(to_email, subject, body):
        sent.append({"to": to_email, "subject": subject, "body": body})
        return True, None

    monkeypatch.setattr(emailer, "send_email", fake_send)
    return sent


@pytest.fixture
def make_user(app):
    def _make(email, *roles):
        user = User(email=email, full_name=email.split("@")[0].title())
        for name in roles:
            user.roles.append(Role.query.filter_by(name=name).one())
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def customer(make_user):
    return make_user("rider@example.com", "CUSTOMER")


@pytest.fixture
def other_customer(make_user):
    return make_user("pillion@example.com", "CUSTOMER")


@pytest.fixture
def vendor(make_user):
    return make_user("garage@example.com", "VENDOR")


@pytest.fixture
def other_vendor(make_user):
    return make_user("rival-garage@example.com", "VENDOR")


@pytest.fixture
def admin(make_user):
    return make_user("ops@example.com", "ADMIN")


@pytest.fixture
def make_bike(vendor):
    def _make(daily_rate="100.00", deposit="500.00", owner=None, **kwargs):
        bike = Bike(
            vendor_id=(owner or vendor).id,
            name="Classic 350",
            brand="Royal Enfield",
            model="Classic 350",
            daily_rate=Decimal(daily_rate),
            security_deposit=Decimal(deposit),
            **kwargs,
        )
        db.session.add(bike)
        db.session.commit()
        return bike
    return _make


@pytest.fixture
def bike(make_bike):
    return make_bike()


@pytest.fixture
def pending_booking(customer, bike):
    return create_booking(actor_for(customer), bike.id, future(10), future(13))


@pytest.fixture
def client_for(app):
    def _client(user=None):
        client = app.test_client()
        if user is not None:
            client.set_cookie(app.config["AUTH_COOKIE_NAME"], create_session(user.id))
        return client
    return _client


@pytest.fixture
def sign(app):
    """Client-callback signature the checkout page would send back."""
    def _sign(order_ref, payment_ref, secret=None, timestamp=None):
        return stripe.WebhookSignature.generate_signature_header(
            f"{order_ref}|{payment_ref}",
            secret or app.config["PAYMENT_SIGNING_SECRET"],
            timestamp=timestamp,
        )
    return _sign
