import json
import socket
from decimal import Decimal

import pytest

from models.audit_log import AuditLog
from models.booking import PENDING, CONFIRMED, CANCELLED, PAID, UNPAID, REFUNDED
from services import lifecycle, reconciliation, repository
from services.errors import (
    AmountMismatch,
    Conflict,
    Forbidden,
    InvalidSignature,
    InvalidTransition,
    UpstreamTimeout,
    ValidationError,
)
from services.reconciliation import PaymentConfirmation
from utils import emailer
from utils.auth_context import actor_for


@pytest.fixture
def order_ref(customer, pending_booking):
    return reconciliation.start_payment(pending_booking.id, actor_for(customer))


def _confirm(booking, order_ref, payment_ref, sign):
    return reconciliation.reconcile(
        booking.id,
        PaymentConfirmation(order_ref=order_ref, payment_ref=payment_ref, signature=sign(order_ref, payment_ref)),
    )


def test_start_payment_orders_the_total(gateway, pending_booking, order_ref):
    assert gateway.orders[order_ref] == (Decimal("354.00"), "INR")
    assert repository.get(pending_booking.id).payment_order_ref == order_ref


def test_start_payment_only_for_owner(other_customer, vendor, pending_booking):
    with pytest.raises(Forbidden):
        reconciliation.start_payment(pending_booking.id, actor_for(other_customer))
    with pytest.raises(Forbidden):
        reconciliation.start_payment(pending_booking.id, actor_for(vendor))


def test_repeated_start_payment_keeps_the_first_order(customer, gateway, pending_booking, order_ref, sign, outbox):
    again = reconciliation.start_payment(pending_booking.id, actor_for(customer))

    assert again == order_ref
    assert list(gateway.orders) == [order_ref]

    booking = _confirm(pending_booking, order_ref, gateway.settle(order_ref), sign)
    assert booking.status == CONFIRMED
    assert booking.payment_status == PAID


def test_payment_confirms_pending_booking(customer, gateway, pending_booking, order_ref, sign, outbox):
    payment_ref = gateway.settle(order_ref)

    booking = _confirm(pending_booking, order_ref, payment_ref, sign)

    assert booking.status == CONFIRMED
    assert booking.payment_status == PAID
    assert booking.payment_transaction_id == payment_ref
    assert booking.payment_method == "card"
    assert booking.paid_at is not None
    assert booking.status_updates[-1].actor_role == "system"
    assert [m["to"] for m in outbox] == [customer.email]
    assert "354.00 INR" in outbox[0]["body"]


def test_duplicate_confirmation_is_a_no_op(gateway, pending_booking, order_ref, sign, outbox):
    payment_ref = gateway.settle(order_ref)

    first = _confirm(pending_booking, order_ref, payment_ref, sign)
    second = _confirm(pending_booking, order_ref, payment_ref, sign)

    assert first.id == second.id
    assert second.status == CONFIRMED
    assert gateway.fetch_count == 1
    assert len(outbox) == 1
    assert AuditLog.query.filter_by(action="PAYMENT_PAID").count() == 1
    assert len(second.status_updates) == 2


def test_bad_signature_changes_nothing(gateway, pending_booking, order_ref, sign):
    payment_ref = gateway.settle(order_ref)

    with pytest.raises(InvalidSignature):
        _confirm(pending_booking, order_ref, payment_ref, lambda o, p: sign(o, p, secret="psec_wrong"))

    booking = repository.get(pending_booking.id)
    assert (booking.status, booking.payment_status) == (PENDING, UNPAID)
    assert gateway.fetch_count == 0


def test_order_from_another_booking_is_refused(customer, bike, gateway, pending_booking, order_ref, sign):
    payment_ref = gateway.settle(order_ref)
    confirmation = PaymentConfirmation(order_ref="pi_someone_else", payment_ref=payment_ref,
                                       signature=sign("pi_someone_else", payment_ref))
    with pytest.raises(InvalidSignature):
        reconciliation.reconcile(pending_booking.id, confirmation)


def test_amount_mismatch(gateway, pending_booking, order_ref, sign):
    payment_ref = gateway.settle(order_ref, amount=Decimal("1.00"))

    with pytest.raises(AmountMismatch):
        _confirm(pending_booking, order_ref, payment_ref, sign)
    assert repository.get(pending_booking.id).payment_status == UNPAID


def test_currency_mismatch(gateway, pending_booking, order_ref, sign):
    payment_ref = gateway.settle(order_ref, currency="USD")
    with pytest.raises(AmountMismatch):
        _confirm(pending_booking, order_ref, payment_ref, sign)


def test_unsettled_charge_is_refused(gateway, pending_booking, order_ref, sign):
    payment_ref = gateway.settle(order_ref, status="pending")
    with pytest.raises(ValidationError):
        _confirm(pending_booking, order_ref, payment_ref, sign)


def test_gateway_timeout_leaves_booking_alone(gateway, pending_booking, order_ref, sign):
    payment_ref = gateway.settle(order_ref)
    gateway.fail_with = UpstreamTimeout("read timed out")

    with pytest.raises(UpstreamTimeout) as exc:
        _confirm(pending_booking, order_ref, payment_ref, sign)

    assert exc.value.retryable
    booking = repository.get(pending_booking.id)
    assert (booking.status, booking.payment_status) == (PENDING, UNPAID)

    gateway.fail_with = None
    assert _confirm(pending_booking, order_ref, payment_ref, sign).status == CONFIRMED


def test_payment_after_vendor_confirmation(vendor, gateway, pending_booking, order_ref, sign):
    lifecycle.transition(pending_booking.id, CONFIRMED, actor_for(vendor))
    payment_ref = gateway.settle(order_ref)

    booking = _confirm(pending_booking, order_ref, payment_ref, sign)

    assert booking.status == CONFIRMED
    assert booking.payment_status == PAID
    assert booking.status_updates[-1].note == "payment received"


def test_payment_for_cancelled_booking_is_refused(customer, gateway, pending_booking, order_ref, sign):
    lifecycle.transition(pending_booking.id, CANCELLED, actor_for(customer))
    payment_ref = gateway.settle(order_ref)

    with pytest.raises(InvalidTransition):
        _confirm(pending_booking, order_ref, payment_ref, sign)
    assert repository.get(pending_booking.id).payment_status == UNPAID


def test_second_payment_for_paid_booking(gateway, pending_booking, order_ref, sign):
    _confirm(pending_booking, order_ref, gateway.settle(order_ref), sign)

    with pytest.raises(Conflict):
        _confirm(pending_booking, order_ref, gateway.settle(order_ref), sign)


def test_email_failure_does_not_undo_payment(app, monkeypatch, gateway, pending_booking, order_ref, sign):
    app.config.update(SMTP_HOST="smtp.example.invalid", SMTP_FROM_EMAIL="bookings@example.com")

    def unreachable(*args, **kwargs):
        raise socket.timeout("timed out")

    monkeypatch.setattr(emailer.smtplib, "SMTP", unreachable)
    payment_ref = gateway.settle(order_ref)

    booking = _confirm(pending_booking, order_ref, payment_ref, sign)

    assert booking.payment_status == PAID
    assert repository.get(pending_booking.id).status == CONFIRMED


class TestRefund:
    @pytest.fixture
    def paid_booking(self, gateway, pending_booking, order_ref, sign):
        return _confirm(pending_booking, order_ref, gateway.settle(order_ref), sign)

    def test_cancel_of_paid_booking_flags_refund(self, customer, paid_booking):
        lifecycle.transition(paid_booking.id, CANCELLED, actor_for(customer))

        row = AuditLog.query.filter_by(action="BOOKING_STATUS_CHANGE").order_by(AuditLog.id.desc()).first()
        assert json.loads(row.metadata_json)["refund_due"] is True

    def test_admin_refunds_released_booking(self, customer, admin, gateway, paid_booking):
        lifecycle.transition(paid_booking.id, CANCELLED, actor_for(customer))

        refunded = reconciliation.refund_payment(paid_booking.id, actor_for(admin))

        assert refunded.payment_status == REFUNDED
        assert refunded.refund_ref == "re_test_1"
        assert gateway.refunds == [(paid_booking.payment_transaction_id, Decimal("354.00"), "INR")]

    def test_refund_needs_admin_and_release(self, customer, admin, paid_booking):
        with pytest.raises(Forbidden):
            reconciliation.refund_payment(paid_booking.id, actor_for(customer))
        with pytest.raises(InvalidTransition):
            reconciliation.refund_payment(paid_booking.id, actor_for(admin))

    def test_unpaid_booking_has_nothing_to_refund(self, customer, admin, pending_booking):
        lifecycle.transition(pending_booking.id, CANCELLED, actor_for(customer))
        with pytest.raises(InvalidTransition):
            reconciliation.refund_payment(pending_booking.id, actor_for(admin))

    def test_start_payment_refused_once_paid(self, customer, paid_booking):
        with pytest.raises(Conflict):
            reconciliation.start_payment(paid_booking.id, actor_for(customer))
