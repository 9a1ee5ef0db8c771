"""
Payment reconciliation: turn a gateway payment confirmation into exactly one
booking state change.

Confirmations may arrive twice (client callback and webhook, or webhook
retries). A confirmation for a payment already recorded on the booking is a
no-op; the conditional row update guarantees that two concurrent deliveries
cannot both apply.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from models.booking import PENDING, CONFIRMED, PAID, UNPAID, REFUNDED, RELEASED_STATUSES, BookingStatusUpdate
from services import lifecycle, repository
from services.errors import (
    AmountMismatch,
    Conflict,
    Forbidden,
    InvalidSignature,
    InvalidTransition,
    ValidationError,
)
from utils.audit import log_event
from utils.auth_context import SYSTEM_ACTOR, ROLE_ADMIN, ROLE_CUSTOMER
from utils.emailer import notify_customer
from utils.payment_gateway import get_gateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentConfirmation:
    order_ref: str
    payment_ref: str
    signature: str
    # raw signed body for webhook deliveries; None for client callbacks
    payload: Optional[str] = None
    method: str = "card"


def start_payment(booking_id, actor) -> str:
    """Create a gateway order for the booking total and remember its reference.

    A booking that already has an open order gets that order back.
    """
    booking = repository.get(booking_id)
    if actor.role != ROLE_ADMIN and not (actor.role == ROLE_CUSTOMER and booking.customer_id == actor.id):
        raise Forbidden(f"{actor.role} {actor.id} may not pay for booking {booking_id}",
                        "Not authorized to pay for this booking")
    if booking.payment_status != UNPAID:
        raise Conflict(f"Booking {booking_id} payment is {booking.payment_status}", "Booking is already paid")
    if booking.status != PENDING:
        raise InvalidTransition(f"Booking {booking_id} is {booking.status}", "Booking cannot be paid now")
    if booking.payment_order_ref:
        # one order per booking; a charge on an earlier order must still reconcile
        logger.info("Reusing order %s for booking %s", booking.payment_order_ref, booking_id)
        return booking.payment_order_ref

    order_ref = get_gateway().create_order(booking.total_amount, booking.currency, f"booking_{booking.id}")
    repository.update_if_status(booking.id, PENDING, {"payment_order_ref": order_ref})

    log_event("PAYMENT_ORDER_CREATED", user_id=actor.id, entity="booking", entity_id=booking.id,
              metadata={"order_ref": order_ref})
    return order_ref


def _already_applied(booking, confirmation) -> bool:
    return booking.payment_status in (PAID, REFUNDED) and booking.payment_transaction_id == confirmation.payment_ref


def reconcile(booking_id, confirmation: PaymentConfirmation):
    gateway = get_gateway()

    if not gateway.verify_signature(
        confirmation.order_ref, confirmation.payment_ref, confirmation.signature, confirmation.payload
    ):
        raise InvalidSignature(f"Bad signature for order {confirmation.order_ref}")

    booking = repository.get(booking_id)
    if not booking.payment_order_ref or booking.payment_order_ref != confirmation.order_ref:
        raise InvalidSignature(
            f"Order {confirmation.order_ref} does not belong to booking {booking_id}"
        )

    if _already_applied(booking, confirmation):
        logger.info("Payment %s already applied to booking %s", confirmation.payment_ref, booking_id)
        return booking
    if booking.payment_status != UNPAID:
        raise Conflict(
            f"Booking {booking_id} already settled by {booking.payment_transaction_id}",
            "Booking is already paid",
        )

    payment = gateway.fetch_payment(confirmation.payment_ref)
    if payment.order_ref and payment.order_ref != confirmation.order_ref:
        raise InvalidSignature(f"Payment {payment.payment_ref} belongs to order {payment.order_ref}")
    if not payment.succeeded:
        raise ValidationError(f"Payment {payment.payment_ref} is {payment.status}", "Payment not completed")
    if payment.currency != booking.currency.upper() or payment.amount != booking.total_amount:
        raise AmountMismatch(
            f"Payment {payment.payment_ref} is {payment.amount} {payment.currency}, "
            f"booking {booking_id} expects {booking.total_amount} {booking.currency}"
        )

    paid_fields = {
        "payment_status": PAID,
        "payment_transaction_id": payment.payment_ref,
        "payment_method": payment.method or confirmation.method,
        "paid_at": datetime.utcnow(),
    }

    try:
        if booking.status == PENDING:
            booking = lifecycle.transition(
                booking_id, CONFIRMED, SYSTEM_ACTOR, extra=paid_fields, notify=False
            )
        elif booking.status == CONFIRMED:
            # vendor approved before the money arrived: record the payment only
            trail = BookingStatusUpdate(status=CONFIRMED, actor_id=None, actor_role=SYSTEM_ACTOR.role,
                                        note="payment received")
            booking = repository.update_if_status(booking_id, CONFIRMED, paid_fields, trail)
        else:
            logger.warning("Payment %s arrived for %s booking %s; refund needed",
                           payment.payment_ref, booking.status, booking_id)
            raise InvalidTransition(f"Booking {booking_id} is {booking.status}", "Booking cannot be paid now")
    except Conflict:
        # lost a race: a duplicate delivery may have applied the same payment
        current = repository.get(booking_id)
        if _already_applied(current, confirmation):
            return current
        raise

    log_event("PAYMENT_PAID", user_id=None, entity="booking", entity_id=booking.id,
              metadata={"order_ref": confirmation.order_ref, "payment_ref": payment.payment_ref,
                        "amount": payment.amount})
    notify_customer(
        booking,
        "Payment Confirmation - BikeRent",
        _confirmation_body(booking, payment),
    )
    return booking


def _confirmation_body(booking, payment):
    return (
        "Your payment has been processed successfully!\n\n"
        "Booking Details:\n"
        f"- Booking: {booking.booking_code}\n"
        f"- Start Date: {booking.start_date.isoformat()}\n"
        f"- End Date: {booking.end_date.isoformat()}\n"
        f"- Duration: {booking.duration_days} days\n"
        f"- Total Amount: {booking.total_amount} {booking.currency}\n"
        f"- Security deposit (due at pickup): {booking.security_deposit} {booking.currency}\n\n"
        "Payment Details:\n"
        f"- Payment ID: {payment.payment_ref}\n"
        f"- Amount Paid: {payment.amount} {payment.currency}\n\n"
        "Thank you for choosing BikeRent!\n"
    )


def refund_payment(booking_id, actor):
    """Admin refund of a settled payment on a cancelled or rejected booking."""
    if actor.role != ROLE_ADMIN:
        raise Forbidden(f"{actor.role} {actor.id} may not refund", "Not allowed")
    booking = repository.get(booking_id)
    if booking.payment_status != PAID:
        raise InvalidTransition(f"Booking {booking_id} payment is {booking.payment_status}",
                                "Booking has no payment to refund")
    if booking.status not in RELEASED_STATUSES:
        raise InvalidTransition(f"Booking {booking_id} is {booking.status}",
                                "Only cancelled or rejected bookings can be refunded")

    refund_ref = get_gateway().refund(booking.payment_transaction_id, booking.total_amount, booking.currency)
    booking = repository.update_if_status(
        booking_id,
        booking.status,
        {"payment_status": REFUNDED, "refund_ref": refund_ref, "refunded_at": datetime.utcnow()},
    )
    log_event("PAYMENT_REFUNDED", user_id=actor.id, entity="booking", entity_id=booking.id,
              metadata={"refund_ref": refund_ref, "amount": booking.total_amount})
    notify_customer(
        booking,
        f"Refund issued for booking {booking.booking_code}",
        f"We have refunded {booking.total_amount} {booking.currency} for booking {booking.booking_code}.",
    )
    return booking
