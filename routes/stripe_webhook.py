import json
import logging

from flask import Blueprint, request, jsonify

from models.booking import Booking
from services import reconciliation
from services.errors import AmountMismatch, Conflict, InvalidTransition, InvalidSignature, ValidationError
from services.reconciliation import PaymentConfirmation
from utils.audit import log_event
from utils.payment_gateway import get_gateway

logger = logging.getLogger(__name__)

webhook_bp = Blueprint("webhook", __name__, url_prefix="/webhooks")


def _refs(event):
    """(order_ref, payment_ref) for the events that settle a booking."""
    obj = (event.get("data") or {}).get("object") or {}
    event_type = event.get("type")
    if event_type == "charge.succeeded":
        return obj.get("payment_intent"), obj.get("id")
    if event_type == "payment_intent.succeeded":
        return obj.get("id"), obj.get("latest_charge")
    return None, None


@webhook_bp.post("/stripe")
def stripe_webhook():
    sig_header = request.headers.get("Stripe-Signature")
    payload = request.get_data(as_text=True)

    if not get_gateway().verify_signature(None, None, sig_header, payload=payload):
        raise InvalidSignature("Invalid webhook signature")

    try:
        event = json.loads(payload)
    except ValueError:
        return jsonify(error="Invalid payload"), 400

    order_ref, payment_ref = _refs(event)
    if not order_ref or not payment_ref:
        return jsonify(received=True), 200

    booking = Booking.query.filter_by(payment_order_ref=order_ref).first()
    if booking is None:
        logger.info("Webhook %s for unknown order %s ignored", event.get("id"), order_ref)
        return jsonify(received=True), 200

    confirmation = PaymentConfirmation(
        order_ref=order_ref, payment_ref=payment_ref, signature=sig_header, payload=payload
    )
    try:
        reconciliation.reconcile(booking.id, confirmation)
    except (AmountMismatch, Conflict, InvalidTransition, ValidationError) as exc:
        # retrying the delivery cannot fix these; acknowledge and leave a trail for an admin
        logger.warning("Webhook payment %s not applied to booking %s: %s", payment_ref, booking.id, exc)
        log_event("PAYMENT_REJECTED", user_id=None, entity="booking", entity_id=booking.id,
                  metadata={"order_ref": order_ref, "payment_ref": payment_ref, "reason": exc.code})
        return jsonify(received=True, applied=False), 200

    return jsonify(received=True, applied=True), 200
