"""
Stripe collaborator.

Thin synchronous wrappers around the Stripe SDK. Route handlers call these
through ``run_in_threadpool``. Every ``StripeError`` is surfaced as a
retryable ``CollaboratorFailure``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import stripe

import config
from errors import CollaboratorFailure, ValidationFailed

logger = logging.getLogger(__name__)

stripe.api_key = config.STRIPE_SECRET_KEY


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: Optional[str]
    status: Optional[str]  # open, complete, expired
    amount_total: Optional[int] = None


def _to_session(session) -> CheckoutSession:
    return CheckoutSession(
        id=session.id,
        url=getattr(session, "url", None),
        status=getattr(session, "status", None),
        amount_total=getattr(session, "amount_total", None),
    )


def create_checkout_session(
    amount_minor: int,
    currency: str,
    product_name: str,
    success_url: str,
    cancel_url: str,
    metadata: dict,
    idempotency_key: Optional[str] = None,
) -> CheckoutSession:
    try:
        session = stripe.checkout.Session.create(
            mode="payment",
            line_items=[
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": product_name},
                        "unit_amount": amount_minor,
                    },
                    "quantity": 1,
                }
            ],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
    except stripe.StripeError as e:
        logger.error("Stripe checkout session creation failed: %s", e)
        raise CollaboratorFailure("Payment processor unavailable, please retry") from e

    logger.info("Created checkout session %s for %s %s", session.id, amount_minor, currency)
    return _to_session(session)


def retrieve_checkout_session(session_id: str) -> CheckoutSession:
    try:
        return _to_session(stripe.checkout.Session.retrieve(session_id))
    except stripe.StripeError as e:
        logger.error("Stripe session lookup failed for %s: %s", session_id, e)
        raise CollaboratorFailure("Payment processor unavailable, please retry") from e


def expire_checkout_session(session_id: str) -> None:
    try:
        stripe.checkout.Session.expire(session_id)
    except stripe.StripeError as e:
        logger.error("Could not expire checkout session %s: %s", session_id, e)
        raise CollaboratorFailure("Payment processor unavailable, please retry") from e


def create_subscription_session(price_id: str, customer_email: Optional[str], metadata: dict) -> str:
    try:
        session = stripe.checkout.Session.create(
            mode="subscription",
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            metadata=metadata,
            customer_email=customer_email or None,
            success_url=f"{config.APP_URL}/subscription/success",
            cancel_url=f"{config.APP_URL}/subscription/cancel",
        )
    except stripe.StripeError as e:
        logger.error("Stripe subscription session creation failed: %s", e)
        raise CollaboratorFailure("Payment processor unavailable, please retry") from e
    return session.url


def verify_webhook(payload: bytes, signature: Optional[str]) -> stripe.Event:
    """Return the verified event, or raise ``ValidationFailed`` if the Stripe signature does not match."""
    if not signature:
        raise ValidationFailed("Missing Stripe-Signature header")
    try:
        event = stripe.Webhook.construct_event(payload, signature, config.STRIPE_WEBHOOK_SECRET)
    except stripe.SignatureVerificationError as e:
        logger.warning("Rejected webhook with invalid signature: %s", e)
        raise ValidationFailed("Invalid webhook signature") from e
    except ValueError as e:
        logger.warning("Rejected malformed webhook payload: %s", e)
        raise ValidationFailed("Invalid webhook payload") from e
    return event
