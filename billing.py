"""
Checkout, payment summaries and Stripe webhook handling.

The checkout amount is always recomputed here from stored data: the price
frozen on the booking when the provider accepted it (or the live service
price for rows accepted before that column existed) and the customer's plan
as read from ``profiles`` for this request. Nothing the client sends
influences the amount.
"""

import logging
from typing import Any, Optional

from fastapi import BackgroundTasks
from fastapi.concurrency import run_in_threadpool

import config
import notifications
import payments
import state_machine
from db import AsyncClient, execute
from errors import Conflict, NotAuthorized, NotFound, ValidationFailed
from models import (
    Booking,
    BookingStatus,
    CheckoutResponse,
    PaymentLine,
    PaymentSummary,
    Profile,
    SubscriptionPlan,
)
from pricing import as_decimal, price, summarize, to_minor_units

logger = logging.getLogger(__name__)

PROFILES_TABLE = "profiles"

PLAN_IDS: dict[str, SubscriptionPlan] = {
    "basic": SubscriptionPlan.BASIC,
    "premium": SubscriptionPlan.PREMIUM,
    "enterprise": SubscriptionPlan.ENTERPRISE,
    "provider": SubscriptionPlan.PROVIDER,
}


async def _fetch_service(sbase: AsyncClient, service_id) -> dict:
    res = await execute(sbase.table(state_machine.SERVICES_TABLE).select("id, name, price").eq("id", str(service_id)))
    if not res.data:
        raise NotFound("Service not found")
    return res.data[0]


def chargeable_price(booking: Booking, service: dict):
    if booking.price_at_acceptance is not None:
        return booking.price_at_acceptance
    return as_decimal(service["price"])


async def create_checkout(sbase: AsyncClient, customer: Profile, booking_id) -> CheckoutResponse:
    booking = await state_machine.fetch_booking(sbase, booking_id)

    if booking.customer_id != customer.id:
        raise NotAuthorized("This booking does not belong to you")
    if booking.status != BookingStatus.AWAITING_PAYMENT:
        raise Conflict(f"Invalid booking status: {booking.status.value}")

    service = await _fetch_service(sbase, booking.service_id)
    amount = to_minor_units(price(chargeable_price(booking, service), customer.subscription_plan, customer.role))
    previous_id = booking.checkout_session_id

    if previous_id:
        existing = await run_in_threadpool(payments.retrieve_checkout_session, previous_id)
        if existing.status == "open" and existing.amount_total == amount:
            logger.info("Reusing open checkout session %s for booking %s", existing.id, booking.id)
            return CheckoutResponse(url=existing.url, session_id=existing.id, amount=amount, currency=config.CURRENCY, reused=True)
        if existing.status == "complete":
            raise Conflict("Payment already received, awaiting confirmation")
        if existing.status == "open":
            # Plan or price changed since the session was opened; it must not stay payable.
            await run_in_threadpool(payments.expire_checkout_session, existing.id)

    session = await run_in_threadpool(
        payments.create_checkout_session,
        amount,
        config.CURRENCY,
        service["name"],
        f"{config.APP_URL}/success",
        f"{config.APP_URL}/cancel",
        {"bookingId": str(booking.id)},
        f"booking-checkout:{booking.id}:{previous_id or 'initial'}:{amount}",
    )

    query = (
        sbase.table(state_machine.BOOKINGS_TABLE)
        .update({"checkout_session_id": session.id})
        .eq("id", str(booking.id))
        .eq("status", BookingStatus.AWAITING_PAYMENT.value)
    )
    if previous_id:
        query = query.eq("checkout_session_id", previous_id)
    else:
        query = query.is_("checkout_session_id", "null")

    res = await execute(query)
    if not res.data:
        current = await state_machine.fetch_booking(sbase, booking.id)
        if current.checkout_session_id == session.id:
            return CheckoutResponse(url=session.url, session_id=session.id, amount=amount, currency=config.CURRENCY, reused=True)
        await run_in_threadpool(payments.expire_checkout_session, session.id)
        raise Conflict("Another checkout is already in progress for this booking")

    return CheckoutResponse(url=session.url, session_id=session.id, amount=amount, currency=config.CURRENCY)


async def payment_summary(sbase: AsyncClient, customer: Profile) -> PaymentSummary:
    res = await execute(
        sbase.table(state_machine.BOOKINGS_TABLE)
        .select("*")
        .eq("customer_id", str(customer.id))
        .eq("status", BookingStatus.AWAITING_PAYMENT.value)
    )
    bookings = [Booking(**row) for row in res.data or []]

    services: dict[str, dict] = {}
    if bookings:
        svc_res = await execute(
            sbase.table(state_machine.SERVICES_TABLE)
            .select("id, name, price")
            .in_("id", list({str(b.service_id) for b in bookings}))
        )
        services = {str(s["id"]): s for s in svc_res.data or []}

    lines = []
    for b in bookings:
        service = services.get(str(b.service_id))
        if not service:
            logger.warning("Booking %s references missing service %s", b.id, b.service_id)
            continue
        original = chargeable_price(b, service)
        lines.append(
            PaymentLine(
                booking=b,
                service_name=service["name"],
                original_price=original,
                final_price=price(original, customer.subscription_plan, customer.role),
            )
        )

    totals = summarize([line.original_price for line in lines], customer.subscription_plan, customer.role)
    return PaymentSummary(subscription_plan=customer.subscription_plan, bookings=lines, **totals)


async def start_subscription(profile: Profile, email: str | None, plan_id: str) -> str:
    price_id = config.STRIPE_PLAN_PRICE_IDS.get(plan_id)
    if plan_id not in PLAN_IDS or not price_id:
        raise ValidationFailed("Invalid planId")

    return await run_in_threadpool(
        payments.create_subscription_session,
        price_id,
        email,
        {"userId": str(profile.id), "planId": plan_id},
    )


async def apply_subscription(sbase: AsyncClient, user_id: str, plan_id: str) -> SubscriptionPlan:
    # Last write wins; there is no expiry or renewal tracking.
    plan = PLAN_IDS.get(plan_id, SubscriptionPlan.NONE)
    res = await execute(sbase.table(PROFILES_TABLE).update({"subscription_plan": plan.value}).eq("id", user_id))
    if not res.data:
        logger.warning("Subscription for unknown user %s (%s) not applied", user_id, plan_id)
    else:
        logger.info("User %s subscribed to %s", user_id, plan.value)
    return plan


def _field(obj, name: str):
    return getattr(obj, name, None) if obj is not None else None


async def handle_stripe_event(sbase: AsyncClient, event, background_tasks: Optional[BackgroundTasks] = None) -> dict[str, Any]:
    """Dispatch an event returned by ``payments.verify_webhook``."""
    if _field(event, "type") != "checkout.session.completed":
        return {"received": True}

    session = _field(_field(event, "data"), "object")
    metadata = _field(session, "metadata")
    result: dict[str, Any] = {"received": True}

    booking_id = _field(metadata, "bookingId")
    if booking_id:
        try:
            outcome = await state_machine.complete_payment(sbase, booking_id)
            result["booking"] = {"id": booking_id, "status": outcome.booking.status.value, "applied": outcome.applied}
            if outcome.applied and background_tasks is not None:
                background_tasks.add_task(notifications.notify_status_change, sbase, outcome.booking)
        except (Conflict, NotFound) as e:
            # Acknowledge so Stripe stops retrying; this needs manual follow-up.
            logger.error("Payment for booking %s could not be applied: %s", booking_id, e.detail)
            result["booking"] = {"id": booking_id, "error": e.detail}

    user_id = _field(metadata, "userId")
    plan_id = _field(metadata, "planId")
    if user_id and plan_id:
        plan = await apply_subscription(sbase, user_id, plan_id)
        result["subscription"] = {"user_id": user_id, "plan": plan.value}

    return result
