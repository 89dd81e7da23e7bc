"""
Booking lifecycle.

    PENDING -> AWAITING_PAYMENT -> ACCEPTED -> IN_PROGRESS -> COMPLETED
    PENDING -> DECLINED

Each transition is applied as a single conditional update keyed on the
booking id, the expected prior status and the acting identity's column, so
two concurrent requests against the same row can never both succeed. When
the update touches no rows the current row is re-read only to explain the
failure; nothing is retried.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from db import AsyncClient, execute
from errors import Conflict, NotAuthorized, NotFound, ValidationFailed
from models import Booking, BookingStatus

logger = logging.getLogger(__name__)

BOOKINGS_TABLE = "service_bookings"
SERVICES_TABLE = "services"

# A customer may hold only one of these per service at a time.
ACTIVE_STATUSES = (
    BookingStatus.PENDING,
    BookingStatus.AWAITING_PAYMENT,
    BookingStatus.ACCEPTED,
)

# Statuses at or past payment confirmation.
PAID_STATUSES = (
    BookingStatus.ACCEPTED,
    BookingStatus.IN_PROGRESS,
    BookingStatus.COMPLETED,
)


class Actor(str, Enum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    PAYMENT = "payment"


class Trigger(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    PAYMENT_COMPLETED = "payment_completed"
    START_WORK = "start_work"
    END_WORK = "end_work"
    SUBMIT_FEEDBACK = "submit_feedback"


@dataclass(frozen=True)
class Transition:
    source: BookingStatus
    target: BookingStatus
    actor: Actor


TRANSITIONS: dict[Trigger, Transition] = {
    Trigger.ACCEPT: Transition(BookingStatus.PENDING, BookingStatus.AWAITING_PAYMENT, Actor.PROVIDER),
    Trigger.DECLINE: Transition(BookingStatus.PENDING, BookingStatus.DECLINED, Actor.PROVIDER),
    Trigger.PAYMENT_COMPLETED: Transition(BookingStatus.AWAITING_PAYMENT, BookingStatus.ACCEPTED, Actor.PAYMENT),
    Trigger.START_WORK: Transition(BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS, Actor.PROVIDER),
    Trigger.END_WORK: Transition(BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED, Actor.PROVIDER),
    # Feedback annotates a completed booking; the status itself does not move.
    Trigger.SUBMIT_FEEDBACK: Transition(BookingStatus.COMPLETED, BookingStatus.COMPLETED, Actor.CUSTOMER),
}

ACTOR_COLUMNS = {
    Actor.CUSTOMER: "customer_id",
    Actor.PROVIDER: "provider_id",
}


@dataclass
class TransitionResult:
    booking: Booking
    applied: bool = True


def transition_for(trigger: Trigger) -> Transition:
    return TRANSITIONS[Trigger(trigger)]


def can_transition(status: BookingStatus, trigger: Trigger, actor: Actor) -> bool:
    t = transition_for(trigger)
    return t.source == BookingStatus(status) and t.actor == Actor(actor)


def validate_feedback(feedback: Optional[str], rating: Any) -> tuple[str, int]:
    """Both fields are required together; rating is an integer from 1 to 5."""
    text = (feedback or "").strip()
    if not text or rating is None:
        raise ValidationFailed("Please provide both feedback and rating")
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise ValidationFailed("Rating must be an integer")
    if rating < 1 or rating > 5:
        raise ValidationFailed("Rating should be between 1 and 5")
    return text, rating


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_update(trigger: Trigger, extra: Optional[dict] = None) -> dict:
    """Column values written by a transition, status included."""
    t = transition_for(trigger)
    values: dict[str, Any] = {"status": t.target.value}
    if trigger == Trigger.START_WORK:
        values["started_at"] = _now()
    elif trigger == Trigger.END_WORK:
        values["ended_at"] = _now()
    if extra:
        values.update(extra)
    return values


async def fetch_booking(sbase: AsyncClient, booking_id: UUID | str) -> Booking:
    res = await execute(sbase.table(BOOKINGS_TABLE).select("*").eq("id", str(booking_id)))
    if not res.data:
        raise NotFound("Booking not found")
    return Booking(**res.data[0])


async def apply_transition(
    sbase: AsyncClient,
    booking_id: UUID | str,
    trigger: Trigger,
    actor_id: UUID | str | None = None,
    extra: Optional[dict] = None,
) -> TransitionResult:
    t = transition_for(trigger)
    column = ACTOR_COLUMNS.get(t.actor)
    if column and actor_id is None:
        raise NotAuthorized(f"{trigger.value} requires an authenticated {t.actor.value}")

    query = (
        sbase.table(BOOKINGS_TABLE)
        .update(build_update(trigger, extra))
        .eq("id", str(booking_id))
        .eq("status", t.source.value)
    )
    if column:
        query = query.eq(column, str(actor_id))
    if trigger == Trigger.SUBMIT_FEEDBACK:
        query = query.is_("rating", "null").is_("feedback", "null")

    res = await execute(query)
    if res.data:
        booking = Booking(**res.data[0])
        logger.info("Booking %s: %s -> %s (%s)", booking_id, t.source.value, t.target.value, trigger.value)
        return TransitionResult(booking=booking, applied=True)

    # Nothing matched; explain why without retrying.
    current = await fetch_booking(sbase, booking_id)

    if column and str(getattr(current, column)) != str(actor_id):
        raise NotAuthorized(f"Only the booking's {t.actor.value} can {trigger.value.replace('_', ' ')}")

    if trigger == Trigger.PAYMENT_COMPLETED and current.status in PAID_STATUSES:
        logger.info("Booking %s already paid (status %s), ignoring repeat confirmation", booking_id, current.status.value)
        return TransitionResult(booking=current, applied=False)

    if trigger == Trigger.SUBMIT_FEEDBACK and (current.rating is not None or current.feedback is not None):
        raise Conflict("Feedback has already been submitted for this booking")

    raise Conflict(
        f"Cannot {trigger.value.replace('_', ' ')}: booking is {current.status.value}, expected {t.source.value}"
    )


async def request_booking(sbase: AsyncClient, customer_id: UUID | str, service_id: UUID | str) -> Booking:
    svc_res = await execute(sbase.table(SERVICES_TABLE).select("id, created_by").eq("id", str(service_id)))
    if not svc_res.data:
        raise NotFound("Service not found")

    provider_id = svc_res.data[0]["created_by"]
    if str(provider_id) == str(customer_id):
        raise NotAuthorized("You cannot book your own service")

    active_res = await execute(
        sbase.table(BOOKINGS_TABLE)
        .select("id, status")
        .eq("customer_id", str(customer_id))
        .eq("service_id", str(service_id))
        .in_("status", [s.value for s in ACTIVE_STATUSES])
    )
    if active_res.data:
        raise Conflict("You already have an active booking for this service")

    insert_res = await execute(
        sbase.table(BOOKINGS_TABLE).insert(
            {
                "customer_id": str(customer_id),
                "provider_id": str(provider_id),
                "service_id": str(service_id),
                "status": BookingStatus.PENDING.value,
            }
        )
    )
    if not insert_res.data:
        raise Conflict("Booking could not be created")

    booking = Booking(**insert_res.data[0])
    logger.info("Booking %s requested by %s for service %s", booking.id, customer_id, service_id)
    return booking


async def accept(sbase: AsyncClient, provider_id: UUID | str, booking_id: UUID | str) -> TransitionResult:
    """Accept a pending request and freeze the service price the customer will be charged against."""
    booking = await fetch_booking(sbase, booking_id)
    svc_res = await execute(sbase.table(SERVICES_TABLE).select("price").eq("id", str(booking.service_id)))
    extra = {}
    if svc_res.data:
        extra["price_at_acceptance"] = str(svc_res.data[0]["price"])
    return await apply_transition(sbase, booking_id, Trigger.ACCEPT, provider_id, extra)


async def decline(sbase: AsyncClient, provider_id: UUID | str, booking_id: UUID | str) -> TransitionResult:
    return await apply_transition(sbase, booking_id, Trigger.DECLINE, provider_id)


async def start_work(sbase: AsyncClient, provider_id: UUID | str, booking_id: UUID | str) -> TransitionResult:
    return await apply_transition(sbase, booking_id, Trigger.START_WORK, provider_id)


async def end_work(sbase: AsyncClient, provider_id: UUID | str, booking_id: UUID | str) -> TransitionResult:
    return await apply_transition(sbase, booking_id, Trigger.END_WORK, provider_id)


async def complete_payment(sbase: AsyncClient, booking_id: UUID | str) -> TransitionResult:
    return await apply_transition(sbase, booking_id, Trigger.PAYMENT_COMPLETED)


async def submit_feedback(
    sbase: AsyncClient,
    customer_id: UUID | str,
    booking_id: UUID | str,
    feedback: Optional[str],
    rating: Any,
) -> TransitionResult:
    text, stars = validate_feedback(feedback, rating)
    return await apply_transition(
        sbase,
        booking_id,
        Trigger.SUBMIT_FEEDBACK,
        customer_id,
        {"feedback": text, "rating": stars},
    )
