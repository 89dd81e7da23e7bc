"""
Notification fan-out.

Runs as a background task after a write has committed. Delivery is best
effort: rows in ``notifications`` and Expo pushes may be dropped or
duplicated, and nothing in the booking flow reads them back.
"""

import logging
from typing import Optional
from uuid import UUID

from exponent_server_sdk import (
    DeviceNotRegisteredError,
    PushClient,
    PushMessage,
    PushServerError,
)
from fastapi.concurrency import run_in_threadpool

import config
from db import AsyncClient
from models import Booking, BookingStatus

logger = logging.getLogger(__name__)

NOTIFICATIONS_TABLE = "notifications"

# status -> (title, message, kind) shown to the customer
STATUS_MESSAGES: dict[BookingStatus, tuple[str, str, str]] = {
    BookingStatus.PENDING: ("Request Update", "Your request is still pending review", "info"),
    BookingStatus.AWAITING_PAYMENT: (
        "Request Accepted",
        "Your service request was accepted. Complete payment to confirm it.",
        "info",
    ),
    BookingStatus.ACCEPTED: ("Service Accepted!", "Great! Your service request has been accepted", "success"),
    BookingStatus.DECLINED: ("Service Request Update", "Sorry, your service request was declined", "warning"),
    BookingStatus.IN_PROGRESS: ("Service Started", "Your provider has started working on your service", "info"),
    BookingStatus.COMPLETED: ("Service Completed!", "Your service has been completed successfully", "success"),
}


def send_push_notification(token: str, title: str, message: str, data: Optional[dict] = None):
    if not token:
        logger.debug("No push token provided.")
        return

    session_args = {}
    if config.EXPO_ACCESS_TOKEN:
        session_args["access_token"] = config.EXPO_ACCESS_TOKEN

    try:
        response = PushClient(**session_args).publish(
            PushMessage(to=token, title=title, body=message, data=data)
        )
    except PushServerError as exc:
        logger.warning("Push Server Error: %s", exc.errors)
        return
    except (ConnectionError, ValueError) as exc:
        logger.warning("Push Connection/Value Error: %s", exc)
        return

    try:
        response.validate_response()
    except DeviceNotRegisteredError:
        logger.info("Device not registered: %s", token)
    except Exception as exc:
        logger.warning("Push Notification Error: %s", exc)
    else:
        logger.debug("Push Notification sent to %s: %s", token, title)


async def notify(sbase: AsyncClient, user_id: UUID | str, title: str, content: str, kind: str = "info", data: Optional[dict] = None):
    try:
        await sbase.table(NOTIFICATIONS_TABLE).insert(
            {"user_id": str(user_id), "title": title, "content": content, "kind": kind}
        ).execute()

        profile_res = await sbase.table("profiles").select("push_token").eq("id", str(user_id)).execute()
        token = profile_res.data[0].get("push_token") if profile_res.data else None
        if token:
            await run_in_threadpool(send_push_notification, token, title, content, data)
    except Exception as e:
        logger.warning("Notification to %s dropped: %s", user_id, e)


async def notify_booking_requested(sbase: AsyncClient, booking: Booking):
    await notify(
        sbase,
        booking.provider_id,
        "New Service Request",
        "You have received a new service request from a customer.",
        "info",
        {"booking_id": str(booking.id), "type": "booking_requested"},
    )


async def notify_status_change(sbase: AsyncClient, booking: Booking):
    title, message, kind = STATUS_MESSAGES.get(
        booking.status,
        ("Request Update", f"Your booking status is now: {booking.status.value}", "info"),
    )
    await notify(
        sbase,
        booking.customer_id,
        title,
        message,
        kind,
        {"booking_id": str(booking.id), "status": booking.status.value, "type": "booking_status"},
    )


async def notify_service_created(sbase: AsyncClient, provider_id: UUID | str, service_name: str):
    await notify(
        sbase,
        provider_id,
        "Service Added",
        f'Your service "{service_name}" has been added successfully.',
        "success",
    )
