import logging
import re
import time
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException, BackgroundTasks, Depends, File, Form, Request, UploadFile

import billing
import config
import notifications
import pricing
import state_machine
from db import get_supabase, AsyncClient, execute
from errors import MarketplaceError, marketplace_error_handler
from models import (
    AuthUser,
    Booking,
    BookingPage,
    BookingStatus,
    CheckoutResponse,
    Notification,
    PaymentSummary,
    Profile,
    Role,
    ServiceRead,
    SubscribeResponse,
    TransitionResponse,
)
from payments import verify_webhook
from schema import (
    AssignRoleRequest,
    BookServiceRequest,
    BookingActionRequest,
    CheckoutRequest,
    FeedbackRequest,
    RegisterPushTokenRequest,
    SubscribeRequest,
    ViewMyBookingsRequest,
    ViewServicesRequest,
)
from utils import get_current_profile, get_current_user, get_optional_profile, verify_customer, verify_provider

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

app = FastAPI(title="ServiceHub Backend", docs_url="/api/docs", redoc_url="/api/redoc", openapi_url="/api/openapi.json")
app.add_exception_handler(MarketplaceError, marketplace_error_handler)

SERVICES_PAGE_SIZE = 12
BOOKINGS = state_machine.BOOKINGS_TABLE
SERVICES = state_machine.SERVICES_TABLE

# --- Profile Functions ---

@app.post("/api/funcs/profile.assignRole", response_model=Profile)
async def assign_role(data: AssignRoleRequest, user: AuthUser = Depends(get_current_user), sbase: AsyncClient = Depends(get_supabase)):
    # Admins are provisioned out of band, never self-assigned.
    if data.role not in (Role.CUSTOMER.value, Role.SERVICE_PROVIDER.value):
        raise HTTPException(status_code=400, detail="Role must be 'customer' or 'service_provider'")
    if not data.full_name.strip():
        raise HTTPException(status_code=400, detail="Missing required fields")

    existing = await execute(sbase.table("profiles").select("id").eq("id", str(user.id)))
    if existing.data:
        raise HTTPException(status_code=409, detail="Role already assigned")

    profile_res = await execute(sbase.table("profiles").insert({
        "id": str(user.id),
        "email": user.email,
        "role": data.role,
        "full_name": data.full_name.strip(),
    }))
    if not profile_res.data:
        raise HTTPException(status_code=500, detail="Failed to create profile")

    logger.info("Assigned role %s to %s", data.role, user.id)
    return profile_res.data[0]

@app.post("/api/funcs/profile.view", response_model=Profile)
async def view_profile(profile: Profile = Depends(get_current_profile)):
    return profile

# --- Service Functions ---

def _search_filter(query: str) -> str:
    # Characters that carry meaning in PostgREST filter strings are dropped.
    term = re.sub(r"[,()%*\\]", " ", query).strip()
    return f"name.ilike.%{term}%,description.ilike.%{term}%"

@app.post("/api/funcs/service.viewServices", response_model=list[ServiceRead])
async def view_services(
    data: Optional[ViewServicesRequest] = None,
    profile: Optional[Profile] = Depends(get_optional_profile),
    sbase: AsyncClient = Depends(get_supabase),
):
    data = data or ViewServicesRequest()
    start = data.page * SERVICES_PAGE_SIZE

    query = sbase.table(SERVICES).select("*")
    if data.query and data.query.strip():
        query = query.or_(_search_filter(data.query))
    response = await execute(query.order("created_at", desc=True).range(start, start + SERVICES_PAGE_SIZE - 1))

    services = [ServiceRead(**row) for row in response.data or []]
    if profile:
        for svc in services:
            svc.discounted_price = pricing.price(svc.price, profile.subscription_plan, profile.role)
    return services

@app.post("/api/funcs/service.create", response_model=ServiceRead)
async def create_service(
    background_tasks: BackgroundTasks,
    name: str = Form(...),
    description: str = Form(...),
    price: Decimal = Form(..., ge=0),
    image: Optional[UploadFile] = File(None),
    provider: Profile = Depends(verify_provider),
    sbase: AsyncClient = Depends(get_supabase),
):
    if not name.strip() or not description.strip():
        raise HTTPException(status_code=400, detail="Please fill in both service name and description")

    image_url = config.DEFAULT_SERVICE_IMAGE
    if image is not None and image.filename:
        ext = image.filename.rsplit(".", 1)[-1] if "." in image.filename else "png"
        file_name = f"{int(time.time() * 1000)}-{uuid4().hex[:8]}.{ext}"
        try:
            bucket = sbase.storage.from_(config.SERVICE_IMAGES_BUCKET)
            await bucket.upload(file_name, await image.read(), {"content-type": image.content_type or "application/octet-stream"})
            image_url = await bucket.get_public_url(file_name)
        except Exception as e:
            # The service is still created, with the default image.
            logger.warning("Upload failed for %s, using default image: %s", file_name, e)

    response = await execute(sbase.table(SERVICES).insert({
        "name": name.strip(),
        "description": description.strip(),
        "created_by": str(provider.id),
        "image_url": image_url,
        "price": str(price),
    }))
    if not response.data:
        raise HTTPException(status_code=500, detail="Error creating service")

    background_tasks.add_task(notifications.notify_service_created, sbase, provider.id, name.strip())
    return response.data[0]

# --- Booking Functions (customer) ---

@app.post("/api/funcs/booking.request", response_model=Booking)
async def request_booking(data: BookServiceRequest, background_tasks: BackgroundTasks, customer: Profile = Depends(verify_customer), sbase: AsyncClient = Depends(get_supabase)):
    booking = await state_machine.request_booking(sbase, customer.id, data.service_id)
    background_tasks.add_task(notifications.notify_booking_requested, sbase, booking)
    return booking

@app.post("/api/funcs/booking.submitFeedback", response_model=TransitionResponse)
async def submit_feedback(data: FeedbackRequest, customer: Profile = Depends(verify_customer), sbase: AsyncClient = Depends(get_supabase)):
    result = await state_machine.submit_feedback(sbase, customer.id, data.booking_id, data.feedback, data.rating)
    return TransitionResponse(booking=result.booking, applied=result.applied)

@app.post("/api/funcs/booking.viewMyBookings", response_model=BookingPage)
async def view_my_bookings(data: Optional[ViewMyBookingsRequest] = None, customer: Profile = Depends(verify_customer), sbase: AsyncClient = Depends(get_supabase)):
    data = data or ViewMyBookingsRequest()
    start = (data.page - 1) * data.size

    response = await execute(
        sbase.table(BOOKINGS).select("*").eq("customer_id", str(customer.id))
        .order("created_at", desc=True).range(start, start + data.size - 1)
    )
    rows = response.data or []
    return BookingPage(data=rows, has_more=len(rows) == data.size)

@app.post("/api/funcs/booking.viewCompleted", response_model=list[Booking])
async def view_completed(customer: Profile = Depends(verify_customer), sbase: AsyncClient = Depends(get_supabase)):
    response = await execute(
        sbase.table(BOOKINGS).select("*").eq("customer_id", str(customer.id)).eq("status", BookingStatus.COMPLETED.value)
    )
    return response.data

# --- Booking Functions (provider) ---

async def _provider_transition(action, data: BookingActionRequest, provider: Profile, sbase: AsyncClient, background_tasks: BackgroundTasks) -> TransitionResponse:
    result = await action(sbase, provider.id, data.booking_id)
    if result.applied:
        background_tasks.add_task(notifications.notify_status_change, sbase, result.booking)
    return TransitionResponse(booking=result.booking, applied=result.applied)

@app.post("/api/funcs/booking.accept", response_model=TransitionResponse)
async def accept_booking(data: BookingActionRequest, background_tasks: BackgroundTasks, provider: Profile = Depends(verify_provider), sbase: AsyncClient = Depends(get_supabase)):
    return await _provider_transition(state_machine.accept, data, provider, sbase, background_tasks)

@app.post("/api/funcs/booking.decline", response_model=TransitionResponse)
async def decline_booking(data: BookingActionRequest, background_tasks: BackgroundTasks, provider: Profile = Depends(verify_provider), sbase: AsyncClient = Depends(get_supabase)):
    return await _provider_transition(state_machine.decline, data, provider, sbase, background_tasks)

@app.post("/api/funcs/booking.startWork", response_model=TransitionResponse)
async def start_work(data: BookingActionRequest, background_tasks: BackgroundTasks, provider: Profile = Depends(verify_provider), sbase: AsyncClient = Depends(get_supabase)):
    return await _provider_transition(state_machine.start_work, data, provider, sbase, background_tasks)

@app.post("/api/funcs/booking.endWork", response_model=TransitionResponse)
async def end_work(data: BookingActionRequest, background_tasks: BackgroundTasks, provider: Profile = Depends(verify_provider), sbase: AsyncClient = Depends(get_supabase)):
    return await _provider_transition(state_machine.end_work, data, provider, sbase, background_tasks)

@app.post("/api/funcs/booking.viewRequests", response_model=list[Booking])
async def view_requests(provider: Profile = Depends(verify_provider), sbase: AsyncClient = Depends(get_supabase)):
    response = await execute(
        sbase.table(BOOKINGS).select("*").eq("provider_id", str(provider.id)).order("created_at", desc=True)
    )
    return response.data

@app.post("/api/funcs/booking.viewActive", response_model=list[Booking])
async def view_active(provider: Profile = Depends(verify_provider), sbase: AsyncClient = Depends(get_supabase)):
    response = await execute(
        sbase.table(BOOKINGS).select("*").eq("provider_id", str(provider.id))
        .in_("status", [BookingStatus.ACCEPTED.value, BookingStatus.IN_PROGRESS.value])
    )
    return response.data

@app.post("/api/funcs/booking.viewFeedback", response_model=list[Booking])
async def view_feedback(provider: Profile = Depends(verify_provider), sbase: AsyncClient = Depends(get_supabase)):
    response = await execute(
        sbase.table(BOOKINGS).select("*").eq("provider_id", str(provider.id))
        .eq("status", BookingStatus.COMPLETED.value)
    )
    return [row for row in response.data or [] if row.get("rating") is not None]

# --- Payment Functions ---

@app.post("/api/funcs/payment.checkout", response_model=CheckoutResponse)
async def checkout(data: CheckoutRequest, customer: Profile = Depends(verify_customer), sbase: AsyncClient = Depends(get_supabase)):
    return await billing.create_checkout(sbase, customer, data.booking_id)

@app.post("/api/funcs/payment.summary", response_model=PaymentSummary)
async def payment_summary(customer: Profile = Depends(verify_customer), sbase: AsyncClient = Depends(get_supabase)):
    return await billing.payment_summary(sbase, customer)

@app.post("/api/funcs/payment.subscribe", response_model=SubscribeResponse)
async def subscribe(data: SubscribeRequest, user: AuthUser = Depends(get_current_user), profile: Profile = Depends(get_current_profile)):
    url = await billing.start_subscription(profile, user.email, data.plan_id)
    return SubscribeResponse(url=url)

@app.post("/api/webhooks/stripe")
async def stripe_webhook(request: Request, background_tasks: BackgroundTasks, sbase: AsyncClient = Depends(get_supabase)):
    payload = await request.body()
    event = verify_webhook(payload, request.headers.get("stripe-signature"))
    return await billing.handle_stripe_event(sbase, event, background_tasks)

# --- Notification Functions ---

@app.post("/api/funcs/notification.viewNotifications", response_model=list[Notification])
async def view_notifications(user: AuthUser = Depends(get_current_user), sbase: AsyncClient = Depends(get_supabase)):
    response = await execute(
        sbase.table(notifications.NOTIFICATIONS_TABLE).select("*").eq("user_id", str(user.id)).order("created_at", desc=True)
    )
    return response.data

@app.post("/api/funcs/utils.registerPushToken")
async def register_push_token(data: RegisterPushTokenRequest, user: AuthUser = Depends(get_current_user), sbase: AsyncClient = Depends(get_supabase)):
    response = await execute(sbase.table("profiles").update({"push_token": data.token}).eq("id", str(user.id)))
    if not response.data:
        raise HTTPException(status_code=404, detail="Profile not found")
    return {"message": "Push token updated"}

def main():
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

if __name__ == "__main__":
    main()
