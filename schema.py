from pydantic import BaseModel, Field
from uuid import UUID


class BookServiceRequest(BaseModel):
    service_id: UUID


class BookingActionRequest(BaseModel):
    booking_id: UUID


class FeedbackRequest(BaseModel):
    booking_id: UUID
    feedback: str | None = None
    rating: int | None = None


class CheckoutRequest(BaseModel):
    booking_id: UUID


class SubscribeRequest(BaseModel):
    plan_id: str = Field(alias="planId")

    model_config = {"populate_by_name": True}


class AssignRoleRequest(BaseModel):
    role: str
    full_name: str


class ViewServicesRequest(BaseModel):
    page: int = Field(default=0, ge=0)
    query: str | None = None


class ViewMyBookingsRequest(BaseModel):
    page: int = Field(default=1, ge=1)
    size: int = Field(default=10, ge=1, le=100)


class RegisterPushTokenRequest(BaseModel):
    token: str
