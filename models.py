from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"  # reserved, no transition produces it


class Role(str, Enum):
    CUSTOMER = "customer"
    SERVICE_PROVIDER = "service_provider"
    ADMIN = "admin"


class SubscriptionPlan(str, Enum):
    NONE = "NONE"
    BASIC = "BASIC"
    PREMIUM = "PREMIUM"
    ENTERPRISE = "ENTERPRISE"
    PROVIDER = "PROVIDER"


class Profile(BaseModel):
    id: UUID
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: Role
    subscription_plan: SubscriptionPlan = SubscriptionPlan.NONE
    push_token: Optional[str] = None


class Service(BaseModel):
    id: UUID
    created_at: Optional[datetime] = None
    name: str
    description: Optional[str] = None
    price: Decimal = Field(ge=0)
    created_by: UUID
    image_url: Optional[str] = None


class Booking(BaseModel):
    id: UUID
    created_at: Optional[datetime] = None
    customer_id: UUID
    provider_id: UUID
    service_id: UUID
    status: BookingStatus = BookingStatus.PENDING
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    feedback: Optional[str] = None
    rating: Optional[int] = None
    price_at_acceptance: Optional[Decimal] = None
    checkout_session_id: Optional[str] = None


class Notification(BaseModel):
    id: int
    created_at: datetime
    user_id: UUID
    title: str
    content: Optional[str] = None
    kind: Optional[str] = "info"  # info, success, warning, error

# --- Read/Response Models ---

class ServiceRead(Service):
    discounted_price: Optional[Decimal] = None


class TransitionResponse(BaseModel):
    booking: Booking
    applied: bool = True


class CheckoutResponse(BaseModel):
    url: str
    session_id: str
    amount: int
    currency: str
    reused: bool = False


class PaymentLine(BaseModel):
    booking: Booking
    service_name: str
    original_price: Decimal
    final_price: Decimal


class PaymentSummary(BaseModel):
    subscription_plan: SubscriptionPlan
    bookings: list[PaymentLine] = []
    total: Decimal
    original_total: Decimal
    savings: Decimal


class SubscribeResponse(BaseModel):
    url: str


class BookingPage(BaseModel):
    data: list[Booking] = []
    has_more: bool = False


class AuthUser(BaseModel):
    id: UUID
    email: Optional[str] = None
