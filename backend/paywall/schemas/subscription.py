from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    PIX = "pix"
    PAYPAL = "paypal"
    GOOGLE_PAY = "google_pay"
    CARD = "card"
    MERCADOPAGO = "mercadopago"
    MANUAL = "manual"


class DebugAction(str, Enum):
    CHECK = "check"
    FIX = "fix"


class DebugSubscriptionRequest(BaseModel):
    action: Optional[str] = None
    email: Optional[str] = None


class CheckSubscriberRequest(BaseModel):
    email: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId")
    strict: bool = False

    class Config:
        populate_by_name = True
