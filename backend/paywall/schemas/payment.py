from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class PaymentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    AUTHORIZED = "authorized"
    IN_PROCESS = "in_process"
    IN_MEDIATION = "in_mediation"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    CHARGED_BACK = "charged_back"

    @property
    def is_terminal_failure(self) -> bool:
        return self in {
            PaymentStatus.REJECTED,
            PaymentStatus.CANCELLED,
            PaymentStatus.REFUNDED,
            PaymentStatus.CHARGED_BACK,
        }


class CreatePixRequest(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    amount: Optional[float] = None
    cpf: Optional[str] = None
    description: Optional[str] = None
    plan_id: Optional[str] = Field(default=None, alias="planId")

    class Config:
        populate_by_name = True


class VerifyPaymentRequest(BaseModel):
    payment_id: Optional[str] = Field(default=None, alias="paymentId")
    max_retries: Optional[int] = Field(default=None, alias="maxRetries")
    delay_ms: Optional[int] = Field(default=None, alias="delayMs")

    class Config:
        populate_by_name = True
