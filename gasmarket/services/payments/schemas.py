"""API request schemas for the simulated M-Pesa payment endpoints."""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class InitiatePaymentRequest(BaseModel):
    """Start a verification-code payment for an order awaiting payment."""

    order_id: str = Field(min_length=1)
    phone_number: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)


class VerifyPaymentRequest(BaseModel):
    # Clients often send the code as a JSON number.
    model_config = ConfigDict(coerce_numbers_to_str=True)

    payment_id: str = Field(min_length=1)
    verification_code: str = Field(min_length=1)


class ResendCodeRequest(BaseModel):
    payment_id: str = Field(min_length=1)
