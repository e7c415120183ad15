"""PayPal checkout schemas."""

from pydantic import BaseModel, ConfigDict, Field


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_type: str | None = Field(default=None, alias="planType")


class CreateOrderResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderID")


class CaptureOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str | None = Field(default=None, alias="orderID")


class CaptureOrderResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    capture_id: str | None = Field(default=None, alias="captureID")
    status: str | None = None

