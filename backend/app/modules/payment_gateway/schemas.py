"""Pydantic schemas for the payments API."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from app.modules.payment_gateway.interface import CheckoutMode
from app.modules.payment_gateway.models import GatewayProvider, OrderStatus


# ==================== Checkout Schemas ====================

class CheckoutCreateRequest(BaseModel):
    """Schema for starting a checkout."""
    plan_id: uuid.UUID
    gateway: GatewayProvider
    checkout_mode: CheckoutMode = CheckoutMode.HOSTED
    customer_email: Optional[str] = Field(None, max_length=255)


class CheckoutResponse(BaseModel):
    """Checkout descriptor. Exactly one of checkout_url / client_secret is set."""
    order_id: uuid.UUID
    external_order_id: str
    checkout_mode: CheckoutMode
    session_id: str
    checkout_url: Optional[str] = None
    client_secret: Optional[str] = None


# ==================== Order Schemas ====================

class OrderResponse(BaseModel):
    """Schema for order status."""
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    external_order_id: str
    plan_id: uuid.UUID
    amount: Decimal
    currency: str
    gateway: GatewayProvider
    status: OrderStatus
    external_transaction_id: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class OrderHistoryResponse(BaseModel):
    items: list[OrderResponse]
    limit: int
    offset: int


# ==================== Callback Schemas ====================

class CallbackAck(BaseModel):
    """Generic acknowledgement returned to gateways."""
    success: bool = True
