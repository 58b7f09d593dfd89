"""Payments API router.

Provides API endpoints for:
- Checkout initiation (hosted redirect or embedded client secret)
- Gateway callbacks (Telebirr notify, Stripe webhook)
- Order status and history for the calling user

The user id is taken from the X-User-ID header set by the upstream
authentication layer.
"""

import logging
import uuid

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_session
from app.core.logging import log_error
from app.modules.payment_gateway.dispatcher import CallbackDispatcher, DispatchOutcome
from app.modules.payment_gateway.errors import GatewayRejected, GatewayUnavailable, OrderNotFound
from app.modules.payment_gateway.interface import EmbeddedCheckout
from app.modules.payment_gateway.models import GatewayProvider
from app.modules.payment_gateway.repository import PaymentLedger
from app.modules.payment_gateway.schemas import (
    CallbackAck,
    CheckoutCreateRequest,
    CheckoutResponse,
    OrderHistoryResponse,
    OrderResponse,
)
from app.modules.payment_gateway.service import CheckoutService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def get_dispatcher(request: Request) -> CallbackDispatcher:
    """Dependency to get the application's CallbackDispatcher."""
    return request.app.state.dispatcher


def get_checkout_service(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> CheckoutService:
    """Dependency to get CheckoutService instance."""
    return CheckoutService(PaymentLedger(session), request.app.state.gateways, settings)


# ==================== Checkout ====================

@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    data: CheckoutCreateRequest,
    user_id: uuid.UUID = Header(..., alias="X-User-ID"),
    service: CheckoutService = Depends(get_checkout_service),
):
    """Create an order and a gateway checkout for it."""
    try:
        order, result = await service.create_checkout(
            user_id=user_id,
            plan_id=data.plan_id,
            provider=data.gateway.value,
            mode=data.checkout_mode,
            customer_email=data.customer_email,
        )
    except GatewayRejected as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.reason)
    except GatewayUnavailable:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider unavailable, please retry",
        )
    except ValueError as e:
        code = (
            status.HTTP_404_NOT_FOUND
            if str(e).startswith("Plan not found")
            else status.HTTP_400_BAD_REQUEST
        )
        raise HTTPException(status_code=code, detail=str(e))

    if isinstance(result, EmbeddedCheckout):
        return CheckoutResponse(
            order_id=order.id,
            external_order_id=order.external_order_id,
            checkout_mode=result.mode,
            session_id=result.session_id,
            client_secret=result.client_secret,
        )
    return CheckoutResponse(
        order_id=order.id,
        external_order_id=order.external_order_id,
        checkout_mode=result.mode,
        session_id=result.session_id,
        checkout_url=result.checkout_url,
    )


# ==================== Callbacks ====================

async def _handle_callback(
    provider: str,
    request: Request,
    dispatcher: CallbackDispatcher,
) -> CallbackAck:
    raw_body = await request.body()
    try:
        result = await dispatcher.dispatch(provider, raw_body, request.headers)
    except Exception as e:
        # The gateway only needs to know we received it
        log_error(logger, "Callback processing failed", e, gateway=provider)
        return CallbackAck()

    if result.outcome == DispatchOutcome.REJECTED:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")
    return CallbackAck()


@router.post("/telebirr/callback", response_model=CallbackAck)
async def telebirr_callback(
    request: Request,
    dispatcher: CallbackDispatcher = Depends(get_dispatcher),
):
    """Telebirr payment notification."""
    return await _handle_callback(GatewayProvider.TELEBIRR.value, request, dispatcher)


@router.post("/stripe/webhook", response_model=CallbackAck)
async def stripe_webhook(
    request: Request,
    dispatcher: CallbackDispatcher = Depends(get_dispatcher),
):
    """Stripe webhook endpoint."""
    return await _handle_callback(GatewayProvider.STRIPE.value, request, dispatcher)


# ==================== Orders ====================

@router.get("/status/{external_order_id}", response_model=OrderResponse)
async def get_order_status(
    external_order_id: str,
    user_id: uuid.UUID = Header(..., alias="X-User-ID"),
    service: CheckoutService = Depends(get_checkout_service),
):
    """Get the status of one of the caller's orders."""
    try:
        order = await service.get_order_status(user_id, external_order_id)
    except OrderNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return OrderResponse.model_validate(order)


@router.get("/history", response_model=OrderHistoryResponse)
async def get_order_history(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: uuid.UUID = Header(..., alias="X-User-ID"),
    service: CheckoutService = Depends(get_checkout_service),
):
    """List the caller's orders, newest first."""
    orders = await service.list_history(user_id, limit=limit, offset=offset)
    return OrderHistoryResponse(
        items=[OrderResponse.model_validate(o) for o in orders],
        limit=limit,
        offset=offset,
    )
