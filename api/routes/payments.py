"""
Checkout, Payment Confirmation and Renewal Routes
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends

from api.middleware.authentication import get_current_user_id
from api.schemas.orders import CheckoutRequest, RazorpayVerifyRequest, RenewRequest
from api.utils.errors import ResourceNotFoundError, raise_for_service_error
from api.utils.responses import success_response
from services.checkout import CheckoutError
from services.container import ServiceContainer, get_services
from services.renewal_processor import RenewalError
from webhook_handler import WebhookRejected

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/orders/checkout", response_model=dict)
async def checkout(
    request: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    services: ServiceContainer = Depends(get_services),
):
    """Create a pending order and its gateway payment (or pay from the reseller wallet)"""
    try:
        result = await services.checkout.create_checkout(
            user_id,
            request.customer.to_details(user_id),
            request.return_url,
            catalog_item_id=request.catalog_item_id,
            product_name=request.product_name,
            memory=request.memory,
            price=request.price,
            reseller_id=request.reseller_id,
            pay_with_wallet=request.pay_with_wallet,
            promo_code=request.promo_code,
        )
    except CheckoutError as e:
        raise_for_service_error(e)
    return success_response(result, "Payment initiated" if result['status'] == 'payment_pending' else "Order confirmed")


@router.get("/orders/{order_id}", response_model=dict)
async def get_order(
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    services: ServiceContainer = Depends(get_services),
):
    order = await services.store.get_order(order_id)
    if order is None or order.user_id != user_id:
        raise ResourceNotFoundError("Order", order_id)
    return success_response(order.to_dict())


@router.post("/payments/razorpay/verify", response_model=dict)
async def verify_razorpay_payment(
    request: RazorpayVerifyRequest,
    services: ServiceContainer = Depends(get_services),
):
    """Razorpay checkout callback; the signature is the authentication"""
    payload = {
        'razorpay_order_id': request.razorpay_order_id,
        'razorpay_payment_id': request.razorpay_payment_id,
        'razorpay_signature': request.razorpay_signature,
    }
    try:
        result = await services.webhook_handler.verify_razorpay_checkout(payload)
    except WebhookRejected as e:
        raise_for_service_error(e)
    return success_response(result)


@router.post("/orders/{order_id}/renew", response_model=dict)
async def renew_order(
    order_id: str,
    request: RenewRequest,
    user_id: str = Depends(get_current_user_id),
    services: ServiceContainer = Depends(get_services),
):
    try:
        result = await services.renewal_engine.initiate_renewal(
            order_id, user_id, request.customer.to_details(user_id), request.return_url
        )
    except RenewalError as e:
        raise_for_service_error(e)
    return success_response(result)


@router.post("/orders/{order_id}/renew/confirm", response_model=dict)
async def confirm_renewal(
    order_id: str,
    payload: Dict[str, Any] = Body(...),
    user_id: str = Depends(get_current_user_id),
    services: ServiceContainer = Depends(get_services),
):
    try:
        result = await services.renewal_engine.confirm_renewal_payment(order_id, user_id, payload)
    except RenewalError as e:
        raise_for_service_error(e)
    return success_response(result)
