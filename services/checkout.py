"""
Checkout
Creates the pending order and its gateway payment, or settles reseller purchases from the wallet
"""

import logging
import secrets
import time
import uuid
from typing import Any, Dict, Optional

from models.order_models import GatewayName, Order
from monitoring.production_logging import log_business_event
from services.order_store import OrderStore
from services.payment_gateway import CustomerDetails, PaymentGatewayError
from services.reseller_wallet import ResellerWalletService
from utils.timezone_utils import utc_now

logger = logging.getLogger(__name__)


class CheckoutError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def generate_client_txn_id() -> str:
    return f"{int(time.time() * 1000)}{secrets.randbelow(10000):04d}"


class CheckoutService:
    def __init__(self, store: OrderStore, gateways, wallet: ResellerWalletService, payment_handler):
        self.store = store
        self.gateways = gateways
        self.wallet = wallet
        self.payment_handler = payment_handler

    async def _build_order(self, user_id: str, customer: CustomerDetails, catalog_item_id: Optional[str],
                           product_name: Optional[str], memory: Optional[str], price: Optional[float],
                           reseller_id: Optional[str], promo_code: Optional[str]) -> Order:
        if catalog_item_id:
            item = await self.store.get_catalog_item(catalog_item_id)
            if item is None:
                raise CheckoutError("Product not found", 404)
            product_name, memory, price = item.name, item.memory, item.price
        if not product_name or price is None:
            raise CheckoutError("Missing required fields: product_name, price", 400)
        if float(price) <= 0:
            raise CheckoutError("Price must be positive", 400)

        return Order(
            id=uuid.uuid4().hex,
            user_id=user_id,
            product_name=product_name,
            memory=memory,
            price=float(price),
            client_txn_id=generate_client_txn_id(),
            reseller_id=reseller_id,
            catalog_item_id=catalog_item_id,
            promo_code=promo_code,
            customer_name=customer.name,
            customer_email=customer.email,
            customer_phone=customer.phone,
            created_at=utc_now(),
        )

    async def create_checkout(self, user_id: str, customer: CustomerDetails, return_url: str,
                              catalog_item_id: Optional[str] = None, product_name: Optional[str] = None,
                              memory: Optional[str] = None, price: Optional[float] = None,
                              reseller_id: Optional[str] = None, pay_with_wallet: bool = False,
                              promo_code: Optional[str] = None, notify_url: Optional[str] = None) -> Dict[str, Any]:
        order = await self._build_order(user_id, customer, catalog_item_id, product_name, memory, price,
                                        reseller_id, promo_code)
        if pay_with_wallet and not reseller_id:
            raise CheckoutError("Wallet payment is only available to resellers", 400)

        order = await self.store.create_order(order)
        logger.info(f"🛒 CHECKOUT: Order {order.id} created for user {user_id} ({order.product_name}, ₹{order.price})")

        if pay_with_wallet:
            return await self._pay_with_wallet(order)

        separator = '&' if '?' in return_url else '?'
        callback_url = f"{return_url}{separator}client_txn_id={order.client_txn_id}&order_id={order.id}"
        try:
            gateway_order = await self.gateways.create_order_with_fallback(
                order.price, customer, callback_url, order.client_txn_id,
                notify_url=notify_url, note=f"Server Plan {order.memory or order.product_name}",
            )
        except PaymentGatewayError as e:
            # order stays pending and unpaid; abandoned-order cleanup removes it
            raise CheckoutError(f"Payment initiation failed: {e.message}", 502)

        await self.store.update_fields(order.id, gateway=gateway_order.gateway, gateway_order_id=gateway_order.gateway_order_id)
        log_business_event('checkout', 'payment_initiated',
                           {'gateway': gateway_order.gateway, 'amount': order.price},
                           user_id=order.user_id, order_id=order.id)
        return {
            'success': True,
            'status': 'payment_pending',
            'order_id': order.id,
            'client_txn_id': order.client_txn_id,
            'payment': gateway_order.to_dict(),
        }

    async def _pay_with_wallet(self, order: Order) -> Dict[str, Any]:
        debit = await self.wallet.deduct_for_order(order.reseller_id, order.price, order.id,
                                                   f"Order {order.product_name} {order.memory or ''}".strip())
        if not debit.get('success'):
            await self.store.delete_order(order.id)
            raise CheckoutError(debit.get('error') or "Wallet payment failed", 402)

        result = await self.payment_handler.confirm_order(order, GatewayName.WALLET.value, debit.get('transaction_id'))
        if result['status'] != 'confirmed':
            await self.wallet.refund_order(order.reseller_id, order.price, order.id, "order already confirmed")
        return {
            **result,
            'client_txn_id': order.client_txn_id,
            'wallet': {'new_balance': debit.get('new_balance'), 'transaction_id': debit.get('transaction_id')},
        }
