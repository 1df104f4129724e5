"""
Reseller wallet operations
Balance plus credit limit funds reseller purchases; every movement is written to wallet_transactions
"""

import logging
from typing import Any, Dict, Optional

from monitoring.production_logging import audit_log
from services.order_store import OrderStore, WalletError

logger = logging.getLogger(__name__)


class ResellerWalletService:
    def __init__(self, store: OrderStore):
        self.store = store

    async def deduct_for_order(self, reseller_id: str, amount: float, order_id: Optional[str],
                               description: str = 'Order provisioning') -> Dict[str, Any]:
        if amount <= 0:
            raise WalletError("Deduction amount must be positive")
        result = await self.store.debit_reseller_wallet(reseller_id, float(amount), order_id, description)
        if not result.get('success'):
            logger.warning(f"💳 WALLET: Deduction of {amount} refused for reseller {reseller_id}: {result.get('error')}")
            return result
        audit_log('wallet_debit', order_id=order_id, reseller_id=reseller_id, amount=amount,
                  new_balance=result.get('new_balance'), transaction_id=result.get('transaction_id'))
        return result

    async def recharge(self, reseller_id: str, amount: float, description: str = 'Wallet recharge') -> Dict[str, Any]:
        if amount <= 0:
            raise WalletError("Recharge amount must be positive")
        result = await self.store.credit_reseller_wallet(reseller_id, float(amount), None, description)
        if result.get('success'):
            audit_log('wallet_credit', reseller_id=reseller_id, amount=amount, new_balance=result.get('new_balance'))
        return result

    async def refund_order(self, reseller_id: str, amount: float, order_id: str, reason: str) -> Dict[str, Any]:
        """Give back a deduction whose order could not be confirmed"""
        result = await self.store.credit_reseller_wallet(reseller_id, float(amount), order_id, f"Refund: {reason}")
        if result.get('success'):
            audit_log('wallet_refund', order_id=order_id, reseller_id=reseller_id, amount=amount, reason=reason)
        else:
            logger.error(f"🚨 WALLET: Refund of {amount} for order {order_id} failed: {result.get('error')}")
        return result
