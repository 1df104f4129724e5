"""
Order Store - single source of truth for orders and server action requests

All mutation goes through targeted field updates keyed by id. Lifecycle changes use
compare-and-swap updates (UPDATE ... WHERE <current value> IN (...)) so concurrent
webhook deliveries and batch sweeps can never claim the same order twice.
"""

import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from psycopg2.extras import Json

from models.order_models import (
    ActionRequestStatus, CatalogItem, Order, OrderStatus, PendingRenewal, ProviderName,
    ProvisioningStatus, RenewalPayment, ServerAction, ServerActionRequest
)
from utils.credentials import CredentialVault
from utils.timezone_utils import ensure_aware, utc_now

logger = logging.getLogger(__name__)


class DuplicateActionRequestError(Exception):
    """Raised when a pending request for the same (order, action) already exists"""
    pass


class WalletError(Exception):
    """Raised when a reseller wallet operation cannot be applied"""
    pass


# Columns callers may set through update_fields / CAS extras
ORDER_MUTABLE_FIELDS = frozenset({
    'gateway', 'gateway_order_id', 'transaction_id', 'status', 'provider', 'provider_service_id',
    'ip_address', 'username', 'password', 'os', 'provisioning_status', 'provisioning_error',
    'provisioning_error_code', 'auto_provisioned', 'expiry_date', 'pending_renewal',
    'provider_metadata', 'machine_status', 'power_status', 'last_sync_at', 'last_action',
    'last_action_at', 'promo_metadata', 'catalog_item_id',
})

# Statuses for which a confirmed order is still waiting on the provider
AWAITING_CREDENTIALS = (ProvisioningStatus.PROVISIONING, ProvisioningStatus.SUSPENDED)


def _check_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - ORDER_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown order fields: {', '.join(sorted(unknown))}")


class OrderStore(ABC):
    """Repository contract shared by the Postgres and in-memory stores"""

    # --- orders ---------------------------------------------------------

    @abstractmethod
    async def create_order(self, order: Order) -> Order: ...

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]: ...

    @abstractmethod
    async def find_by_client_txn_id(self, client_txn_id: str) -> Optional[Order]: ...

    @abstractmethod
    async def find_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Order]: ...

    @abstractmethod
    async def find_by_renewal_txn_id(self, renewal_txn_id: str) -> Optional[Order]: ...

    @abstractmethod
    async def update_fields(self, order_id: str, **fields: Any) -> bool: ...

    @abstractmethod
    async def compare_and_set_provisioning_status(
        self, order_id: str, expected: Iterable[ProvisioningStatus], new: ProvisioningStatus, **fields: Any
    ) -> bool: ...

    @abstractmethod
    async def compare_and_set_status(
        self, order_id: str, expected: Iterable[OrderStatus], new: OrderStatus, **fields: Any
    ) -> bool: ...

    async def confirm_payment(self, order_id: str, transaction_id: Optional[str], **fields: Any) -> bool:
        """pending → confirmed; False when the order was already confirmed (or failed) by someone else"""
        return await self.compare_and_set_status(
            order_id, [OrderStatus.PENDING], OrderStatus.CONFIRMED, transaction_id=transaction_id, **fields
        )

    @abstractmethod
    async def append_renewal_payment(self, order_id: str, entry: RenewalPayment, new_expiry: datetime) -> bool:
        """Append a ledger entry unless its renewal_txn_id is already recorded; clears the matching pending renewal"""

    @abstractmethod
    async def record_provider_renewal(self, order_id: str, renewal_txn_id: str, success: bool,
                                      result: Dict[str, Any]) -> bool:
        """Fill the provider outcome of a ledger entry; write-once (only while provider_renewal_result is unset)"""

    @abstractmethod
    async def set_pending_renewal(self, order_id: str, pending: PendingRenewal) -> bool:
        """Store a pending renewal only when none is present"""

    @abstractmethod
    async def clear_pending_renewal(self, order_id: str, renewal_txn_id: str) -> bool: ...

    @abstractmethod
    async def list_batch_candidates(self, limit: int) -> List[Order]: ...

    @abstractmethod
    async def list_orders_with_pending_renewal(self) -> List[Order]: ...

    @abstractmethod
    async def list_orders_missing_credentials(self, limit: int) -> List[Order]: ...

    @abstractmethod
    async def list_abandoned_orders(self, created_before: datetime) -> List[Order]: ...

    @abstractmethod
    async def delete_order(self, order_id: str) -> bool:
        """Delete an unpaid order; failed orders are kept for audit"""

    @abstractmethod
    async def provisioning_stats(self) -> Dict[str, int]: ...

    @abstractmethod
    async def get_catalog_item(self, item_id: str) -> Optional[CatalogItem]: ...

    # --- server action requests -----------------------------------------

    @abstractmethod
    async def create_action_request(self, request: ServerActionRequest) -> ServerActionRequest: ...

    @abstractmethod
    async def get_action_request(self, request_id: str) -> Optional[ServerActionRequest]: ...

    @abstractmethod
    async def get_latest_pending_action(self, order_id: str) -> Optional[ServerActionRequest]: ...

    @abstractmethod
    async def list_pending_actions(self) -> List[ServerActionRequest]: ...

    @abstractmethod
    async def resolve_action_request(
        self, request_id: str, status: ActionRequestStatus, admin_notes: Optional[str]
    ) -> bool:
        """CAS pending → approved/rejected"""

    # --- reseller wallet ------------------------------------------------

    @abstractmethod
    async def debit_reseller_wallet(
        self, reseller_id: str, amount: float, order_id: Optional[str], description: str
    ) -> Dict[str, Any]: ...

    @abstractmethod
    async def credit_reseller_wallet(
        self, reseller_id: str, amount: float, order_id: Optional[str], description: str
    ) -> Dict[str, Any]: ...


# ====================================================================
# IN-MEMORY STORE
# ====================================================================

class InMemoryOrderStore(OrderStore):
    """
    Process-local store with the same semantics as PostgresOrderStore.

    Every method completes without awaiting anything in between its check and its write,
    so within one event loop each CAS behaves like the single SQL statement it mirrors.
    """

    def __init__(self):
        self.orders: Dict[str, Order] = {}
        self.action_requests: Dict[str, ServerActionRequest] = {}
        self.catalog: Dict[str, CatalogItem] = {}
        self.resellers: Dict[str, Dict[str, Any]] = {}
        self.wallet_transactions: List[Dict[str, Any]] = []

    def _copy(self, order: Optional[Order]) -> Optional[Order]:
        return copy.deepcopy(order) if order is not None else None

    def _apply(self, order: Order, fields: Dict[str, Any]) -> None:
        for key, value in fields.items():
            setattr(order, key, copy.deepcopy(value))
        order.updated_at = utc_now()

    async def create_order(self, order: Order) -> Order:
        if any(o.client_txn_id == order.client_txn_id for o in self.orders.values()):
            raise ValueError(f"Duplicate client_txn_id {order.client_txn_id}")
        stored = copy.deepcopy(order)
        stored.created_at = stored.created_at or utc_now()
        stored.updated_at = stored.created_at
        self.orders[stored.id] = stored
        return self._copy(stored)

    async def get_order(self, order_id: str) -> Optional[Order]:
        return self._copy(self.orders.get(order_id))

    async def find_by_client_txn_id(self, client_txn_id: str) -> Optional[Order]:
        return self._copy(next((o for o in self.orders.values() if o.client_txn_id == client_txn_id), None))

    async def find_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Order]:
        return self._copy(next((o for o in self.orders.values() if o.gateway_order_id == gateway_order_id), None))

    async def find_by_renewal_txn_id(self, renewal_txn_id: str) -> Optional[Order]:
        for order in self.orders.values():
            pending = order.pending_renewal
            if pending and renewal_txn_id in (pending.renewal_txn_id, pending.gateway_order_id):
                return self._copy(order)
        return None

    async def update_fields(self, order_id: str, **fields: Any) -> bool:
        _check_fields(fields)
        order = self.orders.get(order_id)
        if order is None:
            return False
        self._apply(order, fields)
        return True

    async def compare_and_set_provisioning_status(self, order_id, expected, new, **fields) -> bool:
        _check_fields(fields)
        order = self.orders.get(order_id)
        if order is None or order.provisioning_status not in set(expected):
            return False
        self._apply(order, {**fields, 'provisioning_status': new})
        return True

    async def compare_and_set_status(self, order_id, expected, new, **fields) -> bool:
        _check_fields(fields)
        order = self.orders.get(order_id)
        if order is None or order.status not in set(expected):
            return False
        self._apply(order, {**fields, 'status': new})
        return True

    async def append_renewal_payment(self, order_id, entry, new_expiry) -> bool:
        order = self.orders.get(order_id)
        if order is None or order.has_renewal(entry.renewal_txn_id):
            return False
        order.renewal_payments.append(copy.deepcopy(entry))
        order.expiry_date = new_expiry
        if order.pending_renewal and order.pending_renewal.renewal_txn_id == entry.renewal_txn_id:
            order.pending_renewal = None
        order.updated_at = utc_now()
        return True

    async def record_provider_renewal(self, order_id, renewal_txn_id, success, result) -> bool:
        order = self.orders.get(order_id)
        if order is None:
            return False
        for entry in order.renewal_payments:
            if entry.renewal_txn_id == renewal_txn_id and entry.provider_renewal_result is None:
                entry.provider_renewal_success = bool(success)
                entry.provider_renewal_result = copy.deepcopy(result)
                order.updated_at = utc_now()
                return True
        return False

    async def set_pending_renewal(self, order_id, pending) -> bool:
        order = self.orders.get(order_id)
        if order is None or order.pending_renewal is not None:
            return False
        self._apply(order, {'pending_renewal': pending})
        return True

    async def clear_pending_renewal(self, order_id, renewal_txn_id) -> bool:
        order = self.orders.get(order_id)
        if order is None or order.pending_renewal is None:
            return False
        if order.pending_renewal.renewal_txn_id != renewal_txn_id:
            return False
        self._apply(order, {'pending_renewal': None})
        return True

    def _sorted(self, orders: Iterable[Order]) -> List[Order]:
        return sorted(orders, key=lambda o: o.created_at or utc_now())

    async def list_batch_candidates(self, limit: int) -> List[Order]:
        candidates = [
            o for o in self.orders.values()
            if o.status == OrderStatus.CONFIRMED
            and o.provisioning_status in (ProvisioningStatus.UNSET, ProvisioningStatus.PENDING, ProvisioningStatus.FAILED)
            and (not o.auto_provisioned or o.provisioning_status == ProvisioningStatus.FAILED)
        ]
        return [self._copy(o) for o in self._sorted(candidates)[:limit]]

    async def list_orders_with_pending_renewal(self) -> List[Order]:
        return [self._copy(o) for o in self._sorted(o for o in self.orders.values() if o.pending_renewal)]

    async def list_orders_missing_credentials(self, limit: int) -> List[Order]:
        candidates = [
            o for o in self.orders.values()
            if o.status in (OrderStatus.CONFIRMED, OrderStatus.ACTIVE)
            and o.provider in (ProviderName.HOSTYCARE, ProviderName.SMARTVPS)
            and (o.provider_service_id or o.ip_address)
            and o.provisioning_status in AWAITING_CREDENTIALS
            and not o.has_credentials
        ]
        return [self._copy(o) for o in self._sorted(candidates)[:limit]]

    async def list_abandoned_orders(self, created_before: datetime) -> List[Order]:
        return [
            self._copy(o) for o in self._sorted(self.orders.values())
            if o.status == OrderStatus.PENDING and o.created_at and o.created_at < created_before
        ]

    async def delete_order(self, order_id: str) -> bool:
        order = self.orders.get(order_id)
        if order is None or order.status != OrderStatus.PENDING:
            return False
        del self.orders[order_id]
        return True

    async def provisioning_stats(self) -> Dict[str, int]:
        stats: Dict[str, int] = {}
        for order in self.orders.values():
            if order.status in (OrderStatus.CONFIRMED, OrderStatus.ACTIVE, OrderStatus.FAILED):
                key = order.provisioning_status.value
                stats[key] = stats.get(key, 0) + 1
        return stats

    async def get_catalog_item(self, item_id: str) -> Optional[CatalogItem]:
        return copy.deepcopy(self.catalog.get(item_id))

    async def create_action_request(self, request: ServerActionRequest) -> ServerActionRequest:
        for existing in self.action_requests.values():
            if (existing.order_id == request.order_id and existing.action == request.action
                    and existing.status == ActionRequestStatus.PENDING):
                raise DuplicateActionRequestError(
                    f"A pending {request.action.value} request already exists for order {request.order_id}"
                )
        stored = copy.deepcopy(request)
        stored.requested_at = stored.requested_at or utc_now()
        self.action_requests[stored.id] = stored
        return copy.deepcopy(stored)

    async def get_action_request(self, request_id: str) -> Optional[ServerActionRequest]:
        return copy.deepcopy(self.action_requests.get(request_id))

    async def get_latest_pending_action(self, order_id: str) -> Optional[ServerActionRequest]:
        pending = [
            r for r in self.action_requests.values()
            if r.order_id == order_id and r.status == ActionRequestStatus.PENDING
        ]
        if not pending:
            return None
        return copy.deepcopy(max(pending, key=lambda r: r.requested_at))

    async def list_pending_actions(self) -> List[ServerActionRequest]:
        pending = [r for r in self.action_requests.values() if r.status == ActionRequestStatus.PENDING]
        return [copy.deepcopy(r) for r in sorted(pending, key=lambda r: r.requested_at)]

    async def resolve_action_request(self, request_id, status, admin_notes) -> bool:
        request = self.action_requests.get(request_id)
        if request is None or request.status != ActionRequestStatus.PENDING:
            return False
        request.status = status
        request.admin_notes = admin_notes
        request.processed_at = utc_now()
        return True

    async def debit_reseller_wallet(self, reseller_id, amount, order_id, description) -> Dict[str, Any]:
        reseller = self.resellers.get(reseller_id)
        if reseller is None:
            return {'success': False, 'error': 'Reseller not found'}
        if reseller.get('status', 'active') != 'active':
            return {'success': False, 'error': 'Reseller account is not active'}
        available = reseller['balance'] + reseller.get('credit_limit', 0)
        if available < amount:
            return {'success': False, 'error': f"Insufficient wallet balance. Available: {available}, Required: {amount}"}
        return self._record_wallet(reseller_id, reseller, -amount, 'debit', order_id, description)

    async def credit_reseller_wallet(self, reseller_id, amount, order_id, description) -> Dict[str, Any]:
        reseller = self.resellers.get(reseller_id)
        if reseller is None:
            return {'success': False, 'error': 'Reseller not found'}
        return self._record_wallet(reseller_id, reseller, amount, 'credit', order_id, description)

    def _record_wallet(self, reseller_id, reseller, delta, kind, order_id, description) -> Dict[str, Any]:
        previous = reseller['balance']
        reseller['balance'] = previous + delta
        transaction = {
            'id': f"wtx_{len(self.wallet_transactions) + 1}",
            'reseller_id': reseller_id,
            'type': kind,
            'amount': delta,
            'previous_balance': previous,
            'new_balance': reseller['balance'],
            'order_id': order_id,
            'description': description,
            'created_at': utc_now(),
        }
        self.wallet_transactions.append(transaction)
        return {'success': True, 'new_balance': reseller['balance'], 'transaction_id': transaction['id']}


# ====================================================================
# POSTGRES STORE
# ====================================================================

class PostgresOrderStore(OrderStore):
    """Order Store backed by PostgreSQL through database.execute_query/execute_update"""

    def __init__(self, vault: Optional[CredentialVault] = None):
        self.vault = vault or CredentialVault(None)

    # --- row mapping ----------------------------------------------------

    def _to_db(self, key: str, value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        if key == 'password':
            return self.vault.encrypt(value)
        if key == 'pending_renewal':
            return Json(value.to_dict()) if value is not None else None
        if key == 'provider_metadata':
            metadata = dict(value or {})
            if metadata.get('staged_password'):
                metadata['staged_password'] = self.vault.encrypt(metadata['staged_password'])
            return Json(metadata)
        if key == 'promo_metadata':
            return Json(value or {})
        return value

    def _row_to_order(self, row: Dict[str, Any]) -> Order:
        metadata = dict(row.get('provider_metadata') or {})
        if metadata.get('staged_password'):
            metadata['staged_password'] = self.vault.decrypt(metadata['staged_password'])
        price = row.get('price')
        return Order(
            id=row['id'],
            user_id=row['user_id'],
            reseller_id=row.get('reseller_id'),
            catalog_item_id=row.get('catalog_item_id'),
            product_name=row['product_name'],
            memory=row.get('memory'),
            price=float(price) if isinstance(price, (Decimal, int, float)) else 0.0,
            promo_code=row.get('promo_code'),
            promo_metadata=row.get('promo_metadata') or {},
            customer_name=row.get('customer_name'),
            customer_email=row.get('customer_email'),
            customer_phone=row.get('customer_phone'),
            client_txn_id=row['client_txn_id'],
            gateway=row.get('gateway'),
            gateway_order_id=row.get('gateway_order_id'),
            transaction_id=row.get('transaction_id'),
            status=OrderStatus(row['status']),
            provider=ProviderName(row['provider']) if row.get('provider') else None,
            provider_service_id=row.get('provider_service_id'),
            ip_address=row.get('ip_address'),
            username=row.get('username'),
            password=self.vault.decrypt(row.get('password')),
            os=row.get('os'),
            provisioning_status=ProvisioningStatus(row.get('provisioning_status') or 'unset'),
            provisioning_error=row.get('provisioning_error'),
            provisioning_error_code=row.get('provisioning_error_code'),
            auto_provisioned=bool(row.get('auto_provisioned')),
            expiry_date=ensure_aware(row.get('expiry_date')),
            pending_renewal=PendingRenewal.from_dict(row.get('pending_renewal')),
            renewal_payments=[RenewalPayment.from_dict(e) for e in (row.get('renewal_payments') or [])],
            provider_metadata=metadata,
            machine_status=row.get('machine_status'),
            power_status=row.get('power_status'),
            last_sync_at=ensure_aware(row.get('last_sync_at')),
            last_action=row.get('last_action'),
            last_action_at=ensure_aware(row.get('last_action_at')),
            created_at=ensure_aware(row.get('created_at')),
            updated_at=ensure_aware(row.get('updated_at')),
        )

    def _row_to_action(self, row: Dict[str, Any]) -> ServerActionRequest:
        return ServerActionRequest(
            id=row['id'],
            order_id=row['order_id'],
            user_id=row['user_id'],
            action=ServerAction(row['action']),
            status=ActionRequestStatus(row['status']),
            payload=row.get('payload') or {},
            product_name=row.get('product_name'),
            ip_address=row.get('ip_address'),
            os=row.get('os'),
            memory=row.get('memory'),
            customer_name=row.get('customer_name'),
            customer_email=row.get('customer_email'),
            admin_notes=row.get('admin_notes'),
            requested_at=ensure_aware(row.get('requested_at')),
            processed_at=ensure_aware(row.get('processed_at')),
        )

    def _set_clause(self, fields: Dict[str, Any]):
        _check_fields(fields)
        assignments = [f"{key} = %s" for key in fields]
        values = [self._to_db(key, value) for key, value in fields.items()]
        assignments.append("updated_at = NOW()")
        return ', '.join(assignments), values

    async def _select_orders(self, where: str, params: tuple = ()) -> List[Order]:
        from database import execute_query
        rows = await execute_query(f"SELECT * FROM orders WHERE {where}", params)
        return [self._row_to_order(row) for row in rows]

    async def _select_one(self, where: str, params: tuple) -> Optional[Order]:
        orders = await self._select_orders(f"{where} LIMIT 1", params)
        return orders[0] if orders else None

    # --- orders ---------------------------------------------------------

    async def create_order(self, order: Order) -> Order:
        from database import execute_query
        columns = [
            'id', 'user_id', 'reseller_id', 'catalog_item_id', 'product_name', 'memory', 'price',
            'promo_code', 'promo_metadata', 'customer_name', 'customer_email', 'customer_phone',
            'client_txn_id', 'gateway', 'gateway_order_id', 'status', 'provider', 'provisioning_status',
            'expiry_date',
        ]
        values = [self._to_db(column, getattr(order, column)) for column in columns]
        placeholders = ', '.join(['%s'] * len(columns))
        rows = await execute_query(
            f"INSERT INTO orders ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *",
            tuple(values)
        )
        if not rows:
            raise RuntimeError(f"Failed to insert order {order.id}")
        logger.info(f"✅ Order created: {order.id} for user {order.user_id}")
        return self._row_to_order(rows[0])

    async def get_order(self, order_id: str) -> Optional[Order]:
        return await self._select_one("id = %s", (order_id,))

    async def find_by_client_txn_id(self, client_txn_id: str) -> Optional[Order]:
        return await self._select_one("client_txn_id = %s", (client_txn_id,))

    async def find_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Order]:
        return await self._select_one("gateway_order_id = %s", (gateway_order_id,))

    async def find_by_renewal_txn_id(self, renewal_txn_id: str) -> Optional[Order]:
        return await self._select_one(
            "(pending_renewal->>'renewal_txn_id' = %s OR pending_renewal->>'gateway_order_id' = %s)",
            (renewal_txn_id, renewal_txn_id)
        )

    async def update_fields(self, order_id: str, **fields: Any) -> bool:
        from database import execute_update
        if not fields:
            return False
        clause, values = self._set_clause(fields)
        return await execute_update(f"UPDATE orders SET {clause} WHERE id = %s", (*values, order_id)) > 0

    async def compare_and_set_provisioning_status(self, order_id, expected, new, **fields) -> bool:
        from database import execute_update
        expected_values = tuple(state.value for state in expected)
        clause, values = self._set_clause({**fields, 'provisioning_status': new})
        rows = await execute_update(
            f"UPDATE orders SET {clause} WHERE id = %s AND provisioning_status = ANY(%s)",
            (*values, order_id, list(expected_values))
        )
        return rows > 0

    async def compare_and_set_status(self, order_id, expected, new, **fields) -> bool:
        from database import execute_update
        expected_values = [state.value for state in expected]
        clause, values = self._set_clause({**fields, 'status': new})
        rows = await execute_update(
            f"UPDATE orders SET {clause} WHERE id = %s AND status = ANY(%s)",
            (*values, order_id, expected_values)
        )
        return rows > 0

    async def append_renewal_payment(self, order_id, entry, new_expiry) -> bool:
        from database import execute_update
        rows = await execute_update("""
            UPDATE orders
            SET renewal_payments = COALESCE(renewal_payments, '[]'::jsonb) || %s::jsonb,
                expiry_date = %s,
                pending_renewal = CASE
                    WHEN pending_renewal->>'renewal_txn_id' = %s THEN NULL
                    ELSE pending_renewal
                END,
                updated_at = NOW()
            WHERE id = %s
            AND NOT (COALESCE(renewal_payments, '[]'::jsonb) @> %s::jsonb)
        """, (
            Json([entry.to_dict()]),
            new_expiry,
            entry.renewal_txn_id,
            order_id,
            Json([{'renewal_txn_id': entry.renewal_txn_id}]),
        ))
        return rows > 0

    async def record_provider_renewal(self, order_id, renewal_txn_id, success, result) -> bool:
        from database import execute_update
        rows = await execute_update("""
            UPDATE orders
            SET renewal_payments = (
                SELECT jsonb_agg(
                    CASE
                        WHEN elem->>'renewal_txn_id' = %s
                             AND COALESCE(jsonb_typeof(elem->'provider_renewal_result'), 'null') = 'null'
                        THEN elem || %s::jsonb
                        ELSE elem
                    END ORDER BY idx
                )
                FROM jsonb_array_elements(renewal_payments) WITH ORDINALITY AS arr(elem, idx)
            ),
            updated_at = NOW()
            WHERE id = %s
            AND renewal_payments @> %s::jsonb
            AND NOT (renewal_payments @> %s::jsonb)
        """, (
            renewal_txn_id,
            Json({'provider_renewal_success': bool(success), 'provider_renewal_result': result}),
            order_id,
            Json([{'renewal_txn_id': renewal_txn_id}]),
            Json([{'renewal_txn_id': renewal_txn_id, 'provider_renewal_result': {}}]),
        ))
        return rows > 0

    async def set_pending_renewal(self, order_id, pending) -> bool:
        from database import execute_update
        rows = await execute_update("""
            UPDATE orders SET pending_renewal = %s, updated_at = NOW()
            WHERE id = %s AND pending_renewal IS NULL
        """, (Json(pending.to_dict()), order_id))
        return rows > 0

    async def clear_pending_renewal(self, order_id, renewal_txn_id) -> bool:
        from database import execute_update
        rows = await execute_update("""
            UPDATE orders SET pending_renewal = NULL, updated_at = NOW()
            WHERE id = %s AND pending_renewal->>'renewal_txn_id' = %s
        """, (order_id, renewal_txn_id))
        return rows > 0

    async def list_batch_candidates(self, limit: int) -> List[Order]:
        return await self._select_orders("""
            status = 'confirmed'
            AND provisioning_status IN ('unset', 'pending', 'failed')
            AND (auto_provisioned = FALSE OR provisioning_status = 'failed')
            ORDER BY created_at ASC
            LIMIT %s
        """, (limit,))

    async def list_orders_with_pending_renewal(self) -> List[Order]:
        return await self._select_orders("pending_renewal IS NOT NULL ORDER BY created_at ASC")

    async def list_orders_missing_credentials(self, limit: int) -> List[Order]:
        return await self._select_orders("""
            status IN ('confirmed', 'active')
            AND provider IN ('hostycare', 'smartvps')
            AND (provider_service_id IS NOT NULL OR ip_address IS NOT NULL)
            AND provisioning_status = ANY(%s)
            AND (COALESCE(username, '') = '' OR COALESCE(password, '') = '' OR COALESCE(ip_address, '') = '')
            ORDER BY created_at ASC
            LIMIT %s
        """, ([state.value for state in AWAITING_CREDENTIALS], limit))

    async def list_abandoned_orders(self, created_before: datetime) -> List[Order]:
        return await self._select_orders(
            "status = 'pending' AND created_at < %s ORDER BY created_at ASC", (created_before,)
        )

    async def delete_order(self, order_id: str) -> bool:
        from database import execute_update
        return await execute_update(
            "DELETE FROM orders WHERE id = %s AND status = 'pending'", (order_id,)
        ) > 0

    async def provisioning_stats(self) -> Dict[str, int]:
        from database import execute_query
        rows = await execute_query("""
            SELECT provisioning_status, COUNT(*) AS total FROM orders
            WHERE status IN ('confirmed', 'active', 'failed')
            GROUP BY provisioning_status
        """)
        return {row['provisioning_status']: int(row['total']) for row in rows}

    async def get_catalog_item(self, item_id: str) -> Optional[CatalogItem]:
        from database import execute_query
        rows = await execute_query("SELECT * FROM catalog_items WHERE id = %s", (item_id,))
        if not rows:
            return None
        row = rows[0]
        return CatalogItem(
            id=row['id'],
            name=row['name'],
            memory=row.get('memory'),
            price=float(row.get('price') or 0),
            provider=row.get('provider'),
            provider_product_id=row.get('provider_product_id'),
            tags=[str(tag).lower() for tag in (row.get('tags') or [])],
            memory_options=dict(row.get('memory_options') or {}),
            default_configurations=dict(row.get('default_configurations') or {}),
        )

    # --- server action requests -----------------------------------------

    async def create_action_request(self, request: ServerActionRequest) -> ServerActionRequest:
        import psycopg2
        from database import execute_query
        try:
            rows = await execute_query("""
                INSERT INTO server_action_requests (
                    id, order_id, user_id, action, status, payload, product_name, ip_address,
                    os, memory, customer_name, customer_email
                ) VALUES (%s, %s, %s, %s, 'pending', %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
            """, (
                request.id, request.order_id, request.user_id, request.action.value, Json(request.payload),
                request.product_name, request.ip_address, request.os, request.memory,
                request.customer_name, request.customer_email,
            ))
        except psycopg2.IntegrityError as e:
            raise DuplicateActionRequestError(
                f"A pending {request.action.value} request already exists for order {request.order_id}"
            ) from e
        if not rows:
            raise RuntimeError(f"Failed to insert server action request {request.id}")
        return self._row_to_action(rows[0])

    async def get_action_request(self, request_id: str) -> Optional[ServerActionRequest]:
        from database import execute_query
        rows = await execute_query("SELECT * FROM server_action_requests WHERE id = %s", (request_id,))
        return self._row_to_action(rows[0]) if rows else None

    async def get_latest_pending_action(self, order_id: str) -> Optional[ServerActionRequest]:
        from database import execute_query
        rows = await execute_query("""
            SELECT * FROM server_action_requests
            WHERE order_id = %s AND status = 'pending'
            ORDER BY requested_at DESC LIMIT 1
        """, (order_id,))
        return self._row_to_action(rows[0]) if rows else None

    async def list_pending_actions(self) -> List[ServerActionRequest]:
        from database import execute_query
        rows = await execute_query(
            "SELECT * FROM server_action_requests WHERE status = 'pending' ORDER BY requested_at ASC"
        )
        return [self._row_to_action(row) for row in rows]

    async def resolve_action_request(self, request_id, status, admin_notes) -> bool:
        from database import execute_update
        rows = await execute_update("""
            UPDATE server_action_requests
            SET status = %s, admin_notes = %s, processed_at = NOW()
            WHERE id = %s AND status = 'pending'
        """, (status.value, admin_notes, request_id))
        return rows > 0

    # --- reseller wallet ------------------------------------------------

    async def debit_reseller_wallet(self, reseller_id, amount, order_id, description) -> Dict[str, Any]:
        return await self._wallet_transaction(reseller_id, -amount, 'debit', order_id, description)

    async def credit_reseller_wallet(self, reseller_id, amount, order_id, description) -> Dict[str, Any]:
        return await self._wallet_transaction(reseller_id, amount, 'credit', order_id, description)

    async def _wallet_transaction(self, reseller_id, delta, kind, order_id, description) -> Dict[str, Any]:
        from database import generate_uuid, run_in_transaction

        def _apply(conn):
            with conn.cursor() as cursor:
                cursor.execute(
                    "SELECT status, balance, credit_limit FROM resellers WHERE id = %s FOR UPDATE",
                    (reseller_id,)
                )
                reseller = cursor.fetchone()
                if not reseller:
                    raise WalletError("Reseller not found")
                previous = Decimal(reseller['balance'])
                change = Decimal(str(delta))
                if kind == 'debit':
                    if reseller['status'] != 'active':
                        raise WalletError("Reseller account is not active")
                    available = previous + Decimal(reseller['credit_limit'] or 0)
                    if available + change < 0:
                        raise WalletError(
                            f"Insufficient wallet balance. Available: {available}, Required: {-change}"
                        )
                new_balance = previous + change
                cursor.execute("UPDATE resellers SET balance = %s WHERE id = %s", (new_balance, reseller_id))
                transaction_id = generate_uuid()
                cursor.execute("""
                    INSERT INTO wallet_transactions
                        (id, reseller_id, type, amount, previous_balance, new_balance, order_id, description)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """, (transaction_id, reseller_id, kind, change, previous, new_balance, order_id, description))
                return {'success': True, 'new_balance': float(new_balance), 'transaction_id': transaction_id}

        try:
            return await run_in_transaction(_apply)
        except WalletError as e:
            logger.warning(f"💳 Wallet {kind} refused for reseller {reseller_id}: {e}")
            return {'success': False, 'error': str(e)}
