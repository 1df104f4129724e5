"""
Order and server action request models
Lifecycle enums plus the provisioning state machine edges
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from utils.timezone_utils import ensure_aware


class OrderStatus(str, Enum):
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    ACTIVE = 'active'
    FAILED = 'failed'
    TERMINATED = 'terminated'


class ProvisioningStatus(str, Enum):
    UNSET = 'unset'
    PENDING = 'pending'
    PROVISIONING = 'provisioning'
    ACTIVE = 'active'
    FAILED = 'failed'
    SUSPENDED = 'suspended'
    TERMINATED = 'terminated'


class ProviderName(str, Enum):
    HOSTYCARE = 'hostycare'
    SMARTVPS = 'smartvps'
    MANUAL = 'manual'


class GatewayName(str, Enum):
    CASHFREE = 'cashfree'
    RAZORPAY = 'razorpay'
    UPIGATEWAY = 'upigateway'
    WALLET = 'wallet'


class ServerAction(str, Enum):
    START = 'start'
    STOP = 'stop'
    RESTART = 'restart'
    FORMAT = 'format'
    CHANGEPASSWORD = 'changepassword'
    REINSTALL = 'reinstall'


class ActionRequestStatus(str, Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'


# Allowed provisioning_status edges
PROVISIONING_TRANSITIONS: Dict[ProvisioningStatus, FrozenSet[ProvisioningStatus]] = {
    ProvisioningStatus.UNSET: frozenset({ProvisioningStatus.PENDING}),
    ProvisioningStatus.PENDING: frozenset({ProvisioningStatus.PROVISIONING}),
    ProvisioningStatus.PROVISIONING: frozenset({ProvisioningStatus.ACTIVE, ProvisioningStatus.FAILED}),
    ProvisioningStatus.ACTIVE: frozenset({ProvisioningStatus.SUSPENDED, ProvisioningStatus.TERMINATED}),
    ProvisioningStatus.FAILED: frozenset({ProvisioningStatus.PENDING}),
    ProvisioningStatus.SUSPENDED: frozenset({ProvisioningStatus.ACTIVE, ProvisioningStatus.TERMINATED}),
    ProvisioningStatus.TERMINATED: frozenset(),
}

# Orchestrator refuses to act on orders already in these states
IN_FLIGHT_OR_DONE = frozenset({ProvisioningStatus.PROVISIONING, ProvisioningStatus.ACTIVE})


class InvalidTransitionError(Exception):
    """Raised when a provisioning_status change is not a legal edge"""
    pass


def can_transition(current: ProvisioningStatus, new: ProvisioningStatus) -> bool:
    return new in PROVISIONING_TRANSITIONS.get(current, frozenset())


def assert_transition(current: ProvisioningStatus, new: ProvisioningStatus) -> None:
    if not can_transition(current, new):
        raise InvalidTransitionError(f"provisioning_status cannot move {current.value} → {new.value}")


def sources_for(target: ProvisioningStatus) -> FrozenSet[ProvisioningStatus]:
    """Every state with a legal edge into target"""
    return frozenset(state for state, targets in PROVISIONING_TRANSITIONS.items() if target in targets)


@dataclass
class PendingRenewal:
    renewal_txn_id: str
    gateway: str
    amount: float
    initiated_at: datetime
    gateway_order_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'renewal_txn_id': self.renewal_txn_id,
            'gateway': self.gateway,
            'gateway_order_id': self.gateway_order_id,
            'amount': self.amount,
            'initiated_at': self.initiated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['PendingRenewal']:
        if not data or not data.get('renewal_txn_id'):
            return None
        return cls(
            renewal_txn_id=data['renewal_txn_id'],
            gateway=data.get('gateway') or '',
            amount=float(data.get('amount') or 0),
            initiated_at=ensure_aware(data.get('initiated_at')),
            gateway_order_id=data.get('gateway_order_id'),
        )


@dataclass
class RenewalPayment:
    """One immutable renewal ledger entry"""
    payment_id: Optional[str]
    amount: float
    paid_at: datetime
    previous_expiry: Optional[datetime]
    new_expiry: datetime
    renewal_txn_id: str
    provider: str
    payment_method: Optional[str] = None
    provider_renewal_success: bool = False
    provider_renewal_result: Optional[Dict[str, Any]] = None
    recovered_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'payment_id': self.payment_id,
            'amount': self.amount,
            'paid_at': self.paid_at.isoformat(),
            'previous_expiry': self.previous_expiry.isoformat() if self.previous_expiry else None,
            'new_expiry': self.new_expiry.isoformat(),
            'renewal_txn_id': self.renewal_txn_id,
            'provider': self.provider,
            'payment_method': self.payment_method,
            'provider_renewal_success': self.provider_renewal_success,
            'provider_renewal_result': self.provider_renewal_result,
            'recovered_at': self.recovered_at.isoformat() if self.recovered_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RenewalPayment':
        return cls(
            payment_id=data.get('payment_id'),
            amount=float(data.get('amount') or 0),
            paid_at=ensure_aware(data.get('paid_at')),
            previous_expiry=ensure_aware(data.get('previous_expiry')),
            new_expiry=ensure_aware(data.get('new_expiry')),
            renewal_txn_id=data['renewal_txn_id'],
            provider=data.get('provider') or '',
            payment_method=data.get('payment_method'),
            provider_renewal_success=bool(data.get('provider_renewal_success')),
            provider_renewal_result=data.get('provider_renewal_result'),
            recovered_at=ensure_aware(data.get('recovered_at')),
        )


@dataclass
class Order:
    id: str
    user_id: str
    product_name: str
    memory: Optional[str]
    price: float
    client_txn_id: str
    reseller_id: Optional[str] = None
    catalog_item_id: Optional[str] = None
    promo_code: Optional[str] = None
    promo_metadata: Dict[str, Any] = field(default_factory=dict)
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    gateway: Optional[str] = None
    gateway_order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    provider: Optional[ProviderName] = None
    provider_service_id: Optional[str] = None
    ip_address: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    os: Optional[str] = None
    provisioning_status: ProvisioningStatus = ProvisioningStatus.UNSET
    provisioning_error: Optional[str] = None
    provisioning_error_code: Optional[str] = None
    auto_provisioned: bool = False
    expiry_date: Optional[datetime] = None
    pending_renewal: Optional[PendingRenewal] = None
    renewal_payments: List[RenewalPayment] = field(default_factory=list)
    provider_metadata: Dict[str, Any] = field(default_factory=dict)
    machine_status: Optional[str] = None
    power_status: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    last_action: Optional[str] = None
    last_action_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.ip_address and self.username and self.password)

    def has_renewal(self, renewal_txn_id: str) -> bool:
        return any(entry.renewal_txn_id == renewal_txn_id for entry in self.renewal_payments)

    def to_dict(self, include_credentials: bool = True) -> Dict[str, Any]:
        data = asdict(self)
        for key in ('status', 'provider', 'provisioning_status'):
            value = getattr(self, key)
            data[key] = value.value if isinstance(value, Enum) else value
        for key in ('expiry_date', 'last_sync_at', 'last_action_at', 'created_at', 'updated_at'):
            value = getattr(self, key)
            data[key] = value.isoformat() if value else None
        data['pending_renewal'] = self.pending_renewal.to_dict() if self.pending_renewal else None
        data['renewal_payments'] = [entry.to_dict() for entry in self.renewal_payments]
        # staged credentials never leave the service
        data['provider_metadata'] = {
            k: v for k, v in self.provider_metadata.items() if not k.startswith('staged_')
        }
        if not include_credentials:
            data['password'] = None
        return data


@dataclass
class CatalogItem:
    """Read-only view of a catalog product"""
    id: str
    name: str
    memory: Optional[str] = None
    price: float = 0.0
    provider: Optional[str] = None
    provider_product_id: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    # per memory tier: {"8GB": {"provider_product_id": "...", "fields": {...}, "configurations": {...}}}
    memory_options: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    default_configurations: Dict[str, Any] = field(default_factory=dict)

    def memory_config(self, memory: Optional[str]) -> Dict[str, Any]:
        """Options for a memory tier, tolerant of "8gb" / "8GB" spellings"""
        if not memory:
            return {}
        wanted = memory.strip().lower()
        for key, options in self.memory_options.items():
            if str(key).strip().lower() == wanted:
                return options or {}
        return {}

    def product_id_for(self, memory: Optional[str]) -> Optional[str]:
        options = self.memory_config(memory)
        product_id = options.get('provider_product_id') or options.get('hostycare_product_id') or options.get('product_id')
        if product_id is not None and str(product_id).strip():
            return str(product_id).strip()
        return self.provider_product_id


@dataclass
class ServerActionRequest:
    id: str
    order_id: str
    user_id: str
    action: ServerAction
    status: ActionRequestStatus = ActionRequestStatus.PENDING
    payload: Dict[str, Any] = field(default_factory=dict)
    product_name: Optional[str] = None
    ip_address: Optional[str] = None
    os: Optional[str] = None
    memory: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    admin_notes: Optional[str] = None
    requested_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['action'] = self.action.value
        data['status'] = self.status.value
        data['requested_at'] = self.requested_at.isoformat() if self.requested_at else None
        data['processed_at'] = self.processed_at.isoformat() if self.processed_at else None
        return data
