"""
Request models for storefront routes
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from services.payment_gateway import CustomerDetails


class CustomerInfo(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    def to_details(self, customer_id: str) -> CustomerDetails:
        return CustomerDetails(customer_id=customer_id, name=self.name, email=self.email, phone=self.phone)


class CheckoutRequest(BaseModel):
    catalog_item_id: Optional[str] = None
    product_name: Optional[str] = None
    memory: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)
    return_url: str
    customer: CustomerInfo = Field(default_factory=CustomerInfo)
    reseller_id: Optional[str] = None
    pay_with_wallet: bool = False
    promo_code: Optional[str] = None


class RenewRequest(BaseModel):
    return_url: str
    customer: CustomerInfo = Field(default_factory=CustomerInfo)


class RazorpayVerifyRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class ServerActionRequestBody(BaseModel):
    order_id: str
    action: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class DirectActionBody(BaseModel):
    action: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class ProcessActionBody(BaseModel):
    decision: str = Field(..., description='"approve" or "reject"')
    admin_notes: Optional[str] = None


class BatchRunRequest(BaseModel):
    batch_size: Optional[int] = Field(None, gt=0, le=50)
    max_retries: Optional[int] = Field(None, gt=0, le=10)


class LifecycleRequest(BaseModel):
    reason: Optional[str] = None
