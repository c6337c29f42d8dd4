#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Request and response models for the checkout server.

Amounts in responses are strings in major units ("80.00"), matching what the
payment gateway and storefront display; the database keeps minor units.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from pydantic import Field


class ContactInfo(BaseModel):
  """Buyer or gifter contact details."""

  first_name: str = Field(..., min_length=1)
  last_name: str = ""
  email: str = Field(..., min_length=3)
  phone: str = ""


class ShippingInfo(BaseModel):
  address: Optional[str] = None
  city: Optional[str] = None
  region: Optional[str] = None
  digital_address: Optional[str] = None
  country: Optional[str] = None
  zone_id: Optional[str] = None


class CheckoutRequestBase(BaseModel):
  contact: ContactInfo
  shipping: Optional[ShippingInfo] = None
  promo_code: Optional[str] = None
  vendor_id: Optional[str] = None
  guest_browser_id: Optional[str] = None
  device_fingerprint: Optional[str] = None


class CartCheckoutRequest(CheckoutRequestBase):
  """Checks out the actor's active carts, optionally one storefront only."""


class DirectCheckoutRequest(CheckoutRequestBase):
  """Buys a single product without a cart."""

  product_id: str
  quantity: int = Field(1, ge=1)
  variation_key: Optional[str] = None
  gift_wrap_option_id: Optional[str] = None


class RegistryGiftLine(BaseModel):
  registry_item_id: str
  quantity: int = Field(1, ge=1)
  gift_wrap_option_id: Optional[str] = None


class RegistryCheckoutRequest(CheckoutRequestBase):
  """Buys gifts from a registry; the contact is the gifter."""

  registry_id: str
  items: List[RegistryGiftLine] = Field(..., min_length=1)
  anonymous: bool = False
  message: Optional[str] = Field(None, max_length=1000)


class CheckoutResponse(BaseModel):
  success: bool = True
  order_id: str
  order_code: str
  token: str
  payable_amount: str
  currency: str
  checkout_url: Optional[str] = None


class PromoValidateRequest(BaseModel):
  code: Optional[str] = None
  vendor_id: Optional[str] = None
  guest_browser_id: Optional[str] = None
  device_fingerprint: Optional[str] = None


class PromoLineResponse(BaseModel):
  cart_item_id: str
  eligible: bool
  discount: str
  discounted_subtotal: str


class PromoValidateResponse(BaseModel):
  valid: bool
  error: Optional[str] = None
  code: Optional[str] = None
  percent_off: Optional[float] = None
  eligible_subtotal: Optional[str] = None
  discount: Optional[str] = None
  items: List[PromoLineResponse] = []


class PaymentQueryRequest(BaseModel):
  order_code: Optional[str] = None
  token: Optional[str] = None


class PaymentQueryResponse(BaseModel):
  order_code: Optional[str] = None
  status: Optional[str] = None
  outcome: str
  stage: str


class OrderLookupRequest(BaseModel):
  order_code: Optional[str] = None
  email: Optional[str] = None


class ConfirmDeliveryRequest(OrderLookupRequest):
  pass


class ReturnRequestCreate(OrderLookupRequest):
  order_item_id: Optional[str] = None
  request_type: Optional[str] = None
  reason: Optional[str] = None


class ExpirePendingResponse(BaseModel):
  expired: int
  order_ids: List[str]


class AddressIn(BaseModel):
  city: str = ""
  country_code: Optional[str] = None
  line1: str = ""
  state: str = ""


class RateRequest(BaseModel):
  origin: Optional[AddressIn] = None
  destination: Optional[AddressIn] = None
  weight_kg: float = Field(1.0, gt=0)
  pieces: int = Field(1, ge=1)
  goods_value: Optional[str] = None


class RateResponse(BaseModel):
  amount: str
  currency: str


class ZonesResponse(BaseModel):
  zones: List[Dict[str, Any]]
  source: str
  warning: Optional[str] = None
