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

"""Enumerations for the marketplace checkout server.

This module defines the standard enums used throughout the server to represent
order, payment, promo and support ticket state.
"""

import enum


class OrderStatus(str, enum.Enum):
  PENDING = "pending"
  PAID = "paid"
  DECLINED = "declined"
  FAILED = "failed"
  CANCELLED = "cancelled"
  PROCESSING = "processing"
  SHIPPED = "shipped"
  DELIVERED = "delivered"
  COMPLETED = "completed"


class OrderType(str, enum.Enum):
  STOREFRONT = "storefront"
  REGISTRY = "registry"


class PaymentStatus(str, enum.Enum):
  PENDING = "pending"
  COMPLETED = "completed"
  CANCELLED = "cancelled"
  FAILED = "failed"


class PromoScope(str, enum.Enum):
  PLATFORM = "platform"
  VENDOR = "vendor"


class TargetShippable(str, enum.Enum):
  ANY = "any"
  SHIPPABLE = "shippable"
  NON_SHIPPABLE = "non_shippable"


class ProductStatus(str, enum.Enum):
  PENDING = "pending"
  APPROVED = "approved"
  REJECTED = "rejected"


class WebhookOutcome(str, enum.Enum):
  IGNORED = "ignored"
  UPDATED = "updated"
  PAID_TRANSITIONED = "paid_transitioned"
  TERMINAL_RECONCILED = "terminal_reconciled"
  ERROR = "error"


class ReturnRequestType(str, enum.Enum):
  RETURN = "return"
  EXCHANGE = "exchange"


class TicketStatus(str, enum.Enum):
  OPEN = "open"
  PENDING = "pending"
  RESOLVED = "resolved"
  CLOSED = "closed"
