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

"""Post-checkout order operations for guests and the scheduler.

Guests have no account, so every buyer-facing operation here is authorized by
the order code plus the buyer's (or gifter's) email address.
"""

import datetime
import logging
from typing import Any, Dict, List, Optional

import db
from enums import OrderStatus
from enums import ReturnRequestType
from exceptions import ConflictError
from exceptions import ForbiddenError
from exceptions import InvalidRequestError
from exceptions import ResourceNotFoundError
from services import expresspay
from sqlalchemy import select
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 1000
EXPIRE_BATCH_LIMIT = 500

_UNCONFIRMABLE_STATUSES = frozenset({
    OrderStatus.PENDING.value,
    OrderStatus.CANCELLED.value,
    OrderStatus.DECLINED.value,
    OrderStatus.FAILED.value,
})

_RETURNABLE_STATUSES = frozenset({
    OrderStatus.PAID.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.COMPLETED.value,
    OrderStatus.DELIVERED.value,
})

def _normalize_email(email: Optional[str]) -> str:
  return (email or "").strip().lower()


def order_to_dict(
    order: db.Order, items: List[db.OrderItem]
) -> Dict[str, Any]:
  return {
      "id": order.id,
      "order_code": order.order_code,
      "order_type": order.order_type,
      "status": order.status,
      "currency": order.currency,
      "subtotal": expresspay.format_amount(order.subtotal or 0),
      "shipping_fee": expresspay.format_amount(order.shipping_fee or 0),
      "gift_wrap_fee": expresspay.format_amount(order.gift_wrap_fee or 0),
      "promo_discount": expresspay.format_amount(order.promo_discount or 0),
      "total_amount": expresspay.format_amount(order.total_amount or 0),
      "promo_code": order.promo_code,
      "payment_method": order.payment_method,
      "created_at": order.created_at.isoformat() if order.created_at else None,
      "items": [
          {
              "id": item.id,
              "product_id": item.product_id,
              "quantity": item.quantity,
              "price": expresspay.format_amount(item.price or 0),
              "total_price": expresspay.format_amount(item.total_price or 0),
              "variation": item.variation,
              "fulfillment_status": item.fulfillment_status,
          }
          for item in items
      ],
  }


class OrderService:
  """Service for order lookups, delivery confirmation, returns and expiry."""

  def __init__(self, session: AsyncSession):
    self.session = session

  async def verify_order(
      self, order_code: Optional[str], email: Optional[str]
  ) -> db.Order:
    """Finds an order the caller has proven to own.

    Raises:
      InvalidRequestError: Either field is missing.
      ResourceNotFoundError: No order has this code.
      ForbiddenError: The email matches neither the buyer nor the gifter.
    """
    code = (order_code or "").strip()
    normalized = _normalize_email(email)
    if not code or not normalized:
      raise InvalidRequestError("Order code and email are required.")

    order = await db.get_order_by_code(self.session, code)
    if not order:
      raise ResourceNotFoundError("Order not found")

    allowed = {
        _normalize_email(order.buyer_email),
        _normalize_email(order.gifter_email),
    } - {""}
    if normalized not in allowed:
      raise ForbiddenError("Email does not match this order.")
    return order

  async def get_order_details(
      self, order_code: Optional[str], email: Optional[str]
  ) -> Dict[str, Any]:
    order = await self.verify_order(order_code, email)
    items = await db.get_order_items(self.session, order.id)
    return order_to_dict(order, items)

  async def confirm_delivery(
      self, order_code: Optional[str], email: Optional[str]
  ) -> Dict[str, Any]:
    """Records the buyer's confirmation that the order arrived."""
    order = await self.verify_order(order_code, email)
    if order.status in _UNCONFIRMABLE_STATUSES:
      raise InvalidRequestError(
          "This order cannot be confirmed as delivered yet."
      )

    details = await self.session.get(db.OrderDeliveryDetails, order.id)
    if details and details.confirmed_at:
      return {
          "order_code": order.order_code,
          "already_confirmed": True,
          "confirmed_at": details.confirmed_at.isoformat(),
      }

    now = db.utcnow()
    if not details:
      details = db.OrderDeliveryDetails(order_id=order.id)
      self.session.add(details)
    details.confirmed_at = now
    details.confirmed_by = _normalize_email(email)
    details.delivery_status = OrderStatus.DELIVERED.value
    details.updated_at = now
    order.status = OrderStatus.DELIVERED.value
    order.updated_at = now
    await self.session.commit()
    logger.info("Order %s confirmed delivered", order.order_code)
    return {
        "order_code": order.order_code,
        "already_confirmed": False,
        "confirmed_at": now.isoformat(),
    }

  async def request_return(
      self,
      order_code: Optional[str],
      email: Optional[str],
      order_item_id: Optional[str],
      request_type: Optional[str],
      reason: Optional[str],
  ) -> db.ReturnRequest:
    """Opens a return or exchange request for one item of an order."""
    order = await self.verify_order(order_code, email)

    kind = (request_type or "").strip().lower()
    if kind not in {t.value for t in ReturnRequestType}:
      raise InvalidRequestError("Request type must be return or exchange.")
    text = (reason or "").strip()
    if not text:
      raise InvalidRequestError("Please provide a reason for your request.")
    if len(text) > MAX_REASON_LENGTH:
      raise InvalidRequestError(
          f"Reason must be at most {MAX_REASON_LENGTH} characters."
      )
    if order.status not in _RETURNABLE_STATUSES:
      raise InvalidRequestError("This order is not eligible for returns.")
    if not order_item_id:
      raise InvalidRequestError("Order item is required.")

    item = await self.session.get(db.OrderItem, order_item_id)
    if not item or item.order_id != order.id:
      raise ResourceNotFoundError("Order item not found")

    existing = await self.session.execute(
        select(db.ReturnRequest.id).where(
            db.ReturnRequest.order_item_id == item.id,
            db.ReturnRequest.status == "pending",
        )
    )
    if existing.first():
      raise ConflictError(
          "A return request for this item is already pending."
      )

    request = db.ReturnRequest(
        order_id=order.id,
        order_item_id=item.id,
        request_type=kind,
        reason=text,
        status="pending",
        requester_email=_normalize_email(email),
    )
    self.session.add(request)
    await self.session.commit()
    logger.info(
        "Opened %s request for item %s of order %s",
        kind,
        item.id,
        order.order_code,
    )
    return request

  async def expire_pending(
      self,
      timeout_hours: int,
      limit: int = EXPIRE_BATCH_LIMIT,
      now: Optional[datetime.datetime] = None,
  ) -> List[str]:
    """Cancels pending orders older than the timeout.

    Args:
      timeout_hours: Age after which an unpaid order is abandoned.
      limit: Maximum number of orders cancelled per call.
      now: Reference time; defaults to the current time.

    Returns:
      IDs of the orders that were cancelled by this call.
    """
    cutoff = (now or db.utcnow()) - datetime.timedelta(hours=timeout_hours)
    result = await self.session.execute(
        select(db.Order.id)
        .where(
            db.Order.status == OrderStatus.PENDING.value,
            db.Order.created_at < cutoff,
        )
        .order_by(db.Order.created_at)
        .limit(limit)
    )
    candidates = list(result.scalars().all())
    if not candidates:
      return []

    expired = []
    for order_id in candidates:
      # A webhook may have paid the order since the select
      changed = await db.update_pending_order_status(
          self.session, order_id, OrderStatus.CANCELLED.value
      )
      if changed:
        expired.append(order_id)

    if expired:
      await self.session.execute(
          update(db.OrderItem)
          .where(db.OrderItem.order_id.in_(expired))
          .values(fulfillment_status=OrderStatus.CANCELLED.value)
      )
    await self.session.commit()
    logger.info("Expired %d pending orders", len(expired))
    return expired
