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

"""Payment reconciliation for ExpressPay.

Webhook posts, browser callbacks and manual queries all funnel into
`PaymentService.reconcile`. The gateway's query API is the only source of
truth: whatever the caller sent is used to find the order, never to decide its
status. Side effects of a successful payment (ledger row, stock and registry
quantities, notifications, shipment) run exactly once, for the caller whose
conditional update flips the order to paid.
"""

import dataclasses
import logging
from typing import Any, Dict, Optional

import db
from enums import OrderStatus
from enums import OrderType
from enums import WebhookOutcome
from exceptions import PaymentGatewayError
from services import expresspay
from services.shipping_service import ShippingService
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class ReconcileResult:
  """What a reconciliation did; also stored as the webhook debug record."""

  outcome: WebhookOutcome
  stage: str
  order_id: Optional[str] = None
  order_code: Optional[str] = None
  status: Optional[str] = None


class PaymentService:
  """Service for reconciling orders against the payment gateway."""

  def __init__(
      self,
      session: AsyncSession,
      gateway: expresspay.ExpressPayClient,
      shipping_service: Optional[ShippingService] = None,
  ):
    self.session = session
    self.gateway = gateway
    self.shipping_service = shipping_service

  async def find_order(
      self, token: Optional[str], order_code: Optional[str]
  ) -> Optional[db.Order]:
    order = None
    if token:
      order = await db.get_order_by_token(self.session, token)
    if not order and order_code:
      order = await db.get_order_by_code(self.session, order_code)
    return order

  async def reconcile(
      self,
      token: Optional[str],
      order_code: Optional[str],
      source: str = "webhook",
  ) -> ReconcileResult:
    """Brings an order in line with the gateway's view of its payment.

    Args:
      token: The checkout token reported by the caller, if any.
      order_code: The order code reported by the caller, if any.
      source: Where the notification came from, for the debug record.

    Returns:
      The outcome; never raises for gateway or lookup problems so the webhook
      can always acknowledge.
    """
    if not token and not order_code:
      return ReconcileResult(WebhookOutcome.IGNORED, "missing_identifiers")

    order = await self.find_order(token, order_code)
    if not order:
      logger.warning(
          "No order for token %s / code %s",
          expresspay.mask_token(token),
          order_code,
      )
      return ReconcileResult(WebhookOutcome.IGNORED, "order_not_found")

    query_token = order.payment_token or token
    if not query_token:
      return self._result(order, WebhookOutcome.IGNORED, "missing_token")

    try:
      query = await self.gateway.query(query_token)
    except PaymentGatewayError as e:
      logger.error(
          "ExpressPay query failed for order %s: %s", order.order_code, e
      )
      await self._record_debug(
          order, WebhookOutcome.ERROR, "query_failed", source, token, None
      )
      return self._result(order, WebhookOutcome.ERROR, "query_failed")

    status = expresspay.map_result_to_order_status(
        query.result, order.status, query.result_text
    )
    stage = "status_mapped"
    if status == OrderStatus.PAID.value and expresspay.has_amount_mismatch(
        order.total_amount,
        order.currency,
        query.amount,
        query.currency,
    ):
      logger.warning(
          "Amount mismatch for order %s: expected %s %s, got %s %s",
          order.order_code,
          order.total_amount,
          order.currency,
          query.amount,
          query.currency,
      )
      status = OrderStatus.PENDING.value
      stage = "amount_mismatch"

    method = expresspay.resolve_payment_method(query.raw) or None
    reference = query.transaction_id or query_token

    try:
      if expresspay.is_terminal(order.status):
        outcome = await self._backfill_terminal(order, method, reference)
        stage = "already_terminal"
      elif status == OrderStatus.PAID.value:
        outcome = await self._apply_paid(order, method, reference)
        if outcome == WebhookOutcome.PAID_TRANSITIONED:
          stage = "paid_side_effects"
      else:
        changed = await db.update_pending_order_status(
            self.session,
            order.id,
            status,
            {"payment_method": method} if method else None,
        )
        outcome = WebhookOutcome.UPDATED if changed else WebhookOutcome.IGNORED
    except SQLAlchemyError as e:
      logger.error(
          "Reconciliation of order %s failed: %s", order.order_code, e
      )
      await self.session.rollback()
      await self.session.refresh(order)
      await self._record_debug(
          order,
          WebhookOutcome.ERROR,
          "db_error",
          source,
          token,
          query_token,
          query.raw,
      )
      return self._result(order, WebhookOutcome.ERROR, "db_error")

    if outcome == WebhookOutcome.PAID_TRANSITIONED:
      await self._ship(order)

    await self.session.refresh(order)
    await self._record_debug(
        order, outcome, stage, source, token, query_token, query.raw
    )
    return self._result(order, outcome, stage)

  async def _backfill_terminal(
      self,
      order: db.Order,
      method: Optional[str],
      reference: Optional[str],
  ) -> WebhookOutcome:
    """Fills in missing method or reference; the status itself is final."""
    changed = False
    if method and not order.payment_method:
      order.payment_method = method
      changed = True
    if reference and not order.payment_reference:
      order.payment_reference = reference
      changed = True
    if changed:
      order.updated_at = db.utcnow()
      await self.session.flush()
    return WebhookOutcome.TERMINAL_RECONCILED

  async def _apply_paid(
      self,
      order: db.Order,
      method: Optional[str],
      reference: str,
  ) -> WebhookOutcome:
    """Flips the order to paid and runs the side effects once."""
    flipped = await db.mark_order_paid(
        self.session,
        order.id,
        {"payment_method": method, "payment_reference": reference},
    )
    if not flipped:
      return WebhookOutcome.IGNORED

    await db.insert_order_payment(
        self.session,
        order_id=order.id,
        provider=expresspay.PROVIDER,
        provider_reference=reference,
        amount=order.total_amount,
        currency=order.currency,
        payment_method=method,
        status=expresspay.map_order_status_to_payment_status(
            OrderStatus.PAID.value
        ),
    )

    items = await db.get_order_items(self.session, order.id)
    for item in items:
      await db.decrement_stock(self.session, item.product_id, item.quantity)
      if item.registry_item_id:
        await db.increment_registry_purchased(
            self.session, item.registry_item_id, item.quantity
        )

    await self._notify(order, items)
    # Commit before any courier call so no write lock is held across it
    await self.session.commit()
    logger.info("Order %s marked paid via %s", order.order_code, reference)
    return WebhookOutcome.PAID_TRANSITIONED

  async def _notify(self, order: db.Order, items) -> None:
    if order.order_type == OrderType.REGISTRY.value and order.registry_id:
      registry = await self.session.get(db.Registry, order.registry_id)
      if registry and registry.owner_id:
        if order.gifter_anonymous:
          gifter = "Someone"
        else:
          gifter = order.gifter_firstname or "A guest"
        await db.create_notification(
            self.session,
            registry.owner_id,
            "registry_purchase",
            f"{gifter} bought a gift from {registry.title or 'your registry'}.",
            link=f"/registry/{registry.registry_code}",
            data={"order_id": order.id, "registry_id": registry.id},
        )

    vendors = await db.get_vendors(self.session, [i.vendor_id for i in items])
    for vendor in vendors.values():
      if vendor.profile_id:
        await db.create_notification(
            self.session,
            vendor.profile_id,
            "new_order",
            f"New order {order.order_code} received.",
            link=f"/vendor/orders/{order.id}",
            data={"order_id": order.id},
        )

  async def _ship(self, order: db.Order) -> None:
    """Books the courier shipment in its own transaction, best effort."""
    if not self.shipping_service:
      return
    context = await self.session.get(db.CheckoutContext, order.id)
    if not context or not context.shippable_item_count:
      return
    try:
      items = await db.get_order_items(self.session, order.id)
      await self.shipping_service.create_shipment_for_order(order, items)
      await self.session.commit()
    except Exception as e:  # pylint: disable=broad-exception-caught
      # Shipment failures must not undo a confirmed payment
      logger.error(
          "Shipment creation failed for order %s: %s", order.order_code, e
      )
      await self.session.rollback()

  async def _record_debug(
      self,
      order: db.Order,
      outcome: WebhookOutcome,
      stage: str,
      source: str,
      token: Optional[str],
      query_token: Optional[str],
      query_raw: Optional[Dict[str, Any]] = None,
  ) -> None:
    """Stores the debug trail on the order and commits the reconciliation."""
    entries: Dict[str, Any] = {
        "webhook_debug": {
            "outcome": outcome.value,
            "stage": stage,
            "source": source,
            "order_status": order.status,
            "received_at": db.utcnow().isoformat(),
            "payment_reference": order.payment_reference,
            "token_suffix": expresspay.mask_token(token),
            "query_token_suffix": expresspay.mask_token(query_token),
        }
    }
    if query_raw is not None:
      entries["query"] = query_raw
    db.merge_payment_response(order, **entries)
    try:
      await self.session.commit()
    except SQLAlchemyError as e:
      await self.session.rollback()
      logger.error(
          "Failed to store reconciliation of order %s: %s",
          order.order_code,
          e,
      )
      raise

  @staticmethod
  def _result(
      order: db.Order, outcome: WebhookOutcome, stage: str
  ) -> ReconcileResult:
    return ReconcileResult(
        outcome=outcome,
        stage=stage,
        order_id=order.id,
        order_code=order.order_code,
        status=order.status,
    )
