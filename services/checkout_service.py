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

"""Checkout service for turning carts into orders.

This module provides the `CheckoutService` class, which assembles orders from
one of three line-item sources (the actor's carts, a single product, or gifts
from a registry) through a single pipeline:

- Re-validating every line at submission time (product availability, vendor
  verification, stock). Any failure aborts before anything is written.
- Pricing lines, gift wrap and shipping, and applying a promo code.
- Persisting the order and its items, deleting the source carts.
- Submitting the invoice to the payment gateway and, only once it is accepted,
  recording the promo redemption.
"""

import collections
import dataclasses
import logging
import secrets
from typing import Dict, List, Optional, Sequence, Tuple

import db
from enums import OrderStatus
from enums import OrderType
from enums import ProductStatus
from exceptions import InvalidRequestError
from exceptions import OutOfStockError
from exceptions import PaymentGatewayError
from exceptions import PromoInvalidError
from exceptions import ResourceNotFoundError
from models import CartCheckoutRequest
from models import CheckoutRequestBase
from models import DirectCheckoutRequest
from models import RegistryCheckoutRequest
from models import ShippingInfo
from services import expresspay
from services.promo_service import divide_half_up
from services.promo_service import normalize_code
from services.promo_service import PromoEvaluation
from services.promo_service import PromoLine
from services.promo_service import PromoService
from services.shipping_service import ShippingService
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "GHS"
PAYMENT_INIT_FAILED = "Payment initialization failed. Please try again."


@dataclasses.dataclass
class Actor:
  """Who is checking out: a signed-in user or an anonymous browser."""

  user_id: Optional[str] = None
  guest_browser_id: Optional[str] = None
  device_fingerprint: Optional[str] = None

  @property
  def identified(self) -> bool:
    return bool(self.user_id or self.guest_browser_id)


@dataclasses.dataclass
class LineRequest:
  key: str
  product_id: str
  quantity: int
  variation_key: Optional[str] = None
  wrapping: bool = False
  gift_wrap_option_id: Optional[str] = None
  registry_item_id: Optional[str] = None


@dataclasses.dataclass
class PricedLine:
  """A validated line with its catalog snapshot and prices."""

  request: LineRequest
  product: db.Product
  vendor: db.Vendor
  category_ids: List[str]
  variation: Optional[dict]
  unit_price: int
  gift_wrap_fee: int
  total_price: int = 0
  discounted_gift_wrap_fee: int = 0

  @property
  def subtotal(self) -> int:
    return self.unit_price * self.request.quantity

  def to_promo_line(self) -> PromoLine:
    return PromoLine(
        key=self.request.key,
        product_id=self.product.id,
        vendor_id=self.product.vendor_id,
        subtotal=self.subtotal,
        gift_wrap_fee=self.gift_wrap_fee,
        category_ids=self.category_ids,
        is_shippable=bool(self.product.is_shippable),
        product_type=self.product.product_type,
    )


@dataclasses.dataclass
class CheckoutResult:
  order_id: str
  order_code: str
  token: str
  payable_amount: int
  currency: str
  checkout_url: Optional[str]


def find_variation(
    product: db.Product, variation_key: Optional[str]
) -> Optional[dict]:
  if not variation_key:
    return None
  for variation in product.variations or []:
    if str(variation.get("key")) == str(variation_key):
      return variation
  return None


def unit_price_for(product: db.Product, variation: Optional[dict]) -> int:
  """Variation price first, then a sale price below list price, then list."""
  if variation and variation.get("price") is not None:
    return int(variation["price"])
  if product.sale_price is not None and 0 < product.sale_price < product.price:
    return product.sale_price
  return product.price


def generate_order_code() -> str:
  return secrets.token_hex(8)


class CheckoutService:
  """Service for assembling orders and starting their payment."""

  def __init__(
      self,
      session: AsyncSession,
      promo_service: PromoService,
      gateway: expresspay.ExpressPayClient,
      shipping_service: ShippingService,
      app_origin: str,
  ):
    self.session = session
    self.promo_service = promo_service
    self.gateway = gateway
    self.shipping_service = shipping_service
    self.app_origin = app_origin.rstrip("/")

  # --- Line sources ---

  async def load_cart_lines(
      self, actor: Actor, vendor_id: Optional[str] = None
  ) -> Tuple[List[str], List[LineRequest]]:
    """Loads the actor's active carts as line requests.

    Returns:
      The cart IDs (to delete on success) and their lines.
    """
    if not actor.identified:
      raise InvalidRequestError(
          "Unable to identify your cart. Please try again."
      )
    carts = await db.get_active_carts(
        self.session, actor.user_id, actor.guest_browser_id, vendor_id
    )
    cart_ids = [c.id for c in carts]
    items = await db.get_cart_items(self.session, cart_ids)
    if not items:
      raise InvalidRequestError("Your cart is empty.")

    lines = [
        LineRequest(
            key=item.id,
            product_id=item.product_id,
            quantity=item.quantity,
            variation_key=(item.variation or {}).get("key"),
            wrapping=bool(item.wrapping),
            gift_wrap_option_id=item.gift_wrap_option_id,
            registry_item_id=item.registry_item_id,
        )
        for item in items
    ]
    return cart_ids, lines

  async def checkout_cart(
      self, request: CartCheckoutRequest, actor: Actor
  ) -> CheckoutResult:
    cart_ids, lines = await self.load_cart_lines(actor, request.vendor_id)
    return await self._place_order(
        lines,
        request,
        actor,
        order_type=OrderType.STOREFRONT,
        cart_ids=cart_ids,
    )

  async def checkout_direct(
      self, request: DirectCheckoutRequest, actor: Actor
  ) -> CheckoutResult:
    line = LineRequest(
        key=request.product_id,
        product_id=request.product_id,
        quantity=request.quantity,
        variation_key=request.variation_key,
        wrapping=bool(request.gift_wrap_option_id),
        gift_wrap_option_id=request.gift_wrap_option_id,
    )
    return await self._place_order(
        [line], request, actor, order_type=OrderType.STOREFRONT
    )

  async def checkout_registry(
      self, request: RegistryCheckoutRequest, actor: Actor
  ) -> CheckoutResult:
    """Buys registry gifts, capped at each item's remaining quantity."""
    registry = await self.session.get(db.Registry, request.registry_id)
    if not registry:
      raise ResourceNotFoundError("Registry not found")

    items = await db.get_registry_items(
        self.session, registry.id, [g.registry_item_id for g in request.items]
    )
    requested: Dict[str, int] = collections.defaultdict(int)
    lines = []
    for index, gift in enumerate(request.items):
      item = items.get(gift.registry_item_id)
      if not item:
        raise ResourceNotFoundError("Registry item not found")
      requested[item.id] += gift.quantity
      remaining = (item.quantity_needed or 0) - (item.purchased_qty or 0)
      if requested[item.id] > remaining:
        raise InvalidRequestError(
            "Requested quantity exceeds available quantity"
        )
      lines.append(
          LineRequest(
              key=f"{item.id}:{index}",
              product_id=item.product_id,
              quantity=gift.quantity,
              wrapping=bool(gift.gift_wrap_option_id),
              gift_wrap_option_id=gift.gift_wrap_option_id,
              registry_item_id=item.id,
          )
      )

    return await self._place_order(
        lines,
        request,
        actor,
        order_type=OrderType.REGISTRY,
        registry=registry,
    )

  # --- Promo preview ---

  async def preview_promo(
      self,
      code: Optional[str],
      actor: Actor,
      vendor_id: Optional[str] = None,
  ) -> Tuple[PromoEvaluation, List[PricedLine]]:
    """Evaluates a promo against the actor's cart without writing."""
    _, lines = await self.load_cart_lines(actor, vendor_id)
    priced = await self.price_lines(lines)
    evaluation = await self.promo_service.evaluate(
        code,
        [p.to_promo_line() for p in priced],
        vendor_id=vendor_id,
        user_id=actor.user_id,
        guest_browser_id=actor.guest_browser_id,
        device_fingerprint=actor.device_fingerprint,
    )
    return evaluation, priced

  # --- Pipeline ---

  async def price_lines(self, lines: Sequence[LineRequest]) -> List[PricedLine]:
    """Validates and prices lines against the live catalog.

    Raises:
      InvalidRequestError: A product or vendor is no longer available.
      OutOfStockError: A line asks for more than is in stock.
    """
    product_ids = [line.product_id for line in lines]
    products = await db.get_products(self.session, product_ids)
    vendors = await db.get_vendors(
        self.session, [p.vendor_id for p in products.values()]
    )
    categories = await db.get_product_category_ids(self.session, product_ids)
    wraps = await db.get_gift_wrap_options(
        self.session, [line.gift_wrap_option_id for line in lines]
    )

    requested: Dict[Tuple[str, Optional[str]], int] = collections.defaultdict(
        int
    )
    priced = []
    for line in lines:
      product = products.get(line.product_id)
      name = product.name if product else "This item"
      if (
          not product
          or not product.active
          or product.status != ProductStatus.APPROVED.value
      ):
        raise InvalidRequestError(f'"{name}" is no longer available.')

      vendor = vendors.get(product.vendor_id)
      if not vendor or not vendor.verified:
        raise InvalidRequestError(
            f'"{name}" is from a vendor that is no longer available.'
        )

      variation = find_variation(product, line.variation_key)
      if line.variation_key and variation is None:
        raise InvalidRequestError(
            f'The selected option for "{name}" is no longer available.'
        )

      if variation and variation.get("stock_qty") is not None:
        available = int(variation["stock_qty"])
      else:
        available = product.stock_qty or 0
      stock_key = (product.id, line.variation_key)
      requested[stock_key] += line.quantity
      if available < requested[stock_key]:
        raise OutOfStockError(
            f'Only {max(available, 0)} items available for "{name}".'
        )

      gift_wrap_fee = 0
      if line.gift_wrap_option_id:
        option = wraps.get(line.gift_wrap_option_id)
        if not option:
          raise InvalidRequestError(
              "The selected gift wrap option is not available."
          )
        gift_wrap_fee = option.fee or 0

      unit_price = unit_price_for(product, variation)
      priced.append(
          PricedLine(
              request=line,
              product=product,
              vendor=vendor,
              category_ids=categories.get(product.id, []),
              variation=variation,
              unit_price=unit_price,
              gift_wrap_fee=gift_wrap_fee,
              total_price=unit_price * line.quantity,
              discounted_gift_wrap_fee=gift_wrap_fee,
          )
      )
    return priced

  def _resolve_shipping(
      self,
      request: CheckoutRequestBase,
      registry: Optional[db.Registry],
  ) -> ShippingInfo:
    shipping = request.shipping or ShippingInfo()
    if registry:
      shipping = shipping.model_copy(
          update={
              "address": shipping.address or registry.shipping_address,
              "city": shipping.city or registry.shipping_city,
              "region": shipping.region or registry.shipping_region,
              "country": shipping.country or registry.shipping_country,
          }
      )
    return shipping

  async def _place_order(
      self,
      lines: Sequence[LineRequest],
      request: CheckoutRequestBase,
      actor: Actor,
      order_type: OrderType,
      cart_ids: Sequence[str] = (),
      registry: Optional[db.Registry] = None,
  ) -> CheckoutResult:
    """Runs the shared order pipeline for every line-item source."""
    priced = await self.price_lines(lines)

    shipping = self._resolve_shipping(request, registry)
    shippable = [p for p in priced if p.product.is_shippable]
    shipping_fee = 0
    zone_id = None
    if shippable:
      if not (shipping.address or "").strip() or not (
          shipping.city or ""
      ).strip():
        raise InvalidRequestError(
            "Please provide a shipping address for shippable products."
        )
      if shipping.zone_id:
        zone = await self.shipping_service.get_zone(shipping.zone_id)
        shipping_fee = zone.fee or 0
        zone_id = zone.id

    subtotal = sum(p.subtotal for p in priced)
    gift_wrap_total = sum(p.gift_wrap_fee for p in priced)
    total_weight = sum(
        (p.product.weight_kg or 0) * p.request.quantity for p in shippable
    )
    pieces = sum(p.request.quantity for p in shippable)

    evaluation = None
    promo_discount = 0
    if normalize_code(request.promo_code):
      evaluation = await self.promo_service.evaluate(
          request.promo_code,
          [p.to_promo_line() for p in priced],
          vendor_id=request.vendor_id,
          user_id=actor.user_id,
          guest_browser_id=actor.guest_browser_id,
          device_fingerprint=actor.device_fingerprint,
      )
      if not evaluation.valid:
        raise PromoInvalidError(evaluation.error)
      for line in priced:
        line_discount = evaluation.discount.lines[line.request.key]
        line.total_price = line_discount.discounted_subtotal
        line.discounted_gift_wrap_fee = line_discount.discounted_gift_wrap_fee
      promo_discount = evaluation.discount.total_discount

    total = subtotal + shipping_fee + gift_wrap_total - promo_discount
    order = await self._persist_order(
        priced,
        request,
        actor,
        order_type,
        cart_ids,
        registry,
        shipping,
        evaluation,
        amounts={
            "subtotal": subtotal,
            "shipping_fee": shipping_fee,
            "gift_wrap_fee": gift_wrap_total,
            "promo_discount": promo_discount,
            "total_amount": total,
        },
        context={
            "total_weight_kg": total_weight,
            "pieces": pieces,
            "shippable_item_count": len(shippable),
            "shipping_zone_id": zone_id,
        },
    )
    return await self._start_payment(order, actor, evaluation)

  async def _persist_order(
      self,
      priced: List[PricedLine],
      request: CheckoutRequestBase,
      actor: Actor,
      order_type: OrderType,
      cart_ids: Sequence[str],
      registry: Optional[db.Registry],
      shipping: ShippingInfo,
      evaluation: Optional[PromoEvaluation],
      amounts: Dict[str, int],
      context: Dict[str, object],
  ) -> db.Order:
    """Deletes the source carts and writes the order, its details and items."""
    contact = request.contact
    promo = evaluation.promo if evaluation else None
    gifter = {}
    if order_type == OrderType.REGISTRY:
      gifter = {
          "gifter_firstname": contact.first_name,
          "gifter_lastname": contact.last_name,
          "gifter_email": contact.email,
          "gifter_phone": contact.phone,
          "gifter_anonymous": getattr(request, "anonymous", False),
          "gifter_message": getattr(request, "message", None),
      }

    await db.delete_carts(self.session, list(cart_ids))

    order = db.Order(
        id=db.new_id(),
        order_code=generate_order_code(),
        order_type=order_type.value,
        status=OrderStatus.PENDING.value,
        currency=DEFAULT_CURRENCY,
        buyer_firstname=contact.first_name,
        buyer_lastname=contact.last_name,
        buyer_email=contact.email.strip().lower(),
        buyer_phone=contact.phone,
        shipping_address=shipping.address,
        shipping_city=shipping.city,
        shipping_region=shipping.region,
        shipping_digital_address=shipping.digital_address,
        shipping_country=shipping.country,
        user_id=actor.user_id,
        guest_browser_id=actor.guest_browser_id,
        device_fingerprint=actor.device_fingerprint,
        vendor_id=request.vendor_id,
        registry_id=registry.id if registry else None,
        promo_id=promo.id if promo else None,
        promo_code=promo.code if promo else None,
        promo_scope=promo.scope if promo else None,
        promo_percent=promo.percent_off if promo else None,
        **gifter,
        **amounts,
    )
    self.session.add(order)
    # The order row must exist before anything references it
    await self.session.flush()

    self.session.add(
        db.OrderDeliveryDetails(
            order_id=order.id,
            recipient_name=" ".join(
                p for p in (contact.first_name, contact.last_name) if p
            ),
            recipient_phone=contact.phone,
            address=shipping.address,
            city=shipping.city,
            region=shipping.region,
            digital_address=shipping.digital_address,
            country=shipping.country,
        )
    )
    self.session.add(db.CheckoutContext(order_id=order.id, **context))

    for line in priced:
      quantity = line.request.quantity
      self.session.add(
          db.OrderItem(
              order_id=order.id,
              product_id=line.product.id,
              vendor_id=line.product.vendor_id,
              quantity=quantity,
              price=divide_half_up(line.total_price, quantity),
              total_price=line.total_price,
              original_price=line.unit_price - (line.product.service_charge or 0),
              service_charge_snapshot=line.product.service_charge or 0,
              commission_rate_snapshot=line.vendor.commission_rate or 0.0,
              variation=line.variation,
              wrapping=line.request.wrapping,
              gift_wrap_option_id=line.request.gift_wrap_option_id,
              gift_wrap_fee=line.discounted_gift_wrap_fee,
              registry_item_id=line.request.registry_item_id,
          )
      )

    await self.session.commit()
    logger.info(
        "Created %s order %s with %d items, total %s",
        order_type.value,
        order.order_code,
        len(priced),
        order.total_amount,
    )
    return order

  async def _start_payment(
      self,
      order: db.Order,
      actor: Actor,
      evaluation: Optional[PromoEvaluation],
  ) -> CheckoutResult:
    """Submits the invoice; promo usage is recorded only once it is accepted."""
    invoice = expresspay.Invoice(
        order_id=order.order_code,
        amount=order.total_amount,
        redirect_url=f"{self.app_origin}/payments/expresspay/callback",
        post_url=f"{self.app_origin}/payments/expresspay/webhook",
        first_name=order.buyer_firstname or "",
        last_name=order.buyer_lastname or "",
        email=order.buyer_email or "",
        phone=order.buyer_phone or "",
        currency=order.currency,
        description=f"Giftologi order {order.order_code}",
    )

    try:
      submission = await self.gateway.submit(invoice)
    except PaymentGatewayError as e:
      await self._mark_failed(order, {"error": e.message})
      raise PaymentGatewayError(PAYMENT_INIT_FAILED) from e

    if not submission.accepted:
      await self._mark_failed(order, submission.raw)
      raise PaymentGatewayError(submission.message or PAYMENT_INIT_FAILED)

    order.payment_token = submission.token
    order.updated_at = db.utcnow()
    db.merge_payment_response(order, submit=submission.raw)
    if evaluation and evaluation.valid:
      await self.promo_service.record_redemption(
          evaluation.promo,
          order.id,
          order.promo_discount,
          actor.user_id,
          actor.guest_browser_id,
          actor.device_fingerprint,
      )
    await self.session.commit()

    return CheckoutResult(
        order_id=order.id,
        order_code=order.order_code,
        token=submission.token,
        payable_amount=order.total_amount,
        currency=order.currency,
        checkout_url=submission.checkout_url,
    )

  async def _mark_failed(self, order: db.Order, reply: dict) -> None:
    """Keeps the order for audit but marks it failed."""
    order.status = OrderStatus.FAILED.value
    order.updated_at = db.utcnow()
    db.merge_payment_response(order, submit=reply)
    await self.session.commit()
    logger.warning(
        "Payment initialization failed for order %s", order.order_code
    )
