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

"""Shipping service for courier zones, rate quotes and shipments.

Zones are cached in the `shipping_zones` table and only refreshed from the
courier when the cache is empty, incomplete or a refresh is forced. Rate quotes
always go to the courier, behind a short in-process memo that collapses
identical rapid-fire requests.
"""

import dataclasses
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import db
from exceptions import CourierError
from exceptions import InvalidRequestError
from exceptions import ResourceNotFoundError
from services import aramex
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

RATE_CACHE_TTL_SECONDS = 60.0


class RateCache:
  """A small TTL memo for rate quotes, keyed by the request."""

  def __init__(
      self,
      ttl_seconds: float = RATE_CACHE_TTL_SECONDS,
      clock: Callable[[], float] = time.monotonic,
  ):
    self.ttl_seconds = ttl_seconds
    self._clock = clock
    self._entries: Dict[str, Tuple[float, Dict[str, Any]]] = {}
    self._lock = threading.Lock()

  @staticmethod
  def make_key(*parts: Any) -> str:
    return json.dumps(
        [dataclasses.asdict(p) if dataclasses.is_dataclass(p) else p
         for p in parts],
        sort_keys=True,
        default=str,
    )

  def get(self, key: str) -> Optional[Dict[str, Any]]:
    with self._lock:
      entry = self._entries.get(key)
      if not entry:
        return None
      expires_at, value = entry
      if self._clock() >= expires_at:
        del self._entries[key]
        return None
      return value

  def put(self, key: str, value: Dict[str, Any]) -> None:
    with self._lock:
      now = self._clock()
      # Drop expired entries so the memo stays small
      for stale in [k for k, (exp, _) in self._entries.items() if exp <= now]:
        del self._entries[stale]
      self._entries[key] = (now + self.ttl_seconds, value)


@dataclasses.dataclass
class ZonesResult:
  zones: List[db.ShippingZone]
  source: str  # 'cache' or 'aramex'
  warning: Optional[str] = None


def zone_to_dict(zone: db.ShippingZone) -> Dict[str, Any]:
  return {
      "id": zone.id,
      "country_code": zone.country_code,
      "name": zone.name,
      "fee": zone.fee,
      "aramex_code": zone.aramex_code,
  }


def shipment_to_dict(shipment: db.OrderShipment) -> Dict[str, Any]:
  return {
      "order_id": shipment.order_id,
      "provider": shipment.provider,
      "status": shipment.status,
      "tracking_number": shipment.tracking_number,
      "tracking_url": shipment.tracking_url,
      "label_url": shipment.label_url,
      "last_status": shipment.last_status,
      "last_status_at": (
          shipment.last_status_at.isoformat()
          if shipment.last_status_at
          else None
      ),
  }


def _status_from_description(description: str) -> str:
  text = description.lower()
  if "delivered" in text:
    return "delivered"
  if "return" in text:
    return "returned"
  return "in_transit"


class ShippingService:
  """Service for courier zone, rate and shipment logic."""

  def __init__(
      self,
      session: AsyncSession,
      courier: aramex.AramexClient,
      rate_cache: Optional[RateCache] = None,
  ):
    self.session = session
    self.courier = courier
    self.rate_cache = rate_cache

  async def list_zones(
      self, country_code: Optional[str], refresh: bool = False
  ) -> ZonesResult:
    """Returns delivery zones for a country, cache first.

    Args:
      country_code: Country name or code; defaults to Ghana.
      refresh: Forces a courier lookup even if the cache is complete.

    Returns:
      The zones together with where they came from.

    Raises:
      CourierError: The courier failed and there is no cache to fall back to.
    """
    code = aramex.normalize_country_code(country_code)
    cached = await db.get_shipping_zones(self.session, code)
    cache_complete = bool(cached) and all(z.aramex_code for z in cached)
    if cache_complete and not refresh:
      return ZonesResult(zones=cached, source="cache")

    try:
      result = await self.courier.fetch_states(code)
      if result.has_errors or not result.states:
        raise CourierError(
            result.message or "Aramex returned no states for this country."
        )
    except CourierError as e:
      if cached:
        logger.warning(
            "Serving cached zones for %s after courier failure: %s",
            code,
            e.message,
        )
        return ZonesResult(
            zones=cached,
            source="cache",
            warning="Using cached zones; courier lookup failed.",
        )
      raise

    await db.upsert_shipping_zones(self.session, code, result.states)
    await self.session.commit()
    logger.info("Refreshed %d zones for %s", len(result.states), code)
    # Rows loaded before the upsert would otherwise keep their old values
    self.session.expire_all()
    zones = await db.get_shipping_zones(self.session, code)
    return ZonesResult(zones=zones, source="aramex")

  async def get_zone(self, zone_id: str) -> db.ShippingZone:
    zone = await self.session.get(db.ShippingZone, zone_id)
    if not zone or not zone.active:
      raise InvalidRequestError("Selected delivery zone is not available.")
    return zone

  async def quote_rate(
      self,
      origin: aramex.Address,
      destination: aramex.Address,
      shipment: aramex.ShipmentSpec,
  ) -> Dict[str, Any]:
    """Quotes a live courier rate; identical requests within 60s share one."""
    if not origin or not origin.city or not destination or not (
        destination.city
    ):
      raise InvalidRequestError("Origin and destination are required.")

    key = RateCache.make_key(origin, destination, shipment)
    if self.rate_cache:
      cached = self.rate_cache.get(key)
      if cached is not None:
        return cached

    quote = await self.courier.calculate_rate(origin, destination, shipment)
    if quote.has_errors or quote.amount is None:
      raise CourierError(quote.message or "Unable to fetch a shipping rate.")

    value = {"amount": str(quote.amount), "currency": quote.currency}
    if self.rate_cache:
      self.rate_cache.put(key, value)
    return value

  async def get_shipment(self, order_id: str) -> db.OrderShipment:
    shipment = await db.get_shipment(self.session, order_id, aramex.PROVIDER)
    if not shipment:
      raise ResourceNotFoundError("Shipment not found")
    return shipment

  async def create_shipment_for_order(
      self, order: db.Order, items: List[db.OrderItem]
  ) -> Optional[db.OrderShipment]:
    """Books a courier shipment for a paid order unless one exists.

    The shipper is the vendor of the first item. Courier-side errors are
    logged and leave the order without a shipment.
    """
    existing = await db.get_shipment(self.session, order.id, aramex.PROVIDER)
    if existing:
      return existing

    vendor_id = next((i.vendor_id for i in items if i.vendor_id), None)
    if not vendor_id:
      return None
    vendor = await self.session.get(db.Vendor, vendor_id)
    if not vendor:
      return None

    pieces = max(1, sum(i.quantity or 0 for i in items))
    context = await self.session.get(db.CheckoutContext, order.id)
    weight = context.total_weight_kg if context and context.total_weight_kg else 0
    country = vendor.address_country or "GH"
    consignee_name = " ".join(
        p for p in (order.buyer_firstname, order.buyer_lastname) if p
    ).strip()

    result = await self.courier.create_shipment(
        shipper=aramex.Party(
            name=vendor.business_name or "Giftologi Vendor",
            company=vendor.business_name or "",
            phone=vendor.phone or "",
            email=vendor.email or "",
            address=aramex.Address(
                line1=vendor.address_street or "",
                line2=vendor.digital_address or "",
                city=vendor.address_city or "",
                state=vendor.address_state or "",
                country_code=aramex.normalize_country_code(country),
            ),
        ),
        consignee=aramex.Party(
            name=consignee_name or "Recipient",
            phone=order.buyer_phone or "",
            email=order.buyer_email or "",
            address=aramex.Address(
                line1=order.shipping_address or "",
                line2=order.shipping_digital_address or "",
                city=order.shipping_city or "",
                state=order.shipping_region or "",
                country_code=aramex.normalize_country_code(
                    order.shipping_country or country
                ),
            ),
        ),
        shipment=aramex.ShipmentSpec(
            weight_kg=max(1.0, float(weight or pieces)),
            pieces=pieces,
            goods_value=f"{(order.total_amount or 0) / 100:.2f}",
            currency=order.currency or aramex.DEFAULT_CURRENCY,
            description=f"Order {order.order_code}",
            origin_country_code=aramex.normalize_country_code(country),
        ),
        reference=order.order_code,
    )

    if result.has_errors or not result.shipment_number:
      logger.error(
          "Aramex shipment for order %s failed: %s",
          order.order_code,
          result.message,
      )
      return None

    now = db.utcnow()
    shipment = db.OrderShipment(
        order_id=order.id,
        provider=aramex.PROVIDER,
        status="created",
        tracking_number=result.shipment_number,
        tracking_url=aramex.build_tracking_url(result.shipment_number),
        label_url=result.label_url or None,
        shipment_reference=order.order_code,
        cost=order.shipping_fee,
        currency=order.currency,
        meta={"source": "expresspay_webhook"},
        last_status_at=now,
    )
    self.session.add(shipment)

    details = await self.session.get(db.OrderDeliveryDetails, order.id)
    if details:
      details.courier_partner = aramex.PROVIDER
      details.tracking_id = result.shipment_number
      details.delivery_status = "created"
      details.updated_at = now
    logger.info(
        "Created shipment %s for order %s",
        result.shipment_number,
        order.order_code,
    )
    return shipment

  async def refresh_tracking(self, order_id: str) -> db.OrderShipment:
    """Polls the courier and stores the shipment's latest status."""
    shipment = await self.get_shipment(order_id)
    if not shipment.tracking_number:
      raise InvalidRequestError("Shipment has no tracking number yet.")

    result = await self.courier.track_shipment(shipment.tracking_number)
    if result.has_errors:
      raise CourierError("Unable to fetch tracking updates.")

    if result.description:
      shipment.last_status = result.description
      shipment.status = _status_from_description(result.description)
      shipment.last_status_at = db.utcnow()
      details = await self.session.get(db.OrderDeliveryDetails, order_id)
      if details and not details.confirmed_at:
        details.delivery_status = shipment.status
        details.updated_at = shipment.last_status_at
      await self.session.commit()
    return shipment
