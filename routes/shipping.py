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

"""Shipping zone, rate and shipment routes."""

from typing import Any, Optional

import dependencies
from exceptions import InvalidRequestError
from fastapi import APIRouter
from fastapi import Depends
from fastapi import Path
from fastapi import Query
from models import AddressIn
from models import RateRequest
from models import RateResponse
from models import ZonesResponse
from services import aramex
from services.shipping_service import shipment_to_dict
from services.shipping_service import ShippingService
from services.shipping_service import zone_to_dict

router = APIRouter()


def _to_address(address: Optional[AddressIn]) -> Optional[aramex.Address]:
  if not address:
    return None
  return aramex.Address(
      city=address.city.strip(),
      country_code=aramex.normalize_country_code(address.country_code),
      line1=address.line1,
      state=address.state,
  )


@router.get(
    "/shipping/zones",
    response_model=ZonesResponse,
    operation_id="list_shipping_zones",
)
async def list_zones(
    country_code: Optional[str] = Query(None),
    refresh: bool = Query(False),
    shipping_service: ShippingService = Depends(
        dependencies.get_shipping_service
    ),
) -> ZonesResponse:
  """List delivery zones, served from the cache when it is complete."""
  result = await shipping_service.list_zones(country_code, refresh)
  return ZonesResponse(
      zones=[zone_to_dict(z) for z in result.zones],
      source=result.source,
      warning=result.warning,
  )


@router.post(
    "/shipping/rates",
    response_model=RateResponse,
    operation_id="quote_shipping_rate",
)
async def quote_rate(
    body: RateRequest,
    shipping_service: ShippingService = Depends(
        dependencies.get_shipping_service
    ),
) -> RateResponse:
  """Quote a live courier rate."""
  origin = _to_address(body.origin)
  destination = _to_address(body.destination)
  if not origin or not destination:
    raise InvalidRequestError("Origin and destination are required.")
  shipment = aramex.ShipmentSpec(
      weight_kg=body.weight_kg,
      pieces=body.pieces,
      goods_value=body.goods_value or "0",
      origin_country_code=origin.country_code,
  )
  quote = await shipping_service.quote_rate(origin, destination, shipment)
  return RateResponse(**quote)


@router.get(
    "/shipping/shipments/{order_id}",
    response_model=dict[str, Any],
    operation_id="get_shipment",
)
async def get_shipment(
    order_id: str = Path(...),
    shipping_service: ShippingService = Depends(
        dependencies.get_shipping_service
    ),
) -> dict[str, Any]:
  """Get the courier shipment for an order."""
  return shipment_to_dict(await shipping_service.get_shipment(order_id))


@router.post(
    "/shipping/shipments/{order_id}/track",
    response_model=dict[str, Any],
    operation_id="track_shipment",
)
async def track_shipment(
    order_id: str = Path(...),
    shipping_service: ShippingService = Depends(
        dependencies.get_shipping_service
    ),
) -> dict[str, Any]:
  """Refresh an order's shipment status from the courier."""
  return shipment_to_dict(await shipping_service.refresh_tracking(order_id))
