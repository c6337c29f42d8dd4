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

"""Order management routes for guests and the scheduler."""

from typing import Any

import config
import dependencies
from fastapi import APIRouter
from fastapi import Depends
from models import ConfirmDeliveryRequest
from models import ExpirePendingResponse
from models import OrderLookupRequest
from models import ReturnRequestCreate
from services.order_service import OrderService

router = APIRouter()


@router.post(
    "/orders/verify",
    response_model=dict[str, Any],
    operation_id="verify_order",
)
async def verify_order(
    body: OrderLookupRequest,
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> dict[str, Any]:
  """Look up an order by its code and the buyer's email."""
  return await order_service.get_order_details(body.order_code, body.email)


@router.post(
    "/orders/confirm-delivery",
    response_model=dict[str, Any],
    operation_id="confirm_delivery",
)
async def confirm_delivery(
    body: ConfirmDeliveryRequest,
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> dict[str, Any]:
  """Confirm that an order was delivered."""
  return await order_service.confirm_delivery(body.order_code, body.email)


@router.post(
    "/orders/return-request",
    response_model=dict[str, Any],
    status_code=201,
    operation_id="create_return_request",
)
async def create_return_request(
    body: ReturnRequestCreate,
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> dict[str, Any]:
  """Open a return or exchange request for an order item."""
  request = await order_service.request_return(
      body.order_code,
      body.email,
      body.order_item_id,
      body.request_type,
      body.reason,
  )
  return {
      "id": request.id,
      "order_item_id": request.order_item_id,
      "request_type": request.request_type,
      "status": request.status,
  }


@router.post(
    "/orders/expire-pending",
    response_model=ExpirePendingResponse,
    operation_id="expire_pending_orders",
    dependencies=[Depends(dependencies.verify_cron_secret)],
)
async def expire_pending_orders(
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> ExpirePendingResponse:
  """Cancel pending orders that were never paid."""
  expired = await order_service.expire_pending(
      config.get_flag("pending_order_timeout_hours")
  )
  return ExpirePendingResponse(expired=len(expired), order_ids=expired)
