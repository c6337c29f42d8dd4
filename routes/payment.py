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

"""ExpressPay webhook, payer callback and on-demand reconciliation routes."""

import logging
from typing import Optional
import urllib.parse

import dependencies
from enums import OrderStatus
from exceptions import InvalidRequestError
from fastapi import APIRouter
from fastapi import Depends
from fastapi import Query
from fastapi import Request
from fastapi.responses import RedirectResponse
from models import PaymentQueryRequest
from models import PaymentQueryResponse
from services.payment_service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter()

# Paid, or already moving through fulfilment.
_SETTLED_STATUSES = frozenset({
    OrderStatus.PAID.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
    OrderStatus.COMPLETED.value,
})


def _first(*values: Optional[str]) -> Optional[str]:
  for value in values:
    if value and str(value).strip():
      return str(value).strip()
  return None


@router.post(
    "/payments/expresspay/webhook",
    operation_id="expresspay_webhook",
)
async def expresspay_webhook(
    request: Request,
    payment_service: PaymentService = Depends(
        dependencies.get_payment_service
    ),
) -> dict[str, str]:
  """Receive a payment notification; always acknowledged with 200."""
  try:
    form = await request.form()
  except Exception as e:  # pylint: disable=broad-exception-caught
    logger.warning("Unreadable ExpressPay webhook body: %s", e)
    form = {}
  token = _first(form.get("token"))
  order_code = _first(form.get("order-id"), form.get("order_id"))

  try:
    result = await payment_service.reconcile(token, order_code, "webhook")
    logger.info(
        "ExpressPay webhook for %s: %s (%s)",
        result.order_code or order_code,
        result.outcome.value,
        result.stage,
    )
  except Exception:  # pylint: disable=broad-exception-caught
    # The gateway only needs an acknowledgement; the trail is in the logs
    logger.exception("ExpressPay webhook failed for order %s", order_code)
  return {"status": "ok"}


@router.get(
    "/payments/expresspay/callback",
    operation_id="expresspay_callback",
)
async def expresspay_callback(
    request: Request,
    token: Optional[str] = Query(None),
    order_id: Optional[str] = Query(None, alias="order-id"),
    payment_service: PaymentService = Depends(
        dependencies.get_payment_service
    ),
) -> RedirectResponse:
  """Reconcile when the payer returns and redirect to the result page."""
  order_code = _first(order_id, request.query_params.get("order_id"))
  result = await payment_service.reconcile(token, order_code, "callback")

  if result.status in _SETTLED_STATUSES:
    outcome = "success"
  elif result.status in (None, OrderStatus.PENDING.value):
    outcome = "pending"
  else:
    outcome = "failed"

  origin = dependencies.get_app_origin(request).rstrip("/")
  query = urllib.parse.urlencode(
      {"payment": outcome, "order": result.order_code or order_code or ""}
  )
  return RedirectResponse(
      url=f"{origin}/checkout/result?{query}", status_code=303
  )


@router.post(
    "/payments/expresspay/query",
    response_model=PaymentQueryResponse,
    operation_id="expresspay_query",
)
async def expresspay_query(
    body: PaymentQueryRequest,
    payment_service: PaymentService = Depends(
        dependencies.get_payment_service
    ),
) -> PaymentQueryResponse:
  """Reconcile an order on demand, e.g. while the storefront polls."""
  if not _first(body.token, body.order_code):
    raise InvalidRequestError("Order code or token is required.")
  result = await payment_service.reconcile(
      _first(body.token), _first(body.order_code), "query"
  )
  return PaymentQueryResponse(
      order_code=result.order_code,
      status=result.status,
      outcome=result.outcome.value,
      stage=result.stage,
  )
