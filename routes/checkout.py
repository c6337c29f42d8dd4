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

"""Checkout routes for carts, single products and registry gifts."""

import dataclasses

import dependencies
from fastapi import APIRouter
from fastapi import Depends
from models import CartCheckoutRequest
from models import CheckoutRequestBase
from models import CheckoutResponse
from models import DirectCheckoutRequest
from models import RegistryCheckoutRequest
from services import expresspay
from services.checkout_service import Actor
from services.checkout_service import CheckoutResult
from services.checkout_service import CheckoutService

router = APIRouter()


def _merge_actor(actor: Actor, body: CheckoutRequestBase) -> Actor:
  """Fills browser and device ids from the body when headers lack them."""
  return dataclasses.replace(
      actor,
      guest_browser_id=actor.guest_browser_id or body.guest_browser_id,
      device_fingerprint=actor.device_fingerprint or body.device_fingerprint,
  )


def _to_response(result: CheckoutResult) -> CheckoutResponse:
  return CheckoutResponse(
      order_id=result.order_id,
      order_code=result.order_code,
      token=result.token,
      payable_amount=expresspay.format_amount(result.payable_amount),
      currency=result.currency,
      checkout_url=result.checkout_url,
  )


@router.post(
    "/checkout/cart",
    response_model=CheckoutResponse,
    operation_id="checkout_cart",
)
async def checkout_cart(
    body: CartCheckoutRequest,
    actor: Actor = Depends(dependencies.get_actor),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> CheckoutResponse:
  """Check out the shopper's active carts."""
  result = await checkout_service.checkout_cart(
      body, _merge_actor(actor, body)
  )
  return _to_response(result)


@router.post(
    "/checkout/direct",
    response_model=CheckoutResponse,
    operation_id="checkout_direct",
)
async def checkout_direct(
    body: DirectCheckoutRequest,
    actor: Actor = Depends(dependencies.get_actor),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> CheckoutResponse:
  """Buy a single product without a cart."""
  result = await checkout_service.checkout_direct(
      body, _merge_actor(actor, body)
  )
  return _to_response(result)


@router.post(
    "/checkout/registry",
    response_model=CheckoutResponse,
    operation_id="checkout_registry",
)
async def checkout_registry(
    body: RegistryCheckoutRequest,
    actor: Actor = Depends(dependencies.get_actor),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> CheckoutResponse:
  """Buy gifts from a registry."""
  result = await checkout_service.checkout_registry(
      body, _merge_actor(actor, body)
  )
  return _to_response(result)
