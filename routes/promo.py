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

"""Promo code preview route."""

import dataclasses

import dependencies
from fastapi import APIRouter
from fastapi import Depends
from models import PromoLineResponse
from models import PromoValidateRequest
from models import PromoValidateResponse
from services.checkout_service import Actor
from services.checkout_service import CheckoutService
from services.expresspay import format_amount

router = APIRouter()


@router.post(
    "/promos/validate",
    response_model=PromoValidateResponse,
    operation_id="validate_promo",
)
async def validate_promo(
    body: PromoValidateRequest,
    actor: Actor = Depends(dependencies.get_actor),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> PromoValidateResponse:
  """Preview a promo code against the shopper's cart without applying it."""
  actor = dataclasses.replace(
      actor,
      guest_browser_id=actor.guest_browser_id or body.guest_browser_id,
      device_fingerprint=actor.device_fingerprint or body.device_fingerprint,
  )
  evaluation, _ = await checkout_service.preview_promo(
      body.code, actor, body.vendor_id
  )
  if not evaluation.valid:
    return PromoValidateResponse(valid=False, error=evaluation.error)

  discount = evaluation.discount
  return PromoValidateResponse(
      valid=True,
      code=evaluation.promo.code,
      percent_off=evaluation.promo.percent_off,
      eligible_subtotal=format_amount(discount.eligible_subtotal),
      discount=format_amount(discount.total_discount),
      items=[
          PromoLineResponse(
              cart_item_id=key,
              eligible=line.eligible,
              discount=format_amount(
                  line.product_discount + line.gift_wrap_discount
              ),
              discounted_subtotal=format_amount(line.discounted_subtotal),
          )
          for key, line in discount.lines.items()
      ],
  )
