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

"""FastAPI dependencies for the checkout server.

This module contains dependency injection logic for FastAPI endpoints,
including:
- Database session management.
- Upstream clients (ExpressPay gateway, Aramex courier) built from flags.
- Service instantiation (checkout, promo, payment, order, shipping, support).
- Shared-secret checks for the cron and inbound email endpoints.
"""

from typing import AsyncGenerator, Optional

import config
import db
from fastapi import Depends
from fastapi import Header
from fastapi import HTTPException
from fastapi import Request
from services import aramex
from services import expresspay
from services.checkout_service import Actor
from services.checkout_service import CheckoutService
from services.order_service import OrderService
from services.payment_service import PaymentService
from services.promo_service import PromoService
from services.shipping_service import RateCache
from services.shipping_service import ShippingService
from services.support_service import SupportService
from sqlalchemy.ext.asyncio import AsyncSession

# Shared across requests so identical quotes within the TTL hit the memo
rate_cache = RateCache()


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
  if authorization and authorization.lower().startswith("bearer "):
    return authorization[7:].strip() or None
  return None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
  """Dependency provider for a database session."""
  async with db.manager.session_factory() as session:
    yield session


def get_gateway() -> expresspay.ExpressPayClient:
  """Dependency provider for the ExpressPay client."""
  return expresspay.ExpressPayClient(
      merchant_id=config.get_flag("expresspay_merchant_id"),
      api_key=config.get_flag("expresspay_api_key"),
      environment=config.get_flag("expresspay_env"),
  )


def get_courier() -> aramex.AramexClient:
  """Dependency provider for the Aramex client."""
  credentials = aramex.AramexCredentials(
      username=config.get_flag("aramex_username"),
      password=config.get_flag("aramex_password"),
      account_number=config.get_flag("aramex_account_number"),
      account_pin=config.get_flag("aramex_account_pin"),
      account_entity=config.get_flag("aramex_account_entity"),
      account_country_code=config.get_flag("aramex_account_country_code"),
      version=config.get_flag("aramex_version") or "v1.0",
  )
  return aramex.AramexClient(
      credentials,
      rate_url=config.get_flag("aramex_rate_url"),
      location_url=config.get_flag("aramex_location_url"),
      shipping_url=config.get_flag("aramex_shipping_url"),
      tracking_url=config.get_flag("aramex_tracking_url"),
  )


def get_app_origin(request: Request) -> str:
  return config.get_flag("app_origin") or str(request.base_url)


async def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_guest_browser_id: Optional[str] = Header(None),
    x_device_fingerprint: Optional[str] = Header(None),
) -> Actor:
  """Identifies the shopper from the gateway-authenticated headers."""
  return Actor(
      user_id=x_user_id or None,
      guest_browser_id=x_guest_browser_id or None,
      device_fingerprint=x_device_fingerprint or None,
  )


def get_promo_service(
    session: AsyncSession = Depends(get_db),
) -> PromoService:
  """Dependency provider for PromoService."""
  return PromoService(session)


def get_shipping_service(
    session: AsyncSession = Depends(get_db),
    courier: aramex.AramexClient = Depends(get_courier),
) -> ShippingService:
  """Dependency provider for ShippingService."""
  return ShippingService(session, courier, rate_cache)


def get_checkout_service(
    session: AsyncSession = Depends(get_db),
    promo_service: PromoService = Depends(get_promo_service),
    gateway: expresspay.ExpressPayClient = Depends(get_gateway),
    shipping_service: ShippingService = Depends(get_shipping_service),
    app_origin: str = Depends(get_app_origin),
) -> CheckoutService:
  """Dependency provider for CheckoutService."""
  return CheckoutService(
      session, promo_service, gateway, shipping_service, app_origin
  )


def get_payment_service(
    session: AsyncSession = Depends(get_db),
    gateway: expresspay.ExpressPayClient = Depends(get_gateway),
    shipping_service: ShippingService = Depends(get_shipping_service),
) -> PaymentService:
  """Dependency provider for PaymentService."""
  return PaymentService(session, gateway, shipping_service)


def get_order_service(
    session: AsyncSession = Depends(get_db),
) -> OrderService:
  """Dependency provider for OrderService."""
  return OrderService(session)


def get_support_service(
    session: AsyncSession = Depends(get_db),
) -> SupportService:
  """Dependency provider for SupportService."""
  return SupportService(session)


async def verify_cron_secret(
    authorization: Optional[str] = Header(None),
) -> None:
  """Verifies the bearer secret for scheduled maintenance endpoints."""
  expected_secret = config.get_flag("cron_secret")
  if not expected_secret:
    raise HTTPException(status_code=500, detail="Cron secret not configured")

  if _bearer_token(authorization) != expected_secret:
    raise HTTPException(status_code=401, detail="Unauthorized")


async def verify_inbound_email_secret(
    authorization: Optional[str] = Header(None),
    x_inbound_email_secret: Optional[str] = Header(None),
) -> None:
  """Verifies the shared secret sent by the inbound email provider."""
  expected_secret = config.get_flag("inbound_email_secret")
  if not expected_secret:
    raise HTTPException(
        status_code=503, detail="Inbound email handler not configured."
    )

  provided = x_inbound_email_secret or _bearer_token(authorization)
  if not provided or provided != expected_secret:
    raise HTTPException(status_code=401, detail="Unauthorized")
