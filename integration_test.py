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

"""Integration tests for the checkout server."""

import asyncio
import datetime
import json
import os
import shutil
import sqlite3
import tempfile
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional
import urllib.parse

from absl import flags
from absl.testing import absltest
import db
import dependencies
from fastapi.testclient import TestClient
import httpx
from server import app
from services import aramex
from services import expresspay
from services.shipping_service import RateCache
from sqlalchemy import func
from sqlalchemy import select
from sqlalchemy import text
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

FLAGS = flags.FLAGS

GUEST = {"X-Guest-Browser-Id": "browser-1"}
TREAT_GUEST = {"X-Guest-Browser-Id": "browser-2"}
TICKET_ID = "3f2b8c1e-9a4d-4e6f-8b21-5c7d9e0a1b2c"

_FLAG_OVERRIDES = {
    "app_origin": "https://shop.example",
    "cron_secret": "cron-secret",
    "inbound_email_secret": "inbound-secret",
}


class FakeExpressPay:
  """Stands in for the ExpressPay submit and query endpoints."""

  def __init__(self) -> None:
    self.submit_reply: Dict[str, Any] = {"status": 1, "message": "Success"}
    self.query_reply: Dict[str, Any] = {"result": 4, "result-text": "Pending"}
    self.submits: List[Dict[str, str]] = []
    self.queries: List[Dict[str, str]] = []

  def handler(self, request: httpx.Request) -> httpx.Response:
    form = dict(urllib.parse.parse_qsl(request.read().decode()))
    if request.url.path.endswith("/submit.php"):
      self.submits.append(form)
      reply = dict(self.submit_reply)
      if reply.get("status") == 1:
        reply["token"] = f"tok-{len(self.submits):06d}"
      return httpx.Response(200, json=reply)
    self.queries.append(form)
    return httpx.Response(200, json=dict(self.query_reply, token=form["token"]))


class FakeAramex:
  """Stands in for the Aramex SOAP services, dispatching on SOAPAction."""

  def __init__(self) -> None:
    self.fail = False
    self.actions: List[str] = []
    self.on_create: Optional[Callable[[], None]] = None

  def handler(self, request: httpx.Request) -> httpx.Response:
    action = request.headers.get("SOAPAction", "")
    self.actions.append(action)
    if self.fail:
      return httpx.Response(500, text="Service unavailable")
    if action == aramex.STATES_SOAP_ACTION:
      return httpx.Response(
          200,
          text=(
              "<StatesFetchingResponse><HasErrors>false</HasErrors><States>"
              "<State><Code>AA</Code><Name>Greater Accra</Name></State>"
              "<State><Code>AS</Code><Name>Ashanti</Name></State>"
              "</States></StatesFetchingResponse>"
          ),
      )
    if action == aramex.CREATE_SOAP_ACTION:
      if self.on_create:
        self.on_create()
      return httpx.Response(
          200,
          text=(
              "<ShipmentCreationResponse><HasErrors>false</HasErrors>"
              "<ProcessedShipment><ID>SH123</ID>"
              "<ShipmentLabel><LabelURL>https://labels.example/SH123"
              "</LabelURL></ShipmentLabel></ProcessedShipment>"
              "</ShipmentCreationResponse>"
          ),
      )
    if action == aramex.TRACK_SOAP_ACTION:
      return httpx.Response(
          200,
          text=(
              "<ShipmentTrackingResponse><HasErrors>false</HasErrors>"
              "<UpdateDescription>Delivered</UpdateDescription>"
              "<UpdateDateTime>2026-01-02T10:00:00</UpdateDateTime>"
              "</ShipmentTrackingResponse>"
          ),
      )
    return httpx.Response(
        200,
        text=(
            "<RateCalculatorResponse><HasErrors>false</HasErrors>"
            "<TotalAmount><CurrencyCode>GHS</CurrencyCode>"
            "<Value>45.5</Value></TotalAmount></RateCalculatorResponse>"
        ),
    )


class IntegrationTest(absltest.TestCase):
  """Integration tests for the checkout server application."""

  def setUp(self) -> None:
    """Sets up a temporary DB, fake upstreams and dependency overrides."""
    super().setUp()
    self.test_dir = tempfile.mkdtemp()
    self.database = os.path.join(self.test_dir, "test_marketplace.db")

    # Each asyncio.run gets its own loop, so connections must not be pooled
    url = f"sqlite+aiosqlite:///{self.database}"
    self.engine = create_async_engine(url, echo=False, poolclass=NullPool)
    self.session_factory = sessionmaker(
        self.engine, expire_on_commit=False, class_=AsyncSession
    )

    async def init_schemas() -> None:
      async with self.engine.begin() as conn:
        await conn.run_sync(db.Base.metadata.create_all)

    asyncio.run(init_schemas())

    self.gateway = FakeExpressPay()
    self.courier = FakeAramex()

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
      async with self.session_factory() as session:
        yield session

    def override_get_gateway() -> expresspay.ExpressPayClient:
      return expresspay.ExpressPayClient(
          "merchant-1",
          "api-key-1",
          transport=httpx.MockTransport(self.gateway.handler),
      )

    def override_get_courier() -> aramex.AramexClient:
      credentials = aramex.AramexCredentials(
          username="user",
          password="pass",
          account_number="123",
          account_pin="456",
          account_entity="ACC",
          account_country_code="GH",
      )
      return aramex.AramexClient(
          credentials, transport=httpx.MockTransport(self.courier.handler)
      )

    app.dependency_overrides[dependencies.get_db] = override_get_db
    app.dependency_overrides[dependencies.get_gateway] = override_get_gateway
    app.dependency_overrides[dependencies.get_courier] = override_get_courier
    dependencies.rate_cache = RateCache()

    self._saved_flags = {name: FLAGS[name].value for name in _FLAG_OVERRIDES}
    for name, value in _FLAG_OVERRIDES.items():
      FLAGS[name].value = value

    self.client = TestClient(app)
    asyncio.run(self._async_seed())

  def tearDown(self) -> None:
    """Cleans up the test environment."""
    app.dependency_overrides.clear()
    for name, value in self._saved_flags.items():
      FLAGS[name].value = value
    asyncio.run(self.engine.dispose())
    shutil.rmtree(self.test_dir)
    super().tearDown()

  async def _async_seed(self) -> None:
    """Seeds a vendor, products, a registry, promos, carts and a ticket."""
    async with self.session_factory() as session:
      session.add_all([
          db.Profile(id="owner-1", email="owner@example.com"),
          db.Profile(id="vendor-owner", email="shop@example.com"),
          db.Vendor(
              id="vendor-1",
              profile_id="vendor-owner",
              business_name="Kente Crafts",
              verified=True,
              commission_rate=10.0,
              phone="0200000000",
              email="shop@example.com",
              address_street="1 Oxford St",
              address_city="Accra",
              address_state="Greater Accra",
              address_country="Ghana",
          ),
          db.Product(
              id="mug",
              vendor_id="vendor-1",
              name="Painted Mug",
              price=10000,
              status="approved",
              stock_qty=5,
              is_shippable=True,
              weight_kg=0.5,
          ),
          db.Product(
              id="vase",
              vendor_id="vendor-1",
              name="Clay Vase",
              price=20000,
              status="approved",
              stock_qty=3,
              is_shippable=True,
              weight_kg=1.5,
          ),
          db.Product(
              id="cake",
              vendor_id="vendor-1",
              name="Birthday Cake",
              price=5000,
              status="approved",
              stock_qty=10,
              is_shippable=False,
              product_type="treat",
          ),
          db.Registry(
              id="registry-1",
              registry_code="ama-and-kofi",
              title="Ama & Kofi's Wedding",
              owner_id="owner-1",
              shipping_address="12 Ring Road",
              shipping_city="Accra",
              shipping_region="Greater Accra",
              shipping_country="Ghana",
          ),
          db.RegistryItem(
              id="registry-item-1",
              registry_id="registry-1",
              product_id="vase",
              quantity_needed=2,
              purchased_qty=0,
          ),
          db.PromoCode(
              id="promo-save20",
              code="SAVE20",
              scope="platform",
              percent_off=20,
              min_spend=5000,
          ),
          db.PromoCode(
              id="promo-limited",
              code="LIMITED",
              scope="platform",
              percent_off=10,
              usage_limit=1,
              usage_count=1,
          ),
          db.GiftWrapOption(id="wrap-gold", name="Gold wrap", fee=1000),
          db.ShippingZone(
              id="zone-accra",
              country_code="GH",
              name="Greater Accra",
              fee=2500,
              aramex_code="AA",
          ),
          db.Cart(id="cart-1", guest_browser_id="browser-1"),
          db.CartItem(id="cart-item-1", cart_id="cart-1", product_id="mug"),
          db.Cart(id="cart-2", guest_browser_id="browser-2"),
          db.CartItem(
              id="cart-item-2", cart_id="cart-2", product_id="cake", quantity=1
          ),
          db.SupportTicket(
              id=TICKET_ID,
              subject="Where is my order?",
              status="resolved",
              guest_email="guest@example.com",
          ),
      ])
      await session.commit()

  # --- Helpers ---

  def _checkout_body(self, **overrides: Any) -> Dict[str, Any]:
    body = {
        "contact": {
            "first_name": "Efua",
            "last_name": "Mensah",
            "email": "Buyer@Example.com",
            "phone": "0241234567",
        },
        "shipping": {"address": "5 Labone Cres", "city": "Accra"},
    }
    body.update(overrides)
    return body

  def _checkout_cart(self, **overrides: Any) -> Dict[str, Any]:
    response = self.client.post(
        "/checkout/cart", json=self._checkout_body(**overrides), headers=GUEST
    )
    self.assertEqual(response.status_code, 200, response.text)
    return response.json()

  def _checkout_registry(self, quantity: int = 1) -> Dict[str, Any]:
    body = {
        "contact": {
            "first_name": "Yaw",
            "email": "gifter@example.com",
        },
        "registry_id": "registry-1",
        "items": [{"registry_item_id": "registry-item-1", "quantity": quantity}],
        "message": "Congratulations!",
    }
    response = self.client.post("/checkout/registry", json=body)
    self.assertEqual(response.status_code, 200, response.text)
    return response.json()

  def _post_webhook(self, checkout: Dict[str, Any]) -> None:
    response = self.client.post(
        "/payments/expresspay/webhook",
        data={"token": checkout["token"], "order-id": checkout["order_code"]},
    )
    self.assertEqual(response.status_code, 200)
    self.assertEqual(response.json(), {"status": "ok"})

  def _paid_reply(self, amount: str) -> Dict[str, Any]:
    return {
        "result": 1,
        "result-text": "Success",
        "transaction-id": "TX-1001",
        "amount": amount,
        "currency": "GHS",
        "payment_option_type": "MTN Mobile Money",
    }

  def _get(self, model: Any, key: str) -> Any:
    async def fetch() -> Any:
      async with self.session_factory() as session:
        return await session.get(model, key)

    return asyncio.run(fetch())

  def _count(self, model: Any, *criteria: Any) -> int:
    async def count() -> int:
      async with self.session_factory() as session:
        stmt = select(func.count()).select_from(model)
        if criteria:
          stmt = stmt.where(*criteria)
        return (await session.execute(stmt)).scalar_one()

    return asyncio.run(count())

  def _all(self, model: Any, *criteria: Any) -> List[Any]:
    async def fetch() -> List[Any]:
      async with self.session_factory() as session:
        result = await session.execute(select(model).where(*criteria))
        return list(result.scalars().all())

    return asyncio.run(fetch())

  def _set_order(self, order_id: str, **values: Any) -> None:
    async def apply() -> None:
      async with self.session_factory() as session:
        await session.execute(
            update(db.Order).where(db.Order.id == order_id).values(**values)
        )
        await session.commit()

    asyncio.run(apply())

  def _execute_sql(self, statement: str) -> None:
    async def apply() -> None:
      async with self.engine.begin() as conn:
        await conn.execute(text(statement))

    asyncio.run(apply())

  # --- Checkout ---

  def test_cart_checkout_applies_promo(self):
    """SAVE20 takes 20.00 off a 100.00 cart."""
    data = self._checkout_cart(promo_code="save20")

    self.assertTrue(data["success"])
    self.assertEqual(data["payable_amount"], "80.00")
    self.assertEqual(data["currency"], "GHS")
    self.assertEqual(
        data["checkout_url"],
        "https://sandbox.expresspaygh.com/api/checkout.php?token=tok-000001",
    )

    order = self._get(db.Order, data["order_id"])
    self.assertEqual(order.status, "pending")
    self.assertEqual(order.subtotal, 10000)
    self.assertEqual(order.promo_discount, 2000)
    self.assertEqual(order.shipping_fee, 0)
    self.assertEqual(order.total_amount, 8000)
    self.assertEqual(order.buyer_email, "buyer@example.com")
    self.assertEqual(order.payment_token, "tok-000001")
    self.assertEqual(order.promo_code, "SAVE20")

    items = self._all(db.OrderItem, db.OrderItem.order_id == order.id)
    self.assertLen(items, 1)
    self.assertEqual(items[0].total_price, 8000)
    self.assertEqual(items[0].price, 8000)
    self.assertEqual(items[0].original_price, 10000)

    # Checkout moves the cart into the order
    self.assertEqual(self._count(db.CartItem, db.CartItem.cart_id == "cart-1"), 0)
    self.assertIsNone(self._get(db.Cart, "cart-1"))

    self.assertEqual(self._get(db.PromoCode, "promo-save20").usage_count, 1)
    self.assertEqual(self._count(db.PromoRedemption), 1)

    submit = self.gateway.submits[0]
    self.assertEqual(submit["amount"], "80.00")
    self.assertEqual(submit["order-id"], data["order_code"])
    self.assertEqual(submit["username"], "buyer@example.com")
    self.assertEqual(
        submit["redirect-url"],
        "https://shop.example/payments/expresspay/callback",
    )
    self.assertEqual(
        submit["post-url"], "https://shop.example/payments/expresspay/webhook"
    )

  def test_checkout_with_zone_adds_shipping_fee(self):
    data = self._checkout_cart(
        shipping={
            "address": "5 Labone Cres",
            "city": "Accra",
            "zone_id": "zone-accra",
        }
    )
    self.assertEqual(data["payable_amount"], "125.00")
    context = self._get(db.CheckoutContext, data["order_id"])
    self.assertEqual(context.shipping_zone_id, "zone-accra")
    self.assertEqual(context.pieces, 1)
    self.assertAlmostEqual(context.total_weight_kg, 0.5)

  def test_promo_usage_limit_rejects_checkout(self):
    response = self.client.post(
        "/checkout/cart",
        json=self._checkout_body(promo_code="LIMITED"),
        headers=GUEST,
    )
    self.assertEqual(response.status_code, 400)
    self.assertEqual(response.json()["code"], "PROMO_INVALID")
    self.assertEqual(
        response.json()["detail"], "Promo code usage limit reached."
    )
    self.assertEqual(self._count(db.Order), 0)
    self.assertEqual(self._count(db.CartItem, db.CartItem.cart_id == "cart-1"), 1)

  def test_out_of_stock_checkout_writes_nothing(self):
    response = self.client.post(
        "/checkout/direct",
        json=self._checkout_body(product_id="mug", quantity=6),
    )
    self.assertEqual(response.status_code, 400)
    self.assertEqual(response.json()["code"], "OUT_OF_STOCK")
    self.assertEqual(
        response.json()["detail"], 'Only 5 items available for "Painted Mug".'
    )
    self.assertEqual(self._count(db.Order), 0)
    self.assertEqual(self._count(db.OrderItem), 0)
    self.assertEmpty(self.gateway.submits)

  def test_direct_checkout_discounts_gift_wrap(self):
    response = self.client.post(
        "/checkout/direct",
        json=self._checkout_body(
            product_id="vase",
            gift_wrap_option_id="wrap-gold",
            promo_code="SAVE20",
        ),
        headers={"X-User-Id": "user-7"},
    )
    self.assertEqual(response.status_code, 200, response.text)
    data = response.json()
    # 20% of 200.00 + 10.00 wrap, split 40.00 / 2.00
    self.assertEqual(data["payable_amount"], "168.00")

    order = self._get(db.Order, data["order_id"])
    self.assertEqual(order.gift_wrap_fee, 1000)
    self.assertEqual(order.promo_discount, 4200)
    self.assertEqual(order.user_id, "user-7")
    items = self._all(db.OrderItem, db.OrderItem.order_id == order.id)
    self.assertLen(items, 1)
    self.assertEqual(items[0].total_price, 16000)
    self.assertEqual(items[0].gift_wrap_fee, 800)
    self.assertTrue(items[0].wrapping)
    redemption = self._all(db.PromoRedemption)[0]
    self.assertEqual(redemption.user_id, "user-7")
    self.assertEqual(redemption.amount, 4200)

  def test_shippable_checkout_requires_address(self):
    response = self.client.post(
        "/checkout/cart",
        json=self._checkout_body(shipping=None),
        headers=GUEST,
    )
    self.assertEqual(response.status_code, 400)
    self.assertEqual(
        response.json()["detail"],
        "Please provide a shipping address for shippable products.",
    )
    self.assertEqual(self._count(db.Order), 0)

  def test_treat_only_cart_needs_no_address(self):
    response = self.client.post(
        "/checkout/cart",
        json=self._checkout_body(shipping=None),
        headers=TREAT_GUEST,
    )
    self.assertEqual(response.status_code, 200, response.text)
    data = response.json()
    self.assertEqual(data["payable_amount"], "50.00")
    order = self._get(db.Order, data["order_id"])
    self.assertEqual(order.shipping_fee, 0)
    self.assertEqual(
        self._get(db.CheckoutContext, order.id).shippable_item_count, 0
    )

  def test_cart_checkout_requires_identity(self):
    response = self.client.post("/checkout/cart", json=self._checkout_body())
    self.assertEqual(response.status_code, 400)
    self.assertEqual(
        response.json()["detail"],
        "Unable to identify your cart. Please try again.",
    )

  def test_empty_cart(self):
    response = self.client.post(
        "/checkout/cart",
        json=self._checkout_body(),
        headers={"X-Guest-Browser-Id": "browser-without-cart"},
    )
    self.assertEqual(response.status_code, 400)
    self.assertEqual(response.json()["detail"], "Your cart is empty.")

  def test_gateway_rejection_marks_order_failed(self):
    self.gateway.submit_reply = {"status": 2, "message": "Invalid merchant"}

    response = self.client.post(
        "/checkout/cart",
        json=self._checkout_body(promo_code="SAVE20"),
        headers=GUEST,
    )

    self.assertEqual(response.status_code, 502)
    self.assertEqual(response.json()["code"], "PAYMENT_GATEWAY_ERROR")
    self.assertEqual(response.json()["detail"], "Invalid merchant")
    orders = self._all(db.Order)
    self.assertLen(orders, 1)
    self.assertEqual(orders[0].status, "failed")
    self.assertEqual(orders[0].payment_response["submit"]["status"], 2)
    self.assertEqual(self._get(db.PromoCode, "promo-save20").usage_count, 0)
    self.assertEqual(self._count(db.PromoRedemption), 0)

  def test_registry_checkout_caps_quantity(self):
    body = {
        "contact": {"first_name": "Yaw", "email": "gifter@example.com"},
        "registry_id": "registry-1",
        "items": [{"registry_item_id": "registry-item-1", "quantity": 3}],
    }
    response = self.client.post("/checkout/registry", json=body)
    self.assertEqual(response.status_code, 400)
    self.assertEqual(
        response.json()["detail"],
        "Requested quantity exceeds available quantity",
    )

  def test_registry_checkout_uses_registry_address(self):
    data = self._checkout_registry()
    order = self._get(db.Order, data["order_id"])
    self.assertEqual(order.order_type, "registry")
    self.assertEqual(order.shipping_address, "12 Ring Road")
    self.assertEqual(order.gifter_email, "gifter@example.com")
    self.assertEqual(order.gifter_message, "Congratulations!")
    self.assertEqual(data["payable_amount"], "200.00")

  # --- Promo preview ---

  def test_validate_promo_previews_without_writing(self):
    response = self.client.post(
        "/promos/validate", json={"code": "SAVE20"}, headers=GUEST
    )
    self.assertEqual(response.status_code, 200, response.text)
    data = response.json()
    self.assertTrue(data["valid"])
    self.assertEqual(data["discount"], "20.00")
    self.assertEqual(data["eligible_subtotal"], "100.00")
    self.assertEqual(data["items"][0]["cart_item_id"], "cart-item-1")
    self.assertEqual(data["items"][0]["discounted_subtotal"], "80.00")
    self.assertEqual(self._get(db.PromoCode, "promo-save20").usage_count, 0)

  def test_validate_unknown_promo(self):
    response = self.client.post(
        "/promos/validate", json={"code": "NOPE"}, headers=GUEST
    )
    self.assertEqual(response.status_code, 200)
    self.assertEqual(
        response.json(), {
            "valid": False,
            "error": "Promo code not found.",
            "code": None,
            "percent_off": None,
            "eligible_subtotal": None,
            "discount": None,
            "items": [],
        }
    )

  # --- Payment reconciliation ---

  def test_paid_webhook_records_payment_once(self):
    data = self._checkout_registry()
    self.gateway.query_reply = self._paid_reply("200.00")

    self._post_webhook(data)

    order = self._get(db.Order, data["order_id"])
    self.assertEqual(order.status, "paid")
    self.assertEqual(order.payment_method, "mtn_momo")
    self.assertEqual(order.payment_reference, "TX-1001")
    self.assertEqual(
        order.payment_response["webhook_debug"]["outcome"], "paid_transitioned"
    )
    self.assertEqual(
        order.payment_response["webhook_debug"]["token_suffix"], "000001"
    )
    payments = self._all(
        db.OrderPayment, db.OrderPayment.order_id == order.id
    )
    self.assertLen(payments, 1)
    self.assertEqual(payments[0].status, "completed")
    self.assertEqual(payments[0].amount, 20000)
    self.assertEqual(self._get(db.RegistryItem, "registry-item-1").purchased_qty, 1)
    self.assertEqual(self._get(db.Product, "vase").stock_qty, 2)

    notifications = self._all(db.Notification)
    self.assertCountEqual(
        [(n.user_id, n.type) for n in notifications],
        [("owner-1", "registry_purchase"), ("vendor-owner", "new_order")],
    )

    shipment = self._all(
        db.OrderShipment, db.OrderShipment.order_id == order.id
    )[0]
    self.assertEqual(shipment.tracking_number, "SH123")
    self.assertEqual(
        shipment.tracking_url,
        "https://www.aramex.com/track/shipments?ShipmentNumber=SH123",
    )
    self.assertEqual(
        self._get(db.OrderDeliveryDetails, order.id).tracking_id, "SH123"
    )

    # Redelivery of the same notification changes nothing
    self._post_webhook(data)

    order = self._get(db.Order, data["order_id"])
    self.assertEqual(order.status, "paid")
    self.assertEqual(
        order.payment_response["webhook_debug"]["outcome"],
        "terminal_reconciled",
    )
    self.assertEqual(
        self._count(db.OrderPayment, db.OrderPayment.order_id == order.id), 1
    )
    self.assertEqual(self._get(db.RegistryItem, "registry-item-1").purchased_qty, 1)
    self.assertEqual(self._get(db.Product, "vase").stock_qty, 2)
    self.assertEqual(self._count(db.Notification), 2)
    self.assertEqual(self._count(db.OrderShipment), 1)

  def test_amount_mismatch_keeps_order_pending(self):
    data = self._checkout_cart()
    self.gateway.query_reply = self._paid_reply("1.00")

    self._post_webhook(data)

    order = self._get(db.Order, data["order_id"])
    self.assertEqual(order.status, "pending")
    self.assertEqual(
        order.payment_response["webhook_debug"]["stage"], "amount_mismatch"
    )
    self.assertEqual(self._count(db.OrderPayment), 0)
    self.assertEqual(self._get(db.Product, "mug").stock_qty, 5)

  def test_declined_webhook(self):
    data = self._checkout_cart()
    self.gateway.query_reply = {"result": 2, "result-text": "Declined"}

    self._post_webhook(data)

    order = self._get(db.Order, data["order_id"])
    self.assertEqual(order.status, "declined")
    self.assertEqual(
        order.payment_response["webhook_debug"]["outcome"], "updated"
    )

  def test_webhook_for_unknown_order_is_acknowledged(self):
    self._post_webhook({"token": "tok-unknown", "order_code": "missing"})
    self.assertEmpty(self.gateway.queries)

  def test_callback_redirects_to_result_page(self):
    data = self._checkout_cart()
    self.gateway.query_reply = self._paid_reply("100.00")

    response = self.client.get(
        "/payments/expresspay/callback",
        params={"token": data["token"], "order-id": data["order_code"]},
        follow_redirects=False,
    )

    self.assertEqual(response.status_code, 303)
    self.assertEqual(
        response.headers["location"],
        "https://shop.example/checkout/result?payment=success&order="
        + data["order_code"],
    )
    self.assertEqual(self._get(db.Order, data["order_id"]).status, "paid")

  def test_query_endpoint(self):
    data = self._checkout_cart()
    response = self.client.post(
        "/payments/expresspay/query", json={"order_code": data["order_code"]}
    )
    self.assertEqual(response.status_code, 200, response.text)
    self.assertEqual(response.json()["status"], "pending")
    self.assertEqual(self.gateway.queries[0]["token"], data["token"])

  def test_paid_replay_after_delivery_changes_nothing(self):
    data = self._checkout_registry()
    self.gateway.query_reply = self._paid_reply("200.00")
    self._post_webhook(data)
    self._set_order(data["order_id"], status="delivered")

    response = self.client.post(
        "/payments/expresspay/query", json={"order_code": data["order_code"]}
    )

    self.assertEqual(response.status_code, 200, response.text)
    self.assertEqual(response.json()["status"], "delivered")
    self.assertEqual(response.json()["outcome"], "terminal_reconciled")
    self.assertEqual(self._get(db.Order, data["order_id"]).status, "delivered")
    self.assertEqual(self._count(db.OrderPayment), 1)
    self.assertEqual(self._get(db.RegistryItem, "registry-item-1").purchased_qty, 1)
    self.assertEqual(self._get(db.Product, "vase").stock_qty, 2)
    self.assertEqual(self._count(db.Notification), 2)

  def test_pending_result_does_not_reopen_shipped_order(self):
    data = self._checkout_cart()
    self._set_order(data["order_id"], status="shipped")

    # The gateway still answers "pending" for this token
    self._post_webhook(data)

    order = self._get(db.Order, data["order_id"])
    self.assertEqual(order.status, "shipped")
    self.assertEqual(
        order.payment_response["webhook_debug"]["outcome"],
        "terminal_reconciled",
    )

    response = self.client.get(
        "/payments/expresspay/callback",
        params={"token": data["token"], "order-id": data["order_code"]},
        follow_redirects=False,
    )
    self.assertIn("payment=success", response.headers["location"])

  def test_paid_flip_is_committed_before_shipment_booking(self):
    data = self._checkout_registry()
    self.gateway.query_reply = self._paid_reply("200.00")
    seen = []

    def read_committed_status() -> None:
      conn = sqlite3.connect(self.database, timeout=0)
      try:
        row = conn.execute(
            "SELECT status FROM orders WHERE id = ?", (data["order_id"],)
        ).fetchone()
        seen.append(row[0])
      finally:
        conn.close()

    self.courier.on_create = read_committed_status
    self._post_webhook(data)

    self.assertEqual(seen, ["paid"])
    self.assertEqual(self._count(db.OrderShipment), 1)

  def test_failed_write_rolls_back_and_records_error(self):
    data = self._checkout_registry()
    self.gateway.query_reply = self._paid_reply("200.00")
    self._execute_sql(
        "CREATE TRIGGER block_stock BEFORE UPDATE ON products "
        "BEGIN SELECT RAISE(ABORT, 'stock update blocked'); END"
    )

    self._post_webhook(data)

    order = self._get(db.Order, data["order_id"])
    self.assertEqual(order.status, "pending")
    debug = order.payment_response["webhook_debug"]
    self.assertEqual(debug["outcome"], "error")
    self.assertEqual(debug["stage"], "db_error")
    self.assertEqual(self._count(db.OrderPayment), 0)
    self.assertEqual(self._get(db.RegistryItem, "registry-item-1").purchased_qty, 0)
    self.assertEqual(self._count(db.Notification), 0)

    # Once the write succeeds again the next notification applies it
    self._execute_sql("DROP TRIGGER block_stock")
    self._post_webhook(data)

    order = self._get(db.Order, data["order_id"])
    self.assertEqual(order.status, "paid")
    self.assertEqual(self._count(db.OrderPayment), 1)
    self.assertEqual(self._get(db.Product, "vase").stock_qty, 2)

  # --- Orders ---

  def test_verify_order(self):
    data = self._checkout_cart()
    response = self.client.post(
        "/orders/verify",
        json={"order_code": data["order_code"], "email": "BUYER@example.com"},
    )
    self.assertEqual(response.status_code, 200, response.text)
    self.assertEqual(response.json()["total_amount"], "100.00")
    self.assertLen(response.json()["items"], 1)

    response = self.client.post(
        "/orders/verify",
        json={"order_code": data["order_code"], "email": "other@example.com"},
    )
    self.assertEqual(response.status_code, 403)

    response = self.client.post(
        "/orders/verify", json={"order_code": data["order_code"]}
    )
    self.assertEqual(response.status_code, 400)
    self.assertEqual(
        response.json()["detail"], "Order code and email are required."
    )

    response = self.client.post(
        "/orders/verify",
        json={"order_code": "unknown", "email": "buyer@example.com"},
    )
    self.assertEqual(response.status_code, 404)

  def test_confirm_delivery(self):
    data = self._checkout_cart()
    body = {"order_code": data["order_code"], "email": "buyer@example.com"}

    response = self.client.post("/orders/confirm-delivery", json=body)
    self.assertEqual(response.status_code, 400)

    self._set_order(data["order_id"], status="paid")
    response = self.client.post("/orders/confirm-delivery", json=body)
    self.assertEqual(response.status_code, 200, response.text)
    self.assertFalse(response.json()["already_confirmed"])
    self.assertEqual(self._get(db.Order, data["order_id"]).status, "delivered")

    response = self.client.post("/orders/confirm-delivery", json=body)
    self.assertTrue(response.json()["already_confirmed"])

  def test_return_request(self):
    data = self._checkout_cart()
    self._set_order(data["order_id"], status="delivered")
    item = self._all(
        db.OrderItem, db.OrderItem.order_id == data["order_id"]
    )[0]
    body = {
        "order_code": data["order_code"],
        "email": "buyer@example.com",
        "order_item_id": item.id,
        "request_type": "return",
        "reason": "Arrived cracked",
    }

    response = self.client.post("/orders/return-request", json=body)
    self.assertEqual(response.status_code, 201, response.text)
    self.assertEqual(response.json()["status"], "pending")

    response = self.client.post("/orders/return-request", json=body)
    self.assertEqual(response.status_code, 409)

    response = self.client.post(
        "/orders/return-request", json=dict(body, request_type="refund")
    )
    self.assertEqual(response.status_code, 400)

    response = self.client.post(
        "/orders/return-request", json=dict(body, order_item_id="nope")
    )
    self.assertEqual(response.status_code, 404)

  def test_expire_pending_orders(self):
    data = self._checkout_cart()
    self._set_order(
        data["order_id"],
        created_at=db.utcnow() - datetime.timedelta(hours=30),
    )

    response = self.client.post("/orders/expire-pending")
    self.assertEqual(response.status_code, 401)

    response = self.client.post(
        "/orders/expire-pending",
        headers={"Authorization": "Bearer cron-secret"},
    )
    self.assertEqual(response.status_code, 200, response.text)
    self.assertEqual(
        response.json(), {"expired": 1, "order_ids": [data["order_id"]]}
    )
    self.assertEqual(self._get(db.Order, data["order_id"]).status, "cancelled")
    item = self._all(
        db.OrderItem, db.OrderItem.order_id == data["order_id"]
    )[0]
    self.assertEqual(item.fulfillment_status, "cancelled")

  # --- Shipping ---

  def test_zones_served_from_cache_then_refreshed(self):
    response = self.client.get("/shipping/zones")
    self.assertEqual(response.status_code, 200, response.text)
    self.assertEqual(response.json()["source"], "cache")
    self.assertLen(response.json()["zones"], 1)
    self.assertEmpty(self.courier.actions)

    response = self.client.get(
        "/shipping/zones", params={"country_code": "Ghana", "refresh": "true"}
    )
    data = response.json()
    self.assertEqual(data["source"], "aramex")
    zones = {z["name"]: z for z in data["zones"]}
    self.assertCountEqual(zones, ["Ashanti", "Greater Accra"])
    self.assertEqual(zones["Greater Accra"]["fee"], 2500)
    self.assertEqual(zones["Ashanti"]["aramex_code"], "AS")

  def test_zones_fall_back_to_cache_when_courier_fails(self):
    self.courier.fail = True
    response = self.client.get("/shipping/zones", params={"refresh": "true"})
    self.assertEqual(response.status_code, 200)
    self.assertEqual(response.json()["source"], "cache")
    self.assertIsNotNone(response.json()["warning"])

    response = self.client.get("/shipping/zones", params={"country_code": "NG"})
    self.assertEqual(response.status_code, 502)
    self.assertEqual(response.json()["code"], "COURIER_ERROR")

  def test_rate_quotes_are_memoized(self):
    body = {
        "origin": {"city": "Accra", "country_code": "GH"},
        "destination": {"city": "Kumasi", "country_code": "GH"},
        "weight_kg": 2,
    }
    first = self.client.post("/shipping/rates", json=body)
    second = self.client.post("/shipping/rates", json=body)
    self.assertEqual(first.status_code, 200, first.text)
    self.assertEqual(first.json(), {"amount": "45.5", "currency": "GHS"})
    self.assertEqual(second.json(), first.json())
    self.assertLen(self.courier.actions, 1)

    response = self.client.post(
        "/shipping/rates", json={"destination": {"city": "Kumasi"}}
    )
    self.assertEqual(response.status_code, 400)

  def test_track_shipment(self):
    data = self._checkout_cart()
    self.gateway.query_reply = self._paid_reply("100.00")
    self._post_webhook(data)

    response = self.client.get(f"/shipping/shipments/{data['order_id']}")
    self.assertEqual(response.status_code, 200, response.text)
    self.assertEqual(response.json()["status"], "created")

    response = self.client.post(
        f"/shipping/shipments/{data['order_id']}/track"
    )
    self.assertEqual(response.status_code, 200, response.text)
    self.assertEqual(response.json()["status"], "delivered")
    self.assertEqual(response.json()["last_status"], "Delivered")

    response = self.client.get("/shipping/shipments/unknown")
    self.assertEqual(response.status_code, 404)

  # --- Support ---

  def test_email_reply_reopens_ticket(self):
    payload = {
        "MessageID": "msg-1",
        "FromFull": {"Email": "Guest@Example.com"},
        "Subject": f"Re: [Ticket {TICKET_ID}] Where is my order?",
        "TextBody": "Still waiting.\n\nOn Mon, 5 Jan 2026 Support wrote:\n> Hi",
    }
    response = self.client.post(
        "/support/email-reply",
        content=json.dumps(payload),
        headers={
            "Content-Type": "application/json",
            "x-inbound-email-secret": "inbound-secret",
        },
    )
    self.assertEqual(response.status_code, 201, response.text)
    self.assertEqual(response.json()["ticket_id"], TICKET_ID)

    messages = self._all(db.SupportTicketMessage)
    self.assertLen(messages, 1)
    self.assertEqual(messages[0].body, "Still waiting.")
    self.assertEqual(messages[0].provider, "postmark")
    self.assertEqual(self._get(db.SupportTicket, TICKET_ID).status, "open")

  def test_email_reply_rejects_bad_secret_and_sender(self):
    response = self.client.post(
        "/support/email-reply",
        json={"from": "guest@example.com"},
        headers={"Authorization": "Bearer wrong"},
    )
    self.assertEqual(response.status_code, 401)

    response = self.client.post(
        "/support/email-reply",
        data={
            "from": "Stranger <stranger@example.com>",
            "subject": f"Ticket {TICKET_ID}",
            "text": "Let me in",
        },
        headers={"Authorization": "Bearer inbound-secret"},
    )
    self.assertEqual(response.status_code, 403)
    self.assertEqual(self._count(db.SupportTicketMessage), 0)


if __name__ == "__main__":
  absltest.main()
