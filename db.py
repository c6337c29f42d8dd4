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

"""Database management and persistence layer for the checkout server.

This module provides the schema definitions, database session management, and
asynchronous data access helpers used by the server. It utilizes SQLAlchemy with
SQLite (via aiosqlite).

Key features include:
- `DatabaseManager`: Handles asynchronous engine initialization and the session
  factory.
- WAL Mode: Enables SQLite Write-Ahead Logging so webhook deliveries and
  storefront requests can write concurrently.
- Declarative Models: Catalog, carts, registries, promos, orders, payments,
  shipping and support tables. Money columns hold integer minor units.
- Data Access Helpers: Asynchronous lookups plus the atomic counter updates and
  conditional status flips the payment reconciler relies on.
"""

import datetime
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
import uuid

from sqlalchemy import Boolean
from sqlalchemy import case
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import delete
from sqlalchemy import Float
from sqlalchemy import ForeignKey
from sqlalchemy import func
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import select
from sqlalchemy import String
from sqlalchemy import text
from sqlalchemy import UniqueConstraint
from sqlalchemy import update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime.datetime:
  """Returns the current time as naive UTC, matching stored timestamps."""
  return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def new_id() -> str:
  return str(uuid.uuid4())


class DatabaseManager:
  """Manages the database engine and sessions without using global variables."""

  def __init__(self) -> None:
    self.engine: Optional[AsyncEngine] = None
    self.session_factory: Optional[sessionmaker] = None

  async def init_db(self, database_path: str) -> None:
    """Initializes the database engine and creates tables."""
    url = f"sqlite+aiosqlite:///{database_path}"
    self.engine = create_async_engine(url, echo=False)

    async with self.engine.connect() as conn:
      await conn.execute(text("PRAGMA journal_mode=WAL"))

    self.session_factory = sessionmaker(
        self.engine, expire_on_commit=False, class_=AsyncSession
    )

    async with self.engine.begin() as conn:
      await conn.run_sync(Base.metadata.create_all)

  async def close(self) -> None:
    """Closes the database engine."""
    if self.engine:
      await self.engine.dispose()


# Global manager instance (to be initialized via lifespan)
manager = DatabaseManager()


# --- Catalog ---


class Profile(Base):
  __tablename__ = "profiles"

  id = Column(String, primary_key=True, default=new_id)
  email = Column(String, index=True)
  firstname = Column(String, nullable=True)
  lastname = Column(String, nullable=True)


class Vendor(Base):
  __tablename__ = "vendors"

  id = Column(String, primary_key=True, default=new_id)
  profile_id = Column(String, nullable=True)  # Owning user
  business_name = Column(String)
  verified = Column(Boolean, default=False)
  commission_rate = Column(Float, default=0.0)  # Percent
  phone = Column(String, nullable=True)
  email = Column(String, nullable=True)
  address_street = Column(String, nullable=True)
  digital_address = Column(String, nullable=True)
  address_city = Column(String, nullable=True)
  address_state = Column(String, nullable=True)
  address_country = Column(String, nullable=True)


class Category(Base):
  __tablename__ = "categories"

  id = Column(String, primary_key=True, default=new_id)
  name = Column(String)


class Product(Base):
  __tablename__ = "products"

  id = Column(String, primary_key=True, default=new_id)
  vendor_id = Column(String, ForeignKey("vendors.id"), index=True)
  name = Column(String)
  price = Column(Integer)  # Minor units, service charge included
  sale_price = Column(Integer, nullable=True)
  service_charge = Column(Integer, default=0)
  active = Column(Boolean, default=True)
  status = Column(String, default="pending")
  stock_qty = Column(Integer, default=0)
  is_shippable = Column(Boolean, default=True)
  weight_kg = Column(Float, nullable=True)
  product_type = Column(String, default="physical")  # e.g. 'treat'
  # List of {"key", "label", "price", "stock_qty"}
  variations = Column(JSON, nullable=True)


class ProductCategory(Base):
  __tablename__ = "product_categories"

  product_id = Column(String, ForeignKey("products.id"), primary_key=True)
  category_id = Column(String, ForeignKey("categories.id"), primary_key=True)


class GiftWrapOption(Base):
  __tablename__ = "gift_wrap_options"

  id = Column(String, primary_key=True, default=new_id)
  name = Column(String)
  fee = Column(Integer, default=0)
  active = Column(Boolean, default=True)


# --- Carts and registries ---


class Cart(Base):
  __tablename__ = "carts"

  id = Column(String, primary_key=True, default=new_id)
  user_id = Column(String, nullable=True, index=True)
  guest_browser_id = Column(String, nullable=True, index=True)
  vendor_id = Column(String, nullable=True)
  registry_id = Column(String, nullable=True)
  status = Column(String, default="active")
  created_at = Column(DateTime, default=utcnow)


class CartItem(Base):
  __tablename__ = "cart_items"

  id = Column(String, primary_key=True, default=new_id)
  cart_id = Column(String, ForeignKey("carts.id"), index=True)
  product_id = Column(String, ForeignKey("products.id"))
  quantity = Column(Integer, default=1)
  variation = Column(JSON, nullable=True)
  wrapping = Column(Boolean, default=False)
  gift_wrap_option_id = Column(String, nullable=True)
  registry_item_id = Column(String, nullable=True)


class Registry(Base):
  __tablename__ = "registries"

  id = Column(String, primary_key=True, default=new_id)
  registry_code = Column(String, unique=True)
  title = Column(String)
  owner_id = Column(String, nullable=True)
  shipping_address = Column(String, nullable=True)
  shipping_city = Column(String, nullable=True)
  shipping_region = Column(String, nullable=True)
  shipping_country = Column(String, nullable=True)


class RegistryItem(Base):
  __tablename__ = "registry_items"

  id = Column(String, primary_key=True, default=new_id)
  registry_id = Column(String, ForeignKey("registries.id"), index=True)
  product_id = Column(String, ForeignKey("products.id"))
  quantity_needed = Column(Integer, default=1)
  purchased_qty = Column(Integer, default=0)


# --- Promos ---


class PromoCode(Base):
  __tablename__ = "promo_codes"

  id = Column(String, primary_key=True, default=new_id)
  code = Column(String, index=True)
  scope = Column(String, default="platform")  # 'platform' or 'vendor'
  vendor_id = Column(String, nullable=True)
  percent_off = Column(Float)
  active = Column(Boolean, default=True)
  start_at = Column(DateTime, nullable=True)
  end_at = Column(DateTime, nullable=True)
  min_spend = Column(Integer, default=0)
  usage_limit = Column(Integer, nullable=True)
  per_user_limit = Column(Integer, nullable=True)
  usage_count = Column(Integer, default=0)
  target_shippable = Column(String, default="any")
  target_product_type = Column(String, nullable=True)


class PromoCodeTarget(Base):
  __tablename__ = "promo_code_targets"

  id = Column(String, primary_key=True, default=new_id)
  promo_id = Column(String, ForeignKey("promo_codes.id"), index=True)
  product_id = Column(String, nullable=True)
  category_id = Column(String, nullable=True)


class PromoRedemption(Base):
  __tablename__ = "promo_redemptions"

  id = Column(String, primary_key=True, default=new_id)
  promo_id = Column(String, ForeignKey("promo_codes.id"), index=True)
  order_id = Column(String, ForeignKey("orders.id"))
  user_id = Column(String, nullable=True)
  guest_browser_id = Column(String, nullable=True)
  device_fingerprint = Column(String, nullable=True)
  amount = Column(Integer)
  meta = Column(JSON, nullable=True)
  created_at = Column(DateTime, default=utcnow)


# --- Orders and payments ---


class Order(Base):
  __tablename__ = "orders"

  id = Column(String, primary_key=True, default=new_id)
  order_code = Column(String, unique=True, index=True)
  order_type = Column(String, default="storefront")
  status = Column(String, default="pending", index=True)
  currency = Column(String, default="GHS")
  subtotal = Column(Integer, default=0)
  shipping_fee = Column(Integer, default=0)
  gift_wrap_fee = Column(Integer, default=0)
  promo_discount = Column(Integer, default=0)
  total_amount = Column(Integer, default=0)

  buyer_firstname = Column(String, nullable=True)
  buyer_lastname = Column(String, nullable=True)
  buyer_email = Column(String, nullable=True)
  buyer_phone = Column(String, nullable=True)

  gifter_firstname = Column(String, nullable=True)
  gifter_lastname = Column(String, nullable=True)
  gifter_email = Column(String, nullable=True)
  gifter_phone = Column(String, nullable=True)
  gifter_anonymous = Column(Boolean, default=False)
  gifter_message = Column(String, nullable=True)

  shipping_address = Column(String, nullable=True)
  shipping_city = Column(String, nullable=True)
  shipping_region = Column(String, nullable=True)
  shipping_digital_address = Column(String, nullable=True)
  shipping_country = Column(String, nullable=True)

  user_id = Column(String, nullable=True)
  guest_browser_id = Column(String, nullable=True)
  device_fingerprint = Column(String, nullable=True)
  vendor_id = Column(String, nullable=True)
  registry_id = Column(String, nullable=True)

  promo_id = Column(String, nullable=True)
  promo_code = Column(String, nullable=True)
  promo_scope = Column(String, nullable=True)
  promo_percent = Column(Float, nullable=True)

  payment_token = Column(String, nullable=True, index=True)
  payment_method = Column(String, nullable=True)
  payment_reference = Column(String, nullable=True)
  # Gateway replies and the webhook debug trail
  payment_response = Column(JSON, nullable=True)

  created_at = Column(DateTime, default=utcnow)
  updated_at = Column(DateTime, default=utcnow)


class OrderItem(Base):
  __tablename__ = "order_items"

  id = Column(String, primary_key=True, default=new_id)
  order_id = Column(String, ForeignKey("orders.id"), index=True)
  product_id = Column(String, ForeignKey("products.id"))
  vendor_id = Column(String, nullable=True)
  quantity = Column(Integer)
  price = Column(Integer)  # Unit price after promo
  total_price = Column(Integer)
  original_price = Column(Integer)  # Unit price before promo, net of charge
  service_charge_snapshot = Column(Integer, default=0)
  commission_rate_snapshot = Column(Float, default=0.0)
  variation = Column(JSON, nullable=True)
  wrapping = Column(Boolean, default=False)
  gift_wrap_option_id = Column(String, nullable=True)
  gift_wrap_fee = Column(Integer, default=0)
  registry_item_id = Column(String, nullable=True)
  fulfillment_status = Column(String, default="pending")


class OrderPayment(Base):
  __tablename__ = "order_payments"
  __table_args__ = (
      UniqueConstraint("order_id", "provider", "provider_reference"),
  )

  id = Column(String, primary_key=True, default=new_id)
  order_id = Column(String, ForeignKey("orders.id"), index=True)
  provider = Column(String)
  provider_reference = Column(String)
  amount = Column(Integer)
  currency = Column(String)
  payment_method = Column(String, nullable=True)
  status = Column(String)
  created_at = Column(DateTime, default=utcnow)


class OrderDeliveryDetails(Base):
  __tablename__ = "order_delivery_details"

  order_id = Column(String, ForeignKey("orders.id"), primary_key=True)
  recipient_name = Column(String, nullable=True)
  recipient_phone = Column(String, nullable=True)
  address = Column(String, nullable=True)
  city = Column(String, nullable=True)
  region = Column(String, nullable=True)
  digital_address = Column(String, nullable=True)
  country = Column(String, nullable=True)
  courier_partner = Column(String, nullable=True)
  tracking_id = Column(String, nullable=True)
  delivery_status = Column(String, default="pending")
  confirmed_at = Column(DateTime, nullable=True)
  confirmed_by = Column(String, nullable=True)
  updated_at = Column(DateTime, default=utcnow)


class CheckoutContext(Base):
  __tablename__ = "checkout_contexts"

  order_id = Column(String, ForeignKey("orders.id"), primary_key=True)
  total_weight_kg = Column(Float, default=0.0)
  pieces = Column(Integer, default=0)
  shippable_item_count = Column(Integer, default=0)
  shipping_zone_id = Column(String, nullable=True)
  created_at = Column(DateTime, default=utcnow)


# --- Shipping ---


class ShippingZone(Base):
  __tablename__ = "shipping_zones"
  __table_args__ = (UniqueConstraint("country_code", "name"),)

  id = Column(String, primary_key=True, default=new_id)
  country_code = Column(String, index=True)
  name = Column(String)
  fee = Column(Integer, default=0)
  aramex_code = Column(String, nullable=True)
  active = Column(Boolean, default=True)
  updated_at = Column(DateTime, default=utcnow)


class OrderShipment(Base):
  __tablename__ = "order_shipments"

  id = Column(String, primary_key=True, default=new_id)
  order_id = Column(String, ForeignKey("orders.id"), index=True)
  provider = Column(String)
  status = Column(String)
  tracking_number = Column(String, nullable=True)
  tracking_url = Column(String, nullable=True)
  label_url = Column(String, nullable=True)
  shipment_reference = Column(String, nullable=True)
  cost = Column(Integer, nullable=True)
  currency = Column(String, nullable=True)
  last_status = Column(String, nullable=True)
  last_status_at = Column(DateTime, nullable=True)
  meta = Column(JSON, nullable=True)


# --- Notifications, returns and support ---


class Notification(Base):
  __tablename__ = "notifications"

  id = Column(String, primary_key=True, default=new_id)
  user_id = Column(String, index=True)
  type = Column(String)
  message = Column(String)
  link = Column(String, nullable=True)
  data = Column(JSON, nullable=True)
  read = Column(Boolean, default=False)
  created_at = Column(DateTime, default=utcnow)


class ReturnRequest(Base):
  __tablename__ = "return_requests"

  id = Column(String, primary_key=True, default=new_id)
  order_id = Column(String, ForeignKey("orders.id"), index=True)
  order_item_id = Column(String, ForeignKey("order_items.id"))
  request_type = Column(String)  # 'return' or 'exchange'
  reason = Column(String)
  status = Column(String, default="pending")
  requester_email = Column(String)
  created_at = Column(DateTime, default=utcnow)


class SupportTicket(Base):
  __tablename__ = "support_tickets"

  id = Column(String, primary_key=True, default=new_id)
  subject = Column(String)
  status = Column(String, default="open")
  guest_email = Column(String, nullable=True)
  created_by = Column(String, nullable=True)  # Profile id
  created_at = Column(DateTime, default=utcnow)
  updated_at = Column(DateTime, default=utcnow)


class SupportTicketMessage(Base):
  __tablename__ = "support_ticket_messages"

  id = Column(String, primary_key=True, default=new_id)
  ticket_id = Column(String, ForeignKey("support_tickets.id"), index=True)
  sender_email = Column(String)
  body = Column(String)
  source = Column(String, default="email")
  provider = Column(String, nullable=True)
  created_at = Column(DateTime, default=utcnow)


# --- Data Access Helpers ---


async def get_products(
    session: AsyncSession, product_ids: Iterable[str]
) -> Dict[str, Product]:
  """Retrieves products by ID in a single query, keyed by ID."""
  ids = list(set(product_ids))
  if not ids:
    return {}
  result = await session.execute(select(Product).where(Product.id.in_(ids)))
  return {p.id: p for p in result.scalars().all()}


async def get_vendors(
    session: AsyncSession, vendor_ids: Iterable[str]
) -> Dict[str, Vendor]:
  """Retrieves vendors by ID in a single query, keyed by ID."""
  ids = [v for v in set(vendor_ids) if v]
  if not ids:
    return {}
  result = await session.execute(select(Vendor).where(Vendor.id.in_(ids)))
  return {v.id: v for v in result.scalars().all()}


async def get_product_category_ids(
    session: AsyncSession, product_ids: Iterable[str]
) -> Dict[str, List[str]]:
  """Maps each product ID to the list of its category IDs."""
  ids = list(set(product_ids))
  mapping: Dict[str, List[str]] = {pid: [] for pid in ids}
  if not ids:
    return mapping
  result = await session.execute(
      select(ProductCategory).where(ProductCategory.product_id.in_(ids))
  )
  for row in result.scalars().all():
    mapping[row.product_id].append(row.category_id)
  return mapping


async def get_gift_wrap_options(
    session: AsyncSession, option_ids: Iterable[str]
) -> Dict[str, GiftWrapOption]:
  """Retrieves active gift wrap options keyed by ID."""
  ids = [o for o in set(option_ids) if o]
  if not ids:
    return {}
  result = await session.execute(
      select(GiftWrapOption).where(
          GiftWrapOption.id.in_(ids), GiftWrapOption.active.is_(True)
      )
  )
  return {o.id: o for o in result.scalars().all()}


async def get_active_carts(
    session: AsyncSession,
    user_id: Optional[str],
    guest_browser_id: Optional[str],
    vendor_id: Optional[str] = None,
) -> List[Cart]:
  """Retrieves the active, non-registry carts belonging to an actor.

  Args:
    session: The database session to use.
    user_id: The authenticated user, if any. Takes precedence over the guest.
    guest_browser_id: The anonymous browser id used for guest carts.
    vendor_id: Restricts the lookup to one storefront's carts.

  Returns:
    A list of Cart objects, possibly empty.
  """
  stmt = select(Cart).where(
      Cart.status == "active", Cart.registry_id.is_(None)
  )
  if user_id:
    stmt = stmt.where(Cart.user_id == user_id)
  else:
    stmt = stmt.where(Cart.guest_browser_id == guest_browser_id)
  if vendor_id:
    stmt = stmt.where(Cart.vendor_id == vendor_id)
  result = await session.execute(stmt.order_by(Cart.created_at))
  return list(result.scalars().all())


async def get_cart_items(
    session: AsyncSession, cart_ids: List[str]
) -> List[CartItem]:
  """Retrieves all items of the given carts."""
  if not cart_ids:
    return []
  result = await session.execute(
      select(CartItem).where(CartItem.cart_id.in_(cart_ids))
  )
  return list(result.scalars().all())


async def delete_carts(session: AsyncSession, cart_ids: List[str]) -> None:
  """Deletes carts and their items."""
  if not cart_ids:
    return
  await session.execute(delete(CartItem).where(CartItem.cart_id.in_(cart_ids)))
  await session.execute(delete(Cart).where(Cart.id.in_(cart_ids)))


async def get_registry_items(
    session: AsyncSession, registry_id: str, item_ids: Iterable[str]
) -> Dict[str, RegistryItem]:
  """Retrieves items of one registry keyed by ID."""
  ids = list(set(item_ids))
  if not ids:
    return {}
  result = await session.execute(
      select(RegistryItem).where(
          RegistryItem.registry_id == registry_id, RegistryItem.id.in_(ids)
      )
  )
  return {i.id: i for i in result.scalars().all()}


async def find_promo_codes(
    session: AsyncSession, code: str
) -> List[PromoCode]:
  """Retrieves every promo whose code matches case-insensitively."""
  result = await session.execute(
      select(PromoCode).where(func.lower(PromoCode.code) == code.lower())
  )
  return list(result.scalars().all())


async def get_promo_targets(
    session: AsyncSession, promo_id: str
) -> Tuple[Set[str], Set[str]]:
  """Returns the (product IDs, category IDs) a promo is restricted to."""
  result = await session.execute(
      select(PromoCodeTarget).where(PromoCodeTarget.promo_id == promo_id)
  )
  product_ids: Set[str] = set()
  category_ids: Set[str] = set()
  for target in result.scalars().all():
    if target.product_id:
      product_ids.add(target.product_id)
    if target.category_id:
      category_ids.add(target.category_id)
  return product_ids, category_ids


async def count_redemptions(
    session: AsyncSession, promo_id: str, column: str, value: str
) -> int:
  """Counts redemptions of a promo by one identity column."""
  stmt = select(func.count(PromoRedemption.id)).where(
      PromoRedemption.promo_id == promo_id,
      getattr(PromoRedemption, column) == value,
  )
  result = await session.execute(stmt)
  return result.scalar_one()


async def increment_promo_usage(session: AsyncSession, promo_id: str) -> None:
  """Atomically increments a promo's usage counter."""
  await session.execute(
      update(PromoCode)
      .where(PromoCode.id == promo_id)
      .values(usage_count=func.coalesce(PromoCode.usage_count, 0) + 1)
  )


async def decrement_stock(
    session: AsyncSession, product_id: str, quantity: int
) -> bool:
  """Atomically decrements product stock, flooring at zero."""
  stmt = (
      update(Product)
      .where(Product.id == product_id)
      .values(
          stock_qty=case(
              (Product.stock_qty >= quantity, Product.stock_qty - quantity),
              else_=0,
          )
      )
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def increment_registry_purchased(
    session: AsyncSession, registry_item_id: str, quantity: int
) -> bool:
  """Atomically increments a registry item's purchased quantity."""
  stmt = (
      update(RegistryItem)
      .where(RegistryItem.id == registry_item_id)
      .values(
          purchased_qty=func.coalesce(RegistryItem.purchased_qty, 0) + quantity
      )
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def get_order_by_code(
    session: AsyncSession, order_code: str
) -> Optional[Order]:
  """Retrieves an order by its human-readable code."""
  result = await session.execute(
      select(Order).where(Order.order_code == order_code)
  )
  return result.scalar_one_or_none()


async def get_order_by_token(
    session: AsyncSession, token: str
) -> Optional[Order]:
  """Retrieves an order by its payment gateway token."""
  result = await session.execute(
      select(Order).where(Order.payment_token == token)
  )
  return result.scalars().first()


async def get_order_items(
    session: AsyncSession, order_id: str
) -> List[OrderItem]:
  """Retrieves the items of an order."""
  result = await session.execute(
      select(OrderItem).where(OrderItem.order_id == order_id)
  )
  return list(result.scalars().all())


async def mark_order_paid(
    session: AsyncSession, order_id: str, values: Dict[str, Any]
) -> bool:
  """Flips a pending order to paid.

  Args:
    session: The database session to use.
    order_id: The order to update.
    values: Extra columns to set alongside the status.

  Returns:
    True only for the caller whose update actually changed the row.
  """
  stmt = (
      update(Order)
      .where(Order.id == order_id)
      .where(Order.status == "pending")
      .values(status="paid", updated_at=utcnow(), **values)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def update_pending_order_status(
    session: AsyncSession,
    order_id: str,
    status: str,
    values: Optional[Dict[str, Any]] = None,
) -> bool:
  """Moves a still-pending order to another status."""
  stmt = (
      update(Order)
      .where(Order.id == order_id)
      .where(Order.status == "pending")
      .values(status=status, updated_at=utcnow(), **(values or {}))
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def insert_order_payment(
    session: AsyncSession,
    order_id: str,
    provider: str,
    provider_reference: str,
    amount: int,
    currency: str,
    payment_method: Optional[str],
    status: str,
) -> bool:
  """Inserts a ledger row, ignoring duplicates of (order, provider, ref).

  Returns:
    True if a new row was written.
  """
  stmt = (
      sqlite_insert(OrderPayment)
      .values(
          id=new_id(),
          order_id=order_id,
          provider=provider,
          provider_reference=provider_reference,
          amount=amount,
          currency=currency,
          payment_method=payment_method,
          status=status,
          created_at=utcnow(),
      )
      .on_conflict_do_nothing(
          index_elements=["order_id", "provider", "provider_reference"]
      )
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def get_order_payments(
    session: AsyncSession, order_id: str
) -> List[OrderPayment]:
  """Retrieves the ledger rows of an order."""
  result = await session.execute(
      select(OrderPayment).where(OrderPayment.order_id == order_id)
  )
  return list(result.scalars().all())


async def get_shipping_zones(
    session: AsyncSession, country_code: str
) -> List[ShippingZone]:
  """Retrieves the active cached zones of a country."""
  result = await session.execute(
      select(ShippingZone)
      .where(
          ShippingZone.country_code == country_code,
          ShippingZone.active.is_(True),
      )
      .order_by(ShippingZone.name)
  )
  return list(result.scalars().all())


async def upsert_shipping_zones(
    session: AsyncSession, country_code: str, states: List[Dict[str, str]]
) -> None:
  """Upserts courier states into the zone cache, preserving configured fees."""
  now = utcnow()
  for state in states:
    stmt = sqlite_insert(ShippingZone).values(
        id=new_id(),
        country_code=country_code,
        name=state["name"],
        aramex_code=state.get("code") or None,
        fee=0,
        active=True,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["country_code", "name"],
        set_={"aramex_code": stmt.excluded.aramex_code, "updated_at": now},
    )
    await session.execute(stmt)


async def get_shipment(
    session: AsyncSession, order_id: str, provider: str
) -> Optional[OrderShipment]:
  """Retrieves the shipment created for an order with a provider."""
  result = await session.execute(
      select(OrderShipment).where(
          OrderShipment.order_id == order_id,
          OrderShipment.provider == provider,
      )
  )
  return result.scalars().first()


async def create_notification(
    session: AsyncSession,
    user_id: str,
    notification_type: str,
    message: str,
    link: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
) -> None:
  """Queues an in-app notification for a user."""
  session.add(
      Notification(
          user_id=user_id,
          type=notification_type,
          message=message,
          link=link,
          data=data,
      )
  )


def merge_payment_response(order: Order, **entries: Any) -> None:
  """Merges entries into the order's payment audit blob."""
  # Reassign so SQLAlchemy notices the JSON change
  payload = dict(order.payment_response or {})
  payload.update(entries)
  order.payment_response = payload
