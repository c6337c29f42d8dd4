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

"""Promo code evaluation.

The discount math is pure and operates on `PromoLine` snapshots so checkout and
the promo preview endpoint share it. `PromoService` adds the lookups: the code
itself (vendor scope first), its targets and the prior redemption counts used
for per-user limits.

All amounts are integer minor units. Each step rounds half-up to a whole minor
unit, so per-line results always add back up to the original amounts.
"""

import dataclasses
import datetime
import decimal
import logging
from typing import Dict, List, Optional, Sequence, Set

import db
from enums import PromoScope
from enums import TargetShippable
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

ERROR_EMPTY_CODE = "Enter a promo code."
ERROR_NOT_FOUND = "Promo code not found."
ERROR_NOT_ACTIVE = "Promo code is not active."
ERROR_NOT_APPLICABLE = "Promo code does not apply to your items."
ERROR_MIN_SPEND = "Order does not meet minimum spend."
ERROR_USAGE_LIMIT = "Promo code usage limit reached."
ERROR_NO_IDENTITY = "Cannot verify promo usage. Please sign in or try again."
ERROR_ALREADY_USED = "You have already used this promo code."

# Stored by the admin tools for promos without a product-type filter.
ANY_PRODUCT_TYPE = "any"


@dataclasses.dataclass
class PromoLine:
  """A line item as seen by the promo evaluator."""

  key: str
  product_id: str
  vendor_id: Optional[str]
  subtotal: int
  gift_wrap_fee: int = 0
  category_ids: Sequence[str] = ()
  is_shippable: bool = True
  product_type: Optional[str] = None


@dataclasses.dataclass
class LineDiscount:
  key: str
  eligible: bool
  product_discount: int
  gift_wrap_discount: int
  discounted_subtotal: int
  discounted_gift_wrap_fee: int


@dataclasses.dataclass
class PromoDiscount:
  lines: Dict[str, LineDiscount]
  eligible_subtotal: int
  product_discount_total: int
  gift_wrap_discount_total: int
  total_discount: int


@dataclasses.dataclass
class PromoTargets:
  product_ids: Set[str] = dataclasses.field(default_factory=set)
  category_ids: Set[str] = dataclasses.field(default_factory=set)

  def is_empty(self) -> bool:
    return not self.product_ids and not self.category_ids


@dataclasses.dataclass
class PromoEvaluation:
  valid: bool
  error: Optional[str] = None
  promo: Optional[db.PromoCode] = None
  discount: Optional[PromoDiscount] = None


def normalize_code(code: Optional[str]) -> str:
  return (code or "").strip()


def clamp_percent(percent) -> decimal.Decimal:
  """Returns the percent as a Decimal within 0..100."""
  try:
    value = decimal.Decimal(str(percent))
  except (decimal.InvalidOperation, TypeError, ValueError):
    return decimal.Decimal(0)
  if not value.is_finite():
    return decimal.Decimal(0)
  return max(decimal.Decimal(0), min(decimal.Decimal(100), value))


def percent_of(amount: int, percent) -> int:
  """Computes `percent`% of a minor-unit amount, rounded half-up."""
  raw = decimal.Decimal(amount) * clamp_percent(percent) / 100
  return int(raw.quantize(decimal.Decimal(1), rounding=decimal.ROUND_HALF_UP))


def divide_half_up(amount: int, divisor: int) -> int:
  raw = decimal.Decimal(amount) / divisor
  return int(raw.quantize(decimal.Decimal(1), rounding=decimal.ROUND_HALF_UP))


def _as_naive_utc(value: datetime.datetime) -> datetime.datetime:
  if value.tzinfo is not None:
    return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
  return value


def is_promo_active(
    promo: db.PromoCode, now: Optional[datetime.datetime] = None
) -> bool:
  """A promo is active when flagged active and inside its validity window."""
  if not promo.active:
    return False
  now = _as_naive_utc(now or db.utcnow())
  if promo.start_at and now < _as_naive_utc(promo.start_at):
    return False
  if promo.end_at and now > _as_naive_utc(promo.end_at):
    return False
  return True


def is_line_eligible(
    promo: db.PromoCode, targets: PromoTargets, line: PromoLine
) -> bool:
  """Checks scope, shippable, product type and explicit targets for a line."""
  if promo.scope == PromoScope.VENDOR.value and promo.vendor_id:
    if line.vendor_id != promo.vendor_id:
      return False

  target_shippable = promo.target_shippable or TargetShippable.ANY.value
  if target_shippable == TargetShippable.SHIPPABLE.value and not (
      line.is_shippable
  ):
    return False
  if target_shippable == TargetShippable.NON_SHIPPABLE.value and (
      line.is_shippable
  ):
    return False

  target_type = promo.target_product_type or ANY_PRODUCT_TYPE
  if (
      target_type != ANY_PRODUCT_TYPE
      and line.product_type
      and line.product_type != target_type
  ):
    return False

  if targets.is_empty():
    return True
  if line.product_id in targets.product_ids:
    return True
  return any(cid in targets.category_ids for cid in line.category_ids)


def compute_line_discount(line: PromoLine, percent) -> LineDiscount:
  """Discounts subtotal plus gift wrap, split proportionally between them."""
  base = line.subtotal + line.gift_wrap_fee
  total = percent_of(base, percent)
  if base <= 0:
    product_discount = 0
  else:
    product_discount = int(
        (decimal.Decimal(total) * line.subtotal / base).quantize(
            decimal.Decimal(1), rounding=decimal.ROUND_HALF_UP
        )
    )
  gift_wrap_discount = total - product_discount
  return LineDiscount(
      key=line.key,
      eligible=True,
      product_discount=product_discount,
      gift_wrap_discount=gift_wrap_discount,
      discounted_subtotal=line.subtotal - product_discount,
      discounted_gift_wrap_fee=line.gift_wrap_fee - gift_wrap_discount,
  )


def compute_promo_discount(
    promo: db.PromoCode, targets: PromoTargets, lines: Sequence[PromoLine]
) -> PromoDiscount:
  """Computes per-line and aggregate discounts for a promo.

  Args:
    promo: The promo being applied.
    targets: The promo's explicit product/category targets.
    lines: The cart lines.

  Returns:
    A PromoDiscount; non-eligible lines are carried with zero discount.
  """
  results: Dict[str, LineDiscount] = {}
  eligible_subtotal = 0
  product_total = 0
  gift_wrap_total = 0

  for line in lines:
    if not is_line_eligible(promo, targets, line):
      results[line.key] = LineDiscount(
          key=line.key,
          eligible=False,
          product_discount=0,
          gift_wrap_discount=0,
          discounted_subtotal=line.subtotal,
          discounted_gift_wrap_fee=line.gift_wrap_fee,
      )
      continue

    line_discount = compute_line_discount(line, promo.percent_off)
    results[line.key] = line_discount
    eligible_subtotal += line.subtotal + line.gift_wrap_fee
    product_total += line_discount.product_discount
    gift_wrap_total += line_discount.gift_wrap_discount

  return PromoDiscount(
      lines=results,
      eligible_subtotal=eligible_subtotal,
      product_discount_total=product_total,
      gift_wrap_discount_total=gift_wrap_total,
      total_discount=product_total + gift_wrap_total,
  )


def select_promo(
    candidates: List[db.PromoCode], vendor_id: Optional[str]
) -> Optional[db.PromoCode]:
  """Picks the vendor-scoped match first, then the platform match."""
  if vendor_id:
    for promo in candidates:
      if promo.scope == PromoScope.VENDOR.value and promo.vendor_id == vendor_id:
        return promo
  for promo in candidates:
    if promo.scope == PromoScope.PLATFORM.value:
      return promo
  return None


class PromoService:
  """Looks up promo codes and evaluates them against cart lines."""

  def __init__(self, session: AsyncSession):
    self.session = session

  async def fetch_promo(
      self, code: str, vendor_id: Optional[str] = None
  ) -> Optional[db.PromoCode]:
    candidates = await db.find_promo_codes(self.session, code)
    return select_promo(candidates, vendor_id)

  async def fetch_targets(self, promo: db.PromoCode) -> PromoTargets:
    product_ids, category_ids = await db.get_promo_targets(
        self.session, promo.id
    )
    return PromoTargets(product_ids=product_ids, category_ids=category_ids)

  async def fetch_redemption_count(
      self,
      promo: db.PromoCode,
      user_id: Optional[str],
      guest_browser_id: Optional[str],
      device_fingerprint: Optional[str],
  ) -> int:
    """Counts prior redemptions for whichever identities are known.

    The highest count across user, browser and device wins, so clearing
    browser storage does not reset a per-user limit.
    """
    counts = [0]
    for column, value in (
        ("user_id", user_id),
        ("guest_browser_id", guest_browser_id),
        ("device_fingerprint", device_fingerprint),
    ):
      if value:
        counts.append(
            await db.count_redemptions(self.session, promo.id, column, value)
        )
    return max(counts)

  async def evaluate(
      self,
      code: Optional[str],
      lines: Sequence[PromoLine],
      vendor_id: Optional[str] = None,
      user_id: Optional[str] = None,
      guest_browser_id: Optional[str] = None,
      device_fingerprint: Optional[str] = None,
      now: Optional[datetime.datetime] = None,
  ) -> PromoEvaluation:
    """Evaluates a promo code against cart lines without writing anything.

    Args:
      code: The code as typed by the shopper.
      lines: The cart lines the promo would apply to.
      vendor_id: The storefront vendor, enabling vendor-scoped codes.
      user_id: The signed-in user, if any.
      guest_browser_id: The anonymous browser id, if any.
      device_fingerprint: The device fingerprint, if any.
      now: Evaluation time; defaults to the current time.

    Returns:
      A PromoEvaluation carrying either the discount or the rejection reason.
    """
    normalized = normalize_code(code)
    if not normalized:
      return PromoEvaluation(valid=False, error=ERROR_EMPTY_CODE)

    promo = await self.fetch_promo(normalized, vendor_id)
    if not promo:
      return PromoEvaluation(valid=False, error=ERROR_NOT_FOUND)

    if not is_promo_active(promo, now):
      return PromoEvaluation(valid=False, error=ERROR_NOT_ACTIVE, promo=promo)

    targets = await self.fetch_targets(promo)
    discount = compute_promo_discount(promo, targets, lines)
    if discount.total_discount <= 0:
      return PromoEvaluation(
          valid=False, error=ERROR_NOT_APPLICABLE, promo=promo
      )

    if promo.min_spend and discount.eligible_subtotal < promo.min_spend:
      return PromoEvaluation(valid=False, error=ERROR_MIN_SPEND, promo=promo)

    usage_limit = promo.usage_limit or 0
    if usage_limit > 0 and (promo.usage_count or 0) >= usage_limit:
      return PromoEvaluation(valid=False, error=ERROR_USAGE_LIMIT, promo=promo)

    per_user_limit = promo.per_user_limit or 0
    if per_user_limit > 0:
      if not (user_id or guest_browser_id or device_fingerprint):
        return PromoEvaluation(
            valid=False, error=ERROR_NO_IDENTITY, promo=promo
        )
      used = await self.fetch_redemption_count(
          promo, user_id, guest_browser_id, device_fingerprint
      )
      if used >= per_user_limit:
        if per_user_limit == 1:
          error = ERROR_ALREADY_USED
        else:
          error = f"Promo code limit reached ({per_user_limit} uses per user)."
        return PromoEvaluation(valid=False, error=error, promo=promo)

    return PromoEvaluation(valid=True, promo=promo, discount=discount)

  async def record_redemption(
      self,
      promo: db.PromoCode,
      order_id: str,
      amount: int,
      user_id: Optional[str],
      guest_browser_id: Optional[str],
      device_fingerprint: Optional[str],
  ) -> None:
    """Records a redemption and bumps the usage counter atomically."""
    self.session.add(
        db.PromoRedemption(
            promo_id=promo.id,
            order_id=order_id,
            user_id=user_id,
            guest_browser_id=guest_browser_id,
            device_fingerprint=device_fingerprint,
            amount=amount,
            meta={"code": promo.code, "percent_off": promo.percent_off},
        )
    )
    await db.increment_promo_usage(self.session, promo.id)
    logger.info("Recorded redemption of promo %s on %s", promo.code, order_id)
