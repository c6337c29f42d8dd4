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

"""ExpressPay payment gateway client.

ExpressPay takes form-encoded POSTs and answers with JSON. `submit` creates an
invoice and returns a token for the hosted checkout page; `query` reports the
transaction state for a token. This module also holds the helpers that turn a
query reply into order state: result-code mapping, payment method
normalization and the amount mismatch guard.
"""

import dataclasses
import decimal
import logging
import re
from typing import Any, Dict, Mapping, Optional
import urllib.parse

from enums import OrderStatus
from enums import PaymentStatus
from exceptions import PaymentGatewayError
import httpx

logger = logging.getLogger(__name__)

PROVIDER = "expresspay"

SANDBOX_BASE_URL = "https://sandbox.expresspaygh.com/api"
PRODUCTION_BASE_URL = "https://expresspaygh.com/api"

_PRODUCTION_ALIASES = ("live", "production", "prod")

RESULT_APPROVED = 1
RESULT_DECLINED = 2
RESULT_ERROR = 3
RESULT_PENDING = 4

_FAILURE_KEYWORDS = ("declined", "failed", "system error")

_METHOD_KEYS = (
    "payment_option_type",
    "payment-option-type",
    "payment_method",
    "payment-method",
    "method",
    "channel",
    "network",
    "type",
)

_CHECKOUT_URL_KEYS = (
    "checkout-url",
    "checkout_url",
    "checkout",
    "payment-url",
    "payment_url",
    "url",
)


def resolve_environment(value: Optional[str]) -> str:
  normalized = (value or "").strip().lower()
  return "production" if normalized in _PRODUCTION_ALIASES else "sandbox"


def _to_int(value: Any) -> Optional[int]:
  try:
    return int(str(value).strip())
  except (TypeError, ValueError):
    return None


def map_result_to_order_status(
    result: Any, current_status: str = "pending", result_text: str = ""
) -> str:
  """Maps an ExpressPay result code onto an order status.

  Unrecognized codes carry no new information, so the current status is kept.
  """
  code = _to_int(result)
  text = str(result_text or "").lower()

  if code == RESULT_APPROVED:
    return OrderStatus.PAID.value
  if code == RESULT_DECLINED:
    return OrderStatus.DECLINED.value
  if code == RESULT_ERROR:
    if any(keyword in text for keyword in _FAILURE_KEYWORDS):
      return OrderStatus.FAILED.value
    return OrderStatus.PENDING.value
  if code == RESULT_PENDING:
    return OrderStatus.PENDING.value
  return current_status


def is_terminal(status: Optional[str]) -> bool:
  """Anything but pending, including statuses this module does not know."""
  return status != OrderStatus.PENDING.value


def normalize_payment_method(value: Any) -> str:
  """Collapses the gateway's channel names into our payment method values."""
  if value is None:
    return ""
  normalized = re.sub(r"[\s-]+", "_", str(value).strip().lower())
  if not normalized:
    return ""
  if any(k in normalized for k in ("card", "visa", "master")):
    return "card"
  if "bank" in normalized:
    return "bank"
  if "mtn" in normalized:
    return "mtn_momo"
  if "telecel" in normalized or "vodafone" in normalized:
    return "telecel_cash"
  if any(k in normalized for k in ("airtel", "tigo", "at_momo")):
    return "at_momo"
  if "momo" in normalized or "mobile_money" in normalized:
    return "momo"
  return normalized


def resolve_payment_method(data: Optional[Mapping[str, Any]]) -> str:
  for key in _METHOD_KEYS:
    method = normalize_payment_method((data or {}).get(key))
    if method:
      return method
  return ""


def map_order_status_to_payment_status(order_status: Optional[str]) -> str:
  normalized = str(order_status or "").lower()
  if normalized in ("paid", "success"):
    return PaymentStatus.COMPLETED.value
  if normalized == "pending":
    return PaymentStatus.PENDING.value
  if normalized == "cancelled":
    return PaymentStatus.CANCELLED.value
  return PaymentStatus.FAILED.value


def to_minor_units(value: Any) -> Optional[int]:
  """Parses a major-unit amount ("100.50") into minor units (10050)."""
  if value is None or isinstance(value, bool):
    return None
  try:
    amount = decimal.Decimal(str(value).strip())
  except decimal.InvalidOperation:
    return None
  if not amount.is_finite():
    return None
  return int(
      (amount * 100).quantize(decimal.Decimal(1), rounding=decimal.ROUND_HALF_UP)
  )


def format_amount(minor_units: int) -> str:
  """Formats minor units as the two-decimal string the gateway expects."""
  return str(
      (decimal.Decimal(minor_units) / 100).quantize(decimal.Decimal("0.01"))
  )


def has_amount_mismatch(
    expected_minor: Optional[int],
    expected_currency: Optional[str],
    received_amount: Any,
    received_currency: Optional[str],
    tolerance_minor_units: int = 1,
) -> bool:
  """Checks a gateway-reported amount against the order's expected total.

  Args:
    expected_minor: The order total in minor units.
    expected_currency: The order currency.
    received_amount: The amount reported by the gateway, in major units.
    received_currency: The currency reported by the gateway.
    tolerance_minor_units: Allowed difference to absorb rounding.

  Returns:
    True when the amounts differ beyond the tolerance, either amount is
    unparseable, or both currencies are known and differ.
  """
  received_minor = to_minor_units(received_amount)
  if expected_minor is None or received_minor is None:
    return True

  expected_curr = str(expected_currency or "").strip().upper()
  received_curr = str(received_currency or "").strip().upper()
  if expected_curr and received_curr and expected_curr != received_curr:
    return True

  return abs(expected_minor - received_minor) > tolerance_minor_units


def mask_token(token: Optional[str], keep: int = 6) -> Optional[str]:
  if not token:
    return None
  return str(token)[-keep:]


@dataclasses.dataclass
class Invoice:
  """Fields of an ExpressPay invoice submission."""

  order_id: str
  amount: int  # Minor units
  redirect_url: str
  post_url: str
  first_name: str = ""
  last_name: str = ""
  email: str = ""
  phone: str = ""
  username: str = ""
  currency: str = "GHS"
  description: str = "Giftologi Purchase"


@dataclasses.dataclass
class SubmitResult:
  status: Optional[int]
  token: Optional[str]
  message: Optional[str]
  checkout_url: Optional[str]
  raw: Dict[str, Any]

  @property
  def accepted(self) -> bool:
    return self.status == 1 and bool(self.token)


@dataclasses.dataclass
class QueryResult:
  result: Optional[int]
  result_text: str
  transaction_id: Optional[str]
  amount: Any
  currency: Optional[str]
  date_processed: Optional[str]
  token: Optional[str]
  raw: Dict[str, Any]


class ExpressPayClient:
  """Async client for the ExpressPay merchant API."""

  def __init__(
      self,
      merchant_id: Optional[str],
      api_key: Optional[str],
      environment: Optional[str] = "sandbox",
      transport: Optional[httpx.AsyncBaseTransport] = None,
      timeout: float = 30.0,
  ):
    self.merchant_id = merchant_id
    self.api_key = api_key
    self.environment = resolve_environment(environment)
    self.transport = transport
    self.timeout = timeout

  @property
  def base_url(self) -> str:
    if self.environment == "production":
      return PRODUCTION_BASE_URL
    return SANDBOX_BASE_URL

  @property
  def submit_url(self) -> str:
    return f"{self.base_url}/submit.php"

  @property
  def query_url(self) -> str:
    return f"{self.base_url}/query.php"

  def build_checkout_url(self, token: Optional[str]) -> Optional[str]:
    if not token:
      return None
    quoted = urllib.parse.quote(str(token), safe="")
    return f"{self.base_url}/checkout.php?token={quoted}"

  def resolve_checkout_url(self, payload: Mapping[str, Any]) -> Optional[str]:
    """Uses a checkout URL from the reply only if it points at ExpressPay."""
    for key in _CHECKOUT_URL_KEYS:
      value = payload.get(key)
      if not isinstance(value, str):
        continue
      candidate = value.strip()
      if not re.match(r"^https?://", candidate, re.IGNORECASE):
        continue
      hostname = urllib.parse.urlsplit(candidate).hostname or ""
      if re.search(r"expresspaygh\.com$", hostname, re.IGNORECASE):
        return candidate
    return self.build_checkout_url(payload.get("token"))

  def _credentials(self) -> Dict[str, str]:
    if not self.merchant_id or not self.api_key:
      raise PaymentGatewayError(
          "Missing ExpressPay credentials.",
          code="PAYMENT_GATEWAY_NOT_CONFIGURED",
          status_code=500,
      )
    return {"merchant-id": self.merchant_id, "api-key": self.api_key}

  async def _post_form(self, url: str, form: Dict[str, str]) -> Dict[str, Any]:
    try:
      async with httpx.AsyncClient(
          transport=self.transport, timeout=self.timeout
      ) as client:
        response = await client.post(url, data=form)
    except httpx.HTTPError as e:
      logger.error("ExpressPay request to %s failed: %s", url, e)
      raise PaymentGatewayError("Payment gateway is unreachable.") from e

    try:
      payload = response.json()
    except ValueError:
      logger.warning(
          "ExpressPay returned non-JSON body (HTTP %s)", response.status_code
      )
      payload = {}
    if not isinstance(payload, dict):
      payload = {}
    return payload

  async def submit(self, invoice: Invoice) -> SubmitResult:
    """Submits an invoice; status 1 means a checkout token was issued."""
    form = self._credentials()
    form.update({
        "firstname": invoice.first_name or "",
        "lastname": invoice.last_name or "",
        "email": invoice.email or "",
        "phonenumber": invoice.phone or "",
        "username": invoice.username or invoice.email or "",
        "currency": invoice.currency or "GHS",
        "amount": format_amount(invoice.amount),
        "order-id": invoice.order_id,
        "order-desc": invoice.description or "Giftologi Purchase",
        "redirect-url": invoice.redirect_url,
        "post-url": invoice.post_url,
    })
    payload = await self._post_form(self.submit_url, form)
    token = payload.get("token")
    status = _to_int(payload.get("status"))
    logger.info(
        "ExpressPay submit for order %s returned status %s",
        invoice.order_id,
        status,
    )
    return SubmitResult(
        status=status,
        token=str(token) if token else None,
        message=payload.get("message"),
        checkout_url=self.resolve_checkout_url(payload) if token else None,
        raw=payload,
    )

  async def query(self, token: str) -> QueryResult:
    """Queries the transaction state for a checkout token."""
    if not token:
      raise PaymentGatewayError(
          "ExpressPay token is required for query.", status_code=400
      )
    form = self._credentials()
    form["token"] = token
    payload = await self._post_form(self.query_url, form)
    transaction_id = payload.get("transaction-id")
    return QueryResult(
        result=_to_int(payload.get("result")),
        result_text=str(payload.get("result-text") or ""),
        transaction_id=str(transaction_id) if transaction_id else None,
        amount=payload.get("amount"),
        currency=payload.get("currency"),
        date_processed=payload.get("date-processed"),
        token=payload.get("token") or token,
        raw=payload,
    )
