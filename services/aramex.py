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

"""Aramex courier client.

Aramex exposes SOAP 1.1 services. Requests are small hand-built envelopes that
share a `ClientInfo` credential block; replies are read with targeted tag
extraction instead of a full XML parser, which is all the few fields we need
require.
"""

import dataclasses
import decimal
import logging
import re
from typing import Any, Dict, List, Optional
import urllib.parse
from xml.sax import saxutils

from exceptions import CourierError
import httpx

logger = logging.getLogger(__name__)

PROVIDER = "aramex"

DEFAULT_VERSION = "v1.0"
DEFAULT_CURRENCY = "GHS"
DEFAULT_WEIGHT_UNIT = "KG"
DEFAULT_REPORT_ID = "9729"
DEFAULT_REPORT_TYPE = "URL"

DEFAULT_RATE_URL = (
    "https://ws.aramex.net/ShippingAPI.V2/RateCalculator/Service_1_0.svc"
)
DEFAULT_LOCATION_URL = (
    "https://ws.aramex.net/ShippingAPI.V2/Location/Service_1_0.svc"
)
DEFAULT_SHIPPING_URL = (
    "https://ws.aramex.net/ShippingAPI.V2/Shipping/Service_1_0.svc"
)
DEFAULT_TRACKING_URL = (
    "https://ws.aramex.net/ShippingAPI.V2/Tracking/Service_1_0.svc"
)

_ACTION_BASE = "http://ws.aramex.net/ShippingAPI/v1/Service_1_0"
RATE_SOAP_ACTION = f"{_ACTION_BASE}/CalculateRate"
STATES_SOAP_ACTION = f"{_ACTION_BASE}/FetchStates"
CREATE_SOAP_ACTION = f"{_ACTION_BASE}/CreateShipments"
TRACK_SOAP_ACTION = f"{_ACTION_BASE}/TrackShipments"

_NAMESPACE = "http://ws.aramex.net/ShippingAPI/v1/"

TRACKING_PAGE_URL = "https://www.aramex.com/track/shipments?ShipmentNumber="

_COUNTRY_NAMES = {
    "GHANA": "GH",
    "NIGERIA": "NG",
    "KENYA": "KE",
    "SOUTH AFRICA": "ZA",
    "EGYPT": "EG",
    "UAE": "AE",
    "DUBAI": "AE",
    "UNITED STATES": "US",
    "USA": "US",
    "UNITED KINGDOM": "GB",
    "UK": "GB",
    "CANADA": "CA",
    "AUSTRALIA": "AU",
    "INDIA": "IN",
}


def normalize_country_code(value: Optional[str]) -> str:
  """Turns a country name or code into a two-letter code, defaulting to GH."""
  trimmed = str(value or "").strip().upper()
  if not trimmed:
    return "GH"
  if re.fullmatch(r"[A-Z]{2}", trimmed):
    return trimmed
  name = re.sub(r"[\s\-'.]+", " ", trimmed).strip()
  return _COUNTRY_NAMES.get(name, trimmed[:2])


def escape_xml(value: Any) -> str:
  if value is None:
    return ""
  return saxutils.escape(str(value), {'"': "&quot;", "'": "&apos;"})


def get_xml_value(xml: str, tag: str) -> str:
  """Returns the trimmed text of the first `<tag>`, or an empty string."""
  match = re.search(rf"<{tag}>([\s\S]*?)</{tag}>", xml, re.IGNORECASE)
  return match.group(1).strip() if match else ""


def get_xml_values(xml: str, tag: str) -> List[str]:
  return [
      m.strip()
      for m in re.findall(rf"<{tag}>([\s\S]*?)</{tag}>", xml, re.IGNORECASE)
  ]


def has_errors(xml: str) -> bool:
  return bool(re.search(r"<HasErrors>\s*true\s*</HasErrors>", xml, re.I))


def notification_message(xml: str) -> str:
  """Joins the reply's notification messages into one string."""
  message = get_xml_value(xml, "Message")
  if message:
    return message
  messages = []
  for notification in get_xml_values(xml, "Notification"):
    text = get_xml_value(notification, "Message") or notification
    if text.strip():
      messages.append(text.strip())
  return " ".join(messages).strip()


def build_tracking_url(tracking_number: Optional[str]) -> str:
  if not tracking_number:
    return ""
  return TRACKING_PAGE_URL + urllib.parse.quote(tracking_number, safe="")


def build_soap_envelope(body: str) -> str:
  return (
      '<?xml version="1.0" encoding="utf-8"?>'
      '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">'
      f"<soap:Body>{body}</soap:Body>"
      "</soap:Envelope>"
  )


def _transaction_xml(reference: str) -> str:
  return (
      "<Transaction>"
      f"<Reference1>{escape_xml(reference)}</Reference1>"
      "<Reference2></Reference2><Reference3></Reference3>"
      "<Reference4></Reference4><Reference5></Reference5>"
      "</Transaction>"
  )


@dataclasses.dataclass
class AramexCredentials:
  username: Optional[str]
  password: Optional[str]
  account_number: Optional[str]
  account_pin: Optional[str]
  account_entity: Optional[str]
  account_country_code: Optional[str]
  version: str = DEFAULT_VERSION

  def missing(self) -> List[str]:
    return [
        field.name
        for field in dataclasses.fields(self)
        if field.name != "version" and not getattr(self, field.name)
    ]

  def to_xml(self) -> str:
    missing = self.missing()
    if missing:
      raise CourierError(
          f"Aramex is not configured (missing {', '.join(missing)}).",
          status_code=500,
      )
    return (
        "<ClientInfo>"
        f"<UserName>{escape_xml(self.username)}</UserName>"
        f"<Password>{escape_xml(self.password)}</Password>"
        f"<Version>{escape_xml(self.version or DEFAULT_VERSION)}</Version>"
        f"<AccountNumber>{escape_xml(self.account_number)}</AccountNumber>"
        f"<AccountPin>{escape_xml(self.account_pin)}</AccountPin>"
        f"<AccountEntity>{escape_xml(self.account_entity)}</AccountEntity>"
        "<AccountCountryCode>"
        f"{escape_xml(self.account_country_code)}"
        "</AccountCountryCode>"
        "</ClientInfo>"
    )


@dataclasses.dataclass
class Address:
  city: str
  country_code: str = "GH"
  line1: str = ""
  line2: str = ""
  state: str = ""
  postal_code: str = ""

  def to_xml(self) -> str:
    return (
        f"<Line1>{escape_xml(self.line1)}</Line1>"
        f"<Line2>{escape_xml(self.line2)}</Line2>"
        "<Line3></Line3>"
        f"<City>{escape_xml(self.city)}</City>"
        f"<StateOrProvinceCode>{escape_xml(self.state)}</StateOrProvinceCode>"
        f"<PostCode>{escape_xml(self.postal_code)}</PostCode>"
        f"<CountryCode>{escape_xml(self.country_code)}</CountryCode>"
    )


@dataclasses.dataclass
class Party:
  """A shipper or consignee."""

  name: str
  address: Address
  company: str = ""
  phone: str = ""
  email: str = ""

  def to_xml(self) -> str:
    return (
        f"<PartyAddress>{self.address.to_xml()}</PartyAddress>"
        "<Contact>"
        f"<PersonName>{escape_xml(self.name)}</PersonName>"
        f"<CompanyName>{escape_xml(self.company)}</CompanyName>"
        f"<PhoneNumber1>{escape_xml(self.phone)}</PhoneNumber1>"
        f"<CellPhone>{escape_xml(self.phone)}</CellPhone>"
        f"<EmailAddress>{escape_xml(self.email)}</EmailAddress>"
        "</Contact>"
    )


@dataclasses.dataclass
class ShipmentSpec:
  weight_kg: float = 1.0
  pieces: int = 1
  goods_value: str = "0"  # Major units
  currency: str = DEFAULT_CURRENCY
  description: str = "Gift items"
  origin_country_code: str = "GH"
  product_group: str = "EXP"
  product_type: str = "PPX"
  payment_type: str = "P"


@dataclasses.dataclass
class RateQuote:
  has_errors: bool
  message: str
  amount: Optional[decimal.Decimal]
  currency: str
  raw: str


@dataclasses.dataclass
class StatesResult:
  has_errors: bool
  message: str
  states: List[Dict[str, str]]
  raw: str


@dataclasses.dataclass
class ShipmentResult:
  has_errors: bool
  message: str
  shipment_number: str
  label_url: str
  raw: str


@dataclasses.dataclass
class TrackingResult:
  has_errors: bool
  description: str
  update_date: str
  raw: str


def extract_states(xml: str) -> List[Dict[str, str]]:
  """Reads `<State>` entries (code and name) from a FetchStates reply."""
  states = []
  for block in re.findall(
      r"<(?:\w+:)?State>([\s\S]*?)</(?:\w+:)?State>", xml, re.IGNORECASE
  ):
    name = get_xml_value(block, "Name") or get_xml_value(block, "a:Name")
    code = get_xml_value(block, "Code") or get_xml_value(block, "a:Code")
    if name:
      states.append({"name": name, "code": code})
  return states


def _parse_amount(value: str) -> Optional[decimal.Decimal]:
  if not value:
    return None
  try:
    return decimal.Decimal(value)
  except decimal.InvalidOperation:
    return None


def _details_xml(shipment: ShipmentSpec, tag: str, chargeable: bool) -> str:
  weight = (
      f"<Unit>{DEFAULT_WEIGHT_UNIT}</Unit>"
      f"<Value>{escape_xml(shipment.weight_kg)}</Value>"
  )
  chargeable_xml = (
      f"<ChargeableWeight>{weight}</ChargeableWeight>" if chargeable else ""
  )
  return (
      f"<{tag}>"
      "<Dimensions><Length>0</Length><Width>0</Width><Height>0</Height>"
      "<Unit>CM</Unit></Dimensions>"
      f"<ActualWeight>{weight}</ActualWeight>"
      f"{chargeable_xml}"
      f"<DescriptionOfGoods>{escape_xml(shipment.description)}</DescriptionOfGoods>"
      "<GoodsOriginCountry>"
      f"{escape_xml(shipment.origin_country_code)}"
      "</GoodsOriginCountry>"
      f"<NumberOfPieces>{escape_xml(shipment.pieces)}</NumberOfPieces>"
      f"<ProductGroup>{escape_xml(shipment.product_group)}</ProductGroup>"
      f"<ProductType>{escape_xml(shipment.product_type)}</ProductType>"
      f"<PaymentType>{escape_xml(shipment.payment_type)}</PaymentType>"
      "<CustomsValueAmount>"
      f"<CurrencyCode>{escape_xml(shipment.currency)}</CurrencyCode>"
      f"<Value>{escape_xml(shipment.goods_value)}</Value>"
      "</CustomsValueAmount>"
      f"</{tag}>"
  )


class AramexClient:
  """Async client for the Aramex SOAP services."""

  def __init__(
      self,
      credentials: AramexCredentials,
      rate_url: Optional[str] = None,
      location_url: Optional[str] = None,
      shipping_url: Optional[str] = None,
      tracking_url: Optional[str] = None,
      transport: Optional[httpx.AsyncBaseTransport] = None,
      timeout: float = 30.0,
  ):
    self.credentials = credentials
    self.rate_url = rate_url or DEFAULT_RATE_URL
    self.location_url = location_url or DEFAULT_LOCATION_URL
    self.shipping_url = shipping_url or DEFAULT_SHIPPING_URL
    self.tracking_url = tracking_url or DEFAULT_TRACKING_URL
    self.transport = transport
    self.timeout = timeout

  async def _request(self, url: str, action: str, body: str) -> str:
    headers = {
        "Content-Type": "text/xml; charset=utf-8",
        "SOAPAction": action,
    }
    try:
      async with httpx.AsyncClient(
          transport=self.transport, timeout=self.timeout
      ) as client:
        response = await client.post(
            url, content=build_soap_envelope(body), headers=headers
        )
    except httpx.HTTPError as e:
      logger.error("Aramex request to %s failed: %s", url, e)
      raise CourierError("Courier service is unreachable.") from e

    if response.status_code >= 400:
      logger.error(
          "Aramex %s returned HTTP %s: %s",
          action,
          response.status_code,
          response.text[:500],
      )
      raise CourierError("Aramex request failed")
    return response.text

  async def calculate_rate(
      self,
      origin: Address,
      destination: Address,
      shipment: ShipmentSpec,
      reference: str = "",
  ) -> RateQuote:
    """Quotes a shipment between two addresses."""
    origin = dataclasses.replace(
        origin, country_code=normalize_country_code(origin.country_code)
    )
    destination = dataclasses.replace(
        destination,
        country_code=normalize_country_code(destination.country_code),
    )
    body = (
        f'<RateCalculatorRequest xmlns="{_NAMESPACE}">'
        f"{self.credentials.to_xml()}"
        f"{_transaction_xml(reference)}"
        f"<OriginAddress>{origin.to_xml()}</OriginAddress>"
        f"<DestinationAddress>{destination.to_xml()}</DestinationAddress>"
        f"{_details_xml(shipment, 'ShipmentDetails', chargeable=True)}"
        "</RateCalculatorRequest>"
    )
    xml = await self._request(self.rate_url, RATE_SOAP_ACTION, body)

    total_xml = get_xml_value(xml, "TotalAmount") or get_xml_value(xml, "Rate")
    if total_xml:
      value = get_xml_value(total_xml, "Value")
      currency = get_xml_value(total_xml, "CurrencyCode")
    else:
      value = get_xml_value(xml, "Value")
      currency = get_xml_value(xml, "CurrencyCode")

    return RateQuote(
        has_errors=has_errors(xml),
        message=notification_message(xml),
        amount=_parse_amount(value),
        currency=currency or shipment.currency,
        raw=xml,
    )

  async def fetch_states(self, country_code: str) -> StatesResult:
    """Lists the states/regions Aramex serves in a country."""
    code = normalize_country_code(country_code)
    body = (
        f'<StatesFetchingRequest xmlns="{_NAMESPACE}">'
        f"{self.credentials.to_xml()}"
        f"{_transaction_xml(code)}"
        f"<CountryCode>{escape_xml(code)}</CountryCode>"
        "</StatesFetchingRequest>"
    )
    xml = await self._request(self.location_url, STATES_SOAP_ACTION, body)
    return StatesResult(
        has_errors=has_errors(xml),
        message=notification_message(xml),
        states=extract_states(xml),
        raw=xml,
    )

  async def create_shipment(
      self,
      shipper: Party,
      consignee: Party,
      shipment: ShipmentSpec,
      reference: str = "",
  ) -> ShipmentResult:
    """Creates a shipment and returns its number and label URL."""
    body = (
        f'<CreateShipments xmlns="{_NAMESPACE}">'
        f"{self.credentials.to_xml()}"
        "<Shipments><Shipment>"
        f"<Shipper>{shipper.to_xml()}</Shipper>"
        f"<Consignee>{consignee.to_xml()}</Consignee>"
        f"<Reference1>{escape_xml(reference)}</Reference1>"
        f"{_details_xml(shipment, 'Details', chargeable=False)}"
        "</Shipment></Shipments>"
        "<LabelInfo>"
        f"<ReportID>{DEFAULT_REPORT_ID}</ReportID>"
        f"<ReportType>{DEFAULT_REPORT_TYPE}</ReportType>"
        "</LabelInfo>"
        "</CreateShipments>"
    )
    xml = await self._request(self.shipping_url, CREATE_SOAP_ACTION, body)
    return ShipmentResult(
        has_errors=has_errors(xml),
        message=notification_message(xml),
        shipment_number=(
            get_xml_value(xml, "ShipmentNumber") or get_xml_value(xml, "ID")
        ),
        label_url=(
            get_xml_value(xml, "LabelURL")
            or get_xml_value(xml, "ShipmentLabelURL")
        ),
        raw=xml,
    )

  async def track_shipment(self, tracking_number: str) -> TrackingResult:
    """Fetches the latest tracking update for a shipment."""
    body = (
        f'<TrackShipments xmlns="{_NAMESPACE}">'
        f"{self.credentials.to_xml()}"
        f"<Shipments><string>{escape_xml(tracking_number)}</string></Shipments>"
        "<GetLastTrackingUpdateOnly>true</GetLastTrackingUpdateOnly>"
        "</TrackShipments>"
    )
    xml = await self._request(self.tracking_url, TRACK_SOAP_ACTION, body)
    return TrackingResult(
        has_errors=has_errors(xml),
        description=get_xml_value(xml, "UpdateDescription"),
        update_date=(
            get_xml_value(xml, "UpdateDateTime")
            or get_xml_value(xml, "UpdateDate")
        ),
        raw=xml,
    )
