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

"""Tests for the Aramex SOAP client."""

import asyncio
import decimal

from absl.testing import absltest
from exceptions import CourierError
import httpx
from services import aramex

_RATE_REPLY = """<?xml version="1.0" encoding="utf-8"?>
<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"><s:Body>
<RateCalculatorResponse xmlns="http://ws.aramex.net/ShippingAPI/v1/">
<HasErrors>false</HasErrors><Notifications/>
<TotalAmount><CurrencyCode>GHS</CurrencyCode><Value>45.5</Value></TotalAmount>
</RateCalculatorResponse></s:Body></s:Envelope>"""

_STATES_REPLY = """<StatesFetchingResponse>
<HasErrors>false</HasErrors>
<States>
<a:State><a:Code>AA</a:Code><a:Name>Greater Accra</a:Name></a:State>
<a:State><a:Code>AS</a:Code><a:Name>Ashanti</a:Name></a:State>
<a:State><a:Code>XX</a:Code><a:Name></a:Name></a:State>
</States>
</StatesFetchingResponse>"""


def _credentials(**overrides) -> aramex.AramexCredentials:
  values = {
      "username": "user@example.com",
      "password": "secret",
      "account_number": "20016",
      "account_pin": "331421",
      "account_entity": "ACC",
      "account_country_code": "GH",
  }
  values.update(overrides)
  return aramex.AramexCredentials(**values)


class XmlHelpersTest(absltest.TestCase):

  def test_normalize_country_code(self):
    self.assertEqual(aramex.normalize_country_code(None), "GH")
    self.assertEqual(aramex.normalize_country_code(" gh "), "GH")
    self.assertEqual(aramex.normalize_country_code("Ghana"), "GH")
    self.assertEqual(aramex.normalize_country_code("South-Africa"), "ZA")
    self.assertEqual(aramex.normalize_country_code("Togo"), "TO")

  def test_escape_xml(self):
    self.assertEqual(
        aramex.escape_xml('<a & "b">'), "&lt;a &amp; &quot;b&quot;&gt;"
    )
    self.assertEqual(aramex.escape_xml(None), "")
    self.assertEqual(aramex.escape_xml(1.5), "1.5")

  def test_errors_and_notifications(self):
    xml = (
        "<HasErrors> true </HasErrors><Notifications>"
        "<Notification><Code>ERR01</Code><Message>Invalid city</Message>"
        "</Notification></Notifications>"
    )
    self.assertTrue(aramex.has_errors(xml))
    self.assertEqual(aramex.notification_message(xml), "Invalid city")
    self.assertFalse(aramex.has_errors("<HasErrors>false</HasErrors>"))

    bare = "<Notification>First</Notification><Notification>Second</Notification>"
    self.assertEqual(aramex.notification_message(bare), "First Second")

  def test_extract_states_skips_unnamed(self):
    self.assertEqual(
        aramex.extract_states(_STATES_REPLY),
        [
            {"name": "Greater Accra", "code": "AA"},
            {"name": "Ashanti", "code": "AS"},
        ],
    )

  def test_tracking_url(self):
    self.assertEqual(
        aramex.build_tracking_url("SH 1"),
        "https://www.aramex.com/track/shipments?ShipmentNumber=SH%201",
    )
    self.assertEqual(aramex.build_tracking_url(None), "")

  def test_missing_credentials_are_named(self):
    creds = _credentials(password="", account_pin=None)
    self.assertEqual(creds.missing(), ["password", "account_pin"])
    with self.assertRaises(CourierError) as cm:
      creds.to_xml()
    self.assertEqual(cm.exception.status_code, 500)


class AramexClientTest(absltest.TestCase):

  def setUp(self):
    super().setUp()
    self.requests = []
    self.status_code = 200
    self.reply = _RATE_REPLY

    def handler(request: httpx.Request) -> httpx.Response:
      self.requests.append(request)
      return httpx.Response(self.status_code, text=self.reply)

    self.client = aramex.AramexClient(
        _credentials(), transport=httpx.MockTransport(handler)
    )

  def test_calculate_rate(self):
    quote = asyncio.run(
        self.client.calculate_rate(
            aramex.Address(city="Accra", country_code="Ghana"),
            aramex.Address(city="Kumasi", country_code="GH"),
            aramex.ShipmentSpec(weight_kg=2.0),
        )
    )

    self.assertFalse(quote.has_errors)
    self.assertEqual(quote.amount, decimal.Decimal("45.5"))
    self.assertEqual(quote.currency, "GHS")

    request = self.requests[0]
    self.assertEqual(str(request.url), aramex.DEFAULT_RATE_URL)
    self.assertEqual(request.headers["SOAPAction"], aramex.RATE_SOAP_ACTION)
    body = request.read().decode()
    self.assertIn("<UserName>user@example.com</UserName>", body)
    self.assertIn("<City>Kumasi</City>", body)
    self.assertIn("<CountryCode>GH</CountryCode>", body)

  def test_fetch_states(self):
    self.reply = _STATES_REPLY
    result = asyncio.run(self.client.fetch_states("ghana"))
    self.assertLen(result.states, 2)
    self.assertIn("<CountryCode>GH</CountryCode>", self.requests[0].read().decode())

  def test_track_shipment(self):
    self.reply = (
        "<HasErrors>false</HasErrors><TrackingResults><Value>"
        "<UpdateDescription>Out for delivery</UpdateDescription>"
        "<UpdateDateTime>2026-03-01T10:00:00</UpdateDateTime>"
        "</Value></TrackingResults>"
    )
    result = asyncio.run(self.client.track_shipment("SH123"))
    self.assertEqual(result.description, "Out for delivery")
    self.assertEqual(result.update_date, "2026-03-01T10:00:00")

  def test_http_error_raises(self):
    self.status_code = 500
    self.reply = "<fault/>"
    with self.assertRaises(CourierError) as cm:
      asyncio.run(self.client.track_shipment("SH123"))
    self.assertEqual(cm.exception.message, "Aramex request failed")
    self.assertEqual(cm.exception.status_code, 502)

  def test_unconfigured_client_does_not_call_out(self):
    client = aramex.AramexClient(
        _credentials(username=None),
        transport=httpx.MockTransport(lambda request: httpx.Response(200)),
    )
    with self.assertRaises(CourierError) as cm:
      asyncio.run(client.fetch_states("GH"))
    self.assertEqual(cm.exception.status_code, 500)
    self.assertEmpty(self.requests)


if __name__ == "__main__":
  absltest.main()
